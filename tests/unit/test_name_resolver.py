"""
Unit tests for option name resolution
"""

import pytest

from batch_registrar.exceptions import NoMatchError
from batch_registrar.services.engine.target_adapter import BasicNameResolver, normalize_name


class TestNormalizeName:
    """Test name normalization"""

    @pytest.mark.parametrize("raw,expected", [
        ("São Paulo", "sao paulo"),
        ("  Vara   de  Família ", "vara de familia"),
        ("ÓRGÃO", "orgao"),
        ("", ""),
        (None, ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_name(raw) == expected


class TestBasicNameResolver:
    """Test exact, keyword and similarity matching"""

    def setup_method(self):
        self.resolver = BasicNameResolver()

    def test_exact_match_ignores_case_and_accents(self):
        chosen = self.resolver.resolve({"label": "São Paulo"}, ["Rio de Janeiro", "SAO PAULO"])

        assert chosen == "SAO PAULO"

    def test_exact_match_wins_over_keyword_match(self):
        chosen = self.resolver.resolve({"label": "Beta"}, ["Beta Annex", "Beta"])

        assert chosen == "Beta"

    def test_keyword_match_prefers_shortest_option(self):
        offered = ["Cardiologia Pediatrica Hospital X", "Hospital de Cardiologia Central"]

        chosen = self.resolver.resolve({"label": "Cardiologia"}, offered)

        assert chosen == "Hospital de Cardiologia Central"

    def test_keyword_match_skips_stopwords(self):
        offered = ["1a Vara Civel", "1a Vara de Familia e Sucessoes"]

        chosen = self.resolver.resolve({"label": "Vara da Família"}, offered)

        assert chosen == "1a Vara de Familia e Sucessoes"

    def test_similarity_match_tolerates_typos(self):
        chosen = self.resolver.resolve({"label": "Alpha Clinic"}, ["Beta Clinic", "Alpha Clinik"])

        assert chosen == "Alpha Clinik"

    def test_blank_options_are_ignored(self):
        chosen = self.resolver.resolve({"label": "Gamma"}, ["", "   ", "Gamma"])

        assert chosen == "Gamma"

    def test_no_match_raises(self):
        with pytest.raises(NoMatchError) as exc_info:
            self.resolver.resolve({"label": "Zeta"}, ["Alpha", "Beta"])

        assert exc_info.value.label == "Zeta"
        assert exc_info.value.offered == ["Alpha", "Beta"]
        assert exc_info.value.error_code == "NO_MATCH"

    def test_no_options_raises(self):
        with pytest.raises(NoMatchError):
            self.resolver.resolve({"label": "Alpha"}, [])

    def test_stricter_threshold_rejects_near_miss(self):
        resolver = BasicNameResolver(similarity_threshold=0.99)

        with pytest.raises(NoMatchError):
            resolver.resolve({"label": "Alpha Clinic"}, ["Alpha Clinik"])
