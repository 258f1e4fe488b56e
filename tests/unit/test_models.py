"""
Unit tests for items, results, reports and configuration
"""

import json

import pytest

from batch_registrar.config import EngineConfig, load_config
from batch_registrar.exceptions import ConfigurationError, InvalidItemError
from batch_registrar.models.classification import ErrorClassification, ErrorKind
from batch_registrar.models.form_plan import DEFAULT_STEPS, ControlCatalog, FormStep, StepAction
from batch_registrar.models.item import BatchJob, BatchReport, Item, ItemOutcome, ItemResult, ItemStatus


class TestItem:
    """Test the item contract"""

    def test_valid_item(self):
        item = Item("Alpha", {"role": "Reviewer"}, "a-1")

        assert item.label == "Alpha"
        assert item.attribute("role") == "Reviewer"
        assert item.item_id == "a-1"

    @pytest.mark.parametrize("label", ["", "   ", None, 42])
    def test_label_required(self, label):
        with pytest.raises(InvalidItemError):
            Item(label)

    def test_attribute_values_must_be_strings(self):
        with pytest.raises(InvalidItemError) as exc_info:
            Item("Alpha", {"role": 3})

        assert exc_info.value.label == "Alpha"

    def test_attributes_must_be_mapping(self):
        with pytest.raises(InvalidItemError):
            Item("Alpha", ["role"])

    def test_attributes_are_frozen(self):
        source = {"role": "Reviewer"}
        item = Item("Alpha", source)
        source["role"] = "Owner"

        assert item.attribute("role") == "Reviewer"
        with pytest.raises(TypeError):
            item.attributes["role"] = "Owner"

    def test_empty_attribute_falls_back_to_default(self):
        item = Item("Alpha", {"role": ""})

        assert item.attribute("role") is None
        assert item.attribute("role", "Reviewer") == "Reviewer"

    def test_to_dict(self):
        assert Item("Alpha", {"role": "R"}).to_dict() == {
            "label": "Alpha", "attributes": {"role": "R"}, "itemId": None
        }


class TestResultsAndReport:
    """Test item results and the batch report"""

    def make_results(self):
        return [
            ItemResult(Item("A"), 0, ItemOutcome.SUCCESS, 1, 120.0, "Registered"),
            ItemResult(Item("B"), 1, ItemOutcome.DUPLICATE, 1, 80.0, "already exists", ErrorKind.DUPLICATE),
            ItemResult(Item("C"), 2, ItemOutcome.ERROR, 3, 900.0, "timeout", ErrorKind.TRANSIENT),
        ]

    def test_outcome_maps_to_status(self):
        results = self.make_results()

        assert [r.status for r in results] == [ItemStatus.SUCCEEDED, ItemStatus.SKIPPED, ItemStatus.FAILED]
        assert all(r.status.is_final for r in results)
        assert not ItemStatus.IN_PROGRESS.is_final

    def test_report_counts(self):
        report = BatchReport.from_results(4, self.make_results(), 1100.0, job_id="job")

        assert (report.succeeded, report.skipped, report.failed) == (1, 1, 1)
        assert report.succeeded + report.skipped + report.failed + report.pending == report.total
        assert report.pending == 1
        assert not report.completed

    def test_completed_report(self):
        report = BatchReport.from_results(3, self.make_results(), 1100.0)

        assert report.pending == 0
        assert report.completed

    def test_report_to_dict(self):
        report = BatchReport.from_results(3, self.make_results(), 1100.04, job_id="job",
                                          terminated_reason="cancelled", resume_from=2)
        data = report.to_dict()

        assert data["jobId"] == "job"
        assert data["durationMs"] == 1100.0
        assert data["terminatedReason"] == "cancelled"
        assert data["resumeFrom"] == 2
        assert data["results"][2]["classification"] == "Transient"
        assert data["results"][0]["classification"] is None
        json.dumps(data)


class TestBatchJob:
    """Test per-item status tracking"""

    def test_statuses(self):
        job = BatchJob([Item("A"), Item("B"), Item("C")], job_id="job")

        assert len(job) == 3
        assert job.first_pending_index() == 0

        job.mark_in_progress(0)
        assert job.status_of(0) == ItemStatus.IN_PROGRESS

        job.mark_succeeded(0)
        job.mark_skipped(1)
        assert job.first_pending_index() == 2

        job.mark_from_result(ItemResult(Item("C"), 2, ItemOutcome.ERROR, 1, 0.0))
        assert job.first_pending_index() is None
        assert job.count(ItemStatus.FAILED) == 1

    def test_generated_job_id(self):
        assert BatchJob([]).job_id


class TestClassificationModel:
    """Test the error taxonomy"""

    def test_retryable_kinds(self):
        assert ErrorKind.TRANSIENT.is_retryable
        assert ErrorKind.UNKNOWN.is_retryable
        assert not ErrorKind.DUPLICATE.is_retryable
        assert not ErrorKind.FATAL.is_retryable

    def test_str(self):
        assert str(ErrorClassification(ErrorKind.FATAL, "gone")) == "Fatal: gone"
        assert "matched: x" in str(ErrorClassification(ErrorKind.FATAL, "gone", "x"))


class TestControlCatalog:
    """Test candidate strategies and form steps"""

    def test_defaults(self):
        catalog = ControlCatalog()

        assert catalog.steps == DEFAULT_STEPS
        assert "submit" in catalog.control_ids()
        assert catalog.candidates("unknown") == []

    def test_configured_strategies_go_first(self):
        catalog = ControlCatalog({"option": ["#custom", 'select[name="option"]']})
        candidates = catalog.candidates("option")

        assert candidates[:2] == ["#custom", 'select[name="option"]']
        assert candidates.count('select[name="option"]') == 1
        assert len(candidates) > 2

    def test_candidates_are_copies(self):
        catalog = ControlCatalog()
        catalog.candidates("submit").clear()

        assert catalog.candidates("submit")

    def test_form_step_from_dict(self):
        step = FormStep.from_dict({"control": "role", "action": "select", "attribute": "role", "required": False})

        assert step == FormStep("role", StepAction.SELECT, "role", False)


class TestEngineConfig:
    """Test configuration loading and validation"""

    def test_defaults(self):
        config = EngineConfig()

        assert config.retry.retry_budget == 3
        assert config.retry.unknown_retry_budget == 2
        assert config.backoff.base_delay_ms == 10_000
        assert config.backoff.multiplier == 1.3
        assert config.backoff.max_backoff_ms == 120_000
        assert config.backoff.check_interval_ms == 20_000
        assert config.backoff.max_wait_ms == 600_000
        assert config.arbiter.max_concurrent_operations == 1
        assert config.arbiter.slot_timeout_seconds == 300.0
        assert config.cache.capacity == 200
        assert config.cache.ttl_seconds == 600.0

    def test_partial_dict(self):
        config = EngineConfig.from_dict({"retry": {"retry_budget": 5}, "controls": {"submit": ["#go"]}})

        assert config.retry.retry_budget == 5
        assert config.retry.unknown_retry_budget == 2
        assert config.build_catalog().candidates("submit")[0] == "#go"

    def test_steps_override(self):
        config = EngineConfig.from_dict({"steps": [{"control": "option", "action": "choose"}]})

        assert config.build_catalog().steps == (FormStep("option", StepAction.CHOOSE),)

    @pytest.mark.parametrize("data", [
        {"retry": {"bogus": 1}},
        {"cache": {"capacity": 0}},
        {"backoff": {"multiplier": 0.5}},
        {"backoff": {"base_delay_ms": 5000, "max_backoff_ms": 1000}},
        {"arbiter": {"max_concurrent_operations": 0}},
        {"retry": {"retry_budget": 0}},
        {"timeouts": {"action_timeout_seconds": 0}},
        {"steps": [{"action": "click"}]},
        {"steps": [{"control": "x", "action": "explode"}]},
    ])
    def test_invalid_config(self, data):
        with pytest.raises(ConfigurationError):
            EngineConfig.from_dict(data)

    def test_load_config_without_path(self):
        assert load_config(None) == EngineConfig()

    def test_load_config_from_file(self, tmp_path):
        path = tmp_path / "engine.json"
        path.write_text(json.dumps({"backoff": {"base_delay_ms": 1000}}), encoding="utf-8")

        assert load_config(path).backoff.base_delay_ms == 1000

    def test_load_config_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "missing.json")

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
    def test_load_config_bad_content(self, tmp_path, content):
        path = tmp_path / "engine.json"
        path.write_text(content, encoding="utf-8")

        with pytest.raises(ConfigurationError):
            load_config(path)
