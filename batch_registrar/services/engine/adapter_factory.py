"""
Factory for target adapters
"""

from typing import List, Literal

from .target_adapter import TargetAdapter

# Type alias for adapter backends
AdapterType = Literal["playwright", "selenium"]


class AdapterFactory:
    """Factory for creating target adapters"""

    @staticmethod
    def create_adapter(adapter_type: AdapterType, base_url: str, **options) -> TargetAdapter:
        """Create a target adapter instance"""
        if adapter_type == "playwright":
            from .playwright_adapter import PlaywrightAdapter
            return PlaywrightAdapter(base_url, **options)
        elif adapter_type == "selenium":
            from .selenium_adapter import SeleniumAdapter
            return SeleniumAdapter(base_url, **options)
        else:
            raise ValueError(f"Unsupported adapter type: {adapter_type}")

    @staticmethod
    def get_available_adapters() -> List[AdapterType]:
        """Get list of adapters whose drivers are installed"""
        available: List[AdapterType] = []

        try:
            from .playwright_adapter import PlaywrightAdapter
            if PlaywrightAdapter("about:blank").is_available():
                available.append("playwright")
        except ImportError:
            pass

        try:
            from .selenium_adapter import SELENIUM_AVAILABLE
            if SELENIUM_AVAILABLE:
                available.append("selenium")
        except ImportError:
            pass

        return available
