# storefront/tracker/config.py
from typing import List

from pydantic import BaseModel, Field, field_validator

from storefront.core.config import settings

DEFAULT_IGNORE_SELECTORS = [
    '[data-tracking-ignore]',
    '.tracking-ignore',
    'script',
    'style',
    'noscript',
]


class TrackingConfig(BaseModel):
    """Tracker settings. Every field can be overridden per tracker instance."""
    # Relative endpoints are resolved against base_url
    base_url: str = Field(default_factory=lambda: settings.SITE_URL)
    endpoint: str = "/api/experience-tracking"

    enable_page_views: bool = True
    enable_clicks: bool = True
    enable_scroll_tracking: bool = True
    enable_form_tracking: bool = True
    enable_performance_tracking: bool = True
    enable_error_tracking: bool = True

    sample_rate: float = Field(1.0, ge=0.0, le=1.0)
    respect_dnt: bool = True

    scroll_depth_thresholds: List[int] = [25, 50, 75, 90]
    scroll_debounce_ms: int = 100
    ignore_selectors: List[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_SELECTORS))

    # --- Queue ---
    batch_size: int = Field(50, gt=0)
    flush_interval: float = Field(10.0, gt=0)  # seconds
    max_retries: int = Field(3, ge=1)
    max_queue_size: int = Field(1000, gt=0)
    retry_base_delay: float = 1.0  # seconds
    retry_max_delay: float = 60.0  # seconds

    debug: bool = False

    @field_validator('scroll_depth_thresholds')
    @classmethod
    def sort_thresholds(cls, value: List[int]) -> List[int]:
        return sorted(set(value))
