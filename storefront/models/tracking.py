# storefront/models/tracking.py
"""
Wire models of the experience tracking pipeline.

The browser side speaks camelCase JSON, so every model accepts and emits camelCase
aliases while Python code keeps snake_case attribute names.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra='ignore', coerce_numbers_to_str=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready camelCase dict without unset optional fields."""
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)


class EventType(str, Enum):
    PAGE_VIEW = "page_view"
    CLICK = "click"
    SCROLL = "scroll"
    FORM_INTERACTION = "form_interaction"
    PRODUCT_VIEW = "product_view"
    ADD_TO_CART = "add_to_cart"
    SEARCH = "search"
    FILTER = "filter"
    SORT = "sort"
    HOVER = "hover"
    VIDEO_INTERACTION = "video_interaction"
    IMAGE_INTERACTION = "image_interaction"
    CHECKOUT_STEP = "checkout_step"
    ERROR = "error"
    PERFORMANCE = "performance"
    ENGAGEMENT = "engagement"
    PRODUCT = "product"
    ECOMMERCE = "ecommerce"
    API = "api"


class JourneyType(str, Enum):
    PRODUCT_DISCOVERY = "product_discovery"
    PURCHASE_FUNNEL = "purchase_funnel"
    ONBOARDING = "onboarding"
    SUPPORT = "support"
    CONTENT_ENGAGEMENT = "content_engagement"
    CUSTOM = "custom"


class ElementPosition(CamelModel):
    x: float
    y: float
    width: float
    height: float
    viewport_x: float
    viewport_y: float
    scroll_top: float
    scroll_left: float


class ClickCoordinates(CamelModel):
    x: float
    y: float


class DeviceInfo(CamelModel):
    user_agent: Optional[str] = None
    viewport_width: int = 0
    viewport_height: int = 0
    screen_width: int = 0
    screen_height: int = 0
    device_type: Literal['mobile', 'tablet', 'desktop', 'unknown'] = 'unknown'
    browser_name: str = 'unknown'
    browser_version: str = 'unknown'
    os_name: str = 'unknown'
    os_version: str = 'unknown'


class PerformanceMetrics(CamelModel):
    page_load_time: Optional[float] = None
    time_on_page: Optional[float] = None
    scroll_depth: Optional[float] = None
    lcp: Optional[float] = None  # Largest Contentful Paint
    fid: Optional[float] = None  # First Input Delay (INP is reported here too)
    cls: Optional[float] = None  # Cumulative Layout Shift
    fcp: Optional[float] = None  # First Contentful Paint
    ttfb: Optional[float] = None  # Time to First Byte


class AttributionData(CamelModel):
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None
    referrer_url: Optional[str] = None


class GeoData(CamelModel):
    ip_address: Optional[str] = None
    country_code: Optional[str] = None
    city: Optional[str] = None
    timezone: Optional[str] = None


class TrackingEvent(CamelModel):
    """A single observed interaction."""
    event_type: EventType
    event_name: str
    session_id: Optional[str] = None
    anonymous_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: Optional[int] = None

    # Page context
    page_url: Optional[str] = None
    page_title: Optional[str] = None
    previous_url: Optional[str] = None
    referrer: Optional[str] = None

    # Element context
    element_selector: Optional[str] = None
    element_text: Optional[str] = None
    element_position: Optional[ElementPosition] = None
    click_coordinates: Optional[ClickCoordinates] = None
    button_type: Optional[Literal['left', 'right', 'middle']] = None

    # Scroll
    scroll_depth: Optional[float] = None
    scroll_top: Optional[float] = None
    scroll_left: Optional[float] = None
    max_scroll_depth: Optional[float] = None

    # Forms
    form_name: Optional[str] = None
    form_selector: Optional[str] = None
    field_name: Optional[str] = None
    field_type: Optional[str] = None
    action: Optional[Literal['focus', 'blur', 'change', 'submit', 'error']] = None

    # Errors
    error_type: Optional[Literal['javascript', 'network', 'validation', '404', '500', 'other', 'api']] = None
    error_message: Optional[str] = None
    error_url: Optional[str] = None
    error_line: Optional[int] = None
    error_column: Optional[int] = None
    error_stack: Optional[str] = None

    # Product / content
    product_id: Optional[str] = None
    content_id: Optional[str] = None
    content_type: Optional[str] = None
    search_query: Optional[str] = None
    order_id: Optional[str] = None
    properties: Optional[Dict[str, Any]] = None

    device_info: Optional[DeviceInfo] = None
    performance_metrics: Optional[PerformanceMetrics] = None
    attribution: Optional[AttributionData] = None
    geo_data: Optional[GeoData] = None

    client_timestamp: Optional[datetime] = None
    server_timestamp: Optional[datetime] = None
    ip_address: Optional[str] = None


class SessionInfo(CamelModel):
    session_id: str
    user_id: Optional[str] = None
    anonymous_id: Optional[str] = None


class TrackingBatch(CamelModel):
    events: List[TrackingEvent] = Field(..., min_length=1)
    session_info: Optional[SessionInfo] = None
    timestamp: Optional[int] = None
    batch_id: Optional[str] = None


class TrackingResponse(CamelModel):
    success: bool
    processed_events: int = 0
    batch_id: Optional[str] = None
    error: Optional[str] = None


class JourneyStep(CamelModel):
    session_id: Optional[str] = None
    journey_type: Optional[JourneyType] = None
    journey_step: Optional[str] = None
    step_order: Optional[int] = None
    user_id: Optional[str] = None
    anonymous_id: Optional[str] = None
    page_url: Optional[str] = None
    action_taken: Optional[str] = None
    time_spent: Optional[float] = None
    completed: bool = False
    dropped_off: bool = False
    conversion_value: Optional[float] = None
    properties: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class JourneyCompletion(CamelModel):
    session_id: Optional[str] = None
    journey_type: Optional[JourneyType] = None
    step: Optional[str] = None
    conversion_value: Optional[float] = None
