# storefront/tracker/tracker.py
"""
Experience tracker: captures interaction signals, enriches them into tracking
events and ships them to the ingestion endpoint in batches.

Delivery is at-least-once at best. A batch whose acknowledgement is lost is
sent again and stored twice; a batch handed to the beacon path may be lost.
"""
import asyncio
import functools
import logging
import math
import random
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from storefront.models.tracking import (
    EventType, JourneyCompletion, JourneyStep, JourneyType, SessionInfo, TrackingBatch, TrackingEvent,
    TrackingResponse,
)
from storefront.tracker.config import TrackingConfig
from storefront.tracker.dom import Element, PageContext
from storefront.tracker.enrichment import (
    enrich_event, generate_short_id, get_or_create_anonymous_id, get_or_create_session_id,
)
from storefront.tracker.storage import KeyValueStorage, MemoryStorage
from storefront.tracker.transport import HttpTransport, Transport, TransportError

logger = logging.getLogger(__name__)

TEXT_LIMIT = 100

# Shorter content visits are not reported as engagement
ENGAGEMENT_MIN_SECONDS = 5

FORM_ACTIONS = {
    "focusin": "focus",
    "change": "change",
    "submit": "submit",
}

# Reported vital -> PerformanceMetrics field
WEB_VITALS = {
    "lcp": "lcp",
    "fid": "fid",
    "inp": "fid",
    "cls": "cls",
    "fcp": "fcp",
    "ttfb": "ttfb",
}


class QueueState(str, Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"


@dataclass
class QueuedEvent:
    event: TrackingEvent
    attempts: int = 0


def _capture(handler):
    """Capture handlers log their failures instead of raising into the host."""
    @functools.wraps(handler)
    def wrapper(self, *args, **kwargs):
        try:
            return handler(self, *args, **kwargs)
        except Exception as e:
            logger.warning(f"Tracking handler {handler.__name__} failed: {e}", exc_info=self.config.debug)
            return None
    return wrapper


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


class ExperienceTracker:
    def __init__(
        self,
        config: Optional[TrackingConfig] = None,
        transport: Optional[Transport] = None,
        page: Optional[PageContext] = None,
        session_storage: Optional[KeyValueStorage] = None,
        local_storage: Optional[KeyValueStorage] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or TrackingConfig()
        self._owns_transport = transport is None
        self.transport = transport or HttpTransport(self.config.endpoint, base_url=self.config.base_url)
        self.page = page or PageContext()
        self.clock = clock
        self.rng = rng or random.Random()

        self.session_id = get_or_create_session_id(session_storage or MemoryStorage(), self.rng)
        self.anonymous_id = get_or_create_anonymous_id(local_storage or MemoryStorage(), self.rng)
        self.user_id: Optional[str] = None

        self._queue: List[QueuedEvent] = []
        self._in_flight = 0
        self.dropped_events = 0

        self._consecutive_failures = 0
        self._retry_not_before = 0.0

        self._current_url = self.page.url
        self._page_start = self.clock()
        self._max_scroll_depth = 0
        self._scroll_depths_sent: Set[int] = set()
        self._cls_value = 0.0

        self._scroll_handle: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._delivery_tasks: Set[asyncio.Task] = set()

        self._timers: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._content_views: Dict[str, float] = {}

    # --- Public API ---

    @property
    def state(self) -> QueueState:
        if self._in_flight:
            return QueueState.FLUSHING
        if self._queue:
            return QueueState.ACCUMULATING
        return QueueState.EMPTY

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def identity(self) -> SessionInfo:
        return SessionInfo(session_id=self.session_id, user_id=self.user_id, anonymous_id=self.anonymous_id)

    def set_user_id(self, user_id: Optional[str]):
        self.user_id = user_id

    def start(self):
        """Starts the periodic flush and records the landing page view. Needs a running event loop."""
        if self._flush_task is not None:
            return
        self._flush_task = asyncio.get_running_loop().create_task(self._periodic_flush())
        if self.config.enable_page_views:
            self.track_page_view()

    async def stop(self):
        """Stops timers and delivers whatever is still queued."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        if self._scroll_handle is not None:
            self._scroll_handle.cancel()
            self._scroll_handle = None
        await self.flush()
        if self._delivery_tasks:
            await asyncio.gather(*self._delivery_tasks, return_exceptions=True)
        if self._owns_transport:
            await self.transport.close()

    @_capture
    def track(self, partial: Dict[str, Any]):
        """Queues a custom event. Events without an event type and name are ignored."""
        if not self._should_track():
            return
        event_type = partial.get("event_type") or partial.get("eventType")
        event_name = partial.get("event_name") or partial.get("eventName")
        if not event_type or not event_name:
            return

        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        try:
            event = enrich_event(partial, self.identity, self.page, now)
        except ValidationError as e:
            logger.debug(f"Dropping malformed event {event_name}: {e.errors()}")
            return

        self._enqueue(event)
        if self.config.debug:
            logger.debug(f"Tracked event {event.event_name} ({event.event_type.value})")

    @_capture
    def track_page_view(self, url: Optional[str] = None, title: Optional[str] = None):
        if not self.config.enable_page_views:
            return
        page_url = url or self.page.url
        page_title = title or self.page.title
        previous_url = self._current_url if self._current_url and self._current_url != page_url else None

        self._current_url = page_url
        self._page_start = self.clock()
        self._max_scroll_depth = 0
        self._scroll_depths_sent.clear()

        self.track({
            "event_type": EventType.PAGE_VIEW,
            "event_name": "page_view",
            "page_url": page_url,
            "page_title": page_title,
            "previous_url": previous_url,
            "referrer": self.page.referrer or None,
        })

    async def track_journey_step(
        self,
        journey_type: JourneyType,
        step: str,
        step_order: int,
        properties: Optional[Dict[str, Any]] = None,
    ) -> bool:
        journey = JourneyStep(
            session_id=self.session_id,
            user_id=self.user_id,
            anonymous_id=self.anonymous_id,
            journey_type=journey_type,
            journey_step=step,
            step_order=step_order,
            page_url=self.page.url or None,
            properties=properties,
            created_at=datetime.fromtimestamp(self.clock(), tz=timezone.utc),
        )
        return await self.transport.send_journey(journey)

    async def complete_journey_step(
        self,
        journey_type: JourneyType,
        step: str,
        conversion_value: Optional[float] = None,
    ) -> bool:
        completion = JourneyCompletion(
            session_id=self.session_id,
            journey_type=journey_type,
            step=step,
            conversion_value=conversion_value,
        )
        return await self.transport.send_journey_completion(completion)

    # --- Commerce helpers ---

    @_capture
    def track_product_view(self, product_id: str, **product_data):
        self.track({
            "event_type": EventType.PRODUCT,
            "event_name": "product_view",
            "product_id": product_id,
            "properties": product_data or None,
        })

    @_capture
    def track_product_click(self, product_id: str, **product_data):
        self.track({
            "event_type": EventType.PRODUCT,
            "event_name": "product_click",
            "product_id": product_id,
            "properties": product_data or None,
        })

    @_capture
    def track_add_to_cart(self, product_id: str, quantity: int = 1, price: Optional[float] = None, **product_data):
        self.track({
            "event_type": EventType.ECOMMERCE,
            "event_name": "add_to_cart",
            "product_id": product_id,
            "properties": _compact({
                **product_data,
                "quantity": quantity,
                "price": price,
                "value": price * quantity if price else None,
            }),
        })

    @_capture
    def track_remove_from_cart(self, product_id: str, quantity: int = 1, **product_data):
        self.track({
            "event_type": EventType.ECOMMERCE,
            "event_name": "remove_from_cart",
            "product_id": product_id,
            "properties": {**product_data, "quantity": quantity},
        })

    @_capture
    def track_purchase(self, order_id: str, total_value: float, items: List[Dict[str, Any]], **properties):
        """`items` holds productId/quantity/price dicts, as the storefront sends them."""
        self.track({
            "event_type": EventType.ECOMMERCE,
            "event_name": "purchase",
            "order_id": order_id,
            "properties": {
                **properties,
                "totalValue": total_value,
                "items": items,
                "itemCount": sum(item.get("quantity", 0) for item in items),
            },
        })

    # --- Search helpers ---

    @_capture
    def track_search(self, query: str, result_count: Optional[int] = None, filters: Optional[Dict[str, Any]] = None):
        self.track({
            "event_type": EventType.SEARCH,
            "event_name": "search_query",
            "search_query": query,
            "properties": _compact({"resultCount": result_count, "filters": filters}),
        })

    @_capture
    def track_search_result_click(
        self,
        query: str,
        result_position: int,
        result_id: str,
        result_type: Optional[str] = None,
    ):
        self.track({
            "event_type": EventType.SEARCH,
            "event_name": "search_result_click",
            "search_query": query,
            "properties": _compact({
                "resultPosition": result_position,
                "resultId": result_id,
                "resultType": result_type,
            }),
        })

    @_capture
    def track_filter_change(self, filter_name: str, filter_value: str, result_count: Optional[int] = None):
        self.track({
            "event_type": EventType.SEARCH,
            "event_name": "search_filter_change",
            "properties": _compact({
                "filterName": filter_name,
                "filterValue": filter_value,
                "resultCount": result_count,
            }),
        })

    # --- Error helpers ---

    @_capture
    def track_error(
        self,
        error_type: str,
        error_message: str,
        error_stack: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
    ):
        self.track({
            "event_type": EventType.ERROR,
            "event_name": f"error_{error_type}",
            "error_type": error_type,
            "error_message": error_message,
            "error_stack": error_stack,
            "properties": properties,
        })

    @_capture
    def track_api_error(self, endpoint: str, status: int, error_message: str, **properties):
        self.track({
            "event_type": EventType.ERROR,
            "event_name": "api_error",
            "error_type": "api",
            "error_message": f"{endpoint}: {error_message}",
            "properties": {**properties, "endpoint": endpoint, "status": status},
        })

    @_capture
    def track_validation_error(self, form_name: str, field_name: str, error_message: str):
        self.track({
            "event_type": EventType.ERROR,
            "event_name": "validation_error",
            "error_type": "validation",
            "error_message": error_message,
            "form_name": form_name,
            "field_name": field_name,
        })

    # --- Engagement helpers ---

    @_capture
    def start_content_view(self, content_id: str, content_type: str = "page"):
        """Reports a content view once and starts its engagement clock."""
        if content_id in self._content_views:
            return
        self._content_views[content_id] = self.clock()
        self.track({
            "event_type": EventType.ENGAGEMENT,
            "event_name": "content_view",
            "content_id": content_id,
            "content_type": content_type,
        })

    @_capture
    def end_content_view(self, content_id: str, content_type: str = "page"):
        started = self._content_views.pop(content_id, None)
        if started is None:
            return
        engagement_time = _round_half_up(self.clock() - started)
        if engagement_time <= ENGAGEMENT_MIN_SECONDS:
            return
        self.track({
            "event_type": EventType.ENGAGEMENT,
            "event_name": "content_engagement",
            "content_id": content_id,
            "content_type": content_type,
            "properties": {"engagementTime": engagement_time},
        })

    @_capture
    def track_content_interaction(
        self,
        content_id: str,
        interaction_type: str,
        content_type: str = "page",
        properties: Optional[Dict[str, Any]] = None,
    ):
        self.track({
            "event_type": EventType.ENGAGEMENT,
            "event_name": f"content_interaction_{interaction_type}",
            "content_id": content_id,
            "content_type": content_type,
            "properties": properties,
        })

    @_capture
    def start_timer(self, name: str, **properties):
        self._timers[name] = (self.clock(), properties)

    @_capture
    def track_time_checkpoint(self, name: str, checkpoint: str):
        if name not in self._timers:
            return
        started, properties = self._timers[name]
        self.track({
            "event_type": EventType.ENGAGEMENT,
            "event_name": f"time_checkpoint_{name}_{checkpoint}",
            "properties": {
                **properties,
                "timeSpent": _round_half_up(self.clock() - started),
                "checkpoint": checkpoint,
            },
        })

    @_capture
    def stop_timer(self, name: str):
        if name not in self._timers:
            return
        started, properties = self._timers.pop(name)
        self.track({
            "event_type": EventType.ENGAGEMENT,
            "event_name": f"time_{name}",
            "properties": {**properties, "timeSpent": _round_half_up(self.clock() - started)},
        })

    # --- Browser signals ---

    @_capture
    def handle_click(self, target: Optional[Element], client_x: float, client_y: float, button: int = 0):
        if not self.config.enable_clicks or target is None or self._should_ignore(target):
            return

        rect = target.rect
        self.track({
            "event_type": EventType.CLICK,
            "event_name": "element_click",
            "element_selector": self.get_element_selector(target),
            "element_text": self.get_element_text(target),
            "element_position": {
                "x": rect.left,
                "y": rect.top,
                "width": rect.width,
                "height": rect.height,
                "viewport_x": rect.left + self.page.scroll_left,
                "viewport_y": rect.top + self.page.scroll_top,
                "scroll_top": self.page.scroll_top,
                "scroll_left": self.page.scroll_left,
            },
            "click_coordinates": {"x": client_x, "y": client_y},
            "button_type": {0: "left", 1: "middle"}.get(button, "right"),
        })

    @_capture
    def handle_scroll(self):
        """Debounces scroll signals; the last one within the window is processed."""
        if not self.config.enable_scroll_tracking:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.process_scroll()
            return
        if self._scroll_handle is not None:
            self._scroll_handle.cancel()
        self._scroll_handle = loop.call_later(self.config.scroll_debounce_ms / 1000, self.process_scroll)

    @_capture
    def process_scroll(self):
        self._scroll_handle = None
        scroll_top = self.page.scroll_top
        scrollable = self.page.document_height - self.page.viewport_height
        if scrollable <= 0:
            return

        scroll_depth = _round_half_up(scroll_top / scrollable * 100)
        self._max_scroll_depth = max(self._max_scroll_depth, scroll_depth)

        for threshold in self.config.scroll_depth_thresholds:
            if scroll_depth >= threshold and threshold not in self._scroll_depths_sent:
                self._scroll_depths_sent.add(threshold)
                self.track({
                    "event_type": EventType.SCROLL,
                    "event_name": f"scroll_{threshold}",
                    "scroll_depth": threshold,
                    "scroll_top": scroll_top,
                    "scroll_left": self.page.scroll_left,
                    "max_scroll_depth": self._max_scroll_depth,
                })

    @_capture
    def handle_form_interaction(self, kind: str, target: Optional[Element]):
        if not self.config.enable_form_tracking or target is None or self._should_ignore(target):
            return
        action = FORM_ACTIONS.get(kind)
        form = target.closest_form()
        if action is None or form is None:
            return

        self.track({
            "event_type": EventType.FORM_INTERACTION,
            "event_name": f"form_{action}",
            "form_selector": self.get_element_selector(form),
            "form_name": form.attributes.get("name") or form.name or form.id or "unnamed",
            "field_name": target.name or target.id or "unnamed",
            "field_type": target.type or target.tag,
            "action": action,
        })

    @_capture
    def handle_visibility_change(self, hidden: bool):
        if not hidden:
            return
        time_on_page = _round_half_up(self.clock() - self._page_start)
        self.track({
            "event_type": EventType.PAGE_VIEW,
            "event_name": "page_exit",
            "performance_metrics": {
                "time_on_page": time_on_page,
                "scroll_depth": self._max_scroll_depth,
            },
        })
        self._schedule_delivery()

    @_capture
    def handle_before_unload(self):
        """Last chance before the page goes away: everything queued leaves on the beacon path."""
        items = self._drain_queue()
        if items:
            self.transport.send_beacon(self._build_batch(items))

    @_capture
    def record_web_vital(self, name: str, value: float):
        if not self.config.enable_performance_tracking:
            return
        metric = WEB_VITALS.get(name.lower())
        if metric is None:
            logger.debug(f"Ignoring unknown web vital {name}")
            return
        self.track({
            "event_type": EventType.PERFORMANCE,
            "event_name": name.lower(),
            "performance_metrics": {metric: value},
        })

    @_capture
    def record_layout_shift(self, value: float, had_recent_input: bool = False):
        """Layout shifts right after user input do not count towards CLS."""
        if not self.config.enable_performance_tracking:
            return
        if not had_recent_input and value:
            self._cls_value += value
        self.record_web_vital("cls", self._cls_value)

    @_capture
    def handle_error(
        self,
        message: str,
        filename: Optional[str] = None,
        lineno: Optional[int] = None,
        colno: Optional[int] = None,
        stack: Optional[str] = None,
    ):
        if not self.config.enable_error_tracking:
            return
        self.track({
            "event_type": EventType.ERROR,
            "event_name": "javascript_error",
            "error_type": "javascript",
            "error_message": message,
            "error_url": filename,
            "error_line": lineno,
            "error_column": colno,
            "error_stack": stack,
        })

    @_capture
    def handle_unhandled_rejection(self, reason: Any = None):
        if not self.config.enable_error_tracking:
            return
        message = "Unhandled Promise Rejection"
        stack = None
        if isinstance(reason, BaseException):
            message = str(reason) or message
            stack = "".join(traceback.format_exception(type(reason), reason, reason.__traceback__))
        elif isinstance(reason, str) and reason:
            message = reason
        self.track({
            "event_type": EventType.ERROR,
            "event_name": "unhandled_promise_rejection",
            "error_type": "javascript",
            "error_message": message,
            "error_stack": stack,
        })

    # --- Element helpers ---

    @staticmethod
    def get_element_selector(element: Element) -> str:
        if element.id:
            return f"#{element.id}"
        classes = [c for c in element.classes if c]
        if classes:
            return "." + ".".join(classes)
        index = element.sibling_index
        if index is not None:
            return f"{element.tag}:nth-child({index})"
        return element.tag

    @staticmethod
    def get_element_text(element: Element) -> str:
        text = (element.text or "").strip()
        return text[:TEXT_LIMIT] + "..." if len(text) > TEXT_LIMIT else text

    # --- Queue ---

    async def flush(self) -> Optional[TrackingResponse]:
        """
        Sends everything queued now, ignoring any retry backoff. Returns the
        server acknowledgement, or None when nothing was sent or delivery failed.
        """
        return await self._send(self._drain_queue())

    def _drain_queue(self) -> List[QueuedEvent]:
        # Swap before any await so concurrent triggers never share events
        items, self._queue = self._queue, []
        return items

    def _build_batch(self, items: List[QueuedEvent]) -> TrackingBatch:
        return TrackingBatch(
            events=[item.event for item in items],
            session_info=self.identity,
            timestamp=int(self.clock() * 1000),
            batch_id=generate_short_id(self.rng),
        )

    def _enqueue(self, event: TrackingEvent):
        self._queue.append(QueuedEvent(event))
        self._enforce_queue_limit()
        if len(self._queue) >= self.config.batch_size:
            self._schedule_delivery()

    def _enforce_queue_limit(self):
        overflow = len(self._queue) - self.config.max_queue_size
        if overflow > 0:
            del self._queue[:overflow]
            self.dropped_events += overflow
            logger.warning(f"Tracking queue full; dropped {overflow} oldest events")

    def _schedule_delivery(self):
        """Drains the queue now and delivers it in the background."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; events stay queued until the next flush")
            return
        items = self._drain_queue()
        if not items:
            return
        task = loop.create_task(self._send(items))
        self._delivery_tasks.add(task)
        task.add_done_callback(self._delivery_tasks.discard)

    async def _send(self, items: List[QueuedEvent]) -> Optional[TrackingResponse]:
        if not items:
            return None
        batch = self._build_batch(items)
        self._in_flight += 1
        try:
            response = await self.transport.send(batch)
        except TransportError as e:
            logger.warning(f"Failed to send tracking batch {batch.batch_id} ({len(items)} events): {e.message}")
            self._requeue(items)
            self._register_failure()
            return None
        finally:
            self._in_flight -= 1

        self._consecutive_failures = 0
        self._retry_not_before = 0.0
        if self.config.debug:
            logger.debug(f"Batch {batch.batch_id} stored {response.processed_events} events")
        return response

    def _requeue(self, items: List[QueuedEvent]):
        """Puts a failed batch back at the head of the queue, dropping events out of retries."""
        retry: List[QueuedEvent] = []
        for item in items:
            item.attempts += 1
            if item.attempts >= self.config.max_retries:
                self.dropped_events += 1
            else:
                retry.append(item)
        expired = len(items) - len(retry)
        if expired:
            logger.warning(f"Dropped {expired} tracking events after {self.config.max_retries} failed attempts")
        self._queue = retry + self._queue
        self._enforce_queue_limit()

    def _register_failure(self):
        self._consecutive_failures += 1
        ceiling = min(
            self.config.retry_max_delay,
            self.config.retry_base_delay * (2 ** (self._consecutive_failures - 1)),
        )
        # Full jitter
        self._retry_not_before = self.clock() + self.rng.uniform(0, ceiling)

    async def _periodic_flush(self):
        while True:
            await asyncio.sleep(self.config.flush_interval)
            if self.clock() < self._retry_not_before:
                continue
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Periodic tracking flush failed: {e}")

    # --- Gates ---

    def _should_track(self) -> bool:
        if self.config.respect_dnt and self.page.do_not_track:
            return False
        if self.rng.random() > self.config.sample_rate:
            return False
        return True

    def _should_ignore(self, element: Element) -> bool:
        return any(element.matches(selector) for selector in self.config.ignore_selectors)
