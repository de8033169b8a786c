import asyncio
import random

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from storefront.core.config import settings
from storefront.main import app
from storefront.models.analytics import ExperienceTrack
from storefront.models.tracking import JourneyType, TrackingBatch, TrackingEvent, TrackingResponse
from storefront.tracker.config import TrackingConfig
from storefront.tracker.dom import Element, PageContext, Rect
from storefront.tracker.tracker import ExperienceTracker, QueueState
from storefront.tracker.transport import HttpTransport, TransportError


class FakeTransport:
    def __init__(self, failures=0):
        self.failures = failures
        self.batches = []
        self.beacons = []
        self.journeys = []
        self.completions = []

    async def send(self, batch):
        if self.failures:
            self.failures -= 1
            raise TransportError("HTTP 503", status_code=503)
        self.batches.append(batch)
        return TrackingResponse(success=True, processed_events=len(batch.events), batch_id=batch.batch_id)

    def send_beacon(self, batch):
        self.beacons.append(batch)
        return True

    async def send_journey(self, step):
        self.journeys.append(step)
        return True

    async def send_journey_completion(self, completion):
        self.completions.append(completion)
        return True

    @property
    def sent_names(self):
        return [event.event_name for batch in self.batches for event in batch.events]


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class MaxJitter(random.Random):
    def uniform(self, a, b):
        return b


def make_tracker(transport=None, page=None, clock=None, rng=None, **config):
    return ExperienceTracker(
        config=TrackingConfig(**config),
        transport=transport or FakeTransport(),
        page=page or PageContext(
            url="https://shop.example.com/products/mug",
            title="Mug",
            user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36",
            viewport_width=1280,
            viewport_height=1000,
            document_height=2000,
        ),
        clock=clock or FakeClock(),
        rng=rng or random.Random(7),
    )


def custom(name):
    return {"event_type": "engagement", "event_name": name}


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestIdentity:
    def test_ids_have_expected_shape(self):
        tracker = make_tracker()

        assert tracker.session_id.startswith("exp_")
        assert len(tracker.session_id) == len("exp_") + 12
        assert tracker.anonymous_id.startswith("exp_anon_")

    @pytest.mark.asyncio
    async def test_events_carry_identity(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)
        tracker.set_user_id("user-9")

        tracker.track(custom("newsletter_signup"))
        await tracker.flush()

        event = transport.batches[0].events[0]
        assert event.session_id == tracker.session_id
        assert event.anonymous_id == tracker.anonymous_id
        assert event.user_id == "user-9"
        assert event.page_url == "https://shop.example.com/products/mug"
        assert event.device_info.device_type == "desktop"
        assert transport.batches[0].session_info.session_id == tracker.session_id


class TestQueue:
    @pytest.mark.asyncio
    async def test_nothing_is_sent_below_batch_size(self):
        transport = FakeTransport()
        tracker = make_tracker(transport, batch_size=5)

        for i in range(4):
            tracker.track(custom(f"event_{i}"))
        await settle()

        assert transport.batches == []
        assert tracker.state == QueueState.ACCUMULATING
        assert tracker.queue_length == 4

    @pytest.mark.asyncio
    async def test_full_batch_is_delivered(self):
        transport = FakeTransport()
        tracker = make_tracker(transport, batch_size=5)

        for i in range(5):
            tracker.track(custom(f"event_{i}"))
        await settle()

        assert transport.sent_names == [f"event_{i}" for i in range(5)]
        assert tracker.state == QueueState.EMPTY

    @pytest.mark.asyncio
    async def test_failed_batch_keeps_order_ahead_of_newer_events(self):
        transport = FakeTransport(failures=1)
        tracker = make_tracker(transport)

        for name in ("e1", "e2", "e3"):
            tracker.track(custom(name))
        await tracker.flush()
        assert transport.batches == []
        assert tracker.queue_length == 3

        tracker.track(custom("e4"))
        await tracker.flush()

        assert transport.sent_names == ["e1", "e2", "e3", "e4"]
        assert tracker.dropped_events == 0

    @pytest.mark.asyncio
    async def test_events_are_dropped_after_max_retries(self):
        transport = FakeTransport(failures=100)
        tracker = make_tracker(transport, max_retries=3)

        tracker.track(custom("a"))
        tracker.track(custom("b"))
        for _ in range(2):
            await tracker.flush()
        assert tracker.queue_length == 2

        await tracker.flush()

        assert tracker.queue_length == 0
        assert tracker.dropped_events == 2

    @pytest.mark.asyncio
    async def test_timer_flushes_queue(self):
        transport = FakeTransport()
        tracker = make_tracker(transport, flush_interval=0.01)

        tracker.start()
        await asyncio.sleep(0.05)

        assert transport.sent_names == ["page_view"]
        assert tracker.state == QueueState.EMPTY
        await tracker.stop()

    @pytest.mark.asyncio
    async def test_timer_waits_out_backoff_after_failure(self):
        clock = FakeClock()
        transport = FakeTransport(failures=1)
        tracker = make_tracker(
            transport, clock=clock, rng=MaxJitter(7), flush_interval=0.01, retry_base_delay=30.0,
        )
        tracker.track(custom("a"))
        await tracker.flush()

        tracker.start()
        await asyncio.sleep(0.05)
        assert transport.batches == []
        assert tracker.queue_length == 2

        clock.now += 31
        await asyncio.sleep(0.05)
        assert transport.sent_names == ["a", "page_view"]
        await tracker.stop()

    @pytest.mark.asyncio
    async def test_manual_flush_ignores_backoff(self):
        transport = FakeTransport(failures=1)
        tracker = make_tracker(transport, rng=MaxJitter(7), retry_base_delay=30.0)
        tracker.track(custom("a"))
        assert await tracker.flush() is None

        response = await tracker.flush()

        assert response.success is True
        assert response.processed_events == 1
        assert transport.sent_names == ["a"]

    def test_queue_is_bounded(self):
        tracker = make_tracker(max_queue_size=3)

        for i in range(5):
            tracker.track(custom(f"event_{i}"))

        assert tracker.queue_length == 3
        assert tracker.dropped_events == 2

    @pytest.mark.asyncio
    async def test_unload_sends_queue_as_beacon(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)
        tracker.track(custom("a"))
        tracker.track(custom("b"))

        tracker.handle_before_unload()

        assert len(transport.beacons) == 1
        assert [e.event_name for e in transport.beacons[0].events] == ["a", "b"]
        assert tracker.queue_length == 0

    @pytest.mark.asyncio
    async def test_unload_with_empty_queue_sends_nothing(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)

        tracker.handle_before_unload()

        assert transport.beacons == []

    @pytest.mark.asyncio
    async def test_stop_flushes_remaining_events(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)
        tracker.start()

        await tracker.stop()

        assert transport.sent_names == ["page_view"]


class TestGates:
    def test_do_not_track_is_respected(self):
        page = PageContext(url="https://shop.example.com/", do_not_track=True)
        tracker = make_tracker(page=page)

        tracker.track(custom("a"))

        assert tracker.queue_length == 0

    def test_do_not_track_can_be_ignored(self):
        page = PageContext(url="https://shop.example.com/", do_not_track=True)
        tracker = make_tracker(page=page, respect_dnt=False)

        tracker.track(custom("a"))

        assert tracker.queue_length == 1

    def test_zero_sample_rate_tracks_nothing(self):
        tracker = make_tracker(sample_rate=0.0)

        tracker.track(custom("a"))

        assert tracker.queue_length == 0

    def test_events_without_name_are_ignored(self):
        tracker = make_tracker()

        tracker.track({"event_type": "engagement"})
        tracker.track({"eventName": "orphan"})

        assert tracker.queue_length == 0


class TestScroll:
    @pytest.mark.asyncio
    async def test_each_threshold_is_reported_once(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)

        tracker.page.scroll_top = 500
        tracker.process_scroll()
        tracker.process_scroll()
        tracker.page.scroll_top = 1000
        tracker.process_scroll()
        await tracker.flush()

        assert transport.sent_names == ["scroll_25", "scroll_50", "scroll_75", "scroll_90"]
        last = transport.batches[0].events[-1]
        assert last.scroll_depth == 90
        assert last.max_scroll_depth == 100

    def test_unscrollable_page_reports_nothing(self):
        page = PageContext(url="https://shop.example.com/", viewport_height=1000, document_height=800)
        tracker = make_tracker(page=page)

        tracker.process_scroll()

        assert tracker.queue_length == 0

    @pytest.mark.asyncio
    async def test_scroll_signals_are_debounced(self):
        tracker = make_tracker(scroll_debounce_ms=10)
        calls = []
        tracker.process_scroll = lambda: calls.append(1)

        for _ in range(3):
            tracker.handle_scroll()
        await asyncio.sleep(0.05)

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_page_view_resets_thresholds(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)
        tracker.page.scroll_top = 500
        tracker.process_scroll()

        tracker.track_page_view("https://shop.example.com/cart", "Cart")
        tracker.process_scroll()
        await tracker.flush()

        assert transport.sent_names == ["scroll_25", "scroll_50", "page_view", "scroll_25", "scroll_50"]
        page_view = transport.batches[0].events[2]
        assert page_view.previous_url == "https://shop.example.com/products/mug"
        assert page_view.page_url == "https://shop.example.com/cart"


class TestClicks:
    @pytest.mark.asyncio
    async def test_click_captures_element(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)
        button = Element("BUTTON", id="buy-button", text="  Buy now  ", rect=Rect(100, 200, 80, 30))

        tracker.handle_click(button, 120, 215, button=0)
        await tracker.flush()

        event = transport.batches[0].events[0]
        assert event.event_name == "element_click"
        assert event.element_selector == "#buy-button"
        assert event.element_text == "Buy now"
        assert event.button_type == "left"
        assert event.click_coordinates.x == 120
        assert event.element_position.width == 80

    def test_ignored_elements_are_skipped(self):
        tracker = make_tracker()

        tracker.handle_click(Element("div", classes=["tracking-ignore"]), 0, 0)
        tracker.handle_click(Element("a", attributes={"data-tracking-ignore": ""}), 0, 0)
        tracker.handle_click(Element("script"), 0, 0)

        assert tracker.queue_length == 0

    def test_selector_rules(self):
        parent = Element("ul")
        parent.append(Element("li"))
        second = parent.append(Element("li"))

        assert ExperienceTracker.get_element_selector(Element("a", id="home", classes=["nav"])) == "#home"
        assert ExperienceTracker.get_element_selector(Element("a", classes=["nav", "active"])) == ".nav.active"
        assert ExperienceTracker.get_element_selector(second) == "li:nth-child(2)"
        assert ExperienceTracker.get_element_selector(Element("section")) == "section"

    def test_long_text_is_truncated(self):
        text = ExperienceTracker.get_element_text(Element("p", text="x" * 150))

        assert text == "x" * 100 + "..."


class TestForms:
    @pytest.mark.asyncio
    async def test_form_field_interactions(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)
        form = Element("form", id="checkout-form", attributes={"name": "checkout"})
        email = form.append(Element("input", name="email", type="email"))

        tracker.handle_form_interaction("focusin", email)
        tracker.handle_form_interaction("change", email)
        tracker.handle_form_interaction("submit", form)
        await tracker.flush()

        events = transport.batches[0].events
        assert [e.event_name for e in events] == ["form_focus", "form_change", "form_submit"]
        assert events[0].form_name == "checkout"
        assert events[0].form_selector == "#checkout-form"
        assert events[0].field_name == "email"
        assert events[0].field_type == "email"
        assert events[2].field_type == "form"

    def test_fields_outside_forms_are_ignored(self):
        tracker = make_tracker()

        tracker.handle_form_interaction("focusin", Element("input", name="search"))

        assert tracker.queue_length == 0


class TestPageLifecycle:
    @pytest.mark.asyncio
    async def test_hidden_page_reports_exit_and_delivers(self):
        transport = FakeTransport()
        clock = FakeClock()
        tracker = make_tracker(transport, clock=clock)
        tracker.track_page_view()
        tracker.page.scroll_top = 1000
        tracker.process_scroll()
        clock.now += 12.6

        tracker.handle_visibility_change(hidden=True)
        await settle()

        exit_event = transport.batches[0].events[-1]
        assert exit_event.event_name == "page_exit"
        assert exit_event.performance_metrics.time_on_page == 13
        assert exit_event.performance_metrics.scroll_depth == 100

    def test_visible_page_reports_nothing(self):
        tracker = make_tracker()

        tracker.handle_visibility_change(hidden=False)

        assert tracker.queue_length == 0


class TestPerformanceAndErrors:
    @pytest.mark.asyncio
    async def test_web_vitals(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)

        tracker.record_web_vital("LCP", 2100.0)
        tracker.record_web_vital("INP", 80.0)
        tracker.record_web_vital("unknown", 1.0)
        await tracker.flush()

        events = transport.batches[0].events
        assert [e.event_name for e in events] == ["lcp", "inp"]
        assert events[0].performance_metrics.lcp == 2100.0
        assert events[1].performance_metrics.fid == 80.0

    @pytest.mark.asyncio
    async def test_layout_shifts_accumulate_without_recent_input(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)

        tracker.record_layout_shift(0.1)
        tracker.record_layout_shift(0.5, had_recent_input=True)
        tracker.record_layout_shift(0.05)
        await tracker.flush()

        values = [e.performance_metrics.cls for e in transport.batches[0].events]
        assert values == pytest.approx([0.1, 0.1, 0.15])

    @pytest.mark.asyncio
    async def test_errors_and_rejections(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)

        tracker.handle_error("x is undefined", "app.js", 10, 5)
        tracker.handle_unhandled_rejection(ValueError("bad value"))
        tracker.handle_unhandled_rejection()
        await tracker.flush()

        events = transport.batches[0].events
        assert events[0].event_name == "javascript_error"
        assert events[0].error_line == 10
        assert events[1].error_message == "bad value"
        assert "ValueError" in events[1].error_stack
        assert events[2].error_message == "Unhandled Promise Rejection"


class TestJourneys:
    @pytest.mark.asyncio
    async def test_journey_step_and_completion(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)

        assert await tracker.track_journey_step(JourneyType.PURCHASE_FUNNEL, "view_cart", 2)
        assert await tracker.complete_journey_step(JourneyType.PURCHASE_FUNNEL, "view_cart", 19.99)

        assert transport.journeys[0].session_id == tracker.session_id
        assert transport.journeys[0].step_order == 2
        assert transport.completions[0].conversion_value == 19.99


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_click_reaches_the_database(self, async_client, session_factory):
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        transport = HttpTransport("http://test/api/experience-tracking", client=client)
        tracker = make_tracker(transport)

        tracker.handle_click(Element("button", id="buy-button", text="Buy"), 5, 5)
        response = await tracker.flush()
        await client.aclose()

        assert response.success is True
        assert response.processed_events == 1
        assert response.batch_id is not None
        async with session_factory() as session:
            row = (await session.execute(select(ExperienceTrack))).scalar_one()
        assert row.event_type == "click"
        assert row.element_selector == "#buy-button"
        assert row.session_id == tracker.session_id
        assert tracker.queue_length == 0

    @pytest.mark.asyncio
    async def test_rejected_batch_is_requeued(self, async_client):
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        transport = HttpTransport("http://test/api/unknown", client=client)
        tracker = make_tracker(transport)

        tracker.track(custom("a"))
        await tracker.flush()
        await client.aclose()

        assert tracker.queue_length == 1

    @pytest.mark.asyncio
    async def test_default_tracker_delivers_to_site(self, async_client, session_factory, monkeypatch):
        real_client = httpx.AsyncClient
        monkeypatch.setattr(settings, "SITE_URL", "http://test")
        monkeypatch.setattr(httpx, "AsyncClient", lambda **kwargs: real_client(transport=ASGITransport(app=app), **kwargs))
        tracker = ExperienceTracker(page=PageContext(url="http://test/products/mug"))

        tracker.track(custom("newsletter_signup"))
        response = await tracker.flush()
        await tracker.stop()

        assert response.processed_events == 1
        assert tracker.dropped_events == 0
        assert tracker.transport._client.is_closed
        async with session_factory() as session:
            row = (await session.execute(select(ExperienceTrack))).scalar_one()
        assert row.event_name == "newsletter_signup"


def single_event_batch():
    return TrackingBatch(events=[TrackingEvent(event_type="engagement", event_name="a", session_id="s-1")])


class TestHttpTransport:
    @pytest.mark.asyncio
    async def test_relative_endpoint_without_base_url(self):
        transport = HttpTransport("/api/experience-tracking")

        with pytest.raises(TransportError, match="Invalid tracking URL"):
            await transport.send(single_event_batch())
        await transport.close()

    @pytest.mark.asyncio
    async def test_rejection_carries_server_error(self):
        client = AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(500, json={"success": False, "error": "Failed to store events"})
            ),
            base_url="http://test",
        )
        transport = HttpTransport("/api/experience-tracking", client=client)

        with pytest.raises(TransportError) as exc_info:
            await transport.send(single_event_batch())
        await client.aclose()

        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "HTTP 500: Failed to store events"

    @pytest.mark.asyncio
    async def test_injected_transport_is_left_open(self):
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        tracker = make_tracker(HttpTransport("/api/experience-tracking", client=client))

        await tracker.stop()

        assert not client.is_closed
        await client.aclose()


class TestTrackingHelpers:
    @pytest.mark.asyncio
    async def test_product_and_cart_events(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)

        tracker.track_product_view("mug", collection="kitchen")
        tracker.track_product_click("mug")
        tracker.track_add_to_cart("mug", quantity=2, price=12.5)
        tracker.track_add_to_cart("tee")
        tracker.track_remove_from_cart("mug")
        await tracker.flush()

        view, click, added, added_free, removed = transport.batches[0].events
        assert (view.event_type, view.event_name, view.product_id) == ("product", "product_view", "mug")
        assert view.properties == {"collection": "kitchen"}
        assert click.event_name == "product_click"
        assert click.properties is None
        assert added.event_type == "ecommerce"
        assert added.properties == {"quantity": 2, "price": 12.5, "value": 25.0}
        assert added_free.properties == {"quantity": 1}
        assert (removed.event_name, removed.properties) == ("remove_from_cart", {"quantity": 1})

    @pytest.mark.asyncio
    async def test_purchase_counts_items(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)
        items = [
            {"productId": "mug", "quantity": 2, "price": 12.5},
            {"productId": "tee", "quantity": 1, "price": 20.0},
        ]

        tracker.track_purchase("order-7", 45.0, items, coupon="WELCOME")
        await tracker.flush()

        event = transport.batches[0].events[0]
        assert (event.event_name, event.order_id) == ("purchase", "order-7")
        assert event.properties == {"coupon": "WELCOME", "totalValue": 45.0, "items": items, "itemCount": 3}

    @pytest.mark.asyncio
    async def test_search_events(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)

        tracker.track_search("blue mug", result_count=4)
        tracker.track_search_result_click("blue mug", 2, "mug-blue", "product")
        tracker.track_filter_change("color", "blue")
        await tracker.flush()

        search, result_click, filter_change = transport.batches[0].events
        assert (search.event_type, search.search_query, search.properties) == ("search", "blue mug", {"resultCount": 4})
        assert result_click.properties == {"resultPosition": 2, "resultId": "mug-blue", "resultType": "product"}
        assert filter_change.event_name == "search_filter_change"
        assert filter_change.search_query is None
        assert filter_change.properties == {"filterName": "color", "filterValue": "blue"}

    @pytest.mark.asyncio
    async def test_error_events(self):
        transport = FakeTransport()
        tracker = make_tracker(transport)

        tracker.track_error("network", "Offline")
        tracker.track_api_error("/api/cart", 502, "Bad gateway", retry=True)
        tracker.track_validation_error("checkout", "email", "Invalid email")
        await tracker.flush()

        network, api, validation = transport.batches[0].events
        assert (network.event_name, network.error_type) == ("error_network", "network")
        assert api.error_type == "api"
        assert api.error_message == "/api/cart: Bad gateway"
        assert api.properties == {"retry": True, "endpoint": "/api/cart", "status": 502}
        assert (validation.form_name, validation.field_name, validation.error_type) == ("checkout", "email", "validation")

    def test_unknown_error_type_is_dropped(self):
        tracker = make_tracker()

        tracker.track_error("segfault", "boom")

        assert tracker.queue_length == 0

    @pytest.mark.asyncio
    async def test_content_engagement_needs_more_than_five_seconds(self):
        clock = FakeClock()
        transport = FakeTransport()
        tracker = make_tracker(transport, clock=clock)

        tracker.start_content_view("guide-1", "article")
        tracker.start_content_view("guide-1", "article")
        tracker.track_content_interaction("guide-1", "share", "article", {"network": "email"})
        clock.now += 12
        tracker.end_content_view("guide-1", "article")

        tracker.start_content_view("faq")
        clock.now += 3
        tracker.end_content_view("faq")
        await tracker.flush()

        assert transport.sent_names == [
            "content_view", "content_interaction_share", "content_engagement", "content_view",
        ]
        engagement = transport.batches[0].events[2]
        assert (engagement.content_id, engagement.content_type) == ("guide-1", "article")
        assert engagement.properties == {"engagementTime": 12}

    @pytest.mark.asyncio
    async def test_time_checkpoints(self):
        clock = FakeClock()
        transport = FakeTransport()
        tracker = make_tracker(transport, clock=clock)

        tracker.start_timer("checkout", step="shipping")
        clock.now += 4.6
        tracker.track_time_checkpoint("checkout", "address_entered")
        clock.now += 10
        tracker.stop_timer("checkout")
        tracker.stop_timer("checkout")
        await tracker.flush()

        checkpoint, total = transport.batches[0].events
        assert checkpoint.event_name == "time_checkpoint_checkout_address_entered"
        assert checkpoint.properties == {"step": "shipping", "timeSpent": 5, "checkpoint": "address_entered"}
        assert total.event_name == "time_checkout"
        assert total.properties == {"step": "shipping", "timeSpent": 15}
