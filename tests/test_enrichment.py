import random
from datetime import datetime, timezone

import pytest

from storefront.models.tracking import SessionInfo
from storefront.services.tracking import get_client_ip, get_client_info, enrich_event_with_server_data
from storefront.tracker.dom import PageContext
from storefront.tracker.enrichment import (
    ANONYMOUS_ID_KEY, SESSION_ID_KEY, enrich_event, get_attribution_data, get_device_info,
    get_or_create_anonymous_id, get_or_create_session_id,
)
from storefront.tracker.storage import MemoryStorage

IPAD = "Mozilla/5.0 (iPad; CPU OS 13_2 like Mac OS X) AppleWebKit/605.1.15 Version/13.0 Mobile/15E148 Safari/604.1"
ANDROID = "Mozilla/5.0 (Linux; Android 10; K) AppleWebKit/537.36 Chrome/120.0 Mobile Safari/537.36"
FIREFOX_WINDOWS = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0"


class TestIdentifiers:
    def test_session_id_is_created_once_per_storage(self):
        storage = MemoryStorage()

        first = get_or_create_session_id(storage, random.Random(1))
        second = get_or_create_session_id(storage, random.Random(2))

        assert first == second
        assert storage.get_item(SESSION_ID_KEY) == first
        assert first.startswith("exp_") and first[4:].isalnum()

    def test_anonymous_id_survives_new_sessions(self):
        local = MemoryStorage()
        anonymous_id = get_or_create_anonymous_id(local)

        assert get_or_create_anonymous_id(local) == anonymous_id
        assert local.get_item(ANONYMOUS_ID_KEY) == anonymous_id
        assert get_or_create_session_id(MemoryStorage()) != get_or_create_session_id(MemoryStorage())


class TestDeviceInfo:
    @pytest.mark.parametrize("user_agent, device_type, browser, os_name", [
        (IPAD, "tablet", "Safari", "macOS"),
        (ANDROID, "mobile", "Chrome", "Linux"),
        (FIREFOX_WINDOWS, "desktop", "Firefox", "Windows"),
        ("", "desktop", "unknown", "unknown"),
    ])
    def test_classification(self, user_agent, device_type, browser, os_name):
        info = get_device_info(PageContext(user_agent=user_agent, viewport_width=390, screen_width=1170))

        assert info.device_type == device_type
        assert info.browser_name == browser
        assert info.os_name == os_name
        assert info.viewport_width == 390
        assert info.screen_width == 1170


class TestAttribution:
    def test_utm_parameters_and_referrer(self):
        page = PageContext(
            url="https://shop.example.com/?utm_source=news&utm_medium=&utm_campaign=spring",
            referrer="https://mail.example.com/",
        )

        attribution = get_attribution_data(page)

        assert attribution.utm_source == "news"
        assert attribution.utm_medium is None
        assert attribution.utm_campaign == "spring"
        assert attribution.referrer_url == "https://mail.example.com/"

    def test_no_campaign(self):
        assert get_attribution_data(PageContext(url="https://shop.example.com/")).to_wire() == {}


class TestEnrichEvent:
    def test_identity_overrides_partial(self):
        identity = SessionInfo(session_id="exp_s", anonymous_id="exp_anon_a", user_id="u1")
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

        event = enrich_event(
            {"event_type": "search", "event_name": "search", "session_id": "other", "search_query": "mug"},
            identity,
            PageContext(url="https://shop.example.com/search", title="Search"),
            now,
        )

        assert event.session_id == "exp_s"
        assert event.user_id == "u1"
        assert event.page_title == "Search"
        assert event.client_timestamp == now
        assert event.timestamp == int(now.timestamp() * 1000)
        assert event.search_query == "mug"


class TestServerEnrichment:
    def test_client_ip_prefers_forwarded_for(self):
        assert get_client_ip({"x-forwarded-for": "198.51.100.1, 10.0.0.1", "x-real-ip": "10.0.0.2"}) == "198.51.100.1"
        assert get_client_ip({"x-real-ip": "10.0.0.2"}) == "10.0.0.2"
        assert get_client_ip({}) == "Unknown"

    def test_server_fields_are_filled(self):
        client = get_client_info({"user-agent": "curl/8", "x-client-ip": "192.0.2.5"})
        event = enrich_event(
            {"event_type": "click", "event_name": "element_click"},
            SessionInfo(session_id="exp_s"),
            PageContext(url="https://shop.example.com/"),
        )
        event = event.model_copy(update={"session_id": None, "device_info": event.device_info.model_copy(update={"user_agent": ""})})

        enriched = enrich_event_with_server_data(event, client, SessionInfo(session_id="exp_batch"))

        assert enriched.session_id == "exp_batch"
        assert enriched.ip_address == "192.0.2.5"
        assert enriched.server_timestamp == client.timestamp
        assert enriched.device_info.user_agent == "curl/8"
        assert enriched.geo_data.country_code == "Unknown"
        assert enriched.attribution is None
