# storefront/tracker/enrichment.py
import logging
import random
import string
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlsplit

from storefront.models.tracking import AttributionData, DeviceInfo, SessionInfo, TrackingEvent
from storefront.tracker.dom import PageContext
from storefront.tracker.storage import KeyValueStorage

logger = logging.getLogger(__name__)

SESSION_ID_KEY = "experience_session_id"
ANONYMOUS_ID_KEY = "experience_anonymous_id"
SHORT_ID_ALPHABET = string.ascii_letters + string.digits
SHORT_ID_LENGTH = 12

_UTM_PARAMS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")


def generate_short_id(rng: Optional[random.Random] = None) -> str:
    rng = rng or random
    return "".join(rng.choice(SHORT_ID_ALPHABET) for _ in range(SHORT_ID_LENGTH))


def get_or_create_session_id(storage: KeyValueStorage, rng: Optional[random.Random] = None) -> str:
    """Session id lives in tab-scoped storage, so it ends with the tab."""
    session_id = storage.get_item(SESSION_ID_KEY)
    if not session_id:
        session_id = f"exp_{generate_short_id(rng)}"
        storage.set_item(SESSION_ID_KEY, session_id)
    return session_id


def get_or_create_anonymous_id(storage: KeyValueStorage, rng: Optional[random.Random] = None) -> str:
    """Anonymous id lives in persistent storage and survives across sessions."""
    anonymous_id = storage.get_item(ANONYMOUS_ID_KEY)
    if not anonymous_id:
        anonymous_id = f"exp_anon_{generate_short_id(rng)}"
        storage.set_item(ANONYMOUS_ID_KEY, anonymous_id)
    return anonymous_id


def get_device_info(page: PageContext) -> DeviceInfo:
    user_agent = page.user_agent or ""

    if any(token in user_agent for token in ("Mobile", "Android", "iPhone", "iPad")):
        device_type = "tablet" if "iPad" in user_agent else "mobile"
    else:
        device_type = "desktop"

    # Order matters: Chrome's UA also contains "Safari"
    browser_name = next(
        (name for name in ("Chrome", "Firefox", "Safari", "Edge") if name in user_agent),
        "unknown",
    )
    os_name = next(
        (label for token, label in (("Windows", "Windows"), ("Mac", "macOS"), ("Linux", "Linux"),
                                    ("Android", "Android"), ("iOS", "iOS"))
         if token in user_agent),
        "unknown",
    )

    return DeviceInfo(
        user_agent=user_agent,
        viewport_width=page.viewport_width,
        viewport_height=page.viewport_height,
        screen_width=page.screen_width,
        screen_height=page.screen_height,
        device_type=device_type,
        browser_name=browser_name,
        browser_version="unknown",
        os_name=os_name,
        os_version="unknown",
    )


def get_attribution_data(page: PageContext) -> AttributionData:
    params = parse_qs(urlsplit(page.url).query)
    values: Dict[str, Any] = {
        param: params[param][0]
        for param in _UTM_PARAMS
        if params.get(param) and params[param][0]
    }
    if page.referrer:
        values["referrer_url"] = page.referrer
    return AttributionData(**values)


def enrich_event(
    partial: Dict[str, Any],
    identity: SessionInfo,
    page: PageContext,
    now: Optional[datetime] = None,
) -> TrackingEvent:
    """
    Completes a captured event with identity, page context, device and
    attribution data. Any enrichment signal that fails is left out.
    """
    now = now or datetime.now(timezone.utc)
    event = TrackingEvent.model_validate(partial)

    updates: Dict[str, Any] = {
        "session_id": identity.session_id,
        "anonymous_id": identity.anonymous_id,
        "user_id": identity.user_id,
        "page_url": event.page_url or page.url or None,
        "page_title": event.page_title or page.title or None,
        "client_timestamp": now,
        "timestamp": int(now.timestamp() * 1000),
    }

    try:
        updates["device_info"] = get_device_info(page)
    except Exception as e:
        logger.debug(f"Device info unavailable: {e}")
    try:
        updates["attribution"] = get_attribution_data(page)
    except Exception as e:
        logger.debug(f"Attribution data unavailable: {e}")

    return event.model_copy(update=updates)
