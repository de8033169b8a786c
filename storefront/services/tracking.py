# storefront/services/tracking.py
import logging
from datetime import datetime, timezone
from typing import Mapping, Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.analytics import ExperienceTrack, UserSession, UserJourney
from storefront.models.tracking import (
    DeviceInfo, GeoData, JourneyCompletion, JourneyStep, SessionInfo, TrackingBatch, TrackingEvent,
)

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"

# Checked in this order after x-forwarded-for
_IP_HEADERS = ("x-real-ip", "x-client-ip", "cf-connecting-ip")


class TrackingStorageError(Exception):
    """Raised when tracking rows could not be written."""
    def __init__(self, message="Failed to store events", details=None):
        self.message = message
        self.details = details
        super().__init__(self.message)


class ClientInfo(BaseModel):
    user_agent: str = UNKNOWN
    ip_address: str = UNKNOWN
    country_code: str = UNKNOWN
    city: str = UNKNOWN
    timestamp: datetime


def get_client_ip(headers: Mapping[str, str]) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in _IP_HEADERS:
        value = headers.get(header)
        if value:
            return value
    return UNKNOWN


def get_client_info(headers: Mapping[str, str], now: Optional[datetime] = None) -> ClientInfo:
    """Collects what the request itself tells about the client. Geo fields are placeholders."""
    return ClientInfo(
        user_agent=headers.get("user-agent") or UNKNOWN,
        ip_address=get_client_ip(headers),
        timestamp=now or datetime.now(timezone.utc),
    )


def enrich_event_with_server_data(
    event: TrackingEvent,
    client_info: ClientInfo,
    session_info: Optional[SessionInfo] = None,
) -> TrackingEvent:
    device_info = event.device_info
    if device_info is not None and not device_info.user_agent:
        device_info = device_info.model_copy(update={"user_agent": client_info.user_agent})

    updates = {
        "server_timestamp": client_info.timestamp,
        "ip_address": client_info.ip_address,
        "geo_data": GeoData(
            ip_address=client_info.ip_address,
            country_code=client_info.country_code,
            city=client_info.city,
        ),
        "attribution": None,
        "device_info": device_info,
    }
    if not event.session_id and session_info is not None:
        updates["session_id"] = session_info.session_id
    if not event.anonymous_id and session_info is not None:
        updates["anonymous_id"] = session_info.anonymous_id
    return event.model_copy(update=updates)


def _dump(model: Optional[BaseModel]):
    if model is None:
        return None
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def format_event_for_database(event: TrackingEvent, received_at: datetime) -> ExperienceTrack:
    """Maps an enriched event onto a flat experience_tracks row."""
    return ExperienceTrack(
        session_id=event.session_id,
        user_id=event.user_id,
        anonymous_id=event.anonymous_id,
        event_type=event.event_type.value,
        event_name=event.event_name,
        page_url=event.page_url,
        page_title=event.page_title,
        previous_url=event.previous_url,
        referrer=event.referrer,
        element_selector=event.element_selector,
        element_text=event.element_text,
        element_position=_dump(event.element_position),
        click_coordinates=_dump(event.click_coordinates),
        button_type=event.button_type,
        scroll_depth=event.scroll_depth,
        scroll_top=event.scroll_top,
        scroll_left=event.scroll_left,
        max_scroll_depth=event.max_scroll_depth,
        form_name=event.form_name,
        form_selector=event.form_selector,
        field_name=event.field_name,
        field_type=event.field_type,
        action=event.action,
        error_type=event.error_type,
        error_message=event.error_message,
        error_url=event.error_url,
        error_line=event.error_line,
        error_column=event.error_column,
        error_stack=event.error_stack,
        product_id=event.product_id,
        content_id=event.content_id,
        content_type=event.content_type,
        search_query=event.search_query,
        order_id=event.order_id,
        performance_metrics=_dump(event.performance_metrics),
        device_info=_dump(event.device_info),
        attribution_data=_dump(event.attribution) or {},
        geo_data=_dump(event.geo_data),
        properties=event.properties,
        client_timestamp=event.client_timestamp or received_at,
        server_timestamp=event.server_timestamp or received_at,
        timestamp=event.timestamp or int(received_at.timestamp() * 1000),
        ip_address=event.ip_address,
    )


class TrackingIngestionService:
    """
    Stores tracking batches. Events are the primary record; the session row is
    bookkeeping written in a separate commit, so a failure between the two leaves
    the events stored and the session stale.
    """
    def __init__(self, db: AsyncSession):
        self.db = db

    async def ingest_batch(self, batch: TrackingBatch, client_info: ClientInfo) -> int:
        """Inserts one row per event and upserts the session. Returns the number of rows written."""
        events = [
            enrich_event_with_server_data(event, client_info, batch.session_info)
            for event in batch.events
        ]
        missing_session = [i for i, event in enumerate(events) if not event.session_id]
        if missing_session:
            raise TrackingStorageError(details=f"Events without a session id at positions {missing_session}")

        rows = [format_event_for_database(event, client_info.timestamp) for event in events]
        try:
            self.db.add_all(rows)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to insert {len(rows)} tracking events for batch {batch.batch_id}: {e}")
            raise TrackingStorageError(details=str(e)) from e

        logger.debug(f"Stored {len(rows)} events for batch {batch.batch_id}")

        if batch.session_info:
            await self.update_user_session(batch.session_info, client_info)

        return len(rows)

    async def update_user_session(self, session_info: SessionInfo, client_info: ClientInfo) -> None:
        """Creates or refreshes the session row. Never raises."""
        now = client_info.timestamp
        try:
            result = await self.db.execute(
                select(UserSession).where(UserSession.session_id == session_info.session_id)
            )
            existing = result.scalar_one_or_none()

            if existing:
                existing.user_id = session_info.user_id or existing.user_id
                existing.last_activity_at = now
                existing.updated_at = now
            else:
                placeholder_device = DeviceInfo(user_agent=client_info.user_agent)
                self.db.add(UserSession(
                    session_id=session_info.session_id,
                    user_id=session_info.user_id,
                    anonymous_id=session_info.anonymous_id,
                    started_at=now,
                    last_activity_at=now,
                    device_info=_dump(placeholder_device),
                    geo_data={"countryCode": client_info.country_code, "city": client_info.city},
                    ip_address=client_info.ip_address,
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                ))
            await self.db.commit()
        except Exception as e:
            # Session bookkeeping must not fail the request
            logger.error(f"Failed to update user session {session_info.session_id}: {e}", exc_info=True)
            try:
                await self.db.rollback()
            except SQLAlchemyError as rollback_error:
                logger.error(f"Rollback after session update failure also failed: {rollback_error}")

    async def record_journey_step(self, step: JourneyStep) -> UserJourney:
        now = datetime.now(timezone.utc)
        row = UserJourney(
            user_id=step.user_id,
            anonymous_id=step.anonymous_id,
            session_id=step.session_id,
            journey_type=step.journey_type.value,
            journey_step=step.journey_step,
            step_order=step.step_order,
            page_url=step.page_url,
            completed=step.completed,
            dropped_off=step.dropped_off,
            conversion_value=step.conversion_value,
            properties=step.properties,
            created_at=step.created_at or now,
            updated_at=now,
        )
        try:
            self.db.add(row)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to insert journey step {step.journey_step} for session {step.session_id}: {e}")
            raise TrackingStorageError("Failed to store journey step", details=str(e)) from e
        return row

    async def complete_journey_step(self, completion: JourneyCompletion) -> int:
        """Marks matching journey rows completed. Returns how many rows matched."""
        now = datetime.now(timezone.utc)
        try:
            result = await self.db.execute(
                update(UserJourney)
                .where(
                    UserJourney.session_id == completion.session_id,
                    UserJourney.journey_type == completion.journey_type.value,
                    UserJourney.journey_step == completion.step,
                )
                .values(
                    completed=True,
                    conversion_value=completion.conversion_value,
                    completed_at=now,
                    updated_at=now,
                )
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to complete journey step {completion.step} for session {completion.session_id}: {e}")
            raise TrackingStorageError("Failed to update journey step", details=str(e)) from e
        return result.rowcount
