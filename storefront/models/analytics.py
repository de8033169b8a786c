# storefront/models/analytics.py
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, BigInteger, String, Text, Float, Boolean, DateTime, JSON, Index
from sqlalchemy.sql import func

from storefront.core.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExperienceTrack(Base):
    """One stored tracking event. Rows are written once and never mutated."""
    __tablename__ = "experience_tracks"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    anonymous_id = Column(String(64), nullable=True, index=True)
    event_type = Column(String(32), nullable=False, index=True)
    event_name = Column(String(128), nullable=False)
    page_url = Column(Text, nullable=True)
    page_title = Column(Text, nullable=True)
    previous_url = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)

    # Element tracking
    element_selector = Column(Text, nullable=True)
    element_text = Column(Text, nullable=True)
    element_position = Column(JSON, nullable=True)

    # Interaction data
    click_coordinates = Column(JSON, nullable=True)
    button_type = Column(String(16), nullable=True)
    scroll_depth = Column(Float, nullable=True)
    scroll_top = Column(Float, nullable=True)
    scroll_left = Column(Float, nullable=True)
    max_scroll_depth = Column(Float, nullable=True)

    # Form data
    form_name = Column(String(255), nullable=True)
    form_selector = Column(Text, nullable=True)
    field_name = Column(String(255), nullable=True)
    field_type = Column(String(64), nullable=True)
    action = Column(String(16), nullable=True)

    # Error data
    error_type = Column(String(32), nullable=True)
    error_message = Column(Text, nullable=True)
    error_url = Column(Text, nullable=True)
    error_line = Column(Integer, nullable=True)
    error_column = Column(Integer, nullable=True)
    error_stack = Column(Text, nullable=True)

    # Product/content data
    product_id = Column(String(128), nullable=True, index=True)
    content_id = Column(String(128), nullable=True)
    content_type = Column(String(64), nullable=True)
    search_query = Column(Text, nullable=True)
    order_id = Column(String(128), nullable=True)

    performance_metrics = Column(JSON, nullable=True)
    device_info = Column(JSON, nullable=True)
    attribution_data = Column(JSON, nullable=True)
    geo_data = Column(JSON, nullable=True)
    properties = Column(JSON, nullable=True)

    client_timestamp = Column(DateTime(timezone=True), nullable=True)
    server_timestamp = Column(DateTime(timezone=True), nullable=True)
    timestamp = Column(BigInteger, nullable=True)  # ms epoch from the client

    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class UserSession(Base):
    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(64), nullable=False, unique=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    anonymous_id = Column(String(64), nullable=True, index=True)
    started_at = Column(DateTime(timezone=True), default=utcnow)
    last_activity_at = Column(DateTime(timezone=True), default=utcnow)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    device_info = Column(JSON, nullable=True)
    geo_data = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)


class UserJourney(Base):
    __tablename__ = "user_journeys"
    __table_args__ = (
        Index("ix_user_journeys_step", "session_id", "journey_type", "journey_step"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=True)
    anonymous_id = Column(String(64), nullable=True)
    journey_type = Column(String(32), nullable=False)
    journey_step = Column(String(128), nullable=False)
    step_order = Column(Integer, nullable=True)
    page_url = Column(Text, nullable=True)
    completed = Column(Boolean, nullable=False, default=False)
    dropped_off = Column(Boolean, nullable=False, default=False)
    conversion_value = Column(Float, nullable=True)
    properties = Column(JSON, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)
