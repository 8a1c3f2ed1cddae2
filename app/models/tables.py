"""
Database models.

Design principles:
  - tracking_links is owned by the link directory; this service only reads it
  - click_events and conversions are append-only
  - click_counters and platform_click_ids are upserted atomically
  - queue_jobs is mutated only by the delivery queue
  - All timestamps are UTC, second precision
"""

import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class LinkStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DELETED = "deleted"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


def utcnow() -> datetime.datetime:
    """Current UTC time truncated to whole seconds."""
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


def from_timestamp(ts: int) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(ts, datetime.timezone.utc)


def as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=datetime.timezone.utc)


# ---------------------------------------------------------------------------
# Directory table (read-only here)
# ---------------------------------------------------------------------------

class TrackingLink(Base):
    __tablename__ = "tracking_links"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hash = Column(String(64), nullable=False, unique=True, index=True)

    # Fixed campaign attributes
    source = Column(String(255), nullable=False)
    medium = Column(String(255), nullable=False)
    campaign = Column(String(255), nullable=False)

    # Optional: preset here, or left blank for per-click population
    content = Column(String(255), nullable=True)
    term = Column(String(255), nullable=True)
    utm_id = Column(String(255), nullable=True)
    source_platform = Column(String(255), nullable=True)  # a.k.a. group

    target_url = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=LinkStatus.ACTIVE.value)

    @property
    def is_active(self) -> bool:
        return self.status == LinkStatus.ACTIVE.value


# ---------------------------------------------------------------------------
# Event tables (append-only)
# ---------------------------------------------------------------------------

class ClickEvent(Base):
    """One row per non-bot click. Never updated."""
    __tablename__ = "click_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hash = Column(String(64), nullable=False)
    clicked_at = Column(DateTime(timezone=True), nullable=False)

    # Per-click overrides, only set when the link's own field is blank
    utm_content = Column(String(255), nullable=True)
    utm_term = Column(String(255), nullable=True)
    utm_id = Column(String(255), nullable=True)
    utm_source_platform = Column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_click_events_hash_clicked", "hash", "clicked_at"),
        Index("ix_click_events_clicked_at", "clicked_at"),
    )


class ClickCounter(Base):
    """Daily click totals per link, bumped with an atomic upsert."""
    __tablename__ = "click_counters"

    hash = Column(String(64), primary_key=True)
    day = Column(Date, primary_key=True)
    clicks = Column(Integer, nullable=False, default=0)


class Conversion(Base):
    """One row per credited click. Rows of one trigger sum to 1.0."""
    __tablename__ = "conversions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    click_event_id = Column(Integer, ForeignKey("click_events.id"), nullable=False, index=True)
    converted_at = Column(DateTime(timezone=True), nullable=False, index=True)
    fractional_conversion = Column(Float, nullable=False)


class PlatformClickId(Base):
    """Latest platform click ID (gclid, fbclid, ...) per link and platform."""
    __tablename__ = "platform_click_ids"

    hash = Column(String(64), primary_key=True)
    platform = Column(String(50), primary_key=True)
    click_id = Column(String(255), nullable=False)
    clicked_at = Column(DateTime(timezone=True), nullable=False, index=True)


# ---------------------------------------------------------------------------
# Delivery queue
# ---------------------------------------------------------------------------

class QueueJob(Base):
    """
    pending → processing → done | pending (retry) | failed

    Retry columns are NULL for jobs that use the global defaults.
    """
    __tablename__ = "queue_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reporter = Column(String(50), nullable=False)
    payload = Column(JSONType, nullable=False)
    label = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)

    attempts_per_round = Column(Integer, nullable=True)
    retry_delay = Column(Integer, nullable=True)
    max_rounds = Column(Integer, nullable=True)
    round_delay = Column(Integer, nullable=True)

    retry_after = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    leased_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_queue_jobs_status_retry", "status", "retry_after", "id"),
    )
