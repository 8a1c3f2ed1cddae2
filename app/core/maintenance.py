"""
Daily retention cleanup, run by the external scheduler.

Order matters: conversions go before the clicks they reference.
"""

import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.core.queue import JobQueue
from app.models.stores import CorrelationIdStore
from app.models.tables import ClickCounter, ClickEvent, Conversion, TrackingLink, utcnow

import structlog

logger = structlog.get_logger()


async def _delete(session: AsyncSession, stmt) -> int:
    result = await session.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount or 0


async def run_daily_cleanup(
    session: AsyncSession,
    settings: Settings,
    now: datetime.datetime | None = None,
) -> dict[str, int]:
    now = now or utcnow()
    click_cutoff = now - datetime.timedelta(days=settings.click_retention_days)
    counts: dict[str, int] = {}

    # 1. Clicks past retention, with their conversions
    expired = select(ClickEvent.id).where(ClickEvent.clicked_at < click_cutoff)
    counts["expired_conversions"] = await _delete(
        session, delete(Conversion).where(Conversion.click_event_id.in_(expired))
    )
    counts["expired_clicks"] = await _delete(
        session, delete(ClickEvent).where(ClickEvent.clicked_at < click_cutoff)
    )

    # 2. Conversions whose click is gone
    counts["orphan_conversions"] = await _delete(
        session,
        delete(Conversion).where(Conversion.click_event_id.not_in(select(ClickEvent.id))),
    )

    # 3. Clicks on links that no longer exist in the directory
    known = select(TrackingLink.hash)
    unlinked = select(ClickEvent.id).where(ClickEvent.hash.not_in(known))
    counts["unlinked_conversions"] = await _delete(
        session, delete(Conversion).where(Conversion.click_event_id.in_(unlinked))
    )
    counts["unlinked_clicks"] = await _delete(
        session, delete(ClickEvent).where(ClickEvent.hash.not_in(known))
    )

    # 4. Daily counters
    counts["click_counters"] = await _delete(
        session, delete(ClickCounter).where(ClickCounter.day < click_cutoff.date())
    )

    # 5. Platform click IDs
    counts["click_ids"] = await CorrelationIdStore(session).cleanup(
        now - datetime.timedelta(days=settings.click_id_retention_days)
    )

    # 6. Terminal queue jobs
    removed = await JobQueue(session, settings).cleanup(
        settings.queue_done_retention_days,
        settings.queue_failed_retention_days,
        now,
    )
    counts["queue_done"] = removed["done"]
    counts["queue_failed"] = removed["failed"]

    await session.commit()
    logger.info("maintenance_cleanup_done", **counts)
    return counts
