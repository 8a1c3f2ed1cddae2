"""
Scheduler entry points.

  POST /v1/queue/drain          → one drain pass
  POST /v1/maintenance/cleanup  → daily retention cleanup
  GET  /v1/queue/status         → job counts + most recent error

The scheduler itself (cron, Cloud Scheduler, k8s CronJob) is external. When
work is left over it is told so through the `more_pending` / `next_retry_at`
fields of the drain response and the `queue_drain_requested` log event.
"""

import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.core.maintenance import run_daily_cleanup
from app.core.queue import JobQueue, QueueProcessor
from app.models.database import get_db

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1", tags=["scheduler"])


def request_drain(next_run_at: datetime.datetime | None) -> None:
    logger.info("queue_drain_requested",
                next_run_at=next_run_at.isoformat() if next_run_at else None)


@router.post("/queue/drain")
async def drain_queue(
    limit: int | None = Query(None, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    result = await QueueProcessor(db, settings, schedule=request_drain).drain(limit=limit)
    logger.info("queue_drained", **result.as_dict())
    return result.as_dict()


@router.post("/maintenance/cleanup")
async def cleanup(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return {"status": "ok", "removed": await run_daily_cleanup(db, settings)}


@router.get("/queue/status")
async def queue_status(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    queue = JobQueue(db, settings)
    status = await queue.status()
    next_retry = await queue.next_retry_time()
    status["next_retry_at"] = next_retry.isoformat() if next_retry else None
    return status
