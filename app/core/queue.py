"""
Delivery queue — durable jobs with leased dequeue and round-based retry.

    pending → processing → done
                         → pending (retry_after = now + D or G)
                         → failed

Leasing is the only synchronisation point between concurrent drains:
every candidate is claimed with

    UPDATE queue_jobs SET status='processing' WHERE id=? AND status='pending'

and only rows where that update hit exactly one row belong to the caller.
Completion and failure updates are likewise conditional on 'processing'.
"""

import datetime
import inspect
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.core.errors import QueueDispatchError
from app.core.reporters import reporters
from app.core.retry import RetryPolicy, plan_retry
from app.models.tables import JobStatus, QueueJob, as_utc, utcnow

import structlog

logger = structlog.get_logger()

MAX_ERROR_LENGTH = 2000

# schedule(next_run_at) asks the external scheduler for another drain
ScheduleSignal = Callable[[datetime.datetime | None], None]


class JobQueue:
    def __init__(self, session: AsyncSession, settings: Settings):
        self.session = session
        self.settings = settings

    # --- Producer side ---

    async def enqueue(
        self,
        reporter: str,
        payload: dict,
        label: str | None = None,
        retry: dict[str, int] | None = None,
    ) -> QueueJob:
        """Add a pending job. The caller commits."""
        retry = retry or {}
        job = QueueJob(
            reporter=reporter,
            payload=payload,
            label=label,
            status=JobStatus.PENDING.value,
            attempts=0,
            attempts_per_round=retry.get("attempts_per_round"),
            retry_delay=retry.get("retry_delay"),
            max_rounds=retry.get("max_rounds"),
            round_delay=retry.get("round_delay"),
            created_at=utcnow(),
        )
        self.session.add(job)
        await self.session.flush()
        return job

    # --- Lease ---

    async def candidates(self, limit: int, now: datetime.datetime) -> list[int]:
        stmt = (
            select(QueueJob.id)
            .where(
                QueueJob.status == JobStatus.PENDING.value,
                or_(QueueJob.retry_after.is_(None), QueueJob.retry_after <= now),
            )
            .order_by(QueueJob.id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def lease(self, job_ids: list[int], now: datetime.datetime) -> list[QueueJob]:
        """Claim each id with a conditional update; return only the rows we won."""
        claimed = []
        for job_id in job_ids:
            stmt = (
                update(QueueJob)
                .where(QueueJob.id == job_id, QueueJob.status == JobStatus.PENDING.value)
                .values(status=JobStatus.PROCESSING.value, leased_at=now)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            if result.rowcount == 1:
                claimed.append(job_id)
        await self.session.commit()

        if not claimed:
            return []

        stmt = (
            select(QueueJob)
            .where(QueueJob.id.in_(claimed))
            .order_by(QueueJob.id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def dequeue(self, limit: int, now: datetime.datetime | None = None) -> list[QueueJob]:
        now = now or utcnow()
        return await self.lease(await self.candidates(limit, now), now)

    # --- Outcomes ---

    async def complete(self, job: QueueJob, now: datetime.datetime | None = None) -> bool:
        stmt = (
            update(QueueJob)
            .where(QueueJob.id == job.id, QueueJob.status == JobStatus.PROCESSING.value)
            .values(status=JobStatus.DONE.value, processed_at=now or utcnow(), error_message=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount == 1

    async def fail(
        self,
        job: QueueJob,
        message: str,
        now: datetime.datetime | None = None,
        retryable: bool = True,
    ) -> JobStatus | None:
        """Record a failed attempt. Returns the status the job moved to, or
        None if the job was no longer leased by us."""
        now = now or utcnow()
        attempts = (job.attempts or 0) + 1
        values = {"attempts": attempts, "error_message": message[:MAX_ERROR_LENGTH]}

        if not retryable:
            status = JobStatus.FAILED
            values.update(status=status.value, processed_at=now, retry_after=None)
        else:
            decision = plan_retry(attempts, self.policy_for(job))
            if decision.failed:
                status = JobStatus.FAILED
                values.update(status=status.value, processed_at=now, retry_after=None)
            else:
                status = JobStatus.PENDING
                values.update(
                    status=status.value,
                    retry_after=now + datetime.timedelta(seconds=decision.delay),
                )

        stmt = (
            update(QueueJob)
            .where(QueueJob.id == job.id, QueueJob.status == JobStatus.PROCESSING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        if result.rowcount != 1:
            logger.warning("queue_job_lease_lost", job_id=job.id)
            return None
        return status

    def policy_for(self, job: QueueJob) -> RetryPolicy:
        return RetryPolicy.from_settings(
            self.settings,
            attempts_per_round=job.attempts_per_round,
            retry_delay=job.retry_delay,
            max_rounds=job.max_rounds,
            round_delay=job.round_delay,
        )

    # --- Introspection ---

    async def status(self) -> dict:
        stmt = select(QueueJob.status, func.count()).group_by(QueueJob.status)
        result = await self.session.execute(stmt)
        counts = {s.value: 0 for s in JobStatus}
        counts.update({status: count for status, count in result.all()})

        stmt = (
            select(QueueJob)
            .where(QueueJob.status == JobStatus.FAILED.value)
            .order_by(QueueJob.processed_at.desc(), QueueJob.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        last = (await self.session.execute(stmt)).scalar_one_or_none()
        last_error = None
        if last is not None:
            last_error = {
                "job_id": last.id,
                "reporter": last.reporter,
                "status": last.status,
                "attempts": last.attempts,
                "message": last.error_message,
            }
        return {"counts": counts, "last_error": last_error}

    async def pending_ready(self, now: datetime.datetime) -> bool:
        return bool(await self.candidates(1, now))

    async def pending_count(self) -> int:
        stmt = select(func.count()).select_from(QueueJob).where(
            QueueJob.status == JobStatus.PENDING.value
        )
        return (await self.session.execute(stmt)).scalar_one()

    async def next_retry_time(self, now: datetime.datetime | None = None) -> datetime.datetime | None:
        """Earliest future retry_after among pending jobs."""
        now = now or utcnow()
        stmt = select(func.min(QueueJob.retry_after)).where(
            QueueJob.status == JobStatus.PENDING.value,
            QueueJob.retry_after > now,
        )
        return as_utc((await self.session.execute(stmt)).scalar_one_or_none())

    # --- Retention ---

    async def cleanup(
        self,
        done_days: int,
        failed_days: int,
        now: datetime.datetime | None = None,
    ) -> dict[str, int]:
        """Delete terminal jobs whose processed_at is past their window. The caller commits."""
        now = now or utcnow()
        removed = {}
        for status, days in ((JobStatus.DONE, done_days), (JobStatus.FAILED, failed_days)):
            cutoff = now - datetime.timedelta(days=days)
            stmt = delete(QueueJob).where(
                QueueJob.status == status.value,
                QueueJob.processed_at < cutoff,
            ).execution_options(synchronize_session=False)
            result = await self.session.execute(stmt)
            removed[status.value] = result.rowcount or 0
        return removed


@dataclass
class DrainResult:
    processed: int = 0
    done: int = 0
    retried: int = 0
    failed: int = 0
    more_pending: bool = False
    next_retry_at: datetime.datetime | None = None

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "done": self.done,
            "retried": self.retried,
            "failed": self.failed,
            "more_pending": self.more_pending,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
        }


class QueueProcessor:
    """One drain pass: lease a batch, dispatch each job, record the outcome."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        schedule: ScheduleSignal | None = None,
    ):
        self.settings = settings
        self.queue = JobQueue(session, settings)
        self.schedule = schedule

    async def drain(self, limit: int | None = None, now: datetime.datetime | None = None) -> DrainResult:
        now = now or utcnow()
        result = DrainResult()

        if len(reporters) == 0:
            # Nothing could deliver the jobs; leave them pending.
            logger.info("queue_drain_skipped", reason="no_reporters")
            return await self._finish(result, now)

        jobs = await self.queue.dequeue(limit or self.settings.queue_batch_size, now)
        for job in jobs:
            result.processed += 1
            try:
                await self._dispatch(job)
            except QueueDispatchError as e:
                status = await self.queue.fail(job, str(e), now, retryable=e.retryable)
                if status == JobStatus.FAILED:
                    result.failed += 1
                    logger.error("queue_job_failed", job_id=job.id, reporter=job.reporter,
                                 attempts=job.attempts + 1, error=str(e))
                elif status == JobStatus.PENDING:
                    result.retried += 1
                    logger.warning("queue_job_retry", job_id=job.id, reporter=job.reporter,
                                   attempts=job.attempts + 1, error=str(e))
                continue

            if await self.queue.complete(job, now):
                result.done += 1
                logger.info("queue_job_done", job_id=job.id, reporter=job.reporter)

        return await self._finish(result, now)

    async def _dispatch(self, job: QueueJob) -> None:
        reporter = reporters.get(job.reporter)
        if reporter is None:
            raise QueueDispatchError(f"Unknown reporter {job.reporter!r}", retryable=False)

        try:
            outcome = reporter.process(job.payload)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            raise QueueDispatchError(f"{type(e).__name__}: {e}") from e

        if outcome is not True:
            raise QueueDispatchError(f"Reporter {job.reporter!r} returned {outcome!r}")

    async def _finish(self, result: DrainResult, now: datetime.datetime) -> DrainResult:
        result.more_pending = await self.queue.pending_count() > 0
        if await self.queue.pending_ready(now):
            result.next_retry_at = now
        else:
            result.next_retry_at = await self.queue.next_retry_time(now)

        if result.more_pending and self.schedule is not None and len(reporters) > 0:
            self.schedule(result.next_retry_at)
        return result
