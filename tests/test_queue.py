"""Tests for the delivery queue."""

import asyncio
import datetime

import pytest
from sqlalchemy import select

from app.core.queue import JobQueue, QueueProcessor
from app.core.reporters import Reporter, reporters
from app.models.tables import JobStatus, QueueJob, as_utc

T0 = datetime.datetime(2026, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)


def _register(key="test", process=lambda payload: True):
    reporters.register(key, Reporter(key=key, enqueue=lambda *a: [], process=process))


async def _reload(session, job_id):
    stmt = select(QueueJob).where(QueueJob.id == job_id).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one()


async def _enqueue(session, settings, n=1, reporter="test", **kwargs):
    queue = JobQueue(session, settings)
    jobs = [await queue.enqueue(reporter, {"n": i}, **kwargs) for i in range(n)]
    await session.commit()
    return jobs


class TestLease:
    @pytest.mark.asyncio
    async def test_dequeue_in_insertion_order(self, session, settings):
        await _enqueue(session, settings, n=3)
        jobs = await JobQueue(session, settings).dequeue(2, T0)
        assert [j.payload["n"] for j in jobs] == [0, 1]
        assert all(j.status == JobStatus.PROCESSING.value for j in jobs)

    @pytest.mark.asyncio
    async def test_future_retry_not_eligible(self, session, settings):
        [job] = await _enqueue(session, settings)
        job.retry_after = T0 + datetime.timedelta(seconds=60)
        await session.commit()

        queue = JobQueue(session, settings)
        assert await queue.dequeue(10, T0) == []
        assert len(await queue.dequeue(10, T0 + datetime.timedelta(seconds=60))) == 1

    @pytest.mark.asyncio
    async def test_concurrent_leases_never_double_claim(self, session_maker, settings):
        async with session_maker() as setup:
            await _enqueue(setup, settings, n=5)

        async with session_maker() as first, session_maker() as second:
            q1, q2 = JobQueue(first, settings), JobQueue(second, settings)
            # Both drains see the same candidates before either claims
            ids1 = await q1.candidates(10, T0)
            ids2 = await q2.candidates(10, T0)
            await first.commit()
            await second.commit()
            assert ids1 == ids2

            won1 = await q1.lease(ids1, T0)
            won2 = await q2.lease(ids2, T0)

        assert len(won1) == 5
        assert won2 == []

    @pytest.mark.asyncio
    async def test_parallel_drains_process_each_job_once(self, session_maker, settings):
        delivered = []

        async def process(payload):
            await asyncio.sleep(0)
            delivered.append(payload["n"])
            return True

        _register(process=process)
        async with session_maker() as setup:
            await _enqueue(setup, settings, n=6)

        async def drain():
            async with session_maker() as s:
                return await QueueProcessor(s, settings).drain(now=T0)

        results = await asyncio.gather(drain(), drain())
        assert sorted(delivered) == [0, 1, 2, 3, 4, 5]
        assert sum(r.done for r in results) == 6


class TestDrain:
    @pytest.mark.asyncio
    async def test_success_marks_done(self, session, settings):
        _register()
        [job] = await _enqueue(session, settings)

        result = await QueueProcessor(session, settings).drain(now=T0)
        assert (result.processed, result.done) == (1, 1)
        assert result.more_pending is False

        job = await _reload(session, job.id)
        assert job.status == JobStatus.DONE.value
        assert as_utc(job.processed_at) == T0

    @pytest.mark.asyncio
    async def test_async_reporter(self, session, settings):
        async def process(payload):
            return True

        _register(process=process)
        await _enqueue(session, settings)
        result = await QueueProcessor(session, settings).drain(now=T0)
        assert result.done == 1

    @pytest.mark.asyncio
    async def test_no_reporters_leaves_jobs_pending(self, session, settings):
        [job] = await _enqueue(session, settings)
        scheduled = []

        result = await QueueProcessor(session, settings, schedule=scheduled.append).drain(now=T0)
        assert result.processed == 0
        assert result.more_pending is True
        assert scheduled == []

        job = await _reload(session, job.id)
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 0

    @pytest.mark.asyncio
    async def test_unknown_reporter_fails_permanently(self, session, settings):
        _register()
        [job] = await _enqueue(session, settings, reporter="gone")

        result = await QueueProcessor(session, settings).drain(now=T0)
        assert result.failed == 1

        job = await _reload(session, job.id)
        assert job.status == JobStatus.FAILED.value
        assert job.attempts == 1
        assert "gone" in job.error_message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("process", [
        lambda payload: False,
        lambda payload: None,
        lambda payload: 1 / 0,
    ])
    async def test_failure_schedules_retry(self, session, settings, process):
        _register(process=process)
        [job] = await _enqueue(session, settings)
        scheduled = []

        result = await QueueProcessor(session, settings, schedule=scheduled.append).drain(now=T0)
        assert result.retried == 1
        assert result.more_pending is True
        assert result.next_retry_at == T0 + datetime.timedelta(seconds=60)
        assert scheduled == [T0 + datetime.timedelta(seconds=60)]

        job = await _reload(session, job.id)
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 1
        assert as_utc(job.retry_after) == T0 + datetime.timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_nine_failures_then_failed(self, session, settings):
        _register(process=lambda payload: False)
        [job] = await _enqueue(session, settings, retry={"attempts_per_round": 3, "max_rounds": 3})
        processor = QueueProcessor(session, settings)

        now = T0
        eligibility = []
        for attempt in range(1, 10):
            result = await processor.drain(now=now)
            assert result.processed == 1
            job = await _reload(session, job.id)
            assert job.attempts == attempt
            if attempt < 9:
                assert job.status == JobStatus.PENDING.value
                retry_after = as_utc(job.retry_after)
                eligibility.append(retry_after)
                now = retry_after
            else:
                assert job.status == JobStatus.FAILED.value
                assert job.processed_at is not None

        assert eligibility == sorted(eligibility)
        gaps = [(b - a).total_seconds() for a, b in zip([T0] + eligibility, eligibility)]
        assert gaps == [60, 60, 21600, 60, 60, 21600, 60, 60]

    @pytest.mark.asyncio
    async def test_per_job_overrides(self, session, settings):
        _register(process=lambda payload: False)
        [job] = await _enqueue(session, settings, retry={"attempts_per_round": 1, "max_rounds": 1})

        result = await QueueProcessor(session, settings).drain(now=T0)
        assert result.failed == 1


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_status_counts_and_last_error(self, session, settings):
        _register(process=lambda payload: False)
        await _enqueue(session, settings, n=2)
        await _enqueue(session, settings, reporter="gone")
        await QueueProcessor(session, settings).drain(now=T0)

        status = await JobQueue(session, settings).status()
        assert status["counts"] == {"pending": 2, "processing": 0, "done": 0, "failed": 1}
        assert status["last_error"]["reporter"] == "gone"
        assert status["last_error"]["status"] == "failed"
        assert status["last_error"]["attempts"] == 1

    @pytest.mark.asyncio
    async def test_pending_retries_are_not_last_error(self, session, settings):
        _register(process=lambda payload: False)
        await _enqueue(session, settings)
        await QueueProcessor(session, settings).drain(now=T0)

        status = await JobQueue(session, settings).status()
        assert status["counts"]["pending"] == 1
        assert status["last_error"] is None

    @pytest.mark.asyncio
    async def test_next_retry_time(self, session, settings):
        _register(process=lambda payload: False)
        await _enqueue(session, settings)
        await QueueProcessor(session, settings).drain(now=T0)

        queue = JobQueue(session, settings)
        assert await queue.next_retry_time(T0) == T0 + datetime.timedelta(seconds=60)
        assert await queue.next_retry_time(T0 + datetime.timedelta(hours=1)) is None


class TestCleanup:
    @pytest.mark.asyncio
    async def test_terminal_jobs_removed_by_window(self, session, settings):
        jobs = await _enqueue(session, settings, n=4)
        ages = [
            (JobStatus.DONE, 31),     # removed
            (JobStatus.DONE, 29),     # kept
            (JobStatus.FAILED, 91),   # removed
            (JobStatus.FAILED, 31),   # kept
        ]
        for job, (status, days) in zip(jobs, ages):
            job.status = status.value
            job.processed_at = T0 - datetime.timedelta(days=days)
        await session.commit()

        removed = await JobQueue(session, settings).cleanup(30, 90, T0)
        await session.commit()
        assert removed == {"done": 1, "failed": 1}

        left = (await session.execute(select(QueueJob.id).order_by(QueueJob.id))).scalars().all()
        assert left == [jobs[1].id, jobs[3].id]
