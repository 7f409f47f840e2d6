"""Tests for the analysis retry queue service.

Tests cover:
- Backoff schedule and cap
- Enqueue upsert: insert, refresh of the active job, lookup failure
  fallback, concurrent insert (IntegrityError) fallback
- The job state machine: reschedule, exhaustion, completion, reset
- Operator actions and queue statistics
- The retry reporter used by the analysis invoker
"""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pulseguard.db.models.base import RetryJobStatus
from pulseguard.services.retry_queue import (
    MAX_ERROR_LENGTH,
    RetryJobConflictError,
    RetryJobNotFoundError,
    RetryQueueError,
    RetryQueueService,
    RetryQueueStats,
    compute_backoff,
    make_retry_reporter,
)
from tests.factories import NOW, create_job, result_returning


def integrity_error() -> IntegrityError:
    return IntegrityError("INSERT INTO analysis_retry_jobs", {}, Exception("duplicate key"))


@pytest.fixture
def queue(mock_session, retry_settings, fixed_clock) -> RetryQueueService:
    return RetryQueueService(mock_session, retry_settings, clock=fixed_clock)


def assign_job_id(mock_session):
    """Make flush() assign a job_id like the server default would."""

    async def flush():
        if mock_session.add.called:
            job = mock_session.add.call_args[0][0]
            if job.job_id is None:
                job.job_id = uuid.uuid4()

    mock_session.flush.side_effect = flush


class TestComputeBackoff:
    """Tests for the backoff policy."""

    @pytest.mark.parametrize(
        ("attempts", "expected"),
        [(0, 15), (1, 60), (2, 240), (3, 960), (4, 3840), (5, 15360), (6, 61440)],
    )
    def test_schedule(self, attempts, expected):
        assert compute_backoff(attempts) == expected

    def test_capped_at_one_day(self):
        assert compute_backoff(7) == 86400
        assert compute_backoff(10_000) == 86400

    def test_negative_attempts_use_base(self):
        assert compute_backoff(-3) == 15

    def test_non_decreasing(self):
        delays = [compute_backoff(n) for n in range(30)]
        assert delays == sorted(delays)

    def test_custom_policy(self):
        assert compute_backoff(2, base=10, cap=50, factor=2) == 40
        assert compute_backoff(3, base=10, cap=50, factor=2) == 50

    def test_queue_uses_settings(self, mock_session, fixed_clock):
        from pulseguard.core.config import RetrySettings

        settings = RetrySettings(base_delay_seconds=30, backoff_factor=2, max_delay_seconds=100)
        queue = RetryQueueService(mock_session, settings, clock=fixed_clock)
        assert [queue.delay_for(n) for n in range(4)] == [30, 60, 100, 100]


class TestEnqueue:
    """Tests for enqueue as an upsert keyed by reading."""

    @pytest.mark.asyncio
    async def test_first_failure_creates_pending_job(self, queue, mock_session):
        assign_job_id(mock_session)
        reading_id, subject_id = uuid.uuid4(), uuid.uuid4()

        job_id = await queue.enqueue(reading_id, subject_id, "Analysis timed out")

        job = mock_session.add.call_args[0][0]
        assert job_id == job.job_id
        assert job.reading_id == reading_id
        assert job.subject_id == subject_id
        assert job.status == RetryJobStatus.PENDING
        assert job.attempts == 0
        assert job.max_attempts == 5
        assert job.last_error == "Analysis timed out"
        assert job.next_retry_at == NOW + timedelta(seconds=15)

    @pytest.mark.asyncio
    async def test_existing_active_job_is_refreshed(self, queue, mock_session):
        existing = create_job(status=RetryJobStatus.PENDING, attempts=2)
        mock_session.execute.return_value = result_returning(existing)

        job_id = await queue.enqueue(existing.reading_id, existing.subject_id, "still down")

        assert job_id == existing.job_id
        assert existing.last_error == "still down"
        assert existing.next_retry_at == NOW + timedelta(seconds=15)
        assert existing.attempts == 2
        assert existing.status == RetryJobStatus.PENDING
        mock_session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_processing_job_keeps_status(self, queue, mock_session):
        existing = create_job(status=RetryJobStatus.PROCESSING, attempts=1)
        mock_session.execute.return_value = result_returning(existing)

        await queue.enqueue(existing.reading_id, existing.subject_id, "again")

        assert existing.status == RetryJobStatus.PROCESSING
        assert existing.attempts == 1

    @pytest.mark.asyncio
    async def test_enqueue_twice_yields_one_job(self, queue, mock_session):
        added = []
        mock_session.add.side_effect = added.append

        async def execute(stmt):
            return result_returning(added[0] if added else None)

        mock_session.execute.side_effect = execute
        assign_job_id(mock_session)
        reading_id, subject_id = uuid.uuid4(), uuid.uuid4()

        first = await queue.enqueue(reading_id, subject_id, "first")
        second = await queue.enqueue(reading_id, subject_id, "second")

        assert first == second
        assert len(added) == 1
        assert added[0].last_error == "second"

    @pytest.mark.asyncio
    async def test_lookup_failure_falls_back_to_insert(self, queue, mock_session):
        mock_session.execute.side_effect = SQLAlchemyError("connection reset")
        assign_job_id(mock_session)

        job_id = await queue.enqueue(uuid.uuid4(), uuid.uuid4(), "boom")

        assert job_id is not None
        mock_session.add.assert_called_once()

    @pytest.mark.asyncio
    async def test_concurrent_insert_updates_winner(self, queue, mock_session):
        winner = create_job(attempts=0, last_error="first caller")
        mock_session.execute.side_effect = [result_returning(None), result_returning(winner)]
        mock_session.flush.side_effect = [integrity_error(), None]

        job_id = await queue.enqueue(winner.reading_id, winner.subject_id, "second caller")

        assert job_id == winner.job_id
        assert winner.last_error == "second caller"

    @pytest.mark.asyncio
    async def test_integrity_error_without_active_job_raises(self, queue, mock_session):
        mock_session.execute.side_effect = [result_returning(None), result_returning(None)]
        mock_session.flush.side_effect = integrity_error()

        with pytest.raises(RetryQueueError):
            await queue.enqueue(uuid.uuid4(), uuid.uuid4(), "boom")

    @pytest.mark.asyncio
    async def test_insert_failure_raises(self, queue, mock_session):
        mock_session.flush.side_effect = SQLAlchemyError("disk full")

        with pytest.raises(RetryQueueError):
            await queue.enqueue(uuid.uuid4(), uuid.uuid4(), "boom")

    @pytest.mark.asyncio
    async def test_long_error_is_truncated(self, queue, mock_session):
        assign_job_id(mock_session)

        await queue.enqueue(uuid.uuid4(), uuid.uuid4(), "x" * 5000)

        job = mock_session.add.call_args[0][0]
        assert len(job.last_error) == MAX_ERROR_LENGTH
        assert job.last_error.endswith("...")


class TestStateMachine:
    """Tests for job transitions."""

    @pytest.mark.asyncio
    async def test_second_failure_reschedules_with_backoff(self, queue):
        job = create_job(status=RetryJobStatus.PROCESSING, attempts=0)

        will_retry = await queue.record_failure(job, "timed out again")

        assert will_retry is True
        assert job.attempts == 1
        assert job.status == RetryJobStatus.PENDING
        assert job.next_retry_at == NOW + timedelta(seconds=60)
        assert job.last_error == "timed out again"

    @pytest.mark.asyncio
    async def test_fifth_failure_marks_failed(self, queue):
        job = create_job(attempts=0, max_attempts=5)

        outcomes = []
        for n in range(5):
            job.status = RetryJobStatus.PROCESSING
            outcomes.append(await queue.record_failure(job, f"failure {n + 1}"))

        assert outcomes == [True, True, True, True, False]
        assert job.status == RetryJobStatus.FAILED
        assert job.attempts == 5
        assert job.last_error == "failure 5"

    @pytest.mark.asyncio
    async def test_attempts_never_exceed_max(self, queue):
        job = create_job(attempts=5, max_attempts=5, status=RetryJobStatus.PROCESSING)

        await queue.mark_failed(job, "again")

        assert job.attempts == 5

    @pytest.mark.asyncio
    async def test_mark_processing(self, queue):
        job = create_job()

        await queue.mark_processing(job)

        assert job.status == RetryJobStatus.PROCESSING
        assert job.attempts == 0

    @pytest.mark.asyncio
    async def test_mark_completed_clears_error(self, queue):
        job = create_job(status=RetryJobStatus.PROCESSING, last_error="timeout")

        await queue.mark_completed(job)

        assert job.status == RetryJobStatus.COMPLETED
        assert job.last_error is None

    @pytest.mark.asyncio
    async def test_transition_failure_raises(self, queue, mock_session):
        mock_session.flush.side_effect = SQLAlchemyError("gone")

        with pytest.raises(RetryQueueError):
            await queue.mark_processing(create_job())


class TestReset:
    """Tests for the operator reset."""

    @pytest.mark.asyncio
    async def test_reset_failed_job(self, queue, mock_session):
        job = create_job(status=RetryJobStatus.FAILED, attempts=5, last_error="exhausted")
        mock_session.execute.return_value = result_returning(job)

        reset = await queue.reset(job.job_id)

        assert reset is job
        assert job.status == RetryJobStatus.PENDING
        assert job.attempts == 0
        assert job.next_retry_at == NOW + timedelta(seconds=15)
        assert job.last_error == "exhausted"

    @pytest.mark.asyncio
    async def test_reset_completed_job(self, queue, mock_session):
        job = create_job(status=RetryJobStatus.COMPLETED, attempts=2)
        mock_session.execute.return_value = result_returning(job)

        await queue.reset(job.job_id)

        assert job.status == RetryJobStatus.PENDING

    @pytest.mark.asyncio
    async def test_reset_unknown_job(self, queue):
        with pytest.raises(RetryJobNotFoundError):
            await queue.reset(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_reset_conflicting_active_job(self, queue, mock_session):
        job = create_job(status=RetryJobStatus.FAILED, attempts=5)
        mock_session.execute.return_value = result_returning(job)
        mock_session.flush.side_effect = integrity_error()

        with pytest.raises(RetryJobConflictError):
            await queue.reset(job.job_id)

    @pytest.mark.asyncio
    async def test_reset_store_failure(self, queue, mock_session):
        job = create_job(status=RetryJobStatus.FAILED, attempts=5)
        mock_session.execute.return_value = result_returning(job)
        mock_session.flush.side_effect = SQLAlchemyError("connection lost")

        with pytest.raises(RetryQueueError) as exc_info:
            await queue.reset(job.job_id)
        assert not isinstance(exc_info.value, RetryJobConflictError)


class TestOperatorActions:
    """Tests for delete, stats, listing and stale recovery."""

    @pytest.mark.asyncio
    async def test_delete(self, queue, mock_session):
        job_id = uuid.uuid4()
        mock_session.execute.return_value = result_returning(job_id)

        await queue.delete(job_id)

        mock_session.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delete_unknown_job(self, queue):
        with pytest.raises(RetryJobNotFoundError):
            await queue.delete(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_stats(self, queue, mock_session):
        mock_session.execute.return_value = result_returning(
            rows=[(RetryJobStatus.PENDING, 2), (RetryJobStatus.FAILED, 1)]
        )

        stats = await queue.stats()

        assert stats == RetryQueueStats(pending=2, processing=0, completed=0, failed=1)
        assert stats.total == 3

    @pytest.mark.asyncio
    async def test_list_jobs(self, queue, mock_session):
        jobs = [create_job(), create_job()]
        mock_session.execute.side_effect = [result_returning(7), result_returning(rows=jobs)]

        items, total = await queue.list_jobs(RetryJobStatus.PENDING, page=2, page_size=2)

        assert items == jobs
        assert total == 7
        assert mock_session.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_list_jobs_failure(self, queue, mock_session):
        mock_session.execute.side_effect = SQLAlchemyError("down")

        with pytest.raises(RetryQueueError):
            await queue.list_jobs()

    @pytest.mark.asyncio
    async def test_select_batch_zero_limit(self, queue, mock_session):
        assert await queue.select_batch(0) == []
        mock_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_select_batch(self, queue, mock_session):
        jobs = [create_job(), create_job()]
        mock_session.execute.return_value = result_returning(rows=jobs)

        assert await queue.select_batch(3) == jobs

    @pytest.mark.asyncio
    async def test_recover_stale(self, queue, mock_session):
        mock_session.execute.return_value = result_returning(rows=[uuid.uuid4(), uuid.uuid4()])

        assert await queue.recover_stale(600) == 2


class TestRetryReporter:
    """Tests for the reporter handed to the analysis invoker."""

    @pytest.mark.asyncio
    async def test_reports_and_commits(self, session_factory, mock_session, retry_settings):
        assign_job_id(mock_session)
        report = make_retry_reporter(session_factory, retry_settings)

        job_id = await report(uuid.uuid4(), uuid.uuid4(), "timeout")

        assert job_id == mock_session.add.call_args[0][0].job_id
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_returns_none(self, session_factory, mock_session):
        assign_job_id(mock_session)
        mock_session.commit = AsyncMock(side_effect=SQLAlchemyError("commit failed"))
        report = make_retry_reporter(session_factory)

        assert await report(uuid.uuid4(), uuid.uuid4(), "timeout") is None
