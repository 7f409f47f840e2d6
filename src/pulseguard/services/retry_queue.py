"""Durable retry queue for reading analyses.

Each RetryJob is one outstanding obligation to obtain a verified analysis
for a reading. The queue owns the backoff policy and every status
transition:

         enqueue
  (none) -------> pending
  pending    --mark_processing-->  processing
  processing --mark_completed--->  completed                (terminal)
  processing --failure, attempts+1 <  max--> pending        (reschedule)
  processing --failure, attempts+1 >= max--> failed         (terminal)
  any        --reset-->            pending, attempts = 0

Backoff: delay(attempts) = min(base * factor ** attempts, cap), with the
defaults 15s, x4, capped at 24h (15s, 1m, 4m, 16m, 64m, ...).

Enqueue is an upsert keyed by reading. A partial unique index on
analysis_retry_jobs(reading_id) for active statuses makes it safe against
concurrent callers: the losing insert hits IntegrityError inside a
SAVEPOINT and falls back to updating the winner's row.

Usage:
    async with session_factory() as session:
        queue = RetryQueueService(session, settings.retry)
        job_id = await queue.enqueue(reading_id, subject_id, "timeout")
        await session.commit()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pulseguard.core.config import RetrySettings
from pulseguard.db.models.base import ACTIVE_JOB_STATUSES, RetryJobStatus
from pulseguard.db.models.retry_jobs import RetryJob

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    RetryReporter = Callable[[uuid.UUID, uuid.UUID, str], Awaitable[uuid.UUID | None]]

logger = logging.getLogger(__name__)

# Longest error message kept on a job
MAX_ERROR_LENGTH = 2000

# Exponent beyond which any factor >= 2 has already reached any sane cap
_MAX_EXPONENT = 64


class RetryQueueError(Exception):
    """Base exception for retry queue operations."""

    pass


class RetryJobNotFoundError(RetryQueueError):
    """Raised when a retry job cannot be found."""

    pass


class RetryJobConflictError(RetryQueueError):
    """Raised when a change would leave two active jobs for one reading."""

    pass


@dataclass(frozen=True)
class RetryQueueStats:
    """Job counts per status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed


def compute_backoff(
    attempts: int,
    base: int = 15,
    cap: int = 86400,
    factor: int = 4,
) -> int:
    """Seconds to wait before the next attempt.

    Non-decreasing in ``attempts`` and never above ``cap``.
    """
    exponent = min(max(attempts, 0), _MAX_EXPONENT)
    return min(base * factor**exponent, cap)


def next_retry_time(
    attempts: int,
    settings: RetrySettings,
    now: datetime | None = None,
) -> datetime:
    """Absolute time of the next attempt after ``attempts`` failures."""
    delay = compute_backoff(
        attempts,
        base=settings.base_delay_seconds,
        cap=settings.max_delay_seconds,
        factor=settings.backoff_factor,
    )
    return (now or datetime.now(UTC)) + timedelta(seconds=delay)


def _truncate(error: str) -> str:
    if len(error) <= MAX_ERROR_LENGTH:
        return error
    return error[: MAX_ERROR_LENGTH - 3] + "..."


class RetryQueueService:
    """Enqueue, selection and transition operations over RetryJob rows.

    Methods flush but never commit; the caller owns the transaction.

    Attributes:
        session: SQLAlchemy async session for database operations.
        settings: Backoff policy and attempt ceiling.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: RetrySettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the retry queue service.

        Args:
            session: SQLAlchemy async session for database operations.
            settings: Retry policy; defaults to RetrySettings().
            clock: Returns the current UTC time (overridable in tests).
        """
        self.session = session
        self.settings = settings or RetrySettings()
        self._clock = clock or (lambda: datetime.now(UTC))

    def delay_for(self, attempts: int) -> int:
        """Backoff delay in seconds under this queue's policy."""
        return compute_backoff(
            attempts,
            base=self.settings.base_delay_seconds,
            cap=self.settings.max_delay_seconds,
            factor=self.settings.backoff_factor,
        )

    def _next_retry_at(self, attempts: int) -> datetime:
        return self._clock() + timedelta(seconds=self.delay_for(attempts))

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        reading_id: uuid.UUID,
        subject_id: uuid.UUID,
        error: str,
    ) -> uuid.UUID:
        """Record an analysis failure for a reading.

        If an active job exists for the reading, its last_error is replaced
        and next_retry_at is reset to the base delay; attempts and status are
        left alone. Otherwise a new pending job with attempts=0 is inserted.
        A failed existence check falls back to the insert.

        Args:
            reading_id: Reading whose analysis failed.
            subject_id: Subject the reading belongs to.
            error: Failure message.

        Returns:
            UUID of the active job for the reading.

        Raises:
            RetryQueueError: If neither the update nor the insert succeeds.
        """
        error = _truncate(error)

        try:
            async with self.session.begin_nested():
                existing = await self._find_active(reading_id)
        except SQLAlchemyError as e:
            logger.warning(
                "Active job lookup failed for reading_id=%s, falling back to insert: %s",
                reading_id,
                str(e),
            )
            existing = None

        if existing is not None:
            return await self._refresh(existing, error)

        try:
            async with self.session.begin_nested():
                job = RetryJob(
                    reading_id=reading_id,
                    subject_id=subject_id,
                    status=RetryJobStatus.PENDING,
                    attempts=0,
                    max_attempts=self.settings.max_attempts,
                    last_error=error,
                    next_retry_at=self._next_retry_at(0),
                )
                self.session.add(job)
                await self.session.flush()
        except IntegrityError as e:
            # A concurrent enqueue inserted the active job first
            logger.info(
                "Concurrent enqueue detected for reading_id=%s, updating existing job",
                reading_id,
            )
            try:
                existing = await self._find_active(reading_id)
            except SQLAlchemyError as lookup_error:
                raise RetryQueueError(
                    f"Failed to enqueue retry for reading {reading_id}: {lookup_error}"
                ) from lookup_error
            if existing is None:
                raise RetryQueueError(
                    f"Failed to enqueue retry for reading {reading_id}: {e}"
                ) from e
            return await self._refresh(existing, error)
        except SQLAlchemyError as e:
            logger.error("Failed to enqueue retry for reading_id=%s: %s", reading_id, str(e))
            raise RetryQueueError(f"Failed to enqueue retry for reading {reading_id}: {e}") from e

        logger.info(
            "Retry job enqueued: job_id=%s, reading_id=%s, next_retry_at=%s",
            job.job_id,
            reading_id,
            job.next_retry_at.isoformat(),
        )
        return job.job_id

    async def _refresh(self, job: RetryJob, error: str) -> uuid.UUID:
        try:
            job.last_error = error
            job.next_retry_at = self._next_retry_at(0)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to update retry job %s: %s", job.job_id, str(e))
            raise RetryQueueError(f"Failed to update retry job: {e}") from e

        logger.info(
            "Retry job refreshed: job_id=%s, reading_id=%s, status=%s, attempts=%d",
            job.job_id,
            job.reading_id,
            job.status.value,
            job.attempts,
        )
        return job.job_id

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    async def select_batch(self, limit: int) -> list[RetryJob]:
        """Pending jobs that are due, oldest next_retry_at first.

        Read-only; never returns more than ``limit`` jobs.
        """
        if limit <= 0:
            return []

        stmt = (
            select(RetryJob)
            .where(
                RetryJob.status == RetryJobStatus.PENDING,
                RetryJob.next_retry_at <= self._clock(),
            )
            .order_by(RetryJob.next_retry_at)
            .limit(limit)
        )
        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to select retry batch: %s", str(e))
            raise RetryQueueError(f"Failed to select retry batch: {e}") from e

    async def get_job(self, job_id: uuid.UUID) -> RetryJob | None:
        """Retrieve a job by ID."""
        stmt = select(RetryJob).where(RetryJob.job_id == job_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_active(self, reading_id: uuid.UUID) -> RetryJob | None:
        stmt = select(RetryJob).where(
            RetryJob.reading_id == reading_id,
            RetryJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def _require_job(self, job_id: uuid.UUID) -> RetryJob:
        job = await self.get_job(job_id)
        if job is None:
            raise RetryJobNotFoundError(f"Retry job not found: {job_id}")
        return job

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def mark_processing(self, job: RetryJob) -> None:
        """Move a pending job to processing."""
        try:
            job.status = RetryJobStatus.PROCESSING
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to mark job %s processing: %s", job.job_id, str(e))
            raise RetryQueueError(f"Failed to mark job processing: {e}") from e

        logger.debug(
            "Retry job processing: job_id=%s, attempt=%d/%d",
            job.job_id,
            job.attempts + 1,
            job.max_attempts,
        )

    async def mark_completed(self, job: RetryJob) -> None:
        """Record that a verified analysis was written for the job's reading."""
        try:
            job.status = RetryJobStatus.COMPLETED
            job.last_error = None
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to complete job %s: %s", job.job_id, str(e))
            raise RetryQueueError(f"Failed to complete job: {e}") from e

        logger.info("Retry job completed: job_id=%s, reading_id=%s", job.job_id, job.reading_id)

    async def mark_failed(self, job: RetryJob, error: str) -> None:
        """Count a final failed attempt and stop retrying."""
        try:
            job.attempts = min(job.attempts + 1, job.max_attempts)
            job.status = RetryJobStatus.FAILED
            job.last_error = _truncate(error)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to fail job %s: %s", job.job_id, str(e))
            raise RetryQueueError(f"Failed to fail job: {e}") from e

        logger.warning(
            "Retry job exhausted: job_id=%s, reading_id=%s, attempts=%d, error=%s",
            job.job_id,
            job.reading_id,
            job.attempts,
            error,
        )

    async def reschedule(self, job: RetryJob, error: str) -> None:
        """Count a failed attempt and schedule the next one with backoff."""
        try:
            job.attempts = min(job.attempts + 1, job.max_attempts)
            job.status = RetryJobStatus.PENDING
            job.last_error = _truncate(error)
            job.next_retry_at = self._next_retry_at(job.attempts)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to reschedule job %s: %s", job.job_id, str(e))
            raise RetryQueueError(f"Failed to reschedule job: {e}") from e

        logger.info(
            "Retry job rescheduled: job_id=%s, attempt=%d/%d, next_retry_at=%s",
            job.job_id,
            job.attempts,
            job.max_attempts,
            job.next_retry_at.isoformat(),
        )

    async def record_failure(self, job: RetryJob, error: str) -> bool:
        """Apply the failure transition chosen by the post-increment attempt count.

        Returns:
            True if another attempt will be made, False if the job is now failed.
        """
        if job.attempts + 1 >= job.max_attempts:
            await self.mark_failed(job, error)
            return False
        await self.reschedule(job, error)
        return True

    # -------------------------------------------------------------------------
    # Operator actions
    # -------------------------------------------------------------------------

    async def reset(self, job_id: uuid.UUID) -> RetryJob:
        """Return any job to pending with attempts=0, due after the base delay.

        Raises:
            RetryJobNotFoundError: If the job does not exist.
            RetryJobConflictError: If another active job already exists for
                the reading.
            RetryQueueError: If the update fails.
        """
        try:
            job = await self._require_job(job_id)
            previous = job.status
            async with self.session.begin_nested():
                job.attempts = 0
                job.status = RetryJobStatus.PENDING
                job.next_retry_at = self._next_retry_at(0)
                await self.session.flush()
        except RetryJobNotFoundError:
            raise
        except IntegrityError as e:
            raise RetryJobConflictError(
                f"Cannot reset job {job_id}: another active job exists for its reading"
            ) from e
        except SQLAlchemyError as e:
            logger.error("Failed to reset job %s: %s", job_id, str(e))
            raise RetryQueueError(f"Failed to reset job: {e}") from e

        logger.info("Retry job reset: job_id=%s, previous_status=%s", job_id, previous.value)
        return job

    async def delete(self, job_id: uuid.UUID) -> None:
        """Remove a job entirely.

        Raises:
            RetryJobNotFoundError: If the job does not exist.
            RetryQueueError: If the delete fails.
        """
        try:
            result = await self.session.execute(
                delete(RetryJob).where(RetryJob.job_id == job_id).returning(RetryJob.job_id)
            )
            deleted = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to delete job %s: %s", job_id, str(e))
            raise RetryQueueError(f"Failed to delete job: {e}") from e

        if deleted is None:
            raise RetryJobNotFoundError(f"Retry job not found: {job_id}")

        logger.info("Retry job deleted: job_id=%s", job_id)

    async def stats(self) -> RetryQueueStats:
        """Count jobs per status."""
        stmt = select(RetryJob.status, func.count()).group_by(RetryJob.status)
        try:
            result = await self.session.execute(stmt)
            counts = {status: count for status, count in result.all()}
        except SQLAlchemyError as e:
            logger.error("Failed to compute retry queue stats: %s", str(e))
            raise RetryQueueError(f"Failed to compute retry queue stats: {e}") from e

        return RetryQueueStats(
            pending=counts.get(RetryJobStatus.PENDING, 0),
            processing=counts.get(RetryJobStatus.PROCESSING, 0),
            completed=counts.get(RetryJobStatus.COMPLETED, 0),
            failed=counts.get(RetryJobStatus.FAILED, 0),
        )

    async def list_jobs(
        self,
        status: RetryJobStatus | None = None,
        page: int = 1,
        page_size: int = 10,
    ) -> tuple[list[RetryJob], int]:
        """Page through jobs, most recently updated first.

        Returns:
            Tuple of (jobs on this page, total matching jobs).
        """
        stmt = select(RetryJob)
        count_stmt = select(func.count()).select_from(RetryJob)
        if status is not None:
            stmt = stmt.where(RetryJob.status == status)
            count_stmt = count_stmt.where(RetryJob.status == status)

        offset = (max(page, 1) - 1) * page_size
        stmt = stmt.order_by(RetryJob.updated_at.desc()).offset(offset).limit(page_size)

        try:
            total = (await self.session.execute(count_stmt)).scalar() or 0
            result = await self.session.execute(stmt)
            return list(result.scalars().all()), total
        except SQLAlchemyError as e:
            logger.error("Failed to list retry jobs: %s", str(e))
            raise RetryQueueError(f"Failed to list retry jobs: {e}") from e

    async def recover_stale(self, stale_after_seconds: int) -> int:
        """Return jobs stuck in processing (e.g. after a crash) to pending.

        Recovered jobs are due immediately and keep their attempt count.

        Returns:
            Number of jobs recovered.
        """
        now = self._clock()
        threshold = now - timedelta(seconds=stale_after_seconds)

        stmt = (
            update(RetryJob)
            .where(
                RetryJob.status == RetryJobStatus.PROCESSING,
                RetryJob.updated_at < threshold,
            )
            .values(status=RetryJobStatus.PENDING, next_retry_at=now)
            .returning(RetryJob.job_id)
        )
        try:
            result = await self.session.execute(stmt)
            recovered = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to recover stale retry jobs: %s", str(e))
            raise RetryQueueError(f"Failed to recover stale retry jobs: {e}") from e

        if recovered:
            logger.warning("Recovered %d stale retry jobs: %s", len(recovered), recovered)
        return len(recovered)


def make_retry_reporter(
    session_factory: async_sessionmaker[AsyncSession],
    settings: RetrySettings | None = None,
) -> RetryReporter:
    """Build the callable the analysis invoker uses to queue failures.

    Each report runs in its own session and commits independently of the
    caller. Failures are logged and reported as None; they never raise.
    """

    async def report(reading_id: uuid.UUID, subject_id: uuid.UUID, error: str) -> uuid.UUID | None:
        try:
            async with session_factory() as session:
                job_id = await RetryQueueService(session, settings).enqueue(
                    reading_id, subject_id, error
                )
                await session.commit()
                return job_id
        except (RetryQueueError, SQLAlchemyError) as e:
            logger.error("Failed to queue analysis retry for reading_id=%s: %s", reading_id, e)
            return None

    return report
