"""PulseGuard retry worker.

This module provides the RetryWorker that drains the analysis retry queue:
- Runs one drain pass immediately on start, then one per interval
- Skips a tick while the previous pass is still running (single-flight)
- Takes the shared drain lease before each pass when several instances run
- Isolates every job: one job's failure never aborts the batch
- Handles graceful shutdown via SIGTERM/SIGINT when run standalone
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, NoReturn

from pulseguard.db.models.base import RetryJobStatus
from pulseguard.services.analysis_types import FallbackAnalysis, ReadingSnapshot
from pulseguard.services.leases import RETRY_DRAIN_LEASE, LeaseError, LeaseService
from pulseguard.services.readings import ReadingStore, lookup_subject_info
from pulseguard.services.retry_queue import RetryQueueService

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from pulseguard.core.config import RetrySettings, WorkerSettings
    from pulseguard.db.models.retry_jobs import RetryJob
    from pulseguard.services.analysis import AnalysisInvoker

logger = logging.getLogger(__name__)


class AnalysisRetryError(Exception):
    """A retry attempt produced no verified analysis."""

    pass


@dataclass
class WorkerState:
    """Everything the worker tracks about itself.

    Attributes:
        is_draining: Single-flight flag; set while a drain pass runs.
        started_at: When start() was called.
        passes_run: Drain passes that ran to completion.
        passes_skipped: Ticks or requests skipped (busy or lease held elsewhere).
        jobs_succeeded: Jobs completed with a verified analysis.
        jobs_failed: Jobs whose attempt failed (rescheduled or exhausted).
        last_pass_started_at: Start of the most recent pass.
        last_pass_finished_at: End of the most recent pass.
        last_error: Last error that escaped a pass, if any.
    """

    is_draining: bool = False
    started_at: datetime | None = None
    passes_run: int = 0
    passes_skipped: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    last_pass_started_at: datetime | None = None
    last_pass_finished_at: datetime | None = None
    last_error: str | None = None

    def snapshot(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DrainResult:
    """Counts for one drain pass."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class RetryWorker:
    """Periodic, single-flight drainer of the analysis retry queue.

    Example:
        worker = RetryWorker(session_factory, invoker, settings.worker, settings.retry)
        stop = await worker.start()
        ...
        await stop()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        invoker: AnalysisInvoker,
        config: WorkerSettings,
        retry_config: RetrySettings,
        *,
        history_limit: int = 5,
    ) -> None:
        """Initialize the worker.

        Args:
            session_factory: Factory for per-job sessions.
            invoker: Analysis invoker (its retry reporter is not used here).
            config: Interval, batch size, deadline and lease settings.
            retry_config: Backoff policy for rescheduling.
            history_limit: Prior readings sent with each retry.
        """
        self.session_factory = session_factory
        self.invoker = invoker
        self.config = config
        self.retry_config = retry_config
        self.history_limit = history_limit
        self.state = WorkerState()
        self._shutdown_event = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._drain_task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> Callable[[], Awaitable[None]]:
        """Start the periodic loop and return its stop handle."""
        if self.is_running:
            return self.stop

        self._shutdown_event.clear()
        self.state.started_at = datetime.now(UTC)
        self._loop_task = asyncio.create_task(self._run_loop(), name="retry-worker-loop")
        logger.info(
            "Retry worker started: worker_id=%s, interval=%ss, batch_size=%d",
            self.config.worker_id,
            self.config.interval_seconds,
            self.config.batch_size,
        )
        return self.stop

    async def stop(self) -> None:
        """Halt future passes and wait (bounded) for an in-flight pass."""
        if self._loop_task is None:
            return

        logger.info("Retry worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()
        try:
            await asyncio.wait_for(self._loop_task, timeout=self.config.shutdown_timeout)
        except TimeoutError:
            logger.warning("Retry worker did not stop within timeout, pass cancelled")
        self._loop_task = None

        logger.info(
            "Retry worker stopped: worker_id=%s, passes=%d, skipped=%d, succeeded=%d, failed=%d",
            self.config.worker_id,
            self.state.passes_run,
            self.state.passes_skipped,
            self.state.jobs_succeeded,
            self.state.jobs_failed,
        )

    async def _run_loop(self) -> None:
        try:
            while not self._shutdown_event.is_set():
                self._tick()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.config.interval_seconds,
                    )
        except asyncio.CancelledError:
            if self._drain_task is not None:
                self._drain_task.cancel()
            raise

        # Cancelling this task while it waits here cancels the pass as well
        if self._drain_task is not None:
            await self._drain_task

    def _tick(self) -> None:
        """Start a pass in the background unless one is still running."""
        if self.state.is_draining:
            self.state.passes_skipped += 1
            logger.info("Previous drain pass still running, skipping tick")
            return
        self._drain_task = asyncio.create_task(self._guarded_drain(), name="retry-worker-drain")

    async def _guarded_drain(self) -> None:
        try:
            await self.drain_once()
        except Exception as e:
            # The loop must survive anything a pass throws
            logger.exception("Error in retry drain pass: %s", e)
            self.state.last_error = str(e)

    async def drain_once(self, limit: int | None = None) -> DrainResult | None:
        """Run one drain pass now.

        Args:
            limit: Maximum jobs to process; defaults to the batch size.

        Returns:
            Counts for the pass, or None if it was skipped because a pass is
            already running or another instance holds the lease.
        """
        # No await between the check and the set
        if self.state.is_draining:
            self.state.passes_skipped += 1
            return None
        self.state.is_draining = True

        try:
            if self.config.lease_enabled and not await self._acquire_lease():
                self.state.passes_skipped += 1
                return None
            try:
                return await self._drain(limit or self.config.batch_size)
            finally:
                if self.config.lease_enabled:
                    await self._release_lease()
        finally:
            self.state.is_draining = False

    async def _drain(self, limit: int) -> DrainResult:
        self.state.last_pass_started_at = datetime.now(UTC)

        async with self.session_factory() as session:
            queue = RetryQueueService(session, self.retry_config)
            await queue.recover_stale(self.config.stale_after_seconds)
            jobs = await queue.select_batch(limit)
            job_ids = [job.job_id for job in jobs]
            await session.commit()

        succeeded = failed = skipped = 0
        for job_id in job_ids:
            if self._shutdown_event.is_set():
                skipped += 1
                continue
            try:
                outcome = await self._process_job(job_id)
            except Exception as e:
                # Job stays in processing; recover_stale returns it to pending
                logger.exception("Could not record outcome of retry job %s: %s", job_id, e)
                self.state.last_error = str(e)
                failed += 1
                continue

            if outcome is None:
                skipped += 1
            elif outcome:
                succeeded += 1
            else:
                failed += 1

        self.state.passes_run += 1
        self.state.jobs_succeeded += succeeded
        self.state.jobs_failed += failed
        self.state.last_pass_finished_at = datetime.now(UTC)

        result = DrainResult(
            processed=succeeded + failed,
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
        )
        if job_ids:
            logger.info(
                "Drain pass finished: processed=%d, succeeded=%d, failed=%d, skipped=%d",
                result.processed,
                result.succeeded,
                result.failed,
                result.skipped,
            )
        return result

    async def _process_job(self, job_id: uuid.UUID) -> bool | None:
        """Attempt one job.

        Returns:
            True on success, False on a recorded failure, None if the job was
            no longer pending when the worker reached it.
        """
        async with self.session_factory() as session:
            queue = RetryQueueService(session, self.retry_config)
            job = await queue.get_job(job_id)
            if job is None or job.status != RetryJobStatus.PENDING:
                return None
            await queue.mark_processing(job)
            await session.commit()

            try:
                await self._analyze(session, queue, job)
                await session.commit()
                return True
            except AnalysisRetryError as e:
                logger.warning("Retry attempt failed: job_id=%s, error=%s", job_id, e)
                error = str(e)
                await session.rollback()
            except Exception as e:
                logger.exception("Retry job failed: job_id=%s, error=%s", job_id, e)
                error = str(e) or type(e).__name__
                await session.rollback()

        # Create a new session for the failure update
        async with self.session_factory() as fail_session:
            fail_queue = RetryQueueService(fail_session, self.retry_config)
            fail_job = await fail_queue.get_job(job_id)
            if fail_job is None:
                return False
            will_retry = await fail_queue.record_failure(fail_job, error)
            await fail_session.commit()

        if not will_retry:
            logger.warning("Retry job exhausted: job_id=%s", job_id)
        return False

    async def _analyze(
        self,
        session: AsyncSession,
        queue: RetryQueueService,
        job: RetryJob,
    ) -> None:
        """Obtain and store a verified analysis for the job's reading.

        Raises:
            AnalysisRetryError: If the reading is gone or no verified
                analysis was obtained.
        """
        store = ReadingStore(session)

        # Degrades to the placeholder subject; never aborts the retry
        subject = await lookup_subject_info(session, job.subject_id)

        reading = await store.get_reading(job.reading_id)
        if reading is None:
            raise AnalysisRetryError(f"Reading {job.reading_id} no longer exists")
        snapshot = ReadingSnapshot.from_model(reading)

        prior = await store.recent_for_subject(
            snapshot.subject_id,
            before=snapshot.recorded_at,
            limit=self.history_limit,
        )

        outcome = await self.invoker.invoke(
            snapshot,
            subject,
            self.config.analysis_timeout_seconds,
            history=[ReadingSnapshot.from_model(r) for r in prior],
            report_failure=False,
        )
        if isinstance(outcome, FallbackAnalysis):
            raise AnalysisRetryError(f"{outcome.reason.value}: {outcome.error}")

        await store.set_analysis(reading, outcome.result)
        await queue.mark_completed(job)

    async def _acquire_lease(self) -> bool:
        try:
            async with self.session_factory() as session:
                acquired = await LeaseService(session).acquire(
                    RETRY_DRAIN_LEASE,
                    self.config.worker_id,
                    self.config.lease_ttl_seconds,
                )
                await session.commit()
        except LeaseError as e:
            logger.error("Could not acquire drain lease, skipping pass: %s", e)
            self.state.last_error = str(e)
            return False

        if not acquired:
            logger.debug("Drain lease held by another instance, skipping pass")
        return acquired

    async def _release_lease(self) -> None:
        try:
            async with self.session_factory() as session:
                await LeaseService(session).release(RETRY_DRAIN_LEASE, self.config.worker_id)
                await session.commit()
        except LeaseError as e:
            # The lease expires on its own after its TTL
            logger.warning("Could not release drain lease: %s", e)


# Global shutdown event for signal handlers
_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


async def _async_main(shutdown_event: asyncio.Event) -> None:
    """Async entry point for the standalone worker.

    Args:
        shutdown_event: Event to signal shutdown request.
    """
    from pulseguard.core.settings import get_settings
    from pulseguard.db import close_engine, init_engine
    from pulseguard.services.analysis import AnalysisInvoker
    from pulseguard.services.classifier_client import ClassificationClient
    from pulseguard.services.retry_queue import make_retry_reporter

    settings = get_settings()
    session_factory = init_engine(settings.database)

    try:
        async with ClassificationClient(settings.classifier) as client:
            invoker = AnalysisInvoker(client, make_retry_reporter(session_factory, settings.retry))
            worker = RetryWorker(
                session_factory,
                invoker,
                settings.worker,
                settings.retry,
                history_limit=settings.ingestion.history_limit,
            )
            stop = await worker.start()
            await shutdown_event.wait()
            await stop()
    finally:
        await close_engine()


def run() -> NoReturn:
    """Run the standalone worker process.

    This is the main entry point for the worker. It:
    - Loads and validates settings from the environment
    - Sets up logging
    - Registers signal handlers for graceful shutdown
    - Runs the async worker loop
    """
    from pulseguard.core.settings import get_settings

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("PulseGuard retry worker starting...")

    async def _run_with_event() -> None:
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _async_main(_shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("PulseGuard retry worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
