"""Admin API router for the analysis retry queue.

Operator endpoints to inspect, reset, purge and drain retry jobs.
Authentication is out of scope; deploy behind a trusted network or proxy.
"""

from __future__ import annotations

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from pulseguard.api.dependencies import AppSettings, DbSession, Worker
from pulseguard.api.middleware.errors import StorageUnavailableError
from pulseguard.api.schemas.admin import (
    DrainResponse,
    RetryJobListResponse,
    RetryJobResponse,
    RetryQueueStatsResponse,
    WorkerStateResponse,
)
from pulseguard.db.models.base import RetryJobStatus
from pulseguard.services.retry_queue import (
    RetryJobConflictError,
    RetryJobNotFoundError,
    RetryQueueError,
    RetryQueueService,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin/retry-queue",
    tags=["admin"],
)


@router.get("", response_model=RetryJobListResponse, summary="List retry jobs")
async def list_jobs(
    session: DbSession,
    settings: AppSettings,
    status_filter: Annotated[
        RetryJobStatus | None, Query(alias="status", description="Filter by status")
    ] = None,
    page: Annotated[int, Query(ge=1, description="Page number")] = 1,
    page_size: Annotated[int, Query(ge=1, le=100, description="Items per page")] = 20,
) -> RetryJobListResponse:
    queue = RetryQueueService(session, settings.retry)
    try:
        jobs, total = await queue.list_jobs(status_filter, page=page, page_size=page_size)
    except RetryQueueError as e:
        raise StorageUnavailableError("Retry queue is unavailable") from e

    return RetryJobListResponse(
        items=[RetryJobResponse.model_validate(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/stats", response_model=RetryQueueStatsResponse, summary="Job counts per status")
async def get_stats(session: DbSession, settings: AppSettings) -> RetryQueueStatsResponse:
    try:
        stats = await RetryQueueService(session, settings.retry).stats()
    except RetryQueueError as e:
        raise StorageUnavailableError("Retry queue is unavailable") from e

    return RetryQueueStatsResponse(
        pending=stats.pending,
        processing=stats.processing,
        completed=stats.completed,
        failed=stats.failed,
        total=stats.total,
    )


@router.get("/worker", response_model=WorkerStateResponse, summary="Retry worker state")
async def get_worker_state(worker: Worker) -> WorkerStateResponse:
    if worker is None:
        return WorkerStateResponse(attached=False)
    return WorkerStateResponse(
        attached=True,
        running=worker.is_running,
        worker_id=worker.config.worker_id,
        **worker.state.snapshot(),
    )


@router.post("/process", response_model=DrainResponse, summary="Run a drain pass now")
async def process_now(
    worker: Worker,
    limit: Annotated[int | None, Query(ge=1, le=100, description="Jobs to process")] = None,
) -> DrainResponse:
    """Drain due jobs immediately instead of waiting for the next tick.

    Returns 409 if a pass is already running (here, or in another instance
    holding the drain lease).
    """
    if worker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No retry worker is attached to this process",
        )

    result = await worker.drain_once(limit)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A drain pass is already running",
        )

    logger.info("On-demand drain pass: processed=%d", result.processed)
    return DrainResponse(
        processed=result.processed,
        succeeded=result.succeeded,
        failed=result.failed,
        skipped=result.skipped,
    )


@router.post("/{job_id}/reset", response_model=RetryJobResponse, summary="Reset a job")
async def reset_job(job_id: UUID, session: DbSession, settings: AppSettings) -> RetryJobResponse:
    """Return a job to pending with its attempt count cleared."""
    queue = RetryQueueService(session, settings.retry)
    try:
        job = await queue.reset(job_id)
        await session.commit()
    except RetryJobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except RetryJobConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except RetryQueueError as e:
        raise StorageUnavailableError("Retry queue is unavailable") from e

    return RetryJobResponse.model_validate(job)


@router.delete(
    "/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a job",
)
async def delete_job(job_id: UUID, session: DbSession, settings: AppSettings) -> None:
    queue = RetryQueueService(session, settings.retry)
    try:
        await queue.delete(job_id)
    except RetryJobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except RetryQueueError as e:
        raise StorageUnavailableError("Retry queue is unavailable") from e
    await session.commit()
