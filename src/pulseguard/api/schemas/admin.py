"""Pydantic schemas for the retry queue admin endpoints.

These expose per-job status and last_error for operator triage, queue
counts, and the state of the worker attached to this process.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from pulseguard.db.models.base import RetryJobStatus


class RetryJobResponse(BaseModel):
    """One analysis retry job."""

    model_config = ConfigDict(from_attributes=True)

    job_id: UUID
    reading_id: UUID
    subject_id: UUID
    status: RetryJobStatus
    attempts: int
    max_attempts: int
    last_error: str | None = None
    next_retry_at: datetime
    created_at: datetime
    updated_at: datetime


class RetryJobListResponse(BaseModel):
    """Paginated list of retry jobs."""

    items: list[RetryJobResponse]
    total: int = Field(..., description="Jobs matching the filter")
    page: int
    page_size: int


class RetryQueueStatsResponse(BaseModel):
    """Job counts per status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class WorkerStateResponse(BaseModel):
    """State of the retry worker attached to this process."""

    attached: bool = Field(..., description="Whether a worker runs in this process")
    running: bool = False
    worker_id: str | None = None
    is_draining: bool = False
    started_at: datetime | None = None
    passes_run: int = 0
    passes_skipped: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    last_pass_started_at: datetime | None = None
    last_pass_finished_at: datetime | None = None
    last_error: str | None = None


class DrainResponse(BaseModel):
    """Counts for an on-demand drain pass."""

    processed: int
    succeeded: int
    failed: int
    skipped: int
