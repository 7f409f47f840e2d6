"""Pydantic schemas for the PulseGuard API.

This package contains request/response schemas organized by API namespace.
"""

from pulseguard.api.schemas.admin import (
    DrainResponse,
    RetryJobListResponse,
    RetryJobResponse,
    RetryQueueStatsResponse,
    WorkerStateResponse,
)
from pulseguard.api.schemas.readings import (
    IngestionResponse,
    ReadingCreate,
    ReadingResponse,
)

__all__ = [
    "DrainResponse",
    "IngestionResponse",
    "ReadingCreate",
    "ReadingResponse",
    "RetryJobListResponse",
    "RetryJobResponse",
    "RetryQueueStatsResponse",
    "WorkerStateResponse",
]
