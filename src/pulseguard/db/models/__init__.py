"""SQLAlchemy ORM models for PulseGuard.

This package contains all database models organized by domain:
- base: Common metadata, annotated column types, and enums
- readings: Subjects and vital-sign readings
- retry_jobs: Durable analysis retry queue
- leases: Named worker leases for multi-instance draining
"""

from pulseguard.db.models.base import (
    ACTIVE_JOB_STATUSES,
    Base,
    ReadingState,
    RetryJobStatus,
    metadata,
)
from pulseguard.db.models.leases import WorkerLease
from pulseguard.db.models.readings import Reading, Subject
from pulseguard.db.models.retry_jobs import RetryJob

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "Base",
    "Reading",
    "ReadingState",
    "RetryJob",
    "RetryJobStatus",
    "Subject",
    "WorkerLease",
    "metadata",
]
