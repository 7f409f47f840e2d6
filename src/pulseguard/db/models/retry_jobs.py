"""Analysis retry job model.

One row is one outstanding obligation to (re)obtain an analysis for a
reading. The partial unique index keeps at most one active (pending or
processing) job per reading, so concurrent enqueues collapse into one row.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Index, Text, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from pulseguard.db.models.base import (
    Base,
    RetryJobStatus,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
)


class RetryJob(Base):
    """Durable retry record for a reading whose analysis failed or is pending."""

    __tablename__ = "analysis_retry_jobs"
    # Fetch the onupdate timestamp with the UPDATE so it is readable after commit
    __mapper_args__ = {"eager_defaults": True}

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("now()"),
        onupdate=func.now(),
        nullable=False,
    )

    reading_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("readings.reading_id", ondelete="CASCADE"),
        nullable=False,
    )
    subject_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    status: Mapped[RetryJobStatus] = mapped_column(
        Enum(
            RetryJobStatus,
            name="retry_job_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=RetryJobStatus.PENDING,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(default=5, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Only meaningful while status is pending
    next_retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("attempts >= 0 AND attempts <= max_attempts", name="attempts_bounded"),
        CheckConstraint("max_attempts > 0", name="max_attempts_positive"),
        # Primary query for the worker: due pending jobs, oldest first
        Index("ix_analysis_retry_jobs_due", "status", "next_retry_at"),
        Index("ix_analysis_retry_jobs_updated_at", "updated_at"),
        Index(
            "uq_analysis_retry_jobs_active_reading",
            "reading_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
    )

    @property
    def is_active(self) -> bool:
        """Whether the job still counts against the one-active-job-per-reading rule."""
        return self.status in (RetryJobStatus.PENDING, RetryJobStatus.PROCESSING)
