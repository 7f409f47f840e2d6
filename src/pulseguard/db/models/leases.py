"""Worker lease model.

A named, time-bounded lease lets several service instances share one retry
queue while only one of them drains it at a time.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from pulseguard.db.models.base import Base, TimestampTZ


class WorkerLease(Base):
    """Current holder of a named lease."""

    __tablename__ = "worker_leases"

    lease_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # A lease past this instant may be taken over by any owner
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def is_expired(self, now: datetime) -> bool:
        """Check whether the lease can be taken over at ``now``."""
        return self.expires_at <= now
