"""Base model definitions, mixins, and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Common annotated column types for timestamps and UUIDs
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key with server-side default generation
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
]

# UUID foreign key (not nullable by default)
UUIDForeignKey = Annotated[uuid.UUID, mapped_column(UUID(as_uuid=True))]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

# Optional timestamp with timezone
OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum members by value so the database sees lowercase labels."""
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Declarative base for all PulseGuard models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class ReadingState(enum.Enum):
    """Severity of a vital-sign reading.

    Computed once at ingestion and never changed afterwards.

    Values:
        NORMAL: Every metric inside its normal range
        WARNING: At least one metric in a warning band, none in an alert band
        ALERT: At least one metric in an alert band
    """

    NORMAL = "normal"
    WARNING = "warning"
    ALERT = "alert"


class RetryJobStatus(enum.Enum):
    """Status of an analysis retry job.

    Values:
        PENDING: Waiting for next_retry_at to pass
        PROCESSING: Picked up by a worker drain pass
        COMPLETED: A verified analysis was written onto the reading
        FAILED: max_attempts reached; only an operator reset revives it
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (RetryJobStatus.PENDING, RetryJobStatus.PROCESSING)
