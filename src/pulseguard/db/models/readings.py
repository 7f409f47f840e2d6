"""Subject and reading models.

A Subject is the monitored person; subject management lives outside this
service, which only reads the descriptor used in analysis requests.

A Reading is one vital-sign sample. Its state is derived at ingestion and
is immutable; its analysis is written by the ingestion path (inline) or
by the retry worker.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Enum, Float, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from pulseguard.db.models.base import (
    Base,
    ReadingState,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
)


class Subject(Base):
    """A monitored subject (e.g., a player) with its role attribute."""

    __tablename__ = "subjects"

    subject_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Role on the field; drives position-specific caveats in fallback analysis
    position: Mapped[str] = mapped_column(String(100), nullable=False, default="")


class Reading(Base):
    """One vital-sign sample for a subject."""

    __tablename__ = "readings"

    reading_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    subject_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("subjects.subject_id", ondelete="CASCADE"),
        nullable=False,
    )

    # When the sample was taken (may differ from created_at for batched uploads)
    recorded_at: Mapped[TimestampTZ]

    temperature: Mapped[float] = mapped_column(Float, nullable=False)
    heart_rate: Mapped[float] = mapped_column(Float, nullable=False)
    blood_oxygen: Mapped[float] = mapped_column(Float, nullable=False)
    hydration: Mapped[float] = mapped_column(Float, nullable=False)
    respiration: Mapped[float] = mapped_column(Float, nullable=False)
    fatigue: Mapped[float] = mapped_column(Float, nullable=False)

    state: Mapped[ReadingState] = mapped_column(
        Enum(
            ReadingState,
            name="reading_state",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )

    # Serialized AnalysisResult; confidence_level tells verified from fallback
    analysis: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        Index("ix_readings_subject_recorded", "subject_id", "recorded_at"),
        Index("ix_readings_state", "state"),
    )
