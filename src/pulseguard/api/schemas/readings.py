"""Pydantic schemas for reading ingestion endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from pulseguard.db.models.base import ReadingState
from pulseguard.services.analysis_types import AnalysisResult, ReadingSnapshot
from pulseguard.services.ingestion import AnalysisStatus, IngestionResult
from pulseguard.services.severity import VitalSigns

# NaN and infinities are rejected at the boundary
Metric = Annotated[float, Field(allow_inf_nan=False)]


class ReadingCreate(BaseModel):
    """Request body for ingesting one reading."""

    subject_id: UUID = Field(..., description="Subject the reading belongs to")
    temperature: Metric = Field(..., description="Body temperature, degrees Celsius")
    heart_rate: Metric = Field(..., description="Heart rate, beats per minute")
    blood_oxygen: Metric = Field(..., description="Blood oxygen saturation, percent")
    hydration: Metric = Field(..., description="Hydration level, percent")
    respiration: Metric = Field(..., description="Respiration rate, breaths per minute")
    fatigue: Metric = Field(..., description="Fatigue score, 0-100")
    recorded_at: datetime | None = Field(
        None, description="When the reading was taken (defaults to now)"
    )

    def vital_signs(self) -> VitalSigns:
        return VitalSigns(
            temperature=self.temperature,
            heart_rate=self.heart_rate,
            blood_oxygen=self.blood_oxygen,
            hydration=self.hydration,
            respiration=self.respiration,
            fatigue=self.fatigue,
        )


class ReadingResponse(BaseModel):
    """A stored reading and the analysis currently attached to it."""

    model_config = ConfigDict(from_attributes=True)

    reading_id: UUID
    subject_id: UUID
    recorded_at: datetime
    state: ReadingState
    temperature: float
    heart_rate: float
    blood_oxygen: float
    hydration: float
    respiration: float
    fatigue: float
    analysis: AnalysisResult | None = None

    @classmethod
    def from_snapshot(
        cls, snapshot: ReadingSnapshot, analysis: AnalysisResult | None = None
    ) -> ReadingResponse:
        return cls(
            reading_id=snapshot.reading_id,
            subject_id=snapshot.subject_id,
            recorded_at=snapshot.recorded_at,
            state=snapshot.state,
            analysis=analysis,
            **snapshot.metrics.as_dict(),
        )


class IngestionResponse(BaseModel):
    """Response for POST /readings.

    Always returned for a stored reading; ``analysis_status`` and
    ``message`` say whether the analysis is verified, pending a retry, or
    a fallback.
    """

    reading: ReadingResponse
    analysis: AnalysisResult
    analysis_status: AnalysisStatus
    message: str
    retry_job_id: UUID | None = None

    @classmethod
    def from_result(cls, result: IngestionResult) -> IngestionResponse:
        return cls(
            reading=ReadingResponse.from_snapshot(result.reading, result.analysis),
            analysis=result.analysis,
            analysis_status=result.analysis_status,
            message=result.message,
            retry_job_id=result.retry_job_id,
        )
