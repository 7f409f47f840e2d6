"""Typed values exchanged by the analysis subsystem.

- ClassifierAnalysis: the structure the external classification service returns
- AnalysisResult: what is stored on a Reading, tagged with its confidence level
- VerifiedAnalysis / FallbackAnalysis: outcome of one invocation, so a fallback
  can never be mistaken for an externally verified result
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from pulseguard.services.severity import VitalSigns

if TYPE_CHECKING:
    import uuid

    from pulseguard.db.models import Reading, ReadingState, Subject


class RiskLevel(str, Enum):
    """Risk level reported by an analysis."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ConfidenceLevel(str, Enum):
    """Where an analysis came from.

    Values:
        VERIFIED: Returned by the external classification service
        PROVISIONAL: Too little history, or the inline deadline elapsed;
            a retry is pending
        FALLBACK: External service failed; generated locally
        RULE_BASED: Baseline analysis for normal/warning readings
    """

    VERIFIED = "verified"
    PROVISIONAL = "provisional"
    FALLBACK = "fallback"
    RULE_BASED = "rule_based"


class FallbackReason(str, Enum):
    """Why an invocation fell back to a local analysis."""

    TIMEOUT = "timeout"
    SERVICE_ERROR = "service_error"
    INVALID_RESPONSE = "invalid_response"
    LIMITED_HISTORY = "limited_history"


class ClassifierAnalysis(BaseModel):
    """Analysis document the external service must return."""

    model_config = ConfigDict(extra="ignore")

    summary: str = Field(description="A brief summary of the subject's health status")
    recommendations: list[str] = Field(
        description="Actionable recommendations, most important first"
    )
    risk_level: RiskLevel = Field(description="Risk level based on the readings")
    potential_issues: list[str] = Field(description="Potential health issues identified")
    replacement_needed: bool = Field(description="Whether the subject should be replaced")
    recovery_time_estimate: str | None = Field(
        default=None,
        description="Estimated recovery time if issues are detected",
    )
    priority_action: str = Field(
        description="The single most important action to take immediately"
    )


class AnalysisResult(ClassifierAnalysis):
    """Analysis stored on a Reading."""

    confidence_level: ConfidenceLevel
    readings_analyzed: int = Field(default=1, ge=0)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_classifier(
        cls,
        analysis: ClassifierAnalysis,
        *,
        readings_analyzed: int = 1,
    ) -> AnalysisResult:
        """Wrap an external analysis as a verified result."""
        return cls(
            **analysis.model_dump(),
            confidence_level=ConfidenceLevel.VERIFIED,
            readings_analyzed=readings_analyzed,
        )

    @property
    def is_verified(self) -> bool:
        return self.confidence_level == ConfidenceLevel.VERIFIED

    def to_storage(self) -> dict[str, Any]:
        """JSON-compatible form for the JSONB column."""
        return self.model_dump(mode="json")


@dataclass(frozen=True)
class SubjectInfo:
    """Descriptor of the monitored subject sent with each analysis request."""

    name: str
    position: str

    @classmethod
    def from_model(cls, subject: Subject | None) -> SubjectInfo:
        """Build from a Subject row, substituting placeholders for missing fields."""
        if subject is None:
            return UNKNOWN_SUBJECT
        name = subject.name if isinstance(subject.name, str) and subject.name else None
        position = (
            subject.position if isinstance(subject.position, str) and subject.position else None
        )
        return cls(
            name=name or UNKNOWN_SUBJECT.name,
            position=position or UNKNOWN_SUBJECT.position,
        )


UNKNOWN_SUBJECT = SubjectInfo(name="Unknown Subject", position="Unknown Position")


@dataclass(frozen=True)
class ReadingSnapshot:
    """Immutable view of a Reading, detached from any session."""

    reading_id: uuid.UUID
    subject_id: uuid.UUID
    metrics: VitalSigns
    state: ReadingState
    recorded_at: datetime

    @classmethod
    def from_model(cls, reading: Reading) -> ReadingSnapshot:
        return cls(
            reading_id=reading.reading_id,
            subject_id=reading.subject_id,
            metrics=VitalSigns.from_object(reading),
            state=reading.state,
            recorded_at=reading.recorded_at,
        )


@dataclass(frozen=True)
class VerifiedAnalysis:
    """The external service answered in time with a valid analysis."""

    result: AnalysisResult


@dataclass(frozen=True)
class FallbackAnalysis:
    """A locally generated analysis standing in for a failed external call.

    Attributes:
        result: Provisional or fallback analysis (never VERIFIED).
        reason: What went wrong.
        error: Failure message recorded on the retry job.
        retry_job_id: Job the failure was queued under, if it was queued.
    """

    result: AnalysisResult
    reason: FallbackReason
    error: str
    retry_job_id: uuid.UUID | None = None


AnalysisOutcome = VerifiedAnalysis | FallbackAnalysis
