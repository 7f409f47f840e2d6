"""Reading ingestion.

A reading is classified, persisted and committed before any analysis is
attempted, so analysis problems can never lose a reading. Alert readings
then get a synchronous analysis attempt bounded by the inline deadline;
normal and warning readings get the rule-based baseline (or, when
configured, an external attempt whose failure is not queued). An alert
reading with too little prior history is not sent inline at all: it gets
a provisional analysis and a queued retry, which the worker completes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from pulseguard.core.config import IngestionSettings
from pulseguard.db.models.base import ReadingState
from pulseguard.services.analysis_types import (
    FallbackReason,
    ReadingSnapshot,
    VerifiedAnalysis,
)
from pulseguard.services.fallback import baseline_analysis
from pulseguard.services.readings import (
    ReadingStore,
    ReadingStoreError,
    lookup_subject_info,
)
from pulseguard.services.severity import classify

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from pulseguard.db.models.readings import Reading
    from pulseguard.services.analysis import AnalysisInvoker
    from pulseguard.services.analysis_types import AnalysisOutcome, AnalysisResult
    from pulseguard.services.severity import VitalSigns

logger = logging.getLogger(__name__)


class AnalysisStatus(str, Enum):
    """What happened to the analysis of a freshly ingested reading."""

    ANALYZED = "analyzed"
    PENDING_RETRY = "pending_retry"
    FAILED_QUEUED = "failed_queued"
    FAILED_NOT_QUEUED = "failed_not_queued"
    RULE_BASED = "rule_based"


STATUS_MESSAGES: dict[AnalysisStatus, str] = {
    AnalysisStatus.ANALYZED: "Reading saved. Analysis completed.",
    AnalysisStatus.PENDING_RETRY: (
        "Reading saved. A provisional analysis is attached and the full analysis "
        "will be retried."
    ),
    AnalysisStatus.FAILED_QUEUED: (
        "Reading saved. Analysis failed; a fallback analysis is attached and the "
        "analysis has been queued for retry."
    ),
    AnalysisStatus.FAILED_NOT_QUEUED: (
        "Reading saved. Analysis failed and could not be queued for retry; a "
        "fallback analysis is attached."
    ),
    AnalysisStatus.RULE_BASED: "Reading saved with rule-based analysis.",
}


@dataclass(frozen=True)
class IngestionResult:
    """Outcome of one ingestion."""

    reading: ReadingSnapshot
    analysis: AnalysisResult
    analysis_status: AnalysisStatus
    retry_job_id: uuid.UUID | None = None

    @property
    def message(self) -> str:
        return STATUS_MESSAGES[self.analysis_status]


class IngestionService:
    """Classify, persist and analyze incoming readings.

    Commits the session: once after the reading is stored and once after
    its analysis is written.
    """

    def __init__(
        self,
        session: AsyncSession,
        invoker: AnalysisInvoker,
        settings: IngestionSettings | None = None,
    ) -> None:
        self.session = session
        self.invoker = invoker
        self.settings = settings or IngestionSettings()
        self.store = ReadingStore(session)

    async def ingest(
        self,
        subject_id: uuid.UUID,
        metrics: VitalSigns,
        recorded_at: datetime | None = None,
    ) -> IngestionResult:
        """Store a reading and attach the best analysis available in time.

        Raises:
            SubjectNotFoundError: If the subject does not exist.
            ReadingStoreError: If the reading itself cannot be stored.
        """
        state = classify(metrics)
        reading = await self.store.create_reading(subject_id, metrics, state, recorded_at)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to commit reading for subject_id=%s: %s", subject_id, e)
            raise ReadingStoreError(f"Failed to commit reading: {e}") from e

        snapshot = ReadingSnapshot.from_model(reading)
        subject = await lookup_subject_info(self.session, subject_id)

        if state != ReadingState.ALERT and not self.settings.analyze_non_alert_externally:
            result = baseline_analysis(snapshot.metrics, state, subject)
            await self._write_back(reading, result)
            return IngestionResult(snapshot, result, AnalysisStatus.RULE_BASED)

        history = await self._history(snapshot)
        outcome = await self.invoker.invoke(
            snapshot,
            subject,
            self.settings.inline_deadline_seconds,
            history=history or (),
            # An unknown history does not hold the analysis back
            min_history=self.settings.min_history_for_analysis if history is not None else 0,
            report_failure=state == ReadingState.ALERT,
        )
        status, retry_job_id = self._status_for(state, outcome)

        written = await self._write_back(reading, outcome.result)
        if not written and state == ReadingState.ALERT and retry_job_id is None:
            retry_job_id = await self._queue_unsaved(snapshot)
            if isinstance(outcome, VerifiedAnalysis) and retry_job_id is not None:
                status = AnalysisStatus.FAILED_QUEUED

        logger.info(
            "Reading ingested: reading_id=%s, state=%s, analysis_status=%s",
            snapshot.reading_id,
            state.value,
            status.value,
        )
        return IngestionResult(snapshot, outcome.result, status, retry_job_id)

    @staticmethod
    def _status_for(
        state: ReadingState, outcome: AnalysisOutcome
    ) -> tuple[AnalysisStatus, uuid.UUID | None]:
        if isinstance(outcome, VerifiedAnalysis):
            return AnalysisStatus.ANALYZED, None
        if state != ReadingState.ALERT:
            return AnalysisStatus.RULE_BASED, None
        if outcome.retry_job_id is None:
            return AnalysisStatus.FAILED_NOT_QUEUED, None
        if outcome.reason in (FallbackReason.TIMEOUT, FallbackReason.LIMITED_HISTORY):
            return AnalysisStatus.PENDING_RETRY, outcome.retry_job_id
        return AnalysisStatus.FAILED_QUEUED, outcome.retry_job_id

    async def _history(self, snapshot: ReadingSnapshot) -> list[ReadingSnapshot] | None:
        """Prior readings for trend context; None if the lookup fails."""
        try:
            async with self.session.begin_nested():
                prior = await self.store.recent_for_subject(
                    snapshot.subject_id,
                    before=snapshot.recorded_at,
                    limit=self.settings.history_limit,
                )
        except SQLAlchemyError as e:
            logger.warning("History lookup failed for subject_id=%s: %s", snapshot.subject_id, e)
            return None
        return [ReadingSnapshot.from_model(r) for r in prior]

    async def _write_back(self, reading: Reading, result: AnalysisResult) -> bool:
        """Persist the analysis; failures are logged and rolled back, never raised."""
        reading_id = reading.reading_id
        try:
            await self.store.set_analysis(reading, result)
            await self.session.commit()
        except (ReadingStoreError, SQLAlchemyError) as e:
            logger.error("Failed to write analysis for reading_id=%s: %s", reading_id, e)
            await self.session.rollback()
            return False
        return True

    async def _queue_unsaved(self, snapshot: ReadingSnapshot) -> uuid.UUID | None:
        if self.invoker.retry_reporter is None:
            return None
        return await self.invoker.retry_reporter(
            snapshot.reading_id,
            snapshot.subject_id,
            "Analysis could not be saved on the reading",
        )
