"""Analysis invocation with a bounded deadline.

The external call is wrapped in ``asyncio.wait_for``: when the deadline
elapses the call is cancelled, so a late answer can never be written back
after the caller has moved on. Every failure yields a locally generated
analysis tagged with why it was needed, and (unless the caller opts out)
is reported to the retry queue for the same reading.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from pulseguard.services.analysis_types import (
    AnalysisOutcome,
    AnalysisResult,
    ConfidenceLevel,
    FallbackAnalysis,
    FallbackReason,
    VerifiedAnalysis,
)
from pulseguard.services.classifier_client import (
    ClassificationRequest,
    ClassifierError,
    ClassifierResponseError,
    ClassifierTimeoutError,
)
from pulseguard.services.fallback import fallback_for

if TYPE_CHECKING:
    from collections.abc import Sequence

    from pulseguard.services.analysis_types import ReadingSnapshot, SubjectInfo
    from pulseguard.services.classifier_client import ClassificationClient
    from pulseguard.services.retry_queue import RetryReporter

logger = logging.getLogger(__name__)


class AnalysisInvoker:
    """Calls the classification service and degrades to local analyses.

    Attributes:
        client: Open ClassificationClient.
        retry_reporter: Queues a failed reading for retry; returns the job id
            or None if queueing itself failed.
    """

    def __init__(
        self,
        client: ClassificationClient,
        retry_reporter: RetryReporter | None = None,
    ) -> None:
        self.client = client
        self.retry_reporter = retry_reporter

    async def invoke(
        self,
        reading: ReadingSnapshot,
        subject: SubjectInfo,
        deadline: float,
        *,
        history: Sequence[ReadingSnapshot] = (),
        min_history: int = 0,
        report_failure: bool = True,
    ) -> AnalysisOutcome:
        """Obtain an analysis for one reading within ``deadline`` seconds.

        Args:
            reading: Reading to analyze.
            subject: Subject descriptor (may be the placeholder).
            deadline: Seconds before the external call is cancelled.
            history: Prior readings sent as trend context.
            min_history: Prior readings required before the external service
                is asked. With fewer, the service is not called and a
                provisional analysis is returned (and reported) instead.
            report_failure: Queue a retry on failure. The worker disables
                this because it records the failure on the job itself.

        Returns:
            VerifiedAnalysis on success, FallbackAnalysis otherwise. Never raises
            for classification failures.
        """
        request = ClassificationRequest(reading=reading, subject=subject, history=tuple(history))

        if len(request.history) < min_history:
            return await self._fall_back(
                request,
                FallbackReason.LIMITED_HISTORY,
                f"Only {len(request.history)} prior reading(s); {min_history} required",
                ConfidenceLevel.PROVISIONAL,
                report_failure,
            )

        try:
            analysis = await asyncio.wait_for(self.client.classify(request), timeout=deadline)
        except TimeoutError:
            return await self._fall_back(
                request,
                FallbackReason.TIMEOUT,
                f"Analysis timed out after {deadline:g}s",
                ConfidenceLevel.PROVISIONAL,
                report_failure,
            )
        except ClassifierTimeoutError as e:
            return await self._fall_back(
                request, FallbackReason.TIMEOUT, str(e), ConfidenceLevel.FALLBACK, report_failure
            )
        except ClassifierResponseError as e:
            return await self._fall_back(
                request,
                FallbackReason.INVALID_RESPONSE,
                str(e),
                ConfidenceLevel.FALLBACK,
                report_failure,
            )
        except ClassifierError as e:
            return await self._fall_back(
                request,
                FallbackReason.SERVICE_ERROR,
                str(e),
                ConfidenceLevel.FALLBACK,
                report_failure,
            )
        except Exception as e:
            logger.exception(
                "Unexpected error analyzing reading_id=%s", reading.reading_id
            )
            return await self._fall_back(
                request,
                FallbackReason.SERVICE_ERROR,
                f"Unexpected error: {e}",
                ConfidenceLevel.FALLBACK,
                report_failure,
            )

        logger.info(
            "Verified analysis obtained: reading_id=%s, risk_level=%s",
            reading.reading_id,
            analysis.risk_level.value,
        )
        return VerifiedAnalysis(
            result=AnalysisResult.from_classifier(
                analysis, readings_analyzed=request.readings_analyzed
            )
        )

    async def _fall_back(
        self,
        request: ClassificationRequest,
        reason: FallbackReason,
        error: str,
        confidence: ConfidenceLevel,
        report_failure: bool,
    ) -> FallbackAnalysis:
        reading = request.reading
        logger.warning(
            "Using local analysis: reading_id=%s, reason=%s, error=%s",
            reading.reading_id,
            reason.value,
            error,
        )

        result = fallback_for(
            reading.metrics,
            reading.state,
            request.subject,
            confidence=confidence,
            readings_analyzed=request.readings_analyzed,
        )

        retry_job_id = None
        if report_failure and self.retry_reporter is not None:
            retry_job_id = await self.retry_reporter(reading.reading_id, reading.subject_id, error)

        return FallbackAnalysis(
            result=result,
            reason=reason,
            error=error,
            retry_job_id=retry_job_id,
        )
