"""Tests for deadline-bounded analysis invocation.

Tests cover:
- Verified result on success
- Deadline expiry: provisional result, external call cancelled
- Too little history: provisional result without calling the service
- Mapping of classifier errors to fallback reasons
- Retry reporting (and opting out of it)
"""

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from pulseguard.services.analysis import AnalysisInvoker
from pulseguard.services.analysis_types import (
    ClassifierAnalysis,
    ConfidenceLevel,
    FallbackAnalysis,
    FallbackReason,
    RiskLevel,
    VerifiedAnalysis,
)
from pulseguard.services.classifier_client import (
    ClassifierConnectionError,
    ClassifierNotConfiguredError,
    ClassifierResponseError,
    ClassifierServiceError,
    ClassifierTimeoutError,
)
from tests.factories import create_snapshot

VERIFIED = ClassifierAnalysis(
    summary="Heat stress detected.",
    recommendations=["Remove from play"],
    risk_level=RiskLevel.HIGH,
    potential_issues=["Hyperthermia"],
    replacement_needed=True,
    recovery_time_estimate=None,
    priority_action="Cool down",
)


def make_client(*, result=None, error=None) -> MagicMock:
    client = MagicMock()
    client.classify = AsyncMock(return_value=result, side_effect=error)
    return client


@pytest.fixture
def reporter():
    return AsyncMock(return_value=uuid.uuid4())


class TestInvokeSuccess:
    """Tests for a successful external call."""

    @pytest.mark.asyncio
    async def test_returns_verified(self, alert_metrics, subject_info, reporter):
        invoker = AnalysisInvoker(make_client(result=VERIFIED), reporter)

        outcome = await invoker.invoke(create_snapshot(alert_metrics), subject_info, 5)

        assert isinstance(outcome, VerifiedAnalysis)
        assert outcome.result.confidence_level == ConfidenceLevel.VERIFIED
        assert outcome.result.summary == "Heat stress detected."
        assert outcome.result.readings_analyzed == 1
        reporter.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_history_is_sent(self, alert_metrics, normal_metrics, subject_info):
        client = make_client(result=VERIFIED)
        invoker = AnalysisInvoker(client)
        history = [create_snapshot(normal_metrics), create_snapshot(normal_metrics)]

        outcome = await invoker.invoke(
            create_snapshot(alert_metrics), subject_info, 5, history=history
        )

        request = client.classify.await_args.args[0]
        assert len(request.history) == 2
        assert outcome.result.readings_analyzed == 3


class TestInvokeDeadline:
    """Tests for the inline deadline."""

    @pytest.mark.asyncio
    async def test_deadline_returns_provisional_and_cancels_call(
        self, alert_metrics, subject_info, reporter
    ):
        cancelled = asyncio.Event()

        async def slow_classify(request):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return VERIFIED

        client = MagicMock()
        client.classify = slow_classify
        invoker = AnalysisInvoker(client, reporter)
        reading = create_snapshot(alert_metrics)

        outcome = await invoker.invoke(reading, subject_info, 0.05)

        assert isinstance(outcome, FallbackAnalysis)
        assert outcome.reason == FallbackReason.TIMEOUT
        assert outcome.result.confidence_level == ConfidenceLevel.PROVISIONAL
        assert "limited data" in outcome.result.summary
        assert outcome.retry_job_id == reporter.return_value
        assert cancelled.is_set()
        reporter.assert_awaited_once_with(reading.reading_id, reading.subject_id, outcome.error)



class TestInvokeLimitedHistory:
    """Tests for alert readings with too little prior history."""

    @pytest.mark.asyncio
    async def test_provisional_without_external_call(
        self, alert_metrics, subject_info, reporter
    ):
        client = make_client(result=VERIFIED)
        invoker = AnalysisInvoker(client, reporter)
        reading = create_snapshot(alert_metrics)

        outcome = await invoker.invoke(reading, subject_info, 5, min_history=1)

        assert isinstance(outcome, FallbackAnalysis)
        assert outcome.reason == FallbackReason.LIMITED_HISTORY
        assert outcome.result.confidence_level == ConfidenceLevel.PROVISIONAL
        assert outcome.result.readings_analyzed == 1
        assert "(1 reading)" in outcome.result.summary
        assert outcome.retry_job_id == reporter.return_value
        client.classify.assert_not_awaited()
        reporter.assert_awaited_once_with(reading.reading_id, reading.subject_id, outcome.error)

    @pytest.mark.asyncio
    async def test_counts_prior_readings(
        self, alert_metrics, normal_metrics, subject_info, reporter
    ):
        client = make_client(result=VERIFIED)
        invoker = AnalysisInvoker(client, reporter)
        history = [create_snapshot(normal_metrics)]

        outcome = await invoker.invoke(
            create_snapshot(alert_metrics), subject_info, 5, history=history, min_history=2
        )

        assert outcome.reason == FallbackReason.LIMITED_HISTORY
        assert outcome.result.readings_analyzed == 2
        assert "(2 readings)" in outcome.result.summary
        client.classify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enough_history_calls_service(
        self, alert_metrics, normal_metrics, subject_info, reporter
    ):
        client = make_client(result=VERIFIED)
        invoker = AnalysisInvoker(client, reporter)

        outcome = await invoker.invoke(
            create_snapshot(alert_metrics),
            subject_info,
            5,
            history=[create_snapshot(normal_metrics)],
            min_history=1,
        )

        assert isinstance(outcome, VerifiedAnalysis)
        client.classify.assert_awaited_once()
        reporter.assert_not_awaited()

class TestInvokeFailures:
    """Tests for mapping classifier failures onto fallbacks."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "reason"),
        [
            (ClassifierTimeoutError("http timeout"), FallbackReason.TIMEOUT),
            (ClassifierResponseError("bad json"), FallbackReason.INVALID_RESPONSE),
            (ClassifierServiceError("500", status_code=500), FallbackReason.SERVICE_ERROR),
            (ClassifierConnectionError("refused"), FallbackReason.SERVICE_ERROR),
            (ClassifierNotConfiguredError("no key"), FallbackReason.SERVICE_ERROR),
            (ValueError("unexpected"), FallbackReason.SERVICE_ERROR),
        ],
    )
    async def test_failure_yields_fallback(
        self, alert_metrics, subject_info, reporter, error, reason
    ):
        invoker = AnalysisInvoker(make_client(error=error), reporter)

        outcome = await invoker.invoke(create_snapshot(alert_metrics), subject_info, 5)

        assert isinstance(outcome, FallbackAnalysis)
        assert outcome.reason == reason
        assert outcome.result.confidence_level == ConfidenceLevel.FALLBACK
        assert outcome.result.risk_level == RiskLevel.HIGH
        assert outcome.retry_job_id == reporter.return_value
        reporter.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_report_failure_disabled(self, alert_metrics, subject_info, reporter):
        invoker = AnalysisInvoker(make_client(error=ClassifierServiceError("down")), reporter)

        outcome = await invoker.invoke(
            create_snapshot(alert_metrics), subject_info, 5, report_failure=False
        )

        assert outcome.retry_job_id is None
        reporter.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reporter_failure_leaves_job_id_empty(self, alert_metrics, subject_info):
        reporter = AsyncMock(return_value=None)
        invoker = AnalysisInvoker(make_client(error=ClassifierServiceError("down")), reporter)

        outcome = await invoker.invoke(create_snapshot(alert_metrics), subject_info, 5)

        assert isinstance(outcome, FallbackAnalysis)
        assert outcome.retry_job_id is None

    @pytest.mark.asyncio
    async def test_warning_reading_falls_back_to_baseline(self, warning_metrics, subject_info):
        invoker = AnalysisInvoker(make_client(error=ClassifierServiceError("down")))

        outcome = await invoker.invoke(create_snapshot(warning_metrics), subject_info, 5)

        assert outcome.result.confidence_level == ConfidenceLevel.RULE_BASED
        assert outcome.result.risk_level == RiskLevel.MEDIUM
