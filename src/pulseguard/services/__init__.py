"""PulseGuard service layer.

- severity: Reading severity classification (normal/warning/alert)
- fallback: Locally generated analyses
- classifier_client: External classification service client
- analysis: Deadline-bounded analysis invocation
- retry_queue: Durable retry queue and backoff policy
- leases: Named worker leases for multi-instance draining
- readings: Reading persistence and subject lookup
- ingestion: Reading ingestion orchestration
"""

from pulseguard.services.analysis import AnalysisInvoker
from pulseguard.services.analysis_types import (
    AnalysisOutcome,
    AnalysisResult,
    ClassifierAnalysis,
    ConfidenceLevel,
    FallbackAnalysis,
    FallbackReason,
    ReadingSnapshot,
    RiskLevel,
    SubjectInfo,
    VerifiedAnalysis,
)
from pulseguard.services.classifier_client import (
    ClassificationClient,
    ClassificationRequest,
    ClassifierError,
)
from pulseguard.services.ingestion import AnalysisStatus, IngestionResult, IngestionService
from pulseguard.services.retry_queue import (
    RetryJobConflictError,
    RetryJobNotFoundError,
    RetryQueueError,
    RetryQueueService,
    RetryQueueStats,
    compute_backoff,
    make_retry_reporter,
)
from pulseguard.services.severity import VitalSigns, classify

__all__ = [
    "AnalysisInvoker",
    "AnalysisOutcome",
    "AnalysisResult",
    "AnalysisStatus",
    "ClassificationClient",
    "ClassificationRequest",
    "ClassifierAnalysis",
    "ClassifierError",
    "ConfidenceLevel",
    "FallbackAnalysis",
    "FallbackReason",
    "IngestionResult",
    "IngestionService",
    "ReadingSnapshot",
    "RetryJobConflictError",
    "RetryJobNotFoundError",
    "RetryQueueError",
    "RetryQueueService",
    "RetryQueueStats",
    "RiskLevel",
    "SubjectInfo",
    "VerifiedAnalysis",
    "VitalSigns",
    "classify",
    "compute_backoff",
    "make_retry_reporter",
]
