"""PulseGuard retry worker.

Periodic, single-flight drainer of the analysis retry queue. Runs
embedded in the API process by default, or standalone:

Usage:
    # Run as module
    python -m pulseguard.worker

    # Or via the console script
    pulseguard-worker
"""

from pulseguard.worker.main import (
    AnalysisRetryError,
    DrainResult,
    RetryWorker,
    WorkerState,
    run,
)

__all__ = ["AnalysisRetryError", "DrainResult", "RetryWorker", "WorkerState", "run"]
