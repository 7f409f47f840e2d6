"""Allow running the worker with ``python -m pulseguard.worker``."""

from pulseguard.worker.main import run

run()
