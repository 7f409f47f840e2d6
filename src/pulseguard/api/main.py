"""PulseGuard API service entry point.

This module provides the application instance for ASGI servers (uvicorn)
and a run() function for direct execution.
"""

import logging

from pulseguard.api import create_app
from pulseguard.api.middleware import RequestIDLogFilter

logger = logging.getLogger(__name__)

# This is what uvicorn references: pulseguard.api.main:app
app = create_app()


def configure_logging(level: str) -> None:
    """Log to stderr with the request ID on every line."""
    handler = logging.StreamHandler()
    handler.addFilter(RequestIDLogFilter())
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s",
        handlers=[handler],
    )


def run() -> None:
    """Run the API server using uvicorn.

    This function is called by the pulseguard-api console script
    defined in pyproject.toml.
    """
    import uvicorn

    from pulseguard.core.settings import get_settings

    settings = get_settings()
    configure_logging(settings.log_level)

    logger.info("Starting PulseGuard API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "pulseguard.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    run()
