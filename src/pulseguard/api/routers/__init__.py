"""PulseGuard API routers.

- readings: Reading ingestion and lookup
- admin: Analysis retry queue operations
"""

from pulseguard.api.routers.admin import router as admin_router
from pulseguard.api.routers.readings import router as readings_router

__all__ = ["admin_router", "readings_router"]
