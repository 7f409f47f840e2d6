"""FastAPI dependencies shared by the routers.

The application objects (settings, invoker, worker) live on
``app.state`` and are created by the lifespan in ``create_app``.
Tests replace these through ``app.dependency_overrides``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from pulseguard.core.config import Settings
from pulseguard.services.analysis import AnalysisInvoker
from pulseguard.worker.main import RetryWorker


async def get_db_session() -> AsyncIterator[AsyncSession]:
    """Get database session.

    Uses the application's async session factory.
    """
    from pulseguard.db import get_async_session

    async with get_async_session() as session:
        yield session


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_invoker(request: Request) -> AnalysisInvoker:
    return request.app.state.invoker


def get_worker(request: Request) -> RetryWorker | None:
    """The retry worker running in this process, if any."""
    return getattr(request.app.state, "worker", None)


DbSession = Annotated[AsyncSession, Depends(get_db_session)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Invoker = Annotated[AnalysisInvoker, Depends(get_invoker)]
Worker = Annotated[RetryWorker | None, Depends(get_worker)]
