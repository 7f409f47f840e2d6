"""Readings API router.

Ingests vital-sign readings and serves them back with their analysis.
Ingestion succeeds for every valid reading whatever happens to its
analysis; the response says whether the analysis is verified, pending
a retry, or a fallback.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from pulseguard.api.dependencies import AppSettings, DbSession, Invoker
from pulseguard.api.middleware.errors import StorageUnavailableError
from pulseguard.api.schemas.readings import (
    IngestionResponse,
    ReadingCreate,
    ReadingResponse,
)
from pulseguard.services.ingestion import IngestionService
from pulseguard.services.readings import (
    ReadingStore,
    ReadingStoreError,
    SubjectNotFoundError,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/readings",
    tags=["readings"],
    responses={
        404: {"description": "Subject or reading not found"},
        503: {"description": "Reading could not be stored"},
    },
)


@router.post(
    "",
    response_model=IngestionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Ingest a reading",
)
async def create_reading(
    payload: ReadingCreate,
    session: DbSession,
    invoker: Invoker,
    settings: AppSettings,
) -> IngestionResponse:
    """Store a reading, classify it and attach an analysis.

    Alert readings get a synchronous analysis attempt bounded by the
    inline deadline. On timeout or failure a locally generated analysis
    is returned and the analysis is queued for retry.
    """
    service = IngestionService(session, invoker, settings.ingestion)
    try:
        result = await service.ingest(
            payload.subject_id,
            payload.vital_signs(),
            recorded_at=payload.recorded_at,
        )
    except SubjectNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ReadingStoreError as e:
        raise StorageUnavailableError("Reading could not be stored") from e

    return IngestionResponse.from_result(result)


@router.get(
    "/{reading_id}",
    response_model=ReadingResponse,
    summary="Get a reading with its analysis",
)
async def get_reading(reading_id: UUID, session: DbSession) -> ReadingResponse:
    reading = await ReadingStore(session).get_reading(reading_id)
    if reading is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Reading not found: {reading_id}",
        )
    return ReadingResponse.model_validate(reading)
