"""Persistence of readings and subject lookups."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from pulseguard.db.models.readings import Reading, Subject
from pulseguard.services.analysis_types import UNKNOWN_SUBJECT, SubjectInfo

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from pulseguard.db.models.base import ReadingState
    from pulseguard.services.analysis_types import AnalysisResult
    from pulseguard.services.severity import VitalSigns

logger = logging.getLogger(__name__)


class ReadingStoreError(Exception):
    """Raised when a reading cannot be read or written."""

    pass


class SubjectNotFoundError(ReadingStoreError):
    """Raised when a reading references an unknown subject."""

    pass


class ReadingStore:
    """Reading and subject access over one session.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_subject(self, subject_id: uuid.UUID) -> Subject | None:
        stmt = select(Subject).where(Subject.subject_id == subject_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_reading(
        self,
        subject_id: uuid.UUID,
        metrics: VitalSigns,
        state: ReadingState,
        recorded_at: datetime | None = None,
    ) -> Reading:
        """Insert a reading with its derived state.

        Raises:
            SubjectNotFoundError: If the subject does not exist.
            ReadingStoreError: If the insert fails.
        """
        try:
            if await self.get_subject(subject_id) is None:
                raise SubjectNotFoundError(f"Subject not found: {subject_id}")

            reading = Reading(subject_id=subject_id, state=state, **metrics.as_dict())
            if recorded_at is not None:
                reading.recorded_at = recorded_at
            self.session.add(reading)
            await self.session.flush()
            # recorded_at/created_at come from server defaults
            await self.session.refresh(reading)
        except SubjectNotFoundError:
            raise
        except SQLAlchemyError as e:
            logger.error("Failed to store reading for subject_id=%s: %s", subject_id, str(e))
            raise ReadingStoreError(f"Failed to store reading: {e}") from e

        logger.info(
            "Reading stored: reading_id=%s, subject_id=%s, state=%s",
            reading.reading_id,
            subject_id,
            state.value,
        )
        return reading

    async def get_reading(self, reading_id: uuid.UUID) -> Reading | None:
        stmt = select(Reading).where(Reading.reading_id == reading_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_analysis(self, reading: Reading, result: AnalysisResult) -> None:
        """Write (or overwrite) the analysis stored on a reading.

        Raises:
            ReadingStoreError: If the update fails.
        """
        try:
            reading.analysis = result.to_storage()
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to store analysis for reading %s: %s", reading.reading_id, e)
            raise ReadingStoreError(f"Failed to store analysis: {e}") from e

        logger.debug(
            "Analysis stored: reading_id=%s, confidence=%s",
            reading.reading_id,
            result.confidence_level.value,
        )

    async def recent_for_subject(
        self,
        subject_id: uuid.UUID,
        *,
        before: datetime,
        limit: int,
    ) -> list[Reading]:
        """Readings recorded strictly before ``before``, newest first."""
        if limit <= 0:
            return []
        stmt = (
            select(Reading)
            .where(Reading.subject_id == subject_id, Reading.recorded_at < before)
            .order_by(Reading.recorded_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


async def lookup_subject_info(session: AsyncSession, subject_id: uuid.UUID) -> SubjectInfo:
    """Subject descriptor for an analysis request.

    A failed lookup degrades to the placeholder subject instead of raising;
    the lookup runs in a SAVEPOINT so a database error leaves the
    surrounding transaction usable.
    """
    try:
        async with session.begin_nested():
            subject = await ReadingStore(session).get_subject(subject_id)
    except SQLAlchemyError as e:
        logger.warning("Subject lookup failed for subject_id=%s: %s", subject_id, e)
        return UNKNOWN_SUBJECT

    if subject is None:
        logger.warning("Subject %s not found, using placeholder", subject_id)
    return SubjectInfo.from_model(subject)
