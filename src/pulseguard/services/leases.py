"""Named, time-bounded leases stored in PostgreSQL.

Several service instances may run a retry worker against the same queue.
Before each drain pass the worker acquires the shared lease; an instance
that cannot get it skips the pass. A lease that outlives its TTL (holder
crashed or stalled) can be taken over by anyone.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pulseguard.db.models.leases import WorkerLease

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

RETRY_DRAIN_LEASE = "analysis-retry-drain"


class LeaseError(Exception):
    """Raised when a lease cannot be read or written."""

    pass


class LeaseService:
    """Acquire and release named leases.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self._clock = clock or (lambda: datetime.now(UTC))

    async def acquire(self, name: str, owner_id: str, ttl_seconds: int) -> bool:
        """Take or renew the named lease.

        Succeeds when the lease is absent, expired, or already held by
        ``owner_id``. The row is locked with SELECT ... FOR UPDATE so two
        instances cannot both take over an expired lease.

        Returns:
            True if ``owner_id`` now holds the lease.

        Raises:
            LeaseError: If the lease row cannot be read or written.
        """
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds)

        try:
            stmt = (
                select(WorkerLease)
                .where(WorkerLease.lease_name == name)
                .with_for_update()
            )
            lease = (await self.session.execute(stmt)).scalar_one_or_none()

            if lease is None:
                async with self.session.begin_nested():
                    self.session.add(
                        WorkerLease(
                            lease_name=name,
                            owner_id=owner_id,
                            acquired_at=now,
                            updated_at=now,
                            expires_at=expires_at,
                        )
                    )
                    await self.session.flush()
                logger.info("Lease acquired: name=%s, owner=%s", name, owner_id)
                return True

            if lease.owner_id == owner_id:
                lease.expires_at = expires_at
                lease.updated_at = now
                await self.session.flush()
                logger.debug("Lease renewed: name=%s, owner=%s", name, owner_id)
                return True

            if lease.is_expired(now):
                previous = lease.owner_id
                lease.owner_id = owner_id
                lease.acquired_at = now
                lease.updated_at = now
                lease.expires_at = expires_at
                await self.session.flush()
                logger.warning(
                    "Expired lease taken over: name=%s, previous_owner=%s, owner=%s",
                    name,
                    previous,
                    owner_id,
                )
                return True

        except IntegrityError:
            # Another instance inserted the lease row between our select and insert
            logger.debug("Lease %s created concurrently by another owner", name)
            return False
        except SQLAlchemyError as e:
            logger.error("Failed to acquire lease %s: %s", name, str(e))
            raise LeaseError(f"Failed to acquire lease {name}: {e}") from e

        logger.debug(
            "Lease busy: name=%s, holder=%s, expires_at=%s",
            name,
            lease.owner_id,
            lease.expires_at.isoformat(),
        )
        return False

    async def release(self, name: str, owner_id: str) -> bool:
        """Expire the lease if ``owner_id`` still holds it.

        Returns:
            True if the lease was released.
        """
        try:
            stmt = (
                select(WorkerLease)
                .where(WorkerLease.lease_name == name, WorkerLease.owner_id == owner_id)
                .with_for_update()
            )
            lease = (await self.session.execute(stmt)).scalar_one_or_none()
            if lease is None:
                return False

            now = self._clock()
            lease.expires_at = now
            lease.updated_at = now
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to release lease %s: %s", name, str(e))
            raise LeaseError(f"Failed to release lease {name}: {e}") from e

        logger.debug("Lease released: name=%s, owner=%s", name, owner_id)
        return True
