"""Database-backed leases for background jobs.

A lease makes sure only one worker (across all instances) runs a job at a
time. Leases expire, so a worker that dies mid-run blocks the job for at
most one TTL.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from number_pool.core.config import settings
from number_pool.core.logging import get_logger
from number_pool.models.maintenance_lease import MaintenanceLease
from number_pool.utils.helpers import utc_now

logger = get_logger(__name__)


class LeaseService:
    """Acquire and release named leases."""

    async def acquire(
        self,
        db: AsyncSession,
        name: str,
        owner: str,
        ttl_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Take the lease if it is free, expired, or already ours."""
        now = now or utc_now()
        expires_at = now + timedelta(seconds=ttl_seconds or settings.lease_ttl_seconds)

        result = await db.execute(
            update(MaintenanceLease)
            .where(
                MaintenanceLease.name == name,
                or_(MaintenanceLease.expires_at < now, MaintenanceLease.owner == owner),
            )
            .values(owner=owner, acquired_at=now, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await db.commit()
            logger.info("lease_acquired", lease=name, owner=owner)
            return True

        # Either nobody has ever held it, or someone holds it right now
        db.add(MaintenanceLease(name=name, owner=owner, acquired_at=now, expires_at=expires_at))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("lease_held_elsewhere", lease=name)
            return False

        logger.info("lease_acquired", lease=name, owner=owner)
        return True

    async def release(self, db: AsyncSession, name: str, owner: str) -> bool:
        """Give the lease back. Only the current owner can release it."""
        result = await db.execute(
            delete(MaintenanceLease)
            .where(MaintenanceLease.name == name, MaintenanceLease.owner == owner)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1
