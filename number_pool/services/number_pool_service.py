"""Number pool service.

Hands out phone numbers from a pre-purchased pool. Used for regions
(Ireland via VoIPcloud) where numbers can't be bought through an API.

Every state change is a single conditional UPDATE on the row's current
status, so concurrent callers can never both win the same number.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from number_pool.core.config import settings
from number_pool.core.exceptions import (
    AlreadyAssigned,
    ImportGatewayFailure,
    NoAvailableNumber,
    PoolExhausted,
    ReservationNotFound,
    ReservedByOther,
)
from number_pool.core.logging import get_logger
from number_pool.models.pool_entry import (
    AssignmentAction,
    AssignmentEvent,
    PoolEntry,
    PoolStatus,
)
from number_pool.schemas.pool import PoolStats, RegionStats
from number_pool.services.voice_provider import VoiceProvider, get_voice_provider
from number_pool.utils.helpers import mask_phone, normalize_phone, utc_now

logger = get_logger(__name__)

# Used in the display name given to imported numbers
REGION_NAMES = {
    "IE": "Ireland",
    "GB": "UK",
    "AU": "Australia",
    "US": "US",
}


class NumberPoolService:
    """Reserve, assign, release and recycle pool numbers."""

    # Candidates tried before giving up when other callers keep winning the claim
    MAX_CLAIM_ATTEMPTS = 5

    def __init__(self, voice_provider: Optional[VoiceProvider] = None):
        self.voice = voice_provider or get_voice_provider()

    async def get_available_number(
        self,
        db: AsyncSession,
        region: Optional[str] = None,
    ) -> Optional[PoolEntry]:
        """Get the oldest available number in a region without claiming it."""
        region = (region or settings.default_region).upper()
        result = await db.execute(
            select(PoolEntry)
            .where(
                PoolEntry.region == region,
                PoolEntry.status == PoolStatus.available.value,
            )
            .order_by(PoolEntry.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def reserve_number(
        self,
        db: AsyncSession,
        tenant_id: str,
        region: Optional[str] = None,
        reserve_minutes: Optional[int] = None,
    ) -> PoolEntry:
        """Put a time-limited hold on the oldest available number (checkout started).

        Raises:
            NoAvailableNumber: the region has nothing available
            PoolExhausted: concurrent callers won every candidate we tried
        """
        region = (region or settings.default_region).upper()
        if reserve_minutes is None:
            reserve_minutes = settings.reservation_ttl_minutes

        for attempt in range(1, self.MAX_CLAIM_ATTEMPTS + 1):
            candidate = await self.get_available_number(db, region)
            if candidate is None:
                logger.warning("pool_no_available_number", region=region, tenant_id=tenant_id)
                raise NoAvailableNumber(region)

            candidate_id = candidate.id
            now = utc_now()
            reserved_until = now + timedelta(minutes=reserve_minutes)
            if await self._try_claim(db, candidate_id, tenant_id, now, reserved_until):
                db.add(
                    AssignmentEvent(
                        pool_entry_id=candidate_id,
                        tenant_id=tenant_id,
                        action=AssignmentAction.reserved.value,
                        reason="Subscription checkout started",
                    )
                )
                await db.commit()
                entry = await db.get(PoolEntry, candidate_id, populate_existing=True)

                logger.info(
                    "number_reserved",
                    tenant_id=tenant_id,
                    phone_number=mask_phone(entry.phone_number),
                    region=region,
                    reserved_until=reserved_until.isoformat(),
                )
                return entry

            await db.rollback()
            logger.info(
                "reservation_race_lost",
                tenant_id=tenant_id,
                pool_entry_id=candidate_id,
                attempt=attempt,
            )

        raise PoolExhausted(region, self.MAX_CLAIM_ATTEMPTS)

    async def _try_claim(
        self,
        db: AsyncSession,
        pool_entry_id: str,
        tenant_id: str,
        now: datetime,
        reserved_until: datetime,
    ) -> bool:
        """Reserve the entry only if it is still available. Returns False if someone beat us."""
        result = await db.execute(
            update(PoolEntry)
            .where(
                PoolEntry.id == pool_entry_id,
                PoolEntry.status == PoolStatus.available.value,
            )
            .values(
                status=PoolStatus.reserved.value,
                owner=tenant_id,
                reserved_at=now,
                reserved_until=reserved_until,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def assign_number(
        self,
        db: AsyncSession,
        tenant_id: str,
        pool_entry_id: Optional[str] = None,
    ) -> PoolEntry:
        """Turn a tenant's reservation into an assignment (payment confirmed).

        Imports the number into the voice provider first if it has never been
        imported. If the import fails the entry stays reserved and the call
        can be retried.
        """
        if pool_entry_id:
            query = select(PoolEntry).where(PoolEntry.id == pool_entry_id)
        else:
            query = (
                select(PoolEntry)
                .where(
                    PoolEntry.owner == tenant_id,
                    PoolEntry.status == PoolStatus.reserved.value,
                )
                .order_by(PoolEntry.reserved_at.asc())
                .limit(1)
            )
        # Re-read the row even if this session already holds it
        result = await db.execute(query.execution_options(populate_existing=True))
        entry = result.scalar_one_or_none()

        # Guards against handing out someone else's number
        if entry is None:
            raise ReservationNotFound(tenant_id, pool_entry_id)
        if entry.status == PoolStatus.assigned.value:
            raise AlreadyAssigned(entry.id)
        if entry.status == PoolStatus.reserved.value and entry.owner != tenant_id:
            raise ReservedByOther(entry.id)
        if entry.status != PoolStatus.reserved.value:
            raise ReservationNotFound(tenant_id, entry.id)

        entry_id = entry.id
        if not entry.external_voice_id:
            external_id = await self._import_to_voice_provider(entry)
            await db.execute(
                update(PoolEntry)
                .where(PoolEntry.id == entry_id, PoolEntry.external_voice_id.is_(None))
                .values(external_voice_id=external_id)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        now = utc_now()
        result = await db.execute(
            update(PoolEntry)
            .where(
                PoolEntry.id == entry_id,
                PoolEntry.status == PoolStatus.reserved.value,
                PoolEntry.owner == tenant_id,
            )
            .values(
                status=PoolStatus.assigned.value,
                assigned_at=now,
                reserved_at=None,
                reserved_until=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Expired or cancelled while we were importing
            await db.rollback()
            raise ReservationNotFound(tenant_id, entry_id)

        db.add(
            AssignmentEvent(
                pool_entry_id=entry_id,
                tenant_id=tenant_id,
                action=AssignmentAction.assigned.value,
                reason="Subscription confirmed",
            )
        )
        await db.commit()
        entry = await db.get(PoolEntry, entry_id, populate_existing=True)

        logger.info(
            "number_assigned",
            tenant_id=tenant_id,
            phone_number=mask_phone(entry.phone_number),
            external_voice_id=entry.external_voice_id,
        )
        return entry

    async def _import_to_voice_provider(self, entry: PoolEntry) -> str:
        """Register the number with the voice provider and return its id."""
        region_name = REGION_NAMES.get(entry.region, entry.region)
        try:
            imported = await asyncio.wait_for(
                self.voice.import_phone_number(
                    entry.phone_number,
                    entry.provider,
                    name=f"{region_name}-{entry.phone_number[-4:]}",
                ),
                timeout=settings.import_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(
                "voice_import_timeout",
                phone_number=mask_phone(entry.phone_number),
                timeout_seconds=settings.import_timeout_seconds,
            )
            raise ImportGatewayFailure(
                entry.phone_number,
                f"timed out after {settings.import_timeout_seconds}s",
            ) from e
        except Exception as e:
            logger.error(
                "voice_import_failed",
                phone_number=mask_phone(entry.phone_number),
                error=str(e),
            )
            raise ImportGatewayFailure(entry.phone_number, str(e)) from e

        external_id = imported.get("id")
        if not external_id:
            raise ImportGatewayFailure(entry.phone_number, "provider returned no id")
        return external_id

    async def release_number(
        self,
        db: AsyncSession,
        tenant_id: str,
        reason: str = "Subscription cancelled",
        pool_entry_id: Optional[str] = None,
    ) -> bool:
        """Release a tenant's assigned numbers (subscription cancelled).

        Released numbers sit out the recycle cooldown before anyone else
        can reserve them. Returns False if the tenant has nothing assigned.
        """
        query = select(PoolEntry).where(
            PoolEntry.owner == tenant_id,
            PoolEntry.status == PoolStatus.assigned.value,
        )
        if pool_entry_id:
            query = query.where(PoolEntry.id == pool_entry_id)
        result = await db.execute(query)
        entries = result.scalars().all()

        if not entries:
            logger.info("release_no_assigned_number", tenant_id=tenant_id)
            return False

        released = 0
        for entry in entries:
            now = utc_now()
            result = await db.execute(
                update(PoolEntry)
                .where(
                    PoolEntry.id == entry.id,
                    PoolEntry.status == PoolStatus.assigned.value,
                    PoolEntry.owner == tenant_id,
                )
                .values(
                    status=PoolStatus.released.value,
                    owner=None,
                    assigned_at=None,
                    reserved_at=None,
                    reserved_until=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue

            db.add(
                AssignmentEvent(
                    pool_entry_id=entry.id,
                    tenant_id=tenant_id,
                    action=AssignmentAction.released.value,
                    reason=reason,
                )
            )
            released += 1
            logger.info(
                "number_released",
                tenant_id=tenant_id,
                phone_number=mask_phone(entry.phone_number),
                reason=reason,
            )

        await db.commit()
        return released > 0

    async def cancel_reservation(self, db: AsyncSession, tenant_id: str) -> bool:
        """Drop a tenant's reservation (checkout abandoned).

        The number goes straight back to available since the tenant never
        used it. Returns False if there is no reservation.
        """
        result = await db.execute(
            select(PoolEntry).where(
                PoolEntry.owner == tenant_id,
                PoolEntry.status == PoolStatus.reserved.value,
            )
        )
        entries = result.scalars().all()

        cancelled = 0
        for entry in entries:
            if await self._reservation_to_available(db, entry.id, tenant_id=tenant_id):
                db.add(
                    AssignmentEvent(
                        pool_entry_id=entry.id,
                        tenant_id=tenant_id,
                        action=AssignmentAction.cancelled.value,
                        reason="Checkout abandoned",
                    )
                )
                cancelled += 1

        if not cancelled:
            await db.rollback()
            return False

        await db.commit()
        logger.info("reservation_cancelled", tenant_id=tenant_id, count=cancelled)
        return True

    async def _reservation_to_available(
        self,
        db: AsyncSession,
        pool_entry_id: str,
        tenant_id: Optional[str] = None,
        expired_before: Optional[datetime] = None,
    ) -> bool:
        conditions = [
            PoolEntry.id == pool_entry_id,
            PoolEntry.status == PoolStatus.reserved.value,
        ]
        if tenant_id is not None:
            conditions.append(PoolEntry.owner == tenant_id)
        if expired_before is not None:
            conditions.append(PoolEntry.reserved_until < expired_before)

        result = await db.execute(
            update(PoolEntry)
            .where(*conditions)
            .values(
                status=PoolStatus.available.value,
                owner=None,
                reserved_at=None,
                reserved_until=None,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def cleanup_expired_reservations(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> int:
        """Return reservations past their deadline to the pool."""
        now = now or utc_now()
        result = await db.execute(
            select(PoolEntry.id, PoolEntry.owner).where(
                PoolEntry.status == PoolStatus.reserved.value,
                PoolEntry.reserved_until < now,
            )
        )
        expired = result.all()

        cleared = 0
        for pool_entry_id, owner in expired:
            try:
                if not await self._reservation_to_available(db, pool_entry_id, expired_before=now):
                    await db.rollback()
                    logger.info("expired_reservation_skipped", pool_entry_id=pool_entry_id)
                    continue
                if owner:
                    db.add(
                        AssignmentEvent(
                            pool_entry_id=pool_entry_id,
                            tenant_id=owner,
                            action=AssignmentAction.cancelled.value,
                            reason="Reservation expired",
                        )
                    )
                await db.commit()
                cleared += 1
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(
                    "expired_reservation_cleanup_failed",
                    pool_entry_id=pool_entry_id,
                    error=str(e),
                )

        if cleared:
            logger.info("expired_reservations_cleared", count=cleared)
        return cleared

    async def recycle_released_numbers(
        self,
        db: AsyncSession,
        cooldown_hours: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Make released numbers available again once the cooldown has passed."""
        if cooldown_hours is None:
            cooldown_hours = settings.recycle_cooldown_hours
        now = now or utc_now()
        cutoff = now - timedelta(hours=cooldown_hours)

        result = await db.execute(
            select(PoolEntry.id).where(
                PoolEntry.status == PoolStatus.released.value,
                PoolEntry.updated_at < cutoff,
            )
        )
        candidates = result.scalars().all()

        recycled = 0
        for pool_entry_id in candidates:
            try:
                result = await db.execute(
                    update(PoolEntry)
                    .where(
                        PoolEntry.id == pool_entry_id,
                        PoolEntry.status == PoolStatus.released.value,
                        PoolEntry.updated_at < cutoff,
                    )
                    .values(status=PoolStatus.available.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await db.rollback()
                    logger.info("recycle_skipped", pool_entry_id=pool_entry_id)
                    continue
                await db.commit()
                recycled += 1
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error("recycle_failed", pool_entry_id=pool_entry_id, error=str(e))

        if recycled:
            logger.info("numbers_recycled", count=recycled, cooldown_hours=cooldown_hours)
        return recycled

    async def get_pool_stats(
        self,
        db: AsyncSession,
        region: Optional[str] = None,
    ) -> PoolStats:
        """Count pool entries by status and region."""
        query = select(PoolEntry.region, PoolEntry.status, func.count(PoolEntry.id)).group_by(
            PoolEntry.region, PoolEntry.status
        )
        if region:
            query = query.where(PoolEntry.region == region.upper())
        result = await db.execute(query)

        stats = PoolStats()
        for entry_region, status, count in result.all():
            stats.total += count
            if status in PoolStatus.__members__:
                setattr(stats, status, getattr(stats, status) + count)

            region_stats = stats.by_region.setdefault(entry_region, RegionStats())
            region_stats.total += count
            if status == PoolStatus.available.value:
                region_stats.available += count

        return stats

    async def get_tenant_numbers(self, db: AsyncSession, tenant_id: str) -> list[PoolEntry]:
        """Get the numbers currently assigned to a tenant."""
        result = await db.execute(
            select(PoolEntry)
            .where(
                PoolEntry.owner == tenant_id,
                PoolEntry.status == PoolStatus.assigned.value,
            )
            .order_by(PoolEntry.assigned_at.asc())
        )
        return list(result.scalars().all())

    async def get_history(self, db: AsyncSession, pool_entry_id: str) -> list[AssignmentEvent]:
        """Get the assignment history of a pool entry, oldest first."""
        result = await db.execute(
            select(AssignmentEvent)
            .where(AssignmentEvent.pool_entry_id == pool_entry_id)
            .order_by(AssignmentEvent.created_at.asc())
        )
        return list(result.scalars().all())

    async def add_number_to_pool(
        self,
        db: AsyncSession,
        phone_number: str,
        region: str = "IE",
        provider: str = "voipcloud",
        provider_number_id: Optional[str] = None,
        external_voice_id: Optional[str] = None,
        capabilities: Optional[dict[str, Any]] = None,
        monthly_cost_cents: int = 0,
        notes: Optional[str] = None,
    ) -> PoolEntry:
        """Add a pre-purchased number to the pool (admin)."""
        region = region.upper()
        entry = PoolEntry(
            phone_number=normalize_phone(phone_number, region),
            region=region,
            provider=provider,
            provider_number_id=provider_number_id,
            external_voice_id=external_voice_id,
            capabilities=capabilities or {"voice": True, "sms": False},
            monthly_cost_cents=monthly_cost_cents,
            notes=notes,
            status=PoolStatus.available.value,
        )
        db.add(entry)
        await db.commit()
        await db.refresh(entry)

        logger.info("number_added_to_pool", phone_number=mask_phone(entry.phone_number), region=region)
        return entry
