"""Provision pool numbers for a tenant."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from number_pool.core.config import settings
from number_pool.core.exceptions import (
    ImportGatewayFailure,
    NumberUnavailableError,
    ReservationNotFound,
)
from number_pool.core.logging import get_logger
from number_pool.models.pool_entry import PoolEntry, PoolStatus
from number_pool.schemas.pool import ProvisionedNumber, ProvisioningResult
from number_pool.services.number_pool_service import NumberPoolService

logger = get_logger(__name__)


class ProvisioningService:
    """Reserve and assign pool numbers until a tenant has what they asked for."""

    def __init__(self, pool: Optional[NumberPoolService] = None):
        self.pool = pool or NumberPoolService()

    async def provision_user_numbers(
        self,
        db: AsyncSession,
        tenant_id: str,
        count: int,
        region: Optional[str] = None,
    ) -> ProvisioningResult:
        """Give a tenant up to ``count`` numbers.

        Reservations the tenant already holds in the region are assigned
        first, then new numbers are reserved. Held reservations include both
        ones left behind by an attempt whose import failed and a checkout
        hold the tenant started but has not paid for yet: a queued request
        means the tenant is owed numbers, so the hold is used rather than
        taking a second number from the pool.

        Stops early on any error once at least one number has been assigned
        and reports the shortfall in the result. Each assignment is committed
        on its own, so the numbers counted here stay with the tenant.

        Raises:
            NumberUnavailableError, ImportGatewayFailure: nothing at all was provisioned
        """
        region = (region or settings.default_region).upper()
        numbers: list[ProvisionedNumber] = []
        stop_error: Optional[str] = None

        logger.info("provisioning_started", tenant_id=tenant_id, requested=count, region=region)

        try:
            for pool_entry_id in await self._held_reservations(db, tenant_id, region):
                if len(numbers) >= count:
                    break
                try:
                    entry = await self.pool.assign_number(db, tenant_id, pool_entry_id=pool_entry_id)
                except ReservationNotFound:
                    # Expired since we looked
                    continue
                numbers.append(self._to_provisioned(entry))

            while len(numbers) < count:
                reserved = await self.pool.reserve_number(db, tenant_id, region)
                entry = await self.pool.assign_number(db, tenant_id, pool_entry_id=reserved.id)
                numbers.append(self._to_provisioned(entry))
        except (NumberUnavailableError, ImportGatewayFailure, ReservationNotFound) as e:
            if not numbers:
                logger.warning("provisioning_failed", tenant_id=tenant_id, error=str(e))
                raise
            stop_error = str(e)
        except Exception as e:
            if not numbers:
                raise
            # Storage or provider trouble after some numbers were committed
            await db.rollback()
            stop_error = str(e)
            logger.error("provisioning_interrupted", tenant_id=tenant_id, error=stop_error, exc_info=True)

        if stop_error:
            logger.warning(
                "provisioning_stopped_early",
                tenant_id=tenant_id,
                provisioned=len(numbers),
                requested=count,
                error=stop_error,
            )

        logger.info(
            "provisioning_finished",
            tenant_id=tenant_id,
            provisioned=len(numbers),
            requested=count,
        )
        return ProvisioningResult(
            provisioned=len(numbers),
            requested=count,
            numbers=numbers,
            error=stop_error,
        )

    async def _held_reservations(
        self,
        db: AsyncSession,
        tenant_id: str,
        region: str,
    ) -> list[str]:
        result = await db.execute(
            select(PoolEntry.id)
            .where(
                PoolEntry.owner == tenant_id,
                PoolEntry.status == PoolStatus.reserved.value,
                PoolEntry.region == region,
            )
            .order_by(PoolEntry.reserved_at.asc())
        )
        return list(result.scalars().all())

    @staticmethod
    def _to_provisioned(entry: PoolEntry) -> ProvisionedNumber:
        return ProvisionedNumber(
            pool_entry_id=entry.id,
            phone_number=entry.phone_number,
            region=entry.region,
            external_voice_id=entry.external_voice_id,
        )
