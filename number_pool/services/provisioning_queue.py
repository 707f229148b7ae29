"""Provisioning retry queue.

Requests for numbers are stored as queue items and worked off by a
periodic drain. Failed or partially successful attempts are rescheduled
on a fixed backoff ladder until MAX_ATTEMPTS is reached.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from number_pool.core.config import settings
from number_pool.core.database import async_session_maker
from number_pool.core.exceptions import MaxAttemptsReached
from number_pool.core.logging import get_logger, job_context
from number_pool.models.provisioning_queue import (
    DRAINABLE_STATUSES,
    ProvisioningQueueItem,
    QueueStatus,
)
from number_pool.schemas.pool import ProvisioningResult, QueueItemResult
from number_pool.services.lease_service import LeaseService
from number_pool.services.notification_service import NotificationService
from number_pool.services.provisioning_service import ProvisioningService
from number_pool.utils.helpers import generate_lease_owner, utc_now

logger = get_logger(__name__)

MAX_ATTEMPTS = 5
RETRY_DELAYS = [60, 300, 900, 3600, 7200]  # 1min, 5min, 15min, 1hr, 2hr

DRAIN_LEASE = "provisioning_queue_drain"


def retry_delay(attempts: int) -> int:
    """Seconds to wait before the next try, given how many attempts were made."""
    index = min(max(attempts, 1) - 1, len(RETRY_DELAYS) - 1)
    return RETRY_DELAYS[index]


class ProvisioningQueueService:
    """Enqueue provisioning requests and drain them with retries."""

    def __init__(
        self,
        provisioning: Optional[ProvisioningService] = None,
        session_maker: Optional[async_sessionmaker] = None,
        leases: Optional[LeaseService] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.provisioning = provisioning or ProvisioningService()
        self.session_maker = session_maker or async_session_maker
        self.leases = leases or LeaseService()
        self.notifications = notifications or NotificationService()

    async def enqueue(
        self,
        db: AsyncSession,
        tenant_id: str,
        plan_id: str,
        numbers_requested: int,
        region: Optional[str] = None,
    ) -> ProvisioningQueueItem:
        """Queue a request to give a tenant numbers. Picked up on the next drain."""
        if numbers_requested < 1:
            raise ValueError("numbers_requested must be at least 1")

        item = ProvisioningQueueItem(
            tenant_id=tenant_id,
            plan_id=plan_id,
            region=(region or settings.default_region).upper(),
            numbers_requested=numbers_requested,
            status=QueueStatus.pending.value,
            attempts=0,
            next_retry_at=utc_now(),
        )
        db.add(item)
        await db.commit()
        await db.refresh(item)

        logger.info(
            "provisioning_queued",
            item_id=item.id,
            tenant_id=tenant_id,
            plan_id=plan_id,
            numbers_requested=numbers_requested,
        )
        return item

    async def get_item(self, db: AsyncSession, item_id: str) -> Optional[ProvisioningQueueItem]:
        """Get a queue item by ID."""
        return await db.get(ProvisioningQueueItem, item_id)

    async def get_tenant_items(self, db: AsyncSession, tenant_id: str) -> list[ProvisioningQueueItem]:
        """Get a tenant's queue items, newest first (for support)."""
        result = await db.execute(
            select(ProvisioningQueueItem)
            .where(ProvisioningQueueItem.tenant_id == tenant_id)
            .order_by(ProvisioningQueueItem.created_at.desc())
        )
        return list(result.scalars().all())

    async def drain(
        self,
        batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[QueueItemResult]:
        """Process the queue items that are due.

        Only one drain runs at a time; if another is in progress this
        returns an empty list and the work waits for the next tick.
        """
        batch_size = batch_size or settings.queue_batch_size
        owner = generate_lease_owner()

        with job_context(DRAIN_LEASE, owner):
            return await self._drain(batch_size, now, owner)

    async def _drain(
        self,
        batch_size: int,
        now: Optional[datetime],
        owner: str,
    ) -> list[QueueItemResult]:
        async with self.session_maker() as db:
            if not await self.leases.acquire(db, DRAIN_LEASE, owner, now=now):
                logger.info("provisioning_drain_already_running")
                return []

        results: list[QueueItemResult] = []
        try:
            due_at = now or utc_now()
            async with self.session_maker() as db:
                await self._requeue_interrupted(db, due_at)
                item_ids = await self._due_item_ids(db, batch_size, due_at)

            if item_ids:
                logger.info("provisioning_drain_started", count=len(item_ids))

            for item_id in item_ids:
                try:
                    async with self.session_maker() as db:
                        item = await db.get(ProvisioningQueueItem, item_id)
                        results.append(await self.process_item(db, item, now=now))
                except Exception as e:
                    # Recording the outcome failed; an item left in processing is
                    # requeued by a later drain once the lease TTL has passed
                    logger.error(
                        "provisioning_item_error",
                        item_id=item_id,
                        error=str(e),
                        exc_info=True,
                    )
        finally:
            async with self.session_maker() as db:
                await self.leases.release(db, DRAIN_LEASE, owner)

        return results

    async def _requeue_interrupted(self, db: AsyncSession, now: datetime) -> int:
        """Put items whose attempt never recorded an outcome back in the queue.

        An attempt can die after the claim (worker crash, deploy cancelling the
        job, a failed commit). Once the lease TTL has passed no drain can still
        be working on it, so it is marked failed and made due again. The lost
        attempt is not counted.
        """
        cutoff = now - timedelta(seconds=settings.lease_ttl_seconds)
        result = await db.execute(
            update(ProvisioningQueueItem)
            .where(
                ProvisioningQueueItem.status == QueueStatus.processing.value,
                ProvisioningQueueItem.last_attempt_at < cutoff,
            )
            .values(
                status=QueueStatus.failed.value,
                next_retry_at=now,
                error_message="Attempt interrupted before its outcome was recorded",
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount:
            logger.warning("provisioning_interrupted_requeued", count=result.rowcount)
        return result.rowcount

    async def _due_item_ids(
        self,
        db: AsyncSession,
        batch_size: int,
        now: datetime,
    ) -> list[str]:
        result = await db.execute(
            select(ProvisioningQueueItem.id)
            .where(
                ProvisioningQueueItem.status.in_(DRAINABLE_STATUSES),
                ProvisioningQueueItem.attempts < MAX_ATTEMPTS,
                ProvisioningQueueItem.next_retry_at <= now,
            )
            .order_by(ProvisioningQueueItem.created_at.asc())
            .limit(batch_size)
        )
        return list(result.scalars().all())

    async def process_item(
        self,
        db: AsyncSession,
        item: ProvisioningQueueItem,
        now: Optional[datetime] = None,
    ) -> QueueItemResult:
        """Make one provisioning attempt for a queue item and record the outcome."""
        now = now or utc_now()
        item_id = item.id
        tenant_id = item.tenant_id
        region = item.region
        requested = item.numbers_requested
        previous_status = item.status

        # Claim it; another drainer may have picked it up already
        claimed = await db.execute(
            update(ProvisioningQueueItem)
            .where(
                ProvisioningQueueItem.id == item_id,
                ProvisioningQueueItem.status.in_(DRAINABLE_STATUSES),
            )
            .values(status=QueueStatus.processing.value, last_attempt_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if claimed.rowcount != 1:
            item = await db.get(ProvisioningQueueItem, item_id, populate_existing=True)
            logger.info("provisioning_item_already_claimed", item_id=item_id)
            return self._to_result(item)

        logger.info(
            "provisioning_attempt",
            item_id=item_id,
            tenant_id=tenant_id,
            attempt=item.attempts + 1,
            numbers_requested=requested,
        )

        try:
            result = await self.provisioning.provision_user_numbers(
                db, tenant_id, requested, region
            )
        except asyncio.CancelledError:
            await self._release_claim(db, item_id, previous_status)
            raise
        except Exception as e:
            await db.rollback()
            item = await db.get(ProvisioningQueueItem, item_id, populate_existing=True)
            return await self._handle_failure(db, item, e, now)

        item = await db.get(ProvisioningQueueItem, item_id, populate_existing=True)
        if result.provisioned >= requested:
            return await self._handle_success(db, item, result, now)
        return await self._handle_partial_success(db, item, result, now)

    async def _release_claim(
        self,
        db: AsyncSession,
        item_id: str,
        previous_status: str,
    ) -> None:
        """Hand a claimed item back untouched when its attempt is cancelled."""
        await db.rollback()
        await db.execute(
            update(ProvisioningQueueItem)
            .where(
                ProvisioningQueueItem.id == item_id,
                ProvisioningQueueItem.status == QueueStatus.processing.value,
            )
            .values(status=previous_status)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.warning("provisioning_attempt_cancelled", item_id=item_id)

    async def _handle_success(
        self,
        db: AsyncSession,
        item: ProvisioningQueueItem,
        result: ProvisioningResult,
        now: datetime,
    ) -> QueueItemResult:
        item.status = QueueStatus.completed.value
        item.attempts += 1
        item.completed_at = now
        item.error_message = None
        item.result = result.model_dump(mode="json")
        await db.commit()

        logger.info("provisioning_completed", item_id=item.id, tenant_id=item.tenant_id)
        return self._to_result(item, provisioned=result.provisioned)

    async def _handle_partial_success(
        self,
        db: AsyncSession,
        item: ProvisioningQueueItem,
        result: ProvisioningResult,
        now: datetime,
    ) -> QueueItemResult:
        requested = item.numbers_requested
        remaining = requested - result.provisioned
        item.attempts += 1
        item.result = result.model_dump(mode="json")

        if item.attempts >= MAX_ATTEMPTS:
            item.status = QueueStatus.partial.value
            item.error_message = f"Provisioned {result.provisioned} of {requested} numbers"
            logger.error(
                "provisioning_partial_final",
                item_id=item.id,
                tenant_id=item.tenant_id,
                provisioned=result.provisioned,
                requested=requested,
            )
        else:
            # Only the shortfall is retried
            item.status = QueueStatus.pending.value
            item.numbers_requested = remaining
            item.next_retry_at = now + timedelta(seconds=retry_delay(item.attempts))
            item.error_message = (
                f"Partial success: {result.provisioned} provisioned, {remaining} remaining"
            )
            logger.warning(
                "provisioning_partial",
                item_id=item.id,
                tenant_id=item.tenant_id,
                provisioned=result.provisioned,
                remaining=remaining,
                next_retry_at=item.next_retry_at.isoformat(),
            )

        await db.commit()
        return self._to_result(item, provisioned=result.provisioned)

    async def _handle_failure(
        self,
        db: AsyncSession,
        item: ProvisioningQueueItem,
        error: Exception,
        now: datetime,
    ) -> QueueItemResult:
        item.attempts += 1
        item.error_message = str(error)

        if item.attempts >= MAX_ATTEMPTS:
            item.status = QueueStatus.max_attempts_reached.value
            await db.commit()

            failure = MaxAttemptsReached(item.id, item.attempts, str(error))
            logger.error(
                "provisioning_max_attempts_reached",
                item_id=item.id,
                tenant_id=item.tenant_id,
                error=str(failure),
            )
            await self._alert_terminal_failure(item, failure)
        else:
            item.status = QueueStatus.failed.value
            item.next_retry_at = now + timedelta(seconds=retry_delay(item.attempts))
            await db.commit()

            logger.warning(
                "provisioning_retry_scheduled",
                item_id=item.id,
                tenant_id=item.tenant_id,
                attempts=item.attempts,
                next_retry_at=item.next_retry_at.isoformat(),
                error=str(error),
            )

        return self._to_result(item)

    async def _alert_terminal_failure(
        self,
        item: ProvisioningQueueItem,
        failure: MaxAttemptsReached,
    ) -> None:
        try:
            await self.notifications.alert_provisioning_failed(
                item_id=item.id,
                tenant_id=item.tenant_id,
                error=str(failure),
            )
        except Exception as e:
            logger.error("provisioning_alert_failed", item_id=item.id, error=str(e))

    @staticmethod
    def _to_result(item: ProvisioningQueueItem, provisioned: int = 0) -> QueueItemResult:
        return QueueItemResult(
            item_id=item.id,
            tenant_id=item.tenant_id,
            status=item.status,
            attempts=item.attempts,
            provisioned=provisioned,
            numbers_requested=item.numbers_requested,
            next_retry_at=item.next_retry_at,
            error_message=item.error_message,
        )
