"""Periodic background jobs using asyncio.

No external scheduler (cron/Celery) required. Each job runs once at
startup and then on a fixed interval. Jobs that must not overlap across
instances hold a database lease while they run.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from number_pool.core.config import settings
from number_pool.core.database import async_session_maker
from number_pool.core.logging import get_logger, job_context
from number_pool.schemas.pool import MaintenanceResult, QueueItemResult
from number_pool.services.lease_service import LeaseService
from number_pool.services.notification_service import NotificationService
from number_pool.services.number_pool_service import NumberPoolService
from number_pool.services.provisioning_queue import ProvisioningQueueService
from number_pool.utils.helpers import generate_lease_owner

logger = get_logger(__name__)

MAINTENANCE_LEASE = "number_pool_maintenance"

# Running periodic jobs by name
_scheduled_tasks: dict[str, asyncio.Task] = {}


async def run_maintenance(
    session_maker: Optional[async_sessionmaker] = None,
    pool: Optional[NumberPoolService] = None,
    leases: Optional[LeaseService] = None,
    notifications: Optional[NotificationService] = None,
) -> Optional[MaintenanceResult]:
    """Clear expired reservations, recycle released numbers and check inventory.

    Returns None when another worker is already running maintenance.
    """
    session_maker = session_maker or async_session_maker
    pool = pool or NumberPoolService()
    leases = leases or LeaseService()
    notifications = notifications or NotificationService()
    owner = generate_lease_owner()

    with job_context(MAINTENANCE_LEASE, owner):
        return await _maintain(session_maker, pool, leases, notifications, owner)


async def _maintain(
    session_maker: async_sessionmaker,
    pool: NumberPoolService,
    leases: LeaseService,
    notifications: NotificationService,
    owner: str,
) -> Optional[MaintenanceResult]:
    async with session_maker() as db:
        if not await leases.acquire(db, MAINTENANCE_LEASE, owner):
            logger.info("pool_maintenance_already_running")
            return None

    try:
        async with session_maker() as db:
            expired_count = await pool.cleanup_expired_reservations(db)
            recycled_count = await pool.recycle_released_numbers(
                db, settings.recycle_cooldown_hours
            )
            stats = await pool.get_pool_stats(db)
    finally:
        async with session_maker() as db:
            await leases.release(db, MAINTENANCE_LEASE, owner)

    result = MaintenanceResult(
        expired_reservations_cleared=expired_count,
        numbers_recycled=recycled_count,
        stats=stats,
        low_inventory=stats.is_low(settings.low_inventory_threshold),
    )

    logger.info(
        "pool_maintenance_completed",
        expired_reservations_cleared=expired_count,
        numbers_recycled=recycled_count,
        total=stats.total,
        available=stats.available,
        assigned=stats.assigned,
        reserved=stats.reserved,
    )

    if result.low_inventory:
        logger.warning(
            "pool_low_availability",
            available=stats.available,
            by_region={region: s.model_dump() for region, s in stats.by_region.items()},
        )
        await notifications.alert_low_inventory(stats, settings.low_inventory_threshold)

    return result


async def process_provisioning_queue(
    queue: Optional[ProvisioningQueueService] = None,
) -> list[QueueItemResult]:
    """Drain due provisioning queue items."""
    queue = queue or ProvisioningQueueService()
    return await queue.drain(settings.queue_batch_size)


def schedule_periodic_task(
    task_id: str,
    interval_seconds: int,
    func: Callable[[], Awaitable[object]],
) -> None:
    """Run ``func`` now and then every ``interval_seconds`` until cancelled.

    Args:
        task_id: Unique identifier for the job (used to cancel it)
        interval_seconds: Seconds between the end of one run and the start of the next
        func: Async function to run
    """
    async def _run_forever():
        try:
            while True:
                try:
                    await func()
                except Exception as e:
                    logger.error("periodic_task_failed", task_id=task_id, error=str(e), exc_info=True)
                await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("periodic_task_cancelled", task_id=task_id)
            raise

    # Cancel existing task with same ID if exists
    if task_id in _scheduled_tasks:
        _scheduled_tasks[task_id].cancel()

    _scheduled_tasks[task_id] = asyncio.create_task(_run_forever())
    logger.info("periodic_task_scheduled", task_id=task_id, interval_seconds=interval_seconds)


def cancel_scheduled_task(task_id: str) -> bool:
    """Cancel a periodic task by ID."""
    task = _scheduled_tasks.pop(task_id, None)
    if task:
        task.cancel()
        return True
    return False


def start_background_jobs() -> None:
    """Start pool maintenance and the provisioning queue drain."""
    schedule_periodic_task(
        "number_pool_maintenance",
        settings.maintenance_interval_seconds,
        run_maintenance,
    )
    schedule_periodic_task(
        "provisioning_queue",
        settings.queue_drain_interval_seconds,
        process_provisioning_queue,
    )


async def stop_background_jobs() -> None:
    """Cancel all periodic jobs and wait for them to finish."""
    tasks = list(_scheduled_tasks.values())
    for task_id in list(_scheduled_tasks):
        cancel_scheduled_task(task_id)
    await asyncio.gather(*tasks, return_exceptions=True)
