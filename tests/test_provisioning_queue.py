"""Tests for the provisioning retry queue."""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from number_pool.models import PoolStatus, ProvisioningQueueItem, QueueStatus
from number_pool.schemas import ProvisioningResult
from number_pool.services import LeaseService, ProvisioningQueueService, ProvisioningService
from number_pool.services.provisioning_queue import (
    DRAIN_LEASE,
    MAX_ATTEMPTS,
    RETRY_DELAYS,
    retry_delay,
)
from number_pool.utils.helpers import utc_now


class FlakyProvisioning(ProvisioningService):
    """Fails for one tenant, succeeds for everyone else."""

    async def provision_user_numbers(self, db, tenant_id, count, region=None):
        if tenant_id == "tenant-bad":
            raise RuntimeError("carrier unreachable")
        return ProvisioningResult(provisioned=count, requested=count)


class CancelledProvisioning(ProvisioningService):
    """Simulates the job being cancelled mid-attempt (shutdown during a deploy)."""

    async def provision_user_numbers(self, db, tenant_id, count, region=None):
        raise asyncio.CancelledError()


async def load_item(session_maker, item_id) -> ProvisioningQueueItem:
    async with session_maker() as session:
        return await session.get(ProvisioningQueueItem, item_id)


def test_retry_delay_ladder():
    assert [retry_delay(n) for n in range(1, 6)] == [60, 300, 900, 3600, 7200]
    assert retry_delay(6) == 7200
    assert retry_delay(42) == 7200
    assert RETRY_DELAYS[-1] == 7200
    assert MAX_ATTEMPTS == 5


@pytest.mark.asyncio
async def test_enqueue_creates_pending_item(db, queue_service):
    before = utc_now()
    item = await queue_service.enqueue(db, "tenant-a", "pro", 2)

    assert item.status == QueueStatus.pending.value
    assert item.attempts == 0
    assert item.numbers_requested == 2
    assert item.region == "IE"
    assert item.next_retry_at.replace(tzinfo=None) >= before.replace(tzinfo=None)


@pytest.mark.asyncio
async def test_enqueue_rejects_empty_request(db, queue_service):
    with pytest.raises(ValueError):
        await queue_service.enqueue(db, "tenant-a", "pro", 0)


@pytest.mark.asyncio
async def test_process_item_completes_when_pool_has_enough(
    db, session_maker, queue_service, pool_service, add_numbers
):
    await add_numbers(3)
    item = await queue_service.enqueue(db, "tenant-a", "pro", 2)

    result = await queue_service.process_item(db, item)

    assert result.status == QueueStatus.completed.value
    assert result.provisioned == 2
    stored = await load_item(session_maker, item.id)
    assert stored.status == QueueStatus.completed.value
    assert stored.attempts == 1
    assert stored.completed_at is not None
    assert stored.result["provisioned"] == 2
    assert len(await pool_service.get_tenant_numbers(db, "tenant-a")) == 2


@pytest.mark.asyncio
async def test_partial_success_retries_only_the_remainder(db, session_maker, queue_service, add_numbers):
    """Asked for 3, pool yields 2: one number left to retry in 60 seconds."""
    await add_numbers(2)
    item = await queue_service.enqueue(db, "tenant-a", "pro", 3)

    result = await queue_service.process_item(db, item)

    assert result.provisioned == 2
    stored = await load_item(session_maker, item.id)
    assert stored.status == QueueStatus.pending.value
    assert stored.numbers_requested == 1
    assert not stored.is_terminal
    assert stored.attempts == 1
    assert stored.next_retry_at == stored.last_attempt_at + timedelta(seconds=60)
    assert stored.error_message == "Partial success: 2 provisioned, 1 remaining"


@pytest.mark.asyncio
async def test_partial_success_on_last_attempt_is_terminal(db, session_maker, queue_service, add_numbers):
    await add_numbers(2)
    item = await queue_service.enqueue(db, "tenant-a", "pro", 3)
    item.attempts = MAX_ATTEMPTS - 1
    await db.commit()

    await queue_service.process_item(db, item)

    stored = await load_item(session_maker, item.id)
    assert stored.status == QueueStatus.partial.value
    assert stored.is_terminal
    assert stored.attempts == MAX_ATTEMPTS
    assert stored.numbers_requested == 3
    assert stored.error_message == "Provisioned 2 of 3 numbers"


@pytest.mark.asyncio
async def test_empty_pool_marks_item_failed_with_backoff(db, session_maker, queue_service):
    item = await queue_service.enqueue(db, "tenant-a", "pro", 2)

    result = await queue_service.process_item(db, item)

    assert result.status == QueueStatus.failed.value
    stored = await load_item(session_maker, item.id)
    assert stored.status == QueueStatus.failed.value
    assert stored.attempts == 1
    assert stored.next_retry_at == stored.last_attempt_at + timedelta(seconds=60)
    assert "No available phone numbers" in stored.error_message


@pytest.mark.asyncio
async def test_repeated_failures_end_in_max_attempts_reached(
    db, session_maker, queue_service, notifications
):
    item = await queue_service.enqueue(db, "tenant-a", "pro", 2)
    start = utc_now() + timedelta(seconds=1)

    for attempt in range(1, MAX_ATTEMPTS + 1):
        results = await queue_service.drain(now=start + timedelta(hours=3 * attempt))
        assert len(results) == 1
        stored = await load_item(session_maker, item.id)
        assert stored.attempts == attempt
        if attempt < MAX_ATTEMPTS:
            assert stored.status == QueueStatus.failed.value
            notifications.alert_provisioning_failed.assert_not_awaited()

    assert stored.status == QueueStatus.max_attempts_reached.value
    assert stored.is_terminal
    notifications.alert_provisioning_failed.assert_awaited_once()

    # Terminal items are never picked up again
    assert await queue_service.drain(now=start + timedelta(days=2)) == []
    stored = await load_item(session_maker, item.id)
    assert stored.attempts == MAX_ATTEMPTS


@pytest.mark.asyncio
async def test_gateway_failure_is_retried_with_the_same_reservation(
    db, session_maker, queue_service, pool_service, voice_provider, add_numbers
):
    (entry_id,) = await add_numbers(1)
    item = await queue_service.enqueue(db, "tenant-a", "pro", 1)

    voice_provider.fail = True
    await queue_service.process_item(db, item)
    stored = await load_item(session_maker, item.id)
    assert stored.status == QueueStatus.failed.value
    assert "Voice provider import failed" in stored.error_message

    # The number is still held for the tenant, not lost
    stats = await pool_service.get_pool_stats(db)
    assert stats.reserved == 1

    voice_provider.fail = False
    async with session_maker() as session:
        retry_item = await session.get(ProvisioningQueueItem, item.id)
        result = await queue_service.process_item(session, retry_item)

    assert result.status == QueueStatus.completed.value
    numbers = await pool_service.get_tenant_numbers(db, "tenant-a")
    assert [n.id for n in numbers] == [entry_id]


@pytest.mark.asyncio
async def test_drain_processes_due_items_oldest_first(db, session_maker, queue_service, add_numbers):
    await add_numbers(5)
    first = await queue_service.enqueue(db, "tenant-a", "pro", 1)
    second = await queue_service.enqueue(db, "tenant-b", "pro", 1)
    third = await queue_service.enqueue(db, "tenant-c", "pro", 1)

    results = await queue_service.drain(batch_size=2, now=utc_now() + timedelta(seconds=1))

    assert [r.item_id for r in results] == [first.id, second.id]
    assert (await load_item(session_maker, third.id)).status == QueueStatus.pending.value


@pytest.mark.asyncio
async def test_drain_skips_items_not_yet_due(db, session_maker, queue_service):
    item = await queue_service.enqueue(db, "tenant-a", "pro", 1)
    now = utc_now() + timedelta(seconds=1)
    await queue_service.drain(now=now)

    # Failed once, next retry is 60s out
    assert await queue_service.drain(now=now + timedelta(seconds=30)) == []
    assert (await load_item(session_maker, item.id)).attempts == 1


@pytest.mark.asyncio
async def test_one_failing_item_does_not_stop_the_batch(
    db, session_maker, pool_service, notifications
):
    queue = ProvisioningQueueService(
        provisioning=FlakyProvisioning(pool=pool_service),
        session_maker=session_maker,
        notifications=notifications,
    )
    bad = await queue.enqueue(db, "tenant-bad", "pro", 1)
    good = await queue.enqueue(db, "tenant-good", "pro", 1)

    results = await queue.drain(now=utc_now() + timedelta(seconds=1))

    assert {r.item_id: r.status for r in results} == {
        bad.id: QueueStatus.failed.value,
        good.id: QueueStatus.completed.value,
    }
    assert (await load_item(session_maker, bad.id)).error_message == "carrier unreachable"


@pytest.mark.asyncio
async def test_drain_is_noop_while_another_drain_holds_the_lease(
    db, session_maker, queue_service, add_numbers
):
    await add_numbers(1)
    item = await queue_service.enqueue(db, "tenant-a", "pro", 1)

    async with session_maker() as session:
        assert await LeaseService().acquire(session, DRAIN_LEASE, "other-worker")

    assert await queue_service.drain(now=utc_now() + timedelta(seconds=1)) == []
    stored = await load_item(session_maker, item.id)
    assert stored.status == QueueStatus.pending.value
    assert stored.attempts == 0


@pytest.mark.asyncio
async def test_drain_releases_its_lease(db, session_maker, queue_service):
    await queue_service.drain()

    async with session_maker() as session:
        assert await LeaseService().acquire(session, DRAIN_LEASE, "next-worker")


@pytest.mark.asyncio
async def test_tenant_items_for_support(db, queue_service):
    older = await queue_service.enqueue(db, "tenant-a", "starter", 1)
    newer = await queue_service.enqueue(db, "tenant-a", "pro", 2)
    await queue_service.enqueue(db, "tenant-b", "pro", 1)

    items = await queue_service.get_tenant_items(db, "tenant-a")

    assert [i.id for i in items] == [newer.id, older.id]
    assert (await queue_service.get_item(db, older.id)).plan_id == "starter"


@pytest.mark.asyncio
async def test_completed_numbers_are_assigned_in_pool(db, queue_service, pool_service, add_numbers):
    await add_numbers(1)
    item = await queue_service.enqueue(db, "tenant-a", "pro", 1)

    await queue_service.process_item(db, item)

    stats = await pool_service.get_pool_stats(db)
    assert stats.assigned == 1
    assert stats.available == 0
    numbers = await pool_service.get_tenant_numbers(db, "tenant-a")
    assert numbers[0].status == PoolStatus.assigned.value


@pytest.mark.asyncio
async def test_cancelled_attempt_hands_the_item_back(
    db, session_maker, queue_service, pool_service, notifications, add_numbers
):
    await add_numbers(1)
    item = await queue_service.enqueue(db, "tenant-a", "pro", 1)
    stopping = ProvisioningQueueService(
        provisioning=CancelledProvisioning(pool=pool_service),
        session_maker=session_maker,
        notifications=notifications,
    )
    now = utc_now() + timedelta(seconds=1)

    with pytest.raises(asyncio.CancelledError):
        await stopping.drain(now=now)

    stored = await load_item(session_maker, item.id)
    assert stored.status == QueueStatus.pending.value
    assert stored.attempts == 0

    # The next worker picks it up as if nothing happened
    results = await queue_service.drain(now=now + timedelta(seconds=1))
    assert [r.status for r in results] == [QueueStatus.completed.value]


@pytest.mark.asyncio
async def test_drain_requeues_items_stuck_in_processing(
    db, session_maker, queue_service, add_numbers
):
    await add_numbers(2)
    abandoned = await queue_service.enqueue(db, "tenant-a", "pro", 1)
    in_flight = await queue_service.enqueue(db, "tenant-b", "pro", 1)
    now = utc_now() + timedelta(seconds=1)

    async with session_maker() as session:
        await session.execute(
            update(ProvisioningQueueItem)
            .where(ProvisioningQueueItem.id == abandoned.id)
            .values(status=QueueStatus.processing.value, last_attempt_at=now - timedelta(hours=1))
        )
        await session.execute(
            update(ProvisioningQueueItem)
            .where(ProvisioningQueueItem.id == in_flight.id)
            .values(status=QueueStatus.processing.value, last_attempt_at=now - timedelta(minutes=1))
        )
        await session.commit()

    results = await queue_service.drain(now=now)

    assert [r.item_id for r in results] == [abandoned.id]
    stored = await load_item(session_maker, abandoned.id)
    assert stored.status == QueueStatus.completed.value
    assert stored.attempts == 1
    # Still inside the lease TTL, so another worker may own it
    assert (await load_item(session_maker, in_flight.id)).status == QueueStatus.processing.value


@pytest.mark.asyncio
async def test_storage_error_after_partial_assignment_only_retries_the_rest(
    db, session_maker, queue_service, pool_service, add_numbers, monkeypatch
):
    await add_numbers(5)
    item = await queue_service.enqueue(db, "tenant-a", "pro", 2)
    real_reserve = pool_service.reserve_number
    calls = []

    async def flaky_reserve(session, tenant_id, region=None, reserve_minutes=None):
        calls.append(tenant_id)
        if len(calls) == 2:
            raise OperationalError("UPDATE phone_number_pool", {}, Exception("database is locked"))
        return await real_reserve(session, tenant_id, region, reserve_minutes)

    monkeypatch.setattr(pool_service, "reserve_number", flaky_reserve)
    now = utc_now() + timedelta(seconds=1)

    results = await queue_service.drain(now=now)

    assert results[0].provisioned == 1
    stored = await load_item(session_maker, item.id)
    assert stored.status == QueueStatus.pending.value
    assert stored.numbers_requested == 1
    assert stored.attempts == 1

    await queue_service.drain(now=now + timedelta(minutes=2))

    assert (await load_item(session_maker, item.id)).status == QueueStatus.completed.value
    assert len(await pool_service.get_tenant_numbers(db, "tenant-a")) == 2


@pytest.mark.asyncio
async def test_provisioning_uses_a_checkout_hold_before_taking_new_numbers(
    db, pool_service, provisioning_service, add_numbers
):
    await add_numbers(3)
    held = await pool_service.reserve_number(db, "tenant-a")

    result = await provisioning_service.provision_user_numbers(db, "tenant-a", 1)

    assert [n.pool_entry_id for n in result.numbers] == [held.id]
    stats = await pool_service.get_pool_stats(db)
    assert stats.assigned == 1
    assert stats.reserved == 0
    assert stats.available == 2
