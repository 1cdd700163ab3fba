from datetime import timedelta

import pytest

from _helper import VALID_PAYLOAD, FlakyStore, SleepRecorder
from orderflow.engine import DriveOutcome
from orderflow.order_state import OrderState
from orderflow.recovery import FAILED, FORWARD, REVERTED, SKIPPED
from orderflow.services import make_services
from orderflow.store import InMemoryOrderStore, utcnow


async def _stuck(store, state, age, payload=VALID_PAYLOAD):
    order_id = await store.create(OrderState.CREATED, payload)
    store.force_state(order_id, state, updated_at=utcnow() - age)
    return order_id


@pytest.mark.asyncio
async def test_unconfirmed_broadcast_is_reverted(services, store):
    order_id = await _stuck(store, OrderState.BROADCAST_STARTED, timedelta(minutes=10))

    [resolution] = await services.scanner.scan_once()

    assert resolution.resolution == REVERTED
    assert resolution.to_state == "validated"
    assert (await store.get(order_id)).state is OrderState.VALIDATED


@pytest.mark.asyncio
async def test_confirmed_broadcast_is_moved_forward(services, store, channel):
    order_id = await _stuck(store, OrderState.BROADCAST_STARTED, timedelta(minutes=10))
    channel.marked.add(order_id)

    [resolution] = await services.scanner.scan_once()

    assert resolution.resolution == FORWARD
    assert (await store.get(order_id)).state is OrderState.BROADCASTED


@pytest.mark.asyncio
async def test_fresh_transitional_orders_are_not_touched(services, store):
    order_id = await _stuck(store, OrderState.BROADCAST_STARTED, timedelta(seconds=30))

    assert await services.scanner.scan_once() == []
    assert (await store.get(order_id)).state is OrderState.BROADCAST_STARTED


@pytest.mark.asyncio
async def test_each_action_has_its_own_threshold(services, store):
    # 2 minutes is stale for validation (60s) but not for broadcast (300s).
    validating = await _stuck(store, OrderState.VALIDATION_STARTED, timedelta(minutes=2))
    broadcasting = await _stuck(store, OrderState.BROADCAST_STARTED, timedelta(minutes=2))

    resolutions = await services.scanner.scan_once()

    assert [r.order_id for r in resolutions] == [validating]
    assert (await store.get(validating)).state is OrderState.VALIDATED
    assert (await store.get(broadcasting)).state is OrderState.BROADCAST_STARTED


@pytest.mark.asyncio
async def test_invalid_payload_validation_is_reverted(services, store):
    order_id = await _stuck(store, OrderState.VALIDATION_STARTED, timedelta(minutes=2), payload={})

    [resolution] = await services.scanner.scan_once()

    assert resolution.resolution == REVERTED
    assert (await store.get(order_id)).state is OrderState.CREATED


@pytest.mark.asyncio
async def test_recovered_orders_are_queued_and_finish(services, store, channel, enqueued):
    reverted = await _stuck(store, OrderState.BROADCAST_STARTED, timedelta(minutes=10))
    forward = await _stuck(store, OrderState.BROADCAST_STARTED, timedelta(minutes=10))
    channel.marked.add(forward)

    await services.scanner.scan_once()

    assert sorted(enqueued) == sorted([reverted, forward])
    # Drive whatever the queue hands back, the way a worker would.
    for order_id in list(enqueued):
        result = await services.drive(order_id)
        assert result.outcome is DriveOutcome.COMPLETE
    assert (await store.get(reverted)).state is OrderState.COMPLETE
    assert (await store.get(forward)).state is OrderState.COMPLETE
    assert channel.published == [reverted]


@pytest.mark.asyncio
async def test_fresh_and_skipped_orders_are_not_queued(channel, settings):
    store = _WorkerWinsStore()
    queued = []

    async def enqueue(order_id):
        queued.append(order_id)

    services = make_services(store, channel, settings, enqueue=enqueue, sleep=SleepRecorder())
    await _stuck(store, OrderState.BROADCAST_STARTED, timedelta(minutes=10))
    await _stuck(store, OrderState.VALIDATION_STARTED, timedelta(seconds=5))

    [resolution] = await services.scanner.scan_once()

    assert resolution.resolution == SKIPPED
    assert queued == []


@pytest.mark.asyncio
async def test_store_outage_fails_each_order_without_aborting_the_pass(channel, settings, enqueued):
    store = FlakyStore(update_failures=100)

    async def enqueue(order_id):
        enqueued.append(order_id)

    services = make_services(store, channel, settings, enqueue=enqueue, sleep=SleepRecorder())
    validating = await _stuck(store, OrderState.VALIDATION_STARTED, timedelta(minutes=5))
    broadcasting = await _stuck(store, OrderState.BROADCAST_STARTED, timedelta(minutes=10))

    resolutions = await services.scanner.scan_once()

    assert [(r.order_id, r.resolution) for r in resolutions] == [(validating, FAILED), (broadcasting, FAILED)]
    assert (await store.get(validating)).state is OrderState.VALIDATION_STARTED
    assert (await store.get(broadcasting)).state is OrderState.BROADCAST_STARTED
    assert enqueued == []


@pytest.mark.asyncio
async def test_requeue_failure_does_not_undo_the_resolution(channel, settings, store):
    async def broken_enqueue(order_id):
        raise ConnectionError("redis down")

    services = make_services(store, channel, settings, enqueue=broken_enqueue, sleep=SleepRecorder())
    order_id = await _stuck(store, OrderState.BROADCAST_STARTED, timedelta(minutes=10))

    [resolution] = await services.scanner.scan_once()

    assert resolution.resolution == REVERTED
    assert (await store.get(order_id)).state is OrderState.VALIDATED


class _WorkerWinsStore(InMemoryOrderStore):
    """The live worker finishes its exit write between the scan query and the scanner's update."""

    async def find_stale(self, state, older_than, limit):
        stale = await super().find_stale(state, older_than, limit)
        for order in stale:
            await self.conditional_update(order.id, state, OrderState.BROADCASTED)
        return stale


@pytest.mark.asyncio
async def test_live_worker_wins_the_race(channel, settings):
    store = _WorkerWinsStore()
    services = make_services(store, channel, settings, enqueue=None, sleep=SleepRecorder())
    order_id = await _stuck(store, OrderState.BROADCAST_STARTED, timedelta(minutes=10))

    [resolution] = await services.scanner.scan_once()

    assert resolution.resolution == SKIPPED
    assert (await store.get(order_id)).state is OrderState.BROADCASTED


@pytest.mark.asyncio
async def test_recovery_never_goes_past_the_next_stable_state(services, store, channel):
    order_id = await _stuck(store, OrderState.BROADCAST_STARTED, timedelta(minutes=10))
    channel.marked.add(order_id)

    await services.scanner.scan_once()
    await services.scanner.scan_once()

    assert (await store.get(order_id)).state is OrderState.BROADCASTED
    [record] = await store.transitions(order_id)
    assert (record.from_state, record.to_state) == ("broadcast_started", "broadcasted")
