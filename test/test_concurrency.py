"""
Racing drive loops on the same order. YieldingStore suspends before every read and write,
so the loops interleave at each store round trip.
"""
import asyncio

import pytest
from prometheus_client import REGISTRY

from _helper import VALID_PAYLOAD, SleepRecorder, YieldingStore, visited_states
from orderflow.engine import DriveOutcome
from orderflow.order_state import OrderState
from orderflow.services import make_services

FULL_PATH = ["created", "validation_started", "validated", "broadcast_started", "broadcasted", "complete"]


@pytest.fixture
def racing(channel, settings):
    store = YieldingStore()
    return store, make_services(store, channel, settings, enqueue=None, sleep=SleepRecorder())


@pytest.mark.asyncio
async def test_two_racing_workers_apply_each_transition_once(racing, channel):
    store, services = racing
    order_id = await store.create(OrderState.CREATED, VALID_PAYLOAD)
    conflicts_before = REGISTRY.get_sample_value("state_conflicts_total")

    a, b = await asyncio.gather(services.drive(order_id), services.drive(order_id))

    assert (await store.get(order_id)).state is OrderState.COMPLETE
    assert visited_states(await store.transitions(order_id)) == FULL_PATH
    assert DriveOutcome.COMPLETE in (a.outcome, b.outcome)
    assert {a.outcome, b.outcome} <= {DriveOutcome.COMPLETE, DriveOutcome.YIELDED}
    # The loser of the first write saw a conflict rather than overwriting.
    assert a.conflicts + b.conflicts >= 1
    assert REGISTRY.get_sample_value("state_conflicts_total") - conflicts_before == a.conflicts + b.conflicts
    assert channel.published == [order_id]


@pytest.mark.asyncio
async def test_many_workers_many_orders(racing, channel):
    store, services = racing
    order_ids = [await store.create(OrderState.CREATED, VALID_PAYLOAD) for _ in range(5)]

    results = await asyncio.gather(*(services.drive(oid) for oid in order_ids for _ in range(4)))

    assert all(r.outcome in (DriveOutcome.COMPLETE, DriveOutcome.YIELDED) for r in results)
    for oid in order_ids:
        assert (await store.get(oid)).state is OrderState.COMPLETE
        assert visited_states(await store.transitions(oid)) == FULL_PATH
    assert sorted(channel.published) == sorted(order_ids)
