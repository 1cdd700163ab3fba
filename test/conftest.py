import pytest

from _helper import FakeBroadcastChannel, SleepRecorder
from orderflow.config import Settings
from orderflow.services import make_services
from orderflow.store import InMemoryOrderStore


@pytest.fixture
def settings() -> Settings:
    return Settings(
        drive_max_conflicts=3,
        store_max_retries=3,
        store_backoff_base_ms=50,
        store_backoff_max_ms=2000,
        recovery_batch_size=100,
        validation_stale_after_seconds=60,
        broadcast_stale_after_seconds=300,
    )


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def channel() -> FakeBroadcastChannel:
    return FakeBroadcastChannel()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def enqueued() -> list[str]:
    return []


@pytest.fixture
def services(store, channel, settings, sleeper, enqueued):
    async def enqueue(order_id: str) -> None:
        enqueued.append(order_id)

    return make_services(store, channel, settings, enqueue=enqueue, sleep=sleeper)
