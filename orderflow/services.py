"""
Wiring: build the store, transition table, executor and recovery scanner once, share them by reference.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable

from orderflow.actions import RedisBroadcastChannel, default_actions
from orderflow.config import Settings
from orderflow.db import PostgresOrderStore, get_pool, init_schema
from orderflow.engine import DriveResult, drive
from orderflow.errors import EngineError, NotFound
from orderflow.executor import TransitionExecutor
from orderflow.metrics import drive_failures_total, drive_outcomes_total
from orderflow.order_state import TransitionTable, build_transition_table
from orderflow.queue import push_order
from orderflow.recovery import RecoveryScanner
from orderflow.redis_client import get_redis
from orderflow.store import OrderStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: OrderStore
    table: TransitionTable
    executor: TransitionExecutor
    scanner: RecoveryScanner
    enqueue: Callable[[str], Awaitable[None]]
    max_conflicts: int = 3

    async def drive(self, order_id: str, cancel: asyncio.Event | None = None) -> DriveResult:
        """Run the drive loop and count the outcome."""
        try:
            result = await drive(order_id, self.table, self.executor, cancel=cancel, max_conflicts=self.max_conflicts)
        except (EngineError, NotFound) as e:
            drive_failures_total.labels(error=type(e).__name__).inc()
            raise
        drive_outcomes_total.labels(outcome=result.outcome.value).inc()
        return result


def make_services(store: OrderStore, channel, settings: Settings, enqueue=push_order, sleep=asyncio.sleep) -> Services:
    actions = default_actions(
        channel,
        validation_stale_after=timedelta(seconds=settings.validation_stale_after_seconds),
        broadcast_stale_after=timedelta(seconds=settings.broadcast_stale_after_seconds),
    )
    table = build_transition_table(actions)
    executor = TransitionExecutor(
        store,
        max_retries=settings.store_max_retries,
        backoff_base_ms=settings.store_backoff_base_ms,
        backoff_max_ms=settings.store_backoff_max_ms,
        sleep=sleep,
    )
    scanner = RecoveryScanner(table, store, executor, batch_size=settings.recovery_batch_size, enqueue=enqueue)
    return Services(store, table, executor, scanner, enqueue, max_conflicts=settings.drive_max_conflicts)


async def build_services(settings: Settings) -> Services:
    pool = await get_pool()
    await init_schema(pool)
    r = await get_redis()
    channel = RedisBroadcastChannel(r, settings.broadcast_queue_key)
    logger.info("Services ready (postgres store, redis broadcast channel %s)", settings.broadcast_queue_key)
    return make_services(PostgresOrderStore(pool), channel, settings)
