"""
Recovery scanner: resolve orders stuck in a transitional state past their action's staleness threshold.
Forward to the target if the action confirms its side effect, otherwise back to the source.
Uses the same conditional updates as workers, with the transitional state as expected value,
so a live worker that finishes first wins and the scanner just skips the order.
Resolved orders land on a stable state and are handed back to the work queue.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from orderflow.errors import ActionError, NotFound, OrderflowError, StateConflict, StoreError
from orderflow.executor import TransitionExecutor
from orderflow.metrics import recovery_resolutions_total
from orderflow.order_state import Step, TransitionTable
from orderflow.store import OrderStore, utcnow

logger = logging.getLogger(__name__)

FORWARD = "forward"
REVERTED = "reverted"
SKIPPED = "skipped"
FAILED = "failed"  # store stayed unavailable; the order is still stale and the next pass retries it


@dataclass(frozen=True)
class Resolution:
    order_id: str
    from_state: str
    to_state: str | None
    resolution: str


class RecoveryScanner:
    def __init__(
        self,
        table: TransitionTable,
        store: OrderStore,
        executor: TransitionExecutor,
        batch_size: int = 100,
        enqueue: Callable[[str], Awaitable[None]] | None = None,
    ):
        self.table = table
        self.store = store
        self.executor = executor
        self.batch_size = batch_size
        self.enqueue = enqueue

    async def scan_once(self, now: datetime | None = None) -> list[Resolution]:
        now = now or utcnow()
        resolutions: list[Resolution] = []
        for step in self.table.transitional_steps():
            cutoff = now - step.action.stale_after
            stale = await self.store.find_stale(step.transitional, cutoff, self.batch_size)
            for order in stale:
                resolutions.append(await self._resolve(step, order))
        if resolutions:
            logger.info("Recovery pass resolved %d stale order(s)", len(resolutions))
        return resolutions

    async def _resolve(self, step: Step, order) -> Resolution:
        transitional = step.transitional
        try:
            done = await step.action.confirm(order)
        except ActionError as e:
            logger.warning("Could not confirm %s for order_id=%s, leaving it: %s", step.action.name, order.id, e)
            return self._record(Resolution(order.id, transitional.value, None, SKIPPED))

        new_state = step.target if done else step.source
        try:
            await self.executor.update(order.id, transitional, new_state)
        except (StateConflict, NotFound):
            logger.info("order_id=%s left %s before recovery, skipping", order.id, transitional.value)
            return self._record(Resolution(order.id, transitional.value, None, SKIPPED))
        except StoreError as e:
            logger.error("Could not recover order_id=%s: %s", order.id, e)
            return self._record(Resolution(order.id, transitional.value, None, FAILED))

        resolution = FORWARD if done else REVERTED
        logger.warning(
            "Recovered stale order_id=%s: %s -> %s (%s)",
            order.id, transitional.value, new_state.value, resolution,
        )
        if self.enqueue is not None and not new_state.is_terminal:
            await self._requeue(order.id)
        return self._record(Resolution(order.id, transitional.value, new_state.value, resolution))

    async def _requeue(self, order_id: str) -> None:
        # The worker that held the lock dropped its message; nobody else will drive this order.
        try:
            await self.enqueue(order_id)
        except Exception as e:
            logger.exception("Failed to re-queue recovered order_id=%s: %s", order_id, e)

    @staticmethod
    def _record(resolution: Resolution) -> Resolution:
        recovery_resolutions_total.labels(state=resolution.from_state, resolution=resolution.resolution).inc()
        return resolution

    async def run(self, shutdown_event: asyncio.Event, interval: float) -> None:
        logger.info("Recovery scanner started (interval=%.1fs, batch=%d)", interval, self.batch_size)
        while not shutdown_event.is_set():
            try:
                await self.scan_once()
            except OrderflowError as e:
                logger.error("Recovery pass failed: %s", e)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Recovery scanner stopped.")
