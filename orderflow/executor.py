"""
Transition executor: the single place where order state changes.
A conditional update either succeeds (progress) or raises StateConflict (someone else moved the order).
StoreUnavailable is retried with exponential backoff, then surfaced as StoreError.
"""
import asyncio
import logging

from orderflow.errors import StateConflict, StoreError, StoreUnavailable
from orderflow.metrics import order_transitions_total, state_conflicts_total, store_retries_total
from orderflow.order_state import OrderState
from orderflow.store import Order, OrderStore

logger = logging.getLogger(__name__)


class TransitionExecutor:
    def __init__(
        self,
        store: OrderStore,
        max_retries: int = 5,
        backoff_base_ms: int = 50,
        backoff_max_ms: int = 2000,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self._sleep = sleep

    def backoff_seconds(self, attempt: int) -> float:
        return min(self.backoff_base_ms * 2 ** attempt, self.backoff_max_ms) / 1000

    async def _with_retry(self, order_id: str, last_state: str | None, op, *args):
        attempt = 0
        while True:
            try:
                return await op(*args)
            except StoreUnavailable as e:
                if attempt >= self.max_retries:
                    logger.error("Store unavailable for order_id=%s after %d retries: %s", order_id, attempt, e)
                    raise StoreError(order_id, last_state, f"store unavailable: {e}") from e
                delay = self.backoff_seconds(attempt)
                attempt += 1
                store_retries_total.inc()
                logger.warning(
                    "Store unavailable for order_id=%s, retrying in %.3fs (%d/%d)",
                    order_id, delay, attempt, self.max_retries,
                )
                await self._sleep(delay)

    async def read(self, order_id: str, last_state: str | None = None) -> Order:
        return await self._with_retry(order_id, last_state, self.store.get, order_id)

    async def update(self, order_id: str, expected: OrderState | str, new: OrderState) -> None:
        expected_value = getattr(expected, "value", expected)
        try:
            await self._with_retry(order_id, expected_value, self.store.conditional_update, order_id, expected, new)
        except StateConflict as e:
            state_conflicts_total.inc()
            logger.info("State conflict on order_id=%s: %s -> %s (actual=%s)", order_id, expected_value, new.value, e.actual)
            raise
        order_transitions_total.labels(from_state=expected_value, to_state=new.value).inc()
        logger.info("order_id=%s %s -> %s", order_id, expected_value, new.value)
