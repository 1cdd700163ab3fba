"""
Actions: one per stable state that has a successor.
Each action enters its transitional state, performs its side effect, then exits to its target.
Recovery hooks (stale_after, confirm) are per action because only the action knows how to
prove its side effect happened.
"""
from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError
from redis.exceptions import RedisError

from orderflow.errors import ActionError
from orderflow.executor import TransitionExecutor
from orderflow.order_state import OrderState
from orderflow.redis_client import is_published, publish_once
from orderflow.store import Order

logger = logging.getLogger(__name__)


class Action:
    source: OrderState
    transitional: OrderState | None = None
    target: OrderState
    stale_after: timedelta = timedelta(minutes=5)

    @property
    def name(self) -> str:
        return type(self).__name__

    async def perform(self, order: Order) -> None:
        """Side effect. Raise ActionError on domain failure."""

    async def confirm(self, order: Order) -> bool:
        """Whether the side effect is known to have completed. Used by the recovery scanner."""
        return False

    async def execute(self, order: Order, executor: TransitionExecutor) -> bool:
        if self.transitional is None:
            await executor.update(order.id, self.source, self.target)
            return self.target.is_terminal
        await executor.update(order.id, self.source, self.transitional)
        # From here the transitional state is durable evidence that the effect may have started.
        await self.perform(order)
        await executor.update(order.id, self.transitional, self.target)
        return self.target.is_terminal


class OrderItem(BaseModel):
    sku: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class OrderPayload(BaseModel):
    items: list[OrderItem] = Field(..., min_length=1)
    amount: float = Field(default=0.0, ge=0)
    currency: str = "USD"


class ValidateOrder(Action):
    source = OrderState.CREATED
    transitional = OrderState.VALIDATION_STARTED
    target = OrderState.VALIDATED

    def __init__(self, stale_after: timedelta = timedelta(seconds=60)):
        self.stale_after = stale_after

    async def perform(self, order: Order) -> None:
        try:
            OrderPayload.model_validate(order.payload)
        except ValidationError as e:
            raise ActionError(f"invalid payload for order {order.id}: {e.error_count()} error(s)") from e

    async def confirm(self, order: Order) -> bool:
        # Validation has no external effect, re-running it is the proof.
        try:
            OrderPayload.model_validate(order.payload)
        except ValidationError:
            return False
        return True


class BroadcastChannel(Protocol):
    async def publish(self, order: Order) -> None: ...

    async def was_published(self, order_id: str) -> bool: ...


class RedisBroadcastChannel:
    """Downstream channel: a Redis list plus a per-order marker written in the same transaction."""

    def __init__(self, redis_client, queue_key: str):
        self._redis = redis_client
        self._queue_key = queue_key

    async def publish(self, order: Order) -> None:
        message = json.dumps({"order_id": order.id, "payload": order.payload})
        try:
            published = await publish_once(self._redis, self._queue_key, order.id, message)
        except RedisError as e:
            raise ActionError(f"broadcast failed for order {order.id}: {e}") from e
        if not published:
            logger.info("order_id=%s already broadcast, skipping publish", order.id)

    async def was_published(self, order_id: str) -> bool:
        try:
            return await is_published(self._redis, order_id)
        except RedisError as e:
            raise ActionError(f"could not confirm broadcast for order {order_id}: {e}") from e


class BroadcastOrder(Action):
    source = OrderState.VALIDATED
    transitional = OrderState.BROADCAST_STARTED
    target = OrderState.BROADCASTED

    def __init__(self, channel: BroadcastChannel, stale_after: timedelta = timedelta(minutes=5)):
        self.channel = channel
        self.stale_after = stale_after

    async def perform(self, order: Order) -> None:
        await self.channel.publish(order)

    async def confirm(self, order: Order) -> bool:
        return await self.channel.was_published(order.id)


class CompleteOrder(Action):
    source = OrderState.BROADCASTED
    target = OrderState.COMPLETE


def default_actions(
    channel: BroadcastChannel,
    validation_stale_after: timedelta = timedelta(seconds=60),
    broadcast_stale_after: timedelta = timedelta(minutes=5),
) -> list[Action]:
    return [
        ValidateOrder(stale_after=validation_stale_after),
        BroadcastOrder(channel, stale_after=broadcast_stale_after),
        CompleteOrder(),
    ]
