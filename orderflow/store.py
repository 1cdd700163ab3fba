"""
Entity store contract + in-process implementation.
The only hard requirement on a store: conditional_update must check and set atomically.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Protocol

from orderflow.errors import NotFound, StateConflict
from orderflow.order_state import OrderState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Order:
    id: str
    state: OrderState | str  # raw str when the stored value is not a known state
    payload: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def locked(self) -> bool:
        return isinstance(self.state, OrderState) and self.state.locked

    @property
    def state_value(self) -> str:
        return self.state.value if isinstance(self.state, OrderState) else self.state


@dataclass(frozen=True)
class TransitionRecord:
    order_id: str
    from_state: str
    to_state: str
    created_at: datetime


class OrderStore(Protocol):
    async def create(self, initial_state: OrderState, payload: dict | None = None) -> str: ...

    async def get(self, order_id: str) -> Order: ...

    async def conditional_update(self, order_id: str, expected: OrderState | str, new: OrderState) -> None: ...

    async def find_stale(self, state: OrderState, older_than: datetime, limit: int) -> list[Order]: ...

    async def transitions(self, order_id: str) -> list[TransitionRecord]: ...


def _value(state: OrderState | str) -> str:
    return state.value if isinstance(state, OrderState) else state


class InMemoryOrderStore:
    """
    Dict-backed store. Each operation runs without awaiting between check and set,
    so conditional_update is atomic within one event loop.
    """

    def __init__(self, clock=utcnow):
        self._clock = clock
        self._orders: dict[str, Order] = {}
        self._log: dict[str, list[TransitionRecord]] = {}

    async def create(self, initial_state: OrderState, payload: dict | None = None) -> str:
        order_id = str(uuid.uuid4())
        now = self._clock()
        self._orders[order_id] = Order(order_id, initial_state, dict(payload or {}), now, now)
        self._log[order_id] = []
        return order_id

    async def get(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFound(order_id)
        return order

    async def conditional_update(self, order_id: str, expected: OrderState | str, new: OrderState) -> None:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFound(order_id)
        if _value(order.state) != _value(expected):
            raise StateConflict(order_id, _value(expected), order.state_value)
        now = self._clock()
        self._orders[order_id] = replace(order, state=new, updated_at=now)
        self._log[order_id].append(TransitionRecord(order_id, _value(expected), new.value, now))

    async def find_stale(self, state: OrderState, older_than: datetime, limit: int) -> list[Order]:
        stale = [
            o for o in self._orders.values()
            if _value(o.state) == state.value and o.updated_at is not None and o.updated_at < older_than
        ]
        stale.sort(key=lambda o: o.updated_at)
        return stale[:limit]

    async def transitions(self, order_id: str) -> list[TransitionRecord]:
        if order_id not in self._log:
            raise NotFound(order_id)
        return list(self._log[order_id])

    def force_state(self, order_id: str, state: OrderState | str, updated_at: datetime | None = None) -> None:
        """Overwrite state outside the protocol (operator repair, tests)."""
        order = self._orders[order_id]
        self._orders[order_id] = replace(order, state=state, updated_at=updated_at or self._clock())
