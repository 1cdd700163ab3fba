"""
Order lifecycle state machine.
Stable states are rest points; each transitional state marks an action in flight and doubles as a lock.
The transition table is built once at startup and passed to the drive loop and recovery scanner.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Iterable, Mapping

from orderflow.errors import UnknownState

if TYPE_CHECKING:
    from orderflow.actions import Action


class OrderState(str, Enum):
    CREATED = "created"
    VALIDATION_STARTED = "validation_started"
    VALIDATED = "validated"
    BROADCAST_STARTED = "broadcast_started"
    BROADCASTED = "broadcasted"
    COMPLETE = "complete"

    @property
    def locked(self) -> bool:
        """True while an action is executing against the order."""
        return self in _TRANSITIONAL

    @property
    def is_terminal(self) -> bool:
        return self is OrderState.COMPLETE

    @classmethod
    def parse(cls, raw: str) -> OrderState | str:
        """Map a stored value to a member; unknown values come back as the raw string."""
        try:
            return cls(raw)
        except ValueError:
            return raw


_TRANSITIONAL = frozenset({OrderState.VALIDATION_STARTED, OrderState.BROADCAST_STARTED})


@dataclass(frozen=True)
class Step:
    source: OrderState
    transitional: OrderState | None
    target: OrderState
    action: Action


class TransitionTable:
    """Immutable stable state -> Step mapping."""

    def __init__(self, steps: Iterable[Step]):
        by_source: dict[OrderState, Step] = {}
        by_transitional: dict[OrderState, Step] = {}
        for step in steps:
            if step.source.locked or step.target.locked:
                raise ValueError(f"step {step.source.value}->{step.target.value} must join stable states")
            if step.source.is_terminal:
                raise ValueError("terminal state cannot have an outgoing step")
            if step.source in by_source:
                raise ValueError(f"duplicate step for {step.source.value}")
            if step.transitional is not None:
                if not step.transitional.locked:
                    raise ValueError(f"{step.transitional.value} is not a transitional state")
                if step.transitional in by_transitional:
                    raise ValueError(f"{step.transitional.value} used by more than one step")
                by_transitional[step.transitional] = step
            by_source[step.source] = step
        self._steps: Mapping[OrderState, Step] = MappingProxyType(by_source)
        self._by_transitional: Mapping[OrderState, Step] = MappingProxyType(by_transitional)

    def lookup(self, order_id: str, state: OrderState | str) -> Step:
        step = self._steps.get(state) if isinstance(state, OrderState) else None
        if step is None:
            raise UnknownState(order_id, getattr(state, "value", state))
        return step

    def step_for_transitional(self, state: OrderState) -> Step | None:
        return self._by_transitional.get(state)

    def transitional_steps(self) -> list[Step]:
        return list(self._by_transitional.values())

    def path(self, start: OrderState = OrderState.CREATED) -> list[OrderState]:
        """Every state an order visits from start to the end of the table, in order."""
        states = [start]
        seen = {start}
        current = start
        while current in self._steps:
            step = self._steps[current]
            if step.transitional is not None:
                states.append(step.transitional)
            states.append(step.target)
            current = step.target
            if current in seen:
                raise ValueError(f"transition table loops at {current.value}")
            seen.add(current)
        return states


def build_transition_table(actions: Iterable[Action]) -> TransitionTable:
    return TransitionTable(
        Step(source=a.source, transitional=a.transitional, target=a.target, action=a)
        for a in actions
    )
