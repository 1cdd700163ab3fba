"""
Drive loop: walk one order from its current state to the terminal state.
Each iteration re-reads the order, looks up the step for its stable state and runs the action.
StateConflict is routine (another worker moved the order) and handled by re-reading;
everything else propagates with the order id and last observed state attached.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from orderflow.errors import ActionError, ActionFailed, Contended, StateConflict
from orderflow.executor import TransitionExecutor
from orderflow.order_state import TransitionTable

logger = logging.getLogger(__name__)


class DriveOutcome(str, Enum):
    COMPLETE = "complete"
    YIELDED = "yielded"  # order is locked by a transitional state we did not write
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class DriveResult:
    order_id: str
    outcome: DriveOutcome
    state: str | None
    conflicts: int = 0


async def drive(
    order_id: str,
    table: TransitionTable,
    executor: TransitionExecutor,
    cancel: asyncio.Event | None = None,
    max_conflicts: int = 3,
) -> DriveResult:
    conflicts = 0
    last_state: str | None = None
    while True:
        if cancel is not None and cancel.is_set():
            logger.info("Drive cancelled for order_id=%s at state=%s", order_id, last_state)
            return DriveResult(order_id, DriveOutcome.CANCELLED, last_state, conflicts)

        order = await executor.read(order_id, last_state=last_state)
        last_state = order.state_value

        if order.locked:
            logger.info("order_id=%s is locked in %s, yielding", order_id, last_state)
            return DriveResult(order_id, DriveOutcome.YIELDED, last_state, conflicts)
        if getattr(order.state, "is_terminal", False):
            return DriveResult(order_id, DriveOutcome.COMPLETE, last_state, conflicts)

        step = table.lookup(order_id, order.state)
        try:
            terminal = await step.action.execute(order, executor)
        except StateConflict as e:
            conflicts += 1
            if conflicts > max_conflicts:
                raise Contended(order_id, e.actual or last_state, conflicts) from e
            logger.info(
                "Conflict driving order_id=%s in %s (%d/%d), re-reading",
                order_id, step.action.name, conflicts, max_conflicts,
            )
            continue
        except ActionError as e:
            logger.error("Action %s failed for order_id=%s: %s", step.action.name, order_id, e)
            raise ActionFailed(order_id, step.transitional.value if step.transitional else last_state, e) from e

        last_state = step.target.value
        if terminal:
            return DriveResult(order_id, DriveOutcome.COMPLETE, last_state, conflicts)
