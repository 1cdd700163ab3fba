"""
Exception taxonomy.
Store-level errors (StoreUnavailable, StateConflict, NotFound) are raised by OrderStore implementations.
EngineError subclasses are what the drive loop surfaces to its caller, always with order_id and last_state.
"""


class OrderflowError(Exception):
    """Base for every error raised by the engine or its stores."""


class StoreUnavailable(OrderflowError):
    """Transient store failure (connection dropped, timeout). Safe to retry."""


class StateConflict(OrderflowError):
    """Conditional update matched no row: the order is not in the expected state."""
    def __init__(self, order_id: str, expected: str, actual: str | None = None):
        self.order_id = order_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"order {order_id}: expected state {expected!r}, found {actual!r}")


class NotFound(OrderflowError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"order {order_id} not found")


class ActionError(OrderflowError):
    """Domain failure inside an action's side effect."""


class EngineError(OrderflowError):
    """Failure surfaced by the drive loop. Carries where the order was left."""
    def __init__(self, order_id: str, last_state: str | None, message: str = ""):
        self.order_id = order_id
        self.last_state = last_state
        super().__init__(f"order {order_id} (state={last_state}): {message}" if message else f"order {order_id} (state={last_state})")


class UnknownState(EngineError):
    """The order's state has no entry in the transition table. Never retried."""
    def __init__(self, order_id: str, last_state: str | None):
        super().__init__(order_id, last_state, "no transition for state")


class Contended(EngineError):
    def __init__(self, order_id: str, last_state: str | None, conflicts: int):
        self.conflicts = conflicts
        super().__init__(order_id, last_state, f"gave up after {conflicts} state conflicts")


class StoreError(EngineError):
    """Store stayed unavailable after the configured retries."""


class ActionFailed(EngineError):
    def __init__(self, order_id: str, last_state: str | None, cause: ActionError):
        self.cause = cause
        super().__init__(order_id, last_state, f"action failed: {cause}")
