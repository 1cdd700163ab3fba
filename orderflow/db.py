"""
Async Postgres: orders (current state per order) + order_transitions (append-only audit log).
Every state change is one conditional UPDATE ... WHERE state = expected, logged in the same transaction.
"""
import asyncio
import json
import uuid
from datetime import datetime

import asyncpg
from asyncpg.exceptions import InterfaceError, PostgresConnectionError

from orderflow.config import settings
from orderflow.errors import NotFound, StateConflict, StoreUnavailable
from orderflow.order_state import OrderState
from orderflow.store import Order, TransitionRecord

_pool: asyncpg.Pool | None = None

# Errors worth retrying: the request may not have reached the server, or the connection died.
_TRANSIENT = (PostgresConnectionError, InterfaceError, ConnectionError, OSError, asyncio.TimeoutError)


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id VARCHAR(255) PRIMARY KEY,
                state VARCHAR(50) NOT NULL,
                payload JSONB NOT NULL DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_state_updated_at
            ON orders(state, updated_at);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_transitions (
                id BIGSERIAL PRIMARY KEY,
                order_id VARCHAR(255) NOT NULL REFERENCES orders(order_id),
                from_state VARCHAR(50) NOT NULL,
                to_state VARCHAR(50) NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_transitions_order_id
            ON order_transitions(order_id);
        """)


def _state_value(state) -> str:
    return state.value if isinstance(state, OrderState) else state


def _row_to_order(row) -> Order:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Order(
        id=row["order_id"],
        state=OrderState.parse(row["state"]),
        payload=payload or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresOrderStore:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def create(self, initial_state: OrderState, payload: dict | None = None) -> str:
        order_id = str(uuid.uuid4())
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO orders (order_id, state, payload, updated_at)
                    VALUES ($1, $2, $3::jsonb, NOW());
                    """,
                    order_id,
                    initial_state.value,
                    json.dumps(payload or {}),
                )
        except _TRANSIENT as e:
            raise StoreUnavailable(str(e)) from e
        return order_id

    async def get(self, order_id: str) -> Order:
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT order_id, state, payload, created_at, updated_at FROM orders WHERE order_id = $1;",
                    order_id,
                )
        except _TRANSIENT as e:
            raise StoreUnavailable(str(e)) from e
        if row is None:
            raise NotFound(order_id)
        return _row_to_order(row)

    async def conditional_update(self, order_id: str, expected, new: OrderState) -> None:
        """
        Set state = new where order_id matches and state = expected, as a single statement.
        Zero rows updated -> NotFound if the order is missing, else StateConflict.
        """
        expected_value = _state_value(expected)
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    updated = await conn.fetchval(
                        """
                        UPDATE orders SET state = $3, updated_at = NOW()
                        WHERE order_id = $1 AND state = $2
                        RETURNING order_id;
                        """,
                        order_id,
                        expected_value,
                        new.value,
                    )
                    if updated is None:
                        actual = await conn.fetchval("SELECT state FROM orders WHERE order_id = $1;", order_id)
                        if actual is None:
                            raise NotFound(order_id)
                        raise StateConflict(order_id, expected_value, actual)
                    await conn.execute(
                        """
                        INSERT INTO order_transitions (order_id, from_state, to_state)
                        VALUES ($1, $2, $3);
                        """,
                        order_id,
                        expected_value,
                        new.value,
                    )
        except _TRANSIENT as e:
            raise StoreUnavailable(str(e)) from e

    async def find_stale(self, state: OrderState, older_than: datetime, limit: int) -> list[Order]:
        try:
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT order_id, state, payload, created_at, updated_at FROM orders
                    WHERE state = $1 AND updated_at < $2
                    ORDER BY updated_at ASC
                    LIMIT $3;
                    """,
                    state.value,
                    older_than,
                    limit,
                )
        except _TRANSIENT as e:
            raise StoreUnavailable(str(e)) from e
        return [_row_to_order(r) for r in rows]

    async def transitions(self, order_id: str) -> list[TransitionRecord]:
        try:
            async with self._pool.acquire() as conn:
                exists = await conn.fetchval("SELECT 1 FROM orders WHERE order_id = $1;", order_id)
                if exists is None:
                    raise NotFound(order_id)
                rows = await conn.fetch(
                    """
                    SELECT order_id, from_state, to_state, created_at FROM order_transitions
                    WHERE order_id = $1
                    ORDER BY id ASC;
                    """,
                    order_id,
                )
        except _TRANSIENT as e:
            raise StoreUnavailable(str(e)) from e
        return [
            TransitionRecord(r["order_id"], r["from_state"], r["to_state"], r["created_at"])
            for r in rows
        ]
