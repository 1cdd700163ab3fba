"""
Work queue of order ids waiting to be driven. Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
"""
import json
import time

from orderflow.config import settings
from orderflow.redis_client import get_redis
from orderflow.sqs_client import send_message

ORDER_QUEUE_KEY = "queue:orders"
ORDER_DLQ_KEY = "queue:orders:dlq"


def make_body(order_id: str, attempts: int = 0) -> dict:
    return {"order_id": order_id, "attempts": attempts}


async def push_order(order_id: str, attempts: int = 0) -> None:
    body = make_body(order_id, attempts)
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        r = await get_redis()
        await r.lpush(ORDER_QUEUE_KEY, json.dumps(body))


async def push_to_dlq(order_id: str, attempts: int, last_error: str, last_state: str | None = None) -> None:
    body = {
        **make_body(order_id, attempts),
        "last_error": last_error,
        "last_state": last_state,
        "failed_at": time.time(),
    }
    if settings.sqs_queue_url:
        if settings.sqs_dlq_url:
            await send_message(body, settings.sqs_dlq_url)
    else:
        r = await get_redis()
        await r.lpush(ORDER_DLQ_KEY, json.dumps(body))


async def replay_redis_dlq(limit: int = 100) -> int:
    """Move up to limit order ids from the Redis DLQ back to the work queue with attempts reset."""
    r = await get_redis()
    replayed = 0
    while replayed < limit:
        raw = await r.rpop(ORDER_DLQ_KEY)
        if raw is None:
            break
        replayed += 1
        try:
            order_id = json.loads(raw).get("order_id")
        except json.JSONDecodeError:
            continue
        if order_id:
            await r.lpush(ORDER_QUEUE_KEY, json.dumps(make_body(order_id)))
    return replayed
