import redis.asyncio as redis
from orderflow.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def broadcast_marker_key(order_id: str) -> str:
    return f"broadcast:{order_id}"


async def publish_once(r: redis.Redis, queue_key: str, order_id: str, message: str) -> bool:
    """
    LPUSH message and set the order's broadcast marker in one MULTI/EXEC.
    Returns False without publishing if the marker already exists.
    WATCH on the marker makes a concurrent publisher lose with WatchError.
    """
    marker = broadcast_marker_key(order_id)
    async with r.pipeline(transaction=True) as pipe:
        await pipe.watch(marker)
        if await pipe.exists(marker):
            return False
        pipe.multi()
        pipe.lpush(queue_key, message)
        pipe.set(marker, "1")
        await pipe.execute()
    return True


async def is_published(r: redis.Redis, order_id: str) -> bool:
    return bool(await r.exists(broadcast_marker_key(order_id)))
