"""
Worker: pull order ids from Redis or AWS SQS and drive each order to completion.
- Redis: exponential backoff + manual DLQ. SQS: don't delete on retryable failure; SQS redrive to DLQ after max receives.
- Recovery scanner runs alongside on its own interval.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM: in-flight drives stop at their next durable checkpoint.
Run: python -m orderflow.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading

import redis.asyncio as redis

from orderflow.config import settings
from orderflow.db import close_pool
from orderflow.engine import DriveOutcome
from orderflow.errors import Contended, EngineError, NotFound, StoreError
from orderflow.metrics import orders_dlq_total
from orderflow.queue import ORDER_QUEUE_KEY, make_body, push_to_dlq
from orderflow.redis_client import close_redis
from orderflow.services import Services, build_services
from orderflow.sqs_client import change_message_visibility, delete_message, receive_messages

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090

# Worth another attempt later; everything else needs an operator.
RETRYABLE = (StoreError, Contended)


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


def parse_message(raw: str) -> tuple[str | None, int]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON from queue: %s", e)
        return None, 0
    order_id = data.get("order_id")
    if not order_id:
        logger.warning("Message missing order_id, skipping")
    return order_id, data.get("attempts", 0)


async def process_one_redis(
    r: redis.Redis,
    services: Services,
    raw: str,
    sem: asyncio.Semaphore,
    shutdown_event: asyncio.Event,
) -> None:
    order_id, attempts = parse_message(raw)
    if not order_id:
        return

    async with sem:
        try:
            result = await services.drive(order_id, cancel=shutdown_event)
        except RETRYABLE as e:
            next_attempts = attempts + 1
            if next_attempts >= settings.worker_max_retries:
                await push_to_dlq(order_id, next_attempts, str(e), e.last_state)
                orders_dlq_total.inc()
                logger.warning("Moved order_id=%s to DLQ after %d attempts", order_id, next_attempts)
                return
            backoff_sec = 2 ** attempts
            logger.info(
                "Re-queuing order_id=%s in %ds (attempt %d/%d): %s",
                order_id, backoff_sec, next_attempts, settings.worker_max_retries, e,
            )
            await asyncio.sleep(backoff_sec)
            await r.lpush(ORDER_QUEUE_KEY, json.dumps(make_body(order_id, next_attempts)))
            return
        except (EngineError, NotFound) as e:
            logger.error("Failed to drive order_id=%s, moving to DLQ: %s", order_id, e)
            await push_to_dlq(order_id, attempts + 1, str(e), getattr(e, "last_state", None))
            orders_dlq_total.inc()
            return

        if result.outcome is DriveOutcome.CANCELLED:
            await r.lpush(ORDER_QUEUE_KEY, json.dumps(make_body(order_id, attempts)))
            logger.info("Shutdown: re-queued order_id=%s at state=%s", order_id, result.state)
        else:
            logger.info("Drove order_id=%s: %s (state=%s)", order_id, result.outcome.value, result.state)


async def process_one_sqs(
    services: Services,
    body: str,
    receipt_handle: str,
    receive_count: int,
    sem: asyncio.Semaphore,
    shutdown_event: asyncio.Event,
) -> None:
    order_id, _attempts = parse_message(body)
    if not order_id:
        await asyncio.to_thread(delete_message, settings.sqs_queue_url, receipt_handle)
        return

    async with sem:
        try:
            result = await services.drive(order_id, cancel=shutdown_event)
        except RETRYABLE as e:
            logger.warning("Retryable failure for order_id=%s (receive #%d): %s", order_id, receive_count, e)
            # Don't delete: message will reappear after visibility timeout; after max receives SQS moves to DLQ
            backoff = min(2 ** receive_count, 900)
            await asyncio.to_thread(change_message_visibility, receipt_handle, backoff)
            return
        except (EngineError, NotFound) as e:
            logger.error("Failed to drive order_id=%s, moving to DLQ: %s", order_id, e)
            await push_to_dlq(order_id, receive_count, str(e), getattr(e, "last_state", None))
            orders_dlq_total.inc()
            await asyncio.to_thread(delete_message, settings.sqs_queue_url, receipt_handle)
            return

        if result.outcome is DriveOutcome.CANCELLED:
            # Make it visible again right away for another worker.
            await asyncio.to_thread(change_message_visibility, receipt_handle, 0)
            return
        logger.info("Drove order_id=%s: %s (state=%s)", order_id, result.outcome.value, result.state)
        await asyncio.to_thread(delete_message, settings.sqs_queue_url, receipt_handle)


async def _drain(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_worker_redis(services: Services, shutdown_event: asyncio.Event) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=Redis. Listening on %s (concurrency=%d, max_retries=%d) ...",
        ORDER_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(ORDER_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one_redis(r, services, raw, sem, shutdown_event))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        await r.aclose()


async def run_worker_sqs(services: Services, shutdown_event: asyncio.Event) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=SQS. Queue=%s (concurrency=%d) ...",
        settings.sqs_queue_url,
        settings.worker_concurrency,
    )
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            messages = await asyncio.to_thread(receive_messages, settings.sqs_queue_url, 10, 5)
            for msg in messages:
                body = msg.get("Body") or "{}"
                receipt = msg.get("ReceiptHandle") or ""
                attrs = msg.get("Attributes") or {}
                receive_count = int(attrs.get("ApproximateReceiveCount", 1))
                t = asyncio.create_task(process_one_sqs(services, body, receipt, receive_count, sem, shutdown_event))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)


async def run_worker(shutdown_event: asyncio.Event) -> None:
    services = await build_services(settings)
    scanner_task = asyncio.create_task(services.scanner.run(shutdown_event, settings.recovery_interval_seconds))
    try:
        if settings.sqs_queue_url:
            await run_worker_sqs(services, shutdown_event)
        else:
            await run_worker_redis(services, shutdown_event)
    finally:
        shutdown_event.set()
        await scanner_task
        await close_redis()
        await close_pool()
        logger.info("Worker stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
