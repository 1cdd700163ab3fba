from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import Response

from orderflow.config import settings
from orderflow.db import close_pool
from orderflow.metrics import get_metrics_bytes, get_metrics_content_type, sqs_queue_messages_in_flight, sqs_queue_messages_waiting
from orderflow.redis_client import close_redis
from orderflow.routes import admin, orders
from orderflow.services import build_services
from orderflow.sqs_client import get_queue_depth


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.services = await build_services(settings)
    yield
    await close_redis()
    await close_pool()


app = FastAPI(title="Order Engine", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(admin.router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: transitions, drive outcomes, recovery, SQS queue depth (when using SQS)."""
    if settings.sqs_queue_url:
        waiting, in_flight = await get_queue_depth()
        sqs_queue_messages_waiting.set(waiting)
        sqs_queue_messages_in_flight.set(in_flight)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
