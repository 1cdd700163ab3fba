from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from orderflow.config import settings
from orderflow.errors import StoreError, StoreUnavailable
from orderflow.queue import replay_redis_dlq
from orderflow.sqs_client import replay_dlq_to_main

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/recovery/scan")
async def recovery_scan(request: Request) -> dict:
    """Run one recovery pass now instead of waiting for the worker's interval."""
    try:
        resolutions = await request.app.state.services.scanner.scan_once()
    except (StoreUnavailable, StoreError):
        raise HTTPException(status_code=503, detail="store unavailable")
    return {
        "resolutions": [
            {"order_id": r.order_id, "from_state": r.from_state, "to_state": r.to_state, "resolution": r.resolution}
            for r in resolutions
        ]
    }


@router.post("/dlq/replay")
async def dlq_replay(limit: int = Query(default=100, ge=1, le=1000)) -> JSONResponse:
    """
    Replay order ids from the DLQ (SQS when configured, else Redis) to the work queue.
    Returns number of messages replayed.
    """
    if settings.sqs_queue_url:
        replayed = await replay_dlq_to_main(limit=limit)
    else:
        replayed = await replay_redis_dlq(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )
