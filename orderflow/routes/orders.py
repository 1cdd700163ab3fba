from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orderflow.errors import ActionFailed, Contended, NotFound, StoreError, StoreUnavailable, UnknownState
from orderflow.metrics import orders_created_total
from orderflow.order_state import OrderState
from orderflow.services import Services
from orderflow.store import Order

router = APIRouter(prefix="/orders", tags=["orders"])


class CreateOrderBody(BaseModel):
    payload: dict = Field(default_factory=dict, description="Order payload read by actions")


def _services(request: Request) -> Services:
    return request.app.state.services


def _order_json(order: Order) -> dict:
    return {
        "order_id": order.id,
        "state": order.state_value,
        "locked": order.locked,
        "payload": order.payload,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }


@router.post("")
async def create_order(body: CreateOrderBody, request: Request) -> JSONResponse:
    """Create an order in `created` and queue it for a worker."""
    services = _services(request)
    try:
        order_id = await services.store.create(OrderState.CREATED, body.payload)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="store unavailable")
    await services.enqueue(order_id)
    orders_created_total.inc()
    return JSONResponse(
        status_code=201,
        content={"order_id": order_id, "state": OrderState.CREATED.value},
    )


@router.get("/{order_id}")
async def get_order(order_id: str, request: Request) -> dict:
    try:
        order = await _services(request).executor.read(order_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="order not found")
    except StoreError:
        raise HTTPException(status_code=503, detail="store unavailable")
    return _order_json(order)


@router.get("/{order_id}/transitions")
async def get_transitions(order_id: str, request: Request) -> list[dict]:
    try:
        records = await _services(request).store.transitions(order_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="order not found")
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="store unavailable")
    return [
        {"from_state": r.from_state, "to_state": r.to_state, "created_at": r.created_at.isoformat()}
        for r in records
    ]


@router.post("/{order_id}/drive")
async def drive_order(order_id: str, request: Request) -> dict:
    """Drive the order inline. Failures report where the order was left."""
    try:
        result = await _services(request).drive(order_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="order not found")
    except Contended as e:
        raise HTTPException(status_code=409, detail={"error": "contended", "last_state": e.last_state})
    except (UnknownState, ActionFailed) as e:
        raise HTTPException(status_code=422, detail={"error": type(e).__name__, "last_state": e.last_state, "message": str(e)})
    except StoreError as e:
        raise HTTPException(status_code=503, detail={"error": "store_unavailable", "last_state": e.last_state})
    return {
        "order_id": result.order_id,
        "outcome": result.outcome.value,
        "state": result.state,
        "conflicts": result.conflicts,
    }
