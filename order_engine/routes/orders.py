from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from order_engine.routes._deps import get_engine, trace_id_from_request
from order_engine.schemas import (
    CreateOrderRequest,
    PriorityRequest,
    QaDecisionRequest,
    SplitOrderRequest,
    TransitionRequest,
    success_envelope,
)

router = APIRouter(prefix="/api/v1", tags=["orders"])


@router.post("/orders")
async def create_order(
    payload: CreateOrderRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    engine = get_engine(request)
    body = payload.model_dump()
    body["items"] = [item.model_dump() for item in payload.items]

    async def _execute():
        return await engine.create_order(**body)

    if idempotency_key:
        data = await engine.idempotency.run(
            endpoint="POST:/api/v1/orders",
            idempotency_key=idempotency_key,
            payload=payload.model_dump(mode="json"),
            execute=_execute,
        )
    else:
        data = await _execute()
    return JSONResponse(
        status_code=201,
        content=success_envelope(data, trace_id_from_request(request)),
    )


@router.get("/orders")
async def list_orders(
    request: Request,
    status: str | None = Query(default=None),
    parent_order_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
):
    data = await get_engine(request).orders.list_orders(status=status, parent_order_id=parent_order_id, limit=limit)
    return success_envelope({"items": data, "total": len(data)}, trace_id_from_request(request))


@router.get("/orders/overdue")
async def list_overdue_orders(request: Request, limit: int = Query(default=200, ge=1, le=500)):
    data = await get_engine(request).orders.list_overdue(limit=limit)
    return success_envelope({"items": data, "total": len(data)}, trace_id_from_request(request))


@router.get("/orders/{order_id}")
async def get_order(order_id: str, request: Request):
    data = await get_engine(request).orders.get_order(order_id)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/orders/{order_id}/transition")
async def transition_order(order_id: str, payload: TransitionRequest, request: Request):
    data = await get_engine(request).transition_order(
        order_id,
        payload.to_status,
        notes=payload.notes,
        metadata=payload.metadata,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/orders/{order_id}/transitions")
async def allowed_transitions(order_id: str, request: Request):
    data = await get_engine(request).state_machine.allowed_transitions(order_id)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/orders/{order_id}/history")
async def order_history(order_id: str, request: Request):
    engine = get_engine(request)
    data = {
        "status_history": await engine.state_machine.status_history(order_id),
        "actions": await engine.orders.order_history(order_id),
    }
    return success_envelope(data, trace_id_from_request(request))


@router.post("/orders/{order_id}/split")
async def split_order(order_id: str, payload: SplitOrderRequest, request: Request):
    specs = [spec.model_dump() for spec in payload.specs]
    data = await get_engine(request).split_order(order_id, specs, reason=payload.reason)
    return JSONResponse(
        status_code=201,
        content=success_envelope(data, trace_id_from_request(request)),
    )


@router.put("/orders/{order_id}/priority")
async def change_priority(order_id: str, payload: PriorityRequest, request: Request):
    data = await get_engine(request).orders.change_priority(order_id, payload.priority)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/orders/{order_id}/qa")
async def record_qa_decision(order_id: str, payload: QaDecisionRequest, request: Request):
    data = await get_engine(request).state_machine.record_qa_decision(
        order_id,
        passed=payload.passed,
        notes=payload.notes,
    )
    return success_envelope(data, trace_id_from_request(request))
