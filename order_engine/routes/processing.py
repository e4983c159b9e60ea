from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from order_engine.routes._deps import get_engine, trace_id_from_request
from order_engine.schemas import ProcessingStepRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["processing"])


@router.post("/orders/{order_id}/processing-steps")
async def record_processing_step(order_id: str, payload: ProcessingStepRequest, request: Request):
    data = await get_engine(request).record_processing_step(
        order_id,
        payload.order_item_id,
        payload.step_code,
        payload.step_seq,
        notes=payload.notes,
    )
    return JSONResponse(
        status_code=201,
        content=success_envelope(data, trace_id_from_request(request)),
    )


@router.get("/items/{item_id}/processing-steps")
async def list_processing_steps(item_id: str, request: Request):
    data = await get_engine(request).processing.list_steps(item_id)
    return success_envelope({"items": data, "total": len(data)}, trace_id_from_request(request))


@router.post("/items/{item_id}/complete")
async def complete_item(item_id: str, request: Request):
    data = await get_engine(request).processing.mark_item_complete(item_id)
    return success_envelope(data, trace_id_from_request(request))
