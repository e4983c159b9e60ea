from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from order_engine.routes._deps import get_engine, trace_id_from_request
from order_engine.schemas import (
    ItemQuantityRequest,
    MarkPieceReadyRequest,
    PieceBatchRequest,
    PieceUpdateRequest,
    RejectPieceRequest,
    success_envelope,
)

router = APIRouter(prefix="/api/v1", tags=["pieces"])


@router.get("/orders/{order_id}/pieces")
async def list_order_pieces(order_id: str, request: Request):
    engine = get_engine(request)
    await engine.orders.get_order(order_id)
    data = await engine.pieces.list_order_pieces(order_id)
    return success_envelope({"items": data, "total": len(data)}, trace_id_from_request(request))


@router.post("/orders/{order_id}/pieces/batch")
async def batch_update_pieces(order_id: str, payload: PieceBatchRequest, request: Request):
    data = await get_engine(request).pieces.batch_update(
        order_id,
        [entry.model_dump() for entry in payload.updates],
    )
    return success_envelope({"items": data, "total": len(data)}, trace_id_from_request(request))


@router.get("/items/{item_id}/pieces")
async def list_item_pieces(item_id: str, request: Request):
    data = await get_engine(request).pieces.list_pieces(item_id)
    return success_envelope({"items": data, "total": len(data)}, trace_id_from_request(request))


@router.post("/items/{item_id}/pieces")
async def add_piece(item_id: str, request: Request):
    data = await get_engine(request).pieces.add_piece(item_id)
    return JSONResponse(
        status_code=201,
        content=success_envelope({"items": data, "total": len(data)}, trace_id_from_request(request)),
    )


@router.post("/items/{item_id}/pieces/generate")
async def generate_item_pieces(item_id: str, request: Request):
    data = await get_engine(request).pieces.create_pieces_for_item(item_id)
    return success_envelope({"items": data, "total": len(data)}, trace_id_from_request(request))


@router.put("/items/{item_id}/quantity")
async def update_item_quantity(item_id: str, payload: ItemQuantityRequest, request: Request):
    data = await get_engine(request).orders.update_item_quantity(item_id, payload.quantity)
    return success_envelope(data, trace_id_from_request(request))


@router.put("/pieces/{piece_id}")
async def update_piece(piece_id: str, payload: PieceUpdateRequest, request: Request):
    data = await get_engine(request).pieces.update_piece(piece_id, payload.updates)
    return success_envelope(data, trace_id_from_request(request))


@router.delete("/pieces/{piece_id}")
async def remove_piece(piece_id: str, request: Request):
    data = await get_engine(request).pieces.remove_piece(piece_id)
    return success_envelope({"items": data, "total": len(data)}, trace_id_from_request(request))


@router.post("/pieces/{piece_id}/ready")
async def mark_piece_ready(piece_id: str, payload: MarkPieceReadyRequest, request: Request):
    data = await get_engine(request).pieces.mark_piece_ready(piece_id, rack_location=payload.rack_location)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/pieces/{piece_id}/reject")
async def reject_piece(piece_id: str, payload: RejectPieceRequest, request: Request):
    data = await get_engine(request).pieces.reject_piece(piece_id, notes=payload.notes)
    return success_envelope(data, trace_id_from_request(request))
