from __future__ import annotations

from fastapi import APIRouter, Query, Request

from order_engine.routes._deps import get_engine, trace_id_from_request
from order_engine.schemas import success_envelope

router = APIRouter(prefix="/api/v1", tags=["outbox"])


@router.get("/outbox/events")
async def list_outbox_events(
    request: Request,
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
):
    data = await get_engine(request).outbox.list_events(status=status, limit=limit)
    return success_envelope({"items": data, "total": len(data)}, trace_id_from_request(request))


@router.post("/outbox/events/{event_id}/publish")
async def publish_outbox_event(event_id: str, request: Request):
    data = await get_engine(request).outbox.mark_published(event_id)
    return success_envelope(data, trace_id_from_request(request))
