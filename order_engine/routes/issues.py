from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from order_engine.routes._deps import get_engine, trace_id_from_request
from order_engine.schemas import CreateIssueRequest, ResolveIssueRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["issues"])


@router.post("/issues")
async def create_issue(payload: CreateIssueRequest, request: Request):
    data = await get_engine(request).create_issue(
        order_item_id=payload.order_item_id,
        code=payload.issue_code,
        text=payload.issue_text,
        priority=payload.priority,
        photo_url=payload.photo_url,
    )
    return JSONResponse(
        status_code=201,
        content=success_envelope(data, trace_id_from_request(request)),
    )


@router.get("/issues/{issue_id}")
async def get_issue(issue_id: str, request: Request):
    data = await get_engine(request).issues.get_issue(issue_id)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/issues/{issue_id}/resolve")
async def resolve_issue(issue_id: str, payload: ResolveIssueRequest, request: Request):
    data = await get_engine(request).resolve_issue(issue_id, notes=payload.notes)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/orders/{order_id}/issues")
async def list_order_issues(
    order_id: str,
    request: Request,
    unresolved_only: bool = Query(default=False),
):
    engine = get_engine(request)
    await engine.orders.get_order(order_id)
    data = await engine.issues.list_issues(order_id, unresolved_only=unresolved_only)
    return success_envelope({"items": data, "total": len(data)}, trace_id_from_request(request))
