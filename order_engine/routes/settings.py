from __future__ import annotations

from fastapi import APIRouter, Query, Request

from order_engine.ready_by import BusinessHoursPolicy, compute_ready_by
from order_engine.routes._deps import get_engine, trace_id_from_request
from order_engine.schemas import (
    ReadyByRequest,
    TenantSettingsRequest,
    WorkflowSettingsRequest,
    success_envelope,
)

router = APIRouter(prefix="/api/v1", tags=["settings"])


@router.get("/settings/workflow")
async def get_workflow(request: Request, service_category_code: str | None = Query(default=None)):
    config = await get_engine(request).workflows.load(service_category_code)
    return success_envelope(config.to_record(), trace_id_from_request(request))


@router.put("/settings/workflow")
async def save_workflow(payload: WorkflowSettingsRequest, request: Request):
    config = await get_engine(request).workflows.save(
        steps=payload.steps,
        transitions=payload.transitions,
        gates=payload.gates,
        stages=payload.stages,
        service_category_code=payload.service_category_code,
    )
    return success_envelope(config.to_record(), trace_id_from_request(request))


@router.get("/settings/tenant")
async def get_tenant_settings(request: Request):
    data = await get_engine(request).tenant_settings.get()
    return success_envelope(data, trace_id_from_request(request))


@router.put("/settings/tenant")
async def update_tenant_settings(payload: TenantSettingsRequest, request: Request):
    changes = payload.model_dump(exclude_none=True)
    data = await get_engine(request).tenant_settings.update(changes)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/ready-by/calculate")
async def calculate_ready_by(payload: ReadyByRequest, request: Request):
    policy = BusinessHoursPolicy.from_dict(payload.business_hours.model_dump()) if payload.business_hours else None
    result = compute_ready_by(
        payload.received_at,
        payload.turnaround_hours,
        payload.priority,
        policy,
        category_turnaround_hours=payload.category_turnaround_hours,
        override=payload.override,
    )
    return success_envelope(result.to_dict(), trace_id_from_request(request))
