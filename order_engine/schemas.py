from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

Priority = Literal["normal", "urgent", "express"]


class OrderItemInput(BaseModel):
    product_id: str | None = None
    product_name: str | None = None
    quantity: int = Field(ge=1, le=1000)
    unit_price: float = Field(default=0, ge=0, le=1_000_000)
    price_override: float | None = Field(default=None, ge=0)
    price_override_reason: str | None = None
    has_stain: bool = False
    stain_notes: str | None = None
    has_damage: bool = False
    damage_notes: str | None = None


class CreateOrderRequest(BaseModel):
    customer_id: str = Field(min_length=1)
    items: list[OrderItemInput] = Field(default_factory=list)
    priority: Priority = "normal"
    quick_drop: bool = False
    quick_drop_quantity: int = Field(default=0, ge=0, le=1000)
    received_at: datetime | None = None
    service_category_code: str | None = None
    as_draft: bool = False
    ready_by_override: datetime | None = None
    notes: str | None = Field(default=None, max_length=1000)


class TransitionRequest(BaseModel):
    to_status: str = Field(min_length=1)
    notes: str | None = Field(default=None, max_length=1000)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SplitItemSpec(BaseModel):
    order_item_id: str = Field(min_length=1)
    quantity: int | None = Field(default=None, ge=1, le=1000)


class SplitSpec(BaseModel):
    items: list[SplitItemSpec] = Field(default_factory=list)
    piece_ids: list[str] = Field(default_factory=list)


class SplitOrderRequest(BaseModel):
    specs: list[SplitSpec] = Field(min_length=1)
    reason: str


class PriorityRequest(BaseModel):
    priority: Priority


class QaDecisionRequest(BaseModel):
    passed: bool
    notes: str | None = Field(default=None, max_length=1000)


class ItemQuantityRequest(BaseModel):
    quantity: int


class PieceUpdateRequest(BaseModel):
    updates: dict[str, Any]


class PieceBatchEntry(BaseModel):
    piece_id: str
    updates: dict[str, Any] = Field(default_factory=dict)


class PieceBatchRequest(BaseModel):
    updates: list[PieceBatchEntry]


class MarkPieceReadyRequest(BaseModel):
    rack_location: str | None = Field(default=None, max_length=100)


class RejectPieceRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)


class CreateIssueRequest(BaseModel):
    order_item_id: str = Field(min_length=1)
    issue_code: str
    issue_text: str
    priority: str = "normal"
    photo_url: str | None = None


class ResolveIssueRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)


class ProcessingStepRequest(BaseModel):
    order_item_id: str = Field(min_length=1)
    step_code: str
    step_seq: int
    notes: str | None = Field(default=None, max_length=1000)


class WorkflowSettingsRequest(BaseModel):
    steps: list[str]
    transitions: dict[str, list[str]]
    gates: dict[str, list[str]] = Field(default_factory=dict)
    stages: dict[str, str] | None = None
    service_category_code: str | None = None


class TenantSettingsRequest(BaseModel):
    track_individual_piece: bool | None = None
    orders_split_enabled: bool | None = None
    default_turnaround_hours: float | None = Field(default=None, ge=0)
    category_turnaround_hours: dict[str, float] | None = None
    business_hours: dict[str, Any] | None = None


class BusinessHoursInput(BaseModel):
    open_hour: int = Field(default=9, ge=0, le=23)
    close_hour: int = Field(default=18, ge=1, le=24)
    working_days: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4, 5])
    holidays: list[str] = Field(default_factory=list)


class ReadyByRequest(BaseModel):
    received_at: datetime
    turnaround_hours: float
    priority: Priority = "normal"
    business_hours: BusinessHoursInput | None = None
    category_turnaround_hours: float | None = None
    override: datetime | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
