"""Append-only audit rows: status history and the order action log."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from order_engine.query import Insert

ORDER_CREATED = "ORDER_CREATED"
STATUS_CHANGE = "STATUS_CHANGE"
SPLIT = "SPLIT"
QA_DECISION = "QA_DECISION"
ITEM_STEP = "ITEM_STEP"
ISSUE_CREATED = "ISSUE_CREATED"
ISSUE_SOLVED = "ISSUE_SOLVED"
PRIORITY_CHANGE = "PRIORITY_CHANGE"
PIECES_ADJUSTED = "PIECES_ADJUSTED"


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def status_entry(
    *,
    order_id: str,
    seq: int,
    from_status: str | None,
    to_status: str,
    actor: str,
    notes: str | None = None,
    metadata: dict[str, Any] | None = None,
    at: str | None = None,
) -> Insert:
    return Insert(
        resource="status_history",
        rows=(
            {
                "id": new_id("sh"),
                "order_id": order_id,
                "seq": seq,
                "from_status": from_status,
                "to_status": to_status,
                "changed_by": actor,
                "changed_at": at or utcnow_iso(),
                "notes": notes,
                "metadata": dict(metadata or {}),
            },
        ),
    )


def action_entry(
    *,
    order_id: str,
    action_type: str,
    actor: str,
    from_value: str | None = None,
    to_value: str | None = None,
    payload: dict[str, Any] | None = None,
    at: str | None = None,
) -> Insert:
    return Insert(
        resource="order_history",
        rows=(
            {
                "id": new_id("oh"),
                "order_id": order_id,
                "action_type": action_type,
                "from_value": from_value,
                "to_value": to_value,
                "done_by": actor,
                "done_at": at or utcnow_iso(),
                "payload": dict(payload or {}),
            },
        ),
    )
