from __future__ import annotations

import logging
from typing import Any

from order_engine.errors import ConcurrentModification, NotFound, ValidationError
from order_engine.guard import GuardedStore
from order_engine.history import ITEM_STEP, action_entry, new_id, utcnow_iso
from order_engine.query import ConditionNotMet, Insert, Update
from order_engine.tenant_context import current_actor

logger = logging.getLogger(__name__)

STEP_SEQUENCE: dict[str, int] = {
    "sorting": 1,
    "pretreatment": 2,
    "washing": 3,
    "drying": 4,
    "finishing": 5,
}
FINAL_STEP = "finishing"


class ProcessingLog:
    """Append-only per-item processing steps."""

    def __init__(self, store: GuardedStore) -> None:
        self._store = store

    async def _item(self, order_item_id: str, order_id: str | None = None) -> dict[str, Any]:
        where: dict[str, Any] = {"id": order_item_id}
        if order_id is not None:
            where["order_id"] = order_id
        item = await self._store.find_one("order_items", where)
        if item is None:
            raise NotFound("order_item", order_item_id)
        return item

    async def record_step(
        self,
        *,
        order_id: str,
        order_item_id: str,
        step_code: str,
        step_seq: int,
        notes: str | None = None,
    ) -> dict[str, Any]:
        expected = STEP_SEQUENCE.get(step_code)
        if expected is None:
            raise ValidationError(f"step_code must be one of {', '.join(STEP_SEQUENCE)}")
        if step_seq != expected:
            raise ValidationError(f"step {step_code} has sequence {expected}, got {step_seq}")

        item = await self._item(order_item_id, order_id)
        last_seq = int(item.get("last_step_seq") or 0)
        if step_seq <= last_seq:
            raise ValidationError(
                f"step sequence must increase: item {order_item_id} is already at {item.get('last_step')} ({last_seq})"
            )

        actor = current_actor()
        now = utcnow_iso()
        step = {
            "id": new_id("stp"),
            "order_id": order_id,
            "order_item_id": order_item_id,
            "step_code": step_code,
            "step_seq": step_seq,
            "done_by": actor,
            "done_at": now,
            "notes": notes,
        }
        try:
            await self._store.atomic(
                [
                    Update(
                        resource="order_items",
                        where={"id": order_item_id, "last_step_seq": last_seq},
                        values={
                            "last_step": step_code,
                            "last_step_seq": step_seq,
                            "item_status": "processing",
                            "updated_at": now,
                        },
                        require_match=True,
                    ),
                    Insert(resource="processing_steps", rows=(step,)),
                    action_entry(
                        order_id=order_id,
                        action_type=ITEM_STEP,
                        actor=actor,
                        from_value=item.get("last_step"),
                        to_value=step_code,
                        payload={"order_item_id": order_item_id, "step_seq": step_seq, "notes": notes},
                        at=now,
                    ),
                ]
            )
        except ConditionNotMet:
            raise ConcurrentModification(f"item {order_item_id} recorded another step concurrently") from None
        logger.info("processing_step_recorded order=%s item=%s step=%s", order_id, order_item_id, step_code)
        return step

    async def list_steps(self, order_item_id: str) -> list[dict[str, Any]]:
        return await self._store.find("processing_steps", {"order_item_id": order_item_id}, order_by=("step_seq",))

    async def mark_item_complete(self, order_item_id: str) -> dict[str, Any]:
        item = await self._item(order_item_id)
        finished = await self._store.count(
            "processing_steps",
            {"order_item_id": order_item_id, "step_code": FINAL_STEP},
        )
        if not finished:
            raise ValidationError(f"item {order_item_id} cannot complete before {FINAL_STEP}")
        now = utcnow_iso()
        await self._store.update("order_items", {"id": order_item_id}, {"item_status": "ready", "updated_at": now})
        pending = await self._store.count(
            "order_items",
            {"order_id": item["order_id"], "item_status": {"ne": "ready"}},
        )
        return {
            "item": {**item, "item_status": "ready", "updated_at": now},
            "all_items_ready": pending == 0,
        }
