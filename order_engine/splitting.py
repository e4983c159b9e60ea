"""Split one order's items or pieces into child orders.

A split is computed entirely in memory from one read of the parent and then
committed as a single batch whose first write is conditioned on the parent's
``row_version``; a concurrent change to the parent rolls the whole split back.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from order_engine.errors import ConcurrentModification, NotFound, ValidationError
from order_engine.guard import GuardedStore
from order_engine.history import ORDER_CREATED, SPLIT, action_entry, new_id, status_entry, utcnow_iso
from order_engine.outbox import outbox_event
from order_engine.pieces import resequence
from order_engine.pricing import item_total, summarize_items
from order_engine.query import ConditionNotMet, Insert, Operation, Update
from order_engine.tenant_context import current_actor, current_tenant_id
from order_engine.tenant_settings import TenantSettingsService
from order_engine.workflow_config import WorkflowConfigLoader

logger = logging.getLogger(__name__)

MIN_REASON_LENGTH = 3
MAX_REASON_LENGTH = 500


@dataclass
class _Claim:
    quantity: int = 0
    piece_ids: list[str] = field(default_factory=list)


def _allocate_override(override: float | None, moved: int, total: int) -> tuple[float | None, float | None]:
    if override is None or total <= 0:
        return None, None
    child_share = round(float(override) * moved / total, 2)
    return child_share, round(float(override) - child_share, 2)


class OrderSplitter:
    def __init__(
        self,
        store: GuardedStore,
        loader: WorkflowConfigLoader,
        settings: TenantSettingsService,
    ) -> None:
        self._store = store
        self._loader = loader
        self._settings = settings

    def _claims(
        self,
        specs: list[dict[str, Any]],
        items_by_id: dict[str, dict[str, Any]],
        pieces_by_item: dict[str, list[dict[str, Any]]],
    ) -> list[dict[str, _Claim]]:
        pieces_by_id = {p["id"]: p for group in pieces_by_item.values() for p in group}
        # Pieces named anywhere are reserved before quantity claims pick from the tail.
        named = {str(piece_id) for spec in specs for piece_id in spec.get("piece_ids") or []}
        used_qty: dict[str, int] = defaultdict(int)
        used_pieces: set[str] = set()
        whole_items: set[str] = set()
        errors: list[str] = []
        claims: list[dict[str, _Claim]] = []

        for index, spec in enumerate(specs):
            claim: dict[str, _Claim] = {}
            for entry in spec.get("items") or []:
                item_id = str(entry.get("order_item_id") or "")
                item = items_by_id.get(item_id)
                if item is None:
                    raise NotFound("order_item", item_id)
                if item_id in whole_items:
                    errors.append(f"spec {index}: item {item_id} is referenced twice")
                    continue
                available = int(item["quantity"]) - used_qty[item_id]
                quantity = entry.get("quantity")
                if quantity is None:
                    if used_qty[item_id]:
                        errors.append(f"spec {index}: item {item_id} is referenced twice")
                        continue
                    quantity = int(item["quantity"])
                    whole_items.add(item_id)
                quantity = int(quantity)
                if quantity < 1 or quantity > available:
                    errors.append(f"spec {index}: item {item_id} quantity {quantity} outside 1..{available}")
                    continue
                target = claim.setdefault(item_id, _Claim())
                tracked = pieces_by_item.get(item_id)
                if tracked:
                    free = [p["id"] for p in tracked if p["id"] not in used_pieces and p["id"] not in named]
                    if len(free) < quantity:
                        errors.append(f"spec {index}: item {item_id} has only {len(free)} unnamed pieces left")
                        continue
                    chosen = free[-quantity:]
                    target.piece_ids.extend(chosen)
                    used_pieces.update(chosen)
                target.quantity += quantity
                used_qty[item_id] += quantity

            for piece_id in spec.get("piece_ids") or []:
                piece = pieces_by_id.get(piece_id)
                if piece is None:
                    raise NotFound("piece", piece_id)
                item_id = piece["order_item_id"]
                if piece_id in used_pieces or item_id in whole_items:
                    errors.append(f"spec {index}: piece {piece_id} is referenced twice")
                    continue
                target = claim.setdefault(item_id, _Claim())
                target.piece_ids.append(piece_id)
                target.quantity += 1
                used_pieces.add(piece_id)
                used_qty[item_id] += 1

            if not claim:
                errors.append(f"spec {index}: nothing to move")
            claims.append(claim)

        total_units = sum(int(item["quantity"]) for item in items_by_id.values())
        if total_units - sum(used_qty.values()) < 1:
            errors.append("parent order must keep at least one unit")
        if errors:
            raise ValidationError(errors[0], errors=errors)
        return claims

    async def split_order(self, order_id: str, specs: list[dict[str, Any]], *, reason: str) -> dict[str, Any]:
        reason = (reason or "").strip()
        if not MIN_REASON_LENGTH <= len(reason) <= MAX_REASON_LENGTH:
            raise ValidationError(f"split reason must be between {MIN_REASON_LENGTH} and {MAX_REASON_LENGTH} characters")
        if not specs:
            raise ValidationError("at least one split spec is required")
        settings = await self._settings.get()
        if not settings.get("orders_split_enabled", True):
            raise ValidationError("order splitting is disabled for this tenant")

        parent = await self._store.find_one("orders", {"id": order_id})
        if parent is None:
            raise NotFound("order", order_id)
        config = await self._loader.load(parent.get("service_category_code"))
        if config.is_terminal(parent["current_status"]):
            raise ValidationError(f"cannot split an order in terminal status {parent['current_status']}")

        items = await self._store.find("order_items", {"order_id": order_id}, order_by=("created_at",))
        pieces = await self._store.find("order_item_pieces", {"order_id": order_id}, order_by=("piece_seq",))
        issues = await self._store.find("order_issues", {"order_id": order_id, "solved_at": None})
        items_by_id = {item["id"]: item for item in items}
        pieces_by_item: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for piece in pieces:
            pieces_by_item[piece["order_item_id"]].append(piece)

        claims = self._claims(specs, items_by_id, pieces_by_item)

        actor = current_actor()
        now = utcnow_iso()
        ops: list[Operation] = []
        parent_items = {item_id: dict(item) for item_id, item in items_by_id.items()}
        parent_pieces = {item_id: list(group) for item_id, group in pieces_by_item.items()}
        moved_issue_items: set[str] = set()
        children: list[dict[str, Any]] = []
        base_index = int(parent.get("split_count") or 0)

        for offset, claim in enumerate(claims, start=1):
            child_id = new_id("ord")
            child_items: list[dict[str, Any]] = []
            for item_id, taken in claim.items():
                item = parent_items[item_id]
                current_qty = int(item["quantity"])
                if taken.quantity == current_qty:
                    child_items.append({**item, "order_id": child_id})
                    moved_issue_items.add(item_id)
                    for resource in ("order_item_pieces", "processing_steps", "order_issues"):
                        ops.append(
                            Update(resource=resource, where={"order_item_id": item_id}, values={"order_id": child_id})
                        )
                    ops.append(
                        Update(
                            resource="order_items",
                            where={"id": item_id},
                            values={"order_id": child_id, "updated_at": now},
                        )
                    )
                    del parent_items[item_id]
                    parent_pieces.pop(item_id, None)
                    continue
                ops.extend(self._divide_item(item, taken, child_id, parent_items, parent_pieces, child_items, now))

            child_issue = any(issue["order_item_id"] in {i["id"] for i in child_items} for issue in issues)
            child = {
                "id": child_id,
                "order_no": f"{parent['order_no']}-S{base_index + offset}",
                "customer_id": parent["customer_id"],
                "parent_order_id": order_id,
                "order_subtype": "split_child",
                "service_category_code": parent.get("service_category_code"),
                "current_status": parent["current_status"],
                "current_stage": parent["current_stage"],
                "priority": parent["priority"],
                "is_quick_drop": False,
                "quick_drop_quantity": 0,
                **summarize_items(child_items),
                "received_at": parent["received_at"],
                "ready_by": parent.get("ready_by"),
                "ready_by_override": parent.get("ready_by_override"),
                "ready_at": parent.get("ready_at"),
                "rack_location": None,
                "qa_status": parent.get("qa_status"),
                "has_issue": child_issue,
                "is_rejected": False,
                "has_split": False,
                "split_count": 0,
                "row_version": 1,
                "created_by": actor,
                "created_at": now,
                "updated_at": now,
            }
            ops.insert(0, Insert(resource="orders", rows=(child,)))
            ops.append(
                status_entry(
                    order_id=child_id,
                    seq=1,
                    from_status=None,
                    to_status=child["current_status"],
                    actor=actor,
                    notes=f"split from {parent['order_no']}",
                    metadata={"parent_order_id": order_id},
                    at=now,
                )
            )
            ops.append(
                action_entry(
                    order_id=child_id,
                    action_type=ORDER_CREATED,
                    actor=actor,
                    to_value=child["current_status"],
                    payload={"split_from": order_id, "reason": reason},
                    at=now,
                )
            )
            children.append(child)

        remaining_issue = any(issue["order_item_id"] not in moved_issue_items for issue in issues)
        parent_totals = summarize_items(parent_items.values())
        parent_values = {
            **parent_totals,
            "has_split": True,
            "has_issue": remaining_issue,
            "split_count": base_index + len(children),
            "row_version": int(parent["row_version"]) + 1,
            "updated_at": now,
        }
        child_ids = [child["id"] for child in children]
        ops.insert(
            0,
            Update(
                resource="orders",
                where={"id": order_id, "row_version": parent["row_version"]},
                values=parent_values,
                require_match=True,
            ),
        )
        ops.append(
            action_entry(
                order_id=order_id,
                action_type=SPLIT,
                actor=actor,
                payload={
                    "reason": reason,
                    "child_order_ids": child_ids,
                    "child_order_nos": [child["order_no"] for child in children],
                },
                at=now,
            )
        )
        ops.append(
            outbox_event(
                event_type="order.split",
                aggregate_type="order",
                aggregate_id=order_id,
                payload={"order_no": parent["order_no"], "child_order_ids": child_ids},
            )
        )
        try:
            await self._store.atomic(ops)
        except ConditionNotMet:
            logger.warning("order_split_conflict tenant=%s order=%s", current_tenant_id(), order_id)
            raise ConcurrentModification(f"order {order_id} changed during split; reload and retry") from None

        logger.info(
            "order_split_committed tenant=%s order=%s children=%s actor=%s",
            current_tenant_id(),
            order_id,
            len(children),
            actor,
        )
        return {
            "parent_order_id": order_id,
            "child_order_ids": child_ids,
            "children": children,
            "parent": {**parent, **parent_values},
        }

    def _divide_item(
        self,
        item: dict[str, Any],
        taken: _Claim,
        child_id: str,
        parent_items: dict[str, dict[str, Any]],
        parent_pieces: dict[str, list[dict[str, Any]]],
        child_items: list[dict[str, Any]],
        now: str,
    ) -> list[Operation]:
        ops: list[Operation] = []
        item_id = item["id"]
        current_qty = int(item["quantity"])
        remaining_qty = current_qty - taken.quantity
        child_override, parent_override = _allocate_override(item.get("price_override"), taken.quantity, current_qty)
        child_item = {
            **item,
            "id": new_id("itm"),
            "order_id": child_id,
            "quantity": taken.quantity,
            "price_override": child_override,
            "total_price": item_total(taken.quantity, item["unit_price"], child_override),
            "issue_id": None,
            "pieces_version": 1,
            "created_at": now,
            "updated_at": now,
        }
        child_items.append(child_item)
        ops.append(Insert(resource="order_items", rows=(child_item,)))

        parent_values = {
            "quantity": remaining_qty,
            "price_override": parent_override,
            "total_price": item_total(remaining_qty, item["unit_price"], parent_override),
            "pieces_version": int(item.get("pieces_version") or 0) + 1,
            "updated_at": now,
        }
        ops.append(
            Update(
                resource="order_items",
                where={"id": item_id, "pieces_version": item.get("pieces_version") or 0},
                values=parent_values,
                require_match=True,
            )
        )
        parent_items[item_id] = {**item, **parent_values}

        tracked = parent_pieces.get(item_id)
        if tracked:
            moving = set(taken.piece_ids)
            moved = resequence(
                [{**p, "order_item_id": child_item["id"]} for p in tracked if p["id"] in moving],
                child_item["id"],
            )
            kept_before = [p for p in tracked if p["id"] not in moving]
            kept = resequence(kept_before, item_id)
            for piece in moved:
                ops.append(
                    Update(
                        resource="order_item_pieces",
                        where={"id": piece["id"]},
                        values={
                            "order_id": child_id,
                            "order_item_id": child_item["id"],
                            "piece_seq": piece["piece_seq"],
                            "updated_at": now,
                        },
                    )
                )
            before_seq = {p["id"]: p["piece_seq"] for p in kept_before}
            for piece in kept:
                if before_seq[piece["id"]] != piece["piece_seq"]:
                    ops.append(
                        Update(
                            resource="order_item_pieces",
                            where={"id": piece["id"]},
                            values={"piece_seq": piece["piece_seq"], "updated_at": now},
                        )
                    )
            parent_pieces[item_id] = kept
        return ops
