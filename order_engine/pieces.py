"""Physical pieces under an order item.

The pure helpers at the top never mutate their input and always leave each
item's pieces numbered ``1..N``. ``PieceManager`` persists the result of a
helper as one atomic batch guarded by the item's ``pieces_version``; a change
of quantity also rewrites the order totals under the order's ``row_version``.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable
from typing import Any

from order_engine.errors import ConcurrentModification, NotFound, ValidationError
from order_engine.guard import GuardedStore
from order_engine.history import PIECES_ADJUSTED, action_entry, utcnow_iso
from order_engine.pricing import item_total, order_totals_update
from order_engine.query import ConditionNotMet, Delete, Insert, Operation, Update
from order_engine.tenant_context import current_actor
from order_engine.tenant_settings import TenantSettingsService

logger = logging.getLogger(__name__)

MAX_BATCH_UPDATES = 100
MAX_BARCODE_LENGTH = 100
PIECE_STATUSES = ("intake", "processing", "qa", "ready")
UPDATABLE_FIELDS = frozenset({"piece_status", "barcode", "rack_location", "is_rejected", "notes"})

_BARCODE_RE = re.compile(r"^[A-Za-z0-9\-_]+$")


def _new_piece(item_id: str, seq: int, *, order_id: str | None = None) -> dict[str, Any]:
    now = utcnow_iso()
    return {
        "id": f"pcs_{uuid.uuid4().hex[:12]}",
        "order_id": order_id,
        "order_item_id": item_id,
        "piece_seq": seq,
        "barcode": None,
        "piece_status": "intake",
        "rack_location": None,
        "is_rejected": False,
        "notes": None,
        "created_at": now,
        "updated_at": now,
    }


def _split_item(pieces: list[dict[str, Any]], item_id: str) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    mine = sorted((p for p in pieces if p["order_item_id"] == item_id), key=lambda p: p["piece_seq"])
    others = [p for p in pieces if p["order_item_id"] != item_id]
    return mine, others


def generate_pieces(item_id: str, quantity: int, *, order_id: str | None = None) -> list[dict[str, Any]]:
    if quantity <= 0:
        return []
    return [_new_piece(item_id, seq, order_id=order_id) for seq in range(1, quantity + 1)]


def resequence(pieces: list[dict[str, Any]], item_id: str | None = None) -> list[dict[str, Any]]:
    """Renumber pieces ``1..N`` per item, keeping their relative order."""
    item_ids = [item_id] if item_id is not None else list(dict.fromkeys(p["order_item_id"] for p in pieces))
    out = [dict(p) for p in pieces if p["order_item_id"] not in item_ids]
    for current in item_ids:
        mine, _ = _split_item(pieces, current)
        out.extend({**p, "piece_seq": seq} for seq, p in enumerate(mine, start=1))
    return out


def add_piece(pieces: list[dict[str, Any]], item_id: str, *, order_id: str | None = None) -> list[dict[str, Any]]:
    mine, _ = _split_item(pieces, item_id)
    next_seq = max((p["piece_seq"] for p in mine), default=0) + 1
    if order_id is None and mine:
        order_id = mine[0].get("order_id")
    return [dict(p) for p in pieces] + [_new_piece(item_id, next_seq, order_id=order_id)]


def remove_piece(pieces: list[dict[str, Any]], piece_id: str) -> list[dict[str, Any]]:
    target = next((p for p in pieces if p["id"] == piece_id), None)
    if target is None:
        return [dict(p) for p in pieces]
    remaining = [p for p in pieces if p["id"] != piece_id]
    return resequence(remaining, target["order_item_id"])


def adjust_to_quantity(
    pieces: list[dict[str, Any]],
    item_id: str,
    new_quantity: int,
    *,
    order_id: str | None = None,
) -> list[dict[str, Any]]:
    mine, others = _split_item(pieces, item_id)
    target = max(0, int(new_quantity))
    if len(mine) == target:
        return [dict(p) for p in pieces]
    if len(mine) > target:
        kept = mine[:target]
        return [dict(p) for p in others] + [dict(p) for p in kept]
    result = [dict(p) for p in pieces]
    for _ in range(target - len(mine)):
        result = add_piece(result, item_id, order_id=order_id)
    return result


def validate_sequence(pieces: list[dict[str, Any]], item_id: str, seq: int) -> list[str]:
    if seq < 1:
        return [f"piece sequence must be >= 1, got {seq}"]
    if any(p["order_item_id"] == item_id and p["piece_seq"] == seq for p in pieces):
        return [f"piece sequence {seq} already exists for item {item_id}"]
    return []


def validate_barcode(barcode: str | None) -> list[str]:
    if barcode is None or barcode == "":
        return []
    if len(barcode) > MAX_BARCODE_LENGTH:
        return [f"barcode exceeds {MAX_BARCODE_LENGTH} characters"]
    if not _BARCODE_RE.fullmatch(barcode):
        return ["barcode may only contain letters, digits, hyphen and underscore"]
    return []


def validate_piece_update(updates: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    unknown = sorted(set(updates) - UPDATABLE_FIELDS)
    if unknown:
        errors.append(f"fields not updatable: {', '.join(unknown)}")
    if "piece_status" in updates and updates["piece_status"] not in PIECE_STATUSES:
        errors.append(f"piece_status must be one of {', '.join(PIECE_STATUSES)}")
    if "barcode" in updates:
        errors.extend(validate_barcode(updates["barcode"]))
    if "is_rejected" in updates and not isinstance(updates["is_rejected"], bool):
        errors.append("is_rejected must be a boolean")
    if "rack_location" in updates and updates["rack_location"] is not None and len(str(updates["rack_location"])) > 100:
        errors.append("rack_location exceeds 100 characters")
    return errors


def validate_batch_updates(updates: list[dict[str, Any]], known_ids: set[str]) -> list[str]:
    """Report every problem in a batch of ``{"piece_id", "updates"}`` pairs."""
    if not updates:
        return ["batch must contain at least one update"]
    errors: list[str] = []
    if len(updates) > MAX_BATCH_UPDATES:
        errors.append(f"batch exceeds {MAX_BATCH_UPDATES} updates ({len(updates)})")
    for index, entry in enumerate(updates):
        piece_id = str(entry.get("piece_id") or "").strip()
        if not piece_id:
            errors.append(f"update {index}: piece_id must not be blank")
        elif piece_id not in known_ids:
            errors.append(f"update {index}: unknown piece {piece_id}")
        errors.extend(f"update {index}: {msg}" for msg in validate_piece_update(dict(entry.get("updates") or {})))
    return errors


def piece_set_ops(
    before: list[dict[str, Any]],
    after: list[dict[str, Any]],
) -> list[Operation]:
    """Diff two piece sets into deletes, sequence updates and inserts."""
    before_by_id = {p["id"]: p for p in before}
    after_ids = {p["id"] for p in after}
    ops: list[Operation] = []
    removed = [pid for pid in before_by_id if pid not in after_ids]
    if removed:
        ops.append(Delete(resource="order_item_pieces", where={"id": {"in": removed}}))
    now = utcnow_iso()
    inserts = []
    for piece in after:
        previous = before_by_id.get(piece["id"])
        if previous is None:
            inserts.append(piece)
        elif previous["piece_seq"] != piece["piece_seq"] or previous["order_item_id"] != piece["order_item_id"]:
            ops.append(
                Update(
                    resource="order_item_pieces",
                    where={"id": piece["id"]},
                    values={
                        "piece_seq": piece["piece_seq"],
                        "order_item_id": piece["order_item_id"],
                        "order_id": piece.get("order_id"),
                        "updated_at": now,
                    },
                )
            )
    if inserts:
        ops.append(Insert(resource="order_item_pieces", rows=tuple(inserts)))
    return ops


class PieceManager:
    def __init__(self, store: GuardedStore, settings: TenantSettingsService, *, max_retries: int = 3) -> None:
        self._store = store
        self._settings = settings
        self._max_retries = max(1, max_retries)

    async def _item(self, item_id: str) -> dict[str, Any]:
        item = await self._store.find_one("order_items", {"id": item_id})
        if item is None:
            raise NotFound("order_item", item_id)
        return item

    async def _piece(self, piece_id: str) -> dict[str, Any]:
        piece = await self._store.find_one("order_item_pieces", {"id": piece_id})
        if piece is None:
            raise NotFound("piece", piece_id)
        return piece

    async def list_pieces(self, item_id: str) -> list[dict[str, Any]]:
        return await self._store.find("order_item_pieces", {"order_item_id": item_id}, order_by=("piece_seq",))

    async def list_order_pieces(self, order_id: str) -> list[dict[str, Any]]:
        return await self._store.find(
            "order_item_pieces",
            {"order_id": order_id},
            order_by=("order_item_id", "piece_seq"),
        )

    async def _baseline(
        self,
        item: dict[str, Any],
        before: list[dict[str, Any]],
        *,
        require_tracking: bool,
    ) -> list[dict[str, Any]]:
        # An untracked item still has ``quantity`` units; pieces start from those.
        if before:
            return before
        if require_tracking and not (await self._settings.get()).get("track_individual_piece"):
            raise ValidationError(f"item {item['id']} has no pieces and piece tracking is off for this tenant")
        return generate_pieces(item["id"], int(item["quantity"]), order_id=item["order_id"])

    async def _mutate(
        self,
        item_id: str,
        change: Callable[[dict[str, Any], list[dict[str, Any]]], list[dict[str, Any]]],
        *,
        reason: str,
        require_tracking: bool = True,
    ) -> list[dict[str, Any]]:
        for attempt in range(1, self._max_retries + 1):
            item = await self._item(item_id)
            before = await self.list_pieces(item_id)
            baseline = await self._baseline(item, before, require_tracking=require_tracking)
            after = change(item, baseline)
            quantity = len(after)
            now = utcnow_iso()
            item_values = {
                "pieces_version": int(item["pieces_version"]) + 1,
                "quantity": quantity,
                "total_price": item_total(quantity, item["unit_price"], item.get("price_override")),
                "updated_at": now,
            }
            ops: list[Operation] = [
                Update(
                    resource="order_items",
                    where={"id": item_id, "pieces_version": item["pieces_version"]},
                    values=item_values,
                    require_match=True,
                ),
                *piece_set_ops(before, after),
            ]
            if quantity != int(item["quantity"]):
                order = await self._store.find_one("orders", {"id": item["order_id"]})
                if order is None:
                    raise NotFound("order", item["order_id"])
                siblings = await self._store.find("order_items", {"order_id": item["order_id"]})
                items = [{**s, **item_values} if s["id"] == item_id else s for s in siblings]
                ops.append(order_totals_update(order, items, now=now))
            if quantity != len(baseline):
                ops.append(
                    action_entry(
                        order_id=item["order_id"],
                        action_type=PIECES_ADJUSTED,
                        actor=current_actor(),
                        from_value=str(len(baseline)),
                        to_value=str(quantity),
                        payload={"order_item_id": item_id, "reason": reason},
                        at=now,
                    )
                )
            try:
                await self._store.atomic(ops)
            except ConditionNotMet:
                logger.warning("piece_set_conflict item=%s attempt=%s reason=%s", item_id, attempt, reason)
                continue
            return sorted(after, key=lambda p: p["piece_seq"])
        raise ConcurrentModification(f"pieces of item {item_id} kept changing; gave up after {self._max_retries} attempts")

    async def create_pieces_for_item(self, item_id: str) -> list[dict[str, Any]]:
        return await self._mutate(item_id, lambda item, baseline: baseline, reason="create", require_tracking=False)

    async def add_piece(self, item_id: str) -> list[dict[str, Any]]:
        def _change(item: dict[str, Any], before: list[dict[str, Any]]) -> list[dict[str, Any]]:
            if len(before) >= 1000:
                raise ValidationError("an item may hold at most 1000 pieces")
            return add_piece(before, item_id, order_id=item["order_id"])

        return await self._mutate(item_id, _change, reason="add")

    async def remove_piece(self, piece_id: str) -> list[dict[str, Any]]:
        piece = await self._piece(piece_id)

        def _change(item: dict[str, Any], before: list[dict[str, Any]]) -> list[dict[str, Any]]:
            if not any(p["id"] == piece_id for p in before):
                raise NotFound("piece", piece_id)
            if len(before) == 1:
                raise ValidationError("an item must keep at least one piece")
            return remove_piece(before, piece_id)

        return await self._mutate(piece["order_item_id"], _change, reason="remove")

    async def adjust_to_quantity(self, item_id: str, quantity: int) -> list[dict[str, Any]]:
        if quantity < 1 or quantity > 1000:
            raise ValidationError("quantity must be between 1 and 1000")

        def _change(item: dict[str, Any], before: list[dict[str, Any]]) -> list[dict[str, Any]]:
            return adjust_to_quantity(before, item_id, quantity, order_id=item["order_id"])

        return await self._mutate(item_id, _change, reason="adjust")

    async def update_piece(self, piece_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        errors = validate_piece_update(updates)
        if errors:
            raise ValidationError(errors[0], errors=errors)
        piece = await self._piece(piece_id)
        values = {**updates, "updated_at": utcnow_iso()}
        await self._store.update("order_item_pieces", {"id": piece_id}, values)
        await self._sync_item_status(piece["order_item_id"])
        return {**piece, **values}

    async def batch_update(self, order_id: str, updates: list[dict[str, Any]]) -> list[dict[str, Any]]:
        known = {p["id"]: p for p in await self.list_order_pieces(order_id)}
        errors = validate_batch_updates(updates, set(known))
        if errors:
            raise ValidationError(errors[0], errors=errors)
        now = utcnow_iso()
        ops: list[Operation] = []
        result = []
        for entry in updates:
            piece_id = str(entry["piece_id"]).strip()
            values = {**dict(entry.get("updates") or {}), "updated_at": now}
            ops.append(Update(resource="order_item_pieces", where={"id": piece_id}, values=values))
            result.append({**known[piece_id], **values})
        await self._store.atomic(ops)
        for item_id in dict.fromkeys(p["order_item_id"] for p in result):
            await self._sync_item_status(item_id)
        logger.info("piece_batch_updated order=%s count=%s", order_id, len(result))
        return result

    async def mark_piece_ready(self, piece_id: str, *, rack_location: str | None = None) -> dict[str, Any]:
        updates: dict[str, Any] = {"piece_status": "ready"}
        if rack_location:
            updates["rack_location"] = rack_location
        return await self.update_piece(piece_id, updates)

    async def reject_piece(self, piece_id: str, *, notes: str | None = None) -> dict[str, Any]:
        return await self.update_piece(piece_id, {"is_rejected": True, "notes": notes})

    async def _sync_item_status(self, item_id: str) -> None:
        pieces = await self.list_pieces(item_id)
        if pieces and all(p.get("piece_status") == "ready" and not p.get("is_rejected") for p in pieces):
            await self._store.update("order_items", {"id": item_id}, {"item_status": "ready", "updated_at": utcnow_iso()})
