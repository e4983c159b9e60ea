from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Any

from order_engine.errors import ConcurrentModification, NotFound, ValidationError
from order_engine.guard import GuardedStore
from order_engine.history import (
    ORDER_CREATED,
    PRIORITY_CHANGE,
    action_entry,
    new_id,
    status_entry,
    utcnow_iso,
)
from order_engine.outbox import outbox_event
from order_engine.pieces import PieceManager, generate_pieces
from order_engine.pricing import MAX_UNIT_PRICE, item_total, order_totals_update, summarize_items
from order_engine.query import ConditionNotMet, Insert, Operation, Update
from order_engine.ready_by import COMPLETED_STATUSES, PRIORITY_MULTIPLIERS, compute_ready_by, is_overdue, parse_timestamp
from order_engine.tenant_context import current_actor, current_tenant_id
from order_engine.tenant_settings import TenantSettingsService
from order_engine.workflow_config import WorkflowConfigLoader

logger = logging.getLogger(__name__)

MAX_ITEM_QUANTITY = 1000


def validate_order_items(items: list[dict[str, Any]]) -> list[str]:
    errors: list[str] = []
    for index, item in enumerate(items):
        prefix = f"item {index}"
        if not (item.get("product_id") or item.get("product_name")):
            errors.append(f"{prefix}: product_id or product_name is required")
        quantity = item.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= MAX_ITEM_QUANTITY:
            errors.append(f"{prefix}: quantity must be an integer between 1 and {MAX_ITEM_QUANTITY}")
        price = item.get("unit_price", 0)
        if isinstance(price, bool) or not isinstance(price, (int, float)) or not 0 <= price <= MAX_UNIT_PRICE:
            errors.append(f"{prefix}: unit_price must be between 0 and {MAX_UNIT_PRICE}")
        if item.get("price_override") is not None:
            if not str(item.get("price_override_reason") or "").strip():
                errors.append(f"{prefix}: price_override requires price_override_reason")
            if not 0 <= float(item["price_override"]) <= MAX_UNIT_PRICE * MAX_ITEM_QUANTITY:
                errors.append(f"{prefix}: price_override out of range")
        if item.get("has_stain") and not str(item.get("stain_notes") or "").strip():
            errors.append(f"{prefix}: has_stain requires stain_notes")
        if item.get("has_damage") and not str(item.get("damage_notes") or "").strip():
            errors.append(f"{prefix}: has_damage requires damage_notes")
    return errors


def initial_status(*, as_draft: bool, quick_drop: bool, quick_drop_quantity: int, itemised_units: int) -> str:
    if as_draft:
        return "draft"
    if quick_drop and itemised_units < quick_drop_quantity:
        return "preparation"
    return "intake"


def _aware(moment: datetime | None) -> datetime | None:
    # Naive timestamps from clients are taken as UTC.
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


def format_order_no(day: date, sequence: int) -> str:
    return f"ORD-{day:%Y%m%d}-{sequence:04d}"


class OrderService:
    def __init__(
        self,
        store: GuardedStore,
        loader: WorkflowConfigLoader,
        settings: TenantSettingsService,
        pieces: PieceManager,
        *,
        max_retries: int = 3,
    ) -> None:
        self._store = store
        self._loader = loader
        self._settings = settings
        self._pieces = pieces
        self._max_retries = max(1, max_retries)

    async def _order(self, order_id: str) -> dict[str, Any]:
        order = await self._store.find_one("orders", {"id": order_id})
        if order is None:
            raise NotFound("order", order_id)
        return order

    async def next_order_no(self, day: date) -> str:
        counter_id = f"{current_tenant_id() or '-'}:{day.isoformat()}"
        for _ in range(self._max_retries):
            counter = await self._store.find_one("order_number_counters", {"id": counter_id})
            try:
                if counter is None:
                    await self._store.insert(
                        "order_number_counters",
                        {"id": counter_id, "counter_date": day.isoformat(), "last_value": 1},
                    )
                    return format_order_no(day, 1)
                value = int(counter["last_value"]) + 1
                await self._store.update(
                    "order_number_counters",
                    {"id": counter_id, "last_value": counter["last_value"]},
                    {"last_value": value},
                    require_match=True,
                )
                return format_order_no(day, value)
            except ConditionNotMet:
                logger.warning("order_number_conflict counter=%s", counter_id)
        raise ConcurrentModification("could not allocate an order number; retry")

    async def create_order(
        self,
        *,
        customer_id: str,
        items: list[dict[str, Any]] | None = None,
        priority: str = "normal",
        quick_drop: bool = False,
        quick_drop_quantity: int = 0,
        received_at: datetime | None = None,
        service_category_code: str | None = None,
        as_draft: bool = False,
        ready_by_override: datetime | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        items = list(items or [])
        errors: list[str] = []
        if not str(customer_id or "").strip():
            errors.append("customer_id is required")
        if priority not in PRIORITY_MULTIPLIERS:
            errors.append(f"priority must be one of {', '.join(PRIORITY_MULTIPLIERS)}")
        if quick_drop and quick_drop_quantity < 1:
            errors.append("quick_drop_quantity must be at least 1 for quick-drop orders")
        if not quick_drop and not items:
            errors.append("at least one item is required unless the order is a quick drop")
        errors.extend(validate_order_items(items))
        if errors:
            raise ValidationError(errors[0], errors=errors)

        settings = await self._settings.get()
        config = await self._loader.load(service_category_code)
        received = _aware(received_at) or datetime.now(UTC)
        ready_by_override = _aware(ready_by_override)
        itemised = sum(int(item["quantity"]) for item in items)
        status = initial_status(
            as_draft=as_draft,
            quick_drop=quick_drop,
            quick_drop_quantity=quick_drop_quantity,
            itemised_units=itemised,
        )
        if status not in config.steps:
            status = config.steps[0]

        category_hours = None
        if service_category_code:
            category_hours = (settings.get("category_turnaround_hours") or {}).get(service_category_code)
        schedule = compute_ready_by(
            received,
            settings["default_turnaround_hours"],
            priority,
            await self._settings.business_hours(),
            category_turnaround_hours=category_hours,
            override=ready_by_override,
        )

        order_no = await self.next_order_no(received.date())
        order_id = new_id("ord")
        actor = current_actor()
        now = utcnow_iso()
        track_pieces = bool(settings.get("track_individual_piece"))

        item_rows: list[dict[str, Any]] = []
        piece_rows: list[dict[str, Any]] = []
        for item in items:
            item_id = new_id("itm")
            quantity = int(item["quantity"])
            override = item.get("price_override")
            item_rows.append(
                {
                    "id": item_id,
                    "order_id": order_id,
                    "product_id": item.get("product_id"),
                    "product_name": item.get("product_name"),
                    "quantity": quantity,
                    "unit_price": float(item.get("unit_price", 0)),
                    "total_price": item_total(quantity, item.get("unit_price", 0), override),
                    "price_override": float(override) if override is not None else None,
                    "price_override_reason": item.get("price_override_reason"),
                    "has_stain": bool(item.get("has_stain")),
                    "stain_notes": item.get("stain_notes"),
                    "has_damage": bool(item.get("has_damage")),
                    "damage_notes": item.get("damage_notes"),
                    "item_status": "intake",
                    "last_step": None,
                    "last_step_seq": 0,
                    "issue_id": None,
                    "pieces_version": 1 if track_pieces else 0,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            if track_pieces:
                piece_rows.extend(generate_pieces(item_id, quantity, order_id=order_id))

        order = {
            "id": order_id,
            "order_no": order_no,
            "customer_id": customer_id.strip(),
            "parent_order_id": None,
            "order_subtype": "quick_drop" if quick_drop else "standard",
            "service_category_code": service_category_code,
            "current_status": status,
            "current_stage": config.stage_for(status),
            "priority": priority,
            "is_quick_drop": bool(quick_drop),
            "quick_drop_quantity": int(quick_drop_quantity) if quick_drop else 0,
            **summarize_items(item_rows, quick_drop_quantity=quick_drop_quantity if quick_drop else 0),
            "received_at": received.isoformat(),
            "ready_by": schedule.ready_by.isoformat(),
            "ready_by_override": ready_by_override.isoformat() if ready_by_override else None,
            "ready_at": None,
            "rack_location": None,
            "qa_status": None,
            "has_issue": False,
            "is_rejected": False,
            "has_split": False,
            "split_count": 0,
            "row_version": 1,
            "created_by": actor,
            "created_at": now,
            "updated_at": now,
        }
        ops: list[Operation] = [Insert(resource="orders", rows=(order,))]
        if item_rows:
            ops.append(Insert(resource="order_items", rows=tuple(item_rows)))
        if piece_rows:
            ops.append(Insert(resource="order_item_pieces", rows=tuple(piece_rows)))
        ops.extend(
            [
                status_entry(
                    order_id=order_id,
                    seq=1,
                    from_status=None,
                    to_status=status,
                    actor=actor,
                    notes=notes,
                    at=now,
                ),
                action_entry(
                    order_id=order_id,
                    action_type=ORDER_CREATED,
                    actor=actor,
                    to_value=status,
                    payload={"order_no": order_no, "quick_drop": bool(quick_drop), "items": len(item_rows)},
                    at=now,
                ),
                outbox_event(
                    event_type="order.created",
                    aggregate_type="order",
                    aggregate_id=order_id,
                    payload={"order_no": order_no, "customer_id": order["customer_id"], "status": status},
                ),
            ]
        )
        await self._store.atomic(ops)
        logger.info(
            "order_created tenant=%s order=%s order_no=%s status=%s items=%s",
            current_tenant_id(),
            order_id,
            order_no,
            status,
            len(item_rows),
        )
        return {**order, "items": item_rows}

    async def get_order(self, order_id: str) -> dict[str, Any]:
        order = await self._order(order_id)
        items = await self._store.find("order_items", {"order_id": order_id}, order_by=("created_at",))
        return {**order, "items": items}

    async def list_orders(
        self,
        *,
        status: str | None = None,
        parent_order_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        where: dict[str, Any] = {}
        if status:
            where["current_status"] = status
        if parent_order_id:
            where["parent_order_id"] = parent_order_id
        return await self._store.find(
            "orders",
            where,
            order_by=("-created_at",),
            limit=max(1, min(limit, 500)),
        )

    async def order_history(self, order_id: str) -> list[dict[str, Any]]:
        await self._order(order_id)
        return await self._store.find("order_history", {"order_id": order_id}, order_by=("done_at",))

    async def change_priority(self, order_id: str, priority: str) -> dict[str, Any]:
        if priority not in PRIORITY_MULTIPLIERS:
            raise ValidationError(f"priority must be one of {', '.join(PRIORITY_MULTIPLIERS)}")
        order = await self._order(order_id)
        if order["priority"] == priority:
            return order
        values: dict[str, Any] = {
            "priority": priority,
            "row_version": int(order["row_version"]) + 1,
            "updated_at": utcnow_iso(),
        }
        if not order.get("ready_by_override"):
            settings = await self._settings.get()
            category = order.get("service_category_code")
            category_hours = (settings.get("category_turnaround_hours") or {}).get(category) if category else None
            schedule = compute_ready_by(
                parse_timestamp(order["received_at"]),
                settings["default_turnaround_hours"],
                priority,
                await self._settings.business_hours(),
                category_turnaround_hours=category_hours,
            )
            values["ready_by"] = schedule.ready_by.isoformat()
        try:
            await self._store.atomic(
                [
                    Update(
                        resource="orders",
                        where={"id": order_id, "row_version": order["row_version"]},
                        values=values,
                        require_match=True,
                    ),
                    action_entry(
                        order_id=order_id,
                        action_type=PRIORITY_CHANGE,
                        actor=current_actor(),
                        from_value=order["priority"],
                        to_value=priority,
                        payload={"ready_by": values.get("ready_by", order.get("ready_by"))},
                    ),
                ]
            )
        except ConditionNotMet:
            raise ConcurrentModification(f"order {order_id} changed since it was read; reload and retry") from None
        logger.info("order_priority_changed order=%s from=%s to=%s", order_id, order["priority"], priority)
        return {**order, **values}

    async def update_item_quantity(self, order_item_id: str, quantity: int) -> dict[str, Any]:
        if quantity < 1 or quantity > MAX_ITEM_QUANTITY:
            raise ValidationError(f"quantity must be between 1 and {MAX_ITEM_QUANTITY}")
        for attempt in range(1, self._max_retries + 1):
            item = await self._store.find_one("order_items", {"id": order_item_id})
            if item is None:
                raise NotFound("order_item", order_item_id)
            if await self._store.count("order_item_pieces", {"order_item_id": order_item_id}):
                pieces = await self._pieces.adjust_to_quantity(order_item_id, quantity)
                refreshed = await self._store.find_one("order_items", {"id": order_item_id})
                return {**(refreshed or item), "pieces": pieces}
            order = await self._order(item["order_id"])
            siblings = await self._store.find("order_items", {"order_id": item["order_id"]})
            now = utcnow_iso()
            values = {
                "quantity": quantity,
                "total_price": item_total(quantity, item["unit_price"], item.get("price_override")),
                "pieces_version": int(item["pieces_version"]) + 1,
                "updated_at": now,
            }
            items = [{**s, **values} if s["id"] == order_item_id else s for s in siblings]
            try:
                await self._store.atomic(
                    [
                        Update(
                            resource="order_items",
                            where={"id": order_item_id, "pieces_version": item["pieces_version"]},
                            values=values,
                            require_match=True,
                        ),
                        order_totals_update(order, items, now=now),
                    ]
                )
            except ConditionNotMet:
                logger.warning("item_quantity_conflict item=%s attempt=%s", order_item_id, attempt)
                continue
            return {**item, **values}
        raise ConcurrentModification(f"order item {order_item_id} kept changing; gave up after {self._max_retries} attempts")

    async def list_overdue(self, *, now: datetime | None = None, limit: int = 200) -> list[dict[str, Any]]:
        moment = now or datetime.now(UTC)
        candidates = await self._store.find(
            "orders",
            {"NOT": {"current_status": {"in": sorted(COMPLETED_STATUSES)}}},
            order_by=("ready_by",),
            limit=max(1, min(limit, 1000)),
        )
        return [
            order
            for order in candidates
            if is_overdue(parse_timestamp(order.get("ready_by")), now=moment, status=order["current_status"])
        ]

