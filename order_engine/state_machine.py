from __future__ import annotations

import logging
from typing import Any

from order_engine.errors import ConcurrentModification, GateNotSatisfied, InvalidTransition, NotFound, ValidationError
from order_engine.gates import GateInput, GateRegistry
from order_engine.guard import GuardedStore
from order_engine.history import QA_DECISION, STATUS_CHANGE, action_entry, status_entry, utcnow_iso
from order_engine.outbox import outbox_event
from order_engine.query import ConditionNotMet, Update
from order_engine.tenant_context import current_actor, current_tenant_id
from order_engine.workflow_config import WorkflowConfigLoader

logger = logging.getLogger(__name__)


class OrderStateMachine:
    def __init__(self, store: GuardedStore, loader: WorkflowConfigLoader, gates: GateRegistry) -> None:
        self._store = store
        self._loader = loader
        self._gates = gates

    async def _load_order(self, order_id: str) -> dict[str, Any]:
        order = await self._store.find_one("orders", {"id": order_id})
        if order is None:
            raise NotFound("order", order_id)
        return order

    async def transition(
        self,
        order_id: str,
        to_status: str,
        *,
        notes: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        metadata = dict(metadata or {})
        order = await self._load_order(order_id)
        config = await self._loader.load(order.get("service_category_code"))
        from_status = order["current_status"]

        if to_status not in config.steps:
            raise InvalidTransition(f"unknown status: {to_status}", from_status=from_status, to_status=to_status)
        if to_status == from_status:
            raise InvalidTransition(f"order is already {to_status}", from_status=from_status, to_status=to_status)
        if not config.is_allowed(from_status, to_status):
            allowed = ", ".join(config.allowed_from(from_status)) or "none"
            raise InvalidTransition(
                f"transition {from_status}->{to_status} is not allowed (allowed: {allowed})",
                from_status=from_status,
                to_status=to_status,
            )

        results = await self._gates.evaluate(
            config.gates_for(from_status, to_status),
            GateInput(order=order, from_status=from_status, to_status=to_status, metadata=metadata),
        )
        failed = [result for result in results if not result.passed]
        if failed:
            raise GateNotSatisfied(
                gate=", ".join(result.gate for result in failed),
                blockers=[blocker for result in failed for blocker in result.blockers],
                failed_gates=[result.to_dict() for result in failed],
            )

        now = utcnow_iso()
        actor = current_actor()
        next_version = int(order["row_version"]) + 1
        values: dict[str, Any] = {
            "current_status": to_status,
            "current_stage": config.stage_for(to_status),
            "row_version": next_version,
            "updated_at": now,
        }
        if metadata.get("rack_location"):
            values["rack_location"] = str(metadata["rack_location"]).strip()
        if to_status == "ready":
            values["ready_at"] = now
        if to_status == "qa":
            values["qa_status"] = None

        try:
            await self._store.atomic(
                [
                    Update(
                        resource="orders",
                        where={"id": order_id, "current_status": from_status, "row_version": order["row_version"]},
                        values=values,
                        require_match=True,
                    ),
                    status_entry(
                        order_id=order_id,
                        seq=next_version,
                        from_status=from_status,
                        to_status=to_status,
                        actor=actor,
                        notes=notes,
                        metadata=metadata,
                        at=now,
                    ),
                    action_entry(
                        order_id=order_id,
                        action_type=STATUS_CHANGE,
                        actor=actor,
                        from_value=from_status,
                        to_value=to_status,
                        payload={"notes": notes, "metadata": metadata},
                        at=now,
                    ),
                    outbox_event(
                        event_type="order.status_changed",
                        aggregate_type="order",
                        aggregate_id=order_id,
                        payload={"order_no": order.get("order_no"), "from_status": from_status, "to_status": to_status},
                    ),
                ]
            )
        except ConditionNotMet:
            logger.warning(
                "order_transition_conflict tenant=%s order=%s from=%s to=%s",
                current_tenant_id(),
                order_id,
                from_status,
                to_status,
            )
            raise ConcurrentModification(f"order {order_id} changed since it was read; reload and retry") from None

        logger.info(
            "order_transition_committed tenant=%s order=%s from=%s to=%s actor=%s",
            current_tenant_id(),
            order_id,
            from_status,
            to_status,
            actor,
        )
        return {**order, **values}

    async def allowed_transitions(self, order_id: str) -> dict[str, Any]:
        order = await self._load_order(order_id)
        config = await self._loader.load(order.get("service_category_code"))
        current = order["current_status"]
        return {
            "order_id": order_id,
            "current_status": current,
            "current_stage": config.stage_for(current),
            "allowed": [
                {"to_status": target, "gates": config.gates_for(current, target)}
                for target in config.allowed_from(current)
            ],
        }

    async def status_history(self, order_id: str) -> list[dict[str, Any]]:
        await self._load_order(order_id)
        return await self._store.find("status_history", {"order_id": order_id}, order_by=("seq",))

    async def verify_history(self, order_id: str) -> bool:
        order = await self._load_order(order_id)
        latest = await self._store.find("status_history", {"order_id": order_id}, order_by=("-seq",), limit=1)
        return bool(latest) and latest[0]["to_status"] == order["current_status"]

    async def record_qa_decision(self, order_id: str, *, passed: bool, notes: str | None = None) -> dict[str, Any]:
        order = await self._load_order(order_id)
        if order["current_status"] != "qa":
            raise ValidationError(f"qa decision requires the order to be in qa, not {order['current_status']}")
        now = utcnow_iso()
        decision = "passed" if passed else "failed"
        values = {
            "qa_status": decision,
            "is_rejected": not passed,
            "row_version": int(order["row_version"]) + 1,
            "updated_at": now,
        }
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
                        action_type=QA_DECISION,
                        actor=current_actor(),
                        from_value=order.get("qa_status"),
                        to_value=decision,
                        payload={"notes": notes},
                        at=now,
                    ),
                ]
            )
        except ConditionNotMet:
            raise ConcurrentModification(f"order {order_id} changed since it was read; reload and retry") from None
        logger.info("order_qa_decision order=%s decision=%s", order_id, decision)
        return {**order, **values}
