from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from order_engine.guard import GuardedStore
from order_engine.issues import IssueTracker


@dataclass(frozen=True)
class GateResult:
    gate: str
    passed: bool
    blockers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"gate": self.gate, "passed": self.passed, "blockers": list(self.blockers)}


@dataclass(frozen=True)
class GateInput:
    order: dict[str, Any]
    from_status: str
    to_status: str
    metadata: dict[str, Any] = field(default_factory=dict)


GatePredicate = Callable[[GateInput], Awaitable[GateResult]]


class GateRegistry:
    """Named async predicates checked before a status transition commits."""

    def __init__(self, store: GuardedStore, issues: IssueTracker) -> None:
        self._store = store
        self._issues = issues
        self._gates: dict[str, GatePredicate] = {
            "require_no_unresolved_issues": self._no_unresolved_issues,
            "require_all_items_processed": self._all_items_processed,
            "require_all_items_assembled": self._all_items_assembled,
            "require_qa_passed": self._qa_passed,
            "require_rack_location": self._rack_location,
        }

    def names(self) -> list[str]:
        return sorted(self._gates)

    def register(self, name: str, predicate: GatePredicate) -> None:
        self._gates[name] = predicate

    async def evaluate(self, names: list[str], gate_input: GateInput) -> list[GateResult]:
        results: list[GateResult] = []
        for name in names:
            predicate = self._gates.get(name)
            if predicate is None:
                results.append(GateResult(gate=name, passed=False, blockers=[f"gate not registered: {name}"]))
                continue
            results.append(await predicate(gate_input))
        return results

    async def _no_unresolved_issues(self, gate_input: GateInput) -> GateResult:
        count = await self._issues.count_unresolved(gate_input.order["id"])
        blockers = [f"{count} unresolved issue(s)"] if count else []
        return GateResult(gate="require_no_unresolved_issues", passed=count == 0, blockers=blockers)

    async def _all_items_processed(self, gate_input: GateInput) -> GateResult:
        order_id = gate_input.order["id"]
        items = await self._store.find("order_items", {"order_id": order_id})
        finished = await self._store.find("processing_steps", {"order_id": order_id, "step_code": "finishing"})
        done = {row["order_item_id"] for row in finished}
        blockers = [f"item {item['id']} has not completed finishing" for item in items if item["id"] not in done]
        return GateResult(gate="require_all_items_processed", passed=not blockers, blockers=blockers)

    async def _all_items_assembled(self, gate_input: GateInput) -> GateResult:
        order_id = gate_input.order["id"]
        items = await self._store.find("order_items", {"order_id": order_id})
        pieces = await self._store.find("order_item_pieces", {"order_id": order_id})
        by_item: dict[str, list[dict[str, Any]]] = {}
        for piece in pieces:
            by_item.setdefault(piece["order_item_id"], []).append(piece)

        blockers: list[str] = []
        for item in items:
            tracked = by_item.get(item["id"])
            if tracked:
                pending = [p for p in tracked if p.get("piece_status") != "ready" or p.get("is_rejected")]
                if pending:
                    blockers.append(f"item {item['id']} has {len(pending)} piece(s) not ready")
            elif item.get("item_status") != "ready":
                blockers.append(f"item {item['id']} is not ready")
        return GateResult(gate="require_all_items_assembled", passed=not blockers, blockers=blockers)

    async def _qa_passed(self, gate_input: GateInput) -> GateResult:
        status = gate_input.order.get("qa_status")
        if status == "passed":
            return GateResult(gate="require_qa_passed", passed=True)
        return GateResult(gate="require_qa_passed", passed=False, blockers=[f"qa status is {status or 'pending'}"])

    async def _rack_location(self, gate_input: GateInput) -> GateResult:
        location = gate_input.metadata.get("rack_location") or gate_input.order.get("rack_location")
        if location and str(location).strip():
            return GateResult(gate="require_rack_location", passed=True)
        return GateResult(gate="require_rack_location", passed=False, blockers=["rack location required"])
