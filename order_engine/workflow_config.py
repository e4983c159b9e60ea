"""Per-tenant workflow declarations: ordered steps, allowed edges and quality gates.

A configuration is validated whenever it is built, whether it comes from an
administrator's save or from a stored record, so the state machine only ever
sees a graph with no unreachable states, no edges back into ``draft`` and no
gates on edges that do not exist.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from order_engine.errors import Forbidden, ValidationError
from order_engine.guard import GuardedStore
from order_engine.history import utcnow_iso
from order_engine.tenant_context import current_context, require_context

logger = logging.getLogger(__name__)

DRAFT = "draft"
TERMINAL_STATUSES = frozenset({"closed", "cancelled"})

DEFAULT_STEPS: tuple[str, ...] = (
    "draft",
    "intake",
    "preparation",
    "processing",
    "assembly",
    "qa",
    "packing",
    "ready",
    "out_for_delivery",
    "delivered",
    "closed",
    "cancelled",
)

_DEFAULT_PROGRESSION: dict[str, tuple[str, ...]] = {
    "draft": ("intake",),
    "intake": ("preparation", "processing"),
    "preparation": ("processing",),
    "processing": ("assembly",),
    "assembly": ("qa",),
    "qa": ("packing", "processing"),
    "packing": ("ready",),
    "ready": ("out_for_delivery", "delivered"),
    "out_for_delivery": ("delivered", "ready"),
    "delivered": ("closed",),
}

DEFAULT_TRANSITIONS: dict[str, tuple[str, ...]] = {
    **{status: targets + ("cancelled",) for status, targets in _DEFAULT_PROGRESSION.items()},
    "closed": (),
    "cancelled": (),
}

DEFAULT_STAGES: dict[str, str] = {
    "qa": "qa",
    "ready": "delivery",
    "out_for_delivery": "delivery",
    "delivered": "delivery",
    "closed": "delivery",
    "cancelled": "terminal",
}

DEFAULT_GATES: dict[str, tuple[str, ...]] = {
    "processing->assembly": ("require_all_items_processed",),
    "assembly->qa": ("require_all_items_assembled",),
    "qa->packing": ("require_qa_passed", "require_no_unresolved_issues"),
    "packing->ready": ("require_rack_location",),
}

KNOWN_GATES = frozenset(
    {
        "require_no_unresolved_issues",
        "require_all_items_processed",
        "require_all_items_assembled",
        "require_qa_passed",
        "require_rack_location",
    }
)


def _edge_key(from_status: str, to_status: str) -> str:
    return f"{from_status}->{to_status}"


@dataclass(frozen=True)
class WorkflowConfig:
    steps: tuple[str, ...]
    transitions: dict[str, tuple[str, ...]]
    gates: dict[str, tuple[str, ...]] = field(default_factory=dict)
    stages: dict[str, str] = field(default_factory=dict)
    service_category_code: str | None = None

    def allowed_from(self, status: str) -> tuple[str, ...]:
        return self.transitions.get(status, ())

    def is_allowed(self, from_status: str, to_status: str) -> bool:
        return to_status in self.allowed_from(from_status)

    def is_terminal(self, status: str) -> bool:
        return status in TERMINAL_STATUSES or not self.allowed_from(status)

    def stage_for(self, status: str) -> str:
        return self.stages.get(status, "operational")

    def gates_for(self, from_status: str, to_status: str) -> list[str]:
        """Edge-specific gates first, then gates on every edge into ``to_status``."""
        names: list[str] = []
        for key in (_edge_key(from_status, to_status), to_status):
            for name in self.gates.get(key, ()):
                if name not in names:
                    names.append(name)
        return names

    def to_record(self) -> dict[str, Any]:
        return {
            "service_category_code": self.service_category_code,
            "steps": list(self.steps),
            "transitions": {k: list(v) for k, v in self.transitions.items()},
            "gates": {k: list(v) for k, v in self.gates.items()},
            "stages": dict(self.stages),
        }


def validate_workflow(
    steps: Iterable[str],
    transitions: Mapping[str, Iterable[str]],
    gates: Mapping[str, Iterable[str]] | None = None,
    stages: Mapping[str, str] | None = None,
    *,
    known_gates: frozenset[str] = KNOWN_GATES,
) -> list[str]:
    """Return every problem with a workflow declaration; empty means valid."""
    step_list = [str(s) for s in steps]
    errors: list[str] = []
    if not step_list:
        return ["steps must not be empty"]
    if len(set(step_list)) != len(step_list):
        dupes = sorted({s for s in step_list if step_list.count(s) > 1})
        errors.append(f"duplicate steps: {', '.join(dupes)}")
    known = set(step_list)

    edges: set[tuple[str, str]] = set()
    for source, targets in transitions.items():
        if source not in known:
            errors.append(f"transition from unknown status: {source}")
            continue
        for target in targets:
            if target not in known:
                errors.append(f"transition {source}->{target} targets unknown status")
            elif target == source:
                errors.append(f"self-loop not allowed: {source}->{target}")
            elif target == DRAFT:
                errors.append(f"edge back into draft not allowed: {source}->{target}")
            else:
                edges.add((source, target))
        if source in TERMINAL_STATUSES and list(targets):
            errors.append(f"terminal status has outgoing edges: {source}")

    reachable = {step_list[0]}
    queue = deque([step_list[0]])
    while queue:
        current = queue.popleft()
        for source, target in edges:
            if source == current and target not in reachable:
                reachable.add(target)
                queue.append(target)
    unreachable = [s for s in step_list if s not in reachable]
    if unreachable:
        errors.append(f"unreachable from {step_list[0]}: {', '.join(unreachable)}")

    for key, names in (gates or {}).items():
        if "->" in key:
            source, _, target = key.partition("->")
            if (source, target) not in edges:
                errors.append(f"gate rule for missing edge: {key}")
        elif key not in known:
            errors.append(f"gate rule for unknown status: {key}")
        elif not any(target == key for _, target in edges):
            errors.append(f"gate rule for status with no incoming edge: {key}")
        for name in names:
            if name not in known_gates:
                errors.append(f"unknown gate: {name}")

    for status in (stages or {}):
        if status not in known:
            errors.append(f"stage for unknown status: {status}")
    return errors


def build_workflow(
    *,
    steps: Iterable[str],
    transitions: Mapping[str, Iterable[str]],
    gates: Mapping[str, Iterable[str]] | None = None,
    stages: Mapping[str, str] | None = None,
    service_category_code: str | None = None,
) -> WorkflowConfig:
    errors = validate_workflow(steps, transitions, gates, stages)
    if errors:
        raise ValidationError("invalid workflow configuration", errors=errors)
    step_tuple = tuple(steps)
    return WorkflowConfig(
        steps=step_tuple,
        transitions={s: tuple(transitions.get(s, ())) for s in step_tuple},
        gates={k: tuple(v) for k, v in (gates or {}).items()},
        stages=dict(stages) if stages is not None else {k: v for k, v in DEFAULT_STAGES.items() if k in step_tuple},
        service_category_code=service_category_code,
    )


def default_workflow(service_category_code: str | None = None) -> WorkflowConfig:
    return build_workflow(
        steps=DEFAULT_STEPS,
        transitions=DEFAULT_TRANSITIONS,
        gates=DEFAULT_GATES,
        stages=DEFAULT_STAGES,
        service_category_code=service_category_code,
    )


def workflow_from_record(record: Mapping[str, Any]) -> WorkflowConfig:
    return build_workflow(
        steps=record.get("steps") or [],
        transitions=record.get("transitions") or {},
        gates=record.get("gates") or {},
        stages=record.get("stages"),
        service_category_code=record.get("service_category_code"),
    )


class WorkflowConfigLoader:
    def __init__(self, store: GuardedStore) -> None:
        self._store = store

    async def load(self, service_category_code: str | None = None) -> WorkflowConfig:
        ctx = current_context()
        cache_key = f"workflow:{service_category_code or '*'}"
        if ctx is not None and cache_key in ctx.cache:
            return ctx.cache[cache_key]

        record = None
        if service_category_code:
            record = await self._store.find_one(
                "workflow_settings",
                {"service_category_code": service_category_code, "is_active": True},
            )
        if record is None:
            record = await self._store.find_one(
                "workflow_settings",
                {"service_category_code": None, "is_active": True},
            )
        config = workflow_from_record(record) if record is not None else default_workflow(service_category_code)
        if ctx is not None:
            ctx.cache[cache_key] = config
        return config

    async def save(
        self,
        *,
        steps: Iterable[str],
        transitions: Mapping[str, Iterable[str]],
        gates: Mapping[str, Iterable[str]] | None = None,
        stages: Mapping[str, str] | None = None,
        service_category_code: str | None = None,
    ) -> WorkflowConfig:
        ctx = require_context()
        if not ctx.is_admin:
            raise Forbidden("only tenant administrators may change workflow configuration")
        config = build_workflow(
            steps=steps,
            transitions=transitions,
            gates=gates,
            stages=stages,
            service_category_code=service_category_code,
        )
        await self._store.upsert(
            "workflow_settings",
            {
                "id": f"{ctx.tenant_id}:{service_category_code or '*'}",
                **config.to_record(),
                "is_active": True,
                "updated_by": ctx.user_id,
                "updated_at": utcnow_iso(),
            },
        )
        for key in [k for k in ctx.cache if k.startswith("workflow:")]:
            del ctx.cache[key]
        logger.info(
            "workflow_config_saved tenant=%s category=%s steps=%s",
            ctx.tenant_id,
            service_category_code or "*",
            len(config.steps),
        )
        return config
