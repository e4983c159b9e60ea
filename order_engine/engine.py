"""Wiring for the order lifecycle engine.

Every component receives the same ``GuardedStore``; none of them holds a
reference to the raw backend.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from order_engine.gates import GateRegistry
from order_engine.guard import GuardedStore, StoreBackend, TenantGuard
from order_engine.idempotency import IdempotencyStore
from order_engine.issues import IssueTracker
from order_engine.orders import OrderService
from order_engine.outbox import Outbox
from order_engine.pieces import PieceManager
from order_engine.processing import ProcessingLog
from order_engine.ready_by import BusinessHoursPolicy, calculate_ready_by
from order_engine.settings import EngineSettings
from order_engine.splitting import OrderSplitter
from order_engine.state_machine import OrderStateMachine
from order_engine.store_backends import create_store_backend
from order_engine.tenant_settings import TenantSettingsService
from order_engine.workflow_config import WorkflowConfigLoader


class OrderEngine:
    def __init__(self, settings: EngineSettings, *, backend: StoreBackend | None = None) -> None:
        self.settings = settings
        self.backend = backend if backend is not None else create_store_backend(settings)
        self.guard = TenantGuard(hardened=settings.hardened)
        self.store = GuardedStore(self.backend, self.guard, read_timeout_ms=settings.list_timeout_ms)
        self.workflows = WorkflowConfigLoader(self.store)
        self.tenant_settings = TenantSettingsService(
            self.store,
            default_turnaround_hours=settings.default_turnaround_hours,
        )
        self.issues = IssueTracker(self.store, max_retries=settings.conflict_retries)
        self.gates = GateRegistry(self.store, self.issues)
        self.state_machine = OrderStateMachine(self.store, self.workflows, self.gates)
        self.pieces = PieceManager(self.store, self.tenant_settings, max_retries=settings.conflict_retries)
        self.splitter = OrderSplitter(self.store, self.workflows, self.tenant_settings)
        self.processing = ProcessingLog(self.store)
        self.orders = OrderService(
            self.store,
            self.workflows,
            self.tenant_settings,
            self.pieces,
            max_retries=settings.conflict_retries,
        )
        self.outbox = Outbox(self.store)
        self.idempotency = IdempotencyStore(self.store)

    def reset(self) -> None:
        reset = getattr(self.backend, "reset", None)
        if reset is not None:
            reset()

    async def create_order(self, **kwargs: Any) -> dict[str, Any]:
        return await self.orders.create_order(**kwargs)

    async def transition_order(
        self,
        order_id: str,
        to_status: str,
        *,
        notes: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await self.state_machine.transition(order_id, to_status, notes=notes, metadata=metadata)

    async def split_order(self, order_id: str, specs: list[dict[str, Any]], *, reason: str) -> dict[str, Any]:
        return await self.splitter.split_order(order_id, specs, reason=reason)

    async def create_issue(self, **kwargs: Any) -> dict[str, Any]:
        return await self.issues.create_issue(**kwargs)

    async def resolve_issue(self, issue_id: str, *, notes: str | None = None) -> dict[str, Any]:
        return await self.issues.resolve_issue(issue_id, notes=notes)

    async def record_processing_step(
        self,
        order_id: str,
        order_item_id: str,
        step_code: str,
        step_seq: int,
        *,
        notes: str | None = None,
    ) -> dict[str, Any]:
        return await self.processing.record_step(
            order_id=order_id,
            order_item_id=order_item_id,
            step_code=step_code,
            step_seq=step_seq,
            notes=notes,
        )

    @staticmethod
    def calculate_ready_by(
        received_at: datetime,
        turnaround_hours: float,
        priority: str = "normal",
        business_hours: BusinessHoursPolicy | None = None,
        **kwargs: Any,
    ) -> datetime:
        return calculate_ready_by(received_at, turnaround_hours, priority, business_hours, **kwargs)


def create_engine_from_env(environ: Mapping[str, str] | None = None) -> OrderEngine:
    return OrderEngine(EngineSettings.from_env(environ))


engine = create_engine_from_env()
