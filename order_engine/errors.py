from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class TenantContextMissing(ApiError):
    def __init__(self, message: str = "tenant context is required") -> None:
        super().__init__(
            code="TENANT_CONTEXT_MISSING",
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


class InvalidTransition(ApiError):
    def __init__(self, message: str, *, from_status: str | None, to_status: str) -> None:
        super().__init__(
            code="WF_STATE_TRANSITION_INVALID",
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=409,
            details={"from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class GateNotSatisfied(ApiError):
    def __init__(self, *, gate: str, blockers: list[str], failed_gates: list[dict[str, Any]]) -> None:
        reason = "; ".join(blockers) if blockers else "gate predicate returned false"
        super().__init__(
            code="WF_GATE_NOT_SATISFIED",
            message=f"quality gate not satisfied: {gate} ({reason})",
            error_class="business_rule",
            retryable=False,
            http_status=409,
            details={"gate": gate, "blockers": list(blockers), "failed_gates": failed_gates},
        )
        self.gate = gate
        self.blockers = list(blockers)


class ConcurrentModification(ApiError):
    def __init__(self, message: str = "resource was modified concurrently") -> None:
        super().__init__(
            code="CONCURRENT_MODIFICATION",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=409,
        )


class AlreadyResolved(ApiError):
    def __init__(self, issue_id: str) -> None:
        super().__init__(
            code="ISSUE_ALREADY_RESOLVED",
            message=f"issue already resolved: {issue_id}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
            details={"issue_id": issue_id},
        )


class ValidationError(ApiError):
    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(
            code="REQ_VALIDATION_FAILED",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
            details={"errors": list(errors)} if errors else None,
        )
        self.errors = list(errors or [message])


class NotFound(ApiError):
    """Absent and out-of-tenant rows are reported identically."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            code=f"{entity.upper()}_NOT_FOUND",
            message=f"{entity} not found",
            error_class="validation",
            retryable=False,
            http_status=404,
            details={"id": entity_id},
        )


class StoreTimeout(ApiError):
    def __init__(self, resource: str, timeout_ms: int) -> None:
        super().__init__(
            code="STORE_READ_TIMEOUT",
            message=f"read on {resource} exceeded {timeout_ms}ms",
            error_class="transient",
            retryable=True,
            http_status=504,
        )


class Forbidden(ApiError):
    def __init__(self, message: str = "operation requires a tenant administrator") -> None:
        super().__init__(
            code="AUTH_FORBIDDEN",
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
