from __future__ import annotations

import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from order_engine.engine import OrderEngine
from order_engine.errors import ApiError
from order_engine.routes import issues, orders, outbox, pieces, processing, settings
from order_engine.routes._deps import (
    append_security_audit_log,
    error_response,
    request_id_from_request,
    trace_id_from_request,
)
from order_engine.schemas import success_envelope
from order_engine.security import JwtSecurityConfig, parse_and_validate_bearer_token
from order_engine.tenant_context import bind_tenant

logger = logging.getLogger(__name__)

SECURITY_CODES = frozenset(
    {
        "AUTH_UNAUTHORIZED",
        "AUTH_FORBIDDEN",
        "TENANT_SCOPE_VIOLATION",
        "TENANT_CONTEXT_MISSING",
    }
)


def _with_request_headers(request: Request, response):
    response.headers["x-trace-id"] = trace_id_from_request(request)
    response.headers["x-request-id"] = request_id_from_request(request)
    return response


def create_app(engine: OrderEngine | None = None) -> FastAPI:
    if engine is None:
        from order_engine.engine import engine as default_engine

        engine = default_engine
    app = FastAPI(title="Laundry Order Engine API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.engine = engine
    app.state.security_cfg = security_cfg

    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = "anonymous"
        request.state.tenant_id = None
        path = request.url.path
        if security_cfg.trace_id_strict_required and path.startswith("/api/v1/") and not incoming_trace_id:
            response = error_response(
                request,
                code="TRACE_ID_REQUIRED",
                message="x-trace-id header is required",
                error_class="validation",
                retryable=False,
                status_code=400,
            )
            return _with_request_headers(request, response)
        try:
            header_tenant = request.headers.get("x-tenant-id", "").strip()
            role = "operator"
            if security_cfg.enabled and path.startswith("/api/v1/"):
                auth_ctx = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=security_cfg,
                )
                if header_tenant and header_tenant != auth_ctx.tenant_id:
                    raise ApiError(
                        code="TENANT_SCOPE_VIOLATION",
                        message="tenant mismatch",
                        error_class="security_sensitive",
                        retryable=False,
                        http_status=403,
                    )
                request.state.auth_subject = auth_ctx.subject
                request.state.tenant_id = auth_ctx.tenant_id
                role = auth_ctx.role
            elif header_tenant and not engine.settings.hardened:
                request.state.tenant_id = header_tenant
                role = request.headers.get("x-role", "").strip() or "operator"
        except ApiError as exc:
            append_security_audit_log(
                request=request,
                action="security_blocked",
                code=exc.code,
                detail=exc.message,
            )
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
            return _with_request_headers(request, response)

        if request.state.tenant_id:
            with bind_tenant(request.state.tenant_id, user_id=request.state.auth_subject, role=role):
                response = await call_next(request)
        else:
            response = await call_next(request)
        return _with_request_headers(request, response)

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in SECURITY_CODES:
            append_security_audit_log(
                request=request,
                action="security_blocked",
                code=exc.code,
                detail=exc.message,
            )
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            f"{'.'.join(str(part) for part in err.get('loc', ()) if part != 'body')}: {err.get('msg', '')}"
            for err in exc.errors()
        ]
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
            details={"errors": errors},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("unhandled_error path=%s trace_id=%s", request.url.path, trace_id_from_request(request))
        return _with_request_headers(
            request,
            error_response(
                request,
                code="INTERNAL_ERROR",
                message="internal error",
                error_class="internal",
                retryable=False,
                status_code=500,
            ),
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope(
            {"status": "ok", "store_backend": engine.settings.store_backend},
            trace_id_from_request(request),
        )

    app.include_router(orders.router)
    app.include_router(pieces.router)
    app.include_router(issues.router)
    app.include_router(processing.router)
    app.include_router(settings.router)
    app.include_router(outbox.router)
    return app


app = create_app()
