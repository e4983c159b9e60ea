from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from order_engine.runtime_profile import engine_environment, true_stack_required


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass
class EngineSettings:
    environment: str
    store_backend: str
    postgres_dsn: str
    postgres_apply_rls: bool
    list_timeout_ms: int
    conflict_retries: int
    default_turnaround_hours: float

    @property
    def hardened(self) -> bool:
        return self.environment != "development"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        backend = env.get("ORDER_ENGINE_STORE_BACKEND", "memory").strip().lower() or "memory"
        if backend not in {"memory", "postgres"}:
            raise RuntimeError(f"unsupported ORDER_ENGINE_STORE_BACKEND: {backend}")
        if true_stack_required(env) and backend != "postgres":
            raise RuntimeError("ORDER_ENGINE_STORE_BACKEND must be postgres when ORDER_ENGINE_REQUIRE_TRUESTACK=true")
        return cls(
            environment=engine_environment(env),
            store_backend=backend,
            postgres_dsn=env.get("POSTGRES_DSN", "").strip(),
            postgres_apply_rls=_env_bool(env, "POSTGRES_APPLY_RLS", default=False),
            list_timeout_ms=_env_int(env, "ORDER_ENGINE_LIST_TIMEOUT_MS", default=5000, minimum=1),
            conflict_retries=_env_int(env, "ORDER_ENGINE_CONFLICT_RETRIES", default=3, minimum=1),
            default_turnaround_hours=_env_float(env, "ORDER_ENGINE_DEFAULT_TURNAROUND_HOURS", default=48.0),
        )
