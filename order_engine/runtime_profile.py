from __future__ import annotations

from collections.abc import Mapping
import os


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return _as_bool(env.get("ORDER_ENGINE_REQUIRE_TRUESTACK", "false"))


def engine_environment(environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    value = env.get("ORDER_ENGINE_ENV", "production").strip().lower() or "production"
    if value not in {"production", "development"}:
        raise RuntimeError(f"ORDER_ENGINE_ENV must be production or development, got: {value}")
    if value == "development" and true_stack_required(env):
        raise RuntimeError("ORDER_ENGINE_ENV=development is not allowed when ORDER_ENGINE_REQUIRE_TRUESTACK=true")
    return value
