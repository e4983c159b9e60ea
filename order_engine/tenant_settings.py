from __future__ import annotations

import logging
from typing import Any

from order_engine.errors import Forbidden, ValidationError
from order_engine.guard import GuardedStore
from order_engine.history import utcnow_iso
from order_engine.ready_by import BusinessHoursPolicy
from order_engine.tenant_context import current_context, require_context

logger = logging.getLogger(__name__)

_CACHE_KEY = "tenant_settings"


def default_tenant_settings(*, default_turnaround_hours: float = 48.0) -> dict[str, Any]:
    return {
        "track_individual_piece": False,
        "orders_split_enabled": True,
        "default_turnaround_hours": float(default_turnaround_hours),
        "category_turnaround_hours": {},
        "business_hours": None,
    }


def validate_settings_changes(changes: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    allowed = set(default_tenant_settings())
    for key in sorted(set(changes) - allowed):
        errors.append(f"unknown setting: {key}")
    for key in ("track_individual_piece", "orders_split_enabled"):
        if key in changes and not isinstance(changes[key], bool):
            errors.append(f"{key} must be a boolean")
    if "default_turnaround_hours" in changes:
        value = changes["default_turnaround_hours"]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            errors.append("default_turnaround_hours must be a non-negative number")
    if "category_turnaround_hours" in changes:
        value = changes["category_turnaround_hours"]
        if not isinstance(value, dict) or any(
            isinstance(v, bool) or not isinstance(v, (int, float)) or v < 0 for v in value.values()
        ):
            errors.append("category_turnaround_hours must map category codes to non-negative hours")
    if changes.get("business_hours") is not None:
        try:
            BusinessHoursPolicy.from_dict(changes["business_hours"])
        except ValidationError as exc:
            errors.append(exc.message)
    return errors


class TenantSettingsService:
    def __init__(self, store: GuardedStore, *, default_turnaround_hours: float = 48.0) -> None:
        self._store = store
        self._default_turnaround_hours = default_turnaround_hours

    async def get(self) -> dict[str, Any]:
        ctx = current_context()
        if ctx is not None and _CACHE_KEY in ctx.cache:
            return dict(ctx.cache[_CACHE_KEY])
        settings = default_tenant_settings(default_turnaround_hours=self._default_turnaround_hours)
        record = await self._store.find_one("tenant_settings", {})
        if record is not None:
            settings.update(record.get("settings") or {})
        if ctx is not None:
            ctx.cache[_CACHE_KEY] = dict(settings)
        return settings

    async def update(self, changes: dict[str, Any]) -> dict[str, Any]:
        ctx = require_context()
        if not ctx.is_admin:
            raise Forbidden("only tenant administrators may change tenant settings")
        errors = validate_settings_changes(changes)
        if errors:
            raise ValidationError(errors[0], errors=errors)
        merged = {**(await self.get()), **changes}
        if merged.get("business_hours") is not None:
            merged["business_hours"] = BusinessHoursPolicy.from_dict(merged["business_hours"]).to_dict()
        await self._store.upsert(
            "tenant_settings",
            {
                "id": f"{ctx.tenant_id}:settings",
                "settings": merged,
                "updated_by": ctx.user_id,
                "updated_at": utcnow_iso(),
            },
        )
        ctx.cache.pop(_CACHE_KEY, None)
        logger.info("tenant_settings_updated tenant=%s keys=%s", ctx.tenant_id, ",".join(sorted(changes)))
        return merged

    async def business_hours(self) -> BusinessHoursPolicy | None:
        raw = (await self.get()).get("business_hours")
        return BusinessHoursPolicy.from_dict(raw) if raw else None
