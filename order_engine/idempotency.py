from __future__ import annotations

import hashlib
import json
from collections.abc import Awaitable, Callable
from typing import Any

from order_engine.errors import ApiError
from order_engine.guard import GuardedStore
from order_engine.history import utcnow_iso
from order_engine.query import ConditionNotMet
from order_engine.tenant_context import current_tenant_id


def _fingerprint(payload: dict[str, Any]) -> str:
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


class IdempotencyStore:
    """Replays the first response for a repeated ``Idempotency-Key`` within one tenant."""

    def __init__(self, store: GuardedStore) -> None:
        self._store = store

    async def run(
        self,
        *,
        endpoint: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], Awaitable[dict[str, Any]]],
    ) -> dict[str, Any]:
        record_id = f"{current_tenant_id() or '-'}:{endpoint}:{idempotency_key}"
        fingerprint = _fingerprint(payload)
        existing = await self._store.find_one("idempotency_records", {"id": record_id})
        if existing is not None:
            return self._replay(existing, fingerprint)

        data = await execute()
        try:
            await self._store.insert(
                "idempotency_records",
                {
                    "id": record_id,
                    "endpoint": endpoint,
                    "idempotency_key": idempotency_key,
                    "fingerprint": fingerprint,
                    "data": data,
                    "created_at": utcnow_iso(),
                },
            )
        except ConditionNotMet:
            existing = await self._store.find_one("idempotency_records", {"id": record_id})
            if existing is not None:
                return self._replay(existing, fingerprint)
            raise
        return data

    @staticmethod
    def _replay(record: dict[str, Any], fingerprint: str) -> dict[str, Any]:
        if record["fingerprint"] != fingerprint:
            raise ApiError(
                code="IDEMPOTENCY_CONFLICT",
                message="same key with different payload",
                error_class="validation",
                retryable=False,
                http_status=409,
            )
        return record["data"]
