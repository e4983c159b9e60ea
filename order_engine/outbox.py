from __future__ import annotations

import logging
from typing import Any

from order_engine.errors import NotFound
from order_engine.guard import GuardedStore
from order_engine.history import new_id, utcnow_iso
from order_engine.query import Insert

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset(
    {
        "order.created",
        "order.status_changed",
        "order.split",
        "issue.created",
        "issue.resolved",
    }
)


def outbox_event(
    *,
    event_type: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict[str, Any],
) -> Insert:
    """Build the outbox insert that rides in the same atomic batch as the change it describes."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown outbox event type: {event_type}")
    return Insert(
        resource="outbox_events",
        rows=(
            {
                "id": new_id("evt"),
                "event_type": event_type,
                "aggregate_type": aggregate_type,
                "aggregate_id": aggregate_id,
                "payload": payload,
                "status": "pending",
                "published_at": None,
                "created_at": utcnow_iso(),
            },
        ),
    )


class Outbox:
    def __init__(self, store: GuardedStore) -> None:
        self._store = store

    async def list_events(self, *, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        where: dict[str, Any] = {}
        if status:
            where["status"] = status
        return await self._store.find(
            "outbox_events",
            where,
            order_by=("created_at",),
            limit=max(1, min(limit, 1000)),
        )

    async def mark_published(self, event_id: str) -> dict[str, Any]:
        now = utcnow_iso()
        changed = await self._store.update(
            "outbox_events",
            {"id": event_id},
            {"status": "published", "published_at": now},
        )
        if not changed:
            raise NotFound("outbox_event", event_id)
        event = await self._store.find_one("outbox_events", {"id": event_id})
        logger.info("outbox_event_published event=%s", event_id)
        return event or {}
