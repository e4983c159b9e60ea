from __future__ import annotations

import logging
from typing import Any

from order_engine.errors import AlreadyResolved, ConcurrentModification, NotFound, ValidationError
from order_engine.guard import GuardedStore
from order_engine.history import ISSUE_CREATED, ISSUE_SOLVED, action_entry, new_id, utcnow_iso
from order_engine.outbox import outbox_event
from order_engine.query import ConditionNotMet, Insert, Update
from order_engine.tenant_context import current_actor

logger = logging.getLogger(__name__)

ISSUE_CODES = ("damage", "stain", "complaint", "other")
ISSUE_PRIORITIES = ("low", "normal", "high", "urgent")


def validate_issue(*, code: str, text: str, priority: str) -> list[str]:
    errors: list[str] = []
    if code not in ISSUE_CODES:
        errors.append(f"issue code must be one of {', '.join(ISSUE_CODES)}")
    stripped = (text or "").strip()
    if len(stripped) < 3 or len(stripped) > 1000:
        errors.append("issue text must be between 3 and 1000 characters")
    if priority not in ISSUE_PRIORITIES:
        errors.append(f"issue priority must be one of {', '.join(ISSUE_PRIORITIES)}")
    return errors


class IssueTracker:
    """Quality issues raised against order items.

    ``has_issue`` on the order is written in the same batch as the issue row,
    conditioned on the order's ``row_version``, so it always agrees with the
    unresolved rows. Gate checks still count the rows directly.
    """

    def __init__(self, store: GuardedStore, *, max_retries: int = 3) -> None:
        self._store = store
        self._max_retries = max(1, max_retries)

    async def _order(self, order_id: str) -> dict[str, Any]:
        order = await self._store.find_one("orders", {"id": order_id})
        if order is None:
            raise NotFound("order", order_id)
        return order

    @staticmethod
    def _flag_update(order: dict[str, Any], has_issue: bool, now: str) -> Update:
        return Update(
            resource="orders",
            where={"id": order["id"], "row_version": order["row_version"]},
            values={"has_issue": has_issue, "row_version": int(order["row_version"]) + 1, "updated_at": now},
            require_match=True,
        )

    async def create_issue(
        self,
        *,
        order_item_id: str,
        code: str,
        text: str,
        priority: str = "normal",
        photo_url: str | None = None,
    ) -> dict[str, Any]:
        errors = validate_issue(code=code, text=text, priority=priority)
        if errors:
            raise ValidationError(errors[0], errors=errors)

        actor = current_actor()
        issue_id = new_id("iss")
        for attempt in range(1, self._max_retries + 1):
            item = await self._store.find_one("order_items", {"id": order_item_id})
            if item is None:
                raise NotFound("order_item", order_item_id)
            order = await self._order(item["order_id"])
            now = utcnow_iso()
            issue = {
                "id": issue_id,
                "order_id": item["order_id"],
                "order_item_id": order_item_id,
                "issue_code": code,
                "issue_text": text.strip(),
                "priority": priority,
                "photo_url": photo_url,
                "created_by": actor,
                "created_at": now,
                "solved_at": None,
                "solved_by": None,
                "solved_notes": None,
            }
            try:
                await self._store.atomic(
                    [
                        Insert(resource="order_issues", rows=(issue,)),
                        self._flag_update(order, True, now),
                        Update(resource="order_items", where={"id": order_item_id}, values={"issue_id": issue_id}),
                        action_entry(
                            order_id=item["order_id"],
                            action_type=ISSUE_CREATED,
                            actor=actor,
                            to_value=code,
                            payload={"issue_id": issue_id, "order_item_id": order_item_id, "priority": priority},
                            at=now,
                        ),
                        outbox_event(
                            event_type="issue.created",
                            aggregate_type="order",
                            aggregate_id=item["order_id"],
                            payload={"issue_id": issue_id, "issue_code": code, "priority": priority},
                        ),
                    ]
                )
            except ConditionNotMet:
                logger.warning("issue_create_conflict order=%s attempt=%s", item["order_id"], attempt)
                continue
            logger.info("issue_created order=%s item=%s issue=%s code=%s", item["order_id"], order_item_id, issue_id, code)
            return issue
        raise ConcurrentModification(f"order of item {order_item_id} kept changing; gave up after {self._max_retries} attempts")

    async def resolve_issue(self, issue_id: str, *, notes: str | None = None) -> dict[str, Any]:
        actor = current_actor()
        for attempt in range(1, self._max_retries + 1):
            issue = await self.get_issue(issue_id)
            if issue.get("solved_at"):
                raise AlreadyResolved(issue_id)
            order = await self._order(issue["order_id"])
            others = await self._store.count(
                "order_issues",
                {"order_id": issue["order_id"], "solved_at": None, "id": {"ne": issue_id}},
            )
            now = utcnow_iso()
            resolution = {"solved_at": now, "solved_by": actor, "solved_notes": notes}
            try:
                await self._store.atomic(
                    [
                        Update(
                            resource="order_issues",
                            where={"id": issue_id, "solved_at": None},
                            values=resolution,
                            require_match=True,
                        ),
                        self._flag_update(order, others > 0, now),
                        action_entry(
                            order_id=issue["order_id"],
                            action_type=ISSUE_SOLVED,
                            actor=actor,
                            from_value=issue["issue_code"],
                            payload={"issue_id": issue_id, "notes": notes},
                            at=now,
                        ),
                        outbox_event(
                            event_type="issue.resolved",
                            aggregate_type="order",
                            aggregate_id=issue["order_id"],
                            payload={"issue_id": issue_id},
                        ),
                    ]
                )
            except ConditionNotMet:
                # Either the issue was resolved meanwhile or the order moved; the re-read tells which.
                logger.warning("issue_resolve_conflict issue=%s attempt=%s", issue_id, attempt)
                continue
            logger.info("issue_resolved order=%s issue=%s remaining=%s", issue["order_id"], issue_id, others)
            return {**issue, **resolution}
        raise ConcurrentModification(f"order of issue {issue_id} kept changing; gave up after {self._max_retries} attempts")

    async def count_unresolved(self, order_id: str) -> int:
        return await self._store.count("order_issues", {"order_id": order_id, "solved_at": None})

    async def list_issues(self, order_id: str, *, unresolved_only: bool = False) -> list[dict[str, Any]]:
        where: dict[str, Any] = {"order_id": order_id}
        if unresolved_only:
            where["solved_at"] = None
        return await self._store.find("order_issues", where, order_by=("created_at",))

    async def get_issue(self, issue_id: str) -> dict[str, Any]:
        issue = await self._store.find_one("order_issues", {"id": issue_id})
        if issue is None:
            raise NotFound("issue", issue_id)
        return issue
