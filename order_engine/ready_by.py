"""Ready-by timestamps.

Everything here is a pure function of its arguments: no clock reads, no store
access. Business hours are interpreted in the timezone of ``received_at``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any

from order_engine.errors import ValidationError

PRIORITY_MULTIPLIERS: dict[str, float] = {"normal": 1.0, "urgent": 0.7, "express": 0.5}
MAX_DAYS_SCAN = 366
COMPLETED_STATUSES = frozenset({"ready", "out_for_delivery", "delivered", "closed", "cancelled"})


@dataclass(frozen=True)
class BusinessHoursPolicy:
    open_hour: int = 9
    close_hour: int = 18
    # Python weekday numbers, Monday = 0.
    working_days: frozenset[int] = frozenset({0, 1, 2, 3, 4, 5})
    holidays: frozenset[date] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if not 0 <= self.open_hour < self.close_hour <= 24:
            raise ValidationError("business hours require 0 <= open_hour < close_hour <= 24")
        if not self.working_days or any(day not in range(7) for day in self.working_days):
            raise ValidationError("working_days must be a non-empty subset of 0..6")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BusinessHoursPolicy":
        try:
            holidays = frozenset(
                h if isinstance(h, date) else date.fromisoformat(str(h)) for h in data.get("holidays") or []
            )
            return cls(
                open_hour=int(data.get("open_hour", 9)),
                close_hour=int(data.get("close_hour", 18)),
                working_days=frozenset(int(d) for d in data.get("working_days", (0, 1, 2, 3, 4, 5))),
                holidays=holidays,
            )
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"invalid business hours: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "open_hour": self.open_hour,
            "close_hour": self.close_hour,
            "working_days": sorted(self.working_days),
            "holidays": sorted(h.isoformat() for h in self.holidays),
        }

    def is_working_day(self, day: date) -> bool:
        return day.weekday() in self.working_days and day not in self.holidays

    def snap(self, moment: datetime) -> datetime:
        """Return the first in-window instant at or after ``moment``."""
        candidate = moment
        for _ in range(MAX_DAYS_SCAN):
            day = candidate.date()
            if self.is_working_day(day):
                midnight = datetime.combine(day, time(0), tzinfo=candidate.tzinfo)
                opens = midnight + timedelta(hours=self.open_hour)
                closes = midnight + timedelta(hours=self.close_hour)
                if candidate < opens:
                    return opens
                if candidate < closes:
                    return candidate
            candidate = datetime.combine(day + timedelta(days=1), time(0), tzinfo=candidate.tzinfo)
        raise ValidationError(f"no working day found within {MAX_DAYS_SCAN} days")


@dataclass(frozen=True)
class ReadyByResult:
    ready_by: datetime
    source: str
    turnaround_hours: float
    adjusted_hours: float
    multiplier: float
    snapped: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "ready_by": self.ready_by.isoformat(),
            "source": self.source,
            "turnaround_hours": self.turnaround_hours,
            "adjusted_hours": self.adjusted_hours,
            "multiplier": self.multiplier,
            "snapped": self.snapped,
        }


def priority_multiplier(priority: str) -> float:
    try:
        return PRIORITY_MULTIPLIERS[priority]
    except KeyError:
        raise ValidationError(
            f"priority must be one of {', '.join(PRIORITY_MULTIPLIERS)}, got: {priority}"
        ) from None


def turnaround_by_priority(turnaround_hours: float, priority: str) -> float:
    return max(0.0, float(turnaround_hours)) * priority_multiplier(priority)


def _truncate_to_minute(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


def compute_ready_by(
    received_at: datetime,
    turnaround_hours: float,
    priority: str = "normal",
    business_hours: BusinessHoursPolicy | None = None,
    *,
    category_turnaround_hours: float | None = None,
    override: datetime | None = None,
) -> ReadyByResult:
    multiplier = priority_multiplier(priority)
    base_hours = float(category_turnaround_hours if category_turnaround_hours is not None else turnaround_hours)
    if override is not None:
        return ReadyByResult(
            ready_by=override,
            source="override",
            turnaround_hours=base_hours,
            adjusted_hours=0.0,
            multiplier=multiplier,
            snapped=False,
        )

    adjusted = max(0.0, base_hours) * multiplier
    target = _truncate_to_minute(received_at + timedelta(hours=adjusted))
    if target < received_at:
        target += timedelta(minutes=1)
    snapped = False
    if business_hours is not None:
        in_window = business_hours.snap(target)
        snapped = in_window != target
        target = in_window
    return ReadyByResult(
        ready_by=target,
        source="computed",
        turnaround_hours=base_hours,
        adjusted_hours=adjusted,
        multiplier=multiplier,
        snapped=snapped,
    )


def calculate_ready_by(
    received_at: datetime,
    turnaround_hours: float,
    priority: str = "normal",
    business_hours: BusinessHoursPolicy | None = None,
    *,
    category_turnaround_hours: float | None = None,
    override: datetime | None = None,
) -> datetime:
    return compute_ready_by(
        received_at,
        turnaround_hours,
        priority,
        business_hours,
        category_turnaround_hours=category_turnaround_hours,
        override=override,
    ).ready_by


def is_overdue(ready_by: datetime | None, *, now: datetime, status: str | None = None) -> bool:
    if ready_by is None or (status is not None and status in COMPLETED_STATUSES):
        return False
    return now > ready_by


def hours_until_ready_by(ready_by: datetime, *, now: datetime) -> float:
    return round((ready_by - now).total_seconds() / 3600, 2)


def format_ready_by(ready_by: datetime) -> str:
    return ready_by.strftime("%Y-%m-%d %H:%M")


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
