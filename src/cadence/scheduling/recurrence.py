"""Repeat policies and next-occurrence arithmetic.

All computations are in UTC. Fixed-interval policies add a constant
duration; ``MONTHLY`` advances by one calendar month and clamps to the last
day of the target month when the source day does not exist there
(Jan 31 -> Feb 28, or Feb 29 in leap years).
"""

from __future__ import annotations

import calendar
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum


class RepeatPolicy(StrEnum):
    """Closed set of supported cadences.

    Values double as the selector strings used on wizard keyboards.
    """

    NONE = "none"
    EVERY_5M = "5m"
    EVERY_15M = "15m"
    EVERY_30M = "30m"
    EVERY_45M = "45m"
    EVERY_1H = "1h"
    EVERY_3H = "3h"
    EVERY_6H = "6h"
    EVERY_12H = "12h"
    DAILY = "1d"
    WEEKLY = "1w"
    EVERY_2W = "2w"
    EVERY_4W = "4w"
    MONTHLY = "1mo"

    @property
    def is_one_shot(self) -> bool:
        return self is RepeatPolicy.NONE

    @property
    def interval(self) -> timedelta | None:
        """Fixed duration between occurrences, or None for one-shot/monthly."""
        return _INTERVALS.get(self)

    @property
    def weeks(self) -> int | None:
        """Week multiple for weekly cadences."""
        return _WEEKS.get(self)

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def from_selector(cls, selector: str) -> RepeatPolicy:
        """Parse a keyboard selector (``"1d"``, ``"2w"``...).

        Raises:
            ValueError: If the selector is not a known cadence.
        """
        try:
            return cls(selector.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown repeat selector: {selector!r}") from None


_WEEKS: dict[RepeatPolicy, int] = {
    RepeatPolicy.WEEKLY: 1,
    RepeatPolicy.EVERY_2W: 2,
    RepeatPolicy.EVERY_4W: 4,
}

_INTERVALS: dict[RepeatPolicy, timedelta] = {
    RepeatPolicy.EVERY_5M: timedelta(minutes=5),
    RepeatPolicy.EVERY_15M: timedelta(minutes=15),
    RepeatPolicy.EVERY_30M: timedelta(minutes=30),
    RepeatPolicy.EVERY_45M: timedelta(minutes=45),
    RepeatPolicy.EVERY_1H: timedelta(hours=1),
    RepeatPolicy.EVERY_3H: timedelta(hours=3),
    RepeatPolicy.EVERY_6H: timedelta(hours=6),
    RepeatPolicy.EVERY_12H: timedelta(hours=12),
    RepeatPolicy.DAILY: timedelta(days=1),
    **{policy: timedelta(weeks=weeks) for policy, weeks in _WEEKS.items()},
}

_LABELS: dict[RepeatPolicy, str] = {
    RepeatPolicy.NONE: "No repeat",
    RepeatPolicy.EVERY_5M: "Every 5 min",
    RepeatPolicy.EVERY_15M: "Every 15 min",
    RepeatPolicy.EVERY_30M: "Every 30 min",
    RepeatPolicy.EVERY_45M: "Every 45 min",
    RepeatPolicy.EVERY_1H: "Every 1 hour",
    RepeatPolicy.EVERY_3H: "Every 3 hours",
    RepeatPolicy.EVERY_6H: "Every 6 hours",
    RepeatPolicy.EVERY_12H: "Every 12 hours",
    RepeatPolicy.DAILY: "Daily",
    RepeatPolicy.WEEKLY: "Weekly",
    RepeatPolicy.EVERY_2W: "Every 2 weeks",
    RepeatPolicy.EVERY_4W: "Every 4 weeks",
    RepeatPolicy.MONTHLY: "Monthly",
}

# Cadences offered per action kind, in keyboard order
PROMPT_POLICIES: tuple[RepeatPolicy, ...] = (
    RepeatPolicy.NONE,
    RepeatPolicy.EVERY_5M,
    RepeatPolicy.EVERY_15M,
    RepeatPolicy.EVERY_30M,
    RepeatPolicy.EVERY_45M,
    RepeatPolicy.EVERY_1H,
    RepeatPolicy.EVERY_3H,
    RepeatPolicy.EVERY_6H,
    RepeatPolicy.EVERY_12H,
    RepeatPolicy.DAILY,
    RepeatPolicy.WEEKLY,
    RepeatPolicy.MONTHLY,
)

PAYMENT_POLICIES: tuple[RepeatPolicy, ...] = (
    RepeatPolicy.NONE,
    RepeatPolicy.DAILY,
    RepeatPolicy.WEEKLY,
    RepeatPolicy.EVERY_2W,
    RepeatPolicy.EVERY_4W,
    RepeatPolicy.MONTHLY,
)


def _require_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("Naive datetimes are not accepted; pass a UTC datetime")
    return value.astimezone(UTC)


def add_months(value: datetime, months: int = 1) -> datetime:
    """Advance by calendar months, clamping to the target month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def next_occurrence(policy: RepeatPolicy, previous: datetime) -> datetime | None:
    """Return the occurrence following ``previous``, or None for one-shot."""
    previous = _require_utc(previous)
    if policy is RepeatPolicy.NONE:
        return None
    if policy is RepeatPolicy.MONTHLY:
        return add_months(previous, 1)
    interval = _INTERVALS[policy]
    return previous + interval


def advance_past(
    policy: RepeatPolicy, scheduled: datetime, now: datetime
) -> datetime | None:
    """Next occurrence after ``scheduled`` that is strictly later than ``now``.

    Occurrences missed while the dispatcher was down are skipped rather than
    replayed one by one.
    """
    now = _require_utc(now)
    candidate = next_occurrence(policy, scheduled)
    while candidate is not None and candidate <= now:
        candidate = next_occurrence(policy, candidate)
    return candidate


def first_occurrence(
    policy: RepeatPolicy, anchor: datetime, now: datetime
) -> datetime:
    """First fire time at or after ``now`` derived from ``anchor``.

    A passed anchor steps forward along the policy's cadence. One-shot
    schedules step by a day, so a time of day that has already gone by
    today fires tomorrow.
    """
    anchor = _require_utc(anchor)
    now = _require_utc(now)
    if anchor >= now:
        return anchor

    step_policy = RepeatPolicy.DAILY if policy.is_one_shot else policy
    interval = step_policy.interval
    if interval is not None:
        steps = -(-(now - anchor) // interval)  # ceil division
        return anchor + steps * interval

    candidate = anchor
    while candidate < now:
        candidate = add_months(anchor, _months_between(anchor, candidate) + 1)
    return candidate


def _months_between(start: datetime, end: datetime) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def time_of_day_anchor(day: date, hour: int, minute: int) -> datetime:
    """UTC datetime for ``hour:minute`` on ``day``."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=UTC)
