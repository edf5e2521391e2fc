"""
Weekly cadence scheduling.

The next check-in unlocks at a fixed local wall-clock hour, a fixed number of
calendar days after the local date of a baseline instant, and is persisted as
an absolute UTC instant.

All functions here are pure: "now" only ever arrives as an argument.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"


@dataclass(frozen=True)
class CadencePolicy:
    week_cap: int = 8
    due_local_hour: int = 19
    interval_days: int = 7
    trial_days: int = 7
    clock_skew_tolerance: timedelta = timedelta(minutes=5)

    @classmethod
    def from_settings(cls, settings) -> "CadencePolicy":
        return cls(
            week_cap=settings.CADENCE_WEEK_CAP,
            due_local_hour=settings.CADENCE_DUE_LOCAL_HOUR,
            interval_days=settings.CADENCE_INTERVAL_DAYS,
            trial_days=settings.TRIAL_DAYS,
            clock_skew_tolerance=timedelta(seconds=settings.CLOCK_SKEW_TOLERANCE_S),
        )

    @property
    def trial_duration(self) -> timedelta:
        return timedelta(days=self.trial_days)

    def advance_week(self, prior_week: Optional[int]) -> int:
        """Week number after completing ``prior_week``; never above the cap."""
        return min(self.week_cap, max((prior_week or 0) + 1, 1))

    def next_due(self, baseline: datetime, tz_name: Optional[str]) -> datetime:
        return next_due_instant(
            baseline,
            tz_name,
            due_local_hour=self.due_local_hour,
            interval_days=self.interval_days,
        )


def normalize_timezone_name(tz_name: Optional[str]) -> Optional[str]:
    if tz_name is None:
        return None
    name = str(tz_name).strip()
    return name or None


def load_timezone(tz_name: Optional[str]) -> Optional[ZoneInfo]:
    """ZoneInfo for an IANA name, or None when the name does not resolve."""
    name = normalize_timezone_name(tz_name)
    if name is None:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return None


def is_valid_timezone(tz_name: Optional[str]) -> bool:
    return load_timezone(tz_name) is not None


def local_date(instant: datetime, zone: ZoneInfo) -> date:
    return instant.astimezone(zone).date()


def next_due_instant(
    baseline: datetime,
    tz_name: Optional[str],
    *,
    due_local_hour: int = 19,
    interval_days: int = 7,
) -> datetime:
    """
    Next due instant: ``interval_days`` after the local calendar date of
    ``baseline`` in ``tz_name``, at ``due_local_hour``:00 local time, in UTC.

    The UTC offset is the one in force at the target wall-clock time, so a
    daylight-saving change between baseline and target still lands on the
    local hour. Never raises for a bad timezone: a missing name means UTC, an
    unresolvable one falls back to a server-side UTC computation.
    """
    if baseline.tzinfo is None:
        raise ValueError("baseline must be timezone-aware")

    name = normalize_timezone_name(tz_name)
    if name is None:
        logger.warning(
            "Missing timezone for cadence scheduling, defaulting to UTC",
            extra={"extra_fields": {"event": "scheduler.timezone_fallback", "timezone": None}},
        )
        name = DEFAULT_TIMEZONE

    zone = load_timezone(name)
    if zone is None:
        logger.warning(
            f"Unresolvable timezone {name!r} for cadence scheduling, using UTC fallback",
            extra={"extra_fields": {"event": "scheduler.timezone_fallback", "timezone": name}},
        )
        return _fallback_due_instant(baseline, due_local_hour=due_local_hour, interval_days=interval_days)

    target_date = local_date(baseline, zone) + timedelta(days=interval_days)
    scheduled_local = datetime.combine(target_date, time(hour=due_local_hour), tzinfo=zone)
    return scheduled_local.astimezone(timezone.utc)


def _fallback_due_instant(baseline: datetime, *, due_local_hour: int, interval_days: int) -> datetime:
    # Server clock is UTC: baseline + interval with the hour forced.
    shifted = baseline.astimezone(timezone.utc) + timedelta(days=interval_days)
    return shifted.replace(hour=due_local_hour, minute=0, second=0, microsecond=0)


def is_week_due(next_due: Optional[datetime], now: datetime) -> bool:
    """A check-in is open once the due instant has passed; unscheduled is never due."""
    if next_due is None:
        return False
    return now >= next_due
