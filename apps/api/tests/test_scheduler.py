"""
Due-date scheduling: local wall-clock target, DST, and timezone fallbacks.
"""
import logging
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from services.scheduler import CadencePolicy, is_valid_timezone, is_week_due, next_due_instant


NY = ZoneInfo("America/New_York")


def test_due_instant_across_spring_forward_uses_target_offset():
    baseline = datetime(2024, 3, 8, 12, 0, tzinfo=timezone.utc)

    due = next_due_instant(baseline, "America/New_York")

    assert due == datetime(2024, 3, 15, 23, 0, tzinfo=timezone.utc)
    local = due.astimezone(NY)
    assert (local.hour, local.minute) == (19, 0)
    assert local.utcoffset() == timedelta(hours=-4)


def test_due_instant_across_fall_back_stays_at_local_hour():
    baseline = datetime(2024, 10, 31, 15, 0, tzinfo=timezone.utc)

    due = next_due_instant(baseline, "America/New_York")

    assert due == datetime(2024, 11, 8, 0, 0, tzinfo=timezone.utc)
    local = due.astimezone(NY)
    assert local.date().isoformat() == "2024-11-07"
    assert (local.hour, local.minute) == (19, 0)


def test_local_calendar_date_is_used_not_utc_date():
    # 02:00 UTC on the 9th is still the 8th in New York.
    baseline = datetime(2024, 1, 9, 2, 0, tzinfo=timezone.utc)

    due = next_due_instant(baseline, "America/New_York")

    assert due.astimezone(NY).date().isoformat() == "2024-01-15"


@pytest.mark.parametrize("tz_name", [None, "", "   "])
def test_missing_timezone_defaults_to_utc(tz_name):
    baseline = datetime(2024, 3, 8, 12, 0, tzinfo=timezone.utc)

    assert next_due_instant(baseline, tz_name) == datetime(2024, 3, 15, 19, 0, tzinfo=timezone.utc)


def test_missing_timezone_logs_fallback_event(caplog):
    caplog.set_level(logging.WARNING, logger="services.scheduler")

    next_due_instant(datetime(2024, 3, 8, 12, 0, tzinfo=timezone.utc), None)

    fallbacks = [r for r in caplog.records if getattr(r, "extra_fields", {}).get("event") == "scheduler.timezone_fallback"]
    assert len(fallbacks) == 1
    assert fallbacks[0].extra_fields["timezone"] is None


def test_unresolvable_timezone_falls_back_without_raising(caplog):
    baseline = datetime(2024, 3, 8, 12, 34, 56, tzinfo=timezone.utc)

    due = next_due_instant(baseline, "Mars/Olympus_Mons")

    assert due == datetime(2024, 3, 15, 19, 0, tzinfo=timezone.utc)
    assert "Unresolvable timezone" in caplog.text


def test_naive_baseline_is_rejected():
    with pytest.raises(ValueError):
        next_due_instant(datetime(2024, 3, 8, 12, 0), "UTC")


def test_same_inputs_same_result():
    baseline = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)
    assert next_due_instant(baseline, "Europe/Berlin") == next_due_instant(baseline, "Europe/Berlin")


def test_policy_advance_week_is_capped():
    policy = CadencePolicy(week_cap=8)

    assert policy.advance_week(None) == 1
    assert policy.advance_week(3) == 4
    assert policy.advance_week(7) == 8
    assert policy.advance_week(8) == 8
    assert policy.advance_week(50) == 8


def test_policy_custom_hour_and_interval():
    policy = CadencePolicy(due_local_hour=9, interval_days=14)
    baseline = datetime(2024, 3, 8, 12, 0, tzinfo=timezone.utc)

    due = policy.next_due(baseline, "UTC")

    assert due == datetime(2024, 3, 22, 9, 0, tzinfo=timezone.utc)


def test_is_week_due():
    due = datetime(2024, 3, 15, 23, 0, tzinfo=timezone.utc)

    assert is_week_due(None, due) is False
    assert is_week_due(due, due - timedelta(seconds=1)) is False
    assert is_week_due(due, due) is True
    assert is_week_due(due, due + timedelta(days=1)) is True


def test_timezone_validation():
    assert is_valid_timezone("America/New_York")
    assert not is_valid_timezone("Not/AZone")
    assert not is_valid_timezone(None)
