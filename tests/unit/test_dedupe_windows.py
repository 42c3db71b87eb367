# tests/unit/test_dedupe_windows.py
from __future__ import annotations

from datetime import datetime, timezone

from progression.core.xp_config import DedupeWindow, XPReason
from progression.services.idempotency_service import bucket_key, month_start, week_start


def test_week_starts_on_sunday():
    wednesday = datetime(2025, 1, 15, 18, 30, tzinfo=timezone.utc)
    assert week_start(wednesday) == datetime(2025, 1, 12, tzinfo=timezone.utc)


def test_sunday_is_its_own_week_start():
    sunday = datetime(2025, 1, 12, 9, 0, tzinfo=timezone.utc)
    assert week_start(sunday) == datetime(2025, 1, 12, tzinfo=timezone.utc)


def test_saturday_belongs_to_previous_sunday():
    saturday = datetime(2025, 1, 18, 23, 59, tzinfo=timezone.utc)
    assert week_start(saturday) == datetime(2025, 1, 12, tzinfo=timezone.utc)


def test_month_start():
    assert month_start(datetime(2025, 3, 31, 23, 0, tzinfo=timezone.utc)) == datetime(
        2025, 3, 1, tzinfo=timezone.utc
    )


def test_bucket_key_only_for_windowed_rewards():
    now = datetime(2025, 1, 15, tzinfo=timezone.utc)
    assert bucket_key("u", XPReason.PARTNER_ADDED, "p", DedupeWindow.NONE, now) is None
    key = bucket_key("u", XPReason.LOW_SIMP_INDEX, "p", DedupeWindow.CALENDAR_MONTH, now)
    assert key == "u:low_simp_index:p:calendar_month:2025-01-01"


def test_bucket_key_distinguishes_partners_and_months():
    jan = datetime(2025, 1, 15, tzinfo=timezone.utc)
    feb = datetime(2025, 2, 1, tzinfo=timezone.utc)
    w = DedupeWindow.CALENDAR_MONTH
    assert bucket_key("u", "high_intimacy", "p1", w, jan) != bucket_key("u", "high_intimacy", "p2", w, jan)
    assert bucket_key("u", "high_intimacy", "p1", w, jan) != bucket_key("u", "high_intimacy", "p1", w, feb)
    assert bucket_key("u", "serial_dating_penalty", None, w, jan).split(":")[2] == "-"
