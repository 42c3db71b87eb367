# tests/unit/test_reward_catalog.py
from __future__ import annotations

import pytest

from progression.core.errors import NotFound
from progression.core.xp_config import (
    XP_REWARDS,
    DedupeWindow,
    XPCategory,
    XPReason,
    get_reward,
    get_xp_amount,
    parse_reason,
)


def test_every_reason_has_a_catalog_entry():
    assert set(XP_REWARDS) == set(XPReason)


def test_reward_amounts():
    """Spot-check amounts, including penalties."""
    assert get_xp_amount(XPReason.STATUS_TALKING_TO_DATING) == 50
    assert get_xp_amount(XPReason.STATUS_DATING_TO_EXCLUSIVE) == 150
    assert get_xp_amount(XPReason.STATUS_TO_COMPLICATED) == -30
    assert get_xp_amount(XPReason.PEER_VALIDATION) == 15
    assert get_xp_amount(XPReason.BALANCED_DATING) == 200
    assert get_xp_amount(XPReason.SERIAL_DATING_PENALTY) == -75
    assert get_xp_amount(XPReason.ACHIEVEMENT_UNLOCKED) == 0


def test_windows():
    assert get_reward(XPReason.WEEKLY_UPDATE_BONUS).window == DedupeWindow.CALENDAR_WEEK
    for reason in (
        XPReason.LOW_SIMP_INDEX,
        XPReason.HIGH_INTIMACY,
        XPReason.SIMP_INDEX_IMPROVED,
        XPReason.INTIMACY_IMPROVED,
        XPReason.HIGH_SIMP_PENALTY,
        XPReason.PARTNER_NEGLECT,
        XPReason.SERIAL_DATING_PENALTY,
    ):
        assert get_reward(reason).window == DedupeWindow.CALENDAR_MONTH
    assert get_reward(XPReason.TIMELINE_EVENT_ADDED).window == DedupeWindow.NONE


def test_lookup_by_string_value():
    entry = get_reward("red_flag_documented")
    assert entry.amount == 15
    assert entry.category == XPCategory.RED_FLAG
    assert parse_reason("clean_breakup") is XPReason.CLEAN_BREAKUP


def test_unknown_reason_strict_raises():
    with pytest.raises(NotFound):
        get_reward("free_money")


def test_unknown_reason_lenient_is_zero():
    entry = get_reward("free_money", strict=False)
    assert entry.amount == 0
    assert entry.window == DedupeWindow.NONE
    assert parse_reason("free_money") is None
