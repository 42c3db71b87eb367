# tests/unit/test_leveling.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from progression.core.xp_config import XPCategory
from progression.models.progress import UserProgress, XPTransaction
from progression.services.leveling import apply_xp_delta, replay_progress, xp_for_next_level

UNIT = 1000


def _txn(amount: int, minutes: int) -> XPTransaction:
    return XPTransaction(
        user_id="u",
        group_id="g",
        amount=amount,
        reason="x",
        category=XPCategory.MILESTONE,
        created_at=datetime(2025, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes),
    )


def test_threshold_grows_with_level():
    assert xp_for_next_level(1, UNIT) == 1000
    assert xp_for_next_level(4, UNIT) == 4000


def test_single_level_up_carries_remainder():
    progress = UserProgress(user_id="u", current_xp=900)
    updated, gained = apply_xp_delta(progress, 150, UNIT)
    assert (updated.level, updated.current_xp, gained) == (2, 50, 1)
    assert updated.total_xp_earned == 150


def test_multi_level_jump():
    # 1000 crosses level 1, 2000 crosses level 2, 500 left over
    updated, gained = apply_xp_delta(UserProgress(user_id="u"), 3500, UNIT)
    assert (updated.level, updated.current_xp, gained) == (3, 500, 2)


def test_penalty_clamps_at_zero_and_keeps_level():
    progress = UserProgress(user_id="u", current_xp=20, level=3, total_xp_earned=3020)
    updated, gained = apply_xp_delta(progress, -75, UNIT)
    assert updated.current_xp == 0
    assert updated.level == 3
    assert updated.total_xp_earned == 3020
    assert gained == 0


def test_version_bumps():
    updated, _ = apply_xp_delta(UserProgress(user_id="u"), 10, UNIT)
    assert updated.version == 1


def test_replay_matches_incremental_application():
    txns = [_txn(a, i) for i, a in enumerate([400, -30, 700, 50, -500, 1200])]
    progress = UserProgress(user_id="u")
    for txn in txns:
        progress, _ = apply_xp_delta(progress, txn.amount, UNIT)

    replayed = replay_progress("u", reversed(txns), UNIT)
    assert (replayed.current_xp, replayed.level, replayed.total_xp_earned) == (
        progress.current_xp,
        progress.level,
        progress.total_xp_earned,
    )
