# progression/services/leveling.py
"""
Pure XP/level arithmetic shared by every store implementation.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from progression.models.progress import UserProgress, XPTransaction


def xp_for_next_level(level: int, level_xp_unit: int) -> int:
    """Current-level XP needed to cross from ``level`` into ``level + 1``."""
    return level * level_xp_unit


def apply_xp_delta(
    progress: UserProgress,
    amount: int,
    level_xp_unit: int,
) -> Tuple[UserProgress, int]:
    """
    Apply one signed award to an aggregate.

    Levels never go down: penalties clamp current XP at 0. Lifetime total only
    accumulates the positive part of an award.

    Returns:
        (new aggregate, number of levels gained)
    """
    current_xp = max(progress.current_xp + amount, 0)
    level = progress.level
    levels_gained = 0

    # multi-level jumps from a single large award
    while current_xp >= xp_for_next_level(level, level_xp_unit):
        current_xp -= xp_for_next_level(level, level_xp_unit)
        level += 1
        levels_gained += 1

    updated = progress.model_copy(
        update={
            "current_xp": current_xp,
            "level": level,
            "total_xp_earned": progress.total_xp_earned + max(amount, 0),
            "version": progress.version + 1,
        }
    )
    return updated, levels_gained


def replay_progress(
    user_id: str,
    transactions: Iterable[XPTransaction],
    level_xp_unit: int,
) -> UserProgress:
    """
    Rebuild XP, level and lifetime total from the ledger (oldest first).

    Streak fields are not derived from the ledger and stay at their defaults.
    """
    progress = UserProgress(user_id=user_id)
    for txn in sorted(transactions, key=lambda t: t.created_at):
        progress, _ = apply_xp_delta(progress, txn.amount, level_xp_unit)
    return progress
