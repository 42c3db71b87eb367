# progression/services/streak_service.py
"""
Streak calculation and management service.

Tracks consecutive calendar days with recorded activity per user.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Optional

from progression.core.clock import Clock, utc_now
from progression.core.logging import get_logger
from progression.models.progress import UserProgress
from progression.services.ledger_store import LedgerStore

logger = get_logger()


def advance_streak(progress: UserProgress, today: date) -> Optional[UserProgress]:
    """
    Streak rule for one activity on ``today``.

    Returns None when today was already counted.
    """
    last = progress.last_activity_date
    if last == today:
        return None
    if last is not None and last == today - timedelta(days=1):
        streak = progress.streak_count + 1
    else:
        # first activity, a gap, or a clock that moved backwards
        streak = 1
    return progress.model_copy(update={"streak_count": streak, "last_activity_date": today})


class StreakService:
    def __init__(self, store: LedgerStore, *, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    async def touch(self, user_id: str, today: Optional[date] = None) -> UserProgress:
        """
        Record activity for ``today`` (defaults to the clock's date) and return
        the aggregate with the updated streak.
        """
        today = today or self._clock().date()
        progress = await self._store.update_progress(
            user_id, lambda current: advance_streak(current, today)
        )
        logger.debug(
            "streak_updated",
            user_id=user_id,
            current_streak=progress.streak_count,
            last_activity_date=str(progress.last_activity_date),
        )
        return progress
