# progression/services/idempotency_service.py
"""
Idempotency guard: "at most once per window" checks for windowed rewards.

The read in ``allow`` is only a fast path. The race between two concurrent
awards is closed by the store, which refuses a second transaction carrying the
same ``bucket_key``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Union

from progression.core.clock import Clock, utc_now
from progression.core.logging import get_logger
from progression.core.xp_config import DedupeWindow, XPReason
from progression.services.ledger_store import LedgerStore

logger = get_logger()


def week_start(moment: datetime) -> datetime:
    """Sunday 00:00 of the calendar week containing ``moment``."""
    days_since_sunday = (moment.weekday() + 1) % 7
    day = moment - timedelta(days=days_since_sunday)
    return day.replace(hour=0, minute=0, second=0, microsecond=0)


def month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def window_start(window: DedupeWindow, moment: datetime) -> Optional[datetime]:
    if window == DedupeWindow.CALENDAR_WEEK:
        return week_start(moment)
    if window == DedupeWindow.CALENDAR_MONTH:
        return month_start(moment)
    return None


def bucket_key(
    user_id: str,
    reason: Union[XPReason, str],
    related_entity_id: Optional[str],
    window: DedupeWindow,
    moment: datetime,
) -> Optional[str]:
    """
    Unique key of the (user, reason, related entity, window bucket) slot, or
    None for unbounded rewards.
    """
    start = window_start(window, moment)
    if start is None:
        return None
    reason_value = reason.value if isinstance(reason, XPReason) else str(reason)
    return f"{user_id}:{reason_value}:{related_entity_id or '-'}:{window.value}:{start.date().isoformat()}"


class IdempotencyGuard:
    def __init__(
        self,
        store: LedgerStore,
        *,
        clock: Clock = utc_now,
        weekly_min_days: int = 3,
        weekly_lookback_days: int = 7,
    ) -> None:
        self._store = store
        self._clock = clock
        self.weekly_min_days = weekly_min_days
        self.weekly_lookback_days = weekly_lookback_days

    async def allow(
        self,
        user_id: str,
        reason: Union[XPReason, str],
        related_entity_id: Optional[str],
        window: DedupeWindow,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        False when a transaction for the same (user, reason, related entity)
        already exists in the current week/month; always True for ``none``.
        """
        start = window_start(window, now or self._clock())
        if start is None:
            return True
        reason_value = reason.value if isinstance(reason, XPReason) else str(reason)
        exists = await self._store.has_transaction_since(
            user_id, reason_value, related_entity_id, start
        )
        if exists:
            logger.debug(
                "xp_window_already_used",
                user_id=user_id,
                reason=reason_value,
                related_entity_id=related_entity_id,
                window=window.value,
            )
        return not exists

    async def weekly_bonus_triggered(
        self,
        user_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Rolling trigger of the weekly consistency bonus: timeline events logged
        on at least ``weekly_min_days`` distinct days within the trailing
        lookback, regardless of calendar week boundaries.
        """
        now = now or self._clock()
        recent = await self._store.list_transactions(
            user_id,
            reason=XPReason.TIMELINE_EVENT_ADDED.value,
            since=now - timedelta(days=self.weekly_lookback_days),
            until=now,
        )
        active_days = {t.created_at.date() for t in recent}
        return len(active_days) >= self.weekly_min_days
