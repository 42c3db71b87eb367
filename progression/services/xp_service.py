# progression/services/xp_service.py
"""
XP (Experience Points) ledger service.

Turns a reason code into a ledger transaction plus an atomic aggregate update,
honouring the reward's dedupe window, and reports level-up crossings.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from progression.core.clock import Clock, as_utc, utc_now
from progression.core.errors import DuplicateRecord
from progression.core.logging import get_logger
from progression.core.xp_config import XPReason, get_reward
from progression.models.progress import AwardResult, UserProgress, XPTransaction
from progression.services.idempotency_service import IdempotencyGuard, bucket_key
from progression.services.ledger_store import LedgerStore
from progression.services.leveling import replay_progress

logger = get_logger()

DEFAULT_LEVEL_XP_UNIT = 1000


class XPService:
    def __init__(
        self,
        store: LedgerStore,
        guard: Optional[IdempotencyGuard] = None,
        *,
        level_xp_unit: int = DEFAULT_LEVEL_XP_UNIT,
        strict_catalog: bool = True,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._guard = guard or IdempotencyGuard(store, clock=clock)
        self._clock = clock
        self.level_xp_unit = level_xp_unit
        self.strict_catalog = strict_catalog

    async def award(
        self,
        user_id: str,
        group_id: str,
        reason: Union[XPReason, str],
        related_entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        amount: Optional[int] = None,
        dedupe_key: Optional[str] = None,
    ) -> AwardResult:
        """
        Award (or deduct) XP for an action.

        Args:
            user_id: Receiving user
            group_id: Group the action happened in
            reason: Catalog reason code
            related_entity_id: Optional entity the reward concerns (e.g. a partner)
            metadata: Opaque context stored on the transaction
            amount: Overrides the catalog amount (achievement rewards, peer-validated claims)
            dedupe_key: Once-only key for a payout owed by a resolved record
                (achievement unlock, approved validation). Replaces the reward's
                window and trigger checks; a retry can never pay twice.

        Returns:
            AwardResult with status "awarded" and the new aggregate, or status
            "denied" when the reward's window was already used or an owed payout
            was already made (no side effects)

        Raises:
            NotFound: Unknown reason in strict catalog mode
            StoreUnavailable: Store failed; re-read progress before retrying
        """
        entry = get_reward(reason, strict=self.strict_catalog)
        reason_value = reason.value if isinstance(reason, XPReason) else str(reason)
        points = entry.amount if amount is None else amount
        now = self._clock()

        owed_payout = dedupe_key is not None
        if not owed_payout:
            if reason_value == XPReason.WEEKLY_UPDATE_BONUS.value:
                if not await self._guard.weekly_bonus_triggered(user_id, now=now):
                    return self._denied(user_id, reason_value, points, "trigger_not_met")

            if not await self._guard.allow(user_id, reason_value, related_entity_id, entry.window, now=now):
                return self._denied(user_id, reason_value, points, "window_already_used")
            dedupe_key = bucket_key(user_id, reason_value, related_entity_id, entry.window, now)

        txn = XPTransaction(
            user_id=user_id,
            group_id=group_id,
            amount=points,
            reason=reason_value,
            category=entry.category,
            related_entity_id=related_entity_id,
            metadata=dict(metadata or {}),
            created_at=now,
        )
        try:
            progress, levels_gained = await self._store.append_transaction(
                txn,
                dedupe_key=dedupe_key,
                level_xp_unit=self.level_xp_unit,
            )
        except DuplicateRecord:
            # lost the race against a concurrent award for the same bucket
            why = "already_paid" if owed_payout else "window_already_used"
            return self._denied(user_id, reason_value, points, why)

        logger.info(
            "xp_awarded",
            user_id=user_id,
            reason=reason_value,
            amount=points,
            related_entity_id=related_entity_id,
            new_xp=progress.current_xp,
            new_level=progress.level,
            leveled_up=levels_gained > 0,
        )
        return AwardResult(
            status="awarded",
            user_id=user_id,
            reason=reason_value,
            amount=points,
            new_xp=progress.current_xp,
            new_level=progress.level,
            leveled_up=levels_gained > 0,
            levels_gained=levels_gained,
            transaction=txn,
        )

    def _denied(self, user_id: str, reason: str, amount: int, why: str) -> AwardResult:
        logger.info("xp_award_denied", user_id=user_id, reason=reason, denied_reason=why)
        return AwardResult(
            status="denied",
            user_id=user_id,
            reason=reason,
            amount=amount,
            denied_reason=why,
        )

    async def check_weekly_bonus(self, user_id: str, group_id: str) -> AwardResult:
        """Award the weekly update bonus if the rolling trigger holds."""
        return await self.award(user_id, group_id, XPReason.WEEKLY_UPDATE_BONUS)

    # ---- Reads ------------------------------------------------------------------

    async def get_progress(self, user_id: str) -> UserProgress:
        return await self._store.get_progress(user_id)

    async def get_xp_history(self, user_id: str, limit: int = 50) -> List[XPTransaction]:
        return await self._store.list_transactions(user_id, limit=limit)

    async def get_xp_earned(
        self,
        user_id: str,
        start: datetime,
        end: Optional[datetime] = None,
    ) -> int:
        """Net XP (penalties included) recorded between ``start`` and ``end``."""
        rows = await self._store.list_transactions(
            user_id,
            since=as_utc(start),
            until=as_utc(end) if end is not None else None,
        )
        return sum(t.amount for t in rows)

    async def rebuild_progress(self, user_id: str) -> UserProgress:
        """
        Replay the ledger for a user. Equal to the cached aggregate apart from
        streak fields and version.
        """
        rows = await self._store.list_transactions(user_id, ascending=True)
        return replay_progress(user_id, rows, self.level_xp_unit)
