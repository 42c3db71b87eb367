# progression/engine.py
"""
Host-facing facade of the progression engine.

Wires the store, activity source, catalog, idempotency guard and services from
``Settings`` and exposes every operation as a coroutine returning ``Outcome``.
State-changing calls re-run achievement evaluation and report level-ups and
unlocks in a ``ProgressionUpdate``.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Union

from progression.core.clock import Clock, utc_now
from progression.core.config import Settings, get_settings, require_database_url
from progression.core.errors import ProgressionError
from progression.core.logging import get_logger
from progression.core.xp_config import XPReason
from progression.models.progress import (
    Achievement,
    AwardResult,
    LevelUpEvent,
    Outcome,
    PeerValidation,
    ProgressionUpdate,
)
from progression.services.achievement_service import AchievementService
from progression.services.activity_source import ActivitySource, PostgresActivitySource
from progression.services.db_service import create_pool
from progression.services.idempotency_service import IdempotencyGuard
from progression.services.ledger_store import LedgerStore
from progression.services.peer_validation_service import PeerValidationService
from progression.services.pg_ledger_store import PostgresLedgerStore
from progression.services.reward_triggers import RewardTriggers
from progression.services.streak_service import StreakService
from progression.services.xp_service import XPService

logger = get_logger()


async def _capture(operation: str, work: Awaitable[Any]) -> Outcome:
    try:
        value = await work
    except ProgressionError as e:
        logger.warning(
            "progression_operation_failed",
            operation=operation,
            error_code=e.code,
            error=e.message,
            retryable=e.retryable,
        )
        return Outcome(ok=False, error=e.message, error_code=e.code, retryable=e.retryable)
    return Outcome(ok=True, value=value)


class ProgressionEngine:
    def __init__(
        self,
        store: LedgerStore,
        activity: ActivitySource,
        *,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ) -> None:
        settings = settings or get_settings()
        self.settings = settings
        self.store = store
        self.activity = activity

        self.guard = IdempotencyGuard(
            store,
            clock=clock,
            weekly_min_days=settings.WEEKLY_BONUS_MIN_DAYS,
            weekly_lookback_days=settings.WEEKLY_BONUS_LOOKBACK_DAYS,
        )
        self.xp = XPService(
            store,
            self.guard,
            level_xp_unit=settings.LEVEL_XP_UNIT,
            strict_catalog=settings.strict_catalog,
            clock=clock,
        )
        self.achievements = AchievementService(store, self.xp, activity, clock=clock)
        self.validations = PeerValidationService(
            store,
            self.xp,
            default_required_validations=settings.DEFAULT_REQUIRED_VALIDATIONS,
            default_expiry=timedelta(days=settings.VALIDATION_EXPIRY_DAYS),
            clock=clock,
        )
        self.streaks = StreakService(store, clock=clock)
        self.triggers = RewardTriggers(self.xp, activity, clock=clock)

    @classmethod
    async def connect(
        cls,
        dsn: Optional[str] = None,
        *,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        ensure_schema: bool = True,
    ) -> "ProgressionEngine":
        """
        Build an engine on PostgreSQL; one pool serves the ledger and the host tables.
        The ledger DDL is idempotent and applied unless ``ensure_schema`` is off.
        """
        settings = settings or get_settings()
        pool = await create_pool(dsn or require_database_url(settings))
        store = PostgresLedgerStore(pool)
        if ensure_schema:
            await store.ensure_schema()
        return cls(
            store,
            PostgresActivitySource(pool),
            settings=settings,
            clock=clock,
        )

    async def close(self) -> None:
        if isinstance(self.store, PostgresLedgerStore):
            await self.store.close()

    # ---- Internal ---------------------------------------------------------------

    async def _settle(
        self,
        user_ids: Sequence[str],
        group_id: str,
        awards: Sequence[Optional[AwardResult]],
        *,
        validation: Optional[PeerValidation] = None,
        progress_user_id: Optional[str] = None,
    ) -> ProgressionUpdate:
        """Re-evaluate achievements for every touched user and collect level-ups."""
        direct = [a for a in awards if a is not None]
        level_ups: List[LevelUpEvent] = [e for e in (a.level_up_event() for a in direct) if e]
        unlocked: List[Achievement] = []

        for user_id in dict.fromkeys(user_ids):
            new, unlock_awards = await self.achievements.evaluate_with_awards(user_id, group_id)
            unlocked.extend(new)
            level_ups.extend(e for e in (a.level_up_event() for a in unlock_awards) if e)

        progress = None
        if progress_user_id is not None:
            progress = await self.store.get_progress(progress_user_id)

        for event in level_ups:
            logger.info(
                "level_up",
                user_id=event.user_id,
                new_level=event.new_level,
                levels_gained=event.levels_gained,
            )

        return ProgressionUpdate(
            award=direct[0] if direct else None,
            awards=direct,
            validation=validation,
            progress=progress,
            level_ups=level_ups,
            unlocked_achievements=unlocked,
        )

    async def _award_and_settle(
        self,
        user_id: str,
        group_id: str,
        reason: Union[XPReason, str],
        related_entity_id: Optional[str],
        metadata: Optional[Dict[str, Any]],
        amount: Optional[int],
    ) -> ProgressionUpdate:
        result = await self.xp.award(
            user_id, group_id, reason, related_entity_id, metadata, amount=amount
        )
        return await self._settle([user_id], group_id, [result], progress_user_id=user_id)

    # ---- XP ---------------------------------------------------------------------

    async def award(
        self,
        user_id: str,
        group_id: str,
        reason: Union[XPReason, str],
        related_entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        amount: Optional[int] = None,
    ) -> Outcome:
        return await _capture(
            "award",
            self._award_and_settle(user_id, group_id, reason, related_entity_id, metadata, amount),
        )

    async def get_progress(self, user_id: str) -> Outcome:
        return await _capture("get_progress", self.xp.get_progress(user_id))

    async def get_xp_history(self, user_id: str, limit: int = 50) -> Outcome:
        return await _capture("get_xp_history", self.xp.get_xp_history(user_id, limit))

    async def get_xp_earned(self, user_id: str, start: datetime, end: Optional[datetime] = None) -> Outcome:
        return await _capture("get_xp_earned", self.xp.get_xp_earned(user_id, start, end))

    # ---- Achievements -----------------------------------------------------------

    async def evaluate(self, user_id: str, group_id: str) -> Outcome:
        async def _work() -> ProgressionUpdate:
            return await self._settle([user_id], group_id, [], progress_user_id=user_id)

        return await _capture("evaluate", _work())

    async def get_user_achievements(self, user_id: str) -> Outcome:
        return await _capture("get_user_achievements", self.achievements.get_user_achievements(user_id))

    async def get_achievement_progress(self, user_id: str) -> Outcome:
        return await _capture(
            "get_achievement_progress", self.achievements.get_achievement_progress(user_id)
        )

    # ---- Peer validation --------------------------------------------------------

    async def create_validation(
        self,
        owner_id: str,
        group_id: str,
        action_type: Union[XPReason, str],
        xp_amount: int,
        related_entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        required_validations: Optional[int] = None,
        action_description: str = "",
    ) -> Outcome:
        return await _capture(
            "create_validation",
            self.validations.create(
                owner_id,
                group_id,
                action_type,
                xp_amount,
                related_entity_id,
                metadata,
                required_validations,
                action_description,
            ),
        )

    async def approve(self, validation_id: str, validator_id: str) -> Outcome:
        async def _work() -> ProgressionUpdate:
            result = await self.validations.approve(validation_id, validator_id)
            validation = result.validation
            users = [validator_id]
            if result.owner_award is not None:
                users.append(validation.owner_id)
            return await self._settle(
                users,
                validation.group_id,
                [result.owner_award, result.validator_award],
                validation=validation,
                progress_user_id=validator_id,
            )

        return await _capture("approve", _work())

    async def reject(self, validation_id: str, validator_id: str) -> Outcome:
        async def _work() -> ProgressionUpdate:
            result = await self.validations.reject(validation_id, validator_id)
            return ProgressionUpdate(validation=result.validation)

        return await _capture("reject", _work())

    async def expire_stale(self, older_than: Optional[timedelta] = None) -> Outcome:
        return await _capture("expire_stale", self.validations.expire_stale(older_than))

    async def list_pending_validations(self, group_id: str, exclude_user_id: Optional[str] = None) -> Outcome:
        return await _capture(
            "list_pending_validations",
            self.validations.get_pending_validations(group_id, exclude_user_id),
        )

    async def list_user_validations(self, owner_id: str) -> Outcome:
        return await _capture("list_user_validations", self.validations.get_user_validations(owner_id))

    # ---- Streaks ----------------------------------------------------------------

    async def touch_streak(self, user_id: str, group_id: str, today: Optional[date] = None) -> Outcome:
        async def _work() -> ProgressionUpdate:
            await self.streaks.touch(user_id, today)
            return await self._settle([user_id], group_id, [], progress_user_id=user_id)

        return await _capture("touch_streak", _work())

    # ---- Host event triggers ----------------------------------------------------

    async def _trigger(self, operation: str, user_id: str, group_id: str, work: Awaitable[Any]) -> Outcome:
        async def _work() -> ProgressionUpdate:
            produced = await work
            if produced is None:
                awards: List[AwardResult] = []
            elif isinstance(produced, AwardResult):
                awards = [produced]
            else:
                awards = list(produced)
            return await self._settle([user_id], group_id, awards, progress_user_id=user_id)

        return await _capture(operation, _work())

    async def handle_status_change(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
        old_status: Optional[str],
        new_status: str,
    ) -> Outcome:
        return await self._trigger(
            "handle_status_change",
            user_id,
            group_id,
            self.triggers.handle_status_change(user_id, group_id, partner_id, old_status, new_status),
        )

    async def handle_timeline_event(self, user_id: str, group_id: str, partner_id: str, event_type: str) -> Outcome:
        return await self._trigger(
            "handle_timeline_event",
            user_id,
            group_id,
            self.triggers.handle_timeline_event(user_id, group_id, partner_id, event_type),
        )

    async def award_partner_added(self, user_id: str, group_id: str, partner_id: str) -> Outcome:
        return await self._trigger(
            "award_partner_added",
            user_id,
            group_id,
            self.triggers.award_partner_added(user_id, group_id, partner_id),
        )

    async def award_partner_info_updated(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
        updated_fields: Sequence[str] = (),
    ) -> Outcome:
        return await self._trigger(
            "award_partner_info_updated",
            user_id,
            group_id,
            self.triggers.award_partner_info_updated(user_id, group_id, partner_id, updated_fields),
        )

    async def award_partner_photo_added(self, user_id: str, group_id: str, partner_id: str) -> Outcome:
        return await self._trigger(
            "award_partner_photo_added",
            user_id,
            group_id,
            self.triggers.award_partner_photo_added(user_id, group_id, partner_id),
        )

    async def award_decay_cleanup(self, user_id: str, group_id: str, partner_id: str) -> Outcome:
        return await self._trigger(
            "award_decay_cleanup",
            user_id,
            group_id,
            self.triggers.award_decay_cleanup(user_id, group_id, partner_id),
        )

    async def award_red_flag(self, user_id: str, group_id: str, partner_id: str, severity: Optional[str]) -> Outcome:
        return await self._trigger(
            "award_red_flag",
            user_id,
            group_id,
            self.triggers.award_red_flag(user_id, group_id, partner_id, severity),
        )

    async def award_toxic_breakup(self, user_id: str, group_id: str, partner_id: str) -> Outcome:
        return await self._trigger(
            "award_toxic_breakup",
            user_id,
            group_id,
            self.triggers.award_toxic_breakup(user_id, group_id, partner_id),
        )

    async def check_performance_rewards(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
        simp_index: Optional[float] = None,
        intimacy_score: Optional[float] = None,
    ) -> Outcome:
        return await self._trigger(
            "check_performance_rewards",
            user_id,
            group_id,
            self.triggers.check_performance_rewards(user_id, group_id, partner_id, simp_index, intimacy_score),
        )

    async def check_penalties(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
        simp_index: Optional[float] = None,
        last_updated: Optional[datetime] = None,
    ) -> Outcome:
        return await self._trigger(
            "check_penalties",
            user_id,
            group_id,
            self.triggers.check_penalties(user_id, group_id, partner_id, simp_index, last_updated),
        )

    async def check_improvement_rewards(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
        old_simp_index: Optional[float] = None,
        new_simp_index: Optional[float] = None,
        old_intimacy: Optional[float] = None,
        new_intimacy: Optional[float] = None,
    ) -> Outcome:
        return await self._trigger(
            "check_improvement_rewards",
            user_id,
            group_id,
            self.triggers.check_improvement_rewards(
                user_id,
                group_id,
                partner_id,
                old_simp_index,
                new_simp_index,
                old_intimacy,
                new_intimacy,
            ),
        )

    async def check_serial_dating_penalty(self, user_id: str, group_id: str) -> Outcome:
        return await self._trigger(
            "check_serial_dating_penalty",
            user_id,
            group_id,
            self.triggers.check_serial_dating_penalty(user_id, group_id),
        )
