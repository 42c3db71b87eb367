# progression/services/achievement_service.py
"""
Achievement engine.

Evaluates the fixed definition list against durable state and unlocks every
newly satisfied achievement exactly once (record + XP reward). Safe to call
after any state-changing action.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Set, Tuple

from progression.core.clock import Clock, utc_now
from progression.core.errors import DuplicateRecord, StoreUnavailable
from progression.core.logging import get_logger
from progression.core.xp_config import XPReason
from progression.models.progress import Achievement, AchievementProgress, AwardResult
from progression.services.achievement_criteria import EvaluationContext
from progression.services.achievement_definitions import ACHIEVEMENTS, AchievementDefinition
from progression.services.activity_source import ActivitySource
from progression.services.ledger_store import LedgerStore
from progression.services.xp_service import XPService

logger = get_logger()


class AchievementService:
    def __init__(
        self,
        store: LedgerStore,
        xp_service: XPService,
        activity: ActivitySource,
        *,
        definitions: Sequence[AchievementDefinition] = ACHIEVEMENTS,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._xp = xp_service
        self._activity = activity
        self._definitions = tuple(definitions)
        self._clock = clock

    def get_definitions(self) -> Sequence[AchievementDefinition]:
        return self._definitions

    async def evaluate(self, user_id: str, group_id: str) -> List[Achievement]:
        """
        Check all definitions in order and unlock the newly satisfied ones.

        Returns:
            Newly unlocked achievements (possibly empty)

        Raises:
            StoreUnavailable: store failed mid-pass; already committed unlocks stay
        """
        unlocked, _ = await self.evaluate_with_awards(user_id, group_id)
        return unlocked

    async def evaluate_with_awards(
        self,
        user_id: str,
        group_id: str,
    ) -> Tuple[List[Achievement], List[AwardResult]]:
        """Same as ``evaluate`` plus the XP results of the unlocks (for level-up events)."""
        ctx = EvaluationContext(
            user_id=user_id,
            group_id=group_id,
            store=self._store,
            activity=self._activity,
        )
        already = {a.achievement_type for a in await self._store.list_achievements(user_id)}
        unlocked: List[Achievement] = []
        awards = await self._pay_unpaid(user_id, group_id, already)

        for definition in self._definitions:
            if definition.type in already:
                continue

            try:
                satisfied = await definition.criterion.evaluate(ctx)
            except StoreUnavailable:
                raise
            except Exception as e:
                logger.warning(
                    "achievement_check_failed",
                    user_id=user_id,
                    achievement_type=definition.type,
                    error=str(e),
                )
                continue

            if not satisfied:
                continue

            result = await self._unlock(user_id, group_id, definition)
            if result is not None:
                unlocked.append(result[0])
                awards.append(result[1])

        return unlocked, awards

    async def _pay_unpaid(self, user_id: str, group_id: str, unlocked_types: Set[str]) -> List[AwardResult]:
        """Reward unlocks whose XP never committed (store failed right after the insert)."""
        if not unlocked_types:
            return []
        rows = await self._store.list_transactions(user_id, reason=XPReason.ACHIEVEMENT_UNLOCKED.value)
        paid = {t.metadata.get("achievement_type") for t in rows}

        awards: List[AwardResult] = []
        for definition in self._definitions:
            if definition.type not in unlocked_types or definition.type in paid:
                continue
            award = await self._reward(user_id, group_id, definition)
            if award.awarded:
                logger.info(
                    "achievement_reward_recovered",
                    user_id=user_id,
                    achievement_type=definition.type,
                    xp_reward=definition.xp_reward,
                )
                awards.append(award)
        return awards

    async def _reward(self, user_id: str, group_id: str, definition: AchievementDefinition) -> AwardResult:
        return await self._xp.award(
            user_id,
            group_id,
            XPReason.ACHIEVEMENT_UNLOCKED,
            metadata={
                "achievement_type": definition.type,
                "achievement_name": definition.name,
            },
            amount=definition.xp_reward,
            dedupe_key=f"achievement:{user_id}:{definition.type}",
        )

    async def _unlock(
        self,
        user_id: str,
        group_id: str,
        definition: AchievementDefinition,
    ) -> Optional[Tuple[Achievement, AwardResult]]:
        try:
            achievement = await self._store.insert_achievement(
                Achievement(
                    user_id=user_id,
                    achievement_type=definition.type,
                    achievement_name=definition.name,
                    achievement_description=definition.description,
                    xp_reward=definition.xp_reward,
                    unlocked_at=self._clock(),
                )
            )
        except DuplicateRecord:
            # a concurrent evaluation unlocked it first; that caller pays the XP
            logger.debug(
                "achievement_already_unlocked",
                user_id=user_id,
                achievement_type=definition.type,
            )
            return None

        award = await self._reward(user_id, group_id, definition)
        logger.info(
            "achievement_unlocked",
            user_id=user_id,
            achievement_type=definition.type,
            xp_reward=definition.xp_reward,
        )
        return achievement, award

    async def has_achievement(self, user_id: str, achievement_type: str) -> bool:
        return await self._store.get_achievement(user_id, achievement_type) is not None

    async def get_user_achievements(self, user_id: str) -> List[Achievement]:
        return await self._store.list_achievements(user_id)

    async def get_achievement_progress(self, user_id: str) -> List[AchievementProgress]:
        """Every definition with its unlock state, in definition order."""
        unlocked = {a.achievement_type: a for a in await self._store.list_achievements(user_id)}
        return [
            AchievementProgress(
                achievement_type=d.type,
                name=d.name,
                description=d.description,
                xp_reward=d.xp_reward,
                unlocked=d.type in unlocked,
                unlocked_at=unlocked[d.type].unlocked_at if d.type in unlocked else None,
            )
            for d in self._definitions
        ]
