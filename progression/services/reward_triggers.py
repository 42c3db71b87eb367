# progression/services/reward_triggers.py
"""
Maps host-application events (status changes, timeline entries, metric
updates) to XP reasons. Window dedupe is left to XPService; these rules only
decide whether a reason applies.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from progression.core.clock import Clock, as_utc, utc_now
from progression.core.logging import get_logger
from progression.core.xp_config import XPReason
from progression.models.progress import AwardResult
from progression.services.activity_source import GRAVEYARD_STATUS, ActivitySource
from progression.services.xp_service import XPService

logger = get_logger()

STATUS_TALKING = "Talking"
STATUS_DATING = "Dating"
STATUS_EXCLUSIVE = "Exclusive"
STATUS_COMPLICATED = "It's Complicated"

CRITICAL_SEVERITY = "Critical"
RED_FLAG_EVENT = "red_flag"

LOW_SIMP_THRESHOLD = 100
HIGH_SIMP_THRESHOLD = 500
HIGH_INTIMACY_THRESHOLD = 8
NEGLECT_DAYS = 30
SIMP_IMPROVEMENT = 100
INTIMACY_IMPROVEMENT = 2
SERIAL_DATING_BREAKUPS = 3
SERIAL_DATING_DAYS = 30


def status_change_reason(old_status: Optional[str], new_status: str) -> Optional[XPReason]:
    """First matching rule wins; None when the change earns nothing."""
    if old_status == STATUS_TALKING and new_status == STATUS_DATING:
        return XPReason.STATUS_TALKING_TO_DATING
    if old_status == STATUS_DATING and new_status == STATUS_EXCLUSIVE:
        return XPReason.STATUS_DATING_TO_EXCLUSIVE
    if new_status == STATUS_COMPLICATED:
        return XPReason.STATUS_TO_COMPLICATED
    if new_status == GRAVEYARD_STATUS:
        return XPReason.CLEAN_BREAKUP
    if old_status == GRAVEYARD_STATUS:
        return XPReason.SECOND_CHANCE
    return None


class RewardTriggers:
    def __init__(
        self,
        xp_service: XPService,
        activity: ActivitySource,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._xp = xp_service
        self._activity = activity
        self._clock = clock

    async def handle_status_change(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
        old_status: Optional[str],
        new_status: str,
    ) -> Optional[AwardResult]:
        reason = status_change_reason(old_status, new_status)
        if reason is None:
            logger.debug(
                "status_change_no_reward",
                user_id=user_id,
                old_status=old_status,
                new_status=new_status,
            )
            return None
        return await self._xp.award(
            user_id,
            group_id,
            reason,
            partner_id,
            {"old_status": old_status, "new_status": new_status},
        )

    async def handle_timeline_event(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
        event_type: str,
    ) -> List[AwardResult]:
        """Reward the entry, then try the weekly update bonus."""
        results = [
            await self._xp.award(
                user_id,
                group_id,
                XPReason.TIMELINE_EVENT_ADDED,
                partner_id,
                {"event_type": event_type},
            )
        ]
        bonus = await self._xp.check_weekly_bonus(user_id, group_id)
        if bonus.awarded:
            results.append(bonus)
        return results

    async def award_partner_added(self, user_id: str, group_id: str, partner_id: str) -> AwardResult:
        return await self._xp.award(user_id, group_id, XPReason.PARTNER_ADDED, partner_id)

    async def award_partner_info_updated(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
        updated_fields: Sequence[str] = (),
    ) -> AwardResult:
        return await self._xp.award(
            user_id,
            group_id,
            XPReason.PARTNER_INFO_UPDATED,
            partner_id,
            {"updated_fields": list(updated_fields)},
        )

    async def award_partner_photo_added(self, user_id: str, group_id: str, partner_id: str) -> AwardResult:
        return await self._xp.award(user_id, group_id, XPReason.PARTNER_PHOTO_ADDED, partner_id)

    async def award_decay_cleanup(self, user_id: str, group_id: str, partner_id: str) -> AwardResult:
        return await self._xp.award(user_id, group_id, XPReason.DECAY_CLEANUP, partner_id)

    async def award_red_flag(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
        severity: Optional[str],
    ) -> AwardResult:
        reason = (
            XPReason.CRITICAL_RED_FLAG_EARLY
            if severity == CRITICAL_SEVERITY
            else XPReason.RED_FLAG_DOCUMENTED
        )
        return await self._xp.award(user_id, group_id, reason, partner_id, {"severity": severity})

    async def award_toxic_breakup(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
    ) -> Optional[AwardResult]:
        """Only a partner with a documented Critical red flag counts as toxic."""
        critical = await self._activity.count_timeline_events(
            user_id,
            event_type=RED_FLAG_EVENT,
            severity=CRITICAL_SEVERITY,
            partner_id=partner_id,
        )
        if critical == 0:
            return None
        return await self._xp.award(user_id, group_id, XPReason.TOXIC_RELATIONSHIP_ENDED, partner_id)

    async def check_performance_rewards(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
        simp_index: Optional[float] = None,
        intimacy_score: Optional[float] = None,
    ) -> List[AwardResult]:
        results: List[AwardResult] = []
        if simp_index is not None and 0 < simp_index < LOW_SIMP_THRESHOLD:
            results.append(
                await self._xp.award(
                    user_id, group_id, XPReason.LOW_SIMP_INDEX, partner_id, {"simp_index": simp_index}
                )
            )
        if intimacy_score is not None and intimacy_score >= HIGH_INTIMACY_THRESHOLD:
            results.append(
                await self._xp.award(
                    user_id,
                    group_id,
                    XPReason.HIGH_INTIMACY,
                    partner_id,
                    {"intimacy_score": intimacy_score},
                )
            )
        return results

    async def check_penalties(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
        simp_index: Optional[float] = None,
        last_updated: Optional[datetime] = None,
    ) -> List[AwardResult]:
        results: List[AwardResult] = []
        if simp_index is not None and simp_index > HIGH_SIMP_THRESHOLD:
            results.append(
                await self._xp.award(
                    user_id, group_id, XPReason.HIGH_SIMP_PENALTY, partner_id, {"simp_index": simp_index}
                )
            )
        if last_updated is not None:
            days_since_update = (self._clock() - as_utc(last_updated)).days
            if days_since_update >= NEGLECT_DAYS:
                results.append(
                    await self._xp.award(
                        user_id,
                        group_id,
                        XPReason.PARTNER_NEGLECT,
                        partner_id,
                        {"days_since_update": days_since_update},
                    )
                )
        return results

    async def check_improvement_rewards(
        self,
        user_id: str,
        group_id: str,
        partner_id: str,
        old_simp_index: Optional[float] = None,
        new_simp_index: Optional[float] = None,
        old_intimacy: Optional[float] = None,
        new_intimacy: Optional[float] = None,
    ) -> List[AwardResult]:
        results: List[AwardResult] = []
        if (
            old_simp_index is not None
            and new_simp_index is not None
            and old_simp_index - new_simp_index >= SIMP_IMPROVEMENT
        ):
            results.append(
                await self._xp.award(
                    user_id,
                    group_id,
                    XPReason.SIMP_INDEX_IMPROVED,
                    partner_id,
                    {"old_simp": old_simp_index, "new_simp": new_simp_index},
                )
            )
        if (
            old_intimacy is not None
            and new_intimacy is not None
            and new_intimacy - old_intimacy >= INTIMACY_IMPROVEMENT
        ):
            results.append(
                await self._xp.award(
                    user_id,
                    group_id,
                    XPReason.INTIMACY_IMPROVED,
                    partner_id,
                    {"old_intimacy": old_intimacy, "new_intimacy": new_intimacy},
                )
            )
        return results

    async def check_serial_dating_penalty(self, user_id: str, group_id: str) -> Optional[AwardResult]:
        since = self._clock() - timedelta(days=SERIAL_DATING_DAYS)
        breakups = await self._activity.count_breakups_since(user_id, since)
        if breakups < SERIAL_DATING_BREAKUPS:
            return None
        return await self._xp.award(
            user_id,
            group_id,
            XPReason.SERIAL_DATING_PENALTY,
            metadata={"breakup_count": breakups},
        )
