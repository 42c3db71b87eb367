# progression/core/xp_config.py
"""
Reward catalog: reason code -> (amount, category, dedupe window).

Closed and known at build time. Achievement rewards are listed with amount 0;
the real amount always comes from the achievement definition.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping, NamedTuple, Union

from progression.core.errors import NotFound
from progression.core.logging import get_logger

logger = get_logger()


class XPCategory(str, Enum):
    MILESTONE = "milestone"
    CONSISTENCY = "consistency"
    SOCIAL = "social"
    PERFORMANCE = "performance"
    RED_FLAG = "red_flag"
    ACHIEVEMENT = "achievement"


class DedupeWindow(str, Enum):
    NONE = "none"
    CALENDAR_WEEK = "calendar_week"
    CALENDAR_MONTH = "calendar_month"


class XPReason(str, Enum):
    # Milestones
    STATUS_TALKING_TO_DATING = "status_talking_to_dating"
    STATUS_DATING_TO_EXCLUSIVE = "status_dating_to_exclusive"
    STATUS_TO_COMPLICATED = "status_to_complicated"
    CLEAN_BREAKUP = "clean_breakup"
    SECOND_CHANCE = "second_chance"
    PARTNER_ADDED = "partner_added"
    # Consistency
    TIMELINE_EVENT_ADDED = "timeline_event_added"
    WEEKLY_UPDATE_BONUS = "weekly_update_bonus"
    DECAY_CLEANUP = "decay_cleanup"
    COMPLETE_PROFILE = "complete_profile"
    PARTNER_INFO_UPDATED = "partner_info_updated"
    PARTNER_PHOTO_ADDED = "partner_photo_added"
    # Social
    STICKY_NOTE_CREATED = "sticky_note_created"
    PEER_VALIDATION = "peer_validation"
    POKE_DECAYED_NODE = "poke_decayed_node"
    RED_FLAG_HELP = "red_flag_help"
    # Performance
    LOW_SIMP_INDEX = "low_simp_index"
    HIGH_INTIMACY = "high_intimacy"
    BALANCED_DATING = "balanced_dating"
    SIMP_INDEX_IMPROVED = "simp_index_improved"
    INTIMACY_IMPROVED = "intimacy_improved"
    # Red flag
    RED_FLAG_DOCUMENTED = "red_flag_documented"
    CRITICAL_RED_FLAG_EARLY = "critical_red_flag_early"
    TOXIC_RELATIONSHIP_ENDED = "toxic_relationship_ended"
    # Penalties
    HIGH_SIMP_PENALTY = "high_simp_penalty"
    PARTNER_NEGLECT = "partner_neglect"
    SERIAL_DATING_PENALTY = "serial_dating_penalty"
    IGNORED_DECAY = "ignored_decay"
    # Achievement
    ACHIEVEMENT_UNLOCKED = "achievement_unlocked"


class RewardEntry(NamedTuple):
    amount: int
    category: XPCategory
    window: DedupeWindow = DedupeWindow.NONE


_M = DedupeWindow.CALENDAR_MONTH

XP_REWARDS: Mapping[XPReason, RewardEntry] = MappingProxyType({
    # Milestones
    XPReason.STATUS_TALKING_TO_DATING: RewardEntry(50, XPCategory.MILESTONE),
    XPReason.STATUS_DATING_TO_EXCLUSIVE: RewardEntry(150, XPCategory.MILESTONE),
    XPReason.STATUS_TO_COMPLICATED: RewardEntry(-30, XPCategory.MILESTONE),
    XPReason.CLEAN_BREAKUP: RewardEntry(40, XPCategory.MILESTONE),
    XPReason.SECOND_CHANCE: RewardEntry(75, XPCategory.MILESTONE),
    XPReason.PARTNER_ADDED: RewardEntry(25, XPCategory.MILESTONE),
    # Consistency
    XPReason.TIMELINE_EVENT_ADDED: RewardEntry(10, XPCategory.CONSISTENCY),
    XPReason.WEEKLY_UPDATE_BONUS: RewardEntry(30, XPCategory.CONSISTENCY, DedupeWindow.CALENDAR_WEEK),
    XPReason.DECAY_CLEANUP: RewardEntry(20, XPCategory.CONSISTENCY),
    XPReason.COMPLETE_PROFILE: RewardEntry(50, XPCategory.CONSISTENCY),
    XPReason.PARTNER_INFO_UPDATED: RewardEntry(10, XPCategory.CONSISTENCY),
    XPReason.PARTNER_PHOTO_ADDED: RewardEntry(15, XPCategory.CONSISTENCY),
    # Social
    XPReason.STICKY_NOTE_CREATED: RewardEntry(5, XPCategory.SOCIAL),
    XPReason.PEER_VALIDATION: RewardEntry(15, XPCategory.SOCIAL),
    XPReason.POKE_DECAYED_NODE: RewardEntry(8, XPCategory.SOCIAL),
    XPReason.RED_FLAG_HELP: RewardEntry(12, XPCategory.SOCIAL),
    # Performance (one per partner per calendar month)
    XPReason.LOW_SIMP_INDEX: RewardEntry(100, XPCategory.PERFORMANCE, _M),
    XPReason.HIGH_INTIMACY: RewardEntry(80, XPCategory.PERFORMANCE, _M),
    XPReason.BALANCED_DATING: RewardEntry(200, XPCategory.PERFORMANCE),
    XPReason.SIMP_INDEX_IMPROVED: RewardEntry(50, XPCategory.PERFORMANCE, _M),
    XPReason.INTIMACY_IMPROVED: RewardEntry(25, XPCategory.PERFORMANCE, _M),
    # Red flag
    XPReason.RED_FLAG_DOCUMENTED: RewardEntry(15, XPCategory.RED_FLAG),
    XPReason.CRITICAL_RED_FLAG_EARLY: RewardEntry(60, XPCategory.RED_FLAG),
    XPReason.TOXIC_RELATIONSHIP_ENDED: RewardEntry(120, XPCategory.RED_FLAG),
    # Penalties
    XPReason.HIGH_SIMP_PENALTY: RewardEntry(-50, XPCategory.PERFORMANCE, _M),
    XPReason.PARTNER_NEGLECT: RewardEntry(-25, XPCategory.CONSISTENCY, _M),
    XPReason.SERIAL_DATING_PENALTY: RewardEntry(-75, XPCategory.PERFORMANCE, _M),
    XPReason.IGNORED_DECAY: RewardEntry(-15, XPCategory.CONSISTENCY),
    # Achievement
    XPReason.ACHIEVEMENT_UNLOCKED: RewardEntry(0, XPCategory.ACHIEVEMENT),
})

# Used for unknown reasons outside strict mode.
_FALLBACK_ENTRY = RewardEntry(0, XPCategory.MILESTONE)


def parse_reason(reason: Union[XPReason, str]) -> XPReason | None:
    if isinstance(reason, XPReason):
        return reason
    try:
        return XPReason(reason)
    except ValueError:
        return None


def get_reward(reason: Union[XPReason, str], *, strict: bool = True) -> RewardEntry:
    """
    Look up the catalog entry for a reason code.

    Args:
        reason: Reason code (enum member or its string value)
        strict: Raise on unknown reasons instead of falling back to 0 XP

    Returns:
        RewardEntry with amount, category and dedupe window

    Raises:
        NotFound: Unknown reason and strict mode enabled
    """
    parsed = parse_reason(reason)
    entry = XP_REWARDS.get(parsed) if parsed is not None else None
    if entry is not None:
        return entry

    if strict:
        raise NotFound(f"Unknown XP reason: {reason!r}", reason=str(reason))

    logger.warning("xp_catalog_miss", reason=str(reason))
    return _FALLBACK_ENTRY


def get_xp_amount(reason: Union[XPReason, str]) -> int:
    """Catalog amount for a reason (0 for unknown reasons)."""
    return get_reward(reason, strict=False).amount
