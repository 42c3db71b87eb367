# progression/services/achievement_definitions.py
"""
Fixed, ordered list of achievement definitions.

Order matters: evaluation runs top to bottom in one pass, so XP granted by an
earlier unlock can already satisfy ``level_10`` at the end of the same pass.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from progression.core.xp_config import XPReason
from progression.services.achievement_criteria import (
    Criterion,
    IntimacyAtLeast,
    LevelAtLeast,
    LowSimpPartners,
    PartnerCount,
    StreakAtLeast,
    TimelineEventCount,
    TransactionCount,
)


@dataclass(frozen=True)
class AchievementDefinition:
    type: str
    name: str
    description: str
    xp_reward: int
    criterion: Criterion


ACHIEVEMENTS: Tuple[AchievementDefinition, ...] = (
    AchievementDefinition(
        "first_partner", "First Steps",
        "Add your first partner to the system",
        50, PartnerCount(min_count=1),
    ),
    AchievementDefinition(
        "five_partners", "Player Status",
        "Reach 5 partners in your system",
        200, PartnerCount(min_count=5),
    ),
    AchievementDefinition(
        "ten_partners", "Casanova",
        "Reach 10 partners in your system",
        500, PartnerCount(min_count=10),
    ),
    AchievementDefinition(
        "first_exclusive", "Commitment Issues Solved",
        "Get your first exclusive relationship",
        150, PartnerCount(min_count=1, status="Exclusive"),
    ),
    AchievementDefinition(
        "low_simp_master", "Efficiency Expert",
        "Maintain Simp Index under 100 on 3 different partners",
        300, LowSimpPartners(min_count=3, threshold=100),
    ),
    AchievementDefinition(
        "intimacy_champion", "Intimacy Champion",
        "Reach intimacy score of 10 with a partner",
        250, IntimacyAtLeast(score=10),
    ),
    AchievementDefinition(
        "data_enthusiast", "Data Enthusiast",
        "Log 50 timeline events",
        200, TimelineEventCount(min_count=50),
    ),
    AchievementDefinition(
        "weekly_warrior", "Weekly Warrior",
        "Earn the weekly update bonus 4 times",
        150, TransactionCount(XPReason.WEEKLY_UPDATE_BONUS.value, 4),
    ),
    AchievementDefinition(
        "streak_legend", "Streak Legend",
        "Maintain a 30-day activity streak",
        500, StreakAtLeast(days=30),
    ),
    AchievementDefinition(
        "red_flag_detector", "Red Flag Detector",
        "Document 10 red flags",
        150, TimelineEventCount(min_count=10, event_type="red_flag"),
    ),
    AchievementDefinition(
        "graveyard_reaper", "Graveyard Reaper",
        "Move 5 partners to the graveyard",
        100, PartnerCount(min_count=5, status="Graveyard"),
    ),
    AchievementDefinition(
        "phoenix", "Phoenix",
        "Successfully revive a relationship from the graveyard",
        200, TransactionCount(XPReason.SECOND_CHANCE.value, 1),
    ),
    AchievementDefinition(
        "social_butterfly", "Social Butterfly",
        "Create 20 sticky notes/roasts",
        100, TransactionCount(XPReason.STICKY_NOTE_CREATED.value, 20),
    ),
    AchievementDefinition(
        "validator", "The Validator",
        "Validate 10 peer actions",
        150, TransactionCount(XPReason.PEER_VALIDATION.value, 10),
    ),
    AchievementDefinition(
        "level_10", "Veteran",
        "Reach Level 10",
        1000, LevelAtLeast(level=10),
    ),
)
