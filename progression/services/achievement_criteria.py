# progression/services/achievement_criteria.py
"""
Declarative achievement predicates.

Each criterion is a small read-only query with one ``evaluate`` coroutine, so
the engine can iterate definitions without per-type branching.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from progression.models.progress import PartnerSnapshot
from progression.services.activity_source import GRAVEYARD_STATUS, ActivitySource
from progression.services.ledger_store import LedgerStore


def gte(value, target) -> bool:
    return value is not None and value >= target


@dataclass
class EvaluationContext:
    user_id: str
    group_id: str
    store: LedgerStore
    activity: ActivitySource
    _partners: Optional[List[PartnerSnapshot]] = field(default=None, repr=False)

    async def partners(self) -> List[PartnerSnapshot]:
        # host data does not change during one evaluation pass
        if self._partners is None:
            self._partners = await self.activity.list_partners(self.user_id)
        return self._partners


class Criterion(ABC):
    @abstractmethod
    async def evaluate(self, ctx: EvaluationContext) -> bool:
        ...


@dataclass(frozen=True)
class PartnerCount(Criterion):
    min_count: int
    status: Optional[str] = None

    async def evaluate(self, ctx: EvaluationContext) -> bool:
        partners = await ctx.partners()
        count = sum(1 for p in partners if self.status is None or p.status == self.status)
        return gte(count, self.min_count)


@dataclass(frozen=True)
class LowSimpPartners(Criterion):
    """Active (non-graveyard) partners with a positive simp index under the threshold."""
    min_count: int
    threshold: float = 100

    async def evaluate(self, ctx: EvaluationContext) -> bool:
        partners = await ctx.partners()
        count = sum(
            1 for p in partners
            if p.status != GRAVEYARD_STATUS and p.simp_index and p.simp_index < self.threshold
        )
        return gte(count, self.min_count)


@dataclass(frozen=True)
class IntimacyAtLeast(Criterion):
    score: float

    async def evaluate(self, ctx: EvaluationContext) -> bool:
        partners = await ctx.partners()
        return any(gte(p.intimacy_score, self.score) for p in partners)


@dataclass(frozen=True)
class TimelineEventCount(Criterion):
    min_count: int
    event_type: Optional[str] = None

    async def evaluate(self, ctx: EvaluationContext) -> bool:
        count = await ctx.activity.count_timeline_events(ctx.user_id, event_type=self.event_type)
        return gte(count, self.min_count)


@dataclass(frozen=True)
class TransactionCount(Criterion):
    reason: str
    min_count: int

    async def evaluate(self, ctx: EvaluationContext) -> bool:
        count = await ctx.store.count_transactions(ctx.user_id, self.reason)
        return gte(count, self.min_count)


@dataclass(frozen=True)
class StreakAtLeast(Criterion):
    days: int

    async def evaluate(self, ctx: EvaluationContext) -> bool:
        progress = await ctx.store.get_progress(ctx.user_id)
        return gte(progress.streak_count, self.days)


@dataclass(frozen=True)
class LevelAtLeast(Criterion):
    level: int

    async def evaluate(self, ctx: EvaluationContext) -> bool:
        progress = await ctx.store.get_progress(ctx.user_id)
        return gte(progress.level, self.level)
