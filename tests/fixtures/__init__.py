# tests/fixtures/__init__.py
"""
Test fixtures for the progression engine.

Factory functions for creating test data:
- FrozenClock
- make_settings()
- make_partner()
- make_timeline_event()
- make_engine()
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import uuid4

from progression.core.config import Settings
from progression.engine import ProgressionEngine
from progression.models.progress import PartnerSnapshot, TimelineEventSnapshot
from progression.services.activity_source import InMemoryActivitySource
from progression.services.ledger_store import InMemoryLedgerStore

# Wednesday; the calendar week started on Sunday 2025-01-12
DEFAULT_NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@dataclass
class FrozenClock:
    """Callable clock that only moves when told to."""
    now: datetime = DEFAULT_NOW

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: Any) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


def make_settings(**overrides: Any) -> Settings:
    values = {
        "ENVIRONMENT": "development",
        "DATABASE_URL": None,
        "LEVEL_XP_UNIT": 1000,
        "DEFAULT_REQUIRED_VALIDATIONS": 2,
        "VALIDATION_EXPIRY_DAYS": 7,
        "STRICT_CATALOG": True,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_partner(
    user_id: str = "u1",
    status: str = "Talking",
    simp_index: Optional[float] = None,
    intimacy_score: Optional[float] = None,
    graveyard_date: Optional[datetime] = None,
    partner_id: Optional[str] = None,
) -> PartnerSnapshot:
    """Factory function to create a partner snapshot."""
    return PartnerSnapshot(
        id=partner_id or str(uuid4()),
        user_id=user_id,
        status=status,
        simp_index=simp_index,
        intimacy_score=intimacy_score,
        graveyard_date=graveyard_date,
        updated_at=DEFAULT_NOW,
    )


def make_timeline_event(
    partner_id: str,
    user_id: str = "u1",
    event_type: str = "date",
    severity: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> TimelineEventSnapshot:
    """Factory function to create a timeline event snapshot."""
    return TimelineEventSnapshot(
        partner_id=partner_id,
        user_id=user_id,
        event_type=event_type,
        severity=severity,
        created_at=created_at or DEFAULT_NOW,
    )


def make_engine(clock: Optional[FrozenClock] = None, **settings: Any) -> ProgressionEngine:
    """Engine wired on the in-memory store and activity source."""
    return ProgressionEngine(
        InMemoryLedgerStore(),
        InMemoryActivitySource(),
        settings=make_settings(**settings),
        clock=clock or FrozenClock(),
    )
