"""
Pydantic records owned by the ledger store.
"""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from progression.core.clock import as_utc
from progression.core.xp_config import XPCategory


def new_id() -> str:
    return str(uuid4())


class XPTransaction(BaseModel):
    """Immutable ledger fact. Penalties carry a negative amount."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    user_id: str
    group_id: str
    amount: int
    reason: str
    category: XPCategory
    related_entity_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class UserProgress(BaseModel):
    """Cached aggregate, always equal to a replay of the user's transactions."""
    user_id: str
    current_xp: int = Field(default=0, ge=0)
    level: int = Field(default=1, ge=1)
    streak_count: int = Field(default=0, ge=0)
    last_activity_date: Optional[date] = None
    total_xp_earned: int = Field(default=0, ge=0)
    version: int = 0


class Achievement(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    achievement_type: str
    achievement_name: str
    achievement_description: Optional[str] = None
    xp_reward: int
    unlocked_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ValidationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class PeerValidation(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    group_id: str
    action_type: str
    action_description: str = ""
    xp_amount: int = Field(..., ge=0)
    related_entity_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: ValidationStatus = ValidationStatus.PENDING
    validators: List[str] = Field(default_factory=list)
    required_validations: int = Field(default=2, ge=1)
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @field_validator("validators")
    @classmethod
    def _unique_validators(cls, value: List[str]) -> List[str]:
        # approval order kept, membership unique
        return list(dict.fromkeys(value))

    @property
    def is_pending(self) -> bool:
        return self.status == ValidationStatus.PENDING


class PartnerSnapshot(BaseModel):
    """Read-only view of a tracked partner, supplied by the host application."""
    id: str
    user_id: str
    status: str
    simp_index: Optional[float] = None
    intimacy_score: Optional[float] = None
    graveyard_date: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("graveyard_date", "updated_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


class TimelineEventSnapshot(BaseModel):
    id: str = Field(default_factory=new_id)
    partner_id: str
    user_id: str
    event_type: str
    severity: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


# ---------------------------------------------------------------------------
# Results returned to callers
# ---------------------------------------------------------------------------

class LevelUpEvent(BaseModel):
    user_id: str
    new_level: int
    new_xp: int
    levels_gained: int = 1


class AwardResult(BaseModel):
    status: Literal["awarded", "denied"]
    user_id: str
    reason: str
    amount: int = 0
    new_xp: Optional[int] = None
    new_level: Optional[int] = None
    leveled_up: bool = False
    levels_gained: int = 0
    denied_reason: Optional[str] = None
    transaction: Optional[XPTransaction] = None

    @property
    def awarded(self) -> bool:
        return self.status == "awarded"

    def level_up_event(self) -> Optional[LevelUpEvent]:
        if not self.leveled_up or self.new_level is None or self.new_xp is None:
            return None
        return LevelUpEvent(
            user_id=self.user_id,
            new_level=self.new_level,
            new_xp=self.new_xp,
            levels_gained=self.levels_gained,
        )


class ValidationResult(BaseModel):
    """Effect of a single approve/reject vote."""
    validation: PeerValidation
    validator_award: Optional[AwardResult] = None
    owner_award: Optional[AwardResult] = None


class AchievementProgress(BaseModel):
    achievement_type: str
    name: str
    description: str
    xp_reward: int
    unlocked: bool
    unlocked_at: Optional[datetime] = None


class ProgressionUpdate(BaseModel):
    """Everything the host may want to render after a state-changing call."""
    award: Optional[AwardResult] = None
    awards: List[AwardResult] = Field(default_factory=list)
    validation: Optional[PeerValidation] = None
    progress: Optional[UserProgress] = None
    level_ups: List[LevelUpEvent] = Field(default_factory=list)
    unlocked_achievements: List[Achievement] = Field(default_factory=list)


class Outcome(BaseModel):
    """Typed result at the host boundary; never raises ProgressionError."""
    ok: bool
    value: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
