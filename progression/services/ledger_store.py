# progression/services/ledger_store.py
"""
Ledger store: durable, atomic storage for transactions, aggregates,
achievements and peer validations.

Every mutating operation is atomic on its own. Callers never hold records
across calls; they pass ids and re-read.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from progression.core.errors import DuplicateRecord, InvalidTransition, NotFound
from progression.models.progress import (
    Achievement,
    PeerValidation,
    UserProgress,
    ValidationStatus,
    XPTransaction,
)
from progression.services.leveling import apply_xp_delta

ProgressMutation = Callable[[UserProgress], Optional[UserProgress]]


class LedgerStore(ABC):
    # ---- Transactions + aggregate ------------------------------------------

    @abstractmethod
    async def get_progress(self, user_id: str) -> UserProgress:
        """Aggregate for a user; a fresh level-1 aggregate if none exists yet."""

    @abstractmethod
    async def append_transaction(
        self,
        txn: XPTransaction,
        *,
        dedupe_key: Optional[str],
        level_xp_unit: int,
    ) -> Tuple[UserProgress, int]:
        """
        Append a transaction and apply it to the aggregate in one atomic step.

        Raises:
            DuplicateRecord: ``dedupe_key`` already used by a committed transaction
        """

    @abstractmethod
    async def update_progress(self, user_id: str, mutate: ProgressMutation) -> UserProgress:
        """
        Atomic read-modify-write of the aggregate. ``mutate`` returns the new
        aggregate, or None to leave it untouched.
        """

    @abstractmethod
    async def has_transaction_since(
        self,
        user_id: str,
        reason: str,
        related_entity_id: Optional[str],
        since: datetime,
    ) -> bool:
        ...

    @abstractmethod
    async def list_transactions(
        self,
        user_id: str,
        *,
        reason: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        ascending: bool = False,
    ) -> List[XPTransaction]:
        ...

    @abstractmethod
    async def count_transactions(self, user_id: str, reason: str) -> int:
        ...

    # ---- Achievements -------------------------------------------------------

    @abstractmethod
    async def get_achievement(self, user_id: str, achievement_type: str) -> Optional[Achievement]:
        ...

    @abstractmethod
    async def insert_achievement(self, achievement: Achievement) -> Achievement:
        """
        Raises:
            DuplicateRecord: (user_id, achievement_type) already unlocked
        """

    @abstractmethod
    async def list_achievements(self, user_id: str) -> List[Achievement]:
        ...

    # ---- Peer validations ---------------------------------------------------

    @abstractmethod
    async def insert_validation(self, validation: PeerValidation) -> PeerValidation:
        ...

    @abstractmethod
    async def get_validation(self, validation_id: str) -> PeerValidation:
        """
        Raises:
            NotFound: unknown id
        """

    @abstractmethod
    async def record_approval(
        self,
        validation_id: str,
        validator_id: str,
        now: datetime,
    ) -> Tuple[PeerValidation, bool]:
        """
        Add an approver and resolve on quorum, atomically per validation.

        Returns:
            (validation after the vote, whether this vote reached the quorum)

        Raises:
            NotFound, InvalidTransition
        """

    @abstractmethod
    async def record_rejection(
        self,
        validation_id: str,
        validator_id: str,
        now: datetime,
    ) -> PeerValidation:
        ...

    @abstractmethod
    async def expire_pending_before(self, cutoff: datetime, now: datetime) -> List[PeerValidation]:
        ...

    @abstractmethod
    async def list_validations(
        self,
        *,
        group_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        status: Optional[ValidationStatus] = None,
        exclude_owner_id: Optional[str] = None,
    ) -> List[PeerValidation]:
        ...


# ---------------------------------------------------------------------------
# Vote rules shared by every store
# ---------------------------------------------------------------------------

def check_vote(validation: PeerValidation, validator_id: str, *, approving: bool) -> None:
    """
    Raises:
        InvalidTransition: resolved validation, self-vote, or repeated approval
    """
    if not validation.is_pending:
        raise InvalidTransition(
            f"Validation {validation.id} is already {validation.status.value}",
            validation_id=validation.id,
            status=validation.status.value,
        )
    if validator_id == validation.owner_id:
        raise InvalidTransition(
            "Cannot vote on own validation request",
            validation_id=validation.id,
            validator_id=validator_id,
        )
    if approving and validator_id in validation.validators:
        raise InvalidTransition(
            "Validator already approved this request",
            validation_id=validation.id,
            validator_id=validator_id,
        )


def apply_approval(
    validation: PeerValidation,
    validator_id: str,
    now: datetime,
) -> Tuple[PeerValidation, bool]:
    check_vote(validation, validator_id, approving=True)
    validators = [*validation.validators, validator_id]
    reached = len(validators) >= validation.required_validations
    update = {"validators": validators}
    if reached:
        update.update(status=ValidationStatus.APPROVED, resolved_at=now, resolved_by=validator_id)
    return validation.model_copy(update=update), reached


def apply_rejection(validation: PeerValidation, validator_id: str, now: datetime) -> PeerValidation:
    check_vote(validation, validator_id, approving=False)
    return validation.model_copy(
        update={
            "status": ValidationStatus.REJECTED,
            "resolved_at": now,
            "resolved_by": validator_id,
        }
    )


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryLedgerStore(LedgerStore):
    """
    Process-local store. One asyncio.Lock serialises all mutations, which makes
    every operation below a single atomic step for concurrent coroutines.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._transactions: List[XPTransaction] = []
        self._dedupe_keys: Set[str] = set()
        self._progress: Dict[str, UserProgress] = {}
        self._achievements: Dict[Tuple[str, str], Achievement] = {}
        self._validations: Dict[str, PeerValidation] = {}

    def _progress_for(self, user_id: str) -> UserProgress:
        return self._progress.get(user_id) or UserProgress(user_id=user_id)

    async def get_progress(self, user_id: str) -> UserProgress:
        return self._progress_for(user_id).model_copy()

    async def append_transaction(
        self,
        txn: XPTransaction,
        *,
        dedupe_key: Optional[str],
        level_xp_unit: int,
    ) -> Tuple[UserProgress, int]:
        async with self._lock:
            if dedupe_key is not None and dedupe_key in self._dedupe_keys:
                raise DuplicateRecord(
                    f"Reward already granted for bucket {dedupe_key}",
                    dedupe_key=dedupe_key,
                )
            updated, levels_gained = apply_xp_delta(
                self._progress_for(txn.user_id), txn.amount, level_xp_unit
            )
            self._transactions.append(txn)
            if dedupe_key is not None:
                self._dedupe_keys.add(dedupe_key)
            self._progress[txn.user_id] = updated
            return updated.model_copy(), levels_gained

    async def update_progress(self, user_id: str, mutate: ProgressMutation) -> UserProgress:
        async with self._lock:
            current = self._progress_for(user_id)
            updated = mutate(current.model_copy())
            if updated is None:
                return current.model_copy()
            updated = updated.model_copy(update={"version": current.version + 1})
            self._progress[user_id] = updated
            return updated.model_copy()

    async def has_transaction_since(
        self,
        user_id: str,
        reason: str,
        related_entity_id: Optional[str],
        since: datetime,
    ) -> bool:
        return any(
            t.user_id == user_id
            and t.reason == reason
            and t.related_entity_id == related_entity_id
            and t.created_at >= since
            for t in self._transactions
        )

    async def list_transactions(
        self,
        user_id: str,
        *,
        reason: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        ascending: bool = False,
    ) -> List[XPTransaction]:
        rows = [
            t for t in self._transactions
            if t.user_id == user_id
            and (reason is None or t.reason == reason)
            and (since is None or t.created_at >= since)
            and (until is None or t.created_at <= until)
        ]
        # insertion order breaks created_at ties
        rows = [t for _, t in sorted(enumerate(rows), key=lambda it: (it[1].created_at, it[0]))]
        if not ascending:
            rows.reverse()
        return rows[:limit] if limit is not None else rows

    async def count_transactions(self, user_id: str, reason: str) -> int:
        return sum(1 for t in self._transactions if t.user_id == user_id and t.reason == reason)

    async def get_achievement(self, user_id: str, achievement_type: str) -> Optional[Achievement]:
        return self._achievements.get((user_id, achievement_type))

    async def insert_achievement(self, achievement: Achievement) -> Achievement:
        key = (achievement.user_id, achievement.achievement_type)
        async with self._lock:
            if key in self._achievements:
                raise DuplicateRecord(
                    f"Achievement {achievement.achievement_type} already unlocked",
                    user_id=achievement.user_id,
                    achievement_type=achievement.achievement_type,
                )
            self._achievements[key] = achievement
            return achievement

    async def list_achievements(self, user_id: str) -> List[Achievement]:
        rows = [a for (uid, _), a in self._achievements.items() if uid == user_id]
        return sorted(rows, key=lambda a: a.unlocked_at, reverse=True)

    async def insert_validation(self, validation: PeerValidation) -> PeerValidation:
        async with self._lock:
            if validation.id in self._validations:
                raise DuplicateRecord(f"Validation {validation.id} already exists")
            self._validations[validation.id] = validation
            return validation

    async def get_validation(self, validation_id: str) -> PeerValidation:
        validation = self._validations.get(validation_id)
        if validation is None:
            raise NotFound(f"Validation {validation_id} not found", validation_id=validation_id)
        return validation

    async def record_approval(
        self,
        validation_id: str,
        validator_id: str,
        now: datetime,
    ) -> Tuple[PeerValidation, bool]:
        async with self._lock:
            validation, reached = apply_approval(
                await self.get_validation(validation_id), validator_id, now
            )
            self._validations[validation_id] = validation
            return validation, reached

    async def record_rejection(
        self,
        validation_id: str,
        validator_id: str,
        now: datetime,
    ) -> PeerValidation:
        async with self._lock:
            validation = apply_rejection(await self.get_validation(validation_id), validator_id, now)
            self._validations[validation_id] = validation
            return validation

    async def expire_pending_before(self, cutoff: datetime, now: datetime) -> List[PeerValidation]:
        expired: List[PeerValidation] = []
        async with self._lock:
            for vid, validation in self._validations.items():
                if validation.is_pending and validation.created_at < cutoff:
                    updated = validation.model_copy(
                        update={"status": ValidationStatus.EXPIRED, "resolved_at": now}
                    )
                    self._validations[vid] = updated
                    expired.append(updated)
        return expired

    async def list_validations(
        self,
        *,
        group_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        status: Optional[ValidationStatus] = None,
        exclude_owner_id: Optional[str] = None,
    ) -> List[PeerValidation]:
        rows = [
            v for v in self._validations.values()
            if (group_id is None or v.group_id == group_id)
            and (owner_id is None or v.owner_id == owner_id)
            and (status is None or v.status == status)
            and (exclude_owner_id is None or v.owner_id != exclude_owner_id)
        ]
        return sorted(rows, key=lambda v: v.created_at, reverse=True)
