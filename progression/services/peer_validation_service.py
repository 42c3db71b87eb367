# progression/services/peer_validation_service.py
"""
Peer Validation Service
Quorum workflow that lets group members ratify a claimed action before XP is
granted.

pending -> approved   N distinct approvals (owner excluded)
pending -> rejected   a single rejection
pending -> expired    sweep of stale requests, grants nothing
Terminal states never change again.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from progression.core.clock import Clock, utc_now
from progression.core.errors import InvalidTransition
from progression.core.logging import get_logger
from progression.core.xp_config import XPReason, get_reward
from progression.models.progress import PeerValidation, ValidationResult, ValidationStatus
from progression.services.ledger_store import LedgerStore
from progression.services.xp_service import XPService

logger = get_logger()

DEFAULT_REQUIRED_VALIDATIONS = 2
DEFAULT_EXPIRY = timedelta(days=7)


class PeerValidationService:
    def __init__(
        self,
        store: LedgerStore,
        xp_service: XPService,
        *,
        default_required_validations: int = DEFAULT_REQUIRED_VALIDATIONS,
        default_expiry: timedelta = DEFAULT_EXPIRY,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._xp = xp_service
        self._clock = clock
        self.default_required_validations = default_required_validations
        self.default_expiry = default_expiry

    async def create(
        self,
        owner_id: str,
        group_id: str,
        action_type: Union[XPReason, str],
        xp_amount: int,
        related_entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        required_validations: Optional[int] = None,
        action_description: str = "",
    ) -> PeerValidation:
        """
        Create a pending validation request with an empty validator set.

        Raises:
            InvalidTransition: negative XP amount or quorum below 1
            NotFound: ``action_type`` is not a catalog reason (strict catalog)
        """
        required = (
            self.default_required_validations if required_validations is None else required_validations
        )
        if xp_amount < 0:
            raise InvalidTransition("xp_amount must not be negative", xp_amount=xp_amount)
        if required < 1:
            raise InvalidTransition(
                "required_validations must be at least 1",
                required_validations=required,
            )
        # the owner payout goes through the catalog, so reject unknown actions up front
        get_reward(action_type, strict=self._xp.strict_catalog)

        validation = await self._store.insert_validation(
            PeerValidation(
                owner_id=owner_id,
                group_id=group_id,
                action_type=action_type.value if isinstance(action_type, XPReason) else str(action_type),
                action_description=action_description,
                xp_amount=xp_amount,
                related_entity_id=related_entity_id,
                metadata=dict(metadata or {}),
                required_validations=required,
                created_at=self._clock(),
            )
        )
        logger.info(
            "peer_validation_created",
            validation_id=validation.id,
            owner_id=owner_id,
            group_id=group_id,
            action_type=validation.action_type,
            xp_amount=xp_amount,
            required_validations=required,
        )
        return validation

    async def approve(self, validation_id: str, validator_id: str) -> ValidationResult:
        """
        Count one approval. The validator is rewarded for taking part; the vote
        that reaches the quorum resolves the request and pays the owner.

        A voter repeating the call settles whatever the earlier call failed to
        pay: their own reward, plus the owner's once the request is approved.
        Payouts are keyed per validation, so nothing is paid twice.

        Raises:
            NotFound: unknown validation id
            InvalidTransition: not pending, self-approval, or repeated approval
                with nothing left to pay
        """
        try:
            validation, reached_quorum = await self._store.record_approval(
                validation_id, validator_id, self._clock()
            )
        except InvalidTransition:
            validation = await self._store.get_validation(validation_id)
            if validation.status == ValidationStatus.REJECTED or validator_id not in validation.validators:
                raise
            result = await self._pay(
                validation,
                validator_id,
                pay_owner=validation.status == ValidationStatus.APPROVED,
            )
            if not any(a is not None and a.awarded for a in (result.validator_award, result.owner_award)):
                raise
            logger.info(
                "peer_validation_payout_recovered",
                validation_id=validation.id,
                validator_id=validator_id,
            )
            return result

        logger.info(
            "peer_validation_vote",
            validation_id=validation_id,
            validator_id=validator_id,
            approvals=len(validation.validators),
            required_validations=validation.required_validations,
        )
        if reached_quorum:
            logger.info(
                "peer_validation_approved",
                validation_id=validation.id,
                owner_id=validation.owner_id,
                xp_amount=validation.xp_amount,
            )
        return await self._pay(validation, validator_id, pay_owner=reached_quorum)

    async def _pay(
        self,
        validation: PeerValidation,
        validator_id: str,
        *,
        pay_owner: bool,
    ) -> ValidationResult:
        validator_award = await self._xp.award(
            validator_id,
            validation.group_id,
            XPReason.PEER_VALIDATION,
            metadata={"validation_id": validation.id},
            dedupe_key=f"validation:{validation.id}:validator:{validator_id}",
        )

        owner_award = None
        if pay_owner:
            # the quorum is the approval: no window or trigger applies to the claim
            owner_award = await self._xp.award(
                validation.owner_id,
                validation.group_id,
                validation.action_type,
                validation.related_entity_id,
                {**validation.metadata, "validation_id": validation.id},
                amount=validation.xp_amount,
                dedupe_key=f"validation:{validation.id}:owner",
            )

        return ValidationResult(
            validation=validation,
            validator_award=validator_award,
            owner_award=owner_award,
        )

    async def reject(self, validation_id: str, validator_id: str) -> ValidationResult:
        """
        A single rejection resolves the request; no XP moves.

        Raises:
            NotFound: unknown validation id
            InvalidTransition: not pending or self-rejection
        """
        validation = await self._store.record_rejection(validation_id, validator_id, self._clock())
        logger.info(
            "peer_validation_rejected",
            validation_id=validation.id,
            owner_id=validation.owner_id,
            rejected_by=validator_id,
        )
        return ValidationResult(validation=validation)

    async def expire_stale(self, older_than: Optional[timedelta] = None) -> List[PeerValidation]:
        """Expire every pending request created before ``now - older_than``."""
        now = self._clock()
        cutoff = now - (older_than or self.default_expiry)
        expired = await self._store.expire_pending_before(cutoff, now)
        if expired:
            logger.info("peer_validations_expired", count=len(expired), cutoff=cutoff.isoformat())
        else:
            logger.debug("no_stale_peer_validations", cutoff=cutoff.isoformat())
        return expired

    async def get_validation(self, validation_id: str) -> PeerValidation:
        return await self._store.get_validation(validation_id)

    async def get_pending_validations(
        self,
        group_id: str,
        exclude_user_id: Optional[str] = None,
    ) -> List[PeerValidation]:
        """Pending requests of a group, newest first, optionally hiding one user's own claims."""
        return await self._store.list_validations(
            group_id=group_id,
            status=ValidationStatus.PENDING,
            exclude_owner_id=exclude_user_id,
        )

    async def get_user_validations(self, owner_id: str) -> List[PeerValidation]:
        return await self._store.list_validations(owner_id=owner_id)
