# progression/core/errors.py
"""
Error taxonomy of the progression engine.

Services raise these; ``ProgressionEngine`` turns them into ``Outcome`` records
so host flows can degrade instead of crashing. An idempotency denial is not an
error and never shows up here: ``award`` reports it through ``AwardResult``.
"""

from __future__ import annotations


class ProgressionError(Exception):
    code = "progression_error"
    retryable = False

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidTransition(ProgressionError):
    """Approve/reject on a resolved validation, self-votes, repeated votes."""

    code = "invalid_transition"


class NotFound(ProgressionError):
    """Unknown catalog reason or unknown record id."""

    code = "not_found"


class StoreUnavailable(ProgressionError):
    """
    Transient infrastructure failure.

    The write may or may not have committed; callers re-read progress and
    retry with the same inputs.
    """

    code = "store_unavailable"
    retryable = True


class DuplicateRecord(ProgressionError):
    """A uniqueness constraint rejected the write (dedupe bucket or achievement)."""

    code = "duplicate_record"
