# progression/core/request_id.py
"""
Correlation ids carried through context variables.

Hosts tag a call with a request id, workers tag a sweep with a run id; the
logging stack stamps whichever is set onto every event.
"""
from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

_request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("progression_request_id", default=None)
_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("progression_run_id", default=None)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def get_run_id() -> Optional[str]:
    return _run_id.get()


@contextmanager
def with_request_id(request_id: Optional[str] = None) -> Iterator[str]:
    """Scope for one host call (e.g. the request that triggered an award)."""
    rid = request_id or uuid.uuid4().hex
    token = _request_id.set(rid)
    try:
        yield rid
    finally:
        _request_id.reset(token)


@contextmanager
def with_run_id(run_id: Optional[str] = None) -> Iterator[str]:
    """
    Use in workers:
        with with_run_id():
            ... sweep ...
    """
    rid = run_id or uuid.uuid4().hex
    token = _run_id.set(rid)
    try:
        yield rid
    finally:
        _run_id.reset(token)
