# progression/core/logging.py
"""
One structlog JSON stack for the engine and its workers.

Every event carries ts, level, service and the active request/run id.
Secrets are redacted by key, including inside the opaque metadata bags that
travel with transactions and validations.
"""
from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List

import structlog

from progression.core.request_id import get_request_id, get_run_id

EventDict = Dict[str, Any]

_REDACTED = "***redacted***"
_SECRET_KEYS = frozenset({
    "email", "e-mail", "phone", "telephone",
    "authorization", "auth", "token", "access_token", "refresh_token",
    "api_key", "apikey", "password", "pwd", "secret",
    "dsn", "database_url",
})


# -------- Processors ---------------------------------------------------------

def _stamp_time(_: Any, __: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("ts", datetime.now(timezone.utc).isoformat(timespec="milliseconds"))
    return event_dict


def _stamp_level(_: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["level"] = str(event_dict.get("level") or method_name or "info").lower()
    return event_dict


def _stamp_service(service_name: str):
    def _inner(_: Any, __: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service_name)
        return event_dict
    return _inner


def _stamp_correlation_ids(_: Any, __: str, event_dict: EventDict) -> EventDict:
    request_id = get_request_id()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    run_id = get_run_id()
    if run_id:
        event_dict.setdefault("run_id", run_id)
    return event_dict


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: _REDACTED if str(k).lower() in _SECRET_KEYS else _redact(v)
            for k, v in value.items()
        }
    return value


def _pii_guard(_: Any, __: str, event_dict: EventDict) -> EventDict:
    return _redact(event_dict)


def _processors(service_name: str) -> List[Any]:
    return [
        _stamp_time,
        _stamp_level,
        _stamp_service(service_name),
        _stamp_correlation_ids,
        _pii_guard,
        structlog.processors.EventRenamer("event"),
        structlog.processors.dict_tracebacks,
        structlog.processors.JSONRenderer(),
    ]


# -------- Public API ---------------------------------------------------------

_logger: structlog.BoundLogger | None = None


def level_from_name(name: str, default: int = logging.INFO) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


def configure_logging(service_name: str = "progression", *, level: int = logging.INFO) -> None:
    global _logger

    # stdlib records (asyncpg, asyncio) share stderr with the JSON events
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr, force=True)

    structlog.configure(
        processors=_processors(service_name),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger = structlog.get_logger()


def get_logger() -> structlog.BoundLogger:
    if _logger is None:
        configure_logging()
    return _logger
