# tests/test_pg_ledger_store.py
"""
PostgreSQL store against a scripted fake pool; no database required.
"""
from __future__ import annotations

import asyncio
import json
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import asyncpg
import pytest

from progression.core.errors import DuplicateRecord, InvalidTransition, NotFound, StoreUnavailable
from progression.core.xp_config import XPCategory
from progression.engine import ProgressionEngine
from progression.models.progress import ValidationStatus, XPTransaction
from progression.services.db_service import normalize_database_url, translate_errors
from progression.services.pg_ledger_store import (
    PostgresLedgerStore,
    row_to_progress,
    row_to_transaction,
    row_to_validation,
)
from tests.fixtures import make_settings

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeTransaction:
    def __init__(self, conn: "FakeConnection") -> None:
        self.conn = conn

    async def start(self) -> None:
        self.conn.events.append("begin")

    async def commit(self) -> None:
        self.conn.events.append("commit")

    async def rollback(self) -> None:
        self.conn.events.append("rollback")


class FakeConnection:
    """Answers queries from a list of canned results, in call order."""

    def __init__(self, results: Optional[List[Any]] = None) -> None:
        self.results = list(results or [])
        self.queries: List[str] = []
        self.events: List[str] = []

    def transaction(self, isolation=None) -> FakeTransaction:
        return FakeTransaction(self)

    async def _answer(self, query: str, *args: Any, timeout=None) -> Any:
        self.queries.append(" ".join(query.split()))
        result = self.results.pop(0) if self.results else None
        if isinstance(result, BaseException):
            raise result
        return result

    fetch = fetchrow = fetchval = execute = _answer


class FakeAcquire:
    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn

    async def __aenter__(self) -> FakeConnection:
        return self.conn

    async def __aexit__(self, *exc) -> bool:
        return False


class FakePool:
    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn
        self.closed = False

    def acquire(self) -> FakeAcquire:
        return FakeAcquire(self.conn)

    async def close(self) -> None:
        self.closed = True


def _progress_row(**overrides: Any) -> Dict[str, Any]:
    row = {
        "user_id": "u1",
        "current_xp": 900,
        "level": 1,
        "streak_count": 2,
        "last_activity_date": date(2025, 1, 14),
        "total_xp_earned": 900,
        "version": 4,
    }
    row.update(overrides)
    return row


def _validation_row(**overrides: Any) -> Dict[str, Any]:
    row = {
        "id": "val-1",
        "owner_id": "owner",
        "group_id": "g1",
        "action_type": "balanced_dating",
        "action_description": "",
        "xp_amount": 200,
        "related_entity_id": None,
        "metadata": '{"source": "app"}',
        "status": "pending",
        "validators": ["v1"],
        "required_validations": 2,
        "created_at": NOW,
        "resolved_at": None,
        "resolved_by": None,
    }
    row.update(overrides)
    return row


def _txn() -> XPTransaction:
    return XPTransaction(
        user_id="u1",
        group_id="g1",
        amount=150,
        reason="status_dating_to_exclusive",
        category=XPCategory.MILESTONE,
        related_entity_id="p1",
        created_at=NOW,
    )


def test_row_converters():
    txn = row_to_transaction(
        {
            "id": "t1",
            "user_id": "u1",
            "group_id": "g1",
            "amount": -30,
            "reason": "status_to_complicated",
            "category": "milestone",
            "related_entity_id": "p1",
            "metadata": json.dumps({"old_status": "Dating"}),
            "created_at": NOW,
        }
    )
    assert txn.category == XPCategory.MILESTONE
    assert txn.metadata == {"old_status": "Dating"}

    progress = row_to_progress(_progress_row())
    assert progress.streak_count == 2 and progress.version == 4

    validation = row_to_validation(_validation_row(status="approved", validators=("v1", "v2")))
    assert validation.status == ValidationStatus.APPROVED
    assert validation.validators == ["v1", "v2"]
    assert validation.metadata == {"source": "app"}


def test_normalize_database_url():
    assert normalize_database_url(" postgresql+asyncpg://u:p@db/x ") == "postgresql://u:p@db/x"
    assert normalize_database_url("postgresql://u:p@db/x") == "postgresql://u:p@db/x"


@pytest.mark.asyncio
async def test_translate_errors_maps_unique_violation():
    with pytest.raises(DuplicateRecord):
        async with translate_errors("insert_achievement"):
            raise asyncpg.exceptions.UniqueViolationError("duplicate key value")


@pytest.mark.asyncio
async def test_translate_errors_maps_transient_failures():
    with pytest.raises(StoreUnavailable) as exc_info:
        async with translate_errors("get_progress"):
            raise asyncio.TimeoutError()
    assert exc_info.value.retryable

    with pytest.raises(StoreUnavailable):
        async with translate_errors("get_progress"):
            raise ConnectionResetError("reset by peer")


@pytest.mark.asyncio
async def test_translate_errors_leaves_domain_errors_alone():
    with pytest.raises(InvalidTransition):
        async with translate_errors("record_approval"):
            raise InvalidTransition("already approved")


@pytest.mark.asyncio
async def test_append_transaction_applies_delta_in_one_transaction():
    conn = FakeConnection(results=["t1", None, _progress_row(), None])
    store = PostgresLedgerStore(FakePool(conn))

    progress, levels = await store.append_transaction(_txn(), dedupe_key=None, level_xp_unit=1000)

    assert (progress.level, progress.current_xp, levels) == (2, 50, 1)
    assert progress.version == 5
    assert conn.events == ["begin", "commit"]
    assert conn.queries[0].startswith("INSERT INTO xp_transactions")
    assert "FOR UPDATE" in conn.queries[2]
    assert conn.queries[3].startswith("UPDATE user_progress")


@pytest.mark.asyncio
async def test_append_transaction_duplicate_bucket_rolls_back():
    conn = FakeConnection(results=[None])
    store = PostgresLedgerStore(FakePool(conn))

    with pytest.raises(DuplicateRecord):
        await store.append_transaction(_txn(), dedupe_key="u1:x:p1:calendar_month:2025-01-01", level_xp_unit=1000)

    assert conn.events == ["begin", "rollback"]
    assert len(conn.queries) == 1


@pytest.mark.asyncio
async def test_get_progress_defaults_for_unknown_user():
    store = PostgresLedgerStore(FakePool(FakeConnection(results=[None])))

    progress = await store.get_progress("nobody")

    assert (progress.user_id, progress.level, progress.current_xp) == ("nobody", 1, 0)


@pytest.mark.asyncio
async def test_record_approval_reaching_quorum():
    conn = FakeConnection(results=[_validation_row(), None])
    store = PostgresLedgerStore(FakePool(conn))

    validation, reached = await store.record_approval("val-1", "v2", NOW)

    assert reached
    assert validation.status == ValidationStatus.APPROVED
    assert validation.validators == ["v1", "v2"]
    assert "FOR UPDATE" in conn.queries[0]
    assert conn.events == ["begin", "commit"]


@pytest.mark.asyncio
async def test_record_approval_self_vote_rolls_back():
    conn = FakeConnection(results=[_validation_row()])
    store = PostgresLedgerStore(FakePool(conn))

    with pytest.raises(InvalidTransition):
        await store.record_approval("val-1", "owner", NOW)
    assert conn.events == ["begin", "rollback"]


@pytest.mark.asyncio
async def test_missing_validation():
    store = PostgresLedgerStore(FakePool(FakeConnection(results=[None])))

    with pytest.raises(NotFound):
        await store.get_validation("nope")


@pytest.mark.asyncio
async def test_connection_loss_is_store_unavailable():
    conn = FakeConnection(results=[OSError("connection refused")])
    store = PostgresLedgerStore(FakePool(conn))

    with pytest.raises(StoreUnavailable):
        await store.count_transactions("u1", "peer_validation")


@pytest.mark.asyncio
async def test_close_closes_pool():
    pool = FakePool(FakeConnection())
    await PostgresLedgerStore(pool).close()
    assert pool.closed


@pytest.mark.asyncio
async def test_ensure_schema_applies_ddl_in_transaction():
    conn = FakeConnection()
    await PostgresLedgerStore(FakePool(conn)).ensure_schema()

    assert conn.events == ["begin", "commit"]
    assert len(conn.queries) == 1
    ddl = conn.queries[0]
    assert ddl.startswith("CREATE TABLE IF NOT EXISTS xp_transactions")
    assert "xp_transactions_dedupe_key_uq" in ddl
    assert "BEFORE UPDATE OR DELETE ON xp_transactions" in ddl


@pytest.mark.asyncio
async def test_ensure_schema_failure_rolls_back():
    conn = FakeConnection(results=[OSError("connection refused")])

    with pytest.raises(StoreUnavailable):
        await PostgresLedgerStore(FakePool(conn)).ensure_schema()
    assert conn.events == ["begin", "rollback"]


@pytest.mark.asyncio
@pytest.mark.parametrize("ensure_schema, expected_events", [(True, ["begin", "commit"]), (False, [])])
async def test_engine_connect_ensures_schema(monkeypatch, ensure_schema, expected_events):
    conn = FakeConnection()
    pool = FakePool(conn)

    async def _create_pool(dsn, **kwargs):
        return pool

    monkeypatch.setattr("progression.engine.create_pool", _create_pool)

    engine = await ProgressionEngine.connect(
        "postgresql://db/progression",
        settings=make_settings(),
        ensure_schema=ensure_schema,
    )

    assert conn.events == expected_events
    assert isinstance(engine.store, PostgresLedgerStore)
    await engine.close()
    assert pool.closed
