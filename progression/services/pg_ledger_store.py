# progression/services/pg_ledger_store.py
"""
PostgreSQL ledger store (asyncpg).

Atomicity comes from the database: each mutating call is one transaction,
aggregates and validations are row-locked with SELECT ... FOR UPDATE, windowed
rewards are guarded by a partial unique index on ``dedupe_key`` and
achievements by a unique (user_id, achievement_type) constraint.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Mapping, Optional, Tuple

import asyncpg

from progression.core.errors import DuplicateRecord, NotFound
from progression.core.logging import get_logger
from progression.core.xp_config import XPCategory
from progression.models.progress import (
    Achievement,
    PeerValidation,
    UserProgress,
    ValidationStatus,
    XPTransaction,
)
from progression.services.db_service import (
    create_pool,
    execute_with_conn,
    fetch_with_conn,
    fetchrow_with_conn,
    fetchval_with_conn,
    run_in_transaction,
    translate_errors,
)
from progression.services.leveling import apply_xp_delta
from progression.services.ledger_store import (
    LedgerStore,
    ProgressMutation,
    apply_approval,
    apply_rejection,
)

logger = get_logger()

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS xp_transactions (
    id                TEXT PRIMARY KEY,
    user_id           TEXT NOT NULL,
    group_id          TEXT NOT NULL,
    amount            INTEGER NOT NULL,
    reason            TEXT NOT NULL,
    category          TEXT NOT NULL,
    related_entity_id TEXT,
    metadata          JSONB NOT NULL DEFAULT '{}'::jsonb,
    dedupe_key        TEXT,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS xp_transactions_dedupe_key_uq
    ON xp_transactions (dedupe_key) WHERE dedupe_key IS NOT NULL;
CREATE INDEX IF NOT EXISTS xp_transactions_user_reason_idx
    ON xp_transactions (user_id, reason, created_at DESC);
CREATE OR REPLACE FUNCTION xp_transactions_append_only() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'xp_transactions is append-only';
END;
$$ LANGUAGE plpgsql;
DROP TRIGGER IF EXISTS xp_transactions_append_only_trg ON xp_transactions;
CREATE TRIGGER xp_transactions_append_only_trg
    BEFORE UPDATE OR DELETE ON xp_transactions
    FOR EACH ROW EXECUTE FUNCTION xp_transactions_append_only();

CREATE TABLE IF NOT EXISTS user_progress (
    user_id            TEXT PRIMARY KEY,
    current_xp         INTEGER NOT NULL DEFAULT 0 CHECK (current_xp >= 0),
    level              INTEGER NOT NULL DEFAULT 1 CHECK (level >= 1),
    streak_count       INTEGER NOT NULL DEFAULT 0,
    last_activity_date DATE,
    total_xp_earned    BIGINT NOT NULL DEFAULT 0,
    version            BIGINT NOT NULL DEFAULT 0,
    updated_at         TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS achievements (
    id                      TEXT PRIMARY KEY,
    user_id                 TEXT NOT NULL,
    achievement_type        TEXT NOT NULL,
    achievement_name        TEXT NOT NULL,
    achievement_description TEXT,
    xp_reward               INTEGER NOT NULL,
    unlocked_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
    metadata                JSONB NOT NULL DEFAULT '{}'::jsonb,
    CONSTRAINT achievements_user_type_uq UNIQUE (user_id, achievement_type)
);

CREATE TABLE IF NOT EXISTS peer_validations (
    id                   TEXT PRIMARY KEY,
    owner_id             TEXT NOT NULL,
    group_id             TEXT NOT NULL,
    action_type          TEXT NOT NULL,
    action_description   TEXT NOT NULL DEFAULT '',
    xp_amount            INTEGER NOT NULL CHECK (xp_amount >= 0),
    related_entity_id    TEXT,
    metadata             JSONB NOT NULL DEFAULT '{}'::jsonb,
    status               TEXT NOT NULL DEFAULT 'pending'
                         CHECK (status IN ('pending', 'approved', 'rejected', 'expired')),
    validators           TEXT[] NOT NULL DEFAULT '{}',
    required_validations INTEGER NOT NULL DEFAULT 2 CHECK (required_validations >= 1),
    created_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
    resolved_at          TIMESTAMPTZ,
    resolved_by          TEXT
);
CREATE INDEX IF NOT EXISTS peer_validations_group_status_idx
    ON peer_validations (group_id, status, created_at DESC);
"""

_VALIDATION_COLUMNS = """
    id, owner_id, group_id, action_type, action_description, xp_amount,
    related_entity_id, metadata, status, validators, required_validations,
    created_at, resolved_at, resolved_by
"""

_PROGRESS_COLUMNS = """
    user_id, current_xp, level, streak_count, last_activity_date,
    total_xp_earned, version
"""


def _json_in(value: Optional[Mapping[str, Any]]) -> str:
    return json.dumps(dict(value or {}), ensure_ascii=False, default=str)


def _json_out(value: Any) -> dict:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def row_to_transaction(row: Mapping[str, Any]) -> XPTransaction:
    return XPTransaction(
        id=row["id"],
        user_id=row["user_id"],
        group_id=row["group_id"],
        amount=row["amount"],
        reason=row["reason"],
        category=XPCategory(row["category"]),
        related_entity_id=row["related_entity_id"],
        metadata=_json_out(row["metadata"]),
        created_at=row["created_at"],
    )


def row_to_progress(row: Mapping[str, Any]) -> UserProgress:
    return UserProgress(**{k: row[k] for k in UserProgress.model_fields})


def row_to_achievement(row: Mapping[str, Any]) -> Achievement:
    data = dict(row)
    data["metadata"] = _json_out(data.get("metadata"))
    return Achievement(**data)


def row_to_validation(row: Mapping[str, Any]) -> PeerValidation:
    data = dict(row)
    data["metadata"] = _json_out(data.get("metadata"))
    data["validators"] = list(data.get("validators") or [])
    data["status"] = ValidationStatus(data["status"])
    return PeerValidation(**data)


class PostgresLedgerStore(LedgerStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @classmethod
    async def connect(cls, dsn: str) -> "PostgresLedgerStore":
        return cls(await create_pool(dsn))

    async def close(self) -> None:
        await self._pool.close()

    async def ensure_schema(self) -> None:
        async with translate_errors("ensure_schema"):
            async with run_in_transaction(self._pool) as conn:
                await execute_with_conn(conn, SCHEMA_SQL)
        logger.info("ledger_schema_ensured")

    # ---- Aggregate helpers ---------------------------------------------------

    async def _lock_progress(self, conn: asyncpg.Connection, user_id: str) -> UserProgress:
        await execute_with_conn(
            conn,
            "INSERT INTO user_progress (user_id) VALUES ($1) ON CONFLICT (user_id) DO NOTHING",
            user_id,
        )
        row = await fetchrow_with_conn(
            conn,
            f"SELECT {_PROGRESS_COLUMNS} FROM user_progress WHERE user_id = $1 FOR UPDATE",
            user_id,
        )
        return row_to_progress(row)

    async def _save_progress(self, conn: asyncpg.Connection, progress: UserProgress) -> None:
        await execute_with_conn(
            conn,
            """
            UPDATE user_progress
            SET current_xp = $2,
                level = $3,
                streak_count = $4,
                last_activity_date = $5,
                total_xp_earned = $6,
                version = $7,
                updated_at = now()
            WHERE user_id = $1
            """,
            progress.user_id,
            progress.current_xp,
            progress.level,
            progress.streak_count,
            progress.last_activity_date,
            progress.total_xp_earned,
            progress.version,
        )

    # ---- Transactions + aggregate ---------------------------------------------

    async def get_progress(self, user_id: str) -> UserProgress:
        async with translate_errors("get_progress"):
            async with self._pool.acquire() as conn:
                row = await fetchrow_with_conn(
                    conn,
                    f"SELECT {_PROGRESS_COLUMNS} FROM user_progress WHERE user_id = $1",
                    user_id,
                )
        return row_to_progress(row) if row else UserProgress(user_id=user_id)

    async def append_transaction(
        self,
        txn: XPTransaction,
        *,
        dedupe_key: Optional[str],
        level_xp_unit: int,
    ) -> Tuple[UserProgress, int]:
        async with translate_errors("append_transaction"):
            async with run_in_transaction(self._pool) as conn:
                inserted = await fetchval_with_conn(
                    conn,
                    """
                    INSERT INTO xp_transactions (
                        id, user_id, group_id, amount, reason, category,
                        related_entity_id, metadata, dedupe_key, created_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, CAST($8 AS JSONB), $9, $10)
                    ON CONFLICT (dedupe_key) WHERE dedupe_key IS NOT NULL DO NOTHING
                    RETURNING id
                    """,
                    txn.id,
                    txn.user_id,
                    txn.group_id,
                    txn.amount,
                    txn.reason,
                    txn.category.value,
                    txn.related_entity_id,
                    _json_in(txn.metadata),
                    dedupe_key,
                    txn.created_at,
                )
                if inserted is None:
                    raise DuplicateRecord(
                        f"Reward already granted for bucket {dedupe_key}",
                        dedupe_key=dedupe_key,
                    )
                current = await self._lock_progress(conn, txn.user_id)
                updated, levels_gained = apply_xp_delta(current, txn.amount, level_xp_unit)
                await self._save_progress(conn, updated)
        return updated, levels_gained

    async def update_progress(self, user_id: str, mutate: ProgressMutation) -> UserProgress:
        async with translate_errors("update_progress"):
            async with run_in_transaction(self._pool) as conn:
                current = await self._lock_progress(conn, user_id)
                updated = mutate(current.model_copy())
                if updated is None:
                    return current
                updated = updated.model_copy(update={"version": current.version + 1})
                await self._save_progress(conn, updated)
        return updated

    async def has_transaction_since(
        self,
        user_id: str,
        reason: str,
        related_entity_id: Optional[str],
        since: datetime,
    ) -> bool:
        async with translate_errors("has_transaction_since"):
            async with self._pool.acquire() as conn:
                found = await fetchval_with_conn(
                    conn,
                    """
                    SELECT EXISTS (
                        SELECT 1 FROM xp_transactions
                        WHERE user_id = $1
                          AND reason = $2
                          AND related_entity_id IS NOT DISTINCT FROM $3
                          AND created_at >= $4
                    )
                    """,
                    user_id,
                    reason,
                    related_entity_id,
                    since,
                )
        return bool(found)

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
        order = "ASC" if ascending else "DESC"
        sql = f"""
            SELECT id, user_id, group_id, amount, reason, category,
                   related_entity_id, metadata, created_at
            FROM xp_transactions
            WHERE user_id = $1
              AND ($2::text IS NULL OR reason = $2)
              AND ($3::timestamptz IS NULL OR created_at >= $3)
              AND ($4::timestamptz IS NULL OR created_at <= $4)
            ORDER BY created_at {order}
            LIMIT $5
        """
        async with translate_errors("list_transactions"):
            async with self._pool.acquire() as conn:
                rows = await fetch_with_conn(conn, sql, user_id, reason, since, until, limit)
        return [row_to_transaction(r) for r in rows]

    async def count_transactions(self, user_id: str, reason: str) -> int:
        async with translate_errors("count_transactions"):
            async with self._pool.acquire() as conn:
                count = await fetchval_with_conn(
                    conn,
                    "SELECT COUNT(*) FROM xp_transactions WHERE user_id = $1 AND reason = $2",
                    user_id,
                    reason,
                )
        return int(count or 0)

    # ---- Achievements -----------------------------------------------------------

    async def get_achievement(self, user_id: str, achievement_type: str) -> Optional[Achievement]:
        async with translate_errors("get_achievement"):
            async with self._pool.acquire() as conn:
                row = await fetchrow_with_conn(
                    conn,
                    "SELECT * FROM achievements WHERE user_id = $1 AND achievement_type = $2",
                    user_id,
                    achievement_type,
                )
        return row_to_achievement(row) if row else None

    async def insert_achievement(self, achievement: Achievement) -> Achievement:
        # UniqueViolationError -> DuplicateRecord via translate_errors
        async with translate_errors("insert_achievement"):
            async with self._pool.acquire() as conn:
                row = await fetchrow_with_conn(
                    conn,
                    """
                    INSERT INTO achievements (
                        id, user_id, achievement_type, achievement_name,
                        achievement_description, xp_reward, unlocked_at, metadata
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, CAST($8 AS JSONB))
                    RETURNING *
                    """,
                    achievement.id,
                    achievement.user_id,
                    achievement.achievement_type,
                    achievement.achievement_name,
                    achievement.achievement_description,
                    achievement.xp_reward,
                    achievement.unlocked_at,
                    _json_in(achievement.metadata),
                )
        return row_to_achievement(row)

    async def list_achievements(self, user_id: str) -> List[Achievement]:
        async with translate_errors("list_achievements"):
            async with self._pool.acquire() as conn:
                rows = await fetch_with_conn(
                    conn,
                    "SELECT * FROM achievements WHERE user_id = $1 ORDER BY unlocked_at DESC",
                    user_id,
                )
        return [row_to_achievement(r) for r in rows]

    # ---- Peer validations -------------------------------------------------------

    async def insert_validation(self, validation: PeerValidation) -> PeerValidation:
        async with translate_errors("insert_validation"):
            async with self._pool.acquire() as conn:
                row = await fetchrow_with_conn(
                    conn,
                    f"""
                    INSERT INTO peer_validations (
                        id, owner_id, group_id, action_type, action_description,
                        xp_amount, related_entity_id, metadata, status, validators,
                        required_validations, created_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, CAST($8 AS JSONB), $9, $10, $11, $12)
                    RETURNING {_VALIDATION_COLUMNS}
                    """,
                    validation.id,
                    validation.owner_id,
                    validation.group_id,
                    validation.action_type,
                    validation.action_description,
                    validation.xp_amount,
                    validation.related_entity_id,
                    _json_in(validation.metadata),
                    validation.status.value,
                    validation.validators,
                    validation.required_validations,
                    validation.created_at,
                )
        return row_to_validation(row)

    async def _fetch_validation(
        self,
        conn: asyncpg.Connection,
        validation_id: str,
        *,
        for_update: bool = False,
    ) -> PeerValidation:
        lock = " FOR UPDATE" if for_update else ""
        row = await fetchrow_with_conn(
            conn,
            f"SELECT {_VALIDATION_COLUMNS} FROM peer_validations WHERE id = $1{lock}",
            validation_id,
        )
        if row is None:
            raise NotFound(f"Validation {validation_id} not found", validation_id=validation_id)
        return row_to_validation(row)

    async def _save_resolution(self, conn: asyncpg.Connection, validation: PeerValidation) -> None:
        await execute_with_conn(
            conn,
            """
            UPDATE peer_validations
            SET validators = $2, status = $3, resolved_at = $4, resolved_by = $5
            WHERE id = $1
            """,
            validation.id,
            validation.validators,
            validation.status.value,
            validation.resolved_at,
            validation.resolved_by,
        )

    async def get_validation(self, validation_id: str) -> PeerValidation:
        async with translate_errors("get_validation"):
            async with self._pool.acquire() as conn:
                return await self._fetch_validation(conn, validation_id)

    async def record_approval(
        self,
        validation_id: str,
        validator_id: str,
        now: datetime,
    ) -> Tuple[PeerValidation, bool]:
        async with translate_errors("record_approval"):
            async with run_in_transaction(self._pool) as conn:
                current = await self._fetch_validation(conn, validation_id, for_update=True)
                validation, reached = apply_approval(current, validator_id, now)
                await self._save_resolution(conn, validation)
        return validation, reached

    async def record_rejection(
        self,
        validation_id: str,
        validator_id: str,
        now: datetime,
    ) -> PeerValidation:
        async with translate_errors("record_rejection"):
            async with run_in_transaction(self._pool) as conn:
                current = await self._fetch_validation(conn, validation_id, for_update=True)
                validation = apply_rejection(current, validator_id, now)
                await self._save_resolution(conn, validation)
        return validation

    async def expire_pending_before(self, cutoff: datetime, now: datetime) -> List[PeerValidation]:
        async with translate_errors("expire_pending_before"):
            async with run_in_transaction(self._pool) as conn:
                rows = await fetch_with_conn(
                    conn,
                    f"""
                    UPDATE peer_validations
                    SET status = 'expired', resolved_at = $2
                    WHERE status = 'pending' AND created_at < $1
                    RETURNING {_VALIDATION_COLUMNS}
                    """,
                    cutoff,
                    now,
                )
        return [row_to_validation(r) for r in rows]

    async def list_validations(
        self,
        *,
        group_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        status: Optional[ValidationStatus] = None,
        exclude_owner_id: Optional[str] = None,
    ) -> List[PeerValidation]:
        sql = f"""
            SELECT {_VALIDATION_COLUMNS}
            FROM peer_validations
            WHERE ($1::text IS NULL OR group_id = $1)
              AND ($2::text IS NULL OR owner_id = $2)
              AND ($3::text IS NULL OR status = $3)
              AND ($4::text IS NULL OR owner_id <> $4)
            ORDER BY created_at DESC
        """
        async with translate_errors("list_validations"):
            async with self._pool.acquire() as conn:
                rows = await fetch_with_conn(
                    conn,
                    sql,
                    group_id,
                    owner_id,
                    status.value if status is not None else None,
                    exclude_owner_id,
                )
        return [row_to_validation(r) for r in rows]
