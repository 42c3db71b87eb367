# progression/services/db_service.py
from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from time import monotonic
from typing import Any, AsyncIterator, List, Optional
from urllib.parse import urlparse

import asyncpg

from progression.core.errors import DuplicateRecord, StoreUnavailable
from progression.core.logging import get_logger

logger = get_logger()

# --------------------------------------------------------------------
# DB config
# --------------------------------------------------------------------
APPLICATION_NAME = "progression-engine"
STATEMENT_TIMEOUT_MS = int(os.getenv("STATEMENT_TIMEOUT_MS", "30000"))
IDLE_IN_TX_TIMEOUT_MS = int(os.getenv("IDLE_IN_TX_TIMEOUT_MS", "60000"))
LOCK_TIMEOUT_MS = int(os.getenv("LOCK_TIMEOUT_MS", "5000"))
DB_POOL_MIN_SIZE = int(os.getenv("DB_POOL_MIN_SIZE", "1"))
DB_POOL_MAX_SIZE = int(os.getenv("DB_POOL_MAX_SIZE", "4"))
DEFAULT_QUERY_TIMEOUT_MS = int(os.getenv("DEFAULT_QUERY_TIMEOUT_MS", "30000"))
SLOW_QUERY_THRESHOLD_MS = 1_000

# Errors after which the caller may retry with the same inputs.
TRANSIENT_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.QueryCanceledError,
    asyncio.TimeoutError,
    OSError,
)


def normalize_database_url(raw_dsn: str) -> str:
    """
    Only rewrite the scheme from postgresql+asyncpg:// to postgresql://.
    """
    raw_dsn = raw_dsn.strip()
    if raw_dsn.startswith("postgresql+asyncpg://"):
        raw_dsn = "postgresql://" + raw_dsn[len("postgresql+asyncpg://"):]
    return raw_dsn


async def create_pool(dsn: str) -> asyncpg.Pool:
    final_dsn = normalize_database_url(dsn)
    parsed = urlparse(final_dsn)
    logger.info(
        "db_pool_initializing",
        dsn_host=parsed.hostname,
        dsn_port=parsed.port,
        application_name=APPLICATION_NAME,
    )
    try:
        return await asyncpg.create_pool(
            dsn=final_dsn,
            min_size=DB_POOL_MIN_SIZE,
            max_size=DB_POOL_MAX_SIZE,
            command_timeout=60,
            timeout=60,
            statement_cache_size=0,
            max_inactive_connection_lifetime=30,
            server_settings={
                "application_name": APPLICATION_NAME,
                "statement_timeout": str(STATEMENT_TIMEOUT_MS),
                "idle_in_transaction_session_timeout": str(IDLE_IN_TX_TIMEOUT_MS),
                "lock_timeout": str(LOCK_TIMEOUT_MS),
            },
        )
    except TRANSIENT_ERRORS as e:
        raise StoreUnavailable(f"Could not connect to database: {e}") from e


@asynccontextmanager
async def translate_errors(operation: str) -> AsyncIterator[None]:
    """
    Map asyncpg failures onto the engine's error taxonomy.
    """
    try:
        yield
    except asyncpg.exceptions.UniqueViolationError as e:
        raise DuplicateRecord(
            f"{operation}: unique constraint violated",
            constraint=getattr(e, "constraint_name", None),
        ) from e
    except TRANSIENT_ERRORS as e:
        logger.warning("db_store_unavailable", operation=operation, error=str(e))
        raise StoreUnavailable(f"{operation}: {e}", operation=operation) from e


async def _execute_with_timing(
    conn: asyncpg.Connection,
    method: str,
    query: str,
    *args: Any,
    timeout: Optional[float] = None,
) -> Any:
    start_ms = monotonic() * 1000
    try:
        func = getattr(conn, method)
        effective_timeout = (
            timeout if timeout is not None else DEFAULT_QUERY_TIMEOUT_MS / 1000
        )
        return await func(query, *args, timeout=effective_timeout)
    finally:
        duration_ms = (monotonic() * 1000) - start_ms
        if duration_ms >= SLOW_QUERY_THRESHOLD_MS:
            logger.warning(
                "db_slow_query",
                duration_ms=round(duration_ms, 2),
                method=method,
                arg_count=len(args),
                query_snippet=query.strip().split("\n")[0][:200],
            )


@asynccontextmanager
async def run_in_transaction(
    pool: asyncpg.Pool,
    *,
    isolation: Optional[str] = None,
) -> AsyncIterator[asyncpg.Connection]:
    async with pool.acquire() as conn:
        tx = conn.transaction(isolation=isolation)
        await tx.start()
        try:
            yield conn
        except Exception:
            await tx.rollback()
            raise
        else:
            await tx.commit()


async def fetch_with_conn(
    conn: asyncpg.Connection,
    query: str,
    *args: Any,
    timeout: Optional[float] = None,
) -> List[asyncpg.Record]:
    return await _execute_with_timing(conn, "fetch", query, *args, timeout=timeout)


async def fetchrow_with_conn(
    conn: asyncpg.Connection,
    query: str,
    *args: Any,
    timeout: Optional[float] = None,
) -> Optional[asyncpg.Record]:
    return await _execute_with_timing(conn, "fetchrow", query, *args, timeout=timeout)


async def fetchval_with_conn(conn: asyncpg.Connection, query: str, *args: Any) -> Any:
    return await _execute_with_timing(conn, "fetchval", query, *args)


async def execute_with_conn(
    conn: asyncpg.Connection,
    query: str,
    *args: Any,
    timeout: Optional[float] = None,
) -> str:
    return await _execute_with_timing(conn, "execute", query, *args, timeout=timeout)
