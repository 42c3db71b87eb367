# progression/services/activity_source.py
"""
Read-only access to the host application's partner and timeline data.

Achievement predicates and reward triggers consult these facts; the engine
never writes them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

import asyncpg

from progression.models.progress import PartnerSnapshot, TimelineEventSnapshot
from progression.services.db_service import (
    fetch_with_conn,
    fetchval_with_conn,
    translate_errors,
)

GRAVEYARD_STATUS = "Graveyard"


class ActivitySource(ABC):
    @abstractmethod
    async def list_partners(self, user_id: str) -> List[PartnerSnapshot]:
        ...

    @abstractmethod
    async def count_timeline_events(
        self,
        user_id: str,
        *,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        partner_id: Optional[str] = None,
    ) -> int:
        ...

    async def count_breakups_since(self, user_id: str, since: datetime) -> int:
        partners = await self.list_partners(user_id)
        return sum(
            1 for p in partners
            if p.status == GRAVEYARD_STATUS
            and p.graveyard_date is not None
            and p.graveyard_date >= since
        )


class InMemoryActivitySource(ActivitySource):
    def __init__(self) -> None:
        self._partners: Dict[str, PartnerSnapshot] = {}
        self._events: List[TimelineEventSnapshot] = []

    def upsert_partner(self, partner: PartnerSnapshot) -> None:
        self._partners[partner.id] = partner

    def add_timeline_event(self, event: TimelineEventSnapshot) -> None:
        self._events.append(event)

    async def list_partners(self, user_id: str) -> List[PartnerSnapshot]:
        return [p for p in self._partners.values() if p.user_id == user_id]

    async def count_timeline_events(
        self,
        user_id: str,
        *,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        partner_id: Optional[str] = None,
    ) -> int:
        return sum(
            1 for e in self._events
            if e.user_id == user_id
            and (event_type is None or e.event_type == event_type)
            and (severity is None or e.severity == severity)
            and (partner_id is None or e.partner_id == partner_id)
        )


class PostgresActivitySource(ActivitySource):
    """Reads the host's ``partners`` and ``timeline_events`` tables."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def list_partners(self, user_id: str) -> List[PartnerSnapshot]:
        sql = """
            SELECT id::text AS id, user_id::text AS user_id, status,
                   simp_index, intimacy_score, graveyard_date, updated_at
            FROM partners
            WHERE user_id::text = $1
        """
        async with translate_errors("list_partners"):
            async with self._pool.acquire() as conn:
                rows = await fetch_with_conn(conn, sql, user_id)
        return [PartnerSnapshot(**dict(r)) for r in rows]

    async def count_timeline_events(
        self,
        user_id: str,
        *,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        partner_id: Optional[str] = None,
    ) -> int:
        sql = """
            SELECT COUNT(*)
            FROM timeline_events te
            JOIN partners p ON p.id = te.partner_id
            WHERE p.user_id::text = $1
              AND ($2::text IS NULL OR te.event_type = $2)
              AND ($3::text IS NULL OR te.severity = $3)
              AND ($4::text IS NULL OR te.partner_id::text = $4)
        """
        async with translate_errors("count_timeline_events"):
            async with self._pool.acquire() as conn:
                count = await fetchval_with_conn(conn, sql, user_id, event_type, severity, partner_id)
        return int(count or 0)

    async def count_breakups_since(self, user_id: str, since: datetime) -> int:
        sql = """
            SELECT COUNT(*)
            FROM partners
            WHERE user_id::text = $1
              AND status = $2
              AND graveyard_date >= $3
        """
        async with translate_errors("count_breakups_since"):
            async with self._pool.acquire() as conn:
                count = await fetchval_with_conn(conn, sql, user_id, GRAVEYARD_STATUS, since)
        return int(count or 0)
