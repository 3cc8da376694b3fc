# app/infra/pg_visit_repo_async.py
"""Async Postgres repository for website visit records."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import UUID

import asyncpg

from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Stored user agents are truncated to this many characters
MAX_USER_AGENT_LENGTH = 512

_WEBSITE_FK = "visit_stats_website_id_fkey"


class VisitTargetError(Exception):
    """Raised when the visited website no longer exists."""


class AsyncPostgresVisitRepository:
    """Append-only visit log used for per-website statistics."""

    async def record_visit(
        self,
        website_id: UUID,
        user_id: UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """
        Append one visit.

        A user id without a profile row (signed in upstream, never synced)
        is recorded as an anonymous visit instead of failing the click.
        """
        if user_agent:
            user_agent = user_agent[:MAX_USER_AGENT_LENGTH]

        try:
            await self._insert(website_id, user_id, ip_address, user_agent)
        except asyncpg.ForeignKeyViolationError as e:
            if user_id is None or e.constraint_name == _WEBSITE_FK:
                raise VisitTargetError(f"Website '{website_id}' not found") from e
            logger.warning(
                "Visit from user without profile, recording anonymously",
                extra={"user_id": str(user_id), "website_id": str(website_id)},
            )
            await self._insert(website_id, None, ip_address, user_agent)

    @staticmethod
    async def _insert(website_id, user_id, ip_address, user_agent) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO visit_stats (website_id, user_id, ip_address, user_agent)
                VALUES ($1, $2, $3, $4)
                """,
                website_id,
                user_id,
                ip_address,
                user_agent,
            )

    async def count_visits(
        self,
        website_id: UUID,
        days: int = 30,
        now: datetime | None = None,
    ) -> int:
        """Visits to a website within the trailing ``days`` window."""
        since = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        async with safe_db_conn() as conn:
            count = await conn.fetchval(
                "SELECT count(*) FROM visit_stats WHERE website_id = $1 AND visited_at >= $2",
                website_id,
                since,
            )
        return count or 0


_visit_repo: AsyncPostgresVisitRepository | None = None


def get_visit_repo() -> AsyncPostgresVisitRepository:
    global _visit_repo
    if _visit_repo is None:
        _visit_repo = AsyncPostgresVisitRepository()
    return _visit_repo
