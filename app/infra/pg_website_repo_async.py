# app/infra/pg_website_repo_async.py
"""
Async Postgres repository for directory websites.

Click counting uses two tiers:
1. increment_click_count(uuid) SQL function: a single atomic UPDATE
2. read-modify-write fallback when that function is not installed

The fallback loses increments under concurrent writers (two readers of
the same count both write count + 1). It exists so a database without
the function keeps counting approximately instead of failing the click.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any
from uuid import UUID

import asyncpg

from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics
from app.infra.pg_helpers import affected_rows, build_update_clause

logger = get_logger(__name__)

_SELECT = """
    SELECT w.id, w.category_id, w.title, w.url, w.description, w.favicon_url,
           w.logo_url, w.sort_order, w.is_featured, w.is_visible, w.click_count,
           w.created_by, w.created_at, w.updated_at,
           c.name AS category_name, c.icon AS category_icon
    FROM websites w
    LEFT JOIN categories c ON c.id = w.category_id
"""

_RETURNING = (
    "id, category_id, title, url, description, favicon_url, logo_url, sort_order, "
    "is_featured, is_visible, click_count, created_by, created_at, updated_at"
)

_WRITABLE = (
    "category_id", "title", "url", "description", "favicon_url", "logo_url",
    "sort_order", "is_featured", "is_visible",
)

# created_by is not writable through update(), so only create() can hit it
_CREATED_BY_FK = "websites_created_by_fkey"

CLICK_TIER_ATOMIC = "atomic"
CLICK_TIER_FALLBACK = "fallback"
CLICK_TIER_MISSING = "missing"


@dataclass
class WebsiteRecord:
    id: UUID
    category_id: UUID
    title: str
    url: str
    description: str | None = None
    favicon_url: str | None = None
    logo_url: str | None = None
    sort_order: int = 0
    is_featured: bool = False
    is_visible: bool = True
    click_count: int = 0
    created_by: UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    category_name: str | None = None
    category_icon: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class WebsiteNotFoundError(Exception):
    """Raised when a website is not found."""


class WebsiteCategoryError(Exception):
    """Raised when category_id does not reference an existing category."""


def escape_like(query: str) -> str:
    """Escape LIKE metacharacters so user input matches literally."""
    return query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class AsyncPostgresWebsiteRepository:
    """Website CRUD, search and click counting."""

    @staticmethod
    def _row_to_record(row) -> WebsiteRecord:
        keys = row.keys()
        return WebsiteRecord(
            id=row["id"],
            category_id=row["category_id"],
            title=row["title"],
            url=row["url"],
            description=row["description"],
            favicon_url=row["favicon_url"],
            logo_url=row["logo_url"],
            sort_order=row["sort_order"],
            is_featured=row["is_featured"],
            is_visible=row["is_visible"],
            click_count=row["click_count"],
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            category_name=row["category_name"] if "category_name" in keys else None,
            category_icon=row["category_icon"] if "category_icon" in keys else None,
        )

    async def list_all(self, category_id: UUID | None = None) -> list[WebsiteRecord]:
        """All websites (optionally one category) by sort_order."""
        async with safe_db_conn() as conn:
            if category_id is None:
                rows = await conn.fetch(f"{_SELECT} ORDER BY w.sort_order ASC, w.created_at ASC")
            else:
                rows = await conn.fetch(
                    f"{_SELECT} WHERE w.category_id = $1 ORDER BY w.sort_order ASC, w.created_at ASC",
                    category_id,
                )
        return [self._row_to_record(r) for r in rows]

    async def list_featured(self, limit: int = 10) -> list[WebsiteRecord]:
        """Featured, visible websites, most clicked first."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""{_SELECT}
                WHERE w.is_featured AND w.is_visible
                ORDER BY w.click_count DESC
                LIMIT $1
                """,
                limit,
            )
        return [self._row_to_record(r) for r in rows]

    async def search(self, query: str, limit: int = 20) -> list[WebsiteRecord]:
        """Case-insensitive match on title or description among visible websites."""
        query = query.strip()
        if not query:
            return []

        pattern = f"%{escape_like(query)}%"
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""{_SELECT}
                WHERE w.is_visible
                  AND (w.title ILIKE $1 ESCAPE '\\' OR w.description ILIKE $1 ESCAPE '\\')
                ORDER BY w.click_count DESC
                LIMIT $2
                """,
                pattern,
                limit,
            )
        return [self._row_to_record(r) for r in rows]

    async def get(self, website_id: UUID) -> WebsiteRecord | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(f"{_SELECT} WHERE w.id = $1", website_id)
        return self._row_to_record(row) if row else None

    async def create(self, fields: dict[str, Any], created_by: UUID | None = None) -> WebsiteRecord:
        """
        Insert a website. Raises WebsiteCategoryError.

        An admin id without a profile row is stored as created_by NULL.
        """
        try:
            website_id = await self._insert(fields, created_by)
        except asyncpg.ForeignKeyViolationError as e:
            if created_by is None or e.constraint_name != _CREATED_BY_FK:
                raise WebsiteCategoryError(f"Category '{fields.get('category_id')}' not found") from e
            logger.warning(
                "Website creator has no profile, storing created_by as NULL",
                extra={"user_id": str(created_by)},
            )
            try:
                website_id = await self._insert(fields, None)
            except asyncpg.ForeignKeyViolationError as e2:
                raise WebsiteCategoryError(f"Category '{fields.get('category_id')}' not found") from e2

        logger.info(f"Website created: id={website_id}, title={fields.get('title')}")
        return await self.get(website_id)

    @staticmethod
    async def _insert(fields: dict[str, Any], created_by: UUID | None) -> UUID:
        columns = [k for k in _WRITABLE if k in fields]
        values = [fields[c] for c in columns]
        columns.append("created_by")
        values.append(created_by)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))

        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"INSERT INTO websites ({', '.join(columns)}) "
                f"VALUES ({placeholders}) RETURNING id",
                *values,
            )
        return row["id"]

    async def update(self, website_id: UUID, fields: dict[str, Any]) -> WebsiteRecord:
        """Partial update. Raises WebsiteNotFoundError."""
        clause, values = build_update_clause(fields, _WRITABLE)
        if clause:
            try:
                async with safe_db_conn() as conn:
                    status = await conn.execute(
                        f"UPDATE websites {clause} WHERE id = $1", website_id, *values
                    )
            except asyncpg.ForeignKeyViolationError as e:
                raise WebsiteCategoryError(f"Category '{fields.get('category_id')}' not found") from e
            if affected_rows(status) == 0:
                raise WebsiteNotFoundError(f"Website '{website_id}' not found")

        record = await self.get(website_id)
        if record is None:
            raise WebsiteNotFoundError(f"Website '{website_id}' not found")
        return record

    async def delete(self, website_id: UUID) -> WebsiteRecord:
        """Delete a website, returning the removed row (for image cleanup)."""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"DELETE FROM websites WHERE id = $1 RETURNING {_RETURNING}", website_id
            )
        if not row:
            raise WebsiteNotFoundError(f"Website '{website_id}' not found")
        logger.info(f"Website deleted: id={website_id}")
        return self._row_to_record(row)

    async def batch_delete(self, website_ids: list[UUID]) -> list[WebsiteRecord]:
        if not website_ids:
            return []
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"DELETE FROM websites WHERE id = ANY($1::uuid[]) RETURNING {_RETURNING}",
                website_ids,
            )
        logger.info(f"Websites batch deleted: requested={len(website_ids)}, deleted={len(rows)}")
        return [self._row_to_record(r) for r in rows]

    async def batch_update_category(self, website_ids: list[UUID], category_id: UUID) -> int:
        if not website_ids:
            return 0
        try:
            async with safe_db_conn() as conn:
                status = await conn.execute(
                    "UPDATE websites SET category_id = $2, updated_at = now() "
                    "WHERE id = ANY($1::uuid[])",
                    website_ids,
                    category_id,
                )
        except asyncpg.ForeignKeyViolationError as e:
            raise WebsiteCategoryError(f"Category '{category_id}' not found") from e
        return affected_rows(status)

    async def increment_click(self, website_id: UUID) -> str:
        """
        Add one click to a website.

        Returns the tier that handled it: "atomic", "fallback", or "missing"
        when the fallback found no such website.
        """
        try:
            async with safe_db_conn() as conn:
                await conn.execute("SELECT increment_click_count($1)", website_id)
            AppMetrics.click_recorded(CLICK_TIER_ATOMIC)
            return CLICK_TIER_ATOMIC
        except asyncpg.UndefinedFunctionError:
            logger.warning(
                "increment_click_count() not installed, using read-modify-write fallback",
                extra={"website_id": str(website_id)},
            )

        tier = await self._increment_click_fallback(website_id)
        AppMetrics.click_recorded(tier)
        return tier

    async def _increment_click_fallback(self, website_id: UUID) -> str:
        # Not atomic: a concurrent click between the read and the write is lost
        async with safe_db_conn() as conn:
            current = await conn.fetchval(
                "SELECT click_count FROM websites WHERE id = $1", website_id
            )
            if current is None:
                return CLICK_TIER_MISSING
            await conn.execute(
                "UPDATE websites SET click_count = $2 WHERE id = $1",
                website_id,
                current + 1,
            )
        return CLICK_TIER_FALLBACK


_website_repo: AsyncPostgresWebsiteRepository | None = None


def get_website_repo() -> AsyncPostgresWebsiteRepository:
    global _website_repo
    if _website_repo is None:
        _website_repo = AsyncPostgresWebsiteRepository()
    return _website_repo
