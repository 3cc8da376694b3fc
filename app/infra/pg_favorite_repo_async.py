# app/infra/pg_favorite_repo_async.py
"""Async Postgres repository for user favorites."""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any
from uuid import UUID

import asyncpg

from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.pg_helpers import affected_rows
from app.infra.pg_website_repo_async import AsyncPostgresWebsiteRepository, WebsiteRecord

logger = get_logger(__name__)


@dataclass
class FavoriteRecord:
    id: UUID
    user_id: UUID
    website_id: UUID
    created_at: datetime | None = None
    website: WebsiteRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class FavoriteAlreadyExistsError(Exception):
    """Raised when the website is already in the user's favorites."""


class FavoriteNotFoundError(Exception):
    """Raised when removing a favorite that does not exist."""


class FavoriteTargetError(Exception):
    """Raised when the user or website referenced does not exist."""


class AsyncPostgresFavoriteRepository:
    """Favorites keyed by (user_id, website_id)."""

    async def list_for_user(self, user_id: UUID) -> list[FavoriteRecord]:
        """A user's favorites with their websites, newest first."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT f.id AS favorite_id, f.user_id, f.created_at AS favorited_at,
                       w.id, w.category_id, w.title, w.url, w.description, w.favicon_url,
                       w.logo_url, w.sort_order, w.is_featured, w.is_visible, w.click_count,
                       w.created_by, w.created_at, w.updated_at,
                       c.name AS category_name, c.icon AS category_icon
                FROM user_favorites f
                JOIN websites w ON w.id = f.website_id
                LEFT JOIN categories c ON c.id = w.category_id
                WHERE f.user_id = $1
                ORDER BY f.created_at DESC
                """,
                user_id,
            )

        return [
            FavoriteRecord(
                id=r["favorite_id"],
                user_id=r["user_id"],
                website_id=r["id"],
                created_at=r["favorited_at"],
                website=AsyncPostgresWebsiteRepository._row_to_record(r),
            )
            for r in rows
        ]

    async def add(self, user_id: UUID, website_id: UUID) -> FavoriteRecord:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO user_favorites (user_id, website_id)
                    VALUES ($1, $2)
                    RETURNING id, user_id, website_id, created_at
                    """,
                    user_id,
                    website_id,
                )
        except asyncpg.UniqueViolationError as e:
            raise FavoriteAlreadyExistsError(f"Website '{website_id}' is already a favorite") from e
        except asyncpg.ForeignKeyViolationError as e:
            raise FavoriteTargetError(f"Website '{website_id}' or user not found") from e

        logger.info("Favorite added", extra={"user_id": str(user_id), "website_id": str(website_id)})
        return FavoriteRecord(
            id=row["id"],
            user_id=row["user_id"],
            website_id=row["website_id"],
            created_at=row["created_at"],
        )

    async def remove(self, user_id: UUID, website_id: UUID) -> None:
        async with safe_db_conn() as conn:
            status = await conn.execute(
                "DELETE FROM user_favorites WHERE user_id = $1 AND website_id = $2",
                user_id,
                website_id,
            )
        if affected_rows(status) == 0:
            raise FavoriteNotFoundError(f"Website '{website_id}' is not a favorite")

    async def is_favorited(self, user_id: UUID, website_id: UUID) -> bool:
        async with safe_db_conn() as conn:
            found = await conn.fetchval(
                "SELECT 1 FROM user_favorites WHERE user_id = $1 AND website_id = $2",
                user_id,
                website_id,
            )
        return found is not None


_favorite_repo: AsyncPostgresFavoriteRepository | None = None


def get_favorite_repo() -> AsyncPostgresFavoriteRepository:
    global _favorite_repo
    if _favorite_repo is None:
        _favorite_repo = AsyncPostgresFavoriteRepository()
    return _favorite_repo
