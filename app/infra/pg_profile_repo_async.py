# app/infra/pg_profile_repo_async.py
"""Async Postgres repository for user profiles (identity lives upstream)."""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.pg_helpers import affected_rows

logger = get_logger(__name__)

UserRole = Literal["user", "admin"]

_COLUMNS = "id, username, role, avatar_url, created_at, updated_at"


@dataclass
class ProfileRecord:
    id: UUID
    username: str | None
    role: str
    avatar_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ProfileNotFoundError(Exception):
    """Raised when a profile is not found."""


class AsyncPostgresProfileRepository:

    @staticmethod
    def _row_to_record(row) -> ProfileRecord:
        return ProfileRecord(
            id=row["id"],
            username=row["username"],
            role=row["role"],
            avatar_url=row["avatar_url"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def get(self, user_id: UUID) -> ProfileRecord | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM profiles WHERE id = $1", user_id)
        return self._row_to_record(row) if row else None

    async def list_all(self) -> list[ProfileRecord]:
        """All profiles, newest first."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(f"SELECT {_COLUMNS} FROM profiles ORDER BY created_at DESC")
        return [self._row_to_record(r) for r in rows]

    async def update_role(self, user_id: UUID, role: UserRole) -> None:
        if role not in ("user", "admin"):
            raise ValueError(f"Unknown role: {role}")

        async with safe_db_conn() as conn:
            status = await conn.execute(
                "UPDATE profiles SET role = $2, updated_at = now() WHERE id = $1",
                user_id,
                role,
            )
        if affected_rows(status) == 0:
            raise ProfileNotFoundError(f"User '{user_id}' not found")
        logger.info(f"User role updated: role={role}", extra={"user_id": str(user_id)})


_profile_repo: AsyncPostgresProfileRepository | None = None


def get_profile_repo() -> AsyncPostgresProfileRepository:
    global _profile_repo
    if _profile_repo is None:
        _profile_repo = AsyncPostgresProfileRepository()
    return _profile_repo
