# app/infra/pg_category_repo_async.py
"""
Async Postgres repository for website categories.

Categories form a two-level tree through parent_id; the tree is folded in
Python from a flat, sort_order-ordered list.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any
from uuid import UUID

import asyncpg

from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.pg_helpers import affected_rows, build_update_clause

logger = get_logger(__name__)

_COLUMNS = "id, name, description, icon, parent_id, sort_order, is_visible, created_at, updated_at"
_WRITABLE = ("name", "description", "icon", "parent_id", "sort_order", "is_visible")


@dataclass
class CategoryRecord:
    id: UUID
    name: str
    description: str | None = None
    icon: str | None = None
    parent_id: UUID | None = None
    sort_order: int = 0
    is_visible: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    children: list["CategoryRecord"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CategoryNotFoundError(Exception):
    """Raised when a category is not found."""


class CategoryParentError(Exception):
    """Raised when parent_id does not reference an existing category."""


def build_category_tree(categories: list[CategoryRecord]) -> list[CategoryRecord]:
    """
    Fold a flat list into root categories with nested children.

    Input order is kept at every level. Children whose parent is not in the
    list are dropped rather than promoted to roots.
    """
    by_id = {c.id: c for c in categories}
    for c in categories:
        c.children = []

    roots: list[CategoryRecord] = []
    for c in categories:
        if c.parent_id is None:
            roots.append(c)
            continue
        parent = by_id.get(c.parent_id)
        if parent is not None:
            parent.children.append(c)
    return roots


class AsyncPostgresCategoryRepository:
    """Category CRUD."""

    @staticmethod
    def _row_to_record(row) -> CategoryRecord:
        return CategoryRecord(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            icon=row["icon"],
            parent_id=row["parent_id"],
            sort_order=row["sort_order"],
            is_visible=row["is_visible"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def list_all(self) -> list[CategoryRecord]:
        """All categories, flat, by sort_order."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM categories ORDER BY sort_order ASC, created_at ASC"
            )
        return [self._row_to_record(r) for r in rows]

    async def list_tree(self) -> list[CategoryRecord]:
        """Root categories with children attached."""
        return build_category_tree(await self.list_all())

    async def get(self, category_id: UUID) -> CategoryRecord | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM categories WHERE id = $1", category_id
            )
        return self._row_to_record(row) if row else None

    async def create(self, fields: dict[str, Any]) -> CategoryRecord:
        columns = [k for k in _WRITABLE if k in fields]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"INSERT INTO categories ({', '.join(columns)}) "
                    f"VALUES ({placeholders}) RETURNING {_COLUMNS}",
                    *[fields[c] for c in columns],
                )
        except asyncpg.ForeignKeyViolationError as e:
            raise CategoryParentError(f"Parent category '{fields.get('parent_id')}' not found") from e

        record = self._row_to_record(row)
        logger.info(f"Category created: id={record.id}, name={record.name}")
        return record

    async def update(self, category_id: UUID, fields: dict[str, Any]) -> CategoryRecord:
        """Partial update. Raises CategoryNotFoundError."""
        clause, values = build_update_clause(fields, _WRITABLE)
        if not clause:
            record = await self.get(category_id)
            if record is None:
                raise CategoryNotFoundError(f"Category '{category_id}' not found")
            return record

        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"UPDATE categories {clause} WHERE id = $1 RETURNING {_COLUMNS}",
                    category_id,
                    *values,
                )
        except asyncpg.ForeignKeyViolationError as e:
            raise CategoryParentError(f"Parent category '{fields.get('parent_id')}' not found") from e

        if not row:
            raise CategoryNotFoundError(f"Category '{category_id}' not found")
        return self._row_to_record(row)

    async def delete(self, category_id: UUID) -> None:
        """Delete a category (children and their websites cascade)."""
        async with safe_db_conn() as conn:
            status = await conn.execute("DELETE FROM categories WHERE id = $1", category_id)
        if affected_rows(status) == 0:
            raise CategoryNotFoundError(f"Category '{category_id}' not found")
        logger.info(f"Category deleted: id={category_id}")


_category_repo: AsyncPostgresCategoryRepository | None = None


def get_category_repo() -> AsyncPostgresCategoryRepository:
    global _category_repo
    if _category_repo is None:
        _category_repo = AsyncPostgresCategoryRepository()
    return _category_repo
