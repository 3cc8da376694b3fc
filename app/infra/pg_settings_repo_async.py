# app/infra/pg_settings_repo_async.py
"""
Async Postgres repository for site settings.

Values are arbitrary JSON (site title, footer text, feature toggles...).
"""
from __future__ import annotations

import json
from typing import Any

from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.pg_helpers import parse_jsonb

logger = get_logger(__name__)


class AsyncPostgresSettingsRepository:

    async def get_all(self) -> dict[str, Any]:
        """All settings as a {key: value} mapping."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT key, value FROM site_settings ORDER BY key")
        return {r["key"]: parse_jsonb(r["value"]) for r in rows}

    async def get(self, key: str) -> Any:
        """A single setting value, or None when unset."""
        async with safe_db_conn() as conn:
            raw = await conn.fetchval("SELECT value FROM site_settings WHERE key = $1", key)
        return parse_jsonb(raw)

    async def upsert(self, key: str, value: Any, description: str | None = None) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO site_settings (key, value, description, updated_at)
                VALUES ($1, $2::jsonb, $3, now())
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    description = COALESCE(EXCLUDED.description, site_settings.description),
                    updated_at = now()
                """,
                key,
                json.dumps(value),
                description,
            )
        logger.info(f"Site setting updated: key={key}")


_settings_repo: AsyncPostgresSettingsRepository | None = None


def get_settings_repo() -> AsyncPostgresSettingsRepository:
    global _settings_repo
    if _settings_repo is None:
        _settings_repo = AsyncPostgresSettingsRepository()
    return _settings_repo
