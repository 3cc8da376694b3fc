# app/infra/schema_validator.py
"""
Schema version check run at startup.

The application never migrates on boot. Migrations run separately
(``python -m app.infra.migrate``) and the app refuses to start when the
latest applied migration is not the one this build expects.
"""
from __future__ import annotations

from app.config import settings
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_MIGRATIONS_TABLE_EXISTS = """
    SELECT EXISTS (
        SELECT FROM information_schema.tables
        WHERE table_schema = 'public' AND table_name = 'schema_migrations'
    )
"""

_MIGRATE_HINT = "Run migrations first: python -m app.infra.migrate"


async def validate_schema_version() -> dict:
    """
    Ensure the latest applied migration matches settings.expected_schema_version.

    Raises:
        RuntimeError: schema missing, empty or at another version
    """
    async with db_conn() as conn:
        if not await conn.fetchval(_MIGRATIONS_TABLE_EXISTS):
            error = f"Schema migrations table not found. {_MIGRATE_HINT}"
            logger.critical(error)
            raise RuntimeError(error)

        latest = await conn.fetchrow(
            "SELECT version, applied_at FROM schema_migrations ORDER BY version DESC LIMIT 1"
        )

    if not latest:
        error = f"No migrations have been applied. {_MIGRATE_HINT}"
        logger.critical(error)
        raise RuntimeError(error)

    current = latest["version"]
    expected = settings.expected_schema_version
    if current != expected:
        error = f"Schema version mismatch: expected {expected}, found {current}. {_MIGRATE_HINT}"
        logger.critical(error, extra={"expected": expected, "current": current})
        raise RuntimeError(error)

    return {"ok": True, "current_version": current, "expected_version": expected}


async def get_schema_info() -> dict:
    """Applied migrations summary for the detailed health endpoint."""
    async with db_conn() as conn:
        if not await conn.fetchval(_MIGRATIONS_TABLE_EXISTS):
            return {"initialized": False, "migrations_applied": 0, "latest_version": None}

        rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")

    versions = [r["version"] for r in rows]
    latest = versions[-1] if versions else None
    return {
        "initialized": True,
        "migrations_applied": len(versions),
        "latest_version": latest,
        "expected_version": settings.expected_schema_version,
        "is_compatible": latest == settings.expected_schema_version,
    }
