#!/usr/bin/env python3
# app/infra/migrate.py
"""
Standalone migration runner.

Run migrations separately from application startup:
    python -m app.infra.migrate
"""
import asyncio
import sys

from app.infra.migrations_async import apply_migrations
from app.infra.db_async import init_pool, close_pool
from app.infra.logging_config import setup_logging, get_logger
from app.config import settings

setup_logging(level="INFO", use_json=False)
logger = get_logger(__name__)


async def main() -> int:
    logger.info(f"Running migrations: env={settings.app_env}, database={settings.pghost}:{settings.pgport}")

    await init_pool()
    try:
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result["applied"]:
        for migration in result["applied"]:
            logger.info(f"  ✓ {migration}")
    else:
        logger.info("No new migrations to apply")

    return 0 if result["ok"] else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
