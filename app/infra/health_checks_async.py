# app/infra/health_checks_async.py
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Dict

from botocore.exceptions import BotoCoreError, ClientError

from app.infra.db_async import get_pool
from app.infra.logging_config import get_logger
from app.infra.schema_validator import get_schema_info

logger = get_logger(__name__)

REQUIRED_TABLES = ("categories", "websites", "profiles", "user_favorites", "site_settings", "visit_stats")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    """Base class for async health checks"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        """Return a dict with 'status', 'details' and optionally 'error'."""
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Database reachable and directory tables present"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.monotonic()
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                missing = [
                    t for t in REQUIRED_TABLES
                    if await conn.fetchval("SELECT to_regclass($1)", t) is None
                ]
                has_click_fn = await conn.fetchval(
                    "SELECT EXISTS (SELECT 1 FROM pg_proc WHERE proname = 'increment_click_count')"
                )
        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200],
            }

        if missing:
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Missing required tables",
                "error": f"Missing: {', '.join(missing)}",
            }

        duration = time.monotonic() - start
        if not has_click_fn:
            return {
                "status": HealthStatus.DEGRADED,
                "details": "increment_click_count() missing, clicks use the non-atomic fallback",
                "response_time": duration,
            }
        if duration > 1.0:
            return {
                "status": HealthStatus.DEGRADED,
                "details": f"Slow database response: {duration:.3f}s",
                "response_time": duration,
            }
        return {
            "status": HealthStatus.HEALTHY,
            "details": "Database operational",
            "response_time": duration,
        }


class AsyncStorageHealthCheck(AsyncHealthCheck):
    """Image bucket reachable (non-critical: browsing works without it)"""

    def __init__(self):
        super().__init__("storage", critical=False)

    async def check(self) -> Dict[str, Any]:
        from app.infra.s3_storage import get_s3_storage, is_s3_available

        if not is_s3_available():
            return {"status": HealthStatus.DEGRADED, "details": "Storage not configured"}

        storage = get_s3_storage()
        try:
            await asyncio.to_thread(storage.client.head_bucket, Bucket=storage.bucket)
        except (ClientError, BotoCoreError) as exc:
            logger.error("Storage health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Bucket not reachable",
                "error": str(exc)[:200],
            }
        return {"status": HealthStatus.HEALTHY, "details": f"Bucket '{storage.bucket}' reachable"}


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, checks: list[AsyncHealthCheck] | None = None):
        self.checks: list[AsyncHealthCheck] = checks if checks is not None else [
            AsyncDatabaseHealthCheck(),
            AsyncStorageHealthCheck(),
        ]

    async def run_checks(self, include_non_critical: bool = True, include_schema: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {"status": "healthy" | "degraded" | "unhealthy", "checks": {...},
             "schema": {...}, "timestamp": float}
        """
        results = {}
        overall_status = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall_status = HealthStatus.UNHEALTHY
            elif result["status"] != HealthStatus.HEALTHY and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        report: Dict[str, Any] = {
            "status": overall_status.value,
            "checks": results,
            "timestamp": time.time(),
        }
        if include_schema and overall_status != HealthStatus.UNHEALTHY:
            report["schema"] = await get_schema_info()
        return report


_async_health_checker = AsyncHealthChecker()


def get_async_health_checker() -> AsyncHealthChecker:
    """Get the global async health checker"""
    return _async_health_checker
