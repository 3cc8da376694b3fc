# tests/test_infrastructure.py
"""Tests for infrastructure components"""
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from asyncpg.exceptions import PostgresError, UniqueViolationError

from app.infra.db_resilience_async import is_transient_error, retry_on_transient_error, safe_db_conn
from app.infra.metrics import get_metrics_collector


class TestDatabaseResilience:
    def test_is_transient_error_connection_error(self):
        assert is_transient_error(PostgresError("connection timeout")) is True

    def test_is_transient_error_server_closed(self):
        assert is_transient_error(PostgresError("server closed the connection unexpectedly")) is True

    def test_constraint_violation_never_transient(self):
        assert is_transient_error(UniqueViolationError("duplicate key value, connection id 4")) is False

    def test_is_transient_error_non_transient(self):
        assert is_transient_error(ValueError("some other error")) is False

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_on_first_try(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def successful_operation():
            nonlocal call_count
            call_count += 1
            return "success"

        assert await successful_operation() == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_after_transient_error(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3, initial_delay=0)
        async def operation_with_transient_error():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise PostgresError("connection timeout")
            return "success"

        assert await operation_with_transient_error() == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_retry_decorator_raises_non_transient_immediately(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def operation_with_non_transient_error():
            nonlocal call_count
            call_count += 1
            raise ValueError("not a transient error")

        with pytest.raises(ValueError):
            await operation_with_non_transient_error()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_safe_db_conn_does_not_retry_block_errors(self, db_conn_factory):
        """A failure inside the caller's block may have had side effects."""
        conn = MagicMock()
        conn.execute = AsyncMock(side_effect=PostgresError("connection reset"))

        with patch("app.infra.db_resilience_async.db_conn", db_conn_factory(conn)):
            with pytest.raises(PostgresError):
                async with safe_db_conn() as c:
                    await c.execute("UPDATE websites SET click_count = 1")

        assert conn.execute.await_count == 1
        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["database_errors_total{operation=query}"] == 1

    @pytest.mark.asyncio
    async def test_safe_db_conn_statement_error_not_counted(self, db_conn_factory):
        conn = MagicMock()
        conn.execute = AsyncMock(side_effect=UniqueViolationError("duplicate key"))

        with patch("app.infra.db_resilience_async.db_conn", db_conn_factory(conn)):
            with pytest.raises(UniqueViolationError):
                async with safe_db_conn() as c:
                    await c.execute("INSERT INTO user_favorites VALUES ($1, $2)")

        assert "database_errors_total{operation=query}" not in get_metrics_collector().get_metrics()["counters"]

    @pytest.mark.asyncio
    async def test_safe_db_conn_acquire_failure_counted(self):
        @asynccontextmanager
        async def failing_conn(autocommit: bool = True):
            raise ValueError("pool not initialized")
            yield

        with patch("app.infra.db_resilience_async.db_conn", failing_conn):
            with pytest.raises(ValueError):
                async with safe_db_conn():
                    pass

        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["database_errors_total{operation=acquire}"] == 1


class TestMetrics:
    def test_metrics_counter_increment(self):
        from app.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        collector.inc_counter("test_counter", 1)
        collector.inc_counter("test_counter", 2)
        assert collector.get_metrics()["counters"]["test_counter"] == 3

    def test_metrics_histogram_observe(self):
        from app.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        for value in (0.1, 0.2, 0.5):
            collector.observe_histogram("test_histogram", value)

        stats = collector.get_metrics()["histograms"]["test_histogram"]
        assert stats["count"] == 3
        assert stats["min"] == 0.1
        assert stats["max"] == 0.5

    def test_metrics_with_labels(self):
        from app.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        collector.inc_counter("website_clicks_total", 1, {"tier": "atomic"})
        collector.inc_counter("website_clicks_total", 2, {"tier": "fallback"})

        counters = collector.get_metrics()["counters"]
        assert counters["website_clicks_total{tier=atomic}"] == 1
        assert counters["website_clicks_total{tier=fallback}"] == 2

    def test_timer_records_duration(self):
        from app.infra.metrics import AppMetrics, get_metrics_collector

        with AppMetrics.track_upload_time():
            pass

        stats = get_metrics_collector().get_metrics()["histograms"]["image_upload_seconds"]
        assert stats["count"] == 1


class TestRateLimiter:
    def test_rate_limiter_allows_under_limit(self):
        from app.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=10, window_seconds=60)
        allowed, retry_after = limiter.is_allowed("203.0.113.1")
        assert allowed is True
        assert retry_after is None

    def test_rate_limiter_blocks_over_limit(self):
        from app.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=2, window_seconds=60)
        limiter.is_allowed("203.0.113.1", now=100.0)
        limiter.is_allowed("203.0.113.1", now=101.0)

        allowed, retry_after = limiter.is_allowed("203.0.113.1", now=102.0)
        assert allowed is False
        assert retry_after == 59

    def test_window_slides(self):
        from app.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60)
        assert limiter.is_allowed("k", now=0.0)[0] is True
        assert limiter.is_allowed("k", now=30.0)[0] is False
        assert limiter.is_allowed("k", now=61.0)[0] is True

    def test_keys_independent(self):
        from app.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60)
        assert limiter.is_allowed("a")[0] is True
        assert limiter.is_allowed("b")[0] is True


class TestHealthChecker:
    @pytest.mark.asyncio
    async def test_critical_failure_is_unhealthy(self):
        from app.infra.health_checks_async import AsyncHealthCheck, AsyncHealthChecker, HealthStatus

        db = AsyncHealthCheck("database", critical=True)
        db.check = AsyncMock(return_value={"status": HealthStatus.UNHEALTHY, "details": "down"})
        storage = AsyncHealthCheck("storage", critical=False)
        storage.check = AsyncMock(return_value={"status": HealthStatus.HEALTHY, "details": "ok"})

        result = await AsyncHealthChecker([db, storage]).run_checks()
        assert result["status"] == "unhealthy"
        assert "schema" not in result

    @pytest.mark.asyncio
    async def test_non_critical_failure_degrades(self):
        from app.infra.health_checks_async import AsyncHealthCheck, AsyncHealthChecker, HealthStatus

        db = AsyncHealthCheck("database", critical=True)
        db.check = AsyncMock(return_value={"status": HealthStatus.HEALTHY, "details": "ok"})
        storage = AsyncHealthCheck("storage", critical=False)
        storage.check = AsyncMock(return_value={"status": HealthStatus.DEGRADED, "details": "not configured"})

        result = await AsyncHealthChecker([db, storage]).run_checks(include_schema=False)
        assert result["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_readiness_skips_non_critical(self):
        from app.infra.health_checks_async import AsyncHealthCheck, AsyncHealthChecker, HealthStatus

        db = AsyncHealthCheck("database", critical=True)
        db.check = AsyncMock(return_value={"status": HealthStatus.HEALTHY, "details": "ok"})
        storage = AsyncHealthCheck("storage", critical=False)
        storage.check = AsyncMock()

        result = await AsyncHealthChecker([db, storage]).run_checks(include_non_critical=False, include_schema=False)
        assert result["status"] == "healthy"
        storage.check.assert_not_called()


class TestMigrations:
    def test_migration_files_ordered(self):
        from app.infra.migrations_async import list_migration_files

        names = [p.name for p in list_migration_files()]
        assert names[0] == "001_init.sql"
        assert names == sorted(names)

    def test_expected_version_matches_latest_file(self):
        from app.config import Settings
        from app.infra.migrations_async import list_migration_files

        assert list_migration_files()[-1].name == Settings(_env_file=None).expected_schema_version

    def test_init_defines_click_function(self):
        from app.infra.migrations_async import list_migration_files

        sql = list_migration_files()[0].read_text(encoding="utf-8")
        assert "increment_click_count" in sql
        assert "UNIQUE (user_id, website_id)" in sql


class TestRateLimiterCleanup:
    def test_cleanup_removes_idle_keys(self):
        from app.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=5, window_seconds=60)
        limiter.is_allowed("idle", now=0.0)
        limiter.is_allowed("active")

        assert limiter.cleanup() == 1
        assert limiter.is_allowed("idle", now=1.0)[0] is True

    def test_rotating_keys_stay_bounded(self):
        from app.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=5, window_seconds=60, sweep_every=100)
        for i in range(10_000):
            limiter.is_allowed(f"198.51.100.{i}", now=float(i))

        # Only keys seen in the last window survive the periodic sweep
        assert len(limiter) <= 160

    def test_sweep_keeps_active_keys(self):
        from app.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=2, window_seconds=60, sweep_every=2)
        limiter.is_allowed("busy", now=100.0)
        limiter.is_allowed("busy", now=101.0)

        allowed, _ = limiter.is_allowed("busy", now=102.0)
        assert allowed is False

    @patch("app.infra.rate_limiter.settings")
    def test_client_ip_forwarded_for_when_trusted(self, mock_settings):
        from app.infra.rate_limiter import client_ip

        mock_settings.trust_proxy_headers = True
        request = MagicMock()
        request.headers = {"X-Forwarded-For": "198.51.100.7, 10.0.0.1"}
        assert client_ip(request) == "198.51.100.7"

    @patch("app.infra.rate_limiter.settings")
    def test_client_ip_forwarded_for_ignored_by_default(self, mock_settings):
        from app.infra.rate_limiter import client_ip

        mock_settings.trust_proxy_headers = False
        request = MagicMock()
        request.headers = {"X-Forwarded-For": "1.2.3.4"}
        request.client.host = "192.0.2.10"
        assert client_ip(request) == "192.0.2.10"

    def test_client_ip_direct(self):
        from app.infra.rate_limiter import client_ip

        request = MagicMock()
        request.headers = {}
        request.client.host = "192.0.2.10"
        assert client_ip(request) == "192.0.2.10"


class TestAuditLog:
    def test_audit_event_logged(self, caplog):
        import logging

        from app.infra.audit_log import audit_event

        with caplog.at_level(logging.INFO, logger="audit"):
            audit_event("website.delete", entity="website", entity_id="abc", detail="removed")

        assert any("website.delete" in r.getMessage() for r in caplog.records)


class TestConfig:
    def test_defaults(self):
        from app.config import Settings

        s = Settings(_env_file=None)
        assert s.image_max_file_size_bytes == 1024 * 1024
        assert s.image_max_dimension == 1080
        assert s.click_rate_limit_per_minute == 60
        assert s.user_id_header == "X-User-Id"

    def test_inconsistent_quality_range_warns(self):
        from app.config import Settings, warn_on_risky_config

        s = Settings(_env_file=None, image_initial_quality=0.5, image_quality_floor=0.8)
        assert any("quality range" in w for w in warn_on_risky_config(s))

    def test_zero_quality_step_warns(self):
        from app.config import Settings, warn_on_risky_config

        s = Settings(_env_file=None, image_quality_step=0)
        assert any("image_quality_step" in w for w in warn_on_risky_config(s))
