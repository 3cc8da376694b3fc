# app/infra/db_resilience_async.py
"""
Retry on transient asyncpg errors.

Only connection-level failures are retried. Constraint violations and
other statement errors propagate on the first attempt.
"""
from __future__ import annotations
import asyncio
from typing import Callable
from contextlib import AsyncExitStack, asynccontextmanager
from functools import wraps

import asyncpg
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
)


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Too many connections
    - Deadlock
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        ConnectionError,
    )):
        return True

    # Integrity and syntax errors are never transient, whatever they say
    if isinstance(exc, (asyncpg.IntegrityConstraintViolationError, asyncpg.PostgresSyntaxError)):
        return False

    if not isinstance(exc, (asyncpg.PostgresError, OSError)):
        return False

    message = str(exc).lower()
    return any(pattern in message for pattern in _TRANSIENT_PATTERNS)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry an async function on transient database errors.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def get_website(website_id):
            async with db_conn() as conn:
                return await conn.fetchrow("SELECT * FROM websites WHERE id = $1", website_id)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc) or attempt >= max_retries:
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Acquire a connection, retrying transient failures while acquiring.

    Errors raised inside the caller's block are never retried here, since
    the block may already have had side effects.
    """
    max_retries = 3
    delay = 0.1

    for attempt in range(max_retries + 1):
        stack = AsyncExitStack()
        try:
            conn = await stack.enter_async_context(db_conn(autocommit=autocommit))
        except Exception as exc:
            if not is_transient_error(exc) or attempt >= max_retries:
                AppMetrics.database_error("acquire")
                raise
            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)
            continue

        async with stack:
            try:
                yield conn
            except Exception as exc:
                # Statement errors the caller handles (FK, missing function) are not counted
                if is_transient_error(exc):
                    AppMetrics.database_error("query")
                raise
        return
