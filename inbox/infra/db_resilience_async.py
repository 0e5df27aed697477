# inbox/infra/db_resilience_async.py
"""
Async database resilience utilities.
Transient error classification and retrying connection acquisition.
"""
from __future__ import annotations
import asyncio
from contextlib import AsyncExitStack, asynccontextmanager

import asyncpg
from inbox.infra.db_async import db_conn
from inbox.infra.logging_config import get_logger

logger = get_logger(__name__)


def is_transient_error(exc: BaseException) -> bool:
    """
    Check if database error is transient (safe to retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock / serialization failure
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
        asyncpg.InterfaceError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True

    # Constraint violations and syntax errors are never transient
    if isinstance(exc, asyncpg.PostgresError):
        return False

    error_message = str(exc).lower()

    transient_patterns = [
        "connection",
        "timeout",
        "closed",
        "network",
        "deadlock",
        "too many connections",
        "server closed",
        "connection reset",
    ]

    return any(pattern in error_message for pattern in transient_patterns)


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Database connection with retry on transient acquisition errors.

    Usage:
        async with safe_db_conn() as conn:
            result = await conn.fetch("SELECT * FROM leads WHERE tenant_id = $1", tenant_id)

    Only acquiring the connection (and opening the transaction) is retried.
    Errors raised inside the block propagate to the caller unchanged; the
    transaction, if any, is rolled back.
    """
    max_retries = 3
    delay = 0.1

    stack = AsyncExitStack()
    for attempt in range(max_retries + 1):
        try:
            conn = await stack.enter_async_context(db_conn(autocommit=autocommit))
            break
        except Exception as exc:
            if not is_transient_error(exc):
                raise

            if attempt >= max_retries:
                logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                raise

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )

            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)

    async with stack:
        yield conn
