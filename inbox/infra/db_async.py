# inbox/infra/db_async.py
"""
Async database connection pool (asyncpg).

All stores share one pool; transactions are opened with
``db_conn(autocommit=False)``.
"""
from __future__ import annotations
from typing import AsyncContextManager
from contextlib import asynccontextmanager

import asyncpg
from inbox.config import settings
from inbox.infra.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=60,
        server_settings={
            'application_name': 'inbox_ingestion',
            'statement_timeout': str(settings.pg_statement_timeout_ms),
        }
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncContextManager[asyncpg.Connection]:
    """
    Get database connection from pool (async).

    Usage:
        async with db_conn(autocommit=False) as conn:
            await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)

    Args:
        autocommit: If True (default), each statement commits on its own.
            If False, the block runs in one transaction that commits on
            normal exit and rolls back on exception.

    Yields:
        asyncpg.Connection
    """
    global _pool

    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = await _pool.acquire()

    try:
        if not autocommit:
            transaction = conn.transaction()
            await transaction.start()

            try:
                yield conn
                await transaction.commit()
            except Exception:
                await transaction.rollback()
                raise
        else:
            yield conn
    finally:
        await _pool.release(conn)


async def advisory_xact_lock(conn: asyncpg.Connection, key: str) -> None:
    """
    Take a transaction-scoped advisory lock keyed by an arbitrary string.

    Released automatically on commit/rollback. Must be called inside a
    ``db_conn(autocommit=False)`` block.
    """
    await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)


async def get_pool() -> asyncpg.Pool:
    """Get the connection pool directly (for health checks)"""
    global _pool
    if _pool is None:
        raise RuntimeError("Connection pool not initialized")
    return _pool
