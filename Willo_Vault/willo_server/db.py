"""
Process-wide asyncpg pool for the claim archive.

Every pooled connection gets a JSONB codec so audit trails go in and come
out as plain Python lists/dicts.
"""

import asyncio
import json
import logging

import asyncpg

from Willo_Vault.willo_shared.errors import ConnectionPoolError

logger = logging.getLogger(__name__)

pool: asyncpg.Pool = None


async def init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


async def create_pool(dsn: str, min_size: int = 5, max_size: int = 20) -> asyncpg.Pool:
    global pool
    if pool is not None:
        return pool

    try:
        pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=min_size,
            max_size=max_size,
            init=init_connection,
        )
    except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
        logger.error("archive pool creation failed: %s", e)
        raise ConnectionPoolError(f"Failed to create archive pool: {e}")

    return pool


async def get_pool() -> asyncpg.Pool:
    if pool is None:
        raise ConnectionPoolError("Archive pool not initialized. Call create_pool() first.")
    return pool


async def close_pool() -> None:
    global pool
    if pool is None:
        return
    try:
        await asyncio.wait_for(pool.close(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("archive pool did not close in time, terminating")
        pool.terminate()
    finally:
        pool = None


async def health_check() -> bool:
    if pool is None:
        return False
    try:
        async with pool.acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1
    except (asyncpg.PostgresError, OSError):
        return False
