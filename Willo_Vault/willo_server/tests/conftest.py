import asyncio
import os

import asyncpg
import pytest
import pytest_asyncio

from Willo_Vault.willo_server import api, db
from Willo_Vault.willo_server import config as server_config
from Willo_Vault.willo_server.archive import ClaimArchive, SCHEMA_SQL
from Willo_Vault.inheritance import InheritanceService

TEST_DSN = os.environ.get("WILLO_TEST_DSN", server_config.PG_TEST_DSN)


@pytest.fixture
def service(redis_client, executor, clock, admin_keys):
    return InheritanceService(redis_client, executor=executor, clock=clock, admin_keys={"ops-1": admin_keys[1]})


@pytest.fixture
def inject_service(service):
    """Point the API module at the test service; lifespan is not run under ASGITransport."""
    api.service = service
    yield service
    api.service = None


@pytest_asyncio.fixture
async def pool():
    """Connection pool on the test database; skips when PostgreSQL is not reachable."""
    try:
        p = await asyncpg.create_pool(TEST_DSN, min_size=1, max_size=5, init=db.init_connection)
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
        pytest.skip(f"PostgreSQL not available at {TEST_DSN}: {e}")

    async with p.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
        await conn.execute("TRUNCATE claim_archive")
    yield p
    await p.close()


@pytest.fixture
def archive(pool) -> ClaimArchive:
    return ClaimArchive(pool)
