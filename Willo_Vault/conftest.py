import asyncio

import fakeredis
import pytest

from Willo_Vault.willo_shared.clock import DAY_MS
from Willo_Vault.willo_shared.identity import generate_signing_key
from Willo_Vault.willo_shared.types import TransferReceipt

START_MS = 1_700_000_000_000
THIRTY_DAYS = 2_592_000


class FixedClock:
    """Injectable clock; tests move time explicitly."""

    def __init__(self, start_ms: int):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, days: int = 0, seconds: int = 0, ms: int = 0) -> int:
        self.now += days * DAY_MS + seconds * 1000 + ms
        return self.now


class FakeExecutor:
    """Asset-transfer executor double that records every call."""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.delay = 0.0

    async def transfer(self, vault_id, beneficiary_id, allocation):
        self.calls.append((vault_id, beneficiary_id, allocation))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return TransferReceipt(reference=f"tx-{len(self.calls)}", executed_at=START_MS)


@pytest.fixture
def clock():
    return FixedClock(START_MS)


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    r = fakeredis.FakeRedis(server=redis_server, decode_responses=True)
    yield r
    redis_server.connected = True
    r.flushdb()
    r.close()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def owner_keys():
    return generate_signing_key()


@pytest.fixture
def guardian_keys():
    return [generate_signing_key() for _ in range(3)]


@pytest.fixture
def admin_keys():
    return generate_signing_key()
