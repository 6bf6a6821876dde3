"""
Asset-transfer executor contract and the HTTP implementation.

Only the ReleaseCoordinator calls ``transfer``. The allocation carries a
release token that stays the same across retries of one claim, so the
custody service can deduplicate a transfer whose first response was lost.
"""

import logging
from typing import Optional, Protocol

import httpx

from Willo_Vault.willo_shared.clock import now_ms
from Willo_Vault.willo_shared.errors import TransferError
from Willo_Vault.willo_shared.types import Allocation, TransferReceipt

logger = logging.getLogger(__name__)


class AssetTransferExecutor(Protocol):
    async def transfer(self, vault_id: str, beneficiary_id: str, allocation: Allocation) -> TransferReceipt:
        ...


class HttpTransferExecutor:
    """POSTs transfers to a custodial transfer service."""

    def __init__(self, base_url: str, *, api_key: str = "", client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout,
                                                   transport=transport)

    async def transfer(self, vault_id: str, beneficiary_id: str, allocation: Allocation) -> TransferReceipt:
        body = {
            "vault_id": vault_id,
            "beneficiary_id": beneficiary_id,
            "claim_id": allocation.claim_id,
            "wallet_address": allocation.wallet_address,
            "share_percent": allocation.share,
        }
        try:
            resp = await self._client.post(
                "/v1/transfers",
                json=body,
                headers={"Idempotency-Key": allocation.release_token},
            )
        except httpx.HTTPError as e:
            raise TransferError(f"transfer request failed: {e}")

        if resp.status_code >= 400:
            raise TransferError(f"transfer service returned {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
            reference = data.get("reference")
            executed_at = int(data.get("executed_at") or now_ms())
        except (ValueError, TypeError, AttributeError) as e:
            raise TransferError(f"transfer service returned an unreadable body: {resp.text[:200]!r} ({e})")
        if not reference:
            raise TransferError("transfer service response has no reference")

        logger.info("transfer %s accepted for claim %s", reference, allocation.claim_id)
        return TransferReceipt(reference=reference, executed_at=executed_at)

    async def aclose(self) -> None:
        await self._client.aclose()
