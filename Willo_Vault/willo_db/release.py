"""
Release coordinator.

A release is split around the external transfer so no lock is held while
the custody service is working:

    1. transaction: validate, reserve the share, mark the release intent
    2. await executor.transfer(...) with a timeout, outside any transaction
    3. transaction: APPROVED -> RELEASED with the receipt, or record the failure

The release token written in step 1 is reused by every attempt for the
claim, so a transfer whose response was lost (timeout) is deduplicated by
the custody service on retry instead of paid twice.
"""

import asyncio
import logging
import uuid
from typing import Callable, Optional, Union

import redis

from Willo_Vault.willo_shared import config, errors
from Willo_Vault.willo_shared.clock import now_ms, seconds_to_ms
from Willo_Vault.willo_shared.errors import TransferError
from Willo_Vault.willo_shared.transfer import AssetTransferExecutor
from Willo_Vault.willo_shared.types import Allocation, Claim, ReleaseReceipt, TransferReceipt
from Willo_Vault.willo_db import keys
from Willo_Vault.willo_db.audit import AuditLog
from Willo_Vault.willo_db.claims import ClaimStateMachine
from Willo_Vault.willo_db.registry import VaultRegistry
from Willo_Vault.willo_db.txn import run_optimistic

logger = logging.getLogger(__name__)

ACTOR = "release"


class ReleaseCoordinator:
    def __init__(
        self,
        client: redis.Redis,
        audit: AuditLog,
        claims: ClaimStateMachine,
        registry: VaultRegistry,
        executor: AssetTransferExecutor,
        clock: Callable[[], int] = now_ms,
        timeout: float = config.TRANSFER_TIMEOUT_SECONDS,
    ):
        self.db: redis.Redis = client
        self.audit = audit
        self.claims = claims
        self.registry = registry
        self.executor = executor
        self.clock = clock
        self.timeout = timeout

    async def release(self, claim_id: str) -> ReleaseReceipt:
        started = self._begin(claim_id)
        if isinstance(started, ReleaseReceipt):
            logger.info("claim %s already released, returning stored receipt", claim_id)
            return started

        claim, allocation = started
        try:
            transfer = await asyncio.wait_for(
                self.executor.transfer(claim.vault_id, claim.beneficiary_id, allocation),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            self._fail(claim_id, allocation, f"transfer timed out after {self.timeout}s")
            raise
        except TransferError as exc:
            self._fail(claim_id, allocation, str(exc))
            raise
        except Exception as exc:
            # counts as a failed attempt and releases the reserved share
            logger.exception("executor raised unexpectedly for claim %s", claim_id)
            self._fail(claim_id, allocation, f"{type(exc).__name__}: {exc}")
            raise

        return self._commit(claim_id, allocation, transfer)

    # ─── Step 1 ───

    def _begin(self, claim_id: str) -> Union[ReleaseReceipt, tuple[Claim, Allocation]]:
        def body(pipe):
            claim = self.claims.load(pipe, claim_id)
            if claim is None:
                raise errors.ClaimNotFoundError(claim_id)
            if claim.state == "RELEASED":
                return claim.receipt
            if claim.release_alert:
                raise errors.ReleaseStuckError(claim_id, claim.release_attempts)
            self.claims.check_transition(claim, "RELEASED", "RELEASE")

            now = self.clock()
            redispatch = False
            if claim.release_in_flight:
                if now - claim.release_started_at < seconds_to_ms(config.RELEASE_INTENT_STALE_SECONDS):
                    raise errors.ReleaseInProgressError(claim_id)
                redispatch = True
                logger.warning("release intent of claim %s is stale, re-dispatching with the same token",
                               claim_id)

            vault_id = claim.vault_id
            pipe.watch(keys.vault_key(vault_id), keys.allocation_key(vault_id),
                       keys.beneficiary_key(claim.beneficiary_id), keys.beneficiary_idx_key(vault_id))
            vault = self.registry.load_vault(pipe, vault_id)
            if vault.status != "ACTIVE":
                raise errors.VaultNotActiveError(vault_id, vault.status)

            beneficiary = self.registry.load_beneficiary(pipe, claim.beneficiary_id)
            if beneficiary.status != "ACTIVE":
                raise errors.InvalidTransitionError(claim_id, claim.state, "RELEASED", "beneficiary removed")

            beneficiaries = self.registry.load_beneficiaries(pipe, vault_id)
            if beneficiaries:
                pipe.watch(*[keys.beneficiary_key(b.beneficiary_id) for b in beneficiaries])
            configured = sum(b.allocation_share for b in beneficiaries)

            alloc = pipe.hgetall(keys.allocation_key(vault_id))
            released = int(alloc.get("released") or 0)
            inflight = int(alloc.get("inflight") or 0)
            if redispatch:
                share = claim.release_share
                inflight -= share
            else:
                share = beneficiary.allocation_share

            if released + inflight + share > config.MAX_ALLOCATION_PERCENT:
                logger.warning("release of claim %s refused: %d released, %d in flight, %d requested",
                               claim_id, released, inflight, share)
                raise errors.OverAllocationError(vault_id, released + inflight, share)
            if configured > config.MAX_ALLOCATION_PERCENT:
                logger.warning("release of claim %s refused: beneficiary shares of vault %s sum to %d",
                               claim_id, vault_id, configured)
                raise errors.OverAllocationError(vault_id, configured - share, share)

            token = claim.release_token or str(uuid.uuid4())
            batch = self.audit.begin(pipe, vault_id, now)
            pipe.multi()
            pipe.hset(keys.claim_key(claim_id), mapping={
                "release_token": token,
                "release_started_at": str(now),
                "release_share": str(share),
            })
            if not redispatch:
                pipe.hincrby(keys.allocation_key(vault_id), "inflight", share)
            batch.add("RELEASE", token, "", "DISPATCHED", ACTOR, claim_id=claim_id,
                      reason="re-dispatched stale intent" if redispatch else "transfer dispatched",
                      metadata={"share": share, "wallet_address": beneficiary.wallet_address,
                                "attempt": claim.release_attempts + 1})
            batch.flush(pipe)
            return claim, Allocation(claim_id, beneficiary.wallet_address, share, token)

        return run_optimistic(self.db, [keys.claim_key(claim_id)], body, "release_begin")

    # ─── Step 3 ───

    def _commit(self, claim_id: str, allocation: Allocation, transfer: TransferReceipt) -> ReleaseReceipt:
        def body(pipe):
            claim = self.claims.load(pipe, claim_id)
            if claim.state == "RELEASED":
                return claim.receipt
            if claim.state != "APPROVED" or claim.release_token != allocation.release_token:
                logger.error("transfer %s for claim %s completed but the claim is %s",
                             transfer.reference, claim_id, claim.state)
                raise errors.InvalidTransitionError(claim_id, claim.state, "RELEASED",
                                                    f"transfer {transfer.reference} needs reconciliation")

            now = self.clock()
            pipe.watch(keys.allocation_key(claim.vault_id))
            batch = self.audit.begin(pipe, claim.vault_id, now)
            pipe.multi()
            entry = self.claims.queue_transition(
                pipe, batch, claim, "RELEASED", ACTOR, "transfer confirmed", now,
                fields={"release_started_at": ""},
                metadata={"transfer_reference": transfer.reference,
                          "release_token": allocation.release_token,
                          "share": allocation.share},
            )
            receipt = ReleaseReceipt(
                claim_id=claim_id,
                vault_id=claim.vault_id,
                beneficiary_id=claim.beneficiary_id,
                wallet_address=allocation.wallet_address,
                share=allocation.share,
                transfer_reference=transfer.reference,
                released_at=now,
                audit_sequence=entry.sequence,
            )
            pipe.hset(keys.claim_key(claim_id), "receipt", self.claims.serialize_receipt(receipt))
            pipe.hincrby(keys.allocation_key(claim.vault_id), "inflight", -allocation.share)
            pipe.hincrby(keys.allocation_key(claim.vault_id), "released", allocation.share)
            batch.flush(pipe)
            return receipt

        receipt = run_optimistic(self.db, [keys.claim_key(claim_id)], body, "release_commit",
                                 retries=config.RELEASE_COMMIT_RETRIES)
        logger.info("claim %s released: %d%% to %s, transfer %s", claim_id, receipt.share,
                    receipt.wallet_address, receipt.transfer_reference)
        return receipt

    def _fail(self, claim_id: str, allocation: Allocation, cause: str) -> None:
        """Clear the intent, count the attempt and raise TransferFailure or ReleaseStuckError."""
        def body(pipe):
            claim = self.claims.load(pipe, claim_id)
            if (claim.state != "APPROVED" or not claim.release_in_flight
                    or claim.release_token != allocation.release_token):
                return None
            attempts = claim.release_attempts + 1
            stuck = attempts >= config.MAX_TRANSFER_ATTEMPTS
            batch = self.audit.begin(pipe, claim.vault_id)
            pipe.multi()
            pipe.hset(keys.claim_key(claim_id), mapping={
                "release_started_at": "",
                "release_attempts": str(attempts),
                "release_alert": "1" if stuck else "0",
            })
            pipe.hincrby(keys.allocation_key(claim.vault_id), "inflight", -allocation.share)
            batch.add("RELEASE", allocation.release_token, "DISPATCHED", "STUCK" if stuck else "FAILED",
                      ACTOR, reason=cause, claim_id=claim_id, metadata={"attempts": attempts})
            batch.flush(pipe)
            return attempts, stuck

        outcome = run_optimistic(self.db, [keys.claim_key(claim_id)], body, "release_fail",
                                 retries=config.RELEASE_COMMIT_RETRIES)
        if outcome is None:
            return
        attempts, stuck = outcome
        logger.error("transfer for claim %s failed (attempt %d): %s", claim_id, attempts, cause)
        if stuck:
            raise errors.ReleaseStuckError(claim_id, attempts)
        raise errors.TransferFailure(claim_id, attempts, cause)

    # ─── Manual intervention ───

    def clear_alert(self, claim_id: str, actor: str) -> Claim:
        def body(pipe):
            claim = self.claims.load(pipe, claim_id)
            if claim is None:
                raise errors.ClaimNotFoundError(claim_id)
            if not claim.release_alert:
                raise errors.InvalidTransitionError(claim_id, "STUCK", "CLEARED", "no release alert raised")
            batch = self.audit.begin(pipe, claim.vault_id)
            pipe.multi()
            pipe.hset(keys.claim_key(claim_id), mapping={"release_alert": "0", "release_attempts": "0"})
            batch.add("RELEASE", claim.release_token, "STUCK", "CLEARED", actor, claim_id=claim_id,
                      reason="release alert cleared")
            batch.flush(pipe)
            claim.release_alert = False
            claim.release_attempts = 0
            return claim

        claim = run_optimistic(self.db, [keys.claim_key(claim_id)], body, "clear_alert")
        logger.info("release alert of claim %s cleared by %s", claim_id, actor)
        return claim

    def get_receipt(self, claim_id: str) -> Optional[ReleaseReceipt]:
        return self.claims.get_claim(claim_id).receipt
