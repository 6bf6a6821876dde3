"""
Guardian votes and quorum.

A vote and the transition it may cause (ELIGIBLE -> APPROVED on quorum,
ELIGIBLE -> REJECTED on veto) commit in the same transaction, which watches
the claim, its vote record, the vault and its guardians. Two guardians
voting at once therefore conflict, and the loser re-runs against the
winner's result: at most one of them can see the claim still ELIGIBLE.
"""

import logging
from typing import Callable

import redis

from Willo_Vault.willo_shared import config, errors
from Willo_Vault.willo_shared.clock import now_ms
from Willo_Vault.willo_shared.types import Tally, VoteResult
from Willo_Vault.willo_db import keys
from Willo_Vault.willo_db.audit import AuditLog
from Willo_Vault.willo_db.claims import ClaimStateMachine, compute_tally, quorum_outcome
from Willo_Vault.willo_db.registry import VaultRegistry
from Willo_Vault.willo_db.txn import run_optimistic

logger = logging.getLogger(__name__)


class ApprovalQuorum:
    def __init__(self, client: redis.Redis, audit: AuditLog, claims: ClaimStateMachine,
                 registry: VaultRegistry, clock: Callable[[], int] = now_ms):
        self.db: redis.Redis = client
        self.audit = audit
        self.claims = claims
        self.registry = registry
        self.clock = clock

    def cast_vote(self, claim_id: str, guardian_id: str, decision: str) -> VoteResult:
        if decision not in config.VALID_DECISIONS:
            raise ValueError(f"decision must be one of {sorted(config.VALID_DECISIONS)}, got {decision!r}")
        actor = f"guardian:{guardian_id}"

        def body(pipe):
            claim = self.claims.load(pipe, claim_id)
            if claim is None:
                raise errors.ClaimNotFoundError(claim_id)

            guardian_data = pipe.hgetall(keys.guardian_key(guardian_id))
            if (not guardian_data
                    or guardian_data.get("vault_id") != claim.vault_id
                    or guardian_data.get("status") != "ACTIVE"):
                raise errors.UnauthorizedGuardianError(guardian_id, claim.vault_id)

            if claim.state != "ELIGIBLE":
                raise errors.ClaimNotEligibleError(claim_id, claim.state)

            pipe.watch(keys.vault_key(claim.vault_id))
            vault = self.registry.load_vault(pipe, claim.vault_id)
            guardians = self.registry.watch_guardians(pipe, claim.vault_id)
            votes = self.claims.votes(pipe, claim_id)

            previous = votes.get(guardian_id, "")
            votes[guardian_id] = decision
            tally = compute_tally(claim_id, vault, guardians, votes)
            to_state = quorum_outcome(tally)
            changed = previous != decision
            # A repeated vote still settles a claim that a quorum change already decided.
            if not changed and to_state is None:
                return VoteResult(claim_id, guardian_id, decision, claim.state, tally, recorded=False)
            if to_state is not None:
                self.claims.check_transition(claim, to_state, "QUORUM")

            now = self.clock()
            batch = self.audit.begin(pipe, claim.vault_id, now)
            pipe.multi()
            if changed:
                pipe.hset(keys.votes_key(claim_id), guardian_id, decision)
                batch.add("VOTE", guardian_id, previous, decision, actor, claim_id=claim_id,
                          metadata={"approvals": tally.approvals, "rejections": tally.rejections,
                                    "quorum": tally.quorum})
            self.claims.queue_quorum_outcome(pipe, batch, claim, tally, now)
            batch.flush(pipe)
            return VoteResult(claim_id, guardian_id, decision, claim.state, tally, recorded=changed)

        watch = [keys.claim_key(claim_id), keys.votes_key(claim_id), keys.guardian_key(guardian_id)]
        result = run_optimistic(self.db, watch, body, "cast_vote")
        if result.recorded:
            logger.info("guardian %s voted %s on claim %s (%d/%d)", guardian_id, decision,
                        claim_id, result.tally.approvals, result.tally.quorum)
        return result

    def tally(self, claim_id: str) -> Tally:
        try:
            claim = self.claims.load(self.db, claim_id)
            if claim is None:
                raise errors.ClaimNotFoundError(claim_id)
            vault = self.registry.load_vault(self.db, claim.vault_id)
            guardians = self.registry.load_guardians(self.db, claim.vault_id)
            votes = self.claims.votes(self.db, claim_id)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("tally")
        return compute_tally(claim_id, vault, guardians, votes)
