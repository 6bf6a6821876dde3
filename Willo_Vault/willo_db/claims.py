"""
Claim state machine.

    PENDING -> ELIGIBLE -> APPROVED -> RELEASED
       |          |           |
       +----------+-----------+--> REJECTED
                  |
                  +--> EXPIRED

Which role may drive which edge lives in ``config.CLAIM_TRANSITIONS``. The
methods here come in two flavours: ``check_*`` / ``watch_*`` run before
``pipe.multi()`` and may raise; ``queue_*`` run after it and only queue
writes. Components that need a transition as part of a larger atomic change
(activity cancelling claims, a vote reaching quorum) compose these inside
their own transaction; ``create_claim`` and ``transition`` are the
standalone versions.
"""

import json
import logging
import uuid
from dataclasses import asdict
from typing import Callable, Optional

import redis

from Willo_Vault.willo_shared import config, errors
from Willo_Vault.willo_shared.clock import now_ms
from Willo_Vault.willo_shared.types import AuditEntry, Claim, Guardian, ReleaseReceipt, Tally, Vault
from Willo_Vault.willo_db import keys
from Willo_Vault.willo_db.audit import AuditBatch, AuditLog
from Willo_Vault.willo_db.txn import run_optimistic

logger = logging.getLogger(__name__)


def _opt_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value else None


def compute_tally(claim_id: str, vault: Vault, guardians: list[Guardian], votes: dict[str, str]) -> Tally:
    # Only guardians that are ACTIVE right now count; a revoked guardian's old vote is ignored.
    active = {g.guardian_id for g in guardians if g.status == "ACTIVE"}
    approved_by = sorted(gid for gid, d in votes.items() if d == "APPROVE" and gid in active)
    rejected_by = sorted(gid for gid, d in votes.items() if d == "REJECT" and gid in active)
    return Tally(
        claim_id=claim_id,
        approvals=len(approved_by),
        rejections=len(rejected_by),
        quorum=vault.guardian_quorum,
        veto_threshold=vault.veto_threshold,
        approved_by=approved_by,
        rejected_by=rejected_by,
    )


def quorum_outcome(tally: Tally) -> Optional[str]:
    """State an ELIGIBLE claim must move to under this tally, or None while undecided."""
    if tally.vetoed:
        return "REJECTED"
    if tally.quorum_reached:
        return "APPROVED"
    return None


class ClaimStateMachine:
    def __init__(self, client: redis.Redis, audit: AuditLog, clock: Callable[[], int] = now_ms):
        self.db: redis.Redis = client
        self.audit = audit
        self.clock = clock

    def _serialize_claim(self, claim: Claim) -> dict:
        return {
            "claim_id": claim.claim_id,
            "vault_id": claim.vault_id,
            "beneficiary_id": claim.beneficiary_id,
            "state": claim.state,
            "trigger_type": claim.trigger_type,
            "eligible_at": str(claim.eligible_at),
            "activity_sequence": str(claim.activity_sequence),
            "created_at": str(claim.created_at),
            "promoted_at": "",
            "resolved_at": "",
            "release_token": "",
            "release_started_at": "",
            "release_share": "0",
            "release_attempts": "0",
            "release_alert": "0",
            "receipt": "",
        }

    def _deserialize_claim(self, data: dict) -> Claim:
        receipt = None
        if data.get("receipt"):
            receipt = ReleaseReceipt(**json.loads(data["receipt"]))
        return Claim(
            claim_id=data["claim_id"],
            vault_id=data["vault_id"],
            beneficiary_id=data["beneficiary_id"],
            state=data["state"],
            trigger_type=data["trigger_type"],
            eligible_at=int(data["eligible_at"]),
            activity_sequence=int(data["activity_sequence"]),
            created_at=int(data["created_at"]),
            promoted_at=_opt_int(data.get("promoted_at")),
            resolved_at=_opt_int(data.get("resolved_at")),
            release_token=data.get("release_token", ""),
            release_started_at=_opt_int(data.get("release_started_at")),
            release_share=int(data.get("release_share") or 0),
            release_attempts=int(data.get("release_attempts") or 0),
            release_alert=data.get("release_alert") == "1",
            receipt=receipt,
        )

    @staticmethod
    def serialize_receipt(receipt: ReleaseReceipt) -> str:
        return json.dumps(asdict(receipt), sort_keys=True)

    # ─── Reads ───

    def load(self, conn, claim_id: str) -> Optional[Claim]:
        data = conn.hgetall(keys.claim_key(claim_id))
        if not data:
            return None
        return self._deserialize_claim(data)

    def get_claim(self, claim_id: str) -> Claim:
        try:
            claim = self.load(self.db, claim_id)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("get_claim")
        if claim is None:
            raise errors.ClaimNotFoundError(claim_id)
        return claim

    def list_claims(self, vault_id: str, open_only: bool = False) -> list[Claim]:
        try:
            claim_ids = sorted(self.db.smembers(keys.vault_claims_key(vault_id)))
            if not claim_ids:
                return []
            pipe = self.db.pipeline(transaction=False)
            for claim_id in claim_ids:
                pipe.hgetall(keys.claim_key(claim_id))
            claims = [self._deserialize_claim(d) for d in pipe.execute() if d]
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("list_claims")

        if open_only:
            claims = [c for c in claims if c.state not in config.TERMINAL_STATES]
        return sorted(claims, key=lambda c: (c.created_at, c.claim_id))

    def claims_for_beneficiary(self, vault_id: str, beneficiary_id: str) -> list[Claim]:
        return [c for c in self.list_claims(vault_id) if c.beneficiary_id == beneficiary_id]

    def claims_for_beneficiaries(self, pairs: list[tuple[str, str]]) -> list[Claim]:
        """Claims of every (vault_id, beneficiary_id) pair, one vault scan per vault."""
        wanted: dict[str, set] = {}
        for vault_id, beneficiary_id in pairs:
            wanted.setdefault(vault_id, set()).add(beneficiary_id)
        result = []
        for vault_id in sorted(wanted):
            result.extend(c for c in self.list_claims(vault_id) if c.beneficiary_id in wanted[vault_id])
        return result

    def open_claim_id(self, conn, vault_id: str, beneficiary_id: str) -> Optional[str]:
        return conn.get(keys.open_claim_key(vault_id, beneficiary_id))

    def last_cycle(self, conn, vault_id: str, beneficiary_id: str) -> Optional[int]:
        return _opt_int(conn.hget(keys.cycle_key(vault_id), beneficiary_id))

    # ─── Pre-MULTI checks ───

    def check_transition(self, claim: Optional[Claim], to_state: str, role: str, claim_id: str = "") -> None:
        from_state = claim.state if claim is not None else ""
        entity = claim.claim_id if claim is not None else claim_id
        allowed = config.CLAIM_TRANSITIONS.get((from_state, to_state))
        if allowed is None:
            raise errors.InvalidTransitionError(entity, from_state, to_state)
        if role not in allowed:
            raise errors.InvalidTransitionError(entity, from_state, to_state, f"not permitted for {role}")

    def watch_open_claims(self, pipe: redis.client.Pipeline, vault_id: str,
                          beneficiary_id: Optional[str] = None) -> list[Claim]:
        """WATCH and load every non-terminal claim of a vault (optionally one beneficiary's)."""
        idx = keys.vault_claims_key(vault_id)
        pipe.watch(idx)
        claim_ids = sorted(pipe.smembers(idx))
        if claim_ids:
            pipe.watch(*[keys.claim_key(cid) for cid in claim_ids])

        open_claims = []
        for claim_id in claim_ids:
            claim = self.load(pipe, claim_id)
            if claim is None or claim.state in config.TERMINAL_STATES:
                continue
            if beneficiary_id is not None and claim.beneficiary_id != beneficiary_id:
                continue
            open_claims.append(claim)
        return open_claims

    def check_no_open_claim(self, pipe: redis.client.Pipeline, vault_id: str, beneficiary_id: str) -> None:
        open_key = keys.open_claim_key(vault_id, beneficiary_id)
        pipe.watch(open_key)
        existing = pipe.get(open_key)
        if existing:
            raise errors.DuplicateClaimError(vault_id, beneficiary_id, existing)

    def cancellable(self, open_claims: list[Claim], role: str) -> list[Claim]:
        """Open claims that may be rejected by ``role`` now. In-flight releases are left alone."""
        result = []
        for claim in open_claims:
            if claim.release_in_flight:
                logger.warning("claim %s has a release in flight, not cancelling", claim.claim_id)
                continue
            self.check_transition(claim, "REJECTED", role)
            result.append(claim)
        return result

    # ─── Post-MULTI writes ───

    def queue_create(
        self,
        pipe: redis.client.Pipeline,
        batch: AuditBatch,
        vault_id: str,
        beneficiary_id: str,
        eligible_at: int,
        activity_sequence: int,
        actor: str,
        now: int,
    ) -> Claim:
        claim = Claim(
            claim_id=str(uuid.uuid4()),
            vault_id=vault_id,
            beneficiary_id=beneficiary_id,
            state="PENDING",
            trigger_type=config.TRIGGER_INACTIVITY,
            eligible_at=eligible_at,
            activity_sequence=activity_sequence,
            created_at=now,
        )
        pipe.hset(keys.claim_key(claim.claim_id), mapping=self._serialize_claim(claim))
        pipe.sadd(keys.vault_claims_key(vault_id), claim.claim_id)
        pipe.set(keys.open_claim_key(vault_id, beneficiary_id), claim.claim_id)
        pipe.hset(keys.cycle_key(vault_id), beneficiary_id, str(activity_sequence))
        batch.add("CLAIM", claim.claim_id, "", "PENDING", actor,
                  reason="inactivity threshold exceeded", claim_id=claim.claim_id,
                  metadata={"beneficiary_id": beneficiary_id, "eligible_at": eligible_at})
        return claim

    def queue_transition(
        self,
        pipe: redis.client.Pipeline,
        batch: AuditBatch,
        claim: Claim,
        to_state: str,
        actor: str,
        reason: str,
        now: int,
        fields: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> AuditEntry:
        from_state = claim.state
        mapping = {"state": to_state}
        if to_state == "ELIGIBLE":
            mapping["promoted_at"] = str(now)
            claim.promoted_at = now
        if to_state in config.TERMINAL_STATES:
            mapping["resolved_at"] = str(now)
            claim.resolved_at = now
            pipe.delete(keys.open_claim_key(claim.vault_id, claim.beneficiary_id))
        if fields:
            mapping.update(fields)

        pipe.hset(keys.claim_key(claim.claim_id), mapping=mapping)
        claim.state = to_state
        logger.info("claim %s: %s -> %s by %s", claim.claim_id, from_state, to_state, actor)
        return batch.add("CLAIM", claim.claim_id, from_state, to_state, actor,
                         reason=reason, claim_id=claim.claim_id, metadata=metadata)

    def queue_quorum_outcome(
        self,
        pipe: redis.client.Pipeline,
        batch: AuditBatch,
        claim: Claim,
        tally: Tally,
        now: int,
    ) -> Optional[AuditEntry]:
        to_state = quorum_outcome(tally)
        if to_state == "APPROVED":
            return self.queue_transition(pipe, batch, claim, "APPROVED", "quorum",
                                         f"{tally.approvals} of {tally.quorum} guardian approvals", now,
                                         metadata={"approved_by": tally.approved_by})
        if to_state == "REJECTED":
            return self.queue_transition(pipe, batch, claim, "REJECTED", "quorum",
                                         f"vetoed by {tally.rejections} guardians", now,
                                         metadata={"rejected_by": tally.rejected_by})
        return None

    # ─── Standalone operations ───

    def create_claim(
        self,
        vault_id: str,
        beneficiary_id: str,
        eligible_at: int,
        activity_sequence: int,
        actor: str = "monitor",
        role: str = "MONITOR",
    ) -> Claim:
        self.check_transition(None, "PENDING", role, claim_id=f"{vault_id}/{beneficiary_id}")

        def body(pipe):
            self.check_no_open_claim(pipe, vault_id, beneficiary_id)
            now = self.clock()
            batch = self.audit.begin(pipe, vault_id, now)
            pipe.multi()
            claim = self.queue_create(pipe, batch, vault_id, beneficiary_id,
                                      eligible_at, activity_sequence, actor, now)
            batch.flush(pipe)
            return claim

        return run_optimistic(self.db, [], body, "create_claim")

    def transition(
        self,
        claim_id: str,
        to_state: str,
        role: str,
        actor: str,
        reason: str = "",
        metadata: Optional[dict] = None,
    ) -> Claim:
        def body(pipe):
            claim = self.load(pipe, claim_id)
            if claim is None:
                raise errors.ClaimNotFoundError(claim_id)
            self.check_transition(claim, to_state, role)
            if to_state == "REJECTED" and claim.release_in_flight:
                raise errors.ReleaseInProgressError(claim_id)
            now = self.clock()
            batch = self.audit.begin(pipe, claim.vault_id, now)
            pipe.multi()
            self.queue_transition(pipe, batch, claim, to_state, actor, reason, now, metadata=metadata)
            batch.flush(pipe)
            return claim

        return run_optimistic(self.db, [keys.claim_key(claim_id)], body, f"transition:{to_state}")

    def votes(self, conn, claim_id: str) -> dict[str, str]:
        return conn.hgetall(keys.votes_key(claim_id))

    def watch_decided_claims(self, pipe: redis.client.Pipeline, vault: Vault,
                             guardians: list[Guardian]) -> list[tuple[Claim, Tally]]:
        """WATCH a vault's ELIGIBLE claims and return those its current votes already settle.

        ``vault`` and ``guardians`` describe the vault as it will be once the
        caller's own change commits (a new quorum, a guardian accepted or revoked).
        """
        decided = []
        for claim in self.watch_open_claims(pipe, vault.vault_id):
            if claim.state != "ELIGIBLE":
                continue
            pipe.watch(keys.votes_key(claim.claim_id))
            tally = compute_tally(claim.claim_id, vault, guardians, self.votes(pipe, claim.claim_id))
            to_state = quorum_outcome(tally)
            if to_state is not None:
                self.check_transition(claim, to_state, "QUORUM")
                decided.append((claim, tally))
        return decided
