"""
Vault inactivity monitor.

The scheduler calls ``sweep()``; nothing else opens or promotes claims. Each
vault is handled in three steps: expire ELIGIBLE claims whose validity window
has elapsed, open a PENDING claim for every active beneficiary that has none
in the current activity cycle, and promote PENDING claims to ELIGIBLE.

Decisions are made from a snapshot of the activity record taken at the
start of the vault's pass. Every commit re-reads the record under WATCH and
verifies the snapshot is still current, so activity recorded mid-sweep wins:
the pass for that vault is abandoned and reported in ``SweepResult.aborted``.
"""

import logging
from typing import Callable, Optional

import redis

from Willo_Vault.willo_shared import errors
from Willo_Vault.willo_shared.clock import now_ms, seconds_to_ms
from Willo_Vault.willo_shared.types import ActivityRecord, Claim, SweepResult, Vault
from Willo_Vault.willo_db import keys
from Willo_Vault.willo_db.audit import AuditLog
from Willo_Vault.willo_db.claims import ClaimStateMachine
from Willo_Vault.willo_db.ledger import ActivityLedger
from Willo_Vault.willo_db.registry import VaultRegistry
from Willo_Vault.willo_db.txn import run_optimistic

logger = logging.getLogger(__name__)

ACTOR = "monitor"


class _Aborted(Exception):
    """The vault changed since the pass snapshot was taken."""


class _Skip(Exception):
    """Nothing to do for this claim any more."""


class VaultInactivityMonitor:
    def __init__(
        self,
        client: redis.Redis,
        audit: AuditLog,
        claims: ClaimStateMachine,
        ledger: ActivityLedger,
        registry: VaultRegistry,
        clock: Callable[[], int] = now_ms,
    ):
        self.db: redis.Redis = client
        self.audit = audit
        self.claims = claims
        self.ledger = ledger
        self.registry = registry
        self.clock = clock

    # ─── Entry points ───

    def sweep(self, now: Optional[int] = None) -> SweepResult:
        now = self.clock() if now is None else now
        result = SweepResult()
        for vault_id in self.registry.all_vault_ids():
            result.vaults_scanned += 1
            self._evaluate(vault_id, now, result, dry_run=False)

        if result.claims_created or result.claims_promoted or result.claims_expired or result.aborted:
            logger.info("sweep: %d vaults, %d created, %d promoted, %d expired, %d aborted",
                        result.vaults_scanned, result.claims_created, result.claims_promoted,
                        result.claims_expired, len(result.aborted))
        return result

    def evaluate_vault(self, vault_id: str, now: Optional[int] = None) -> SweepResult:
        now = self.clock() if now is None else now
        result = SweepResult(vaults_scanned=1)
        self._evaluate(vault_id, now, result, dry_run=False)
        return result

    def dry_run(self, now: Optional[int] = None) -> SweepResult:
        """Count what a sweep at ``now`` would do, without writing anything."""
        now = self.clock() if now is None else now
        result = SweepResult()
        for vault_id in self.registry.all_vault_ids():
            result.vaults_scanned += 1
            self._evaluate(vault_id, now, result, dry_run=True)
        return result

    # ─── Per-vault pass ───

    def _evaluate(self, vault_id: str, now: int, result: SweepResult, dry_run: bool) -> None:
        try:
            vault = self.registry.get_vault(vault_id)
            record = self.ledger.get_last_activity(vault_id)
        except (errors.VaultNotFoundError, errors.ActivityNotFoundError):
            logger.warning("vault %s vanished during sweep", vault_id)
            return
        if vault.status != "ACTIVE":
            return

        open_claims = self.claims.list_claims(vault_id, open_only=True)

        try:
            for claim in open_claims:
                if self._is_expired(vault, claim, now):
                    if dry_run or self._expire(claim.claim_id, now):
                        result.claims_expired += 1

            if not ActivityLedger.is_inactive(record.last_activity_at, now, vault.inactivity_threshold_seconds):
                return

            pending = [c for c in open_claims if c.state == "PENDING"]
            claimed = {c.beneficiary_id for c in open_claims}
            for beneficiary in self.registry.list_beneficiaries(vault_id):
                if beneficiary.beneficiary_id in claimed:
                    continue
                if self.claims.last_cycle(self.db, vault_id, beneficiary.beneficiary_id) == record.activity_sequence:
                    continue
                if dry_run:
                    result.claims_created += 1
                    result.claims_promoted += 1
                    continue
                claim = self._create(vault, record, beneficiary.beneficiary_id, now)
                if claim is not None:
                    result.claims_created += 1
                    pending.append(claim)

            for claim in pending:
                if dry_run:
                    result.claims_promoted += 1
                elif self._promote(claim.claim_id, record.activity_sequence, now):
                    result.claims_promoted += 1
        except (_Aborted, errors.ConcurrencyConflict) as exc:
            logger.warning("sweep of vault %s aborted: %s", vault_id, exc)
            result.aborted.append(vault_id)

    def _is_expired(self, vault: Vault, claim: Claim, now: int) -> bool:
        if claim.state != "ELIGIBLE" or vault.claim_validity_seconds <= 0 or claim.promoted_at is None:
            return False
        return now >= claim.promoted_at + seconds_to_ms(vault.claim_validity_seconds)

    def _verify_snapshot(self, pipe, vault_id: str, expected_sequence: int) -> None:
        status = pipe.hget(keys.vault_key(vault_id), "status")
        if status != "ACTIVE":
            raise _Aborted(f"vault is {status}")
        sequence = pipe.hget(keys.activity_key(vault_id), "activity_sequence")
        if sequence is None or int(sequence) != expected_sequence:
            raise _Aborted("activity recorded since snapshot")

    # ─── Transitions ───

    def _create(self, vault: Vault, record: ActivityRecord, beneficiary_id: str, now: int) -> Optional[Claim]:
        self.claims.check_transition(None, "PENDING", "MONITOR", claim_id=f"{vault.vault_id}/{beneficiary_id}")
        vault_id = vault.vault_id
        eligible_at = record.last_activity_at + seconds_to_ms(vault.inactivity_threshold_seconds)

        def body(pipe):
            self._verify_snapshot(pipe, vault_id, record.activity_sequence)
            self.claims.check_no_open_claim(pipe, vault_id, beneficiary_id)
            if self.claims.last_cycle(pipe, vault_id, beneficiary_id) == record.activity_sequence:
                raise _Skip()
            batch = self.audit.begin(pipe, vault_id, now)
            pipe.multi()
            claim = self.claims.queue_create(pipe, batch, vault_id, beneficiary_id, eligible_at,
                                             record.activity_sequence, ACTOR, now)
            batch.flush(pipe)
            return claim

        watch = [keys.vault_key(vault_id), keys.activity_key(vault_id), keys.cycle_key(vault_id)]
        try:
            return run_optimistic(self.db, watch, body, "monitor_create")
        except (_Skip, errors.DuplicateClaimError):
            return None

    def _promote(self, claim_id: str, expected_sequence: int, now: int) -> bool:
        """PENDING -> ELIGIBLE, committed only if the vault's activity record is unchanged."""
        def body(pipe):
            claim = self.claims.load(pipe, claim_id)
            if claim is None or claim.state != "PENDING":
                raise _Aborted(f"claim {claim_id} is no longer pending")
            pipe.watch(keys.vault_key(claim.vault_id), keys.activity_key(claim.vault_id))
            self._verify_snapshot(pipe, claim.vault_id, expected_sequence)
            if claim.activity_sequence != expected_sequence:
                raise _Aborted(f"claim {claim_id} belongs to an earlier activity cycle")
            if now < claim.eligible_at:
                raise _Skip()
            self.claims.check_transition(claim, "ELIGIBLE", "MONITOR")
            batch = self.audit.begin(pipe, claim.vault_id, now)
            pipe.multi()
            self.claims.queue_transition(pipe, batch, claim, "ELIGIBLE", ACTOR,
                                         "inactivity threshold reached", now)
            batch.flush(pipe)
            return True

        try:
            return run_optimistic(self.db, [keys.claim_key(claim_id)], body, "monitor_promote")
        except _Skip:
            return False

    def _expire(self, claim_id: str, now: int) -> bool:
        def body(pipe):
            claim = self.claims.load(pipe, claim_id)
            if claim is None or claim.state != "ELIGIBLE":
                raise _Skip()
            self.claims.check_transition(claim, "EXPIRED", "MONITOR")
            batch = self.audit.begin(pipe, claim.vault_id, now)
            pipe.multi()
            self.claims.queue_transition(pipe, batch, claim, "EXPIRED", ACTOR,
                                         "claim validity window elapsed", now)
            batch.flush(pipe)
            return True

        try:
            return run_optimistic(self.db, [keys.claim_key(claim_id)], body, "monitor_expire")
        except _Skip:
            return False
