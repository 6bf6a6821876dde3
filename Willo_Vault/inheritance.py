"""
Inheritance service: the externally callable surface of the protocol.

Wires the Redis-backed components together and puts identity checks in
front of every owner, guardian and administrator action. The components below it trust
their callers; this class is where an actor proof is turned into an actor.

    owner / guardian proof ─▶ IdentityVerifier ─▶ InheritanceService
                                                     │
        ┌──────────────┬──────────────┬──────────────┼──────────────┐
        ▼              ▼              ▼              ▼              ▼
   VaultRegistry  ActivityLedger  ApprovalQuorum  Monitor   ReleaseCoordinator
        └──────────────┴───── ClaimStateMachine ─────┴──────────────┘
                                     │
                                  AuditLog
"""

import logging
from typing import Callable, Optional

import redis

from Willo_Vault.willo_shared import config, errors
from Willo_Vault.willo_shared.clock import now_ms
from Willo_Vault.willo_shared.identity import (
    ADMIN_SCOPE, ROLE_ADMIN, ROLE_GUARDIAN, ROLE_OWNER, ActorProof, Ed25519IdentityVerifier,
    IdentityVerifier, parse_admin_keys,
)
from Willo_Vault.willo_shared.transfer import AssetTransferExecutor
from Willo_Vault.willo_shared.types import (
    ActivityRecord, AuditEntry, Beneficiary, BeneficiarySpec, ChainVerification, Claim,
    ClaimSnapshot, Guardian, GuardianSpec, HealthStatus, ReleaseReceipt, SweepResult,
    Vault, VaultPolicy, VoteResult,
)
from Willo_Vault.willo_db import connection
from Willo_Vault.willo_db.audit import AuditLog
from Willo_Vault.willo_db.claims import ClaimStateMachine
from Willo_Vault.willo_db.ledger import ActivityLedger
from Willo_Vault.willo_db.monitor import VaultInactivityMonitor
from Willo_Vault.willo_db.quorum import ApprovalQuorum
from Willo_Vault.willo_db.registry import VaultRegistry
from Willo_Vault.willo_db.release import ReleaseCoordinator

logger = logging.getLogger(__name__)


class InheritanceService:
    def __init__(
        self,
        client: redis.Redis,
        executor: Optional[AssetTransferExecutor] = None,
        verifier: Optional[IdentityVerifier] = None,
        clock: Callable[[], int] = now_ms,
        admin_keys: Optional[dict[str, str]] = None,
    ):
        self.db: redis.Redis = client
        self.clock = clock
        self.audit = AuditLog(client, clock)
        self.claims = ClaimStateMachine(client, self.audit, clock)
        self.registry = VaultRegistry(client, self.audit, self.claims, clock)
        self.ledger = ActivityLedger(client, self.audit, self.claims, clock)
        self.quorum = ApprovalQuorum(client, self.audit, self.claims, self.registry, clock)
        self.monitor = VaultInactivityMonitor(client, self.audit, self.claims, self.ledger, self.registry, clock)
        self.releases = ReleaseCoordinator(client, self.audit, self.claims, self.registry, executor, clock)
        self.admin_keys = parse_admin_keys(config.ADMIN_KEYS) if admin_keys is None else dict(admin_keys)
        self.verifier = verifier or Ed25519IdentityVerifier(self._lookup_verify_key, clock)

    # ─── Identity ───

    def _lookup_verify_key(self, actor_id: str, role: str, vault_id: str) -> Optional[str]:
        if role == ROLE_ADMIN:
            return self.admin_keys.get(actor_id)
        return self.registry.lookup_verify_key(actor_id, role, vault_id)

    def _check_proof(self, proof: ActorProof, role: str, vault_id: str, action: str) -> bool:
        return (proof.role == role
                and proof.vault_id == vault_id
                and proof.action == action
                and self.verifier.verify(proof))

    def _authorize_owner(self, proof: ActorProof, vault_id: str, action: str) -> str:
        if not self._check_proof(proof, ROLE_OWNER, vault_id, action):
            raise errors.UnauthorizedActorError(proof.actor_id, action)
        return f"owner:{proof.actor_id}"

    def _authorize_guardian(self, proof: ActorProof, vault_id: str, action: str) -> str:
        if not self._check_proof(proof, ROLE_GUARDIAN, vault_id, action):
            raise errors.UnauthorizedGuardianError(proof.actor_id, vault_id)
        return proof.actor_id

    def _authorize_admin(self, proof: ActorProof, vault_id: str, action: str) -> str:
        if not self._check_proof(proof, ROLE_ADMIN, vault_id, action):
            raise errors.UnauthorizedActorError(proof.actor_id, action)
        return f"admin:{proof.actor_id}"

    # ─── Vaults ───

    def create_vault(self, owner_id: str, policy: VaultPolicy) -> str:
        return self.registry.create_vault(owner_id, policy).vault_id

    def get_vault(self, vault_id: str) -> Vault:
        return self.registry.get_vault(vault_id)

    def list_vaults(self, owner_id: str) -> list[Vault]:
        return self.registry.list_vaults(owner_id)

    def suspend_vault(self, vault_id: str, proof: ActorProof) -> Vault:
        actor = self._authorize_owner(proof, vault_id, "suspend_vault")
        return self.registry.set_status(vault_id, "SUSPENDED", actor)

    def reactivate_vault(self, vault_id: str, proof: ActorProof) -> Vault:
        actor = self._authorize_owner(proof, vault_id, "reactivate_vault")
        return self.registry.set_status(vault_id, "ACTIVE", actor)

    def close_vault(self, vault_id: str, proof: ActorProof) -> Vault:
        actor = self._authorize_owner(proof, vault_id, "close_vault")
        return self.registry.set_status(vault_id, "CLOSED", actor, reason="closed by owner")

    def set_guardian_quorum(self, vault_id: str, quorum: int, proof: ActorProof) -> Vault:
        actor = self._authorize_owner(proof, vault_id, "set_guardian_quorum")
        return self.registry.set_guardian_quorum(vault_id, quorum, actor)

    # ─── Beneficiaries and guardians ───

    def add_beneficiary(self, vault_id: str, spec: BeneficiarySpec, proof: ActorProof) -> Beneficiary:
        actor = self._authorize_owner(proof, vault_id, "add_beneficiary")
        return self.registry.add_beneficiary(vault_id, spec, actor)

    def update_beneficiary_share(self, beneficiary_id: str, share: int, proof: ActorProof) -> Beneficiary:
        beneficiary = self.registry.get_beneficiary(beneficiary_id)
        actor = self._authorize_owner(proof, beneficiary.vault_id, "update_beneficiary_share")
        return self.registry.update_beneficiary_share(beneficiary_id, share, actor)

    def remove_beneficiary(self, beneficiary_id: str, proof: ActorProof) -> Beneficiary:
        beneficiary = self.registry.get_beneficiary(beneficiary_id)
        actor = self._authorize_owner(proof, beneficiary.vault_id, "remove_beneficiary")
        return self.registry.remove_beneficiary(beneficiary_id, actor)

    def add_guardian(self, vault_id: str, spec: GuardianSpec, proof: ActorProof) -> Guardian:
        actor = self._authorize_owner(proof, vault_id, "add_guardian")
        return self.registry.add_guardian(vault_id, spec, actor)

    def accept_guardian(self, guardian_id: str, proof: ActorProof) -> Guardian:
        guardian = self.registry.get_guardian(guardian_id)
        if proof.actor_id != guardian_id:
            raise errors.UnauthorizedGuardianError(proof.actor_id, guardian.vault_id)
        self._authorize_guardian(proof, guardian.vault_id, "accept_guardian")
        return self.registry.accept_guardian(guardian_id)

    def revoke_guardian(self, guardian_id: str, proof: ActorProof) -> Guardian:
        guardian = self.registry.get_guardian(guardian_id)
        actor = self._authorize_owner(proof, guardian.vault_id, "revoke_guardian")
        return self.registry.revoke_guardian(guardian_id, actor)

    # ─── Activity ───

    def record_activity(self, vault_id: str, proof: ActorProof) -> ActivityRecord:
        """Signed "I'm alive" ping. The proof's issue time is the activity time."""
        actor = self._authorize_owner(proof, vault_id, "record_activity")
        try:
            return self.ledger.record_activity(vault_id, proof.issued_at, actor=actor, source="signed")
        except errors.StaleActivityError:
            # A newer activity is already on record; this one changes nothing.
            return self.ledger.get_last_activity(vault_id)

    def observe_activity(self, vault_id: str, occurred_at: int, source: str = "chain") -> ActivityRecord:
        """Activity seen by a trusted observer (e.g. an outgoing transaction from the owner's wallet)."""
        try:
            return self.ledger.record_activity(vault_id, occurred_at, actor=f"observer:{source}", source=source)
        except errors.StaleActivityError:
            return self.ledger.get_last_activity(vault_id)

    # ─── Claims ───

    def cast_vote(self, claim_id: str, proof: ActorProof, decision: str) -> VoteResult:
        claim = self.claims.get_claim(claim_id)
        guardian_id = self._authorize_guardian(proof, claim.vault_id, f"vote:{claim_id}")
        return self.quorum.cast_vote(claim_id, guardian_id, decision)

    async def release(self, claim_id: str) -> ReleaseReceipt:
        if self.releases.executor is None:
            raise RuntimeError("no asset-transfer executor configured")
        return await self.releases.release(claim_id)

    def get_claim_status(self, claim_id: str) -> ClaimSnapshot:
        claim = self.claims.get_claim(claim_id)
        tally = self.quorum.tally(claim_id)
        return ClaimSnapshot(claim=claim, tally=tally, approvals=list(tally.approved_by))

    def list_claims(self, vault_id: str, open_only: bool = False) -> list[Claim]:
        return self.claims.list_claims(vault_id, open_only)

    def claims_for_wallet(self, wallet_address: str) -> list[Claim]:
        beneficiaries = self.registry.beneficiaries_for_wallet(wallet_address)
        return self.claims.claims_for_beneficiaries([(b.vault_id, b.beneficiary_id) for b in beneficiaries])

    def reject_claim(self, claim_id: str, proof: ActorProof, reason: str = "") -> Claim:
        claim = self.claims.get_claim(claim_id)
        actor = self._authorize_admin(proof, claim.vault_id, f"reject_claim:{claim_id}")
        return self.claims.transition(claim_id, "REJECTED", "ADMIN", actor, reason or "rejected by administrator")

    def clear_release_alert(self, claim_id: str, proof: ActorProof) -> Claim:
        claim = self.claims.get_claim(claim_id)
        actor = self._authorize_admin(proof, claim.vault_id, f"clear_release_alert:{claim_id}")
        return self.releases.clear_alert(claim_id, actor)

    # ─── Audit ───

    def get_audit_trail(self, vault_id: str) -> list[AuditEntry]:
        self.registry.get_vault(vault_id)
        return self.audit.query(vault_id=vault_id)

    def get_claim_trail(self, claim_id: str) -> list[AuditEntry]:
        self.claims.get_claim(claim_id)
        return self.audit.query(claim_id=claim_id)

    def verify_audit(self, vault_id: str) -> ChainVerification:
        return self.audit.verify_chain(vault_id)

    # ─── Scheduling / ops ───

    def sweep(self, now: Optional[int] = None) -> SweepResult:
        """Scheduler entry point; trusted callers only."""
        return self.monitor.sweep(now)

    def requested_sweep(self, proof: ActorProof) -> SweepResult:
        """Sweep asked for by an administrator. Always evaluated at the service clock."""
        actor = self._authorize_admin(proof, ADMIN_SCOPE, "sweep")
        logger.info("sweep requested by %s", actor)
        return self.monitor.sweep()

    def health(self) -> HealthStatus:
        return connection.health_check(self.db)
