"""
Vaults, beneficiaries and guardians.

Every mutation is audited on the vault's chain. The quorum invariant
(1 <= guardian_quorum <= registered non-revoked guardians) is enforced here
and nowhere else; allocation sums are deliberately not enforced at
registration time, only at release.
"""

import logging
import uuid
from typing import Callable, Optional

import redis

from Willo_Vault.willo_shared import config, errors
from Willo_Vault.willo_shared.clock import now_ms
from Willo_Vault.willo_shared.types import (
    Beneficiary, BeneficiarySpec, Guardian, GuardianSpec, Vault, VaultPolicy,
)
from Willo_Vault.willo_db import keys
from Willo_Vault.willo_db.audit import AuditLog
from Willo_Vault.willo_db.claims import ClaimStateMachine
from Willo_Vault.willo_db.txn import run_optimistic

logger = logging.getLogger(__name__)


class VaultRegistry:
    def __init__(self, client: redis.Redis, audit: AuditLog, claims: ClaimStateMachine,
                 clock: Callable[[], int] = now_ms):
        self.db: redis.Redis = client
        self.audit = audit
        self.claims = claims
        self.clock = clock

    # ─── Validation ───

    def _validate_share(self, share: int) -> None:
        if not isinstance(share, int) or not 0 <= share <= config.MAX_ALLOCATION_PERCENT:
            raise errors.InvalidPolicyError(f"allocation share must be an integer 0-100, got {share!r}")

    def _validate_policy(self, policy: VaultPolicy) -> None:
        if not policy.name:
            raise errors.InvalidPolicyError("vault name is required")
        if policy.inactivity_threshold_seconds < config.MIN_INACTIVITY_THRESHOLD_SECONDS:
            raise errors.InvalidPolicyError(
                f"inactivity threshold must be at least {config.MIN_INACTIVITY_THRESHOLD_SECONDS}s"
            )
        if not 1 <= policy.guardian_quorum <= len(policy.guardians):
            raise errors.InvalidPolicyError(
                f"guardian quorum {policy.guardian_quorum} must be between 1 and {len(policy.guardians)} guardians"
            )
        if not 0 <= policy.veto_threshold <= len(policy.guardians):
            raise errors.InvalidPolicyError(f"veto threshold {policy.veto_threshold} out of range")
        if policy.claim_validity_seconds < 0:
            raise errors.InvalidPolicyError("claim validity window cannot be negative")
        for spec in policy.beneficiaries:
            self._validate_share(spec.allocation_share)
            if not spec.wallet_address:
                raise errors.InvalidPolicyError("beneficiary wallet address is required")
        for spec in policy.guardians:
            if not spec.wallet_address:
                raise errors.InvalidPolicyError("guardian wallet address is required")

    # ─── Serialization ───

    def _serialize_vault(self, vault: Vault) -> dict:
        return {
            "vault_id": vault.vault_id,
            "owner_id": vault.owner_id,
            "name": vault.name,
            "description": vault.description,
            "wallet_address": vault.wallet_address,
            "owner_key": vault.owner_key,
            "inactivity_threshold_seconds": str(vault.inactivity_threshold_seconds),
            "guardian_quorum": str(vault.guardian_quorum),
            "claim_validity_seconds": str(vault.claim_validity_seconds),
            "veto_threshold": str(vault.veto_threshold),
            "status": vault.status,
            "created_at": str(vault.created_at),
        }

    def _deserialize_vault(self, data: dict) -> Vault:
        return Vault(
            vault_id=data["vault_id"],
            owner_id=data["owner_id"],
            name=data["name"],
            description=data["description"],
            wallet_address=data["wallet_address"],
            owner_key=data["owner_key"],
            inactivity_threshold_seconds=int(data["inactivity_threshold_seconds"]),
            guardian_quorum=int(data["guardian_quorum"]),
            claim_validity_seconds=int(data["claim_validity_seconds"]),
            veto_threshold=int(data["veto_threshold"]),
            status=data["status"],
            created_at=int(data["created_at"]),
        )

    def _serialize_beneficiary(self, b: Beneficiary) -> dict:
        return {
            "beneficiary_id": b.beneficiary_id,
            "vault_id": b.vault_id,
            "wallet_address": b.wallet_address,
            "allocation_share": str(b.allocation_share),
            "name": b.name,
            "relationship": b.relationship,
            "status": b.status,
            "created_at": str(b.created_at),
        }

    def _deserialize_beneficiary(self, data: dict) -> Beneficiary:
        return Beneficiary(
            beneficiary_id=data["beneficiary_id"],
            vault_id=data["vault_id"],
            wallet_address=data["wallet_address"],
            allocation_share=int(data["allocation_share"]),
            name=data["name"],
            relationship=data["relationship"],
            status=data["status"],
            created_at=int(data["created_at"]),
        )

    def _serialize_guardian(self, g: Guardian) -> dict:
        return {
            "guardian_id": g.guardian_id,
            "vault_id": g.vault_id,
            "wallet_address": g.wallet_address,
            "name": g.name,
            "email": g.email,
            "verify_key": g.verify_key,
            "status": g.status,
            "created_at": str(g.created_at),
        }

    def _deserialize_guardian(self, data: dict) -> Guardian:
        return Guardian(
            guardian_id=data["guardian_id"],
            vault_id=data["vault_id"],
            wallet_address=data["wallet_address"],
            name=data["name"],
            email=data["email"],
            verify_key=data["verify_key"],
            status=data["status"],
            created_at=int(data["created_at"]),
        )

    def _new_beneficiary(self, vault_id: str, spec: BeneficiarySpec, now: int) -> Beneficiary:
        return Beneficiary(
            beneficiary_id=str(uuid.uuid4()),
            vault_id=vault_id,
            wallet_address=spec.wallet_address,
            allocation_share=spec.allocation_share,
            name=spec.name,
            relationship=spec.relationship,
            status="ACTIVE",
            created_at=now,
        )

    def _new_guardian(self, vault_id: str, spec: GuardianSpec, now: int) -> Guardian:
        return Guardian(
            guardian_id=str(uuid.uuid4()),
            vault_id=vault_id,
            wallet_address=spec.wallet_address,
            name=spec.name,
            email=spec.email,
            verify_key=spec.verify_key,
            status="INVITED",
            created_at=now,
        )

    def _queue_beneficiary(self, pipe, b: Beneficiary) -> None:
        pipe.hset(keys.beneficiary_key(b.beneficiary_id), mapping=self._serialize_beneficiary(b))
        pipe.sadd(keys.beneficiary_idx_key(b.vault_id), b.beneficiary_id)
        pipe.sadd(keys.wallet_idx_key(b.wallet_address), b.beneficiary_id)

    def _queue_guardian(self, pipe, g: Guardian) -> None:
        pipe.hset(keys.guardian_key(g.guardian_id), mapping=self._serialize_guardian(g))
        pipe.sadd(keys.guardian_idx_key(g.vault_id), g.guardian_id)

    # ─── Loads (client or pipeline in immediate mode) ───

    def load_vault(self, conn, vault_id: str) -> Vault:
        data = conn.hgetall(keys.vault_key(vault_id))
        if not data:
            raise errors.VaultNotFoundError(vault_id)
        return self._deserialize_vault(data)

    def load_beneficiary(self, conn, beneficiary_id: str) -> Beneficiary:
        data = conn.hgetall(keys.beneficiary_key(beneficiary_id))
        if not data:
            raise errors.BeneficiaryNotFoundError(beneficiary_id)
        return self._deserialize_beneficiary(data)

    def load_guardian(self, conn, guardian_id: str) -> Guardian:
        data = conn.hgetall(keys.guardian_key(guardian_id))
        if not data:
            raise errors.GuardianNotFoundError(guardian_id)
        return self._deserialize_guardian(data)

    def load_beneficiaries(self, conn, vault_id: str, active_only: bool = True) -> list[Beneficiary]:
        result = []
        for bid in sorted(conn.smembers(keys.beneficiary_idx_key(vault_id))):
            data = conn.hgetall(keys.beneficiary_key(bid))
            if not data:
                continue
            b = self._deserialize_beneficiary(data)
            if active_only and b.status != "ACTIVE":
                continue
            result.append(b)
        return sorted(result, key=lambda b: (b.created_at, b.beneficiary_id))

    def load_guardians(self, conn, vault_id: str) -> list[Guardian]:
        result = []
        for gid in sorted(conn.smembers(keys.guardian_idx_key(vault_id))):
            data = conn.hgetall(keys.guardian_key(gid))
            if data:
                result.append(self._deserialize_guardian(data))
        return sorted(result, key=lambda g: (g.created_at, g.guardian_id))

    def watch_guardians(self, pipe: redis.client.Pipeline, vault_id: str) -> list[Guardian]:
        idx = keys.guardian_idx_key(vault_id)
        pipe.watch(idx)
        ids = pipe.smembers(idx)
        if ids:
            pipe.watch(*[keys.guardian_key(gid) for gid in ids])
        return self.load_guardians(pipe, vault_id)

    # ─── Public reads ───

    def get_vault(self, vault_id: str) -> Vault:
        try:
            return self.load_vault(self.db, vault_id)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("get_vault")

    def list_vaults(self, owner_id: str) -> list[Vault]:
        try:
            vaults = [self.load_vault(self.db, vid) for vid in self.db.smembers(keys.owner_idx_key(owner_id))]
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("list_vaults")
        return sorted(vaults, key=lambda v: v.created_at)

    def all_vault_ids(self) -> list[str]:
        try:
            vault_ids: list[str] = []
            cursor = 0
            pattern = f"{config.VAULT_KEY_PREFIX}:*"
            while True:
                cursor, found = self.db.scan(cursor=cursor, match=pattern, count=config.SCAN_BATCH_SIZE)
                for key in found:
                    vault_ids.append(key[len(config.VAULT_KEY_PREFIX) + 1:])
                if cursor == 0:
                    break
            return sorted(set(vault_ids))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("all_vault_ids")

    def get_beneficiary(self, beneficiary_id: str) -> Beneficiary:
        try:
            return self.load_beneficiary(self.db, beneficiary_id)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("get_beneficiary")

    def get_guardian(self, guardian_id: str) -> Guardian:
        try:
            return self.load_guardian(self.db, guardian_id)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("get_guardian")

    def list_beneficiaries(self, vault_id: str, active_only: bool = True) -> list[Beneficiary]:
        try:
            return self.load_beneficiaries(self.db, vault_id, active_only)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("list_beneficiaries")

    def list_guardians(self, vault_id: str) -> list[Guardian]:
        try:
            return self.load_guardians(self.db, vault_id)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("list_guardians")

    def beneficiaries_for_wallet(self, wallet_address: str) -> list[Beneficiary]:
        try:
            ids = sorted(self.db.smembers(keys.wallet_idx_key(wallet_address)))
            return [self.load_beneficiary(self.db, bid) for bid in ids]
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("beneficiaries_for_wallet")

    def lookup_verify_key(self, actor_id: str, role: str, vault_id: str) -> Optional[str]:
        """Key lookup for the identity verifier: the registered key of this actor on this vault."""
        try:
            if role == "OWNER":
                data = self.db.hmget(keys.vault_key(vault_id), "owner_id", "owner_key")
                owner_id, owner_key = data
                return owner_key if owner_id == actor_id and owner_key else None
            if role == "GUARDIAN":
                vid, verify_key, status = self.db.hmget(
                    keys.guardian_key(actor_id), "vault_id", "verify_key", "status"
                )
                if vid != vault_id or status == "REVOKED":
                    return None
                return verify_key or None
            return None
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("lookup_verify_key")

    # ─── Vault lifecycle ───

    def create_vault(self, owner_id: str, policy: VaultPolicy) -> Vault:
        self._validate_policy(policy)
        now = self.clock()
        vault = Vault(
            vault_id=str(uuid.uuid4()),
            owner_id=owner_id,
            name=policy.name,
            description=policy.description,
            wallet_address=policy.wallet_address,
            owner_key=policy.owner_key,
            inactivity_threshold_seconds=policy.inactivity_threshold_seconds,
            guardian_quorum=policy.guardian_quorum,
            claim_validity_seconds=policy.claim_validity_seconds,
            veto_threshold=policy.veto_threshold,
            status="ACTIVE",
            created_at=now,
        )
        beneficiaries = [self._new_beneficiary(vault.vault_id, s, now) for s in policy.beneficiaries]
        guardians = [self._new_guardian(vault.vault_id, s, now) for s in policy.guardians]
        actor = f"owner:{owner_id}"

        def body(pipe):
            batch = self.audit.begin(pipe, vault.vault_id, now)
            pipe.multi()
            pipe.hset(keys.vault_key(vault.vault_id), mapping=self._serialize_vault(vault))
            pipe.sadd(keys.owner_idx_key(owner_id), vault.vault_id)
            pipe.hset(keys.activity_key(vault.vault_id), mapping={
                "vault_id": vault.vault_id,
                "last_activity_at": str(now),
                "activity_sequence": "0",
            })
            batch.add("VAULT", vault.vault_id, "", "ACTIVE", actor, reason="vault created",
                      metadata={"inactivity_threshold_seconds": vault.inactivity_threshold_seconds,
                                "guardian_quorum": vault.guardian_quorum})
            for b in beneficiaries:
                self._queue_beneficiary(pipe, b)
                batch.add("BENEFICIARY", b.beneficiary_id, "", "ACTIVE", actor,
                          metadata={"allocation_share": b.allocation_share})
            for g in guardians:
                self._queue_guardian(pipe, g)
                batch.add("GUARDIAN", g.guardian_id, "", "INVITED", actor)
            batch.flush(pipe)
            return vault

        created = run_optimistic(self.db, [], body, "create_vault")
        logger.info("vault %s created for owner %s with %d beneficiaries, %d guardians",
                    vault.vault_id, owner_id, len(beneficiaries), len(guardians))
        return created

    def set_status(self, vault_id: str, status: str, actor: str, role: str = "OWNER", reason: str = "") -> Vault:
        """Suspend, reactivate or close a vault. Closing rejects every open claim atomically."""
        if status not in config.VALID_VAULT_STATUSES:
            raise errors.InvalidPolicyError(f"unknown vault status {status}")

        def body(pipe):
            vault = self.load_vault(pipe, vault_id)
            if (vault.status, status) not in config.VAULT_TRANSITIONS:
                raise errors.InvalidTransitionError(vault_id, vault.status, status)

            to_cancel = []
            if status == "CLOSED":
                to_cancel = self.claims.cancellable(self.claims.watch_open_claims(pipe, vault_id), role)

            now = self.clock()
            batch = self.audit.begin(pipe, vault_id, now)
            pipe.multi()
            pipe.hset(keys.vault_key(vault_id), "status", status)
            batch.add("VAULT", vault_id, vault.status, status, actor, reason=reason)
            for claim in to_cancel:
                self.claims.queue_transition(pipe, batch, claim, "REJECTED", actor, "vault closed", now)
            batch.flush(pipe)
            vault.status = status
            return vault

        result = run_optimistic(self.db, [keys.vault_key(vault_id)], body, f"set_status:{status}")
        logger.info("vault %s is now %s", vault_id, status)
        return result

    # ─── Beneficiaries ───

    def add_beneficiary(self, vault_id: str, spec: BeneficiarySpec, actor: str) -> Beneficiary:
        self._validate_share(spec.allocation_share)
        if not spec.wallet_address:
            raise errors.InvalidPolicyError("beneficiary wallet address is required")

        def body(pipe):
            vault = self.load_vault(pipe, vault_id)
            if vault.status == "CLOSED":
                raise errors.VaultNotActiveError(vault_id, vault.status)
            now = self.clock()
            b = self._new_beneficiary(vault_id, spec, now)
            batch = self.audit.begin(pipe, vault_id, now)
            pipe.multi()
            self._queue_beneficiary(pipe, b)
            batch.add("BENEFICIARY", b.beneficiary_id, "", "ACTIVE", actor,
                      metadata={"allocation_share": b.allocation_share})
            batch.flush(pipe)
            return b

        return run_optimistic(self.db, [keys.vault_key(vault_id)], body, "add_beneficiary")

    def update_beneficiary_share(self, beneficiary_id: str, share: int, actor: str) -> Beneficiary:
        self._validate_share(share)

        def body(pipe):
            b = self.load_beneficiary(pipe, beneficiary_id)
            if b.status != "ACTIVE":
                raise errors.InvalidTransitionError(beneficiary_id, b.status, "ACTIVE", "beneficiary removed")
            batch = self.audit.begin(pipe, b.vault_id)
            pipe.multi()
            pipe.hset(keys.beneficiary_key(beneficiary_id), "allocation_share", str(share))
            batch.add("BENEFICIARY", beneficiary_id, "ACTIVE", "ACTIVE", actor, reason="share changed",
                      metadata={"from_share": b.allocation_share, "to_share": share})
            batch.flush(pipe)
            b.allocation_share = share
            return b

        return run_optimistic(self.db, [keys.beneficiary_key(beneficiary_id)], body, "update_beneficiary_share")

    def remove_beneficiary(self, beneficiary_id: str, actor: str, role: str = "OWNER") -> Beneficiary:
        def body(pipe):
            b = self.load_beneficiary(pipe, beneficiary_id)
            if b.status != "ACTIVE":
                raise errors.InvalidTransitionError(beneficiary_id, b.status, "REMOVED")
            to_cancel = self.claims.cancellable(
                self.claims.watch_open_claims(pipe, b.vault_id, beneficiary_id), role
            )
            now = self.clock()
            batch = self.audit.begin(pipe, b.vault_id, now)
            pipe.multi()
            pipe.hset(keys.beneficiary_key(beneficiary_id), "status", "REMOVED")
            batch.add("BENEFICIARY", beneficiary_id, "ACTIVE", "REMOVED", actor)
            for claim in to_cancel:
                self.claims.queue_transition(pipe, batch, claim, "REJECTED", actor, "beneficiary removed", now)
            batch.flush(pipe)
            b.status = "REMOVED"
            return b

        return run_optimistic(self.db, [keys.beneficiary_key(beneficiary_id)], body, "remove_beneficiary")

    # ─── Guardians ───

    def add_guardian(self, vault_id: str, spec: GuardianSpec, actor: str) -> Guardian:
        if not spec.wallet_address:
            raise errors.InvalidPolicyError("guardian wallet address is required")

        def body(pipe):
            vault = self.load_vault(pipe, vault_id)
            if vault.status == "CLOSED":
                raise errors.VaultNotActiveError(vault_id, vault.status)
            now = self.clock()
            g = self._new_guardian(vault_id, spec, now)
            batch = self.audit.begin(pipe, vault_id, now)
            pipe.multi()
            self._queue_guardian(pipe, g)
            batch.add("GUARDIAN", g.guardian_id, "", "INVITED", actor)
            batch.flush(pipe)
            return g

        return run_optimistic(self.db, [keys.vault_key(vault_id)], body, "add_guardian")

    def _set_guardian_status(self, guardian_id: str, expected: set, status: str, actor: str) -> Guardian:
        def body(pipe):
            g = self.load_guardian(pipe, guardian_id)
            if g.status not in expected:
                raise errors.InvalidTransitionError(guardian_id, g.status, status)

            pipe.watch(keys.vault_key(g.vault_id))
            vault = self.load_vault(pipe, g.vault_id)
            guardians = self.watch_guardians(pipe, g.vault_id)
            if status == "REVOKED":
                remaining = [x for x in guardians if x.status != "REVOKED" and x.guardian_id != guardian_id]
                if len(remaining) < vault.guardian_quorum:
                    raise errors.InvalidPolicyError(
                        f"revoking {guardian_id} leaves {len(remaining)} guardians, quorum is {vault.guardian_quorum}"
                    )

            for x in guardians:
                if x.guardian_id == guardian_id:
                    x.status = status
            decided = self.claims.watch_decided_claims(pipe, vault, guardians)

            now = self.clock()
            batch = self.audit.begin(pipe, g.vault_id, now)
            pipe.multi()
            pipe.hset(keys.guardian_key(guardian_id), "status", status)
            batch.add("GUARDIAN", guardian_id, g.status, status, actor)
            for claim, tally in decided:
                self.claims.queue_quorum_outcome(pipe, batch, claim, tally, now)
            batch.flush(pipe)
            g.status = status
            return g

        watch = [keys.guardian_key(guardian_id)]
        return run_optimistic(self.db, watch, body, f"guardian:{status}")

    def accept_guardian(self, guardian_id: str) -> Guardian:
        return self._set_guardian_status(guardian_id, {"INVITED"}, "ACTIVE", f"guardian:{guardian_id}")

    def revoke_guardian(self, guardian_id: str, actor: str) -> Guardian:
        return self._set_guardian_status(guardian_id, {"INVITED", "ACTIVE"}, "REVOKED", actor)

    def set_guardian_quorum(self, vault_id: str, quorum: int, actor: str) -> Vault:
        """Change the quorum; ELIGIBLE claims the new quorum already settles move in the same commit."""
        def body(pipe):
            vault = self.load_vault(pipe, vault_id)
            guardians = self.watch_guardians(pipe, vault_id)
            registered = [g for g in guardians if g.status != "REVOKED"]
            if not 1 <= quorum <= len(registered):
                raise errors.InvalidPolicyError(
                    f"guardian quorum {quorum} must be between 1 and {len(registered)} guardians"
                )
            previous = vault.guardian_quorum
            vault.guardian_quorum = quorum
            decided = self.claims.watch_decided_claims(pipe, vault, guardians)

            now = self.clock()
            batch = self.audit.begin(pipe, vault_id, now)
            pipe.multi()
            pipe.hset(keys.vault_key(vault_id), "guardian_quorum", str(quorum))
            batch.add("VAULT", vault_id, vault.status, vault.status, actor, reason="guardian quorum changed",
                      metadata={"from_quorum": previous, "to_quorum": quorum})
            for claim, tally in decided:
                self.claims.queue_quorum_outcome(pipe, batch, claim, tally, now)
            batch.flush(pipe)
            return vault

        return run_optimistic(self.db, [keys.vault_key(vault_id)], body, "set_guardian_quorum")
