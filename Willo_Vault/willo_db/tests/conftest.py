import pytest

from Willo_Vault.willo_shared import config
from Willo_Vault.willo_shared.types import BeneficiarySpec, GuardianSpec, VaultPolicy
from Willo_Vault.willo_db.audit import AuditLog
from Willo_Vault.willo_db.claims import ClaimStateMachine
from Willo_Vault.willo_db.ledger import ActivityLedger
from Willo_Vault.willo_db.monitor import VaultInactivityMonitor
from Willo_Vault.willo_db.quorum import ApprovalQuorum
from Willo_Vault.willo_db.registry import VaultRegistry
from Willo_Vault.willo_db.release import ReleaseCoordinator


@pytest.fixture
def audit(redis_client, clock):
    return AuditLog(redis_client, clock)


@pytest.fixture
def claims(redis_client, audit, clock):
    return ClaimStateMachine(redis_client, audit, clock)


@pytest.fixture
def registry(redis_client, audit, claims, clock):
    return VaultRegistry(redis_client, audit, claims, clock)


@pytest.fixture
def ledger(redis_client, audit, claims, clock):
    return ActivityLedger(redis_client, audit, claims, clock)


@pytest.fixture
def quorum(redis_client, audit, claims, registry, clock):
    return ApprovalQuorum(redis_client, audit, claims, registry, clock)


@pytest.fixture
def monitor(redis_client, audit, claims, ledger, registry, clock):
    return VaultInactivityMonitor(redis_client, audit, claims, ledger, registry, clock)


@pytest.fixture
def coordinator(redis_client, audit, claims, registry, executor, clock):
    return ReleaseCoordinator(redis_client, audit, claims, registry, executor, clock, timeout=1.0)


@pytest.fixture
def make_vault(registry):
    """Create a vault whose guardians have all accepted. Returns (vault, guardians, beneficiaries)."""
    def _make(
        shares=(60, 40),
        guardians=3,
        quorum=2,
        threshold=config.MIN_INACTIVITY_THRESHOLD_SECONDS,
        validity=0,
        veto=0,
        owner_id="owner-1",
    ):
        policy = VaultPolicy(
            name="family vault",
            inactivity_threshold_seconds=threshold,
            guardian_quorum=quorum,
            claim_validity_seconds=validity,
            veto_threshold=veto,
            guardians=[GuardianSpec(wallet_address=f"0xg{i}", name=f"guardian {i}") for i in range(guardians)],
            beneficiaries=[BeneficiarySpec(wallet_address=f"0xb{i}", allocation_share=s)
                           for i, s in enumerate(shares)],
        )
        vault = registry.create_vault(owner_id, policy)
        by_wallet = lambda x: x.wallet_address
        accepted = [registry.accept_guardian(g.guardian_id)
                    for g in sorted(registry.list_guardians(vault.vault_id), key=by_wallet)]
        return vault, accepted, sorted(registry.list_beneficiaries(vault.vault_id), key=by_wallet)

    return _make


@pytest.fixture
def eligible_vault(make_vault, monitor, claims, clock):
    """A vault left alone for 30 days and swept: one ELIGIBLE claim per beneficiary."""
    def _make(**kwargs):
        vault, guardians, beneficiaries = make_vault(**kwargs)
        clock.advance(seconds=vault.inactivity_threshold_seconds)
        monitor.sweep()
        open_claims = claims.list_claims(vault.vault_id, open_only=True)
        by_beneficiary = {c.beneficiary_id: c for c in open_claims}
        return vault, guardians, beneficiaries, [by_beneficiary[b.beneficiary_id] for b in beneficiaries]

    return _make
