import pytest

from Willo_Vault.willo_shared import errors
from Willo_Vault.willo_shared.types import BeneficiarySpec, GuardianSpec, VaultPolicy

THIRTY_DAYS = 2_592_000


def _policy(**overrides):
    fields = dict(
        name="vault",
        inactivity_threshold_seconds=THIRTY_DAYS,
        guardian_quorum=2,
        guardians=[GuardianSpec(wallet_address=f"0xg{i}") for i in range(3)],
        beneficiaries=[BeneficiarySpec(wallet_address="0xb0", allocation_share=100)],
    )
    fields.update(overrides)
    return VaultPolicy(**fields)


# ─── Creation ───

def test_create_vault_registers_everything(registry, audit, clock):
    vault = registry.create_vault("owner-1", _policy())

    assert vault.status == "ACTIVE"
    assert vault.created_at == clock.now
    assert registry.get_vault(vault.vault_id) == vault
    assert len(registry.list_guardians(vault.vault_id)) == 3
    assert all(g.status == "INVITED" for g in registry.list_guardians(vault.vault_id))
    assert len(registry.list_beneficiaries(vault.vault_id)) == 1
    assert [v.vault_id for v in registry.list_vaults("owner-1")] == [vault.vault_id]

    types = [e.entity_type for e in audit.query(vault_id=vault.vault_id)]
    assert types == ["VAULT", "BENEFICIARY", "GUARDIAN", "GUARDIAN", "GUARDIAN"]


@pytest.mark.parametrize("overrides", [
    {"inactivity_threshold_seconds": THIRTY_DAYS - 1},
    {"guardian_quorum": 0},
    {"guardian_quorum": 4},
    {"guardians": []},
    {"veto_threshold": 4},
    {"claim_validity_seconds": -1},
    {"beneficiaries": [BeneficiarySpec(wallet_address="0xb0", allocation_share=101)]},
    {"beneficiaries": [BeneficiarySpec(wallet_address="", allocation_share=10)]},
    {"name": ""},
])
def test_invalid_policy_rejected(registry, redis_client, overrides):
    with pytest.raises(errors.InvalidPolicyError):
        registry.create_vault("owner-1", _policy(**overrides))
    assert redis_client.dbsize() == 0


def test_allocation_sum_not_enforced_at_registration(registry):
    policy = _policy(beneficiaries=[
        BeneficiarySpec(wallet_address="0xb0", allocation_share=70),
        BeneficiarySpec(wallet_address="0xb1", allocation_share=70),
    ])
    vault = registry.create_vault("owner-1", policy)
    assert sum(b.allocation_share for b in registry.list_beneficiaries(vault.vault_id)) == 140


def test_all_vault_ids(registry):
    ids = {registry.create_vault(f"owner-{i}", _policy()).vault_id for i in range(3)}
    assert set(registry.all_vault_ids()) == ids


# ─── Status ───

def test_suspend_and_reactivate(registry, audit):
    vault = registry.create_vault("owner-1", _policy())
    registry.set_status(vault.vault_id, "SUSPENDED", "owner:owner-1")
    assert registry.get_vault(vault.vault_id).status == "SUSPENDED"
    registry.set_status(vault.vault_id, "ACTIVE", "owner:owner-1")
    assert registry.get_vault(vault.vault_id).status == "ACTIVE"

    last = audit.query(vault_id=vault.vault_id)[-1]
    assert (last.from_state, last.to_state) == ("SUSPENDED", "ACTIVE")


def test_closed_vault_cannot_reopen(registry):
    vault = registry.create_vault("owner-1", _policy())
    registry.set_status(vault.vault_id, "CLOSED", "owner:owner-1")

    with pytest.raises(errors.InvalidTransitionError):
        registry.set_status(vault.vault_id, "ACTIVE", "owner:owner-1")


def test_close_cancels_open_claims(eligible_vault, registry, claims):
    vault, _, _, open_claims = eligible_vault()

    registry.set_status(vault.vault_id, "CLOSED", "owner:owner-1")

    assert all(claims.get_claim(c.claim_id).state == "REJECTED" for c in open_claims)


# ─── Guardians ───

def test_accept_guardian(registry):
    vault = registry.create_vault("owner-1", _policy())
    guardian = registry.list_guardians(vault.vault_id)[0]

    accepted = registry.accept_guardian(guardian.guardian_id)
    assert accepted.status == "ACTIVE"

    with pytest.raises(errors.InvalidTransitionError):
        registry.accept_guardian(guardian.guardian_id)


def test_revoke_guardian_respects_quorum(registry):
    vault = registry.create_vault("owner-1", _policy())
    g1, g2, g3 = registry.list_guardians(vault.vault_id)

    registry.revoke_guardian(g1.guardian_id, "owner:owner-1")
    with pytest.raises(errors.InvalidPolicyError):
        registry.revoke_guardian(g2.guardian_id, "owner:owner-1")

    statuses = sorted(g.status for g in registry.list_guardians(vault.vault_id))
    assert statuses == ["INVITED", "INVITED", "REVOKED"]


def test_add_guardian_then_raise_quorum(registry):
    vault = registry.create_vault("owner-1", _policy())

    with pytest.raises(errors.InvalidPolicyError):
        registry.set_guardian_quorum(vault.vault_id, 4, "owner:owner-1")

    registry.add_guardian(vault.vault_id, GuardianSpec(wallet_address="0xg9"), "owner:owner-1")
    updated = registry.set_guardian_quorum(vault.vault_id, 4, "owner:owner-1")
    assert updated.guardian_quorum == 4


# ─── Beneficiaries ───

def test_update_and_remove_beneficiary(registry):
    vault = registry.create_vault("owner-1", _policy())
    (b,) = registry.list_beneficiaries(vault.vault_id)

    assert registry.update_beneficiary_share(b.beneficiary_id, 55, "owner:owner-1").allocation_share == 55
    with pytest.raises(errors.InvalidPolicyError):
        registry.update_beneficiary_share(b.beneficiary_id, 150, "owner:owner-1")

    registry.remove_beneficiary(b.beneficiary_id, "owner:owner-1")
    assert registry.list_beneficiaries(vault.vault_id) == []
    assert registry.list_beneficiaries(vault.vault_id, active_only=False)[0].status == "REMOVED"


def test_remove_beneficiary_cancels_its_claim(eligible_vault, registry, claims):
    vault, _, (b0, b1), (c0, c1) = eligible_vault()

    registry.remove_beneficiary(b0.beneficiary_id, "owner:owner-1")

    assert claims.get_claim(c0.claim_id).state == "REJECTED"
    assert claims.get_claim(c1.claim_id).state == "ELIGIBLE"


def test_beneficiaries_for_wallet_is_case_insensitive(registry):
    policy = _policy(beneficiaries=[BeneficiarySpec(wallet_address="0xAbCd", allocation_share=50)])
    vault = registry.create_vault("owner-1", policy)

    found = registry.beneficiaries_for_wallet("0xabcd")
    assert [b.vault_id for b in found] == [vault.vault_id]


# ─── Key lookup ───

def test_lookup_verify_key(registry):
    policy = _policy(owner_key="aa" * 32, guardians=[
        GuardianSpec(wallet_address="0xg0", verify_key="bb" * 32),
        GuardianSpec(wallet_address="0xg1", verify_key="cc" * 32),
    ])
    vault = registry.create_vault("owner-1", policy)
    g0 = next(g for g in registry.list_guardians(vault.vault_id) if g.wallet_address == "0xg0")

    assert registry.lookup_verify_key("owner-1", "OWNER", vault.vault_id) == "aa" * 32
    assert registry.lookup_verify_key("someone-else", "OWNER", vault.vault_id) is None
    assert registry.lookup_verify_key(g0.guardian_id, "GUARDIAN", vault.vault_id) == "bb" * 32
    assert registry.lookup_verify_key(g0.guardian_id, "GUARDIAN", "other-vault") is None
    assert registry.lookup_verify_key("owner-1", "ADMIN", vault.vault_id) is None
