"""Tests for ClaimArchive and the Redis -> PostgreSQL archive bridge. Need a reachable PostgreSQL."""

import pytest

from Willo_Vault.willo_shared.errors import ArchiveWriteError
from Willo_Vault.willo_shared.identity import sign_proof
from Willo_Vault.willo_shared.types import BeneficiarySpec, GuardianSpec, VaultPolicy
from Willo_Vault.bridge import archive_all, archive_terminal_claims


pytestmark = pytest.mark.asyncio

THIRTY_DAYS = 2_592_000


def _vault_with_claims(service, clock):
    policy = VaultPolicy(
        name="archive vault",
        inactivity_threshold_seconds=THIRTY_DAYS,
        guardian_quorum=1,
        guardians=[GuardianSpec(wallet_address="0xg0")],
        beneficiaries=[BeneficiarySpec(wallet_address="0xb0", allocation_share=70),
                       BeneficiarySpec(wallet_address="0xb1", allocation_share=30)],
    )
    vault_id = service.create_vault("owner-1", policy)
    clock.advance(seconds=THIRTY_DAYS)
    service.sweep()
    return vault_id, service.list_claims(vault_id)


def _reject(service, admin_keys, clock, claim, reason=""):
    proof = sign_proof(admin_keys[0], "ops-1", "ADMIN", claim.vault_id, f"reject_claim:{claim.claim_id}", clock.now)
    return service.reject_claim(claim.claim_id, proof, reason)


async def test_only_terminal_claims_are_archived(service, archive, clock, admin_keys):
    vault_id, (c0, c1) = _vault_with_claims(service, clock)
    _reject(service, admin_keys, clock, c0, "duplicate")

    assert await archive_terminal_claims(service, archive, vault_id) == 1

    row = await archive.get_archived(c0.claim_id)
    assert row["final_state"] == "REJECTED"
    assert row["vault_id"] == vault_id
    assert [e["to_state"] for e in row["audit_trail"]] == ["PENDING", "ELIGIBLE", "REJECTED"]
    assert await archive.get_archived(c1.claim_id) is None


async def test_archiving_is_idempotent(service, archive, clock, admin_keys):
    vault_id, (c0, _) = _vault_with_claims(service, clock)
    _reject(service, admin_keys, clock, c0)

    assert await archive_terminal_claims(service, archive, vault_id) == 1
    assert await archive_terminal_claims(service, archive, vault_id) == 0
    assert len(await archive.list_archived(vault_id)) == 1


async def test_released_claim_keeps_transfer_reference(service, archive, clock):
    vault_id, (c0, _) = _vault_with_claims(service, clock)
    guardian = service.registry.list_guardians(vault_id)[0]
    service.registry.accept_guardian(guardian.guardian_id)
    service.quorum.cast_vote(c0.claim_id, guardian.guardian_id, "APPROVE")
    await service.release(c0.claim_id)

    result = await archive_all(service, archive)

    assert result == {vault_id: 1}
    row = await archive.get_archived(c0.claim_id)
    assert row["final_state"] == "RELEASED"
    assert row["transfer_reference"] == "tx-1"


async def test_open_claim_cannot_be_archived(service, archive, clock):
    _, (c0, _) = _vault_with_claims(service, clock)

    with pytest.raises(ArchiveWriteError):
        await archive.archive_claim(c0, [])
