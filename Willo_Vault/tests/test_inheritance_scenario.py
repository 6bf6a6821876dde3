"""End-to-end inheritance scenarios through InheritanceService with signed actor proofs."""

import pytest

from Willo_Vault.willo_shared import errors
from Willo_Vault.willo_shared.identity import ADMIN_SCOPE, sign_proof
from Willo_Vault.willo_shared.types import BeneficiarySpec, GuardianSpec, VaultPolicy
from Willo_Vault.inheritance import InheritanceService

THIRTY_DAYS = 2_592_000


@pytest.fixture
def service(redis_client, executor, clock, admin_keys):
    return InheritanceService(redis_client, executor=executor, clock=clock, admin_keys={"ops-1": admin_keys[1]})


class Household:
    """An owner, three guardians and two heirs sharing one vault."""

    def __init__(self, service, clock, owner_keys, guardian_keys, shares=(60, 40)):
        self.service = service
        self.clock = clock
        self.owner_sk = owner_keys[0]
        policy = VaultPolicy(
            name="family vault",
            owner_key=owner_keys[1],
            inactivity_threshold_seconds=THIRTY_DAYS,
            guardian_quorum=2,
            guardians=[GuardianSpec(wallet_address=f"0xg{i}", verify_key=vk)
                       for i, (_, vk) in enumerate(guardian_keys)],
            beneficiaries=[BeneficiarySpec(wallet_address=f"0xb{i}", allocation_share=s)
                           for i, s in enumerate(shares)],
        )
        self.vault_id = service.create_vault("owner-1", policy)

        keys_by_wallet = {f"0xg{i}": sk for i, (sk, _) in enumerate(guardian_keys)}
        self.guardians = []
        for g in sorted(service.registry.list_guardians(self.vault_id), key=lambda g: g.wallet_address):
            sk = keys_by_wallet[g.wallet_address]
            service.accept_guardian(g.guardian_id, self.guardian_proof(g.guardian_id, sk, "accept_guardian"))
            self.guardians.append((g.guardian_id, sk))

    def owner_proof(self, action, issued_at=None):
        at = self.clock.now if issued_at is None else issued_at
        return sign_proof(self.owner_sk, "owner-1", "OWNER", self.vault_id, action, at)

    def guardian_proof(self, guardian_id, sk, action):
        return sign_proof(sk, guardian_id, "GUARDIAN", self.vault_id, action, self.clock.now)

    def ping(self):
        return self.service.record_activity(self.vault_id, self.owner_proof("record_activity"))

    def vote(self, claim_id, index, decision="APPROVE"):
        guardian_id, sk = self.guardians[index]
        proof = self.guardian_proof(guardian_id, sk, f"vote:{claim_id}")
        return self.service.cast_vote(claim_id, proof, decision)

    def claims(self, open_only=True):
        return self.service.list_claims(self.vault_id, open_only=open_only)


@pytest.fixture
def household(service, clock, owner_keys, guardian_keys):
    return Household(service, clock, owner_keys, guardian_keys)


# ─── Full lifecycle ───

@pytest.mark.asyncio
async def test_owner_goes_quiet_and_heirs_receive_everything(household, service, clock, executor):
    clock.advance(days=10)
    household.ping()

    clock.advance(days=29)
    assert service.sweep().claims_created == 0

    clock.advance(days=1)
    result = service.sweep()
    assert result.claims_created == 2
    open_claims = household.claims()
    assert {c.state for c in open_claims} == {"ELIGIBLE"}

    for claim in open_claims:
        household.vote(claim.claim_id, 0)
        assert household.vote(claim.claim_id, 2).state == "APPROVED"

    receipts = [await service.release(c.claim_id) for c in open_claims]

    assert sum(r.share for r in receipts) == 100
    assert len(executor.calls) == 2
    assert {c.state for c in household.claims(open_only=False)} == {"RELEASED"}
    assert service.verify_audit(household.vault_id).valid


def test_owner_returns_and_cancels_claims(household, service, clock):
    clock.advance(days=31)
    service.sweep()
    first_round = household.claims()
    household.vote(first_round[0].claim_id, 0)

    record = household.ping()

    assert record.activity_sequence == 1
    assert household.claims() == []
    for claim in first_round:
        trail = service.get_claim_trail(claim.claim_id)
        assert trail[-1].to_state == "REJECTED"
        assert trail[-1].reason == "owner activity recorded"

    clock.advance(days=30)
    service.sweep()
    second_round = household.claims()
    assert len(second_round) == 2
    assert {c.activity_sequence for c in second_round} == {1}
    assert not {c.claim_id for c in first_round} & {c.claim_id for c in second_round}


def test_claims_visible_to_heir_by_wallet(household, service, clock):
    clock.advance(days=30)
    service.sweep()

    (claim,) = service.claims_for_wallet("0xB1")
    status = service.get_claim_status(claim.claim_id)

    assert status.claim.state == "ELIGIBLE"
    assert status.tally.quorum == 2
    assert status.approvals == []


# ─── Activity ───

def test_older_signed_ping_changes_nothing(household, service, clock):
    clock.advance(days=5)
    latest = household.ping()

    older = household.owner_proof("record_activity", issued_at=clock.now - 60_000)
    record = service.record_activity(household.vault_id, older)

    assert record == latest


def test_replayed_old_proof_is_refused(household, service, clock):
    proof = household.owner_proof("record_activity")
    clock.advance(days=1)

    with pytest.raises(errors.UnauthorizedActorError):
        service.record_activity(household.vault_id, proof)


def test_observed_activity_resets_timer(household, service, clock):
    clock.advance(days=29)
    service.observe_activity(household.vault_id, clock.now - 1000, source="chain")

    clock.advance(days=2)
    assert service.sweep().claims_created == 0
    assert service.get_audit_trail(household.vault_id)[-1].actor == "observer:chain"


def test_guardian_cannot_ping_for_owner(household, service, clock):
    guardian_id, sk = household.guardians[0]
    proof = sign_proof(sk, guardian_id, "GUARDIAN", household.vault_id, "record_activity", clock.now)

    with pytest.raises(errors.UnauthorizedActorError):
        service.record_activity(household.vault_id, proof)


# ─── Owner administration ───

def test_owner_manages_heirs_and_guardians(household, service, clock, guardian_keys):
    vid = household.vault_id

    heir = service.add_beneficiary(vid, BeneficiarySpec(wallet_address="0xb9", allocation_share=0),
                                   household.owner_proof("add_beneficiary"))
    assert service.update_beneficiary_share(heir.beneficiary_id, 10,
                                            household.owner_proof("update_beneficiary_share")).allocation_share == 10
    service.remove_beneficiary(heir.beneficiary_id, household.owner_proof("remove_beneficiary"))
    assert len(service.registry.list_beneficiaries(vid)) == 2

    extra = service.add_guardian(vid, GuardianSpec(wallet_address="0xg9"), household.owner_proof("add_guardian"))
    assert extra.status == "INVITED"
    assert service.set_guardian_quorum(vid, 3, household.owner_proof("set_guardian_quorum")).guardian_quorum == 3
    service.revoke_guardian(extra.guardian_id, household.owner_proof("revoke_guardian"))

    with pytest.raises(errors.InvalidPolicyError):
        service.revoke_guardian(household.guardians[0][0], household.owner_proof("revoke_guardian"))


def test_suspended_vault_is_not_monitored(household, service, clock):
    service.suspend_vault(household.vault_id, household.owner_proof("suspend_vault"))
    clock.advance(days=60)
    assert service.sweep().claims_created == 0

    service.reactivate_vault(household.vault_id, household.owner_proof("reactivate_vault"))
    assert service.sweep().claims_created == 2


def test_close_vault_rejects_open_claims(household, service, clock):
    clock.advance(days=30)
    service.sweep()

    vault = service.close_vault(household.vault_id, household.owner_proof("close_vault"))

    assert vault.status == "CLOSED"
    assert household.claims() == []
    assert [v.status for v in service.list_vaults("owner-1")] == ["CLOSED"]


def test_accept_with_someone_elses_proof(household, service, clock):
    extra = service.add_guardian(household.vault_id, GuardianSpec(wallet_address="0xg9"),
                                 household.owner_proof("add_guardian"))
    guardian_id, sk = household.guardians[0]
    proof = household.guardian_proof(guardian_id, sk, "accept_guardian")

    with pytest.raises(errors.UnauthorizedGuardianError):
        service.accept_guardian(extra.guardian_id, proof)


# ─── Admin ───

def _admin_proof(admin_keys, clock, vault_id, action, admin_id="ops-1"):
    return sign_proof(admin_keys[0], admin_id, "ADMIN", vault_id, action, clock.now)


@pytest.mark.asyncio
async def test_admin_reject_and_alert_clearing(household, service, clock, executor, admin_keys):
    clock.advance(days=30)
    service.sweep()
    c0, c1 = household.claims()
    vid = household.vault_id

    rejected = service.reject_claim(c0.claim_id, _admin_proof(admin_keys, clock, vid, f"reject_claim:{c0.claim_id}"),
                                    "dispute")
    assert rejected.state == "REJECTED"
    assert service.get_claim_trail(c0.claim_id)[-1].actor == "admin:ops-1"

    household.vote(c1.claim_id, 0)
    household.vote(c1.claim_id, 1)
    executor.fail_with = errors.TransferError("custodian offline")
    for _ in range(2):
        with pytest.raises(errors.TransferFailure):
            await service.release(c1.claim_id)
    with pytest.raises(errors.ReleaseStuckError):
        await service.release(c1.claim_id)

    service.clear_release_alert(c1.claim_id,
                                _admin_proof(admin_keys, clock, vid, f"clear_release_alert:{c1.claim_id}"))
    executor.fail_with = None
    receipt = await service.release(c1.claim_id)
    assert receipt.claim_id == c1.claim_id


def test_admin_actions_need_a_registered_admin_key(household, service, clock, admin_keys, owner_keys):
    clock.advance(days=30)
    service.sweep()
    c0, c1 = household.claims()
    vid = household.vault_id

    forged = sign_proof(owner_keys[0], "ops-1", "ADMIN", vid, f"reject_claim:{c0.claim_id}", clock.now)
    with pytest.raises(errors.UnauthorizedActorError):
        service.reject_claim(c0.claim_id, forged)

    unknown = _admin_proof(admin_keys, clock, vid, f"reject_claim:{c0.claim_id}", admin_id="ops-9")
    with pytest.raises(errors.UnauthorizedActorError):
        service.reject_claim(c0.claim_id, unknown)

    other_claim = _admin_proof(admin_keys, clock, vid, f"reject_claim:{c1.claim_id}")
    with pytest.raises(errors.UnauthorizedActorError):
        service.reject_claim(c0.claim_id, other_claim)

    assert {c.state for c in household.claims()} == {"ELIGIBLE"}


def test_requested_sweep_runs_at_service_clock(household, service, clock, admin_keys):
    proof = _admin_proof(admin_keys, clock, ADMIN_SCOPE, "sweep")
    assert service.requested_sweep(proof).claims_created == 0

    clock.advance(days=30)
    assert service.requested_sweep(_admin_proof(admin_keys, clock, ADMIN_SCOPE, "sweep")).claims_created == 2

    with pytest.raises(errors.UnauthorizedActorError):
        service.requested_sweep(_admin_proof(admin_keys, clock, household.vault_id, "sweep"))


@pytest.mark.asyncio
async def test_release_without_executor(redis_client, clock, owner_keys, guardian_keys):
    service = InheritanceService(redis_client, clock=clock)
    h = Household(service, clock, owner_keys, guardian_keys)
    clock.advance(days=30)
    service.sweep()
    claim = h.claims()[0]

    with pytest.raises(RuntimeError):
        await service.release(claim.claim_id)


def test_health(service):
    assert service.health().store_connected
