"""Tests for actor proofs and Ed25519IdentityVerifier."""

import pytest

from Willo_Vault.willo_shared.identity import (
    ActorProof,
    Ed25519IdentityVerifier,
    generate_signing_key,
    parse_admin_keys,
    sign_proof,
    ROLE_OWNER,
    ROLE_GUARDIAN,
)

NOW = 1_700_000_000_000


@pytest.fixture
def keys():
    return {"owner-1": generate_signing_key(), "guardian-1": generate_signing_key()}


@pytest.fixture
def verifier(keys):
    def lookup(actor_id, role, vault_id):
        if vault_id != "vault-1" or actor_id not in keys:
            return None
        return keys[actor_id][1]
    return Ed25519IdentityVerifier(lookup, clock=lambda: NOW, max_age_seconds=300)


# ─── Valid proofs ───

def test_valid_owner_proof(keys, verifier):
    proof = sign_proof(keys["owner-1"][0], "owner-1", ROLE_OWNER, "vault-1", "record_activity", NOW)
    assert verifier.verify(proof)


def test_valid_guardian_proof(keys, verifier):
    proof = sign_proof(keys["guardian-1"][0], "guardian-1", ROLE_GUARDIAN, "vault-1", "vote:c1", NOW - 1000)
    assert verifier.verify(proof)


def test_verify_key_is_hex(keys):
    _, vk_hex = keys["owner-1"]
    assert len(vk_hex) == 64
    int(vk_hex, 16)


# ─── Rejections ───

def test_signed_with_other_key(keys, verifier):
    proof = sign_proof(keys["guardian-1"][0], "owner-1", ROLE_OWNER, "vault-1", "record_activity", NOW)
    assert not verifier.verify(proof)


def test_unknown_actor(verifier):
    sk, _ = generate_signing_key()
    proof = sign_proof(sk, "stranger", ROLE_OWNER, "vault-1", "record_activity", NOW)
    assert not verifier.verify(proof)


def test_other_vault(keys, verifier):
    proof = sign_proof(keys["owner-1"][0], "owner-1", ROLE_OWNER, "vault-2", "record_activity", NOW)
    assert not verifier.verify(proof)


def test_tampered_action(keys, verifier):
    proof = sign_proof(keys["owner-1"][0], "owner-1", ROLE_OWNER, "vault-1", "record_activity", NOW)
    proof.action = "close_vault"
    assert not verifier.verify(proof)


def test_stale_proof(keys, verifier):
    proof = sign_proof(keys["owner-1"][0], "owner-1", ROLE_OWNER, "vault-1", "record_activity",
                       NOW - 301_000)
    assert not verifier.verify(proof)


def test_proof_from_the_future(keys, verifier):
    proof = sign_proof(keys["owner-1"][0], "owner-1", ROLE_OWNER, "vault-1", "record_activity", NOW + 5000)
    assert not verifier.verify(proof)


@pytest.mark.parametrize("signature", [b"", b"\x00" * 64, b"short"])
def test_garbage_signature(verifier, signature):
    proof = ActorProof("owner-1", ROLE_OWNER, "vault-1", "record_activity", NOW, signature)
    assert not verifier.verify(proof)


def test_message_binds_every_field():
    base = ActorProof("a", ROLE_OWNER, "v", "x", 1)
    variants = [
        ActorProof("b", ROLE_OWNER, "v", "x", 1),
        ActorProof("a", ROLE_GUARDIAN, "v", "x", 1),
        ActorProof("a", ROLE_OWNER, "w", "x", 1),
        ActorProof("a", ROLE_OWNER, "v", "y", 1),
        ActorProof("a", ROLE_OWNER, "v", "x", 2),
    ]
    assert all(v.message() != base.message() for v in variants)


def test_parse_admin_keys():
    assert parse_admin_keys("") == {}
    assert parse_admin_keys(" ops-1=aa11 , ops-2=bb22,") == {"ops-1": "aa11", "ops-2": "bb22"}


@pytest.mark.parametrize("raw", ["ops-1", "=aa11", "ops-1="])
def test_parse_admin_keys_rejects_malformed_entries(raw):
    with pytest.raises(ValueError):
        parse_admin_keys(raw)
