"""
Actor proofs and their verification.

The protocol core never authenticates anyone itself: it asks an
IdentityVerifier whether a proof really belongs to the owner, guardian or
administrator it names, then checks that this actor is entitled to the
action on that vault.

The shipped verifier checks Ed25519 signatures (PyNaCl) over a canonical
message that binds role, actor, vault, action and issue time, so a proof
for one action or vault cannot be replayed for another, and stale proofs
are refused.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import nacl.encoding
import nacl.exceptions
import nacl.signing

from Willo_Vault.willo_shared import config
from Willo_Vault.willo_shared.clock import now_ms

logger = logging.getLogger(__name__)

ROLE_OWNER = "OWNER"
ROLE_GUARDIAN = "GUARDIAN"
ROLE_ADMIN = "ADMIN"

# vault_id bound into admin proofs that do not concern a single vault
ADMIN_SCOPE = "*"


@dataclass
class ActorProof:
    actor_id:  str
    role:      str
    vault_id:  str
    action:    str
    issued_at: int
    signature: bytes = b""

    def message(self) -> bytes:
        return f"willo|{self.role}|{self.actor_id}|{self.vault_id}|{self.action}|{self.issued_at}".encode()


class IdentityVerifier(Protocol):
    def verify(self, proof: ActorProof) -> bool:
        ...


# (actor_id, role, vault_id) -> hex verify key, or None when nothing is registered
KeyLookup = Callable[[str, str, str], Optional[str]]


class Ed25519IdentityVerifier:
    """Verifies proofs signed with the actor's registered Ed25519 key."""

    def __init__(self, key_lookup: KeyLookup, clock: Callable[[], int] = now_ms,
                 max_age_seconds: int = config.PROOF_MAX_AGE_SECONDS):
        self._key_lookup = key_lookup
        self._clock = clock
        self._max_age_ms = max_age_seconds * 1000

    def verify(self, proof: ActorProof) -> bool:
        age = self._clock() - proof.issued_at
        if age < 0 or age > self._max_age_ms:
            logger.warning("proof for %s/%s rejected: issued %d ms ago", proof.actor_id, proof.action, age)
            return False

        key_hex = self._key_lookup(proof.actor_id, proof.role, proof.vault_id)
        if not key_hex:
            return False

        try:
            verify_key = nacl.signing.VerifyKey(key_hex, encoder=nacl.encoding.HexEncoder)
            verify_key.verify(proof.message(), proof.signature)
        except (nacl.exceptions.BadSignatureError, ValueError, TypeError):
            logger.warning("bad signature from %s for %s on vault %s", proof.actor_id, proof.action, proof.vault_id)
            return False
        return True


def parse_admin_keys(raw: str) -> dict[str, str]:
    """Parse ``"ops-1=<hex>,ops-2=<hex>"`` into {admin_id: hex verify key}."""
    result = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        admin_id, sep, key_hex = item.partition("=")
        if not sep or not admin_id.strip() or not key_hex.strip():
            raise ValueError(f"admin key entry must be admin_id=hex_key, got {item!r}")
        result[admin_id.strip()] = key_hex.strip()
    return result


def generate_signing_key() -> tuple[nacl.signing.SigningKey, str]:
    """Return a new signing key and its hex verify key (what gets registered)."""
    sk = nacl.signing.SigningKey.generate()
    return sk, sk.verify_key.encode(encoder=nacl.encoding.HexEncoder).decode()


def sign_proof(
    signing_key: nacl.signing.SigningKey,
    actor_id: str,
    role: str,
    vault_id: str,
    action: str,
    issued_at: Optional[int] = None,
) -> ActorProof:
    proof = ActorProof(
        actor_id=actor_id,
        role=role,
        vault_id=vault_id,
        action=action,
        issued_at=issued_at if issued_at is not None else now_ms(),
    )
    proof.signature = signing_key.sign(proof.message()).signature
    return proof
