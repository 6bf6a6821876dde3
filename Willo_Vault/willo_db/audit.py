"""
Append-only, hash-chained audit log.

Each vault has its own chain: entry N stores the hash of entry N-1 and its
own hash over its canonical JSON form, so editing, dropping or reordering
any stored entry is detected by ``verify_chain``. Sequences are per vault;
within a vault (and therefore within a claim) they are strictly monotonic.

Writers never append directly from inside their own logic: they open an
AuditBatch while their transaction is still in immediate mode (this WATCHes
the vault's chain head), add entries, and flush the batch after
``pipe.multi()`` so the entries commit atomically with the state change
they describe.
"""

import hashlib
import json
import logging
from typing import Callable, Optional

import redis

from Willo_Vault.willo_shared import config, errors
from Willo_Vault.willo_shared.clock import now_ms
from Willo_Vault.willo_shared.types import AuditEntry, ChainVerification
from Willo_Vault.willo_db.txn import run_optimistic

logger = logging.getLogger(__name__)


def _entry_digest(entry: AuditEntry) -> str:
    payload = {
        "sequence": entry.sequence,
        "vault_id": entry.vault_id,
        "timestamp": entry.timestamp,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "claim_id": entry.claim_id,
        "from_state": entry.from_state,
        "to_state": entry.to_state,
        "actor": entry.actor,
        "reason": entry.reason,
        "metadata": entry.metadata,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256((entry.prev_hash + canonical).encode()).hexdigest()


class AuditBatch:
    def __init__(self, log: "AuditLog", vault_id: str, sequence: int, head_hash: str, timestamp: int):
        self._log = log
        self.vault_id = vault_id
        self._sequence = sequence
        self._head_hash = head_hash
        self._timestamp = timestamp
        self.entries: list[AuditEntry] = []

    def add(
        self,
        entity_type: str,
        entity_id: str,
        from_state: str,
        to_state: str,
        actor: str,
        reason: str = "",
        claim_id: str = "",
        metadata: Optional[dict] = None,
    ) -> AuditEntry:
        self._sequence += 1
        entry = AuditEntry(
            sequence=self._sequence,
            vault_id=self.vault_id,
            timestamp=self._timestamp,
            entity_type=entity_type,
            entity_id=entity_id,
            from_state=from_state or "",
            to_state=to_state or "",
            actor=actor,
            reason=reason,
            claim_id=claim_id,
            metadata=metadata or {},
            prev_hash=self._head_hash,
        )
        entry.entry_hash = _entry_digest(entry)
        self._head_hash = entry.entry_hash
        self.entries.append(entry)
        return entry

    def flush(self, pipe: redis.client.Pipeline) -> None:
        """Queue the entries and the new head. Call after ``pipe.multi()``."""
        if not self.entries:
            return
        for entry in self.entries:
            pipe.hset(self._log._entry_key(self.vault_id, entry.sequence), mapping=self._log._serialize(entry))
            if entry.claim_id:
                pipe.zadd(self._log._claim_idx_key(entry.claim_id),
                          {f"{self.vault_id}:{entry.sequence}": entry.sequence})
        last = self.entries[-1]
        pipe.hset(self._log._head_key(self.vault_id), mapping={
            "sequence": str(last.sequence),
            "hash": last.entry_hash,
        })


class AuditLog:
    def __init__(self, client: redis.Redis, clock: Callable[[], int] = now_ms):
        self.db: redis.Redis = client
        self.clock = clock

    def _head_key(self, vault_id: str) -> str:
        return f"{config.AUDIT_HEAD_PREFIX}:{vault_id}"

    def _entry_key(self, vault_id: str, sequence: int) -> str:
        return f"{config.AUDIT_ENTRY_PREFIX}:{vault_id}:{sequence}"

    def _claim_idx_key(self, claim_id: str) -> str:
        return f"{config.AUDIT_CLAIM_IDX_PREFIX}:{claim_id}"

    def _serialize(self, entry: AuditEntry) -> dict:
        return {
            "sequence": str(entry.sequence),
            "vault_id": entry.vault_id,
            "timestamp": str(entry.timestamp),
            "entity_type": entry.entity_type,
            "entity_id": entry.entity_id,
            "claim_id": entry.claim_id,
            "from_state": entry.from_state,
            "to_state": entry.to_state,
            "actor": entry.actor,
            "reason": entry.reason,
            "metadata": json.dumps(entry.metadata, sort_keys=True),
            "prev_hash": entry.prev_hash,
            "entry_hash": entry.entry_hash,
        }

    def _deserialize(self, data: dict) -> AuditEntry:
        return AuditEntry(
            sequence=int(data["sequence"]),
            vault_id=data["vault_id"],
            timestamp=int(data["timestamp"]),
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            from_state=data["from_state"],
            to_state=data["to_state"],
            actor=data["actor"],
            reason=data["reason"],
            claim_id=data.get("claim_id", ""),
            metadata=json.loads(data.get("metadata") or "{}"),
            prev_hash=data["prev_hash"],
            entry_hash=data["entry_hash"],
        )

    def _read_head(self, conn, vault_id: str) -> tuple[int, str]:
        head = conn.hgetall(self._head_key(vault_id))
        if not head:
            return 0, config.AUDIT_GENESIS_HASH
        return int(head["sequence"]), head["hash"]

    # ─── Writing ───

    def begin(self, pipe: redis.client.Pipeline, vault_id: str, timestamp: Optional[int] = None) -> AuditBatch:
        """Watch and read the vault's chain head. Call before ``pipe.multi()``."""
        pipe.watch(self._head_key(vault_id))
        sequence, head_hash = self._read_head(pipe, vault_id)
        return AuditBatch(self, vault_id, sequence, head_hash,
                          timestamp if timestamp is not None else self.clock())

    def append(
        self,
        vault_id: str,
        entity_type: str,
        entity_id: str,
        from_state: str,
        to_state: str,
        actor: str,
        reason: str = "",
        claim_id: str = "",
        metadata: Optional[dict] = None,
    ) -> AuditEntry:
        def body(pipe):
            batch = self.begin(pipe, vault_id)
            entry = batch.add(entity_type, entity_id, from_state, to_state, actor, reason, claim_id, metadata)
            pipe.multi()
            batch.flush(pipe)
            return entry

        return run_optimistic(self.db, [], body, "audit_append")

    # ─── Reading ───

    def _fetch(self, keys: list[str]) -> list[AuditEntry]:
        if not keys:
            return []
        pipe = self.db.pipeline(transaction=False)
        for key in keys:
            pipe.hgetall(key)
        return [self._deserialize(data) for data in pipe.execute() if data]

    def query(self, vault_id: Optional[str] = None, claim_id: Optional[str] = None) -> list[AuditEntry]:
        if (vault_id is None) == (claim_id is None):
            raise ValueError("query needs exactly one of vault_id or claim_id")

        try:
            if vault_id is not None:
                sequence, _ = self._read_head(self.db, vault_id)
                keys = [self._entry_key(vault_id, seq) for seq in range(1, sequence + 1)]
                return self._fetch(keys)

            members = self.db.zrange(self._claim_idx_key(claim_id), 0, -1)
            keys = []
            for member in members:
                owner_vault, seq = member.rsplit(":", 1)
                keys.append(self._entry_key(owner_vault, int(seq)))
            return self._fetch(keys)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("audit_query")

    def head(self, vault_id: str) -> tuple[int, str]:
        try:
            return self._read_head(self.db, vault_id)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("audit_head")

    def verify_chain(self, vault_id: str) -> ChainVerification:
        entries = self.query(vault_id=vault_id)
        expected_seq, head_hash = self.head(vault_id)
        prev_hash = config.AUDIT_GENESIS_HASH

        for position, entry in enumerate(entries, start=1):
            if (entry.sequence != position
                    or entry.prev_hash != prev_hash
                    or _entry_digest(entry) != entry.entry_hash):
                logger.error("audit chain of vault %s broken at sequence %d", vault_id, position)
                return ChainVerification(vault_id, len(entries), False, broken_at=position, head_hash=head_hash)
            prev_hash = entry.entry_hash

        if len(entries) != expected_seq or prev_hash != head_hash:
            broken_at = len(entries) + 1
            logger.error("audit chain of vault %s truncated at sequence %d", vault_id, broken_at)
            return ChainVerification(vault_id, len(entries), False, broken_at=broken_at, head_hash=head_hash)

        return ChainVerification(vault_id, len(entries), True, head_hash=head_hash)
