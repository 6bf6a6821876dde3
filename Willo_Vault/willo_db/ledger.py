"""
Activity ledger: last activity per vault, the ground truth for inactivity.

Recording activity also cancels every outstanding claim of the vault. Both
happen in one WATCH/MULTI transaction, so either the timestamp moves and the
claims are rejected, or nothing changes.
"""

import logging
from typing import Callable, Optional

import redis

from Willo_Vault.willo_shared import errors
from Willo_Vault.willo_shared.clock import now_ms, seconds_to_ms
from Willo_Vault.willo_shared.types import ActivityRecord
from Willo_Vault.willo_db import keys
from Willo_Vault.willo_db.audit import AuditLog
from Willo_Vault.willo_db.claims import ClaimStateMachine
from Willo_Vault.willo_db.txn import run_optimistic

logger = logging.getLogger(__name__)


class ActivityLedger:
    def __init__(self, client: redis.Redis, audit: AuditLog, claims: ClaimStateMachine,
                 clock: Callable[[], int] = now_ms):
        self.db: redis.Redis = client
        self.audit = audit
        self.claims = claims
        self.clock = clock

    @staticmethod
    def is_inactive(last_activity_at: int, as_of: int, threshold_seconds: int) -> bool:
        return as_of - last_activity_at >= seconds_to_ms(threshold_seconds)

    def load(self, conn, vault_id: str) -> ActivityRecord:
        data = conn.hgetall(keys.activity_key(vault_id))
        if not data:
            raise errors.ActivityNotFoundError(vault_id)
        return ActivityRecord(
            vault_id=vault_id,
            last_activity_at=int(data["last_activity_at"]),
            activity_sequence=int(data["activity_sequence"]),
        )

    def get_last_activity(self, vault_id: str) -> ActivityRecord:
        try:
            return self.load(self.db, vault_id)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("get_last_activity")

    def record_activity(
        self,
        vault_id: str,
        occurred_at: Optional[int] = None,
        actor: str = "owner",
        role: str = "OWNER",
        source: str = "signed",
    ) -> ActivityRecord:
        """
        Record owner activity at ``occurred_at`` (now if omitted).

        Timestamps in the future are clamped to now. A timestamp older than the
        stored one raises StaleActivityError and changes nothing.
        """
        vault_key = keys.vault_key(vault_id)
        activity_key = keys.activity_key(vault_id)

        def body(pipe):
            status = pipe.hget(vault_key, "status")
            if status is None:
                raise errors.VaultNotFoundError(vault_id)
            if status == "CLOSED":
                raise errors.VaultNotActiveError(vault_id, status)

            record = self.load(pipe, vault_id)
            now = self.clock()
            at = now if occurred_at is None else min(occurred_at, now)
            if at < record.last_activity_at:
                logger.warning("stale activity for vault %s: %d < %d",
                               vault_id, at, record.last_activity_at)
                raise errors.StaleActivityError(vault_id, at, record.last_activity_at)

            to_cancel = self.claims.cancellable(self.claims.watch_open_claims(pipe, vault_id), role)
            batch = self.audit.begin(pipe, vault_id, now)

            pipe.multi()
            new_record = ActivityRecord(vault_id, at, record.activity_sequence + 1)
            pipe.hset(activity_key, mapping={
                "last_activity_at": str(new_record.last_activity_at),
                "activity_sequence": str(new_record.activity_sequence),
            })
            batch.add("ACTIVITY", vault_id, str(record.activity_sequence), str(new_record.activity_sequence),
                      actor, reason=f"{source} activity",
                      metadata={"occurred_at": at, "previous_activity_at": record.last_activity_at})
            for claim in to_cancel:
                self.claims.queue_transition(pipe, batch, claim, "REJECTED", actor,
                                             "owner activity recorded", now)
            batch.flush(pipe)
            return new_record, len(to_cancel)

        record, cancelled = run_optimistic(self.db, [vault_key, activity_key], body, "record_activity")
        if cancelled:
            logger.info("activity on vault %s cancelled %d open claims", vault_id, cancelled)
        return record
