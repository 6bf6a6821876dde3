"""
PostgreSQL archive of terminal claims.

Claims are never deleted from the live store; once a claim reaches a
terminal state its final record and its full audit trail can be copied here
for long-term retention and reporting. Archiving is idempotent per claim.
"""

import logging
from dataclasses import asdict
from typing import Optional

import asyncpg

from Willo_Vault.willo_shared import config, errors
from Willo_Vault.willo_shared.types import AuditEntry, Claim

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS claim_archive(
    claim_id           VARCHAR(36) PRIMARY KEY,
    vault_id           VARCHAR(36) NOT NULL,
    beneficiary_id     VARCHAR(36) NOT NULL,

    final_state        VARCHAR(8) NOT NULL CHECK ( final_state IN ('RELEASED', 'REJECTED', 'EXPIRED') ),
    trigger_type       VARCHAR(16) NOT NULL,
    created_at_ms      BIGINT NOT NULL,
    resolved_at_ms     BIGINT,
    transfer_reference TEXT,
    audit_trail        JSONB NOT NULL,

    archived_at        TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_claim_archive_vault
    ON claim_archive (vault_id, created_at_ms ASC);
"""


class ClaimArchive:
    pool: asyncpg.Pool

    def __init__(self, p: asyncpg.Pool):
        self.pool = p

    async def ensure_schema(self) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA_SQL)
        except asyncpg.PostgresError as e:
            raise errors.ArchiveWriteError(f"ensure_schema failed: {e}")

    async def archive_claim(self, claim: Claim, trail: list[AuditEntry]) -> bool:
        """Insert one terminal claim. Returns False if it was already archived."""
        if claim.state not in config.TERMINAL_STATES:
            raise errors.ArchiveWriteError(f"claim {claim.claim_id} is {claim.state}, only terminal claims are archived")

        reference = claim.receipt.transfer_reference if claim.receipt else None
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO claim_archive
                        (claim_id, vault_id, beneficiary_id, final_state, trigger_type,
                         created_at_ms, resolved_at_ms, transfer_reference, audit_trail)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    ON CONFLICT (claim_id) DO NOTHING
                    RETURNING claim_id
                    """,
                    claim.claim_id,
                    claim.vault_id,
                    claim.beneficiary_id,
                    claim.state,
                    claim.trigger_type,
                    claim.created_at,
                    claim.resolved_at,
                    reference,
                    [asdict(e) for e in trail],
                )
        except asyncpg.PostgresError as e:
            raise errors.ArchiveWriteError(f"archive_claim failed: {e}")

        if row:
            logger.info("claim %s archived as %s", claim.claim_id, claim.state)
        return row is not None

    async def get_archived(self, claim_id: str) -> Optional[dict]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("SELECT * FROM claim_archive WHERE claim_id = $1", claim_id)
        except asyncpg.PostgresError as e:
            raise errors.ArchiveError(f"get_archived failed: {e}")
        return dict(row) if row else None

    async def list_archived(self, vault_id: str) -> list[dict]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT claim_id, beneficiary_id, final_state, created_at_ms, resolved_at_ms, transfer_reference
                    FROM claim_archive
                    WHERE vault_id = $1
                    ORDER BY created_at_ms ASC
                    """,
                    vault_id,
                )
        except asyncpg.PostgresError as e:
            raise errors.ArchiveError(f"list_archived failed: {e}")
        return [dict(r) for r in rows]
