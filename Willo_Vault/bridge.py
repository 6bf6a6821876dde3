"""
Bridge between the live claim store (Redis) and the claim archive (PostgreSQL).

Data flow:
    Archive: terminal claim in Redis + its audit trail
             → ClaimArchive (PostgreSQL) via archive_terminal_claims()

The live copy stays in Redis; the archive is a retention copy, not a move.
"""

from Willo_Vault.willo_shared import config
from Willo_Vault.willo_server.archive import ClaimArchive
from Willo_Vault.inheritance import InheritanceService


async def archive_terminal_claims(
    service: InheritanceService,
    archive: ClaimArchive,
    vault_id: str,
) -> int:
    """Copy every terminal claim of a vault to the archive.

    Returns the number of claims newly archived (already archived ones are
    skipped by the archive itself).
    """
    archived = 0
    for claim in service.list_claims(vault_id):
        if claim.state not in config.TERMINAL_STATES:
            continue
        trail = service.get_claim_trail(claim.claim_id)
        if await archive.archive_claim(claim, trail):
            archived += 1
    return archived


async def archive_all(service: InheritanceService, archive: ClaimArchive) -> dict[str, int]:
    """Archive terminal claims of every vault. Returns {vault_id: newly archived}."""
    result = {}
    for vault_id in service.registry.all_vault_ids():
        count = await archive_terminal_claims(service, archive, vault_id)
        if count:
            result[vault_id] = count
    return result
