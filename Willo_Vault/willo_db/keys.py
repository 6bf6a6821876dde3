from Willo_Vault.willo_shared import config


def vault_key(vault_id: str) -> str:
    return f"{config.VAULT_KEY_PREFIX}:{vault_id}"


def beneficiary_key(beneficiary_id: str) -> str:
    return f"{config.BENEFICIARY_KEY_PREFIX}:{beneficiary_id}"


def guardian_key(guardian_id: str) -> str:
    return f"{config.GUARDIAN_KEY_PREFIX}:{guardian_id}"


def owner_idx_key(owner_id: str) -> str:
    return f"{config.OWNER_IDX_PREFIX}:{owner_id}"


def beneficiary_idx_key(vault_id: str) -> str:
    return f"{config.BENEFICIARY_IDX_PREFIX}:{vault_id}"


def guardian_idx_key(vault_id: str) -> str:
    return f"{config.GUARDIAN_IDX_PREFIX}:{vault_id}"


def wallet_idx_key(wallet_address: str) -> str:
    return f"{config.WALLET_IDX_PREFIX}:{wallet_address.lower()}"


def activity_key(vault_id: str) -> str:
    return f"{config.ACTIVITY_KEY_PREFIX}:{vault_id}"


def claim_key(claim_id: str) -> str:
    return f"{config.CLAIM_KEY_PREFIX}:{claim_id}"


def votes_key(claim_id: str) -> str:
    return f"{config.VOTES_KEY_PREFIX}:{claim_id}"


def vault_claims_key(vault_id: str) -> str:
    return f"{config.VAULT_CLAIMS_PREFIX}:{vault_id}"


def open_claim_key(vault_id: str, beneficiary_id: str) -> str:
    return f"{config.OPEN_CLAIM_PREFIX}:{vault_id}:{beneficiary_id}"


def cycle_key(vault_id: str) -> str:
    return f"{config.CLAIM_CYCLE_PREFIX}:{vault_id}"


def allocation_key(vault_id: str) -> str:
    return f"{config.ALLOCATION_KEY_PREFIX}:{vault_id}"
