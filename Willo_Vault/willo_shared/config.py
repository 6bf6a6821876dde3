import os

# Redis Connection

REDIS_HOST              = os.environ.get("WILLO_REDIS_HOST", "localhost")
REDIS_PORT              = int(os.environ.get("WILLO_REDIS_PORT", "6379"))
REDIS_DB                = int(os.environ.get("WILLO_REDIS_DB", "0"))
REDIS_SOCKET_TIMEOUT    = 5          # seconds

# Key Namespace Prefixes

VAULT_KEY_PREFIX        = "willo:v1:vault"          # willo:v1:vault:{vault_id}
BENEFICIARY_KEY_PREFIX  = "willo:v1:bene"           # willo:v1:bene:{beneficiary_id}
GUARDIAN_KEY_PREFIX     = "willo:v1:guard"          # willo:v1:guard:{guardian_id}
OWNER_IDX_PREFIX        = "willo:v1:idx:owner"      # willo:v1:idx:owner:{owner_id} -> set(vault_id)
BENEFICIARY_IDX_PREFIX  = "willo:v1:idx:bene"       # willo:v1:idx:bene:{vault_id} -> set(beneficiary_id)
GUARDIAN_IDX_PREFIX     = "willo:v1:idx:guard"      # willo:v1:idx:guard:{vault_id} -> set(guardian_id)
WALLET_IDX_PREFIX       = "willo:v1:idx:wallet"     # willo:v1:idx:wallet:{address} -> set(beneficiary_id)

ACTIVITY_KEY_PREFIX     = "willo:v1:activity"       # willo:v1:activity:{vault_id}

CLAIM_KEY_PREFIX        = "willo:v1:claim"          # willo:v1:claim:{claim_id}
VOTES_KEY_PREFIX        = "willo:v1:votes"          # willo:v1:votes:{claim_id} -> {guardian_id: decision}
VAULT_CLAIMS_PREFIX     = "willo:v1:idx:claims"     # willo:v1:idx:claims:{vault_id} -> set(claim_id)
OPEN_CLAIM_PREFIX       = "willo:v1:open"           # willo:v1:open:{vault_id}:{beneficiary_id} -> claim_id
CLAIM_CYCLE_PREFIX      = "willo:v1:cycle"          # willo:v1:cycle:{vault_id} -> {beneficiary_id: activity_sequence}
ALLOCATION_KEY_PREFIX   = "willo:v1:alloc"          # willo:v1:alloc:{vault_id} -> {released, inflight}

AUDIT_HEAD_PREFIX       = "willo:v1:audit:head"     # willo:v1:audit:head:{vault_id} -> {sequence, hash}
AUDIT_ENTRY_PREFIX      = "willo:v1:audit:entry"    # willo:v1:audit:entry:{vault_id}:{sequence}
AUDIT_CLAIM_IDX_PREFIX  = "willo:v1:audit:claim"    # willo:v1:audit:claim:{claim_id} -> zset(sequence)

# Vault Policy Limits

MIN_INACTIVITY_THRESHOLD_SECONDS = 2_592_000     # 30 days
MAX_ALLOCATION_PERCENT           = 100
VALID_VAULT_STATUSES             = {"ACTIVE", "SUSPENDED", "CLOSED"}
VALID_GUARDIAN_STATUSES          = {"INVITED", "ACTIVE", "REVOKED"}
VALID_BENEFICIARY_STATUSES       = {"ACTIVE", "REMOVED"}
VALID_DECISIONS                  = {"APPROVE", "REJECT"}

# Vault status changes: (from, to)

VAULT_TRANSITIONS = {
    ("ACTIVE", "SUSPENDED"),
    ("SUSPENDED", "ACTIVE"),
    ("ACTIVE", "CLOSED"),
    ("SUSPENDED", "CLOSED"),
}

# Claim State Machine

CLAIM_STATES      = {"PENDING", "ELIGIBLE", "APPROVED", "RELEASED", "REJECTED", "EXPIRED"}
TERMINAL_STATES   = {"RELEASED", "REJECTED", "EXPIRED"}
TRIGGER_INACTIVITY = "INACTIVITY"

# (from, to) -> roles allowed to perform it. "" is a claim that does not exist yet.
CLAIM_TRANSITIONS = {
    ("", "PENDING"):            {"MONITOR"},
    ("PENDING", "ELIGIBLE"):    {"MONITOR"},
    ("ELIGIBLE", "APPROVED"):   {"QUORUM"},
    ("APPROVED", "RELEASED"):   {"RELEASE"},
    ("PENDING", "REJECTED"):    {"OWNER", "ADMIN"},
    ("ELIGIBLE", "REJECTED"):   {"OWNER", "ADMIN", "QUORUM"},
    ("APPROVED", "REJECTED"):   {"OWNER", "ADMIN"},
    ("ELIGIBLE", "EXPIRED"):    {"MONITOR"},
}

# Concurrency

OPTIMISTIC_LOCK_RETRIES     = 5
RELEASE_COMMIT_RETRIES      = 20     # the transfer already happened; try harder to record it
SCAN_BATCH_SIZE             = 100

# Release

TRANSFER_TIMEOUT_SECONDS    = float(os.environ.get("WILLO_TRANSFER_TIMEOUT", "30"))
MAX_TRANSFER_ATTEMPTS       = 3
RELEASE_INTENT_STALE_SECONDS = 300   # an intent older than this is re-dispatched with the same token

# Identity

PROOF_MAX_AGE_SECONDS       = 300
ADMIN_KEYS                  = os.environ.get("WILLO_ADMIN_KEYS", "")   # "admin_id=hex_verify_key,..."

# Audit

AUDIT_GENESIS_HASH          = "0" * 64

# Monitor

SWEEP_INTERVAL_SECONDS      = int(os.environ.get("WILLO_SWEEP_INTERVAL", "300"))
