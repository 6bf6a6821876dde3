class WilloVaultError(Exception):
    """Base class. ``retryable`` tells callers whether resubmitting can succeed."""
    retryable = False


class StoreUnavailableError(WilloVaultError):
    retryable = True

    def __init__(self , operation):
        self.operation = operation
        message = f"State store unavailable during {operation}"
        super().__init__(message)


class ConcurrencyConflict(WilloVaultError):
    retryable = True

    def __init__(self, operation):
        self.operation = operation
        message = f"Optimistic lock failed after max retries: {operation}"
        super().__init__(message)


# ─── Not found ───

class VaultNotFoundError(WilloVaultError):
    def __init__(self , vault_id):
        self.vault_id = vault_id
        message = f"Vault {vault_id} not found"
        super().__init__(message)


class ClaimNotFoundError(WilloVaultError):
    def __init__(self , claim_id):
        self.claim_id = claim_id
        message = f"Claim {claim_id} not found"
        super().__init__(message)


class BeneficiaryNotFoundError(WilloVaultError):
    def __init__(self , beneficiary_id):
        self.beneficiary_id = beneficiary_id
        message = f"Beneficiary {beneficiary_id} not found"
        super().__init__(message)


class GuardianNotFoundError(WilloVaultError):
    def __init__(self , guardian_id):
        self.guardian_id = guardian_id
        message = f"Guardian {guardian_id} not found"
        super().__init__(message)


class ActivityNotFoundError(WilloVaultError):
    def __init__(self , vault_id):
        self.vault_id = vault_id
        message = f"No activity record for vault {vault_id}"
        super().__init__(message)


# ─── Policy / configuration ───

class InvalidPolicyError(WilloVaultError):
    def __init__(self , message):
        super().__init__(message)


class VaultNotActiveError(WilloVaultError):
    def __init__(self, vault_id, status):
        self.vault_id = vault_id
        self.status = status
        message = f"Vault {vault_id} is {status}"
        super().__init__(message)


# ─── State machine ───

class InvalidTransitionError(WilloVaultError):
    def __init__(self, entity_id, from_state, to_state, reason=""):
        self.entity_id = entity_id
        self.from_state = from_state
        self.to_state = to_state
        message = f"Invalid transition for {entity_id}: {from_state or '(new)'} -> {to_state}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class DuplicateClaimError(WilloVaultError):
    def __init__(self, vault_id, beneficiary_id, existing_claim_id):
        self.vault_id = vault_id
        self.beneficiary_id = beneficiary_id
        self.existing_claim_id = existing_claim_id
        message = f"Claim {existing_claim_id} is still open for {vault_id}/{beneficiary_id}"
        super().__init__(message)


class ClaimNotEligibleError(WilloVaultError):
    def __init__(self, claim_id, state):
        self.claim_id = claim_id
        self.state = state
        message = f"Claim {claim_id} is {state}, votes are only accepted while ELIGIBLE"
        super().__init__(message)


# ─── Identity ───

class UnauthorizedActorError(WilloVaultError):
    def __init__(self, actor_id, action):
        self.actor_id = actor_id
        self.action = action
        message = f"Actor {actor_id} is not entitled to {action}"
        super().__init__(message)


class UnauthorizedGuardianError(UnauthorizedActorError):
    def __init__(self, guardian_id, vault_id):
        self.guardian_id = guardian_id
        self.vault_id = vault_id
        super().__init__(guardian_id, f"vote on claims of vault {vault_id}")


# ─── Activity ───

class StaleActivityError(WilloVaultError):
    def __init__(self, vault_id, occurred_at, last_activity_at):
        self.vault_id = vault_id
        self.occurred_at = occurred_at
        self.last_activity_at = last_activity_at
        message = f"Activity at {occurred_at} for vault {vault_id} is older than {last_activity_at}"
        super().__init__(message)


# ─── Release ───

class OverAllocationError(WilloVaultError):
    def __init__(self, vault_id, committed, requested, cap=100):
        self.vault_id = vault_id
        self.committed = committed
        self.requested = requested
        self.cap = cap
        message = f"Allocation exceeded for vault {vault_id}: {committed} + {requested} > {cap}"
        super().__init__(message)


class TransferFailure(WilloVaultError):
    retryable = True

    def __init__(self, claim_id, attempts, cause):
        self.claim_id = claim_id
        self.attempts = attempts
        self.cause = cause
        message = f"Transfer for claim {claim_id} failed (attempt {attempts}): {cause}"
        super().__init__(message)


class ReleaseInProgressError(WilloVaultError):
    retryable = True

    def __init__(self, claim_id):
        self.claim_id = claim_id
        message = f"Release of claim {claim_id} is already in flight"
        super().__init__(message)


class ReleaseStuckError(WilloVaultError):
    def __init__(self, claim_id, attempts):
        self.claim_id = claim_id
        self.attempts = attempts
        message = f"Release of claim {claim_id} needs manual intervention after {attempts} failed transfers"
        super().__init__(message)


class TransferError(Exception):
    """Raised by asset-transfer executors. Not a WilloVaultError: it comes from outside."""

    def __init__(self, message, reference=None):
        self.reference = reference
        super().__init__(message)


# ─── Archive (PostgreSQL) ───

class ArchiveError(Exception):
    pass


class ConnectionPoolError(ArchiveError):
    def __init__(self , message):
        super().__init__(message)


class ArchiveWriteError(ArchiveError):
    def __init__(self , message):
        super().__init__(message)
