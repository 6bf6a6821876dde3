from dataclasses import dataclass, field
from typing import Optional


@dataclass
class BeneficiarySpec:
    wallet_address:   str
    allocation_share: int
    name:             str = ""
    relationship:     str = ""


@dataclass
class GuardianSpec:
    wallet_address: str
    name:           str = ""
    email:          str = ""
    verify_key:     str = ""


@dataclass
class VaultPolicy:
    name:                         str
    inactivity_threshold_seconds: int
    guardian_quorum:              int
    guardians:                    list[GuardianSpec]
    beneficiaries:                list[BeneficiarySpec] = field(default_factory=list)
    description:                  str = ""
    wallet_address:               str = ""
    owner_key:                    str = ""
    claim_validity_seconds:       int = 0
    veto_threshold:               int = 0


@dataclass
class Vault:
    vault_id:                     str
    owner_id:                     str
    name:                         str
    description:                  str
    wallet_address:               str
    owner_key:                    str
    inactivity_threshold_seconds: int
    guardian_quorum:              int
    claim_validity_seconds:       int
    veto_threshold:               int
    status:                       str
    created_at:                   int


@dataclass
class Beneficiary:
    beneficiary_id:   str
    vault_id:         str
    wallet_address:   str
    allocation_share: int
    name:             str
    relationship:     str
    status:           str
    created_at:       int


@dataclass
class Guardian:
    guardian_id:    str
    vault_id:       str
    wallet_address: str
    name:           str
    email:          str
    verify_key:     str
    status:         str
    created_at:     int


@dataclass
class ActivityRecord:
    vault_id:          str
    last_activity_at:  int
    activity_sequence: int


@dataclass
class Claim:
    claim_id:           str
    vault_id:           str
    beneficiary_id:     str
    state:              str
    trigger_type:       str
    eligible_at:        int
    activity_sequence:  int
    created_at:         int
    promoted_at:        Optional[int] = None
    resolved_at:        Optional[int] = None
    release_token:      str = ""
    release_started_at: Optional[int] = None
    release_share:      int = 0
    release_attempts:   int = 0
    release_alert:      bool = False
    receipt:            Optional["ReleaseReceipt"] = None

    @property
    def release_in_flight(self) -> bool:
        return self.release_started_at is not None


@dataclass
class AuditEntry:
    sequence:    int
    vault_id:    str
    timestamp:   int
    entity_type: str
    entity_id:   str
    from_state:  str
    to_state:    str
    actor:       str
    reason:      str
    claim_id:    str = ""
    metadata:    dict = field(default_factory=dict)
    prev_hash:   str = ""
    entry_hash:  str = ""


@dataclass
class ChainVerification:
    vault_id:      str
    entries:       int
    valid:         bool
    broken_at:     Optional[int] = None
    head_hash:     str = ""


@dataclass
class Tally:
    claim_id:        str
    approvals:       int
    rejections:      int
    quorum:          int
    veto_threshold:  int
    approved_by:     list[str]
    rejected_by:     list[str]

    @property
    def quorum_reached(self) -> bool:
        return self.approvals >= self.quorum

    @property
    def vetoed(self) -> bool:
        return self.veto_threshold > 0 and self.rejections >= self.veto_threshold


@dataclass
class VoteResult:
    claim_id:    str
    guardian_id: str
    decision:    str
    state:       str
    tally:       Tally
    recorded:    bool


@dataclass
class Allocation:
    claim_id:       str
    wallet_address: str
    share:          int
    release_token:  str


@dataclass
class TransferReceipt:
    reference:   str
    executed_at: int


@dataclass
class ReleaseReceipt:
    claim_id:           str
    vault_id:           str
    beneficiary_id:     str
    wallet_address:     str
    share:              int
    transfer_reference: str
    released_at:        int
    audit_sequence:     int


@dataclass
class ClaimSnapshot:
    claim:     Claim
    tally:     Tally
    approvals: list[str]


@dataclass
class SweepResult:
    vaults_scanned:  int = 0
    claims_created:  int = 0
    claims_promoted: int = 0
    claims_expired:  int = 0
    aborted:         list[str] = field(default_factory=list)


@dataclass
class HealthStatus:
    store_connected: bool
    key_count:       int
    uptime_seconds:  float
