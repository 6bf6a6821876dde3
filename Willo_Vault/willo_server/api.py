"""
FastAPI endpoints for Willo Vault.

Actor proofs travel as JSON with a hex-encoded Ed25519 signature; the API
layer decodes them into ActorProof before handing them to the service.
Admin endpoints take an ADMIN proof too; a sweep requested here always runs
at the server's own clock.
Protocol errors are rendered as {"error", "detail", "retryable"} so clients
can tell "try again" from "will never succeed as submitted".
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator

from Willo_Vault.willo_shared import config as shared_config
from Willo_Vault.willo_shared import errors
from Willo_Vault.willo_shared.identity import ActorProof
from Willo_Vault.willo_shared.transfer import HttpTransferExecutor
from Willo_Vault.willo_shared.types import BeneficiarySpec, GuardianSpec, Tally, VaultPolicy
from Willo_Vault.willo_db import connection
from Willo_Vault.willo_server import config, db
from Willo_Vault.inheritance import InheritanceService

logger = logging.getLogger(__name__)


# ── Pydantic request/response models ──


class ProofIn(BaseModel):
    actor_id: str
    role: str
    vault_id: str
    action: str
    issued_at: int
    signature_hex: str

    @field_validator("signature_hex")
    @classmethod
    def validate_signature(cls, v):
        try:
            bytes.fromhex(v)
        except ValueError:
            raise ValueError("signature_hex must be hex encoded")
        return v

    def to_proof(self) -> ActorProof:
        return ActorProof(
            actor_id=self.actor_id,
            role=self.role,
            vault_id=self.vault_id,
            action=self.action,
            issued_at=self.issued_at,
            signature=bytes.fromhex(self.signature_hex),
        )


class BeneficiaryIn(BaseModel):
    wallet_address: str
    allocation_share: int
    name: str = ""
    relationship: str = ""

    @field_validator("allocation_share")
    @classmethod
    def validate_share(cls, v):
        if not 0 <= v <= shared_config.MAX_ALLOCATION_PERCENT:
            raise ValueError(f"allocation_share must be 0-100, got {v}")
        return v


class GuardianIn(BaseModel):
    wallet_address: str
    name: str = ""
    email: str = ""
    verify_key: str = ""


class CreateVaultRequest(BaseModel):
    owner_id: str
    name: str
    inactivity_threshold_seconds: int
    guardian_quorum: int
    guardians: list[GuardianIn]
    beneficiaries: list[BeneficiaryIn] = []
    description: str = ""
    wallet_address: str = ""
    owner_key: str = ""
    claim_validity_seconds: int = 0
    veto_threshold: int = 0


class CreateVaultResponse(BaseModel):
    vault_id: str


class GuardianOut(BaseModel):
    guardian_id: str
    wallet_address: str
    name: str
    status: str


class BeneficiaryOut(BaseModel):
    beneficiary_id: str
    wallet_address: str
    allocation_share: int
    name: str
    relationship: str
    status: str


class VaultOut(BaseModel):
    vault_id: str
    owner_id: str
    name: str
    status: str
    inactivity_threshold_seconds: int
    guardian_quorum: int
    claim_validity_seconds: int
    veto_threshold: int
    created_at: int
    guardians: list[GuardianOut]
    beneficiaries: list[BeneficiaryOut]


class ProofRequest(BaseModel):
    proof: ProofIn


class ActivityResponse(BaseModel):
    vault_id: str
    last_activity_at: int
    activity_sequence: int


class VoteRequest(BaseModel):
    proof: ProofIn
    decision: str

    @field_validator("decision")
    @classmethod
    def validate_decision(cls, v):
        if v not in shared_config.VALID_DECISIONS:
            raise ValueError(f"Invalid decision: {v}")
        return v


class TallyOut(BaseModel):
    approvals: int
    rejections: int
    quorum: int
    veto_threshold: int
    approved_by: list[str]
    rejected_by: list[str]
    quorum_reached: bool


class VoteResponse(BaseModel):
    claim_id: str
    guardian_id: str
    decision: str
    state: str
    recorded: bool
    tally: TallyOut


class ClaimOut(BaseModel):
    claim_id: str
    vault_id: str
    beneficiary_id: str
    state: str
    trigger_type: str
    eligible_at: int
    created_at: int
    promoted_at: Optional[int] = None
    resolved_at: Optional[int] = None
    release_attempts: int = 0
    release_alert: bool = False


class ClaimStatusResponse(BaseModel):
    claim: ClaimOut
    tally: TallyOut
    approvals: list[str]


class ClaimsResponse(BaseModel):
    claims: list[ClaimOut]


class ReceiptOut(BaseModel):
    claim_id: str
    vault_id: str
    beneficiary_id: str
    wallet_address: str
    share: int
    transfer_reference: str
    released_at: int
    audit_sequence: int


class AuditEntryOut(BaseModel):
    sequence: int
    timestamp: int
    entity_type: str
    entity_id: str
    claim_id: str
    from_state: str
    to_state: str
    actor: str
    reason: str
    metadata: dict
    prev_hash: str
    entry_hash: str


class AuditResponse(BaseModel):
    vault_id: str
    entries: list[AuditEntryOut]


class VerifyResponse(BaseModel):
    vault_id: str
    entries: int
    valid: bool
    broken_at: Optional[int] = None


class SweepResponse(BaseModel):
    vaults_scanned: int
    claims_created: int
    claims_promoted: int
    claims_expired: int
    aborted: list[str]


class RejectRequest(BaseModel):
    proof: ProofIn
    reason: str = ""


class HealthResponse(BaseModel):
    status: str
    store_connected: bool
    archive_connected: bool


# ── App lifecycle ──

service: Optional[InheritanceService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global service
    client = connection.create_client()
    executor = HttpTransferExecutor(
        config.TRANSFER_SERVICE_URL,
        api_key=config.TRANSFER_SERVICE_API_KEY,
        timeout=config.TRANSFER_HTTP_TIMEOUT,
    )
    service = InheritanceService(client, executor=executor)
    try:
        await db.create_pool(config.PG_DSN, min_size=config.PG_POOL_MIN_SIZE, max_size=config.PG_POOL_MAX_SIZE)
    except errors.ConnectionPoolError as e:
        logger.warning("claim archive disabled: %s", e)
    yield
    await executor.aclose()
    await db.close_pool()
    connection.close(client)
    service = None


app = FastAPI(title="Willo Vault", version="1.0.0", lifespan=lifespan)


def _get_service() -> InheritanceService:
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


# ── Error mapping ──

_NOT_FOUND = (
    errors.VaultNotFoundError, errors.ClaimNotFoundError, errors.BeneficiaryNotFoundError,
    errors.GuardianNotFoundError, errors.ActivityNotFoundError,
)


def status_for(exc: errors.WilloVaultError) -> int:
    if isinstance(exc, _NOT_FOUND):
        return 404
    if isinstance(exc, errors.UnauthorizedActorError):
        return 403
    if isinstance(exc, errors.InvalidPolicyError):
        return 422
    if isinstance(exc, errors.StoreUnavailableError):
        return 503
    if isinstance(exc, errors.TransferFailure):
        return 502
    return 409


@app.exception_handler(errors.WilloVaultError)
async def protocol_error_handler(request: Request, exc: errors.WilloVaultError):
    return JSONResponse(
        status_code=status_for(exc),
        content={"error": type(exc).__name__, "detail": str(exc), "retryable": exc.retryable},
    )


def _tally_out(tally: Tally) -> TallyOut:
    return TallyOut(
        approvals=tally.approvals,
        rejections=tally.rejections,
        quorum=tally.quorum,
        veto_threshold=tally.veto_threshold,
        approved_by=tally.approved_by,
        rejected_by=tally.rejected_by,
        quorum_reached=tally.quorum_reached,
    )


# ── Vaults ──


@app.post("/v1/vaults", response_model=CreateVaultResponse)
def create_vault(req: CreateVaultRequest):
    svc = _get_service()
    policy = VaultPolicy(
        name=req.name,
        description=req.description,
        wallet_address=req.wallet_address,
        owner_key=req.owner_key,
        inactivity_threshold_seconds=req.inactivity_threshold_seconds,
        guardian_quorum=req.guardian_quorum,
        claim_validity_seconds=req.claim_validity_seconds,
        veto_threshold=req.veto_threshold,
        guardians=[GuardianSpec(**g.model_dump()) for g in req.guardians],
        beneficiaries=[BeneficiarySpec(**b.model_dump()) for b in req.beneficiaries],
    )
    return CreateVaultResponse(vault_id=svc.create_vault(req.owner_id, policy))


@app.get("/v1/vaults/{vault_id}", response_model=VaultOut)
def get_vault(vault_id: str):
    svc = _get_service()
    vault = svc.get_vault(vault_id)
    return VaultOut(
        **asdict(vault),
        guardians=[GuardianOut(**asdict(g)) for g in svc.registry.list_guardians(vault_id)],
        beneficiaries=[BeneficiaryOut(**asdict(b)) for b in svc.registry.list_beneficiaries(vault_id)],
    )


@app.post("/v1/vaults/{vault_id}/activity", response_model=ActivityResponse)
def record_activity(vault_id: str, req: ProofRequest):
    record = _get_service().record_activity(vault_id, req.proof.to_proof())
    return ActivityResponse(**asdict(record))


@app.post("/v1/vaults/{vault_id}/close", response_model=VaultOut)
def close_vault(vault_id: str, req: ProofRequest):
    svc = _get_service()
    svc.close_vault(vault_id, req.proof.to_proof())
    return get_vault(vault_id)


@app.get("/v1/vaults/{vault_id}/audit", response_model=AuditResponse)
def get_audit_trail(vault_id: str):
    entries = _get_service().get_audit_trail(vault_id)
    return AuditResponse(vault_id=vault_id, entries=[AuditEntryOut(**asdict(e)) for e in entries])


@app.get("/v1/vaults/{vault_id}/audit/verify", response_model=VerifyResponse)
def verify_audit(vault_id: str):
    result = _get_service().verify_audit(vault_id)
    return VerifyResponse(vault_id=vault_id, entries=result.entries, valid=result.valid, broken_at=result.broken_at)


# ── Claims ──


@app.get("/v1/claims", response_model=ClaimsResponse)
def claims_for_wallet(beneficiary_address: str = Query(..., min_length=1)):
    claims = _get_service().claims_for_wallet(beneficiary_address)
    return ClaimsResponse(claims=[ClaimOut(**asdict(c)) for c in claims])


@app.get("/v1/claims/{claim_id}", response_model=ClaimStatusResponse)
def get_claim_status(claim_id: str):
    snapshot = _get_service().get_claim_status(claim_id)
    return ClaimStatusResponse(
        claim=ClaimOut(**asdict(snapshot.claim)),
        tally=_tally_out(snapshot.tally),
        approvals=snapshot.approvals,
    )


@app.post("/v1/claims/{claim_id}/votes", response_model=VoteResponse)
def cast_vote(claim_id: str, req: VoteRequest):
    result = _get_service().cast_vote(claim_id, req.proof.to_proof(), req.decision)
    return VoteResponse(
        claim_id=result.claim_id,
        guardian_id=result.guardian_id,
        decision=result.decision,
        state=result.state,
        recorded=result.recorded,
        tally=_tally_out(result.tally),
    )


@app.post("/v1/claims/{claim_id}/release", response_model=ReceiptOut)
async def release(claim_id: str):
    receipt = await _get_service().release(claim_id)
    return ReceiptOut(**asdict(receipt))


# ── Admin ──


@app.post("/v1/admin/sweep", response_model=SweepResponse)
def sweep(req: ProofRequest):
    result = _get_service().requested_sweep(req.proof.to_proof())
    return SweepResponse(**asdict(result))


@app.post("/v1/admin/claims/{claim_id}/reject", response_model=ClaimOut)
def reject_claim(claim_id: str, req: RejectRequest):
    claim = _get_service().reject_claim(claim_id, req.proof.to_proof(), req.reason)
    return ClaimOut(**asdict(claim))


@app.post("/v1/admin/claims/{claim_id}/clear-alert", response_model=ClaimOut)
def clear_release_alert(claim_id: str, req: ProofRequest):
    claim = _get_service().clear_release_alert(claim_id, req.proof.to_proof())
    return ClaimOut(**asdict(claim))


@app.get("/v1/health", response_model=HealthResponse)
async def health():
    store = service.health().store_connected if service is not None else False
    archive = await db.health_check()
    return HealthResponse(
        status="ok" if store else "degraded",
        store_connected=store,
        archive_connected=archive,
    )
