"""
Attestation Record Endpoints
============================

GET  /attestation/current - current record, history, trusted enclave keys
POST /attestation/rotate  - install a new record (authority-signed)

A rotation returns a sponsored enclave::update_pcrs transaction for the
authority (the PCR update cap holder) to co-sign and send to
/sponsored/execute. The new record stays pending until that transaction
is final; only then does the relay trust it, so the relay never runs ahead
of the on-chain EnclaveConfig.
"""

from fastapi import APIRouter, Request

from relay.models.requests import RotateAttestationRequest
from relay.models.responses import (
    AttestationRecordResponse,
    AttestationStateResponse,
    BuildSponsoredTxResponse,
    EnclaveKeyResponse,
    PendingRotationResponse,
    RotateAttestationResponse,
)
from relay.utils.attestation_registry import AttestationRecord

router = APIRouter(prefix="/attestation", tags=["Attestation"])


def _record(record: AttestationRecord) -> AttestationRecordResponse:
    return AttestationRecordResponse(**record.to_dict())


@router.get("/current", response_model=AttestationStateResponse)
async def current_attestation(request: Request):
    registry = request.app.state.services.registry
    return AttestationStateResponse(
        enclave_config_id=registry.enclave_config_id,
        current=_record(registry.current()),
        history=[_record(r) for r in registry.history()],
        trusted_keys=[
            EnclaveKeyResponse(
                public_key=b.public_key,
                record_version=b.record_version,
                trust_level=b.trust_level,
                bound_at=b.bound_at.isoformat(),
            )
            for b in registry.trusted_keys()
        ],
        pending_rotations=[
            PendingRotationResponse(digest=digest, record=_record(r))
            for digest, r in registry.pending_rotations().items()
        ],
    )


@router.post("/rotate", response_model=RotateAttestationResponse)
async def rotate_attestation(body: RotateAttestationRequest, request: Request):
    services = request.app.state.services

    print(f"\n🔄 /attestation/rotate → v{body.version}")
    record = AttestationRecord(version=body.version, pcr0=body.pcr0, pcr1=body.pcr1, pcr2=body.pcr2)
    staged, outcome = await services.rotate_attestation(record, body.authorization)
    print(f"   ⏳ Record v{staged.version} pending until update_pcrs {outcome.sponsored.digest} is final")

    return RotateAttestationResponse(
        record=_record(staged),
        status="pending",
        update_transaction=BuildSponsoredTxResponse(
            action=outcome.payload.action,
            sender=outcome.payload.sender,
            tx_bytes=outcome.sponsored.tx_bytes_b64,
            sponsor_signature=outcome.sponsored.sponsor_signature,
            digest=outcome.sponsored.digest,
        ),
    )
