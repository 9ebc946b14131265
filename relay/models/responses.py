"""
Relay Response Models
=====================

Pydantic models for API responses.
"""

from pydantic import BaseModel
from typing import Any, Dict, List, Optional


class ErrorResponse(BaseModel):
    """Structured error (every RelayError renders as this)"""

    error: str
    category: str
    retryable: bool
    detail: str


class BuildSponsoredTxResponse(BaseModel):
    """Response from /sponsored/build"""

    action: str
    sender: str
    tx_bytes: str  # base64 TransactionData; the sender signs exactly these bytes
    sponsor_signature: str
    digest: str
    quote_timestamp_ms: Optional[int] = None


class ExecuteSponsoredTxResponse(BaseModel):
    """Response from /sponsored/execute"""

    digest: str
    effects: Dict[str, Any]
    events: List[Any]
    object_changes: List[Any]
    checkpoint: Optional[str] = None


class AttestationRecordResponse(BaseModel):
    version: int
    pcr0: str
    pcr1: str
    pcr2: str
    created_at: str
    authorized_by: Optional[str] = None


class EnclaveKeyResponse(BaseModel):
    public_key: str
    record_version: int
    trust_level: str
    bound_at: str


class PendingRotationResponse(BaseModel):
    digest: str  # update_pcrs transaction that installs the record once final
    record: AttestationRecordResponse


class AttestationStateResponse(BaseModel):
    """Response from GET /attestation/current"""

    enclave_config_id: str
    current: AttestationRecordResponse
    history: List[AttestationRecordResponse]
    trusted_keys: List[EnclaveKeyResponse]
    pending_rotations: List[PendingRotationResponse] = []


class RotateAttestationResponse(BaseModel):
    """Response from POST /attestation/rotate"""

    record: AttestationRecordResponse
    status: str  # "pending" until update_transaction is final on the ledger
    update_transaction: BuildSponsoredTxResponse  # cap holder co-signs, then /sponsored/execute


class HealthResponse(BaseModel):
    """Health check response"""

    service: str
    status: str
    build_id: str
    github_commit: str
    timestamp: str
    attestation_version: int
    enclave_key_bound: bool
