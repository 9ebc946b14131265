"""
Relay Request Models
====================

Pydantic models for API request bodies.

Ledger integers (u64 amounts, balances) are plain ints; clients that cannot
represent them exactly may send digit strings, which pydantic coerces.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class TeeProxyRequest(BaseModel):
    """Body of POST /tee/proxy"""

    endpoint: str
    payload: Optional[Dict[str, Any]] = None


# ============================================================
# Build sponsored transaction (one model per action kind)
# ============================================================

class _BuildBase(BaseModel):
    sender: str
    tee_response: Dict[str, Any]  # full enclave body, or its inner "response"
    tee_signature: Optional[str] = None  # hex; required if tee_response is the inner message


class BuildBetRequest(_BuildBase):
    action: Literal["place_bet"]
    pool_id: int = Field(ge=0)
    outcome: int = Field(ge=0, le=255)
    amount: int = Field(ge=0)
    current_probs: List[int]
    maker: str
    user_prior_balance: int = Field(ge=0)
    user_new_balance: int = Field(ge=0)
    maker_prior_balance: int = Field(ge=0)
    maker_new_balance: int = Field(ge=0)


class BuildDepositRequest(_BuildBase):
    action: Literal["deposit"]
    amount: int = Field(ge=0)
    coin_ids: List[str] = Field(min_length=1)  # funding coin object ids, merged in this order


class BuildWithdrawRequest(_BuildBase):
    action: Literal["withdraw"]
    amount: int = Field(ge=0)


# Discriminated on "action" by the route (Body(discriminator="action"))
BuildSponsoredTxRequest = Union[BuildBetRequest, BuildDepositRequest, BuildWithdrawRequest]


# ============================================================
# Execute / attestation
# ============================================================

class ExecuteSponsoredTxRequest(BaseModel):
    """Body of POST /sponsored/execute"""

    tx_bytes: str  # base64 TransactionData returned by /sponsored/build
    sponsor_signature: str
    sender_signature: str


class RotateAttestationRequest(BaseModel):
    """Body of POST /attestation/rotate"""

    version: int = Field(ge=1)
    pcr0: str
    pcr1: str
    pcr2: str
    authorization: str  # personal-message signature over the rotation statement
