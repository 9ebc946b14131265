"""
Sponsor Signing

The sponsor pays gas and contributes one of the two signatures. It is
reached through a NARROW capability with a single method:

    sponsor(payload) -> SponsoredTransaction

The capability wraps the payload's TransactionKind into TransactionData
(adding gas payment, owner, price and budget) and signs those bytes.

SponsorSigner sits in front of the capability and enforces:
- Only builder-sealed payloads reach the sponsor credential
- The returned TransactionData still carries the exact kind bytes and sender
- The sponsor signature verifies over the returned bytes and its signer
  is the gas owner (and the configured sponsor address, if set)
- The returned digest matches the bytes

The gas station access key is read from the environment only and is never
logged or echoed.
"""

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
from cryptography.exceptions import InvalidSignature

from relay_canonical.bcs import BcsError, normalize_address
from relay_canonical.sui import SignatureFormatError, transaction_digest, verify_transaction_signature
from relay_canonical.transactions import decode_transaction_data
from relay.config import (
    SHINAMI_GAS_STATION_ACCESS_KEY,
    SHINAMI_GAS_STATION_URL,
    SPONSOR_ADDRESS,
    SPONSOR_GAS_BUDGET,
    SPONSOR_TIMEOUT_SECONDS,
)
from relay.utils.errors import SignatureMismatch, SponsorDenied, SponsorUnavailable
from relay.utils.tx_builder import PayloadSealer, TransactionPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SponsoredTransaction:
    """TransactionData bytes plus the sponsor's signature over them."""

    tx_bytes: bytes
    sponsor_signature: str
    digest: str

    @property
    def tx_bytes_b64(self) -> str:
        return base64.b64encode(self.tx_bytes).decode("ascii")


class SponsorCapability(ABC):
    """Delegated gas-sponsorship authority: sign-this-exact-payload, nothing else."""

    @abstractmethod
    async def sponsor(self, payload: TransactionPayload) -> SponsoredTransaction:
        """
        Raises:
            SponsorUnavailable: service unreachable / timed out / 5xx
            SponsorDenied: service refused (budget, policy, credential)
        """


# ============================================================
# Shinami Gas Station
# ============================================================

class ShinamiGasStation(SponsorCapability):
    """gas_sponsorTransactionBlock over JSON-RPC."""

    def __init__(
        self,
        url: str = SHINAMI_GAS_STATION_URL,
        access_key: Optional[str] = SHINAMI_GAS_STATION_ACCESS_KEY,
        gas_budget: int = SPONSOR_GAS_BUDGET,
        timeout: float = SPONSOR_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self._access_key = access_key
        self.gas_budget = gas_budget
        self.timeout = timeout
        self._transport = transport

    async def sponsor(self, payload: TransactionPayload) -> SponsoredTransaction:
        if not self._access_key:
            raise SponsorDenied("Gas station access key is not configured")

        request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "gas_sponsorTransactionBlock",
            "params": [
                base64.b64encode(payload.kind_bytes).decode("ascii"),
                payload.sender,
                self.gas_budget,
            ],
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    json=request,
                    headers={"X-API-Key": self._access_key, "Content-Type": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise SponsorUnavailable(f"Gas station timed out: {e!r}")
        except httpx.TransportError as e:
            raise SponsorUnavailable(f"Gas station unreachable: {e!r}")

        if response.status_code >= 500:
            raise SponsorUnavailable(f"Gas station returned HTTP {response.status_code}")
        if response.status_code in (401, 403):
            raise SponsorDenied(f"Gas station rejected the access key (HTTP {response.status_code})")
        if response.status_code == 429:
            raise SponsorDenied("Gas station rate limit or fund budget exhausted (HTTP 429)")

        try:
            body = response.json()
        except ValueError:
            raise SponsorUnavailable(f"Gas station returned non-JSON body (HTTP {response.status_code})")

        if body.get("error"):
            error = body["error"]
            raise SponsorDenied(
                f"Gas station denied sponsorship: {error.get('message', error)}",
                extra={"sponsor_error_code": error.get("code")},
            )
        if not response.is_success:
            raise SponsorDenied(f"Gas station returned HTTP {response.status_code}")

        result = body.get("result") or {}
        try:
            return SponsoredTransaction(
                tx_bytes=base64.b64decode(result["txBytes"]),
                sponsor_signature=result["signature"],
                digest=result["txDigest"],
            )
        except (KeyError, ValueError, TypeError) as e:
            raise SponsorUnavailable(f"Gas station returned an incomplete result: {e!r}")


# ============================================================
# Sponsor signer
# ============================================================

class SponsorSigner:
    """Obtains and checks the sponsor's signature over an exact payload."""

    def __init__(
        self,
        capability: SponsorCapability,
        sealer: PayloadSealer,
        sponsor_address: Optional[str] = SPONSOR_ADDRESS,
    ):
        self.capability = capability
        self.sealer = sealer
        self.sponsor_address = normalize_address(sponsor_address) if sponsor_address else None

    async def sign(self, payload: TransactionPayload) -> SponsoredTransaction:
        """
        Raises:
            SponsorDenied: payload not sealed by the builder, or sponsor refused
            SponsorUnavailable: sponsor unreachable
            SignatureMismatch: sponsor returned bytes/signature that do not
                               match the payload
        """
        if not self.sealer.is_sealed(payload):
            logger.warning("🚫 Refusing to sponsor a payload the builder did not seal")
            raise SponsorDenied("Payload was not produced by the transaction builder")

        sponsored = await self.capability.sponsor(payload)
        self.check(payload, sponsored)
        logger.info(f"⛽ Sponsored {payload.action} for {payload.sender[:10]}... digest={sponsored.digest}")
        return sponsored

    def check(self, payload: TransactionPayload, sponsored: SponsoredTransaction) -> None:
        try:
            decoded = decode_transaction_data(sponsored.tx_bytes)
        except BcsError as e:
            raise SignatureMismatch(f"Sponsor returned undecodable transaction bytes: {e}")

        if decoded.kind_bytes != payload.kind_bytes:
            raise SignatureMismatch("Sponsor altered the transaction kind")
        if decoded.sender != payload.sender:
            raise SignatureMismatch(f"Sponsor changed the sender to {decoded.sender}")

        try:
            signature = verify_transaction_signature(sponsored.sponsor_signature, sponsored.tx_bytes)
        except (SignatureFormatError, InvalidSignature) as e:
            raise SignatureMismatch(f"Sponsor signature does not cover the sponsored bytes: {e}")

        if signature.signer_address != decoded.gas.owner:
            raise SignatureMismatch(
                f"Sponsor signer {signature.signer_address} is not the gas owner {decoded.gas.owner}"
            )
        if self.sponsor_address and decoded.gas.owner != self.sponsor_address:
            raise SignatureMismatch(f"Gas owner {decoded.gas.owner} is not the configured sponsor")

        if transaction_digest(sponsored.tx_bytes) != sponsored.digest:
            raise SignatureMismatch("Sponsor digest does not match the sponsored bytes")
