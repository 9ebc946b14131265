"""
PM Relay Canonical Quote Encoding

The enclave answers every pricing request with a signed IntentMessage:

    {
        "response": {
            "intent": <u8 scope>,
            "timestamp_ms": <u64>,
            "data": { ...scope-specific fields... }
        },
        "signature": "<hex ed25519 signature>"
    }

The signature covers bcs(IntentMessage { intent, timestamp_ms, data }).
This module parses that body into immutable Quote objects and recomputes
the exact signed bytes. It does NOT decide whether a quote is trusted -
that is the relay's QuoteVerifier.

SIGNED FIELD ORDER (MUST match the enclave):

PlaceBet (scope 0):
    user: address, maker: address, pool_id: u64, outcome: u8,
    current_probs: vector<u64>, new_probs: vector<u64>, shares: u64,
    debit_amount: u64, credit_amount: u64

Deposit (scope 2) / Withdraw (scope 3):
    user: address, amount: u64, prior_balance: u64, new_balance: u64
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Tuple, Union

from relay_canonical.bcs import BcsError, BcsWriter, normalize_address
from relay_canonical.constants import IntentScope, ROTATION_STATEMENT_DOMAIN


class QuoteFormatError(ValueError):
    """Raised when an enclave response cannot be parsed into a Quote."""
    pass


# =============================================================================
# Scope-specific data
# =============================================================================

@dataclass(frozen=True)
class PlaceBetData:
    user: str
    maker: str
    pool_id: int
    outcome: int
    current_probs: Tuple[int, ...]
    new_probs: Tuple[int, ...]
    shares: int
    debit_amount: int
    credit_amount: int

    def write(self, writer: BcsWriter) -> None:
        writer.address(self.user)
        writer.address(self.maker)
        writer.u64(self.pool_id)
        writer.u8(self.outcome)
        writer.sequence(self.current_probs, BcsWriter.u64)
        writer.sequence(self.new_probs, BcsWriter.u64)
        writer.u64(self.shares)
        writer.u64(self.debit_amount)
        writer.u64(self.credit_amount)

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "PlaceBetData":
        return cls(
            user=normalize_address(data["user"]),
            maker=normalize_address(data["maker"]),
            pool_id=_as_int(data["pool_id"]),
            outcome=_as_int(data["outcome"]),
            current_probs=tuple(_as_int(p) for p in data["current_probs"]),
            new_probs=tuple(_as_int(p) for p in data["new_probs"]),
            shares=_as_int(data["shares"]),
            debit_amount=_as_int(data["debit_amount"]),
            credit_amount=_as_int(data["credit_amount"]),
        )

    @property
    def subject(self) -> str:
        return f"pool:{self.pool_id}:user:{self.user}"


@dataclass(frozen=True)
class BalanceChangeData:
    """Signed data for deposit and withdraw quotes."""

    user: str
    amount: int
    prior_balance: int
    new_balance: int

    def write(self, writer: BcsWriter) -> None:
        writer.address(self.user)
        writer.u64(self.amount)
        writer.u64(self.prior_balance)
        writer.u64(self.new_balance)

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "BalanceChangeData":
        return cls(
            user=normalize_address(data["user"]),
            amount=_as_int(data["amount"]),
            prior_balance=_as_int(data["prior_balance"]),
            new_balance=_as_int(data["new_balance"]),
        )

    @property
    def subject(self) -> str:
        return f"account:{self.user}"


QuoteData = Union[PlaceBetData, BalanceChangeData]

_DATA_TYPES = {
    IntentScope.PLACE_BET: PlaceBetData,
    IntentScope.DEPOSIT: BalanceChangeData,
    IntentScope.WITHDRAW: BalanceChangeData,
}


# =============================================================================
# Quote
# =============================================================================

@dataclass(frozen=True)
class Quote:
    """
    An enclave-signed statement about one market action.

    Immutable: every field that reaches the ledger is covered by ``signature``.
    """

    scope: IntentScope
    timestamp_ms: int
    data: QuoteData
    signature: bytes

    def signing_bytes(self) -> bytes:
        """bcs(IntentMessage { intent, timestamp_ms, data }) - the exact signed bytes."""
        writer = BcsWriter()
        writer.u8(int(self.scope))
        writer.u64(self.timestamp_ms)
        self.data.write(writer)
        return writer.getvalue()

    @property
    def subject(self) -> str:
        return self.data.subject

    @classmethod
    def from_enclave_response(
        cls,
        response: Mapping[str, Any],
        signature: Union[str, bytes, None] = None,
    ) -> "Quote":
        """
        Parse an enclave response body.

        Accepts either the full body ({"response": ..., "signature": ...}) or
        the inner IntentMessage plus a separately supplied signature.

        Raises:
            QuoteFormatError: If any field is missing or out of range
        """
        try:
            if "response" in response and signature is None:
                signature = response.get("signature")
                response = response["response"]

            if signature is None:
                raise QuoteFormatError("Enclave signature is missing")

            scope = IntentScope(_as_int(response["intent"]))
            data_type = _DATA_TYPES.get(scope)
            if data_type is None:
                raise QuoteFormatError(f"Intent scope {scope.name} is not a market action quote")

            quote = cls(
                scope=scope,
                timestamp_ms=_as_int(response["timestamp_ms"]),
                data=data_type.from_json(response["data"]),
                signature=_as_signature_bytes(signature),
            )
            # Encoding once validates every integer range up front
            quote.signing_bytes()
            return quote

        except QuoteFormatError:
            raise
        except KeyError as e:
            raise QuoteFormatError(f"Enclave response missing field: {e.args[0]}")
        except (BcsError, TypeError, ValueError) as e:
            raise QuoteFormatError(f"Malformed enclave response: {e}")


def _as_int(value: Any) -> int:
    # Large u64 values may arrive as strings from JSON clients
    if isinstance(value, bool):
        raise TypeError("boolean is not an integer field")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    raise TypeError(f"expected integer, got {value!r}")


def _as_signature_bytes(signature: Union[str, bytes]) -> bytes:
    if isinstance(signature, bytes):
        return signature
    text = signature[2:] if signature.startswith("0x") else signature
    return bytes.fromhex(text)


# =============================================================================
# Attestation rotation statement
# =============================================================================

def rotation_statement(
    enclave_config_id: str,
    version: int,
    pcr0: bytes,
    pcr1: bytes,
    pcr2: bytes,
) -> bytes:
    """
    Canonical bytes an attestation authority signs to authorize a rotation.

    The version is part of the statement, so an authorization for version N
    cannot be replayed to roll the registry back or forward to another record.
    """
    writer = BcsWriter()
    writer.string(ROTATION_STATEMENT_DOMAIN)
    writer.address(enclave_config_id)
    writer.u64(version)
    writer.bytes(pcr0)
    writer.bytes(pcr1)
    writer.bytes(pcr2)
    return writer.getvalue()


def quote_to_json(quote: Quote) -> Dict[str, Any]:
    """Render a quote back into the enclave's JSON shape (for logs and responses)."""
    data = quote.data
    if isinstance(data, PlaceBetData):
        body = {
            "user": data.user,
            "maker": data.maker,
            "pool_id": data.pool_id,
            "outcome": data.outcome,
            "current_probs": list(data.current_probs),
            "new_probs": list(data.new_probs),
            "shares": data.shares,
            "debit_amount": data.debit_amount,
            "credit_amount": data.credit_amount,
        }
    else:
        body = {
            "user": data.user,
            "amount": data.amount,
            "prior_balance": data.prior_balance,
            "new_balance": data.new_balance,
        }
    return {
        "response": {"intent": int(quote.scope), "timestamp_ms": quote.timestamp_ms, "data": body},
        "signature": quote.signature.hex(),
    }
