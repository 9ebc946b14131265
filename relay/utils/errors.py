"""
Relay Error Taxonomy

Every failure the relay can report is a RelayError subclass carrying:
- code:        stable machine-readable name (e.g. "ReplayedQuote")
- category:    trust | consistency | availability | authorization | ledger
- retryable:   whether the CALLER may retry (the relay itself never does)
- http_status: status used by the API layer

Callers must be able to tell "retry me" from "do not retry" without
parsing the detail string.
"""

from typing import Any, Dict, Optional


TRUST = "trust"
CONSISTENCY = "consistency"
AVAILABILITY = "availability"
AUTHORIZATION = "authorization"
LEDGER = "ledger"


class RelayError(Exception):
    """Base class for all structured relay errors."""

    code = "RelayError"
    category = TRUST
    retryable = False
    http_status = 500

    def __init__(self, detail: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "error": self.code,
            "category": self.category,
            "retryable": self.retryable,
            "detail": self.detail,
        }
        if self.extra:
            body.update(self.extra)
        return body

    def __repr__(self) -> str:
        return f"{self.code}({self.detail!r})"


# ============================================================
# Trust errors (never retried)
# ============================================================

class BadSignature(RelayError):
    code = "BadSignature"
    category = TRUST
    http_status = 400


class UntrustedEnclave(RelayError):
    code = "UntrustedEnclave"
    category = TRUST
    http_status = 403


class ReplayedQuote(RelayError):
    code = "ReplayedQuote"
    category = TRUST
    http_status = 409


class StaleQuote(RelayError):
    """Quote timestamp is outside the validity window (too old or too far ahead)."""

    code = "StaleQuote"
    category = TRUST
    http_status = 409


class SignatureMismatch(RelayError):
    code = "SignatureMismatch"
    category = TRUST
    http_status = 400


# ============================================================
# Consistency errors
# ============================================================

class ParameterMismatch(RelayError):
    code = "ParameterMismatch"
    category = CONSISTENCY
    http_status = 422


# ============================================================
# Availability errors (caller may retry with backoff)
# ============================================================

class UpstreamUnavailable(RelayError):
    code = "UpstreamUnavailable"
    category = AVAILABILITY
    retryable = True
    http_status = 503


class UpstreamError(RelayError):
    code = "UpstreamError"
    category = AVAILABILITY
    retryable = True
    http_status = 502


class SponsorUnavailable(RelayError):
    code = "SponsorUnavailable"
    category = AVAILABILITY
    retryable = True
    http_status = 503


class NetworkError(RelayError):
    code = "NetworkError"
    category = AVAILABILITY
    retryable = True
    http_status = 503


class Timeout(RelayError):
    code = "Timeout"
    category = AVAILABILITY
    retryable = True
    http_status = 504


class ReplayCapacityExceeded(RelayError):
    code = "ReplayCapacityExceeded"
    category = AVAILABILITY
    retryable = True
    http_status = 503


class RateLimited(RelayError):
    code = "RateLimited"
    category = AVAILABILITY
    retryable = True
    http_status = 429


# ============================================================
# Authorization errors
# ============================================================

class Unauthorized(RelayError):
    code = "Unauthorized"
    category = AUTHORIZATION
    http_status = 403


class SponsorDenied(RelayError):
    code = "SponsorDenied"
    category = AUTHORIZATION
    http_status = 402


class EndpointNotAllowed(RelayError):
    """Enclave operation is not on the proxy allowlist."""

    code = "EndpointNotAllowed"
    category = AUTHORIZATION
    http_status = 404


# ============================================================
# Ledger errors
# ============================================================

class SubmissionRejected(RelayError):
    """Ledger-side validation failure. ``detail`` is the ledger's message verbatim."""

    code = "SubmissionRejected"
    category = LEDGER
    http_status = 422


ALL_ERRORS = (
    BadSignature,
    UntrustedEnclave,
    ReplayedQuote,
    StaleQuote,
    SignatureMismatch,
    ParameterMismatch,
    UpstreamUnavailable,
    UpstreamError,
    SponsorUnavailable,
    NetworkError,
    Timeout,
    ReplayCapacityExceeded,
    RateLimited,
    Unauthorized,
    SponsorDenied,
    EndpointNotAllowed,
    SubmissionRejected,
)
