"""
Quote Verifier

Turns an enclave Quote into a VerifiedQuote, the ONLY input the sponsored
transaction builder accepts.

Steps (in order, each a distinct trust failure):
1. Signature: Ed25519 over bcs(IntentMessage) with the enclave key  → BadSignature
2. Trust:     key bound under the current attestation record       → UntrustedEnclave
3. Freshness: single-use within the replay window                   → StaleQuote / ReplayedQuote

Step 3 marks the quote spent atomically, so verification completes (and
spends the quote) strictly before any build can start.
"""

import logging
import threading
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from relay_canonical.quotes import Quote
from relay.utils import metrics
from relay.utils.attestation_registry import AttestationRegistry
from relay.utils.errors import BadSignature, RelayError, ReplayedQuote, UntrustedEnclave
from relay.utils.replay_window import ReplayKey, ReplayWindow

logger = logging.getLogger(__name__)

_ISSUE_TOKEN = object()


class VerifiedQuote:
    """
    Proof token: this quote passed signature, trust and replay checks.

    Only QuoteVerifier can create one. The builder consumes it exactly once;
    a second consume() raises ReplayedQuote.
    """

    __slots__ = ("quote", "enclave_public_key", "replay_key", "_consumed", "_lock")

    def __init__(self, token: object, quote: Quote, enclave_public_key: str, replay_key: ReplayKey):
        if token is not _ISSUE_TOKEN:
            raise TypeError("VerifiedQuote can only be issued by QuoteVerifier.verify()")
        self.quote = quote
        self.enclave_public_key = enclave_public_key
        self.replay_key = replay_key
        self._consumed = False
        self._lock = threading.Lock()

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> Quote:
        """Mark the token used. Raises ReplayedQuote on the second call."""
        with self._lock:
            if self._consumed:
                raise ReplayedQuote(
                    f"Verified quote at {self.quote.timestamp_ms} was already built into a transaction"
                )
            self._consumed = True
        return self.quote

    def __repr__(self) -> str:
        return (
            f"VerifiedQuote(scope={self.quote.scope.name}, ts={self.quote.timestamp_ms}, "
            f"subject={self.quote.subject!r}, consumed={self._consumed})"
        )


class QuoteVerifier:
    """Checks enclave quotes against the attestation registry and replay window."""

    def __init__(self, registry: AttestationRegistry, replay_window: ReplayWindow):
        self.registry = registry
        self.replay_window = replay_window

    @staticmethod
    def replay_key(quote: Quote, enclave_public_key: str) -> ReplayKey:
        return (enclave_public_key, int(quote.scope), quote.timestamp_ms, quote.subject)

    def verify(self, quote: Quote, enclave_public_key: Union[str, bytes]) -> VerifiedQuote:
        """
        Verify a quote and spend it.

        Raises:
            BadSignature, UntrustedEnclave, StaleQuote, ReplayedQuote,
            ReplayCapacityExceeded
        """
        scope = quote.scope.name
        try:
            key_hex = self._check_signature(quote, enclave_public_key)

            if not self.registry.is_trusted(key_hex):
                raise UntrustedEnclave(
                    f"Enclave key {key_hex[:16]}... is not bound to attestation "
                    f"record v{self.registry.current().version}"
                )

            replay_key = self.replay_key(quote, key_hex)
            self.replay_window.check_and_mark(replay_key, quote.timestamp_ms)

        except RelayError as e:
            metrics.quote_verifications.labels(scope=scope, outcome=e.code).inc()
            logger.warning(f"❌ Quote rejected ({e.code}): {e.detail}")
            raise

        metrics.quote_verifications.labels(scope=scope, outcome="verified").inc()
        logger.info(f"✅ Quote verified: {scope} {quote.subject} @ {quote.timestamp_ms}")
        return VerifiedQuote(_ISSUE_TOKEN, quote, key_hex, replay_key)

    @staticmethod
    def _check_signature(quote: Quote, enclave_public_key: Union[str, bytes]) -> str:
        if isinstance(enclave_public_key, str):
            text = enclave_public_key[2:] if enclave_public_key.startswith("0x") else enclave_public_key
            try:
                key_bytes = bytes.fromhex(text)
            except ValueError:
                raise BadSignature("Enclave public key is not hex")
        else:
            key_bytes = enclave_public_key

        try:
            Ed25519PublicKey.from_public_bytes(key_bytes).verify(quote.signature, quote.signing_bytes())
        except InvalidSignature:
            raise BadSignature("Enclave signature does not cover this quote")
        except ValueError as e:
            raise BadSignature(f"Enclave public key or signature malformed: {e}")

        return key_bytes.hex()
