"""
PM Relay Canonical Ledger Cryptography (Sui)

Signature parsing and verification for the ledger the relay submits to.

SIGNATURE FORMAT (serialized, base64):
    flag (1 byte) || raw signature (64 bytes) || public key

    flag 0x00  Ed25519     pubkey 32 bytes
    flag 0x01  Secp256k1   pubkey 33 bytes (compressed)
    flag 0x02  Secp256r1   pubkey 33 bytes (compressed)

SIGNED MESSAGE:
    digest = blake2b256(intent || message_bcs)
    intent = [scope, version=0, app_id=0]

    scope 0: TransactionData   (message = raw tx bytes, already BCS)
    scope 3: PersonalMessage   (message = bcs(vector<u8>))

Ed25519 signs the 32-byte digest directly. The ECDSA schemes sign it with
SHA-256 as the inner hash and store signatures in compact (r || s) form.

ADDRESS:
    address = blake2b256(flag || pubkey)

TRANSACTION DIGEST:
    digest = base58(blake2b256("TransactionData::" || tx_bytes))

zkLogin and multisig signatures are NOT accepted by this module.
"""

import base64
import hashlib
from dataclasses import dataclass

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from relay_canonical.bcs import BcsWriter

# =============================================================================
# Constants
# =============================================================================

SCHEME_ED25519 = 0x00
SCHEME_SECP256K1 = 0x01
SCHEME_SECP256R1 = 0x02

_SCHEME_NAMES = {
    SCHEME_ED25519: "ed25519",
    SCHEME_SECP256K1: "secp256k1",
    SCHEME_SECP256R1: "secp256r1",
}

_PUBKEY_LENGTHS = {
    SCHEME_ED25519: 32,
    SCHEME_SECP256K1: 33,
    SCHEME_SECP256R1: 33,
}

SIGNATURE_LENGTH = 64

INTENT_SCOPE_TRANSACTION_DATA = 0
INTENT_SCOPE_PERSONAL_MESSAGE = 3

TRANSACTION_DIGEST_PREFIX = b"TransactionData::"


class SignatureFormatError(ValueError):
    """Raised when a serialized signature cannot be parsed."""
    pass


# =============================================================================
# Hashing helpers
# =============================================================================

def blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


def intent_digest(scope: int, message_bcs: bytes) -> bytes:
    """Digest that wallets actually sign: blake2b256([scope, 0, 0] || message)."""
    return blake2b256(bytes([scope, 0, 0]) + message_bcs)


def transaction_digest(tx_bytes: bytes) -> str:
    """Ledger-assigned transaction digest (base58). Identical bytes → identical digest."""
    return base58.b58encode(blake2b256(TRANSACTION_DIGEST_PREFIX + tx_bytes)).decode("ascii")


def public_key_to_address(scheme: int, public_key: bytes) -> str:
    """Derive the 0x-prefixed ledger address for a public key."""
    if scheme not in _PUBKEY_LENGTHS:
        raise SignatureFormatError(f"Unsupported signature scheme flag: {scheme:#04x}")
    return "0x" + blake2b256(bytes([scheme]) + public_key).hex()


# =============================================================================
# Serialized signatures
# =============================================================================

@dataclass(frozen=True)
class LedgerSignature:
    """A parsed serialized signature (scheme flag, raw signature, public key)."""

    scheme: int
    signature: bytes
    public_key: bytes

    @property
    def scheme_name(self) -> str:
        return _SCHEME_NAMES[self.scheme]

    @property
    def signer_address(self) -> str:
        return public_key_to_address(self.scheme, self.public_key)

    def serialize(self) -> str:
        return base64.b64encode(bytes([self.scheme]) + self.signature + self.public_key).decode("ascii")

    @classmethod
    def parse(cls, serialized: str) -> "LedgerSignature":
        """
        Parse a base64 serialized signature.

        Raises:
            SignatureFormatError: On bad base64, unknown flag, or wrong length
        """
        try:
            raw = base64.b64decode(serialized, validate=True)
        except (ValueError, TypeError) as e:
            raise SignatureFormatError(f"Signature is not valid base64: {e}")

        if not raw:
            raise SignatureFormatError("Signature is empty")

        scheme = raw[0]
        if scheme not in _PUBKEY_LENGTHS:
            raise SignatureFormatError(
                f"Unsupported signature scheme flag {scheme:#04x} "
                f"(only ed25519, secp256k1 and secp256r1 are accepted)"
            )

        expected = 1 + SIGNATURE_LENGTH + _PUBKEY_LENGTHS[scheme]
        if len(raw) != expected:
            raise SignatureFormatError(
                f"{_SCHEME_NAMES[scheme]} signature must be {expected} bytes, got {len(raw)}"
            )

        return cls(
            scheme=scheme,
            signature=raw[1:1 + SIGNATURE_LENGTH],
            public_key=raw[1 + SIGNATURE_LENGTH:],
        )

    def verify_digest(self, digest: bytes) -> bool:
        """Verify this signature over an intent digest. Never raises on a bad signature."""
        try:
            if self.scheme == SCHEME_ED25519:
                Ed25519PublicKey.from_public_bytes(self.public_key).verify(self.signature, digest)
                return True

            curve = ec.SECP256K1() if self.scheme == SCHEME_SECP256K1 else ec.SECP256R1()
            public_key = ec.EllipticCurvePublicKey.from_encoded_point(curve, self.public_key)

            # Compact (r || s) → DER, same conversion as COSE signatures in nitro.py
            r = int.from_bytes(self.signature[:32], "big")
            s = int.from_bytes(self.signature[32:], "big")
            public_key.verify(encode_dss_signature(r, s), digest, ec.ECDSA(hashes.SHA256()))
            return True
        except (InvalidSignature, ValueError):
            return False


def verify_transaction_signature(serialized: str, tx_bytes: bytes) -> LedgerSignature:
    """
    Verify a serialized signature over transaction bytes.

    Returns:
        The parsed signature (caller checks signer_address)

    Raises:
        SignatureFormatError: If the signature is malformed
        InvalidSignature: If it does not verify against tx_bytes
    """
    parsed = LedgerSignature.parse(serialized)
    if not parsed.verify_digest(intent_digest(INTENT_SCOPE_TRANSACTION_DATA, tx_bytes)):
        raise InvalidSignature(f"{parsed.scheme_name} signature does not cover these transaction bytes")
    return parsed


def verify_personal_message_signature(serialized: str, message: bytes) -> LedgerSignature:
    """Verify a serialized signature over a personal message (bcs vector<u8>)."""
    parsed = LedgerSignature.parse(serialized)
    message_bcs = BcsWriter().bytes(message).getvalue()
    if not parsed.verify_digest(intent_digest(INTENT_SCOPE_PERSONAL_MESSAGE, message_bcs)):
        raise InvalidSignature(f"{parsed.scheme_name} signature does not cover this message")
    return parsed
