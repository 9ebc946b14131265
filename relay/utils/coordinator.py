"""
Dual Signature Coordinator

Merges the sponsor's and the sender's signatures over ONE set of
transaction bytes.

Both signatures are verified independently against the exact bytes
submitted. Changing a single byte after either party signed makes that
signature fail, and merge() raises SignatureMismatch.

Checks (all SignatureMismatch):
- the bytes decode as TransactionData::V1
- if the built payload is known: kind bytes and sender are unchanged
- every Move call targets an allowed package (sponsor blast radius)
- sender signature verifies; its signer is the transaction sender
- sponsor signature verifies; its signer is the gas owner
  (and the configured sponsor address, if set)

BUNDLE ORDER (fixed):
    [sender_signature, sponsor_signature]
"""

import base64
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from cryptography.exceptions import InvalidSignature

from relay_canonical.bcs import BcsError, normalize_address
from relay_canonical.sui import SignatureFormatError, transaction_digest, verify_transaction_signature
from relay_canonical.transactions import DecodedTransaction, decode_transaction_data
from relay.config import SPONSOR_ADDRESS
from relay.utils.errors import SignatureMismatch
from relay.utils.tx_builder import TransactionPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureBundle:
    """Dual-signed transaction ready for submission."""

    tx_bytes: bytes
    signatures: Tuple[str, str]  # (sender, sponsor)
    digest: str
    sender: str
    sponsor: str

    @property
    def tx_bytes_b64(self) -> str:
        return base64.b64encode(self.tx_bytes).decode("ascii")


class DualSignatureCoordinator:
    """Verifies and orders the two signatures over identical bytes."""

    def __init__(self, allowed_packages: Iterable[str], sponsor_address: Optional[str] = SPONSOR_ADDRESS):
        self.allowed_packages = frozenset(normalize_address(p) for p in allowed_packages)
        self.sponsor_address = normalize_address(sponsor_address) if sponsor_address else None

    def merge(
        self,
        tx_bytes: bytes,
        sponsor_signature: str,
        sender_signature: str,
        expected: Optional[TransactionPayload] = None,
    ) -> SignatureBundle:
        try:
            decoded = decode_transaction_data(tx_bytes)
        except BcsError as e:
            raise SignatureMismatch(f"Transaction bytes do not decode: {e}")

        if expected is not None:
            if decoded.kind_bytes != expected.kind_bytes:
                raise SignatureMismatch("Transaction kind differs from the built payload")
            if decoded.sender != expected.sender:
                raise SignatureMismatch(f"Transaction sender {decoded.sender} differs from the built payload")

        self._check_scope(decoded)

        sender = self._verify(sender_signature, tx_bytes, "sender")
        if sender != decoded.sender:
            raise SignatureMismatch(f"Sender signature is from {sender}, transaction sender is {decoded.sender}")

        sponsor = self._verify(sponsor_signature, tx_bytes, "sponsor")
        if sponsor != decoded.gas.owner:
            raise SignatureMismatch(f"Sponsor signature is from {sponsor}, gas owner is {decoded.gas.owner}")
        if self.sponsor_address and sponsor != self.sponsor_address:
            raise SignatureMismatch(f"Gas owner {sponsor} is not the configured sponsor")

        digest = transaction_digest(tx_bytes)
        logger.info(f"✍️  Merged signatures for {digest} (sender {sender[:10]}..., sponsor {sponsor[:10]}...)")
        return SignatureBundle(
            tx_bytes=tx_bytes,
            signatures=(sender_signature, sponsor_signature),
            digest=digest,
            sender=sender,
            sponsor=sponsor,
        )

    def _check_scope(self, decoded: DecodedTransaction) -> None:
        for command in decoded.commands:
            if command.name not in ("MoveCall", "SplitCoins", "MergeCoins"):
                raise SignatureMismatch(f"{command.name} commands are not sponsored by this relay")
        for target in decoded.move_targets:
            package = target.split("::", 1)[0]
            if normalize_address(package) not in self.allowed_packages:
                raise SignatureMismatch(f"Move call {target} is outside the sponsored packages")

    @staticmethod
    def _verify(serialized: str, tx_bytes: bytes, role: str) -> str:
        try:
            return verify_transaction_signature(serialized, tx_bytes).signer_address
        except SignatureFormatError as e:
            raise SignatureMismatch(f"{role.capitalize()} signature is malformed: {e}")
        except InvalidSignature:
            raise SignatureMismatch(f"{role.capitalize()} signature does not cover these transaction bytes")
