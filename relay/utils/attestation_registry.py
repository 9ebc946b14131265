"""
Attestation Registry

Holds the record of which enclave BUILD is trusted (PCR0/1/2) and which
enclave SIGNING KEYS have been traced to that build.

    "Whose key is the enclave's"  ≠  "which enclave build is trusted"

An enclave signing key only counts as trusted if it was bound under the
CURRENT record: either by a Nitro attestation document whose PCRs match the
record and whose public_key is the signing key, or (debug mode only) by
pinning, mirroring register_enclave_debug on-chain.

ROTATION:
    rotate(new_record, authorization) replaces the current record. The
    authorization is a ledger personal-message signature, by a configured
    authority address, over:

        rotation_statement(enclave_config_id, version, pcr0, pcr1, pcr2)

    version MUST be current.version + 1. Any failure raises Unauthorized
    BEFORE any mutation. Prior records stay in history() for audit; key
    bindings made under an older record stop counting as trusted.

    Through the relay a rotation is two-phase: stage_rotation() keeps the
    authorized record pending under the digest of its enclave::update_pcrs
    transaction, and confirm_rotation() installs it once that digest is
    final on the ledger. A staged record that never executes is never
    trusted.

CONCURRENCY:
    Read-mostly snapshot semantics. Readers take the current record and
    binding table as immutable snapshots; rotate() and bind_*() swap them
    under an exclusive lock.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature

from relay_canonical.bcs import normalize_address
from relay_canonical.constants import TRUST_LEVEL_DEBUG, TRUST_LEVEL_FULL_NITRO
from relay_canonical.nitro import validate_pcr_hex, verify_enclave_attestation
from relay_canonical.quotes import rotation_statement
from relay_canonical.sui import SignatureFormatError, verify_personal_message_signature
from relay.utils import metrics
from relay.utils.errors import ParameterMismatch, Unauthorized, UntrustedEnclave

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# Records
# ============================================================

@dataclass(frozen=True)
class AttestationRecord:
    """One accepted set of enclave code measurements."""

    version: int
    pcr0: str
    pcr1: str
    pcr2: str
    created_at: datetime = field(default_factory=_utcnow)
    authorized_by: Optional[str] = None

    def __post_init__(self):
        try:
            object.__setattr__(self, "pcr0", validate_pcr_hex(self.pcr0, 0))
            object.__setattr__(self, "pcr1", validate_pcr_hex(self.pcr1, 1))
            object.__setattr__(self, "pcr2", validate_pcr_hex(self.pcr2, 2))
        except ValueError as e:
            raise ParameterMismatch(f"Invalid attestation record: {e}")

    def pcrs(self) -> Dict[int, str]:
        return {0: self.pcr0, 1: self.pcr1, 2: self.pcr2}

    def statement(self, enclave_config_id: str) -> bytes:
        """Bytes an authority signs to install this record."""
        return rotation_statement(
            enclave_config_id,
            self.version,
            bytes.fromhex(self.pcr0),
            bytes.fromhex(self.pcr1),
            bytes.fromhex(self.pcr2),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "pcr0": self.pcr0,
            "pcr1": self.pcr1,
            "pcr2": self.pcr2,
            "created_at": self.created_at.isoformat(),
            "authorized_by": self.authorized_by,
        }


@dataclass(frozen=True)
class EnclaveKeyBinding:
    """An enclave signing key traced to a specific attestation record."""

    public_key: str  # hex, ed25519
    record_version: int
    trust_level: str
    bound_at: datetime = field(default_factory=_utcnow)


# ============================================================
# Registry
# ============================================================

class AttestationRegistry:
    """Current attestation record, its history, and the enclave keys bound to it."""

    def __init__(
        self,
        initial: AttestationRecord,
        enclave_config_id: str,
        authorities: Iterable[str] = (),
    ):
        self.enclave_config_id = normalize_address(enclave_config_id)
        self._authorities = frozenset(normalize_address(a) for a in authorities)
        self._lock = threading.Lock()
        # Immutable snapshots, swapped under _lock
        self._history: Tuple[AttestationRecord, ...] = (initial,)
        self._bindings: Mapping[str, EnclaveKeyBinding] = {}
        self._pending: Mapping[str, Tuple[AttestationRecord, str]] = {}

    # ---- reads (lock-free snapshots) -----------------------------------

    def current(self) -> AttestationRecord:
        return self._history[-1]

    def history(self) -> List[AttestationRecord]:
        return list(self._history)

    def is_trusted(self, public_key: Union[str, bytes]) -> bool:
        """True only if the key was bound under the current record."""
        key_hex = _key_hex(public_key)
        binding = self._bindings.get(key_hex)
        return binding is not None and binding.record_version == self.current().version

    def binding_for(self, public_key: Union[str, bytes]) -> Optional[EnclaveKeyBinding]:
        return self._bindings.get(_key_hex(public_key))

    def trusted_keys(self) -> List[EnclaveKeyBinding]:
        version = self.current().version
        return [b for b in self._bindings.values() if b.record_version == version]

    # ---- rotation --------------------------------------------------------

    def authorize_rotation(self, new_record: AttestationRecord, authorization: str) -> str:
        """
        Check a rotation authorization without mutating anything.

        Returns:
            The authority address that signed

        Raises:
            Unauthorized: wrong version, bad signature, or signer not an authority
        """
        current = self.current()
        if new_record.version != current.version + 1:
            raise Unauthorized(
                f"Rotation must install version {current.version + 1}, got {new_record.version}"
            )

        try:
            signature = verify_personal_message_signature(
                authorization, new_record.statement(self.enclave_config_id)
            )
        except (SignatureFormatError, InvalidSignature) as e:
            raise Unauthorized(f"Rotation authorization does not verify: {e}")

        signer = signature.signer_address
        if signer not in self._authorities:
            raise Unauthorized(f"{signer} is not an attestation authority")
        return signer

    def rotate(self, new_record: AttestationRecord, authorization: str) -> AttestationRecord:
        """
        Replace the current record. Verification happens BEFORE any mutation.

        Returns:
            The installed record (authorized_by filled in)

        Raises:
            Unauthorized: see authorize_rotation
        """
        with self._lock:
            try:
                signer = self.authorize_rotation(new_record, authorization)
            except Unauthorized:
                metrics.attestation_rotations.labels(outcome="unauthorized").inc()
                logger.warning(f"🚫 Attestation rotation to v{new_record.version} refused")
                raise

            installed = replace(new_record, authorized_by=signer)
            self._history = self._history + (installed,)

        metrics.attestation_rotations.labels(outcome="rotated").inc()
        logger.info(
            f"🔄 Attestation record rotated to v{installed.version} by {signer[:10]}... "
            f"(PCR0 {installed.pcr0[:16]}...)"
        )
        return installed

    def stage_rotation(self, new_record: AttestationRecord, authorization: str, digest: str) -> AttestationRecord:
        """
        Authorize a rotation and hold it until its update_pcrs transaction is final.

        Raises:
            Unauthorized: see authorize_rotation
        """
        signer = self.authorize_rotation(new_record, authorization)
        staged = replace(new_record, authorized_by=signer)
        with self._lock:
            updated = dict(self._pending)
            updated[digest] = (staged, authorization)
            self._pending = updated

        metrics.attestation_rotations.labels(outcome="staged").inc()
        logger.info(f"⏳ Attestation v{staged.version} staged until {digest} is final")
        return staged

    def confirm_rotation(self, digest: str) -> Optional[AttestationRecord]:
        """
        Install the record staged under ``digest``. Returns None if nothing
        was staged for it.

        Raises:
            Unauthorized: the staged record no longer follows current()
        """
        with self._lock:
            entry = self._pending.get(digest)
            if entry is None:
                return None
            self._pending = {d: e for d, e in self._pending.items() if d != digest}

        record, authorization = entry
        return self.rotate(record, authorization)

    def pending_rotations(self) -> Dict[str, AttestationRecord]:
        return {digest: record for digest, (record, _) in self._pending.items()}

    def load_record(self, record: AttestationRecord) -> None:
        """
        Replace history with a record read from the ledger.

        Used at startup, and when a staged rotation went final on-chain but no
        longer follows current(). The on-chain EnclaveConfig is the source of
        truth, and a record already on-chain was authorized there.
        """
        with self._lock:
            self._history = (record,)
            self._bindings = {}
            self._pending = {}
        logger.info(f"📥 Attestation record v{record.version} loaded from ledger")

    # ---- key binding -----------------------------------------------------

    def bind_enclave_key(
        self,
        attestation: Union[str, bytes],
        claimed_public_key: Optional[str] = None,
    ) -> EnclaveKeyBinding:
        """
        Verify a Nitro attestation document against the current record and
        bind the signing key it carries.

        Raises:
            UntrustedEnclave: If any verification step fails
        """
        record = self.current()
        ok, result = verify_enclave_attestation(attestation, record.pcrs(), claimed_public_key)
        if not ok:
            logger.warning(f"❌ Enclave attestation rejected: {result.get('error')}")
            raise UntrustedEnclave(
                f"Enclave attestation rejected: {result.get('error')}",
                extra={"record_version": record.version},
            )

        binding = EnclaveKeyBinding(
            public_key=_key_hex(result["public_key"]),
            record_version=record.version,
            trust_level=TRUST_LEVEL_FULL_NITRO,
        )
        self._store_binding(binding)
        logger.info(f"✅ Enclave key {binding.public_key[:16]}... bound to attestation v{record.version}")
        return binding

    def bind_debug_key(self, public_key: Union[str, bytes]) -> EnclaveKeyBinding:
        """Pin a key without an attestation document. Debug enclaves only."""
        record = self.current()
        binding = EnclaveKeyBinding(
            public_key=_key_hex(public_key),
            record_version=record.version,
            trust_level=TRUST_LEVEL_DEBUG,
        )
        self._store_binding(binding)
        logger.warning(
            f"⚠️  DEBUG MODE: enclave key {binding.public_key[:16]}... trusted WITHOUT attestation"
        )
        return binding

    def _store_binding(self, binding: EnclaveKeyBinding) -> None:
        with self._lock:
            if binding.record_version != self.current().version:
                raise UntrustedEnclave("Attestation record rotated while binding; retry")
            updated = dict(self._bindings)
            updated[binding.public_key] = binding
            self._bindings = updated


def _key_hex(public_key: Union[str, bytes]) -> str:
    if isinstance(public_key, bytes):
        return public_key.hex()
    text = public_key.lower()
    return text[2:] if text.startswith("0x") else text


def record_from_enclave_config(fields: Mapping[str, Any]) -> AttestationRecord:
    """
    Build an AttestationRecord from EnclaveConfig Move object fields.

    Pcrs is a tuple struct, so its fields show up as pos0/pos1/pos2, each a
    vector<u8> rendered as a list of ints.
    """
    pcrs = fields["pcrs"]
    if isinstance(pcrs, Mapping) and "fields" in pcrs:
        pcrs = pcrs["fields"]

    def _pcr(value: Any) -> str:
        if isinstance(value, str):
            return value
        return bytes(value).hex()

    return AttestationRecord(
        version=int(fields.get("version", 0)),
        pcr0=_pcr(pcrs["pos0"]),
        pcr1=_pcr(pcrs["pos1"]),
        pcr2=_pcr(pcrs["pos2"]),
        authorized_by="ledger",
    )
