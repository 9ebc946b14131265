"""
PM Relay Canonical AWS Nitro Attestation Verification

Decides whether an enclave signing key can be traced to an attested build.

TRUST MODEL:
- PCR0/PCR1/PCR2 in the attestation body are the ROOT OF TRUST
- The expected PCRs come from the relay's CURRENT attestation record
- The enclave's signing key is the attestation document's ``public_key``
  field; it is only trusted AFTER the PCRs match
- Anything the enclave reports about itself elsewhere (health_check, logs)
  is informational only

VERIFICATION ORDER (MANDATORY):
1. Parse COSE_Sign1 structure (CBOR-encoded)
2. Verify certificate chain to Amazon Nitro root (PINNED)
3. Verify COSE signature using public key from leaf certificate
4. Compare PCR0, PCR1, PCR2 against the expected record  ← ROOT OF TRUST
5. ONLY THEN read public_key and compare with the claimed signing key

FAIL-CLOSED: ``verify_enclave_attestation`` returns (False, {...}) on ANY failure.
"""

import base64
import binascii
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import cbor2
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from cryptography.hazmat.primitives.serialization import Encoding

from relay_canonical.constants import TRUST_LEVEL_FULL_NITRO


class AttestationError(Exception):
    """Raised when attestation verification fails."""
    pass


# =============================================================================
# PINNED VALUES
# =============================================================================

# Amazon Nitro root certificate (DER format)
# Source: https://aws-nitro-enclaves.amazonaws.com/AWS_NitroEnclaves_Root-G1.zip
# PINNED (not fetched at runtime). Valid 2019-10-28 to 2049-10-28.
NITRO_ROOT_CERT_DER: bytes = bytes.fromhex(
    "3082021130820196a003020102021100f93175681b90afe11d46ccb4e4e7f856"
    "300a06082a8648ce3d0403033049310b3009060355040613025553310f300d06"
    "0355040a0c06416d617a6f6e310c300a060355040b0c03415753311b30190603"
    "5504030c126177732e6e6974726f2d656e636c61766573301e170d3139313032"
    "383133323830355a170d3439313032383134323830355a3049310b3009060355"
    "040613025553310f300d060355040a0c06416d617a6f6e310c300a060355040b"
    "0c03415753311b301906035504030c126177732e6e6974726f2d656e636c6176"
    "65733076301006072a8648ce3d020106052b8104002203620004fc0254eba608"
    "c1f36870e29ada90be46383292736e894bfff672d989444b5051e534a4b1f6db"
    "e3c0bc581a32b7b176070ede12d69a3fea211b66e752cf7dd1dd095f6f1370f4"
    "170843d9dc100121e4cf63012809664487c9796284304dc53ff4a3423040300f"
    "0603551d130101ff040530030101ff301d0603551d0e041604149025b50dd905"
    "47e796c396fa729dcf99a9df4b96300e0603551d0f0101ff040403020186300a"
    "06082a8648ce3d0403030369003066023100a37f2f91a1c9bd5ee7b8627c1698"
    "d255038e1f0343f95b63a9628c3d39809545a11ebcbf2e3b55d8aeee71b4c3d6"
    "adf3023100a2f39b1605b27028a5dd4ba069b5016e65b4fbde8fe0061d6a5319"
    "7f9cdaf5d943bc61fc2beb03cb6fee8d2302f3dff6"
)

# PCRs that must match the attestation record (SHA-384, 96 hex chars each)
CHECKED_PCR_INDEXES = (0, 1, 2)
PCR_HEX_LENGTH = 96


def decode_attestation_blob(attestation: Union[str, bytes]) -> bytes:
    """
    Accept the attestation document as raw bytes, hex (what the enclave's
    get_attestation endpoint returns) or base64.
    """
    if isinstance(attestation, bytes):
        return attestation
    text = attestation.strip()
    try:
        return bytes.fromhex(text[2:] if text.startswith("0x") else text)
    except ValueError:
        pass
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AttestationError(f"Attestation is neither hex nor base64: {e}")


def _parse_cose_sign1(att_bytes: bytes) -> Tuple[bytes, Any, bytes, bytes]:
    """COSE_Sign1 = [protected, unprotected, payload, signature]"""
    try:
        cose_sign1 = cbor2.loads(att_bytes)
    except Exception as e:
        raise AttestationError(f"Failed to parse COSE_Sign1: {e}")

    # Handle CBOR tagged value (tag 18 = COSE_Sign1)
    if hasattr(cose_sign1, "value"):
        cose_array = cose_sign1.value
    elif isinstance(cose_sign1, list):
        cose_array = cose_sign1
    else:
        raise AttestationError(f"Unexpected COSE structure type: {type(cose_sign1)}")

    if len(cose_array) != 4:
        raise AttestationError(f"Invalid COSE_Sign1: expected 4 elements, got {len(cose_array)}")

    protected, unprotected, payload, signature = cose_array
    return protected, unprotected, payload, signature


# =============================================================================
# FULL NITRO ATTESTATION VERIFICATION
# =============================================================================

def verify_enclave_attestation(
    attestation: Union[str, bytes],
    expected_pcrs: Mapping[int, str],
    expected_public_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[bool, Dict[str, Any]]:
    """
    Full AWS Nitro attestation verification against an attestation record.

    Args:
        attestation: Attestation document (bytes, hex or base64)
        expected_pcrs: {0: pcr0_hex, 1: pcr1_hex, 2: pcr2_hex} from the current record
        expected_public_key: Signing key hex the enclave claims (health_check).
                             If given, it MUST equal the document's public_key.
        now: Override for certificate validity checks

    Returns:
        Tuple of (success, extracted_data)
        - extracted_data["public_key"] is the attested signing key (hex)
        - extracted_data["error"] is set on failure
    """
    result: Dict[str, Any] = {
        "trust_level": TRUST_LEVEL_FULL_NITRO,
        "verification_steps": [],
    }

    try:
        # =================================================================
        # Step 1: Decode + parse COSE_Sign1
        # =================================================================
        att_bytes = decode_attestation_blob(attestation)
        protected, _unprotected, payload, signature = _parse_cose_sign1(att_bytes)
        result["verification_steps"].append("✓ COSE_Sign1 structure parsed")

        try:
            att_doc = cbor2.loads(payload)
        except Exception as e:
            raise AttestationError(f"Failed to parse attestation payload: {e}")
        result["module_id"] = att_doc.get("module_id")
        result["timestamp"] = att_doc.get("timestamp")
        result["verification_steps"].append("✓ Attestation document parsed")

        # =================================================================
        # Step 2: Certificate chain to pinned root
        # =================================================================
        cert_der = att_doc.get("certificate")
        cabundle = att_doc.get("cabundle", [])
        if not cert_der:
            raise AttestationError("No certificate found in attestation")

        try:
            leaf_cert = x509.load_der_x509_certificate(cert_der, default_backend())
        except Exception as e:
            raise AttestationError(f"Leaf certificate is not valid DER: {e}")

        current_time = now or datetime.now(timezone.utc)
        if current_time < leaf_cert.not_valid_before_utc:
            raise AttestationError(f"Certificate not yet valid (starts {leaf_cert.not_valid_before_utc})")
        if current_time > leaf_cert.not_valid_after_utc:
            raise AttestationError(f"Certificate expired ({leaf_cert.not_valid_after_utc})")

        _verify_certificate_chain(leaf_cert, cabundle, NITRO_ROOT_CERT_DER)
        result["verification_steps"].append("✓ Certificate chain verified to Amazon Nitro root")

        # =================================================================
        # Step 3: COSE signature (ECDSA P-384 / SHA-384, raw r || s)
        # =================================================================
        sig_structure = cbor2.dumps(["Signature1", protected, b"", payload])
        half = len(signature) // 2
        der_signature = encode_dss_signature(
            int.from_bytes(signature[:half], "big"),
            int.from_bytes(signature[half:], "big"),
        )
        try:
            leaf_cert.public_key().verify(der_signature, sig_structure, ec.ECDSA(hashes.SHA384()))
        except InvalidSignature:
            raise AttestationError("COSE signature verification failed - attestation may be forged")
        result["verification_steps"].append("✓ COSE signature verified")

        # =================================================================
        # Step 4: PCRs (ROOT OF TRUST)
        # =================================================================
        pcrs = att_doc.get("pcrs", {})
        for index in CHECKED_PCR_INDEXES:
            raw = pcrs.get(index)
            if raw is None:
                raise AttestationError(f"PCR{index} not found in attestation")
            actual = raw.hex() if isinstance(raw, bytes) else str(raw)
            expected = expected_pcrs.get(index, "").lower()
            result[f"pcr{index}"] = actual
            if actual != expected:
                raise AttestationError(
                    f"PCR{index} mismatch (ROOT OF TRUST FAILURE)!\n"
                    f"  Got:      {actual}\n"
                    f"  Expected: {expected[:32]}...\n"
                    f"  This enclave is running code outside the current attestation record!"
                )
        result["verification_steps"].append("✓ PCR0/1/2 match current attestation record")

        # =================================================================
        # Step 5: Signing key binding
        # =================================================================
        public_key_raw = att_doc.get("public_key")
        if not public_key_raw:
            raise AttestationError("Attestation carries no public_key - cannot bind a signing key")
        public_key_hex = public_key_raw.hex() if isinstance(public_key_raw, bytes) else str(public_key_raw)
        result["public_key"] = public_key_hex

        if expected_public_key is not None and public_key_hex != expected_public_key.lower():
            raise AttestationError(
                f"Enclave pubkey mismatch!\n"
                f"  Attested: {public_key_hex}\n"
                f"  Claimed:  {expected_public_key}"
            )
        result["verification_steps"].append("✓ Signing key bound to attested build")

        result["verified"] = True
        result["verification_steps"].append("✅ ALL VERIFICATION STEPS PASSED")
        return True, result

    except AttestationError as e:
        return False, {
            "error": str(e),
            "verified": False,
            **{k: v for k, v in result.items() if k != "verified"},
        }
    except Exception as e:
        return False, {
            "error": f"Unexpected error: {e}",
            "verified": False,
        }


def _verify_certificate_chain(leaf_cert, cabundle: List[bytes], root_cert_der: bytes) -> bool:
    """
    Verify certificate chain from leaf to pinned Amazon Nitro root.

    The cabundle is ordered from ROOT to LEAF:
    cabundle[0] = root, ... cabundle[-1] = instance CA (signs the leaf).

    Raises:
        AttestationError: If any link fails
    """
    try:
        ca_certs = [x509.load_der_x509_certificate(ca_der, default_backend()) for ca_der in cabundle]
    except Exception as e:
        raise AttestationError(f"CA bundle contains an invalid certificate: {e}")

    if not ca_certs:
        raise AttestationError("Empty CA bundle - cannot verify chain")

    bundle_root = ca_certs[0]
    if bundle_root.public_bytes(Encoding.DER) != root_cert_der:
        raise AttestationError(
            "Bundle root does not match pinned Amazon Nitro root certificate. "
            f"Bundle root subject: {bundle_root.subject}"
        )

    _verify_cert_signature(bundle_root, bundle_root, 0, "root self-signature")
    for i in range(1, len(ca_certs)):
        _verify_cert_signature(ca_certs[i], ca_certs[i - 1], i, f"CA[{i}] signed by CA[{i-1}]")
    _verify_cert_signature(leaf_cert, ca_certs[-1], len(ca_certs), f"leaf signed by CA[{len(ca_certs)-1}]")
    return True


def _verify_cert_signature(cert, issuer_cert, position: int, description: str = "") -> None:
    """
    Verify that cert is signed by issuer_cert.

    Nitro certificates carry per-instance CNs, so only the signature is checked.
    """
    issuer_public_key = issuer_cert.public_key()
    if not isinstance(issuer_public_key, ec.EllipticCurvePublicKey):
        raise AttestationError(f"Unexpected key type at position {position}: {type(issuer_public_key)}")
    try:
        issuer_public_key.verify(
            cert.signature,
            cert.tbs_certificate_bytes,
            ec.ECDSA(cert.signature_hash_algorithm),
        )
    except InvalidSignature:
        desc = f" ({description})" if description else ""
        raise AttestationError(
            f"Certificate signature verification failed at position {position}{desc}. "
            f"Cert subject: {cert.subject}"
        )


def validate_pcr_hex(value: str, index: int) -> str:
    """Normalize a PCR value and check it is a SHA-384 hex digest."""
    text = value.lower()
    if text.startswith("0x"):
        text = text[2:]
    if len(text) != PCR_HEX_LENGTH:
        raise ValueError(f"PCR{index} must be {PCR_HEX_LENGTH} hex characters (SHA-384), got {len(text)}")
    bytes.fromhex(text)
    return text
