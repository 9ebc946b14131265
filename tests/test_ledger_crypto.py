"""
Ledger signature helpers and Nitro attestation fail-closed behaviour.
"""

import base64

import base58
import cbor2
import pytest
from cryptography.exceptions import InvalidSignature

from relay_canonical.nitro import validate_pcr_hex, verify_enclave_attestation
from relay_canonical.sui import (
    SCHEME_ED25519,
    LedgerSignature,
    SignatureFormatError,
    blake2b256,
    transaction_digest,
    verify_personal_message_signature,
    verify_transaction_signature,
)
from tests.fakes import SuiKeypair

PCRS = {0: "a0" * 48, 1: "a1" * 48, 2: "a2" * 48}


def test_address_is_blake2b_of_flag_and_pubkey():
    account = SuiKeypair()
    assert account.address == "0x" + blake2b256(bytes([SCHEME_ED25519]) + account.public_key).hex()


def test_transaction_signature_verifies_and_names_signer():
    account = SuiKeypair()
    tx_bytes = b"\x00some transaction bytes"
    parsed = verify_transaction_signature(account.sign_transaction(tx_bytes), tx_bytes)
    assert parsed.signer_address == account.address
    assert parsed.scheme_name == "ed25519"


def test_one_byte_change_breaks_transaction_signature():
    account = SuiKeypair()
    tx_bytes = b"\x00some transaction bytes"
    signature = account.sign_transaction(tx_bytes)
    with pytest.raises(InvalidSignature):
        verify_transaction_signature(signature, b"\x01" + tx_bytes[1:])


def test_personal_message_signature_is_not_a_transaction_signature():
    account = SuiKeypair()
    message = b"rotate"
    signature = account.sign_personal_message(message)
    assert verify_personal_message_signature(signature, message).signer_address == account.address
    with pytest.raises(InvalidSignature):
        verify_transaction_signature(signature, message)


@pytest.mark.parametrize("raw", [
    b"",
    bytes([0x05]) + bytes(96),      # unknown flag (zkLogin / multisig are refused)
    bytes([SCHEME_ED25519]) + bytes(64),  # missing public key
])
def test_malformed_signatures_are_format_errors(raw):
    with pytest.raises(SignatureFormatError):
        LedgerSignature.parse(base64.b64encode(raw).decode())


def test_non_base64_signature_is_format_error():
    with pytest.raises(SignatureFormatError):
        LedgerSignature.parse("not base64!!")


def test_transaction_digest_is_base58_blake2b():
    digest = transaction_digest(b"bytes")
    assert len(base58.b58decode(digest)) == 32
    assert digest == transaction_digest(b"bytes")
    assert digest != transaction_digest(b"bytez")


# ============================================================
# Nitro attestation (fail closed)
# ============================================================

def test_garbage_attestation_is_rejected_not_raised():
    ok, result = verify_enclave_attestation("not an attestation", PCRS)
    assert ok is False
    assert result["error"]


def test_attestation_without_certificate_is_rejected():
    document = cbor2.dumps({"module_id": "i-test", "pcrs": {}, "public_key": b"\x01" * 32})
    cose = cbor2.dumps(cbor2.CBORTag(18, [b"", {}, document, b"\x00" * 96]))
    ok, result = verify_enclave_attestation(cose.hex(), PCRS)
    assert ok is False
    assert "No certificate" in result["error"]
    assert result["module_id"] == "i-test"


def test_validate_pcr_hex_normalizes_and_checks_length():
    assert validate_pcr_hex("0x" + "AB" * 48, 0) == "ab" * 48
    with pytest.raises(ValueError):
        validate_pcr_hex("ab" * 32, 1)
