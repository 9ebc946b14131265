"""
CRITICAL TEST: Attestation Record Rotation

An unauthorized rotation leaves current() untouched. An authorized one
installs version N+1, keeps history, and drops key bindings made under
the old record. A staged rotation changes nothing until it is confirmed.
"""

import pytest

from relay.utils.attestation_registry import AttestationRecord, record_from_enclave_config
from relay.utils.errors import ParameterMismatch, Unauthorized, UntrustedEnclave
from tests.fakes import SuiKeypair

NEW_PCRS = dict(pcr0="b0" * 48, pcr1="b1" * 48, pcr2="b2" * 48)


def signed_rotation(registry, signer, version=2):
    record = AttestationRecord(version=version, **NEW_PCRS)
    return record, signer.sign_personal_message(record.statement(registry.enclave_config_id))


def test_authorized_rotation_installs_next_version(registry, authority, enclave_pk, initial_record):
    record, authorization = signed_rotation(registry, authority)

    installed = registry.rotate(record, authorization)

    assert registry.current() == installed
    assert installed.version == 2
    assert installed.authorized_by == authority.address
    assert [r.version for r in registry.history()] == [1, 2]
    assert registry.history()[0] == initial_record
    assert not registry.is_trusted(enclave_pk), "❌ FAIL: keys bound under v1 must not survive rotation"


def test_non_authority_signature_is_unauthorized(registry, initial_record):
    record, authorization = signed_rotation(registry, SuiKeypair())
    with pytest.raises(Unauthorized):
        registry.rotate(record, authorization)
    assert registry.current() == initial_record
    assert len(registry.history()) == 1


@pytest.mark.parametrize("version", [1, 3])
def test_version_must_be_current_plus_one(registry, authority, initial_record, version):
    record, authorization = signed_rotation(registry, authority, version=version)
    with pytest.raises(Unauthorized):
        registry.rotate(record, authorization)
    assert registry.current() == initial_record


def test_authorization_for_other_pcrs_is_unauthorized(registry, authority, initial_record):
    _, authorization = signed_rotation(registry, authority)
    other = AttestationRecord(version=2, pcr0="c0" * 48, pcr1="c1" * 48, pcr2="c2" * 48)
    with pytest.raises(Unauthorized):
        registry.rotate(other, authorization)
    assert registry.current() == initial_record


def test_garbage_authorization_is_unauthorized(registry):
    record = AttestationRecord(version=2, **NEW_PCRS)
    with pytest.raises(Unauthorized):
        registry.rotate(record, "not-a-signature")


def test_authorize_rotation_does_not_mutate(registry, authority, initial_record):
    record, authorization = signed_rotation(registry, authority)
    assert registry.authorize_rotation(record, authorization) == authority.address
    assert registry.current() == initial_record


def test_staged_rotation_waits_for_confirmation(registry, authority, enclave_pk, initial_record):
    record, authorization = signed_rotation(registry, authority)

    staged = registry.stage_rotation(record, authorization, "digest-1")

    assert staged.authorized_by == authority.address
    assert registry.pending_rotations() == {"digest-1": staged}
    assert registry.current() == initial_record, "❌ FAIL: staging must not install the record"
    assert registry.is_trusted(enclave_pk)

    installed = registry.confirm_rotation("digest-1")

    assert installed == staged
    assert registry.current() == staged
    assert registry.pending_rotations() == {}
    assert not registry.is_trusted(enclave_pk)


def test_confirming_unknown_digest_changes_nothing(registry, authority, initial_record):
    record, authorization = signed_rotation(registry, authority)
    registry.stage_rotation(record, authorization, "digest-1")

    assert registry.confirm_rotation("digest-2") is None
    assert registry.current() == initial_record
    assert "digest-1" in registry.pending_rotations()


def test_unauthorized_rotation_is_not_staged(registry):
    record, authorization = signed_rotation(registry, SuiKeypair())
    with pytest.raises(Unauthorized):
        registry.stage_rotation(record, authorization, "digest-1")
    assert registry.pending_rotations() == {}


def test_second_confirmation_of_same_version_is_unauthorized(registry, authority):
    """Two staged v2 records: only the first to become final is installed."""
    record, authorization = signed_rotation(registry, authority)
    registry.stage_rotation(record, authorization, "digest-1")
    registry.stage_rotation(record, authorization, "digest-2")

    registry.confirm_rotation("digest-1")
    with pytest.raises(Unauthorized):
        registry.confirm_rotation("digest-2")
    assert registry.current().version == 2
    assert registry.pending_rotations() == {}


def test_loading_a_record_drops_staged_rotations(registry, authority):
    record, authorization = signed_rotation(registry, authority)
    registry.stage_rotation(record, authorization, "digest-1")

    registry.load_record(AttestationRecord(version=5, **NEW_PCRS))

    assert registry.pending_rotations() == {}
    assert registry.confirm_rotation("digest-1") is None


def test_invalid_pcr_is_parameter_mismatch():
    with pytest.raises(ParameterMismatch):
        AttestationRecord(version=1, pcr0="abc", pcr1="b1" * 48, pcr2="b2" * 48)


def test_bad_attestation_document_is_untrusted(registry):
    with pytest.raises(UntrustedEnclave):
        registry.bind_enclave_key("deadbeef", "00" * 32)


def test_debug_binding_is_labelled(registry, enclave_pk):
    binding = registry.binding_for(enclave_pk)
    assert binding.trust_level == "debug_pinned_key"
    assert binding.record_version == registry.current().version


def test_record_from_enclave_config_fields():
    fields = {
        "id": {"id": "0x21"},
        "name": "pm enclave",
        "pcrs": {"type": "Pcrs", "fields": {
            "pos0": list(bytes.fromhex("d0" * 48)),
            "pos1": list(bytes.fromhex("d1" * 48)),
            "pos2": list(bytes.fromhex("d2" * 48)),
        }},
        "version": "4",
    }
    record = record_from_enclave_config(fields)
    assert record.version == 4
    assert record.pcr0 == "d0" * 48
    assert record.pcr2 == "d2" * 48
    assert record.authorized_by == "ledger"
