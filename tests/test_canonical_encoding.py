"""
CRITICAL TEST: Canonical Byte Encodings

Every signature in the system covers BCS bytes produced here. If any of
these fail, the enclave, the ledger and the relay disagree about what was
signed.
"""

import pytest

from relay_canonical.bcs import BcsError, BcsReader, BcsWriter, encode_uleb128, normalize_address
from relay_canonical.constants import IntentScope
from relay_canonical.quotes import Quote, QuoteFormatError, rotation_statement
from relay_canonical.transactions import (
    GasData,
    ObjectRef,
    ProgrammableTransactionBuilder,
    SharedObject,
    decode_transaction_data,
    encode_transaction_data,
)
from tests.fakes import NOW_MS, object_digest, object_id


# ============================================================
# BCS primitives
# ============================================================

@pytest.mark.parametrize("value,expected", [
    (0, "00"),
    (1, "01"),
    (127, "7f"),
    (128, "8001"),
    (300, "ac02"),
    (16384, "808001"),
])
def test_uleb128_known_vectors(value, expected):
    assert encode_uleb128(value).hex() == expected


def test_integers_are_little_endian_fixed_width():
    data = BcsWriter().u8(1).u16(2).u32(3).u64(4).getvalue()
    assert data.hex() == "01" + "0200" + "03000000" + "0400000000000000"


def test_u64_range_is_enforced():
    with pytest.raises(BcsError):
        BcsWriter().u64(1 << 64)
    with pytest.raises(BcsError):
        BcsWriter().u64(-1)
    with pytest.raises(BcsError):
        BcsWriter().u64(True)


def test_short_addresses_are_left_padded():
    assert normalize_address("0x2") == "0x" + "0" * 63 + "2"
    assert BcsWriter().address("0x2").getvalue() == bytes(31) + b"\x02"


def test_bad_addresses_raise():
    with pytest.raises(BcsError):
        normalize_address("0x" + "zz" * 32)
    with pytest.raises(BcsError):
        normalize_address("0x" + "00" * 33)


def test_reader_detects_truncation():
    reader = BcsReader(b"\x05abc")
    with pytest.raises(BcsError):
        reader.bytes()


# ============================================================
# Quotes
# ============================================================

def _bet_body(**overrides):
    data = {
        "user": "0x1",
        "maker": "0x2",
        "pool_id": 7,
        "outcome": 1,
        "current_probs": [5000, 5000],
        "new_probs": [3000, 7000],
        "shares": 120,
        "debit_amount": 50,
        "credit_amount": 50,
    }
    data.update(overrides)
    return {"response": {"intent": 0, "timestamp_ms": NOW_MS, "data": data}, "signature": "ab" * 64}


def test_quote_signing_bytes_layout():
    """intent u8 || timestamp u64 LE || data fields in signed order"""
    quote = Quote.from_enclave_response(_bet_body())
    signed = quote.signing_bytes()

    assert signed[0] == 0, "❌ FAIL: intent scope must be the first byte"
    assert int.from_bytes(signed[1:9], "little") == NOW_MS
    assert signed[9:41] == bytes(31) + b"\x01", "❌ FAIL: user address must follow the timestamp"
    assert signed[41:73] == bytes(31) + b"\x02"
    assert int.from_bytes(signed[73:81], "little") == 7
    assert signed[81] == 1
    # current_probs: length 2, then two u64
    assert signed[82] == 2
    assert len(signed) == 1 + 8 + 32 + 32 + 8 + 1 + (1 + 16) + (1 + 16) + 8 + 8 + 8


def test_quote_accepts_inner_message_with_separate_signature():
    body = _bet_body()
    outer = Quote.from_enclave_response(body)
    inner = Quote.from_enclave_response(body["response"], "0x" + body["signature"])
    assert outer == inner


def test_quote_accepts_digit_strings_for_u64():
    quote = Quote.from_enclave_response(_bet_body(debit_amount="18446744073709551615"))
    assert quote.data.debit_amount == (1 << 64) - 1


@pytest.mark.parametrize("body,fragment", [
    ({"response": {"intent": 0, "timestamp_ms": NOW_MS, "data": {}}, "signature": "00"}, "user"),
    ({"response": {"intent": 1, "timestamp_ms": NOW_MS, "data": {}}, "signature": "00"}, "RESOLVE"),
    ({"response": {"intent": 0, "timestamp_ms": NOW_MS, "data": {}}}, "signature"),
])
def test_malformed_quotes_raise_format_error(body, fragment):
    with pytest.raises(QuoteFormatError) as exc:
        Quote.from_enclave_response(body)
    assert fragment in str(exc.value)


def test_quote_out_of_range_outcome_is_format_error():
    with pytest.raises(QuoteFormatError):
        Quote.from_enclave_response(_bet_body(outcome=256))


def test_rotation_statement_binds_version():
    pcr = bytes(48)
    v2 = rotation_statement(object_id(0x21), 2, pcr, pcr, pcr)
    v3 = rotation_statement(object_id(0x21), 3, pcr, pcr, pcr)
    assert v2 != v3


# ============================================================
# Transactions
# ============================================================

def _sample_kind() -> bytes:
    ptb = ProgrammableTransactionBuilder()
    shared = ptb.shared_object(SharedObject(object_id(0x24), 5, False))
    again = ptb.shared_object(SharedObject(object_id(0x24), 5, True))
    assert shared == again, "❌ FAIL: the same shared object must map to one input"
    ptb.move_call(f"{object_id(0x13)}::vault::withdraw", [shared, ptb.pure_u64(10)])
    return ptb.finish()


def test_builder_is_deterministic():
    assert _sample_kind() == _sample_kind()


def test_shared_object_upgraded_to_mutable():
    kind = _sample_kind()
    decoded = decode_transaction_data(
        encode_transaction_data(kind, object_id(0x01), GasData((), object_id(0x02), 1, 1))
    )
    assert decoded.inputs[0].obj.mutable is True


def test_transaction_data_round_trip_preserves_kind_bytes():
    kind = _sample_kind()
    gas = GasData(
        payment=(ObjectRef(object_id(0x51), 9, object_digest(0x51)),),
        owner=object_id(0x02),
        price=1000,
        budget=50_000_000,
    )
    tx_bytes = encode_transaction_data(kind, object_id(0x01), gas, expiration_epoch=12)
    decoded = decode_transaction_data(tx_bytes)

    assert decoded.kind_bytes == kind
    assert decoded.sender == object_id(0x01)
    assert decoded.gas == gas
    assert decoded.expiration_epoch == 12
    assert decoded.move_targets == (f"{object_id(0x13)}::vault::withdraw",)


def test_trailing_bytes_are_rejected():
    tx_bytes = encode_transaction_data(_sample_kind(), object_id(0x01), GasData((), object_id(0x02), 1, 1))
    with pytest.raises(BcsError):
        decode_transaction_data(tx_bytes + b"\x00")


def test_owned_object_with_conflicting_versions_raises():
    ptb = ProgrammableTransactionBuilder()
    ptb.owned_object(ObjectRef(object_id(0x31), 1, object_digest(0x31)))
    with pytest.raises(BcsError):
        ptb.owned_object(ObjectRef(object_id(0x31), 2, object_digest(0x31)))
