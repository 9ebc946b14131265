"""
PM Relay Canonical BCS Encoding

Minimal Binary Canonical Serialization (BCS) used by both the enclave and
the ledger. Every byte sequence that gets signed in this system is BCS:

- Enclave quotes: IntentMessage { intent, timestamp_ms, data }
- Ledger payloads: TransactionKind / TransactionData
- Rotation statements: signed by the attestation authority

DETERMINISM (CRITICAL):
BCS has exactly one encoding per value. Two writers fed the same values in
the same order MUST produce identical bytes. Nothing in this module may
depend on dict ordering, floats, or locale.

Encoding rules:
- Unsigned integers: little-endian, fixed width
- bool: 0x00 / 0x01
- Sequences and byte vectors: ULEB128 length prefix, then elements
- Enum variants: ULEB128 variant index, then payload
- Option: 0x00 (None) or 0x01 followed by the value
- Addresses / object ids: 32 raw bytes, no length prefix
"""

from typing import Callable, List, Optional, Sequence, TypeVar

T = TypeVar("T")

ADDRESS_LENGTH = 32

_UINT_LIMITS = {
    8: 1 << 8,
    16: 1 << 16,
    32: 1 << 32,
    64: 1 << 64,
    128: 1 << 128,
    256: 1 << 256,
}


class BcsError(ValueError):
    """Raised when a value cannot be encoded or bytes cannot be decoded."""
    pass


def encode_uleb128(value: int) -> bytes:
    """Encode a non-negative integer as ULEB128 (used for lengths and variants)."""
    if value < 0:
        raise BcsError(f"ULEB128 cannot encode negative value {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def address_to_bytes(address: str) -> bytes:
    """
    Convert a 0x-prefixed hex address to 32 raw bytes.

    Short addresses (e.g. "0x2") are left-padded with zeros, matching how the
    ledger normalizes framework addresses.
    """
    if not isinstance(address, str):
        raise BcsError(f"Address must be a string, got {type(address).__name__}")
    body = address[2:] if address.startswith(("0x", "0X")) else address
    if not body or len(body) > ADDRESS_LENGTH * 2:
        raise BcsError(f"Invalid address length: {address!r}")
    try:
        raw = bytes.fromhex(body.rjust(ADDRESS_LENGTH * 2, "0"))
    except ValueError:
        raise BcsError(f"Address is not hex: {address!r}")
    return raw


def normalize_address(address: str) -> str:
    """Return the canonical 0x + 64 lowercase hex form of an address."""
    return "0x" + address_to_bytes(address).hex()


# ============================================================================
# Writer
# ============================================================================

class BcsWriter:
    """Append-only BCS encoder. Call ``getvalue()`` once all fields are written."""

    def __init__(self):
        self._buf = bytearray()

    def _uint(self, value: int, bits: int) -> "BcsWriter":
        if not isinstance(value, int) or isinstance(value, bool):
            raise BcsError(f"u{bits} expects int, got {type(value).__name__}")
        if value < 0 or value >= _UINT_LIMITS[bits]:
            raise BcsError(f"Value {value} out of range for u{bits}")
        self._buf += value.to_bytes(bits // 8, "little")
        return self

    def u8(self, value: int) -> "BcsWriter":
        return self._uint(value, 8)

    def u16(self, value: int) -> "BcsWriter":
        return self._uint(value, 16)

    def u32(self, value: int) -> "BcsWriter":
        return self._uint(value, 32)

    def u64(self, value: int) -> "BcsWriter":
        return self._uint(value, 64)

    def u128(self, value: int) -> "BcsWriter":
        return self._uint(value, 128)

    def u256(self, value: int) -> "BcsWriter":
        return self._uint(value, 256)

    def bool(self, value: bool) -> "BcsWriter":
        if not isinstance(value, bool):
            raise BcsError(f"bool expects bool, got {type(value).__name__}")
        self._buf.append(1 if value else 0)
        return self

    def uleb128(self, value: int) -> "BcsWriter":
        self._buf += encode_uleb128(value)
        return self

    def fixed_bytes(self, value: bytes) -> "BcsWriter":
        """Raw bytes with no length prefix (addresses, fixed arrays)."""
        self._buf += bytes(value)
        return self

    def bytes(self, value: bytes) -> "BcsWriter":
        """vector<u8>: length prefix followed by the bytes."""
        value = bytes(value)
        self.uleb128(len(value))
        self._buf += value
        return self

    def string(self, value: str) -> "BcsWriter":
        return self.bytes(value.encode("utf-8"))

    def address(self, value: str) -> "BcsWriter":
        return self.fixed_bytes(address_to_bytes(value))

    def sequence(self, items: Sequence[T], write_item: Callable[["BcsWriter", T], object]) -> "BcsWriter":
        self.uleb128(len(items))
        for item in items:
            write_item(self, item)
        return self

    def option(self, value: Optional[T], write_item: Callable[["BcsWriter", T], object]) -> "BcsWriter":
        if value is None:
            self._buf.append(0)
        else:
            self._buf.append(1)
            write_item(self, value)
        return self

    def variant(self, index: int) -> "BcsWriter":
        return self.uleb128(index)

    def getvalue(self) -> bytes:
        return bytes(self._buf)


# ============================================================================
# Reader
# ============================================================================

class BcsReader:
    """Cursor over BCS bytes. Raises BcsError on truncation or malformed input."""

    def __init__(self, data: bytes, offset: int = 0):
        self._data = bytes(data)
        self.offset = offset

    def remaining(self) -> int:
        return len(self._data) - self.offset

    def _take(self, n: int) -> bytes:
        if n < 0 or self.offset + n > len(self._data):
            raise BcsError(f"Unexpected end of input at offset {self.offset} (wanted {n} bytes)")
        chunk = self._data[self.offset:self.offset + n]
        self.offset += n
        return chunk

    def _uint(self, bits: int) -> int:
        return int.from_bytes(self._take(bits // 8), "little")

    def u8(self) -> int:
        return self._uint(8)

    def u16(self) -> int:
        return self._uint(16)

    def u32(self) -> int:
        return self._uint(32)

    def u64(self) -> int:
        return self._uint(64)

    def u128(self) -> int:
        return self._uint(128)

    def u256(self) -> int:
        return self._uint(256)

    def bool(self) -> bool:
        value = self.u8()
        if value not in (0, 1):
            raise BcsError(f"Invalid bool byte {value} at offset {self.offset - 1}")
        return value == 1

    def uleb128(self) -> int:
        result = 0
        shift = 0
        while True:
            byte = self.u8()
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
            shift += 7
            if shift > 63:
                raise BcsError("ULEB128 value overflows u64")

    def fixed_bytes(self, n: int) -> bytes:
        return self._take(n)

    def bytes(self) -> bytes:
        return self._take(self.uleb128())

    def string(self) -> str:
        try:
            return self.bytes().decode("utf-8")
        except UnicodeDecodeError as e:
            raise BcsError(f"Invalid UTF-8 string: {e}")

    def address(self) -> str:
        return "0x" + self._take(ADDRESS_LENGTH).hex()

    def sequence(self, read_item: Callable[["BcsReader"], T]) -> List[T]:
        return [read_item(self) for _ in range(self.uleb128())]

    def option(self, read_item: Callable[["BcsReader"], T]) -> Optional[T]:
        tag = self.u8()
        if tag == 0:
            return None
        if tag == 1:
            return read_item(self)
        raise BcsError(f"Invalid option tag {tag}")

    def variant(self) -> int:
        return self.uleb128()
