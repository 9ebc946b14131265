"""
PM Relay Canonical Transaction Encoding (Sui programmable transactions)

Builds and parses the BCS structures the ledger signs over:

    TransactionKind::ProgrammableTransaction (variant 0)
        inputs:   vector<CallArg>
        commands: vector<Command>

    TransactionData::V1 (variant 0)
        kind:       TransactionKind
        sender:     address
        gas_data:   GasData { payment: vector<ObjectRef>, owner, price, budget }
        expiration: TransactionExpiration { None | Epoch(u64) }

The relay only ever builds the TransactionKind. The sponsor wraps it into
TransactionData (adding gas). ``decode_transaction_data`` lets the relay
check that the sponsor did not touch the kind bytes.

Only the command subset the relay needs is supported for building; the
decoder understands every command variant so it can reject foreign ones
with a useful message instead of a parse error.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import base58

from relay_canonical.bcs import BcsError, BcsReader, BcsWriter, normalize_address

# =============================================================================
# Object references and call arguments
# =============================================================================

@dataclass(frozen=True)
class ObjectRef:
    """(object_id, version, digest) of an owned or immutable object."""

    object_id: str
    version: int
    digest: str  # base58

    def write(self, writer: BcsWriter) -> None:
        writer.address(self.object_id)
        writer.u64(self.version)
        digest = base58.b58decode(self.digest)
        if len(digest) != 32:
            raise BcsError(f"Object digest must be 32 bytes, got {len(digest)}")
        writer.bytes(digest)

    @classmethod
    def read(cls, reader: BcsReader) -> "ObjectRef":
        object_id = reader.address()
        version = reader.u64()
        digest = base58.b58encode(reader.bytes()).decode("ascii")
        return cls(object_id=object_id, version=version, digest=digest)


@dataclass(frozen=True)
class SharedObject:
    """A shared object input. ``initial_shared_version`` never changes for an object."""

    object_id: str
    initial_shared_version: int
    mutable: bool


@dataclass(frozen=True)
class PureArg:
    value: bytes


@dataclass(frozen=True)
class OwnedArg:
    ref: ObjectRef


@dataclass(frozen=True)
class SharedArg:
    obj: SharedObject


CallArg = Union[PureArg, OwnedArg, SharedArg]


def _write_call_arg(writer: BcsWriter, arg: CallArg) -> None:
    if isinstance(arg, PureArg):
        writer.variant(0).bytes(arg.value)
    elif isinstance(arg, OwnedArg):
        writer.variant(1).variant(0)
        arg.ref.write(writer)
    else:
        writer.variant(1).variant(1)
        writer.address(arg.obj.object_id)
        writer.u64(arg.obj.initial_shared_version)
        writer.bool(arg.obj.mutable)


def _read_call_arg(reader: BcsReader) -> CallArg:
    tag = reader.variant()
    if tag == 0:
        return PureArg(reader.bytes())
    if tag != 1:
        raise BcsError(f"Unknown CallArg variant {tag}")
    obj_tag = reader.variant()
    if obj_tag in (0, 2):  # ImmOrOwned / Receiving
        return OwnedArg(ObjectRef.read(reader))
    if obj_tag == 1:
        object_id = reader.address()
        version = reader.u64()
        mutable = reader.bool()
        return SharedArg(SharedObject(object_id, version, mutable))
    raise BcsError(f"Unknown ObjectArg variant {obj_tag}")


# =============================================================================
# Arguments, type tags and commands
# =============================================================================

@dataclass(frozen=True)
class Argument:
    """GasCoin (0), Input(u16) (1), Result(u16) (2), NestedResult(u16, u16) (3)."""

    kind: int
    index: int = 0
    sub_index: int = 0

    def write(self, writer: BcsWriter) -> None:
        writer.variant(self.kind)
        if self.kind in (1, 2):
            writer.u16(self.index)
        elif self.kind == 3:
            writer.u16(self.index).u16(self.sub_index)

    @classmethod
    def read(cls, reader: BcsReader) -> "Argument":
        kind = reader.variant()
        if kind == 0:
            return cls(0)
        if kind in (1, 2):
            return cls(kind, reader.u16())
        if kind == 3:
            return cls(3, reader.u16(), reader.u16())
        raise BcsError(f"Unknown Argument variant {kind}")


GAS_COIN = Argument(0)


def nested_result(command_index: int, result_index: int) -> Argument:
    return Argument(3, command_index, result_index)


@dataclass(frozen=True)
class StructTag:
    address: str
    module: str
    name: str
    type_params: Tuple["StructTag", ...] = ()

    @classmethod
    def parse(cls, type_string: str) -> "StructTag":
        """Parse '0xPKG::module::Name' (no generics - the relay never needs them)."""
        parts = type_string.split("::")
        if len(parts) != 3 or "<" in type_string:
            raise BcsError(f"Unsupported struct type: {type_string!r}")
        return cls(normalize_address(parts[0]), parts[1], parts[2])


# TypeTag variant index for Struct
_TYPE_TAG_STRUCT = 7


def _write_type_tag(writer: BcsWriter, tag: StructTag) -> None:
    writer.variant(_TYPE_TAG_STRUCT)
    writer.address(tag.address)
    writer.string(tag.module)
    writer.string(tag.name)
    writer.sequence(tag.type_params, _write_type_tag)


def _read_type_tag(reader: BcsReader) -> str:
    tag = reader.variant()
    primitives = {0: "bool", 1: "u8", 2: "u64", 3: "u128", 4: "address", 5: "signer",
                  8: "u16", 9: "u32", 10: "u256"}
    if tag in primitives:
        return primitives[tag]
    if tag == 6:
        return f"vector<{_read_type_tag(reader)}>"
    if tag == _TYPE_TAG_STRUCT:
        address = reader.address()
        module = reader.string()
        name = reader.string()
        params = reader.sequence(_read_type_tag)
        suffix = f"<{', '.join(params)}>" if params else ""
        return f"{address}::{module}::{name}{suffix}"
    raise BcsError(f"Unknown TypeTag variant {tag}")


@dataclass(frozen=True)
class MoveCall:
    package: str
    module: str
    function: str
    type_arguments: Tuple[StructTag, ...]
    arguments: Tuple[Argument, ...]

    @property
    def target(self) -> str:
        return f"{normalize_address(self.package)}::{self.module}::{self.function}"


@dataclass(frozen=True)
class SplitCoins:
    coin: Argument
    amounts: Tuple[Argument, ...]


@dataclass(frozen=True)
class MergeCoins:
    destination: Argument
    sources: Tuple[Argument, ...]


Command = Union[MoveCall, SplitCoins, MergeCoins]


def _write_command(writer: BcsWriter, command: Command) -> None:
    if isinstance(command, MoveCall):
        writer.variant(0)
        writer.address(command.package)
        writer.string(command.module)
        writer.string(command.function)
        writer.sequence(command.type_arguments, _write_type_tag)
        writer.sequence(command.arguments, lambda w, a: a.write(w))
    elif isinstance(command, SplitCoins):
        writer.variant(2)
        command.coin.write(writer)
        writer.sequence(command.amounts, lambda w, a: a.write(w))
    elif isinstance(command, MergeCoins):
        writer.variant(3)
        command.destination.write(writer)
        writer.sequence(command.sources, lambda w, a: a.write(w))
    else:
        raise BcsError(f"Unsupported command type: {type(command).__name__}")


@dataclass(frozen=True)
class DecodedCommand:
    """Command as seen by the decoder. ``target`` is set for MoveCall only."""

    name: str
    target: Optional[str] = None


_COMMAND_NAMES = {
    0: "MoveCall",
    1: "TransferObjects",
    2: "SplitCoins",
    3: "MergeCoins",
    4: "Publish",
    5: "MakeMoveVec",
    6: "Upgrade",
}


def _read_command(reader: BcsReader) -> DecodedCommand:
    tag = reader.variant()
    read_args = lambda r: r.sequence(Argument.read)  # noqa: E731

    if tag == 0:
        package = reader.address()
        module = reader.string()
        function = reader.string()
        reader.sequence(_read_type_tag)
        read_args(reader)
        return DecodedCommand("MoveCall", f"{package}::{module}::{function}")
    if tag == 1:
        read_args(reader)
        Argument.read(reader)
    elif tag in (2, 3):
        Argument.read(reader)
        read_args(reader)
    elif tag == 4:
        reader.sequence(BcsReader.bytes)
        reader.sequence(BcsReader.address)
    elif tag == 5:
        reader.option(_read_type_tag)
        read_args(reader)
    elif tag == 6:
        reader.sequence(BcsReader.bytes)
        reader.sequence(BcsReader.address)
        reader.address()
        Argument.read(reader)
    else:
        raise BcsError(f"Unknown Command variant {tag}")
    return DecodedCommand(_COMMAND_NAMES[tag])


# =============================================================================
# Programmable transaction builder
# =============================================================================

class ProgrammableTransactionBuilder:
    """
    Accumulates inputs and commands, then encodes a TransactionKind.

    Object inputs are de-duplicated by object id (the ledger rejects a
    transaction that lists the same object twice). A shared object used
    mutably anywhere is marked mutable. Pure inputs are never merged, so the
    input order is a pure function of the call order.
    """

    def __init__(self):
        self._inputs: List[CallArg] = []
        self._object_index: Dict[str, int] = {}
        self._commands: List[Command] = []

    # ---- inputs ----------------------------------------------------------

    def pure(self, value: bytes) -> Argument:
        self._inputs.append(PureArg(bytes(value)))
        return Argument(1, len(self._inputs) - 1)

    def pure_u8(self, value: int) -> Argument:
        return self.pure(BcsWriter().u8(value).getvalue())

    def pure_u64(self, value: int) -> Argument:
        return self.pure(BcsWriter().u64(value).getvalue())

    def pure_address(self, value: str) -> Argument:
        return self.pure(BcsWriter().address(value).getvalue())

    def pure_u64_vector(self, values: Sequence[int]) -> Argument:
        return self.pure(BcsWriter().sequence(list(values), BcsWriter.u64).getvalue())

    def pure_bytes(self, value: bytes) -> Argument:
        return self.pure(BcsWriter().bytes(value).getvalue())

    def shared_object(self, obj: SharedObject) -> Argument:
        key = normalize_address(obj.object_id)
        if key in self._object_index:
            index = self._object_index[key]
            existing = self._inputs[index]
            if not isinstance(existing, SharedArg):
                raise BcsError(f"Object {key} used both as shared and owned input")
            if obj.mutable and not existing.obj.mutable:
                self._inputs[index] = SharedArg(
                    SharedObject(existing.obj.object_id, existing.obj.initial_shared_version, True)
                )
            return Argument(1, index)
        self._inputs.append(SharedArg(obj))
        self._object_index[key] = len(self._inputs) - 1
        return Argument(1, len(self._inputs) - 1)

    def owned_object(self, ref: ObjectRef) -> Argument:
        key = normalize_address(ref.object_id)
        if key in self._object_index:
            existing = self._inputs[self._object_index[key]]
            if not isinstance(existing, OwnedArg) or existing.ref != ref:
                raise BcsError(f"Object {key} referenced twice with different versions")
            return Argument(1, self._object_index[key])
        self._inputs.append(OwnedArg(ref))
        self._object_index[key] = len(self._inputs) - 1
        return Argument(1, len(self._inputs) - 1)

    # ---- commands --------------------------------------------------------

    def move_call(
        self,
        target: str,
        arguments: Sequence[Argument],
        type_arguments: Sequence[str] = (),
    ) -> int:
        """Append a MoveCall to '0xPKG::module::function'. Returns the command index."""
        package, module, function = target.split("::")
        self._commands.append(MoveCall(
            package=normalize_address(package),
            module=module,
            function=function,
            type_arguments=tuple(StructTag.parse(t) for t in type_arguments),
            arguments=tuple(arguments),
        ))
        return len(self._commands) - 1

    def split_coins(self, coin: Argument, amounts: Sequence[Argument]) -> int:
        self._commands.append(SplitCoins(coin, tuple(amounts)))
        return len(self._commands) - 1

    def merge_coins(self, destination: Argument, sources: Sequence[Argument]) -> int:
        self._commands.append(MergeCoins(destination, tuple(sources)))
        return len(self._commands) - 1

    # ---- encoding --------------------------------------------------------

    def finish(self) -> bytes:
        """Encode TransactionKind::ProgrammableTransaction."""
        writer = BcsWriter()
        writer.variant(0)
        writer.sequence(self._inputs, _write_call_arg)
        writer.sequence(self._commands, _write_command)
        return writer.getvalue()


# =============================================================================
# TransactionData decoding
# =============================================================================

@dataclass(frozen=True)
class GasData:
    payment: Tuple[ObjectRef, ...]
    owner: str
    price: int
    budget: int


@dataclass(frozen=True)
class DecodedTransaction:
    """The parts of TransactionData the relay inspects."""

    kind_bytes: bytes
    inputs: Tuple[CallArg, ...]
    commands: Tuple[DecodedCommand, ...]
    sender: str
    gas: GasData
    expiration_epoch: Optional[int] = None
    move_targets: Tuple[str, ...] = field(default=())


def decode_transaction_kind(reader: BcsReader) -> Tuple[Tuple[CallArg, ...], Tuple[DecodedCommand, ...]]:
    kind = reader.variant()
    if kind != 0:
        raise BcsError(f"Only programmable transactions are accepted (kind variant {kind})")
    inputs = tuple(reader.sequence(_read_call_arg))
    commands = tuple(reader.sequence(_read_command))
    return inputs, commands


def decode_transaction_data(tx_bytes: bytes) -> DecodedTransaction:
    """
    Decode TransactionData::V1.

    Raises:
        BcsError: On any structural problem, including trailing bytes
    """
    reader = BcsReader(tx_bytes)
    version = reader.variant()
    if version != 0:
        raise BcsError(f"Unsupported TransactionData version {version}")

    kind_start = reader.offset
    inputs, commands = decode_transaction_kind(reader)
    kind_bytes = tx_bytes[kind_start:reader.offset]

    sender = reader.address()
    payment = tuple(reader.sequence(ObjectRef.read))
    owner = reader.address()
    price = reader.u64()
    budget = reader.u64()

    expiration_tag = reader.variant()
    if expiration_tag == 0:
        expiration_epoch = None
    elif expiration_tag == 1:
        expiration_epoch = reader.u64()
    else:
        raise BcsError(f"Unsupported transaction expiration variant {expiration_tag}")

    if reader.remaining():
        raise BcsError(f"{reader.remaining()} trailing bytes after TransactionData")

    return DecodedTransaction(
        kind_bytes=bytes(kind_bytes),
        inputs=inputs,
        commands=commands,
        sender=sender,
        gas=GasData(payment, owner, price, budget),
        expiration_epoch=expiration_epoch,
        move_targets=tuple(c.target for c in commands if c.target),
    )


def encode_transaction_data(
    kind_bytes: bytes,
    sender: str,
    gas: GasData,
    expiration_epoch: Optional[int] = None,
) -> bytes:
    """
    Wrap TransactionKind bytes into TransactionData::V1.

    Used by sponsors and tests; the relay itself never chooses gas.
    """
    writer = BcsWriter()
    writer.variant(0)
    writer.fixed_bytes(kind_bytes)
    writer.address(sender)
    writer.sequence(list(gas.payment), lambda w, ref: ref.write(w))
    writer.address(gas.owner)
    writer.u64(gas.price)
    writer.u64(gas.budget)
    if expiration_epoch is None:
        writer.variant(0)
    else:
        writer.variant(1).u64(expiration_epoch)
    return writer.getvalue()
