"""Transaction serialisation: legacy and segwit (BIP144) raw formats.

Provides pure-Python Bitcoin transaction serialization and deserialization:
- TxInput / TxOutput data classes with per-input witness stacks
- Transaction class with serialize / deserialize / txid / wtxid
- VarInt (CompactSize) encoding/decoding
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from io import BytesIO

from tapchannel.utils.crypto import sha256d

# ---------------------------------------------------------------------------
# VarInt encoding / decoding
# ---------------------------------------------------------------------------


def encode_varint(n: int) -> bytes:
    """Encode an integer as a Bitcoin CompactSize."""
    if n < 0xFD:
        return struct.pack("<B", n)
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def read_varint(stream: BytesIO) -> int:
    """Read a CompactSize from a byte stream."""
    first = stream.read(1)
    if not first:
        msg = "Unexpected end of stream reading varint"
        raise ValueError(msg)
    n = first[0]
    if n < 0xFD:
        return n
    width = {0xFD: 2, 0xFE: 4, 0xFF: 8}[n]
    return int.from_bytes(_read_exact(stream, width), "little")


def _read_exact(stream: BytesIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        msg = f"Unexpected end of stream (wanted {size} bytes, got {len(data)})"
        raise ValueError(msg)
    return data


def ser_bytes(data: bytes) -> bytes:
    """Length-prefix *data* with a CompactSize."""
    return encode_varint(len(data)) + data


def read_bytes(stream: BytesIO) -> bytes:
    """Read a CompactSize-prefixed byte string."""
    return _read_exact(stream, read_varint(stream))


def serialize_witness(stack: list[bytes]) -> bytes:
    """Serialise a witness stack: item count followed by length-prefixed items."""
    return encode_varint(len(stack)) + b"".join(ser_bytes(item) for item in stack)


def deserialize_witness(stream: BytesIO) -> list[bytes]:
    """Read a witness stack written by :func:`serialize_witness`."""
    return [read_bytes(stream) for _ in range(read_varint(stream))]


# Default sequence: 0xFFFFFFFF (final, no RBF)
DEFAULT_SEQUENCE = 0xFFFFFFFF


# ---------------------------------------------------------------------------
# TxInput
# ---------------------------------------------------------------------------


@dataclass
class TxInput:
    """A transaction input.

    Attributes:
        prev_tx_id: 32-byte hash of the previous transaction (internal byte order).
        prev_tx_out_index: Index of the output in the previous transaction.
        script_sig: Unlocking script (scriptSig).
        sequence: Sequence number.
        witness: Segregated witness stack.
    """

    prev_tx_id: bytes
    prev_tx_out_index: int
    script_sig: bytes = b""
    sequence: int = DEFAULT_SEQUENCE
    witness: list[bytes] = field(default_factory=list)

    @classmethod
    def from_outpoint(cls, txid_hex: str, vout: int, *, sequence: int = DEFAULT_SEQUENCE) -> TxInput:
        """Create an input spending ``txid_hex:vout`` (display byte order)."""
        return cls(prev_tx_id=bytes.fromhex(txid_hex)[::-1], prev_tx_out_index=vout, sequence=sequence)

    @property
    def prev_tx_id_hex(self) -> str:
        """Previous transaction ID in display (reversed) hex."""
        return self.prev_tx_id[::-1].hex()

    def serialize_outpoint(self) -> bytes:
        """The 36-byte outpoint ``txid || vout``."""
        return self.prev_tx_id + struct.pack("<I", self.prev_tx_out_index)

    def serialize(self) -> bytes:
        """Serialize the input (without witness) to bytes."""
        return (
            self.serialize_outpoint()
            + ser_bytes(self.script_sig)
            + struct.pack("<I", self.sequence)
        )

    @classmethod
    def deserialize(cls, stream: BytesIO) -> TxInput:
        """Deserialize a transaction input from a byte stream."""
        prev_tx_id = _read_exact(stream, 32)
        prev_tx_out_index = struct.unpack("<I", _read_exact(stream, 4))[0]
        script_sig = read_bytes(stream)
        sequence = struct.unpack("<I", _read_exact(stream, 4))[0]
        return cls(
            prev_tx_id=prev_tx_id,
            prev_tx_out_index=prev_tx_out_index,
            script_sig=script_sig,
            sequence=sequence,
        )


# ---------------------------------------------------------------------------
# TxOutput
# ---------------------------------------------------------------------------


@dataclass
class TxOutput:
    """A transaction output.

    Attributes:
        value: Output value in satoshis.
        script_pubkey: Locking script (scriptPubKey).
    """

    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        """Serialize the output to bytes."""
        return struct.pack("<q", self.value) + ser_bytes(self.script_pubkey)

    @classmethod
    def deserialize(cls, stream: BytesIO) -> TxOutput:
        """Deserialize a transaction output from a byte stream."""
        value = struct.unpack("<q", _read_exact(stream, 8))[0]
        return cls(value=value, script_pubkey=read_bytes(stream))


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


@dataclass
class Transaction:
    """A Bitcoin transaction.

    Attributes:
        version: Transaction version (default 2, required for CSV).
        inputs: List of transaction inputs.
        outputs: List of transaction outputs.
        locktime: Transaction locktime.
    """

    version: int = 2
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        """True if any input carries witness data."""
        return any(inp.witness for inp in self.inputs)

    def serialize(self, *, include_witness: bool = True) -> bytes:
        """Serialize the transaction to raw bytes.

        Args:
            include_witness: Emit the BIP144 marker, flag and witness stacks
                when any input has a witness.
        """
        segwit = include_witness and self.has_witness
        result = struct.pack("<i", self.version)
        if segwit:
            result += b"\x00\x01"
        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize()
        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()
        if segwit:
            for inp in self.inputs:
                result += serialize_witness(inp.witness)
        result += struct.pack("<I", self.locktime)
        return result

    def to_hex(self) -> str:
        """Serialize to hex string (with witnesses)."""
        return self.serialize().hex()

    @classmethod
    def deserialize(cls, stream: BytesIO) -> Transaction:
        """Deserialize a transaction from a byte stream, segwit or legacy."""
        version = struct.unpack("<i", _read_exact(stream, 4))[0]
        n_inputs = read_varint(stream)
        segwit = False
        if n_inputs == 0:
            flag = _read_exact(stream, 1)[0]
            if flag != 0x01:
                msg = f"Unsupported segwit flag {flag:#x}"
                raise ValueError(msg)
            segwit = True
            n_inputs = read_varint(stream)
        inputs = [TxInput.deserialize(stream) for _ in range(n_inputs)]
        n_outputs = read_varint(stream)
        outputs = [TxOutput.deserialize(stream) for _ in range(n_outputs)]
        if segwit:
            for inp in inputs:
                inp.witness = deserialize_witness(stream)
        locktime = struct.unpack("<I", _read_exact(stream, 4))[0]
        return cls(version=version, inputs=inputs, outputs=outputs, locktime=locktime)

    @classmethod
    def from_bytes(cls, raw: bytes) -> Transaction:
        """Parse raw bytes, rejecting trailing garbage."""
        stream = BytesIO(raw)
        tx = cls.deserialize(stream)
        if stream.read(1):
            msg = "Trailing bytes after transaction"
            raise ValueError(msg)
        return tx

    @classmethod
    def from_hex(cls, hex_str: str) -> Transaction:
        """Parse a raw transaction hex string."""
        return cls.from_bytes(bytes.fromhex(hex_str))

    def txid(self) -> str:
        """Transaction ID (witness stripped) in display hex."""
        return sha256d(self.serialize(include_witness=False))[::-1].hex()

    def wtxid(self) -> str:
        """Witness transaction ID in display hex."""
        return sha256d(self.serialize())[::-1].hex()

    def vsize(self) -> int:
        """Virtual size in vbytes (BIP141 weight / 4, rounded up)."""
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize())
        return (base * 3 + total + 3) // 4

    def copy(self) -> Transaction:
        """Deep copy of inputs/outputs (witness lists are copied too)."""
        return Transaction(
            version=self.version,
            inputs=[
                TxInput(
                    prev_tx_id=i.prev_tx_id,
                    prev_tx_out_index=i.prev_tx_out_index,
                    script_sig=i.script_sig,
                    sequence=i.sequence,
                    witness=list(i.witness),
                )
                for i in self.inputs
            ],
            outputs=[TxOutput(o.value, o.script_pubkey) for o in self.outputs],
            locktime=self.locktime,
        )
