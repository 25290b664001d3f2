"""Partially signed transactions: BIP174 with BIP371 Taproot fields.

Supports what a channel needs from a PSBT:
- Byte-exact parse / serialize (hex and base64), unknown keys preserved
- Witness UTXOs and Taproot leaf scripts per input
- Tapscript signing with BIP341 sighashes
- Finalization into a witness stack and transaction extraction
"""

from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import dataclass, field
from io import BytesIO
from typing import TYPE_CHECKING

from tapchannel.btc.keys import schnorr_sign, schnorr_verify, xonly_public_key
from tapchannel.btc.script import checked_keys
from tapchannel.btc.sighash import (
    SIGHASH_DEFAULT,
    decode_schnorr_signature,
    encode_schnorr_signature,
    taproot_sighash,
)
from tapchannel.btc.taproot import LEAF_VERSION_TAPSCRIPT, tapleaf_hash
from tapchannel.btc.transaction import (
    Transaction,
    TxInput,
    TxOutput,
    deserialize_witness,
    encode_varint,
    read_bytes,
    read_varint,
    ser_bytes,
    serialize_witness,
)

if TYPE_CHECKING:
    from collections.abc import Callable

PSBT_MAGIC = b"psbt\xff"

# -- Global key types -----------------------------------------------------

PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_VERSION = 0xFB

# -- Input key types ------------------------------------------------------

PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_TAP_SCRIPT_SIG = 0x14
PSBT_IN_TAP_LEAF_SCRIPT = 0x15
PSBT_IN_TAP_BIP32_DERIVATION = 0x16
PSBT_IN_TAP_INTERNAL_KEY = 0x17
PSBT_IN_TAP_MERKLE_ROOT = 0x18

# -- Output key types -----------------------------------------------------

PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_WITNESS_SCRIPT = 0x01
PSBT_OUT_BIP32_DERIVATION = 0x02
PSBT_OUT_TAP_INTERNAL_KEY = 0x05
PSBT_OUT_TAP_TREE = 0x06
PSBT_OUT_TAP_BIP32_DERIVATION = 0x07


class PsbtError(ValueError):
    """Malformed PSBT data or an impossible PSBT operation."""


# ---------------------------------------------------------------------------
# Per-input / per-output records
# ---------------------------------------------------------------------------


@dataclass
class TapLeafScript:
    """A ``PSBT_IN_TAP_LEAF_SCRIPT`` entry."""

    control_block: bytes
    script: bytes
    leaf_version: int = LEAF_VERSION_TAPSCRIPT

    @property
    def leaf_hash(self) -> bytes:
        return tapleaf_hash(self.script, self.leaf_version)


@dataclass
class PsbtInput:
    """Typed per-input PSBT map.

    ``tap_script_sigs`` is keyed by ``(x_only_pubkey, leaf_hash)``.
    Raw key-value pairs this module does not model are kept in ``unknown``.
    """

    non_witness_utxo: bytes | None = None
    witness_utxo: TxOutput | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, bytes] = field(default_factory=dict)
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    tap_key_sig: bytes | None = None
    tap_script_sigs: dict[tuple[bytes, bytes], bytes] = field(default_factory=dict)
    tap_leaf_scripts: list[TapLeafScript] = field(default_factory=list)
    tap_bip32_derivations: dict[bytes, bytes] = field(default_factory=dict)
    tap_internal_key: bytes | None = None
    tap_merkle_root: bytes | None = None
    unknown: list[tuple[bytes, bytes]] = field(default_factory=list)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_witness is not None or self.final_script_sig is not None

    @property
    def is_taproot(self) -> bool:
        """True when the input carries any Taproot-specific field."""
        return bool(
            self.tap_leaf_scripts
            or self.tap_script_sigs
            or self.tap_key_sig
            or self.tap_internal_key
            or (self.witness_utxo is not None and _is_p2tr(self.witness_utxo.script_pubkey))
        )

    def clear_signing_data(self) -> None:
        """Drop everything except UTXO data and the final scripts (BIP174 finalizer rule)."""
        self.partial_sigs.clear()
        self.sighash_type = None
        self.redeem_script = None
        self.witness_script = None
        self.bip32_derivations.clear()
        self.tap_key_sig = None
        self.tap_script_sigs.clear()
        self.tap_leaf_scripts.clear()
        self.tap_bip32_derivations.clear()
        self.tap_internal_key = None
        self.tap_merkle_root = None


@dataclass
class PsbtOutput:
    """Typed per-output PSBT map."""

    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, bytes] = field(default_factory=dict)
    tap_internal_key: bytes | None = None
    tap_tree: bytes | None = None
    tap_bip32_derivations: dict[bytes, bytes] = field(default_factory=dict)
    unknown: list[tuple[bytes, bytes]] = field(default_factory=list)


def _is_p2tr(script: bytes) -> bool:
    return len(script) == 34 and script[0] == 0x51 and script[1] == 0x20


# ---------------------------------------------------------------------------
# Key-value map encoding
# ---------------------------------------------------------------------------


def _write_pair(buf: list[bytes], key_type: int, key_data: bytes, value: bytes) -> None:
    buf.append(ser_bytes(encode_varint(key_type) + key_data))
    buf.append(ser_bytes(value))


def _read_map(stream: BytesIO) -> list[tuple[int, bytes, bytes, bytes]]:
    """Read one map; returns ``(key_type, key_data, raw_key, value)`` tuples."""
    pairs: list[tuple[int, bytes, bytes, bytes]] = []
    seen: set[bytes] = set()
    while True:
        key_len = read_varint(stream)
        if key_len == 0:
            return pairs
        raw_key = stream.read(key_len)
        if len(raw_key) != key_len:
            msg = "PSBT key truncated"
            raise PsbtError(msg)
        if raw_key in seen:
            msg = f"duplicate PSBT key {raw_key.hex()}"
            raise PsbtError(msg)
        seen.add(raw_key)
        key_stream = BytesIO(raw_key)
        key_type = read_varint(key_stream)
        key_data = key_stream.read()
        value = read_bytes(stream)
        pairs.append((key_type, key_data, raw_key, value))


def _expect_key_len(key_type: int, key_data: bytes, size: int) -> None:
    if len(key_data) != size:
        msg = f"PSBT key type {key_type:#x} expects {size} bytes of key data, got {len(key_data)}"
        raise PsbtError(msg)


def _parse_input(pairs: list[tuple[int, bytes, bytes, bytes]]) -> PsbtInput:
    inp = PsbtInput()
    for key_type, key_data, raw_key, value in pairs:
        if key_type == PSBT_IN_NON_WITNESS_UTXO:
            _expect_key_len(key_type, key_data, 0)
            inp.non_witness_utxo = value
        elif key_type == PSBT_IN_WITNESS_UTXO:
            _expect_key_len(key_type, key_data, 0)
            inp.witness_utxo = TxOutput.deserialize(BytesIO(value))
        elif key_type == PSBT_IN_PARTIAL_SIG:
            inp.partial_sigs[key_data] = value
        elif key_type == PSBT_IN_SIGHASH_TYPE:
            _expect_key_len(key_type, key_data, 0)
            inp.sighash_type = struct.unpack("<I", value)[0]
        elif key_type == PSBT_IN_REDEEM_SCRIPT:
            inp.redeem_script = value
        elif key_type == PSBT_IN_WITNESS_SCRIPT:
            inp.witness_script = value
        elif key_type == PSBT_IN_BIP32_DERIVATION:
            inp.bip32_derivations[key_data] = value
        elif key_type == PSBT_IN_FINAL_SCRIPTSIG:
            inp.final_script_sig = value
        elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
            inp.final_script_witness = deserialize_witness(BytesIO(value))
        elif key_type == PSBT_IN_TAP_KEY_SIG:
            _expect_key_len(key_type, key_data, 0)
            inp.tap_key_sig = value
        elif key_type == PSBT_IN_TAP_SCRIPT_SIG:
            _expect_key_len(key_type, key_data, 64)
            inp.tap_script_sigs[(key_data[:32], key_data[32:])] = value
        elif key_type == PSBT_IN_TAP_LEAF_SCRIPT:
            if not value:
                msg = "empty tap leaf script value"
                raise PsbtError(msg)
            inp.tap_leaf_scripts.append(
                TapLeafScript(control_block=key_data, script=value[:-1], leaf_version=value[-1])
            )
        elif key_type == PSBT_IN_TAP_BIP32_DERIVATION:
            inp.tap_bip32_derivations[key_data] = value
        elif key_type == PSBT_IN_TAP_INTERNAL_KEY:
            _expect_key_len(key_type, key_data, 0)
            inp.tap_internal_key = value
        elif key_type == PSBT_IN_TAP_MERKLE_ROOT:
            _expect_key_len(key_type, key_data, 0)
            inp.tap_merkle_root = value
        else:
            inp.unknown.append((raw_key, value))
    return inp


def _serialize_input(inp: PsbtInput) -> bytes:
    buf: list[bytes] = []
    if inp.non_witness_utxo is not None:
        _write_pair(buf, PSBT_IN_NON_WITNESS_UTXO, b"", inp.non_witness_utxo)
    if inp.witness_utxo is not None:
        _write_pair(buf, PSBT_IN_WITNESS_UTXO, b"", inp.witness_utxo.serialize())
    for pubkey, sig in inp.partial_sigs.items():
        _write_pair(buf, PSBT_IN_PARTIAL_SIG, pubkey, sig)
    if inp.sighash_type is not None:
        _write_pair(buf, PSBT_IN_SIGHASH_TYPE, b"", struct.pack("<I", inp.sighash_type))
    if inp.redeem_script is not None:
        _write_pair(buf, PSBT_IN_REDEEM_SCRIPT, b"", inp.redeem_script)
    if inp.witness_script is not None:
        _write_pair(buf, PSBT_IN_WITNESS_SCRIPT, b"", inp.witness_script)
    for pubkey, origin in inp.bip32_derivations.items():
        _write_pair(buf, PSBT_IN_BIP32_DERIVATION, pubkey, origin)
    if inp.final_script_sig is not None:
        _write_pair(buf, PSBT_IN_FINAL_SCRIPTSIG, b"", inp.final_script_sig)
    if inp.final_script_witness is not None:
        _write_pair(buf, PSBT_IN_FINAL_SCRIPTWITNESS, b"", serialize_witness(inp.final_script_witness))
    if inp.tap_key_sig is not None:
        _write_pair(buf, PSBT_IN_TAP_KEY_SIG, b"", inp.tap_key_sig)
    for (pubkey, leaf_hash), sig in inp.tap_script_sigs.items():
        _write_pair(buf, PSBT_IN_TAP_SCRIPT_SIG, pubkey + leaf_hash, sig)
    for leaf in inp.tap_leaf_scripts:
        _write_pair(buf, PSBT_IN_TAP_LEAF_SCRIPT, leaf.control_block, leaf.script + bytes([leaf.leaf_version]))
    for pubkey, origin in inp.tap_bip32_derivations.items():
        _write_pair(buf, PSBT_IN_TAP_BIP32_DERIVATION, pubkey, origin)
    if inp.tap_internal_key is not None:
        _write_pair(buf, PSBT_IN_TAP_INTERNAL_KEY, b"", inp.tap_internal_key)
    if inp.tap_merkle_root is not None:
        _write_pair(buf, PSBT_IN_TAP_MERKLE_ROOT, b"", inp.tap_merkle_root)
    for raw_key, value in inp.unknown:
        buf.append(ser_bytes(raw_key) + ser_bytes(value))
    return b"".join(buf) + b"\x00"


def _parse_output(pairs: list[tuple[int, bytes, bytes, bytes]]) -> PsbtOutput:
    out = PsbtOutput()
    for key_type, key_data, raw_key, value in pairs:
        if key_type == PSBT_OUT_REDEEM_SCRIPT:
            out.redeem_script = value
        elif key_type == PSBT_OUT_WITNESS_SCRIPT:
            out.witness_script = value
        elif key_type == PSBT_OUT_BIP32_DERIVATION:
            out.bip32_derivations[key_data] = value
        elif key_type == PSBT_OUT_TAP_INTERNAL_KEY:
            out.tap_internal_key = value
        elif key_type == PSBT_OUT_TAP_TREE:
            out.tap_tree = value
        elif key_type == PSBT_OUT_TAP_BIP32_DERIVATION:
            out.tap_bip32_derivations[key_data] = value
        else:
            out.unknown.append((raw_key, value))
    return out


def _serialize_output(out: PsbtOutput) -> bytes:
    buf: list[bytes] = []
    if out.redeem_script is not None:
        _write_pair(buf, PSBT_OUT_REDEEM_SCRIPT, b"", out.redeem_script)
    if out.witness_script is not None:
        _write_pair(buf, PSBT_OUT_WITNESS_SCRIPT, b"", out.witness_script)
    for pubkey, origin in out.bip32_derivations.items():
        _write_pair(buf, PSBT_OUT_BIP32_DERIVATION, pubkey, origin)
    if out.tap_internal_key is not None:
        _write_pair(buf, PSBT_OUT_TAP_INTERNAL_KEY, b"", out.tap_internal_key)
    if out.tap_tree is not None:
        _write_pair(buf, PSBT_OUT_TAP_TREE, b"", out.tap_tree)
    for pubkey, origin in out.tap_bip32_derivations.items():
        _write_pair(buf, PSBT_OUT_TAP_BIP32_DERIVATION, pubkey, origin)
    for raw_key, value in out.unknown:
        buf.append(ser_bytes(raw_key) + ser_bytes(value))
    return b"".join(buf) + b"\x00"


# ---------------------------------------------------------------------------
# PSBT
# ---------------------------------------------------------------------------


@dataclass
class Psbt:
    """A version-0 PSBT: the unsigned transaction plus per-input/output maps."""

    tx: Transaction = field(default_factory=Transaction)
    inputs: list[PsbtInput] = field(default_factory=list)
    outputs: list[PsbtOutput] = field(default_factory=list)
    version: int | None = None
    unknown: list[tuple[bytes, bytes]] = field(default_factory=list)

    # -- Construction -----------------------------------------------------

    @classmethod
    def from_transaction(cls, tx: Transaction) -> Psbt:
        """Wrap *tx* (scriptSigs and witnesses stripped) in an empty PSBT."""
        unsigned = tx.copy()
        for inp in unsigned.inputs:
            inp.script_sig = b""
            inp.witness = []
        return cls(
            tx=unsigned,
            inputs=[PsbtInput() for _ in unsigned.inputs],
            outputs=[PsbtOutput() for _ in unsigned.outputs],
        )

    def add_input(
        self,
        txid: str,
        vout: int,
        *,
        witness_utxo: TxOutput | None = None,
        tap_leaf_scripts: list[TapLeafScript] | None = None,
        tap_internal_key: bytes | None = None,
        sequence: int | None = None,
    ) -> PsbtInput:
        """Append an input spending ``txid:vout``."""
        txin = TxInput.from_outpoint(txid, vout)
        if sequence is not None:
            txin.sequence = sequence
        self.tx.inputs.append(txin)
        record = PsbtInput(
            witness_utxo=witness_utxo,
            tap_leaf_scripts=list(tap_leaf_scripts or []),
            tap_internal_key=tap_internal_key,
        )
        self.inputs.append(record)
        return record

    def add_output(self, script_pubkey: bytes, value: int) -> PsbtOutput:
        """Append an output paying *value* satoshis to *script_pubkey*."""
        self.tx.outputs.append(TxOutput(value=value, script_pubkey=script_pubkey))
        record = PsbtOutput()
        self.outputs.append(record)
        return record

    # -- Encoding ---------------------------------------------------------

    @classmethod
    def from_bytes(cls, raw: bytes) -> Psbt:
        """Parse a serialized PSBT.

        Raises:
            PsbtError: On malformed data.
        """
        if not raw.startswith(PSBT_MAGIC):
            msg = "missing PSBT magic bytes"
            raise PsbtError(msg)
        stream = BytesIO(raw[len(PSBT_MAGIC) :])
        try:
            tx: Transaction | None = None
            version: int | None = None
            unknown: list[tuple[bytes, bytes]] = []
            for key_type, key_data, raw_key, value in _read_map(stream):
                if key_type == PSBT_GLOBAL_UNSIGNED_TX:
                    _expect_key_len(key_type, key_data, 0)
                    tx = Transaction.from_bytes(value)
                elif key_type == PSBT_GLOBAL_VERSION:
                    version = struct.unpack("<I", value)[0]
                else:
                    unknown.append((raw_key, value))
            if tx is None:
                msg = "PSBT has no unsigned transaction"
                raise PsbtError(msg)
            if any(i.script_sig or i.witness for i in tx.inputs):
                msg = "PSBT unsigned transaction has signatures"
                raise PsbtError(msg)
            inputs = [_parse_input(_read_map(stream)) for _ in tx.inputs]
            outputs = [_parse_output(_read_map(stream)) for _ in tx.outputs]
        except PsbtError:
            raise
        except (ValueError, struct.error, KeyError) as exc:
            msg = f"malformed PSBT: {exc}"
            raise PsbtError(msg) from exc
        return cls(tx=tx, inputs=inputs, outputs=outputs, version=version, unknown=unknown)

    @classmethod
    def from_hex(cls, hex_str: str) -> Psbt:
        try:
            raw = bytes.fromhex(hex_str.strip())
        except ValueError as exc:
            msg = "PSBT is not valid hex"
            raise PsbtError(msg) from exc
        return cls.from_bytes(raw)

    @classmethod
    def from_base64(cls, b64: str) -> Psbt:
        try:
            raw = base64.b64decode(b64.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            msg = "PSBT is not valid base64"
            raise PsbtError(msg) from exc
        return cls.from_bytes(raw)

    def serialize(self) -> bytes:
        buf: list[bytes] = [PSBT_MAGIC]
        globals_: list[bytes] = []
        _write_pair(globals_, PSBT_GLOBAL_UNSIGNED_TX, b"", self.tx.serialize(include_witness=False))
        if self.version is not None:
            _write_pair(globals_, PSBT_GLOBAL_VERSION, b"", struct.pack("<I", self.version))
        for raw_key, value in self.unknown:
            globals_.append(ser_bytes(raw_key) + ser_bytes(value))
        buf.append(b"".join(globals_) + b"\x00")
        buf.extend(_serialize_input(inp) for inp in self.inputs)
        buf.extend(_serialize_output(out) for out in self.outputs)
        return b"".join(buf)

    def to_hex(self) -> str:
        return self.serialize().hex()

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    # -- Amounts ----------------------------------------------------------

    def prevouts(self) -> list[TxOutput]:
        """The outputs spent by each input.

        Raises:
            PsbtError: If an input has neither a witness nor a non-witness UTXO.
        """
        result: list[TxOutput] = []
        for index, (txin, inp) in enumerate(zip(self.tx.inputs, self.inputs, strict=True)):
            if inp.witness_utxo is not None:
                result.append(inp.witness_utxo)
            elif inp.non_witness_utxo is not None:
                prev = Transaction.from_bytes(inp.non_witness_utxo)
                if prev.txid() != txin.prev_tx_id_hex:
                    msg = f"input {index}: non-witness UTXO does not match outpoint"
                    raise PsbtError(msg)
                result.append(prev.outputs[txin.prev_tx_out_index])
            else:
                msg = f"input {index} has no UTXO information"
                raise PsbtError(msg)
        return result

    def input_total(self) -> int:
        return sum(p.value for p in self.prevouts())

    def output_total(self) -> int:
        return sum(o.value for o in self.tx.outputs)

    def fee(self) -> int:
        """Input sum minus output sum in satoshis."""
        return self.input_total() - self.output_total()

    # -- Signing ----------------------------------------------------------

    def tapscript_sighash(self, index: int, leaf: TapLeafScript, hash_type: int | None = None) -> bytes:
        """BIP341 script-path sighash for spending input *index* via *leaf*."""
        effective = self.inputs[index].sighash_type if hash_type is None else hash_type
        return taproot_sighash(
            self.tx,
            index,
            self.prevouts(),
            SIGHASH_DEFAULT if effective is None else effective,
            leaf_hash=leaf.leaf_hash,
        )

    def sign_tapscript_input(
        self,
        index: int,
        seckey: int,
        *,
        aux_rand: bytes | None = None,
    ) -> int:
        """Add script-path signatures by *seckey* for every leaf that checks its key.

        Returns:
            Number of signatures added.

        Raises:
            PsbtError: If no leaf script of the input involves the key.
        """
        inp = self.inputs[index]
        xonly, _ = xonly_public_key(seckey)
        hash_type = SIGHASH_DEFAULT if inp.sighash_type is None else inp.sighash_type
        added = 0
        for leaf in inp.tap_leaf_scripts:
            if xonly not in checked_keys(leaf.script):
                continue
            digest = self.tapscript_sighash(index, leaf, hash_type)
            sig = schnorr_sign(digest, seckey, aux_rand)
            inp.tap_script_sigs[(xonly, leaf.leaf_hash)] = encode_schnorr_signature(sig, hash_type)
            added += 1
        if not added:
            msg = f"input {index}: no tap leaf script checks key {xonly.hex()}"
            raise PsbtError(msg)
        return added

    def verify_tapscript_signature(self, index: int, pubkey: bytes, leaf: TapLeafScript, sig: bytes) -> bool:
        """Verify a 64/65-byte script-path signature for input *index*."""
        try:
            raw, hash_type = decode_schnorr_signature(sig)
            digest = self.tapscript_sighash(index, leaf, hash_type)
        except ValueError:
            return False
        return schnorr_verify(digest, pubkey, raw)

    # -- Finalization -----------------------------------------------------

    def finalize_input(self, index: int, witness_builder: Callable[[PsbtInput], list[bytes]]) -> None:
        """Set the final witness of input *index* and drop its signing data."""
        inp = self.inputs[index]
        inp.final_script_witness = witness_builder(inp)
        inp.clear_signing_data()

    def is_finalized(self) -> bool:
        return all(inp.is_finalized for inp in self.inputs)

    def extract_transaction(self) -> Transaction:
        """Build the network transaction from the finalized inputs.

        Raises:
            PsbtError: If any input is not finalized.
        """
        tx = self.tx.copy()
        for index, (txin, inp) in enumerate(zip(tx.inputs, self.inputs, strict=True)):
            if not inp.is_finalized:
                msg = f"input {index} is not finalized"
                raise PsbtError(msg)
            txin.script_sig = inp.final_script_sig or b""
            txin.witness = list(inp.final_script_witness or [])
        return tx
