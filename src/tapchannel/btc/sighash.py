"""BIP341 signature hashing for Taproot key-path and script-path spends."""

from __future__ import annotations

import struct
from typing import TYPE_CHECKING

from tapchannel.btc.transaction import ser_bytes
from tapchannel.utils.crypto import sha256, tagged_hash

if TYPE_CHECKING:
    from tapchannel.btc.transaction import Transaction, TxOutput

SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80

_VALID_HASH_TYPES = frozenset({0x00, 0x01, 0x02, 0x03, 0x81, 0x82, 0x83})

# Tapscript key version and "no OP_CODESEPARATOR executed" marker
_KEY_VERSION = 0x00
_NO_CODESEP = 0xFFFFFFFF


def taproot_sighash(
    tx: Transaction,
    input_index: int,
    prevouts: list[TxOutput],
    hash_type: int = SIGHASH_DEFAULT,
    *,
    leaf_hash: bytes | None = None,
    annex: bytes | None = None,
) -> bytes:
    """Compute the BIP341 signature hash for one input.

    Args:
        tx: The spending transaction.
        input_index: Index of the input being signed.
        prevouts: The outputs spent by every input, in input order.
        hash_type: Sighash flag byte.
        leaf_hash: TapLeaf hash for a script-path spend; None for key-path.
        annex: Optional annex (must start with 0x50).

    Returns:
        The 32-byte ``TapSighash`` digest.

    Raises:
        ValueError: On an invalid hash type, a prevout count mismatch, or
            ``SIGHASH_SINGLE`` without a matching output.
    """
    if hash_type not in _VALID_HASH_TYPES:
        msg = f"invalid taproot sighash type {hash_type:#x}"
        raise ValueError(msg)
    if len(prevouts) != len(tx.inputs):
        msg = f"expected {len(tx.inputs)} prevouts, got {len(prevouts)}"
        raise ValueError(msg)
    if not 0 <= input_index < len(tx.inputs):
        msg = f"input index {input_index} out of range"
        raise ValueError(msg)

    output_type = hash_type & 0x03 or SIGHASH_ALL
    anyone_can_pay = bool(hash_type & SIGHASH_ANYONECANPAY)

    msg_parts = [bytes([hash_type]), struct.pack("<i", tx.version), struct.pack("<I", tx.locktime)]

    if not anyone_can_pay:
        msg_parts.append(sha256(b"".join(i.serialize_outpoint() for i in tx.inputs)))
        msg_parts.append(sha256(b"".join(struct.pack("<q", p.value) for p in prevouts)))
        msg_parts.append(sha256(b"".join(ser_bytes(p.script_pubkey) for p in prevouts)))
        msg_parts.append(sha256(b"".join(struct.pack("<I", i.sequence) for i in tx.inputs)))
    if output_type == SIGHASH_ALL:
        msg_parts.append(sha256(b"".join(o.serialize() for o in tx.outputs)))

    ext_flag = 1 if leaf_hash is not None else 0
    spend_type = ext_flag * 2 + (1 if annex is not None else 0)
    msg_parts.append(bytes([spend_type]))

    if anyone_can_pay:
        inp = tx.inputs[input_index]
        prevout = prevouts[input_index]
        msg_parts.append(inp.serialize_outpoint())
        msg_parts.append(struct.pack("<q", prevout.value))
        msg_parts.append(ser_bytes(prevout.script_pubkey))
        msg_parts.append(struct.pack("<I", inp.sequence))
    else:
        msg_parts.append(struct.pack("<I", input_index))

    if annex is not None:
        msg_parts.append(sha256(ser_bytes(annex)))

    if output_type == SIGHASH_SINGLE:
        if input_index >= len(tx.outputs):
            msg = "SIGHASH_SINGLE without a corresponding output"
            raise ValueError(msg)
        msg_parts.append(sha256(tx.outputs[input_index].serialize()))

    if leaf_hash is not None:
        msg_parts.append(leaf_hash + bytes([_KEY_VERSION]) + struct.pack("<I", _NO_CODESEP))

    return tagged_hash("TapSighash", b"\x00" + b"".join(msg_parts))


def encode_schnorr_signature(sig: bytes, hash_type: int) -> bytes:
    """Append the sighash byte unless it is ``SIGHASH_DEFAULT``."""
    if hash_type == SIGHASH_DEFAULT:
        return sig
    return sig + bytes([hash_type])


def decode_schnorr_signature(sig: bytes) -> tuple[bytes, int]:
    """Split a 64/65-byte Taproot signature into ``(sig64, hash_type)``.

    Raises:
        ValueError: On any other length or an explicit 0x00 hash type.
    """
    if len(sig) == 64:
        return sig, SIGHASH_DEFAULT
    if len(sig) == 65:
        if sig[64] == SIGHASH_DEFAULT:
            msg = "65-byte signature must not carry SIGHASH_DEFAULT"
            raise ValueError(msg)
        return sig[:64], sig[64]
    msg = f"taproot signature must be 64 or 65 bytes, got {len(sig)}"
    raise ValueError(msg)
