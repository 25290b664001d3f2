"""Bitcoin script building: tapscript leaves, segwit outputs, type detection.

Provides construction and parsing of the scripts used by the channel:
- Minimal data / integer pushes
- The 2-of-2 cooperative leaf and the CSV-delayed hub refund leaf
- Segwit v0 / v1 output scripts and script type detection
- A simple tokenizer for reading key checks out of a leaf script
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Opcodes
# ---------------------------------------------------------------------------


class OpCode(int, enum.Enum):
    """Opcodes used by channel scripts."""

    OP_0 = 0x00
    OP_PUSHDATA1 = 0x4C
    OP_PUSHDATA2 = 0x4D
    OP_PUSHDATA4 = 0x4E
    OP_1NEGATE = 0x4F
    OP_1 = 0x51
    OP_16 = 0x60
    OP_RETURN = 0x6A
    OP_DROP = 0x75
    OP_DUP = 0x76
    OP_EQUAL = 0x87
    OP_EQUALVERIFY = 0x88
    OP_HASH160 = 0xA9
    OP_CHECKSIG = 0xAC
    OP_CHECKSIGVERIFY = 0xAD
    OP_CHECKSEQUENCEVERIFY = 0xB2
    OP_CHECKSIGADD = 0xBA


_KEY_CHECK_OPS = (OpCode.OP_CHECKSIG, OpCode.OP_CHECKSIGVERIFY, OpCode.OP_CHECKSIGADD)


# ---------------------------------------------------------------------------
# Script Type
# ---------------------------------------------------------------------------


class ScriptType(enum.StrEnum):
    """Known output script types."""

    P2PKH = "pubkeyhash"
    P2SH = "scripthash"
    P2WPKH = "witness_v0_keyhash"
    P2WSH = "witness_v0_scripthash"
    P2TR = "witness_v1_taproot"
    NULL_DATA = "nulldata"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Push helpers
# ---------------------------------------------------------------------------


def push_data(data: bytes) -> bytes:
    """Encode a data push operation using minimal encoding rules."""
    length = len(data)
    if length == 0:
        return bytes([OpCode.OP_0])
    if length <= 0x4B:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OpCode.OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OpCode.OP_PUSHDATA2]) + struct.pack("<H", length) + data
    return bytes([OpCode.OP_PUSHDATA4]) + struct.pack("<I", length) + data


def encode_script_num(n: int) -> bytes:
    """Encode an integer as a minimal little-endian sign-magnitude script number."""
    if n == 0:
        return b""
    negative = n < 0
    value = abs(n)
    result = bytearray()
    while value:
        result.append(value & 0xFF)
        value >>= 8
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80
    return bytes(result)


def push_int(n: int) -> bytes:
    """Push an integer, using ``OP_0``/``OP_1NEGATE``/``OP_1..OP_16`` when possible."""
    if n == 0:
        return bytes([OpCode.OP_0])
    if n == -1:
        return bytes([OpCode.OP_1NEGATE])
    if 1 <= n <= 16:
        return bytes([OpCode.OP_1 + n - 1])
    return push_data(encode_script_num(n))


# ---------------------------------------------------------------------------
# Channel leaf scripts
# ---------------------------------------------------------------------------


def multisig_leaf_script(hub_key: bytes, user_key: bytes) -> bytes:
    """Build the cooperative 2-of-2 tapscript leaf.

    ``<hub_x> OP_CHECKSIGVERIFY <user_x> OP_CHECKSIG``

    The hub key is checked first, against the top stack item, so the
    satisfying witness is ``[user_sig, hub_sig]``.
    """
    _require_xonly(hub_key, "hub")
    _require_xonly(user_key, "user")
    return (
        push_data(hub_key)
        + bytes([OpCode.OP_CHECKSIGVERIFY])
        + push_data(user_key)
        + bytes([OpCode.OP_CHECKSIG])
    )


def timelock_leaf_script(hub_key: bytes, delay: int) -> bytes:
    """Build the hub refund leaf spendable after a relative delay.

    ``<delay> OP_CHECKSEQUENCEVERIFY OP_DROP <hub_x> OP_CHECKSIG``
    """
    _require_xonly(hub_key, "hub")
    if delay <= 0:
        msg = f"CSV delay must be positive, got {delay}"
        raise ValueError(msg)
    return (
        push_int(delay)
        + bytes([OpCode.OP_CHECKSEQUENCEVERIFY, OpCode.OP_DROP])
        + push_data(hub_key)
        + bytes([OpCode.OP_CHECKSIG])
    )


def _require_xonly(key: bytes, label: str) -> None:
    if len(key) != 32:
        msg = f"{label} key must be 32-byte x-only, got {len(key)} bytes"
        raise ValueError(msg)


# ---------------------------------------------------------------------------
# Output scripts
# ---------------------------------------------------------------------------


def p2tr_script(output_key: bytes) -> bytes:
    """``OP_1 <32-byte output key>``."""
    _require_xonly(output_key, "output")
    return bytes([OpCode.OP_1]) + push_data(output_key)


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    """``OP_0 <20-byte key hash>``."""
    if len(pubkey_hash) != 20:
        msg = f"pubkey_hash must be 20 bytes, got {len(pubkey_hash)}"
        raise ValueError(msg)
    return bytes([OpCode.OP_0]) + push_data(pubkey_hash)


def detect_script_type(script: bytes) -> ScriptType:
    """Classify a locking script."""
    n = len(script)
    if n == 0:
        return ScriptType.UNKNOWN
    if (
        n == 25
        and script[0] == OpCode.OP_DUP
        and script[1] == OpCode.OP_HASH160
        and script[2] == 0x14
        and script[23] == OpCode.OP_EQUALVERIFY
        and script[24] == OpCode.OP_CHECKSIG
    ):
        return ScriptType.P2PKH
    if n == 23 and script[0] == OpCode.OP_HASH160 and script[1] == 0x14 and script[22] == OpCode.OP_EQUAL:
        return ScriptType.P2SH
    if n == 22 and script[0] == OpCode.OP_0 and script[1] == 0x14:
        return ScriptType.P2WPKH
    if n == 34 and script[0] == OpCode.OP_0 and script[1] == 0x20:
        return ScriptType.P2WSH
    if n == 34 and script[0] == OpCode.OP_1 and script[1] == 0x20:
        return ScriptType.P2TR
    if script[0] == OpCode.OP_RETURN:
        return ScriptType.NULL_DATA
    return ScriptType.UNKNOWN


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScriptChunk:
    """One parsed script element: an opcode, or a data push with its payload."""

    opcode: int
    data: bytes | None = None


def parse_script(script: bytes) -> list[ScriptChunk]:
    """Split *script* into opcodes and data pushes.

    Raises:
        ValueError: If a push runs past the end of the script.
    """
    chunks: list[ScriptChunk] = []
    i = 0
    n = len(script)
    while i < n:
        op = script[i]
        i += 1
        if 0x01 <= op <= 0x4B:
            size = op
        elif op == OpCode.OP_PUSHDATA1:
            size = script[i]
            i += 1
        elif op == OpCode.OP_PUSHDATA2:
            size = struct.unpack_from("<H", script, i)[0]
            i += 2
        elif op == OpCode.OP_PUSHDATA4:
            size = struct.unpack_from("<I", script, i)[0]
            i += 4
        else:
            chunks.append(ScriptChunk(op))
            continue
        if i + size > n:
            msg = "script push exceeds script length"
            raise ValueError(msg)
        chunks.append(ScriptChunk(op, script[i : i + size]))
        i += size
    return chunks


def checked_keys(script: bytes) -> list[bytes]:
    """Return the 32-byte keys consumed by signature checks, in script order.

    A key counts when its push is immediately followed by ``OP_CHECKSIG``,
    ``OP_CHECKSIGVERIFY`` or ``OP_CHECKSIGADD``.
    """
    chunks = parse_script(script)
    keys: list[bytes] = []
    for current, following in zip(chunks, chunks[1:], strict=False):
        if current.data is not None and len(current.data) == 32 and following.opcode in _KEY_CHECK_OPS:
            keys.append(current.data)
    return keys
