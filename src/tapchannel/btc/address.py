"""Bitcoin addresses: Base58Check, bech32 / bech32m, scriptPubKey mapping.

Supports every standard output type a channel wallet may pay to:
- P2PKH / P2SH (Base58Check, BIP13)
- P2WPKH / P2WSH (bech32, BIP173)
- P2TR (bech32m, BIP350)
"""

from __future__ import annotations

from dataclasses import dataclass

import bech32

from tapchannel.utils.crypto import sha256d

# ---------------------------------------------------------------------------
# Network parameters
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NetworkParams:
    """Address prefixes for one Bitcoin network."""

    name: str
    bech32_hrp: str
    p2pkh_version: int
    p2sh_version: int


NETWORKS: dict[str, NetworkParams] = {
    "mainnet": NetworkParams("mainnet", "bc", 0x00, 0x05),
    "testnet": NetworkParams("testnet", "tb", 0x6F, 0xC4),
    "signet": NetworkParams("signet", "tb", 0x6F, 0xC4),
    "regtest": NetworkParams("regtest", "bcrt", 0x6F, 0xC4),
}

_BECH32_HRPS = frozenset(params.bech32_hrp for params in NETWORKS.values())


def network_params(network: str) -> NetworkParams:
    """Look up the address parameters for *network*.

    Raises:
        ValueError: If the network name is unknown.
    """
    try:
        return NETWORKS[str(network)]
    except KeyError:
        msg = f"unknown network: {network}"
        raise ValueError(msg) from None


# ---------------------------------------------------------------------------
# Base58Check
# ---------------------------------------------------------------------------

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def base58check_encode(payload: bytes) -> str:
    """Encode *payload* with a 4-byte double-SHA256 checksum."""
    raw = payload + sha256d(payload)[:4]
    n = int.from_bytes(raw, "big")
    chars: list[str] = []
    while n:
        n, rem = divmod(n, 58)
        chars.append(_B58_ALPHABET[rem])
    zeros = len(raw) - len(raw.lstrip(b"\x00"))
    return "1" * zeros + "".join(reversed(chars))


def base58check_decode(text: str) -> bytes:
    """Decode a Base58Check string and verify its checksum.

    Raises:
        ValueError: On invalid characters or a checksum mismatch.
    """
    n = 0
    for char in text:
        idx = _B58_ALPHABET.find(char)
        if idx < 0:
            msg = f"invalid base58 character {char!r}"
            raise ValueError(msg)
        n = n * 58 + idx
    body = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    raw = b"\x00" * (len(text) - len(text.lstrip("1"))) + body
    if len(raw) < 5:
        msg = "Base58Check string too short"
        raise ValueError(msg)
    payload, checksum = raw[:-4], raw[-4:]
    if sha256d(payload)[:4] != checksum:
        msg = "Base58Check checksum mismatch"
        raise ValueError(msg)
    return payload


# ---------------------------------------------------------------------------
# Segwit addresses (BIP173 bech32, BIP350 bech32m)
# ---------------------------------------------------------------------------


def encode_segwit_address(hrp: str, version: int, program: bytes) -> str:
    """Encode a segwit address (bech32 for v0, bech32m for v1+).

    Raises:
        ValueError: If the version or program length is not a valid witness program.
    """
    address = bech32.encode(hrp, version, program)
    if address is None:
        msg = f"cannot encode witness v{version} program of {len(program)} bytes"
        raise ValueError(msg)
    return address


def decode_segwit_address(hrp: str, address: str) -> tuple[int, bytes]:
    """Decode a segwit address into ``(witness_version, program)``.

    Checksum variant, case and program length rules are enforced by ``bech32``.

    Raises:
        ValueError: If the address is malformed or belongs to another network.
    """
    got_hrp = address.lower().rpartition("1")[0]
    if got_hrp != hrp:
        msg = f"address prefix {got_hrp!r} does not match network prefix {hrp!r}"
        raise ValueError(msg)
    version, program = bech32.decode(hrp, address)
    if version is None or program is None:
        msg = f"invalid segwit address: {address}"
        raise ValueError(msg)
    return version, bytes(program)


# ---------------------------------------------------------------------------
# Address <-> scriptPubKey
# ---------------------------------------------------------------------------


def _witness_script(version: int, program: bytes) -> bytes:
    opcode = 0x00 if version == 0 else 0x50 + version
    return bytes([opcode, len(program)]) + program


def address_to_script(address: str, network: str) -> bytes:
    """Return the scriptPubKey paying to *address* on *network*.

    Raises:
        ValueError: If the address is invalid for the network.
    """
    params = network_params(network)
    if address.lower().rpartition("1")[0] in _BECH32_HRPS:
        version, program = decode_segwit_address(params.bech32_hrp, address)
        return _witness_script(version, program)

    payload = base58check_decode(address)
    if len(payload) != 21:
        msg = "base58 address payload must be 21 bytes"
        raise ValueError(msg)
    version_byte, body = payload[0], payload[1:]
    if version_byte == params.p2pkh_version:
        return b"\x76\xa9\x14" + body + b"\x88\xac"
    if version_byte == params.p2sh_version:
        return b"\xa9\x14" + body + b"\x87"
    msg = f"address version {version_byte:#x} not valid on {params.name}"
    raise ValueError(msg)


def script_to_address(script: bytes, network: str) -> str | None:
    """Render a standard scriptPubKey as an address, or None if non-standard."""
    params = network_params(network)
    if len(script) == 25 and script[:3] == b"\x76\xa9\x14" and script[23:] == b"\x88\xac":
        return base58check_encode(bytes([params.p2pkh_version]) + script[3:23])
    if len(script) == 23 and script[:2] == b"\xa9\x14" and script[22] == 0x87:
        return base58check_encode(bytes([params.p2sh_version]) + script[2:22])
    if 4 <= len(script) <= 42 and script[1] == len(script) - 2:
        if script[0] == 0x00:
            return encode_segwit_address(params.bech32_hrp, 0, script[2:])
        if 0x51 <= script[0] <= 0x60:
            return encode_segwit_address(params.bech32_hrp, script[0] - 0x50, script[2:])
    return None


def p2tr_address(output_key: bytes, network: str) -> str:
    """Return the bech32m P2TR address for a 32-byte x-only output key."""
    return encode_segwit_address(network_params(network).bech32_hrp, 1, output_key)
