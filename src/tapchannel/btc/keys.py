"""secp256k1 keys: x-only public keys, BIP340 Schnorr, Taproot tweaks.

Curve operations run in libsecp256k1 through ``coincurve``:
- Private key parsing (hex scalar or WIF)
- Compressed / x-only public key encoding and ``lift_x``
- BIP340 Schnorr signing and verification
- BIP341 output key tweaking
"""

from __future__ import annotations

import secrets

from coincurve import PrivateKey, PublicKey, PublicKeyXOnly

from tapchannel.btc.address import base58check_decode

# secp256k1 group order and field prime
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F

# WIF version bytes
_WIF_MAINNET = 0x80
_WIF_TESTNET = 0xEF


def _secret_bytes(seckey: int) -> bytes:
    if not 1 <= seckey < _N:
        msg = "secret key out of range"
        raise ValueError(msg)
    return seckey.to_bytes(32, "big")


def _split_compressed(point: PublicKey) -> tuple[bytes, int]:
    sec = point.format(compressed=True)
    return sec[1:], sec[0] & 1


def lift_x(x_only: bytes) -> PublicKey:
    """Return the curve point with the given x coordinate and an even y.

    Args:
        x_only: 32-byte big-endian x coordinate.

    Raises:
        ValueError: If *x_only* is not the x coordinate of a curve point.
    """
    if len(x_only) != 32:
        msg = f"x-only key must be 32 bytes, got {len(x_only)}"
        raise ValueError(msg)
    if int.from_bytes(x_only, "big") >= _P:
        msg = "x coordinate out of field range"
        raise ValueError(msg)
    try:
        return PublicKey(b"\x02" + x_only)
    except ValueError as exc:
        msg = "x coordinate is not on the curve"
        raise ValueError(msg) from exc


# ---------------------------------------------------------------------------
# Private keys
# ---------------------------------------------------------------------------


def parse_private_key(value: str) -> int:
    """Parse a private key given as 64 hex chars or WIF.

    Returns:
        The secret scalar.

    Raises:
        ValueError: If the value is malformed or out of range.
    """
    value = value.strip()
    if len(value) == 64:
        try:
            scalar = int(value, 16)
        except ValueError as exc:
            msg = "private key is not valid hex"
            raise ValueError(msg) from exc
    else:
        payload = base58check_decode(value)
        if payload[0] not in (_WIF_MAINNET, _WIF_TESTNET):
            msg = f"unknown WIF version byte {payload[0]:#x}"
            raise ValueError(msg)
        body = payload[1:]
        if len(body) == 33 and body[-1] == 0x01:
            body = body[:-1]
        if len(body) != 32:
            msg = "WIF payload has unexpected length"
            raise ValueError(msg)
        scalar = int.from_bytes(body, "big")
    if not 1 <= scalar < _N:
        msg = "private key scalar out of range"
        raise ValueError(msg)
    return scalar


def xonly_public_key(seckey: int) -> tuple[bytes, int]:
    """Return the x-only public key and y parity (0 even, 1 odd) for *seckey*."""
    return _split_compressed(PrivateKey(_secret_bytes(seckey)).public_key)


def compressed_public_key(seckey: int) -> bytes:
    """Return the 33-byte SEC compressed public key for *seckey*."""
    return PrivateKey(_secret_bytes(seckey)).public_key.format(compressed=True)


def to_xonly(pubkey: bytes) -> bytes:
    """Normalise a 32-byte x-only or 33-byte compressed key to x-only.

    Raises:
        ValueError: On any other length or a key that is not on the curve.
    """
    if len(pubkey) == 33:
        if pubkey[0] not in (0x02, 0x03):
            msg = f"invalid compressed key prefix: {pubkey[0]:#x}"
            raise ValueError(msg)
        pubkey = pubkey[1:]
    elif len(pubkey) != 32:
        msg = f"public key must be 32 or 33 bytes, got {len(pubkey)}"
        raise ValueError(msg)
    lift_x(pubkey)
    return pubkey


# ---------------------------------------------------------------------------
# BIP341 tweak
# ---------------------------------------------------------------------------


def tweak_public_key(internal_key: bytes, tweak: bytes) -> tuple[bytes, int]:
    """Compute the Taproot output key ``Q = P + t·G``.

    Args:
        internal_key: 32-byte x-only internal key.
        tweak: 32-byte tweak hash.

    Returns:
        ``(output_key_x, parity)``.

    Raises:
        ValueError: If the tweak overflows the curve order or the result is infinity.
    """
    if int.from_bytes(tweak, "big") >= _N:
        msg = "tweak exceeds curve order"
        raise ValueError(msg)
    return _split_compressed(lift_x(internal_key).add(tweak))


# ---------------------------------------------------------------------------
# BIP340 Schnorr
# ---------------------------------------------------------------------------


def schnorr_sign(message: bytes, seckey: int, aux_rand: bytes | None = None) -> bytes:
    """Produce a 64-byte BIP340 signature over a 32-byte message.

    Args:
        message: 32-byte message (a sighash).
        seckey: Secret scalar.
        aux_rand: 32 bytes of auxiliary randomness; random when omitted.
    """
    if len(message) != 32:
        msg = f"message must be 32 bytes, got {len(message)}"
        raise ValueError(msg)
    key = PrivateKey(_secret_bytes(seckey))
    sig = key.sign_schnorr(message, aux_rand if aux_rand is not None else secrets.token_bytes(32))
    if not schnorr_verify(message, key.public_key.format(compressed=True)[1:], sig):
        msg = "produced signature does not verify"
        raise ValueError(msg)
    return sig


def schnorr_verify(message: bytes, pubkey: bytes, sig: bytes) -> bool:
    """Verify a 64-byte BIP340 signature against an x-only public key."""
    if len(message) != 32 or len(pubkey) != 32 or len(sig) != 64:
        return False
    try:
        return PublicKeyXOnly(pubkey).verify(sig, message)
    except ValueError:
        return False
