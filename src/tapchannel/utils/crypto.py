"""Cryptographic helpers: hashing and BIP340 tagged hashes."""

from __future__ import annotations

import hashlib
from functools import lru_cache


def sha256(data: bytes) -> bytes:
    """Single SHA-256 hash."""
    return hashlib.sha256(data).digest()


def sha256d(data: bytes) -> bytes:
    """Double SHA-256 hash (SHA256(SHA256(data)))."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


@lru_cache(maxsize=32)
def _tag_prefix(tag: str) -> bytes:
    tag_hash = sha256(tag.encode("utf-8"))
    return tag_hash + tag_hash


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP340 tagged hash: ``SHA256(SHA256(tag) || SHA256(tag) || data)``.

    Args:
        tag: Domain separation tag, e.g. ``"TapLeaf"``.
        data: Message bytes.
    """
    return sha256(_tag_prefix(tag) + data)
