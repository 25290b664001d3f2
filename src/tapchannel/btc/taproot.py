"""BIP341 script trees: leaf and branch hashes, output tweak, control blocks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from tapchannel.btc.keys import lift_x, tweak_public_key
from tapchannel.btc.transaction import ser_bytes
from tapchannel.utils.crypto import tagged_hash

LEAF_VERSION_TAPSCRIPT = 0xC0

_CONTROL_BASE_SIZE = 33
_CONTROL_NODE_SIZE = 32
_CONTROL_MAX_NODES = 128


@dataclass(frozen=True)
class TapLeaf:
    """A single tapscript leaf."""

    script: bytes
    leaf_version: int = LEAF_VERSION_TAPSCRIPT

    @property
    def leaf_hash(self) -> bytes:
        return tapleaf_hash(self.script, self.leaf_version)


# A script tree is a leaf or a pair of subtrees.
TapTree = Union[TapLeaf, tuple["TapTree", "TapTree"]]  # noqa: UP007


def tapleaf_hash(script: bytes, leaf_version: int = LEAF_VERSION_TAPSCRIPT) -> bytes:
    """``TapLeaf`` tagged hash of ``leaf_version || compact_size(script) || script``."""
    return tagged_hash("TapLeaf", bytes([leaf_version & 0xFE]) + ser_bytes(script))


def tapbranch_hash(left: bytes, right: bytes) -> bytes:
    """``TapBranch`` tagged hash of two child hashes in lexicographic order."""
    if right < left:
        left, right = right, left
    return tagged_hash("TapBranch", left + right)


def taptweak_hash(internal_key: bytes, merkle_root: bytes | None) -> bytes:
    """``TapTweak`` hash committing the internal key to an optional script tree."""
    return tagged_hash("TapTweak", internal_key + (merkle_root or b""))


def _walk(tree: TapTree) -> tuple[bytes, list[tuple[TapLeaf, list[bytes]]]]:
    """Return the subtree hash and each leaf with its merkle path."""
    if isinstance(tree, TapLeaf):
        return tree.leaf_hash, [(tree, [])]
    left_hash, left_leaves = _walk(tree[0])
    right_hash, right_leaves = _walk(tree[1])
    leaves = [(leaf, [*path, right_hash]) for leaf, path in left_leaves]
    leaves += [(leaf, [*path, left_hash]) for leaf, path in right_leaves]
    return tapbranch_hash(left_hash, right_hash), leaves


@dataclass(frozen=True)
class TaprootOutput:
    """A tweaked Taproot output and the data needed to spend each leaf."""

    internal_key: bytes
    output_key: bytes
    output_parity: int
    merkle_root: bytes | None
    leaf_paths: dict[TapLeaf, tuple[bytes, ...]] = field(default_factory=dict)

    def control_block(self, leaf: TapLeaf) -> bytes:
        """Serialise the control block proving *leaf* is committed to.

        Raises:
            KeyError: If *leaf* is not part of this output's tree.
        """
        path = self.leaf_paths[leaf]
        return bytes([leaf.leaf_version | self.output_parity]) + self.internal_key + b"".join(path)


def build_taproot_output(internal_key: bytes, tree: TapTree | None = None) -> TaprootOutput:
    """Tweak *internal_key* with the merkle root of *tree*.

    Args:
        internal_key: 32-byte x-only internal key.
        tree: Script tree, or None for a key-path-only output.
    """
    lift_x(internal_key)
    if tree is None:
        merkle_root = None
        leaf_paths: dict[TapLeaf, tuple[bytes, ...]] = {}
    else:
        merkle_root, leaves = _walk(tree)
        leaf_paths = {leaf: tuple(path) for leaf, path in leaves}
    output_key, parity = tweak_public_key(internal_key, taptweak_hash(internal_key, merkle_root))
    return TaprootOutput(
        internal_key=internal_key,
        output_key=output_key,
        output_parity=parity,
        merkle_root=merkle_root,
        leaf_paths=leaf_paths,
    )


@dataclass(frozen=True)
class ControlBlock:
    """Parsed control block."""

    leaf_version: int
    output_parity: int
    internal_key: bytes
    path: tuple[bytes, ...]


def parse_control_block(data: bytes) -> ControlBlock:
    """Parse a serialized control block.

    Raises:
        ValueError: If the length is not ``33 + 32·m`` with ``m ≤ 128``.
    """
    extra = len(data) - _CONTROL_BASE_SIZE
    if extra < 0 or extra % _CONTROL_NODE_SIZE or extra // _CONTROL_NODE_SIZE > _CONTROL_MAX_NODES:
        msg = f"invalid control block length {len(data)}"
        raise ValueError(msg)
    path = tuple(
        data[i : i + _CONTROL_NODE_SIZE] for i in range(_CONTROL_BASE_SIZE, len(data), _CONTROL_NODE_SIZE)
    )
    return ControlBlock(
        leaf_version=data[0] & 0xFE,
        output_parity=data[0] & 0x01,
        internal_key=data[1:33],
        path=path,
    )


def verify_control_block(output_key: bytes, script: bytes, control: bytes) -> bool:
    """Check that *control* proves *script* is committed to by *output_key*."""
    try:
        block = parse_control_block(control)
        node = tapleaf_hash(script, block.leaf_version)
        for sibling in block.path:
            node = tapbranch_hash(node, sibling)
        tweaked, parity = tweak_public_key(block.internal_key, taptweak_hash(block.internal_key, node))
    except ValueError:
        return False
    return tweaked == output_key and parity == block.output_parity
