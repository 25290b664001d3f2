"""Taproot context: the shared channel output derived from hub and user keys.

The hub key material is loaded once at startup into an immutable
:class:`HubKeys`. :func:`build_taproot_context` is pure: the same keys and
network always produce the same address, scripts and control block.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tapchannel.btc.address import p2tr_address
from tapchannel.btc.keys import parse_private_key, schnorr_sign, to_xonly, xonly_public_key
from tapchannel.btc.psbt import TapLeafScript
from tapchannel.btc.script import multisig_leaf_script, p2tr_script, timelock_leaf_script
from tapchannel.btc.taproot import LEAF_VERSION_TAPSCRIPT, TapLeaf, build_taproot_output
from tapchannel.btc.transaction import TxOutput
from tapchannel.errors.channel_errors import ChannelError, TaprootAddressMismatchError
from tapchannel.errors.definitions import (
    ErrHubKeyMismatch,
    ErrHubKeysNotConfigured,
    ErrInvalidPubKey,
)

if TYPE_CHECKING:
    from tapchannel.config.settings import HubConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Hub keys
# ---------------------------------------------------------------------------


def _parse_config_key(value: str, label: str) -> int:
    try:
        return parse_private_key(value)
    except ValueError as exc:
        msg = f"invalid {label}: {exc}"
        raise ChannelError(msg, status_code=500, code="hub-key-invalid") from exc


@dataclass(frozen=True)
class HubKeys:
    """Operator key material.

    Attributes:
        hub_public_key: 32-byte x-only hub key placed in both leaf scripts.
        internal_public_key: 32-byte x-only Taproot internal key.
        csv_delay: Relative delay of the hub refund leaf.
    """

    hub_public_key: bytes
    internal_public_key: bytes
    csv_delay: int
    _hub_secret: int = field(repr=False)

    @classmethod
    def from_config(cls, config: HubConfig) -> HubKeys:
        """Load and cross-check the hub keys from configuration.

        Raises:
            ChannelError: If keys are missing or malformed, or the published
                hub public key does not belong to the hub private key.
        """
        if not config.private_key or not config.internal_private_key:
            raise ErrHubKeysNotConfigured

        hub_secret = _parse_config_key(config.private_key, "hub private key")
        hub_xonly, _ = xonly_public_key(hub_secret)
        if config.public_key:
            try:
                published = to_xonly(bytes.fromhex(config.public_key))
            except ValueError as exc:
                msg = f"invalid hub public key: {exc}"
                raise ChannelError(msg, status_code=500, code="hub-key-invalid") from exc
            if published != hub_xonly:
                raise ErrHubKeyMismatch

        internal_secret = _parse_config_key(config.internal_private_key, "internal private key")
        internal_xonly, _ = xonly_public_key(internal_secret)
        logger.info("Loaded hub key %s", hub_xonly.hex())
        return cls(
            hub_public_key=hub_xonly,
            internal_public_key=internal_xonly,
            csv_delay=config.csv_delay,
            _hub_secret=hub_secret,
        )

    @property
    def secret(self) -> int:
        """Hub signing scalar."""
        return self._hub_secret

    def sign(self, digest: bytes, aux_rand: bytes | None = None) -> bytes:
        """Schnorr-sign a 32-byte sighash with the hub key."""
        return schnorr_sign(digest, self._hub_secret, aux_rand)


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TaprootContext:
    """Everything needed to fund and spend one wallet's channel output."""

    network: str
    address: str
    output_script: bytes
    output_key: bytes
    output_parity: int
    internal_key: bytes
    hub_key: bytes
    user_key: bytes
    multisig_script: bytes
    timelock_script: bytes
    merkle_root: bytes
    control_block: bytes
    leaf_version: int = LEAF_VERSION_TAPSCRIPT

    @property
    def multisig_leaf(self) -> TapLeafScript:
        """PSBT ``tapLeafScript`` entry for the cooperative leaf."""
        return TapLeafScript(
            control_block=self.control_block,
            script=self.multisig_script,
            leaf_version=self.leaf_version,
        )

    def witness_utxo(self, value: int) -> TxOutput:
        """The channel output carrying *value* satoshis."""
        return TxOutput(value=value, script_pubkey=self.output_script)


def parse_user_key(user_public_key: str | bytes) -> bytes:
    """Normalise a user key (hex or bytes, x-only or compressed) to x-only.

    Raises:
        ChannelError: ``invalid-pubkey`` on bad hex, length or curve point.
    """
    try:
        raw = bytes.fromhex(user_public_key) if isinstance(user_public_key, str) else user_public_key
        return to_xonly(raw)
    except ValueError as exc:
        raise ErrInvalidPubKey from exc


def build_taproot_context(
    hub_keys: HubKeys,
    user_public_key: str | bytes,
    network: str,
    *,
    expected_address: str | None = None,
) -> TaprootContext:
    """Derive the channel's Taproot output.

    The tree commits to two leaves: ``<hub> CHECKSIGVERIFY <user> CHECKSIG``
    and ``<delay> CSV DROP <hub> CHECKSIG``.

    Args:
        hub_keys: Operator key material.
        user_public_key: User key, 32-byte x-only or 33-byte compressed.
        network: Network name for address encoding.
        expected_address: Previously stored address; must match if given.

    Raises:
        ChannelError: On an invalid user key.
        TaprootAddressMismatchError: If *expected_address* differs from the
            derived address.
    """
    user_key = parse_user_key(user_public_key)
    hub_key = hub_keys.hub_public_key

    multisig = TapLeaf(multisig_leaf_script(hub_key, user_key))
    timelock = TapLeaf(timelock_leaf_script(hub_key, hub_keys.csv_delay))
    output = build_taproot_output(hub_keys.internal_public_key, (multisig, timelock))
    address = p2tr_address(output.output_key, network)

    if expected_address is not None and expected_address != address:
        logger.error("Taproot address mismatch: stored %s, derived %s", expected_address, address)
        raise TaprootAddressMismatchError(stored=expected_address, derived=address)

    return TaprootContext(
        network=str(network),
        address=address,
        output_script=p2tr_script(output.output_key),
        output_key=output.output_key,
        output_parity=output.output_parity,
        internal_key=output.internal_key,
        hub_key=hub_key,
        user_key=user_key,
        multisig_script=multisig.script,
        timelock_script=timelock.script,
        merkle_root=output.merkle_root or b"",
        control_block=output.control_block(multisig),
        leaf_version=multisig.leaf_version,
    )
