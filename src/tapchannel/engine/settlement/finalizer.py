"""Dual-signature finalizer: adds the hub signature and assembles script-path witnesses.

The user's signer returns either a PSBT carrying script-path signatures or
one whose inputs it already finalized with only its own signature. In both
cases the hub signs the cooperative leaf and the final witness becomes
``[user_sig, hub_sig, script, control_block]``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tapchannel.btc.psbt import Psbt, PsbtError, PsbtInput, TapLeafScript
from tapchannel.btc.script import checked_keys
from tapchannel.btc.sighash import SIGHASH_DEFAULT, encode_schnorr_signature
from tapchannel.engine.settlement.models import FinalizedTransaction
from tapchannel.errors.channel_errors import (
    ControlBlockMismatchError,
    MissingSignatureError,
    WitnessIntegrityError,
)
from tapchannel.errors.definitions import ErrInvalidPsbt

if TYPE_CHECKING:
    from tapchannel.engine.taproot_context import HubKeys, TaprootContext

logger = logging.getLogger(__name__)


class DualSignatureFinalizer:
    """Co-signs and finalizes user-signed channel spends."""

    def __init__(self, hub_keys: HubKeys, context: TaprootContext) -> None:
        self._hub = hub_keys
        self._context = context

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def finalize(self, user_signed_psbt: str) -> FinalizedTransaction:
        """Produce the network transaction from a user-signed PSBT (hex).

        Raises:
            ChannelError: ``invalid-psbt`` if the PSBT does not parse.
            MissingSignatureError: If an input carries no user signature.
            WitnessIntegrityError: On a malformed witness or an invalid user
                signature.
            ControlBlockMismatchError: If a final witness lacks the control block.
        """
        try:
            user = Psbt.from_hex(user_signed_psbt)
        except PsbtError as exc:
            raise ErrInvalidPsbt from exc

        work = Psbt.from_transaction(user.tx)
        leaves: list[TapLeafScript | None] = []
        for index, (src, dst) in enumerate(zip(user.inputs, work.inputs, strict=True)):
            dst.witness_utxo = src.witness_utxo
            dst.non_witness_utxo = src.non_witness_utxo
            dst.sighash_type = src.sighash_type
            if src.witness_utxo is None and src.non_witness_utxo is None:
                msg = f"input {index} has no UTXO information"
                raise WitnessIntegrityError(msg, input_index=index)
            if src.is_taproot:
                leaf = src.tap_leaf_scripts[0] if src.tap_leaf_scripts else self._context.multisig_leaf
                dst.tap_leaf_scripts = [leaf]
                leaves.append(leaf)
            else:
                leaves.append(None)

        for index, (src, dst) in enumerate(zip(user.inputs, work.inputs, strict=True)):
            leaf = leaves[index]
            if src.final_script_witness is not None and leaf is None:
                witness = list(src.final_script_witness)
            elif src.final_script_witness is not None:
                witness = self._extend_final_witness(work, index, src.final_script_witness)
            elif leaf is None:
                witness = self._p2wpkh_witness(index, src)
            else:
                witness = self._tapscript_witness(work, index, src, leaf)
            dst.final_script_witness = witness
            dst.clear_signing_data()

        tx = work.extract_transaction()
        witnesses = [[item.hex() for item in txin.witness] for txin in tx.inputs]

        for index, leaf in enumerate(leaves):
            if leaf is None:
                continue
            expected = (
                self._context.control_block
                if user.inputs[index].final_script_witness is not None
                else leaf.control_block
            )
            if expected not in tx.inputs[index].witness:
                raise ControlBlockMismatchError(
                    input_index=index,
                    control_block=expected.hex(),
                    witness=witnesses[index],
                )

        txid = tx.txid()
        logger.info("Finalized settlement %s with %d inputs", txid, len(tx.inputs))
        return FinalizedTransaction(raw_tx=tx.to_hex(), txid=txid, witnesses=witnesses)

    # ------------------------------------------------------------------
    # Witness assembly
    # ------------------------------------------------------------------

    def _hub_signature(self, work: Psbt, index: int, leaf: TapLeafScript) -> bytes:
        if self._hub.hub_public_key not in checked_keys(leaf.script):
            msg = f"input {index}: leaf script does not check the hub key"
            raise WitnessIntegrityError(msg, input_index=index)
        hash_type = work.inputs[index].sighash_type
        hash_type = SIGHASH_DEFAULT if hash_type is None else hash_type
        try:
            digest = work.tapscript_sighash(index, leaf, hash_type)
        except (PsbtError, ValueError) as exc:
            msg = f"input {index}: {exc}"
            raise WitnessIntegrityError(msg, input_index=index) from exc
        return encode_schnorr_signature(self._hub.sign(digest), hash_type)

    def _tapscript_witness(self, work: Psbt, index: int, src: PsbtInput, leaf: TapLeafScript) -> list[bytes]:
        """Witness for an input the user signed but did not finalize."""
        if not src.tap_script_sigs and src.tap_key_sig is None:
            raise MissingSignatureError(index)

        leaf_hash = leaf.leaf_hash
        sigs: dict[bytes, bytes] = {}
        for (pubkey, sig_leaf), sig in src.tap_script_sigs.items():
            if sig_leaf != leaf_hash:
                continue
            if not work.verify_tapscript_signature(index, pubkey, leaf, sig):
                msg = f"input {index}: invalid signature for key {pubkey.hex()}"
                raise WitnessIntegrityError(msg, input_index=index)
            sigs[pubkey] = sig
        if src.tap_key_sig is not None:
            logger.debug("Dropping key-path signature of input %d", index)

        sigs[self._hub.hub_public_key] = self._hub_signature(work, index, leaf)

        # Keys are checked top of stack first, so the last key's signature sits lowest.
        stack: list[bytes] = []
        for key in reversed(checked_keys(leaf.script)):
            sig = sigs.get(key)
            if sig is None:
                msg = f"input {index}: no script-path signature for key {key.hex()}"
                raise WitnessIntegrityError(msg, input_index=index)
            stack.append(sig)
        return [*stack, leaf.script, leaf.control_block]

    def _extend_final_witness(self, work: Psbt, index: int, user_witness: list[bytes]) -> list[bytes]:
        """Insert the hub signature into a witness the user already finalized."""
        if len(user_witness) < 2:
            msg = f"input {index}: finalized witness has {len(user_witness)} items, expected at least 2"
            raise WitnessIntegrityError(msg, input_index=index)
        *user_items, script, control = user_witness
        if len(control) < 33:
            msg = f"input {index}: finalized witness has no control block"
            raise WitnessIntegrityError(msg, input_index=index)
        leaf = TapLeafScript(control_block=control, script=script, leaf_version=control[0] & 0xFE)

        if user_items:
            user_sig = user_items[0]
            if not work.verify_tapscript_signature(index, self._context.user_key, leaf, user_sig):
                msg = f"input {index}: invalid user signature in finalized witness"
                raise WitnessIntegrityError(msg, input_index=index)

        hub_sig = self._hub_signature(work, index, leaf)
        return [*user_items, hub_sig, script, control]

    @staticmethod
    def _p2wpkh_witness(index: int, src: PsbtInput) -> list[bytes]:
        if not src.partial_sigs:
            raise MissingSignatureError(index)
        pubkey, sig = next(iter(src.partial_sigs.items()))
        return [sig, pubkey]
