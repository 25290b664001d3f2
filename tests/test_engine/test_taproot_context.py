"""Tests for hub key loading and the channel Taproot context."""

from __future__ import annotations

import pytest

from tapchannel.btc.keys import compressed_public_key
from tapchannel.btc.script import multisig_leaf_script, p2tr_script, timelock_leaf_script
from tapchannel.btc.taproot import LEAF_VERSION_TAPSCRIPT, verify_control_block
from tapchannel.config.settings import HubConfig
from tapchannel.engine.taproot_context import HubKeys, build_taproot_context, parse_user_key
from tapchannel.errors.channel_errors import ChannelError, TaprootAddressMismatchError
from tests.conftest import HUB_SECRET, HUB_XONLY, INTERNAL_SECRET, USER_SECRET, USER_XONLY, make_config


class TestHubKeys:
    def test_from_config(self, hub_keys: HubKeys) -> None:
        assert hub_keys.hub_public_key == HUB_XONLY
        assert len(hub_keys.internal_public_key) == 32
        assert hub_keys.csv_delay == 5
        assert hub_keys.secret == HUB_SECRET

    def test_secret_hidden_from_repr(self, hub_keys: HubKeys) -> None:
        assert str(HUB_SECRET) not in repr(hub_keys)
        assert f"{HUB_SECRET:x}" not in repr(hub_keys)

    def test_compressed_public_key_accepted(self) -> None:
        hub = make_config().hub.model_copy(update={"public_key": compressed_public_key(HUB_SECRET).hex()})
        assert HubKeys.from_config(hub).hub_public_key == HUB_XONLY

    def test_public_key_derived_when_empty(self) -> None:
        hub = make_config().hub.model_copy(update={"public_key": ""})
        assert HubKeys.from_config(hub).hub_public_key == HUB_XONLY

    def test_missing_keys(self) -> None:
        with pytest.raises(ChannelError) as exc_info:
            HubKeys.from_config(HubConfig())
        assert exc_info.value.code == "hub-keys-missing"

    def test_public_key_mismatch(self) -> None:
        hub = make_config().hub.model_copy(update={"public_key": USER_XONLY.hex()})
        with pytest.raises(ChannelError) as exc_info:
            HubKeys.from_config(hub)
        assert exc_info.value.code == "hub-key-mismatch"

    def test_malformed_private_key(self) -> None:
        hub = HubConfig(private_key="not-a-key", internal_private_key=f"{INTERNAL_SECRET:064x}")
        with pytest.raises(ChannelError) as exc_info:
            HubKeys.from_config(hub)
        assert exc_info.value.code == "hub-key-invalid"


class TestParseUserKey:
    def test_xonly_hex(self) -> None:
        assert parse_user_key(USER_XONLY.hex()) == USER_XONLY

    def test_compressed_hex(self) -> None:
        assert parse_user_key(compressed_public_key(USER_SECRET).hex()) == USER_XONLY

    @pytest.mark.parametrize("value", ["zz", "00" * 31, "04" + "00" * 32, ""])
    def test_rejects(self, value: str) -> None:
        with pytest.raises(ChannelError) as exc_info:
            parse_user_key(value)
        assert exc_info.value.code == "invalid-pubkey"
        assert exc_info.value.status_code == 400


class TestBuildTaprootContext:
    def test_deterministic(self, hub_keys: HubKeys) -> None:
        first = build_taproot_context(hub_keys, USER_XONLY, "testnet")
        second = build_taproot_context(hub_keys, USER_XONLY.hex(), "testnet")
        assert first == second
        assert first.address.startswith("tb1p")

    def test_compressed_and_xonly_agree(self, hub_keys: HubKeys) -> None:
        compressed = compressed_public_key(USER_SECRET)
        assert (
            build_taproot_context(hub_keys, compressed, "testnet").address
            == build_taproot_context(hub_keys, USER_XONLY, "testnet").address
        )

    def test_leaf_scripts(self, context) -> None:
        assert context.multisig_script == multisig_leaf_script(HUB_XONLY, USER_XONLY)
        assert context.timelock_script == timelock_leaf_script(HUB_XONLY, 5)
        assert context.hub_key == HUB_XONLY
        assert context.user_key == USER_XONLY

    def test_output_script(self, context) -> None:
        assert context.output_script == p2tr_script(context.output_key)
        assert context.witness_utxo(1234).value == 1234
        assert context.witness_utxo(1234).script_pubkey == context.output_script

    def test_control_block_proves_multisig_leaf(self, context) -> None:
        assert len(context.control_block) == 65
        assert context.control_block[0] & 0xFE == LEAF_VERSION_TAPSCRIPT
        assert context.control_block[1:33] == context.internal_key
        assert verify_control_block(context.output_key, context.multisig_script, context.control_block)
        assert not verify_control_block(context.output_key, context.timelock_script, context.control_block)

    def test_multisig_leaf_entry(self, context) -> None:
        leaf = context.multisig_leaf
        assert leaf.script == context.multisig_script
        assert leaf.control_block == context.control_block
        assert leaf.leaf_version == LEAF_VERSION_TAPSCRIPT

    def test_network_prefix(self, hub_keys: HubKeys) -> None:
        assert build_taproot_context(hub_keys, USER_XONLY, "mainnet").address.startswith("bc1p")
        assert build_taproot_context(hub_keys, USER_XONLY, "regtest").address.startswith("bcrt1p")

    def test_distinct_users_distinct_addresses(self, hub_keys: HubKeys, context) -> None:
        other = build_taproot_context(hub_keys, HUB_XONLY, "testnet")
        assert other.address != context.address

    def test_csv_delay_changes_address(self, context) -> None:
        hub = make_config().hub.model_copy(update={"csv_delay": 144})
        delayed = build_taproot_context(HubKeys.from_config(hub), USER_XONLY, "testnet")
        assert delayed.address != context.address
        assert delayed.multisig_script == context.multisig_script

    def test_expected_address_match(self, hub_keys: HubKeys, context) -> None:
        again = build_taproot_context(hub_keys, USER_XONLY, "testnet", expected_address=context.address)
        assert again.address == context.address

    def test_expected_address_mismatch(self, hub_keys: HubKeys, context) -> None:
        stored = build_taproot_context(hub_keys, HUB_XONLY, "testnet").address
        with pytest.raises(TaprootAddressMismatchError) as exc_info:
            build_taproot_context(hub_keys, USER_XONLY, "testnet", expected_address=stored)
        assert exc_info.value.details == {"stored": stored, "derived": context.address}

    def test_invalid_user_key(self, hub_keys: HubKeys) -> None:
        with pytest.raises(ChannelError, match="public key"):
            build_taproot_context(hub_keys, "abcd", "testnet")
