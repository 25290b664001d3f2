"""Shared test fixtures for the py-tapchannel test suite.

Key material is fixed so every derived address, script and control block is
deterministic. Engine-level tests run against in-memory SQLite and a
``FakeIndexer`` standing in for the Esplora client.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from tapchannel.btc.address import encode_segwit_address
from tapchannel.btc.keys import xonly_public_key
from tapchannel.btc.transaction import Transaction
from tapchannel.chain.mempool.models import AddressTransaction, Confirmation, TxOut, TxStatus, Utxo
from tapchannel.config.settings import (
    AppConfig,
    ChannelConfig,
    DatabaseConfig,
    DatabaseEngine,
    HubConfig,
    Network,
    SettlementConfig,
    TaskConfig,
)
from tapchannel.errors.chain_errors import BroadcastError, IndexerError, TransactionNotFoundError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

# ---------------------------------------------------------------------------
# Deterministic key material
# ---------------------------------------------------------------------------

HUB_SECRET = 0x1111111111111111111111111111111111111111111111111111111111111111
INTERNAL_SECRET = 0x2222222222222222222222222222222222222222222222222222222222222222
USER_SECRET = 0x3333333333333333333333333333333333333333333333333333333333333333

HUB_XONLY = xonly_public_key(HUB_SECRET)[0]
USER_XONLY = xonly_public_key(USER_SECRET)[0]

FUNDING_ADDRESS = encode_segwit_address("tb", 0, b"\x22" * 20)
MERCHANT_ADDRESS = encode_segwit_address("tb", 0, b"\x11" * 20)
OTHER_MERCHANT_ADDRESS = encode_segwit_address("tb", 0, b"\x33" * 20)

# Block times (unix seconds)
DEPOSIT_TIME = 1_700_000_000
SETTLE_TIME = 1_700_100_000


def block_dt(timestamp: int) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=UTC)


# ---------------------------------------------------------------------------
# Fake indexer
# ---------------------------------------------------------------------------


class FakeIndexer:
    """In-memory stand-in for ``MempoolClient``."""

    def __init__(self) -> None:
        self.address_txs: dict[str, list[AddressTransaction]] = {}
        self.utxos: dict[str, list[Utxo]] = {}
        self.confirmations: dict[str, Confirmation] = {}
        self.evicted: set[str] = set()
        self.broadcasts: list[str] = []
        self.tip = 200
        self.fail = False
        self.broadcast_error: str | None = None
        self.broadcast_times_out = False
        self.confirm_broadcasts_at: int | None = None
        self.is_connected = True

    # -- setup helpers --

    def fund(
        self,
        address: str,
        txid: str,
        value: int,
        *,
        block_time: int | None = DEPOSIT_TIME,
        height: int | None = 150,
        vout: int = 0,
    ) -> None:
        confirmed = block_time is not None
        status = TxStatus(
            confirmed=confirmed,
            block_height=height if confirmed else None,
            block_time=block_time,
        )
        outputs = [TxOut(value=1, address="tb1qother")] * vout + [TxOut(value=value, address=address)]
        self.address_txs.setdefault(address, []).append(
            AddressTransaction(txid=txid, status=status, vout=outputs)
        )
        self.utxos.setdefault(address, []).append(Utxo(txid=txid, vout=vout, value=value, status=status))

    def confirm(self, txid: str, block_time: int = SETTLE_TIME, height: int = 190) -> None:
        self.confirmations[txid] = Confirmation(
            txid=txid,
            confirmed=True,
            confirmations=self.tip - height + 1,
            block_height=height,
            block_time=block_time,
        )

    # -- MempoolClient surface --

    async def get_address_transactions(self, address: str) -> list[AddressTransaction]:
        if self.fail:
            raise IndexerError("indexer down")
        return list(self.address_txs.get(address, []))

    async def get_tip_height(self) -> int:
        if self.fail:
            raise IndexerError("indexer down")
        return self.tip

    async def get_utxos(self, address: str) -> list[Utxo]:
        if self.fail:
            raise IndexerError("indexer down")
        return list(self.utxos.get(address, []))

    async def get_confirmation(self, txid: str) -> Confirmation:
        if self.fail:
            raise IndexerError("indexer down")
        if txid in self.evicted:
            raise TransactionNotFoundError(txid)
        return self.confirmations.get(txid, Confirmation(txid=txid, confirmed=False))

    async def broadcast(self, raw_tx_hex: str) -> str:
        if self.broadcast_error is not None:
            raise BroadcastError(f"broadcast rejected: {self.broadcast_error}", tx_hex=raw_tx_hex)
        txid = Transaction.from_hex(raw_tx_hex).txid()
        self.broadcasts.append(raw_tx_hex)
        if self.confirm_broadcasts_at is not None:
            self.confirm(txid, self.confirm_broadcasts_at)
        if self.broadcast_times_out:
            # The node has the transaction but the reply never arrives.
            raise IndexerError("broadcast request failed: timed out")
        return txid

    async def close(self) -> None:
        self.is_connected = False


# ---------------------------------------------------------------------------
# Config & engine
# ---------------------------------------------------------------------------


def make_config(dsn: str = "sqlite+aiosqlite:///:memory:") -> AppConfig:
    return AppConfig(
        debug=True,
        db=DatabaseConfig(engine=DatabaseEngine.SQLITE, dsn=dsn),
        hub=HubConfig(
            private_key=f"{HUB_SECRET:064x}",
            public_key=HUB_XONLY.hex(),
            internal_private_key=f"{INTERNAL_SECRET:064x}",
        ),
        channel=ChannelConfig(network=Network.TESTNET),
        settlement=SettlementConfig(poll_interval=0, max_attempts=3),
        task=TaskConfig(enabled=False),
    )


@pytest.fixture
def app_config() -> AppConfig:
    """Provide a test AppConfig with fixed hub keys and an in-memory ledger."""
    return make_config()


@pytest.fixture
def indexer() -> FakeIndexer:
    return FakeIndexer()


@pytest.fixture
async def engine(app_config, indexer) -> AsyncIterator:
    """An initialized ChannelEngine wired to the fake indexer."""
    from tapchannel.engine.client import ChannelEngine

    eng = ChannelEngine(app_config, indexer=indexer)
    await eng.initialize()
    yield eng
    await eng.close()


@pytest.fixture
async def file_engine(tmp_path, indexer) -> AsyncIterator:
    """An engine over a file-backed SQLite ledger; each session gets its own connection."""
    from tapchannel.engine.client import ChannelEngine

    eng = ChannelEngine(make_config(f"sqlite+aiosqlite:///{tmp_path}/ledger.db"), indexer=indexer)
    await eng.initialize()
    yield eng
    await eng.close()


@pytest.fixture
async def bound_wallet(engine):
    """A wallet with its Taproot address generated from the user key."""
    wallet = await engine.wallet_service.get_or_create_wallet(FUNDING_ADDRESS)
    return await engine.wallet_service.generate_taproot_address(wallet.id, USER_XONLY.hex())


@pytest.fixture
async def funded_wallet(engine, indexer, bound_wallet):
    """A bound wallet with one confirmed 100 000 sat deposit, balance reconciled."""
    indexer.fund(bound_wallet.taproot_address, "aa" * 32, 100_000)
    return await engine.wallet_service.refresh_wallet(bound_wallet.id)


@pytest.fixture
def hub_keys():
    from tapchannel.engine.taproot_context import HubKeys

    return HubKeys.from_config(make_config().hub)


@pytest.fixture
def context(hub_keys):
    from tapchannel.engine.taproot_context import build_taproot_context

    return build_taproot_context(hub_keys, USER_XONLY, "testnet")


# ---------------------------------------------------------------------------
# Flow helpers
# ---------------------------------------------------------------------------


async def signed_commitment(engine, wallet_id: int, amount: int = 10_000):
    """Build, record and user-sign a commitment paying ``MERCHANT_ADDRESS``."""
    from tapchannel.btc.psbt import Psbt
    from tapchannel.engine.services.psbt_service import PaymentOutput

    draft = await engine.psbt_service.build_payment_psbt(wallet_id, [PaymentOutput(MERCHANT_ADDRESS, amount)])
    commitment = await engine.commitment_service.create_commitment(
        wallet_id, MERCHANT_ADDRESS, amount, draft.psbt_hex
    )
    psbt = Psbt.from_hex(draft.psbt_hex)
    psbt.sign_tapscript_input(0, USER_SECRET)
    return await engine.commitment_service.attach_user_signature(commitment.id, psbt.to_hex())


async def fund_wallet(engine, indexer, sats: int = 100_000):
    """Create, bind and fund a wallet with one confirmed deposit."""
    wallet = await engine.wallet_service.get_or_create_wallet(FUNDING_ADDRESS)
    wallet = await engine.wallet_service.generate_taproot_address(wallet.id, USER_XONLY.hex())
    indexer.fund(wallet.taproot_address, "aa" * 32, sats)
    return await engine.wallet_service.refresh_wallet(wallet.id)
