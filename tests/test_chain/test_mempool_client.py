"""Tests for the mempool.space Esplora client: uses httpx mock transport."""

from __future__ import annotations

import httpx
import pytest

from tapchannel.chain.mempool.client import MempoolClient, confirmations_at
from tapchannel.chain.mempool.models import AddressTransaction, TxStatus, Utxo
from tapchannel.config.settings import IndexerConfig, Network
from tapchannel.errors.chain_errors import BroadcastError, IndexerError, TransactionNotFoundError

_ADDRESS = "tb1pexampleaddress"
_TXID = "ab" * 32


def _inject_transport(client: MempoolClient, transport: httpx.MockTransport) -> None:
    """Replace the internal httpx client with one using mock transport."""
    client._client = httpx.AsyncClient(
        transport=transport,
        base_url="https://mempool.space/testnet/api",
    )


def _client() -> MempoolClient:
    return MempoolClient(IndexerConfig(), Network.TESTNET)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_not_connected_by_default(self) -> None:
        assert _client().is_connected is False

    async def test_connect_and_close(self) -> None:
        client = _client()
        await client.connect()
        assert client.is_connected is True
        await client.close()
        assert client.is_connected is False

    async def test_not_connected_raises(self) -> None:
        with pytest.raises(RuntimeError, match="not connected"):
            await _client().get_utxos(_ADDRESS)

    def test_base_url_per_network(self) -> None:
        config = IndexerConfig()
        assert config.base_url(Network.MAINNET) == "https://mempool.space/api"
        assert config.base_url(Network.SIGNET) == "https://mempool.space/signet/api"
        assert IndexerConfig(url="http://esplora:3000/api/").base_url(Network.TESTNET) == (
            "http://esplora:3000/api"
        )


class TestConfirmationsAt:
    def test_counts(self) -> None:
        assert confirmations_at(100, 100) == 1
        assert confirmations_at(100, 91) == 10
        assert confirmations_at(100, None) == 0

    def test_never_below_one_when_mined(self) -> None:
        assert confirmations_at(99, 100) == 1


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestAddressTransactions:
    async def test_parses_outputs_and_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith(f"/address/{_ADDRESS}/txs")
            return httpx.Response(
                200,
                json=[
                    {
                        "txid": _TXID,
                        "status": {"confirmed": True, "block_height": 150, "block_time": 1_700_000_000},
                        "vout": [
                            {"value": 5000, "scriptpubkey": "5120aa", "scriptpubkey_address": _ADDRESS},
                            {"value": 7000, "scriptpubkey": "0014bb", "scriptpubkey_address": "tb1qother"},
                            {"value": 2000, "scriptpubkey": "5120aa", "scriptpubkey_address": _ADDRESS},
                        ],
                    },
                    {"txid": "cd" * 32, "status": {"confirmed": False}, "vout": []},
                ],
            )

        client = _client()
        _inject_transport(client, httpx.MockTransport(handler))
        txs = await client.get_address_transactions(_ADDRESS)
        await client.close()

        assert len(txs) == 2
        assert isinstance(txs[0], AddressTransaction)
        assert txs[0].value_to(_ADDRESS) == 7000
        assert txs[0].status.block_datetime is not None
        assert txs[0].status.block_datetime.timestamp() == 1_700_000_000
        assert txs[1].status.confirmed is False
        assert txs[1].status.block_datetime is None

    async def test_http_error(self) -> None:
        client = _client()
        _inject_transport(client, httpx.MockTransport(lambda r: httpx.Response(500, text="boom")))
        with pytest.raises(IndexerError, match="500"):
            await client.get_address_transactions(_ADDRESS)
        await client.close()

    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = _client()
        _inject_transport(client, httpx.MockTransport(handler))
        with pytest.raises(IndexerError, match="failed"):
            await client.get_address_transactions(_ADDRESS)
        await client.close()

    async def test_invalid_json(self) -> None:
        client = _client()
        _inject_transport(client, httpx.MockTransport(lambda r: httpx.Response(200, text="<html>")))
        with pytest.raises(IndexerError, match="invalid JSON"):
            await client.get_address_transactions(_ADDRESS)
        await client.close()


class TestUtxos:
    async def test_get_utxos(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json=[{"txid": _TXID, "vout": 1, "value": 12_345, "status": {"confirmed": True}}],
            )

        client = _client()
        _inject_transport(client, httpx.MockTransport(handler))
        utxos = await client.get_utxos(_ADDRESS)
        await client.close()
        assert utxos == [Utxo(txid=_TXID, vout=1, value=12_345, status=TxStatus(confirmed=True))]


class TestConfirmation:
    async def test_confirmed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/blocks/tip/height"):
                return httpx.Response(200, text="209")
            return httpx.Response(
                200,
                json={"confirmed": True, "block_height": 200, "block_hash": "00ff", "block_time": 1_700_100_000},
            )

        client = _client()
        _inject_transport(client, httpx.MockTransport(handler))
        confirmation = await client.get_confirmation(_TXID)
        await client.close()
        assert confirmation.confirmed is True
        assert confirmation.confirmations == 10
        assert confirmation.block_height == 200
        assert confirmation.block_datetime is not None

    async def test_unconfirmed_skips_tip(self) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json={"confirmed": False})

        client = _client()
        _inject_transport(client, httpx.MockTransport(handler))
        confirmation = await client.get_confirmation(_TXID)
        await client.close()
        assert confirmation.confirmed is False
        assert confirmation.confirmations == 0
        assert len(paths) == 1

    async def test_not_found(self) -> None:
        client = _client()
        _inject_transport(client, httpx.MockTransport(lambda r: httpx.Response(404, text="not found")))
        with pytest.raises(TransactionNotFoundError) as exc_info:
            await client.get_confirmation(_TXID)
        await client.close()
        assert exc_info.value.txid == _TXID
        assert isinstance(exc_info.value, IndexerError)

    async def test_bad_tip(self) -> None:
        client = _client()
        _inject_transport(client, httpx.MockTransport(lambda r: httpx.Response(200, text="tip?")))
        with pytest.raises(IndexerError, match="tip height"):
            await client.get_tip_height()
        await client.close()


# ---------------------------------------------------------------------------
# Broadcast
# ---------------------------------------------------------------------------


class TestBroadcast:
    async def test_success(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path.endswith("/tx")
            assert request.content == b"0200beef"
            return httpx.Response(200, text=_TXID + "\n")

        client = _client()
        _inject_transport(client, httpx.MockTransport(handler))
        assert await client.broadcast("0200beef") == _TXID
        await client.close()

    async def test_rejected(self) -> None:
        client = _client()
        _inject_transport(
            client,
            httpx.MockTransport(lambda r: httpx.Response(400, text="non-mandatory-script-verify-flag")),
        )
        with pytest.raises(BroadcastError, match="script-verify") as exc_info:
            await client.broadcast("0200beef")
        await client.close()
        assert exc_info.value.tx_hex == "0200beef"
        assert exc_info.value.details["tx_hex"] == "0200beef"
