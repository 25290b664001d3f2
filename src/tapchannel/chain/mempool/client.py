"""mempool.space REST client: address history, UTXOs, status, broadcast.

Async HTTP client for the Esplora API served by mempool.space:
- GET  /address/<addr>/txs
- GET  /address/<addr>/utxo
- GET  /tx/<txid>/status
- GET  /blocks/tip/height
- POST /tx

The base URL selects the network (``/api``, ``/testnet/api``, ``/signet/api``).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from tapchannel.chain.mempool.models import AddressTransaction, Confirmation, TxStatus, Utxo
from tapchannel.errors.chain_errors import BroadcastError, IndexerError, TransactionNotFoundError

if TYPE_CHECKING:
    from tapchannel.config.settings import IndexerConfig, Network

logger = logging.getLogger(__name__)


def confirmations_at(tip_height: int, block_height: int | None) -> int:
    """Confirmation count of a block at *block_height* given the tip (minimum 1)."""
    if block_height is None:
        return 0
    return max(1, tip_height - block_height + 1)


class MempoolClient:
    """Async HTTP client for the mempool.space Esplora API.

    Usage::

        client = MempoolClient(config.indexer, Network.TESTNET)
        await client.connect()
        try:
            txs = await client.get_address_transactions("tb1p...")
        finally:
            await client.close()
    """

    def __init__(self, config: IndexerConfig, network: Network) -> None:
        self._config = config
        self._network = network
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        """Create the underlying HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url(self._network),
            headers={"Accept": "application/json"},
            timeout=self._config.timeout,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def is_connected(self) -> bool:
        """Check if the HTTP client is active."""
        return self._client is not None

    @property
    def network(self) -> Network:
        return self._network

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_address_transactions(self, address: str) -> list[AddressTransaction]:
        """List confirmed and mempool transactions touching *address*.

        Raises:
            IndexerError: On transport or HTTP errors.
        """
        items: list[dict[str, Any]] = await self._get_json(f"/address/{address}/txs")
        return [AddressTransaction.from_dict(item) for item in items]

    async def get_utxos(self, address: str) -> list[Utxo]:
        """List unspent outputs at *address*.

        Raises:
            IndexerError: On transport or HTTP errors.
        """
        items: list[dict[str, Any]] = await self._get_json(f"/address/{address}/utxo")
        return [Utxo.from_dict(item) for item in items]

    async def get_transaction_status(self, txid: str) -> TxStatus:
        """Get the confirmation status of *txid*.

        Raises:
            TransactionNotFoundError: If the indexer does not know the transaction.
            IndexerError: On other transport or HTTP errors.
        """
        return TxStatus.from_dict(await self._get_json(f"/tx/{txid}/status", txid=txid))

    async def get_tip_height(self) -> int:
        """Height of the current best block."""
        response = await self._request("GET", "/blocks/tip/height")
        try:
            return int(response.text.strip())
        except ValueError as exc:
            msg = f"unexpected tip height response: {response.text[:64]!r}"
            raise IndexerError(msg) from exc

    async def get_confirmation(self, txid: str) -> Confirmation:
        """Status of *txid* with its confirmation count against the tip.

        Raises:
            TransactionNotFoundError: If the indexer does not know the transaction.
            IndexerError: On other transport or HTTP errors.
        """
        status = await self.get_transaction_status(txid)
        if not status.confirmed:
            return Confirmation(txid=txid, confirmed=False)
        tip = await self.get_tip_height()
        return Confirmation(
            txid=txid,
            confirmed=True,
            confirmations=confirmations_at(tip, status.block_height),
            block_height=status.block_height,
            block_time=status.block_time,
        )

    async def broadcast(self, raw_tx_hex: str) -> str:
        """Broadcast a signed transaction.

        Returns:
            The txid reported by the node.

        Raises:
            BroadcastError: If the node rejects the transaction.
            IndexerError: On transport errors.
        """
        client = self._ensure_connected()
        try:
            response = await client.post(
                "/tx",
                content=raw_tx_hex,
                headers={"Content-Type": "text/plain"},
            )
        except httpx.HTTPError as exc:
            msg = f"broadcast request failed: {exc}"
            raise IndexerError(msg) from exc
        if response.status_code != 200:
            logger.warning("Broadcast rejected (%d): %s", response.status_code, response.text)
            msg = f"broadcast rejected: {response.text.strip()}"
            raise BroadcastError(msg, tx_hex=raw_tx_hex)
        return response.text.strip()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _ensure_connected(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = "MempoolClient is not connected; call connect() first"
            raise RuntimeError(msg)
        return self._client

    async def _request(self, method: str, path: str, *, txid: str | None = None) -> httpx.Response:
        client = self._ensure_connected()
        try:
            response = await client.request(method, path)
        except httpx.HTTPError as exc:
            msg = f"indexer request {path} failed: {exc}"
            raise IndexerError(msg) from exc
        if response.status_code == 404 and txid is not None:
            raise TransactionNotFoundError(txid)
        if response.status_code >= 400:
            msg = f"indexer {path} returned {response.status_code}: {response.text[:200]}"
            raise IndexerError(msg, status_code=502)
        return response

    async def _get_json(self, path: str, *, txid: str | None = None) -> Any:
        response = await self._request("GET", path, txid=txid)
        try:
            return response.json()
        except ValueError as exc:
            msg = f"indexer {path} returned invalid JSON"
            raise IndexerError(msg) from exc
