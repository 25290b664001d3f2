"""Chain indexer and broadcast errors."""

from __future__ import annotations

from tapchannel.errors.channel_errors import ChannelError


class IndexerError(ChannelError):
    """Error from the Esplora chain indexer."""

    def __init__(self, message: str, *, status_code: int = 502, code: str = "indexer-error") -> None:
        super().__init__(message, status_code=status_code, code=code)


class TransactionNotFoundError(IndexerError):
    """The indexer does not know the transaction (never seen or evicted)."""

    def __init__(self, txid: str) -> None:
        super().__init__(f"transaction {txid} not found", status_code=404, code="tx-not-found")
        self.txid = txid


class BroadcastError(ChannelError):
    """The network rejected a settlement transaction.

    Carries the raw transaction and per-input witness hexes for diagnosis.
    """

    def __init__(
        self,
        message: str,
        *,
        tx_hex: str = "",
        witnesses: list[list[str]] | None = None,
    ) -> None:
        super().__init__(
            message,
            status_code=502,
            code="broadcast-error",
            details={"tx_hex": tx_hex, "witnesses": witnesses or []},
        )
        self.tx_hex = tx_hex
        self.witnesses = witnesses or []
