"""mempool.space: address history, UTXOs, tx status, broadcast."""

from tapchannel.chain.mempool.client import MempoolClient
from tapchannel.chain.mempool.models import AddressTransaction, Confirmation, TxOut, TxStatus, Utxo

__all__ = ["AddressTransaction", "Confirmation", "MempoolClient", "TxOut", "TxStatus", "Utxo"]
