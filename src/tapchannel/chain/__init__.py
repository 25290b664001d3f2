"""Chain access: Esplora (mempool.space) indexer client."""

from tapchannel.chain.mempool.client import MempoolClient

__all__ = ["MempoolClient"]
