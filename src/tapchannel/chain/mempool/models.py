"""Esplora response models: address transactions, UTXOs, confirmation status.

Data classes mirroring the subset of the Esplora REST schema the channel
reads. Unknown fields are ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def _to_datetime(timestamp: int | None) -> datetime | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


@dataclass(frozen=True)
class TxStatus:
    """Confirmation status of a transaction."""

    confirmed: bool = False
    block_height: int | None = None
    block_hash: str | None = None
    block_time: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TxStatus:
        return cls(
            confirmed=bool(data.get("confirmed", False)),
            block_height=data.get("block_height"),
            block_hash=data.get("block_hash"),
            block_time=data.get("block_time"),
        )

    @property
    def block_datetime(self) -> datetime | None:
        """Block time as an aware UTC datetime."""
        return _to_datetime(self.block_time)


@dataclass(frozen=True)
class TxOut:
    """One output of an indexed transaction."""

    value: int
    scriptpubkey: str = ""
    address: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TxOut:
        return cls(
            value=int(data.get("value", 0)),
            scriptpubkey=data.get("scriptpubkey", ""),
            address=data.get("scriptpubkey_address"),
        )


@dataclass(frozen=True)
class AddressTransaction:
    """A transaction touching an address, as listed by ``/address/:a/txs``."""

    txid: str
    status: TxStatus
    vout: list[TxOut] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AddressTransaction:
        return cls(
            txid=data["txid"],
            status=TxStatus.from_dict(data.get("status") or {}),
            vout=[TxOut.from_dict(o) for o in data.get("vout", [])],
        )

    def value_to(self, address: str) -> int:
        """Sum of the outputs paying *address*."""
        return sum(o.value for o in self.vout if o.address == address)


@dataclass(frozen=True)
class Utxo:
    """An unspent output from ``/address/:a/utxo``."""

    txid: str
    vout: int
    value: int
    status: TxStatus = field(default_factory=TxStatus)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Utxo:
        return cls(
            txid=data["txid"],
            vout=int(data["vout"]),
            value=int(data["value"]),
            status=TxStatus.from_dict(data.get("status") or {}),
        )


@dataclass(frozen=True)
class Confirmation:
    """Status of a transaction relative to the current chain tip."""

    txid: str
    confirmed: bool
    confirmations: int = 0
    block_height: int | None = None
    block_time: int | None = None

    @property
    def block_datetime(self) -> datetime | None:
        return _to_datetime(self.block_time)
