"""Satoshi / BTC conversions for the ledger boundary."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

SATS_PER_BTC = 100_000_000


def format_btc(sats: int) -> str:
    """Render a satoshi amount as a fixed 8-decimal BTC string."""
    sign = "-" if sats < 0 else ""
    whole, frac = divmod(abs(sats), SATS_PER_BTC)
    return f"{sign}{whole}.{frac:08d}"


def parse_btc(value: str | int | float | Decimal) -> int:
    """Convert a BTC amount to satoshis.

    Raises:
        ValueError: If the value is not a number or has more than 8 decimals.
    """
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        msg = f"not a BTC amount: {value!r}"
        raise ValueError(msg) from exc
    sats = amount * SATS_PER_BTC
    if sats != sats.to_integral_value():
        msg = f"BTC amount has sub-satoshi precision: {value!r}"
        raise ValueError(msg)
    return int(sats)
