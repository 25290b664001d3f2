"""ChannelError: base exception class plus errors that carry structured details."""

from __future__ import annotations

from typing import Any

from tapchannel.utils.amounts import format_btc


class ChannelError(Exception):
    """Base error for all payment channel operations.

    Attributes:
        message: Human-readable error description.
        status_code: Suggested HTTP status code.
        code: Machine-readable error code string.
        details: Structured context for callers (amounts, input indexes, hex blobs).
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 500,
        code: str = "channel-error",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}


# -- Resources -------------------------------------------------------------


class InsufficientBalanceError(ChannelError):
    """The cached L2 balance cannot cover a commitment's amount plus fee."""

    def __init__(self, *, amount: int, fee: int, available: int) -> None:
        required = amount + fee
        super().__init__(
            f"insufficient L2 balance: required {format_btc(required)} BTC, "
            f"available {format_btc(available)} BTC",
            status_code=400,
            code="insufficient-balance",
            details={
                "required": format_btc(required),
                "available": format_btc(available),
                "amount": format_btc(amount),
                "fee": format_btc(fee),
            },
        )
        self.required = required
        self.available = available


class InsufficientFundsError(ChannelError):
    """The Taproot UTXOs cannot cover the requested outputs plus the fee."""

    def __init__(self, *, accumulated: int, total_output: int, fee: int) -> None:
        required = total_output + fee
        shortfall = required - accumulated
        super().__init__(
            f"insufficient funds at taproot address: have {accumulated} sats, "
            f"need {required} sats",
            status_code=422,
            code="insufficient-funds",
            details={
                "accumulated": accumulated,
                "total_output": total_output,
                "fee": fee,
                "required": required,
                "shortfall": shortfall,
            },
        )
        self.shortfall = shortfall


# -- Validation ------------------------------------------------------------


class AllOutputsDustError(ChannelError):
    """Every requested output was below the dust threshold."""

    def __init__(self, *, threshold: int, rejected: list[dict[str, Any]]) -> None:
        super().__init__(
            f"all outputs are below the dust threshold of {threshold} sats",
            status_code=400,
            code="all-outputs-dust",
            details={"threshold": threshold, "rejected": rejected},
        )


# -- Integrity -------------------------------------------------------------


class TaprootAddressMismatchError(ChannelError):
    """The stored Taproot address differs from the one derived from current keys."""

    def __init__(self, *, stored: str, derived: str) -> None:
        super().__init__(
            "stored taproot address does not match the derived address",
            status_code=500,
            code="taproot-address-mismatch",
            details={"stored": stored, "derived": derived},
        )


class MissingSignatureError(ChannelError):
    """A PSBT input carries neither script-path nor key-path signatures."""

    def __init__(self, input_index: int) -> None:
        super().__init__(
            f"input {input_index} has no user signature",
            status_code=400,
            code="missing-signature",
            details={"input_index": input_index},
        )
        self.input_index = input_index


class WitnessIntegrityError(ChannelError):
    """A user-supplied witness or signature is malformed or invalid."""

    def __init__(self, message: str, *, input_index: int) -> None:
        super().__init__(
            message,
            status_code=400,
            code="witness-integrity",
            details={"input_index": input_index},
        )
        self.input_index = input_index


class ControlBlockMismatchError(ChannelError):
    """The PSBT control block is absent from the finalized witness."""

    def __init__(self, *, input_index: int, control_block: str, witness: list[str]) -> None:
        super().__init__(
            f"control block of input {input_index} missing from final witness",
            status_code=500,
            code="control-block-mismatch",
            details={
                "input_index": input_index,
                "control_block": control_block,
                "witness": witness,
            },
        )
