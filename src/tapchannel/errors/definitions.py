"""Pre-defined channel errors."""

from __future__ import annotations

from tapchannel.errors.channel_errors import ChannelError

# -- Validation ------------------------------------------------------------

ErrInvalidPubKey = ChannelError(
    "public key must be 32-byte x-only or 33-byte compressed hex",
    status_code=400,
    code="invalid-pubkey",
)
ErrInvalidAddress = ChannelError("invalid bitcoin address", status_code=400, code="invalid-address")
ErrInvalidAmount = ChannelError("amount must be positive", status_code=400, code="invalid-amount")
ErrInvalidPsbt = ChannelError("invalid PSBT", status_code=400, code="invalid-psbt")
ErrNoOutputs = ChannelError("no payment outputs requested", status_code=400, code="no-outputs")
ErrNoTaprootAddress = ChannelError(
    "wallet has no taproot address", status_code=400, code="no-taproot-address"
)

# -- Not Found -------------------------------------------------------------

ErrWalletNotFound = ChannelError("wallet not found", status_code=404, code="wallet-not-found")
ErrCommitmentNotFound = ChannelError(
    "no commitment found for wallet", status_code=404, code="commitment-not-found"
)
ErrMerchantNotFound = ChannelError("merchant not found", status_code=404, code="merchant-not-found")
ErrNoSettlementFound = ChannelError(
    "no settlement transaction found", status_code=404, code="settlement-not-found"
)

# -- Conflict --------------------------------------------------------------

ErrCommitmentNotSigned = ChannelError(
    "latest commitment has no user signature", status_code=409, code="commitment-not-signed"
)
ErrCommitmentAlreadySettled = ChannelError(
    "latest commitment is already settled", status_code=409, code="commitment-already-settled"
)
ErrSettlementInProgress = ChannelError(
    "a settlement is already in progress for this wallet",
    status_code=409,
    code="settlement-in-progress",
)
ErrMerchantDuplicate = ChannelError(
    "merchant name already registered", status_code=409, code="merchant-duplicate"
)
ErrBalanceContention = ChannelError(
    "wallet balance kept changing during reconciliation; retry",
    status_code=409,
    code="balance-contention",
)

# -- Resources -------------------------------------------------------------

ErrNoUtxos = ChannelError(
    "no UTXOs available at the taproot address", status_code=422, code="no-utxos"
)

# -- Integrity -------------------------------------------------------------

ErrHubKeysNotConfigured = ChannelError(
    "hub key material is not configured", status_code=500, code="hub-keys-missing"
)
ErrHubKeyMismatch = ChannelError(
    "hub private key does not match the published hub public key",
    status_code=500,
    code="hub-key-mismatch",
)
