"""Tests for V1 REST API endpoints.

All service methods are mocked; these cover routing, request validation,
error mapping and response serialisation.
"""

from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from tapchannel.api.app import create_app
from tapchannel.engine.models.wallet import SettlementState
from tapchannel.engine.services.commitment_service import SettlementSummary
from tapchannel.engine.services.deposit_service import DepositScanResult
from tapchannel.engine.services.psbt_service import PaymentOutput, PsbtDraft
from tapchannel.engine.settlement.models import SettlementResult
from tapchannel.errors.channel_errors import InsufficientBalanceError
from tapchannel.errors.definitions import ErrCommitmentAlreadySettled, ErrWalletNotFound
from tests.conftest import FUNDING_ADDRESS, MERCHANT_ADDRESS, make_config

NOW = datetime.now(tz=UTC)
TAPROOT_ADDRESS = "tb1p" + "q" * 58
TXID = "ab" * 32


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _make_wallet(wallet_id: int = 1, balance: int = 100_000, **overrides):
    fields = {
        "id": wallet_id,
        "bitcoin_address": FUNDING_ADDRESS,
        "taproot_address": TAPROOT_ADDRESS,
        "hub_public_key": "11" * 32,
        "user_public_key": "33" * 32,
        "l2_balance": f"{balance / 1e8:.8f}",
        "l2_balance_sats": balance,
        "settlement_in_progress": False,
        "settlement_state": "idle",
        "pending_settlement_txid": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _make_deposit(deposit_id: int = 1):
    return SimpleNamespace(
        id=deposit_id,
        txid="aa" * 32,
        amount="0.00100000",
        amount_sats=100_000,
        status="confirmed",
        confirmations=6,
        confirmed_at=NOW,
        consumed=False,
    )


def _make_commitment(commitment_id: int = 1, **overrides):
    fields = {
        "id": commitment_id,
        "wallet_id": 1,
        "merchant_address": MERCHANT_ADDRESS,
        "amount": "0.00010000",
        "amount_sats": 10_000,
        "fee": "0.00000450",
        "fee_sats": 450,
        "psbt": "70736274ff01",
        "user_signed_psbt": None,
        "settled": False,
        "settlement_txid": None,
        "settlement_confirmed_at": None,
        "created_at": NOW,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _make_merchant(merchant_id: int = 1, name: str = "Coffee Shop"):
    return SimpleNamespace(
        id=merchant_id,
        name=name,
        wallet_id=2,
        payment_url="https://coffee.example/pay",
        created_at=NOW,
    )


def _mock_engine():
    """Create a mock engine with every service stubbed."""
    engine = MagicMock()
    engine.wallet_service = AsyncMock()
    engine.deposit_service = AsyncMock()
    engine.balance_service = AsyncMock()
    engine.psbt_service = AsyncMock()
    engine.commitment_service = AsyncMock()
    engine.merchant_service = AsyncMock()
    engine.settlement_service = AsyncMock()
    engine.metrics = None
    return engine


@pytest.fixture
def client_with_engine():
    """Create a test client with a mock engine attached to app.state."""
    app = create_app(config=make_config())
    engine = _mock_engine()
    app.state.engine = engine
    client = TestClient(app, raise_server_exceptions=False)
    return client, engine


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------


class TestWallets:
    def test_create(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.get_or_create_wallet.return_value = _make_wallet(taproot_address=None)

        resp = client.post("/api/v1/wallets", json={"bitcoin_address": FUNDING_ADDRESS})
        assert resp.status_code == 201
        data = resp.json()
        assert data["bitcoin_address"] == FUNDING_ADDRESS
        assert data["taproot_address"] is None
        assert data["l2_balance"] == "0.00100000"
        engine.wallet_service.get_or_create_wallet.assert_awaited_once_with(FUNDING_ADDRESS)

    def test_create_requires_address(self, client_with_engine) -> None:
        client, engine = client_with_engine
        resp = client.post("/api/v1/wallets", json={"bitcoin_address": ""})
        assert resp.status_code == 422
        engine.wallet_service.get_or_create_wallet.assert_not_awaited()

    def test_get_refreshes_balance(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.refresh_wallet.return_value = _make_wallet(balance=89_550)

        resp = client.get("/api/v1/wallets/1")
        assert resp.status_code == 200
        assert resp.json()["l2_balance_sats"] == 89_550
        engine.wallet_service.refresh_wallet.assert_awaited_once_with(1)

    def test_get_unknown(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.refresh_wallet.side_effect = ErrWalletNotFound

        resp = client.get("/api/v1/wallets/99")
        assert resp.status_code == 404
        assert resp.json()["code"] == "wallet-not-found"

    def test_by_address(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.get_wallet_by_address.return_value = _make_wallet(wallet_id=4)
        engine.wallet_service.refresh_wallet.return_value = _make_wallet(wallet_id=4)

        resp = client.get(f"/api/v1/wallets/address/{FUNDING_ADDRESS}")
        assert resp.status_code == 200
        assert resp.json()["id"] == 4
        engine.wallet_service.refresh_wallet.assert_awaited_once_with(4)

    def test_by_unknown_address(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.get_wallet_by_address.return_value = None

        resp = client.get("/api/v1/wallets/address/tb1qnothere")
        assert resp.status_code == 404

    def test_generate_taproot(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.generate_taproot_address.return_value = _make_wallet()

        resp = client.post("/api/v1/wallets/1/taproot", json={"user_public_key": "33" * 32})
        assert resp.status_code == 200
        assert resp.json()["taproot_address"] == TAPROOT_ADDRESS
        engine.wallet_service.generate_taproot_address.assert_awaited_once_with(1, "33" * 32)

    def test_generate_taproot_rejects_short_key(self, client_with_engine) -> None:
        client, _ = client_with_engine
        resp = client.post("/api/v1/wallets/1/taproot", json={"user_public_key": "33"})
        assert resp.status_code == 422


class TestDeposits:
    def test_scan(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.get_wallet.return_value = _make_wallet()
        engine.deposit_service.scan.return_value = DepositScanResult(new=1, recalculated=True)

        resp = client.post("/api/v1/wallets/1/deposits/scan")
        assert resp.status_code == 200
        data = resp.json()
        assert data["new"] == 1
        assert data["recalculated"] is True
        assert data["wallet"]["id"] == 1
        engine.deposit_service.scan.assert_awaited_once_with(1, TAPROOT_ADDRESS)
        engine.balance_service.recalculate.assert_not_awaited()

    def test_scan_without_changes_still_reconciles(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.get_wallet.return_value = _make_wallet()
        engine.deposit_service.scan.return_value = DepositScanResult()

        resp = client.post("/api/v1/wallets/1/deposits/scan")
        assert resp.status_code == 200
        engine.balance_service.recalculate.assert_awaited_once_with(1)

    def test_scan_unbound_wallet(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.get_wallet.return_value = _make_wallet(taproot_address=None)

        resp = client.post("/api/v1/wallets/1/deposits/scan")
        assert resp.status_code == 400
        assert resp.json()["code"] == "no-taproot-address"
        engine.deposit_service.scan.assert_not_awaited()

    def test_list(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.get_wallet.return_value = _make_wallet()
        engine.deposit_service.list_deposits.return_value = [_make_deposit(1), _make_deposit(2)]

        resp = client.get("/api/v1/wallets/1/deposits")
        assert resp.status_code == 200
        assert [d["id"] for d in resp.json()] == [1, 2]
        assert resp.json()[0]["amount"] == "0.00100000"


# ---------------------------------------------------------------------------
# PSBT & commitments
# ---------------------------------------------------------------------------


class TestPsbt:
    def test_build(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.psbt_service.build_payment_psbt.return_value = PsbtDraft(
            psbt_hex="70736274ff01",
            fee=450,
            inputs=1,
            accumulated=100_000,
            change=89_550,
            outputs=[PaymentOutput(MERCHANT_ADDRESS, 10_000)],
            dropped=[PaymentOutput(FUNDING_ADDRESS, 100)],
        )

        resp = client.post(
            "/api/v1/psbt",
            json={"wallet_id": 1, "outputs": [{"address": MERCHANT_ADDRESS, "amount_sats": 10_000}]},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["psbt"] == "70736274ff01"
        assert data["change"] == 89_550
        assert data["dropped"] == [{"address": FUNDING_ADDRESS, "amount_sats": 100}]

        args, kwargs = engine.psbt_service.build_payment_psbt.await_args
        assert args == (1, [PaymentOutput(MERCHANT_ADDRESS, 10_000)])
        assert kwargs == {"aggregate": False}

    def test_insufficient_funds_details(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.psbt_service.build_payment_psbt.side_effect = InsufficientBalanceError(100_000, 450, 50_000)

        resp = client.post("/api/v1/psbt", json={"wallet_id": 1, "include_merchant_balances": True})
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "insufficient-balance"
        assert body["details"]["available"] == "0.00050000"


class TestCommitments:
    def test_create_parses_btc_amount(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.commitment_service.create_commitment.return_value = _make_commitment()

        resp = client.post(
            "/api/v1/commitments",
            json={
                "wallet_id": 1,
                "merchant_address": MERCHANT_ADDRESS,
                "amount": "0.0001",
                "psbt": "70736274ff01",
            },
        )
        assert resp.status_code == 201
        assert resp.json()["fee"] == "0.00000450"
        engine.commitment_service.create_commitment.assert_awaited_once_with(
            1, MERCHANT_ADDRESS, 10_000, "70736274ff01"
        )

    def test_create_bad_amount(self, client_with_engine) -> None:
        client, engine = client_with_engine
        resp = client.post(
            "/api/v1/commitments",
            json={"wallet_id": 1, "merchant_address": MERCHANT_ADDRESS, "amount": "ten", "psbt": "00"},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid-amount"
        engine.commitment_service.create_commitment.assert_not_awaited()

    def test_create_insufficient_balance(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.commitment_service.create_commitment.side_effect = InsufficientBalanceError(100_000, 50, 100_000)

        resp = client.post(
            "/api/v1/commitments",
            json={"wallet_id": 1, "merchant_address": MERCHANT_ADDRESS, "amount": "0.001", "psbt": "00"},
        )
        assert resp.status_code == 400
        assert resp.json()["details"]["required"] == "0.00100050"

    def test_sign(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.commitment_service.attach_user_signature.return_value = _make_commitment(
            user_signed_psbt="70736274ff02"
        )

        resp = client.patch("/api/v1/commitments/1/sign", json={"signed_psbt": "70736274ff02"})
        assert resp.status_code == 200
        assert resp.json()["user_signed_psbt"] == "70736274ff02"
        engine.commitment_service.attach_user_signature.assert_awaited_once_with(1, "70736274ff02")

    def test_sign_settled(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.commitment_service.attach_user_signature.side_effect = ErrCommitmentAlreadySettled

        resp = client.patch("/api/v1/commitments/1/sign", json={"signed_psbt": "70736274ff02"})
        assert resp.status_code == ErrCommitmentAlreadySettled.status_code
        assert resp.json()["code"] == "commitment-already-settled"

    def test_list_unsettled(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.get_wallet.return_value = _make_wallet()
        engine.commitment_service.list_commitments.return_value = [_make_commitment(2), _make_commitment(1)]

        resp = client.get("/api/v1/wallets/1/commitments", params={"unsettled_only": "true"})
        assert resp.status_code == 200
        assert [c["id"] for c in resp.json()] == [2, 1]
        engine.commitment_service.list_commitments.assert_awaited_once_with(1, unsettled_only=True)

    def test_latest(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.commitment_service.get_latest.return_value = _make_commitment(3)

        resp = client.get("/api/v1/wallets/1/commitments/latest")
        assert resp.status_code == 200
        assert resp.json()["id"] == 3

    def test_latest_none(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.commitment_service.get_latest.return_value = None

        resp = client.get("/api/v1/wallets/1/commitments/latest")
        assert resp.status_code == 404
        assert resp.json()["code"] == "commitment-not-found"


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


class TestSettlements:
    def test_settle(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.settlement_service.settle.return_value = SettlementResult(
            txid=TXID, state=SettlementState.BROADCAST, message="broadcast"
        )

        resp = client.post("/api/v1/settlements", json={"wallet_id": 1})
        assert resp.status_code == 202
        data = resp.json()
        assert data["txid"] == TXID
        assert data["state"] == "broadcast"
        assert data["confirmed"] is False
        engine.settlement_service.settle.assert_awaited_once_with(1, wait=False)

    def test_settle_and_wait(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.settlement_service.settle.return_value = SettlementResult(
            txid=TXID, state=SettlementState.CONFIRMED, confirmed=True, attempts=2, block_time=NOW
        )

        resp = client.post("/api/v1/settlements", json={"wallet_id": 1, "wait": True})
        assert resp.status_code == 202
        assert resp.json()["confirmed"] is True
        assert resp.json()["attempts"] == 2
        engine.settlement_service.settle.assert_awaited_once_with(1, wait=True)

    def test_sync(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.settlement_service.sync_settlement.return_value = SettlementResult(
            txid=None, state=SettlementState.IDLE, message="no settlement on record"
        )

        resp = client.post("/api/v1/wallets/1/settlements/sync")
        assert resp.status_code == 200
        assert resp.json()["state"] == "idle"
        assert resp.json()["txid"] is None

    def test_history(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.get_wallet.return_value = _make_wallet()
        latest = _make_commitment(5, settled=True, settlement_txid=TXID)
        engine.commitment_service.settlement_history.return_value = [
            SettlementSummary(
                txid=TXID,
                total_sats=15_000,
                fee_sats=900,
                count=2,
                confirmed_at=NOW,
                latest=latest,
            )
        ]

        resp = client.get("/api/v1/wallets/1/settlements")
        assert resp.status_code == 200
        entry = resp.json()[0]
        assert entry["total"] == "0.00015000"
        assert entry["count"] == 2
        assert entry["latest_commitment_id"] == 5


# ---------------------------------------------------------------------------
# Merchants
# ---------------------------------------------------------------------------


class TestMerchants:
    def test_create(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.merchant_service.create_merchant.return_value = _make_merchant()

        resp = client.post(
            "/api/v1/merchants",
            json={"name": "Coffee Shop", "wallet_id": 2, "payment_url": "https://coffee.example/pay"},
        )
        assert resp.status_code == 201
        assert resp.json()["name"] == "Coffee Shop"
        engine.merchant_service.create_merchant.assert_awaited_once_with(
            "Coffee Shop", 2, "https://coffee.example/pay"
        )

    def test_get_and_by_name(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.merchant_service.get_merchant.return_value = _make_merchant(7)
        engine.merchant_service.get_by_name.return_value = _make_merchant(7)

        assert client.get("/api/v1/merchants/7").json()["id"] == 7
        assert client.get("/api/v1/merchants/name/Coffee Shop").json()["id"] == 7
        engine.merchant_service.get_by_name.assert_awaited_once_with("Coffee Shop")

    def test_list(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.merchant_service.list_merchants.return_value = [_make_merchant(1, "Alpha"), _make_merchant(2, "Zeta")]

        resp = client.get("/api/v1/wallets/2/merchants")
        assert [m["name"] for m in resp.json()] == ["Alpha", "Zeta"]

    def test_delete(self, client_with_engine) -> None:
        client, engine = client_with_engine
        resp = client.delete("/api/v1/merchants/3")
        assert resp.status_code == 204
        engine.merchant_service.delete_merchant.assert_awaited_once_with(3)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrorHandling:
    def test_unexpected_error_is_500(self, client_with_engine) -> None:
        client, engine = client_with_engine
        engine.wallet_service.refresh_wallet.side_effect = RuntimeError("boom")

        resp = client.get("/api/v1/wallets/1")
        assert resp.status_code == 500

    def test_engine_not_running(self) -> None:
        client = TestClient(create_app(config=make_config()), raise_server_exceptions=False)
        resp = client.get("/api/v1/wallets/1")
        assert resp.status_code == 503
        assert resp.json()["code"] == "engine-unavailable"
