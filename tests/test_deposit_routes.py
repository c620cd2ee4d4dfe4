"""
Tests for deposit creation/confirmation routes and the operator endpoints
"""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from config import Config
from models import DepositStatus
from handlers.deposit_routes import router
from services.paypal_service import PayPalAPIError, PayPalPaymentLookup
from utils.exception_handler import TransientProviderError

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture
def client():
    app = FastAPI()
    app.include_router(router)
    return TestClient(app)


@pytest.fixture
def admin_token():
    with patch.object(Config, "ADMIN_API_TOKEN", ADMIN_TOKEN):
        yield {"X-Admin-Token": ADMIN_TOKEN}


@pytest.fixture
def records():
    with patch("handlers.deposit_routes.deposit_record_service") as service:
        yield service


def _lookup(capture_id="CAP1", status="COMPLETED", custom_id="d1"):
    return PayPalPaymentLookup(
        resource_type="capture",
        resource_id=capture_id,
        provider_status=status,
        transaction_id=capture_id,
        custom_id=custom_id,
    )


@pytest.fixture
def paypal():
    with patch("handlers.deposit_routes.paypal_service") as service:
        service.is_configured.return_value = True
        service.lookup_payment = AsyncMock(return_value=_lookup())
        yield service


@pytest.fixture
def reconciliation():
    with patch("handlers.deposit_routes.deposit_reconciliation_service") as service:
        yield service


@pytest.fixture
def balances():
    with patch("handlers.deposit_routes.balance_reconciliation_service") as service:
        yield service


class TestDepositRoutes:

    def test_create_deposit(self, client, records):
        records.create_deposit_record.return_value = {"success": True, "id": "d1"}

        response = client.post("/deposits", json={"user_id": "u1", "amount": "50.00"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "id": "d1"}
        records.create_deposit_record.assert_called_once_with("u1", "50.00")

    def test_create_deposit_validation_failure(self, client, records):
        records.create_deposit_record.return_value = {"success": False, "id": None, "error": "too small"}

        response = client.post("/deposits", json={"user_id": "u1", "amount": 0})

        assert response.status_code == 400

    def test_create_deposit_requires_json_object(self, client, records):
        response = client.post("/deposits", content=b"nope", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_attach_transaction(self, client, records, paypal):
        records.update_deposit_with_transaction.return_value = {"success": True, "message": "ok"}

        response = client.post("/deposits/d1/transaction", json={"transaction_id": "CAP1"})

        assert response.status_code == 200
        paypal.lookup_payment.assert_awaited_once_with("CAP1")
        records.update_deposit_with_transaction.assert_called_once_with("d1", "CAP1")

    def test_attach_order_id_records_its_capture(self, client, records, paypal):
        records.update_deposit_with_transaction.return_value = {"success": True, "message": "ok"}
        paypal.lookup_payment.return_value = PayPalPaymentLookup(
            resource_type="order", resource_id="ORDER1", provider_status="COMPLETED",
            transaction_id="CAP1", order_id="ORDER1", custom_id="d1",
        )

        response = client.post("/deposits/d1/transaction", json={"transaction_id": "ORDER1"})

        assert response.status_code == 200
        records.update_deposit_with_transaction.assert_called_once_with("d1", "CAP1")

    @pytest.mark.parametrize("lookup,status_code", [
        (None, 400),
        (_lookup(custom_id="someone-else"), 403),
        (_lookup(custom_id=None), 403),
        (_lookup(status="PENDING"), 409),
        (_lookup(status="DECLINED"), 409),
    ])
    def test_unconfirmed_capture_is_not_credited(self, client, records, paypal, lookup, status_code):
        paypal.lookup_payment.return_value = lookup

        response = client.post("/deposits/d1/transaction", json={"transaction_id": "MADE-UP"})

        assert response.status_code == status_code
        records.update_deposit_with_transaction.assert_not_called()

    @pytest.mark.parametrize("error,status_code", [
        (TransientProviderError("timeout"), 503),
        (PayPalAPIError("forbidden", status_code=403), 502),
    ])
    def test_provider_errors_block_credit(self, client, records, paypal, error, status_code):
        paypal.lookup_payment.side_effect = error

        response = client.post("/deposits/d1/transaction", json={"transaction_id": "CAP1"})

        assert response.status_code == status_code
        records.update_deposit_with_transaction.assert_not_called()

    def test_unconfigured_provider_blocks_credit(self, client, records, paypal):
        paypal.is_configured.return_value = False

        response = client.post("/deposits/d1/transaction", json={"transaction_id": "CAP1"})

        assert response.status_code == 503
        paypal.lookup_payment.assert_not_awaited()
        records.update_deposit_with_transaction.assert_not_called()

    def test_attach_transaction_requires_id(self, client, records):
        response = client.post("/deposits/d1/transaction", json={})
        assert response.status_code == 400
        records.update_deposit_with_transaction.assert_not_called()

    def test_check_payment(self, client, reconciliation):
        reconciliation.check_payment = AsyncMock(return_value={
            "success": True, "status": "completed", "message": "Payment already processed", "deposit_id": "d1",
        })

        response = client.get("/deposits/check/TX1")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"


    def test_made_up_capture_leaves_balance_alone(self, client, paypal, record_service, make_profile,
                                                  get_deposit, get_balance):
        make_profile("u1")
        deposit_id = record_service.create_deposit("u1", "500.00")
        paypal.lookup_payment.return_value = None

        with patch("handlers.deposit_routes.deposit_record_service", record_service):
            response = client.post(f"/deposits/{deposit_id}/transaction", json={"transaction_id": "MADE-UP"})

        assert response.status_code == 400
        deposit = get_deposit(deposit_id)
        assert deposit.transaction_id is None
        assert deposit.status == DepositStatus.PENDING.value
        assert get_balance("u1") == Decimal("0.00")

    def test_confirmed_capture_credits_deposit(self, client, paypal, record_service, make_profile,
                                               get_deposit, get_balance):
        make_profile("u1")
        deposit_id = record_service.create_deposit("u1", "50.00")
        paypal.lookup_payment.return_value = _lookup(capture_id="CAP-9", custom_id=deposit_id)

        with patch("handlers.deposit_routes.deposit_record_service", record_service):
            response = client.post(f"/deposits/{deposit_id}/transaction", json={"transaction_id": "CAP-9"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert get_deposit(deposit_id).transaction_id == "CAP-9"
        assert get_balance("u1") == Decimal("47.75")

class TestAdminAuthentication:

    @pytest.mark.parametrize("path", [
        "/admin/deposits/process-pending",
        "/admin/deposits/retry-pending",
        "/admin/balances/u1/reconcile",
        "/admin/balances/u1/refresh",
    ])
    def test_missing_token_rejected(self, client, admin_token, path):
        assert client.post(path).status_code == 401

    def test_wrong_token_rejected(self, client, admin_token):
        response = client.get("/admin/deposits/status", headers={"X-Admin-Token": "wrong"})
        assert response.status_code == 401

    def test_unset_token_disables_endpoints(self, client):
        with patch.object(Config, "ADMIN_API_TOKEN", None):
            response = client.get("/admin/deposits/status", headers={"X-Admin-Token": "anything"})
        assert response.status_code == 401


class TestAdminRoutes:

    def test_process_pending(self, client, admin_token, reconciliation):
        reconciliation.process_all_pending_deposits.return_value = {"success": True, "count": 0}

        response = client.post("/admin/deposits/process-pending", headers=admin_token)

        assert response.status_code == 200
        assert response.json() == {"success": True, "count": 0}

    def test_retry_pending_uses_config_defaults(self, client, admin_token, reconciliation):
        reconciliation.retry_pending_deposits = AsyncMock(return_value={
            "success": True, "processed": 1, "failed": 0, "deposit_ids": ["d1"],
        })

        response = client.post("/admin/deposits/retry-pending", headers=admin_token)

        assert response.status_code == 200
        reconciliation.retry_pending_deposits.assert_awaited_once_with(
            max_attempts=Config.DEPOSIT_RETRY_MAX_ATTEMPTS,
            max_age_mins=Config.DEPOSIT_RETRY_MAX_AGE_MINUTES,
            limit_per_run=Config.DEPOSIT_RETRY_LIMIT_PER_RUN,
        )

    def test_retry_pending_options(self, client, admin_token, reconciliation):
        reconciliation.retry_pending_deposits = AsyncMock(return_value={
            "success": True, "processed": 0, "failed": 0, "deposit_ids": [],
        })

        response = client.post("/admin/deposits/retry-pending", headers=admin_token,
                               json={"max_attempts": 3, "max_age_mins": 120, "limit_per_run": 50})

        assert response.status_code == 200
        reconciliation.retry_pending_deposits.assert_awaited_once_with(
            max_attempts=3, max_age_mins=120, limit_per_run=50,
        )

    def test_retry_pending_rejects_bad_options(self, client, admin_token, reconciliation):
        response = client.post("/admin/deposits/retry-pending", headers=admin_token,
                               json={"max_attempts": "many"})
        assert response.status_code == 400

    def test_status(self, client, admin_token, reconciliation):
        counters = {"success": True, "total_pending": 2, "needs_retry": 1, "processed_today": 0, "failed_today": 0}
        reconciliation.get_pending_deposits_status.return_value = counters

        response = client.get("/admin/deposits/status", headers=admin_token)

        assert response.json() == counters

    def test_reconcile(self, client, admin_token, balances):
        balances.reconcile_user_balance.return_value = {
            "success": True, "user_id": "u1", "old_balance": Decimal("100.00"), "new_balance": Decimal("90.00"),
            "calculated_balance": Decimal("90.00"), "difference": Decimal("-10.00"), "adjusted": True,
        }

        response = client.post("/admin/balances/u1/reconcile", headers=admin_token)

        assert response.status_code == 200
        assert response.json()["adjusted"] is True
        balances.reconcile_user_balance.assert_called_once_with("u1", triggered_by="api")

    @pytest.mark.parametrize("reason,status_code", [("not_found", 404), ("ledger_failed", 500)])
    def test_reconcile_failures(self, client, admin_token, balances, reason, status_code):
        balances.reconcile_user_balance.return_value = {
            "success": False, "reason": reason, "user_id": "u1", "message": "nope",
        }

        response = client.post("/admin/balances/u1/reconcile", headers=admin_token)

        assert response.status_code == status_code

    def test_refresh(self, client, admin_token, balances):
        balances.refresh_user_balance.return_value = {
            "success": True, "user_id": "u1", "deposits_checked": 1, "deposits_credited": 1,
            "balance": Decimal("47.75"), "reconciliation": {"success": True, "adjusted": False},
        }

        response = client.post("/admin/balances/u1/refresh", headers=admin_token)

        assert response.status_code == 200
        assert response.json()["deposits_credited"] == 1
