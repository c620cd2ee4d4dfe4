"""
Tests for manual, batch and scheduled deposit reprocessing
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from config import Config
from models import DepositStatus
from services.deposit_reconciliation import DepositReconciliationService
from services.paypal_service import PayPalAPIError, PayPalPaymentLookup
from utils.exception_handler import TransientProviderError


def _paypal(configured=True, lookup=None):
    paypal = MagicMock()
    paypal.is_configured.return_value = configured
    paypal.lookup_payment = AsyncMock(return_value=lookup)
    return paypal


def _capture(capture_id="CAP1", status="COMPLETED", custom_id=None):
    return PayPalPaymentLookup(
        resource_type="capture",
        resource_id=capture_id,
        provider_status=status,
        transaction_id=capture_id,
        custom_id=custom_id,
        payer_email="payer@example.com",
        payer_id="PAYER1",
    )


@pytest.fixture
def reconciliation(processor, session_factory):
    def _make(paypal=None):
        return DepositReconciliationService(
            processor=processor,
            paypal=paypal or _paypal(configured=False),
            session_factory=session_factory,
        )
    return _make


class TestProcessSpecificTransaction:

    @pytest.mark.asyncio
    async def test_provider_lookup_feeds_pipeline(self, reconciliation, make_profile, make_deposit,
                                                  get_deposit, get_balance):
        make_profile("u1")
        deposit_id = make_deposit("u1", "50.00")
        paypal = _paypal(lookup=_capture("CAP1", custom_id=deposit_id))

        result = await reconciliation(paypal).process_specific_transaction(transaction_id="CAP1")

        assert result["success"] is True
        assert result["reason"] == "credited"
        assert result["deposit_id"] == deposit_id
        deposit = get_deposit(deposit_id)
        assert deposit.transaction_id == "CAP1"
        assert deposit.idempotency_key == "paypal-CAP1-PAYMENT.CAPTURE.COMPLETED"
        assert get_balance("u1") == Decimal("47.75")
        paypal.lookup_payment.assert_awaited_once_with("CAP1")

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, reconciliation, make_profile, make_deposit, get_balance):
        make_profile("u1")
        deposit_id = make_deposit("u1", "50.00")
        paypal = _paypal()
        paypal.lookup_payment.side_effect = [
            TransientProviderError("timeout"),
            _capture("CAP1", custom_id=deposit_id),
        ]

        with patch.object(Config, "MANUAL_PROCESSING_RETRY_DELAY_SECONDS", 0):
            result = await reconciliation(paypal).process_specific_transaction(transaction_id="CAP1")

        assert result["reason"] == "credited"
        assert paypal.lookup_payment.await_count == 2
        assert get_balance("u1") == Decimal("47.75")

    @pytest.mark.asyncio
    async def test_exhausted_retries_fall_back_to_direct_lookup(self, reconciliation, make_profile,
                                                                 make_deposit, get_balance):
        make_profile("u1")
        make_deposit("u1", "50.00", transaction_id="CAP1")
        paypal = _paypal()
        paypal.lookup_payment.side_effect = TransientProviderError("PayPal down")

        with patch.object(Config, "MANUAL_PROCESSING_RETRY_DELAY_SECONDS", 0), \
             patch.object(Config, "MANUAL_PROCESSING_MAX_RETRIES", 2):
            result = await reconciliation(paypal).process_specific_transaction(transaction_id="CAP1")

        assert paypal.lookup_payment.await_count == 3
        assert result["reason"] == "credited"
        assert get_balance("u1") == Decimal("47.75")

    @pytest.mark.asyncio
    async def test_provider_rejection_is_not_retried(self, reconciliation, make_profile, make_deposit):
        make_profile("u1")
        deposit_id = make_deposit("u1", "50.00", transaction_id="CAP1")
        paypal = _paypal()
        paypal.lookup_payment.side_effect = PayPalAPIError("forbidden", status_code=403)

        result = await reconciliation(paypal).process_specific_transaction(transaction_id="CAP1")

        assert paypal.lookup_payment.await_count == 1
        assert result["deposit_id"] == deposit_id

    @pytest.mark.asyncio
    async def test_unconfigured_provider_uses_deposit_id(self, reconciliation, make_profile, make_deposit,
                                                         get_balance):
        make_profile("u1")
        deposit_id = make_deposit("u1", "50.00", status=DepositStatus.COMPLETED.value)

        result = await reconciliation().process_specific_transaction(transaction_id=deposit_id)

        assert result["success"] is True
        assert get_balance("u1") == Decimal("47.75")

    @pytest.mark.asyncio
    async def test_unknown_id_reports_failure(self, reconciliation):
        result = await reconciliation(_paypal(lookup=None)).process_specific_transaction(transaction_id="NOPE")

        assert result["success"] is False
        assert result["reason"] == "unresolved"

    @pytest.mark.asyncio
    async def test_order_id_is_accepted(self, reconciliation, make_profile, make_deposit, get_balance):
        make_profile("u1")
        deposit_id = make_deposit("u1", "50.00")
        lookup = PayPalPaymentLookup(
            resource_type="order", resource_id="ORDER1", provider_status="COMPLETED",
            transaction_id="CAP9", order_id="ORDER1", custom_id=deposit_id,
        )

        result = await reconciliation(_paypal(lookup=lookup)).process_specific_transaction(order_id="ORDER1")

        assert result["deposit_id"] == deposit_id
        assert get_balance("u1") == Decimal("47.75")

    @pytest.mark.asyncio
    async def test_requires_an_identifier(self, reconciliation):
        result = await reconciliation().process_specific_transaction()
        assert result["success"] is False


class TestProcessAllPending:

    def test_empty_backlog(self, reconciliation):
        assert reconciliation().process_all_pending_deposits() == {"success": True, "count": 0}

    def test_replays_pending_with_transaction_and_recent_completed(self, reconciliation, make_profile,
                                                                  make_deposit, get_balance, get_deposit):
        make_profile("u1")
        pending_with_tx = make_deposit("u1", "50.00", transaction_id="TX1")
        completed_uncredited = make_deposit("u1", "100.00", status=DepositStatus.COMPLETED.value,
                                            transaction_id="TX2")
        make_deposit("u1", "20.00", status=DepositStatus.COMPLETED.value, transaction_id="TX3",
                     is_processed=True)
        untouched = make_deposit("u1", "30.00")

        result = reconciliation().process_all_pending_deposits()

        assert result["success"] is True
        assert result["count"] == 2
        assert result["failed"] == 0
        assert result["checked"] == 2
        assert get_balance("u1") == Decimal("47.75") + Decimal("95.80")
        assert get_deposit(pending_with_tx).status == DepositStatus.COMPLETED.value
        assert get_deposit(completed_uncredited).is_processed is True
        assert get_deposit(untouched).status == DepositStatus.PENDING.value

    def test_processed_deposits_do_not_crowd_out_uncredited_ones(self, reconciliation, make_profile,
                                                                 make_deposit, get_balance, get_deposit):
        make_profile("u1")
        now = datetime.now(timezone.utc)
        uncredited = make_deposit("u1", "50.00", status=DepositStatus.COMPLETED.value, transaction_id="TX-OLD",
                                  created_at=now - timedelta(hours=2))
        for i in range(12):
            make_deposit("u1", "20.00", status=DepositStatus.COMPLETED.value, transaction_id=f"TX-{i}",
                         is_processed=True, created_at=now - timedelta(minutes=i))

        result = reconciliation().process_all_pending_deposits()

        assert result["count"] == 1
        assert result["checked"] == 1
        assert get_balance("u1") == Decimal("47.75")
        assert get_deposit(uncredited).is_processed is True

    def test_old_completed_deposits_are_outside_lookback(self, reconciliation, make_profile, make_deposit):
        make_profile("u1")
        make_deposit("u1", status=DepositStatus.COMPLETED.value, transaction_id="TX1",
                     created_at=datetime.now(timezone.utc) - timedelta(days=3))

        assert reconciliation().process_all_pending_deposits()["count"] == 0

    def test_failures_are_counted_and_batch_continues(self, reconciliation, make_profile, make_deposit,
                                                     get_balance):
        make_profile("u1")
        make_deposit("orphan", "50.00", transaction_id="TX1")
        make_deposit("u1", "50.00", transaction_id="TX2")

        result = reconciliation().process_all_pending_deposits()

        assert result["count"] == 1
        assert result["failed"] == 1
        assert get_balance("u1") == Decimal("47.75")


class TestRetryPendingDeposits:

    @pytest.mark.asyncio
    async def test_retry_credits_and_expires(self, reconciliation, make_profile, make_deposit, get_deposit,
                                             get_balance):
        make_profile("u1")
        now = datetime.now(timezone.utc)
        with_tx = make_deposit("u1", "50.00", transaction_id="TX1", created_at=now - timedelta(minutes=2))
        abandoned = make_deposit("u1", "20.00", created_at=now - timedelta(minutes=45))
        too_young = make_deposit("u1", "20.00", created_at=now - timedelta(minutes=10))

        result = await reconciliation().retry_pending_deposits()

        assert result["success"] is True
        assert result["processed"] == 2
        assert result["failed"] == 1
        assert set(result["deposit_ids"]) == {with_tx, abandoned}
        assert get_balance("u1") == Decimal("47.75")
        expired = get_deposit(abandoned)
        assert expired.status == DepositStatus.FAILED.value
        assert expired.is_processed is False
        assert get_deposit(too_young).status == DepositStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_attempt_ceiling_and_age_limit(self, reconciliation, make_profile, make_deposit):
        make_profile("u1")
        now = datetime.now(timezone.utc)
        make_deposit("u1", transaction_id="TX1", process_attempts=5, created_at=now - timedelta(minutes=2))
        make_deposit("u1", transaction_id="TX2", created_at=now - timedelta(hours=3))

        result = await reconciliation().retry_pending_deposits(max_attempts=5, max_age_mins=60)

        assert result == {"success": True, "processed": 0, "failed": 0, "deposit_ids": []}

    @pytest.mark.asyncio
    async def test_limit_per_run(self, reconciliation, make_profile, make_deposit):
        make_profile("u1")
        now = datetime.now(timezone.utc)
        for index in range(4):
            make_deposit("u1", transaction_id=f"TX{index}", created_at=now - timedelta(minutes=index + 1))

        result = await reconciliation().retry_pending_deposits(limit_per_run=2)

        assert result["processed"] == 2


class TestStatusAndCheckPayment:

    def test_pending_status_counters(self, reconciliation, make_profile, make_deposit):
        make_profile("u1")
        now = datetime.now(timezone.utc)
        make_deposit("u1")
        make_deposit("u1", transaction_id="TX1")
        make_deposit("u1", status=DepositStatus.COMPLETED.value, transaction_id="TX2",
                     is_processed=True, last_attempt_at=now)
        make_deposit("u1", status=DepositStatus.FAILED.value, last_attempt_at=now)

        status = reconciliation().get_pending_deposits_status()

        assert status == {
            "success": True,
            "total_pending": 2,
            "needs_retry": 1,
            "processed_today": 1,
            "failed_today": 1,
        }

    @pytest.mark.asyncio
    async def test_check_payment_processes_outstanding(self, reconciliation, make_profile, make_deposit,
                                                       get_balance):
        make_profile("u1")
        deposit_id = make_deposit("u1", transaction_id="TX1")

        result = await reconciliation().check_payment("TX1")

        assert result["success"] is True
        assert result["status"] == DepositStatus.COMPLETED.value
        assert result["deposit_id"] == deposit_id
        assert get_balance("u1") == Decimal("47.75")

    @pytest.mark.asyncio
    async def test_check_payment_already_processed(self, reconciliation, make_profile, make_deposit):
        make_profile("u1")
        make_deposit("u1", transaction_id="TX1", status=DepositStatus.COMPLETED.value, is_processed=True)

        result = await reconciliation().check_payment("TX1")

        assert result["success"] is True
        assert result["message"] == "Payment already processed"

    @pytest.mark.asyncio
    async def test_check_payment_unknown(self, reconciliation):
        result = await reconciliation().check_payment("NOPE")

        assert result["success"] is False
        assert result["status"] is None
