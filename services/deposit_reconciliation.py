"""
Deposit Reconciliation Service

Operator- and scheduler-driven replays of deposits through the deposit
processor: single transaction re-checks against PayPal, batch replays of the
pending backlog, and periodic retries of stuck deposits.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, and_, or_

from config import Config
from database import SessionLocal, managed_session
from models import Deposit, DepositStatus
from services.deposit_processor import DepositProcessor, ProcessingOutcome, deposit_processor
from services.paypal_service import PayPalAPIError, PayPalService, paypal_service
from services.webhook_idempotency_service import build_idempotency_key
from utils.error_handler import RetryConfig, RetryHandler
from utils.exception_handler import TransientProviderError

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is stored in UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DepositReconciliationService:
    """Manual and batch reprocessing of deposits"""

    def __init__(
        self,
        processor: Optional[DepositProcessor] = None,
        paypal: Optional[PayPalService] = None,
        session_factory=None,
    ):
        self.processor = processor or deposit_processor
        self.paypal = paypal or paypal_service
        self.session_factory = session_factory or SessionLocal

    async def process_specific_transaction(
        self, transaction_id: Optional[str] = None, order_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Force-process one PayPal capture or order id.

        Looks the id up at PayPal and feeds it through the webhook pipeline,
        retrying transient provider failures with linear backoff. When the
        provider path yields nothing, falls back to crediting the deposit
        whose id or transaction id equals the given id.
        """
        identifier = transaction_id or order_id
        if not identifier:
            return {"success": False, "reason": "invalid_request", "message": "Transaction ID is required", "deposit_id": None}

        logger.info(f"🔧 MANUAL_PROCESS: {identifier}")
        retry_config = RetryConfig(
            max_attempts=Config.MANUAL_PROCESSING_MAX_RETRIES + 1,
            delay=Config.MANUAL_PROCESSING_RETRY_DELAY_SECONDS,
        )

        try:
            result = await RetryHandler.retry_async(self._process_via_provider, retry_config, identifier)
            if result is not None:
                return result.to_dict()
        except TransientProviderError as e:
            logger.warning(f"⚠️ MANUAL_PROCESS_PROVIDER_UNAVAILABLE: {identifier} after retries: {e.message}")
        except PayPalAPIError as e:
            logger.warning(f"⚠️ MANUAL_PROCESS_PROVIDER_REJECTED: {identifier}: {e.message}")

        logger.info(f"🛟 DIRECT_DEPOSIT_FALLBACK: processing {identifier} as a deposit lookup key")
        return self.processor.process_deposit_balance(identifier, source="manual_fallback").to_dict()

    async def _process_via_provider(self, identifier: str):
        if not self.paypal.is_configured():
            logger.info("PayPal API not configured - skipping provider lookup")
            return None

        lookup = await self.paypal.lookup_payment(identifier)
        if lookup is None:
            return None

        result = self.processor.process_deposit(
            transaction_id=lookup.transaction_id,
            declared_status=lookup.deposit_status,
            idempotency_key=build_idempotency_key(lookup.transaction_id, lookup.event_type),
            payer_email=lookup.payer_email,
            payer_id=lookup.payer_id,
            custom_id=lookup.custom_id,
            order_id=lookup.order_id,
            source="manual",
            request_payload={"resource_type": lookup.resource_type, "resource_id": lookup.resource_id,
                             "provider_status": lookup.provider_status},
        )
        if result.outcome == ProcessingOutcome.UNRESOLVED:
            return None
        return result

    def process_all_pending_deposits(self) -> Dict[str, Any]:
        """
        Replay the pending backlog plus recently completed deposits.

        Pending deposits with a transaction id are the work queue; completed
        deposits from the lookback window catch credits that never landed.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(hours=Config.RECENT_COMPLETED_LOOKBACK_HOURS)
        try:
            with managed_session(self.session_factory) as session:
                pending_ids = session.execute(
                    select(Deposit.id)
                    .where(
                        Deposit.status == DepositStatus.PENDING.value,
                        Deposit.transaction_id.is_not(None),
                    )
                    .order_by(Deposit.created_at)
                ).scalars().all()
                recent_ids = session.execute(
                    select(Deposit.id)
                    .where(
                        Deposit.status == DepositStatus.COMPLETED.value,
                        Deposit.created_at >= cutoff,
                        Deposit.is_processed.is_(False),
                    )
                    .order_by(Deposit.created_at.desc())
                ).scalars().all()
        except Exception as e:
            logger.error(f"❌ PENDING_SCAN_FAILED: {e}")
            return {"success": False, "count": 0, "error": str(e)}

        deposit_ids = list(dict.fromkeys([*pending_ids, *recent_ids]))
        if not deposit_ids:
            logger.info("✅ PENDING_SCAN: no deposits to process")
            return {"success": True, "count": 0}

        logger.info(f"🔄 PENDING_SCAN: replaying {len(deposit_ids)} deposits")
        credited = failed = 0
        for deposit_id in deposit_ids:
            try:
                result = self.processor.process_deposit_balance(deposit_id, source="batch")
            except Exception as e:
                failed += 1
                logger.error(f"❌ BATCH_ITEM_FAILED: {deposit_id}: {e}")
                continue
            if result.outcome == ProcessingOutcome.CREDITED:
                credited += 1
            elif not result.success:
                failed += 1
                logger.error(f"❌ BATCH_ITEM_FAILED: {deposit_id}: {result.message}")

        logger.info(f"✅ PENDING_SCAN: credited {credited}, failed {failed}, checked {len(deposit_ids)}")
        return {"success": True, "count": credited, "failed": failed, "checked": len(deposit_ids)}

    async def retry_pending_deposits(
        self,
        max_attempts: int = 5,
        max_age_mins: int = 60,
        limit_per_run: int = 10,
    ) -> Dict[str, Any]:
        """Retry recent stuck deposits and expire abandoned checkouts"""
        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(minutes=5)
        try:
            with managed_session(self.session_factory) as session:
                candidates = session.execute(
                    select(Deposit.id, Deposit.transaction_id, Deposit.created_at)
                    .where(
                        or_(
                            and_(Deposit.transaction_id.is_not(None), Deposit.is_processed.is_(False)),
                            and_(Deposit.status == DepositStatus.PENDING.value, Deposit.created_at < stale_before),
                        ),
                        Deposit.process_attempts < max_attempts,
                        Deposit.created_at > now - timedelta(minutes=max_age_mins),
                    )
                    .order_by(Deposit.created_at.desc())
                    .limit(limit_per_run)
                ).all()
        except Exception as e:
            logger.error(f"❌ RETRY_SCAN_FAILED: {e}")
            return {"success": False, "processed": 0, "failed": 0, "error": str(e)}

        if not candidates:
            logger.info("✅ RETRY_SCAN: no pending deposits need retrying")
            return {"success": True, "processed": 0, "failed": 0, "deposit_ids": []}

        logger.info(f"🔄 RETRY_SCAN: {len(candidates)} deposits to retry")
        processed = failed = 0
        processed_ids: List[str] = []
        for deposit_id, transaction_id, created_at in candidates:
            try:
                if transaction_id:
                    result = await self.process_specific_transaction(transaction_id=transaction_id)
                    if result["success"]:
                        processed += 1
                        processed_ids.append(deposit_id)
                    else:
                        failed += 1
                        logger.error(f"❌ RETRY_FAILED: deposit {deposit_id}: {result['message']}")
                    continue

                age_minutes = (now - _as_utc(created_at)).total_seconds() / 60
                if age_minutes > Config.STALE_DEPOSIT_MINUTES:
                    self._mark_abandoned(deposit_id, age_minutes)
                    processed += 1
                    processed_ids.append(deposit_id)
                else:
                    logger.info(f"⏳ RETRY_LATER: deposit {deposit_id} is only {round(age_minutes)}m old")
                    failed += 1
            except Exception as e:
                failed += 1
                logger.error(f"❌ RETRY_FAILED: deposit {deposit_id}: {e}")

        logger.info(f"✅ RETRY_SCAN: {processed} succeeded, {failed} failed")
        return {"success": True, "processed": processed, "failed": failed, "deposit_ids": processed_ids}

    def _mark_abandoned(self, deposit_id: str, age_minutes: float) -> None:
        with managed_session(self.session_factory) as session:
            deposit = session.get(Deposit, deposit_id)
            if deposit is None or deposit.transaction_id or deposit.status != DepositStatus.PENDING.value:
                return
            deposit.status = DepositStatus.FAILED.value
            deposit.process_attempts = (deposit.process_attempts or 0) + 1
            deposit.last_attempt_at = datetime.now(timezone.utc)
        logger.info(
            f"⌛ DEPOSIT_ABANDONED: {deposit_id} is {round(age_minutes)}m old with no transaction id, marked failed"
        )

    def get_pending_deposits_status(self) -> Dict[str, Any]:
        """Backlog counters for operator dashboards"""
        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        with managed_session(self.session_factory) as session:
            def _count(*conditions) -> int:
                return session.execute(select(func.count(Deposit.id)).where(*conditions)).scalar_one()

            return {
                "success": True,
                "total_pending": _count(Deposit.status == DepositStatus.PENDING.value),
                "needs_retry": _count(Deposit.transaction_id.is_not(None), Deposit.is_processed.is_(False)),
                "processed_today": _count(Deposit.is_processed.is_(True), Deposit.last_attempt_at >= today),
                "failed_today": _count(Deposit.status == DepositStatus.FAILED.value, Deposit.last_attempt_at >= today),
            }

    async def check_payment(self, transaction_id: str) -> Dict[str, Any]:
        """Report a payment's deposit status, processing it first if still outstanding"""
        if not transaction_id:
            return {"success": False, "status": None, "message": "Transaction ID is required", "deposit_id": None}

        with managed_session(self.session_factory) as session:
            deposit = session.execute(
                select(Deposit).where(Deposit.transaction_id == transaction_id)
            ).scalar_one_or_none()
            snapshot = None if deposit is None else (deposit.id, deposit.status, deposit.is_processed)

        if snapshot is None:
            result = await self.process_specific_transaction(transaction_id=transaction_id)
            return {**result, "status": self._current_status(result.get("deposit_id"))}

        deposit_id, status, is_processed = snapshot
        if is_processed:
            return {"success": True, "status": status, "message": "Payment already processed", "deposit_id": deposit_id}

        result = self.processor.process_deposit_balance(deposit_id, source="check_payment")
        return {**result.to_dict(), "status": self._current_status(deposit_id)}

    def _current_status(self, deposit_id: Optional[str]) -> Optional[str]:
        if not deposit_id:
            return None
        with managed_session(self.session_factory) as session:
            return session.execute(select(Deposit.status).where(Deposit.id == deposit_id)).scalar_one_or_none()


deposit_reconciliation_service = DepositReconciliationService()
