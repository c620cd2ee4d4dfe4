"""
Deposit Processor - PayPal confirmation to balance credit

Direct flow: Provider Event → Idempotency Check → Deposit Update → Ledger Credit → Attempt Log

The webhook handler, the client-redirect confirmation and every manual or
batch reconciliation path funnel into this processor, so there is exactly
one place where a deposit's credit can be applied.

Exactly-once credit rests on the conditional claim
`UPDATE deposits SET is_processed = true WHERE id = :id AND is_processed = false`
committed in the same transaction as the balance update. The idempotency
guard in front of it only short-circuits obvious redeliveries.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from config import Config
from database import SessionLocal, managed_session
from models import Deposit, DepositStatus, AttemptLogStatus
from services.balance_ledger import BalanceLedger
from services.transaction_log_service import TransactionAttemptLogger
from services.webhook_idempotency_service import PaymentIdempotencyGuard
from utils.exception_handler import LedgerError, ResolutionError

logger = logging.getLogger(__name__)


# PayPal event types grouped by the deposit status they drive
PAYPAL_EVENT_BUCKETS = {
    DepositStatus.COMPLETED: (
        "PAYMENT.CAPTURE.COMPLETED",
        "CHECKOUT.ORDER.COMPLETED",
        "CHECKOUT.ORDER.APPROVED",
        "PAYMENT.SALE.COMPLETED",
    ),
    DepositStatus.PENDING: (
        "PAYMENT.CAPTURE.PENDING",
        "PAYMENT.SALE.PENDING",
    ),
    DepositStatus.FAILED: (
        "PAYMENT.CAPTURE.DENIED",
        "PAYMENT.CAPTURE.DECLINED",
        "PAYMENT.SALE.DENIED",
        "CHECKOUT.PAYMENT-APPROVAL.REVERSED",
    ),
    DepositStatus.REFUNDED: (
        "PAYMENT.CAPTURE.REFUNDED",
        "PAYMENT.CAPTURE.REVERSED",
        "PAYMENT.SALE.REFUNDED",
        "PAYMENT.SALE.REVERSED",
    ),
}

_EVENT_TYPE_TO_STATUS = {
    event_type: status
    for status, event_types in PAYPAL_EVENT_BUCKETS.items()
    for event_type in event_types
}


def classify_event_type(event_type: Optional[str]) -> Optional[DepositStatus]:
    """Deposit status for a PayPal event type, or None for events we do not model"""
    if not event_type:
        return None
    return _EVENT_TYPE_TO_STATUS.get(event_type.strip().upper())


class ProcessingOutcome(Enum):
    """How a processing attempt ended"""
    CREDITED = "credited"
    STATUS_UPDATED = "status_updated"
    ALREADY_PROCESSED = "already_processed"
    ALREADY_IN_STATUS = "already_in_status"
    AWAITING_PAYMENT = "awaiting_payment"
    UNRESOLVED = "unresolved"
    LEDGER_FAILED = "ledger_failed"
    ERROR = "error"


@dataclass
class DepositProcessingResult:
    """Result of a deposit processing attempt"""
    success: bool
    outcome: ProcessingOutcome
    message: str
    deposit_id: Optional[str] = None
    status: Optional[str] = None
    credited_amount: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "reason": self.outcome.value,
            "message": self.message,
            "deposit_id": self.deposit_id,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _snapshot(deposit: Deposit) -> Dict[str, Any]:
    return {
        "id": deposit.id,
        "user_id": deposit.user_id,
        "status": deposit.status,
        "is_processed": deposit.is_processed,
        "transaction_id": deposit.transaction_id,
        "process_attempts": deposit.process_attempts,
        "net_amount": deposit.net_amount,
    }


class DepositProcessor:
    """Resolves provider events to deposits and applies the credit exactly once"""

    def __init__(
        self,
        session_factory=None,
        ledger: Optional[BalanceLedger] = None,
        idempotency_guard: Optional[PaymentIdempotencyGuard] = None,
        attempt_logger: Optional[TransactionAttemptLogger] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.ledger = ledger or BalanceLedger(self.session_factory)
        self.idempotency_guard = idempotency_guard or PaymentIdempotencyGuard(self.session_factory)
        self.attempt_logger = attempt_logger or TransactionAttemptLogger(self.session_factory)

    # ------------------------------------------------------------------
    # Provider event path
    # ------------------------------------------------------------------

    def process_deposit(
        self,
        transaction_id: Optional[str],
        declared_status: DepositStatus,
        idempotency_key: Optional[str] = None,
        payer_email: Optional[str] = None,
        payer_id: Optional[str] = None,
        custom_id: Optional[str] = None,
        order_id: Optional[str] = None,
        source: str = "webhook",
        request_payload: Optional[Dict[str, Any]] = None,
    ) -> DepositProcessingResult:
        """
        Apply one provider event to its deposit.

        Resolution order is transaction id, then custom id (our deposit id
        echoed back by PayPal), then, only when an order id hint exists, the
        newest pending deposit without a transaction id.
        """
        started = time.monotonic()
        request_snapshot = {
            "source": source,
            "transaction_id": transaction_id,
            "declared_status": declared_status.value,
            "custom_id": custom_id,
            "order_id": order_id,
            "payer_email": payer_email,
            "payer_id": payer_id,
            "payload": request_payload,
        }

        if idempotency_key:
            duplicate = self.idempotency_guard.check(idempotency_key)
            if duplicate.is_duplicate:
                logger.info(f"✅ ALREADY_PROCESSED: {idempotency_key} already applied (via {duplicate.source})")
                result = DepositProcessingResult(
                    success=True,
                    outcome=ProcessingOutcome.ALREADY_PROCESSED,
                    message="Payment already processed",
                    deposit_id=duplicate.deposit_id,
                )
                self._log(AttemptLogStatus.SKIPPED, result, transaction_id, idempotency_key,
                          request_snapshot, started)
                return result

        # A provider transaction id is taken as proof of a completed charge
        target_status = DepositStatus.COMPLETED if transaction_id else declared_status
        if target_status != declared_status:
            logger.warning(
                f"⚠️ STATUS_OVERRIDE: {transaction_id} declared '{declared_status.value}' "
                f"but carries a transaction id, treating as '{target_status.value}'"
            )

        deposit_id = None
        before = after = None
        try:
            with managed_session(self.session_factory) as session:
                deposit = self._resolve_deposit(session, transaction_id, custom_id, order_id)
                deposit_id = deposit.id
                before = _snapshot(deposit)
                if deposit.is_processed and deposit.status == target_status.value:
                    result = DepositProcessingResult(
                        success=True,
                        outcome=ProcessingOutcome.ALREADY_IN_STATUS,
                        message=f"Deposit already {target_status.value}",
                        deposit_id=deposit.id,
                        status=deposit.status,
                    )
                else:
                    result = self._settle(
                        session, deposit, target_status, transaction_id,
                        payer_email, payer_id, idempotency_key,
                    )
                    after = _snapshot(deposit)
        except ResolutionError as e:
            logger.error(
                f"❌ DEPOSIT_NOT_FOUND: tx={transaction_id} custom_id={custom_id} order_id={order_id}"
            )
            result = DepositProcessingResult(
                success=False,
                outcome=ProcessingOutcome.UNRESOLVED,
                message=e.message,
            )
            self._log(AttemptLogStatus.ERROR, result, transaction_id, idempotency_key,
                      request_snapshot, started, error=result.message)
            return result
        except LedgerError as e:
            result = self._handle_ledger_failure(
                e, deposit_id, target_status, transaction_id, payer_email, payer_id, idempotency_key,
            )
            self._log(AttemptLogStatus.ERROR, result, transaction_id, idempotency_key,
                      request_snapshot, started, before=before, error=e.message)
            return result
        except Exception as e:
            logger.error(f"❌ DEPOSIT_PROCESS_ERROR: tx={transaction_id} deposit={deposit_id}: {e}", exc_info=True)
            result = DepositProcessingResult(
                success=False,
                outcome=ProcessingOutcome.ERROR,
                message=f"Failed to process deposit: {e}",
                deposit_id=deposit_id,
            )
            self._log(AttemptLogStatus.ERROR, result, transaction_id, idempotency_key,
                      request_snapshot, started, before=before, error=str(e))
            return result

        log_status = (
            AttemptLogStatus.SKIPPED
            if result.outcome == ProcessingOutcome.ALREADY_IN_STATUS
            else AttemptLogStatus.SUCCESS
        )
        self._log(log_status, result, transaction_id, idempotency_key, request_snapshot, started,
                  before=before, after=after)
        return result

    def _resolve_deposit(
        self,
        session: Session,
        transaction_id: Optional[str],
        custom_id: Optional[str],
        order_id: Optional[str],
    ) -> Deposit:
        if transaction_id:
            deposit = session.execute(
                select(Deposit).where(Deposit.transaction_id == transaction_id).with_for_update()
            ).scalar_one_or_none()
            if deposit is not None:
                return deposit

        if custom_id:
            deposit = session.execute(
                select(Deposit).where(Deposit.id == custom_id).with_for_update()
            ).scalar_one_or_none()
            if deposit is not None:
                logger.info(f"🔎 DEPOSIT_MATCHED_BY_CUSTOM_ID: {custom_id} for tx={transaction_id}")
                return deposit

        if order_id and Config.ENABLE_PENDING_DEPOSIT_HEURISTIC:
            deposit = session.execute(
                select(Deposit)
                .where(
                    Deposit.status == DepositStatus.PENDING.value,
                    Deposit.transaction_id.is_(None),
                )
                .order_by(Deposit.created_at.desc())
                .limit(1)
                .with_for_update()
            ).scalar_one_or_none()
            if deposit is not None:
                logger.warning(
                    f"⚠️ HEURISTIC_MATCH: tx={transaction_id} order={order_id} attributed to newest "
                    f"unmatched pending deposit {deposit.id} (user {deposit.user_id}) without an id match"
                )
                return deposit

        raise ResolutionError("No deposit found for this payment", transaction_id=transaction_id)

    # ------------------------------------------------------------------
    # Deposit-keyed path (client redirect, manual and batch replays)
    # ------------------------------------------------------------------

    def process_deposit_balance(self, identifier: str, source: str = "manual") -> DepositProcessingResult:
        """
        Credit a deposit looked up by its id or its provider transaction id.

        Only deposits with a transaction id or an already-completed status are
        credited; the credit itself goes through the same claim as webhooks.
        """
        started = time.monotonic()
        request_snapshot = {"source": source, "identifier": identifier}
        deposit_id = transaction_id = idempotency_key = None
        before = after = None

        if not identifier:
            return DepositProcessingResult(
                success=False,
                outcome=ProcessingOutcome.UNRESOLVED,
                message="Deposit identifier is required",
            )

        try:
            with managed_session(self.session_factory) as session:
                deposit = session.execute(
                    select(Deposit).where(Deposit.id == identifier).with_for_update()
                ).scalar_one_or_none()
                if deposit is None:
                    deposit = session.execute(
                        select(Deposit).where(Deposit.transaction_id == identifier).with_for_update()
                    ).scalar_one_or_none()

                if deposit is not None:
                    deposit_id = deposit.id
                    transaction_id = deposit.transaction_id
                    idempotency_key = deposit.idempotency_key
                    before = _snapshot(deposit)

                    if deposit.is_processed:
                        result = DepositProcessingResult(
                            success=True,
                            outcome=ProcessingOutcome.ALREADY_PROCESSED,
                            message="Deposit already credited",
                            deposit_id=deposit.id,
                            status=deposit.status,
                        )
                    elif not deposit.transaction_id and deposit.status != DepositStatus.COMPLETED.value:
                        deposit.process_attempts = (deposit.process_attempts or 0) + 1
                        deposit.last_attempt_at = _utcnow()
                        result = DepositProcessingResult(
                            success=False,
                            outcome=ProcessingOutcome.AWAITING_PAYMENT,
                            message="Deposit has no confirmed PayPal transaction yet",
                            deposit_id=deposit.id,
                            status=deposit.status,
                        )
                    else:
                        result = self._settle(session, deposit, DepositStatus.COMPLETED, None, None, None, None)
                        after = _snapshot(deposit)
        except LedgerError as e:
            result = self._handle_ledger_failure(e, deposit_id, DepositStatus.COMPLETED, None, None, None, None)
            self._log(AttemptLogStatus.ERROR, result, transaction_id, idempotency_key,
                      request_snapshot, started, before=before, error=e.message)
            return result
        except Exception as e:
            logger.error(f"❌ DEPOSIT_BALANCE_ERROR: {identifier}: {e}", exc_info=True)
            result = DepositProcessingResult(
                success=False,
                outcome=ProcessingOutcome.ERROR,
                message=f"Failed to process deposit: {e}",
                deposit_id=deposit_id,
            )
            self._log(AttemptLogStatus.ERROR, result, transaction_id, idempotency_key,
                      request_snapshot, started, before=before, error=str(e))
            return result

        if deposit_id is None:
            logger.error(f"❌ DEPOSIT_NOT_FOUND: no deposit with id or transaction id {identifier}")
            result = DepositProcessingResult(
                success=False,
                outcome=ProcessingOutcome.UNRESOLVED,
                message=f"No deposit found for {identifier}",
            )
            self._log(AttemptLogStatus.ERROR, result, identifier, None, request_snapshot, started,
                      error=result.message)
            return result

        if result.outcome == ProcessingOutcome.ALREADY_PROCESSED:
            log_status = AttemptLogStatus.SKIPPED
        elif result.success:
            log_status = AttemptLogStatus.SUCCESS
        else:
            log_status = AttemptLogStatus.ERROR
        self._log(log_status, result, transaction_id, idempotency_key, request_snapshot, started,
                  before=before, after=after, error=None if result.success else result.message)
        return result

    # ------------------------------------------------------------------
    # Shared settlement
    # ------------------------------------------------------------------

    def _apply_event(
        self,
        deposit: Deposit,
        target_status: DepositStatus,
        transaction_id: Optional[str],
        payer_email: Optional[str],
        payer_id: Optional[str],
        idempotency_key: Optional[str],
    ) -> None:
        deposit.process_attempts = (deposit.process_attempts or 0) + 1
        deposit.last_attempt_at = _utcnow()
        deposit.status = target_status.value
        if payer_email:
            deposit.payer_email = payer_email
        if payer_id:
            deposit.payer_id = payer_id
        if transaction_id:
            if not deposit.transaction_id:
                deposit.transaction_id = transaction_id
            elif deposit.transaction_id != transaction_id:
                logger.warning(
                    f"⚠️ TRANSACTION_ID_MISMATCH: deposit {deposit.id} keeps {deposit.transaction_id}, "
                    f"event carried {transaction_id}"
                )
        if idempotency_key and not deposit.idempotency_key:
            deposit.idempotency_key = idempotency_key

    def _settle(
        self,
        session: Session,
        deposit: Deposit,
        target_status: DepositStatus,
        transaction_id: Optional[str],
        payer_email: Optional[str],
        payer_id: Optional[str],
        idempotency_key: Optional[str],
    ) -> DepositProcessingResult:
        self._apply_event(deposit, target_status, transaction_id, payer_email, payer_id, idempotency_key)
        session.flush()

        if target_status != DepositStatus.COMPLETED:
            logger.info(f"📝 DEPOSIT_STATUS_UPDATED: {deposit.id} -> {target_status.value}")
            return DepositProcessingResult(
                success=True,
                outcome=ProcessingOutcome.STATUS_UPDATED,
                message=f"Deposit marked {target_status.value}",
                deposit_id=deposit.id,
                status=target_status.value,
            )

        claimed = session.execute(
            update(Deposit)
            .where(Deposit.id == deposit.id, Deposit.is_processed.is_(False))
            .values(is_processed=True)
            .execution_options(synchronize_session=False)
        ).rowcount == 1

        if not claimed:
            logger.info(f"✅ ALREADY_CREDITED: deposit {deposit.id} was claimed by another attempt")
            return DepositProcessingResult(
                success=True,
                outcome=ProcessingOutcome.ALREADY_PROCESSED,
                message="Deposit already credited",
                deposit_id=deposit.id,
                status=deposit.status,
            )

        set_committed_value(deposit, "is_processed", True)
        amount = self.ledger.credit_deposit(session, deposit)
        logger.info(f"✅ DEPOSIT_CREDITED: {deposit.id} user={deposit.user_id} +${amount}")
        return DepositProcessingResult(
            success=True,
            outcome=ProcessingOutcome.CREDITED,
            message="Payment processed and balance updated",
            deposit_id=deposit.id,
            status=deposit.status,
            credited_amount=amount,
        )

    def _handle_ledger_failure(
        self,
        error: LedgerError,
        deposit_id: Optional[str],
        target_status: DepositStatus,
        transaction_id: Optional[str],
        payer_email: Optional[str],
        payer_id: Optional[str],
        idempotency_key: Optional[str],
    ) -> DepositProcessingResult:
        """Keep the status update without the claim so reconciliation can find the gap"""
        context = error.context()
        context["deposit_id"] = context["deposit_id"] or deposit_id
        logger.critical(f"🚨 LEDGER_FAILURE: {error.message} replay={context}")
        if deposit_id:
            try:
                with managed_session(self.session_factory) as session:
                    deposit = session.get(Deposit, deposit_id)
                    if deposit is not None:
                        self._apply_event(
                            deposit, target_status, transaction_id, payer_email, payer_id, idempotency_key,
                        )
            except Exception as e:
                logger.error(f"❌ DEPOSIT_STATUS_PERSIST_FAILED: {deposit_id} after ledger failure: {e}")

        return DepositProcessingResult(
            success=False,
            outcome=ProcessingOutcome.LEDGER_FAILED,
            message=f"Failed to update user balance: {error.message}",
            deposit_id=deposit_id,
            status=target_status.value,
        )

    def _log(
        self,
        status: AttemptLogStatus,
        result: DepositProcessingResult,
        transaction_id: Optional[str],
        idempotency_key: Optional[str],
        request_snapshot: Dict[str, Any],
        started: float,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        response = result.to_dict()
        response["before"] = before
        response["after"] = after
        self.attempt_logger.log_attempt(
            status=status,
            transaction_id=transaction_id,
            deposit_id=result.deposit_id,
            error_message=error,
            request_payload=request_snapshot,
            response_payload=response,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            idempotency_key=idempotency_key,
        )


deposit_processor = DepositProcessor()
