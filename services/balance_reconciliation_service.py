"""
Balance Reconciliation Service

Recomputes a user's balance from the transactions ledger and corrects drift
in profiles.balance through the additive ledger update, never by overwrite.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select

from config import Config
from database import SessionLocal, managed_session
from models import BalanceReconciliationLog, Deposit, DepositStatus, Profile
from services.balance_ledger import BalanceLedger
from services.deposit_processor import DepositProcessor, ProcessingOutcome, deposit_processor
from utils.exception_handler import LedgerError

logger = logging.getLogger(__name__)

REFRESH_RECENT_DEPOSITS_LIMIT = 5


class BalanceReconciliationService:
    """Detects and repairs stored-balance drift"""

    def __init__(
        self,
        ledger: Optional[BalanceLedger] = None,
        processor: Optional[DepositProcessor] = None,
        session_factory=None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.ledger = ledger or BalanceLedger(self.session_factory)
        self.processor = processor or deposit_processor

    def reconcile_user_balance(self, user_id: str, triggered_by: str = "manual") -> Dict[str, Any]:
        """
        Bring profiles.balance in line with the sum of completed ledger entries.

        The profile row is locked for the duration so a concurrent credit
        cannot slip between the read and the correction. `difference` is
        calculated minus stored, i.e. the amount applied when drift exceeds
        the tolerance.
        """
        tolerance = Decimal(str(Config.BALANCE_RECONCILIATION_TOLERANCE))
        try:
            with managed_session(self.session_factory) as session:
                stored = session.execute(
                    select(Profile.balance).where(Profile.id == user_id).with_for_update()
                ).scalar_one_or_none()
                if stored is None:
                    logger.error(f"❌ RECONCILE_NO_PROFILE: user {user_id} not found")
                    return {"success": False, "reason": "not_found", "user_id": user_id, "message": "User profile not found"}

                stored = Decimal(str(stored))
                calculated = self.ledger.calculate_balance_from_transactions(session, user_id)
                difference = calculated - stored
                adjusted = abs(difference) > tolerance

                if adjusted:
                    self.ledger.apply_delta(session, user_id, difference)
                    logger.warning(
                        f"⚖️ BALANCE_DRIFT_CORRECTED: user {user_id} stored ${stored} calculated ${calculated} "
                        f"applied {difference:+}"
                    )
                else:
                    logger.info(f"✅ BALANCE_OK: user {user_id} ${stored}")

                new_balance = stored + difference if adjusted else stored
                session.add(BalanceReconciliationLog(
                    user_id=user_id,
                    stored_balance=stored,
                    calculated_balance=calculated,
                    difference=difference,
                    adjustment_applied=adjusted,
                    status="corrected" if adjusted else "balanced",
                    triggered_by=triggered_by,
                ))
        except LedgerError as e:
            logger.critical(f"🚨 RECONCILE_LEDGER_FAILURE: user {user_id}: {e.message}")
            self._record_failure(user_id, triggered_by, e.message)
            return {"success": False, "reason": "ledger_failed", "user_id": user_id,
                    "message": f"Failed to apply balance correction: {e.message}"}

        return {
            "success": True,
            "user_id": user_id,
            "old_balance": stored,
            "new_balance": new_balance,
            "calculated_balance": calculated,
            "difference": difference,
            "adjusted": adjusted,
        }

    def _record_failure(self, user_id: str, triggered_by: str, error_message: str) -> None:
        try:
            with managed_session(self.session_factory) as session:
                session.add(BalanceReconciliationLog(
                    user_id=user_id,
                    stored_balance=Decimal("0"),
                    calculated_balance=Decimal("0"),
                    difference=Decimal("0"),
                    adjustment_applied=False,
                    status="failed",
                    triggered_by=triggered_by,
                    error_message=error_message,
                ))
        except Exception as e:
            logger.error(f"❌ RECONCILE_LOG_FAILED: user {user_id}: {e}")

    def refresh_user_balance(self, user_id: str) -> Dict[str, Any]:
        """Replay the user's latest completed deposits, then reconcile"""
        with managed_session(self.session_factory) as session:
            deposit_ids = session.execute(
                select(Deposit.id)
                .where(
                    Deposit.user_id == user_id,
                    Deposit.status == DepositStatus.COMPLETED.value,
                )
                .order_by(Deposit.created_at.desc())
                .limit(REFRESH_RECENT_DEPOSITS_LIMIT)
            ).scalars().all()

        credited = 0
        for deposit_id in deposit_ids:
            result = self.processor.process_deposit_balance(deposit_id, source="refresh")
            if result.outcome == ProcessingOutcome.CREDITED:
                credited += 1

        reconciliation = self.reconcile_user_balance(user_id, triggered_by="refresh")
        return {
            "success": reconciliation["success"],
            "user_id": user_id,
            "deposits_checked": len(deposit_ids),
            "deposits_credited": credited,
            "balance": reconciliation.get("new_balance"),
            "reconciliation": reconciliation,
        }


balance_reconciliation_service = BalanceReconciliationService()
