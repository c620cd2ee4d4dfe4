"""
Webhook Idempotency Service
Detects provider events whose ledger effect has already been applied
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from database import SessionLocal, managed_session
from models import Deposit, TransactionLog, AttemptLogStatus

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_PREFIX = "paypal"


def build_idempotency_key(transaction_id: Optional[str], event_type: Optional[str]) -> Optional[str]:
    """Deterministic key per provider transaction and event type"""
    if not transaction_id or not event_type:
        return None
    return f"{IDEMPOTENCY_KEY_PREFIX}-{transaction_id}-{event_type}"


@dataclass
class IdempotencyResult:
    """Result of idempotency check"""
    is_duplicate: bool
    source: Optional[str] = None  # 'attempt_log' or 'deposit'
    deposit_id: Optional[str] = None


class PaymentIdempotencyGuard:
    """
    Two-sided duplicate check.

    A success row in transaction_logs and an is_processed deposit carrying the
    key are both consulted, since the log row and the deposit update are
    written in separate transactions.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def check(self, idempotency_key: str, session: Optional[Session] = None) -> IdempotencyResult:
        if session is None:
            with managed_session(self.session_factory) as own_session:
                return self._check(own_session, idempotency_key)
        return self._check(session, idempotency_key)

    def _check(self, session: Session, idempotency_key: str) -> IdempotencyResult:
        log_entry = session.execute(
            select(TransactionLog.deposit_id).where(
                TransactionLog.idempotency_key == idempotency_key,
                TransactionLog.status == AttemptLogStatus.SUCCESS.value,
            ).limit(1)
        ).first()
        if log_entry is not None:
            return IdempotencyResult(is_duplicate=True, source="attempt_log", deposit_id=log_entry[0])

        deposit_id = session.execute(
            select(Deposit.id).where(
                Deposit.idempotency_key == idempotency_key,
                Deposit.is_processed.is_(True),
            )
        ).scalar_one_or_none()
        if deposit_id is not None:
            return IdempotencyResult(is_duplicate=True, source="deposit", deposit_id=deposit_id)

        return IdempotencyResult(is_duplicate=False)

    def already_processed(self, idempotency_key: Optional[str], session: Optional[Session] = None) -> bool:
        if not idempotency_key:
            return False
        result = self.check(idempotency_key, session=session)
        if result.is_duplicate:
            logger.info(f"✅ ALREADY_PROCESSED: {idempotency_key} (matched via {result.source})")
        return result.is_duplicate
