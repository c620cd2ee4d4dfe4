"""
Balance Ledger

The only code path that mutates profiles.balance. Every change is a single
`balance = balance + :amount` statement, never a read-modify-write from
Python, so overlapping credits for the same user cannot lose updates.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import SessionLocal, managed_session
from models import Profile, Transaction, TransactionType, TransactionStatus, Deposit
from utils.exception_handler import LedgerError

logger = logging.getLogger(__name__)

USD_PRECISION = Decimal("0.01")


def _to_money(amount) -> Decimal:
    return Decimal(str(amount)).quantize(USD_PRECISION, rounding=ROUND_HALF_UP)


class BalanceLedger:
    """Atomic additive balance mutations and balance reads"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def apply_delta(self, session: Session, user_id: str, amount) -> None:
        """
        Add a signed amount to the user's balance inside the caller's transaction.

        Raises LedgerError when no profile row was touched.
        """
        delta = _to_money(amount)
        result = session.execute(
            update(Profile)
            .where(Profile.id == user_id)
            .values(balance=Profile.balance + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LedgerError(
                f"Balance update affected {result.rowcount} rows for user {user_id}",
                user_id=user_id,
                amount=delta,
            )

    def credit_deposit(self, session: Session, deposit: Deposit) -> Decimal:
        """
        Credit a deposit's net amount and record the ledger entry.

        Caller must already hold the deposit claim; both writes commit or roll
        back with the caller's session.
        """
        amount = _to_money(deposit.net_amount)
        try:
            self.apply_delta(session, deposit.user_id, amount)
            session.add(Transaction(
                user_id=deposit.user_id,
                amount=amount,
                type=TransactionType.DEPOSIT.value,
                status=TransactionStatus.COMPLETED.value,
                reference_id=deposit.id,
                description=f"PayPal deposit {deposit.transaction_id or deposit.id}",
            ))
            session.flush()
        except LedgerError as e:
            e.deposit_id = deposit.id
            raise
        except SQLAlchemyError as e:
            raise LedgerError(
                f"Ledger write failed: {e}",
                user_id=deposit.user_id,
                amount=amount,
                deposit_id=deposit.id,
            ) from e

        logger.info(f"💰 BALANCE_CREDITED: user={deposit.user_id} +${amount} (deposit {deposit.id})")
        return amount

    def update_user_balance(self, user_id: str, amount) -> bool:
        """Standalone additive update; True when exactly one profile was changed"""
        try:
            with managed_session(self.session_factory) as session:
                self.apply_delta(session, user_id, amount)
            return True
        except LedgerError as e:
            logger.error(f"❌ BALANCE_UPDATE_FAILED: {e.message}")
            return False
        except SQLAlchemyError as e:
            logger.error(f"❌ BALANCE_UPDATE_ERROR: user={user_id} amount={amount}: {e}")
            return False

    def get_user_balance(self, user_id: str, session: Optional[Session] = None) -> Optional[Decimal]:
        """Stored balance, or None when the profile does not exist"""
        if session is not None:
            return session.execute(
                select(Profile.balance).where(Profile.id == user_id)
            ).scalar_one_or_none()
        with managed_session(self.session_factory) as own_session:
            return own_session.execute(
                select(Profile.balance).where(Profile.id == user_id)
            ).scalar_one_or_none()

    def calculate_balance_from_transactions(self, session: Session, user_id: str) -> Decimal:
        """Authoritative balance: sum of the user's completed signed ledger entries"""
        total = session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == user_id,
                Transaction.status == TransactionStatus.COMPLETED.value,
            )
        ).scalar_one()
        return _to_money(total)
