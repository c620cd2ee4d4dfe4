"""
Deposit Record Store

Creation and lookup of deposit rows, plus the client-redirect path that
attaches the provider transaction id and hands off to the deposit processor.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal, managed_session
from models import Deposit, DepositStatus, Profile
from utils.exception_handler import (
    AuthorizationError,
    DepositServiceError,
    PersistenceError,
    ValidationError,
)
from utils.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)

_ACCESS_DENIED_MARKERS = ("permission denied", "row-level security", "insufficient privilege")


def _is_access_denied(error: DBAPIError) -> bool:
    text = str(getattr(error, "orig", error)).lower()
    return any(marker in text for marker in _ACCESS_DENIED_MARKERS)


class DepositRecordService:
    """CRUD over the deposits table"""

    def __init__(self, session_factory=None, processor=None):
        self.session_factory = session_factory or SessionLocal
        self._processor = processor

    @property
    def processor(self):
        if self._processor is None:
            from services.deposit_processor import deposit_processor
            self._processor = deposit_processor
        return self._processor

    def _validate_amount(self, gross_amount: Any) -> Decimal:
        if isinstance(gross_amount, bool) or gross_amount is None:
            raise ValidationError("Deposit amount is required")
        try:
            amount = Decimal(str(gross_amount))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"Invalid deposit amount: {gross_amount}")
        if not amount.is_finite() or amount < Config.MIN_DEPOSIT_AMOUNT:
            raise ValidationError(f"Deposit amount must be at least ${Config.MIN_DEPOSIT_AMOUNT}")
        return amount.quantize(FeeCalculator.USD_PRECISION)

    def create_deposit(self, user_id: Optional[str], gross_amount: Any) -> str:
        """Insert a pending deposit with its net amount fixed from the current fee schedule"""
        if not user_id:
            raise ValidationError("User ID is required")
        amount = self._validate_amount(gross_amount)
        net_amount = FeeCalculator.calculate_net_amount(amount)

        try:
            with managed_session(self.session_factory) as session:
                if session.get(Profile, user_id) is None:
                    raise ValidationError(f"Unknown user {user_id}")
                deposit = Deposit(
                    user_id=user_id,
                    amount=amount,
                    net_amount=net_amount,
                    status=DepositStatus.PENDING.value,
                    is_processed=False,
                    process_attempts=0,
                )
                session.add(deposit)
                session.flush()
                deposit_id = deposit.id
        except DBAPIError as e:
            if _is_access_denied(e):
                logger.error(f"❌ DEPOSIT_CREATE_DENIED: user={user_id}: {e}")
                raise AuthorizationError("Not authorized to create deposits for this user") from e
            logger.error(f"❌ DEPOSIT_CREATE_FAILED: user={user_id}: {e}")
            raise PersistenceError(f"Failed to create deposit: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"❌ DEPOSIT_CREATE_FAILED: user={user_id}: {e}")
            raise PersistenceError(f"Failed to create deposit: {e}") from e

        logger.info(f"📝 DEPOSIT_CREATED: {deposit_id} user={user_id} amount=${amount} net=${net_amount}")
        return deposit_id

    def find_by_id(self, deposit_id: str, session: Optional[Session] = None) -> Optional[Deposit]:
        if not deposit_id:
            return None
        if session is not None:
            return session.get(Deposit, deposit_id)
        with managed_session(self.session_factory) as own_session:
            return own_session.get(Deposit, deposit_id)

    def find_by_transaction_id(self, transaction_id: str, session: Optional[Session] = None) -> Optional[Deposit]:
        if not transaction_id:
            return None
        stmt = select(Deposit).where(Deposit.transaction_id == transaction_id)
        if session is not None:
            return session.execute(stmt).scalar_one_or_none()
        with managed_session(self.session_factory) as own_session:
            return own_session.execute(stmt).scalar_one_or_none()

    def attach_transaction_id(self, deposit_id: str, transaction_id: str):
        """
        Client-redirect confirmation: record the provider transaction id, mark
        the deposit completed, then run the same idempotent credit the webhook uses.
        """
        if not deposit_id or not transaction_id:
            raise ValidationError("Deposit ID and transaction ID are required")

        try:
            with managed_session(self.session_factory) as session:
                deposit = session.get(Deposit, deposit_id)
                if deposit is None:
                    raise ValidationError(f"Deposit {deposit_id} not found")
                if deposit.transaction_id and deposit.transaction_id != transaction_id:
                    logger.warning(
                        f"⚠️ TRANSACTION_ID_CONFLICT: deposit {deposit_id} already has "
                        f"{deposit.transaction_id}, refusing {transaction_id}"
                    )
                    raise ValidationError(f"Deposit {deposit_id} is already linked to another transaction")
                deposit.transaction_id = transaction_id
                deposit.status = DepositStatus.COMPLETED.value
        except IntegrityError as e:
            logger.error(f"❌ TRANSACTION_ID_TAKEN: {transaction_id} already belongs to another deposit")
            raise PersistenceError(f"Transaction {transaction_id} is already linked to another deposit") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update deposit {deposit_id}: {e}") from e

        logger.info(f"🔗 TRANSACTION_ATTACHED: deposit {deposit_id} -> {transaction_id}")
        return self.processor.process_deposit_balance(deposit_id)

    # Collaborator interface: result dicts instead of exceptions

    def create_deposit_record(self, user_id: Optional[str], gross_amount: Any) -> Dict[str, Any]:
        try:
            deposit_id = self.create_deposit(user_id, gross_amount)
            return {"success": True, "id": deposit_id}
        except DepositServiceError as e:
            return {"success": False, "id": None, "error": e.message}

    def update_deposit_with_transaction(self, deposit_id: str, transaction_id: str) -> Dict[str, Any]:
        try:
            result = self.attach_transaction_id(deposit_id, transaction_id)
        except DepositServiceError as e:
            return {"success": False, "error": e.message}
        if not result.success:
            return {"success": False, "error": result.message}
        return {"success": True, "message": result.message}


deposit_record_service = DepositRecordService()
