"""
Exception Handler Module
Provides the deposit pipeline's exception taxonomy
"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class DepositServiceError(Exception):
    """Base class for deposit pipeline failures"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(DepositServiceError):
    """Custom validation error for input validation failures"""
    pass


class AuthorizationError(DepositServiceError):
    """Persistence layer rejected the write for access-control reasons"""
    pass


class PersistenceError(DepositServiceError):
    """Any other failure while reading or writing deposit records"""
    pass


class ResolutionError(DepositServiceError):
    """A provider event could not be matched to a deposit"""

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        self.transaction_id = transaction_id
        super().__init__(message)


class LedgerError(DepositServiceError):
    """
    The additive balance mutation failed or touched zero rows.

    Carries enough context to replay the credit manually.
    """

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        amount: Any = None,
        deposit_id: Optional[str] = None,
    ):
        self.user_id = user_id
        self.amount = amount
        self.deposit_id = deposit_id
        super().__init__(message)

    def context(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "deposit_id": self.deposit_id,
        }


class TransientProviderError(DepositServiceError):
    """Payment provider call timed out or failed in a retryable way"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
