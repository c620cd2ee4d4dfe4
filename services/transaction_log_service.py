"""
Transaction Attempt Logger

Append-only audit trail of every deposit processing attempt. Rows are written
in their own session so an attempt is recorded even when the business
transaction rolled back. Failures here are logged and swallowed: audit
logging must never replace the primary outcome.
"""

import json
import logging
from decimal import Decimal
from datetime import datetime
from typing import Any, Dict, Optional

from database import SessionLocal, managed_session
from models import TransactionLog, AttemptLogStatus

logger = logging.getLogger(__name__)


def _json_safe(payload: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Round-trip through json so Decimal/datetime values fit a JSON column"""
    if payload is None:
        return None

    def _default(value):
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, datetime):
            return value.isoformat()
        return repr(value)

    return json.loads(json.dumps(payload, default=_default))


class TransactionAttemptLogger:
    """Writes transaction_logs rows"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def log_attempt(
        self,
        status: AttemptLogStatus,
        transaction_id: Optional[str] = None,
        deposit_id: Optional[str] = None,
        error_message: Optional[str] = None,
        request_payload: Optional[Dict[str, Any]] = None,
        response_payload: Optional[Dict[str, Any]] = None,
        processing_time_ms: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> bool:
        try:
            with managed_session(self.session_factory) as session:
                session.add(TransactionLog(
                    transaction_id=transaction_id,
                    deposit_id=deposit_id,
                    status=status.value,
                    error_message=error_message,
                    request_payload=_json_safe(request_payload),
                    response_payload=_json_safe(response_payload),
                    processing_time_ms=processing_time_ms,
                    idempotency_key=idempotency_key,
                ))
            return True
        except Exception as e:
            logger.error(f"❌ ATTEMPT_LOG_FAILED: tx={transaction_id} deposit={deposit_id} status={status.value}: {e}")
            return False
