"""
Deposit and operator routes

Client-facing deposit creation/confirmation plus token-protected operator
endpoints for batch reprocessing and balance reconciliation.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from config import Config
from models import DepositStatus
from services.balance_reconciliation_service import balance_reconciliation_service
from services.deposit_record_service import deposit_record_service
from services.deposit_reconciliation import deposit_reconciliation_service
from services.paypal_service import PayPalAPIError, paypal_service
from services.webhook_security_service import WebhookSecurityService
from utils.exception_handler import TransientProviderError

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON format")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def _require_admin(x_admin_token: Optional[str]) -> None:
    if not WebhookSecurityService.validate_admin_token(x_admin_token):
        logger.warning("🚫 ADMIN_AUTH_FAILED: invalid or missing X-Admin-Token")
        raise HTTPException(status_code=401, detail="Unauthorized")


def _reconcile_status_code(result: dict) -> int:
    if result["success"]:
        return 200
    return 404 if result.get("reason") == "not_found" else 500


async def _confirm_capture(deposit_id: str, transaction_id: str) -> str:
    """
    Check a client-supplied capture with PayPal before it may credit anything.

    Returns the confirmed capture id; the capture must be completed and carry
    this deposit's id as its custom_id.
    """
    if not paypal_service.is_configured():
        logger.error(f"❌ CAPTURE_UNVERIFIABLE: PayPal API not configured, refusing {transaction_id} for {deposit_id}")
        raise HTTPException(status_code=503, detail="Payment verification unavailable")

    try:
        lookup = await paypal_service.lookup_payment(transaction_id)
    except TransientProviderError as e:
        logger.warning(f"⚠️ CAPTURE_VERIFY_UNAVAILABLE: {transaction_id}: {e.message}")
        raise HTTPException(status_code=503, detail="Payment verification unavailable")
    except PayPalAPIError as e:
        logger.warning(f"⚠️ CAPTURE_VERIFY_REJECTED: {transaction_id}: {e.message}")
        raise HTTPException(status_code=502, detail="Payment verification failed")

    if lookup is None:
        logger.warning(f"🚫 CAPTURE_UNKNOWN: {transaction_id} claimed for deposit {deposit_id}")
        raise HTTPException(status_code=400, detail="Unknown PayPal transaction")
    if lookup.custom_id != deposit_id:
        logger.warning(
            f"🚫 CAPTURE_MISMATCH: {transaction_id} belongs to {lookup.custom_id}, claimed for {deposit_id}"
        )
        raise HTTPException(status_code=403, detail="Transaction does not belong to this deposit")
    if lookup.deposit_status != DepositStatus.COMPLETED or not lookup.transaction_id:
        raise HTTPException(status_code=409, detail="Payment is not completed")
    return lookup.transaction_id


@router.post("/deposits")
async def create_deposit(request: Request):
    """Create a pending deposit; the returned id is sent to PayPal as custom_id"""
    body = await _read_json(request)
    result = deposit_record_service.create_deposit_record(body.get("user_id"), body.get("amount"))
    status_code = 200 if result["success"] else 400
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))


@router.post("/deposits/{deposit_id}/transaction")
async def attach_transaction(deposit_id: str, request: Request):
    """Client-redirect confirmation with the PayPal capture id, credited only once PayPal confirms it"""
    body = await _read_json(request)
    transaction_id = body.get("transaction_id")
    if not transaction_id:
        raise HTTPException(status_code=400, detail="transaction_id is required")
    if not isinstance(transaction_id, str):
        raise HTTPException(status_code=400, detail="transaction_id must be a string")

    capture_id = await _confirm_capture(deposit_id, transaction_id)
    result = deposit_record_service.update_deposit_with_transaction(deposit_id, capture_id)
    status_code = 200 if result["success"] else 400
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))


@router.get("/deposits/check/{transaction_id}")
async def check_payment(transaction_id: str):
    result = await deposit_reconciliation_service.check_payment(transaction_id)
    return jsonable_encoder(result)


@router.post("/admin/deposits/process-pending")
async def process_pending_deposits(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")):
    _require_admin(x_admin_token)
    result = deposit_reconciliation_service.process_all_pending_deposits()
    status_code = 200 if result["success"] else 500
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))


@router.post("/admin/deposits/retry-pending")
async def retry_pending_deposits(request: Request, x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")):
    _require_admin(x_admin_token)
    options = {}
    if await request.body():
        options = await _read_json(request)
    try:
        max_attempts = int(options.get("max_attempts", Config.DEPOSIT_RETRY_MAX_ATTEMPTS))
        max_age_mins = int(options.get("max_age_mins", Config.DEPOSIT_RETRY_MAX_AGE_MINUTES))
        limit_per_run = int(options.get("limit_per_run", Config.DEPOSIT_RETRY_LIMIT_PER_RUN))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Retry options must be integers")

    result = await deposit_reconciliation_service.retry_pending_deposits(
        max_attempts=max_attempts, max_age_mins=max_age_mins, limit_per_run=limit_per_run,
    )
    status_code = 200 if result["success"] else 500
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))


@router.get("/admin/deposits/status")
async def pending_deposits_status(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")):
    _require_admin(x_admin_token)
    return deposit_reconciliation_service.get_pending_deposits_status()


@router.post("/admin/balances/{user_id}/reconcile")
async def reconcile_balance(user_id: str, x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")):
    _require_admin(x_admin_token)
    result = balance_reconciliation_service.reconcile_user_balance(user_id, triggered_by="api")
    status_code = _reconcile_status_code(result)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))


@router.post("/admin/balances/{user_id}/refresh")
async def refresh_balance(user_id: str, x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")):
    _require_admin(x_admin_token)
    result = balance_reconciliation_service.refresh_user_balance(user_id)
    status_code = _reconcile_status_code(result["reconciliation"])
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))
