"""
PayPal Webhook Handler

Flow: Parse → Verify Signature → Normalize → Classify → Deposit Processor
Unknown event types and redeliveries are acknowledged with 200 so PayPal
stops retrying them.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from services.deposit_processor import (
    ProcessingOutcome,
    classify_event_type,
    deposit_processor,
)
from services.deposit_reconciliation import deposit_reconciliation_service
from services.webhook_idempotency_service import build_idempotency_key
from services.webhook_security_service import webhook_security_service
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

# Create FastAPI router
router = APIRouter()

_OUTCOME_STATUS_CODES = {
    ProcessingOutcome.UNRESOLVED: 404,
    ProcessingOutcome.LEDGER_FAILED: 500,
    ProcessingOutcome.ERROR: 500,
    ProcessingOutcome.AWAITING_PAYMENT: 409,
}


@dataclass
class PayPalWebhookEvent:
    """Fields of a PayPal webhook the deposit pipeline consumes"""
    event_type: str
    transaction_id: Optional[str] = None
    payer_email: Optional[str] = None
    payer_id: Optional[str] = None
    custom_id: Optional[str] = None
    order_id: Optional[str] = None


def _response(success: bool, message: str, deposit_id: Optional[str] = None, status_code: int = 200, **extra) -> JSONResponse:
    content = {"success": success, "message": message, "deposit_id": deposit_id, **extra}
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


def _object_field(container: Dict[str, Any], field: str) -> Dict[str, Any]:
    value = container.get(field) or {}
    if not isinstance(value, dict):
        raise ValidationError(f"Webhook field '{field}' must be an object")
    return value


def normalize_paypal_event(payload: Dict[str, Any]) -> PayPalWebhookEvent:
    """
    Pull the consumed fields out of a loosely-shaped PayPal event.

    Missing sections are tolerated; sections of the wrong JSON type raise
    ValidationError.
    """
    resource = _object_field(payload, "resource")
    payer = _object_field(resource, "payer")
    purchase_units = resource.get("purchase_units") or []
    if not isinstance(purchase_units, list):
        raise ValidationError("Webhook field 'purchase_units' must be an array")
    first_unit = purchase_units[0] if purchase_units and isinstance(purchase_units[0], dict) else {}
    related_ids = _object_field(_object_field(resource, "supplementary_data"), "related_ids")

    return PayPalWebhookEvent(
        event_type=str(payload.get("event_type") or ""),
        transaction_id=resource.get("id"),
        payer_email=payer.get("email_address"),
        payer_id=payer.get("payer_id"),
        custom_id=first_unit.get("custom_id") or resource.get("custom_id"),
        order_id=related_ids.get("order_id"),
    )


@router.post("/paypal/webhook")
async def paypal_webhook(request: Request):
    """PayPal deposit webhook"""
    try:
        # Step 1: Parse request data
        try:
            payload = await request.json()
        except Exception as e:
            logger.error(f"❌ PAYPAL_JSON: Invalid JSON format: {e}")
            return _response(False, "Invalid JSON format", status_code=400)
        if not isinstance(payload, dict):
            return _response(False, "Invalid webhook payload", status_code=400)

        logger.info(f"📥 PAYPAL_WEBHOOK: {payload.get('event_type')} id={payload.get('id')}")

        # Step 2: Verify signature
        security = await webhook_security_service.validate_paypal_webhook(request.headers, payload)
        if not security["valid"]:
            return _response(False, security.get("error", "Invalid webhook signature"), status_code=401)

        # Step 3: Normalize and classify
        try:
            event = normalize_paypal_event(payload)
        except ValidationError as e:
            logger.error(f"❌ PAYPAL_PAYLOAD_INVALID: {e.message}")
            return _response(False, e.message, status_code=400)
        declared_status = classify_event_type(event.event_type)
        if declared_status is None:
            logger.info(f"ℹ️ PAYPAL_EVENT_IGNORED: unhandled event type '{event.event_type}'")
            return _response(True, f"Unhandled event type: {event.event_type or 'missing'}")

        # Step 4: Process
        result = deposit_processor.process_deposit(
            transaction_id=event.transaction_id,
            declared_status=declared_status,
            idempotency_key=build_idempotency_key(event.transaction_id, event.event_type),
            payer_email=event.payer_email,
            payer_id=event.payer_id,
            custom_id=event.custom_id,
            order_id=event.order_id,
            source="webhook",
            request_payload=payload,
        )

        return _response(
            result.success,
            result.message,
            result.deposit_id,
            status_code=_OUTCOME_STATUS_CODES.get(result.outcome, 200),
        )

    except Exception as e:
        logger.error(f"❌ PAYPAL_WEBHOOK: Unexpected error: {e}", exc_info=True)
        return _response(False, "Internal server error", status_code=500)


@router.api_route("/paypal/webhook", methods=["GET", "PUT", "PATCH", "DELETE"])
async def paypal_webhook_method_not_allowed(request: Request):
    return _response(False, f"Method {request.method} not allowed", status_code=405)


@router.post("/paypal/webhook/process-specific")
async def process_specific_transaction(request: Request):
    """Operator/client re-check of a single PayPal transaction or order id"""
    try:
        body = await request.json()
    except Exception:
        body = None
    if not isinstance(body, dict):
        return _response(False, "Invalid JSON format", status_code=400)

    transaction_id = body.get("transaction_id")
    order_id = body.get("order_id")
    if not transaction_id and not order_id:
        return _response(False, "transaction_id or order_id is required", status_code=400)

    try:
        result = await deposit_reconciliation_service.process_specific_transaction(
            transaction_id=transaction_id, order_id=order_id
        )
    except Exception as e:
        logger.error(f"❌ MANUAL_PROCESS: Unexpected error for {transaction_id or order_id}: {e}", exc_info=True)
        return _response(False, "Internal server error", status_code=500)

    try:
        outcome = ProcessingOutcome(result.get("reason"))
    except ValueError:
        outcome = None
    if outcome is None:
        status_code = 200 if result["success"] else 400
    else:
        status_code = _OUTCOME_STATUS_CODES.get(outcome, 200)
    return _response(result["success"], result["message"], result.get("deposit_id"), status_code=status_code)
