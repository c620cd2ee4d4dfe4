"""
Webhook Security Service - PayPal signature validation and operator token checks
"""

import hmac
import logging
from typing import Any, Dict, Mapping, Optional

from config import Config
from services.paypal_service import PAYPAL_SIGNATURE_HEADERS, PayPalAPIError, paypal_service

logger = logging.getLogger(__name__)


class WebhookSecurityService:
    """Centralized webhook security validation service"""

    def __init__(self, paypal=None):
        self.paypal = paypal or paypal_service

    async def validate_paypal_webhook(
        self, headers: Mapping[str, str], webhook_event: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Validate a PayPal delivery against PAYPAL_WEBHOOK_ID.

        Returns: {'valid': bool, 'error': str, 'security_info': dict}
        Without a configured webhook id the delivery is accepted in reduced
        trust mode. Transient provider errors propagate to the caller.
        """
        webhook_id = Config.PAYPAL_WEBHOOK_ID
        if not webhook_id:
            logger.warning("⚠️ REDUCED_TRUST_MODE: PAYPAL_WEBHOOK_ID not configured - signature verification skipped")
            return {"valid": True, "security_info": {"verification": "skipped"}}

        normalized = {key.upper(): value for key, value in headers.items()}
        missing = [header for header in PAYPAL_SIGNATURE_HEADERS.values() if not normalized.get(header)]
        if missing:
            logger.critical(f"🚨 SECURITY_BREACH: PayPal webhook missing signature headers: {', '.join(missing)}")
            return {
                "valid": False,
                "error": "Missing webhook signature headers",
                "security_info": {"missing_headers": missing},
            }

        try:
            verified = await self.paypal.verify_webhook_signature(normalized, webhook_event, webhook_id)
        except PayPalAPIError as e:
            logger.error(f"❌ PAYPAL_SIGNATURE_CHECK_FAILED: {e.message}")
            return {
                "valid": False,
                "error": "Signature verification rejected by PayPal",
                "security_info": {"status_code": e.status_code},
            }

        if not verified:
            logger.critical(
                f"🚨 SECURITY_BREACH: Invalid PayPal webhook signature - "
                f"transmission {normalized.get('PAYPAL-TRANSMISSION-ID')}"
            )
            return {
                "valid": False,
                "error": "Invalid webhook signature",
                "security_info": {"verification": "failed"},
            }

        logger.info(f"🔒 PAYPAL_SIGNATURE_VERIFIED: transmission {normalized.get('PAYPAL-TRANSMISSION-ID')}")
        return {"valid": True, "security_info": {"verification": "verified"}}

    @staticmethod
    def validate_admin_token(provided_token: Optional[str]) -> bool:
        """Constant-time comparison against ADMIN_API_TOKEN; always false when unset"""
        expected = Config.ADMIN_API_TOKEN
        if not expected:
            logger.error("❌ ADMIN_API_TOKEN not configured - operator endpoints are disabled")
            return False
        if not provided_token:
            return False
        return hmac.compare_digest(provided_token.encode("utf-8"), expected.encode("utf-8"))


webhook_security_service = WebhookSecurityService()
