"""PayPal REST API Service - payment lookups and webhook signature verification"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from models import DepositStatus
from utils.exception_handler import TransientProviderError

logger = logging.getLogger(__name__)

# Headers PayPal signs webhook deliveries with
PAYPAL_SIGNATURE_HEADERS = {
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "cert_url": "PAYPAL-CERT-URL",
    "auth_algo": "PAYPAL-AUTH-ALGO",
}

# PayPal capture/order statuses mapped onto deposit statuses
_RESOURCE_STATUS_MAP = {
    "COMPLETED": DepositStatus.COMPLETED,
    "APPROVED": DepositStatus.COMPLETED,
    "PENDING": DepositStatus.PENDING,
    "CREATED": DepositStatus.PENDING,
    "SAVED": DepositStatus.PENDING,
    "PAYER_ACTION_REQUIRED": DepositStatus.PENDING,
    "DECLINED": DepositStatus.FAILED,
    "DENIED": DepositStatus.FAILED,
    "FAILED": DepositStatus.FAILED,
    "VOIDED": DepositStatus.FAILED,
    "REFUNDED": DepositStatus.REFUNDED,
    "PARTIALLY_REFUNDED": DepositStatus.REFUNDED,
    "REVERSED": DepositStatus.REFUNDED,
}


class PayPalAPIError(Exception):
    """Custom exception for non-retryable PayPal API errors"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass
class PayPalPaymentLookup:
    """Normalized view of a capture or order fetched from PayPal"""
    resource_type: str  # 'capture' or 'order'
    resource_id: str
    provider_status: str
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    custom_id: Optional[str] = None
    payer_email: Optional[str] = None
    payer_id: Optional[str] = None

    @property
    def deposit_status(self) -> DepositStatus:
        return _RESOURCE_STATUS_MAP.get(self.provider_status.upper(), DepositStatus.PENDING)

    @property
    def event_type(self) -> str:
        """Webhook-equivalent event type, so manual replays share idempotency keys with webhooks"""
        if self.resource_type == "capture":
            return f"PAYMENT.CAPTURE.{self.provider_status.upper()}"
        return f"CHECKOUT.ORDER.{self.provider_status.upper()}"


class PayPalService:
    """Service for PayPal REST calls used by deposit reconciliation"""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.client_id = client_id or Config.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or Config.PAYPAL_CLIENT_SECRET
        self.base_url = (base_url or Config.PAYPAL_BASE_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.PAYPAL_API_TIMEOUT_SECONDS)
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

        if not self.client_id or not self.client_secret:
            logger.warning("PayPal API credentials not configured - provider lookups will not function")

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def _get_access_token(self) -> str:
        """OAuth client-credentials token, cached until shortly before expiry"""
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        if not self.is_configured():
            raise PayPalAPIError("PayPal API credentials not configured")

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    f"{self.base_url}/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=aiohttp.BasicAuth(self.client_id, self.client_secret),
                    headers={"Accept": "application/json"},
                ) as response:
                    if response.status == 200:
                        data = await response.json()
                        self._access_token = data["access_token"]
                        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 0)) - 60, 0)
                        return self._access_token
                    error_text = await response.text()
                    self._raise_for_status(response.status, f"token request failed: {error_text}")
        except asyncio.TimeoutError as e:
            logger.error("⏱️ PAYPAL_TIMEOUT: token request")
            raise TransientProviderError("PayPal token request timed out") from e
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to PayPal: {e}")
            raise TransientProviderError(f"Network error: {e}") from e

    @staticmethod
    def _raise_for_status(status: int, detail: str):
        if status == 429 or status >= 500:
            raise TransientProviderError(f"PayPal API HTTP {status}: {detail}", status_code=status)
        raise PayPalAPIError(f"PayPal API HTTP {status}: {detail}", status_code=status)

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Authenticated JSON call; None on 404"""
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, f"{self.base_url}{path}", json=payload, headers=headers) as response:
                    if response.status in (200, 201):
                        return await response.json()
                    if response.status == 404:
                        return None
                    if response.status == 401:
                        # Token revoked or expired early; next call fetches a fresh one
                        self._access_token = None
                    error_text = await response.text()
                    logger.error(f"PayPal API error: {method} {path} HTTP {response.status}: {error_text}")
                    self._raise_for_status(response.status, error_text)
        except asyncio.TimeoutError as e:
            logger.error(f"⏱️ PAYPAL_TIMEOUT: {method} {path}")
            raise TransientProviderError(f"PayPal request timed out: {path}") from e
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to PayPal: {e}")
            raise TransientProviderError(f"Network error: {e}") from e

    async def get_capture(self, capture_id: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/v2/payments/captures/{capture_id}")

    async def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/v2/checkout/orders/{order_id}")

    async def lookup_payment(self, identifier: str) -> Optional[PayPalPaymentLookup]:
        """Resolve an id as a capture first, then as an order"""
        capture = await self.get_capture(identifier)
        if capture is not None:
            return self._normalize_capture(capture)

        order = await self.get_order(identifier)
        if order is not None:
            return self._normalize_order(order)

        logger.info(f"🔍 PAYPAL_LOOKUP_MISS: {identifier} is neither a capture nor an order")
        return None

    @staticmethod
    def _normalize_capture(capture: Dict[str, Any]) -> PayPalPaymentLookup:
        related = (capture.get("supplementary_data") or {}).get("related_ids") or {}
        payer = capture.get("payer") or {}
        return PayPalPaymentLookup(
            resource_type="capture",
            resource_id=capture["id"],
            provider_status=capture.get("status", "PENDING"),
            transaction_id=capture["id"],
            order_id=related.get("order_id"),
            custom_id=capture.get("custom_id"),
            payer_email=payer.get("email_address"),
            payer_id=payer.get("payer_id"),
        )

    @staticmethod
    def _normalize_order(order: Dict[str, Any]) -> PayPalPaymentLookup:
        purchase_units = order.get("purchase_units") or [{}]
        unit = purchase_units[0] if purchase_units else {}
        captures = ((unit.get("payments") or {}).get("captures")) or []
        payer = order.get("payer") or {}
        transaction_id = captures[0].get("id") if captures else None
        return PayPalPaymentLookup(
            resource_type="order",
            resource_id=order["id"],
            provider_status=(captures[0].get("status") if captures else None) or order.get("status", "PENDING"),
            transaction_id=transaction_id,
            order_id=order["id"],
            custom_id=unit.get("custom_id"),
            payer_email=payer.get("email_address"),
            payer_id=payer.get("payer_id"),
        )

    async def verify_webhook_signature(
        self,
        headers: Dict[str, str],
        webhook_event: Dict[str, Any],
        webhook_id: str,
    ) -> bool:
        """Ask PayPal to verify a delivery's signature headers against our webhook id"""
        payload = {key: headers.get(header) for key, header in PAYPAL_SIGNATURE_HEADERS.items()}
        payload["webhook_id"] = webhook_id
        payload["webhook_event"] = webhook_event

        result = await self._request("POST", "/v1/notifications/verify-webhook-signature", payload)
        status = (result or {}).get("verification_status")
        if status != "SUCCESS":
            logger.warning(f"⚠️ PAYPAL_SIGNATURE_REJECTED: verification_status={status}")
            return False
        return True


paypal_service = PayPalService()
