"""Async Razorpay API wrapper for LessonPass."""

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from app.billing.errors import GatewayError
from app.config import Settings

logger = logging.getLogger(__name__)

# Razorpay rejects receipts longer than 40 characters.
MAX_RECEIPT_LENGTH = 40


@dataclass(frozen=True)
class GatewayCustomer:
    id: str


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount: int
    currency: str
    receipt: str
    notes: dict[str, str] = field(default_factory=dict)
    created_at: int | None = None  # Unix seconds


def _order_from(data: dict[str, Any], **defaults: Any) -> GatewayOrder:
    return GatewayOrder(
        id=str(data["id"]),
        amount=int(data.get("amount", defaults.get("amount", 0))),
        currency=str(data.get("currency", defaults.get("currency", ""))),
        receipt=str(data.get("receipt") or defaults.get("receipt", "")),
        notes={str(k): str(v) for k, v in (data.get("notes") or {}).items()},
        created_at=data.get("created_at"),
    )


def compute_signature(secret: str, message: str | bytes) -> str:
    """HMAC-SHA256 hex digest, the scheme Razorpay uses for all signatures."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str | None) -> bool:
    """Constant-time comparison of two hex signatures."""
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))


def make_receipt(user_id: uuid.UUID, now: datetime, bucket_seconds: int) -> str:
    """Deterministic order receipt for a user within a time bucket.

    Retrying order creation inside the same bucket reuses the receipt, so the
    gateway sees the same merchant reference instead of a brand new one.
    """
    bucket = int(now.replace(tzinfo=timezone.utc).timestamp()) // max(bucket_seconds, 1)
    return f"sub_{user_id.hex[:16]}_{bucket}"[:MAX_RECEIPT_LENGTH]


class RazorpayClient:
    """Narrow client for the Razorpay REST API.

    Every network call has a bounded timeout. Failures of any kind (transport
    errors, timeouts, non-2xx responses) surface as ``GatewayError``.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "RazorpayClient":
        return cls(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            base_url=settings.razorpay_api_base,
            timeout=settings.gateway_timeout_seconds,
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                auth=(self.key_id, self._key_secret),
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json_payload)
        except httpx.TimeoutException as e:
            logger.warning("Razorpay %s %s timed out", method, path)
            raise GatewayError("Payment gateway timed out", path=path) from e
        except httpx.HTTPError as e:
            logger.warning("Razorpay %s %s failed: %s", method, path, e)
            raise GatewayError(path=path) from e

        if response.is_error:
            logger.warning(
                "Razorpay %s %s returned HTTP %s",
                method,
                path,
                response.status_code,
            )
            raise GatewayError(path=path, upstream_status=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError("Payment gateway returned an unreadable response", path=path) from e

    async def create_customer(
        self, name: str, email: str, user_id: str, contact: str | None = None
    ) -> GatewayCustomer:
        """Create (or fetch the existing) Razorpay customer for a user."""
        logger.info("Creating Razorpay customer for user %s", user_id)
        data = await self._request(
            "POST",
            "/customers",
            {
                "name": name,
                "email": email,
                "contact": contact or "",
                "fail_existing": "0",
                "notes": {"lessonpass_user_id": user_id},
            },
        )
        customer = GatewayCustomer(id=str(data["id"]))
        logger.info("Razorpay customer %s ready for user %s", customer.id, user_id)
        return customer

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> GatewayOrder:
        """Create a one-time payment order (auto-captured)."""
        receipt = receipt[:MAX_RECEIPT_LENGTH]
        logger.info("Creating Razorpay order: amount=%s %s receipt=%s", amount, currency, receipt)
        data = await self._request(
            "POST",
            "/orders",
            {
                "amount": amount,
                "currency": currency,
                "receipt": receipt,
                "payment_capture": 1,
                "notes": notes or {},
            },
        )
        return _order_from(data, amount=amount, currency=currency, receipt=receipt)

    async def fetch_order(self, order_id: str) -> GatewayOrder:
        """Retrieve an order, including the notes written at creation."""
        return _order_from(await self._request("GET", f"/orders/{order_id}"))

    async def fetch_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Retrieve a Razorpay subscription by ID."""
        return await self._request("GET", f"/subscriptions/{subscription_id}")

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str | None) -> bool:
        """Check the checkout signature (HMAC of ``order_id|payment_id``)."""
        if not self._key_secret:
            logger.error("RAZORPAY_KEY_SECRET is not configured; rejecting payment signature")
            return False
        expected = compute_signature(self._key_secret, f"{order_id}|{payment_id}")
        return signatures_match(expected, signature)

    def verify_webhook_signature(self, body: bytes, signature: str | None) -> bool:
        """Check a webhook signature computed over the raw request body."""
        if not self._webhook_secret:
            logger.error("RAZORPAY_WEBHOOK_SECRET is not configured; rejecting webhook")
            return False
        expected = compute_signature(self._webhook_secret, body)
        return signatures_match(expected, signature)
