"""Integration tests for POST /api/v1/webhooks/payment."""

import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from httpx import AsyncClient

from app.billing.periods import utcnow
from app.billing.webhooks import WebhookReconciler
from app.services.subscription_store import get_record

URL = "/api/v1/webhooks/payment"


def _body(event: str, subscription_id: str = "sub_hook") -> bytes:
    return json.dumps(
        {
            "event": event,
            "payload": {"subscription": {"entity": {"id": subscription_id, "status": "cancelled"}}},
        }
    ).encode()


async def _linked_record(make_record, user):
    return await make_record(
        user,
        status="active",
        plan="monthly",
        end_date=utcnow() + timedelta(days=10),
        external_customer_id="cust_hook",
        external_subscription_id="sub_hook",
        updated_at=utcnow(),
    )


class TestPaymentWebhook:
    async def test_valid_event_applied(self, client: AsyncClient, db_session, test_user, make_record, sign_webhook):
        await _linked_record(make_record, test_user)
        body = _body("subscription.cancelled")

        response = await client.post(URL, content=body, headers={"X-Signature": sign_webhook(body)})

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "result": "processed"}
        assert (await get_record(db_session, test_user.id)).status == "cancelled"

    async def test_missing_signature_rejected(self, client: AsyncClient):
        response = await client.post(URL, content=_body("subscription.cancelled"))
        assert response.status_code == 400
        assert response.json()["error"] == "MissingSignature"

    async def test_invalid_signature_rejected(self, client: AsyncClient, db_session, test_user, make_record):
        await _linked_record(make_record, test_user)

        response = await client.post(
            URL, content=_body("subscription.cancelled"), headers={"X-Signature": "0" * 64}
        )

        assert response.status_code == 400
        assert response.json() == {"error": "InvalidSignature", "detail": "Invalid signature"}
        assert (await get_record(db_session, test_user.id)).status == "active"

    async def test_malformed_body(self, client: AsyncClient, sign_webhook):
        body = b"[]"
        response = await client.post(URL, content=body, headers={"X-Signature": sign_webhook(body)})
        assert response.status_code == 400
        assert response.json()["error"] == "MalformedPayload"

    async def test_unknown_subscription_acknowledged(self, client: AsyncClient, sign_webhook):
        body = _body("subscription.halted", subscription_id="sub_unknown")
        response = await client.post(URL, content=body, headers={"X-Signature": sign_webhook(body)})
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "result": "not_found"}

    async def test_unhandled_event_acknowledged(self, client: AsyncClient, sign_webhook):
        body = _body("order.paid")
        response = await client.post(URL, content=body, headers={"X-Signature": sign_webhook(body)})
        assert response.json() == {"status": "ok", "result": "ignored"}

    async def test_unexpected_error_returns_500(self, client: AsyncClient, sign_webhook):
        body = _body("subscription.cancelled")

        with patch.object(WebhookReconciler, "reconcile", new=AsyncMock(side_effect=RuntimeError("db down"))):
            response = await client.post(URL, content=body, headers={"X-Signature": sign_webhook(body)})

        assert response.status_code == 500
        assert response.json()["detail"] == "Webhook processing failed"

    async def test_subscription_event_without_entity_acknowledged(self, client: AsyncClient, sign_webhook):
        body = json.dumps({"event": "subscription.charged", "payload": {}}).encode()
        response = await client.post(URL, content=body, headers={"X-Signature": sign_webhook(body)})
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "result": "ignored"}
