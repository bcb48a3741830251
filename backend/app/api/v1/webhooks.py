"""Payment webhook endpoint — receives and applies Razorpay events."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_settings, get_webhook_reconciler
from app.billing.errors import BillingError
from app.billing.webhooks import WebhookReconciler
from app.config import Settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/payment")
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
    config: Settings = Depends(get_settings),
) -> dict[str, str]:
    """Receive a signed gateway event and reconcile the matching record."""
    # Raw bytes: the signature covers the body exactly as sent
    payload = await request.body()
    signature = request.headers.get(config.webhook_signature_header)

    try:
        result = await reconciler.reconcile(db, payload, signature)
    except BillingError as e:
        logger.warning("Webhook rejected: %s", e.reason)
        raise
    except Exception as e:
        logger.exception("Error processing payment webhook")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return {"status": "ok", "result": result}
