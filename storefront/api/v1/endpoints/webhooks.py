"""
Provider webhook endpoints.

Notifications for payments this service does not know are acknowledged
with 200 so providers stop retrying them.
"""
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request, status

from storefront.api.deps import Reconciler
from storefront.config import settings
from storefront.schemas.order import WebhookAck
from storefront.services.notification_service import sign_payload

logger = logging.getLogger(__name__)


router = APIRouter(tags=["Webhooks"])


@router.post(
    "/{provider}",
    response_model=WebhookAck,
    summary="Payment provider webhook",
    include_in_schema=False,
)
async def provider_webhook(
    provider: str,
    request: Request,
    reconciler: Reconciler,
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
):
    """
    Handle a payment notification.

    Security:
    - Verifies X-Signature (HMAC-SHA256 of the body) when WEBHOOK_SECRET is set
    - The reported status is re-fetched from the provider unless
      WEBHOOK_VERIFY_WITH_PROVIDER is disabled
    - Idempotent: duplicate notifications are no-ops
    """
    body = await request.body()

    if settings.WEBHOOK_SECRET:
        expected = sign_payload(settings.WEBHOOK_SECRET, body)
        if not x_signature or not hmac.compare_digest(expected, x_signature):
            logger.warning(f"{provider} webhook signature verification failed")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature"
            )

    try:
        payload = json.loads(body) if body else {}
    except json.JSONDecodeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    logger.info(f"Received {provider} webhook")
    result = await reconciler.handle_webhook(provider, payload)

    detail = None
    if result.payment is not None:
        detail = {"external_id": result.payment.external_id, "status": result.payment.status}
    elif result.detail:
        detail = {"reason": result.detail}
    return WebhookAck(outcome=result.outcome.value, detail=detail)
