"""Payment provider webhook.

The provider signs the raw body with HMAC-SHA256 in the X-Provider-Signature
header. Replays and late notifications are answered with 200 so the provider
stops redelivering them.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError as PydanticValidationError

from premarket_platform.app.config import get_settings
from premarket_platform.app.routes.errors import http_error
from premarket_platform.app.routes.grant_access import get_reconciler
from premarket_platform.domain.errors import PreMarketError
from premarket_platform.domain.schemas import PaymentWebhookEvent, ReconcileResponse
from premarket_platform.infra.payment_provider import SIGNATURE_HEADER, verify_signature
from premarket_platform.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/webhook", response_model=ReconcileResponse)
async def payment_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    body = await request.body()
    if not verify_signature(get_settings().payment_webhook_secret, body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Rejected payment webhook with bad signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = PaymentWebhookEvent.model_validate_json(body)
    except PydanticValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        outcome = await reconciler.handle_webhook(event)
    except PreMarketError as e:
        logger.warning("Payment webhook %s not applied: %s", event.provider_event_id, e)
        raise http_error(e)

    return ReconcileResponse(
        result=outcome.result.value,
        grant_id=outcome.grant.id if outcome.grant else None,
        grant_status=outcome.grant.status if outcome.grant else None,
        payment_status=outcome.payment.status if outcome.payment else None,
        attempts=outcome.payment.attempt_count if outcome.payment else None,
    )
