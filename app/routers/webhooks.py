"""Payment provider webhook endpoint.

Status codes tell the provider whether to retry: 400 for a bad signature,
2xx for anything we have handled or will never be able to handle, 503 when a
transient failure means a redelivery could succeed.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.routers.results import raise_for_err
from app.services import reconciler
from app.services.gateway import (
    MalformedEventError,
    PaymentGateway,
    WebhookSignatureError,
    get_gateway,
)
from app.services.notifier import EventNotifier, get_notifier
from app.services.result import Err, ErrorKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: EventNotifier = Depends(get_notifier),
) -> dict:
    payload = await request.body()
    try:
        event = gateway.verify_webhook(payload, request.headers.get("Stripe-Signature"))
    except WebhookSignatureError as exc:
        logger.warning("Rejected webhook with bad signature: %s", exc)
        raise_for_err(Err(ErrorKind.SIGNATURE_ERROR, "Invalid webhook signature"))
    except MalformedEventError as exc:
        # Authentic but unreadable; a redelivery would fail the same way.
        logger.error("Ignoring malformed webhook payload: %s", exc)
        return {"received": True, "outcome": "ignored"}

    result = await reconciler.process_event(db, gateway, notifier, event)
    if isinstance(result, Err):
        if result.retryable:
            raise HTTPException(status_code=503, detail=result.message)
        logger.error("Webhook %s (%s) could not be applied: %s", event.id, event.type, result.message)
        return {"received": True, "outcome": "ignored"}
    return {"received": True, "outcome": result.value.outcome.value}
