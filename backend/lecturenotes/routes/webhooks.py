"""
Lecture Notes Backend — Subscription Webhook Route
===================================================

What:  POST /api/webhooks/subscription — tier changes from the billing
       provider relay (activated, updated, cancelled).
How:   Checks the shared secret, then hands the event to
       SubscriptionService.apply_event. Redelivered events are answered
       with 200 and applied=false.

Security:
    The relay sends WEBHOOK_SECRET in X-Webhook-Secret. Comparison is
    constant-time. With no secret configured every call is rejected.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from lecturenotes.config import settings
from lecturenotes.database import get_db_session
from lecturenotes.exceptions import WebhookAuthError
from lecturenotes.schemas.job import (
    ErrorResponse,
    SubscriptionWebhookRequest,
    SubscriptionWebhookResponse,
)
from lecturenotes.services.subscription_service import parse_event, subscription_service
from lecturenotes.services.tier_resolver import resolve_effective_tier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


def verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(default=None),
) -> None:
    expected = settings.webhook_secret
    if not expected or not x_webhook_secret:
        raise WebhookAuthError()
    if not hmac.compare_digest(x_webhook_secret.encode(), expected.encode()):
        logger.warning("Subscription webhook called with a wrong secret")
        raise WebhookAuthError()


@router.post(
    "/subscription",
    response_model=SubscriptionWebhookResponse,
    dependencies=[Depends(verify_webhook_secret)],
    responses={
        400: {"description": "Unknown event type or tier", "model": ErrorResponse},
        401: {"description": "Missing or wrong webhook secret", "model": ErrorResponse},
    },
    summary="Apply a subscription event",
)
async def subscription_webhook(
    body: SubscriptionWebhookRequest,
    db: AsyncSession = Depends(get_db_session),
) -> SubscriptionWebhookResponse:
    event = parse_event(
        event_id=body.event_id,
        account_id=body.account_id,
        event_type=body.type,
        tier=body.tier,
        effective_at=body.effective_at,
        billing_anchor=body.billing_anchor,
    )
    now = subscription_service.clock()
    result = await subscription_service.apply_event(db, event, now=now)
    account = result.account

    return SubscriptionWebhookResponse(
        event_id=event.event_id,
        applied=result.applied,
        action=result.action,
        current_tier=account.current_tier,
        effective_tier=resolve_effective_tier(account, now).value,
    )
