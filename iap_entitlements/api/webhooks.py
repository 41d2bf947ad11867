"""Provider webhook endpoints.

Implements:
- POST /api/v1/webhooks/apple - App Store Server Notifications v2 (signedPayload)
- POST /api/v1/webhooks/google - Pub/Sub push of Google Play RTDN
- POST /api/v1/webhooks/stripe - Stripe events

A malformed body is acknowledged with 200 so the provider stops redelivering
it. Transient failures answer 503 so the provider retries.
"""

import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from iap_entitlements.api.dependencies import get_engine
from iap_entitlements.config import ConfigurationError
from iap_entitlements.logging_config import bind_context, get_logger
from iap_entitlements.models import NotificationOutcome, StoreProvider, WebhookResponse
from iap_entitlements.providers.base import (
    InvalidNotificationError,
    InvalidPurchaseError,
    ProviderUnavailableError,
)
from iap_entitlements.services.entitlement_state_machine import EntitlementStateMachine
from iap_entitlements.services.idempotency_guard import IdempotencyStorageError

logger = get_logger(__name__)
router = APIRouter(tags=["Webhooks"], prefix="/api/v1/webhooks")


def process_webhook(
    engine: EntitlementStateMachine, provider: StoreProvider, payload: Any
) -> WebhookResponse:
    """Decode a provider body and apply it, mapping failures to HTTP semantics."""
    bind_context(provider=provider.value)
    try:
        notification = engine.verifiers.get(provider).decode_notification(payload)
        if notification is None:
            return WebhookResponse(
                outcome=NotificationOutcome.IGNORED,
                message="Notification carries no subscription change",
            )
        outcome = engine.handle_provider_notification(notification)
    except InvalidNotificationError as e:
        logger.warning("webhook_payload_malformed", error=str(e))
        return WebhookResponse(outcome=NotificationOutcome.IGNORED, message="Malformed payload")
    except InvalidPurchaseError as e:
        logger.warning("webhook_purchase_rejected", error=str(e))
        return WebhookResponse(outcome=NotificationOutcome.IGNORED, message=str(e))
    except (ProviderUnavailableError, IdempotencyStorageError) as e:
        raise HTTPException(status_code=503, detail={"error": "Temporarily unavailable", "message": str(e)})
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail={"error": "Provider not configured", "message": str(e)})

    return WebhookResponse(outcome=outcome, notificationId=notification.notification_id)


async def read_json_body(request: Request) -> Any:
    """Parsed JSON body, or None when the body is not JSON."""
    body = await request.body()
    try:
        return json.loads(body)
    except ValueError:
        return None


@router.post("/apple", response_model=WebhookResponse, summary="App Store Server Notification")
async def apple_webhook(
    request: Request,
    engine: EntitlementStateMachine = Depends(get_engine),
) -> WebhookResponse:
    payload = await read_json_body(request)
    return await run_in_threadpool(process_webhook, engine, StoreProvider.APPLE, payload)


@router.post("/google", response_model=WebhookResponse, summary="Google Play RTDN push")
async def google_webhook(
    request: Request,
    engine: EntitlementStateMachine = Depends(get_engine),
) -> WebhookResponse:
    payload = await read_json_body(request)
    return await run_in_threadpool(process_webhook, engine, StoreProvider.GOOGLE, payload)


@router.post("/stripe", response_model=WebhookResponse, summary="Stripe event")
async def stripe_webhook(
    request: Request,
    engine: EntitlementStateMachine = Depends(get_engine),
) -> WebhookResponse:
    payload = await read_json_body(request)
    return await run_in_threadpool(process_webhook, engine, StoreProvider.STRIPE, payload)
