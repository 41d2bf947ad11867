"""Purchase verification endpoints.

Implements:
- POST /api/v1/subscriptions/verify - Verify a purchase and sync the caller's tier
- GET /api/v1/subscriptions/me - Current subscription of the caller
"""

from fastapi import APIRouter, Depends, HTTPException

from iap_entitlements.api.dependencies import get_caller_id, get_engine
from iap_entitlements.config import ConfigurationError
from iap_entitlements.logging_config import bind_context, get_logger
from iap_entitlements.models import (
    ErrorResponse,
    PurchaseTransaction,
    SubscriptionResponse,
    VerifyPurchaseResponse,
)
from iap_entitlements.providers.base import (
    InvalidPurchaseError,
    ProviderUnavailableError,
    UnsupportedProviderError,
)
from iap_entitlements.services.entitlement_state_machine import (
    EntitlementStateMachine,
    ExpiryUndeterminedError,
)
from iap_entitlements.services.idempotency_guard import IdempotencyStorageError

logger = get_logger(__name__)
router = APIRouter(tags=["Subscriptions"], prefix="/api/v1/subscriptions")


@router.post(
    "/verify",
    response_model=VerifyPurchaseResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
    summary="Verify a purchase",
)
def verify_purchase(
    transaction: PurchaseTransaction,
    caller_id: str = Depends(get_caller_id),
    engine: EntitlementStateMachine = Depends(get_engine),
) -> VerifyPurchaseResponse:
    """Verify a purchase with its provider and update the caller's entitlement.

    Runs synchronously in the worker threadpool: once the provider has
    answered, persistence and tier sync finish even if the client goes away.
    """
    bind_context(provider=transaction.provider.value)

    user = engine.users.find(caller_id)
    if user is None:
        logger.warning("verify_unknown_user", user_id=caller_id)
        raise HTTPException(
            status_code=404,
            detail={
                "error": "User not found",
                "message": f"User '{caller_id}' does not exist",
            },
        )

    try:
        record = engine.verify_and_process_purchase(user, transaction)
    except UnsupportedProviderError as e:
        raise HTTPException(status_code=400, detail={"error": "Unsupported provider", "message": str(e)})
    except InvalidPurchaseError as e:
        raise HTTPException(status_code=400, detail={"error": "Invalid purchase", "message": str(e)})
    except ProviderUnavailableError as e:
        raise HTTPException(status_code=503, detail={"error": "Provider unavailable", "message": str(e)})
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail={"error": "Provider not configured", "message": str(e)})
    except (ExpiryUndeterminedError, IdempotencyStorageError) as e:
        logger.error("verify_failed", error=str(e), error_type=type(e).__name__)
        raise HTTPException(status_code=500, detail={"error": "Verification failed", "message": str(e)})

    current = engine.users.get(caller_id)
    return VerifyPurchaseResponse(
        subscription=SubscriptionResponse.from_record(record),
        userTier=current.tier,
    )


@router.get(
    "/me",
    response_model=SubscriptionResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get the caller's subscription",
)
def get_my_subscription(
    caller_id: str = Depends(get_caller_id),
    engine: EntitlementStateMachine = Depends(get_engine),
) -> SubscriptionResponse:
    record = engine.subscriptions.find_by_user(caller_id)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail={
                "error": "Subscription not found",
                "message": f"User '{caller_id}' has no subscription",
            },
        )
    return SubscriptionResponse.from_record(record)
