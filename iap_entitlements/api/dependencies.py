"""Request-scoped access to the objects created at application startup."""

from fastapi import Header, HTTPException, Request

from iap_entitlements.services.entitlement_state_machine import EntitlementStateMachine


def get_engine(request: Request) -> EntitlementStateMachine:
    return request.app.state.engine


def get_caller_id(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    """Caller identity as set by the upstream authentication layer."""
    if not x_user_id.strip():
        raise HTTPException(
            status_code=401,
            detail={
                "error": "Missing caller",
                "message": "X-User-Id header must not be empty",
            },
        )
    return x_user_id.strip()
