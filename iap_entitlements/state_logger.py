"""State change logging for subscription records and user tiers.

Tracks entitlement transitions with before/after values for auditing.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from iap_entitlements.logging_config import get_logger

logger = get_logger(__name__)


def _format_millis(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()


def log_subscription_status_change(
    record_id: str,
    lineage_id: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log a subscription status transition.

    Args:
        record_id: Subscription record ID
        lineage_id: Provider lineage (original transaction) ID
        old_status: Previous status value
        new_status: New status value
        reason: Reason for the transition
        **extra_context: Additional context (user_id, provider, etc.)
    """
    logger.info(
        "subscription_status_changed",
        record_id=record_id,
        token=lineage_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_subscription_owner_change(
    record_id: str,
    lineage_id: str,
    old_user_id: str,
    new_user_id: str,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log the reassignment of a lineage to a different account."""
    logger.info(
        "subscription_owner_changed",
        record_id=record_id,
        token=lineage_id,
        old_user_id=old_user_id,
        new_user_id=new_user_id,
        reason=reason,
        **extra_context,
    )


def log_auto_renew_change(
    record_id: str,
    lineage_id: str,
    old_value: bool,
    new_value: bool,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log an auto-renew flag change."""
    logger.info(
        "auto_renew_changed",
        record_id=record_id,
        token=lineage_id,
        old_value=old_value,
        new_value=new_value,
        reason=reason,
        **extra_context,
    )


def log_expiry_change(
    record_id: str,
    lineage_id: str,
    old_expiry_millis: Optional[int],
    new_expiry_millis: int,
    reason: str,
    **extra_context: Any,
) -> None:
    """Log a valid-until change.

    Args:
        record_id: Subscription record ID
        lineage_id: Provider lineage ID
        old_expiry_millis: Previous expiry (None for a new record)
        new_expiry_millis: New expiry
        reason: Reason for change (renewal, verification, etc.)
        **extra_context: Additional context
    """
    extension_days = None
    if old_expiry_millis is not None:
        extension_days = (new_expiry_millis - old_expiry_millis) / (1000 * 86400)

    logger.info(
        "expiry_changed",
        record_id=record_id,
        token=lineage_id,
        old_expiry=_format_millis(old_expiry_millis),
        new_expiry=_format_millis(new_expiry_millis),
        extension_days=extension_days,
        reason=reason,
        **extra_context,
    )


def log_user_tier_change(
    user_id: str,
    old_tier: Any,
    new_tier: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log a user access tier change."""
    logger.info(
        "user_tier_changed",
        user_id=user_id,
        old_tier=str(old_tier),
        new_tier=str(new_tier),
        reason=reason,
        **extra_context,
    )
