"""State change logging for subscription records.

Tracks transitions with before/after values for debugging and auditing.
"""

from enum import Enum
from typing import Any, Optional

from membership_subscriptions.logging_config import get_logger

logger = get_logger(__name__)


def _render(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.value if isinstance(value, Enum) else str(value)


def log_subscription_status_change(
    subscription_id: str,
    profile_id: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log subscription status change.

    Args:
        subscription_id: Subscription record id
        profile_id: Owning profile id
        old_status: Previous status value
        new_status: New status value
        reason: Reason for the change
        **extra_context: Additional context (tenant_id, actor, etc.)
    """
    logger.info(
        "subscription_status_changed",
        subscription_id=subscription_id,
        profile_id=profile_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_current_flag_change(
    subscription_id: str,
    profile_id: str,
    subscription_year: int,
    is_current: bool,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log a flip of the is_current flag."""
    logger.info(
        "subscription_current_flag_changed",
        subscription_id=subscription_id,
        profile_id=profile_id,
        subscription_year=subscription_year,
        old_value=not is_current,
        new_value=is_current,
        reason=reason,
        **extra_context,
    )


def log_payment_details_change(
    subscription_id: str,
    profile_id: str,
    changes: dict[str, tuple[Any, Any]],
    **extra_context: Any,
) -> None:
    """Log payment field updates.

    Args:
        subscription_id: Subscription record id
        profile_id: Owning profile id
        changes: Mapping of field name to (old, new) value
        **extra_context: Additional context
    """
    logger.info(
        "subscription_payment_details_changed",
        subscription_id=subscription_id,
        profile_id=profile_id,
        changes={field: {"old": _render(old), "new": _render(new)} for field, (old, new) in changes.items()},
        **extra_context,
    )
