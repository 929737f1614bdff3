"""
Notification emitter for add-on lifecycle and billing events.

Notifications are fire-and-forget: a failure to record one is logged and
swallowed so it can never roll back or block the billing state change that
triggered it.
"""

import logging
from typing import Any, Dict, Optional

from django.db import transaction

from .models import Notification

logger = logging.getLogger(__name__)

EVENT_MESSAGES = {
    Notification.ADDON_ACTIVATED: ("Add-on Activated", "{addon_name} is now active."),
    Notification.BILLING_SUCCESS: (
        "Payment Successful",
        "Payment of {amount} {currency} for {addon_name} was successful.",
    ),
    Notification.PAYMENT_FAILED: (
        "Payment Failed",
        "Payment for {addon_name} failed. We will retry on {next_retry_at}.",
    ),
    Notification.ADDON_SUSPENDED: (
        "Add-on Suspended",
        "{addon_name} has been suspended: {reason}",
    ),
    Notification.ADDON_REACTIVATED: ("Add-on Reactivated", "{addon_name} has been reactivated."),
    Notification.ADDON_CANCELLED: ("Add-on Cancelled", "{addon_name} was cancelled: {reason}"),
    Notification.ADDON_EXPIRED: ("Add-on Expired", "{addon_name} has expired."),
    Notification.TRIAL_ENDING: (
        "Trial Expiring Soon",
        "Your trial for {addon_name} expires in {days_left} days.",
    ),
    Notification.TRIAL_CONVERTED: (
        "Trial Converted",
        "Your trial for {addon_name} has been converted to a paid subscription.",
    ),
    Notification.TRIAL_EXPIRED: ("Trial Expired", "Your trial for {addon_name} has ended."),
    Notification.LOW_BALANCE: (
        "Low Balance Alert",
        "Your {addon_name} balance is running low ({remaining_credits} credits remaining).",
    ),
    Notification.CREDITS_ADDED: (
        "Credits Added",
        "{amount} credits were added to {addon_name}.",
    ),
}


class _SafeFormatDict(dict):
    def __missing__(self, key):
        return "-"


def render_message(event_type: str, payload: Dict[str, Any]):
    """Return (title, message) for an event type rendered with the payload."""
    title, template = EVENT_MESSAGES.get(event_type, ("Notification", "{event_type}"))
    context = _SafeFormatDict(payload)
    context.setdefault("event_type", event_type)
    return title, template.format_map(context)


def notify(tenant_id, event_type: str, payload: Optional[Dict[str, Any]] = None):
    """
    Record a notification for a tenant.

    Args:
        tenant_id: ID of the tenant to notify
        event_type: One of Notification.EVENT_TYPES
        payload: Event data; also used to render the title and message

    Returns:
        Created Notification instance, or None if recording failed

    Example:
        >>> from apps.notifications.services import notify
        >>> notify(
        ...     tenant.id,
        ...     Notification.LOW_BALANCE,
        ...     {"addon_name": "SMS Credits", "remaining_credits": 7},
        ... )
    """
    payload = payload or {}
    try:
        title, message = render_message(event_type, payload)
        with transaction.atomic():
            notification = Notification.objects.create(
                tenant_id=tenant_id,
                event_type=event_type,
                title=title,
                message=message,
                payload=payload,
            )
    except Exception:
        logger.exception(f"Failed to record {event_type} notification for tenant {tenant_id}")
        return None

    logger.info(f"Created notification '{title}' for tenant {tenant_id} (type: {event_type})")
    return notification
