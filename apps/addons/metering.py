"""
Usage metering for usage-based add-ons.

Credits are decremented with a single conditional UPDATE so concurrent
consumers can never drive the balance below zero, and the low balance alert
flag is flipped the same way so each low-balance episode alerts once.
"""

import logging
from datetime import timedelta

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from apps.addons import signals
from apps.addons.conf import get_setting
from apps.addons.exceptions import InsufficientCredits, NotUsageBased
from apps.addons.models import ZERO, BillingRecord, TenantAddOn
from apps.notifications.models import Notification
from apps.notifications.services import notify

logger = logging.getLogger(__name__)

METERED_FIELDS = (
    "remaining_credits",
    "total_used",
    "total_usage",
    "last_used_at",
    "daily_usage",
    "low_balance_alerted",
    "last_alert_sent",
    "updated_at",
)


def _validate_amount(amount):
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValueError(f"Credit amount must be a positive integer, got {amount!r}")


def _sync(instance, current):
    for field in METERED_FIELDS:
        setattr(instance, field, getattr(current, field))


def record_daily_usage(entries, day, used, remaining, window_days=None):
    """
    Upsert today's usage entry and drop entries outside the window.

    Args:
        entries: Existing daily entries ({'date', 'used', 'remaining'})
        day: Date the usage happened on
        used: Credits consumed
        remaining: Balance after consumption
        window_days: Size of the rolling window (defaults to USAGE_HISTORY_DAYS)

    Returns:
        New list of entries sorted by date, at most window_days long
    """
    window_days = window_days or int(get_setting("USAGE_HISTORY_DAYS"))
    day_key = day.isoformat()
    cutoff = (day - timedelta(days=window_days - 1)).isoformat()

    updated = []
    found = False
    for entry in entries or []:
        if entry["date"] < cutoff:
            continue
        if entry["date"] == day_key:
            entry = {**entry, "used": entry["used"] + used, "remaining": remaining}
            found = True
        updated.append(entry)

    if not found:
        updated.append({"date": day_key, "used": used, "remaining": remaining})

    return sorted(updated, key=lambda e: e["date"])


def can_consume(instance, amount, now=None):
    """Whether the instance is usable and, if usage-based, has enough credits."""
    _validate_amount(amount)
    if not instance.is_usable(now):
        return False
    if not instance.is_usage_based():
        return True
    return instance.remaining_credits >= amount


def consume(instance, amount, metadata=None, now=None):
    """
    Consume credits from a usage-based add-on.

    Args:
        instance: TenantAddOn to consume from
        amount: Positive number of credits
        metadata: Free-form context about the consumption (logged)

    Returns:
        The instance, with its usage counters refreshed from the database

    Raises:
        NotUsageBased: If the instance is not usage-based
        InsufficientCredits: If the instance is not usable or the balance is too low
    """
    now = now or timezone.now()
    _validate_amount(amount)

    if not instance.is_usage_based():
        raise NotUsageBased(f"Add-on instance {instance.pk} is not usage-based")

    if not can_consume(instance, amount, now):
        raise InsufficientCredits(
            f"Cannot consume {amount} credits from {instance.pk}: "
            f"{instance.remaining_credits} remaining, status '{instance.status}'"
        )

    with transaction.atomic():
        updated = TenantAddOn.objects.filter(
            pk=instance.pk,
            is_deleted=False,
            status__in=TenantAddOn.USABLE_STATUSES,
            remaining_credits__gte=amount,
        ).update(
            remaining_credits=F("remaining_credits") - amount,
            total_used=F("total_used") + amount,
            total_usage=F("total_usage") + amount,
            last_used_at=now,
            updated_at=now,
        )
        if not updated:
            raise InsufficientCredits(
                f"Cannot consume {amount} credits from {instance.pk}: balance changed concurrently"
            )

        current = TenantAddOn.objects.select_for_update().get(pk=instance.pk)
        current.daily_usage = record_daily_usage(
            current.daily_usage, timezone.localdate(now), amount, current.remaining_credits
        )
        current.save(update_fields=["daily_usage"])

        alerted = TenantAddOn.objects.filter(
            pk=instance.pk,
            low_balance_alerted=False,
            remaining_credits__lte=F("low_balance_threshold"),
        ).update(low_balance_alerted=True, last_alert_sent=now)

    _sync(instance, current)
    if alerted:
        instance.low_balance_alerted = True
        instance.last_alert_sent = now

    logger.debug(
        f"Consumed {amount} credits from {instance.pk}, "
        f"{instance.remaining_credits} remaining (metadata: {metadata or {}})"
    )

    if alerted:
        send_low_balance_alert(instance)

    return instance


def send_low_balance_alert(instance):
    """Notify the tenant that an add-on is running low on credits."""
    logger.info(
        f"Low balance on add-on instance {instance.pk}: {instance.remaining_credits} credits left"
    )
    signals.low_balance.send(
        sender=TenantAddOn, instance=instance, remaining_credits=instance.remaining_credits
    )
    notify(
        instance.tenant_id,
        Notification.LOW_BALANCE,
        {
            "tenant_addon_id": str(instance.pk),
            "addon_name": instance.addon.display_name,
            "remaining_credits": instance.remaining_credits,
            "threshold": instance.low_balance_threshold,
        },
    )


def add_credits(instance, amount, reason="manual_add", now=None):
    """
    Add credits to a usage-based add-on.

    Resets the low balance episode and appends a zero-amount billing record
    documenting the grant.

    Returns:
        The BillingRecord written for the grant
    """
    now = now or timezone.now()
    _validate_amount(amount)

    if not instance.is_usage_based():
        raise NotUsageBased(f"Add-on instance {instance.pk} is not usage-based")

    with transaction.atomic():
        TenantAddOn.objects.filter(pk=instance.pk).update(
            remaining_credits=F("remaining_credits") + amount,
            low_balance_alerted=False,
            updated_at=now,
        )
        record = BillingRecord.objects.create(
            tenant_addon_id=instance.pk,
            transaction_id=f"credit_{int(now.timestamp() * 1000)}",
            amount=ZERO,
            currency=instance.snapshot_currency,
            payment_method="credit",
            payment_status=BillingRecord.PAYMENT_COMPLETED,
            notes=f"Added {amount} credits - {reason}",
            processed_by_model=TenantAddOn.ACTOR_SYSTEM,
        )
        current = TenantAddOn.objects.get(pk=instance.pk)

    _sync(instance, current)
    logger.info(f"Added {amount} credits to {instance.pk} ({reason})")

    notify(
        instance.tenant_id,
        Notification.CREDITS_ADDED,
        {
            "tenant_addon_id": str(instance.pk),
            "addon_name": instance.addon.display_name,
            "amount": amount,
            "remaining_credits": instance.remaining_credits,
        },
    )
    return record
