"""
Billing processor for recurring add-on charges.

One call to BillingProcessor.process_billing() is one billing attempt for one
instance. Failures surface as GatewayFailure and are routed by the caller to
handle_billing_failure(), which owns the retry/backoff and suspension policy.
"""

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

from django.db import transaction
from django.db.models import Count, Sum
from django.utils import timezone

from dateutil.relativedelta import relativedelta

from apps.addons import signals
from apps.addons.conf import default_currency, max_retries, tax_rate
from apps.addons.exceptions import AddOnNotFound, GatewayFailure, InvalidTransition
from apps.addons.models import ZERO, BillingRecord, TenantAddOn
from apps.addons.stripe_service import AddOnStripeService
from apps.addons.transaction_models import AddOnTransaction
from apps.notifications.models import Notification
from apps.notifications.services import notify

logger = logging.getLogger(__name__)

STATS_PERIODS = {
    "day": relativedelta(days=1),
    "week": relativedelta(weeks=1),
    "month": relativedelta(months=1),
    "year": relativedelta(years=1),
}


def next_retry_delay(attempt: int) -> timedelta:
    """Delay before the retry that follows failed attempt number `attempt` (2^attempt days)."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return timedelta(days=2**attempt)


def calculate_tax(amount: Decimal) -> Decimal:
    """Tax on an amount, rounded to whole currency units."""
    return (amount * tax_rate()).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


class BillingProcessor:
    """
    Charges add-on instances through the payment gateway.

    The gateway is injectable so tests and alternative gateways can stand in
    for AddOnStripeService.
    """

    def __init__(self, gateway=None):
        self.gateway = gateway or AddOnStripeService

    def calculate_amount(self, instance):
        """Recurring charge before discount and tax: effective unit price times quantity."""
        pricing = instance.effective_pricing()
        if instance.billing_cycle == TenantAddOn.BILLING_MONTHLY:
            unit_price = pricing.get("monthly")
        elif instance.billing_cycle == TenantAddOn.BILLING_YEARLY:
            unit_price = pricing.get("yearly")
        else:
            return ZERO
        return ((unit_price or ZERO) * instance.quantity).quantize(Decimal("0.01"))

    def process_billing(self, instance, now=None, source=AddOnTransaction.SOURCE_AUTO_RENEWAL):
        """
        Run one billing attempt for an instance.

        Args:
            instance: TenantAddOn to bill
            now: Billing time
            source: Origin recorded on the transaction

        Returns:
            The completed AddOnTransaction, or None if there was nothing to charge

        Raises:
            GatewayFailure: If the charge was declined, errored or timed out
        """
        now = now or timezone.now()
        subtotal = self.calculate_amount(instance)
        if subtotal <= ZERO:
            logger.info(f"Skipping billing for {instance.pk}: nothing to charge")
            return None

        discount = instance.discount_for(subtotal, now)
        tax = calculate_tax(subtotal - discount)
        total = subtotal - discount + tax
        currency = instance.effective_pricing().get("currency") or default_currency()
        period_end = instance.next_cycle_date(now)

        # Record the attempt before talking to the gateway
        txn = AddOnTransaction(
            tenant_id=instance.tenant_id,
            addon_id=instance.addon_id,
            tenant_addon=instance,
            type=AddOnTransaction.TYPE_RENEWAL,
            subtotal=subtotal,
            tax=tax,
            discount=discount,
            total=total,
            currency=currency,
            payment_method="card",
            billing_period_start=instance.next_billing_date or now,
            billing_period_end=period_end,
            source=source,
            metadata={"billing_cycle": instance.billing_cycle, "attempt": instance.failed_attempts + 1},
        )
        txn.add_line_item(
            AddOnTransaction.LINE_ADDON,
            f"{instance.addon.display_name} ({instance.billing_cycle})",
            amount=subtotal,
            quantity=instance.quantity,
            unit_price=(subtotal / instance.quantity).quantize(Decimal("0.01")),
        )
        if discount:
            txn.add_line_item(
                AddOnTransaction.LINE_DISCOUNT, instance.discount_reason or "Discount", amount=-discount
            )
        txn.add_line_item(AddOnTransaction.LINE_TAX, f"Tax ({tax_rate() * 100:.0f}%)", amount=tax)
        txn.save()

        try:
            result = self.gateway.charge(
                amount=total,
                currency=currency,
                customer_ref=instance.tenant.stripe_customer_id or None,
                payment_method=instance.tenant.stripe_payment_method_id or None,
                metadata={
                    "transaction_id": txn.transaction_id,
                    "tenant_id": str(instance.tenant_id),
                    "tenant_addon_id": str(instance.pk),
                },
                idempotency_key=txn.transaction_id,
            )
        except GatewayFailure as e:
            txn.mark_failed(e)
            logger.error(f"Billing failed for add-on instance {instance.pk}: {str(e)}")
            raise

        if result.get("status") != "succeeded":
            reason = f"Payment not completed (status: {result.get('status')})"
            txn.mark_failed(reason)
            logger.error(f"Billing failed for add-on instance {instance.pk}: {reason}")
            raise GatewayFailure(reason)

        gateway_ref = result.get("gateway_ref", "")
        with transaction.atomic():
            txn.mark_completed(gateway_ref, now)
            instance.add_billing_record(
                transaction_id=txn.transaction_id,
                amount=total,
                currency=currency,
                period_start=txn.billing_period_start,
                period_end=period_end,
                payment_method=txn.payment_method,
                payment_status=BillingRecord.PAYMENT_COMPLETED,
                gateway_reference=gateway_ref,
                gateway_response=result,
                processed_by_model=TenantAddOn.ACTOR_SYSTEM,
            )
            instance.reset_retry_state()
            instance.save(
                update_fields=["failed_attempts", "last_failed_at", "next_retry_at", "updated_at"]
            )

        logger.info(f"Billed add-on instance {instance.pk}: {total} {currency} ({txn.transaction_id})")

        signals.addon_billed.send(sender=TenantAddOn, instance=instance, transaction=txn)
        notify(
            instance.tenant_id,
            Notification.BILLING_SUCCESS,
            {
                "tenant_addon_id": str(instance.pk),
                "addon_name": instance.addon.display_name,
                "amount": total,
                "currency": currency,
                "transaction_id": txn.transaction_id,
                "invoice_number": txn.invoice_number,
            },
        )
        return txn

    def handle_billing_failure(self, instance, error, now=None):
        """
        Apply the retry/suspension policy after a failed billing attempt.

        Below the retry limit the next retry is scheduled 2^failed_attempts
        days out; reaching it suspends the instance.
        """
        from apps.addons import services

        now = now or timezone.now()
        instance.failed_attempts += 1
        instance.last_failed_at = now
        limit = max_retries()

        if instance.failed_attempts >= limit:
            instance.next_retry_at = None
            instance.save(
                update_fields=["failed_attempts", "last_failed_at", "next_retry_at", "updated_at"]
            )
            logger.warning(
                f"Add-on instance {instance.pk} failed billing {instance.failed_attempts} times"
            )
            if instance.is_active():
                services.suspend_addon(
                    instance,
                    f"Payment failed after {instance.failed_attempts} attempts: {error}",
                    actor=TenantAddOn.ACTOR_SYSTEM,
                    now=now,
                )
        else:
            instance.next_retry_at = now + next_retry_delay(instance.failed_attempts)
            instance.save(
                update_fields=["failed_attempts", "last_failed_at", "next_retry_at", "updated_at"]
            )
            logger.warning(
                f"Add-on instance {instance.pk} billing attempt {instance.failed_attempts} failed, "
                f"retrying at {instance.next_retry_at.isoformat()}"
            )
            notify(
                instance.tenant_id,
                Notification.PAYMENT_FAILED,
                {
                    "tenant_addon_id": str(instance.pk),
                    "addon_name": instance.addon.display_name,
                    "error": str(error),
                    "failed_attempts": instance.failed_attempts,
                    "next_retry_at": instance.next_retry_at,
                },
            )

        signals.addon_payment_failed.send(
            sender=TenantAddOn,
            instance=instance,
            error=error,
            failed_attempts=instance.failed_attempts,
            next_retry_at=instance.next_retry_at,
        )
        return instance

    def bill(self, instance, now=None, source=AddOnTransaction.SOURCE_AUTO_RENEWAL):
        """
        Bill an instance and apply the failure policy if the charge fails.

        Returns:
            Dictionary with the outcome ('billed', 'skipped' or 'failed')
        """
        now = now or timezone.now()
        try:
            txn = self.process_billing(instance, now=now, source=source)
        except GatewayFailure as e:
            self.handle_billing_failure(instance, e, now=now)
            return {
                "outcome": "failed",
                "error": str(e),
                "failed_attempts": instance.failed_attempts,
                "status": instance.status,
            }

        if txn is None:
            return {"outcome": "skipped"}
        return {"outcome": "billed", "transaction_id": txn.transaction_id, "amount": txn.total}

    def trigger_billing(self, tenant_addon_id, now=None):
        """Run one billing attempt on demand for an active instance."""
        try:
            instance = TenantAddOn.objects.select_related("tenant", "addon").get(
                pk=tenant_addon_id, is_deleted=False
            )
        except TenantAddOn.DoesNotExist:
            raise AddOnNotFound(f"Add-on instance {tenant_addon_id} not found")

        if not instance.is_active():
            raise InvalidTransition(instance, "bill")

        logger.info(f"Manual billing triggered for add-on instance {tenant_addon_id}")
        return self.bill(instance, now=now, source=AddOnTransaction.SOURCE_ADMIN)

    def get_billing_stats(self, period="month", now=None):
        """
        Summarise add-on billing over a trailing period.

        Args:
            period: One of 'day', 'week', 'month', 'year'

        Returns:
            Dictionary with revenue, counts and per-type totals
        """
        if period not in STATS_PERIODS:
            raise ValueError(f"Unknown period '{period}'")

        now = now or timezone.now()
        start = now - STATS_PERIODS[period]
        transactions = AddOnTransaction.objects.filter(created_at__gte=start, created_at__lte=now)
        completed = transactions.filter(status=AddOnTransaction.STATUS_COMPLETED)
        totals = completed.aggregate(revenue=Sum("total"), count=Count("id"))

        by_type = {
            row["type"]: {"count": row["count"], "revenue": row["revenue"] or ZERO}
            for row in completed.order_by()
            .values("type")
            .annotate(count=Count("id"), revenue=Sum("total"))
        }

        return {
            "period": period,
            "start": start,
            "end": now,
            "total_revenue": totals["revenue"] or ZERO,
            "completed_count": totals["count"],
            "failed_count": transactions.filter(status=AddOnTransaction.STATUS_FAILED).count(),
            "by_type": by_type,
            "suspended_instances": TenantAddOn.objects.live()
            .filter(status=TenantAddOn.STATUS_SUSPENDED)
            .count(),
        }
