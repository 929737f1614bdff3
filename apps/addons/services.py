"""
Lifecycle operations for tenant add-ons.

Each operation validates its transition before touching anything, saves the
instance with explicit update_fields, recomputes the tenant's entitlements
when the set of usable add-ons may have changed, and then notifies the
tenant. Notification failures never affect the operation.
"""

import logging
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.utils import timezone

from dateutil.relativedelta import relativedelta
from django_fsm import can_proceed

from apps.addons import signals
from apps.addons.billing import calculate_tax
from apps.addons.entitlements import recompute_entitlements
from apps.addons.exceptions import (
    AddOnError,
    AddOnNotFound,
    AddOnUnavailable,
    DuplicateAddOn,
    GatewayFailure,
    InvalidBillingCycle,
    InvalidTransition,
)
from apps.addons.models import ZERO, AddOn, BillingRecord, TenantAddOn
from apps.addons.stripe_service import AddOnStripeService
from apps.addons.transaction_models import AddOnTransaction
from apps.notifications.models import Notification
from apps.notifications.services import notify

logger = logging.getLogger(__name__)

LIFECYCLE_FIELDS = [
    "status",
    "activated_at",
    "suspended_at",
    "suspension_reason",
    "cancelled_at",
    "cancellation_reason",
    "cancelled_by",
    "cancellation_effective_date",
    "refund_amount",
    "expires_at",
    "failed_attempts",
    "last_failed_at",
    "next_retry_at",
    "updated_at",
]

OVERRIDE_FIELDS = ("custom_pricing", "custom_config", "custom_limits")

DISCOUNT_FIELDS = ("discount_type", "discount_value", "discount_reason", "discount_valid_until")


def get_addon(slug):
    try:
        return AddOn.objects.get(slug=slug)
    except AddOn.DoesNotExist:
        raise AddOnNotFound(f"Add-on '{slug}' not found")


def get_tenant_addon(tenant_addon_id):
    try:
        return TenantAddOn.objects.select_related("tenant", "addon").get(
            pk=tenant_addon_id, is_deleted=False
        )
    except TenantAddOn.DoesNotExist:
        raise AddOnNotFound(f"Add-on instance {tenant_addon_id} not found")


def _payload(instance, **extra):
    return {
        "tenant_addon_id": str(instance.pk),
        "addon_id": str(instance.addon_id),
        "addon_name": instance.addon.display_name,
        "status": instance.status,
        **extra,
    }


def _transition(instance, action, *args, **kwargs):
    """Run a guarded FSM transition, raising InvalidTransition if it is not allowed."""
    method = getattr(instance, action)
    if not can_proceed(method):
        logger.warning(
            f"Rejected {action} for add-on instance {instance.pk} in status '{instance.status}'"
        )
        raise InvalidTransition(instance, action)
    source = instance.status
    method(*args, **kwargs)
    return source


def _finish(instance, source, event_type, now, reason="", **payload):
    """Recompute entitlements and announce a status change that has been saved."""
    recompute_entitlements(instance.tenant_id, now=now)
    signals.addon_status_changed.send(
        sender=TenantAddOn,
        instance=instance,
        source=source,
        target=instance.status,
        reason=reason,
    )
    logger.info(
        f"Add-on instance {instance.pk} moved from '{source}' to '{instance.status}'"
        + (f": {reason}" if reason else "")
    )
    notify(instance.tenant_id, event_type, _payload(instance, reason=reason, **payload))


def _validate_request(addon, billing_cycle, quantity):
    if billing_cycle not in dict(AddOn.BILLING_CYCLE_CHOICES):
        raise InvalidBillingCycle(f"Unknown billing cycle '{billing_cycle}'")
    if quantity < 1 or quantity > addon.max_quantity:
        raise AddOnUnavailable(
            f"Quantity must be between 1 and {addon.max_quantity} for '{addon.slug}'"
        )


def _release_existing(tenant, addon, now):
    """Archive a terminal instance of the same add-on; refuse if a live one exists."""
    existing = TenantAddOn.objects.for_tenant(tenant.id).filter(addon=addon).first()
    if existing is None:
        return
    if not existing.is_terminal():
        raise DuplicateAddOn(f"Tenant {tenant.id} already has add-on '{addon.slug}'")
    archive_addon(existing, now=now)


def _trial_used(tenant, addon):
    return TenantAddOn.objects.filter(tenant=tenant, addon=addon, is_trial_used=True).exists()


def _create_instance(tenant, addon, billing_cycle, quantity, status, pricing, now, trial_days=0, **fields):
    instance = TenantAddOn(
        tenant=tenant,
        addon=addon,
        billing_cycle=billing_cycle,
        quantity=quantity,
        status=status,
        **fields,
    )
    instance.capture_pricing_snapshot(pricing, now)

    if trial_days:
        instance.is_trial_used = True
        instance.trial_started_at = now
        instance.trial_days = trial_days
        instance.trial_ends_at = now + relativedelta(days=trial_days)
        instance.next_billing_date = instance.trial_ends_at

    if instance.is_usage_based():
        instance.remaining_credits = addon.usage_credit_amount() * quantity
        instance.low_balance_threshold = addon.low_balance_threshold()
        instance.auto_renew_credits = bool((addon.usage_config or {}).get("auto_renew", False))
        instance.last_reset = now

    try:
        with transaction.atomic():
            instance.save()
    except IntegrityError as e:
        raise DuplicateAddOn(f"Tenant {tenant.id} already has add-on '{addon.slug}'") from e

    logger.info(
        f"Created add-on instance {instance.pk} ({addon.slug}) for tenant {tenant.id} "
        f"in status '{status}'"
    )
    return instance


def purchase_addon(
    tenant,
    addon,
    billing_cycle=None,
    quantity=1,
    start_trial=False,
    assigned_by="",
    assigned_by_model=TenantAddOn.ACTOR_TENANT_ADMIN,
    source=AddOnTransaction.SOURCE_WEB,
    gateway=None,
    now=None,
):
    """
    Purchase an add-on for a tenant.

    Args:
        tenant: Tenant making the purchase
        addon: Catalog AddOn to purchase
        billing_cycle: Billing cycle (defaults to the catalog default)
        quantity: Number of units
        start_trial: Start the free trial instead of charging, if one is available
        assigned_by: Identifier of the purchasing user
        gateway: Payment gateway (defaults to AddOnStripeService)

    Returns:
        The new TenantAddOn: 'trial' or 'active', or 'pending_payment' when
        the gateway has not finalised the charge yet

    Raises:
        AddOnUnavailable: Add-on not available, tenant not eligible, bad quantity or price
        DuplicateAddOn: Tenant already holds a live instance of the add-on
        GatewayFailure: The initial charge failed (the instance is cancelled)
    """
    now = now or timezone.now()
    gateway = gateway or AddOnStripeService
    billing_cycle = billing_cycle or addon.billing_cycle

    _validate_request(addon, billing_cycle, quantity)
    eligible, reason = addon.is_eligible_for_tenant(tenant, now)
    if not eligible:
        raise AddOnUnavailable(reason)

    pricing = addon.resolve_pricing(tenant.region, now, tenant)
    unit_price = addon.price_for_cycle(billing_cycle, pricing)

    if start_trial:
        if not addon.trial_days or _trial_used(tenant, addon):
            raise AddOnUnavailable(f"No trial available for '{addon.slug}'")
    elif unit_price <= ZERO:
        raise AddOnUnavailable(f"'{addon.slug}' has no {billing_cycle} price")

    _release_existing(tenant, addon, now)

    common = {
        "assigned_by": assigned_by,
        "assigned_by_model": assigned_by_model,
        "activation_source": source,
    }

    if start_trial:
        instance = _create_instance(
            tenant,
            addon,
            billing_cycle,
            quantity,
            TenantAddOn.STATUS_TRIAL,
            pricing,
            now,
            trial_days=addon.trial_days,
            assignment_method=TenantAddOn.METHOD_TRIAL,
            **common,
        )
        _finish(instance, TenantAddOn.STATUS_TRIAL, Notification.ADDON_ACTIVATED, now)
        return instance

    if billing_cycle in AddOn.RECURRING_CYCLES:
        # Paid period starts now; completing the purchase advances it one cycle
        common["next_billing_date"] = now

    instance = _create_instance(
        tenant,
        addon,
        billing_cycle,
        quantity,
        TenantAddOn.STATUS_PENDING_PAYMENT,
        pricing,
        now,
        assignment_method=TenantAddOn.METHOD_PURCHASE,
        **common,
    )

    subtotal = (unit_price * quantity).quantize(Decimal("0.01"))
    tax = calculate_tax(subtotal)
    txn = AddOnTransaction(
        tenant=tenant,
        addon=addon,
        tenant_addon=instance,
        type=AddOnTransaction.TYPE_PURCHASE,
        subtotal=subtotal,
        tax=tax,
        total=subtotal + tax,
        currency=instance.snapshot_currency,
        payment_method="card",
        billing_period_start=now,
        billing_period_end=instance.next_cycle_date(now),
        source=source,
        metadata={"billing_cycle": billing_cycle, "variant": pricing.get("variant", "")},
    )
    txn.add_line_item(
        AddOnTransaction.LINE_ADDON,
        f"{addon.display_name} ({billing_cycle})",
        amount=subtotal,
        quantity=quantity,
        unit_price=unit_price,
    )
    txn.add_line_item(AddOnTransaction.LINE_TAX, "Tax", amount=tax)
    txn.save()

    try:
        result = gateway.charge(
            amount=txn.total,
            currency=txn.currency,
            customer_ref=tenant.stripe_customer_id or None,
            payment_method=tenant.stripe_payment_method_id or None,
            metadata={
                "transaction_id": txn.transaction_id,
                "tenant_id": str(tenant.id),
                "tenant_addon_id": str(instance.pk),
            },
            idempotency_key=txn.transaction_id,
        )
    except GatewayFailure as e:
        txn.mark_failed(e)
        cancel_addon(
            instance,
            "Initial payment failed",
            cancelled_by=TenantAddOn.ACTOR_SYSTEM,
            now=now,
            gateway=gateway,
        )
        raise

    if result.get("status") != "succeeded":
        txn.mark_processing()
        logger.info(
            f"Payment for add-on instance {instance.pk} is '{result.get('status')}', "
            "awaiting gateway confirmation"
        )
        return instance

    complete_purchase(instance, txn, result.get("gateway_ref", ""), result, now=now)
    return instance


def complete_purchase(instance, txn, gateway_ref="", gateway_response=None, now=None):
    """
    Finalise a paid purchase: complete the transaction and activate the instance.

    Used both right after a successful charge and when a gateway callback
    confirms a charge later.
    """
    now = now or timezone.now()
    with transaction.atomic():
        source = _transition(instance, "activate", now=now)
        txn.mark_completed(gateway_ref, now)
        instance.save(update_fields=LIFECYCLE_FIELDS)
        instance.add_billing_record(
            transaction_id=txn.transaction_id,
            amount=txn.total,
            currency=txn.currency,
            period_start=txn.billing_period_start,
            period_end=txn.billing_period_end,
            payment_method=txn.payment_method,
            payment_status=BillingRecord.PAYMENT_COMPLETED,
            gateway_reference=gateway_ref,
            gateway_response=gateway_response or {},
            processed_by_model=instance.assigned_by_model,
        )
        instance.addon.record_purchase(txn.total)

    _finish(
        instance,
        source,
        Notification.ADDON_ACTIVATED,
        now,
        amount=txn.total,
        currency=txn.currency,
        transaction_id=txn.transaction_id,
    )
    return instance


def assign_addon(
    tenant,
    addon,
    assigned_by,
    assigned_by_model=TenantAddOn.ACTOR_SUPER_ADMIN,
    assignment_method=TenantAddOn.METHOD_ADMIN_ASSIGN,
    billing_cycle=None,
    quantity=1,
    trial_days=0,
    custom_pricing=None,
    note="",
    now=None,
):
    """
    Assign an add-on to a tenant without charging (admin, sales or promotion).

    The instance starts 'active', or 'trial' when trial_days is given.
    """
    now = now or timezone.now()
    billing_cycle = billing_cycle or addon.billing_cycle

    _validate_request(addon, billing_cycle, quantity)
    if addon.status not in (AddOn.STATUS_ACTIVE, AddOn.STATUS_HIDDEN):
        raise AddOnUnavailable(f"'{addon.slug}' cannot be assigned in status '{addon.status}'")

    _release_existing(tenant, addon, now)

    status = TenantAddOn.STATUS_TRIAL if trial_days else TenantAddOn.STATUS_ACTIVE
    instance = _create_instance(
        tenant,
        addon,
        billing_cycle,
        quantity,
        status,
        addon.resolve_pricing(tenant.region, now, tenant),
        now,
        trial_days=trial_days,
        assigned_by=assigned_by,
        assigned_by_model=assigned_by_model,
        assignment_method=assignment_method,
        activation_source=AddOnTransaction.SOURCE_ADMIN,
        activated_at=None if trial_days else now,
        custom_pricing=custom_pricing,
    )
    if note:
        instance.add_note(note, author=assigned_by, now=now)

    _finish(instance, status, Notification.ADDON_ACTIVATED, now, assigned_by=assigned_by)
    return instance


def suspend_addon(instance, reason, actor="", now=None):
    """Suspend an active add-on. Its capabilities leave the tenant's entitlements immediately."""
    now = now or timezone.now()
    source = _transition(instance, "suspend", reason=reason, now=now)
    instance.save(update_fields=LIFECYCLE_FIELDS)
    _finish(instance, source, Notification.ADDON_SUSPENDED, now, reason=reason, actor=actor)
    return instance


def reactivate_addon(instance, actor="", now=None):
    now = now or timezone.now()
    source = _transition(instance, "reactivate", now=now)
    instance.save(update_fields=LIFECYCLE_FIELDS)
    _finish(instance, source, Notification.ADDON_REACTIVATED, now, actor=actor)
    return instance


def _refundable_charge(instance):
    return (
        instance.billing_history.filter(payment_status=BillingRecord.PAYMENT_COMPLETED)
        .exclude(gateway_reference="")
        .first()
    )


def cancel_addon(
    instance,
    reason,
    cancelled_by="",
    now=None,
    effective_date=None,
    refund_amount=None,
    gateway=None,
    cancel_gateway_subscription=True,
    event_type=Notification.ADDON_CANCELLED,
):
    """
    Cancel an add-on.

    Args:
        instance: TenantAddOn to cancel
        reason: Why it is cancelled (required)
        cancelled_by: Actor cancelling the add-on
        effective_date: When the cancellation takes effect (defaults to now)
        refund_amount: Amount to refund against the latest completed charge
        cancel_gateway_subscription: Also cancel the Stripe subscription, if any

    Raises:
        ValueError: If no reason is given
        InvalidTransition: If the instance is already terminal
        AddOnError: If a refund is requested but there is no charge to refund
        GatewayFailure: If the refund fails (the cancellation itself stands)
    """
    if not reason or not reason.strip():
        raise ValueError("A cancellation reason is required")

    now = now or timezone.now()
    gateway = gateway or AddOnStripeService

    charge = None
    if refund_amount:
        charge = _refundable_charge(instance)
        if charge is None:
            raise AddOnError(f"No completed charge to refund for add-on instance {instance.pk}")

    source = _transition(
        instance,
        "cancel",
        reason,
        cancelled_by=cancelled_by,
        now=now,
        effective_date=effective_date,
        refund_amount=refund_amount,
    )
    instance.save(update_fields=LIFECYCLE_FIELDS)

    if cancel_gateway_subscription and instance.stripe_subscription_id:
        try:
            gateway.cancel_recurring(instance.stripe_subscription_id)
        except GatewayFailure as e:
            logger.error(
                f"Failed to cancel gateway subscription {instance.stripe_subscription_id} "
                f"for add-on instance {instance.pk}: {str(e)}"
            )

    _finish(instance, source, event_type, now, reason=reason, cancelled_by=cancelled_by)

    if charge is not None:
        _refund(instance, charge, Decimal(str(refund_amount)), reason, gateway, now)

    return instance


def _refund(instance, charge, amount, reason, gateway, now):
    result = gateway.refund(charge.gateway_reference, amount=amount, reason=reason)

    with transaction.atomic():
        refund_txn = AddOnTransaction.objects.create(
            tenant_id=instance.tenant_id,
            addon_id=instance.addon_id,
            tenant_addon=instance,
            type=AddOnTransaction.TYPE_REFUND,
            status=AddOnTransaction.STATUS_COMPLETED,
            subtotal=amount,
            total=amount,
            currency=charge.currency,
            gateway_transaction_id=result.get("refund_ref", ""),
            processed_at=now,
            source=AddOnTransaction.SOURCE_ADMIN,
            metadata={"refunded_transaction_id": charge.transaction_id, "reason": reason},
            line_items=[
                {
                    "type": AddOnTransaction.LINE_REFUND,
                    "description": reason,
                    "quantity": 1,
                    "unit_price": amount,
                    "amount": amount,
                }
            ],
        )
        original = AddOnTransaction.objects.filter(transaction_id=charge.transaction_id).first()
        if original is not None:
            original.mark_refunded(amount, result.get("refund_ref", ""))

        instance.add_billing_record(
            transaction_id=refund_txn.transaction_id,
            amount=-amount,
            currency=charge.currency,
            payment_method=charge.payment_method,
            payment_status=BillingRecord.PAYMENT_REFUNDED,
            gateway_reference=result.get("refund_ref", ""),
            gateway_response=result,
            refund_amount=amount,
            refund_reason=reason,
            refunded_at=now,
            processed_by_model=TenantAddOn.ACTOR_SYSTEM,
        )
        instance.refund_processed = True
        instance.save(update_fields=["refund_processed", "updated_at"])

    logger.info(f"Refunded {amount} {charge.currency} for add-on instance {instance.pk}")
    return refund_txn


def expire_addon(instance, now=None):
    now = now or timezone.now()
    source = _transition(instance, "expire", now=now)
    instance.save(update_fields=LIFECYCLE_FIELDS)
    _finish(instance, source, Notification.ADDON_EXPIRED, now)
    return instance


def convert_trial(instance, now=None):
    """Move a trial whose conversion charge succeeded to active."""
    now = now or timezone.now()
    if not instance.is_trial():
        raise InvalidTransition(instance, "convert")
    source = _transition(instance, "activate", now=now)
    instance.save(update_fields=LIFECYCLE_FIELDS)
    _finish(instance, source, Notification.TRIAL_CONVERTED, now)
    return instance


def archive_addon(instance, deleted_by_model=TenantAddOn.ACTOR_SYSTEM, now=None):
    """Soft delete a cancelled or expired instance, freeing the (tenant, add-on) slot."""
    if not instance.is_terminal():
        raise InvalidTransition(instance, "archive")
    instance.is_deleted = True
    instance.deleted_at = now or timezone.now()
    instance.deleted_by_model = deleted_by_model
    instance.save(update_fields=["is_deleted", "deleted_at", "deleted_by_model", "updated_at"])
    logger.info(f"Archived add-on instance {instance.pk}")
    return instance


_UNSET = object()


def update_overrides(
    instance,
    custom_pricing=_UNSET,
    custom_config=_UNSET,
    custom_limits=_UNSET,
    discount=_UNSET,
    now=None,
):
    """
    Update per-instance overrides and recompute entitlements.

    Args:
        custom_pricing: Price overrides ({'monthly', 'yearly', 'one_time', 'currency'}) or None
        custom_config: Feature value overrides
        custom_limits: Capacity limit overrides
        discount: Dict with type, value, reason and valid_until, or None to clear
    """
    now = now or timezone.now()
    update_fields = ["updated_at"]

    for field, value in zip(OVERRIDE_FIELDS, (custom_pricing, custom_config, custom_limits)):
        if value is _UNSET:
            continue
        if value is None and field != "custom_pricing":
            value = {}
        setattr(instance, field, value)
        update_fields.append(field)

    if discount is not _UNSET:
        discount = discount or {}
        if discount.get("type") not in (
            None,
            TenantAddOn.DISCOUNT_PERCENTAGE,
            TenantAddOn.DISCOUNT_FIXED,
        ):
            raise ValueError(f"Unknown discount type '{discount.get('type')}'")
        instance.discount_type = discount.get("type") or ""
        instance.discount_value = Decimal(str(discount.get("value", 0)))
        instance.discount_reason = discount.get("reason", "")
        instance.discount_valid_until = discount.get("valid_until")
        update_fields.extend(DISCOUNT_FIELDS)

    instance.save(update_fields=update_fields)
    recompute_entitlements(instance.tenant_id, now=now)
    logger.info(f"Updated overrides for add-on instance {instance.pk}: {update_fields[1:]}")
    return instance


def add_note(instance, text, author="", now=None):
    if not text or not text.strip():
        raise ValueError("Note text is required")
    instance.add_note(text.strip(), author=author, now=now)
    return instance
