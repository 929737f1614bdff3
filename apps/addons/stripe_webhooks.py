"""
Stripe webhook handlers for add-on billing.

Reconciles asynchronous gateway callbacks against the engine's own records:
PaymentIntent events are matched by the transaction_id carried in metadata,
invoice and subscription events by the Stripe subscription id. Handlers are
idempotent, so redelivered events are harmless.
"""

import logging
from decimal import Decimal
from typing import Any, Dict

from django.conf import settings
from django.db import transaction
from django.http import HttpResponse, HttpResponseBadRequest
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

import stripe

from apps.addons import services
from apps.addons.billing import BillingProcessor
from apps.addons.exceptions import GatewayFailure
from apps.addons.models import BillingRecord, TenantAddOn
from apps.addons.stripe_service import from_timestamp
from apps.addons.transaction_models import AddOnTransaction

logger = logging.getLogger(__name__)

CANCELLED_SUBSCRIPTION_STATUSES = ("canceled", "unpaid", "incomplete_expired")


@csrf_exempt
@require_POST
def stripe_webhook(request):
    """
    Handle incoming Stripe webhook events for add-ons.
    """
    payload = request.body
    sig_header = request.META.get("HTTP_STRIPE_SIGNATURE")
    webhook_secret = getattr(settings, "STRIPE_WEBHOOK_SECRET", "")

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except ValueError:
        logger.error("Invalid Stripe webhook payload")
        return HttpResponseBadRequest("Invalid payload")
    except stripe.error.SignatureVerificationError:
        logger.error("Invalid Stripe webhook signature")
        return HttpResponseBadRequest("Invalid signature")

    event_type = event["type"]
    event_data = event["data"]["object"]

    logger.info(f"Received Stripe webhook event: {event_type}")

    handlers = {
        "payment_intent.succeeded": handle_payment_intent_succeeded,
        "payment_intent.payment_failed": handle_payment_intent_failed,
        "invoice.payment_succeeded": handle_invoice_payment_succeeded,
        "invoice.payment_failed": handle_invoice_payment_failed,
        "customer.subscription.updated": handle_subscription_updated,
        "customer.subscription.deleted": handle_subscription_deleted,
    }

    handler = handlers.get(event_type)
    if handler:
        try:
            handler(event_data)
        except Exception as e:
            logger.error(
                f"Error handling Stripe webhook {event_type}: {str(e)}",
                exc_info=True,
            )
            return HttpResponse(status=500)
    else:
        logger.info(f"Unhandled Stripe webhook event type: {event_type}")

    return HttpResponse(status=200)


def _get_transaction(intent_data: Dict[str, Any]):
    transaction_id = (intent_data.get("metadata") or {}).get("transaction_id")
    if not transaction_id:
        logger.info(f"PaymentIntent {intent_data.get('id')} has no add-on transaction id")
        return None
    try:
        return AddOnTransaction.objects.select_related("tenant_addon__addon", "tenant_addon__tenant").get(
            transaction_id=transaction_id
        )
    except AddOnTransaction.DoesNotExist:
        logger.warning(f"Add-on transaction not found for {transaction_id}")
        return None


def _get_instance_for_subscription(subscription_id):
    if not subscription_id:
        return None
    try:
        return TenantAddOn.objects.select_related("tenant", "addon").get(
            stripe_subscription_id=subscription_id, is_deleted=False
        )
    except TenantAddOn.DoesNotExist:
        logger.warning(f"Add-on instance not found for Stripe subscription {subscription_id}")
        return None


def handle_payment_intent_succeeded(intent_data: Dict[str, Any]):
    """
    Handle payment_intent.succeeded.

    Completes the matching transaction. A purchase still awaiting payment is
    activated; a renewal recorded as failed (e.g. after a timeout) is
    reconciled with a billing record.
    """
    txn = _get_transaction(intent_data)
    if txn is None:
        return

    if txn.is_completed():
        logger.info(f"Transaction {txn.transaction_id} already completed, ignoring event")
        return

    instance = txn.tenant_addon
    gateway_ref = intent_data["id"]

    if instance is not None and instance.status == TenantAddOn.STATUS_PENDING_PAYMENT:
        services.complete_purchase(instance, txn, gateway_ref, {"event": "payment_intent.succeeded"})
        logger.info(f"Activated add-on instance {instance.pk} from webhook")
        return

    with transaction.atomic():
        txn.mark_completed(gateway_ref)
        if instance is not None and txn.type == AddOnTransaction.TYPE_RENEWAL:
            instance.add_billing_record(
                transaction_id=txn.transaction_id,
                amount=txn.total,
                currency=txn.currency,
                period_start=txn.billing_period_start,
                period_end=txn.billing_period_end,
                payment_method=txn.payment_method,
                payment_status=BillingRecord.PAYMENT_COMPLETED,
                gateway_reference=gateway_ref,
                gateway_response={"event": "payment_intent.succeeded"},
                processed_by_model=TenantAddOn.ACTOR_SYSTEM,
            )
            instance.reset_retry_state()
            instance.save(
                update_fields=["failed_attempts", "last_failed_at", "next_retry_at", "updated_at"]
            )

    logger.info(f"Completed transaction {txn.transaction_id} from webhook")


def handle_payment_intent_failed(intent_data: Dict[str, Any]):
    """
    Handle payment_intent.payment_failed.

    Fails a pending transaction and cancels a purchase still awaiting payment.
    """
    txn = _get_transaction(intent_data)
    if txn is None or not txn.is_pending():
        return

    error = intent_data.get("last_payment_error") or {}
    txn.mark_failed(error.get("message") or "Payment failed")

    instance = txn.tenant_addon
    if instance is not None and instance.status == TenantAddOn.STATUS_PENDING_PAYMENT:
        services.cancel_addon(
            instance,
            "Initial payment failed",
            cancelled_by=TenantAddOn.ACTOR_SYSTEM,
        )

    logger.info(f"Marked transaction {txn.transaction_id} failed from webhook")


def handle_invoice_payment_succeeded(invoice_data: Dict[str, Any]):
    """
    Handle invoice.payment_succeeded for Stripe-managed recurring add-ons.
    """
    instance = _get_instance_for_subscription(invoice_data.get("subscription"))
    if instance is None:
        return

    gateway_ref = invoice_data.get("payment_intent") or invoice_data["id"]
    if instance.billing_history.filter(gateway_reference=gateway_ref).exists():
        logger.info(f"Invoice {invoice_data['id']} already recorded, ignoring event")
        return

    with transaction.atomic():
        instance.add_billing_record(
            transaction_id=invoice_data["id"],
            amount=Decimal(invoice_data.get("amount_paid", 0)) / 100,
            currency=(invoice_data.get("currency") or instance.snapshot_currency).upper(),
            period_start=from_timestamp(invoice_data.get("period_start")),
            period_end=from_timestamp(invoice_data.get("period_end")),
            payment_method="stripe",
            payment_status=BillingRecord.PAYMENT_COMPLETED,
            gateway_reference=gateway_ref,
            stripe_subscription_id=instance.stripe_subscription_id,
            gateway_response={"event": "invoice.payment_succeeded", "invoice": invoice_data["id"]},
            processed_by_model=TenantAddOn.ACTOR_SYSTEM,
        )
        instance.reset_retry_state()
        instance.save(update_fields=["failed_attempts", "last_failed_at", "next_retry_at", "updated_at"])

    logger.info(f"Recorded invoice payment {invoice_data['id']} for add-on instance {instance.pk}")


def handle_invoice_payment_failed(invoice_data: Dict[str, Any]):
    """
    Handle invoice.payment_failed by applying the billing failure policy.
    """
    instance = _get_instance_for_subscription(invoice_data.get("subscription"))
    if instance is None or instance.is_terminal():
        return

    error = GatewayFailure(f"Invoice {invoice_data['id']} payment failed")
    BillingProcessor().handle_billing_failure(instance, error)


def handle_subscription_updated(subscription_data: Dict[str, Any]):
    """
    Handle customer.subscription.updated.

    The next billing date follows the subscription's current period end.
    A cancelled or unpaid subscription cancels the add-on, past_due suspends
    an active one and a return to active reactivates a suspended one. A
    pending cancellation at period end records the effective date.
    """
    instance = _get_instance_for_subscription(subscription_data["id"])
    if instance is None or instance.is_terminal():
        return

    status = subscription_data["status"]
    if status in CANCELLED_SUBSCRIPTION_STATUSES:
        services.cancel_addon(
            instance,
            f"Subscription {status} in payment gateway",
            cancelled_by=TenantAddOn.ACTOR_SYSTEM,
            cancel_gateway_subscription=False,
        )
        return

    period_end = from_timestamp(subscription_data.get("current_period_end"))
    if period_end and instance.next_billing_date != period_end:
        instance.next_billing_date = period_end
        instance.save(update_fields=["next_billing_date", "updated_at"])

    if status == "past_due" and instance.is_active():
        services.suspend_addon(
            instance, "Subscription past due in payment gateway", actor=TenantAddOn.ACTOR_SYSTEM
        )
    elif status == "active" and instance.is_suspended():
        services.reactivate_addon(instance, actor=TenantAddOn.ACTOR_SYSTEM)

    if subscription_data.get("cancel_at_period_end"):
        instance.cancellation_effective_date = period_end or timezone.now()
        instance.save(update_fields=["cancellation_effective_date", "updated_at"])
        logger.info(
            f"Add-on instance {instance.pk} will be cancelled at "
            f"{instance.cancellation_effective_date.isoformat()}"
        )


def handle_subscription_deleted(subscription_data: Dict[str, Any]):
    """
    Handle customer.subscription.deleted.
    """
    instance = _get_instance_for_subscription(subscription_data["id"])
    if instance is None or instance.is_terminal():
        return

    services.cancel_addon(
        instance,
        "Subscription deleted in payment gateway",
        cancelled_by=TenantAddOn.ACTOR_SYSTEM,
        cancel_gateway_subscription=False,
    )
