"""
Stripe payment gateway integration for add-on billing.

All Stripe calls go through AddOnStripeService. Stripe errors (declines,
network failures, timeouts) are logged and re-raised as GatewayFailure so the
billing engine only ever deals with its own error type.
"""

import logging
from datetime import datetime
from datetime import timezone as dt_timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from django.conf import settings

import stripe

from apps.addons.exceptions import GatewayFailure

logger = logging.getLogger(__name__)

# Initialize Stripe with API key
stripe.api_key = getattr(settings, "STRIPE_SECRET_KEY", "")


def to_minor_units(amount: Decimal) -> int:
    """Convert an amount to the smallest currency unit (e.g. paise, cents)."""
    return int((Decimal(str(amount)) * 100).to_integral_value())


def from_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=dt_timezone.utc)


def _failure(action: str, error: "stripe.error.StripeError") -> GatewayFailure:
    logger.error(f"Stripe {action} failed: {str(error)}")
    return GatewayFailure(str(error), code=getattr(error, "code", None))


class AddOnStripeService:
    """
    Service class for Stripe operations used by add-on billing.

    Handles one-off charges, Stripe-managed recurring subscriptions and
    refunds.
    """

    @staticmethod
    def charge(
        amount: Decimal,
        currency: str,
        customer_ref: Optional[str] = None,
        payment_method: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Charge a tenant off-session through a PaymentIntent.

        Args:
            amount: Amount to charge
            currency: ISO currency code
            customer_ref: Stripe customer ID
            payment_method: Stripe payment method ID (customer default if omitted)
            metadata: Metadata to attach (transaction_id is used by webhooks)
            idempotency_key: Key that makes retried requests safe

        Returns:
            Dictionary with gateway_ref and status

        Raises:
            GatewayFailure: If Stripe declines or the request fails
        """
        try:
            intent_params = {
                "amount": to_minor_units(amount),
                "currency": currency.lower(),
                "metadata": {key: str(value) for key, value in (metadata or {}).items()},
                "confirm": True,
            }

            if customer_ref:
                intent_params["customer"] = customer_ref
                intent_params["off_session"] = True

            if payment_method:
                intent_params["payment_method"] = payment_method

            payment_intent = stripe.PaymentIntent.create(
                **intent_params, idempotency_key=idempotency_key
            )

            logger.info(
                f"Created PaymentIntent {payment_intent.id} for {amount} {currency} "
                f"(status: {payment_intent.status})"
            )

            return {"gateway_ref": payment_intent.id, "status": payment_intent.status}

        except stripe.error.StripeError as e:
            raise _failure("charge", e) from e

    @staticmethod
    def create_recurring(
        customer_ref: str,
        price_ref: str,
        quantity: int = 1,
        trial_days: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a Stripe subscription for a recurring add-on.

        Returns:
            Dictionary with subscription_ref, status and current period bounds
        """
        try:
            subscription_params = {
                "customer": customer_ref,
                "items": [{"price": price_ref, "quantity": quantity}],
                "metadata": {key: str(value) for key, value in (metadata or {}).items()},
            }

            if trial_days:
                subscription_params["trial_period_days"] = trial_days

            subscription = stripe.Subscription.create(**subscription_params)

            logger.info(f"Created Stripe subscription {subscription.id} for {customer_ref}")

            return {
                "subscription_ref": subscription.id,
                "status": subscription.status,
                "period_start": from_timestamp(getattr(subscription, "current_period_start", None)),
                "period_end": from_timestamp(getattr(subscription, "current_period_end", None)),
            }

        except stripe.error.StripeError as e:
            raise _failure("subscription creation", e) from e

    @staticmethod
    def cancel_recurring(subscription_ref: str, immediately: bool = True) -> Dict[str, Any]:
        """
        Cancel a Stripe subscription, immediately or at period end.
        """
        try:
            if immediately:
                subscription = stripe.Subscription.cancel(subscription_ref)
            else:
                subscription = stripe.Subscription.modify(
                    subscription_ref, cancel_at_period_end=True
                )

            logger.info(f"Cancelled Stripe subscription {subscription.id}")

            return {"subscription_ref": subscription.id, "status": subscription.status}

        except stripe.error.StripeError as e:
            raise _failure("subscription cancellation", e) from e

    @staticmethod
    def refund(gateway_ref: str, amount: Optional[Decimal] = None, reason: str = "") -> Dict[str, Any]:
        """
        Refund a PaymentIntent, fully or partially.

        Returns:
            Dictionary with refund_ref and status
        """
        try:
            refund_params = {
                "payment_intent": gateway_ref,
                "reason": "requested_by_customer",
                "metadata": {"reason": reason},
            }

            if amount is not None:
                refund_params["amount"] = to_minor_units(amount)

            refund = stripe.Refund.create(**refund_params)

            logger.info(f"Created refund {refund.id} for {gateway_ref}")

            return {"refund_ref": refund.id, "status": refund.status}

        except stripe.error.StripeError as e:
            raise _failure("refund", e) from e
