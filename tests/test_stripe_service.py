"""
Unit tests for the Stripe gateway used by add-on billing.

Stripe API calls are mocked; no requests leave the test process.
"""

from datetime import datetime
from datetime import timezone as dt_timezone
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest
import stripe

from apps.addons.exceptions import GatewayFailure
from apps.addons.stripe_service import AddOnStripeService, from_timestamp, to_minor_units


class TestHelpers:
    def test_to_minor_units(self):
        assert to_minor_units(Decimal("590.00")) == 59000
        assert to_minor_units(Decimal("12.34")) == 1234
        assert to_minor_units(100) == 10000

    def test_from_timestamp(self):
        assert from_timestamp(None) is None
        assert from_timestamp(1768478400) == datetime(2026, 1, 15, 12, 0, tzinfo=dt_timezone.utc)


class TestCharge:
    """Test off-session charges through PaymentIntents."""

    @patch("stripe.PaymentIntent.create")
    def test_charge(self, mock_create):
        """Test charging a customer with metadata and an idempotency key."""
        mock_intent = Mock()
        mock_intent.id = "pi_test123"
        mock_intent.status = "succeeded"
        mock_create.return_value = mock_intent

        result = AddOnStripeService.charge(
            amount=Decimal("590.00"),
            currency="INR",
            customer_ref="cus_test123",
            payment_method="pm_test123",
            metadata={"transaction_id": "txn_1", "tenant_id": 42},
            idempotency_key="txn_1",
        )

        assert result == {"gateway_ref": "pi_test123", "status": "succeeded"}
        call_kwargs = mock_create.call_args[1]
        assert call_kwargs["amount"] == 59000
        assert call_kwargs["currency"] == "inr"
        assert call_kwargs["customer"] == "cus_test123"
        assert call_kwargs["off_session"] is True
        assert call_kwargs["confirm"] is True
        assert call_kwargs["payment_method"] == "pm_test123"
        assert call_kwargs["metadata"] == {"transaction_id": "txn_1", "tenant_id": "42"}
        assert call_kwargs["idempotency_key"] == "txn_1"

    @patch("stripe.PaymentIntent.create")
    def test_charge_without_customer_is_on_session(self, mock_create):
        mock_create.return_value = Mock(id="pi_test123", status="requires_action")

        AddOnStripeService.charge(amount=Decimal("10"), currency="USD")

        call_kwargs = mock_create.call_args[1]
        assert "customer" not in call_kwargs
        assert "off_session" not in call_kwargs

    @patch("stripe.PaymentIntent.create")
    def test_card_decline_raises_gateway_failure(self, mock_create):
        """Test that Stripe errors surface as GatewayFailure with the decline code."""
        mock_create.side_effect = stripe.error.CardError(
            "Your card was declined.", None, "card_declined"
        )

        with pytest.raises(GatewayFailure) as exc_info:
            AddOnStripeService.charge(
                amount=Decimal("590.00"), currency="INR", customer_ref="cus_test123"
            )

        assert exc_info.value.code == "card_declined"
        assert "declined" in str(exc_info.value)

    @patch("stripe.PaymentIntent.create")
    def test_network_error_raises_gateway_failure(self, mock_create):
        mock_create.side_effect = stripe.error.APIConnectionError("Request timed out")

        with pytest.raises(GatewayFailure):
            AddOnStripeService.charge(amount=Decimal("590.00"), currency="INR")


class TestRecurring:
    """Test Stripe-managed recurring subscriptions."""

    @patch("stripe.Subscription.create")
    def test_create_recurring(self, mock_create):
        mock_subscription = Mock()
        mock_subscription.id = "sub_test123"
        mock_subscription.status = "trialing"
        mock_subscription.current_period_start = 1768478400
        mock_subscription.current_period_end = 1771156800
        mock_create.return_value = mock_subscription

        result = AddOnStripeService.create_recurring(
            "cus_test123", "price_test123", quantity=2, trial_days=14, metadata={"tenant_addon_id": "a1"}
        )

        assert result["subscription_ref"] == "sub_test123"
        assert result["status"] == "trialing"
        assert result["period_start"] == datetime(2026, 1, 15, 12, 0, tzinfo=dt_timezone.utc)
        call_kwargs = mock_create.call_args[1]
        assert call_kwargs["items"] == [{"price": "price_test123", "quantity": 2}]
        assert call_kwargs["trial_period_days"] == 14

    @patch("stripe.Subscription.cancel")
    def test_cancel_immediately(self, mock_cancel):
        mock_cancel.return_value = Mock(id="sub_test123", status="canceled")

        result = AddOnStripeService.cancel_recurring("sub_test123")

        assert result == {"subscription_ref": "sub_test123", "status": "canceled"}
        mock_cancel.assert_called_once_with("sub_test123")

    @patch("stripe.Subscription.modify")
    def test_cancel_at_period_end(self, mock_modify):
        mock_modify.return_value = Mock(id="sub_test123", status="active")

        AddOnStripeService.cancel_recurring("sub_test123", immediately=False)

        mock_modify.assert_called_once_with("sub_test123", cancel_at_period_end=True)

    @patch("stripe.Subscription.cancel")
    def test_cancel_error(self, mock_cancel):
        mock_cancel.side_effect = stripe.error.InvalidRequestError(
            "No such subscription: 'sub_missing'", "id"
        )

        with pytest.raises(GatewayFailure):
            AddOnStripeService.cancel_recurring("sub_missing")


class TestRefund:
    @patch("stripe.Refund.create")
    def test_partial_refund(self, mock_create):
        mock_create.return_value = Mock(id="re_test123", status="succeeded")

        result = AddOnStripeService.refund("pi_test123", amount=Decimal("100.00"), reason="Downgrade")

        assert result == {"refund_ref": "re_test123", "status": "succeeded"}
        call_kwargs = mock_create.call_args[1]
        assert call_kwargs["payment_intent"] == "pi_test123"
        assert call_kwargs["amount"] == 10000
        assert call_kwargs["metadata"] == {"reason": "Downgrade"}

    @patch("stripe.Refund.create")
    def test_full_refund_omits_amount(self, mock_create):
        mock_create.return_value = Mock(id="re_test123", status="pending")

        AddOnStripeService.refund("pi_test123")

        assert "amount" not in mock_create.call_args[1]
