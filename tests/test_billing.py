"""
Tests for the recurring billing processor and its retry policy.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from apps.addons.billing import BillingProcessor, calculate_tax, next_retry_delay
from apps.addons.exceptions import AddOnNotFound, GatewayFailure, InvalidTransition
from apps.addons.models import BillingRecord, TenantAddOn
from apps.addons.transaction_models import AddOnTransaction
from apps.notifications.models import Notification

from .conftest import NOW


@pytest.fixture
def due_instance(branches_addon, make_instance):
    """Active monthly instance (500/month) due for billing now."""
    return make_instance(branches_addon, next_billing_date=NOW)


class TestBillingPolicy:
    """Test retry backoff and tax rounding."""

    @pytest.mark.parametrize("attempt,days", [(1, 2), (2, 4), (3, 8)])
    def test_retry_delay_doubles(self, attempt, days):
        assert next_retry_delay(attempt) == timedelta(days=days)

    def test_retry_delay_rejects_attempt_zero(self):
        with pytest.raises(ValueError):
            next_retry_delay(0)

    def test_tax_rounds_to_whole_units(self):
        assert calculate_tax(Decimal("500.00")) == Decimal("90")
        assert calculate_tax(Decimal("102.50")) == Decimal("18")


@pytest.mark.django_db
class TestProcessBilling:
    """Test a single billing attempt."""

    def test_successful_renewal(self, tenant, due_instance, gateway):
        txn = BillingProcessor(gateway).process_billing(due_instance, now=NOW)

        assert txn.status == AddOnTransaction.STATUS_COMPLETED
        assert txn.type == AddOnTransaction.TYPE_RENEWAL
        assert txn.subtotal == Decimal("500.00")
        assert txn.tax == Decimal("90")
        assert txn.total == Decimal("590.00")
        assert txn.gateway_transaction_id == "pi_test123"
        assert txn.invoice_number
        assert [item["type"] for item in txn.line_items] == ["addon", "tax"]

        stored = TenantAddOn.objects.get(pk=due_instance.pk)
        assert stored.next_billing_date == NOW + relativedelta(months=1)
        assert stored.total_spent == Decimal("590.00")

        record = stored.billing_history.get()
        assert record.payment_status == BillingRecord.PAYMENT_COMPLETED
        assert record.amount == Decimal("590.00")
        assert record.period_start == NOW
        assert record.period_end == NOW + relativedelta(months=1)

        assert Notification.objects.filter(
            tenant=tenant, event_type=Notification.BILLING_SUCCESS
        ).exists()

    def test_charge_carries_transaction_id(self, tenant, due_instance, gateway):
        txn = BillingProcessor(gateway).process_billing(due_instance, now=NOW)

        kwargs = gateway.charge.call_args.kwargs
        assert kwargs["idempotency_key"] == txn.transaction_id
        assert kwargs["metadata"]["transaction_id"] == txn.transaction_id
        assert kwargs["metadata"]["tenant_addon_id"] == str(due_instance.pk)
        assert kwargs["customer_ref"] == tenant.stripe_customer_id

    def test_price_snapshot_survives_catalog_change(self, branches_addon, due_instance, gateway):
        branches_addon.monthly_price = Decimal("900.00")
        branches_addon.save()

        txn = BillingProcessor(gateway).process_billing(due_instance, now=NOW)
        assert txn.subtotal == Decimal("500.00")

    def test_custom_pricing_and_quantity(self, branches_addon, make_instance, gateway):
        instance = make_instance(
            branches_addon, quantity=2, custom_pricing={"monthly": 400}, next_billing_date=NOW
        )
        txn = BillingProcessor(gateway).process_billing(instance, now=NOW)
        assert txn.subtotal == Decimal("800.00")

    def test_active_discount_is_applied(self, due_instance, gateway):
        due_instance.discount_type = TenantAddOn.DISCOUNT_PERCENTAGE
        due_instance.discount_value = Decimal("10")
        due_instance.discount_reason = "Loyalty"
        due_instance.discount_valid_until = NOW + timedelta(days=30)

        txn = BillingProcessor(gateway).process_billing(due_instance, now=NOW)

        assert txn.discount == Decimal("50.00")
        assert txn.tax == Decimal("81")
        assert txn.total == Decimal("531.00")
        assert "discount" in [item["type"] for item in txn.line_items]

    def test_expired_discount_is_ignored(self, due_instance, gateway):
        due_instance.discount_type = TenantAddOn.DISCOUNT_FIXED
        due_instance.discount_value = Decimal("100")
        due_instance.discount_valid_until = NOW - timedelta(days=1)

        txn = BillingProcessor(gateway).process_billing(due_instance, now=NOW)
        assert txn.discount == Decimal("0")

    def test_zero_amount_is_skipped(self, branches_addon, make_instance, gateway):
        instance = make_instance(branches_addon, custom_pricing={"monthly": 0}, next_billing_date=NOW)

        assert BillingProcessor(gateway).process_billing(instance, now=NOW) is None
        gateway.charge.assert_not_called()
        assert not AddOnTransaction.objects.exists()

    def test_declined_charge_marks_transaction_failed(self, due_instance, gateway):
        gateway.charge.side_effect = GatewayFailure("Your card was declined", code="card_declined")

        with pytest.raises(GatewayFailure):
            BillingProcessor(gateway).process_billing(due_instance, now=NOW)

        txn = AddOnTransaction.objects.get()
        assert txn.status == AddOnTransaction.STATUS_FAILED
        assert txn.failure_reason == "Your card was declined"
        assert not due_instance.billing_history.exists()
        assert TenantAddOn.objects.get(pk=due_instance.pk).next_billing_date == NOW

    def test_unconfirmed_charge_is_a_failure(self, due_instance, gateway):
        gateway.charge.return_value = {"status": "requires_action", "gateway_ref": "pi_x"}

        with pytest.raises(GatewayFailure):
            BillingProcessor(gateway).process_billing(due_instance, now=NOW)

        assert AddOnTransaction.objects.get().status == AddOnTransaction.STATUS_FAILED

    def test_success_clears_retry_state(self, branches_addon, make_instance, gateway):
        instance = make_instance(
            branches_addon,
            next_billing_date=NOW,
            failed_attempts=1,
            last_failed_at=NOW - timedelta(days=2),
            next_retry_at=NOW,
        )
        BillingProcessor(gateway).process_billing(instance, now=NOW)

        stored = TenantAddOn.objects.get(pk=instance.pk)
        assert stored.failed_attempts == 0
        assert stored.last_failed_at is None
        assert stored.next_retry_at is None


@pytest.mark.django_db
class TestBillingFailurePolicy:
    """Test retry scheduling and suspension after repeated failures."""

    def test_three_failures_suspend(self, tenant, subscription, due_instance, gateway):
        gateway.charge.side_effect = GatewayFailure("Your card was declined")
        processor = BillingProcessor(gateway)

        first = processor.bill(due_instance, now=NOW)
        assert first["outcome"] == "failed"
        assert due_instance.failed_attempts == 1
        assert due_instance.next_retry_at == NOW + timedelta(days=2)

        second_at = due_instance.next_retry_at
        processor.bill(due_instance, now=second_at)
        assert due_instance.failed_attempts == 2
        assert due_instance.next_retry_at == second_at + timedelta(days=4)

        third_at = due_instance.next_retry_at
        third = processor.bill(due_instance, now=third_at)
        assert third["status"] == TenantAddOn.STATUS_SUSPENDED

        stored = TenantAddOn.objects.get(pk=due_instance.pk)
        assert stored.status == TenantAddOn.STATUS_SUSPENDED
        assert stored.failed_attempts == 3
        assert stored.next_retry_at is None
        assert "Payment failed after 3 attempts" in stored.suspension_reason

        events = Notification.objects.filter(tenant=tenant)
        assert events.filter(event_type=Notification.PAYMENT_FAILED).count() == 2
        assert events.filter(event_type=Notification.ADDON_SUSPENDED).count() == 1
        assert AddOnTransaction.objects.filter(status=AddOnTransaction.STATUS_FAILED).count() == 3

    def test_failure_on_non_active_instance_does_not_suspend(self, branches_addon, make_instance):
        instance = make_instance(
            branches_addon, status=TenantAddOn.STATUS_TRIAL, failed_attempts=2
        )
        BillingProcessor().handle_billing_failure(instance, GatewayFailure("declined"), now=NOW)

        stored = TenantAddOn.objects.get(pk=instance.pk)
        assert stored.failed_attempts == 3
        assert stored.status == TenantAddOn.STATUS_TRIAL


@pytest.mark.django_db
class TestTriggerBilling:
    """Test on-demand billing."""

    def test_trigger_billing(self, due_instance, gateway):
        outcome = BillingProcessor(gateway).trigger_billing(due_instance.pk, now=NOW)

        assert outcome["outcome"] == "billed"
        assert AddOnTransaction.objects.get().source == AddOnTransaction.SOURCE_ADMIN

    def test_unknown_instance(self, gateway):
        with pytest.raises(AddOnNotFound):
            BillingProcessor(gateway).trigger_billing(uuid.uuid4(), now=NOW)

    def test_suspended_instance_is_rejected(self, branches_addon, make_instance, gateway):
        instance = make_instance(branches_addon, status=TenantAddOn.STATUS_SUSPENDED)

        with pytest.raises(InvalidTransition):
            BillingProcessor(gateway).trigger_billing(instance.pk, now=NOW)
        gateway.charge.assert_not_called()


@pytest.mark.django_db
class TestBillingStats:
    """Test billing statistics."""

    def test_stats_after_renewal_and_failure(self, branches_addon, api_addon, make_instance, gateway):
        processor = BillingProcessor(gateway)
        processor.process_billing(make_instance(branches_addon, next_billing_date=NOW), now=NOW)

        gateway.charge.side_effect = GatewayFailure("declined")
        with pytest.raises(GatewayFailure):
            processor.process_billing(make_instance(api_addon, next_billing_date=NOW), now=NOW)

        stats = processor.get_billing_stats("day")

        assert stats["total_revenue"] == Decimal("590.00")
        assert stats["completed_count"] == 1
        assert stats["failed_count"] == 1
        assert stats["by_type"]["renewal"]["count"] == 1
        assert stats["suspended_instances"] == 0

    def test_unknown_period(self):
        with pytest.raises(ValueError):
            BillingProcessor().get_billing_stats("decade")
