"""
Tests for the billing scheduler duties.
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from apps.addons.billing import BillingProcessor
from apps.addons.exceptions import GatewayFailure
from apps.addons.models import TenantAddOn
from apps.addons.scheduler import BillingScheduler
from apps.addons.transaction_models import AddOnTransaction
from apps.notifications.models import Notification

from .conftest import NOW


@pytest.fixture
def scheduler(gateway):
    return BillingScheduler(BillingProcessor(gateway))


def _decline_for(*instances):
    """Gateway charge side effect declining the given instances only."""
    declined = {str(instance.pk) for instance in instances}

    def charge(**kwargs):
        if kwargs["metadata"]["tenant_addon_id"] in declined:
            raise GatewayFailure("Your card was declined", code="card_declined")
        return {"status": "succeeded", "gateway_ref": "pi_ok"}

    return charge


@pytest.mark.django_db
class TestProcessDueBilling:
    """Test the renewal sweep."""

    def test_bills_due_instances_only(self, scheduler, branches_addon, api_addon, make_instance):
        due = make_instance(branches_addon, next_billing_date=NOW - timedelta(hours=1))
        make_instance(api_addon, next_billing_date=NOW + timedelta(days=3))

        stats = scheduler.process_due_billing(NOW)

        assert stats["processed"] == 1
        assert stats["successful"] == 1
        assert stats["skipped"] is False
        assert AddOnTransaction.objects.get().tenant_addon_id == due.pk

    def test_failed_instance_does_not_abort_sweep(
        self, scheduler, gateway, branches_addon, api_addon, make_instance
    ):
        bad = make_instance(branches_addon, next_billing_date=NOW)
        good = make_instance(api_addon, next_billing_date=NOW)
        gateway.charge.side_effect = _decline_for(bad)

        stats = scheduler.process_due_billing(NOW)

        assert stats["processed"] == 2
        assert stats["successful"] == 1
        assert stats["failed"] == 1
        assert stats["errors"][0]["tenant_addon_id"] == str(bad.pk)

        stored = TenantAddOn.objects.get(pk=bad.pk)
        assert stored.failed_attempts == 1
        assert stored.next_retry_at == NOW + timedelta(days=2)
        assert good.billing_history.count() == 1

    def test_unexpected_error_is_isolated(self, branches_addon, api_addon, make_instance):
        bad = make_instance(branches_addon, next_billing_date=NOW)
        make_instance(api_addon, next_billing_date=NOW)

        def process_billing(instance, now=None):
            if instance.pk == bad.pk:
                raise RuntimeError("database hiccup")

        processor = Mock()
        processor.process_billing.side_effect = process_billing
        stats = BillingScheduler(processor).process_due_billing(NOW)

        assert stats["successful"] == 1
        assert stats["failed"] == 1
        processor.handle_billing_failure.assert_not_called()

    def test_instances_in_retry_are_left_to_retry_duty(self, scheduler, branches_addon, make_instance):
        make_instance(branches_addon, next_billing_date=NOW, failed_attempts=1, next_retry_at=NOW)

        assert scheduler.process_due_billing(NOW)["processed"] == 0

    def test_stripe_managed_instances_are_not_charged_locally(
        self, scheduler, gateway, branches_addon, make_instance
    ):
        """Stripe invoices own subscription-backed instances."""
        make_instance(branches_addon, next_billing_date=NOW, stripe_subscription_id="sub_test123")

        stats = scheduler.process_due_billing(NOW)

        assert stats["processed"] == 0
        gateway.charge.assert_not_called()
        assert AddOnTransaction.objects.count() == 0

    def test_concurrent_sweep_is_skipped(self, scheduler, gateway, branches_addon, make_instance):
        make_instance(branches_addon, next_billing_date=NOW)

        scheduler._renewal_lock.acquire()
        try:
            assert scheduler.is_running
            stats = scheduler.process_due_billing(NOW)
        finally:
            scheduler._renewal_lock.release()

        assert stats["skipped"] is True
        assert stats["processed"] == 0
        gateway.charge.assert_not_called()
        assert not scheduler.is_running


@pytest.mark.django_db
class TestRetryFailedPayments:
    """Test the retry duty."""

    def test_retries_when_backoff_elapsed(self, scheduler, branches_addon, api_addon, make_instance):
        ready = make_instance(
            branches_addon, next_billing_date=NOW, failed_attempts=1, next_retry_at=NOW - timedelta(minutes=5)
        )
        make_instance(
            api_addon, next_billing_date=NOW, failed_attempts=1, next_retry_at=NOW + timedelta(days=1)
        )

        stats = scheduler.retry_failed_payments(NOW)

        assert stats["processed"] == 1
        assert stats["successful"] == 1
        stored = TenantAddOn.objects.get(pk=ready.pk)
        assert stored.failed_attempts == 0
        assert stored.next_retry_at is None

    def test_final_retry_failure_suspends(self, scheduler, gateway, branches_addon, make_instance):
        instance = make_instance(
            branches_addon, next_billing_date=NOW, failed_attempts=2, next_retry_at=NOW
        )
        gateway.charge.side_effect = GatewayFailure("declined")

        scheduler.retry_failed_payments(NOW)

        assert TenantAddOn.objects.get(pk=instance.pk).status == TenantAddOn.STATUS_SUSPENDED

    def test_stripe_managed_instances_are_not_retried_locally(
        self, scheduler, gateway, branches_addon, make_instance
    ):
        make_instance(
            branches_addon,
            next_billing_date=NOW,
            failed_attempts=1,
            next_retry_at=NOW,
            stripe_subscription_id="sub_test123",
        )

        assert scheduler.retry_failed_payments(NOW)["processed"] == 0
        gateway.charge.assert_not_called()


@pytest.mark.django_db
class TestCheckExpiringTrials:
    """Test trial notices, conversion and expiry."""

    def test_trial_ending_soon_is_notified(self, tenant, scheduler, api_addon, make_instance):
        make_instance(
            api_addon, status=TenantAddOn.STATUS_TRIAL, trial_ends_at=NOW + timedelta(days=1, hours=2)
        )

        stats = scheduler.check_expiring_trials(NOW)

        assert stats["notified"] == 1
        notification = Notification.objects.get(tenant=tenant, event_type=Notification.TRIAL_ENDING)
        assert notification.payload["days_left"] == 2

    def test_ended_trial_with_auto_renew_converts(self, scheduler, gateway, api_addon, make_instance):
        ended = NOW - timedelta(hours=1)
        instance = make_instance(
            api_addon,
            status=TenantAddOn.STATUS_TRIAL,
            trial_ends_at=ended,
            next_billing_date=ended,
        )

        stats = scheduler.check_expiring_trials(NOW)

        assert stats["converted"] == 1
        stored = TenantAddOn.objects.get(pk=instance.pk)
        assert stored.status == TenantAddOn.STATUS_ACTIVE
        assert stored.activated_at == NOW
        assert AddOnTransaction.objects.get().status == AddOnTransaction.STATUS_COMPLETED

    def test_ended_trial_with_failed_charge_is_cancelled(
        self, tenant, scheduler, gateway, api_addon, make_instance
    ):
        instance = make_instance(
            api_addon, status=TenantAddOn.STATUS_TRIAL, trial_ends_at=NOW - timedelta(hours=1)
        )
        gateway.charge.side_effect = GatewayFailure("declined")

        stats = scheduler.check_expiring_trials(NOW)

        assert stats["cancelled"] == 1
        stored = TenantAddOn.objects.get(pk=instance.pk)
        assert stored.status == TenantAddOn.STATUS_CANCELLED
        assert stored.cancellation_reason == "Trial expired and payment failed"
        assert Notification.objects.filter(
            tenant=tenant, event_type=Notification.TRIAL_EXPIRED
        ).exists()

    def test_ended_trial_without_auto_renew_is_cancelled(self, scheduler, gateway, api_addon, make_instance):
        instance = make_instance(
            api_addon,
            status=TenantAddOn.STATUS_TRIAL,
            trial_ends_at=NOW - timedelta(hours=1),
            auto_renew=False,
        )

        stats = scheduler.check_expiring_trials(NOW)

        assert stats["cancelled"] == 1
        assert TenantAddOn.objects.get(pk=instance.pk).cancellation_reason == "Trial expired"
        gateway.charge.assert_not_called()


@pytest.mark.django_db
class TestHousekeeping:
    """Test low balance sweeps, expiry and archival."""

    def test_low_balance_sweep_alerts_once(self, tenant, scheduler, sms_addon, make_instance):
        make_instance(sms_addon, remaining_credits=5, low_balance_threshold=10)

        assert scheduler.check_low_balance(NOW)["alerted"] == 1
        assert scheduler.check_low_balance(NOW)["alerted"] == 0
        assert Notification.objects.filter(
            tenant=tenant, event_type=Notification.LOW_BALANCE
        ).count() == 1

    def test_elapsed_usage_addon_expires(self, scheduler, sms_addon, branches_addon, make_instance):
        elapsed = make_instance(sms_addon, remaining_credits=5, expires_at=NOW - timedelta(hours=1))
        recurring = make_instance(branches_addon, expires_at=NOW - timedelta(hours=1))

        stats = scheduler.expire_elapsed_addons(NOW)

        assert stats["expired"] == 1
        assert TenantAddOn.objects.get(pk=elapsed.pk).status == TenantAddOn.STATUS_EXPIRED
        assert TenantAddOn.objects.get(pk=recurring.pk).status == TenantAddOn.STATUS_ACTIVE

    def test_cleanup_archives_after_retention(
        self, scheduler, branches_addon, api_addon, sms_addon, make_instance
    ):
        old = make_instance(
            branches_addon, status=TenantAddOn.STATUS_CANCELLED, cancelled_at=NOW - timedelta(days=91)
        )
        recent = make_instance(
            api_addon, status=TenantAddOn.STATUS_CANCELLED, cancelled_at=NOW - timedelta(days=10)
        )
        expired = make_instance(
            sms_addon, status=TenantAddOn.STATUS_EXPIRED, expires_at=NOW - timedelta(days=100)
        )

        stats = scheduler.cleanup_expired_addons(NOW)

        assert stats["archived"] == 2
        assert TenantAddOn.objects.get(pk=old.pk).is_deleted
        assert TenantAddOn.objects.get(pk=expired.pk).is_deleted
        assert not TenantAddOn.objects.get(pk=recent.pk).is_deleted

    def test_run_all_runs_every_duty(self, scheduler):
        results = scheduler.run_all(NOW)
        assert set(results) == {"billing", "trials", "low_balance", "retries", "expired", "cleanup"}
