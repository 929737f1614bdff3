"""
Tests for the add-on billing Celery tasks and management command.
"""

import uuid
from io import StringIO
from unittest.mock import Mock, patch

from django.core.management import call_command
from django.core.management.base import CommandError

import pytest

from apps.addons import tasks


class TestPeriodicTasks:
    """Each periodic task runs exactly one scheduler duty."""

    @pytest.mark.parametrize(
        "task,duty",
        [
            (tasks.process_due_billing, "process_due_billing"),
            (tasks.check_expiring_trials, "check_expiring_trials"),
            (tasks.check_low_balance_alerts, "check_low_balance"),
            (tasks.retry_failed_payments, "retry_failed_payments"),
            (tasks.cleanup_expired_addons, "cleanup_expired_addons"),
            (tasks.expire_elapsed_addons, "expire_elapsed_addons"),
        ],
    )
    @patch("apps.addons.tasks.billing_scheduler")
    def test_task_runs_duty(self, mock_scheduler, task, duty):
        getattr(mock_scheduler, duty).return_value = {"processed": 0}

        assert task() == {"processed": 0}
        getattr(mock_scheduler, duty).assert_called_once_with()


@pytest.mark.django_db
class TestProcessAddonBilling:
    def test_unknown_instance_is_rejected(self):
        result = tasks.process_addon_billing(str(uuid.uuid4()))
        assert result["outcome"] == "rejected"

    @patch("apps.addons.tasks.BillingProcessor")
    def test_bills_instance(self, mock_processor_class):
        mock_processor_class.return_value.trigger_billing.return_value = {"outcome": "billed"}

        assert tasks.process_addon_billing("abc") == {"outcome": "billed"}
        mock_processor_class.return_value.trigger_billing.assert_called_once_with("abc")


@pytest.mark.django_db
class TestRunAddonBillingCommand:
    """Test the run_addon_billing management command."""

    @patch("apps.addons.management.commands.run_addon_billing.BillingScheduler")
    def test_runs_selected_duty(self, mock_scheduler_class):
        scheduler = Mock()
        scheduler.retry_failed_payments.return_value = {"processed": 2}
        mock_scheduler_class.return_value = scheduler
        out = StringIO()

        call_command("run_addon_billing", "--duty", "retries", stdout=out)

        scheduler.retry_failed_payments.assert_called_once_with()
        assert "Finished 'retries'" in out.getvalue()

    def test_unknown_instance_raises_command_error(self):
        with pytest.raises(CommandError):
            call_command("run_addon_billing", "--instance", str(uuid.uuid4()), stdout=StringIO())

    def test_stats(self):
        out = StringIO()
        call_command("run_addon_billing", "--stats", "week", stdout=out)
        assert "Revenue: 0" in out.getvalue()
