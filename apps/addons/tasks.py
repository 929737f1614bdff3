"""
Celery tasks for add-on billing.

Each periodic task runs one BillingScheduler duty; the schedule lives in
config/celery.py. All tasks are routed to the 'billing' queue.
"""

import logging

from celery import shared_task

from apps.addons.billing import BillingProcessor
from apps.addons.exceptions import AddOnNotFound, InvalidTransition
from apps.addons.scheduler import billing_scheduler

logger = logging.getLogger(__name__)


@shared_task(name="apps.addons.tasks.process_due_billing")
def process_due_billing():
    """
    Renew every add-on whose next billing date has passed.

    Runs hourly. Skipped if a previous sweep is still running in this worker.
    """
    logger.info("Starting add-on renewal sweep")
    return billing_scheduler.process_due_billing()


@shared_task(name="apps.addons.tasks.check_expiring_trials")
def check_expiring_trials():
    """Warn about trials ending soon; convert or cancel ended trials."""
    return billing_scheduler.check_expiring_trials()


@shared_task(name="apps.addons.tasks.check_low_balance_alerts")
def check_low_balance_alerts():
    return billing_scheduler.check_low_balance()


@shared_task(name="apps.addons.tasks.retry_failed_payments")
def retry_failed_payments():
    """Retry failed renewals whose backoff window has elapsed."""
    return billing_scheduler.retry_failed_payments()


@shared_task(name="apps.addons.tasks.cleanup_expired_addons")
def cleanup_expired_addons():
    """Archive add-ons cancelled or expired more than the retention window ago."""
    return billing_scheduler.cleanup_expired_addons()


@shared_task(name="apps.addons.tasks.expire_elapsed_addons")
def expire_elapsed_addons():
    return billing_scheduler.expire_elapsed_addons()


@shared_task(name="apps.addons.tasks.process_addon_billing")
def process_addon_billing(tenant_addon_id):
    """
    Bill one add-on instance on demand (e.g. from the admin).

    Args:
        tenant_addon_id: ID of the TenantAddOn to bill

    Returns:
        Dictionary with the billing outcome
    """
    try:
        return BillingProcessor().trigger_billing(tenant_addon_id)
    except (AddOnNotFound, InvalidTransition) as e:
        logger.warning(f"Manual billing for {tenant_addon_id} rejected: {str(e)}")
        return {"outcome": "rejected", "error": str(e)}
