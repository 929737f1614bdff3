"""
Billing scheduler: the periodic duties of the add-on billing engine.

Each duty selects its work from the database, so a skipped or failed run is
simply picked up by the next one. Errors are handled per instance; one
tenant's failure never aborts a sweep for the others.

The renewal sweep is single-flight within a process: if a sweep is still
running when the next one starts, the new one is skipped. This guard is an
in-memory lock and does not coordinate separate worker processes.
"""

import logging
import math
import threading
from datetime import timedelta

from django.db.models import F, Q
from django.utils import timezone

from apps.addons import services
from apps.addons.billing import BillingProcessor
from apps.addons.conf import get_setting, max_retries
from apps.addons.exceptions import GatewayFailure
from apps.addons.metering import send_low_balance_alert
from apps.addons.models import AddOn, TenantAddOn
from apps.addons.transaction_models import AddOnTransaction
from apps.notifications.models import Notification
from apps.notifications.services import notify

logger = logging.getLogger(__name__)


def _new_stats(**extra):
    return {"processed": 0, "successful": 0, "failed": 0, "errors": [], **extra}


def _record_error(stats, instance, error):
    stats["failed"] += 1
    stats["errors"].append({"tenant_addon_id": str(instance.pk), "error": str(error)})


class BillingScheduler:
    """
    Runs the billing engine's periodic duties.

    Attributes:
        processor: BillingProcessor used for renewals, retries and trial conversion
    """

    def __init__(self, processor=None):
        self.processor = processor or BillingProcessor()
        self._renewal_lock = threading.Lock()

    @property
    def is_running(self):
        """Whether a renewal sweep is in progress in this process."""
        return self._renewal_lock.locked()

    def _bill_each(self, instances, now, stats):
        for instance in instances:
            stats["processed"] += 1
            try:
                self.processor.process_billing(instance, now=now)
                stats["successful"] += 1
            except GatewayFailure as e:
                _record_error(stats, instance, e)
                try:
                    self.processor.handle_billing_failure(instance, e, now=now)
                except Exception:
                    logger.exception(f"Failed to apply billing failure policy to {instance.pk}")
            except Exception as e:
                _record_error(stats, instance, e)
                logger.exception(f"Unexpected error billing add-on instance {instance.pk}")

    def process_due_billing(self, now=None):
        """
        Bill every active recurring instance whose next billing date has passed.

        Returns:
            Sweep statistics; 'skipped' is True if another sweep was already running
        """
        if not self._renewal_lock.acquire(blocking=False):
            logger.warning("Add-on billing sweep already running, skipping")
            return _new_stats(skipped=True)

        try:
            now = now or timezone.now()
            stats = _new_stats(skipped=False)
            due = list(TenantAddOn.objects.due_for_billing(now).select_related("tenant", "addon"))
            logger.info(f"Processing billing for {len(due)} add-on instances")
            self._bill_each(due, now, stats)
            logger.info(
                f"Billing sweep finished: {stats['successful']} successful, {stats['failed']} failed"
            )
            return stats
        finally:
            self._renewal_lock.release()

    def retry_failed_payments(self, now=None):
        """Retry active instances whose backoff window has elapsed."""
        now = now or timezone.now()
        stats = _new_stats()
        due = list(
            TenantAddOn.objects.due_for_retry(now, max_retries()).select_related("tenant", "addon")
        )
        logger.info(f"Retrying billing for {len(due)} add-on instances")
        self._bill_each(due, now, stats)
        return stats

    def check_expiring_trials(self, now=None):
        """
        Warn about trials ending soon and settle trials that have ended.

        Ended trials with auto-renew are billed and converted, or cancelled if
        the charge fails; ended trials without auto-renew are cancelled.
        """
        now = now or timezone.now()
        stats = {"notified": 0, "converted": 0, "cancelled": 0, "errors": []}

        notice_until = now + timedelta(days=int(get_setting("TRIAL_EXPIRY_NOTICE_DAYS")))
        ending_soon = TenantAddOn.objects.live().filter(
            status=TenantAddOn.STATUS_TRIAL, trial_ends_at__gt=now, trial_ends_at__lte=notice_until
        ).select_related("addon")
        for instance in ending_soon:
            days_left = math.ceil((instance.trial_ends_at - now) / timedelta(days=1))
            notify(
                instance.tenant_id,
                Notification.TRIAL_ENDING,
                {
                    "tenant_addon_id": str(instance.pk),
                    "addon_name": instance.addon.display_name,
                    "days_left": days_left,
                    "trial_ends_at": instance.trial_ends_at,
                },
            )
            stats["notified"] += 1

        ended = list(
            TenantAddOn.objects.live()
            .filter(status=TenantAddOn.STATUS_TRIAL, trial_ends_at__lte=now)
            .select_related("tenant", "addon")
        )
        for instance in ended:
            try:
                if not instance.auto_renew:
                    services.cancel_addon(
                        instance,
                        "Trial expired",
                        cancelled_by=TenantAddOn.ACTOR_SYSTEM,
                        now=now,
                        event_type=Notification.TRIAL_EXPIRED,
                    )
                    stats["cancelled"] += 1
                    continue

                try:
                    self.processor.process_billing(
                        instance, now=now, source=AddOnTransaction.SOURCE_AUTO_RENEWAL
                    )
                except GatewayFailure as e:
                    logger.warning(f"Trial conversion charge failed for {instance.pk}: {str(e)}")
                    services.cancel_addon(
                        instance,
                        "Trial expired and payment failed",
                        cancelled_by=TenantAddOn.ACTOR_SYSTEM,
                        now=now,
                        event_type=Notification.TRIAL_EXPIRED,
                    )
                    stats["cancelled"] += 1
                    continue

                services.convert_trial(instance, now=now)
                stats["converted"] += 1
            except Exception as e:
                stats["errors"].append({"tenant_addon_id": str(instance.pk), "error": str(e)})
                logger.exception(f"Failed to settle trial for add-on instance {instance.pk}")

        logger.info(
            f"Trial check finished: {stats['notified']} notified, {stats['converted']} converted, "
            f"{stats['cancelled']} cancelled"
        )
        return stats

    def check_low_balance(self, now=None):
        """Raise low balance alerts for usage-based instances at or below their threshold."""
        now = now or timezone.now()
        stats = {"alerted": 0, "errors": []}
        candidates = TenantAddOn.objects.usable().filter(
            billing_cycle=AddOn.BILLING_USAGE_BASED,
            low_balance_alerted=False,
            remaining_credits__lte=F("low_balance_threshold"),
        ).select_related("addon")

        for instance in candidates:
            try:
                claimed = TenantAddOn.objects.filter(pk=instance.pk, low_balance_alerted=False).update(
                    low_balance_alerted=True, last_alert_sent=now
                )
                if not claimed:
                    continue
                instance.low_balance_alerted = True
                instance.last_alert_sent = now
                send_low_balance_alert(instance)
                stats["alerted"] += 1
            except Exception as e:
                stats["errors"].append({"tenant_addon_id": str(instance.pk), "error": str(e)})
                logger.exception(f"Failed to raise low balance alert for {instance.pk}")

        logger.info(f"Low balance check finished: {stats['alerted']} alerts")
        return stats

    def cleanup_expired_addons(self, now=None):
        """Archive instances cancelled or expired longer ago than the retention window."""
        now = now or timezone.now()
        cutoff = now - timedelta(days=int(get_setting("ARCHIVE_RETENTION_DAYS")))
        stats = {"archived": 0, "errors": []}

        stale = TenantAddOn.objects.live().filter(
            Q(cancelled_at__lte=cutoff) | Q(cancelled_at__isnull=True, expires_at__lte=cutoff),
            status__in=TenantAddOn.TERMINAL_STATUSES,
        )
        for instance in stale:
            try:
                services.archive_addon(instance, now=now)
                stats["archived"] += 1
            except Exception as e:
                stats["errors"].append({"tenant_addon_id": str(instance.pk), "error": str(e)})
                logger.exception(f"Failed to archive add-on instance {instance.pk}")

        logger.info(f"Archived {stats['archived']} add-on instances")
        return stats

    def expire_elapsed_addons(self, now=None):
        """Expire one-time and usage-based instances whose expiry time has passed."""
        now = now or timezone.now()
        stats = {"expired": 0, "errors": []}

        elapsed = list(
            TenantAddOn.objects.live()
            .filter(
                status__in=TenantAddOn.NON_TERMINAL_STATUSES,
                billing_cycle__in=(AddOn.BILLING_ONE_TIME, AddOn.BILLING_USAGE_BASED),
                expires_at__lte=now,
            )
            .select_related("addon")
        )
        for instance in elapsed:
            try:
                services.expire_addon(instance, now=now)
                stats["expired"] += 1
            except Exception as e:
                stats["errors"].append({"tenant_addon_id": str(instance.pk), "error": str(e)})
                logger.exception(f"Failed to expire add-on instance {instance.pk}")

        logger.info(f"Expired {stats['expired']} add-on instances")
        return stats

    def run_all(self, now=None):
        """Run every duty once, in order."""
        now = now or timezone.now()
        return {
            "billing": self.process_due_billing(now),
            "trials": self.check_expiring_trials(now),
            "low_balance": self.check_low_balance(now),
            "retries": self.retry_failed_payments(now),
            "expired": self.expire_elapsed_addons(now),
            "cleanup": self.cleanup_expired_addons(now),
        }


billing_scheduler = BillingScheduler()
