"""
Management command to run add-on billing duties manually.

Useful when Celery beat is not running, or to re-run a duty after an outage.
"""

from django.core.management.base import BaseCommand, CommandError

from apps.addons.billing import BillingProcessor
from apps.addons.exceptions import AddOnError
from apps.addons.scheduler import BillingScheduler

DUTIES = {
    "billing": "process_due_billing",
    "trials": "check_expiring_trials",
    "low-balance": "check_low_balance",
    "retries": "retry_failed_payments",
    "expire": "expire_elapsed_addons",
    "cleanup": "cleanup_expired_addons",
    "all": "run_all",
}


class Command(BaseCommand):
    help = "Run add-on billing scheduler duties"

    def add_arguments(self, parser):
        parser.add_argument(
            "--duty",
            type=str,
            choices=sorted(DUTIES),
            default="all",
            help="Scheduler duty to run (default: all)",
        )
        parser.add_argument(
            "--instance",
            type=str,
            help="Bill a single add-on instance by ID instead of running a duty",
        )
        parser.add_argument(
            "--stats",
            type=str,
            choices=["day", "week", "month", "year"],
            help="Print billing statistics for the period instead of running a duty",
        )

    def handle(self, *args, **options):
        processor = BillingProcessor()

        if options.get("stats"):
            stats = processor.get_billing_stats(options["stats"])
            self.stdout.write(
                f"Revenue: {stats['total_revenue']} "
                f"({stats['completed_count']} completed, {stats['failed_count']} failed, "
                f"{stats['suspended_instances']} suspended)"
            )
            for txn_type, row in sorted(stats["by_type"].items()):
                self.stdout.write(f"  {txn_type}: {row['count']} / {row['revenue']}")
            return

        if options.get("instance"):
            try:
                result = processor.trigger_billing(options["instance"])
            except AddOnError as e:
                raise CommandError(str(e))
            self.stdout.write(self.style.SUCCESS(f"Billing result: {result}"))
            return

        duty = options["duty"]
        self.stdout.write(f"Running add-on billing duty '{duty}'...")
        result = getattr(BillingScheduler(processor), DUTIES[duty])()
        self.stdout.write(self.style.SUCCESS(f"Finished '{duty}': {result}"))
