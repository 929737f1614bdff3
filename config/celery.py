"""
Celery configuration for the add-on billing platform.
"""

import os

from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.development")

app = Celery("addon_billing")

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Celery Beat Schedule for periodic tasks
app.conf.beat_schedule = {
    # Renew due recurring add-ons every hour
    "process-due-addon-billing": {
        "task": "apps.addons.tasks.process_due_billing",
        "schedule": crontab(minute=0),
        "options": {"queue": "billing", "priority": 9},
    },
    # Convert or cancel elapsed trials daily at 9:00 AM
    "check-expiring-addon-trials": {
        "task": "apps.addons.tasks.check_expiring_trials",
        "schedule": crontab(hour=9, minute=0),
        "options": {"queue": "billing", "priority": 8},
    },
    # Low balance alerts for usage-based add-ons daily at 10:00 AM
    "check-addon-low-balance": {
        "task": "apps.addons.tasks.check_low_balance_alerts",
        "schedule": crontab(hour=10, minute=0),
        "options": {"queue": "billing", "priority": 6},
    },
    # Retry failed renewals every 6 hours
    "retry-failed-addon-payments": {
        "task": "apps.addons.tasks.retry_failed_payments",
        "schedule": crontab(minute=0, hour="*/6"),
        "options": {"queue": "billing", "priority": 8},
    },
    # Archive long-cancelled add-ons daily at midnight
    "cleanup-expired-addons": {
        "task": "apps.addons.tasks.cleanup_expired_addons",
        "schedule": crontab(hour=0, minute=0),
        "options": {"queue": "billing", "priority": 2},
    },
    # Expire elapsed one-time and usage-based add-ons every hour
    "expire-elapsed-addons": {
        "task": "apps.addons.tasks.expire_elapsed_addons",
        "schedule": 3600.0,  # Every hour (3600 seconds)
        "options": {"queue": "billing", "priority": 5},
    },
}

# Task routing configuration
app.conf.task_routes = {
    "apps.addons.tasks.*": {"queue": "billing", "priority": 8},
}
