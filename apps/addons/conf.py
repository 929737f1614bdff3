"""
Billing policy settings for the add-on engine.

Values come from the ``ADDON_BILLING`` dict in Django settings, falling back
to the defaults below.
"""

from decimal import Decimal

from django.conf import settings

DEFAULTS = {
    "MAX_RETRIES": 3,
    "TAX_RATE": "0.18",
    "ARCHIVE_RETENTION_DAYS": 90,
    "USAGE_HISTORY_DAYS": 30,
    "DEFAULT_LOW_BALANCE_THRESHOLD": 10,
    "DEFAULT_CURRENCY": "INR",
    "TRIAL_EXPIRY_NOTICE_DAYS": 3,
}


def get_setting(name):
    """Get an add-on billing setting by name."""
    overrides = getattr(settings, "ADDON_BILLING", {}) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]


def max_retries():
    return int(get_setting("MAX_RETRIES"))


def tax_rate():
    return Decimal(str(get_setting("TAX_RATE")))


def default_currency():
    return get_setting("DEFAULT_CURRENCY")
