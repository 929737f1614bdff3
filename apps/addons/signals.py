"""
Signals sent by the add-on engine for external listeners (audit, analytics).

Entitlement recomputation does not hang off these signals; lifecycle
services call it explicitly.
"""

from django.dispatch import Signal

# kwargs: instance, transaction
addon_billed = Signal()

# kwargs: instance, error, failed_attempts, next_retry_at
addon_payment_failed = Signal()

# kwargs: instance, remaining_credits
low_balance = Signal()

# kwargs: instance, source, target, reason
addon_status_changed = Signal()
