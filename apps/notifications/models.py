import uuid

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from apps.core.models import Tenant


class Notification(models.Model):
    """
    Model to store add-on lifecycle and billing notifications for tenants.
    Supports in-app notifications with read/unread status.
    """

    ADDON_ACTIVATED = "addon_activated"
    BILLING_SUCCESS = "billing_success"
    PAYMENT_FAILED = "payment_failed"
    ADDON_SUSPENDED = "addon_suspended"
    ADDON_REACTIVATED = "addon_reactivated"
    ADDON_CANCELLED = "addon_cancelled"
    ADDON_EXPIRED = "addon_expired"
    TRIAL_ENDING = "trial_ending"
    TRIAL_CONVERTED = "trial_converted"
    TRIAL_EXPIRED = "trial_expired"
    LOW_BALANCE = "low_balance"
    CREDITS_ADDED = "credits_added"

    EVENT_TYPES = [
        (ADDON_ACTIVATED, _("Add-on Activated")),
        (BILLING_SUCCESS, _("Payment Successful")),
        (PAYMENT_FAILED, _("Payment Failed")),
        (ADDON_SUSPENDED, _("Add-on Suspended")),
        (ADDON_REACTIVATED, _("Add-on Reactivated")),
        (ADDON_CANCELLED, _("Add-on Cancelled")),
        (ADDON_EXPIRED, _("Add-on Expired")),
        (TRIAL_ENDING, _("Trial Expiring Soon")),
        (TRIAL_CONVERTED, _("Trial Converted")),
        (TRIAL_EXPIRED, _("Trial Expired")),
        (LOW_BALANCE, _("Low Balance Alert")),
        (CREDITS_ADDED, _("Credits Added")),
    ]

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text=_("Unique identifier for the notification"),
    )
    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name="notifications",
        help_text=_("Tenant that will receive this notification"),
    )
    event_type = models.CharField(
        max_length=30,
        choices=EVENT_TYPES,
        help_text=_("Lifecycle or billing event that produced this notification"),
    )
    title = models.CharField(max_length=255, help_text=_("Notification title/subject"))
    message = models.TextField(help_text=_("Notification message content"))
    payload = models.JSONField(
        default=dict,
        blank=True,
        encoder=DjangoJSONEncoder,
        help_text=_("Structured event data (add-on id, amounts, retry times)"),
    )
    is_read = models.BooleanField(
        default=False, help_text=_("Whether the tenant has read this notification")
    )
    created_at = models.DateTimeField(
        auto_now_add=True, help_text=_("When the notification was created")
    )
    read_at = models.DateTimeField(
        null=True, blank=True, help_text=_("When the notification was marked as read")
    )

    class Meta:
        db_table = "notifications_notification"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["tenant", "-created_at"], name="notif_tenant_created_idx"),
            models.Index(fields=["tenant", "is_read", "-created_at"], name="notif_tenant_read_idx"),
            models.Index(fields=["tenant", "event_type"], name="notif_tenant_event_idx"),
        ]
        verbose_name = _("Notification")
        verbose_name_plural = _("Notifications")

    def __str__(self):
        return f"{self.title} - {self.tenant_id}"

    def mark_as_read(self):
        """Mark notification as read and set read timestamp"""
        if not self.is_read:
            self.is_read = True
            self.read_at = timezone.now()
            self.save(update_fields=["is_read", "read_at"])
