import uuid

import django.core.serializers.json
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("core", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Notification",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for the notification", primary_key=True, serialize=False)),
                ("event_type", models.CharField(choices=[("addon_activated", "Add-on Activated"), ("billing_success", "Payment Successful"), ("payment_failed", "Payment Failed"), ("addon_suspended", "Add-on Suspended"), ("addon_reactivated", "Add-on Reactivated"), ("addon_cancelled", "Add-on Cancelled"), ("addon_expired", "Add-on Expired"), ("trial_ending", "Trial Expiring Soon"), ("trial_converted", "Trial Converted"), ("trial_expired", "Trial Expired"), ("low_balance", "Low Balance Alert"), ("credits_added", "Credits Added")], help_text="Lifecycle or billing event that produced this notification", max_length=30)),
                ("title", models.CharField(help_text="Notification title/subject", max_length=255)),
                ("message", models.TextField(help_text="Notification message content")),
                ("payload", models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder, help_text="Structured event data (add-on id, amounts, retry times)")),
                ("is_read", models.BooleanField(default=False, help_text="Whether the tenant has read this notification")),
                ("created_at", models.DateTimeField(auto_now_add=True, help_text="When the notification was created")),
                ("read_at", models.DateTimeField(blank=True, help_text="When the notification was marked as read", null=True)),
                ("tenant", models.ForeignKey(help_text="Tenant that will receive this notification", on_delete=django.db.models.deletion.CASCADE, related_name="notifications", to="core.tenant")),
            ],
            options={
                "verbose_name": "Notification",
                "verbose_name_plural": "Notifications",
                "db_table": "notifications_notification",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["tenant", "-created_at"], name="notif_tenant_created_idx"),
                    models.Index(fields=["tenant", "is_read", "-created_at"], name="notif_tenant_read_idx"),
                    models.Index(fields=["tenant", "event_type"], name="notif_tenant_event_idx"),
                ],
            },
        ),
    ]
