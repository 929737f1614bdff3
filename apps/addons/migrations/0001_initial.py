import uuid
from decimal import Decimal

import django.core.serializers.json
from django.db import migrations, models
import django.db.models.deletion
import django_fsm

import apps.addons.transaction_models

ACTOR_CHOICES = [
    ("SuperAdmin", "Super Admin"),
    ("SalesUser", "Sales User"),
    ("TenantAdmin", "Tenant Admin"),
    ("System", "System"),
]

BILLING_CYCLE_CHOICES = [
    ("monthly", "Monthly"),
    ("yearly", "Yearly"),
    ("one_time", "One-time"),
    ("usage_based", "Usage-based"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("core", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="AddOn",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for the add-on", primary_key=True, serialize=False)),
                ("name", models.CharField(help_text="Internal add-on name", max_length=100)),
                ("slug", models.SlugField(help_text="URL-friendly identifier for the add-on", max_length=120, unique=True)),
                ("display_name", models.CharField(help_text="Name shown to tenants", max_length=150)),
                ("description", models.TextField(blank=True, help_text="Description of the add-on")),
                ("category", models.CharField(choices=[("capacity", "Capacity"), ("feature", "Feature"), ("usage", "Usage"), ("branding", "Branding"), ("integration", "Integration"), ("support", "Support")], default="feature", help_text="Add-on category", max_length=20)),
                ("status", models.CharField(choices=[("draft", "Draft"), ("active", "Active"), ("hidden", "Hidden"), ("deprecated", "Deprecated")], default="draft", help_text="Catalog status (only active add-ons can be purchased)", max_length=20)),
                ("billing_cycle", models.CharField(choices=BILLING_CYCLE_CHOICES, default="monthly", help_text="Default billing cycle offered for this add-on", max_length=20)),
                ("monthly_price", models.DecimalField(decimal_places=2, default=Decimal("0"), help_text="Monthly price", max_digits=12)),
                ("yearly_price", models.DecimalField(decimal_places=2, default=Decimal("0"), help_text="Yearly price", max_digits=12)),
                ("one_time_price", models.DecimalField(decimal_places=2, default=Decimal("0"), help_text="One-time price (also the price of a usage credit pack)", max_digits=12)),
                ("currency", models.CharField(default="INR", help_text="ISO currency code", max_length=3)),
                ("regional_pricing", models.JSONField(blank=True, default=dict, help_text="Per-region overrides, e.g. {'EU': {'monthly': 12, 'currency': 'EUR'}}")),
                ("variants", models.JSONField(blank=True, default=list, help_text="Pricing variants: [{name, monthly, yearly, one_time, is_active, start_date, end_date, target_percentage}]")),
                ("features", models.JSONField(blank=True, default=list, help_text="Feature grants: [{'key': 'api_access', 'value': true}]")),
                ("capacity", models.JSONField(blank=True, default=dict, help_text="Capacity increment: {'feature': 'max_branches', 'increment': 3, 'unit': 'branch'}")),
                ("usage_config", models.JSONField(blank=True, default=dict, help_text="Usage credits: {'type': 'sms', 'amount': 1000, 'unit': 'message', 'auto_renew': false, 'low_balance_threshold': 10}")),
                ("eligible_plans", models.JSONField(blank=True, default=list, help_text="Plan names allowed to buy this add-on (empty = all)")),
                ("excluded_plans", models.JSONField(blank=True, default=list, help_text="Plan names not allowed to buy this add-on")),
                ("required_features", models.JSONField(blank=True, default=list, help_text="Features the tenant must already have")),
                ("conflicting_features", models.JSONField(blank=True, default=list, help_text="Features that prevent purchasing this add-on")),
                ("available_from", models.DateTimeField(blank=True, help_text="Add-on is not purchasable before this time", null=True)),
                ("available_until", models.DateTimeField(blank=True, help_text="Add-on is not purchasable after this time", null=True)),
                ("trial_days", models.PositiveIntegerField(default=0, help_text="Length of the free trial in days (0 = no trial)")),
                ("max_quantity", models.PositiveIntegerField(default=1, help_text="Maximum quantity a tenant can hold")),
                ("stripe_monthly_price_id", models.CharField(blank=True, help_text="Stripe price ID for monthly billing", max_length=255)),
                ("stripe_yearly_price_id", models.CharField(blank=True, help_text="Stripe price ID for yearly billing", max_length=255)),
                ("purchase_count", models.PositiveIntegerField(default=0, help_text="Number of completed purchases")),
                ("total_revenue", models.DecimalField(decimal_places=2, default=Decimal("0"), help_text="Revenue from purchases", max_digits=14)),
                ("created_at", models.DateTimeField(auto_now_add=True, help_text="Timestamp when the add-on was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when the add-on was last updated")),
            ],
            options={
                "verbose_name": "Add-on",
                "verbose_name_plural": "Add-ons",
                "db_table": "addons",
                "ordering": ["category", "display_name"],
                "indexes": [
                    models.Index(fields=["status"], name="addon_status_idx"),
                    models.Index(fields=["category", "status"], name="addon_category_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="TenantAddOn",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for the add-on instance", primary_key=True, serialize=False)),
                ("quantity", models.PositiveIntegerField(default=1, help_text="Number of units held")),
                ("status", django_fsm.FSMField(choices=[("pending_payment", "Pending Payment"), ("trial", "Trial"), ("active", "Active"), ("suspended", "Suspended"), ("cancelled", "Cancelled"), ("expired", "Expired")], default="pending_payment", help_text="Current lifecycle status (changed only through transitions)", max_length=50, protected=True)),
                ("activated_at", models.DateTimeField(blank=True, help_text="When the add-on became active", null=True)),
                ("trial_ends_at", models.DateTimeField(blank=True, help_text="When the trial period ends", null=True)),
                ("expires_at", models.DateTimeField(blank=True, help_text="Expiry time for non-recurring add-ons", null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, help_text="When the add-on was cancelled", null=True)),
                ("suspended_at", models.DateTimeField(blank=True, help_text="When the add-on was suspended", null=True)),
                ("suspension_reason", models.TextField(blank=True, help_text="Why the add-on was suspended")),
                ("billing_cycle", models.CharField(choices=BILLING_CYCLE_CHOICES, default="monthly", help_text="Billing cycle for this instance", max_length=20)),
                ("next_billing_date", models.DateTimeField(blank=True, help_text="Next recurring charge date", null=True)),
                ("snapshot_monthly_price", models.DecimalField(blank=True, decimal_places=2, help_text="Monthly price at purchase", max_digits=12, null=True)),
                ("snapshot_yearly_price", models.DecimalField(blank=True, decimal_places=2, help_text="Yearly price at purchase", max_digits=12, null=True)),
                ("snapshot_one_time_price", models.DecimalField(blank=True, decimal_places=2, help_text="One-time price at purchase", max_digits=12, null=True)),
                ("snapshot_currency", models.CharField(default="INR", help_text="Currency of the pricing snapshot", max_length=3)),
                ("snapshot_variant", models.CharField(blank=True, help_text="Pricing variant used at purchase", max_length=100)),
                ("snapshot_region", models.CharField(blank=True, help_text="Pricing region used at purchase", max_length=20)),
                ("snapshot_captured_at", models.DateTimeField(blank=True, help_text="When the pricing snapshot was captured", null=True)),
                ("custom_pricing", models.JSONField(blank=True, help_text="Custom prices overriding the snapshot: {'monthly': 50, 'yearly': 500}", null=True)),
                ("custom_config", models.JSONField(blank=True, default=dict, help_text="Custom feature values overriding the catalog grants")),
                ("custom_limits", models.JSONField(blank=True, default=dict, help_text="Custom capacity limits keyed by feature")),
                ("discount_type", models.CharField(blank=True, choices=[("percentage", "Percentage"), ("fixed", "Fixed Amount")], help_text="Discount type", max_length=20)),
                ("discount_value", models.DecimalField(decimal_places=2, default=Decimal("0"), help_text="Discount percentage or amount", max_digits=12)),
                ("discount_reason", models.CharField(blank=True, help_text="Why the discount", max_length=255)),
                ("discount_valid_until", models.DateTimeField(blank=True, help_text="Discount stops applying after this time", null=True)),
                ("total_used", models.PositiveIntegerField(default=0, help_text="Credits consumed in total")),
                ("remaining_credits", models.IntegerField(default=0, help_text="Credits left to consume")),
                ("daily_usage", models.JSONField(blank=True, default=list, help_text="Rolling daily usage window: [{'date', 'used', 'remaining'}]")),
                ("low_balance_alerted", models.BooleanField(default=False, help_text="Whether a low balance alert was raised for this episode")),
                ("last_alert_sent", models.DateTimeField(blank=True, help_text="When the last low balance alert was sent", null=True)),
                ("auto_renew_credits", models.BooleanField(default=False, help_text="Whether credits renew automatically when low")),
                ("low_balance_threshold", models.PositiveIntegerField(default=10, help_text="Remaining credits at or below which an alert fires")),
                ("last_reset", models.DateTimeField(blank=True, help_text="Last usage reset", null=True)),
                ("next_reset", models.DateTimeField(blank=True, help_text="Next usage reset", null=True)),
                ("reset_frequency", models.CharField(blank=True, choices=[("daily", "Daily"), ("weekly", "Weekly"), ("monthly", "Monthly"), ("yearly", "Yearly")], help_text="Usage reset cadence", max_length=10)),
                ("auto_renew", models.BooleanField(default=True, help_text="Whether the add-on renews (and trials convert) automatically")),
                ("failed_attempts", models.PositiveIntegerField(default=0, help_text="Consecutive failed billing attempts")),
                ("last_failed_at", models.DateTimeField(blank=True, help_text="When the last billing attempt failed", null=True)),
                ("next_retry_at", models.DateTimeField(blank=True, help_text="When the next billing retry is due", null=True)),
                ("is_trial_used", models.BooleanField(default=False, help_text="Whether a trial was consumed")),
                ("trial_started_at", models.DateTimeField(blank=True, help_text="Trial start", null=True)),
                ("trial_days", models.PositiveIntegerField(default=0, help_text="Trial length in days")),
                ("assigned_by", models.CharField(blank=True, help_text="Identifier of the actor who assigned the add-on", max_length=255)),
                ("assigned_by_model", models.CharField(choices=ACTOR_CHOICES, default="TenantAdmin", help_text="Kind of actor who assigned the add-on", max_length=20)),
                ("assignment_method", models.CharField(choices=[("purchase", "Purchase"), ("admin_assign", "Admin Assignment"), ("sales_assign", "Sales Assignment"), ("trial", "Trial"), ("promotion", "Promotion")], default="purchase", help_text="How the add-on was obtained", max_length=20)),
                ("cancellation_reason", models.TextField(blank=True, help_text="Why the add-on was cancelled")),
                ("cancelled_by", models.CharField(blank=True, help_text="Actor who cancelled the add-on", max_length=255)),
                ("cancellation_effective_date", models.DateTimeField(blank=True, help_text="When the cancellation takes effect", null=True)),
                ("refund_amount", models.DecimalField(blank=True, decimal_places=2, help_text="Refund on cancellation", max_digits=12, null=True)),
                ("refund_processed", models.BooleanField(default=False, help_text="Whether the cancellation refund was processed")),
                ("total_spent", models.DecimalField(decimal_places=2, default=Decimal("0"), help_text="Total billed amount", max_digits=14)),
                ("total_usage", models.PositiveIntegerField(default=0, help_text="Lifetime usage counter")),
                ("last_used_at", models.DateTimeField(blank=True, help_text="Last consumption", null=True)),
                ("activation_source", models.CharField(blank=True, help_text="Where the activation originated (web, admin, api)", max_length=50)),
                ("stripe_subscription_id", models.CharField(blank=True, help_text="Stripe subscription ID, if billed by Stripe", max_length=255)),
                ("notes", models.JSONField(blank=True, default=list, encoder=django.core.serializers.json.DjangoJSONEncoder, help_text="Internal notes: [{'text', 'author', 'created_at'}]")),
                ("is_deleted", models.BooleanField(default=False, help_text="Archived (soft deleted)")),
                ("deleted_at", models.DateTimeField(blank=True, help_text="When archived", null=True)),
                ("deleted_by_model", models.CharField(blank=True, choices=ACTOR_CHOICES, help_text="Who archived the instance", max_length=20)),
                ("created_at", models.DateTimeField(auto_now_add=True, help_text="Timestamp when the instance was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when the instance was last updated")),
                ("addon", models.ForeignKey(help_text="Catalog add-on this instance subscribes to", on_delete=django.db.models.deletion.PROTECT, related_name="instances", to="addons.addon")),
                ("tenant", models.ForeignKey(help_text="Tenant that holds this add-on", on_delete=django.db.models.deletion.CASCADE, related_name="addons", to="core.tenant")),
            ],
            options={
                "verbose_name": "Tenant Add-on",
                "verbose_name_plural": "Tenant Add-ons",
                "db_table": "tenant_addons",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["tenant", "status"], name="tenant_addon_status_idx"),
                    models.Index(fields=["status", "next_billing_date"], name="tenant_addon_billing_idx"),
                    models.Index(fields=["status", "next_retry_at"], name="tenant_addon_retry_idx"),
                    models.Index(fields=["status", "trial_ends_at"], name="tenant_addon_trial_idx"),
                    models.Index(fields=["stripe_subscription_id"], name="tenant_addon_stripe_sub_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("is_deleted", False)), fields=("tenant", "addon"), name="tenant_addon_unique_live"),
                    models.CheckConstraint(condition=models.Q(("remaining_credits__gte", 0)), name="tenant_addon_credits_non_negative"),
                    models.CheckConstraint(condition=models.Q(("quantity__gte", 1)), name="tenant_addon_quantity_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingRecord",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for the billing record", primary_key=True, serialize=False)),
                ("transaction_id", models.CharField(help_text="Transaction reference (AddOnTransaction id or credit id)", max_length=100)),
                ("amount", models.DecimalField(decimal_places=2, default=Decimal("0"), help_text="Amount charged", max_digits=12)),
                ("currency", models.CharField(default="INR", help_text="ISO currency code", max_length=3)),
                ("period_start", models.DateTimeField(blank=True, help_text="Billing period start", null=True)),
                ("period_end", models.DateTimeField(blank=True, help_text="Billing period end", null=True)),
                ("payment_method", models.CharField(blank=True, help_text="Payment method", max_length=50)),
                ("payment_status", models.CharField(choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed"), ("refunded", "Refunded")], default="pending", help_text="Payment status", max_length=20)),
                ("gateway_reference", models.CharField(blank=True, help_text="Payment gateway reference (e.g. PaymentIntent id)", max_length=255)),
                ("stripe_subscription_id", models.CharField(blank=True, help_text="Stripe subscription that produced this charge", max_length=255)),
                ("gateway_response", models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder, help_text="Raw gateway response")),
                ("proration_amount", models.DecimalField(blank=True, decimal_places=2, help_text="Proration amount", max_digits=12, null=True)),
                ("proration_reason", models.CharField(blank=True, help_text="Proration reason", max_length=255)),
                ("refund_amount", models.DecimalField(blank=True, decimal_places=2, help_text="Refunded amount", max_digits=12, null=True)),
                ("refund_reason", models.CharField(blank=True, help_text="Refund reason", max_length=255)),
                ("refunded_at", models.DateTimeField(blank=True, help_text="When refunded", null=True)),
                ("notes", models.TextField(blank=True, help_text="Free-form notes")),
                ("processed_by_model", models.CharField(choices=ACTOR_CHOICES, default="System", help_text="Kind of actor that processed this record", max_length=20)),
                ("created_at", models.DateTimeField(auto_now_add=True, help_text="Timestamp when the record was written")),
                ("tenant_addon", models.ForeignKey(help_text="Add-on instance this record belongs to", on_delete=django.db.models.deletion.CASCADE, related_name="billing_history", to="addons.tenantaddon")),
            ],
            options={
                "verbose_name": "Billing Record",
                "verbose_name_plural": "Billing Records",
                "db_table": "tenant_addon_billing_records",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["tenant_addon", "-created_at"], name="billing_record_addon_idx"),
                    models.Index(fields=["transaction_id"], name="billing_record_txn_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="AddOnTransaction",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for the transaction", primary_key=True, serialize=False)),
                ("transaction_id", models.CharField(default=apps.addons.transaction_models.generate_transaction_id, help_text="Correlation id carried in gateway metadata", max_length=64, unique=True)),
                ("invoice_number", models.CharField(blank=True, help_text="Invoice number, assigned when the transaction completes", max_length=32, null=True, unique=True)),
                ("type", models.CharField(choices=[("purchase", "Purchase"), ("renewal", "Renewal"), ("upgrade", "Upgrade"), ("downgrade", "Downgrade"), ("refund", "Refund"), ("credit", "Credit"), ("adjustment", "Adjustment")], help_text="Transaction type", max_length=20)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed"), ("cancelled", "Cancelled"), ("refunded", "Refunded")], default="pending", help_text="Transaction status", max_length=20)),
                ("subtotal", models.DecimalField(decimal_places=2, help_text="Amount before tax", max_digits=12)),
                ("tax", models.DecimalField(decimal_places=2, default=Decimal("0"), help_text="Tax amount", max_digits=12)),
                ("discount", models.DecimalField(decimal_places=2, default=Decimal("0"), help_text="Discount amount", max_digits=12)),
                ("total", models.DecimalField(decimal_places=2, help_text="Amount charged", max_digits=12)),
                ("currency", models.CharField(default="INR", help_text="ISO currency code", max_length=3)),
                ("line_items", models.JSONField(blank=True, default=list, encoder=django.core.serializers.json.DjangoJSONEncoder, help_text="Line items: [{type, description, quantity, unit_price, amount}]")),
                ("payment_method", models.CharField(blank=True, help_text="Payment method", max_length=50)),
                ("gateway", models.CharField(default="stripe", help_text="Payment gateway", max_length=50)),
                ("gateway_transaction_id", models.CharField(blank=True, help_text="Gateway reference (PaymentIntent/refund id)", max_length=255)),
                ("failure_reason", models.TextField(blank=True, help_text="Why the payment failed")),
                ("retry_count", models.PositiveIntegerField(default=0, help_text="Failed attempts recorded")),
                ("refunded_amount", models.DecimalField(decimal_places=2, default=Decimal("0"), help_text="Total refunded", max_digits=12)),
                ("billing_period_start", models.DateTimeField(blank=True, help_text="Period start", null=True)),
                ("billing_period_end", models.DateTimeField(blank=True, help_text="Period end", null=True)),
                ("source", models.CharField(choices=[("web", "Web"), ("admin", "Admin"), ("api", "API"), ("auto_renewal", "Auto Renewal"), ("webhook", "Webhook")], default="web", help_text="Origin", max_length=20)),
                ("metadata", models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder, help_text="Extra metadata")),
                ("processed_at", models.DateTimeField(blank=True, help_text="When completed", null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True, help_text="Timestamp when the transaction was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when the transaction was last updated")),
                ("addon", models.ForeignKey(help_text="Catalog add-on being paid for", on_delete=django.db.models.deletion.PROTECT, related_name="transactions", to="addons.addon")),
                ("tenant", models.ForeignKey(help_text="Tenant being charged", on_delete=django.db.models.deletion.CASCADE, related_name="addon_transactions", to="core.tenant")),
                ("tenant_addon", models.ForeignKey(blank=True, help_text="Add-on instance being paid for", null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="transactions", to="addons.tenantaddon")),
            ],
            options={
                "verbose_name": "Add-on Transaction",
                "verbose_name_plural": "Add-on Transactions",
                "db_table": "addon_transactions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["tenant", "-created_at"], name="addon_txn_tenant_idx"),
                    models.Index(fields=["type", "status"], name="addon_txn_type_status_idx"),
                    models.Index(fields=["gateway_transaction_id"], name="addon_txn_gateway_idx"),
                ],
            },
        ),
    ]
