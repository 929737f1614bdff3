import uuid

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Tenant",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for the tenant", primary_key=True, serialize=False)),
                ("company_name", models.CharField(help_text="Name of the tenant business", max_length=255)),
                ("slug", models.SlugField(help_text="URL-friendly identifier for the tenant", max_length=255, unique=True)),
                ("region", models.CharField(blank=True, help_text="Pricing region code used for regional add-on pricing (e.g., 'IN', 'EU')", max_length=20)),
                ("status", models.CharField(choices=[("ACTIVE", "Active"), ("SUSPENDED", "Suspended")], default="ACTIVE", help_text="Current operational status of the tenant", max_length=20)),
                ("stripe_customer_id", models.CharField(blank=True, help_text="Stripe customer ID used when charging add-ons", max_length=255)),
                ("stripe_payment_method_id", models.CharField(blank=True, help_text="Default Stripe payment method for off-session add-on charges", max_length=255)),
                ("effective_features", models.JSONField(blank=True, default=dict, help_text="Effective feature/limit map (base plan merged with active add-ons)")),
                ("entitlements_updated_at", models.DateTimeField(blank=True, help_text="Timestamp when the effective feature map was last recomputed", null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True, help_text="Timestamp when the tenant was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when the tenant was last updated")),
            ],
            options={
                "verbose_name": "Tenant",
                "verbose_name_plural": "Tenants",
                "db_table": "tenants",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status"], name="tenant_status_idx"),
                    models.Index(fields=["slug"], name="tenant_slug_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionPlan",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for the subscription plan", primary_key=True, serialize=False)),
                ("name", models.CharField(help_text="Plan name (e.g., 'basic', 'professional', 'enterprise')", max_length=100, unique=True)),
                ("description", models.TextField(blank=True, help_text="Detailed description of the plan features")),
                ("price", models.DecimalField(decimal_places=2, help_text="Plan price in the platform currency", max_digits=10)),
                ("billing_cycle", models.CharField(choices=[("monthly", "Monthly"), ("yearly", "Yearly")], default="monthly", help_text="Billing frequency for this plan", max_length=20)),
                ("features", models.JSONField(blank=True, default=dict, help_text="Base feature map, e.g. {'max_branches': 2, 'api_access': false}")),
                ("status", models.CharField(choices=[("active", "Active"), ("archived", "Archived")], default="active", help_text="Plan status (active plans can be assigned to tenants)", max_length=20)),
                ("created_at", models.DateTimeField(auto_now_add=True, help_text="Timestamp when the plan was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when the plan was last updated")),
            ],
            options={
                "verbose_name": "Subscription Plan",
                "verbose_name_plural": "Subscription Plans",
                "db_table": "subscription_plans",
                "ordering": ["name"],
                "indexes": [models.Index(fields=["status"], name="plan_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="TenantSubscription",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for the subscription", primary_key=True, serialize=False)),
                ("status", models.CharField(choices=[("active", "Active"), ("trial", "Trial"), ("past_due", "Past Due"), ("cancelled", "Cancelled")], default="active", help_text="Current subscription status", max_length=20)),
                ("feature_overrides", models.JSONField(blank=True, default=dict, help_text="Per-tenant overrides of plan features (missing key = use plan default)")),
                ("created_at", models.DateTimeField(auto_now_add=True, help_text="Timestamp when the subscription was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when the subscription was last updated")),
                ("plan", models.ForeignKey(help_text="Subscription plan for this tenant", on_delete=django.db.models.deletion.PROTECT, related_name="subscriptions", to="core.subscriptionplan")),
                ("tenant", models.OneToOneField(help_text="Tenant that owns this subscription", on_delete=django.db.models.deletion.CASCADE, related_name="subscription", to="core.tenant")),
            ],
            options={
                "verbose_name": "Tenant Subscription",
                "verbose_name_plural": "Tenant Subscriptions",
                "db_table": "tenant_subscriptions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status"], name="subscription_status_idx"),
                    models.Index(fields=["plan", "status"], name="subscription_plan_status_idx"),
                ],
            },
        ),
    ]
