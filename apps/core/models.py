"""
Core models for the add-on billing platform.
"""

import uuid

from django.db import models
from django.utils.text import slugify


class Tenant(models.Model):
    """
    Core tenant model for multi-tenancy.

    Each tenant represents a customer organization subscribed to the platform.
    The tenant row also carries the denormalized entitlement snapshot produced
    by the add-on aggregator so feature gates never aggregate on the read path.
    """

    # Status choices
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"

    STATUS_CHOICES = [
        (ACTIVE, "Active"),
        (SUSPENDED, "Suspended"),
    ]

    # Primary key as UUID for security and scalability
    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the tenant",
    )

    # Company information
    company_name = models.CharField(max_length=255, help_text="Name of the tenant business")

    slug = models.SlugField(
        unique=True, max_length=255, help_text="URL-friendly identifier for the tenant"
    )

    region = models.CharField(
        max_length=20,
        blank=True,
        help_text="Pricing region code used for regional add-on pricing (e.g., 'IN', 'EU')",
    )

    # Status tracking
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=ACTIVE,
        help_text="Current operational status of the tenant",
    )

    # Payment gateway integration
    stripe_customer_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stripe customer ID used when charging add-ons",
    )

    stripe_payment_method_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Default Stripe payment method for off-session add-on charges",
    )

    # Entitlement snapshot
    effective_features = models.JSONField(
        default=dict,
        blank=True,
        help_text="Effective feature/limit map (base plan merged with active add-ons)",
    )

    entitlements_updated_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Timestamp when the effective feature map was last recomputed",
    )

    # Timestamps
    created_at = models.DateTimeField(
        auto_now_add=True, help_text="Timestamp when the tenant was created"
    )

    updated_at = models.DateTimeField(
        auto_now=True, help_text="Timestamp when the tenant was last updated"
    )

    class Meta:
        db_table = "tenants"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="tenant_status_idx"),
            models.Index(fields=["slug"], name="tenant_slug_idx"),
        ]
        verbose_name = "Tenant"
        verbose_name_plural = "Tenants"

    def __str__(self):
        return f"{self.company_name} ({self.status})"

    def save(self, *args, **kwargs):
        """
        Override save to auto-generate slug from company_name if not provided.
        """
        if not self.slug:
            self.slug = slugify(self.company_name)
            # Ensure uniqueness by appending UUID if slug already exists
            if Tenant.objects.filter(slug=self.slug).exists():
                self.slug = f"{self.slug}-{str(uuid.uuid4())[:8]}"
        super().save(*args, **kwargs)

    def is_active(self):
        """Check if tenant is in active status."""
        return self.status == self.ACTIVE

    def get_plan(self):
        """Return the tenant's subscription plan, or None without a subscription."""
        subscription = getattr(self, "subscription", None)
        return subscription.plan if subscription else None

    def get_base_features(self):
        """
        Base-plan feature map for this tenant with per-tenant overrides applied.

        Tenants without a subscription get an empty base map.
        """
        try:
            subscription = self.subscription
        except TenantSubscription.DoesNotExist:
            return {}
        return subscription.get_base_features()

    def has_feature(self, key):
        """Check a feature gate against the stored entitlement snapshot."""
        from apps.addons.entitlements import has_feature

        return has_feature(self, key)

    def get_feature_limit(self, key):
        """Get a numeric limit from the stored entitlement snapshot (-1 = unlimited)."""
        from apps.addons.entitlements import get_limit

        return get_limit(self, key)

    def is_limit_exceeded(self, key, current_count):
        """Check whether current_count has reached the effective limit for key."""
        from apps.addons.entitlements import is_limit_exceeded

        return is_limit_exceeded(self, key, current_count)


class SubscriptionPlan(models.Model):
    """
    Subscription plan model defining pricing and base features.

    The plan's feature map is the starting point for every tenant's
    entitlements: boolean keys are feature gates, integer keys are limits
    with -1 meaning unlimited.
    """

    # Billing cycle choices
    BILLING_MONTHLY = "monthly"
    BILLING_YEARLY = "yearly"

    BILLING_CYCLE_CHOICES = [
        (BILLING_MONTHLY, "Monthly"),
        (BILLING_YEARLY, "Yearly"),
    ]

    # Status choices
    STATUS_ACTIVE = "active"
    STATUS_ARCHIVED = "archived"

    STATUS_CHOICES = [
        (STATUS_ACTIVE, "Active"),
        (STATUS_ARCHIVED, "Archived"),
    ]

    # Primary key
    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the subscription plan",
    )

    # Plan details
    name = models.CharField(
        max_length=100,
        unique=True,
        help_text="Plan name (e.g., 'basic', 'professional', 'enterprise')",
    )

    description = models.TextField(
        blank=True,
        help_text="Detailed description of the plan features",
    )

    # Pricing
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Plan price in the platform currency",
    )

    billing_cycle = models.CharField(
        max_length=20,
        choices=BILLING_CYCLE_CHOICES,
        default=BILLING_MONTHLY,
        help_text="Billing frequency for this plan",
    )

    # Base features
    features = models.JSONField(
        default=dict,
        blank=True,
        help_text="Base feature map, e.g. {'max_branches': 2, 'api_access': false}",
    )

    # Plan status
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_ACTIVE,
        help_text="Plan status (active plans can be assigned to tenants)",
    )

    # Timestamps
    created_at = models.DateTimeField(
        auto_now_add=True,
        help_text="Timestamp when the plan was created",
    )

    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="Timestamp when the plan was last updated",
    )

    class Meta:
        db_table = "subscription_plans"
        ordering = ["name"]
        verbose_name = "Subscription Plan"
        verbose_name_plural = "Subscription Plans"
        indexes = [
            models.Index(fields=["status"], name="plan_status_idx"),
        ]

    def __str__(self):
        return f"{self.name} ({self.price}/{self.billing_cycle})"

    def is_active(self):
        """Check if plan is active."""
        return self.status == self.STATUS_ACTIVE


class TenantSubscription(models.Model):
    """
    Tenant subscription model linking tenants to subscription plans.

    Allows per-tenant feature overrides on top of the plan defaults.
    """

    # Subscription status choices
    STATUS_ACTIVE = "active"
    STATUS_TRIAL = "trial"
    STATUS_PAST_DUE = "past_due"
    STATUS_CANCELLED = "cancelled"

    STATUS_CHOICES = [
        (STATUS_ACTIVE, "Active"),
        (STATUS_TRIAL, "Trial"),
        (STATUS_PAST_DUE, "Past Due"),
        (STATUS_CANCELLED, "Cancelled"),
    ]

    # Primary key
    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the subscription",
    )

    # Relationships
    tenant = models.OneToOneField(
        Tenant,
        on_delete=models.CASCADE,
        related_name="subscription",
        help_text="Tenant that owns this subscription",
    )

    plan = models.ForeignKey(
        SubscriptionPlan,
        on_delete=models.PROTECT,
        related_name="subscriptions",
        help_text="Subscription plan for this tenant",
    )

    # Subscription status
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_ACTIVE,
        help_text="Current subscription status",
    )

    # Feature overrides
    # These override the plan defaults for this specific tenant
    feature_overrides = models.JSONField(
        default=dict,
        blank=True,
        help_text="Per-tenant overrides of plan features (missing key = use plan default)",
    )

    # Timestamps
    created_at = models.DateTimeField(
        auto_now_add=True,
        help_text="Timestamp when the subscription was created",
    )

    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="Timestamp when the subscription was last updated",
    )

    class Meta:
        db_table = "tenant_subscriptions"
        ordering = ["-created_at"]
        verbose_name = "Tenant Subscription"
        verbose_name_plural = "Tenant Subscriptions"
        indexes = [
            models.Index(fields=["status"], name="subscription_status_idx"),
            models.Index(fields=["plan", "status"], name="subscription_plan_status_idx"),
        ]

    def __str__(self):
        return f"{self.tenant.company_name} - {self.plan.name} ({self.status})"

    def get_base_features(self):
        """Get effective base features (override or plan default)."""
        features = dict(self.plan.features or {})
        features.update(self.feature_overrides or {})
        return features

    def is_active(self):
        """Check if subscription is active."""
        return self.status == self.STATUS_ACTIVE
