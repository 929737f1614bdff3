"""
Add-on catalog, per-tenant add-on instances and their billing history.

A TenantAddOn moves through its lifecycle only via the django-fsm transitions
declared below; the status field is protected against direct assignment.
"""

import hashlib
import uuid
from decimal import Decimal

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.db.models import F, Q
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from dateutil.relativedelta import relativedelta
from django_fsm import FSMField, transition

from apps.addons.conf import default_currency, get_setting
from apps.addons.exceptions import ImmutableRecordError

# Import transaction models to register them with Django
from apps.addons.transaction_models import AddOnTransaction  # noqa: F401
from apps.core.models import Tenant

ZERO = Decimal("0")


def _to_decimal(value):
    if value is None or value == "":
        return None
    return Decimal(str(value))


class AddOn(models.Model):
    """
    Catalog definition of a purchasable add-on.

    Catalog entries are managed by platform administrators and are read-only
    from the billing engine's perspective. Feature grants and capacity
    increments declared here feed the entitlement aggregator.
    """

    # Category choices
    CATEGORY_CAPACITY = "capacity"
    CATEGORY_FEATURE = "feature"
    CATEGORY_USAGE = "usage"
    CATEGORY_BRANDING = "branding"
    CATEGORY_INTEGRATION = "integration"
    CATEGORY_SUPPORT = "support"

    CATEGORY_CHOICES = [
        (CATEGORY_CAPACITY, "Capacity"),
        (CATEGORY_FEATURE, "Feature"),
        (CATEGORY_USAGE, "Usage"),
        (CATEGORY_BRANDING, "Branding"),
        (CATEGORY_INTEGRATION, "Integration"),
        (CATEGORY_SUPPORT, "Support"),
    ]

    # Status choices
    STATUS_DRAFT = "draft"
    STATUS_ACTIVE = "active"
    STATUS_HIDDEN = "hidden"
    STATUS_DEPRECATED = "deprecated"

    STATUS_CHOICES = [
        (STATUS_DRAFT, "Draft"),
        (STATUS_ACTIVE, "Active"),
        (STATUS_HIDDEN, "Hidden"),
        (STATUS_DEPRECATED, "Deprecated"),
    ]

    # Billing cycle choices
    BILLING_MONTHLY = "monthly"
    BILLING_YEARLY = "yearly"
    BILLING_ONE_TIME = "one_time"
    BILLING_USAGE_BASED = "usage_based"

    BILLING_CYCLE_CHOICES = [
        (BILLING_MONTHLY, "Monthly"),
        (BILLING_YEARLY, "Yearly"),
        (BILLING_ONE_TIME, "One-time"),
        (BILLING_USAGE_BASED, "Usage-based"),
    ]

    RECURRING_CYCLES = (BILLING_MONTHLY, BILLING_YEARLY)

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the add-on",
    )

    name = models.CharField(max_length=100, help_text="Internal add-on name")

    slug = models.SlugField(
        unique=True, max_length=120, help_text="URL-friendly identifier for the add-on"
    )

    display_name = models.CharField(max_length=150, help_text="Name shown to tenants")

    description = models.TextField(blank=True, help_text="Description of the add-on")

    category = models.CharField(
        max_length=20,
        choices=CATEGORY_CHOICES,
        default=CATEGORY_FEATURE,
        help_text="Add-on category",
    )

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_DRAFT,
        help_text="Catalog status (only active add-ons can be purchased)",
    )

    billing_cycle = models.CharField(
        max_length=20,
        choices=BILLING_CYCLE_CHOICES,
        default=BILLING_MONTHLY,
        help_text="Default billing cycle offered for this add-on",
    )

    # Pricing
    monthly_price = models.DecimalField(
        max_digits=12, decimal_places=2, default=ZERO, help_text="Monthly price"
    )

    yearly_price = models.DecimalField(
        max_digits=12, decimal_places=2, default=ZERO, help_text="Yearly price"
    )

    one_time_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=ZERO,
        help_text="One-time price (also the price of a usage credit pack)",
    )

    currency = models.CharField(max_length=3, default="INR", help_text="ISO currency code")

    regional_pricing = models.JSONField(
        default=dict,
        blank=True,
        help_text="Per-region overrides, e.g. {'EU': {'monthly': 12, 'currency': 'EUR'}}",
    )

    variants = models.JSONField(
        default=list,
        blank=True,
        help_text=(
            "Pricing variants: [{name, monthly, yearly, one_time, is_active, "
            "start_date, end_date, target_percentage}]"
        ),
    )

    # Configuration
    features = models.JSONField(
        default=list,
        blank=True,
        help_text="Feature grants: [{'key': 'api_access', 'value': true}]",
    )

    capacity = models.JSONField(
        default=dict,
        blank=True,
        help_text="Capacity increment: {'feature': 'max_branches', 'increment': 3, 'unit': 'branch'}",
    )

    usage_config = models.JSONField(
        default=dict,
        blank=True,
        help_text=(
            "Usage credits: {'type': 'sms', 'amount': 1000, 'unit': 'message', "
            "'auto_renew': false, 'low_balance_threshold': 10}"
        ),
    )

    # Eligibility
    eligible_plans = models.JSONField(
        default=list, blank=True, help_text="Plan names allowed to buy this add-on (empty = all)"
    )

    excluded_plans = models.JSONField(
        default=list, blank=True, help_text="Plan names not allowed to buy this add-on"
    )

    required_features = models.JSONField(
        default=list, blank=True, help_text="Features the tenant must already have"
    )

    conflicting_features = models.JSONField(
        default=list, blank=True, help_text="Features that prevent purchasing this add-on"
    )

    available_from = models.DateTimeField(
        null=True, blank=True, help_text="Add-on is not purchasable before this time"
    )

    available_until = models.DateTimeField(
        null=True, blank=True, help_text="Add-on is not purchasable after this time"
    )

    trial_days = models.PositiveIntegerField(
        default=0, help_text="Length of the free trial in days (0 = no trial)"
    )

    max_quantity = models.PositiveIntegerField(
        default=1, help_text="Maximum quantity a tenant can hold"
    )

    # Payment gateway integration
    stripe_monthly_price_id = models.CharField(
        max_length=255, blank=True, help_text="Stripe price ID for monthly billing"
    )

    stripe_yearly_price_id = models.CharField(
        max_length=255, blank=True, help_text="Stripe price ID for yearly billing"
    )

    # Analytics
    purchase_count = models.PositiveIntegerField(
        default=0, help_text="Number of completed purchases"
    )

    total_revenue = models.DecimalField(
        max_digits=14, decimal_places=2, default=ZERO, help_text="Revenue from purchases"
    )

    created_at = models.DateTimeField(
        auto_now_add=True, help_text="Timestamp when the add-on was created"
    )

    updated_at = models.DateTimeField(
        auto_now=True, help_text="Timestamp when the add-on was last updated"
    )

    class Meta:
        db_table = "addons"
        ordering = ["category", "display_name"]
        indexes = [
            models.Index(fields=["status"], name="addon_status_idx"),
            models.Index(fields=["category", "status"], name="addon_category_status_idx"),
        ]
        verbose_name = "Add-on"
        verbose_name_plural = "Add-ons"

    def __str__(self):
        return self.display_name

    def is_available(self, now=None):
        """Check if the add-on is active and inside its availability window."""
        now = now or timezone.now()
        if self.status != self.STATUS_ACTIVE:
            return False
        if self.available_from and now < self.available_from:
            return False
        if self.available_until and now > self.available_until:
            return False
        return True

    def is_eligible_for_tenant(self, tenant, now=None):
        """
        Check whether a tenant may purchase this add-on.

        Returns:
            Tuple of (eligible, reason); reason is None when eligible
        """
        from apps.addons.entitlements import is_enabled

        if not self.is_available(now):
            return False, "Add-on is not currently available"

        plan = tenant.get_plan()
        plan_name = plan.name if plan else None

        if self.eligible_plans and plan_name not in self.eligible_plans:
            return False, f"Add-on is not available for the '{plan_name}' plan"

        if plan_name and plan_name in (self.excluded_plans or []):
            return False, f"Add-on is excluded for the '{plan_name}' plan"

        features = tenant.effective_features or tenant.get_base_features()

        for key in self.required_features or []:
            if not is_enabled(features.get(key)):
                return False, f"Requires feature '{key}'"

        for key in self.conflicting_features or []:
            if is_enabled(features.get(key)):
                return False, f"Conflicts with feature '{key}'"

        return True, None

    def get_pricing_for_region(self, region=None):
        """Get base prices with any regional override applied."""
        pricing = {
            "monthly": self.monthly_price,
            "yearly": self.yearly_price,
            "one_time": self.one_time_price,
            "currency": self.currency,
            "region": "",
        }
        regional = (self.regional_pricing or {}).get(region) if region else None
        if regional:
            for key in ("monthly", "yearly", "one_time"):
                if regional.get(key) is not None:
                    pricing[key] = _to_decimal(regional[key])
            pricing["currency"] = regional.get("currency", self.currency)
            pricing["region"] = region
        return pricing

    def get_active_variant(self, now=None, tenant=None):
        """
        Get the pricing variant currently in effect.

        Variants with a target_percentage below 100 only apply to the share of
        tenants whose id hashes into that bucket.
        """
        now = now or timezone.now()
        for variant in self.variants or []:
            if not variant.get("is_active"):
                continue
            start = parse_datetime(variant["start_date"]) if variant.get("start_date") else None
            end = parse_datetime(variant["end_date"]) if variant.get("end_date") else None
            if start and now < start:
                continue
            if end and now > end:
                continue
            target = variant.get("target_percentage", 100)
            if tenant is not None and target < 100:
                bucket = int(hashlib.sha256(str(tenant.pk).encode()).hexdigest(), 16) % 100
                if bucket >= target:
                    continue
            return variant
        return None

    def resolve_pricing(self, region=None, now=None, tenant=None):
        """Prices a tenant would pay right now: regional prices overlaid with the active variant."""
        pricing = self.get_pricing_for_region(region)
        pricing["variant"] = ""
        variant = self.get_active_variant(now=now, tenant=tenant)
        if variant:
            for key in ("monthly", "yearly", "one_time"):
                if variant.get(key) is not None:
                    pricing[key] = _to_decimal(variant[key])
            pricing["variant"] = variant.get("name", "")
        return pricing

    def price_for_cycle(self, billing_cycle, pricing=None):
        """Unit price for a billing cycle; usage-based cycles are priced per credit pack."""
        pricing = pricing or self.get_pricing_for_region()
        key = {
            self.BILLING_MONTHLY: "monthly",
            self.BILLING_YEARLY: "yearly",
            self.BILLING_ONE_TIME: "one_time",
            self.BILLING_USAGE_BASED: "one_time",
        }.get(billing_cycle)
        if key is None:
            return ZERO
        return pricing.get(key) or ZERO

    def feature_grants(self):
        """Raw feature values granted by one unit of this add-on."""
        grants = {}
        for feature in self.features or []:
            key = feature.get("key")
            if key:
                grants[key] = feature.get("value", True)
        capacity = self.capacity or {}
        if capacity.get("feature"):
            grants[capacity["feature"]] = int(capacity.get("increment", 0))
        return grants

    def usage_credit_amount(self):
        return int((self.usage_config or {}).get("amount", 0))

    def low_balance_threshold(self):
        return int(
            (self.usage_config or {}).get(
                "low_balance_threshold", get_setting("DEFAULT_LOW_BALANCE_THRESHOLD")
            )
        )

    def record_purchase(self, amount):
        """Atomically bump purchase analytics."""
        AddOn.objects.filter(pk=self.pk).update(
            purchase_count=F("purchase_count") + 1,
            total_revenue=F("total_revenue") + amount,
        )


class TenantAddOnQuerySet(models.QuerySet):
    def live(self):
        return self.filter(is_deleted=False)

    def for_tenant(self, tenant_id):
        return self.live().filter(tenant_id=tenant_id)

    def usable(self):
        return self.live().filter(status__in=TenantAddOn.USABLE_STATUSES)

    def billed_locally(self):
        # Stripe-managed subscriptions are billed by Stripe invoices
        return self.live().filter(stripe_subscription_id="")

    def due_for_billing(self, now):
        # Instances with failed attempts are owned by the retry duty
        return self.billed_locally().filter(
            status=TenantAddOn.STATUS_ACTIVE,
            billing_cycle__in=AddOn.RECURRING_CYCLES,
            next_billing_date__lte=now,
            failed_attempts=0,
        )

    def due_for_retry(self, now, max_retries):
        return self.billed_locally().filter(
            status=TenantAddOn.STATUS_ACTIVE,
            failed_attempts__gt=0,
            failed_attempts__lt=max_retries,
            next_retry_at__lte=now,
        )


class TenantAddOn(models.Model):
    """
    One tenant's subscription to one add-on.

    This is the system of record for the add-on lifecycle, billing schedule,
    pricing snapshot, usage counters and retry state.
    """

    # Status choices
    STATUS_PENDING_PAYMENT = "pending_payment"
    STATUS_TRIAL = "trial"
    STATUS_ACTIVE = "active"
    STATUS_SUSPENDED = "suspended"
    STATUS_CANCELLED = "cancelled"
    STATUS_EXPIRED = "expired"

    STATUS_CHOICES = [
        (STATUS_PENDING_PAYMENT, "Pending Payment"),
        (STATUS_TRIAL, "Trial"),
        (STATUS_ACTIVE, "Active"),
        (STATUS_SUSPENDED, "Suspended"),
        (STATUS_CANCELLED, "Cancelled"),
        (STATUS_EXPIRED, "Expired"),
    ]

    USABLE_STATUSES = (STATUS_ACTIVE, STATUS_TRIAL)
    TERMINAL_STATUSES = (STATUS_CANCELLED, STATUS_EXPIRED)
    NON_TERMINAL_STATUSES = (
        STATUS_PENDING_PAYMENT,
        STATUS_TRIAL,
        STATUS_ACTIVE,
        STATUS_SUSPENDED,
    )

    BILLING_MONTHLY = AddOn.BILLING_MONTHLY
    BILLING_YEARLY = AddOn.BILLING_YEARLY
    BILLING_ONE_TIME = AddOn.BILLING_ONE_TIME
    BILLING_USAGE_BASED = AddOn.BILLING_USAGE_BASED

    # Actor choices
    ACTOR_SUPER_ADMIN = "SuperAdmin"
    ACTOR_SALES_USER = "SalesUser"
    ACTOR_TENANT_ADMIN = "TenantAdmin"
    ACTOR_SYSTEM = "System"

    ACTOR_CHOICES = [
        (ACTOR_SUPER_ADMIN, "Super Admin"),
        (ACTOR_SALES_USER, "Sales User"),
        (ACTOR_TENANT_ADMIN, "Tenant Admin"),
        (ACTOR_SYSTEM, "System"),
    ]

    # Assignment method choices
    METHOD_PURCHASE = "purchase"
    METHOD_ADMIN_ASSIGN = "admin_assign"
    METHOD_SALES_ASSIGN = "sales_assign"
    METHOD_TRIAL = "trial"
    METHOD_PROMOTION = "promotion"

    ASSIGNMENT_METHOD_CHOICES = [
        (METHOD_PURCHASE, "Purchase"),
        (METHOD_ADMIN_ASSIGN, "Admin Assignment"),
        (METHOD_SALES_ASSIGN, "Sales Assignment"),
        (METHOD_TRIAL, "Trial"),
        (METHOD_PROMOTION, "Promotion"),
    ]

    # Discount choices
    DISCOUNT_PERCENTAGE = "percentage"
    DISCOUNT_FIXED = "fixed"

    DISCOUNT_TYPE_CHOICES = [
        (DISCOUNT_PERCENTAGE, "Percentage"),
        (DISCOUNT_FIXED, "Fixed Amount"),
    ]

    # Credit reset cadence
    RESET_CHOICES = [
        ("daily", "Daily"),
        ("weekly", "Weekly"),
        ("monthly", "Monthly"),
        ("yearly", "Yearly"),
    ]

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the add-on instance",
    )

    # Identity
    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name="addons",
        help_text="Tenant that holds this add-on",
    )

    addon = models.ForeignKey(
        AddOn,
        on_delete=models.PROTECT,
        related_name="instances",
        help_text="Catalog add-on this instance subscribes to",
    )

    quantity = models.PositiveIntegerField(default=1, help_text="Number of units held")

    # Lifecycle
    status = FSMField(
        default=STATUS_PENDING_PAYMENT,
        choices=STATUS_CHOICES,
        protected=True,
        help_text="Current lifecycle status (changed only through transitions)",
    )

    activated_at = models.DateTimeField(
        null=True, blank=True, help_text="When the add-on became active"
    )

    trial_ends_at = models.DateTimeField(
        null=True, blank=True, help_text="When the trial period ends"
    )

    expires_at = models.DateTimeField(
        null=True, blank=True, help_text="Expiry time for non-recurring add-ons"
    )

    cancelled_at = models.DateTimeField(
        null=True, blank=True, help_text="When the add-on was cancelled"
    )

    suspended_at = models.DateTimeField(
        null=True, blank=True, help_text="When the add-on was suspended"
    )

    suspension_reason = models.TextField(blank=True, help_text="Why the add-on was suspended")

    # Billing configuration
    billing_cycle = models.CharField(
        max_length=20,
        choices=AddOn.BILLING_CYCLE_CHOICES,
        default=AddOn.BILLING_MONTHLY,
        help_text="Billing cycle for this instance",
    )

    next_billing_date = models.DateTimeField(
        null=True, blank=True, help_text="Next recurring charge date"
    )

    # Pricing snapshot captured at purchase time
    snapshot_monthly_price = models.DecimalField(
        max_digits=12, decimal_places=2, null=True, blank=True, help_text="Monthly price at purchase"
    )

    snapshot_yearly_price = models.DecimalField(
        max_digits=12, decimal_places=2, null=True, blank=True, help_text="Yearly price at purchase"
    )

    snapshot_one_time_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="One-time price at purchase",
    )

    snapshot_currency = models.CharField(
        max_length=3, default="INR", help_text="Currency of the pricing snapshot"
    )

    snapshot_variant = models.CharField(
        max_length=100, blank=True, help_text="Pricing variant used at purchase"
    )

    snapshot_region = models.CharField(
        max_length=20, blank=True, help_text="Pricing region used at purchase"
    )

    snapshot_captured_at = models.DateTimeField(
        null=True, blank=True, help_text="When the pricing snapshot was captured"
    )

    # Configuration overrides
    custom_pricing = models.JSONField(
        null=True,
        blank=True,
        help_text="Custom prices overriding the snapshot: {'monthly': 50, 'yearly': 500}",
    )

    custom_config = models.JSONField(
        default=dict,
        blank=True,
        help_text="Custom feature values overriding the catalog grants",
    )

    custom_limits = models.JSONField(
        default=dict,
        blank=True,
        help_text="Custom capacity limits keyed by feature",
    )

    discount_type = models.CharField(
        max_length=20, choices=DISCOUNT_TYPE_CHOICES, blank=True, help_text="Discount type"
    )

    discount_value = models.DecimalField(
        max_digits=12, decimal_places=2, default=ZERO, help_text="Discount percentage or amount"
    )

    discount_reason = models.CharField(max_length=255, blank=True, help_text="Why the discount")

    discount_valid_until = models.DateTimeField(
        null=True, blank=True, help_text="Discount stops applying after this time"
    )

    # Usage tracking
    total_used = models.PositiveIntegerField(default=0, help_text="Credits consumed in total")

    remaining_credits = models.IntegerField(default=0, help_text="Credits left to consume")

    daily_usage = models.JSONField(
        default=list,
        blank=True,
        help_text="Rolling daily usage window: [{'date', 'used', 'remaining'}]",
    )

    low_balance_alerted = models.BooleanField(
        default=False, help_text="Whether a low balance alert was raised for this episode"
    )

    last_alert_sent = models.DateTimeField(
        null=True, blank=True, help_text="When the last low balance alert was sent"
    )

    auto_renew_credits = models.BooleanField(
        default=False, help_text="Whether credits renew automatically when low"
    )

    low_balance_threshold = models.PositiveIntegerField(
        default=10, help_text="Remaining credits at or below which an alert fires"
    )

    last_reset = models.DateTimeField(null=True, blank=True, help_text="Last usage reset")

    next_reset = models.DateTimeField(null=True, blank=True, help_text="Next usage reset")

    reset_frequency = models.CharField(
        max_length=10, choices=RESET_CHOICES, blank=True, help_text="Usage reset cadence"
    )

    # Retry state
    auto_renew = models.BooleanField(
        default=True, help_text="Whether the add-on renews (and trials convert) automatically"
    )

    failed_attempts = models.PositiveIntegerField(
        default=0, help_text="Consecutive failed billing attempts"
    )

    last_failed_at = models.DateTimeField(
        null=True, blank=True, help_text="When the last billing attempt failed"
    )

    next_retry_at = models.DateTimeField(
        null=True, blank=True, help_text="When the next billing retry is due"
    )

    # Trial metadata
    is_trial_used = models.BooleanField(default=False, help_text="Whether a trial was consumed")

    trial_started_at = models.DateTimeField(null=True, blank=True, help_text="Trial start")

    trial_days = models.PositiveIntegerField(default=0, help_text="Trial length in days")

    # Assignment
    assigned_by = models.CharField(
        max_length=255, blank=True, help_text="Identifier of the actor who assigned the add-on"
    )

    assigned_by_model = models.CharField(
        max_length=20,
        choices=ACTOR_CHOICES,
        default=ACTOR_TENANT_ADMIN,
        help_text="Kind of actor who assigned the add-on",
    )

    assignment_method = models.CharField(
        max_length=20,
        choices=ASSIGNMENT_METHOD_CHOICES,
        default=METHOD_PURCHASE,
        help_text="How the add-on was obtained",
    )

    # Cancellation
    cancellation_reason = models.TextField(blank=True, help_text="Why the add-on was cancelled")

    cancelled_by = models.CharField(
        max_length=255, blank=True, help_text="Actor who cancelled the add-on"
    )

    cancellation_effective_date = models.DateTimeField(
        null=True, blank=True, help_text="When the cancellation takes effect"
    )

    refund_amount = models.DecimalField(
        max_digits=12, decimal_places=2, null=True, blank=True, help_text="Refund on cancellation"
    )

    refund_processed = models.BooleanField(
        default=False, help_text="Whether the cancellation refund was processed"
    )

    # Analytics
    total_spent = models.DecimalField(
        max_digits=14, decimal_places=2, default=ZERO, help_text="Total billed amount"
    )

    total_usage = models.PositiveIntegerField(default=0, help_text="Lifetime usage counter")

    last_used_at = models.DateTimeField(null=True, blank=True, help_text="Last consumption")

    activation_source = models.CharField(
        max_length=50, blank=True, help_text="Where the activation originated (web, admin, api)"
    )

    # Payment gateway integration
    stripe_subscription_id = models.CharField(
        max_length=255, blank=True, help_text="Stripe subscription ID, if billed by Stripe"
    )

    notes = models.JSONField(
        default=list,
        blank=True,
        encoder=DjangoJSONEncoder,
        help_text="Internal notes: [{'text', 'author', 'created_at'}]",
    )

    # Soft delete
    is_deleted = models.BooleanField(default=False, help_text="Archived (soft deleted)")

    deleted_at = models.DateTimeField(null=True, blank=True, help_text="When archived")

    deleted_by_model = models.CharField(
        max_length=20, choices=ACTOR_CHOICES, blank=True, help_text="Who archived the instance"
    )

    created_at = models.DateTimeField(
        auto_now_add=True, help_text="Timestamp when the instance was created"
    )

    updated_at = models.DateTimeField(
        auto_now=True, help_text="Timestamp when the instance was last updated"
    )

    objects = TenantAddOnQuerySet.as_manager()

    class Meta:
        db_table = "tenant_addons"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "addon"],
                condition=Q(is_deleted=False),
                name="tenant_addon_unique_live",
            ),
            models.CheckConstraint(
                condition=Q(remaining_credits__gte=0),
                name="tenant_addon_credits_non_negative",
            ),
            models.CheckConstraint(
                condition=Q(quantity__gte=1),
                name="tenant_addon_quantity_positive",
            ),
        ]
        indexes = [
            models.Index(fields=["tenant", "status"], name="tenant_addon_status_idx"),
            models.Index(fields=["status", "next_billing_date"], name="tenant_addon_billing_idx"),
            models.Index(fields=["status", "next_retry_at"], name="tenant_addon_retry_idx"),
            models.Index(fields=["status", "trial_ends_at"], name="tenant_addon_trial_idx"),
            models.Index(fields=["stripe_subscription_id"], name="tenant_addon_stripe_sub_idx"),
        ]
        verbose_name = "Tenant Add-on"
        verbose_name_plural = "Tenant Add-ons"

    def __str__(self):
        return f"{self.tenant_id} - {self.addon_id} ({self.status})"

    def save(self, *args, **kwargs):
        """
        Fill in schedule defaults before saving.

        Recurring instances get a next billing date one cycle out and
        usage-based instances get their reset anchor.
        """
        now = timezone.now()
        if self.is_recurring() and self.next_billing_date is None:
            self.next_billing_date = now + self.cycle_delta()
        if self.is_usage_based() and self.last_reset is None:
            self.last_reset = now
        super().save(*args, **kwargs)

    # Status helpers

    def is_active(self):
        return self.status == self.STATUS_ACTIVE

    def is_trial(self):
        return self.status == self.STATUS_TRIAL

    def is_suspended(self):
        return self.status == self.STATUS_SUSPENDED

    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def is_recurring(self):
        return self.billing_cycle in AddOn.RECURRING_CYCLES

    def is_usage_based(self):
        return self.billing_cycle == self.BILLING_USAGE_BASED

    def is_usable(self, now=None):
        """Active or trial, not archived, and neither expired nor past trial end."""
        now = now or timezone.now()
        if self.is_deleted or self.status not in self.USABLE_STATUSES:
            return False
        if self.expires_at and self.expires_at <= now:
            return False
        if self.is_trial() and self.trial_ends_at and self.trial_ends_at <= now:
            return False
        return True

    # Lifecycle transitions

    @transition(
        field=status, source=[STATUS_PENDING_PAYMENT, STATUS_TRIAL], target=STATUS_ACTIVE
    )
    def activate(self, now=None):
        """Activate after payment, or convert a trial to paid."""
        if not self.activated_at:
            self.activated_at = now or timezone.now()

    @transition(field=status, source=STATUS_ACTIVE, target=STATUS_SUSPENDED)
    def suspend(self, reason="", now=None):
        """Suspend an active add-on; its capabilities stop contributing to entitlements."""
        self.suspended_at = now or timezone.now()
        self.suspension_reason = reason or ""

    @transition(field=status, source=STATUS_SUSPENDED, target=STATUS_ACTIVE)
    def reactivate(self, now=None):
        """Reactivate a suspended add-on and clear its retry state."""
        self.suspended_at = None
        self.suspension_reason = ""
        self.failed_attempts = 0
        self.last_failed_at = None
        self.next_retry_at = None

    @transition(field=status, source=list(NON_TERMINAL_STATUSES), target=STATUS_CANCELLED)
    def cancel(self, reason, cancelled_by="", now=None, effective_date=None, refund_amount=None):
        """Cancel the add-on, recording who cancelled it and why."""
        now = now or timezone.now()
        self.cancelled_at = now
        self.cancellation_reason = reason
        self.cancelled_by = cancelled_by or ""
        self.cancellation_effective_date = effective_date or now
        self.refund_amount = refund_amount
        self.next_retry_at = None

    @transition(field=status, source=list(NON_TERMINAL_STATUSES), target=STATUS_EXPIRED)
    def expire(self, now=None):
        """Mark the add-on expired."""
        if self.expires_at is None:
            self.expires_at = now or timezone.now()
        self.next_retry_at = None

    # Pricing

    def capture_pricing_snapshot(self, pricing, now=None):
        """
        Store the prices in effect at purchase time.

        The snapshot is written once; later catalog price changes never
        reach existing subscribers.
        """
        if self.snapshot_captured_at is not None:
            raise ImmutableRecordError(f"Pricing snapshot already captured for {self.pk}")
        self.snapshot_monthly_price = pricing.get("monthly")
        self.snapshot_yearly_price = pricing.get("yearly")
        self.snapshot_one_time_price = pricing.get("one_time")
        self.snapshot_currency = pricing.get("currency") or default_currency()
        self.snapshot_variant = pricing.get("variant", "")
        self.snapshot_region = pricing.get("region", "")
        self.snapshot_captured_at = now or timezone.now()

    def effective_pricing(self):
        """Custom pricing override if present, else the purchase-time snapshot."""
        if self.custom_pricing:
            return {
                "monthly": _to_decimal(self.custom_pricing.get("monthly")),
                "yearly": _to_decimal(self.custom_pricing.get("yearly")),
                "one_time": _to_decimal(self.custom_pricing.get("one_time")),
                "currency": self.custom_pricing.get("currency", self.snapshot_currency),
            }
        return {
            "monthly": self.snapshot_monthly_price,
            "yearly": self.snapshot_yearly_price,
            "one_time": self.snapshot_one_time_price,
            "currency": self.snapshot_currency,
        }

    def has_active_discount(self, now=None):
        now = now or timezone.now()
        if not self.discount_type or not self.discount_value:
            return False
        return self.discount_valid_until is None or self.discount_valid_until > now

    def discount_for(self, amount, now=None):
        """Discount applicable to a charge of the given amount."""
        if not self.has_active_discount(now):
            return ZERO
        if self.discount_type == self.DISCOUNT_PERCENTAGE:
            discount = amount * self.discount_value / Decimal("100")
        else:
            discount = self.discount_value
        return min(discount, amount).quantize(Decimal("0.01"))

    # Billing schedule

    def cycle_delta(self):
        if self.billing_cycle == self.BILLING_MONTHLY:
            return relativedelta(months=1)
        if self.billing_cycle == self.BILLING_YEARLY:
            return relativedelta(years=1)
        return None

    def next_cycle_date(self, now=None):
        """Billing date one cycle after the current one (None for non-recurring)."""
        delta = self.cycle_delta()
        if delta is None:
            return None
        return (self.next_billing_date or now or timezone.now()) + delta

    def add_billing_record(self, **data):
        """
        Append a billing-history entry.

        Completed charges advance the next billing date by one cycle.
        """
        record = BillingRecord.objects.create(tenant_addon=self, **data)
        self.total_spent = (self.total_spent or ZERO) + (record.amount or ZERO)
        update_fields = ["total_spent", "updated_at"]
        if record.payment_status == BillingRecord.PAYMENT_COMPLETED and self.is_recurring():
            self.next_billing_date = self.next_cycle_date()
            update_fields.append("next_billing_date")
        self.save(update_fields=update_fields)
        return record

    def reset_retry_state(self):
        self.failed_attempts = 0
        self.last_failed_at = None
        self.next_retry_at = None

    def add_note(self, text, author="", now=None):
        """Append an internal note."""
        self.notes = list(self.notes or []) + [
            {"text": text, "author": author, "created_at": (now or timezone.now()).isoformat()}
        ]
        self.save(update_fields=["notes", "updated_at"])


class BillingRecord(models.Model):
    """
    Append-only billing history entry for an add-on instance.

    Records are never edited once written; corrections, refunds and credit
    grants are new records.
    """

    PAYMENT_PENDING = "pending"
    PAYMENT_COMPLETED = "completed"
    PAYMENT_FAILED = "failed"
    PAYMENT_REFUNDED = "refunded"

    PAYMENT_STATUS_CHOICES = [
        (PAYMENT_PENDING, "Pending"),
        (PAYMENT_COMPLETED, "Completed"),
        (PAYMENT_FAILED, "Failed"),
        (PAYMENT_REFUNDED, "Refunded"),
    ]

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the billing record",
    )

    tenant_addon = models.ForeignKey(
        TenantAddOn,
        on_delete=models.CASCADE,
        related_name="billing_history",
        help_text="Add-on instance this record belongs to",
    )

    transaction_id = models.CharField(
        max_length=100, help_text="Transaction reference (AddOnTransaction id or credit id)"
    )

    amount = models.DecimalField(
        max_digits=12, decimal_places=2, default=ZERO, help_text="Amount charged"
    )

    currency = models.CharField(max_length=3, default="INR", help_text="ISO currency code")

    period_start = models.DateTimeField(null=True, blank=True, help_text="Billing period start")

    period_end = models.DateTimeField(null=True, blank=True, help_text="Billing period end")

    payment_method = models.CharField(max_length=50, blank=True, help_text="Payment method")

    payment_status = models.CharField(
        max_length=20,
        choices=PAYMENT_STATUS_CHOICES,
        default=PAYMENT_PENDING,
        help_text="Payment status",
    )

    gateway_reference = models.CharField(
        max_length=255, blank=True, help_text="Payment gateway reference (e.g. PaymentIntent id)"
    )

    stripe_subscription_id = models.CharField(
        max_length=255, blank=True, help_text="Stripe subscription that produced this charge"
    )

    gateway_response = models.JSONField(
        default=dict, blank=True, encoder=DjangoJSONEncoder, help_text="Raw gateway response"
    )

    proration_amount = models.DecimalField(
        max_digits=12, decimal_places=2, null=True, blank=True, help_text="Proration amount"
    )

    proration_reason = models.CharField(max_length=255, blank=True, help_text="Proration reason")

    refund_amount = models.DecimalField(
        max_digits=12, decimal_places=2, null=True, blank=True, help_text="Refunded amount"
    )

    refund_reason = models.CharField(max_length=255, blank=True, help_text="Refund reason")

    refunded_at = models.DateTimeField(null=True, blank=True, help_text="When refunded")

    notes = models.TextField(blank=True, help_text="Free-form notes")

    processed_by_model = models.CharField(
        max_length=20,
        choices=TenantAddOn.ACTOR_CHOICES,
        default=TenantAddOn.ACTOR_SYSTEM,
        help_text="Kind of actor that processed this record",
    )

    created_at = models.DateTimeField(
        auto_now_add=True, help_text="Timestamp when the record was written"
    )

    class Meta:
        db_table = "tenant_addon_billing_records"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["tenant_addon", "-created_at"], name="billing_record_addon_idx"),
            models.Index(fields=["transaction_id"], name="billing_record_txn_idx"),
        ]
        verbose_name = "Billing Record"
        verbose_name_plural = "Billing Records"

    def __str__(self):
        return f"{self.transaction_id} {self.amount} {self.currency} ({self.payment_status})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError("Billing records are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("Billing records are append-only")
