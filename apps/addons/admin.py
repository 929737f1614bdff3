"""
Django admin configuration for add-on models.

The lifecycle status of a TenantAddOn is read-only here; it changes only
through the admin actions, which call the lifecycle services.
"""

from django.contrib import admin, messages
from django.utils.translation import gettext_lazy as _

from apps.addons import services
from apps.addons.exceptions import AddOnError
from apps.addons.models import AddOn, BillingRecord, TenantAddOn
from apps.addons.tasks import process_addon_billing
from apps.addons.transaction_models import AddOnTransaction


@admin.register(AddOn)
class AddOnAdmin(admin.ModelAdmin):
    """Admin interface for the add-on catalog."""

    list_display = [
        "display_name",
        "slug",
        "category",
        "status",
        "billing_cycle",
        "monthly_price",
        "purchase_count",
    ]
    list_filter = ["status", "category", "billing_cycle"]
    search_fields = ["name", "display_name", "slug"]
    prepopulated_fields = {"slug": ("name",)}
    readonly_fields = ["id", "purchase_count", "total_revenue", "created_at", "updated_at"]

    fieldsets = (
        (
            _("Basic Information"),
            {"fields": ("id", "name", "slug", "display_name", "description", "category", "status")},
        ),
        (
            _("Pricing"),
            {
                "fields": (
                    "billing_cycle",
                    "monthly_price",
                    "yearly_price",
                    "one_time_price",
                    "currency",
                    "regional_pricing",
                    "variants",
                )
            },
        ),
        (_("Grants"), {"fields": ("features", "capacity", "usage_config")}),
        (
            _("Eligibility"),
            {
                "fields": (
                    "eligible_plans",
                    "excluded_plans",
                    "required_features",
                    "conflicting_features",
                    "available_from",
                    "available_until",
                    "trial_days",
                    "max_quantity",
                )
            },
        ),
        (
            _("Stripe"),
            {"fields": ("stripe_monthly_price_id", "stripe_yearly_price_id"), "classes": ("collapse",)},
        ),
        (
            _("Analytics"),
            {
                "fields": ("purchase_count", "total_revenue", "created_at", "updated_at"),
                "classes": ("collapse",),
            },
        ),
    )


class BillingRecordInline(admin.TabularInline):
    model = BillingRecord
    extra = 0
    can_delete = False
    fields = ["created_at", "transaction_id", "amount", "currency", "payment_status", "notes"]
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(TenantAddOn)
class TenantAddOnAdmin(admin.ModelAdmin):
    """Admin interface for tenant add-on instances."""

    list_display = [
        "tenant",
        "addon",
        "status",
        "billing_cycle",
        "quantity",
        "next_billing_date",
        "failed_attempts",
        "remaining_credits",
    ]
    list_filter = ["status", "billing_cycle", "assignment_method", "is_deleted"]
    search_fields = ["tenant__company_name", "addon__display_name", "stripe_subscription_id"]
    date_hierarchy = "created_at"
    inlines = [BillingRecordInline]
    readonly_fields = [
        "id",
        "status",
        "activated_at",
        "suspended_at",
        "cancelled_at",
        "snapshot_monthly_price",
        "snapshot_yearly_price",
        "snapshot_one_time_price",
        "snapshot_currency",
        "snapshot_variant",
        "snapshot_region",
        "snapshot_captured_at",
        "remaining_credits",
        "total_used",
        "daily_usage",
        "failed_attempts",
        "last_failed_at",
        "next_retry_at",
        "total_spent",
        "is_deleted",
        "deleted_at",
        "created_at",
        "updated_at",
    ]

    actions = ["suspend_selected", "reactivate_selected", "cancel_selected", "bill_now"]

    def get_queryset(self, request):
        """Optimize queryset with select_related"""
        return super().get_queryset(request).select_related("tenant", "addon")

    def _run(self, request, queryset, operation, label):
        done = 0
        for instance in queryset:
            try:
                operation(instance)
                done += 1
            except AddOnError as e:
                self.message_user(request, str(e), level=messages.WARNING)
        self.message_user(request, f"{label} {done} add-on(s).")

    @admin.action(description=_("Suspend selected add-ons"))
    def suspend_selected(self, request, queryset):
        self._run(
            request,
            queryset,
            lambda instance: services.suspend_addon(
                instance, "Suspended by administrator", actor=request.user.get_username()
            ),
            "Suspended",
        )

    @admin.action(description=_("Reactivate selected add-ons"))
    def reactivate_selected(self, request, queryset):
        self._run(
            request,
            queryset,
            lambda instance: services.reactivate_addon(instance, actor=request.user.get_username()),
            "Reactivated",
        )

    @admin.action(description=_("Cancel selected add-ons"))
    def cancel_selected(self, request, queryset):
        self._run(
            request,
            queryset,
            lambda instance: services.cancel_addon(
                instance,
                "Cancelled by administrator",
                cancelled_by=request.user.get_username(),
            ),
            "Cancelled",
        )

    @admin.action(description=_("Bill selected add-ons now"))
    def bill_now(self, request, queryset):
        for instance in queryset:
            process_addon_billing.delay(str(instance.pk))
        self.message_user(request, f"Queued billing for {queryset.count()} add-on(s).")


@admin.register(AddOnTransaction)
class AddOnTransactionAdmin(admin.ModelAdmin):
    """Admin interface for add-on payment transactions."""

    list_display = ["transaction_id", "tenant", "addon", "type", "status", "total", "created_at"]
    list_filter = ["type", "status", "source", "created_at"]
    search_fields = ["transaction_id", "invoice_number", "gateway_transaction_id"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False
