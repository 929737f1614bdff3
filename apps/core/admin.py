"""
Django admin configuration for core models.
"""

from django.contrib import admin

from .models import SubscriptionPlan, Tenant, TenantSubscription


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    """Admin interface for Tenant model."""

    list_display = ["company_name", "slug", "region", "status", "created_at", "updated_at"]

    list_filter = [
        "status",
        "region",
        "created_at",
    ]

    search_fields = [
        "company_name",
        "slug",
        "id",
    ]

    readonly_fields = [
        "id",
        "effective_features",
        "entitlements_updated_at",
        "created_at",
        "updated_at",
    ]

    fieldsets = (
        ("Basic Information", {"fields": ("id", "company_name", "slug", "region")}),
        ("Status", {"fields": ("status",)}),
        ("Payment", {"fields": ("stripe_customer_id", "stripe_payment_method_id")}),
        (
            "Entitlements",
            {"fields": ("effective_features", "entitlements_updated_at"), "classes": ("collapse",)},
        ),
        ("Timestamps", {"fields": ("created_at", "updated_at"), "classes": ("collapse",)}),
    )

    ordering = ["-created_at"]

    def get_readonly_fields(self, request, obj=None):
        """Make slug readonly when editing existing tenant."""
        if obj:  # Editing an existing object
            return self.readonly_fields + ["slug"]
        return self.readonly_fields


@admin.register(SubscriptionPlan)
class SubscriptionPlanAdmin(admin.ModelAdmin):
    """Admin interface for SubscriptionPlan model."""

    list_display = ["name", "price", "billing_cycle", "status", "created_at"]
    list_filter = ["status", "billing_cycle"]
    search_fields = ["name", "description"]
    readonly_fields = ["id", "created_at", "updated_at"]
    ordering = ["price"]


@admin.register(TenantSubscription)
class TenantSubscriptionAdmin(admin.ModelAdmin):
    """Admin interface for TenantSubscription model."""

    list_display = ["tenant", "plan", "status", "created_at"]
    list_filter = ["status", "plan"]
    search_fields = ["tenant__company_name", "plan__name"]
    readonly_fields = ["id", "created_at", "updated_at"]
    ordering = ["-created_at"]

    def save_model(self, request, obj, form, change):
        """Recompute entitlements when the plan or overrides change."""
        from apps.addons.entitlements import recompute_entitlements

        super().save_model(request, obj, form, change)
        recompute_entitlements(obj.tenant_id)
