from django.contrib import admin
from django.utils.translation import gettext_lazy as _

from .models import Notification


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    """Admin interface for Notification model"""

    list_display = ["title", "tenant", "event_type", "is_read", "created_at"]
    list_filter = ["event_type", "is_read", "created_at"]
    search_fields = ["title", "message", "tenant__company_name"]
    readonly_fields = ["created_at", "read_at", "payload"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (_("Basic Information"), {"fields": ("tenant", "title", "message", "event_type")}),
        (_("Event Data"), {"fields": ("payload",), "classes": ("collapse",)}),
        (_("Status"), {"fields": ("is_read", "read_at")}),
        (_("Timestamps"), {"fields": ("created_at",), "classes": ("collapse",)}),
    )

    actions = ["mark_as_read"]

    def get_queryset(self, request):
        """Optimize queryset with select_related"""
        return super().get_queryset(request).select_related("tenant")

    def mark_as_read(self, request, queryset):
        """Mark selected notifications as read."""
        count = 0
        for notification in queryset.filter(is_read=False):
            notification.mark_as_read()
            count += 1
        self.message_user(request, f"Marked {count} notification(s) as read.")

    mark_as_read.short_description = _("Mark selected notifications as read")
