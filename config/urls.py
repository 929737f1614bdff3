"""
URL configuration for the add-on billing platform.
"""

from django.contrib import admin
from django.urls import path

from apps.addons.stripe_webhooks import stripe_webhook

urlpatterns = [
    path("admin/", admin.site.urls),
    path("webhooks/stripe/addons/", stripe_webhook, name="addon_stripe_webhook"),
]
