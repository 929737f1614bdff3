"""
Pytest configuration and fixtures for the add-on billing engine.
"""

from datetime import datetime
from datetime import timezone as dt_timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=dt_timezone.utc)


@pytest.fixture
def now():
    """Fixed reference time; every operation under test receives it explicitly."""
    return NOW


@pytest.fixture
def plan(db):
    """Base plan with two branches and no API access."""
    from apps.core.models import SubscriptionPlan

    return SubscriptionPlan.objects.create(
        name="Professional",
        description="Professional plan for growing businesses",
        price=Decimal("99.00"),
        billing_cycle=SubscriptionPlan.BILLING_MONTHLY,
        features={"max_branches": 2, "max_users": 5, "api_access": False},
    )


@pytest.fixture
def tenant(db):
    """
    Fixture for creating a test tenant with a Stripe customer.
    """
    from apps.core.models import Tenant

    return Tenant.objects.create(
        company_name="Acme Retail",
        slug="acme-retail",
        region="IN",
        stripe_customer_id="cus_test123",
        stripe_payment_method_id="pm_test123",
    )


@pytest.fixture
def subscription(tenant, plan):
    from apps.core.models import TenantSubscription

    return TenantSubscription.objects.create(tenant=tenant, plan=plan)


@pytest.fixture
def branches_addon(db):
    """Capacity add-on granting three extra branches per unit."""
    from apps.addons.models import AddOn

    return AddOn.objects.create(
        name="Extra Branches",
        slug="extra-branches",
        display_name="Extra Branches",
        category=AddOn.CATEGORY_CAPACITY,
        status=AddOn.STATUS_ACTIVE,
        billing_cycle=AddOn.BILLING_MONTHLY,
        monthly_price=Decimal("500.00"),
        yearly_price=Decimal("5000.00"),
        capacity={"feature": "max_branches", "increment": 3, "unit": "branch"},
        max_quantity=5,
    )


@pytest.fixture
def unlimited_branches_addon(db):
    from apps.addons.models import AddOn

    return AddOn.objects.create(
        name="Unlimited Branches",
        slug="unlimited-branches",
        display_name="Unlimited Branches",
        category=AddOn.CATEGORY_CAPACITY,
        status=AddOn.STATUS_ACTIVE,
        billing_cycle=AddOn.BILLING_MONTHLY,
        monthly_price=Decimal("2000.00"),
        capacity={"feature": "max_branches", "increment": -1, "unit": "branch"},
    )


@pytest.fixture
def api_addon(db):
    """Feature add-on enabling API access, with a 14-day trial."""
    from apps.addons.models import AddOn

    return AddOn.objects.create(
        name="API Access",
        slug="api-access",
        display_name="API Access",
        category=AddOn.CATEGORY_INTEGRATION,
        status=AddOn.STATUS_ACTIVE,
        billing_cycle=AddOn.BILLING_MONTHLY,
        monthly_price=Decimal("300.00"),
        features=[{"key": "api_access", "value": True}, {"key": "webhooks", "value": True}],
        trial_days=14,
    )


@pytest.fixture
def sms_addon(db):
    """Usage-based add-on: a pack of 12 SMS credits, alerting at 10."""
    from apps.addons.models import AddOn

    return AddOn.objects.create(
        name="SMS Credits",
        slug="sms-credits",
        display_name="SMS Credits",
        category=AddOn.CATEGORY_USAGE,
        status=AddOn.STATUS_ACTIVE,
        billing_cycle=AddOn.BILLING_USAGE_BASED,
        one_time_price=Decimal("100.00"),
        usage_config={"type": "sms", "amount": 12, "unit": "message", "low_balance_threshold": 10},
    )


@pytest.fixture
def make_instance(tenant):
    """
    Factory for TenantAddOn rows in a given status, bypassing the purchase flow.
    """
    from apps.addons.models import TenantAddOn

    def _make(addon, status=TenantAddOn.STATUS_ACTIVE, billing_cycle=None, **fields):
        instance = TenantAddOn(
            tenant=fields.pop("tenant", tenant),
            addon=addon,
            status=status,
            billing_cycle=billing_cycle or addon.billing_cycle,
            **fields,
        )
        instance.capture_pricing_snapshot(addon.get_pricing_for_region(), NOW)
        instance.save()
        return instance

    return _make


@pytest.fixture
def gateway():
    """Payment gateway double whose charges succeed."""
    gateway = Mock()
    gateway.charge.return_value = {"status": "succeeded", "gateway_ref": "pi_test123"}
    gateway.cancel_recurring.return_value = {"subscription_ref": "sub_test123", "status": "canceled"}
    gateway.refund.return_value = {"refund_ref": "re_test123", "status": "succeeded"}
    return gateway
