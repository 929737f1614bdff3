"""
Tests for entitlement aggregation and the entitlement read path.
"""

import json
from datetime import timedelta

import pytest

from apps.addons import services
from apps.addons.entitlements import (
    UNLIMITED,
    Bool,
    Limit,
    aggregate_features,
    combine,
    get_limit,
    has_feature,
    is_limit_exceeded,
    recompute_entitlements,
    serialize,
    to_feature_value,
)
from apps.addons.models import AddOn, TenantAddOn
from apps.core.models import Tenant

from .conftest import NOW


def _instance(grants=None, capacity=None, status=TenantAddOn.STATUS_ACTIVE, **fields):
    """Unsaved instance of an unsaved catalog add-on."""
    addon = AddOn(
        name="Test",
        slug="test",
        display_name="Test",
        features=[{"key": key, "value": value} for key, value in (grants or {}).items()],
        capacity=capacity or {},
    )
    return TenantAddOn(addon=addon, status=status, **fields)


class TestFeatureValues:
    """Test coercion and combination of feature values."""

    def test_coercion(self):
        assert to_feature_value(True) == Bool(True)
        assert to_feature_value(False) == Bool(False)
        assert to_feature_value(3) == Limit(3)
        assert to_feature_value(-1) == Limit(0, unlimited=True)
        assert to_feature_value("priority") == Bool(True)
        assert to_feature_value(None) == Bool(True)

    def test_negative_limit_other_than_unlimited_is_rejected(self):
        with pytest.raises(ValueError):
            to_feature_value(-5)

    def test_booleans_are_or_combined(self):
        assert combine(Bool(False), Bool(True)) == Bool(True)
        assert combine(Bool(True), Bool(False)) == Bool(True)
        assert combine(Bool(False), Bool(False)) == Bool(False)

    def test_limits_are_summed(self):
        assert combine(Limit(2), Limit(3)) == Limit(5)

    def test_unlimited_dominates(self):
        unlimited = Limit(0, unlimited=True)
        assert combine(Limit(2), unlimited) == unlimited
        assert combine(unlimited, Limit(3)) == unlimited

    def test_mixed_kinds_are_commutative(self):
        assert combine(Bool(True), Limit(4)) == combine(Limit(4), Bool(True)) == Limit(4)
        assert combine(Bool(True), Limit(0)) == combine(Limit(0), Bool(True)) == Bool(True)
        assert combine(Bool(False), Limit(0)) == Limit(0)


class TestAggregateFeatures:
    """Test the pure aggregation over base features and instances."""

    def test_base_only(self):
        result = serialize(aggregate_features({"max_branches": 2, "api_access": False}, [], NOW))
        assert result == {"api_access": False, "max_branches": 2}

    def test_capacity_increment_is_added_to_base(self):
        instance = _instance(capacity={"feature": "max_branches", "increment": 3})
        result = serialize(aggregate_features({"max_branches": 2}, [instance], NOW))
        assert result["max_branches"] == 5

    def test_capacity_scales_with_quantity(self):
        instance = _instance(capacity={"feature": "max_branches", "increment": 3}, quantity=2)
        result = serialize(aggregate_features({"max_branches": 2}, [instance], NOW))
        assert result["max_branches"] == 8

    def test_feature_grant_enables_boolean(self):
        instance = _instance(grants={"api_access": True})
        result = serialize(aggregate_features({"api_access": False}, [instance], NOW))
        assert result["api_access"] is True

    def test_custom_limits_override_catalog_grant(self):
        instance = _instance(
            capacity={"feature": "max_branches", "increment": 3},
            custom_limits={"max_branches": 10},
        )
        result = serialize(aggregate_features({"max_branches": 2}, [instance], NOW))
        assert result["max_branches"] == 12

    def test_custom_config_overrides_catalog_grant(self):
        instance = _instance(grants={"webhooks": True}, custom_config={"webhooks": False})
        result = serialize(aggregate_features({}, [instance], NOW))
        assert result["webhooks"] is False

    @pytest.mark.parametrize(
        "status",
        [
            TenantAddOn.STATUS_PENDING_PAYMENT,
            TenantAddOn.STATUS_SUSPENDED,
            TenantAddOn.STATUS_CANCELLED,
            TenantAddOn.STATUS_EXPIRED,
        ],
    )
    def test_non_usable_instances_do_not_contribute(self, status):
        instance = _instance(grants={"api_access": True}, status=status)
        result = serialize(aggregate_features({"api_access": False}, [instance], NOW))
        assert result["api_access"] is False

    def test_elapsed_trial_does_not_contribute(self):
        instance = _instance(
            grants={"api_access": True},
            status=TenantAddOn.STATUS_TRIAL,
            trial_ends_at=NOW - timedelta(minutes=1),
        )
        result = serialize(aggregate_features({"api_access": False}, [instance], NOW))
        assert result["api_access"] is False

    def test_output_is_sorted_by_key(self):
        instance = _instance(grants={"alpha": True})
        result = serialize(aggregate_features({"zeta": 1, "beta": True}, [instance], NOW))
        assert list(result) == ["alpha", "beta", "zeta"]

    @pytest.mark.parametrize(
        "grant",
        [
            {"max_branches": 0},
            {"max_branches": 4},
            {"max_branches": UNLIMITED},
            {"api_access": True},
            {"api_access": False},
            {"reports": True},
        ],
    )
    def test_adding_an_instance_never_lowers_existing_values(self, grant):
        base = {"max_branches": 2, "api_access": True}
        existing = [_instance(capacity={"feature": "max_branches", "increment": 3})]
        before = serialize(aggregate_features(base, existing, NOW))
        after = serialize(aggregate_features(base, existing + [_instance(grants=grant)], NOW))

        assert after["api_access"] is True
        assert after["max_branches"] == UNLIMITED or (
            before["max_branches"] != UNLIMITED and after["max_branches"] >= before["max_branches"]
        )


@pytest.mark.django_db
class TestRecomputeEntitlements:
    """Test persisted recomputation and the read path."""

    def test_branch_limit_scenario(
        self, tenant, subscription, branches_addon, unlimited_branches_addon, make_instance
    ):
        """Base 2, +3 add-on gives 5, unlimited gives -1, cancelling unlimited reverts to 5."""
        assert recompute_entitlements(tenant.id, now=NOW)["max_branches"] == 2

        make_instance(branches_addon)
        assert recompute_entitlements(tenant.id, now=NOW)["max_branches"] == 5

        unlimited = make_instance(unlimited_branches_addon)
        assert recompute_entitlements(tenant.id, now=NOW)["max_branches"] == UNLIMITED

        services.cancel_addon(unlimited, "Downgrading", now=NOW)

        tenant.refresh_from_db()
        assert get_limit(tenant, "max_branches") == 5

    def test_recompute_is_idempotent(self, tenant, subscription, branches_addon, api_addon, make_instance):
        make_instance(branches_addon)
        make_instance(api_addon)

        first = recompute_entitlements(tenant.id, now=NOW)
        second = recompute_entitlements(tenant.id, now=NOW)

        assert json.dumps(first) == json.dumps(second)

    def test_snapshot_is_persisted(self, tenant, subscription, api_addon, make_instance):
        make_instance(api_addon)
        recompute_entitlements(tenant.id, now=NOW)

        tenant = Tenant.objects.get(pk=tenant.pk)
        assert tenant.entitlements_updated_at == NOW
        assert tenant.effective_features["api_access"] is True
        assert tenant.has_feature("webhooks")

    def test_feature_overrides_on_subscription_apply_to_base(self, tenant, subscription):
        subscription.feature_overrides = {"max_users": 50}
        subscription.save()

        assert recompute_entitlements(tenant.id, now=NOW)["max_users"] == 50

    def test_tenant_without_subscription_gets_only_addon_features(self, tenant, api_addon, make_instance):
        make_instance(api_addon)
        assert recompute_entitlements(tenant.id, now=NOW) == {"api_access": True, "webhooks": True}

    def test_suspension_removes_capability_immediately(self, tenant, subscription, api_addon, make_instance):
        instance = make_instance(api_addon)
        recompute_entitlements(tenant.id, now=NOW)

        services.suspend_addon(instance, "Payment failed", now=NOW)

        tenant.refresh_from_db()
        assert not has_feature(tenant, "api_access")


@pytest.mark.django_db
class TestReadPath:
    """Test feature gate and limit checks against the stored snapshot."""

    def test_read_path_does_not_aggregate(self, tenant, subscription, api_addon, make_instance):
        """A new instance is invisible until entitlements are recomputed."""
        recompute_entitlements(tenant.id, now=NOW)
        make_instance(api_addon)

        tenant.refresh_from_db()
        assert not has_feature(tenant, "api_access")

        recompute_entitlements(tenant.id, now=NOW)
        tenant.refresh_from_db()
        assert has_feature(tenant, "api_access")

    def test_limit_checks(self, tenant):
        tenant.effective_features = {"max_branches": 5, "max_users": UNLIMITED, "api_access": True}

        assert is_limit_exceeded(tenant, "max_branches", 5)
        assert not is_limit_exceeded(tenant, "max_branches", 4)
        assert not is_limit_exceeded(tenant, "max_users", 10_000)
        assert tenant.get_feature_limit("max_branches") == 5
        assert get_limit(tenant, "api_access") is None

    def test_missing_limit_is_not_exceeded(self, tenant):
        tenant.effective_features = {}
        assert not is_limit_exceeded(tenant, "max_branches", 100)
        assert not tenant.has_feature("max_branches")
