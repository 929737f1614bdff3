"""
Entitlement aggregation for tenants.

The effective feature map of a tenant is its base-plan features merged with
the grants of every usable add-on instance it holds:

- boolean features are OR-combined
- numeric limits are summed, with -1 (unlimited) dominating
- instance overrides (custom_config / custom_limits) replace the catalog
  grant for that instance's contribution

The result is stored on the tenant row by recompute_entitlements(); the read
helpers at the bottom of this module only ever read that stored snapshot.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from django.db import transaction
from django.utils import timezone

from apps.addons.models import TenantAddOn
from apps.core.models import Tenant

logger = logging.getLogger(__name__)

UNLIMITED = -1


@dataclass(frozen=True)
class Bool:
    enabled: bool


@dataclass(frozen=True)
class Limit:
    value: int
    unlimited: bool = False

    @classmethod
    def of(cls, raw: int) -> "Limit":
        if raw == UNLIMITED:
            return cls(0, unlimited=True)
        if raw < 0:
            raise ValueError(f"Invalid limit value: {raw}")
        return cls(raw)


FeatureValue = Union[Bool, Limit]


def to_feature_value(raw: Any) -> FeatureValue:
    """
    Coerce a stored feature value into a FeatureValue.

    Booleans are gates and integers are limits. A missing value or a string
    (e.g. a named tier) grants the feature.
    """
    if isinstance(raw, (Bool, Limit)):
        return raw
    if raw is None:
        return Bool(True)
    if isinstance(raw, bool):
        return Bool(raw)
    if isinstance(raw, int):
        return Limit.of(raw)
    if isinstance(raw, float) and raw.is_integer():
        return Limit.of(int(raw))
    if isinstance(raw, str):
        return Bool(True)
    raise ValueError(f"Unsupported feature value: {raw!r}")


def to_raw(value: FeatureValue) -> Union[bool, int]:
    if isinstance(value, Bool):
        return value.enabled
    return UNLIMITED if value.unlimited else value.value


def combine(current: Optional[FeatureValue], incoming: FeatureValue) -> FeatureValue:
    """Merge one contribution into the running aggregate for a key."""
    if current is None:
        return incoming

    if isinstance(current, Bool) and isinstance(incoming, Bool):
        return Bool(current.enabled or incoming.enabled)

    if isinstance(current, Limit) and isinstance(incoming, Limit):
        if current.unlimited or incoming.unlimited:
            return Limit(0, unlimited=True)
        return Limit(current.value + incoming.value)

    # Mixed kinds: the limit wins, unless it is a zero limit facing an enabled gate
    limit, gate = (current, incoming) if isinstance(current, Limit) else (incoming, current)
    if gate.enabled and not limit.unlimited and limit.value == 0:
        return gate
    return limit


def instance_contribution(instance: TenantAddOn) -> Dict[str, FeatureValue]:
    """
    Feature values one add-on instance contributes.

    Finite catalog limits scale with quantity; instance overrides replace the
    catalog value for their keys.
    """
    contribution = {}
    for key, raw in instance.addon.feature_grants().items():
        value = to_feature_value(raw)
        if isinstance(value, Limit) and not value.unlimited:
            value = Limit(value.value * instance.quantity)
        contribution[key] = value

    for key, raw in (instance.custom_config or {}).items():
        contribution[key] = to_feature_value(raw)

    for key, raw in (instance.custom_limits or {}).items():
        contribution[key] = Limit.of(int(raw))

    return contribution


def aggregate_features(
    base: Mapping[str, Any], instances: Iterable[TenantAddOn], now=None
) -> Dict[str, FeatureValue]:
    """
    Compute the effective feature map.

    Args:
        base: Base-plan feature map (raw values)
        instances: Add-on instances held by the tenant; only usable ones count

    Returns:
        Dict of feature key to FeatureValue, sorted by key
    """
    now = now or timezone.now()
    effective = {key: to_feature_value(raw) for key, raw in base.items()}

    for instance in instances:
        if not instance.is_usable(now):
            continue
        for key, value in instance_contribution(instance).items():
            effective[key] = combine(effective.get(key), value)

    return dict(sorted(effective.items()))


def serialize(effective: Mapping[str, FeatureValue]) -> Dict[str, Union[bool, int]]:
    return {key: to_raw(value) for key, value in sorted(effective.items())}


def recompute_entitlements(tenant_id, now=None) -> Dict[str, Union[bool, int]]:
    """
    Recompute and persist a tenant's effective feature map.

    Called explicitly by every operation that changes the set of usable
    add-on instances (activation, suspension, cancellation, expiry).
    """
    now = now or timezone.now()
    with transaction.atomic():
        tenant = Tenant.objects.select_for_update().get(pk=tenant_id)
        instances = (
            TenantAddOn.objects.usable()
            .filter(tenant_id=tenant_id)
            .select_related("addon")
            .order_by("created_at", "id")
        )
        effective = serialize(aggregate_features(tenant.get_base_features(), instances, now))
        tenant.effective_features = effective
        tenant.entitlements_updated_at = now
        tenant.save(update_fields=["effective_features", "entitlements_updated_at", "updated_at"])

    logger.info(f"Recomputed entitlements for tenant {tenant_id}: {len(effective)} features")
    return effective


# Read path


def is_enabled(raw: Any) -> bool:
    """Truthiness of a stored feature value (non-zero limits count as enabled)."""
    if raw is None:
        return False
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw != 0
    return bool(raw)


def has_feature(tenant: Tenant, key: str) -> bool:
    return is_enabled((tenant.effective_features or {}).get(key))


def get_limit(tenant: Tenant, key: str) -> Optional[int]:
    """Numeric limit for key, -1 for unlimited, None if key is not a limit."""
    raw = (tenant.effective_features or {}).get(key)
    if raw is None or isinstance(raw, bool):
        return None
    return int(raw)


def is_limit_exceeded(tenant: Tenant, key: str, current_count: int) -> bool:
    limit = get_limit(tenant, key)
    if limit is None or limit == UNLIMITED:
        return False
    return current_count >= limit
