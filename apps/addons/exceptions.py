"""
Exceptions raised by the add-on entitlement and billing engine.
"""


class AddOnError(Exception):
    """Base class for add-on engine errors."""

    pass


class InvalidTransition(AddOnError):
    """Lifecycle transition not allowed from the instance's current status."""

    def __init__(self, instance, action):
        self.instance = instance
        self.action = action
        super().__init__(
            f"Cannot {action} add-on instance {instance.pk} in status '{instance.status}'"
        )


class InsufficientCredits(AddOnError):
    """Usage consumption exceeds the remaining balance or the add-on is not usable."""

    pass


class InvalidBillingCycle(AddOnError):
    """Operation called on an instance with the wrong billing cycle."""

    pass


class NotUsageBased(InvalidBillingCycle):
    """Metering operation called on an add-on that is not usage-based."""

    pass


class GatewayFailure(AddOnError):
    """Payment gateway declined, errored or timed out."""

    def __init__(self, message, code=None):
        self.code = code
        super().__init__(message)


class AddOnNotFound(AddOnError):
    """Missing add-on or add-on instance reference."""

    pass


class AddOnUnavailable(AddOnError):
    """Add-on cannot be purchased or assigned (status, eligibility, quantity or price)."""

    pass


class DuplicateAddOn(AddOnError):
    """Tenant already holds a live instance of this add-on."""

    pass


class ImmutableRecordError(AddOnError):
    """Attempt to modify an append-only billing record."""

    pass
