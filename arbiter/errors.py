"""
Errors raised by the arbitration engine.

Every error here is fatal to the timestep being arbitrated. Inputs are
deterministic given organ state, so nothing is retried: a retry would
reproduce the same failure. Each error keeps its context as attributes so
a model author can locate the organ or parameter at fault.
"""


class ArbitrationError(Exception):
    """Base class for arbitration failures."""


class InvalidDemandError(ArbitrationError, ValueError):
    """An organ declared a negative demand."""

    def __init__(self, consumer: str, resource: str, tier: str, value: float):
        self.consumer = consumer
        self.resource = resource
        self.tier = tier
        self.value = value
        super().__init__(
            f"{consumer} is returning a negative {tier} {resource} demand "
            f"({value:.6g}). Check your parameterisation"
        )


class InvalidSupplyError(ArbitrationError, ValueError):
    """An organ or the uptake provider returned an impossible supply."""

    def __init__(
        self,
        consumer: str,
        resource: str,
        channel: str,
        value: float,
        reason: str = "negative",
    ):
        self.consumer = consumer
        self.resource = resource
        self.channel = channel
        self.value = value
        self.reason = reason
        super().__init__(
            f"{consumer} is returning a {reason} {channel} {resource} supply "
            f"({value:.6g}). Check your parameterisation"
        )


class UnpayableFixationCostError(ArbitrationError):
    """The clawback cascade ran out of biomass to pay for fixation."""

    def __init__(self, resource: str, total_cost: float, unpaid: float):
        self.resource = resource
        self.total_cost = total_cost
        self.unpaid = unpaid
        super().__init__(
            f"Crop is trying to fix excessive amounts of {resource}: "
            f"{unpaid:.6g} of a {total_cost:.6g} respiration cost could not be "
            "paid. Check partitioning coefficients are giving realistic nodule "
            "size and that the potential fixation rate is realistic"
        )


class MassBalanceViolationError(ArbitrationError):
    """Arbitration outputs do not add up."""

    def __init__(
        self,
        resource: str,
        quantity: str,
        expected: float,
        actual: float,
        tolerance: float,
    ):
        self.resource = resource
        self.quantity = quantity
        self.expected = expected
        self.actual = actual
        self.tolerance = tolerance
        super().__init__(
            f"{resource} mass balance violated: {quantity} is {actual:.12g}, "
            f"expected {expected:.12g} (tolerance {tolerance:.3g}, "
            f"error {actual - expected:.3g})"
        )


class ArbitrationStateError(ArbitrationError):
    """A daily phase was requested out of order."""

    def __init__(self, requested: str, current: str):
        self.requested = requested
        self.current = current
        super().__init__(f"Cannot run {requested} while arbitrator is {current}")


class InvalidOrganStateError(ArbitrationError, ValueError):
    """An organ reported an impossible standing amount or concentration."""

    def __init__(self, consumer: str, resource: str, quantity: str, value: float):
        self.consumer = consumer
        self.resource = resource
        self.quantity = quantity
        self.value = value
        super().__init__(
            f"{consumer} is returning a negative {resource} {quantity} "
            f"({value:.6g}). Check your parameterisation"
        )
