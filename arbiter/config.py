"""
Configuration and value types for organ biomass arbitration.

This module defines the resource tags, the arbitration method selector,
the per-organ demand/supply/allocation records exchanged with organs, and
the arbitrator configuration.

Resources:
    DM: Dry matter (primary resource, carbon-like)
    N: Nitrogen (secondary resource)

Demand tiers:
    structural: Required growth that stays in the organ
    metabolic: Required growth that may later be remobilised
    non_structural: Storage; only filled when supply exceeds requirement

Supply channels:
    reallocation: Mass freed from senescing tissue
    uptake: Mass taken from the environment (soil N)
    fixation: Newly acquired mass (photosynthesis, symbiotic N fixation)
    retranslocation: Mass moved out of non-structural storage

All quantities are nonnegative masses per unit area.
"""

from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple


class Resource(str, Enum):
    """Substance being arbitrated."""

    DM = "DM"
    N = "N"


class ArbitrationMethod(str, Enum):
    """
    Allocation policy used to divide one channel's supply between organs.

    RELATIVE: Two passes. Structural and metabolic demand first, in
        proportion to each organ's requirement; the remainder goes to
        non-structural demand in proportion.
    PRIORITY: Two passes in declaration order. Earlier organs receive their
        full requirement before later organs get anything.
    PRIORITY_THEN_RELATIVE: Priority first pass, relative second pass.
    RELATIVE_SINGLE_PASS: One pass over all three tiers, so non-structural
        demand competes directly with structural demand.
    """

    RELATIVE = "relative"
    PRIORITY = "priority"
    PRIORITY_THEN_RELATIVE = "priority_then_relative"
    RELATIVE_SINGLE_PASS = "relative_single_pass"


class BiomassDemand(NamedTuple):
    """Demand of one organ for one resource, per tier."""

    structural: float = 0.0
    metabolic: float = 0.0
    non_structural: float = 0.0

    def total(self) -> float:
        return self.structural + self.metabolic + self.non_structural


class BiomassSupply(NamedTuple):
    """Supply one organ offers for one resource, per channel."""

    reallocation: float = 0.0
    uptake: float = 0.0
    fixation: float = 0.0
    retranslocation: float = 0.0

    def total(self) -> float:
        return self.reallocation + self.uptake + self.fixation + self.retranslocation


class OrganAllocation(NamedTuple):
    """
    Outcome of arbitration for one organ and one resource.

    The three allocation tiers are what the organ grows; the flow values
    are what was drawn from the organ's own supply (reallocation,
    retranslocation) or from outside it (uptake, fixation). `respiration`
    is the fixation cost charged to this organ (primary resource only).
    """

    structural: float = 0.0
    metabolic: float = 0.0
    non_structural: float = 0.0
    reallocation: float = 0.0
    uptake: float = 0.0
    fixation: float = 0.0
    retranslocation: float = 0.0
    respiration: float = 0.0

    def total(self) -> float:
        """Total growth allocated across the three tiers."""
        return self.structural + self.metabolic + self.non_structural

    def net_change(self) -> float:
        """Change in the organ's standing amount implied by this allocation."""
        return self.total() - self.reallocation - self.retranslocation


@dataclass(frozen=True)
class ArbitratorConfig:
    """
    Complete arbitration configuration.

    The two method selectors are independent. Tolerances follow the
    magnitudes used by the crop model this engine serves: DM balance is
    checked to 1e-4 g/m2, N balance to 1e-9 relative to the plant's N pool.
    """

    primary_method: ArbitrationMethod = ArbitrationMethod.RELATIVE
    secondary_method: ArbitrationMethod = ArbitrationMethod.RELATIVE
    primary: Resource = Resource.DM
    secondary: Resource = Resource.N

    # Channels with less total supply than this are skipped entirely
    supply_threshold: float = 1e-11
    # Fixation cost left unpaid above this is fatal
    cost_tolerance: float = 1e-10
    # Outputs below -negative_tolerance are fatal, smaller negatives are rounding
    negative_tolerance: float = 1e-8
    # Absolute tolerance for the primary balance
    primary_balance_tolerance: float = 1e-4
    # Relative tolerance for the secondary balance, scaled by max(1, |start|)
    secondary_balance_tolerance: float = 1e-9

    def __post_init__(self) -> None:
        if self.primary == self.secondary:
            raise ValueError("Primary and secondary resources must differ")
        for name in (
            "supply_threshold",
            "cost_tolerance",
            "negative_tolerance",
            "primary_balance_tolerance",
            "secondary_balance_tolerance",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be nonnegative")

    def method_for(self, resource: Resource) -> ArbitrationMethod:
        """Method selected for the given resource."""
        if resource == self.primary:
            return self.primary_method
        return self.secondary_method

    def balance_tolerance(self, resource: Resource, scale: float = 1.0) -> float:
        """Mass balance tolerance for a resource whose pool has size `scale`."""
        if resource == self.primary:
            return self.primary_balance_tolerance
        return self.secondary_balance_tolerance * max(1.0, abs(scale))

    @classmethod
    def relative(cls) -> "ArbitratorConfig":
        """Relative allocation for both resources."""
        return cls(
            primary_method=ArbitrationMethod.RELATIVE,
            secondary_method=ArbitrationMethod.RELATIVE,
        )

    @classmethod
    def priority(cls) -> "ArbitratorConfig":
        """Priority allocation for both resources."""
        return cls(
            primary_method=ArbitrationMethod.PRIORITY,
            secondary_method=ArbitrationMethod.PRIORITY,
        )

    @classmethod
    def single_pass(cls) -> "ArbitratorConfig":
        """Single-pass relative allocation for both resources."""
        return cls(
            primary_method=ArbitrationMethod.RELATIVE_SINGLE_PASS,
            secondary_method=ArbitrationMethod.RELATIVE_SINGLE_PASS,
        )
