"""
Arbitration ledger: the per-resource record of one day's arbitration.

A ledger holds, for every organ, the three demand tiers, the four supply
channels, the four flows actually drawn, the three allocation tiers, the
respiration charged for fixation and the nutrient-constrained growth
ceiling, plus scalar totals used for limitation reporting and mass balance.

Ledgers are immutable. Every stage takes a ledger and returns a new one
(`ledger._replace(...)`), so a stage can never see a half-updated record
and nothing outside the controller can alias it.

Totals are properties computed from the live arrays on every access, never
cached, so they always reflect the latest stage.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING, NamedTuple

import jax.numpy as jnp
from jax import Array

from arbiter.config import OrganAllocation, Resource
from arbiter.errors import (
    InvalidDemandError,
    InvalidOrganStateError,
    InvalidSupplyError,
)

if TYPE_CHECKING:
    from arbiter.organs import Consumer

DEMAND_TIERS = ("structural", "metabolic", "non_structural")
SUPPLY_CHANNELS = ("reallocation", "uptake", "fixation", "retranslocation")


def safe_divide(numerator, denominator, default: float = 0.0) -> Array:
    """
    Elementwise numerator / denominator, `default` where denominator is zero.

    Uses the double-where form so neither branch ever produces NaN.
    """
    numerator = jnp.asarray(numerator, dtype=float)
    denominator = jnp.asarray(denominator, dtype=float)
    nonzero = denominator != 0
    safe_den = jnp.where(nonzero, denominator, 1.0)
    return jnp.where(nonzero, numerator / safe_den, default)


class ArbitrationLedger(NamedTuple):
    """
    Complete arbitration record for one resource on one day.

    All per-organ arrays have one entry per organ, in declaration order.
    """

    resource: Resource
    names: tuple[str, ...]

    # Demand tiers
    structural_demand: Array
    metabolic_demand: Array
    non_structural_demand: Array

    # Supply channels
    reallocation_supply: Array
    uptake_supply: Array
    fixation_supply: Array
    retranslocation_supply: Array

    # Flows drawn from each supply channel
    reallocation: Array
    uptake: Array
    fixation: Array
    retranslocation: Array

    # Allocations
    structural_allocation: Array
    metabolic_allocation: Array
    non_structural_allocation: Array

    # Fixation cost charged to each organ (primary resource only)
    respiration: Array
    # Growth this resource can support at minimum concentration
    constrained_growth: Array

    # Scalars
    start: float = 0.0
    end: float = 0.0
    allocated: float = 0.0
    not_allocated: float = 0.0
    sink_limitation: float = 0.0
    nutrient_limitation: float = 0.0
    balance_error: float = 0.0

    @classmethod
    def empty(
        cls, resource: Resource, size: int, names: Sequence[str] | None = None
    ) -> "ArbitrationLedger":
        """Create a ledger with every array and total zeroed."""
        if names is None:
            names = tuple(f"organ{i}" for i in range(size))
        if len(names) != size:
            raise ValueError("names must have one entry per organ")
        zeros = jnp.zeros(size)
        return cls(
            resource=resource,
            names=tuple(names),
            structural_demand=zeros,
            metabolic_demand=zeros,
            non_structural_demand=zeros,
            reallocation_supply=zeros,
            uptake_supply=zeros,
            fixation_supply=zeros,
            retranslocation_supply=zeros,
            reallocation=zeros,
            uptake=zeros,
            fixation=zeros,
            retranslocation=zeros,
            structural_allocation=zeros,
            metabolic_allocation=zeros,
            non_structural_allocation=zeros,
            respiration=zeros,
            constrained_growth=zeros,
        )

    @property
    def size(self) -> int:
        return len(self.names)

    # Demand totals
    @property
    def total_structural_demand(self) -> float:
        return float(jnp.sum(self.structural_demand))

    @property
    def total_metabolic_demand(self) -> float:
        return float(jnp.sum(self.metabolic_demand))

    @property
    def total_non_structural_demand(self) -> float:
        return float(jnp.sum(self.non_structural_demand))

    @property
    def total_plant_demand(self) -> float:
        return (
            self.total_structural_demand
            + self.total_metabolic_demand
            + self.total_non_structural_demand
        )

    # Supply totals
    @property
    def total_reallocation_supply(self) -> float:
        return float(jnp.sum(self.reallocation_supply))

    @property
    def total_uptake_supply(self) -> float:
        return float(jnp.sum(self.uptake_supply))

    @property
    def total_fixation_supply(self) -> float:
        return float(jnp.sum(self.fixation_supply))

    @property
    def total_retranslocation_supply(self) -> float:
        return float(jnp.sum(self.retranslocation_supply))

    @property
    def total_plant_supply(self) -> float:
        return (
            self.total_reallocation_supply
            + self.total_uptake_supply
            + self.total_fixation_supply
            + self.total_retranslocation_supply
        )

    # Flow totals
    @property
    def total_reallocation(self) -> float:
        return float(jnp.sum(self.reallocation))

    @property
    def total_uptake(self) -> float:
        return float(jnp.sum(self.uptake))

    @property
    def total_fixation(self) -> float:
        return float(jnp.sum(self.fixation))

    @property
    def total_retranslocation(self) -> float:
        return float(jnp.sum(self.retranslocation))

    @property
    def total_respiration(self) -> float:
        return float(jnp.sum(self.respiration))

    # Allocation totals
    @property
    def total_structural_allocation(self) -> float:
        return float(jnp.sum(self.structural_allocation))

    @property
    def total_metabolic_allocation(self) -> float:
        return float(jnp.sum(self.metabolic_allocation))

    @property
    def total_non_structural_allocation(self) -> float:
        return float(jnp.sum(self.non_structural_allocation))

    @property
    def total_allocation(self) -> Array:
        """Allocation to each organ summed over the three tiers."""
        return (
            self.structural_allocation
            + self.metabolic_allocation
            + self.non_structural_allocation
        )

    @property
    def total_allocated(self) -> float:
        return (
            self.total_structural_allocation
            + self.total_metabolic_allocation
            + self.total_non_structural_allocation
        )

    @property
    def net_inflow(self) -> float:
        """Mass entering the plant net of fixation respiration and withheld growth."""
        return (
            self.total_uptake
            + self.total_fixation
            - self.total_respiration
            - self.nutrient_limitation
        )

    def supply_to_demand_ratio(self) -> float:
        """Total supply relative to total demand, 0 when nothing is demanded."""
        return float(safe_divide(self.total_plant_supply, self.total_plant_demand))

    # Per-organ requirements (demand not yet met)
    def structural_requirement(self) -> Array:
        return jnp.maximum(self.structural_demand - self.structural_allocation, 0.0)

    def metabolic_requirement(self) -> Array:
        return jnp.maximum(self.metabolic_demand - self.metabolic_allocation, 0.0)

    def non_structural_requirement(self) -> Array:
        return jnp.maximum(
            self.non_structural_demand - self.non_structural_allocation, 0.0
        )


def capture_supply(
    ledger: ArbitrationLedger, consumers: "Sequence[Consumer]"
) -> ArbitrationLedger:
    """
    Copy each organ's supply into the ledger and record the starting amount.

    Args:
        ledger: Empty ledger sized for `consumers`
        consumers: Organs in declaration order

    Returns:
        Ledger with supply arrays filled and `start = Σ current amount`

    Raises:
        InvalidSupplyError: If any organ declares a negative supply
        InvalidOrganStateError: If any organ reports a negative current amount
    """
    rows = []
    start = 0.0
    for consumer in consumers:
        supply = consumer.supply(ledger.resource)
        for channel in SUPPLY_CHANNELS:
            value = float(getattr(supply, channel))
            if value < 0:
                raise InvalidSupplyError(
                    consumer.name, ledger.resource.value, channel, value
                )
        rows.append([float(v) for v in supply])
        amount = float(consumer.current_amount(ledger.resource))
        if amount < 0:
            raise InvalidOrganStateError(
                consumer.name, ledger.resource.value, "current amount", amount
            )
        start += amount

    table = jnp.array(rows, dtype=float).reshape(len(rows), len(SUPPLY_CHANNELS))
    return ledger._replace(
        reallocation_supply=table[:, 0],
        uptake_supply=table[:, 1],
        fixation_supply=table[:, 2],
        retranslocation_supply=table[:, 3],
        start=start,
    )


def capture_demand(
    ledger: ArbitrationLedger, consumers: "Sequence[Consumer]"
) -> ArbitrationLedger:
    """
    Copy each organ's demand into the ledger and zero every output.

    Raises:
        InvalidDemandError: If any organ declares a negative demand
    """
    rows = []
    for consumer in consumers:
        demand = consumer.demand(ledger.resource)
        for tier in DEMAND_TIERS:
            value = float(getattr(demand, tier))
            if value < 0:
                raise InvalidDemandError(
                    consumer.name, ledger.resource.value, tier, value
                )
        rows.append([float(v) for v in demand])

    table = jnp.array(rows, dtype=float).reshape(len(rows), len(DEMAND_TIERS))
    zeros = jnp.zeros(ledger.size)
    return ledger._replace(
        structural_demand=table[:, 0],
        metabolic_demand=table[:, 1],
        non_structural_demand=table[:, 2],
        reallocation=zeros,
        uptake=zeros,
        fixation=zeros,
        retranslocation=zeros,
        structural_allocation=zeros,
        metabolic_allocation=zeros,
        non_structural_allocation=zeros,
        respiration=zeros,
        constrained_growth=zeros,
        allocated=0.0,
        not_allocated=0.0,
        sink_limitation=0.0,
        nutrient_limitation=0.0,
    )


def build_ledger(
    resource: Resource, consumers: "Sequence[Consumer]"
) -> ArbitrationLedger:
    """Fresh ledger for `resource` populated from `consumers`."""
    ledger = ArbitrationLedger.empty(
        resource, len(consumers), names=[c.name for c in consumers]
    )
    ledger = capture_supply(ledger, consumers)
    return capture_demand(ledger, consumers)


def organ_allocation(ledger: ArbitrationLedger, index: int) -> OrganAllocation:
    """Allocation record for organ `index`."""
    return OrganAllocation(
        structural=float(ledger.structural_allocation[index]),
        metabolic=float(ledger.metabolic_allocation[index]),
        non_structural=float(ledger.non_structural_allocation[index]),
        reallocation=float(ledger.reallocation[index]),
        uptake=float(ledger.uptake[index]),
        fixation=float(ledger.fixation[index]),
        retranslocation=float(ledger.retranslocation[index]),
        respiration=float(ledger.respiration[index]),
    )
