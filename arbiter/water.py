"""
Water arbitration.

Water is not split into demand tiers or supply channels. Each organ that
transpires declares one daily water demand, each organ that extracts water
declares one potential extraction, and the arbitration is a single ratio:

    requested_i = extraction_i * min(1, total demand / total extraction)
    allocation_i = demand_i * min(1, total uptake / total demand)

The first line keeps the plant from asking the soil for more than it needs.
The second shares whatever the soil gave back in proportion to demand.
Organs without the water methods below simply take no part.
"""

import logging
from collections.abc import Sequence
from typing import NamedTuple, Protocol, runtime_checkable

import jax.numpy as jnp
from jax import Array

from arbiter.errors import InvalidDemandError, InvalidSupplyError
from arbiter.ledger import safe_divide

logger = logging.getLogger(__name__)

# Resource tag passed to uptake providers when asking for water
WATER = "W"


@runtime_checkable
class WaterConsumer(Protocol):
    """Capabilities an organ needs to take part in water arbitration."""

    name: str

    def water_demand(self) -> float: ...

    def water_supply(self) -> float: ...

    def set_water_allocation(self, allocation: float) -> None: ...


class WaterReport(NamedTuple):
    """
    One day's water arbitration.

    Contains:
    - supply: Total water the soil granted
    - demand: Water demand per organ (0 for organs that do not transpire)
    - allocation: Water allocated per organ
    """

    supply: float
    demand: Array
    allocation: Array

    @property
    def total_demand(self) -> float:
        return float(jnp.sum(self.demand))

    @property
    def allocated(self) -> float:
        return float(jnp.sum(self.allocation))

    @property
    def fraction(self) -> float:
        """Share of each organ's demand that was met."""
        if self.total_demand <= 0:
            return 1.0
        return min(1.0, self.supply / self.total_demand)

    def supply_to_demand_ratio(self) -> float:
        """Water supply over demand, 0 when nothing is demanded."""
        return float(safe_divide(self.supply, self.total_demand))

    @classmethod
    def empty(cls, size: int) -> "WaterReport":
        return cls(supply=0.0, demand=jnp.zeros(size), allocation=jnp.zeros(size))


def water_demands(consumers: Sequence) -> Array:
    """
    Water demand per organ.

    Raises:
        InvalidDemandError: If any organ declares a negative water demand
    """
    demands = []
    for consumer in consumers:
        value = 0.0
        if isinstance(consumer, WaterConsumer):
            value = float(consumer.water_demand())
            if value < 0:
                raise InvalidDemandError(consumer.name, WATER, "water", value)
        demands.append(value)
    return jnp.array(demands, dtype=float)


def potential_water_supply(consumers: Sequence) -> Array:
    """
    Potential water extraction per organ.

    Raises:
        InvalidSupplyError: If any organ declares a negative extraction
    """
    supplies = []
    for consumer in consumers:
        value = 0.0
        if isinstance(consumer, WaterConsumer):
            value = float(consumer.water_supply())
            if value < 0:
                raise InvalidSupplyError(consumer.name, WATER, "uptake", value)
        supplies.append(value)
    return jnp.array(supplies, dtype=float)


def water_uptake_requests(consumers: Sequence) -> Array:
    """
    Water to request from the soil, per organ.

    Each organ's potential extraction is scaled by the plant-wide fraction
    of extraction that demand can use. Nothing is requested when no organ
    can extract water.
    """
    supply = potential_water_supply(consumers)
    total_supply = float(jnp.sum(supply))
    total_demand = float(jnp.sum(water_demands(consumers)))
    fraction_used = 0.0
    if total_supply > 0:
        fraction_used = min(1.0, total_demand / total_supply)
    return supply * fraction_used


def allocate_water(consumers: Sequence, uptake) -> WaterReport:
    """
    Share the water the soil granted between organs by demand.

    Every organ with positive demand receives the same fraction of it and
    is told its allocation. Organs with no demand are left untouched.

    Args:
        consumers: Organs in declaration order
        uptake: Granted water uptake per organ

    Returns:
        WaterReport for the day

    Raises:
        InvalidSupplyError: If the uptake is negative or wrongly sized
        InvalidDemandError: If any organ declares a negative water demand
    """
    uptake = jnp.asarray(uptake, dtype=float).reshape(-1)
    if uptake.size != len(consumers):
        raise InvalidSupplyError(
            "uptake provider",
            WATER,
            "uptake",
            float(uptake.size),
            reason=f"wrongly sized (expected {len(consumers)} organs)",
        )
    for consumer, granted in zip(consumers, uptake):
        if float(granted) < 0:
            raise InvalidSupplyError(consumer.name, WATER, "uptake", float(granted))

    demand = water_demands(consumers)
    report = WaterReport(
        supply=float(jnp.sum(uptake)), demand=demand, allocation=jnp.zeros_like(demand)
    )
    allocation = jnp.where(demand > 0, demand * report.fraction, 0.0)
    for i, consumer in enumerate(consumers):
        if demand[i] > 0:
            consumer.set_water_allocation(float(allocation[i]))

    report = report._replace(allocation=allocation)
    if report.fraction < 1.0:
        logger.debug(
            "Water limited: %.6g supplied for %.6g demanded",
            report.supply,
            report.total_demand,
        )
    return report
