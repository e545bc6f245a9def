"""
Organ interface for arbitration, plus a reference organ.

The arbitrator never creates or destroys organs. It reads their declared
demands and supplies, and writes allocations back through a small fixed
set of methods. Any object with these methods can take part; there is no
shared base class. Organs that transpire or extract water also implement
the methods of `arbiter.water.WaterConsumer`.

`SimpleOrgan` is a minimal organ with fixed daily demands and supplies. It
derives its nitrogen demand from its potential DM allocation and keeps its
standing amounts up to date from final allocations, which is all the mass
balance checks need.
"""

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from arbiter.config import BiomassDemand, BiomassSupply, OrganAllocation, Resource


@runtime_checkable
class Consumer(Protocol):
    """Capabilities an organ needs to be arbitrated."""

    name: str

    def demand(self, resource: Resource) -> BiomassDemand: ...

    def supply(self, resource: Resource) -> BiomassSupply: ...

    def set_potential_allocation(self, allocation: OrganAllocation) -> None: ...

    def set_final_allocation(
        self, resource: Resource, allocation: OrganAllocation
    ) -> None: ...

    def current_amount(self, resource: Resource) -> float: ...

    def min_concentration(self, resource: Resource) -> float: ...

    def fixation_unit_cost(self) -> float: ...


@dataclass
class SimpleOrgan:
    """
    Reference organ with fixed daily demands and supplies.

    Nitrogen demand is derived from the potential DM allocation unless
    `n_demand` is given explicitly:

        structural N = potential growth * min_n_conc
        metabolic N = potential growth * (crit_n_conc - min_n_conc)
        non-structural N = n_storage_demand

    where potential growth is the structural plus metabolic DM allocation.

    Args:
        name: Organ name used in error messages
        dm: Standing dry matter
        n: Standing nitrogen
        dm_demand: DM demand per tier
        dm_supply: DM supply per channel
        n_supply: N supply per channel (uptake is the soil-facing potential)
        min_n_conc: Minimum N concentration of new growth
        crit_n_conc: Critical N concentration of new growth
        n_storage_demand: Non-structural N demand
        n_fixation_cost: DM respired per unit N fixed
        n_demand: Explicit N demand, overriding the derived one
        water_need: Daily water demand (transpiration)
        water_extraction: Potential daily water extraction from the soil
    """

    name: str
    dm: float = 0.0
    n: float = 0.0
    dm_demand: BiomassDemand = BiomassDemand()
    dm_supply: BiomassSupply = BiomassSupply()
    n_supply: BiomassSupply = BiomassSupply()
    min_n_conc: float = 0.0
    crit_n_conc: float = 0.0
    n_storage_demand: float = 0.0
    n_fixation_cost: float = 0.0
    n_demand: BiomassDemand | None = None
    water_need: float = 0.0
    water_extraction: float = 0.0
    water_allocation: float = 0.0
    potential_allocation: OrganAllocation = OrganAllocation()
    allocations: dict[Resource, OrganAllocation] = field(default_factory=dict)

    def demand(self, resource: Resource) -> BiomassDemand:
        if resource == Resource.DM:
            return self.dm_demand
        if self.n_demand is not None:
            return self.n_demand
        growth = (
            self.potential_allocation.structural + self.potential_allocation.metabolic
        )
        return BiomassDemand(
            structural=growth * self.min_n_conc,
            metabolic=growth * max(self.crit_n_conc - self.min_n_conc, 0.0),
            non_structural=self.n_storage_demand,
        )

    def supply(self, resource: Resource) -> BiomassSupply:
        if resource == Resource.DM:
            return self.dm_supply
        return self.n_supply

    def set_potential_allocation(self, allocation: OrganAllocation) -> None:
        self.potential_allocation = allocation

    def set_final_allocation(
        self, resource: Resource, allocation: OrganAllocation
    ) -> None:
        self.allocations[resource] = allocation
        if resource == Resource.DM:
            self.dm += allocation.net_change()
        else:
            self.n += allocation.net_change()

    def current_amount(self, resource: Resource) -> float:
        return self.dm if resource == Resource.DM else self.n

    def min_concentration(self, resource: Resource) -> float:
        if resource == Resource.DM:
            return 1.0
        return self.min_n_conc

    def fixation_unit_cost(self) -> float:
        return self.n_fixation_cost

    def water_demand(self) -> float:
        return self.water_need

    def water_supply(self) -> float:
        return self.water_extraction

    def set_water_allocation(self, allocation: float) -> None:
        self.water_allocation = allocation
