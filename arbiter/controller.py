"""
Daily arbitration protocol.

One day of arbitration runs in two phases with a single hand-off to the
soil (or other uptake provider) between them:

    IDLE
      (optional) water: share the soil's water uptake by demand
      -> POTENTIAL_ALLOCATION
           DM: reallocate -> fix -> retranslocate
           send potential DM allocation to organs (sets their N demand)
           N:  reallocate
      -> AWAITING_EXTERNAL_UPTAKE
           provider receives uptake requests, returns actual uptake
      -> ACTUAL_ALLOCATION
           N:  take_up -> fix (cost paid in DM) -> retranslocate
           DM: reduce allocation N cannot support
           verify both ledgers, send final allocations, verify organs
      -> VERIFIED
    (any failure) -> FAILED

The controller owns both ledgers for the whole day. Organs only ever see
the allocations pushed to them. Everything runs synchronously; the provider
call is a plain call-and-return.
"""

import logging
from collections.abc import Callable, Sequence
from enum import Enum
from typing import TYPE_CHECKING, NamedTuple

import jax.numpy as jnp
from jax import Array

from arbiter import pipeline
from arbiter.balance import (
    check_potential_allocation,
    verify_ledger,
    verify_mass_balance,
)
from arbiter.clawback import ClawbackReport, pay_fixation_cost
from arbiter.config import ArbitratorConfig, Resource
from arbiter.constraint import apply_nutrient_constraint
from arbiter.errors import (
    ArbitrationStateError,
    InvalidOrganStateError,
    InvalidSupplyError,
)
from arbiter.ledger import (
    ArbitrationLedger,
    build_ledger,
    organ_allocation,
    safe_divide,
)
from arbiter.water import (
    WATER,
    WaterReport,
    allocate_water,
    water_uptake_requests,
)

if TYPE_CHECKING:
    from arbiter.organs import Consumer

logger = logging.getLogger(__name__)

# Uptake provider: (resource tag, requested uptake per organ) -> granted uptake
UptakeProvider = Callable[[Resource | str, Array], Array]


class Phase(str, Enum):
    """Where the arbitrator is in the daily protocol."""

    IDLE = "idle"
    POTENTIAL_ALLOCATION = "potential_allocation"
    AWAITING_EXTERNAL_UPTAKE = "awaiting_external_uptake"
    ACTUAL_ALLOCATION = "actual_allocation"
    VERIFIED = "verified"
    FAILED = "failed"


class UnlimitedUptake:
    """Uptake provider that grants every request in full."""

    def __call__(self, resource: Resource | str, requests: Array) -> Array:
        return jnp.asarray(requests, dtype=float)


class RationedUptake:
    """
    Uptake provider with a fixed amount available per day.

    When requests exceed what is available, every organ's request is scaled
    by the same plant-wide ratio.
    """

    def __init__(self, available: float):
        if available < 0:
            raise ValueError("available uptake must be nonnegative")
        self.available = available

    def __call__(self, resource: Resource | str, requests: Array) -> Array:
        requests = jnp.asarray(requests, dtype=float)
        total = jnp.sum(requests)
        ratio = min(1.0, float(safe_divide(self.available, total, 1.0)))
        return requests * ratio


class DailyReport(NamedTuple):
    """
    Read-only snapshot of one day's arbitration.

    Suitable for logging and reporting; nothing in it feeds back into the
    next day.
    """

    day: int
    primary: ArbitrationLedger
    secondary: ArbitrationLedger
    clawback: ClawbackReport
    water: WaterReport | None = None

    def summary(self) -> dict[str, float | int]:
        """Scalar diagnostics for the day (water keys are 0 on days without water)."""
        p, s = self.primary, self.secondary
        water = self.water if self.water is not None else WaterReport.empty(p.size)
        return {
            "Day": self.day,
            "DeltaWt": p.end - p.start,
            f"{p.resource.value}Allocated": p.total_allocated,
            f"{p.resource.value}SinkLimitation": p.sink_limitation,
            f"{p.resource.value}NutrientLimitation": p.nutrient_limitation,
            f"{p.resource.value}BalanceError": p.balance_error,
            f"{p.resource.value}SupplyDemandRatio": p.supply_to_demand_ratio(),
            f"{s.resource.value}Allocated": s.total_allocated,
            f"{s.resource.value}Uptake": s.total_uptake,
            f"{s.resource.value}Fixation": s.total_fixation,
            f"{s.resource.value}BalanceError": s.balance_error,
            f"{s.resource.value}SupplyDemandRatio": s.supply_to_demand_ratio(),
            "FixationRespiration": self.clawback.total_cost,
            "WSupply": water.supply,
            "WDemand": water.total_demand,
            "WAllocated": water.allocated,
            "FW": water.supply_to_demand_ratio(),
        }


class DailyArbitrator:
    """
    Runs the daily arbitration protocol over a fixed list of organs.

    Args:
        consumers: Organs to arbitrate, in priority (declaration) order
        config: Arbitration configuration (defaults to relative for both)
    """

    def __init__(
        self,
        consumers: "Sequence[Consumer]",
        config: ArbitratorConfig | None = None,
    ):
        self.consumers = list(consumers)
        self.config = config if config is not None else ArbitratorConfig()
        self.day = 0
        self.reset()

    def reset(self) -> None:
        """Drop today's ledgers and return to IDLE."""
        size = len(self.consumers)
        names = [c.name for c in self.consumers]
        self.phase = Phase.IDLE
        self.primary = ArbitrationLedger.empty(self.config.primary, size, names)
        self.secondary = ArbitrationLedger.empty(self.config.secondary, size, names)
        self.clawback: ClawbackReport | None = None
        self._potential_uptake = jnp.zeros(size)
        self.water: WaterReport | None = None

    def _enter(self, requested: Phase, *allowed: Phase) -> None:
        if self.phase not in allowed:
            raise ArbitrationStateError(requested.value, self.phase.value)
        self.phase = requested

    def _fail(self, error: Exception) -> None:
        logger.error(
            "Arbitration failed on day %d during %s: %s",
            self.day,
            self.phase.value,
            error,
        )
        self.phase = Phase.FAILED

    def water_uptake_requests(self) -> Array:
        """Water to request from the soil, per organ."""
        return water_uptake_requests(self.consumers)

    def set_water_uptake(self, uptake) -> WaterReport:
        """
        Share the water the soil granted between organs.

        Water is arbitrated at the start of the day, before the potential
        phase. The report is attached to that day's DailyReport.

        Args:
            uptake: Granted water uptake per organ

        Returns:
            Water arbitration for the day
        """
        if self.phase not in (Phase.IDLE, Phase.VERIFIED):
            raise ArbitrationStateError("water uptake", self.phase.value)
        try:
            report = allocate_water(self.consumers, uptake)
        except Exception as error:
            self._fail(error)
            raise
        self.water = report
        return report

    def potential_allocation(self) -> Array:
        """
        Run the potential phase.

        Returns:
            Uptake requested from the provider, per organ
        """
        self._enter(Phase.POTENTIAL_ALLOCATION, Phase.IDLE, Phase.VERIFIED)
        cfg = self.config
        try:
            primary = build_ledger(cfg.primary, self.consumers)
            primary = pipeline.reallocate(
                primary, cfg.primary_method, cfg.supply_threshold
            )
            primary = pipeline.fix(primary, cfg.primary_method, cfg.supply_threshold)
            primary = pipeline.retranslocate(
                primary, cfg.primary_method, cfg.supply_threshold
            )
            primary = check_potential_allocation(primary)
            for i, consumer in enumerate(self.consumers):
                consumer.set_potential_allocation(organ_allocation(primary, i))

            # Organs now know their potential growth, so secondary demand is set
            secondary = build_ledger(cfg.secondary, self.consumers)
            self._potential_uptake = secondary.uptake_supply
            secondary = secondary._replace(uptake_supply=jnp.zeros(secondary.size))
            secondary = pipeline.reallocate(
                secondary, cfg.secondary_method, cfg.supply_threshold
            )
        except Exception as error:
            self._fail(error)
            raise

        self.primary = primary
        self.secondary = secondary
        self.clawback = None
        self.phase = Phase.AWAITING_EXTERNAL_UPTAKE
        return self.uptake_requests()

    def uptake_requests(self) -> Array:
        """
        Uptake to request from the provider.

        Each organ's potential uptake, scaled down by one plant-wide ratio
        when the plant could take up more than its unmet demand.
        """
        total_potential = float(jnp.sum(self._potential_uptake))
        unmet = max(
            self.secondary.total_plant_demand - self.secondary.total_reallocation, 0.0
        )
        ratio = min(1.0, float(safe_divide(unmet, total_potential)))
        return self._potential_uptake * ratio

    def _validate_uptake(self, uptake, requests: Array) -> Array:
        uptake = jnp.asarray(uptake, dtype=float).reshape(-1)
        resource = self.config.secondary.value
        if uptake.shape != requests.shape:
            raise InvalidSupplyError(
                "uptake provider",
                resource,
                "uptake",
                float(uptake.size),
                reason=f"wrongly sized (expected {requests.size} organs)",
            )
        tolerance = self.config.balance_tolerance(
            self.config.secondary, float(jnp.sum(requests))
        )
        for i, consumer in enumerate(self.consumers):
            granted = float(uptake[i])
            if granted < 0:
                raise InvalidSupplyError(consumer.name, resource, "uptake", granted)
            if granted > float(requests[i]) + tolerance:
                raise InvalidSupplyError(
                    consumer.name,
                    resource,
                    "uptake",
                    granted,
                    reason=f"larger than requested ({float(requests[i]):.6g})",
                )
        return jnp.minimum(uptake, requests)

    def actual_allocation(self, uptake) -> DailyReport:
        """
        Run the actual phase with the uptake the provider granted.

        Args:
            uptake: Granted uptake per organ (never negative, never above
                the request)

        Returns:
            Report of the finished day
        """
        self._enter(Phase.ACTUAL_ALLOCATION, Phase.AWAITING_EXTERNAL_UPTAKE)
        cfg = self.config
        try:
            uptake = self._validate_uptake(uptake, self.uptake_requests())
            secondary = self.secondary._replace(uptake_supply=uptake)
            secondary = pipeline.take_up(
                secondary, cfg.secondary_method, cfg.supply_threshold
            )
            secondary = pipeline.fix(
                secondary, cfg.secondary_method, cfg.supply_threshold
            )

            unit_costs = []
            for consumer in self.consumers:
                cost = float(consumer.fixation_unit_cost())
                if cost < 0:
                    raise InvalidSupplyError(
                        consumer.name, cfg.primary.value, "fixation cost", cost
                    )
                unit_costs.append(cost)
            primary, clawback = pay_fixation_cost(
                self.primary,
                secondary.fixation,
                jnp.array(unit_costs, dtype=float),
                cfg.cost_tolerance,
            )

            secondary = pipeline.retranslocate(
                secondary, cfg.secondary_method, cfg.supply_threshold
            )
            min_conc = []
            for consumer in self.consumers:
                conc = float(consumer.min_concentration(cfg.secondary))
                if conc < 0:
                    raise InvalidOrganStateError(
                        consumer.name,
                        cfg.secondary.value,
                        "minimum concentration",
                        conc,
                    )
                min_conc.append(conc)

            primary_tolerance = cfg.balance_tolerance(cfg.primary, primary.start)
            secondary_tolerance = cfg.balance_tolerance(
                cfg.secondary, secondary.start
            )
            primary, secondary = apply_nutrient_constraint(
                primary,
                secondary,
                jnp.array(min_conc, dtype=float),
                secondary_tolerance,
            )

            primary = verify_ledger(
                primary, primary_tolerance, cfg.negative_tolerance
            )
            secondary = verify_ledger(
                secondary, secondary_tolerance, cfg.negative_tolerance
            )

            for i, consumer in enumerate(self.consumers):
                consumer.set_final_allocation(
                    cfg.primary, organ_allocation(primary, i)
                )
                consumer.set_final_allocation(
                    cfg.secondary, organ_allocation(secondary, i)
                )

            primary = verify_mass_balance(primary, self.consumers, primary_tolerance)
            secondary = verify_mass_balance(
                secondary, self.consumers, secondary_tolerance
            )
        except Exception as error:
            self._fail(error)
            raise

        self.primary = primary
        self.secondary = secondary
        self.clawback = clawback
        self.phase = Phase.VERIFIED

        report = DailyReport(
            day=self.day,
            primary=primary,
            secondary=secondary,
            clawback=clawback,
            water=self.water,
        )
        self.water = None
        logger.info(
            "Day %d: %s allocated %.6g (sink limited %.6g, nutrient limited %.6g), "
            "%s allocated %.6g",
            self.day,
            cfg.primary.value,
            primary.total_allocated,
            primary.sink_limitation,
            primary.nutrient_limitation,
            cfg.secondary.value,
            secondary.total_allocated,
        )
        self.day += 1
        return report

    def arbitrate(
        self,
        provider: UptakeProvider | None = None,
        water_provider: UptakeProvider | None = None,
    ) -> DailyReport:
        """
        Run one whole day, calling `provider` for uptake in between phases.

        Args:
            provider: Uptake provider (defaults to granting every request)
            water_provider: Soil water provider; water is only arbitrated
                when one is given

        Returns:
            Report of the finished day
        """
        if provider is None:
            provider = UnlimitedUptake()
        if water_provider is not None:
            try:
                uptake = water_provider(WATER, self.water_uptake_requests())
            except Exception as error:
                self._fail(error)
                raise
            self.set_water_uptake(uptake)
        requests = self.potential_allocation()
        try:
            uptake = provider(self.config.secondary, requests)
        except Exception as error:
            self._fail(error)
            raise
        return self.actual_allocation(uptake)
