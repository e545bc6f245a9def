"""
Multi-day arbitration runs.

This module repeats the daily protocol over a run of days, combining:
- A host hook that updates organ demands and supplies before each day
- The daily arbitrator
- An uptake provider

The result is a Season containing every day's report.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import jax.numpy as jnp
from jax import Array

from arbiter.config import ArbitrationMethod, ArbitratorConfig
from arbiter.controller import DailyArbitrator, DailyReport, UptakeProvider

logger = logging.getLogger(__name__)

# Called with (day, consumers) before each day is arbitrated
DayHook = Callable[[int, list], None]
# Builds a fresh list of organs for one run
ConsumerFactory = Callable[[], Sequence]


@dataclass
class Season:
    """
    Complete record of a run of arbitrated days.

    Contains:
    - reports: DailyReport for every day, in order
    - config: The configuration the days were arbitrated with
    """

    reports: list[DailyReport]
    config: ArbitratorConfig

    def __len__(self) -> int:
        return len(self.reports)

    def get_arrays(self) -> dict[str, Array]:
        """Per-day scalar diagnostics as arrays, keyed like DailyReport.summary."""
        if not self.reports:
            return {}
        rows = [report.summary() for report in self.reports]
        return {key: jnp.array([row[key] for row in rows]) for key in rows[0]}

    def get_scalar_summary(self) -> dict[str, float | int]:
        """
        Compute scalar summary of the run.

        Returns a dictionary with:
        - Days: Number of arbitrated days
        - TotalPrimaryAllocated / TotalSecondaryAllocated: Summed allocation
        - TotalSinkLimitation: Primary supply nobody demanded
        - TotalNutrientLimitation: Primary growth withheld for lack of secondary
        - DaysNutrientLimited: Days with any nutrient limitation
        - TotalFixationRespiration: Primary respired to fix secondary
        - MaxPrimaryBalanceError / MaxSecondaryBalanceError: Worst balance error
        - TotalWaterAllocated: Summed water allocation
        """
        primary = self.config.primary.value
        secondary = self.config.secondary.value
        if not self.reports:
            return {
                "Days": 0,
                "TotalPrimaryAllocated": 0.0,
                "TotalSecondaryAllocated": 0.0,
                "TotalSinkLimitation": 0.0,
                "TotalNutrientLimitation": 0.0,
                "DaysNutrientLimited": 0,
                "TotalFixationRespiration": 0.0,
                "MaxPrimaryBalanceError": 0.0,
                "MaxSecondaryBalanceError": 0.0,
                "TotalWaterAllocated": 0.0,
            }
        arrays = self.get_arrays()
        nutrient = arrays[f"{primary}NutrientLimitation"]
        return {
            "Days": len(self.reports),
            "TotalPrimaryAllocated": float(jnp.sum(arrays[f"{primary}Allocated"])),
            "TotalSecondaryAllocated": float(
                jnp.sum(arrays[f"{secondary}Allocated"])
            ),
            "TotalSinkLimitation": float(jnp.sum(arrays[f"{primary}SinkLimitation"])),
            "TotalNutrientLimitation": float(jnp.sum(nutrient)),
            "DaysNutrientLimited": int(jnp.sum(nutrient > 0)),
            "TotalFixationRespiration": float(
                jnp.sum(arrays["FixationRespiration"])
            ),
            "MaxPrimaryBalanceError": float(
                jnp.max(jnp.abs(arrays[f"{primary}BalanceError"]))
            ),
            "MaxSecondaryBalanceError": float(
                jnp.max(jnp.abs(arrays[f"{secondary}BalanceError"]))
            ),
            "TotalWaterAllocated": float(jnp.sum(arrays["WAllocated"])),
        }

    def print_summary(self) -> None:
        """Print a formatted summary table to stdout."""
        summary = self.get_scalar_summary()
        print("\n" + "=" * 44)
        print("ARBITRATION SUMMARY")
        print("=" * 44)
        for key, value in summary.items():
            if isinstance(value, int):
                print(f"{key:26s}: {value:>14d}")
            else:
                print(f"{key:26s}: {value:>14.6g}")
        print("=" * 44)


def run_days(
    arbitrator: DailyArbitrator,
    num_days: int,
    provider: UptakeProvider | None = None,
    before_day: DayHook | None = None,
    water_provider: UptakeProvider | None = None,
) -> Season:
    """
    Arbitrate `num_days` consecutive days.

    Args:
        arbitrator: Arbitrator over the organs to simulate
        num_days: Number of days to run
        provider: Uptake provider (defaults to granting every request)
        before_day: Optional hook to update organ demands and supplies
        water_provider: Soil water provider (water is skipped without one)

    Returns:
        Season containing each day's report

    Raises:
        ArbitrationError: From the first day that fails; earlier days stand
    """
    reports: list[DailyReport] = []
    for day in range(num_days):
        if before_day is not None:
            before_day(day, arbitrator.consumers)
        reports.append(arbitrator.arbitrate(provider, water_provider))
    return Season(reports=reports, config=arbitrator.config)


def compare_methods(
    make_consumers: ConsumerFactory,
    methods: dict[str, tuple[ArbitrationMethod, ArbitrationMethod]],
    num_days: int,
    provider_factory: Callable[[], UptakeProvider] | None = None,
    before_day: DayHook | None = None,
) -> dict[str, dict[str, float | int]]:
    """
    Run the same scenario under several method pairs.

    Args:
        make_consumers: Builds a fresh set of organs for each run
        methods: Maps a label to (primary method, secondary method)
        num_days: Days per run
        provider_factory: Builds a fresh uptake provider for each run
        before_day: Optional hook to update organ demands and supplies

    Returns:
        Dictionary mapping labels to their scalar summaries
    """
    results = {}
    for label, (primary_method, secondary_method) in methods.items():
        config = ArbitratorConfig(
            primary_method=primary_method, secondary_method=secondary_method
        )
        arbitrator = DailyArbitrator(make_consumers(), config)
        provider = provider_factory() if provider_factory is not None else None
        season = run_days(arbitrator, num_days, provider, before_day)
        results[label] = season.get_scalar_summary()
        logger.info("%s: %s", label, results[label])
    return results
