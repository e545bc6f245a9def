"""
Tests for multi-day arbitration runs.

These tests verify that seasons record every day, that host hooks can
change organ declarations between days, and that method comparison runs
each configuration on a fresh plant.
"""

import jax.numpy as jnp
import pytest

from arbiter.config import ArbitrationMethod, BiomassDemand, BiomassSupply, Resource
from arbiter.controller import DailyArbitrator, RationedUptake
from arbiter.errors import InvalidDemandError
from arbiter.organs import SimpleOrgan
from arbiter.rollout import Season, compare_methods, run_days


def make_test_organs() -> list[SimpleOrgan]:
    """Create a leaf and a root with steady daily demands."""
    return [
        SimpleOrgan(
            name="leaf",
            dm=10.0,
            n=0.3,
            dm_demand=BiomassDemand(structural=3.0, non_structural=1.0),
            dm_supply=BiomassSupply(fixation=5.0),
            min_n_conc=0.01,
            crit_n_conc=0.02,
        ),
        SimpleOrgan(
            name="root",
            dm=5.0,
            n=0.1,
            dm_demand=BiomassDemand(structural=1.0),
            n_supply=BiomassSupply(uptake=0.5),
            min_n_conc=0.005,
            crit_n_conc=0.005,
        ),
    ]


class TestRunDays:
    """Tests for running consecutive days."""

    def test_one_report_per_day(self) -> None:
        """A season holds one report per arbitrated day."""
        season = run_days(DailyArbitrator(make_test_organs()), num_days=5)

        assert len(season) == 5
        assert [report.day for report in season.reports] == [0, 1, 2, 3, 4]

    def test_organs_grow_each_day(self) -> None:
        """Organ DM accumulates across days."""
        organs = make_test_organs()

        run_days(DailyArbitrator(organs), num_days=3)

        # Fixation exactly meets the 5 demanded each day
        assert jnp.isclose(organs[0].dm + organs[1].dm, 15.0 + 3 * 5.0)

    def test_before_day_hook(self) -> None:
        """The hook can change demands before each day."""
        organs = make_test_organs()

        def grow_demand(day: int, consumers: list) -> None:
            consumers[1].dm_demand = BiomassDemand(structural=1.0 + day)

        season = run_days(DailyArbitrator(organs), num_days=3, before_day=grow_demand)

        arrays = season.get_arrays()
        assert jnp.allclose(arrays["DMAllocated"], jnp.array([5.0, 5.0, 5.0]))
        assert jnp.allclose(arrays["DMSinkLimitation"], jnp.array([0.0, 0.0, 0.0]))

    def test_failure_propagates(self) -> None:
        """A failing day raises out of the run."""
        organs = make_test_organs()

        def break_on_day_two(day: int, consumers: list) -> None:
            if day == 2:
                consumers[0].dm_demand = BiomassDemand(structural=-1.0)

        with pytest.raises(InvalidDemandError):
            run_days(DailyArbitrator(organs), num_days=4, before_day=break_on_day_two)


class TestSeasonSummary:
    """Tests for season-level summaries."""

    def test_scalar_summary(self) -> None:
        """Totals sum the daily diagnostics."""
        season = run_days(DailyArbitrator(make_test_organs()), num_days=4)

        summary = season.get_scalar_summary()

        assert summary["Days"] == 4
        assert jnp.isclose(summary["TotalPrimaryAllocated"], 20.0)
        assert jnp.isclose(summary["TotalSinkLimitation"], 0.0)
        assert summary["DaysNutrientLimited"] == 0
        assert summary["MaxPrimaryBalanceError"] <= 1e-4

    def test_nutrient_limited_days_counted(self) -> None:
        """Days short of N are counted as nutrient limited."""
        season = run_days(
            DailyArbitrator(make_test_organs()),
            num_days=3,
            provider=RationedUptake(0.0),
        )

        summary = season.get_scalar_summary()

        assert summary["DaysNutrientLimited"] == 3
        assert summary["TotalNutrientLimitation"] > 0

    def test_empty_season(self) -> None:
        """A season with no days summarises to zeros."""
        season = Season(reports=[], config=DailyArbitrator([]).config)

        assert season.get_arrays() == {}
        assert season.get_scalar_summary()["Days"] == 0

    def test_print_summary(self, capsys: pytest.CaptureFixture) -> None:
        """The summary table prints every key."""
        season = run_days(DailyArbitrator(make_test_organs()), num_days=2)

        season.print_summary()

        out = capsys.readouterr().out
        assert "ARBITRATION SUMMARY" in out
        assert "TotalPrimaryAllocated" in out


class TestCompareMethods:
    """Tests for running one scenario under several methods."""

    def test_each_method_runs_on_fresh_organs(self) -> None:
        """Every method pair sees the same starting plant."""
        results = compare_methods(
            make_test_organs,
            {
                "relative": (ArbitrationMethod.RELATIVE, ArbitrationMethod.RELATIVE),
                "priority": (ArbitrationMethod.PRIORITY, ArbitrationMethod.PRIORITY),
            },
            num_days=2,
        )

        assert set(results) == {"relative", "priority"}
        for summary in results.values():
            assert summary["Days"] == 2
            assert jnp.isclose(summary["TotalPrimaryAllocated"], 10.0)

    def test_methods_differ_under_scarcity(self) -> None:
        """Policies give different secondary outcomes when N is short."""
        results = compare_methods(
            make_test_organs,
            {
                "relative": (ArbitrationMethod.RELATIVE, ArbitrationMethod.RELATIVE),
                "priority": (ArbitrationMethod.RELATIVE, ArbitrationMethod.PRIORITY),
            },
            num_days=1,
            provider_factory=lambda: RationedUptake(0.02),
        )

        assert (
            results["relative"]["TotalNutrientLimitation"]
            != results["priority"]["TotalNutrientLimitation"]
        )

    def test_resource_tags_in_config(self) -> None:
        """Seasons keep the configuration they ran with."""
        season = run_days(DailyArbitrator(make_test_organs()), num_days=1)

        assert season.config.primary == Resource.DM
