"""
Tests for the daily arbitration protocol.

These tests run whole days over small plants and verify conservation of
both resources, the phase order, uptake validation, the fixation cost
path and the nutrient constraint.
"""

import jax.numpy as jnp
import pytest

from arbiter.balance import OUTPUT_FIELDS
from arbiter.config import (
    ArbitrationMethod,
    ArbitratorConfig,
    BiomassDemand,
    BiomassSupply,
    Resource,
)
from arbiter.controller import DailyArbitrator, Phase, RationedUptake, UnlimitedUptake
from arbiter.errors import (
    ArbitrationStateError,
    InvalidDemandError,
    InvalidOrganStateError,
    InvalidSupplyError,
    UnpayableFixationCostError,
)
from arbiter.organs import Consumer, SimpleOrgan
from arbiter.water import WaterReport


def make_test_organs(
    leaf_fixation: float = 10.0,
    root_uptake: float = 0.3,
    nodule_fixation: float = 0.0,
    fixation_cost: float = 0.0,
) -> list[SimpleOrgan]:
    """
    Create a leaf, a root and a nodule.

    DM demand totals 9 and the leaf fixes `leaf_fixation`. N demand is
    derived from potential growth and totals 0.225 when DM demand is met.
    """
    leaf = SimpleOrgan(
        name="leaf",
        dm=50.0,
        n=1.5,
        dm_demand=BiomassDemand(structural=4.0, metabolic=1.0, non_structural=1.0),
        dm_supply=BiomassSupply(fixation=leaf_fixation, retranslocation=0.5),
        n_supply=BiomassSupply(reallocation=0.02),
        min_n_conc=0.01,
        crit_n_conc=0.03,
        n_storage_demand=0.01,
    )
    root = SimpleOrgan(
        name="root",
        dm=20.0,
        n=0.4,
        dm_demand=BiomassDemand(structural=2.0, non_structural=0.5),
        dm_supply=BiomassSupply(reallocation=0.2),
        n_supply=BiomassSupply(uptake=root_uptake),
        min_n_conc=0.01,
        crit_n_conc=0.02,
    )
    nodule = SimpleOrgan(
        name="nodule",
        dm=2.0,
        n=0.1,
        dm_demand=BiomassDemand(structural=0.5),
        n_supply=BiomassSupply(fixation=nodule_fixation),
        min_n_conc=0.04,
        crit_n_conc=0.05,
        n_fixation_cost=fixation_cost,
    )
    return [leaf, root, nodule]


def total_amount(organs: list[SimpleOrgan], resource: Resource) -> float:
    """Sum of the organs' standing amounts."""
    return sum(organ.current_amount(resource) for organ in organs)


class TestFullDay:
    """Tests for a complete arbitrated day."""

    def test_simple_organ_is_consumer(self) -> None:
        """The reference organ satisfies the organ interface."""
        assert isinstance(make_test_organs()[0], Consumer)

    def test_dm_conserved(self) -> None:
        """Organ DM moves by exactly the net DM inflow."""
        organs = make_test_organs()
        start = total_amount(organs, Resource.DM)

        report = DailyArbitrator(organs).arbitrate()

        end = total_amount(organs, Resource.DM)
        assert jnp.isclose(end, start + report.primary.net_inflow, atol=1e-4)
        assert abs(report.primary.balance_error) <= 1e-4

    def test_n_conserved(self) -> None:
        """Organ N moves by exactly the N taken up and fixed."""
        organs = make_test_organs()
        start = total_amount(organs, Resource.N)

        report = DailyArbitrator(organs).arbitrate()

        end = total_amount(organs, Resource.N)
        inflow = report.secondary.total_uptake + report.secondary.total_fixation
        assert jnp.isclose(end, start + inflow, atol=1e-9)

    def test_dm_sink_limited(self) -> None:
        """Fixation beyond total DM demand is reported as sink limitation."""
        report = DailyArbitrator(make_test_organs(leaf_fixation=10.0)).arbitrate()

        assert jnp.isclose(report.primary.total_allocated, 9.0)
        assert jnp.isclose(report.primary.sink_limitation, 1.2)

    def test_n_demand_met(self) -> None:
        """With unlimited uptake every organ's N demand is met."""
        organs = make_test_organs()

        report = DailyArbitrator(organs).arbitrate()

        assert jnp.isclose(report.secondary.total_plant_demand, 0.225)
        assert jnp.isclose(report.secondary.total_allocated, 0.225)
        assert report.primary.nutrient_limitation == 0.0

    def test_outputs_nonnegative(self) -> None:
        """No allocation or flow is negative after a day."""
        report = DailyArbitrator(make_test_organs()).arbitrate(RationedUptake(0.05))

        for ledger in (report.primary, report.secondary):
            for name in OUTPUT_FIELDS:
                assert jnp.all(getattr(ledger, name) >= 0), name

    @pytest.mark.parametrize("method", list(ArbitrationMethod))
    def test_conserved_under_every_method(self, method: ArbitrationMethod) -> None:
        """Both balances close whichever policy is selected."""
        organs = make_test_organs(nodule_fixation=0.05, fixation_cost=5.0)
        config = ArbitratorConfig(primary_method=method, secondary_method=method)

        report = DailyArbitrator(organs, config).arbitrate(RationedUptake(0.1))

        assert abs(report.primary.balance_error) <= 1e-4
        assert abs(report.secondary.balance_error) <= 1e-9

    def test_organs_receive_allocations(self) -> None:
        """Final allocations are pushed to each organ for both resources."""
        organs = make_test_organs()

        DailyArbitrator(organs).arbitrate()

        for organ in organs:
            assert set(organ.allocations) == {Resource.DM, Resource.N}
        assert jnp.isclose(organs[0].allocations[Resource.DM].total(), 6.0)

    def test_summary_keys(self) -> None:
        """The daily summary carries resource-tagged diagnostics."""
        report = DailyArbitrator(make_test_organs()).arbitrate()

        summary = report.summary()

        assert summary["Day"] == 0
        assert jnp.isclose(summary["DMAllocated"], 9.0)
        assert "NUptake" in summary
        assert "FixationRespiration" in summary

    def test_summary_day_is_int(self) -> None:
        """The day index stays an integer among the float diagnostics."""
        arbitrator = DailyArbitrator(make_test_organs())
        arbitrator.arbitrate()

        summary = arbitrator.arbitrate().summary()

        assert summary["Day"] == 1
        assert isinstance(summary["Day"], int)

    def test_summary_delta_wt(self) -> None:
        """DeltaWt is the change in the organs' standing DM over the day."""
        organs = make_test_organs()
        before = total_amount(organs, Resource.DM)

        summary = DailyArbitrator(organs).arbitrate().summary()

        after = total_amount(organs, Resource.DM)
        assert jnp.isclose(summary["DeltaWt"], after - before)
        assert summary["DeltaWt"] > 0


class TestUptakeRequests:
    """Tests for requests sent to the uptake provider."""

    def test_requests_capped_at_unmet_demand(self) -> None:
        """Potential uptake beyond unmet N demand is scaled down."""
        arbitrator = DailyArbitrator(make_test_organs(root_uptake=0.3))

        requests = arbitrator.potential_allocation()

        # Demand 0.225 less 0.02 reallocated
        assert jnp.allclose(requests, jnp.array([0.0, 0.205, 0.0]))

    def test_requests_not_scaled_up(self) -> None:
        """Potential uptake below unmet demand is requested in full."""
        arbitrator = DailyArbitrator(make_test_organs(root_uptake=0.1))

        requests = arbitrator.potential_allocation()

        assert jnp.allclose(requests, jnp.array([0.0, 0.1, 0.0]))

    def test_rationed_uptake(self) -> None:
        """Rationed uptake grants only what is available."""
        report = DailyArbitrator(make_test_organs()).arbitrate(RationedUptake(0.05))

        assert jnp.isclose(report.secondary.total_uptake, 0.05)

    def test_rationed_uptake_rejects_negative(self) -> None:
        """Available uptake cannot be negative."""
        with pytest.raises(ValueError):
            RationedUptake(-1.0)

    def test_unlimited_uptake_grants_requests(self) -> None:
        """Unlimited uptake returns the requests unchanged."""
        requests = jnp.array([0.1, 0.2])

        granted = UnlimitedUptake()(Resource.N, requests)

        assert jnp.allclose(granted, requests)


class TestUptakeValidation:
    """Tests for rejecting impossible uptake."""

    def test_negative_uptake_rejected(self) -> None:
        """Negative uptake is fatal."""
        arbitrator = DailyArbitrator(make_test_organs())
        arbitrator.potential_allocation()

        with pytest.raises(InvalidSupplyError):
            arbitrator.actual_allocation(jnp.array([0.0, -0.1, 0.0]))

        assert arbitrator.phase == Phase.FAILED

    def test_uptake_above_request_rejected(self) -> None:
        """Granting more than was requested is fatal."""
        arbitrator = DailyArbitrator(make_test_organs())
        arbitrator.potential_allocation()

        with pytest.raises(InvalidSupplyError, match="larger than requested"):
            arbitrator.actual_allocation(jnp.array([0.0, 0.3, 0.0]))

    def test_wrongly_sized_uptake_rejected(self) -> None:
        """Uptake must have one entry per organ."""
        arbitrator = DailyArbitrator(make_test_organs())
        arbitrator.potential_allocation()

        with pytest.raises(InvalidSupplyError, match="wrongly sized"):
            arbitrator.actual_allocation(jnp.array([0.1]))


class TestPhases:
    """Tests for the phase order of the daily protocol."""

    def test_phase_sequence(self) -> None:
        """A day moves through the phases in order."""
        arbitrator = DailyArbitrator(make_test_organs())
        assert arbitrator.phase == Phase.IDLE

        requests = arbitrator.potential_allocation()
        assert arbitrator.phase == Phase.AWAITING_EXTERNAL_UPTAKE

        arbitrator.actual_allocation(requests)
        assert arbitrator.phase == Phase.VERIFIED

    def test_actual_before_potential_fails(self) -> None:
        """The actual phase cannot run first."""
        arbitrator = DailyArbitrator(make_test_organs())

        with pytest.raises(ArbitrationStateError):
            arbitrator.actual_allocation(jnp.zeros(3))

    def test_potential_twice_fails(self) -> None:
        """The potential phase cannot run twice in one day."""
        arbitrator = DailyArbitrator(make_test_organs())
        arbitrator.potential_allocation()

        with pytest.raises(ArbitrationStateError):
            arbitrator.potential_allocation()

    def test_consecutive_days(self) -> None:
        """A verified day can be followed by the next one."""
        arbitrator = DailyArbitrator(make_test_organs())

        first = arbitrator.arbitrate()
        second = arbitrator.arbitrate()

        assert first.day == 0
        assert second.day == 1
        assert arbitrator.day == 2

    def test_failure_then_reset(self) -> None:
        """A failed day blocks further work until reset."""
        organs = make_test_organs()
        organs[1].dm_demand = BiomassDemand(structural=-1.0)
        arbitrator = DailyArbitrator(organs)

        with pytest.raises(InvalidDemandError):
            arbitrator.arbitrate()
        assert arbitrator.phase == Phase.FAILED

        with pytest.raises(ArbitrationStateError):
            arbitrator.potential_allocation()

        organs[1].dm_demand = BiomassDemand(structural=2.0)
        arbitrator.reset()
        report = arbitrator.arbitrate()
        assert arbitrator.phase == Phase.VERIFIED
        assert report.primary.total_allocated > 0

    def test_provider_failure_marks_failed(self) -> None:
        """An exception from the provider fails the day."""

        def broken_provider(resource, requests):
            raise RuntimeError("soil model crashed")

        arbitrator = DailyArbitrator(make_test_organs())

        with pytest.raises(RuntimeError):
            arbitrator.arbitrate(broken_provider)

        assert arbitrator.phase == Phase.FAILED


class TestFixationCost:
    """Tests for N fixation paid in DM."""

    def test_cost_paid_from_sink_limitation(self) -> None:
        """Unused DM fixation pays for N fixation first."""
        organs = make_test_organs(nodule_fixation=0.05, fixation_cost=5.0)

        report = DailyArbitrator(organs).arbitrate(RationedUptake(0.1))

        assert jnp.isclose(report.secondary.total_fixation, 0.05)
        assert jnp.isclose(report.clawback.total_cost, 0.25)
        assert jnp.isclose(report.clawback.from_sink_limitation, 0.25)
        assert jnp.isclose(report.primary.sink_limitation, 1.2 - 0.25)
        assert jnp.isclose(report.primary.respiration[2], 0.25)

    def test_cost_reduces_growth_without_sink(self) -> None:
        """Without spare fixation the cost comes out of allocation."""
        organs = make_test_organs(
            leaf_fixation=8.0, nodule_fixation=0.05, fixation_cost=5.0
        )

        report = DailyArbitrator(organs).arbitrate(RationedUptake(0.1))

        assert report.clawback.from_sink_limitation == 0.0
        assert jnp.isclose(report.clawback.total_paid, 0.25)
        assert abs(report.primary.balance_error) <= 1e-4

    def test_unpayable_cost_fails_day(self) -> None:
        """A cost nothing can pay fails the day."""
        nodule = SimpleOrgan(
            name="nodule",
            n_demand=BiomassDemand(structural=1.0),
            n_supply=BiomassSupply(fixation=1.0),
            n_fixation_cost=5.0,
        )
        arbitrator = DailyArbitrator([nodule])

        with pytest.raises(UnpayableFixationCostError):
            arbitrator.arbitrate()

        assert arbitrator.phase == Phase.FAILED

    def test_negative_unit_cost_rejected(self) -> None:
        """A negative fixation cost is fatal."""
        organs = make_test_organs(nodule_fixation=0.05, fixation_cost=-1.0)

        with pytest.raises(InvalidSupplyError):
            DailyArbitrator(organs).arbitrate()


class TestNutrientLimitation:
    """Tests for DM growth limited by N."""

    def make_leaf(self) -> SimpleOrgan:
        """A leaf needing 0.02 N per unit DM, able to take up plenty."""
        return SimpleOrgan(
            name="leaf",
            dm=10.0,
            n=0.2,
            dm_demand=BiomassDemand(structural=4.0),
            dm_supply=BiomassSupply(fixation=5.0),
            n_supply=BiomassSupply(uptake=1.0),
            min_n_conc=0.02,
            crit_n_conc=0.02,
        )

    def test_growth_limited_by_n(self) -> None:
        """Half the N needed supports half the DM growth."""
        leaf = self.make_leaf()

        report = DailyArbitrator([leaf]).arbitrate(RationedUptake(0.04))

        assert jnp.isclose(report.primary.total_allocated, 2.0)
        assert jnp.isclose(report.primary.nutrient_limitation, 2.0)
        assert jnp.isclose(report.primary.sink_limitation, 1.0)
        assert jnp.isclose(leaf.dm, 12.0)
        assert jnp.isclose(report.secondary.constrained_growth[0], 2.0)

    def test_no_uptake_no_growth(self) -> None:
        """Without N the leaf cannot grow at all."""
        leaf = self.make_leaf()

        report = DailyArbitrator([leaf]).arbitrate(RationedUptake(0.0))

        assert report.primary.total_allocated == 0.0
        assert jnp.isclose(leaf.dm, 10.0)
        assert abs(report.primary.balance_error) <= 1e-4

    def test_plentiful_uptake_never_limits(self) -> None:
        """With N uptake far above demand no DM is withheld."""
        organs = [
            SimpleOrgan(
                name="leaf",
                dm=7.0,
                n=0.15,
                dm_demand=BiomassDemand(
                    structural=0.7, metabolic=0.3, non_structural=0.3
                ),
                dm_supply=BiomassSupply(fixation=10.0),
                min_n_conc=0.0147,
                crit_n_conc=0.021,
            ),
            SimpleOrgan(
                name="stem",
                dm=3.0,
                n=0.05,
                dm_demand=BiomassDemand(structural=1.3, non_structural=0.2),
                min_n_conc=0.0071,
                crit_n_conc=0.0133,
            ),
            SimpleOrgan(
                name="root",
                dm=1.1,
                n=0.02,
                dm_demand=BiomassDemand(structural=0.9, non_structural=0.1),
                n_supply=BiomassSupply(uptake=8.0),
                min_n_conc=0.0113,
                crit_n_conc=0.0169,
            ),
        ]

        report = DailyArbitrator(organs).arbitrate()

        assert report.primary.nutrient_limitation == 0.0
        assert jnp.allclose(
            report.primary.non_structural_allocation, jnp.array([0.3, 0.2, 0.1])
        )
        assert jnp.isinf(report.secondary.constrained_growth).all()


class TestOrganStateValidation:
    """Tests for rejecting impossible organ state."""

    def test_negative_min_concentration_rejected(self) -> None:
        """A negative minimum N concentration is fatal and names the organ."""
        organs = make_test_organs()
        organs[1].n_demand = BiomassDemand(structural=0.02)
        organs[1].min_n_conc = -0.01
        arbitrator = DailyArbitrator(organs)

        with pytest.raises(InvalidOrganStateError) as excinfo:
            arbitrator.arbitrate()

        assert excinfo.value.consumer == "root"
        assert excinfo.value.quantity == "minimum concentration"
        assert excinfo.value.value == -0.01
        assert arbitrator.phase == Phase.FAILED

    def test_negative_current_amount_rejected(self) -> None:
        """A negative standing amount fails the potential phase."""
        organs = make_test_organs()
        organs[2].n = -0.1
        arbitrator = DailyArbitrator(organs)

        with pytest.raises(InvalidOrganStateError) as excinfo:
            arbitrator.arbitrate()

        assert excinfo.value.consumer == "nodule"
        assert excinfo.value.resource == "N"
        assert arbitrator.phase == Phase.FAILED


class TestWater:
    """Tests for water arbitration within a day."""

    def make_water_organs(self) -> list[SimpleOrgan]:
        """The test plant with a transpiring leaf and root; the root extracts."""
        organs = make_test_organs()
        organs[0].water_need = 4.0
        organs[1].water_need = 2.0
        organs[1].water_extraction = 10.0
        return organs

    def test_water_shared_by_demand(self) -> None:
        """A short soil supply is shared in proportion to demand."""
        organs = self.make_water_organs()

        report = DailyArbitrator(organs).arbitrate(water_provider=RationedUptake(3.0))

        summary = report.summary()
        assert jnp.isclose(summary["WSupply"], 3.0)
        assert jnp.isclose(summary["WDemand"], 6.0)
        assert jnp.isclose(summary["WAllocated"], 3.0)
        assert jnp.isclose(summary["FW"], 0.5)
        assert jnp.isclose(organs[0].water_allocation, 2.0)
        assert jnp.isclose(organs[1].water_allocation, 1.0)

    def test_water_requests_capped_at_demand(self) -> None:
        """The plant asks the soil for no more water than it demands."""
        arbitrator = DailyArbitrator(self.make_water_organs())

        requests = arbitrator.water_uptake_requests()

        assert jnp.allclose(requests, jnp.array([0.0, 6.0, 0.0]))

    def test_days_without_water_report_zero(self) -> None:
        """Water diagnostics are zero when no water provider is given."""
        arbitrator = DailyArbitrator(self.make_water_organs())
        first = arbitrator.arbitrate(water_provider=UnlimitedUptake())

        second = arbitrator.arbitrate()

        assert isinstance(first.water, WaterReport)
        assert jnp.isclose(first.summary()["WAllocated"], 6.0)
        assert second.water is None
        assert second.summary()["WAllocated"] == 0.0
        assert second.summary()["FW"] == 0.0

    def test_water_only_between_days(self) -> None:
        """Water cannot be arbitrated while a day is in progress."""
        arbitrator = DailyArbitrator(self.make_water_organs())
        arbitrator.potential_allocation()

        with pytest.raises(ArbitrationStateError):
            arbitrator.set_water_uptake(jnp.array([0.0, 6.0, 0.0]))

    def test_negative_water_uptake_fails_day(self) -> None:
        """A negative water uptake is fatal."""
        arbitrator = DailyArbitrator(self.make_water_organs())

        with pytest.raises(InvalidSupplyError):
            arbitrator.arbitrate(water_provider=lambda resource, requests: -requests)

        assert arbitrator.phase == Phase.FAILED
