"""
Nutrient constraint on primary-resource allocation.

Every unit of new primary biomass (DM) needs at least a minimum
concentration of the secondary resource (N). Once N has been arbitrated,
each organ's N allocation caps how much DM it can actually grow:

    ceiling_i = N allocated_i / min N concentration_i

DM allocations above the ceiling are cut back, keeping the organ's split
between structural, metabolic and non-structural DM. The DM withheld is
reported as nutrient limitation.
"""

import logging

import jax.numpy as jnp
from jax import Array

from arbiter.ledger import ArbitrationLedger, safe_divide

logger = logging.getLogger(__name__)


def constrained_growth(
    secondary: ArbitrationLedger, min_concentrations, tolerance: float = 0.0
) -> Array:
    """
    Primary-resource growth each organ's secondary allocation can support.

    Args:
        secondary: Secondary ledger after all its channels are arbitrated
        min_concentrations: Minimum secondary concentration per organ
        tolerance: Shortfall below demand still counted as demand met

    Returns:
        Growth ceiling per organ: `inf` where the organ's secondary demand is
        fully met (or it has no minimum concentration), 0 where it got
        nothing despite demand, otherwise allocation / min concentration.
    """
    min_conc = jnp.asarray(min_concentrations, dtype=float)
    allocation = secondary.total_allocation
    demand = (
        secondary.structural_demand
        + secondary.metabolic_demand
        + secondary.non_structural_demand
    )
    unconstrained = (allocation >= demand - tolerance) | (min_conc <= 0)
    ceiling = safe_divide(allocation, min_conc)
    ceiling = jnp.where(allocation == 0, 0.0, ceiling)
    return jnp.where(unconstrained, jnp.inf, ceiling)


def apply_nutrient_constraint(
    primary: ArbitrationLedger,
    secondary: ArbitrationLedger,
    min_concentrations,
    tolerance: float = 0.0,
) -> tuple[ArbitrationLedger, ArbitrationLedger]:
    """
    Reduce primary allocations the secondary resource cannot support.

    Each tier of organ i becomes

        min(allocation, ceiling_i * tier share of organ i's total allocation)

    so the organ's total never exceeds its ceiling and its tier split is
    kept.

    Args:
        primary: Primary ledger after fixation cost has been paid
        secondary: Finished secondary ledger
        min_concentrations: Minimum secondary concentration per organ
        tolerance: Secondary balance tolerance; an organ short of its
            demand by no more than this is not limited

    Returns:
        Tuple of (primary ledger with reduced allocation, secondary ledger
        with `constrained_growth` filled in)
    """
    ceiling = constrained_growth(secondary, min_concentrations, tolerance)
    secondary = secondary._replace(
        constrained_growth=ceiling, allocated=secondary.total_allocated
    )

    before = primary.total_allocated
    total = primary.total_allocation

    def cap(tier: Array) -> Array:
        share = safe_divide(tier, total)
        limit = jnp.where(jnp.isinf(ceiling), jnp.inf, ceiling * share)
        return jnp.where(total > 0, jnp.minimum(tier, limit), tier)

    primary = primary._replace(
        structural_allocation=cap(primary.structural_allocation),
        metabolic_allocation=cap(primary.metabolic_allocation),
        non_structural_allocation=cap(primary.non_structural_allocation),
    )
    after = primary.total_allocated
    limitation = max(before - after, 0.0)
    if limitation > 0:
        logger.debug(
            "%s allocation limited by %s: %.6g withheld",
            primary.resource.value,
            secondary.resource.value,
            limitation,
        )
    return primary._replace(allocated=after, nutrient_limitation=limitation), secondary
