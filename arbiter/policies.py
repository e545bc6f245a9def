"""
Allocation policies for dividing one channel's supply between organs.

Every policy is a pure function

    (ledger, supply) -> (ledger, total_allocated)

that adds to the three allocation arrays and records what was left over in
`ledger.not_allocated`. Demand is never modified; each policy works on the
organs' *requirement*, i.e. demand not yet met by earlier channels.

Policies:
1. relative_allocation: proportional, structural+metabolic then non-structural
2. priority_allocation: declaration order for both passes
3. priority_then_relative_allocation: declaration order, then proportional
4. relative_single_pass_allocation: proportional over all tiers at once

Zero plant-wide totals give zero fractions (never NaN), so a tier nobody
demands is simply skipped.
"""

import logging
from collections.abc import Callable

import jax.numpy as jnp
from jax import Array

from arbiter.config import ArbitrationMethod
from arbiter.ledger import ArbitrationLedger, safe_divide

logger = logging.getLogger(__name__)

PolicyFn = Callable[[ArbitrationLedger, float], tuple[ArbitrationLedger, float]]


def _proportional(requirement: Array, pool: Array) -> Array:
    """Share `pool` in proportion to requirement, capped at requirement."""
    total = jnp.sum(requirement)
    return jnp.minimum(requirement, pool * safe_divide(requirement, total))


def _in_order(requirement: Array, pool: Array) -> Array:
    """
    First-come-first-served share of `pool` in declaration order.

    Organ i gets min(requirement_i, whatever organs before it left over),
    which is the cumulative-sum form of a sequential loop.
    """
    taken_before = jnp.cumsum(requirement) - requirement
    return jnp.clip(pool - taken_before, 0.0, requirement)


def _relative_first_pass(
    ledger: ArbitrationLedger, supply: float
) -> tuple[Array, Array]:
    """Structural and metabolic shares, proportional within and between pools."""
    structural_req = ledger.structural_requirement()
    metabolic_req = ledger.metabolic_requirement()
    total_structural = jnp.sum(structural_req)
    total_metabolic = jnp.sum(metabolic_req)

    structural_fraction = safe_divide(
        total_structural, total_structural + total_metabolic
    )
    structural = _proportional(structural_req, supply * structural_fraction)
    metabolic = _proportional(metabolic_req, supply * (1.0 - structural_fraction))
    return structural, metabolic


def _priority_first_pass(
    ledger: ArbitrationLedger, supply: float
) -> tuple[Array, Array]:
    """Structural and metabolic shares in declaration order."""
    structural_req = ledger.structural_requirement()
    metabolic_req = ledger.metabolic_requirement()
    combined = structural_req + metabolic_req

    taken = _in_order(combined, jnp.asarray(supply, dtype=float))
    # Split each organ's share by its own structural:metabolic requirement
    structural = jnp.minimum(
        structural_req, taken * safe_divide(structural_req, combined)
    )
    metabolic = jnp.minimum(metabolic_req, taken - structural)
    return structural, metabolic


def _finish(
    ledger: ArbitrationLedger,
    supply: float,
    structural: Array,
    metabolic: Array,
    non_structural: Array,
) -> tuple[ArbitrationLedger, float]:
    """Add the three shares to the ledger and record the leftover."""
    structural = jnp.maximum(structural, 0.0)
    metabolic = jnp.maximum(metabolic, 0.0)
    non_structural = jnp.maximum(non_structural, 0.0)
    total_allocated = float(
        jnp.sum(structural) + jnp.sum(metabolic) + jnp.sum(non_structural)
    )
    updated = ledger._replace(
        structural_allocation=ledger.structural_allocation + structural,
        metabolic_allocation=ledger.metabolic_allocation + metabolic,
        non_structural_allocation=ledger.non_structural_allocation + non_structural,
        not_allocated=max(supply - total_allocated, 0.0),
    )
    return updated, total_allocated


def relative_allocation(
    ledger: ArbitrationLedger, supply: float
) -> tuple[ArbitrationLedger, float]:
    """
    Two-pass proportional allocation.

    Pass 1 splits `supply` between the structural and metabolic pools by the
    pools' plant-wide requirement, then within each pool by each organ's
    requirement. Pass 2 shares whatever is left over non-structural
    requirement in the same way.

    Args:
        ledger: Ledger with demands and any earlier allocations
        supply: Amount pooled from one supply channel

    Returns:
        Tuple of (updated ledger, total allocated)
    """
    structural, metabolic = _relative_first_pass(ledger, supply)
    remaining = jnp.maximum(supply - jnp.sum(structural) - jnp.sum(metabolic), 0.0)
    non_structural = _proportional(ledger.non_structural_requirement(), remaining)
    return _finish(ledger, supply, structural, metabolic, non_structural)


def priority_allocation(
    ledger: ArbitrationLedger, supply: float
) -> tuple[ArbitrationLedger, float]:
    """
    Two-pass allocation in declaration order.

    Each organ takes as much of its structural+metabolic requirement as the
    remaining pool allows before the next organ is considered. The leftover
    then fills non-structural requirement in the same order.
    """
    structural, metabolic = _priority_first_pass(ledger, supply)
    remaining = jnp.maximum(supply - jnp.sum(structural) - jnp.sum(metabolic), 0.0)
    non_structural = _in_order(ledger.non_structural_requirement(), remaining)
    return _finish(ledger, supply, structural, metabolic, non_structural)


def priority_then_relative_allocation(
    ledger: ArbitrationLedger, supply: float
) -> tuple[ArbitrationLedger, float]:
    """Priority first pass, proportional non-structural second pass."""
    structural, metabolic = _priority_first_pass(ledger, supply)
    remaining = jnp.maximum(supply - jnp.sum(structural) - jnp.sum(metabolic), 0.0)
    non_structural = _proportional(ledger.non_structural_requirement(), remaining)
    return _finish(ledger, supply, structural, metabolic, non_structural)


def relative_single_pass_allocation(
    ledger: ArbitrationLedger, supply: float
) -> tuple[ArbitrationLedger, float]:
    """
    Single-pass proportional allocation over all three tiers.

    Each tier gets a share of `supply` equal to its share of the plant's
    total requirement, then shares that within the tier by organ. Unlike
    the two-pass policies, non-structural demand always receives something
    when there is any.
    """
    structural_req = ledger.structural_requirement()
    metabolic_req = ledger.metabolic_requirement()
    non_structural_req = ledger.non_structural_requirement()

    total_structural = jnp.sum(structural_req)
    total_metabolic = jnp.sum(metabolic_req)
    total_non_structural = jnp.sum(non_structural_req)
    total = total_structural + total_metabolic + total_non_structural

    structural = _proportional(
        structural_req, supply * safe_divide(total_structural, total)
    )
    metabolic = _proportional(
        metabolic_req, supply * safe_divide(total_metabolic, total)
    )
    non_structural = _proportional(
        non_structural_req, supply * safe_divide(total_non_structural, total)
    )
    return _finish(ledger, supply, structural, metabolic, non_structural)


POLICIES: dict[ArbitrationMethod, PolicyFn] = {
    ArbitrationMethod.RELATIVE: relative_allocation,
    ArbitrationMethod.PRIORITY: priority_allocation,
    ArbitrationMethod.PRIORITY_THEN_RELATIVE: priority_then_relative_allocation,
    ArbitrationMethod.RELATIVE_SINGLE_PASS: relative_single_pass_allocation,
}


def allocate(
    ledger: ArbitrationLedger, method: ArbitrationMethod, supply: float
) -> tuple[ArbitrationLedger, float]:
    """
    Allocate `supply` with the policy selected by `method`.

    Args:
        ledger: Ledger to allocate into
        method: Policy selector
        supply: Pooled amount from one supply channel

    Returns:
        Tuple of (updated ledger, total allocated)
    """
    policy = POLICIES[ArbitrationMethod(method)]
    updated, total_allocated = policy(ledger, float(supply))
    logger.debug(
        "%s %s: supply %.6g, allocated %.6g, not allocated %.6g",
        ledger.resource.value,
        ArbitrationMethod(method).value,
        supply,
        total_allocated,
        updated.not_allocated,
    )
    return updated, total_allocated
