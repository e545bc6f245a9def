"""
Mass balance checks for arbitration.

Three checks, each raising MassBalanceViolationError rather than
correcting anything:

1. Potential allocation never exceeds total supply or total demand.
2. The ledger's own arithmetic closes. Every output is nonnegative, no
   channel draws more than was offered, and

       Σ allocation - Σ reallocation - Σ retranslocation
           == Σ uptake + Σ fixation - Σ respiration - nutrient limitation

3. The organs agree. After final allocations are pushed, the organs'
   standing amounts have moved by exactly the net inflow:

       end == start + Σ uptake + Σ fixation - Σ respiration - nutrient limitation

   and the plant has not grown by more than it demanded.
"""

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

import jax.numpy as jnp

from arbiter.errors import MassBalanceViolationError
from arbiter.ledger import SUPPLY_CHANNELS, ArbitrationLedger

if TYPE_CHECKING:
    from arbiter.organs import Consumer

logger = logging.getLogger(__name__)

OUTPUT_FIELDS = (
    "structural_allocation",
    "metabolic_allocation",
    "non_structural_allocation",
    "reallocation",
    "uptake",
    "fixation",
    "retranslocation",
    "respiration",
)


def check_potential_allocation(ledger: ArbitrationLedger) -> ArbitrationLedger:
    """
    Check potential allocation against supply and demand.

    Compared at 8 decimal places, so only genuine over-allocation fails.

    Returns:
        Ledger with `allocated` set to the potential allocation
    """
    allocated = ledger.total_allocated
    for quantity, limit in (
        ("potential allocation vs supply", ledger.total_plant_supply),
        ("potential allocation vs demand", ledger.total_plant_demand),
    ):
        if round(allocated, 8) > round(limit, 8):
            raise MassBalanceViolationError(
                ledger.resource.value,
                quantity,
                expected=limit,
                actual=allocated,
                tolerance=1e-8,
            )
    return ledger._replace(allocated=allocated)


def verify_ledger(
    ledger: ArbitrationLedger,
    tolerance: float,
    negative_tolerance: float = 1e-8,
) -> ArbitrationLedger:
    """
    Check the ledger's own arithmetic.

    Outputs within `negative_tolerance` below zero are rounding and are
    clamped to zero; anything more negative is fatal.

    Args:
        ledger: Finished ledger
        tolerance: Allowed error in the conservation identity
        negative_tolerance: Allowed rounding below zero

    Returns:
        Ledger with rounding negatives clamped to zero
    """
    resource = ledger.resource.value
    clamped = {}
    for name in OUTPUT_FIELDS:
        values = getattr(ledger, name)
        worst = int(jnp.argmin(values)) if ledger.size else 0
        if ledger.size and float(values[worst]) < -negative_tolerance:
            raise MassBalanceViolationError(
                resource,
                f"{name} of {ledger.names[worst]}",
                expected=0.0,
                actual=float(values[worst]),
                tolerance=negative_tolerance,
            )
        clamped[name] = jnp.maximum(values, 0.0)
    ledger = ledger._replace(**clamped)

    for channel in SUPPLY_CHANNELS:
        drawn = getattr(ledger, channel)
        offered = getattr(ledger, f"{channel}_supply")
        excess = drawn - offered
        worst = int(jnp.argmax(excess)) if ledger.size else 0
        if ledger.size and float(excess[worst]) > tolerance:
            raise MassBalanceViolationError(
                resource,
                f"{channel} drawn from {ledger.names[worst]}",
                expected=float(offered[worst]),
                actual=float(drawn[worst]),
                tolerance=tolerance,
            )

    moved = (
        ledger.total_allocated
        - ledger.total_reallocation
        - ledger.total_retranslocation
    )
    if abs(moved - ledger.net_inflow) > tolerance:
        raise MassBalanceViolationError(
            resource,
            "net allocation",
            expected=ledger.net_inflow,
            actual=moved,
            tolerance=tolerance,
        )
    return ledger


def verify_mass_balance(
    ledger: ArbitrationLedger,
    consumers: "Sequence[Consumer]",
    tolerance: float,
) -> ArbitrationLedger:
    """
    Check the organs' standing amounts after final allocation.

    Args:
        ledger: Finished ledger whose allocations have been pushed
        consumers: The same organs the ledger was built from
        tolerance: Allowed balance error

    Returns:
        Ledger with `end` and `balance_error` recorded
    """
    resource = ledger.resource
    end = sum(float(c.current_amount(resource)) for c in consumers)
    expected = ledger.start + ledger.net_inflow
    ledger = ledger._replace(end=end, balance_error=end - expected)

    if abs(ledger.balance_error) > tolerance:
        raise MassBalanceViolationError(
            resource.value,
            "plant amount at end of day",
            expected=expected,
            actual=end,
            tolerance=tolerance,
        )

    growth_limit = ledger.start + ledger.total_plant_demand
    if end - growth_limit > tolerance:
        raise MassBalanceViolationError(
            resource.value,
            "plant amount vs demand",
            expected=growth_limit,
            actual=end,
            tolerance=tolerance,
        )

    logger.debug(
        "%s balance: start %.6g, end %.6g, error %.3g",
        resource.value,
        ledger.start,
        end,
        ledger.balance_error,
    )
    return ledger
