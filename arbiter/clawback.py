"""
Paying the respiration cost of fixation out of primary-resource allocation.

Fixing a secondary resource (symbiotic N fixation) costs primary resource
(DM): each organ respires `fixed * unit_cost`. The cost is paid from, in
strict order:

1. Sink limitation: primary fixation supply nobody demanded today. Paying
   from it means fixing that much more, which is respired straight away.
2. Non-structural allocation, clawed back in proportion to each organ's
   share of the total non-structural allocation.
3. Extra retranslocation, drawn in proportion to each organ's remaining
   retranslocation supply.
4. Structural and metabolic allocation, clawed back in proportion to each
   organ's share of their combined total, and split between the two by
   that organ's own structural:metabolic allocation ratio.

Cost still unpaid after tier 4 means the fixation capacity is unrealistic
for the plant and is fatal.
"""

import logging
from typing import NamedTuple

import jax.numpy as jnp
from jax import Array

from arbiter.errors import UnpayableFixationCostError
from arbiter.ledger import ArbitrationLedger, safe_divide

logger = logging.getLogger(__name__)

DEFAULT_COST_TOLERANCE = 1e-10


class ClawbackReport(NamedTuple):
    """What each tier of the cascade paid."""

    total_cost: float
    from_sink_limitation: float
    non_structural_clawback: Array
    retranslocation_increase: Array
    structural_clawback: Array
    metabolic_clawback: Array

    @property
    def from_non_structural(self) -> float:
        return float(jnp.sum(self.non_structural_clawback))

    @property
    def from_retranslocation(self) -> float:
        return float(jnp.sum(self.retranslocation_increase))

    @property
    def from_structural_metabolic(self) -> float:
        return float(
            jnp.sum(self.structural_clawback) + jnp.sum(self.metabolic_clawback)
        )

    @property
    def total_paid(self) -> float:
        return (
            self.from_sink_limitation
            + self.from_non_structural
            + self.from_retranslocation
            + self.from_structural_metabolic
        )


def pay_fixation_cost(
    primary: ArbitrationLedger,
    fixed: Array,
    unit_costs: Array,
    cost_tolerance: float = DEFAULT_COST_TOLERANCE,
) -> tuple[ArbitrationLedger, ClawbackReport]:
    """
    Charge the respiration cost of fixation to the primary ledger.

    Args:
        primary: Primary ledger after its own fixation (sink limitation set)
        fixed: Secondary resource fixed by each organ
        unit_costs: Primary resource respired per unit fixed, per organ
        cost_tolerance: Unpaid cost above this is fatal

    Returns:
        Tuple of (updated primary ledger, clawback report)

    Raises:
        UnpayableFixationCostError: If all four tiers together cannot pay
    """
    respiration = jnp.asarray(fixed, dtype=float) * jnp.asarray(
        unit_costs, dtype=float
    )
    total_cost = float(jnp.sum(respiration))
    zeros = jnp.zeros(primary.size)
    ledger = primary._replace(respiration=primary.respiration + respiration)
    remaining = total_cost

    # 1. Fixation supply left over after today's sink limitation
    from_sink = min(remaining, ledger.sink_limitation)
    if from_sink > 0:
        extra_fixation = from_sink * safe_divide(
            ledger.fixation_supply, ledger.total_fixation_supply
        )
        ledger = ledger._replace(
            fixation=ledger.fixation + extra_fixation,
            sink_limitation=ledger.sink_limitation - from_sink,
        )
        remaining -= from_sink
    else:
        from_sink = 0.0

    # 2. Claw back today's non-structural allocation
    non_structural_clawback = zeros
    total_non_structural = ledger.total_non_structural_allocation
    if remaining > cost_tolerance and total_non_structural > 0:
        proportion = ledger.non_structural_allocation / total_non_structural
        non_structural_clawback = jnp.minimum(
            remaining * proportion, ledger.non_structural_allocation
        )
        ledger = ledger._replace(
            non_structural_allocation=ledger.non_structural_allocation
            - non_structural_clawback
        )
        remaining -= float(jnp.sum(non_structural_clawback))

    # 3. Remobilise more storage
    retranslocation_increase = zeros
    available = jnp.maximum(
        ledger.retranslocation_supply - ledger.retranslocation, 0.0
    )
    total_available = float(jnp.sum(available))
    if remaining > cost_tolerance and total_available > 0:
        retranslocation_increase = jnp.minimum(
            remaining * available / total_available, available
        )
        ledger = ledger._replace(
            retranslocation=ledger.retranslocation + retranslocation_increase
        )
        remaining -= float(jnp.sum(retranslocation_increase))

    # 4. Cut into structural and metabolic allocation
    structural_clawback = zeros
    metabolic_clawback = zeros
    combined = ledger.structural_allocation + ledger.metabolic_allocation
    total_combined = float(jnp.sum(combined))
    if remaining > cost_tolerance and total_combined > 0:
        proportion = combined / total_combined
        structural_fraction = safe_divide(ledger.structural_allocation, combined)
        structural_clawback = jnp.minimum(
            remaining * proportion * structural_fraction,
            ledger.structural_allocation,
        )
        metabolic_clawback = jnp.minimum(
            remaining * proportion * (1.0 - structural_fraction),
            ledger.metabolic_allocation,
        )
        ledger = ledger._replace(
            structural_allocation=ledger.structural_allocation - structural_clawback,
            metabolic_allocation=ledger.metabolic_allocation - metabolic_clawback,
        )
        remaining -= float(
            jnp.sum(structural_clawback) + jnp.sum(metabolic_clawback)
        )

    if remaining > cost_tolerance:
        raise UnpayableFixationCostError(
            ledger.resource.value, total_cost=total_cost, unpaid=remaining
        )

    report = ClawbackReport(
        total_cost=total_cost,
        from_sink_limitation=from_sink,
        non_structural_clawback=non_structural_clawback,
        retranslocation_increase=retranslocation_increase,
        structural_clawback=structural_clawback,
        metabolic_clawback=metabolic_clawback,
    )
    if total_cost > 0:
        logger.debug(
            "fixation cost %.6g paid: sink %.6g, non-structural %.6g, "
            "retranslocation %.6g, structural+metabolic %.6g",
            total_cost,
            report.from_sink_limitation,
            report.from_non_structural,
            report.from_retranslocation,
            report.from_structural_metabolic,
        )
    return ledger._replace(allocated=ledger.total_allocated), report
