"""
Arbiter: Organ Biomass Arbitration

Daily division of dry matter and nitrogen between the organs of a crop
model, given each organ's demand and supply.

Modules:
    config: Resource tags, method selector, value records and configuration
    errors: Fatal arbitration errors
    organs: Organ interface and a reference organ
    ledger: Per-resource arbitration record
    policies: Allocation policies (relative, priority and variants)
    pipeline: Arbitration of one supply channel
    clawback: Paying the fixation cost out of dry matter
    constraint: Nitrogen limits on dry matter growth
    balance: Mass balance checks
    controller: Daily two-phase protocol
    rollout: Multi-day runs
    water: Water shared by demand
    analysis: Limitation tables and plots
"""

import jax

# Balance tolerances go down to 1e-9, which float32 cannot resolve
jax.config.update("jax_enable_x64", True)

from arbiter.analysis import limitation_table, plot_limitations  # noqa: E402
from arbiter.balance import (  # noqa: E402
    check_potential_allocation,
    verify_ledger,
    verify_mass_balance,
)
from arbiter.clawback import ClawbackReport, pay_fixation_cost  # noqa: E402
from arbiter.config import (  # noqa: E402
    ArbitrationMethod,
    ArbitratorConfig,
    BiomassDemand,
    BiomassSupply,
    OrganAllocation,
    Resource,
)
from arbiter.constraint import (  # noqa: E402
    apply_nutrient_constraint,
    constrained_growth,
)
from arbiter.controller import (  # noqa: E402
    DailyArbitrator,
    DailyReport,
    Phase,
    RationedUptake,
    UnlimitedUptake,
)
from arbiter.errors import (  # noqa: E402
    ArbitrationError,
    ArbitrationStateError,
    InvalidDemandError,
    InvalidOrganStateError,
    InvalidSupplyError,
    MassBalanceViolationError,
    UnpayableFixationCostError,
)
from arbiter.ledger import ArbitrationLedger, build_ledger  # noqa: E402
from arbiter.organs import Consumer, SimpleOrgan  # noqa: E402
from arbiter.pipeline import fix, reallocate, retranslocate, take_up  # noqa: E402
from arbiter.policies import (  # noqa: E402
    allocate,
    priority_allocation,
    priority_then_relative_allocation,
    relative_allocation,
    relative_single_pass_allocation,
)
from arbiter.rollout import Season, compare_methods, run_days  # noqa: E402
from arbiter.water import (  # noqa: E402
    WaterConsumer,
    WaterReport,
    allocate_water,
    water_uptake_requests,
)

__all__ = [
    # Config
    "ArbitrationMethod",
    "ArbitratorConfig",
    "BiomassDemand",
    "BiomassSupply",
    "OrganAllocation",
    "Resource",
    # Errors
    "ArbitrationError",
    "ArbitrationStateError",
    "InvalidDemandError",
    "InvalidOrganStateError",
    "InvalidSupplyError",
    "MassBalanceViolationError",
    "UnpayableFixationCostError",
    # Organs
    "Consumer",
    "SimpleOrgan",
    # Ledger
    "ArbitrationLedger",
    "build_ledger",
    # Policies
    "allocate",
    "priority_allocation",
    "priority_then_relative_allocation",
    "relative_allocation",
    "relative_single_pass_allocation",
    # Pipeline
    "fix",
    "reallocate",
    "retranslocate",
    "take_up",
    # Fixation cost and nutrient constraint
    "ClawbackReport",
    "pay_fixation_cost",
    "apply_nutrient_constraint",
    "constrained_growth",
    # Balance
    "check_potential_allocation",
    "verify_ledger",
    "verify_mass_balance",
    # Daily protocol
    "DailyArbitrator",
    "DailyReport",
    "Phase",
    "RationedUptake",
    "UnlimitedUptake",
    # Water
    "WaterConsumer",
    "WaterReport",
    "allocate_water",
    "water_uptake_requests",
    # Multi-day runs
    "Season",
    "compare_methods",
    "run_days",
    # Analysis
    "limitation_table",
    "plot_limitations",
]
