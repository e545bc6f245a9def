"""
Supply application: arbitrate one supply channel into the ledger.

Each operation works the same way:

1. Skip the channel entirely if its total supply is below the threshold.
2. Ask the configured policy how the channel's total supply is shared
   between the organs' requirements (who *receives*).
3. Draw the allocated total from each organ's own supply of that channel
   in proportion to its share of the channel's total supply (who *gives*).

The two sides are independent: an organ's draw depends only on what it
offered, never on what it received. Reallocation and retranslocation move
mass already inside the plant; uptake and fixation bring new mass in.

Operations are run at most once per resource per phase, in the order the
controller sets:
    DM: reallocate -> fix -> retranslocate
    N:  reallocate -> take_up -> fix -> retranslocate
"""

import logging

from arbiter.config import ArbitrationMethod
from arbiter.ledger import ArbitrationLedger, safe_divide
from arbiter.policies import allocate

logger = logging.getLogger(__name__)

DEFAULT_SUPPLY_THRESHOLD = 1e-11


def _apply_channel(
    ledger: ArbitrationLedger,
    method: ArbitrationMethod,
    channel: str,
    threshold: float,
) -> tuple[ArbitrationLedger, float]:
    """
    Arbitrate one supply channel.

    Args:
        ledger: Ledger to update
        method: Policy deciding who receives
        channel: Supply channel name (e.g. "reallocation")
        threshold: Channels with less total supply are skipped

    Returns:
        Tuple of (updated ledger, total drawn from the channel)
    """
    supply = getattr(ledger, f"{channel}_supply")
    total_supply = float(supply.sum())
    if total_supply <= threshold:
        logger.debug(
            "%s %s skipped: supply %.3g", ledger.resource.value, channel, total_supply
        )
        return ledger, 0.0

    ledger, allocated = allocate(ledger, method, total_supply)

    # Draw from each supplier by its share of the channel's supply
    drawn = allocated * safe_divide(supply, total_supply)
    flow = getattr(ledger, channel) + drawn
    ledger = ledger._replace(**{channel: flow}, allocated=ledger.total_allocated)
    return ledger, allocated


def reallocate(
    ledger: ArbitrationLedger,
    method: ArbitrationMethod,
    threshold: float = DEFAULT_SUPPLY_THRESHOLD,
) -> ArbitrationLedger:
    """Allocate biomass freed by senescing tissue."""
    ledger, _ = _apply_channel(ledger, method, "reallocation", threshold)
    return ledger


def take_up(
    ledger: ArbitrationLedger,
    method: ArbitrationMethod,
    threshold: float = DEFAULT_SUPPLY_THRESHOLD,
) -> ArbitrationLedger:
    """
    Allocate biomass taken up from the environment.

    The ledger's uptake supply must already hold the amounts the uptake
    provider granted, not the organs' potential uptake.
    """
    ledger, _ = _apply_channel(ledger, method, "uptake", threshold)
    return ledger


def retranslocate(
    ledger: ArbitrationLedger,
    method: ArbitrationMethod,
    threshold: float = DEFAULT_SUPPLY_THRESHOLD,
) -> ArbitrationLedger:
    """Allocate biomass moved out of non-structural storage."""
    ledger, _ = _apply_channel(ledger, method, "retranslocation", threshold)
    return ledger


def fix(
    ledger: ArbitrationLedger,
    method: ArbitrationMethod,
    threshold: float = DEFAULT_SUPPLY_THRESHOLD,
) -> ArbitrationLedger:
    """
    Allocate newly fixed biomass and record sink limitation.

    Fixation supply that no organ demanded is the day's sink limitation.
    It is caught here because `not_allocated` is overwritten by every later
    policy call. When the channel is skipped the whole supply (below the
    threshold) counts as sink limited.

    The respiration cost of fixing a secondary resource is charged
    separately, see `arbiter.clawback.pay_fixation_cost`.
    """
    total_supply = ledger.total_fixation_supply
    ledger, allocated = _apply_channel(ledger, method, "fixation", threshold)
    sink_limitation = max(total_supply - allocated, 0.0)
    if sink_limitation > threshold:
        logger.debug(
            "%s sink limited by %.6g", ledger.resource.value, sink_limitation
        )
    return ledger._replace(sink_limitation=sink_limitation)
