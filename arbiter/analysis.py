"""
Limitation analysis for arbitrated seasons.

Summarises what held growth back on each day of a Season:
- Sink limitation: primary supply no organ demanded
- Nutrient limitation: primary growth the secondary resource could not support
- Fixation respiration: primary resource spent fixing the secondary one

Tables are host-side numpy arrays; plots use matplotlib, imported lazily so
the engine itself never needs a display backend.
"""

import numpy as np

from arbiter.rollout import Season


def limitation_table(season: Season) -> dict[str, np.ndarray]:
    """
    Per-day limitation diagnostics.

    Args:
        season: Output from run_days

    Returns:
        Dictionary of equal-length arrays:
        - day: Day index
        - allocated: Primary resource allocated
        - sink_limitation: Primary supply nobody demanded
        - nutrient_limitation: Primary growth withheld
        - fixation_respiration: Primary respired for fixation
        - secondary_supply_demand_ratio: Secondary supply over demand
        - limiting: 0 = unlimited, 1 = sink limited, 2 = nutrient limited
    """
    primary = season.config.primary.value
    secondary = season.config.secondary.value
    if len(season) == 0:
        empty = np.zeros(0)
        return {
            "day": np.zeros(0, dtype=int),
            "allocated": empty,
            "sink_limitation": empty,
            "nutrient_limitation": empty,
            "fixation_respiration": empty,
            "secondary_supply_demand_ratio": empty,
            "limiting": np.zeros(0, dtype=int),
        }

    arrays = {key: np.asarray(value) for key, value in season.get_arrays().items()}
    sink = arrays[f"{primary}SinkLimitation"]
    nutrient = arrays[f"{primary}NutrientLimitation"]

    # Nutrient limitation dominates: it means supply was there but unusable
    limiting = np.where(nutrient > 0, 2, np.where(sink > 0, 1, 0))

    return {
        "day": arrays["Day"].astype(int),
        "allocated": arrays[f"{primary}Allocated"],
        "sink_limitation": sink,
        "nutrient_limitation": nutrient,
        "fixation_respiration": arrays["FixationRespiration"],
        "secondary_supply_demand_ratio": arrays[f"{secondary}SupplyDemandRatio"],
        "limiting": limiting,
    }


def plot_limitations(season: Season, title: str = "Daily Limitation", ax=None):
    """
    Plot allocation and the limitations against day.

    Args:
        season: Output from run_days
        title: Plot title
        ax: Matplotlib axis (optional, creates new figure if None)

    Returns:
        Matplotlib axis with the plot
    """
    import matplotlib.pyplot as plt

    if ax is None:
        _, ax = plt.subplots(figsize=(10, 5))

    table = limitation_table(season)
    days = table["day"]

    ax.plot(days, table["allocated"], linewidth=2, color="green", label="Allocated")
    ax.plot(
        days,
        table["sink_limitation"],
        linewidth=2,
        color="orange",
        label="Sink limitation",
    )
    ax.plot(
        days,
        table["nutrient_limitation"],
        linewidth=2,
        color="red",
        label="Nutrient limitation",
    )
    ax.plot(
        days,
        table["fixation_respiration"],
        linestyle="--",
        color="purple",
        label="Fixation respiration",
    )
    ax.set_xlabel("Day")
    ax.set_ylabel(f"{season.config.primary.value} (g/m²)")
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    ax.legend()

    return ax
