"""
Visualization utilities for SimPower.

This module provides plotting functions for power sweep results.
"""

from typing import Dict, Optional

import numpy as np
import pandas as pd

__all__ = []


def _create_power_plot(
    table: pd.DataFrame,
    first_achieved: Dict,
    target_power: float = 80.0,
    title: str = "Power Analysis",
    show: bool = True,
):
    """Create a sample-size vs. power line plot, one line per effect size.

    Draws a horizontal dashed line at the target power and marks the first
    sample size at which each effect size reaches it.

    Args:
        table: Sweep table (``sample_size``, ``effect_size``, ``power``).
        first_achieved: Effect size → first sample size reaching the target
            (``None`` if never reached).
        target_power: Target power percentage (drawn as reference line).
        title: Plot title.
        show: Call ``plt.show()``; pass ``False`` to keep the figure open.

    Returns:
        The matplotlib ``Figure``.

    Raises:
        ImportError: If ``matplotlib`` is not installed.
    """
    try:
        import matplotlib.pyplot as plt
    except ImportError:
        raise ImportError("matplotlib required for plotting: pip install matplotlib") from None

    fig, ax = plt.subplots(figsize=(12, 8))
    effect_sizes = list(pd.unique(table["effect_size"]))
    colors = plt.get_cmap("Set1")(np.linspace(0, 1, max(len(effect_sizes), 1)))

    for i, effect_size in enumerate(effect_sizes):
        block = table[table["effect_size"] == effect_size] if effect_size is not None else table[table["effect_size"].isna()]
        block = block.sort_values("sample_size")
        sizes = block["sample_size"].to_numpy()
        powers = 100 * block["power"].to_numpy(dtype=float)
        ax.plot(
            sizes,
            powers,
            "o-",
            color=colors[i],
            label=f"effect = {effect_size}",
            linewidth=2,
            markersize=4,
        )

        achieved: Optional[int] = first_achieved.get(effect_size)
        if achieved is not None:
            achieved_power = powers[list(sizes).index(achieved)]
            ax.plot(
                achieved,
                achieved_power,
                "s",
                color=colors[i],
                markersize=10,
                markerfacecolor="white",
                markeredgewidth=2,
                markeredgecolor=colors[i],
            )
            ax.annotate(
                f"N={achieved}",
                xy=(achieved, achieved_power),
                xytext=(10, 10),
                textcoords="offset points",
                bbox={"boxstyle": "round,pad=0.3", "facecolor": colors[i], "alpha": 0.3},
                arrowprops={"arrowstyle": "->", "color": colors[i]},
            )

    # Target power line
    ax.axhline(
        y=target_power,
        color="red",
        linestyle="--",
        linewidth=2,
        label=f"Target Power ({target_power:g}%)",
    )

    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.set_xlabel("Sample Size", fontsize=12)
    ax.set_ylabel("Power (%)", fontsize=12)
    ax.grid(True, alpha=0.3)
    ax.legend(bbox_to_anchor=(1.05, 1), loc="upper left")
    ax.set_ylim(0, 105)

    plt.tight_layout()
    if show:
        plt.show()
    return fig
