"""Staggered-adoption panel generators.

Small data-generating processes used by the test-suite and the Monte Carlo
script: unit and period effects, an optional covariate, and constant,
dynamic or cohort-heterogeneous treatment effects.
"""

from __future__ import annotations

import numpy as np
import pandas as pd


def simulate_staggered_panel(  # noqa: PLR0913
    n_units: int = 100,
    n_periods: int = 10,
    *,
    cohorts: list[int] | None = None,
    never_share: float = 0.2,
    effect: float = 2.0,
    dynamic: float = 0.0,
    heterogeneous: bool = False,
    beta_x: float = 0.0,
    noise: float = 1.0,
    seed: int | None = 101,
) -> pd.DataFrame:
    """Simulate a balanced panel with staggered treatment adoption.

    Parameters
    ----------
    n_units, n_periods : int
        Panel dimensions; periods are numbered ``1..n_periods``.
    cohorts : list of int, optional
        Treatment-onset periods to draw from (default ``2..n_periods``).
    never_share : float
        Share of never-treated units (cohort coded 0).
    effect : float
        Effect at event time 0.
    dynamic : float
        Added effect per period since onset.
    heterogeneous : bool
        Scale the effect by ``g / mean(g)`` so cohorts differ.
    beta_x : float
        Coefficient on the time-varying covariate ``x``.
    noise : float
        Standard deviation of the idiosyncratic error.

    Returns
    -------
    pandas.DataFrame
        Columns ``id, t, g, x, w, y`` and the true effect ``te``.
    """
    rng = np.random.default_rng(seed)
    if cohorts is None:
        cohorts = list(range(2, n_periods + 1))
    g_unit = rng.choice(np.asarray(cohorts, dtype=np.int64), size=n_units)
    g_unit[rng.random(n_units) < never_share] = 0

    ids = np.repeat(np.arange(n_units), n_periods)
    t = np.tile(np.arange(1, n_periods + 1), n_units)
    g = g_unit[ids]
    df = pd.DataFrame({"id": ids, "t": t, "g": g})

    unit_fe = rng.standard_normal(n_units)
    time_fe = np.cumsum(rng.standard_normal(n_periods) * 0.5)
    x = rng.standard_normal(df.shape[0]) + 0.3 * time_fe[t - 1]

    treated = (g > 0) & (t >= g)
    et = np.where(treated, t - g, 0)
    scale = np.ones(df.shape[0])
    if heterogeneous:
        g_mean = float(np.mean(g_unit[g_unit > 0])) if np.any(g_unit > 0) else 1.0
        scale = np.where(g > 0, g / g_mean, 1.0)
    te = np.where(treated, (effect + dynamic * et) * scale, 0.0)

    df["x"] = x
    df["w"] = rng.uniform(0.5, 1.5, size=n_units)[ids]
    df["te"] = te
    df["y"] = unit_fe[ids] + time_fe[t - 1] + beta_x * x + te + noise * rng.standard_normal(df.shape[0])
    return df


def simulate_two_by_two(delta: float = 1.5) -> pd.DataFrame:
    """One unit treated in period 2 and one never-treated unit, no noise."""
    return pd.DataFrame(
        {
            "id": [1, 1, 2, 2],
            "t": [1, 2, 1, 2],
            "g": [2, 2, 0, 0],
            "y": [1.0, 3.0 + delta, 0.5, 2.5],
        },
    )
