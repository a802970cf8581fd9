"""Event-study plots.

Plot estimates and pointwise normal confidence intervals of an imputation
result against event time. Pre-trend coefficients and post-treatment effects
are drawn as separate segments.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from didimpute.estimators.imputation import ImputationResult

__all__ = ["event_study_plot"]


def _parse_tau_index(labels: pd.Index | pd.Series) -> np.ndarray:
    """Convert term labels ('-2', '0', 'tau=3', 'D-1') to float event times.

    Non-parsable labels become np.nan.
    """
    out: list[float] = []
    pat_tau = re.compile(
        r"^(?:\s*(?:tau|event[_ ]?time|et)\s*[:=]\s*(-?\d+(?:\.\d+)?)\s*|D(-?\d+))$",
        re.IGNORECASE,
    )
    for lab in list(labels):
        if isinstance(lab, (int, float, np.integer, np.floating)):
            out.append(float(lab))
            continue
        s = str(lab).strip()
        try:
            out.append(float(s))
            continue
        except (TypeError, ValueError):
            m = pat_tau.match(s)
        out.append(float(m.group(1) or m.group(2)) if m else np.nan)
    return np.asarray(out, dtype=np.float64)


def event_study_plot(  # noqa: PLR0913
    result: ImputationResult | pd.DataFrame,
    title: str = "Event Study",
    xlabel: str = "Event time (t - g)",
    ylabel: str = "Estimate",
    show_zero: bool = True,
    vline_at: float | None = -0.5,
    ax: plt.Axes | None = None,
    pre_color: str | None = None,
    post_color: str | None = None,
    pre_label: str = "Pre-trend",
    post_label: str = "Effect",
    capsize: float = 3.0,
) -> tuple[Any, plt.Axes]:
    """Plot estimates and confidence intervals by event time.

    Parameters
    ----------
    result : ImputationResult or pandas.DataFrame
        A fitted result or its tidy table (``term, estimate, conf_low,
        conf_high``). Terms must be event-time labels, so this is meant for
        ``horizon`` / ``pretrends`` fits.
    vline_at : float or None
        Position of the vertical treatment-onset marker (``None`` hides it).
    ax : matplotlib.axes.Axes, optional
        Draw on an existing axes instead of a new figure.

    Returns
    -------
    (figure, axes)
    """
    table = result if isinstance(result, pd.DataFrame) else result.table
    for col in ("term", "estimate", "conf_low", "conf_high"):
        if col not in table.columns:
            raise KeyError(f"Result table lacks column '{col}'.")
    tau = _parse_tau_index(table["term"])
    if np.any(~np.isfinite(tau)):
        bad = [str(t) for t, v in zip(table["term"], tau) if not np.isfinite(v)]
        preview = ", ".join(bad[:8]) + ("" if len(bad) <= 8 else ", ...")
        raise ValueError(
            "Event-study terms must be numeric event times; "
            f"unparseable terms: {preview}",
        )
    y = table["estimate"].to_numpy(dtype=np.float64)
    lo = table["conf_low"].to_numpy(dtype=np.float64)
    hi = table["conf_high"].to_numpy(dtype=np.float64)
    order = np.argsort(tau, kind="mergesort")
    tau, y, lo, hi = tau[order], y[order], lo[order], hi[order]

    if ax is None:
        fig, ax = plt.subplots()
    else:
        fig = ax.figure

    for mask, color, label in (
        (tau < 0, pre_color, pre_label),
        (tau >= 0, post_color, post_label),
    ):
        if not np.any(mask):
            continue
        # NaN intervals are simply not drawn
        yerr = np.vstack([y[mask] - lo[mask], hi[mask] - y[mask]])
        ax.errorbar(
            tau[mask],
            y[mask],
            yerr=yerr,
            marker="o",
            linestyle="-",
            linewidth=1.2,
            capsize=capsize,
            color=color,
            label=label,
        )

    if show_zero:
        ax.axhline(0.0, linestyle="--", linewidth=0.8, color="0.4")
    if vline_at is not None:
        ax.axvline(float(vline_at), linestyle=":", linewidth=0.8, color="0.4")
    ax.set_title(title)
    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    ax.grid(True, linestyle="--", linewidth=0.5)
    ax.legend(frameon=False)
    return fig, ax
