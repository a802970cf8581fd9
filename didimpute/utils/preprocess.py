"""Panel preparation for the imputation estimator.

Derives the treatment indicator, event time and the treatment-weight vectors
from raw panel columns. Everything lives in a :class:`PreparedPanel` scratch
record scoped to one estimation call; the caller's frame is never modified.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from didimpute.core import linalg as la
from didimpute.exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Sequence

LOGGER = logging.getLogger(__name__)

STATIC_TERM = "treat"

__all__ = [
    "STATIC_TERM",
    "PreparedPanel",
    "event_time_label",
    "prepare_panel",
]


def event_time_label(e: float) -> str:
    """User-facing label of an event time (``"0"``, ``"-3"``, ``"1.5"``)."""
    ef = float(e)
    return str(int(ef)) if ef.is_integer() else str(ef)


@dataclass
class PreparedPanel:
    """Derived per-row quantities of one estimation call.

    Attributes
    ----------
    data : pandas.DataFrame
        Copy of the input with a fresh ``RangeIndex``.
    original_index : pandas.Index
        Index of the caller's frame, used to rebuild the augmented output.
    treat : ndarray of bool
        ``time >= cohort`` for units with a finite positive cohort.
    event_time : ndarray of float
        ``time - cohort``; ``-inf`` for never-treated rows.
    cohort : ndarray of float
        Cohort with never-treated units coded 0.
    obs_weights : ndarray of float
        External observation weights (ones when absent).
    weight_vectors : dict[str, ndarray]
        Normalised treatment-weight vectors keyed by term label, in
        construction order.
    pretrends : list[float]
        Requested pre-treatment event times.
    """

    data: pd.DataFrame
    original_index: pd.Index
    yname: str
    gname: str
    tname: str
    idname: str
    treat: np.ndarray
    event_time: np.ndarray
    cohort: np.ndarray
    obs_weights: np.ndarray
    has_weights: bool
    weight_vectors: dict[str, np.ndarray] = field(default_factory=dict)
    pretrends: list[float] = field(default_factory=list)
    finite_event_times: np.ndarray = field(default_factory=lambda: np.empty(0))

    @property
    def n(self) -> int:
        return int(self.data.shape[0])

    @property
    def never_treated(self) -> np.ndarray:
        return ~np.isfinite(self.event_time)

    @property
    def terms(self) -> list[str]:
        return list(self.weight_vectors)

    def weight_matrix(self) -> np.ndarray:
        """(n, K) array of the weight vectors in construction order."""
        if not self.weight_vectors:
            return np.empty((self.n, 0), dtype=np.float64)
        return np.column_stack(list(self.weight_vectors.values()))


def _require_columns(df: pd.DataFrame, names: dict[str, str | None]) -> None:
    for role, col in names.items():
        if col is not None and col not in df.columns:
            raise ConfigurationError(f"{role} column '{col}' not found in data.")


def _numeric(df: pd.DataFrame, col: str, role: str) -> np.ndarray:
    if not pd.api.types.is_numeric_dtype(df[col]):
        raise ConfigurationError(f"{role} column '{col}' must be numeric.")
    return df[col].to_numpy(dtype=np.float64, copy=True)


def _normalize(vec: np.ndarray, label: str) -> np.ndarray:
    total = float(np.sum(vec))
    if total == 0.0:
        LOGGER.warning("Treatment weights for '%s' sum to zero; left unscaled", label)
        return vec
    return vec / total


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (str, bytes)) or np.isscalar(value):
        return [value]
    return list(value)


def _wants_all(value: Any) -> bool:
    return value is True or (isinstance(value, (np.bool_,)) and bool(value))


def prepare_panel(  # noqa: PLR0913, PLR0912
    data: pd.DataFrame,
    *,
    yname: str,
    gname: str,
    tname: str,
    idname: str,
    weights: str | None = None,
    wtr: Sequence[str] | str | None = None,
    horizon: bool | Sequence[float] | None = None,
    pretrends: bool | Sequence[float] | None = None,
) -> PreparedPanel:
    """Build treatment indicators and normalised treatment-weight vectors.

    Parameters
    ----------
    data : pandas.DataFrame
        Long panel, one row per ``(idname, tname)``.
    yname, gname, tname, idname : str
        Outcome, cohort (first treated period; 0 / NaN / inf for never
        treated), time and unit columns.
    weights : str, optional
        Column of non-negative observation weights.
    wtr : str or sequence of str, optional
        Columns holding custom treatment weights; each becomes one term.
    horizon : True or sequence of numbers, optional
        Event-study horizons (ignored when ``wtr`` is given). ``True``
        selects every non-negative event time.
    pretrends : True or sequence of numbers, optional
        Pre-treatment event times to test. ``True`` selects every negative
        event time.

    Raises
    ------
    ConfigurationError
        Unknown columns, non-numeric time or cohort, duplicated
        ``(unit, time)`` rows, invalid weights, or requested horizons /
        pre-trends absent from the finite event-time set.
    """
    if not isinstance(data, pd.DataFrame):
        raise ConfigurationError("data must be a pandas DataFrame.")
    _require_columns(
        data,
        {"outcome": yname, "cohort": gname, "time": tname, "unit": idname, "weights": weights},
    )
    for col in (idname, tname):
        if data[col].isna().any():
            raise ConfigurationError(f"Missing values detected in required column '{col}'.")
    if data.duplicated([idname, tname]).any():
        raise ConfigurationError(
            f"Panel requires unique ({idname}, {tname}) rows. Duplicates detected.",
        )

    df = data.reset_index(drop=True).copy()
    t = _numeric(df, tname, "time")
    g = _numeric(df, gname, "cohort")
    n = df.shape[0]

    ever = np.isfinite(g) & (g > 0)
    with np.errstate(invalid="ignore"):
        treat = ever & (t >= np.where(ever, g, np.inf))
    event_time = np.where(ever, t - np.where(ever, g, 0.0), -np.inf)
    cohort = np.where(ever, g, 0.0)
    finite_et = np.unique(event_time[np.isfinite(event_time)])

    if weights is None:
        obs_w = np.ones(n, dtype=np.float64)
    else:
        try:
            obs_w = la.validate_weights(_numeric(df, weights, "weights"), n)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid weights column '{weights}': {exc}") from exc

    vectors: dict[str, np.ndarray] = {}
    if wtr is not None:
        wtr_cols = _as_list(wtr)
        if not wtr_cols:
            raise ConfigurationError("wtr must name at least one column.")
        for col in wtr_cols:
            _require_columns(df, {"wtr": col})
            raw = _numeric(df, col, "wtr")
            if not np.all(np.isfinite(raw)):
                raise ConfigurationError(f"Treatment weights '{col}' contain NA/NaN/Inf.")
            vectors[str(col)] = raw * obs_w
    elif horizon is not None and horizon is not False:
        if _wants_all(horizon):
            requested = [e for e in finite_et if e >= 0]
        else:
            requested = sorted({float(h) for h in _as_list(horizon)})
            missing = [h for h in requested if h >= 0 and h not in set(finite_et)]
            if missing:
                raise ConfigurationError(
                    f"Requested horizon(s) {[event_time_label(h) for h in missing]} "
                    f"not found among event times {[event_time_label(e) for e in finite_et]}.",
                )
            skipped = [h for h in requested if h < 0]
            if skipped:
                LOGGER.info(
                    "Ignoring negative horizons %s; use pretrends for pre-periods",
                    [event_time_label(h) for h in skipped],
                )
            requested = [h for h in requested if h >= 0]
        if not requested:
            raise ConfigurationError("No non-negative horizons available to estimate.")
        for e in requested:
            vectors[event_time_label(e)] = (event_time == e).astype(np.float64) * obs_w
    else:
        vectors[STATIC_TERM] = treat.astype(np.float64) * obs_w

    vectors = {label: _normalize(vec, label) for label, vec in vectors.items()}

    pre: list[float] = []
    if pretrends is not None and pretrends is not False:
        if _wants_all(pretrends):
            pre = [float(e) for e in finite_et if e < 0]
            if not pre:
                raise ConfigurationError("No pre-treatment event times available for pretrends.")
        else:
            pre = sorted({float(p) for p in _as_list(pretrends)})
            missing = [p for p in pre if p not in set(finite_et)]
            if missing:
                raise ConfigurationError(
                    f"Pretrends not found in event_time: {[event_time_label(p) for p in missing]}. "
                    f"Available event times: {[event_time_label(e) for e in finite_et]}.",
                )

    LOGGER.debug(
        "Prepared panel: %d rows, %d treated, %d terms, %d pretrends",
        n,
        int(treat.sum()),
        len(vectors),
        len(pre),
    )
    return PreparedPanel(
        data=df,
        original_index=data.index,
        yname=yname,
        gname=gname,
        tname=tname,
        idname=idname,
        treat=treat,
        event_time=event_time,
        cohort=cohort,
        obs_weights=obs_w,
        has_weights=weights is not None,
        weight_vectors=vectors,
        pretrends=pre,
        finite_event_times=finite_et,
    )
