"""Point estimates and the conservative imputation variance.

For each treatment-weight vector ``w`` the engine computes

1. the point estimate ``sum_{treated} w * r`` of the residualised outcome ``r``;
2. the projection ``v* = -omega * Z (Z0' Omega0 Z0)^{-1} Z1' w1`` on every
   row, overridden by ``w`` on treated rows;
3. residuals centred within cohort x event-time cells with
   ``tau_bar = sum v^2 r / sum v^2`` (0 for empty or degenerate cells);
4. the unit-clustered variance ``sum_units (sum_rows v * tau_centred)^2``.

The factorisation of the normal equations is shared read-only by all
vectors; each vector's pipeline is independent and may run on its own
worker thread.
"""

# didimpute/core/variance.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from didimpute.exceptions import SingularSystemError

from . import linalg as la

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from .design import DesignMatrix

LOGGER = logging.getLogger(__name__)

__all__ = [
    "TermVariance",
    "center_by_cohort_event",
    "cluster_variance",
    "group_codes",
    "point_estimates",
    "projection_weights",
    "term_variances",
]


@dataclass
class TermVariance:
    """Estimate, variance and per-row diagnostics of one weight vector.

    ``v`` and ``tau_centered`` are aligned with the panel rows. ``error``
    holds the message of a :class:`SingularSystemError` when the projection
    failed and the standard error is NaN.
    """

    term: str
    estimate: float
    variance: float
    v: NDArray[np.float64]
    tau_centered: NDArray[np.float64]
    error: str | None = None

    @property
    def se(self) -> float:
        return float(np.sqrt(self.variance)) if np.isfinite(self.variance) else np.nan


def group_codes(*keys: NDArray[np.float64]) -> NDArray[np.int64]:
    """Consecutive integer codes of the rows of the composite key ``keys``."""
    stacked = np.column_stack([np.asarray(k).reshape(-1) for k in keys])
    if stacked.shape[0] == 0:
        return np.zeros(0, dtype=np.int64)
    _, inv = np.unique(stacked, axis=0, return_inverse=True)
    return inv.reshape(-1).astype(np.int64, copy=False)


def _weighted_sum(w: NDArray[np.float64], x: NDArray[np.float64]) -> float:
    """``sum(w * x)`` over rows with nonzero ``w`` (NaN in ``x`` elsewhere is ignored)."""
    nz = w != 0
    return float(np.sum(w[nz] * x[nz]))


def point_estimates(
    W: NDArray[np.float64], residual: NDArray[np.float64], treated: NDArray[np.bool_],
) -> NDArray[np.float64]:
    """Weighted sums of treated residuals, one per column of ``W``."""
    W = np.asarray(W, dtype=np.float64)
    if W.ndim == 1:
        W = W.reshape(-1, 1)
    r1 = residual[treated]
    return np.array([_weighted_sum(W[treated, j], r1) for j in range(W.shape[1])])


def projection_weights(
    normal_eq: la.SparseNormalEquations,
    design: DesignMatrix,
    w: NDArray[np.float64],
    omega: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Correction weights ``v`` for all rows.

    Non-treated rows get ``-omega * Z (Z0' Omega0 Z0)^{-1} Z1' w1`` (zero
    outside the fit sample because their design rows are zero); treated
    rows get their own treatment weight.

    Raises
    ------
    numpy.linalg.LinAlgError
        If the normal-equations solve fails.
    """
    treated = design.treated
    b = la.crossprod(design.Z1, w[treated]).reshape(-1)
    x = normal_eq.solve(b)
    v = -omega * np.asarray(design.Z @ x).reshape(-1)
    v[treated] = w[treated]
    return v


def center_by_cohort_event(
    residual: NDArray[np.float64],
    v: NDArray[np.float64],
    treated: NDArray[np.bool_],
    cell_codes: NDArray[np.int64],
) -> NDArray[np.float64]:
    """Residuals centred by the ``v^2``-weighted cell mean on treated rows.

    ``cell_codes`` labels the treated rows (in row order) by cohort x
    event-time cell. A cell whose ``sum v^2`` is zero, or whose mean is not
    finite, is centred at 0.
    """
    tau = np.array(residual, dtype=np.float64, copy=True)
    if not np.any(treated):
        return tau
    r1 = residual[treated]
    v1sq = v[treated] ** 2
    use = v1sq != 0
    G = int(cell_codes.max()) + 1
    num = np.bincount(cell_codes[use], weights=v1sq[use] * r1[use], minlength=G)
    den = np.bincount(cell_codes[use], weights=v1sq[use], minlength=G)
    with np.errstate(divide="ignore", invalid="ignore"):
        tau_bar = num / den
    tau_bar[~np.isfinite(tau_bar)] = 0.0
    tau[treated] = r1 - tau_bar[cell_codes]
    return tau


def cluster_variance(
    v: NDArray[np.float64],
    tau_centered: NDArray[np.float64],
    unit_codes: NDArray[np.int64],
) -> float:
    """``sum_units (sum_rows v * tau_centered)^2``; rows with ``v == 0`` are skipped."""
    nz = v != 0
    if not np.any(nz):
        return 0.0
    G = int(unit_codes.max()) + 1
    s = np.bincount(unit_codes[nz], weights=v[nz] * tau_centered[nz], minlength=G)
    return float(np.sum(s**2))


def _term_pipeline(  # noqa: PLR0913
    term: str,
    w: NDArray[np.float64],
    *,
    normal_eq: la.SparseNormalEquations | None,
    factor_error: str | None,
    design: DesignMatrix,
    residual: NDArray[np.float64],
    omega: NDArray[np.float64],
    cell_codes: NDArray[np.int64],
    unit_codes: NDArray[np.int64],
) -> TermVariance:
    treated = design.treated
    estimate = _weighted_sum(w[treated], residual[treated])
    if not np.any(w[treated]):
        zeros = np.zeros_like(residual)
        return TermVariance(term, 0.0, 0.0, zeros, residual.copy())
    if normal_eq is None:
        raise SingularSystemError(factor_error or "normal equations unavailable", term=term)
    try:
        v = projection_weights(normal_eq, design, w, omega)
    except np.linalg.LinAlgError as exc:
        raise SingularSystemError(f"projection for '{term}' failed: {exc}", term=term) from exc
    tau_c = center_by_cohort_event(residual, v, treated, cell_codes)
    variance = cluster_variance(v, tau_c, unit_codes)
    return TermVariance(term, estimate, variance, v, tau_c)


def term_variances(  # noqa: PLR0913
    terms: Sequence[str],
    W: NDArray[np.float64],
    design: DesignMatrix,
    residual: NDArray[np.float64],
    *,
    cohort: NDArray[np.float64],
    event_time: NDArray[np.float64],
    unit_codes: NDArray[np.int64],
    omega: NDArray[np.float64] | None = None,
    n_jobs: int = 1,
    singular_policy: str = "nan",
) -> list[TermVariance]:
    """Run the estimate / projection / centring / clustering pipeline per term.

    Parameters
    ----------
    terms : sequence of str
        Labels of the columns of ``W``.
    W : (n, K) array
        Normalised treatment-weight vectors.
    design : DesignMatrix
        Sparse design with its fit / treated partition.
    residual : (n,) array
        Outcome minus first-stage prediction.
    cohort, event_time : (n,) arrays
        Keys of the centring cells (only treated rows are used).
    unit_codes : (n,) int array
        Unit cluster codes.
    omega : (n,) array, optional
        Observation weights (ones when absent).
    n_jobs : int
        Worker threads; results are identical to sequential execution.
    singular_policy : {"nan", "raise"}
        What to do when a projection hits singular normal equations.

    Returns
    -------
    list[TermVariance]
        In the order of ``terms``.
    """
    n = residual.shape[0]
    W = np.asarray(W, dtype=np.float64).reshape(n, -1)
    if W.shape[1] != len(terms):
        raise ValueError("one term label is required per weight vector")
    omega = np.ones(n, dtype=np.float64) if omega is None else np.asarray(omega, dtype=np.float64)
    treated = design.treated
    cell_codes = group_codes(cohort[treated], event_time[treated])

    normal_eq = None
    factor_error = None
    try:
        normal_eq = la.factor_normal_equations(design.Z0, omega[design.fit_rows])
    except np.linalg.LinAlgError as exc:
        factor_error = f"Z0'Z0 is singular: {exc}"
        if singular_policy == "raise":
            raise SingularSystemError(factor_error) from exc

    def run(j: int) -> TermVariance:
        try:
            return _term_pipeline(
                terms[j],
                W[:, j],
                normal_eq=normal_eq,
                factor_error=factor_error,
                design=design,
                residual=residual,
                omega=omega,
                cell_codes=cell_codes,
                unit_codes=unit_codes,
            )
        except SingularSystemError as exc:
            if singular_policy == "raise":
                raise
            LOGGER.warning("Standard error for '%s' set to NaN: %s", terms[j], exc)
            estimate = _weighted_sum(W[treated, j], residual[treated])
            nan = np.full(n, np.nan)
            return TermVariance(terms[j], estimate, np.nan, nan, nan.copy(), error=str(exc))

    idx = list(range(len(terms)))
    if n_jobs > 1 and len(idx) > 1:
        with ThreadPoolExecutor(max_workers=min(n_jobs, len(idx))) as ex:
            out = list(ex.map(run, idx))
    else:
        out = [run(j) for j in idx]
    LOGGER.debug("Computed variances for %d terms (n_jobs=%d)", len(out), n_jobs)
    return out
