"""Fixed-effects absorption and recovery.

This module provides weighted multi-way fixed effects absorption using
alternating projections (Frisch-Waugh-Lovell), along with iterative singleton
pruning and exact recovery of the fixed-effect coefficients with one
reference level per connected component.
"""

# didimpute/core/fe.py
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union, cast

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.sparse import csgraph
from scipy.sparse import linalg as spla

from .linalg import (  # matrix ops (sparse-aware)
    _validate_weights,
    factor_normal_equations,
    xty,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

ArrayLike = Union[NDArray[Any], Sequence[int], Sequence[float]]

LOGGER = logging.getLogger(__name__)

__all__ = [
    "FERecovery",
    "FETransformResult",
    "absorb",
    "demean",
    "fe_dummies",
    "recover_fe",
    "to_codes",
]


@dataclass(slots=True)
class FETransformResult:
    """Container for within-transformation results.

    Attributes
    ----------
    X : np.ndarray
        Demeaned regressor matrix.
    y : np.ndarray | None
        Demeaned outcome vector.
    mask : np.ndarray
        Boolean array indicating rows retained after NA/singleton checks.
    dropped : dict[str, int]
        Counts of dropped observations by reason.
    fe_codes : list[np.ndarray]
        Integer codes for each fixed-effect dimension after pruning.
    weights : np.ndarray | None
        Observation weights aligned with the demeaned sample.
    diagnostics : dict[str, Any] | None
        Convergence diagnostics from the alternating projection routine.
    """

    X: NDArray[np.float64]
    y: NDArray[np.float64] | None
    mask: NDArray[np.bool_]
    dropped: dict[str, int] = field(default_factory=dict)
    fe_codes: list[NDArray[np.int64]] = field(default_factory=list)
    weights: NDArray[np.float64] | None = None
    diagnostics: dict[str, Any] | None = None

    @property
    def n_effective(self) -> int:
        """Number of observations retained after preprocessing."""
        return int(np.sum(self.mask))


@dataclass(slots=True)
class FERecovery:
    """Recovered fixed-effect coefficients.

    Attributes
    ----------
    values : list[np.ndarray]
        One array per dimension, indexed by the dimension's integer code.
    references : list[np.ndarray]
        Codes normalised to zero in each dimension (empty for the first).
    method : str
        ``"direct"`` for the sparse LU solve, ``"lsqr"`` when the system kept
        a rank deficiency that the reference choice did not remove.
    """

    values: list[NDArray[np.float64]]
    references: list[NDArray[np.int64]]
    method: str = "direct"


# Helpers
# ---------------------------------------------------------------------


def _to_codes(z: ArrayLike) -> NDArray[np.int64]:
    """Map arbitrary labels to consecutive 0..G-1 integer codes."""
    arr = np.asarray(z).reshape(-1)
    _, inv = np.unique(arr, return_inverse=True)
    return cast(NDArray[np.int64], inv.reshape(-1).astype(np.int64, copy=False))


def to_codes(z: ArrayLike) -> NDArray[np.int64]:
    """Public wrapper for factor coding (sorted labels to 0..G-1)."""
    return _to_codes(z)


def _isfinite_like(z: ArrayLike) -> NDArray[np.bool_]:
    """Check for finiteness/validity of FE IDs.

    Numeric arrays are checked with ``isfinite``; object arrays are checked
    for None, NaN, pandas NA and NaT.
    """
    arr = np.asarray(z)
    if arr.ndim != 1:
        arr = arr.reshape(-1)
    if arr.dtype.kind in {"i", "u", "f", "c"}:
        return cast(NDArray[np.bool_], np.isfinite(arr))
    return ~pd.isna(arr)


def _n_groups(codes: NDArray[np.int64]) -> int:
    return int(codes.max()) + 1 if codes.size else 0


def _group_means(
    X: NDArray[np.float64],
    codes: NDArray[np.int64],
    *,
    weights: NDArray[np.float64] | None = None,
) -> NDArray[np.float64]:
    """Compute (weighted) group means of the columns of X, broadcast back to rows.

    Groups with zero total weight produce NaN.
    """
    n, p = X.shape
    if codes.shape[0] != n:
        msg = "codes must have same length as rows of X"
        raise ValueError(msg)
    G = _n_groups(codes)
    w = np.ones(n, dtype=np.float64) if weights is None else weights
    totals = np.bincount(codes, weights=w, minlength=G)
    means = np.full((G, p), np.nan, dtype=np.float64)
    pos = totals > 0
    for j in range(p):
        sums = np.bincount(codes, weights=X[:, j] * w, minlength=G)
        means[pos, j] = sums[pos] / totals[pos]
    return means[codes, :]


def _is_nested(target: NDArray[np.int64], others: list[NDArray[np.int64]]) -> bool:
    """Check if every level of ``others`` (jointly) maps to a single ``target`` level.

    Used to detect fixed effects nested within a cluster variable.
    """
    if len(others) == 0:
        return False
    keys = np.column_stack([z.reshape(-1) for z in others])
    _, key_inv = np.unique(keys, axis=0, return_inverse=True)
    key_inv = key_inv.reshape(-1)
    kt = np.column_stack([key_inv, target.reshape(-1)])
    _, inv = np.unique(kt, axis=0, return_inverse=True)
    return int(inv.max()) + 1 == int(key_inv.max()) + 1


def is_nested(target: NDArray[np.int64], others: list[NDArray[np.int64]]) -> bool:
    """Public wrapper for nested fixed-effect detection."""
    return _is_nested(target, others)


def _drop_singletons_iteratively(
    codes_list: list[NDArray[np.int64]],
) -> NDArray[np.bool_]:
    """Iteratively drop singleton groups.

    Drops observations belonging to groups with size 1, repeating until no
    singletons remain. Count-based; weights play no role.
    """
    if not codes_list:
        return np.array([], dtype=bool)
    n = codes_list[0].shape[0]
    keep = np.ones(n, dtype=bool)

    def pass_once() -> bool:
        counts_any = np.zeros(n, dtype=bool)
        for codes in codes_list:
            cnt = np.bincount(codes[keep], minlength=_n_groups(codes))
            counts_any[keep] |= cnt[codes[keep]] == 1
        if np.any(counts_any):
            keep[counts_any] = False
            return True
        return False

    while pass_once():
        continue
    return keep


# ---------------------------------------------------------------------
# Core within-transformation (alternating projections)
# ---------------------------------------------------------------------


def demean(
    X: NDArray[np.float64],
    codes_list: list[NDArray[np.int64]],
    *,
    weights: NDArray[np.float64] | None = None,
    tol: float = 1e-10,
    max_iter: int = 10_000,
) -> tuple[NDArray[np.float64], dict[str, Any]]:
    """Weighted within-transformation of the columns of ``X``.

    Alternating projections sweep the fixed-effect dimensions forward and
    then backward (symmetric Gauss-Seidel) until the largest change in an
    iteration falls below ``tol`` relative to the scale of ``X``. A single
    dimension is demeaned exactly in one pass.

    Returns
    -------
    (X_demeaned, diagnostics)
    """
    A = np.array(X, dtype=np.float64, copy=True)
    if A.ndim == 1:
        A = A.reshape(-1, 1)
    info: dict[str, Any] = {"iterations": 0, "converged": True, "max_change": 0.0}
    if not codes_list or A.shape[1] == 0 or A.shape[0] == 0:
        return A, info
    if len(codes_list) == 1:
        A -= _group_means(A, codes_list[0], weights=weights)
        info["iterations"] = 1
        return A, info

    order = list(range(len(codes_list)))
    sweep = order + order[-2::-1]
    scale = max(1.0, float(np.max(np.abs(A))))
    change = np.inf
    it = 0
    while it < max_iter:
        it += 1
        prev = A.copy()
        for k in sweep:
            A -= _group_means(A, codes_list[k], weights=weights)
        change = float(np.max(np.abs(A - prev)))
        if change <= tol * scale:
            break
    info["iterations"] = it
    info["max_change"] = change
    if change > tol * scale:
        info["converged"] = False
        LOGGER.warning(
            "Fixed-effect demeaning stopped after %d iterations (max change %.3g)",
            it,
            change,
        )
    else:
        LOGGER.debug("Fixed-effect demeaning converged in %d iterations", it)
    return A, info


def absorb(  # noqa: PLR0913
    X: NDArray[np.float64],
    y: NDArray[np.float64] | None,
    fe_ids: ArrayLike | Sequence[ArrayLike],
    *,
    weights: Sequence[float] | None = None,
    drop_singletons: bool = False,
    tol: float = 1e-10,
    max_iter: int = 10_000,
) -> FETransformResult:
    """Absorb multi-way fixed effects from ``X`` (and ``y``).

    Rows with missing fixed-effect identifiers or zero weight are removed
    first; singleton groups are then pruned iteratively when requested. The
    returned ``fe_codes`` are re-coded to consecutive integers on the kept
    sample.

    Parameters
    ----------
    X : (n, p) array
        Regressors (``p`` may be zero).
    y : (n,) array or None
        Outcome.
    fe_ids : array-like or sequence of array-like
        Fixed-effect identifiers, one per dimension.
    weights : sequence of float, optional
        Non-negative observation weights.
    drop_singletons : bool, default False
        Prune singleton groups iteratively (reghdfe convention).
    """
    Xa = np.asarray(X, dtype=np.float64)
    if Xa.ndim == 1:
        Xa = Xa.reshape(-1, 1)
    n = Xa.shape[0]
    raw = list(fe_ids) if isinstance(fe_ids, (list, tuple)) else [fe_ids]
    mask = np.ones(n, dtype=bool)
    for z in raw:
        if np.asarray(z).reshape(-1).shape[0] != n:
            raise ValueError("fixed-effect identifiers must have one entry per row")
        mask &= _isfinite_like(z)
    dropped: dict[str, int] = {"na_fe": int(n - mask.sum())}
    w_full = None if weights is None else _validate_weights(weights, n, allow_empty=True)
    if w_full is not None:
        zero_w = mask & (w_full == 0)
        dropped["zero_weight"] = int(zero_w.sum())
        mask &= ~zero_w
    codes_list = [_to_codes(np.asarray(z).reshape(-1)[mask]) for z in raw]
    if drop_singletons and codes_list:
        keep = _drop_singletons_iteratively(codes_list)
        dropped["singletons"] = int((~keep).sum())
        idx = np.flatnonzero(mask)
        mask[idx[~keep]] = False
        codes_list = [_to_codes(c[keep]) for c in codes_list]
    else:
        dropped["singletons"] = 0
    w = None if w_full is None else w_full[mask]
    if codes_list and codes_list[0].size == 0:
        raise ValueError("no observations left after removing missing fixed effects")

    stacked = Xa[mask]
    if y is not None:
        ya = np.asarray(y, dtype=np.float64).reshape(-1)
        stacked = np.column_stack([stacked, ya[mask]])
    Ad, diag = demean(stacked, codes_list, weights=w, tol=tol, max_iter=max_iter)
    if y is not None:
        X_out, y_out = Ad[:, :-1], Ad[:, -1]
    else:
        X_out, y_out = Ad, None
    return FETransformResult(
        X=X_out,
        y=y_out,
        mask=mask,
        dropped=dropped,
        fe_codes=codes_list,
        weights=w,
        diagnostics=diag,
    )


# ---------------------------------------------------------------------
# Fixed-effect recovery
# ---------------------------------------------------------------------


def fe_dummies(codes: NDArray[np.int64], n_levels: int | None = None) -> sparse.csr_matrix:
    """Sparse one-hot expansion of a single code vector."""
    codes = np.asarray(codes, dtype=np.int64).reshape(-1)
    G = _n_groups(codes) if n_levels is None else int(n_levels)
    n = codes.shape[0]
    return sparse.csr_matrix(
        (np.ones(n, dtype=np.float64), (np.arange(n), codes)), shape=(n, G),
    )


def _component_references(
    first: NDArray[np.int64], other: NDArray[np.int64],
) -> NDArray[np.int64]:
    """Lowest ``other`` level in each connected component of the (first, other) graph."""
    G0, Gk = _n_groups(first), _n_groups(other)
    adj = sparse.coo_matrix(
        (np.ones(first.shape[0]), (first, G0 + other)), shape=(G0 + Gk, G0 + Gk),
    )
    _n_comp, labels = csgraph.connected_components(adj, directed=False)
    comp_other = labels[G0:]
    _, first_idx = np.unique(comp_other, return_index=True)
    return np.sort(first_idx.astype(np.int64))


def recover_fe(
    resid: NDArray[np.float64],
    codes_list: list[NDArray[np.int64]],
    *,
    weights: NDArray[np.float64] | None = None,
) -> FERecovery:
    """Recover fixed-effect coefficients from the partial residual ``y - X b``.

    Solves the weighted least-squares problem of ``resid`` on the sparse
    dummy expansion of every dimension exactly. The first dimension is
    free; every later dimension sets its lowest level in each connected
    component (with the first dimension) to zero, which removes the
    collinearity between dimensions. If a rank deficiency remains (three or
    more dimensions with extra overlap) a minimum-norm LSQR solution is used;
    fitted values are unaffected by that choice.
    """
    r = np.asarray(resid, dtype=np.float64).reshape(-1)
    if not codes_list:
        return FERecovery(values=[], references=[])
    levels = [_n_groups(c) for c in codes_list]
    references: list[NDArray[np.int64]] = [np.array([], dtype=np.int64)]
    blocks = []
    free_cols: list[NDArray[np.int64]] = []
    for k, codes in enumerate(codes_list):
        if k == 0:
            ref = np.array([], dtype=np.int64)
        else:
            ref = _component_references(codes_list[0], codes)
            references.append(ref)
        keep = np.setdiff1d(np.arange(levels[k]), ref)
        free_cols.append(keep)
        blocks.append(fe_dummies(codes, levels[k])[:, keep])
    D = sparse.hstack(blocks, format="csr")
    rhs = xty(D, r, weights).reshape(-1)
    method = "direct"
    try:
        ne = factor_normal_equations(D, weights)
        alpha = ne.solve(rhs)
    except np.linalg.LinAlgError:
        LOGGER.info("Fixed-effect normal equations are rank deficient; using LSQR")
        method = "lsqr"
        Dw = D if weights is None else sparse.diags(np.sqrt(weights)) @ D
        rw = r if weights is None else r * np.sqrt(weights)
        alpha = spla.lsqr(Dw, rw, atol=1e-14, btol=1e-14, iter_lim=100_000)[0]
    values: list[NDArray[np.float64]] = []
    offset = 0
    for k, keep in enumerate(free_cols):
        vals = np.zeros(levels[k], dtype=np.float64)
        vals[keep] = alpha[offset : offset + keep.size]
        offset += keep.size
        values.append(vals)
    return FERecovery(values=values, references=references, method=method)
