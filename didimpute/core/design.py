"""Sparse design matrix of the fitted no-treatment model.

Rebuilds, for every panel row, the columns that the first-stage fit actually
used: the retained covariates followed by cohort and period indicators. Unit
fixed effects are represented at cohort granularity and other absorbed
factors are not reconstructed.
"""

# didimpute/core/design.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from scipy import sparse

from didimpute.exceptions import ConfigurationError, DesignMatrixError

from .linalg import hstack

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from didimpute.estimators.feols import FEOLSResult
    from didimpute.utils.preprocess import PreparedPanel

LOGGER = logging.getLogger(__name__)

__all__ = ["DesignMatrix", "sparse_model_matrix"]


@dataclass
class DesignMatrix:
    """Row-aligned sparse design ``Z`` with its untreated / treated partition.

    Attributes
    ----------
    Z : scipy.sparse.csr_matrix
        ``(n, k)`` design over all panel rows.
    columns : list[str]
        Column labels: covariate names, then ``cohort[g]`` and ``period[t]``.
    fit_rows : ndarray of bool
        Rows used by the first-stage fit (``Z0``).
    treated : ndarray of bool
        Treated rows (``Z1``).
    """

    Z: sparse.csr_matrix
    columns: list[str]
    fit_rows: NDArray[np.bool_]
    treated: NDArray[np.bool_]
    blocks: dict[str, Any] = field(default_factory=dict)

    @property
    def Z0(self) -> sparse.csr_matrix:
        return self.Z[self.fit_rows]

    @property
    def Z1(self) -> sparse.csr_matrix:
        return self.Z[self.treated]

    @property
    def shape(self) -> tuple[int, int]:
        return self.Z.shape


def _indicator_block(
    keys: pd.Index | NDArray[Any], levels: pd.Index,
) -> sparse.csr_matrix:
    """One-hot columns of ``levels``; rows with another value get a zero row."""
    pos = levels.get_indexer(pd.Index(keys))
    rows = np.flatnonzero(pos >= 0)
    return sparse.csr_matrix(
        (np.ones(rows.size, dtype=np.float64), (rows, pos[rows])),
        shape=(pos.shape[0], len(levels)),
    )


def _covariate_block(
    panel: PreparedPanel, fit: FEOLSResult, needs_row: NDArray[np.bool_],
) -> sparse.csr_matrix:
    if not fit.coef_names:
        return sparse.csr_matrix((panel.n, 0), dtype=np.float64)
    try:
        Xc = fit.design_matrix(panel.data).to_numpy(dtype=np.float64, copy=True)
    except ConfigurationError as exc:
        raise DesignMatrixError(f"Covariates cannot be rebuilt on the panel: {exc}") from exc
    bad = ~np.all(np.isfinite(Xc), axis=1)
    if np.any(bad & needs_row):
        raise DesignMatrixError(
            f"{int(np.sum(bad & needs_row))} fitted or treated rows have missing covariates.",
        )
    # untreated rows outside the fit sample do not enter the projection
    Xc[bad] = 0.0
    return sparse.csr_matrix(Xc)


def sparse_model_matrix(panel: PreparedPanel, fit: FEOLSResult) -> DesignMatrix:
    """Build ``Z`` from the retained structure of ``fit``.

    1. Retained covariate columns, evaluated on every panel row.
    2. Cohort indicators (never-treated coded 0) when the unit or the cohort
       factor was absorbed, restricted to cohorts present in the fit sample.
    3. Period indicators when the period factor was absorbed, restricted to
       the retained period levels. When a cohort block is present one
       reference period is removed: the fit's own reference, or the earliest
       period when the fit normalised none.

    Untreated rows outside the fit sample are zero rows.

    Raises
    ------
    DesignMatrixError
        When an absorbed factor has no retained levels, a retained level does
        not occur in the panel, treated or fitted rows have missing covariates,
        or a column is identically zero.
    """
    if fit.sample_mask is None or fit.sample_mask.shape[0] != panel.n:
        raise DesignMatrixError("First-stage sample is not aligned with the panel.")
    fit_rows = fit.sample_mask & ~panel.treat
    treated = panel.treat
    needs_row = fit_rows | treated

    blocks = [_covariate_block(panel, fit, needs_row)]
    columns = list(fit.coef_names)
    info: dict[str, Any] = {"covariates": len(columns)}

    use_cohort = panel.idname in fit.fe_names or panel.gname in fit.fe_names
    if use_cohort:
        cohorts = pd.Index(np.unique(panel.cohort[fit_rows]))
        if len(cohorts) == 0:
            raise DesignMatrixError("No cohort levels retained by the first stage.")
        block = _indicator_block(panel.cohort, cohorts)
        blocks.append(block)
        columns.extend(f"cohort[{c:g}]" for c in cohorts)
        info["cohorts"] = list(cohorts)

    if panel.tname in fit.fe_names:
        levels = fit.fixef[panel.tname].index
        if len(levels) == 0:
            raise DesignMatrixError(f"No '{panel.tname}' levels retained by the first stage.")
        keys = pd.Index(panel.data[panel.tname].to_numpy())
        missing = levels[~levels.isin(keys)]
        if len(missing):
            raise DesignMatrixError(
                f"Retained '{panel.tname}' levels {list(missing)} do not occur in the panel.",
            )
        if use_cohort:
            refs = fit.fixef_references.get(panel.tname) or [levels.min()]
            levels = levels[~levels.isin(refs)]
            info["period_reference"] = list(refs)
        block = _indicator_block(keys, levels)
        blocks.append(block)
        columns.extend(f"period[{t}]" for t in levels)
        info["periods"] = list(levels)

    blocks = [b for b in blocks if b.shape[1] > 0]
    if not blocks:
        raise DesignMatrixError("Design matrix has no columns; nothing to project on.")
    Z = sparse.csr_matrix(hstack(blocks), dtype=np.float64)
    # zero rows for untreated observations the fit did not use
    Z = sparse.csr_matrix(sparse.diags(needs_row.astype(np.float64)) @ Z)
    Z.eliminate_zeros()
    nnz_col = np.diff(Z.tocsc().indptr)
    if np.any(nnz_col == 0):
        empty = [columns[j] for j in np.flatnonzero(nnz_col == 0)]
        raise DesignMatrixError(f"Design columns are identically zero: {empty}")
    LOGGER.debug("Design matrix: %d rows x %d columns (nnz=%d)", Z.shape[0], Z.shape[1], Z.nnz)
    return DesignMatrix(Z=Z, columns=columns, fit_rows=fit_rows, treated=treated, blocks=info)
