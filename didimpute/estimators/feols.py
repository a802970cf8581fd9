"""Weighted least squares with absorbed fixed effects.

This is the first-stage solver of the imputation estimator. It fits
``y ~ X + FE_1 + ... + FE_J`` on a subset of rows, screens collinear
covariates with pivoted QR, recovers the fixed effects with one reference
level per connected component, and predicts out of sample.
"""

# didimpute/estimators/feols.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
import scipy.linalg as sla

from didimpute.core import fe as fe_core
from didimpute.core import linalg as la
from didimpute.estimators.base import BaseEstimator, EstimationResult, ImputationConfig
from didimpute.exceptions import ConfigurationError, FirstStageError
from didimpute.utils.formula import FormulaParser, build_design, factor_keys

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = ["FEOLS", "FEOLSResult"]

_VCOV_TYPES = ("iid", "cluster")


@dataclass
class FEOLSResult(EstimationResult):
    """Fitted fixed-effects regression.

    Besides the covariate coefficients it keeps everything needed to rebuild
    the fitted model on other rows: the patsy ``design_info`` of the
    covariates, the recovered fixed effects per absorbed factor and the
    reference levels normalised to zero.
    """

    fe_names: list[str] = field(default_factory=list)
    fixef: dict[str, pd.Series] = field(default_factory=dict)
    fixef_references: dict[str, list[Any]] = field(default_factory=dict)
    vcov: pd.DataFrame | None = None
    sample_mask: NDArray[np.bool_] | None = None
    fitted_values: NDArray[np.float64] | None = None
    residuals: NDArray[np.float64] | None = None
    design_info: Any = None
    all_var_names: list[str] = field(default_factory=list)
    include_intercept: bool = False

    @property
    def coef_names(self) -> list[str]:
        return list(self.params.index)

    def retained_levels(self, name: str) -> pd.Index:
        """Levels of factor ``name`` with a free (non-reference) coefficient."""
        if name not in self.fixef:
            raise KeyError(f"'{name}' is not an absorbed factor of this model.")
        refs = self.fixef_references.get(name, [])
        levels = self.fixef[name].index
        if not refs:
            return levels
        return levels[~levels.isin(refs)]

    def design_matrix(self, newdata: pd.DataFrame) -> pd.DataFrame:
        """Retained covariate columns evaluated on ``newdata`` (row aligned)."""
        full = build_design(self.design_info, newdata, intercept=self.include_intercept)
        cols = [self.all_var_names.index(nm) for nm in self.coef_names]
        return pd.DataFrame(full[:, cols], index=newdata.index, columns=self.coef_names)

    def fixef_component(self, newdata: pd.DataFrame) -> NDArray[np.float64]:
        """Sum of the fixed effects of each row of ``newdata``; NaN for unseen levels."""
        out = np.zeros(newdata.shape[0], dtype=np.float64)
        for name in self.fe_names:
            values = self.fixef[name]
            pos = values.index.get_indexer(factor_keys(newdata, name))
            vals = np.where(pos >= 0, values.to_numpy()[np.maximum(pos, 0)], np.nan)
            out += vals
        return out

    def predict(self, newdata: pd.DataFrame) -> NDArray[np.float64]:
        """Fitted value for every row of ``newdata``.

        Rows whose factor level was not in the estimation sample, or whose
        covariates are missing, get NaN.
        """
        pred = self.fixef_component(newdata)
        if len(self.params):
            Xn = self.design_matrix(newdata).to_numpy(dtype=np.float64)
            pred = pred + Xn @ self.params.to_numpy(dtype=np.float64)
        return pred


class FEOLS(BaseEstimator):
    """OLS / WLS with multi-way absorbed fixed effects.

    Parameters
    ----------
    formula : str
        ``"y ~ x1 + fe(unit) + fe(year)"`` or ``"y ~ x1 | unit + year"``.
    data : pandas.DataFrame
        Estimation frame. Rows outside ``subset`` are ignored for the fit but
        can still be predicted.
    subset : array of bool, optional
        Rows eligible for estimation.
    weights : array-like, optional
        Non-negative observation weights; zero-weight rows are dropped.
    vcov : {"iid", "cluster"}
        Analytic variance of the covariate coefficients.
    cluster : str, optional
        Cluster column for ``vcov="cluster"``; defaults to the first absorbed
        factor (fixest convention).
    config : ImputationConfig, optional
        Supplies the demeaning tolerance, iteration cap and singleton policy.

    Notes
    -----
    Degrees of freedom count the retained covariates and every free
    fixed-effect coefficient. Under clustering, fixed effects nested in the
    cluster variable are not counted and the CRV1 adjustment
    ``G/(G-1) * (n-1)/(n-K)`` is applied.
    """

    def __init__(  # noqa: PLR0913
        self,
        formula: str,
        data: pd.DataFrame,
        *,
        subset: Sequence[bool] | NDArray[np.bool_] | None = None,
        weights: Sequence[float] | NDArray[np.float64] | None = None,
        vcov: str = "iid",
        cluster: str | None = None,
        config: ImputationConfig | None = None,
    ) -> None:
        super().__init__()
        if vcov not in _VCOV_TYPES:
            raise ConfigurationError(f"vcov must be one of {_VCOV_TYPES}; got {vcov!r}")
        if cluster is not None and cluster not in data.columns:
            raise ConfigurationError(f"Cluster variable '{cluster}' not found in data.")
        n = data.shape[0]
        self.formula = formula
        self.data = data
        self.subset = (
            np.ones(n, dtype=bool) if subset is None else np.asarray(subset, dtype=bool).reshape(-1)
        )
        if self.subset.shape[0] != n:
            raise ConfigurationError("subset must have one entry per row of data.")
        if weights is None:
            self.weights = None
        else:
            try:
                self.weights = la.validate_weights(weights, n, allow_empty=True)
            except ValueError as exc:
                raise ConfigurationError(f"Invalid weights: {exc}") from exc
        self.vcov = vcov
        self.cluster = cluster
        self.config = config or ImputationConfig()

    @classmethod
    def from_formula(
        cls, formula: str, data: pd.DataFrame, **kwargs: Any,
    ) -> FEOLS:
        """Alternate constructor mirroring the formula-first API."""
        return cls(formula, data, **kwargs)

    def fit(self) -> FEOLSResult:  # noqa: PLR0915
        """Estimate the model on the eligible rows."""
        data = self.data
        eligible = self.subset.copy()
        if self.weights is not None:
            eligible &= self.weights > 0
        if not np.any(eligible):
            raise FirstStageError("No observations available for the fixed-effects fit.")
        work = data.loc[eligible].reset_index(drop=True)
        parsed = FormulaParser(work).parse(self.formula)
        pos_work = np.flatnonzero(eligible)
        rows = pos_work[parsed.row_mask_valid]
        n_missing = int(eligible.sum() - rows.size)
        if n_missing:
            LOGGER.info("Dropped %d rows with missing values from the fit", n_missing)
        if rows.size == 0:
            raise FirstStageError("No complete observations for the fixed-effects fit.")
        w_rows = None if self.weights is None else self.weights[rows]

        X_raw = parsed.X
        y_raw = parsed.y
        fe_codes = parsed.fe_codes_list
        dropped: dict[str, int] = {"missing": n_missing}
        diagnostics: dict[str, Any] = {}
        if fe_codes:
            res = fe_core.absorb(
                X_raw,
                y_raw,
                fe_codes,
                weights=w_rows,
                drop_singletons=self.config.drop_singletons,
                tol=self.config.fe_tol,
                max_iter=self.config.fe_max_iter,
            )
            keep_rows = res.mask
            Xd, yd = res.X, res.y
            fe_codes_kept = res.fe_codes
            dropped["singletons"] = res.dropped.get("singletons", 0)
            diagnostics["demean"] = res.diagnostics
            orig_codes = [c[keep_rows] for c in fe_codes]
        else:
            keep_rows = np.ones(rows.size, dtype=bool)
            Xd, yd = X_raw, y_raw
            fe_codes_kept = []
            orig_codes = []
        rows = rows[keep_rows]
        X_s = X_raw[keep_rows]
        y_s = y_raw[keep_rows]
        w = None if w_rows is None else w_rows[keep_rows]
        n_obs = rows.size

        # collinearity screen on the (weighted) within-transformed design
        var_names = list(parsed.var_names)
        if Xd.shape[1]:
            Xs = Xd if w is None else Xd * np.sqrt(w).reshape(-1, 1)
            keep_cols = la.keep_columns_qr(Xs, mode="stata")
        else:
            keep_cols = np.zeros(0, dtype=bool)
        if not np.all(keep_cols):
            dropped_vars = [nm for nm, k in zip(var_names, keep_cols) if not k]
            diagnostics["dropped_collinear"] = dropped_vars
            LOGGER.info("Dropped collinear covariates: %s", ", ".join(dropped_vars))
        kept_names = [nm for nm, k in zip(var_names, keep_cols) if k]
        if not kept_names and not fe_codes_kept:
            raise FirstStageError(
                "First stage has neither retained covariates nor absorbed fixed effects.",
            )
        Xk = Xd[:, keep_cols]
        if kept_names:
            beta = la.solve(Xk, yd, weights=w).reshape(-1)
        else:
            beta = np.zeros(0, dtype=np.float64)

        # fixed effects and fitted values on the sample
        fixef: dict[str, pd.Series] = {}
        fixef_refs: dict[str, list[Any]] = {}
        xb = X_s[:, keep_cols] @ beta if kept_names else np.zeros(n_obs)
        fe_part = np.zeros(n_obs, dtype=np.float64)
        fe_free: list[int] = []
        if fe_codes_kept:
            rec = fe_core.recover_fe(y_s - xb, fe_codes_kept, weights=w)
            diagnostics["fe_recovery"] = rec.method
            for k, name in enumerate(parsed.fe_names):
                uniq = np.unique(orig_codes[k])
                labels = parsed.fe_levels[k][uniq]
                fixef[name] = pd.Series(rec.values[k], index=labels, name=name)
                fixef_refs[name] = list(labels[rec.references[k]])
                fe_part += rec.values[k][fe_codes_kept[k]]
                fe_free.append(len(labels) - len(rec.references[k]))
        n_fe_params = int(sum(fe_free))
        fitted = xb + fe_part
        resid = y_s - fitted

        # analytic variance of the covariate coefficients
        K_total = len(kept_names) + n_fe_params
        se = pd.Series(np.full(len(kept_names), np.nan), index=kept_names, dtype=np.float64)
        vcov_df = None
        cluster_info: dict[str, Any] = {}
        if kept_names:
            e_within = yd - Xk @ beta
            V, cluster_info = self._vcov(
                Xk, e_within, w, n_obs, K_total, fe_codes_kept, fe_free, rows,
            )
            vcov_df = pd.DataFrame(V, index=kept_names, columns=kept_names)
            diag_v = np.diag(V)
            se[:] = np.where(diag_v >= 0, np.sqrt(np.abs(diag_v)), np.nan)

        sample_mask = np.zeros(data.shape[0], dtype=bool)
        sample_mask[rows] = True
        LOGGER.debug(
            "FEOLS fit: n=%d, covariates=%d, fixed-effect parameters=%d",
            n_obs,
            len(kept_names),
            n_fe_params,
        )
        result = FEOLSResult(
            params=pd.Series(beta, index=kept_names, dtype=np.float64),
            se=se,
            n_obs=int(n_obs),
            model_info={
                "Estimator": "FEOLS",
                "FixedEffects": list(parsed.fe_names),
                "VCOV": self.vcov,
                "dropped_stats": dropped,
                "df_resid": int(n_obs - K_total),
            },
            extra={"diagnostics": diagnostics, **cluster_info},
            fe_names=list(parsed.fe_names),
            fixef=fixef,
            fixef_references=fixef_refs,
            vcov=vcov_df,
            sample_mask=sample_mask,
            fitted_values=fitted,
            residuals=resid,
            design_info=parsed.design_info,
            all_var_names=var_names,
            include_intercept=parsed.include_intercept,
        )
        self._results = result
        return result

    def _vcov(  # noqa: PLR0913
        self,
        Xk: NDArray[np.float64],
        e: NDArray[np.float64],
        w: NDArray[np.float64] | None,
        n: int,
        K: int,
        fe_codes: list[NDArray[np.int64]],
        fe_free: list[int],
        rows: NDArray[np.int64],
    ) -> tuple[NDArray[np.float64], dict[str, Any]]:
        k = Xk.shape[1]
        ww = np.ones(n, dtype=np.float64) if w is None else w
        XtWX = la.gram(Xk, ww)
        try:
            bread = sla.solve(XtWX, np.eye(k), assume_a="pos")
        except (np.linalg.LinAlgError, ValueError) as exc:
            LOGGER.warning("Covariate cross-product is singular: %s", exc)
            return np.full((k, k), np.nan), {}
        if self.vcov == "iid":
            dof = n - K
            if dof <= 0:
                return np.full((k, k), np.nan), {}
            sigma2 = float(np.sum(ww * e**2)) / dof
            return sigma2 * bread, {}

        if self.cluster is not None:
            cl_raw = self.data[self.cluster].to_numpy()[rows]
            if pd.isna(cl_raw).any():
                raise ConfigurationError(
                    f"Cluster variable '{self.cluster}' has missing values in the sample.",
                )
            cl = fe_core.to_codes(cl_raw)
        elif fe_codes:
            cl = fe_codes[0]
        else:
            raise ConfigurationError(
                "vcov='cluster' needs a cluster variable or an absorbed factor.",
            )
        G = int(cl.max()) + 1
        # fixed effects nested in the cluster do not use up degrees of freedom
        K_adj = K
        for codes, n_free in zip(fe_codes, fe_free):
            if fe_core.is_nested(cl, [codes]):
                K_adj -= n_free
        K_adj = max(K_adj, k)
        if G < 2 or n - K_adj <= 0:
            return np.full((k, k), np.nan), {"n_clusters": G}
        scores = la.group_sum(Xk * (ww * e).reshape(-1, 1), cl)
        meat = scores.T @ scores
        adj = (G / (G - 1)) * ((n - 1) / (n - K_adj))
        V = adj * (bread @ meat @ bread)
        return V, {"n_clusters": G}
