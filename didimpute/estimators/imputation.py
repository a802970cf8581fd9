"""Borusyak-Jaravel-Spiess (2021) imputation estimator.

The untreated potential outcome is modelled with a fixed-effects regression
fitted on untreated observations only. Treated outcomes are compared with
their imputed counterfactuals, aggregated with user-chosen treatment weights
and given the conservative standard errors of BJS (Equations 6, 8 and 10).

Examples
--------
>>> table = did_imputation(df, yname="y", gname="g", tname="t", idname="id")
>>> table = did_imputation(df, "y", "g", "t", "id", horizon=True, pretrends=True)
"""

# didimpute/estimators/imputation.py
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from didimpute.core import fe as fe_core
from didimpute.core.design import sparse_model_matrix
from didimpute.core.variance import TermVariance, term_variances
from didimpute.estimators.base import BaseEstimator, EstimationResult, ImputationConfig
from didimpute.estimators.feols import FEOLS, FEOLSResult
from didimpute.exceptions import FirstStageError
from didimpute.utils.formula import first_stage_formula
from didimpute.utils.preprocess import PreparedPanel, event_time_label, prepare_panel

if TYPE_CHECKING:
    from collections.abc import Sequence

LOGGER = logging.getLogger(__name__)

__all__ = ["RESULT_COLUMNS", "ImputationDID", "ImputationResult", "did_imputation"]

RESULT_COLUMNS = ["term", "estimate", "standard_error", "conf_low", "conf_high"]


@dataclass
class ImputationResult(EstimationResult):
    """Fitted imputation estimator.

    ``params`` and ``se`` are indexed by term label in table order (pre-trend
    rows first). ``table`` is the tidy result frame; ``data`` the augmented
    copy of the input when requested.
    """

    table: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=RESULT_COLUMNS))
    data: pd.DataFrame | None = None
    first_stage: FEOLSResult | None = None
    pretrend: FEOLSResult | None = None

    @property
    def effects(self) -> pd.DataFrame:
        """Rows of ``table`` for the treatment-effect terms."""
        return self.table.loc[self.table["term"].isin(self.model_info.get("terms", []))]

    @property
    def pretrends(self) -> pd.DataFrame:
        """Rows of ``table`` for the pre-trend coefficients."""
        return self.table.loc[self.table["term"].isin(self.model_info.get("pretrend_terms", []))]


class ImputationDID(BaseEstimator):
    """Imputation difference-in-differences estimator.

    Parameters
    ----------
    yname, gname, tname, idname : str
        Outcome, cohort (first treated period; 0, NaN or inf for never
        treated), time and unit columns.
    first_stage : str, optional
        Right-hand side of the untreated-outcome model, e.g.
        ``"x1 + fe(unit) + fe(year)"`` or ``"x1 | unit + year"``. Defaults to
        unit and time fixed effects.
    weights : str, optional
        Column of non-negative observation weights.
    wtr : str or sequence of str, optional
        Columns of custom treatment weights, one estimand per column.
    horizon : True or sequence of numbers, optional
        Event-study horizons (``True`` for all).
    pretrends : True or sequence of numbers, optional
        Negative event times to test for pre-trends (``True`` for all).
    config : ImputationConfig, optional
        Confidence level, threading and numerical settings.
    """

    def __init__(  # noqa: PLR0913
        self,
        yname: str,
        gname: str,
        tname: str,
        idname: str,
        *,
        first_stage: str | None = None,
        weights: str | None = None,
        wtr: str | Sequence[str] | None = None,
        horizon: bool | Sequence[float] | None = None,
        pretrends: bool | Sequence[float] | None = None,
        config: ImputationConfig | None = None,
    ) -> None:
        super().__init__()
        self.yname = str(yname)
        self.gname = str(gname)
        self.tname = str(tname)
        self.idname = str(idname)
        self.first_stage = first_stage
        self.weights = weights
        self.wtr = wtr
        self.horizon = horizon
        self.pretrends = pretrends
        self.config = config or ImputationConfig()
        self.formula = first_stage_formula(
            self.yname, first_stage, idname=self.idname, tname=self.tname,
        )

    # ------------------------------------------------------------------
    def fit(self, data: pd.DataFrame, *, return_df: bool = False) -> ImputationResult:  # noqa: PLR0915
        """Estimate every treatment-weight term (and pre-trends when requested)."""
        cfg = self.config
        panel = prepare_panel(
            data,
            yname=self.yname,
            gname=self.gname,
            tname=self.tname,
            idname=self.idname,
            weights=self.weights,
            wtr=self.wtr,
            horizon=self.horizon,
            pretrends=self.pretrends,
        )
        untreated = ~panel.treat
        if not np.any(untreated):
            raise FirstStageError("No untreated observations to fit the first stage on.")
        obs_w = panel.obs_weights if panel.has_weights else None

        # 1. untreated-outcome model
        fit = FEOLS(
            self.formula, panel.data, subset=untreated, weights=obs_w, config=cfg,
        ).fit()
        y = panel.data[panel.yname].to_numpy(dtype=np.float64)
        residual = y - fit.predict(panel.data)

        n_treated = int(panel.treat.sum())
        bad = panel.treat & ~np.isfinite(residual)
        n_bad = int(bad.sum())
        if n_bad:
            msg = (
                f"{n_bad} of {n_treated} treated observations cannot be imputed "
                "(no untreated observations for their unit, period or covariates); "
                "estimates that put weight on them are NaN."
            )
            LOGGER.warning(msg)
            warnings.warn(msg, UserWarning, stacklevel=2)

        # 2. projection design and per-term variance
        design = sparse_model_matrix(panel, fit)
        unit_codes = fe_core.to_codes(panel.data[panel.idname].to_numpy())
        comps = term_variances(
            panel.terms,
            panel.weight_matrix(),
            design,
            residual,
            cohort=panel.cohort,
            event_time=panel.event_time,
            unit_codes=unit_codes,
            omega=panel.obs_weights,
            n_jobs=int(cfg.n_jobs),
            singular_policy=cfg.singular_policy,
        )

        # 3. pre-trend regression
        pre_fit, pre_rows = self._pretrend_rows(panel, fit)

        z = cfg.z_value
        effect_rows = [
            {
                "term": c.term,
                "estimate": c.estimate,
                "standard_error": c.se,
                "conf_low": c.estimate - z * c.se,
                "conf_high": c.estimate + z * c.se,
            }
            for c in comps
        ]
        table = pd.DataFrame(pre_rows + effect_rows, columns=RESULT_COLUMNS)
        table = table.reset_index(drop=True)

        singular = {c.term: c.error for c in comps if c.error is not None}
        model_info: dict[str, Any] = {
            "Estimator": "ImputationDID",
            "FirstStage": self.formula,
            "FixedEffects": list(fit.fe_names),
            "CI level": cfg.ci_level,
            "terms": [c.term for c in comps],
            "pretrend_terms": [r["term"] for r in pre_rows],
        }
        extra: dict[str, Any] = {
            "n_treated": n_treated,
            "n_untreated_fit": int(design.fit_rows.sum()),
            "n_non_imputable": n_bad,
            "design_columns": list(design.columns),
            "singular": singular,
        }
        augmented = self._augment(data, residual, comps) if return_df else None
        LOGGER.info(
            "Imputation estimator: %d terms, %d pre-trends, %d treated rows",
            len(comps),
            len(pre_rows),
            n_treated,
        )
        result = ImputationResult(
            params=pd.Series(
                table["estimate"].to_numpy(dtype=np.float64), index=pd.Index(table["term"]),
            ),
            se=pd.Series(
                table["standard_error"].to_numpy(dtype=np.float64), index=pd.Index(table["term"]),
            ),
            n_obs=panel.n,
            model_info=model_info,
            extra=extra,
            table=table,
            data=augmented,
            first_stage=fit,
            pretrend=pre_fit,
        )
        self._results = result
        return result

    # ------------------------------------------------------------------
    def _pretrend_rows(
        self, panel: PreparedPanel, fit: FEOLSResult,
    ) -> tuple[FEOLSResult | None, list[dict[str, Any]]]:
        """Fit the first stage with pre-period dummies and report their coefficients."""
        if not panel.pretrends:
            return None, []
        cfg = self.config
        df = panel.data.copy()
        untreated = ~panel.treat
        usable = untreated & (panel.obs_weights > 0)
        names: dict[str, str] = {}
        for k in panel.pretrends:
            col = _fresh_name(df, _dummy_name(k))
            dummy = (panel.event_time == k).astype(np.float64)
            if not np.any(dummy[usable]):
                LOGGER.info("Dropping pre-trend %s: no untreated observations", event_time_label(k))
                continue
            df[col] = dummy
            names[col] = event_time_label(k)
        if not names:
            LOGGER.warning("No pre-trend dummy has support among untreated observations")
            return None, []

        rhs = self.formula.split("~", 1)[1].strip()
        formula = f"{panel.yname} ~ {' + '.join(names)} + {rhs}"
        vcov = cfg.pretrend_vcov if fit.fe_names else "iid"
        pre_fit = FEOLS(
            formula,
            df,
            subset=untreated,
            weights=panel.obs_weights if panel.has_weights else None,
            vcov=vcov,
            config=cfg,
        ).fit()

        z = cfg.z_value
        rows: list[dict[str, Any]] = []
        for col, label in names.items():
            if col not in pre_fit.params.index:
                LOGGER.info("Pre-trend %s dropped as collinear with the first stage", label)
                continue
            est = float(pre_fit.params[col])
            se = float(pre_fit.se[col])
            rows.append(
                {
                    "term": label,
                    "estimate": est,
                    "standard_error": se,
                    "conf_low": est - z * se,
                    "conf_high": est + z * se,
                },
            )
        return pre_fit, rows

    @staticmethod
    def _augment(
        data: pd.DataFrame,
        residual: np.ndarray,
        comps: list[TermVariance],
    ) -> pd.DataFrame:
        out = data.copy()
        out["tau"] = residual
        for c in comps:
            out[f"centered_tau_{c.term}"] = c.tau_centered
            out[f"est_v_{c.term}"] = c.v
        return out


def _dummy_name(k: float) -> str:
    # patsy needs plain identifiers: -2 -> pretrend_m2, -1.5 -> pretrend_m1p5
    return "pretrend_" + event_time_label(k).replace("-", "m").replace(".", "p")


def _fresh_name(df: pd.DataFrame, base: str) -> str:
    name = base
    i = 0
    while name in df.columns:
        i += 1
        name = f"{base}_{i}"
    return name


def did_imputation(  # noqa: PLR0913
    data: pd.DataFrame,
    yname: str,
    gname: str,
    tname: str,
    idname: str,
    first_stage: str | None = None,
    weights: str | None = None,
    wtr: str | Sequence[str] | None = None,
    horizon: bool | Sequence[float] | None = None,
    pretrends: bool | Sequence[float] | None = None,
    return_df: bool = False,
    config: ImputationConfig | None = None,
) -> pd.DataFrame | tuple[pd.DataFrame, pd.DataFrame]:
    """Run the imputation estimator and return the tidy result table.

    Parameters are those of :class:`ImputationDID`. With ``return_df=True``
    the input frame is also returned, copied, with the residualised outcome
    ``tau`` and, per term, the centred residuals ``centered_tau_<term>`` and
    correction weights ``est_v_<term>``.

    Returns
    -------
    pandas.DataFrame or (pandas.DataFrame, pandas.DataFrame)
        Columns ``term, estimate, standard_error, conf_low, conf_high``.
    """
    est = ImputationDID(
        yname,
        gname,
        tname,
        idname,
        first_stage=first_stage,
        weights=weights,
        wtr=wtr,
        horizon=horizon,
        pretrends=pretrends,
        config=config,
    )
    res = est.fit(data, return_df=return_df)
    if return_df:
        return res.table, res.data
    return res.table
