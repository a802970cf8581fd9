"""Formula parser for didimpute.

Patsy-based parsing of first-stage specifications with absorbed fixed
effects. Two spellings are accepted and normalised to the same structure:

* ``y ~ x1 + x2 + fe(unit) + fe(year)`` (``fe(a + b)`` is also allowed);
* ``y ~ x1 + x2 | unit + year`` (fixest style; ``0 | unit + year`` means
  fixed effects only).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd
import patsy

from didimpute.exceptions import ConfigurationError

LOGGER = logging.getLogger(__name__)

_FE_PAT = re.compile(r"fe\((?P<inside>.+?)\)")
_NO_INTERCEPT_PAT = re.compile(r"(?<!\d)\s*-\s*1\b|\+\s*0\b")

__all__ = [
    "FormulaParser",
    "ParsedFormula",
    "build_design",
    "factor_keys",
    "first_stage_formula",
]


def _cleanup_rhs(rhs: str) -> str:
    """Remove empty/duplicate additive operators after dropping specials (e.g., fe(...)) so
    that Patsy receives a valid additive formula. Returns "0" if nothing is left.
    """
    s = re.sub(r"\s*\+\s*", " + ", rhs)
    s = re.sub(r"(?:\s*\+\s*){2,}", " + ", s)
    s = s.strip()
    s = re.sub(r"^\+\s*", "", s)
    s = re.sub(r"\s*\+$", "", s)
    return s if s else "0"


def _split_fixest(rhs: str) -> str:
    """Rewrite ``x | a + b`` as ``x + fe(a) + fe(b)``."""
    if "|" not in rhs:
        return rhs
    parts = rhs.split("|")
    if len(parts) != 2:
        raise ConfigurationError(
            f"First-stage formula may contain at most one '|' separator: {rhs!r}",
        )
    covars, fes = parts[0].strip(), parts[1].strip()
    fe_terms = [t.strip() for t in re.split(r"\s*\+\s*", fes) if t.strip()]
    if not fe_terms:
        raise ConfigurationError(f"No fixed effects listed after '|' in {rhs!r}")
    fe_part = " + ".join(f"fe({t})" for t in fe_terms)
    return f"{covars} + {fe_part}" if covars else fe_part


def _is_empty_rhs(rhs: str) -> bool:
    return rhs.strip() in {"", "0", "-1", "0 - 1", "1 - 1"}


def first_stage_formula(
    yname: str, first_stage: str | None, *, idname: str, tname: str,
) -> str:
    """Full first-stage formula for outcome ``yname``.

    ``first_stage`` is a right-hand side (a leading ``~`` is tolerated); by
    default only unit and time fixed effects are used.
    """
    if first_stage is None:
        return f"{yname} ~ fe({idname}) + fe({tname})"
    rhs = str(first_stage).strip()
    if "~" in rhs:
        lhs, rhs = (s.strip() for s in rhs.split("~", 1))
        if lhs:
            raise ConfigurationError(
                "first_stage must not name an outcome; pass the right-hand side only.",
            )
    if not rhs:
        raise ConfigurationError("first_stage formula is empty.")
    return f"{yname} ~ {rhs}"


@dataclass
class ParsedFormula:
    """Design components of a parsed formula.

    ``X`` and ``y`` are restricted to rows without missing values in the
    outcome, the covariates or the fixed effects; ``row_mask_valid`` maps them
    back to the rows of the input frame.
    """

    y_name: str
    X: np.ndarray
    y: np.ndarray
    var_names: list[str]
    fe_names: list[str]
    fe_codes_list: list[np.ndarray]
    fe_levels: list[pd.Index]
    row_mask_valid: np.ndarray
    include_intercept: bool
    covariate_rhs: str
    design_info: Any = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def has_fe(self) -> bool:
        return bool(self.fe_names)


class FormulaParser:
    """Formula parser for first-stage specifications with absorbed fixed effects.

    Extensions
    ----------
    fe(a + b)
        Additive multi-dimensional fixed effects (a and b absorbed separately).
        ``fe(a:b)`` absorbs the interaction cell only. Duplicate factors across
        several ``fe(...)`` groups are absorbed once.
    x | a + b
        fixest-style separator; every term after ``|`` is an absorbed factor.

    Covariate terms are evaluated by Patsy. The resulting ``design_info`` is
    kept so the same columns can be rebuilt for any other frame (used for
    out-of-sample prediction on treated rows).
    """

    def __init__(self, data: pd.DataFrame) -> None:
        self.data = data

    def parse(self, formula: str) -> ParsedFormula:
        """Parse ``formula`` against the parser's frame."""
        if "~" not in formula:
            raise ConfigurationError("Formula must contain '~'.")
        y_raw, rhs_raw = (s.strip() for s in formula.split("~", 1))
        if y_raw not in self.data.columns:
            raise ConfigurationError(f"Response variable '{y_raw}' not found in data.")
        rhs_raw = _split_fixest(rhs_raw)

        fe_names = self._fe_terms(rhs_raw)
        built = [self._build_fe_codes(self.data, t) for t in fe_names]
        fe_codes_list = [codes for codes, _ in built]
        fe_levels = [levels for _, levels in built]
        covariate_rhs = _cleanup_rhs(_FE_PAT.sub("", rhs_raw))
        no_intercept = bool(
            _NO_INTERCEPT_PAT.search(covariate_rhs)
            or re.match(r"^0\b", covariate_rhs.strip())
        )
        include_intercept = (not fe_names) and (not no_intercept)

        row_mask = self.data[y_raw].notna().to_numpy(dtype=bool, copy=True)
        for codes in fe_codes_list:
            row_mask &= codes >= 0
        work = self.data.loc[row_mask]

        X, var_names, kept_idx, design_info = self._patsy_matrix(
            work, covariate_rhs, intercept=include_intercept,
        )
        kept_pos = self.data.index.get_indexer(kept_idx)
        if np.any(kept_pos < 0):
            msg = "Input DataFrame index must be unique for deterministic row mapping."
            raise ConfigurationError(msg)
        mask_final = np.zeros(self.data.shape[0], dtype=bool)
        mask_final[kept_pos] = True
        # keep the original row order
        order = np.argsort(kept_pos, kind="mergesort")
        X = X[order]
        kept_pos = kept_pos[order]
        y = self.data[y_raw].to_numpy(dtype=np.float64)[kept_pos]
        fe_codes_list = [codes[kept_pos] for codes in fe_codes_list]
        LOGGER.debug(
            "Parsed %r: %d rows, %d covariates, %d absorbed factors",
            formula,
            int(mask_final.sum()),
            len(var_names),
            len(fe_names),
        )
        return ParsedFormula(
            y_name=y_raw,
            X=X,
            y=y,
            var_names=var_names,
            fe_names=fe_names,
            fe_codes_list=fe_codes_list,
            fe_levels=fe_levels,
            row_mask_valid=mask_final,
            include_intercept=include_intercept,
            covariate_rhs=covariate_rhs,
            design_info=design_info,
        )

    def _patsy_matrix(
        self, df: pd.DataFrame, rhs: str, *, intercept: bool,
    ) -> tuple[np.ndarray, list[str], pd.Index, Any]:
        # Use Patsy with NA_action=drop to mirror R model.matrix behavior.
        if _is_empty_rhs(rhs):
            if intercept:
                return (
                    np.ones((df.shape[0], 1), dtype=np.float64),
                    ["Intercept"],
                    df.index,
                    None,
                )
            return np.empty((df.shape[0], 0), dtype=np.float64), [], df.index, None
        spec = f"1 + ({rhs})" if intercept else f"({rhs}) - 1"
        na = patsy.NAAction(on_NA="drop")
        try:
            design = patsy.dmatrix(spec, df, NA_action=na, return_type="dataframe")
        except patsy.PatsyError as exc:
            raise ConfigurationError(f"Cannot build covariates {rhs!r}: {exc}") from exc
        X = design.to_numpy(dtype=np.float64)
        names = list(design.design_info.column_names)
        return np.asarray(X, dtype=np.float64, order="C"), names, design.index, design.design_info

    @staticmethod
    def _fe_terms(rhs: str) -> list[str]:
        terms: list[str] = []
        for m in _FE_PAT.finditer(rhs):
            for t in re.split(r"\s*\+\s*", m.group("inside")):
                t = t.strip()
                if t and t not in terms:
                    terms.append(t)
        return terms

    @staticmethod
    def _build_fe_codes(df: pd.DataFrame, term: str) -> tuple[np.ndarray, pd.Index]:
        """Integer codes and level labels of an absorbed factor.

        Missing levels are coded ``-1``. Interaction cells ``a:b`` are labelled
        by tuples.
        """
        parts = _factor_parts(df, term)
        if len(parts) == 1:
            cat = df[parts[0]].astype("category")
            codes = cat.cat.codes.to_numpy(dtype=np.int64, copy=True)
            return codes, pd.Index(cat.cat.categories)
        return _factorize_interaction_cols([df[p] for p in parts])


def _factor_parts(df: pd.DataFrame, term: str) -> list[str]:
    parts = [s.strip() for s in term.split(":") if s.strip()]
    for p in parts:
        if p not in df.columns:
            raise ConfigurationError(f"fe() term '{p}' not found in data columns.")
    return parts


def factor_keys(df: pd.DataFrame, term: str) -> pd.Index:
    """Row-wise level labels of the absorbed factor ``term`` in ``df``."""
    parts = _factor_parts(df, term)
    if len(parts) == 1:
        return pd.Index(df[parts[0]].to_numpy())
    return pd.MultiIndex.from_arrays([df[p].to_numpy() for p in parts])


def _factorize_interaction_cols(cols: list[pd.Series]) -> tuple[np.ndarray, pd.Index]:
    # Any factor with NA in a row yields code -1
    arrs = [c.to_numpy() for c in cols]
    mi = pd.MultiIndex.from_arrays(arrs, names=None)
    codes, uniques = mi.factorize(sort=True)
    na_mask = np.zeros(codes.shape[0], dtype=bool)
    for a in arrs:
        na_mask |= pd.isna(a)
    codes = np.where(na_mask, -1, codes)
    return codes.astype(np.int64, copy=False), uniques


def build_design(design_info: Any, data: pd.DataFrame, *, intercept: bool) -> np.ndarray:
    """Rebuild the covariate columns described by ``design_info`` for ``data``.

    Missing covariate values propagate as NaN instead of dropping rows, so the
    output is aligned row for row with ``data``.
    """
    if design_info is None:
        n = data.shape[0]
        if intercept:
            return np.ones((n, 1), dtype=np.float64)
        return np.empty((n, 0), dtype=np.float64)
    na = patsy.NAAction(NA_types=[])
    try:
        (mat,) = patsy.build_design_matrices([design_info], data, NA_action=na)
    except patsy.PatsyError as exc:
        raise ConfigurationError(f"Cannot evaluate covariates on new data: {exc}") from exc
    return np.asarray(mat, dtype=np.float64)
