import numpy as np
import pandas as pd
import pytest

from didimpute.exceptions import ConfigurationError
from didimpute.utils.formula import (
    FormulaParser,
    build_design,
    factor_keys,
    first_stage_formula,
)


def _toy_df() -> pd.DataFrame:
    n = 10
    return pd.DataFrame(
        {
            "y": np.arange(n, dtype=float),
            "x": np.arange(n, dtype=float) + 1.0,
            "unit": np.repeat(["a", "b", "c", "d", "e"], 2),
            "year": np.tile([2001, 2002], 5),
        },
        index=pd.RangeIndex(n),
    )


def test_include_intercept_detects_0_plus_x() -> None:
    out = FormulaParser(_toy_df()).parse("y ~ 0 + x")
    assert out.include_intercept is False
    assert out.var_names == ["x"]


def test_include_intercept_detects_x_plus_0() -> None:
    out = FormulaParser(_toy_df()).parse("y ~ x + 0")
    assert out.include_intercept is False


def test_include_intercept_detects_x_minus_1() -> None:
    out = FormulaParser(_toy_df()).parse("y ~ x - 1")
    assert out.include_intercept is False


def test_include_intercept_default_true() -> None:
    out = FormulaParser(_toy_df()).parse("y ~ x")
    assert out.include_intercept is True
    assert out.var_names == ["Intercept", "x"]


def test_fe_syntax_absorbs_factors() -> None:
    out = FormulaParser(_toy_df()).parse("y ~ x + fe(unit) + fe(year)")
    assert out.fe_names == ["unit", "year"]
    assert out.include_intercept is False
    assert out.var_names == ["x"]
    assert out.has_fe
    assert list(out.fe_levels[0]) == ["a", "b", "c", "d", "e"]
    assert out.fe_codes_list[1].tolist() == [0, 1] * 5


def test_fixest_syntax_matches_fe_syntax() -> None:
    df = _toy_df()
    a = FormulaParser(df).parse("y ~ x | unit + year")
    b = FormulaParser(df).parse("y ~ x + fe(unit + year)")
    assert a.fe_names == b.fe_names
    assert a.var_names == b.var_names
    assert np.allclose(a.X, b.X)


def test_fixed_effects_only() -> None:
    out = FormulaParser(_toy_df()).parse("y ~ 0 | unit + year")
    assert out.var_names == []
    assert out.X.shape == (10, 0)


def test_missing_rows_are_masked_in_order() -> None:
    df = _toy_df()
    df.loc[3, "x"] = np.nan
    df.loc[6, "y"] = np.nan
    out = FormulaParser(df).parse("y ~ x + fe(unit)")
    assert out.row_mask_valid.sum() == 8
    assert not out.row_mask_valid[3]
    assert not out.row_mask_valid[6]
    assert np.allclose(out.y, df["y"].to_numpy()[out.row_mask_valid])


def test_unknown_column_raises() -> None:
    with pytest.raises(ConfigurationError, match="not found"):
        FormulaParser(_toy_df()).parse("y ~ x + fe(region)")
    with pytest.raises(ConfigurationError, match="Response"):
        FormulaParser(_toy_df()).parse("z ~ x")


def test_interaction_fe_codes() -> None:
    out = FormulaParser(_toy_df()).parse("y ~ x + fe(unit:year)")
    assert out.fe_names == ["unit:year"]
    assert len(out.fe_levels[0]) == 10
    keys = factor_keys(_toy_df(), "unit:year")
    assert isinstance(keys, pd.MultiIndex)


def test_build_design_keeps_nan_rows() -> None:
    df = _toy_df()
    out = FormulaParser(df).parse("y ~ x + I(x ** 2) + fe(unit)")
    new = df.copy()
    new.loc[2, "x"] = np.nan
    X = build_design(out.design_info, new, intercept=out.include_intercept)
    assert X.shape == (10, 2)
    assert np.all(np.isnan(X[2]))
    assert np.allclose(X[0], [1.0, 1.0])


def test_first_stage_formula_defaults_and_validation() -> None:
    assert first_stage_formula("y", None, idname="id", tname="t") == "y ~ fe(id) + fe(t)"
    assert first_stage_formula("y", "~ x | id + t", idname="id", tname="t") == "y ~ x | id + t"
    with pytest.raises(ConfigurationError, match="outcome"):
        first_stage_formula("y", "z ~ x", idname="id", tname="t")
