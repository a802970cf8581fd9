import numpy as np
import pandas as pd
import pytest

from didimpute.core.design import sparse_model_matrix
from didimpute.estimators.feols import FEOLS
from didimpute.exceptions import DesignMatrixError
from didimpute.utils.preprocess import prepare_panel

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(7)


@pytest.fixture
def panel_df(rng):
    rows = []
    for unit, g in [(1, 0), (2, 2), (3, 3), (4, 2), (5, 0), (6, 3)]:
        for t in range(1, 5):
            rows.append({"id": unit, "t": t, "g": g})
    df = pd.DataFrame(rows)
    df["x"] = rng.standard_normal(df.shape[0])
    df["y"] = df["id"] * 0.3 + df["t"] * 0.5 + df["x"] + rng.standard_normal(df.shape[0])
    return df


def _build(df, formula):
    panel = prepare_panel(df, yname="y", gname="g", tname="t", idname="id")
    fit = FEOLS(formula, panel.data, subset=~panel.treat).fit()
    return panel, sparse_model_matrix(panel, fit)

# ---------------------------------------------------------------------
# Column structure
# ---------------------------------------------------------------------

def test_default_two_way_columns(panel_df):
    panel, design = _build(panel_df, "y ~ fe(id) + fe(t)")
    assert design.columns == [
        "cohort[0]", "cohort[2]", "cohort[3]", "period[2]", "period[3]", "period[4]",
    ]
    assert design.shape == (panel.n, 6)
    assert np.array_equal(design.fit_rows, ~panel.treat)
    Z0 = design.Z0.toarray()
    assert np.linalg.matrix_rank(Z0) == Z0.shape[1]


def test_covariates_come_first(panel_df):
    panel, design = _build(panel_df, "y ~ x | id + t")
    assert design.columns[0] == "x"
    dense = design.Z.toarray()
    assert np.allclose(dense[:, 0], panel.data["x"].to_numpy())


def test_period_first_drops_earliest_period(panel_df):
    _, design = _build(panel_df, "y ~ fe(t) + fe(id)")
    assert "period[1]" not in design.columns
    assert design.blocks["period_reference"] == [1]


def test_indicator_rows_are_one_hot(panel_df):
    panel, design = _build(panel_df, "y ~ fe(id) + fe(t)")
    dense = design.Z.toarray()
    cohort_cols = dense[:, :3]
    assert np.allclose(cohort_cols.sum(axis=1), 1.0)
    g = panel.cohort
    assert np.allclose(cohort_cols[:, 1], (g == 2).astype(float))

# ---------------------------------------------------------------------
# Row handling and errors
# ---------------------------------------------------------------------

def test_untreated_rows_outside_fit_are_zero(panel_df):
    df = panel_df.copy()
    drop = (df["id"] == 1) & (df["t"] == 3)
    df.loc[drop, "y"] = np.nan
    _, design = _build(df, "y ~ fe(id) + fe(t)")
    row = np.flatnonzero(drop.to_numpy())[0]
    assert not design.fit_rows[row]
    assert design.Z[row].nnz == 0


def test_missing_covariate_on_treated_row_raises(panel_df):
    df = panel_df.copy()
    df.loc[(df["id"] == 2) & (df["t"] == 4), "x"] = np.nan
    with pytest.raises(DesignMatrixError, match="missing covariates"):
        _build(df, "y ~ x | id + t")
