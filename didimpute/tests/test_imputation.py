import contextlib
import warnings

import numpy as np
import pandas as pd
import pytest

from didimpute import did_imputation
from didimpute.estimators.base import ImputationConfig
from didimpute.estimators.feols import FEOLS
from didimpute.estimators.imputation import RESULT_COLUMNS, ImputationDID
from didimpute.exceptions import ConfigurationError
from didimpute.sim.dgp import simulate_staggered_panel, simulate_two_by_two
from didimpute.utils.preprocess import prepare_panel

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def small_panel():
    # cohorts {0, 2, 3} x periods 1..4
    rng = np.random.default_rng(11)
    rows = []
    for unit in range(1, 13):
        g = [0, 2, 3][unit % 3]
        for t in range(1, 5):
            rows.append({"id": unit, "t": t, "g": g})
    df = pd.DataFrame(rows)
    treated = (df["g"] > 0) & (df["t"] >= df["g"])
    df["y"] = 0.2 * df["id"] + 0.4 * df["t"] + 1.5 * treated + rng.standard_normal(df.shape[0])
    return df


@pytest.fixture
def sim_panel():
    return simulate_staggered_panel(n_units=40, n_periods=6, seed=5)

# ---------------------------------------------------------------------
# Exact recovery
# ---------------------------------------------------------------------

def test_two_by_two_round_trip():
    delta = 1.5
    table = did_imputation(simulate_two_by_two(delta), "y", "g", "t", "id")
    assert list(table.columns) == RESULT_COLUMNS
    assert table["term"].tolist() == ["treat"]
    assert table["estimate"].iloc[0] == pytest.approx(delta, abs=1e-10)
    assert table["standard_error"].iloc[0] == pytest.approx(0.0, abs=1e-8)


def test_noise_free_homogeneous_effect():
    df = simulate_staggered_panel(n_units=30, n_periods=5, effect=2.0, noise=0.0, seed=3)
    table = did_imputation(df, "y", "g", "t", "id", horizon=True)
    assert np.allclose(table["estimate"], 2.0, atol=1e-7)
    assert np.allclose(table["standard_error"], 0.0, atol=1e-6)


def test_covariate_first_stage():
    df = simulate_staggered_panel(n_units=30, n_periods=5, beta_x=1.2, noise=0.0, seed=9)
    table = did_imputation(df, "y", "g", "t", "id", first_stage="x | id + t")
    assert table["estimate"].iloc[0] == pytest.approx(2.0, abs=1e-7)

# ---------------------------------------------------------------------
# Point estimate definition
# ---------------------------------------------------------------------

def test_static_estimate_is_mean_treated_residual(small_panel):
    table, aug = did_imputation(small_panel, "y", "g", "t", "id", return_df=True)
    treated = (small_panel["g"] > 0) & (small_panel["t"] >= small_panel["g"])
    assert table["estimate"].iloc[0] == pytest.approx(aug.loc[treated, "tau"].mean())

    untreated = ~treated.to_numpy()
    fit = FEOLS("y ~ fe(id) + fe(t)", small_panel, subset=untreated).fit()
    resid = small_panel["y"].to_numpy() - fit.predict(small_panel)
    assert np.allclose(aug["tau"].to_numpy(), resid)


def test_weighted_static_estimate(small_panel):
    df = small_panel.assign(w=np.where(small_panel["id"] % 2 == 0, 2.0, 1.0))
    table, aug = did_imputation(df, "y", "g", "t", "id", weights="w", return_df=True)
    treated = (df["g"] > 0) & (df["t"] >= df["g"])
    w = df.loc[treated, "w"]
    expected = float(np.sum(w * aug.loc[treated, "tau"]) / np.sum(w))
    assert table["estimate"].iloc[0] == pytest.approx(expected)


def test_uniform_weight_scaling_is_irrelevant(small_panel):
    base = did_imputation(small_panel, "y", "g", "t", "id", pretrends=True)
    scaled = did_imputation(
        small_panel.assign(w=3.0), "y", "g", "t", "id", weights="w", pretrends=True,
    )
    assert np.allclose(base["estimate"], scaled["estimate"])
    assert np.allclose(base["standard_error"], scaled["standard_error"])


def test_custom_wtr_matches_static(small_panel):
    df = small_panel.assign(
        mywt=((small_panel["g"] > 0) & (small_panel["t"] >= small_panel["g"])).astype(float),
    )
    static = did_imputation(df, "y", "g", "t", "id")
    custom = did_imputation(df, "y", "g", "t", "id", wtr="mywt")
    assert custom["term"].tolist() == ["mywt"]
    assert custom["estimate"].iloc[0] == pytest.approx(static["estimate"].iloc[0])
    assert custom["standard_error"].iloc[0] == pytest.approx(static["standard_error"].iloc[0])

# ---------------------------------------------------------------------
# Horizons and pre-trends
# ---------------------------------------------------------------------

def test_horizon_true_terms(small_panel):
    res = ImputationDID("y", "g", "t", "id", horizon=True).fit(small_panel)
    assert res.table["term"].tolist() == ["0", "1", "2"]
    ci = res.table
    assert np.all(ci["conf_low"] <= ci["estimate"])
    assert np.all(ci["estimate"] <= ci["conf_high"])
    assert np.allclose(ci["conf_high"] - ci["estimate"], 1.96 * ci["standard_error"])


def test_pretrends_missing_event_time_raises(small_panel):
    with pytest.raises(ConfigurationError, match="Pretrends not found"):
        did_imputation(small_panel, "y", "g", "t", "id", pretrends=[5])


def test_collinear_pretrend_is_dropped(small_panel):
    # within cohort-3 units lead -1 = 1 - lead -2 on untreated rows
    res = ImputationDID("y", "g", "t", "id", horizon=True, pretrends=True).fit(small_panel)
    assert res.table["term"].tolist() == ["-2", "0", "1", "2"]
    assert res.pretrend is not None
    assert res.pretrend.extra["diagnostics"]["dropped_collinear"] == ["pretrend_m1"]
    assert res.pretrends["term"].tolist() == ["-2"]
    assert res.effects["term"].tolist() == ["0", "1", "2"]


def test_pretrend_rows_come_first(sim_panel):
    res = ImputationDID(
        "y", "g", "t", "id", horizon=[0, 1], pretrends=[-2, -1],
    ).fit(sim_panel)
    assert res.table["term"].tolist() == ["-2", "-1", "0", "1"]
    assert res.pretrends["term"].tolist() == ["-2", "-1"]
    assert "dropped_collinear" not in res.pretrend.extra["diagnostics"]
    assert np.all(np.isfinite(res.pretrends["standard_error"]))


def test_pretrend_coefficients_match_direct_regression(small_panel):
    res = ImputationDID("y", "g", "t", "id", pretrends=[-1]).fit(small_panel)
    df = small_panel.copy()
    df["lead1"] = (df["g"] > 0) & (df["t"] - df["g"] == -1)
    df["lead1"] = df["lead1"].astype(float)
    untreated = ~((df["g"] > 0) & (df["t"] >= df["g"])).to_numpy()
    direct = FEOLS("y ~ lead1 + fe(id) + fe(t)", df, subset=untreated, vcov="cluster").fit()
    row = res.table.loc[res.table["term"] == "-1"].iloc[0]
    assert row["estimate"] == pytest.approx(direct.params["lead1"])
    assert row["standard_error"] == pytest.approx(direct.se["lead1"])

# ---------------------------------------------------------------------
# Weighted variance
# ---------------------------------------------------------------------

def _dense_weighted_se(df, tau, horizons):
    """Reference SEs from dense cohort and period dummies."""
    g = df["g"].to_numpy(dtype=float)
    t = df["t"].to_numpy(dtype=float)
    omega = df["w"].to_numpy(dtype=float)
    treat = (g > 0) & (t >= g)
    et = np.where(g > 0, t - g, -np.inf)
    cohorts = np.unique(g[~treat])
    periods = np.unique(t[~treat])[1:]
    Z = np.column_stack(
        [(g == c).astype(float) for c in cohorts] + [(t == p).astype(float) for p in periods],
    )
    Z0 = Z[~treat]
    A = Z0.T @ (omega[~treat, None] * Z0)
    unit = pd.factorize(df["id"])[0]
    out = []
    for h in horizons:
        w = omega * (treat & (et == h))
        w = w / w.sum()
        v = -omega * (Z @ np.linalg.solve(A, Z[treat].T @ w[treat]))
        v[treat] = w[treat]
        tau_c = tau.copy()
        for c, e in set(zip(g[treat], et[treat])):
            cell = treat & (g == c) & (et == e)
            den = np.sum(v[cell] ** 2)
            # cells without weight keep their residuals
            if den > 0:
                tau_c[cell] = tau[cell] - np.sum(v[cell] ** 2 * tau[cell]) / den
        s = np.bincount(unit, weights=v * tau_c)
        out.append(np.sqrt(np.sum(s**2)))
    return np.array(out)


def test_weighted_standard_errors_match_dense_reference():
    df = simulate_staggered_panel(n_units=60, n_periods=6, seed=13)
    assert df["w"].nunique() > 1
    table, aug = did_imputation(
        df, "y", "g", "t", "id", weights="w", horizon=True, return_df=True,
    )
    horizons = [int(h) for h in table["term"]]
    expected = _dense_weighted_se(df, aug["tau"].to_numpy(), horizons)
    assert np.allclose(table["standard_error"].to_numpy(), expected, rtol=1e-6)


# ---------------------------------------------------------------------
# Invariances
# ---------------------------------------------------------------------

def test_row_permutation_invariance(sim_panel):
    base = did_imputation(sim_panel, "y", "g", "t", "id", horizon=True)
    shuffled = sim_panel.sample(frac=1.0, random_state=1)
    perm = did_imputation(shuffled, "y", "g", "t", "id", horizon=True)
    assert base["term"].tolist() == perm["term"].tolist()
    assert np.allclose(base["estimate"], perm["estimate"])
    assert np.allclose(base["standard_error"], perm["standard_error"])


def test_parallel_matches_sequential(sim_panel):
    seq = did_imputation(
        sim_panel, "y", "g", "t", "id", horizon=True, config=ImputationConfig(n_jobs=1),
    )
    par = did_imputation(
        sim_panel, "y", "g", "t", "id", horizon=True, config=ImputationConfig(n_jobs=4),
    )
    pd.testing.assert_frame_equal(seq, par)


def test_ci_level_changes_interval_only(small_panel):
    a = did_imputation(small_panel, "y", "g", "t", "id")
    b = did_imputation(small_panel, "y", "g", "t", "id", config=ImputationConfig(ci_level=0.9))
    assert a["estimate"].iloc[0] == b["estimate"].iloc[0]
    assert b["conf_high"].iloc[0] < a["conf_high"].iloc[0]

# ---------------------------------------------------------------------
# Augmented output and diagnostics
# ---------------------------------------------------------------------

def test_return_df_columns_and_index(small_panel):
    df = small_panel.copy()
    df.index = pd.Index([f"r{i}" for i in range(df.shape[0])])
    table, aug = did_imputation(df, "y", "g", "t", "id", horizon=[0, 1], return_df=True)
    assert aug.index.equals(df.index)
    for col in ["tau", "centered_tau_0", "est_v_0", "centered_tau_1", "est_v_1"]:
        assert col in aug.columns
    assert "tau" not in df.columns
    treated = ((df["g"] > 0) & (df["t"] >= df["g"])).to_numpy()
    h0 = treated & (df["t"] - df["g"] == 0).to_numpy()
    assert aug.loc[h0, "est_v_0"].sum() == pytest.approx(1.0)
    assert np.all(aug.loc[treated & ~h0, "est_v_0"] == 0.0)


def test_non_imputable_treated_rows_warn():
    # no never-treated units: period 3 has no untreated observations
    rows = []
    for unit, g in [(1, 2), (2, 3), (3, 2), (4, 3)]:
        for t in range(1, 4):
            rows.append({"id": unit, "t": t, "g": g, "y": float(unit) + t})
    df = pd.DataFrame(rows)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        res = ImputationDID("y", "g", "t", "id").fit(df)
    assert any("cannot be imputed" in str(w.message) for w in caught)
    assert res.extra["n_non_imputable"] == 4
    assert np.isnan(res.table["estimate"].iloc[0])


def test_result_params_and_se(small_panel):
    res = ImputationDID("y", "g", "t", "id", horizon=True).fit(small_panel)
    assert list(res.params.index) == ["0", "1", "2"]
    assert res.se.index.equals(res.params.index)
    assert res.n_obs == small_panel.shape[0]
    assert res.extra["n_treated"] == int(((small_panel["g"] > 0) & (small_panel["t"] >= small_panel["g"])).sum())
    assert res.extra["singular"] == {}


def test_invalid_config_raises():
    with pytest.raises(ConfigurationError):
        ImputationConfig(singular_policy="ignore")
    with pytest.raises(ConfigurationError):
        ImputationConfig(n_jobs=0)
    with pytest.raises(ConfigurationError):
        ImputationConfig(ci_level=150)

# ---------------------------------------------------------------------
# Read-only pandas buffers
# ---------------------------------------------------------------------

def _copy_on_write():
    # always on (and the option deprecated) from pandas 3
    if int(pd.__version__.split(".")[0]) >= 3:
        return contextlib.nullcontext()
    return pd.option_context("mode.copy_on_write", True)


def test_fit_under_copy_on_write():
    df = simulate_staggered_panel(n_units=30, n_periods=5, beta_x=0.5, seed=17)
    df.loc[df.index[df["g"] == 0][:2], "y"] = np.nan
    with _copy_on_write():
        plain = did_imputation(df, "y", "g", "t", "id", weights="w")
        cov = did_imputation(df, "y", "g", "t", "id", first_stage="x | id + t", horizon=True)
    assert np.isfinite(plain["estimate"].iloc[0])
    assert np.all(np.isfinite(cov["standard_error"]))


def test_numeric_columns_are_writable_copies():
    df = simulate_staggered_panel(n_units=10, n_periods=4, seed=2)
    with _copy_on_write():
        panel = prepare_panel(df, yname="y", gname="g", tname="t", idname="id", weights="w")
    assert panel.obs_weights.flags.writeable
    panel.obs_weights[0] = 0.0
    assert df["w"].iloc[0] != 0.0
