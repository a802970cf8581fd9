
import pytest
import numpy as np
import pandas as pd
from didimpute.core import fe as fe_mod

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(999)


@pytest.fixture
def balanced_panel(rng):
    n_units, n_periods = 12, 5
    unit = np.repeat(np.arange(n_units), n_periods)
    time = np.tile(np.arange(n_periods), n_units)
    y = rng.standard_normal(n_units)[unit] + rng.standard_normal(n_periods)[time]
    y = y + rng.standard_normal(unit.size)
    return unit, time, y

# ---------------------------------------------------------------------
# Unit Tests: Singleton Dropping
# ---------------------------------------------------------------------

def test_drop_singletons_iteratively():
    # g1: [0, 0, 0, 1] (1 is singleton)
    # g2: [0, 1, 1, 1] (0 is singleton)
    # Dropping index 3 and index 0 leaves [1, 2] without singletons.
    g1 = np.array([0, 0, 0, 1])
    g2 = np.array([0, 1, 1, 1])
    mask = fe_mod._drop_singletons_iteratively([g1, g2])
    assert np.all(mask == np.array([False, True, True, False]))

def test_drop_singletons_no_drops():
    g1 = np.array([0, 0, 1, 1])
    g2 = np.array([0, 1, 0, 1])
    mask = fe_mod._drop_singletons_iteratively([g1, g2])
    assert np.all(mask)

def test_absorb_reports_singletons():
    X = np.arange(6, dtype=float).reshape(-1, 1)
    g = np.array([0, 0, 1, 1, 2, 3])
    res = fe_mod.absorb(X, None, g, drop_singletons=True)
    assert res.dropped["singletons"] == 2
    assert res.mask.tolist() == [True, True, True, True, False, False]
    assert res.n_effective == 4

# ---------------------------------------------------------------------
# Unit Tests: Absorption (Demeaning)
# ---------------------------------------------------------------------

def test_absorb_one_way(rng):
    N = 100
    G = 10
    g = rng.integers(0, G, size=N)
    fe_vals = rng.standard_normal(G)
    y = fe_vals[g] + rng.standard_normal(N)
    X = rng.standard_normal((N, 2))

    res = fe_mod.absorb(X, y, fe_ids=g)

    df = pd.DataFrame({'y': y, 'g': g})
    y_expected = y - df.groupby('g')['y'].transform('mean').to_numpy()
    assert np.allclose(res.y.flatten(), y_expected)
    assert res.diagnostics["iterations"] == 1

def test_absorb_weighted_one_way(rng):
    g = np.array([0, 0, 0, 1, 1])
    y = np.array([1.0, 2.0, 3.0, 4.0, 6.0])
    w = np.array([1.0, 1.0, 2.0, 1.0, 3.0])
    res = fe_mod.absorb(np.zeros((5, 0)), y, g, weights=w)
    m0 = (1 + 2 + 6) / 4
    m1 = (4 + 18) / 4
    assert np.allclose(res.y, y - np.array([m0, m0, m0, m1, m1]))

def test_demean_two_way_balanced(balanced_panel):
    unit, time, y = balanced_panel
    A, info = fe_mod.demean(y, [unit, time], tol=1e-12)
    df = pd.DataFrame({"y": y, "u": unit, "t": time})
    expected = (
        y
        - df.groupby("u")["y"].transform("mean").to_numpy()
        - df.groupby("t")["y"].transform("mean").to_numpy()
        + y.mean()
    )
    assert info["converged"]
    assert np.allclose(A.reshape(-1), expected, atol=1e-8)

def test_absorb_drops_missing_and_zero_weight():
    g = np.array([0.0, 1.0, np.nan, 1.0, 0.0])
    w = np.array([1.0, 1.0, 1.0, 0.0, 1.0])
    res = fe_mod.absorb(np.ones((5, 1)), np.arange(5.0), g, weights=w)
    assert res.mask.tolist() == [True, True, False, False, True]
    assert res.dropped["na_fe"] == 1
    assert res.dropped["zero_weight"] == 1

# ---------------------------------------------------------------------
# Unit Tests: Nesting Detection (DoF)
# ---------------------------------------------------------------------

def test_is_nested():
    assert not fe_mod._is_nested(np.array([0, 0, 1, 1]), [np.array([0, 1, 0, 1])])
    target = np.array([0, 0, 1, 1])
    others = [np.array([0, 1, 2, 3])]
    assert fe_mod.is_nested(target, others)


def test_to_codes_sorted_labels():
    codes = fe_mod.to_codes(np.array(["b", "a", "c", "a"], dtype=object))
    assert codes.tolist() == [1, 0, 2, 0]
    assert codes.dtype == np.int64

# ---------------------------------------------------------------------
# Unit Tests: Fixed-effect recovery
# ---------------------------------------------------------------------

def test_recover_fe_two_way_exact():
    unit = np.repeat(np.arange(4), 3)
    time = np.tile(np.arange(3), 4)
    alpha = np.array([1.0, -2.0, 0.5, 3.0])
    lam = np.array([0.0, 1.5, -1.0])
    r = alpha[unit] + lam[time]
    rec = fe_mod.recover_fe(r, [unit, time])
    assert rec.method == "direct"
    assert rec.references[0].size == 0
    assert rec.references[1].tolist() == [0]
    fitted = rec.values[0][unit] + rec.values[1][time]
    assert np.allclose(fitted, r)
    assert np.allclose(rec.values[1], lam)
    assert np.allclose(rec.values[0], alpha)

def test_recover_fe_disconnected_components():
    # two separate unit/time blocks -> one reference per component
    unit = np.array([0, 0, 1, 1, 2, 2, 3, 3])
    time = np.array([0, 1, 0, 1, 2, 3, 2, 3])
    r = np.array([1.0, 2.0, 3.0, 4.0, 0.0, 5.0, 1.0, 6.0])
    rec = fe_mod.recover_fe(r, [unit, time])
    assert rec.references[1].tolist() == [0, 2]
    fitted = rec.values[0][unit] + rec.values[1][time]
    assert np.allclose(fitted, r)

def test_fe_dummies_shape():
    D = fe_mod.fe_dummies(np.array([0, 2, 1, 2]))
    assert D.shape == (4, 3)
    assert np.allclose(D.toarray().sum(axis=1), 1.0)
