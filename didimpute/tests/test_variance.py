import numpy as np
import pytest
from scipy import sparse

from didimpute.core import linalg as la
from didimpute.core.design import DesignMatrix
from didimpute.core.variance import (
    center_by_cohort_event,
    cluster_variance,
    group_codes,
    point_estimates,
    projection_weights,
    term_variances,
)
from didimpute.exceptions import SingularSystemError

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(2021)


@pytest.fixture
def toy():
    """Three units over three periods; unit 0 treated from period 2."""
    unit = np.repeat([0, 1, 2], 3)
    time = np.tile([1, 2, 3], 3)
    cohort = np.where(unit == 0, 2.0, 0.0)
    treated = (cohort > 0) & (time >= cohort)
    event_time = np.where(cohort > 0, time - cohort, -np.inf)
    # columns: cohort[0], cohort[2], period[2], period[3]
    Z = np.column_stack(
        [cohort == 0, cohort == 2, time == 2, time == 3],
    ).astype(float)
    design = DesignMatrix(
        Z=sparse.csr_matrix(Z),
        columns=["cohort[0]", "cohort[2]", "period[2]", "period[3]"],
        fit_rows=~treated,
        treated=treated,
    )
    return {
        "unit": unit,
        "time": time,
        "cohort": cohort,
        "event_time": event_time,
        "treated": treated,
        "design": design,
    }

# ---------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------

def test_group_codes_composite_keys():
    codes = group_codes(np.array([2.0, 2.0, 3.0, 2.0]), np.array([0.0, 1.0, 0.0, 0.0]))
    assert codes[0] == codes[3]
    assert len(set(codes.tolist())) == 3


def test_point_estimates_weighted_sum(rng):
    treated = np.array([True, True, False, True])
    r = np.array([1.0, 3.0, np.nan, 5.0])
    W = np.column_stack([[0.25, 0.25, 0.0, 0.5], [0.0, 0.0, 1.0, 0.0]])
    est = point_estimates(W, r, treated)
    assert est[0] == pytest.approx(0.25 + 0.75 + 2.5)
    # no treated support and NaN outside the support
    assert est[1] == 0.0


def test_center_by_cohort_event_manual():
    treated = np.array([True, True, True, False])
    r = np.array([1.0, 3.0, 10.0, 4.0])
    v = np.array([1.0, 2.0, 0.0, -1.0])
    cells = np.array([0, 0, 1])
    tau = center_by_cohort_event(r, v, treated, cells)
    tau_bar = (1 * 1 + 4 * 3) / 5
    assert np.allclose(tau[:2], r[:2] - tau_bar)
    # cell with sum v^2 == 0 is centred at 0
    assert tau[2] == 10.0
    assert tau[3] == 4.0


def test_cluster_variance_manual():
    v = np.array([1.0, -0.5, 0.0, 2.0])
    tau = np.array([2.0, 2.0, np.nan, 1.0])
    units = np.array([0, 0, 1, 1])
    # unit 0: (2 - 1)^2 = 1 ; unit 1: (2)^2 = 4 ; NaN row skipped
    assert cluster_variance(v, tau, units) == pytest.approx(5.0)


def test_projection_balances_design(toy):
    design = toy["design"]
    treated = toy["treated"]
    w = treated / treated.sum()
    ne = la.factor_normal_equations(design.Z0)
    v = projection_weights(ne, design, w, np.ones(w.size))
    # Z0' v0 + Z1' w1 = 0
    assert np.allclose(design.Z.T @ v, 0.0)
    assert np.allclose(v[treated], w[treated])

# ---------------------------------------------------------------------
# Per-term pipeline
# ---------------------------------------------------------------------

def _run(toy, W, residual, terms, **kw):
    return term_variances(
        terms,
        W,
        toy["design"],
        residual,
        cohort=toy["cohort"],
        event_time=toy["event_time"],
        unit_codes=toy["unit"],
        **kw,
    )


def test_zero_support_vector(toy, rng):
    residual = rng.standard_normal(9)
    W = np.zeros((9, 1))
    W[~toy["treated"], 0] = 1.0 / (~toy["treated"]).sum()
    (out,) = _run(toy, W, residual, ["none"])
    assert out.estimate == 0.0
    assert out.variance == 0.0
    assert out.se == 0.0


def test_parallel_matches_sequential(toy, rng):
    residual = rng.standard_normal(9)
    treated = toy["treated"]
    W = np.column_stack(
        [
            treated / treated.sum(),
            (treated & (toy["time"] == 2)).astype(float),
            (treated & (toy["time"] == 3)).astype(float),
        ],
    )
    seq = _run(toy, W, residual, ["treat", "0", "1"], n_jobs=1)
    par = _run(toy, W, residual, ["treat", "0", "1"], n_jobs=3)
    for a, b in zip(seq, par):
        assert a.term == b.term
        assert a.estimate == b.estimate
        assert a.variance == b.variance
        assert np.array_equal(a.v, b.v)


def test_singular_policy(toy, rng):
    design = toy["design"]
    # duplicate a column so Z0'Z0 is singular
    Z = sparse.hstack([design.Z, design.Z[:, [0]]], format="csr")
    bad = {
        **toy,
        "design": DesignMatrix(
            Z=Z,
            columns=[*design.columns, "dup"],
            fit_rows=design.fit_rows,
            treated=design.treated,
        ),
    }
    residual = rng.standard_normal(9)
    W = (toy["treated"] / toy["treated"].sum()).reshape(-1, 1)
    (out,) = _run(bad, W, residual, ["treat"])
    assert np.isnan(out.se)
    assert out.error is not None
    assert np.isfinite(out.estimate)
    with pytest.raises(SingularSystemError):
        _run(bad, W, residual, ["treat"], singular_policy="raise")


def test_term_label_count_mismatch(toy):
    with pytest.raises(ValueError, match="one term label"):
        _run(toy, np.zeros((9, 2)), np.zeros(9), ["treat"])
