"""Base classes and estimator configuration.

This module defines the abstract base estimator, the imputation configuration
data structure and the standardized estimation results container.
"""

# didimpute/estimators/base.py
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd
from scipy import stats

from didimpute.exceptions import ConfigurationError

LOGGER = logging.getLogger(__name__)

__all__ = [
    "BaseEstimator",
    "EstimationResult",
    "ImputationConfig",
    "normalize_ci_level",
    "normal_critical_value",
]

_N_JOBS_ENV = "DIDIMPUTE_N_JOBS"
_SINGULAR_POLICIES = ("nan", "raise")
_PRETREND_VCOV = ("cluster", "iid")


def normalize_ci_level(level: float | None, *, default: float = 0.95) -> float:
    """Normalize confidence level to a probability (0, 1)."""
    if not (0.0 < float(default) < 1.0):
        raise ValueError("default confidence level must lie in (0, 1)")
    if level is None:
        coerced = float(default)
    else:
        coerced = float(level)
        # Accept percentage-style inputs (e.g., 90 for 90%)
        if coerced > 1.0:
            coerced /= 100.0
    if not (0.0 < coerced < 1.0):
        raise ValueError("ci_level must be in (0, 1); supply e.g. 0.95 or 95")
    return coerced


def normal_critical_value(level: float | None) -> float:
    """Two-sided normal critical value; exactly 1.96 at the 95% level."""
    ci_level = normalize_ci_level(level)
    if np.isclose(ci_level, 0.95):
        return 1.96
    return float(stats.norm.ppf(1.0 - (1.0 - ci_level) / 2.0))


def _env_n_jobs() -> int:
    raw = str(os.environ.get(_N_JOBS_ENV, "")).strip()
    if not raw:
        return 1
    try:
        value = int(raw)
    except ValueError:
        LOGGER.warning("Ignoring non-integer %s=%r", _N_JOBS_ENV, raw)
        return 1
    if value == -1:
        return os.cpu_count() or 1
    return max(1, value)


# ---------------------------------------------------------------------
# Results container, extensible and estimator-agnostic
# ---------------------------------------------------------------------
@dataclass
class EstimationResult:
    """Container for estimation results.

    Stores parameter estimates, analytic standard errors and diagnostics.
    """

    params: pd.Series
    se: pd.Series | None = None
    n_obs: int | None = None
    model_info: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    """Dictionary for estimator-specific diagnostics and intermediate results."""

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        head = ", ".join(f"{k}={v}" for k, v in self.model_info.items())
        return f"EstimationResult(k={len(self.params)}, n={self.n_obs}, {head})"

    def __post_init__(self) -> None:
        """Validate the result contract immediately on creation."""
        self.validate()

    def validate(self) -> None:
        """Validate structural invariants.

        ``se`` must align with ``params``. Entries may be NaN (a standard error
        that could not be computed) but never negative or infinite.
        """
        if not isinstance(self.params, pd.Series):
            raise ValueError("params must be a pandas Series.")
        if self.se is not None:
            if not isinstance(self.se, pd.Series):
                raise ValueError("se must be a pandas Series aligned to params.")
            if not self.se.index.equals(self.params.index):
                raise ValueError("se index must exactly match params index and order.")
            vals = self.se.to_numpy(dtype=np.float64)
            if np.any(np.isinf(vals)) or np.any(vals[np.isfinite(vals)] < 0):
                raise ValueError("se contains negative or infinite values.")

    def conf_int(self, level: float | None = None) -> pd.DataFrame:
        """Normal-approximation confidence interval ``params +/- z * se``."""
        if self.se is None:
            raise ValueError("Standard errors are not available.")
        z = normal_critical_value(level)
        return pd.DataFrame(
            {"lower": self.params - z * self.se, "upper": self.params + z * self.se},
        )


# ---------------------------------------------------------------------
# Estimator configuration
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ImputationConfig:
    """Numerical and execution settings shared by the imputation estimator.

    Notes
    -----
    - ``ci_level``: confidence level of the normal intervals. 0.95 uses the
      conventional 1.96 critical value.
    - ``n_jobs``: worker threads for the per-term variance pipeline. Defaults
      to ``DIDIMPUTE_N_JOBS`` (``-1`` means all cores) or 1.
    - ``singular_policy``: ``"nan"`` reports a NaN standard error for a term
      whose projection hits singular normal equations and continues;
      ``"raise"`` aborts with :class:`~didimpute.exceptions.SingularSystemError`.
    - ``fe_tol`` / ``fe_max_iter``: alternating-projection convergence.
    - ``drop_singletons``: prune singleton fixed-effect groups in the
      first stage (off by default, which keeps every untreated row).
    - ``pretrend_vcov``: ``"cluster"`` clusters the pre-trend standard errors
      by the first absorbed factor; ``"iid"`` uses the homoskedastic formula.
    """

    ci_level: float = 0.95
    n_jobs: int = field(default_factory=_env_n_jobs)
    singular_policy: str = "nan"
    fe_tol: float = 1e-10
    fe_max_iter: int = 10_000
    drop_singletons: bool = False
    pretrend_vcov: str = "cluster"

    def __post_init__(self) -> None:
        try:
            level = normalize_ci_level(self.ci_level)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        object.__setattr__(self, "ci_level", level)
        if int(self.n_jobs) == -1:
            object.__setattr__(self, "n_jobs", os.cpu_count() or 1)
        if int(self.n_jobs) < 1:
            raise ConfigurationError("n_jobs must be a positive integer or -1.")
        if self.singular_policy not in _SINGULAR_POLICIES:
            raise ConfigurationError(
                f"singular_policy must be one of {_SINGULAR_POLICIES}; got {self.singular_policy!r}",
            )
        if self.pretrend_vcov not in _PRETREND_VCOV:
            raise ConfigurationError(
                f"pretrend_vcov must be one of {_PRETREND_VCOV}; got {self.pretrend_vcov!r}",
            )
        if not (float(self.fe_tol) > 0.0):
            raise ConfigurationError("fe_tol must be positive.")
        if int(self.fe_max_iter) < 1:
            raise ConfigurationError("fe_max_iter must be at least 1.")

    @property
    def z_value(self) -> float:
        return normal_critical_value(self.ci_level)


class BaseEstimator(ABC):
    """Abstract base class for all `didimpute` estimators.

    Principles
    ----------
    1) All linear algebra goes through `core.linalg`.
    2) FE absorption goes through `core.fe`.
    3) Results are returned in an `EstimationResult` (or a subclass).
    """

    def __init__(self) -> None:
        self._results: EstimationResult | None = None

    @abstractmethod
    def fit(
        self, *args: Any, **kwargs: Any,
    ) -> EstimationResult:  # pragma: no cover - abstract
        """Fit the estimator and return EstimationResult (abstract)."""
        ...

    # -- convenience accessors ----------------------------------------
    @property
    def results(self) -> EstimationResult:
        if self._results is None:
            msg = "Model has not been fitted yet. Call .fit() first."
            raise RuntimeError(msg)
        return self._results

    @property
    def params(self) -> pd.Series:
        return self.results.params

    @property
    def se(self) -> pd.Series | None:
        return self.results.se

    @property
    def n_obs(self) -> int | None:
        return self.results.n_obs
