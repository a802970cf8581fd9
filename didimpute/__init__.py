"""didimpute: imputation difference-in-differences.

This package implements the Borusyak-Jaravel-Spiess (2021) imputation
estimator for staggered adoption designs, with conservative analytic
standard errors, event-study horizons and pre-trend tests.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "FEOLS",
    "BaseEstimator",
    "ConfigurationError",
    "DIDImputeError",
    "DesignMatrixError",
    "EstimationResult",
    "FirstStageError",
    "ImputationConfig",
    "ImputationDID",
    "ImputationResult",
    "SingularSystemError",
    "did_imputation",
    "event_study_plot",
    "modelsummary",
    "summary",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("didimpute.estimators.base", "BaseEstimator"),
    "EstimationResult": ("didimpute.estimators.base", "EstimationResult"),
    "ImputationConfig": ("didimpute.estimators.base", "ImputationConfig"),
    "FEOLS": ("didimpute.estimators.feols", "FEOLS"),
    "ImputationDID": ("didimpute.estimators.imputation", "ImputationDID"),
    "ImputationResult": ("didimpute.estimators.imputation", "ImputationResult"),
    "did_imputation": ("didimpute.estimators.imputation", "did_imputation"),
    "DIDImputeError": ("didimpute.exceptions", "DIDImputeError"),
    "ConfigurationError": ("didimpute.exceptions", "ConfigurationError"),
    "DesignMatrixError": ("didimpute.exceptions", "DesignMatrixError"),
    "FirstStageError": ("didimpute.exceptions", "FirstStageError"),
    "SingularSystemError": ("didimpute.exceptions", "SingularSystemError"),
    "summary": ("didimpute.output.summary", "summary"),
    "modelsummary": ("didimpute.output.summary", "modelsummary"),
    "event_study_plot": ("didimpute.output.plots", "event_study_plot"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'didimpute' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
