"""Exception hierarchy for didimpute.

All errors raised deliberately by the package derive from
:class:`DIDImputeError`, so callers can catch every estimation failure with a
single ``except`` clause while still distinguishing configuration mistakes from
numerical failures.

Exception Hierarchy
-------------------
DIDImputeError (base)
    ConfigurationError
        Invalid columns, formulas, weights, horizons or pre-trend requests.
    DesignMatrixError
        Sparse design columns cannot be matched to the fitted model.
    SingularSystemError
        Normal equations of the untreated design are singular.
    FirstStageError
        The no-treatment model cannot be fitted.
"""

# didimpute/exceptions.py
from __future__ import annotations

__all__ = [
    "ConfigurationError",
    "DIDImputeError",
    "DesignMatrixError",
    "FirstStageError",
    "SingularSystemError",
]


class DIDImputeError(Exception):
    """Base exception for all didimpute errors."""


class ConfigurationError(DIDImputeError, ValueError):
    """Invalid estimator inputs detected before any estimation work.

    Raised for unknown column names, malformed first-stage formulas, invalid
    observation weights, duplicated ``(unit, time)`` keys, and horizon or
    pre-trend values that do not occur among the finite event times.
    """


class DesignMatrixError(DIDImputeError, RuntimeError):
    """Design columns cannot be reconciled with the retained first-stage levels."""


class SingularSystemError(DIDImputeError, ArithmeticError):
    """Singular or ill-conditioned normal equations for a projection.

    Attributes
    ----------
    term : str or None
        Label of the treatment-weight vector whose projection failed, when known.
    """

    def __init__(self, message: str, *, term: str | None = None) -> None:
        super().__init__(message)
        self.term = term


class FirstStageError(DIDImputeError, RuntimeError):
    """The fixed-effects model on untreated observations could not be fitted."""
