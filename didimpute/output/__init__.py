# didimpute/output/__init__.py
"""Output and visualization module for imputation results."""
from .plots import event_study_plot
from .summary import modelsummary, summary

__all__ = [
    "event_study_plot",
    "modelsummary",
    "summary",
]
