# didimpute/utils/__init__.py
"""Utility functions module."""
from .formula import FormulaParser, first_stage_formula
from .preprocess import PreparedPanel, prepare_panel

__all__ = [
    "FormulaParser",
    "PreparedPanel",
    "first_stage_formula",
    "prepare_panel",
]
