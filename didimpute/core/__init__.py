# didimpute/core/__init__.py
"""Core computational modules for didimpute."""
from . import design, fe, linalg, variance

__all__ = ["design", "fe", "linalg", "variance"]
