# didimpute/sim/__init__.py
"""Simulated staggered-adoption panels."""
from .dgp import simulate_staggered_panel, simulate_two_by_two

__all__ = ["simulate_staggered_panel", "simulate_two_by_two"]
