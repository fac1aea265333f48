"""Utility functions for boltzmann_cd."""

from .data import flatten_samples, get_dataloader
from .stability import NumericalInstabilityError, nan_check

__all__ = [
    "flatten_samples",
    "get_dataloader",
    "NumericalInstabilityError",
    "nan_check",
]
