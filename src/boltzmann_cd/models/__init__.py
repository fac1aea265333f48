"""
Models for boltzmann_cd

Key classes:
- RBM: Restricted Boltzmann Machine exposing the Gibbs half-steps
  (activate_hidden / activate_visible) the CD trainers drive
- RBMConfig: sizes, regularization switches and hyperparameters
- DecayType: none / L1 / L1-full / L2 / L2-full weight decay
- UnitType: binary or gaussian units
"""

from .rbm import RBM, RBMConfig, DecayType, UnitType

__all__ = [
    "RBM",
    "RBMConfig",
    "DecayType",
    "UnitType",
]
