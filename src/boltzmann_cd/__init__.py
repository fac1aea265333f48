"""
boltzmann_cd: Contrastive Divergence training for Restricted Boltzmann Machines

This package provides:
1. RBM - binary/gaussian visible, binary hidden RBM with Gibbs half-steps
2. CDTrainer - CD-k, negative chains start from the data every batch
3. PersistentCDTrainer - PCD-k, negative chains persist across batches
4. RBMTrainer - epoch loop reporting reconstruction error and free energy

Every trainer update applies, in order:
- Momentum: exponential moving average of the gradients
- Sparsity: penalty pulling the mean hidden activation toward a target
- Weight decay: L1 or L2, on the biases too in the "full" variants
- A NaN/Inf check that stops training on corrupted parameters
"""

__version__ = "0.1.0"

from boltzmann_cd.models import (
    RBM,
    RBMConfig,
    DecayType,
    UnitType,
)
from boltzmann_cd.training import (
    BaseCDTrainer,
    CDTrainer,
    PersistentCDTrainer,
    RBMTrainer,
    create_rbm_setup,
)
from boltzmann_cd.utils import (
    NumericalInstabilityError,
    nan_check,
    flatten_samples,
    get_dataloader,
)

__all__ = [
    # Models
    "RBM",
    "RBMConfig",
    "DecayType",
    "UnitType",
    # Training
    "BaseCDTrainer",
    "CDTrainer",
    "PersistentCDTrainer",
    "RBMTrainer",
    "create_rbm_setup",
    # Utils
    "NumericalInstabilityError",
    "nan_check",
    "flatten_samples",
    "get_dataloader",
]
