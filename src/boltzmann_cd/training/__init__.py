"""
Training for Restricted Boltzmann Machines.

Key classes:
- BaseCDTrainer: gradient/regularization core (momentum, sparsity, weight decay)
- CDTrainer: Contrastive Divergence, chains restart from the data every batch
- PersistentCDTrainer: Persistent CD, one chain per batch slot kept across batches
- RBMTrainer: epoch loop with progress reporting
"""

from boltzmann_cd.training.base_trainer import BaseCDTrainer
from boltzmann_cd.training.cd_trainer import (
    GibbsTrainer,
    CDTrainer,
    PersistentCDTrainer,
)
from boltzmann_cd.training.rbm_trainer import (
    RBMTrainer,
    create_rbm_setup,
)

__all__ = [
    'BaseCDTrainer',
    'GibbsTrainer',
    'CDTrainer',
    'PersistentCDTrainer',
    'RBMTrainer',
    'create_rbm_setup',
]
