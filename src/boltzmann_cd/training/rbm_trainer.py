"""
Epoch-level training loop for RBMs.

Drives a CD-k or PCD-k trainer over a dataloader, one train_batch call per
minibatch, and records the reconstruction error and free energy per epoch.
"""

from typing import Dict, List, Optional, Tuple

import torch
from torch.utils.data import DataLoader
from tqdm import tqdm

from boltzmann_cd.models.rbm import RBM, RBMConfig
from boltzmann_cd.training.cd_trainer import CDTrainer, GibbsTrainer, PersistentCDTrainer


class RBMTrainer:
    """
    Trainer that runs a Contrastive Divergence trainer over whole epochs.

    Args:
        rbm: Model to train
        trainer: CDTrainer or PersistentCDTrainer owning the gradient state
        device: Device batches are moved to
    """

    def __init__(
        self,
        rbm: RBM,
        trainer: GibbsTrainer,
        device: str = 'cpu',
    ):
        self.rbm = rbm
        self.trainer = trainer
        self.device = device
        self.step_count = 0
        self.epoch_count = 0

        self.metrics_history: List[Dict[str, float]] = []

    @staticmethod
    def _unpack(batch_data) -> torch.Tensor:
        # TensorDataset yields (batch,), labelled datasets (batch, labels)
        if isinstance(batch_data, (list, tuple)):
            return batch_data[0]
        return batch_data

    def train_step(self, batch: torch.Tensor) -> float:
        """Train on one minibatch, returns its reconstruction error."""
        batch = batch.to(self.device)
        error = self.trainer.train_batch(batch, self.rbm)
        self.step_count += 1
        return error

    def train_epoch(self, dataloader: DataLoader, epoch: Optional[int] = None) -> float:
        """
        Train for one epoch.

        Args:
            dataloader: Training dataloader
            epoch: Epoch number shown in the progress bar

        Returns:
            Average reconstruction error for the epoch
        """
        self.epoch_count += 1
        epoch = self.epoch_count if epoch is None else epoch

        total_error = 0.0
        num_batches = 0

        pbar = tqdm(dataloader, desc=f"Epoch {epoch}")
        for batch_data in pbar:
            error = self.train_step(self._unpack(batch_data))
            total_error += error
            num_batches += 1

            pbar.set_postfix({
                'error': f"{error:.4f}",
                'avg': f"{total_error / num_batches:.4f}",
            })

        if num_batches == 0:
            raise ValueError("Empty dataloader")

        return total_error / num_batches

    @torch.no_grad()
    def evaluate(self, dataloader: DataLoader) -> Dict[str, float]:
        """
        Mean free energy and reconstruction error of a dataset.

        Reconstructions are mean-field, so neither the model (its generator
        included) nor the trainer is modified.
        """
        total_free_energy = 0.0
        total_error = 0.0
        total_samples = 0

        for batch_data in dataloader:
            v = self._unpack(batch_data).to(self.device).to(self.rbm.dtype)
            v = v.reshape(v.shape[0], -1)

            total_free_energy += self.rbm.free_energy(v).sum().item()
            diff = v - self.rbm.reconstruct(v, mean_field=True)
            total_error += (diff * diff).mean(dim=-1).sqrt().sum().item()
            total_samples += v.shape[0]

        if total_samples == 0:
            return {'free_energy': 0.0, 'recon_error': 0.0, 'samples': 0}

        return {
            'free_energy': total_free_energy / total_samples,
            'recon_error': total_error / total_samples,
            'samples': total_samples,
        }

    def train(
        self,
        train_loader: DataLoader,
        num_epochs: int,
        val_loader: Optional[DataLoader] = None,
        log_every: int = 1,
    ) -> List[Dict[str, float]]:
        """
        Full training loop.

        Args:
            train_loader: Training dataloader
            num_epochs: Number of epochs to train
            val_loader: Optional validation dataloader
            log_every: Log every N epochs

        Returns:
            Training history (list of dicts with 'epoch', 'recon_error',
            'free_energy', 'step_count' and validation metrics if any)
        """
        history = []

        method = 'PCD' if isinstance(self.trainer, PersistentCDTrainer) else 'CD'
        print(f"\nTraining {self.rbm.num_visible}x{self.rbm.num_hidden} RBM "
              f"with {method}-{self.trainer.k} for {num_epochs} epochs")
        print(f"Momentum: {self.rbm.momentum_enabled}, Sparsity: {self.rbm.sparsity_enabled}, "
              f"Decay: {self.rbm.decay.value}")

        for _ in range(num_epochs):
            recon_error = self.train_epoch(train_loader)

            eval_loader = val_loader if val_loader is not None else train_loader
            eval_metrics = self.evaluate(eval_loader)
            free_energy = eval_metrics['free_energy']

            metrics = {
                'epoch': self.epoch_count,
                'recon_error': recon_error,
                'free_energy': free_energy,
                'step_count': self.step_count,
            }

            if val_loader is not None:
                metrics['val_recon_error'] = eval_metrics['recon_error']

            if self.epoch_count % log_every == 0:
                log_str = f"Epoch {self.epoch_count}/{num_epochs} - Recon Error: {recon_error:.5f}"
                log_str += f", Free Energy: {free_energy:.4f}"
                if 'val_recon_error' in metrics:
                    log_str += f", Val Recon Error: {metrics['val_recon_error']:.5f}"
                print(log_str)

            history.append(metrics)
            self.metrics_history.append(metrics)

        return history


def create_rbm_setup(
    num_visible: int,
    num_hidden: int,
    k: int = 1,
    persistent: bool = False,
    device: str = 'cpu',
    **config_kwargs,
) -> Tuple[RBM, GibbsTrainer, RBMTrainer]:
    """
    Convenience function to create a model, its CD trainer and the epoch loop.

    Args:
        num_visible: Number of visible units
        num_hidden: Number of hidden units
        k: Gibbs steps per batch
        persistent: Use PCD-k instead of CD-k
        device: Device to use
        **config_kwargs: Remaining RBMConfig fields

    Returns:
        Tuple of (rbm, trainer, rbm_trainer)
    """
    config = RBMConfig(num_visible=num_visible, num_hidden=num_hidden, **config_kwargs)
    rbm = RBM(config).to(device)

    trainer = PersistentCDTrainer(k=k) if persistent else CDTrainer(k=k)
    rbm_trainer = RBMTrainer(rbm, trainer, device=device)

    return rbm, trainer, rbm_trainer
