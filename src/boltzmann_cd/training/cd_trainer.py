"""
Contrastive Divergence (CD-k) and Persistent Contrastive Divergence (PCD-k).

Both trainers estimate the log-likelihood gradient of an RBM as the
difference between data-driven (positive phase) and model-driven (negative
phase) statistics:

    dW = <v h^T>_data - <v h^T>_model
    da = <v>_data - <v>_model
    db = <h>_data - <h>_model

The model statistics come from k steps of alternating Gibbs sampling. CD-k
starts the chain from the positive phase of every batch; PCD-k keeps one
chain per batch slot alive across batches (Tieleman, 2008).
"""

from typing import Optional, Sequence, Tuple, Union

import numpy as np
import torch

from boltzmann_cd.training.base_trainer import BaseCDTrainer
from boltzmann_cd.utils.stability import nan_check


BatchLike = Union[torch.Tensor, np.ndarray, Sequence]


class GibbsTrainer(BaseCDTrainer):
    """
    Per-batch gradient accumulation loop shared by CD-k and PCD-k.

    Subclasses only decide where the negative chain of each slot starts
    (_negative_seed) and what survives the end of the chain (_end_of_chain).

    Args:
        k: Number of Gibbs steps in the negative phase (k >= 1)
    """

    def __init__(self, k: int = 1):
        if k < 1:
            raise ValueError(f"CD-{k} is not a valid training method, k must be >= 1")
        super().__init__()
        self.k = k

    def _as_batch(self, batch: BatchLike, rbm) -> torch.Tensor:
        """Check the batch against rbm and return it as a (n, num_visible) tensor."""
        if isinstance(batch, torch.Tensor):
            v1 = batch
        elif isinstance(batch, np.ndarray):
            # Reversed or strided views cannot be shared with torch
            v1 = torch.from_numpy(np.ascontiguousarray(batch))
        else:
            samples = [torch.as_tensor(sample) for sample in batch]
            for sample in samples:
                if sample.numel() != rbm.num_visible:
                    raise ValueError(
                        f"The size of the training sample ({sample.numel()}) "
                        f"must match visible units ({rbm.num_visible})"
                    )
            v1 = torch.stack([s.reshape(-1) for s in samples]) if samples else torch.empty(0)

        if v1.dim() == 1 and v1.numel() == 0:
            raise ValueError("Empty batch")
        if v1.dim() != 2:
            raise ValueError(f"Expected a batch of shape (n, {rbm.num_visible}), got {tuple(v1.shape)}")

        n_samples = v1.shape[0]
        if n_samples == 0:
            raise ValueError("Empty batch")
        if n_samples > rbm.batch_size:
            raise ValueError(f"Invalid size: batch of {n_samples} exceeds batch_size={rbm.batch_size}")
        if v1.shape[1] != rbm.num_visible:
            raise ValueError(
                f"The size of the training sample ({v1.shape[1]}) "
                f"must match visible units ({rbm.num_visible})"
            )

        return v1.to(dtype=rbm.dtype, device=rbm.W.device)

    @staticmethod
    def _as_slots(slots: Optional[Sequence[int]], n_samples: int, rbm) -> torch.Tensor:
        """Chain index of every batch position, checked against the model's capacity."""
        if slots is None:
            return torch.arange(n_samples)

        slots = torch.as_tensor(slots, dtype=torch.long).reshape(-1)
        if slots.numel() != n_samples:
            raise ValueError(f"Got {slots.numel()} slots for a batch of {n_samples}")
        if slots.numel() and (slots.min() < 0 or slots.max() >= rbm.batch_size):
            raise ValueError(f"Slots must lie in [0, {rbm.batch_size}), got {slots.tolist()}")
        if torch.unique(slots).numel() != slots.numel():
            raise ValueError(f"Slots must be unique, got {slots.tolist()}")
        return slots

    def _prepare(self, rbm):
        """Hook: allocate or check trainer-owned chain state."""

    def _negative_seed(
        self,
        slots: torch.Tensor,
        h1_a: torch.Tensor,
        h1_s: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Hook: hidden state the negative chain starts from.

        Args:
            slots: Chain index of each sample
            h1_a: Positive phase hidden probabilities
            h1_s: Positive phase hidden samples

        Returns:
            (h_a, h_s) fed to the first visible reconstruction
        """
        raise NotImplementedError

    def _end_of_chain(self, slots: torch.Tensor, h2_a: torch.Tensor, h2_s: torch.Tensor):
        """Hook: called with the hidden state reached after k steps."""

    @torch.no_grad()
    def train_batch(
        self,
        batch: BatchLike,
        rbm,
        slots: Optional[Sequence[int]] = None,
    ) -> float:
        """
        Train rbm on one minibatch and update its parameters in place.

        Args:
            batch: n <= rbm.batch_size samples of rbm.num_visible values each
            rbm: Model to train (see boltzmann_cd.models.RBM)
            slots: Chain index of each sample. Defaults to its batch position.
                Only meaningful for persistent chains.

        Returns:
            Reconstruction error: RMS of the mean visible bias gradient

        Raises:
            ValueError: on a malformed batch, before any state is modified
            NumericalInstabilityError: if gradients or parameters become NaN/Inf
        """
        v1 = self._as_batch(batch, rbm)
        n_samples = v1.shape[0]
        slots = self._as_slots(slots, n_samples, rbm)

        self._init_buffers(rbm)
        self._prepare(rbm)
        self._zero_gradients(rbm)

        # Positive phase, the clamped data drives the hidden units
        h1_a, h1_s = rbm.activate_hidden(v1, v1)

        # Negative phase, first reconstruction
        seed_a, seed_s = self._negative_seed(slots, h1_a, h1_s)
        v2_a, v2_s = rbm.activate_visible(seed_a, seed_s)
        h2_a, h2_s = rbm.activate_hidden(v2_a, v2_s)

        for _ in range(1, self.k):
            v2_a, v2_s = rbm.activate_visible(h2_a, h2_s)
            h2_a, h2_s = rbm.activate_hidden(v2_a, v2_s)

        self._end_of_chain(slots, h2_a, h2_s)

        # Accumulate sample by sample, in batch order
        for i in range(n_samples):
            self.w_grad += torch.outer(v1[i], h1_a[i]) - torch.outer(v2_a[i], h2_a[i])
            self.vbias_grad += v1[i] - v2_a[i]
            self.hbias_grad += h1_a[i] - h2_a[i]

            if rbm.sparsity_enabled:
                self.q_batch += float(h2_a[i].sum())

        # Keep only the mean of the gradients
        self.w_grad /= n_samples
        self.vbias_grad /= n_samples
        self.hbias_grad /= n_samples

        # Mean activation probability of the hidden units
        if rbm.sparsity_enabled:
            self.q_batch /= n_samples * rbm.num_hidden

        nan_check(
            self.w_grad, self.vbias_grad, self.hbias_grad,
            names=('w_grad', 'vbias_grad', 'hbias_grad'),
        )

        self.update_weights(rbm)

        return self.reconstruction_error()


class CDTrainer(GibbsTrainer):
    """
    Contrastive Divergence (CD-k).

    The negative chain restarts from the positive phase of every sample.

    Example:
        trainer = CDTrainer(k=1)
        for batch in batches:
            error = trainer.train_batch(batch, rbm)
    """

    def _negative_seed(self, slots, h1_a, h1_s):
        return h1_a, h1_s


class PersistentCDTrainer(GibbsTrainer):
    """
    Persistent Contrastive Divergence (PCD-k).

    One hidden chain state is kept per batch slot (up to rbm.batch_size) and
    carried from the end of one batch's chain to the start of the next. A
    slot is seeded from its own positive phase the first time it is used.

    Batches must present samples in a consistent slot assignment for the
    chains to keep following the same particles; pass `slots` explicitly if
    batch positions do not map to chains one to one.

    Args:
        k: Number of Gibbs steps per batch (k >= 1)
    """

    def __init__(self, k: int = 1):
        super().__init__(k)
        self.p_h_a: Optional[torch.Tensor] = None
        self.p_h_s: Optional[torch.Tensor] = None
        self._seeded: Optional[torch.Tensor] = None

    def _prepare(self, rbm):
        shape = (rbm.batch_size, rbm.num_hidden)

        if self.p_h_a is None:
            kwargs = dict(dtype=rbm.W.dtype, device=rbm.W.device)
            self.p_h_a = torch.zeros(shape, **kwargs)
            self.p_h_s = torch.zeros(shape, **kwargs)
            self._seeded = torch.zeros(rbm.batch_size, dtype=torch.bool)
        elif tuple(self.p_h_a.shape) != shape:
            raise ValueError(
                f"Persistent chains were allocated for {tuple(self.p_h_a.shape)} "
                f"(batch_size, num_hidden), got {shape}"
            )

    def _negative_seed(self, slots, h1_a, h1_s):
        fresh = ~self._seeded[slots]
        if fresh.any():
            new_slots = slots[fresh]
            self.p_h_a[new_slots] = h1_a[fresh]
            self.p_h_s[new_slots] = h1_s[fresh]
            self._seeded[new_slots] = True

        return self.p_h_a[slots], self.p_h_s[slots]

    def _end_of_chain(self, slots, h2_a, h2_s):
        self.p_h_a[slots] = h2_a
        self.p_h_s[slots] = h2_s

    @property
    def num_chains(self) -> int:
        """Number of chains seeded so far."""
        if self._seeded is None:
            return 0
        return int(self._seeded.sum())

    def reset_chains(self):
        """Drop the persistent chains; the next batch seeds them again."""
        self.p_h_a = None
        self.p_h_s = None
        self._seeded = None

    def reset(self):
        super().reset()
        self.reset_chains()
