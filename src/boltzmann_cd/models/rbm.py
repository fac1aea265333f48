"""
Restricted Boltzmann Machine

A two-layer undirected model with visible units v and hidden units h and no
intra-layer connections. The energy of a joint configuration is

    E(v, h) = -a^T v - b^T h - v^T W h

with W of shape (num_visible, num_hidden), a the visible biases and b the
hidden biases (binary units; gaussian visible units replace -a^T v with
||v - a||^2 / 2).

The model only owns its parameters, its hyperparameters and the two Gibbs
half-steps. Training (gradient estimation, momentum, sparsity and weight
decay) lives in boltzmann_cd.training.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F


class DecayType(str, Enum):
    """Weight decay applied by the trainers.

    The "full" variants also decay the biases.
    """

    NONE = 'none'
    L1 = 'l1'
    L1_FULL = 'l1_full'
    L2 = 'l2'
    L2_FULL = 'l2_full'

    @property
    def enabled(self) -> bool:
        return self is not DecayType.NONE

    @property
    def is_l1(self) -> bool:
        return self in (DecayType.L1, DecayType.L1_FULL)

    @property
    def is_l2(self) -> bool:
        return self in (DecayType.L2, DecayType.L2_FULL)

    @property
    def is_full(self) -> bool:
        return self in (DecayType.L1_FULL, DecayType.L2_FULL)


class UnitType(str, Enum):
    """Type of a layer's units."""

    BINARY = 'binary'
    GAUSSIAN = 'gaussian'


@dataclass
class RBMConfig:
    """Configuration of an RBM.

    Sizes, unit types and the momentum/sparsity/decay switches are fixed once
    the model is built. The hyperparameters are copied onto the model and may
    be changed between batches.
    """

    num_visible: int
    num_hidden: int
    batch_size: int = 10

    momentum_enabled: bool = False
    sparsity_enabled: bool = False
    decay: DecayType = DecayType.NONE

    visible_unit: UnitType = UnitType.BINARY
    hidden_unit: UnitType = UnitType.BINARY
    stochastic: bool = True

    learning_rate: float = 0.1
    momentum: float = 0.5
    weight_cost: float = 0.0002
    sparsity_target: float = 0.01
    sparsity_cost: float = 1.0
    decay_rate: float = 0.99

    init_std: float = 0.01
    dtype: torch.dtype = torch.float32
    seed: Optional[int] = None

    def __post_init__(self):
        self.decay = DecayType(self.decay)
        self.visible_unit = UnitType(self.visible_unit)
        self.hidden_unit = UnitType(self.hidden_unit)
        self.validate()

    def validate(self):
        if self.num_visible <= 0:
            raise ValueError(f"Invalid number of visible units: {self.num_visible}")
        if self.num_hidden <= 0:
            raise ValueError(f"Invalid number of hidden units: {self.num_hidden}")
        if self.batch_size <= 0:
            raise ValueError(f"Invalid batch size: {self.batch_size}")
        if self.hidden_unit is not UnitType.BINARY:
            raise ValueError(f"Unsupported hidden unit type: {self.hidden_unit.value}")
        if not 0.0 <= self.momentum <= 1.0:
            raise ValueError(f"Invalid momentum value: {self.momentum}")
        if not 0.0 <= self.decay_rate <= 1.0:
            raise ValueError(f"Invalid decay rate: {self.decay_rate}")


class RBM(nn.Module):
    """
    Restricted Boltzmann Machine with binary hidden units and binary or
    gaussian visible units.

    The Gibbs half-steps allocate and return fresh tensors, so the caller
    owns every intermediate state of a chain. Both accept a single sample
    (1-D) or a batch of row vectors (2-D).

    Args:
        config: RBMConfig describing sizes, switches and hyperparameters

    Example:
        rbm = RBM(RBMConfig(num_visible=784, num_hidden=500, momentum_enabled=True))
        h_a, h_s = rbm.activate_hidden(v, v)
        v_a, v_s = rbm.activate_visible(h_a, h_s)
    """

    def __init__(self, config: RBMConfig):
        super().__init__()
        self.config = config

        self.num_visible = config.num_visible
        self.num_hidden = config.num_hidden
        self.batch_size = config.batch_size
        self.momentum_enabled = config.momentum_enabled
        self.sparsity_enabled = config.sparsity_enabled
        self.decay = config.decay
        self.visible_unit = config.visible_unit
        self.hidden_unit = config.hidden_unit
        self.stochastic = config.stochastic

        self.learning_rate = config.learning_rate
        self.momentum = config.momentum
        self.weight_cost = config.weight_cost
        self.sparsity_target = config.sparsity_target
        self.sparsity_cost = config.sparsity_cost
        self.decay_rate = config.decay_rate

        self.generator = torch.Generator()
        if config.seed is not None:
            self.generator.manual_seed(config.seed)

        self._init_parameters()

    def _init_parameters(self):
        """Small random weights, zero biases."""
        dtype = self.config.dtype
        w = torch.randn(
            self.num_visible, self.num_hidden, generator=self.generator, dtype=dtype
        ) * self.config.init_std

        # Updated in place by the trainers, never through autograd
        self.W = nn.Parameter(w, requires_grad=False)
        self.a = nn.Parameter(torch.zeros(self.num_visible, dtype=dtype), requires_grad=False)
        self.b = nn.Parameter(torch.zeros(self.num_hidden, dtype=dtype), requires_grad=False)

    @property
    def dtype(self) -> torch.dtype:
        return self.W.dtype

    def _sample_bernoulli(self, probs: torch.Tensor) -> torch.Tensor:
        if not self.stochastic:
            return probs.clone()
        # The generator lives on the CPU whatever the model's device
        samples = torch.bernoulli(probs.cpu(), generator=self.generator)
        return samples.to(probs.device)

    def _sample_gaussian(self, means: torch.Tensor) -> torch.Tensor:
        if not self.stochastic:
            return means.clone()
        noise = torch.randn(means.shape, generator=self.generator, dtype=means.dtype)
        return means + noise.to(means.device)

    @torch.no_grad()
    def activate_hidden(
        self,
        v_a: torch.Tensor,
        v_s: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Sample the hidden layer given the visible layer.

        Args:
            v_a: Visible activation probabilities (drive the hidden units)
            v_s: Visible sampled states

        Returns:
            (h_a, h_s): hidden probabilities and sampled states
        """
        h_a = torch.sigmoid(self.b + v_a @ self.W)
        h_s = self._sample_bernoulli(h_a)
        return h_a, h_s

    @torch.no_grad()
    def activate_visible(
        self,
        h_a: torch.Tensor,
        h_s: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Sample the visible layer given the hidden layer.

        The reconstruction is driven by the sampled hidden states.

        Args:
            h_a: Hidden activation probabilities
            h_s: Hidden sampled states

        Returns:
            (v_a, v_s): visible probabilities (means for gaussian units) and samples
        """
        x = self.a + h_s @ self.W.T

        if self.visible_unit is UnitType.GAUSSIAN:
            v_a = x
            v_s = self._sample_gaussian(v_a)
        else:
            v_a = torch.sigmoid(x)
            v_s = self._sample_bernoulli(v_a)

        return v_a, v_s

    @torch.no_grad()
    def hidden_probabilities(self, v: torch.Tensor) -> torch.Tensor:
        """Features of v: the hidden activation probabilities."""
        return self.activate_hidden(v, v)[0]

    @torch.no_grad()
    def reconstruct(self, v: torch.Tensor, mean_field: bool = False) -> torch.Tensor:
        """
        One up-down pass, returns the visible probabilities.

        With mean_field the visible layer is driven by the hidden
        probabilities instead of sampled states. Nothing is sampled, so the
        generator is left untouched.
        """
        if not mean_field:
            h_a, h_s = self.activate_hidden(v, v)
            v_a, _ = self.activate_visible(h_a, h_s)
            return v_a

        h_a = torch.sigmoid(self.b + v @ self.W)
        x = self.a + h_a @ self.W.T
        if self.visible_unit is UnitType.GAUSSIAN:
            return x
        return torch.sigmoid(x)

    @torch.no_grad()
    def free_energy(self, v: torch.Tensor) -> torch.Tensor:
        """
        Free energy F(v) = -log sum_h exp(-E(v, h)).

        Args:
            v: Visible vector or batch of row vectors

        Returns:
            Free energy per sample (scalar tensor for a single sample)
        """
        v = v.to(self.dtype)
        x = self.b + v @ self.W
        hidden_term = F.softplus(x).sum(dim=-1)

        if self.visible_unit is UnitType.GAUSSIAN:
            visible_term = 0.5 * ((v - self.a) ** 2).sum(dim=-1)
        else:
            visible_term = -(v * self.a).sum(dim=-1)

        return visible_term - hidden_term

    @torch.no_grad()
    def init_visible_bias(self, data: Union[torch.Tensor, np.ndarray]):
        """
        Initialize the visible biases from the training data.

        Binary units get log(p / (1 - p)) where p is the proportion of
        training vectors in which the unit is on. Gaussian units get the
        data mean.
        """
        data = torch.as_tensor(data, dtype=self.dtype).reshape(-1, self.num_visible)
        mean = data.mean(dim=0)

        if self.visible_unit is UnitType.GAUSSIAN:
            self.a.copy_(mean)
        else:
            p = mean.clamp(1e-3, 1.0 - 1e-3)
            self.a.copy_(torch.log(p / (1.0 - p)))

    def extra_repr(self) -> str:
        return (
            f"num_visible={self.num_visible}, num_hidden={self.num_hidden}, "
            f"visible={self.visible_unit.value}, momentum={self.momentum_enabled}, "
            f"sparsity={self.sparsity_enabled}, decay={self.decay.value}"
        )
