"""
Gradient and regularization core shared by the Contrastive Divergence trainers.

Given the batch-mean gradients accumulated by a sampling driver, applies

    inc_{t+1} = momentum * inc_t + (1 - momentum) * grad        (if momentum)
    q_t       = decay_rate * q_old + (1 - decay_rate) * q_batch  (if sparsity)
    penalty   = sparsity_cost * (q_t - sparsity_target)

    W += lr * (fgrad_W - decay(W) - penalty)
    b += lr * (fgrad_b - decay(b) - penalty)   decay(b) only in *_FULL modes
    a += lr * (fgrad_a - decay(a))             decay(a) only in *_FULL modes

where decay(X) is weight_cost * |X| (L1) or weight_cost * X (L2) and fgrad
is the momentum increment when momentum is enabled, the raw gradient
otherwise.
"""

from typing import Optional

import torch

from boltzmann_cd.models.rbm import DecayType
from boltzmann_cd.utils.stability import nan_check


class BaseCDTrainer:
    """
    Holds the gradient accumulators and the optional momentum and sparsity
    state of one (model, trainer) pair.

    Buffers are allocated on the first batch from the model's sizes. Momentum
    increments stay None for models trained without momentum.

    Not thread-safe: a trainer and its model must be driven by one thread.
    """

    def __init__(self):
        # Gradients, reset every batch
        self.w_grad: Optional[torch.Tensor] = None
        self.vbias_grad: Optional[torch.Tensor] = None
        self.hbias_grad: Optional[torch.Tensor] = None

        # Momentum increments
        self.w_inc: Optional[torch.Tensor] = None
        self.a_inc: Optional[torch.Tensor] = None
        self.b_inc: Optional[torch.Tensor] = None

        # Sparsity: running mean activation probability of the hidden units
        self.q_old = 0.0
        self.q_batch = 0.0
        self.q_t = 0.0

        self.step_count = 0

    def _init_buffers(self, rbm):
        """Allocate (or check) the per-parameter buffers for rbm."""
        shape = (rbm.num_visible, rbm.num_hidden)

        if self.w_grad is not None and tuple(self.w_grad.shape) != shape:
            raise ValueError(
                f"Trainer was set up for a {tuple(self.w_grad.shape)} RBM, got {shape}"
            )

        kwargs = dict(dtype=rbm.W.dtype, device=rbm.W.device)
        if self.w_grad is None:
            self.w_grad = torch.zeros(shape, **kwargs)
            self.vbias_grad = torch.zeros(rbm.num_visible, **kwargs)
            self.hbias_grad = torch.zeros(rbm.num_hidden, **kwargs)

        # Momentum may be switched on after the first batch
        if rbm.momentum_enabled and self.w_inc is None:
            self.w_inc = torch.zeros(shape, **kwargs)
            self.a_inc = torch.zeros(rbm.num_visible, **kwargs)
            self.b_inc = torch.zeros(rbm.num_hidden, **kwargs)

    def _zero_gradients(self, rbm):
        self._init_buffers(rbm)
        self.w_grad.zero_()
        self.vbias_grad.zero_()
        self.hbias_grad.zero_()

        if rbm.sparsity_enabled:
            self.q_batch = 0.0

    def reset(self):
        """Forget momentum increments and the sparsity running average."""
        for inc in (self.w_inc, self.a_inc, self.b_inc):
            if inc is not None:
                inc.zero_()
        self.q_old = 0.0
        self.q_batch = 0.0
        self.q_t = 0.0
        self.step_count = 0

    @staticmethod
    def _decay_term(param: torch.Tensor, decay: DecayType, weight_cost: float):
        if decay.is_l1:
            return weight_cost * torch.abs(param)
        if decay.is_l2:
            return weight_cost * param
        return None

    @staticmethod
    def _apply(param, fgrad, learning_rate, decay_term=None, penalty=0.0):
        """param += learning_rate * (fgrad - decay_term - penalty)"""
        delta = fgrad
        if decay_term is not None:
            delta = delta - decay_term
        if penalty != 0.0:
            delta = delta - penalty
        param.add_(learning_rate * delta)

    @torch.no_grad()
    def update_weights(self, rbm):
        """
        Apply the accumulated (batch-mean) gradients to rbm in place.

        Args:
            rbm: Model exposing W, a, b and the training hyperparameters

        Raises:
            NumericalInstabilityError: if W, a or b hold NaN/Inf afterwards
        """
        learning_rate = rbm.learning_rate

        if rbm.momentum_enabled:
            momentum = rbm.momentum
            self.w_inc.mul_(momentum).add_(self.w_grad, alpha=1 - momentum)
            self.a_inc.mul_(momentum).add_(self.vbias_grad, alpha=1 - momentum)
            self.b_inc.mul_(momentum).add_(self.hbias_grad, alpha=1 - momentum)

            w_fgrad, a_fgrad, b_fgrad = self.w_inc, self.a_inc, self.b_inc
        else:
            w_fgrad, a_fgrad, b_fgrad = self.w_grad, self.vbias_grad, self.hbias_grad

        # Penalty applied to the weights and the hidden biases
        h_penalty = 0.0
        if rbm.sparsity_enabled:
            decay_rate = rbm.decay_rate
            self.q_t = decay_rate * self.q_old + (1.0 - decay_rate) * self.q_batch
            h_penalty = rbm.sparsity_cost * (self.q_t - rbm.sparsity_target)

        decay = rbm.decay
        weight_cost = rbm.weight_cost

        self._apply(
            rbm.W, w_fgrad, learning_rate,
            self._decay_term(rbm.W, decay, weight_cost),
            h_penalty,
        )

        # Biases are few and barely overfit, decay them only in full mode
        bias_decay = decay if decay.is_full else DecayType.NONE

        self._apply(
            rbm.b, b_fgrad, learning_rate,
            self._decay_term(rbm.b, bias_decay, weight_cost),
            h_penalty,
        )
        self._apply(
            rbm.a, a_fgrad, learning_rate,
            self._decay_term(rbm.a, bias_decay, weight_cost),
        )

        if rbm.sparsity_enabled:
            self.q_old = self.q_t

        self.step_count += 1

        nan_check(rbm.W, rbm.a, rbm.b, names=('W', 'a', 'b'))

    def reconstruction_error(self) -> float:
        """Root mean square of the visible bias gradient of the last batch."""
        n = self.vbias_grad.numel()
        return float(torch.sqrt((self.vbias_grad * self.vbias_grad).sum() / n))
