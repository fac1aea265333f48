"""
Numerical stability checks.

A NaN or infinite value in the gradients or parameters of an RBM corrupts
every later update, so it stops training instead of being clamped or skipped.
"""

from typing import Optional, Sequence

import torch


class NumericalInstabilityError(RuntimeError):
    """Raised when a tensor holds NaN or infinite values. Not recoverable."""


def nan_check(*tensors: torch.Tensor, names: Optional[Sequence[str]] = None):
    """
    Fail if any of the tensors contains a NaN or infinite value.

    Args:
        *tensors: Tensors to check
        names: Optional names used in the error message, one per tensor

    Raises:
        NumericalInstabilityError: naming the first offending tensor
    """
    if names is not None and len(names) != len(tensors):
        raise ValueError(f"Got {len(names)} names for {len(tensors)} tensors")

    for i, tensor in enumerate(tensors):
        if not torch.isfinite(tensor).all():
            name = names[i] if names is not None else f"tensor {i}"
            num_bad = int((~torch.isfinite(tensor)).sum().item())
            raise NumericalInstabilityError(
                f"{name} contains {num_bad} NaN/Inf value(s) out of {tensor.numel()}"
            )
