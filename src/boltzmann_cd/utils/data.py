"""Data loading utilities."""

from typing import Union

import numpy as np
import torch
from einops import rearrange
from torch.utils.data import DataLoader, TensorDataset


def flatten_samples(
    data: Union[torch.Tensor, np.ndarray],
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    """
    Turn samples of any shape into visible vectors.

    Args:
        data: Samples, first dimension indexes them (e.g. images of shape (n, 28, 28))
        dtype: Data type of the result

    Returns:
        Tensor of shape (n, features)
    """
    data = torch.as_tensor(data)
    if data.dim() == 1:
        data = data.unsqueeze(0)
    return rearrange(data, 'b ... -> b (...)').to(dtype)


def get_dataloader(
    data: Union[torch.Tensor, np.ndarray],
    batch_size: int = 10,
    shuffle: bool = False,
    drop_last: bool = False,
    dtype: torch.dtype = torch.float32,
):
    """
    Create a dataloader of visible vectors for RBM training.

    Persistent CD keeps one chain per batch slot, so batches are not shuffled
    by default.

    Args:
        data: Training samples, first dimension indexes them
        batch_size: Batch size, at most the RBM's batch_size
        shuffle: Reshuffle samples every epoch
        drop_last: Drop the last incomplete batch
        dtype: Data type of the batches

    Returns:
        DataLoader yielding (batch,) tuples of shape (batch_size, features)
    """
    dataset = TensorDataset(flatten_samples(data, dtype=dtype))
    return DataLoader(
        dataset,
        batch_size=batch_size,
        shuffle=shuffle,
        drop_last=drop_last,
    )
