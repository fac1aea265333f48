#!/usr/bin/env python3
"""
Simple example training RBMs with Contrastive Divergence.

This script shows:
1. CD-1 on bars-and-stripes patterns
2. PCD-k with persistent chains
3. Momentum, sparsity and weight decay switched on together
"""

import numpy as np
import torch

from boltzmann_cd import (
    RBM,
    RBMConfig,
    CDTrainer,
    PersistentCDTrainer,
    RBMTrainer,
    get_dataloader,
)


def bars_and_stripes(size=4):
    """All size x size images made of full rows or full columns."""
    patterns = []
    for mask in range(2 ** size):
        bits = np.array([(mask >> i) & 1 for i in range(size)], dtype=np.float32)
        patterns.append(np.repeat(bits[:, None], size, axis=1))  # stripes
        patterns.append(np.repeat(bits[None, :], size, axis=0))  # bars
    return np.stack(patterns)


def example_1_cd():
    """Example 1: CD-1."""
    print("=" * 60)
    print("Example 1: CD-1")
    print("=" * 60)

    data = bars_and_stripes()
    loader = get_dataloader(data, batch_size=8, shuffle=True)

    rbm = RBM(RBMConfig(num_visible=16, num_hidden=16, batch_size=8, learning_rate=0.1, seed=0))
    rbm.init_visible_bias(data)

    history = RBMTrainer(rbm, CDTrainer(k=1)).train(loader, num_epochs=50, log_every=10)
    print(f"Final reconstruction error: {history[-1]['recon_error']:.5f}\n")


def example_2_pcd():
    """Example 2: PCD-5."""
    print("=" * 60)
    print("Example 2: Persistent CD-5")
    print("=" * 60)

    data = bars_and_stripes()
    # No shuffling: every batch slot keeps feeding the same chain
    loader = get_dataloader(data, batch_size=8, drop_last=True)

    rbm = RBM(RBMConfig(num_visible=16, num_hidden=16, batch_size=8, learning_rate=0.05, seed=0))
    trainer = PersistentCDTrainer(k=5)

    history = RBMTrainer(rbm, trainer).train(loader, num_epochs=50, log_every=10)
    print(f"Chains: {trainer.num_chains}")
    print(f"Final reconstruction error: {history[-1]['recon_error']:.5f}\n")


def example_3_regularization():
    """Example 3: momentum + sparsity + L2 weight decay on the biases too."""
    print("=" * 60)
    print("Example 3: Regularized CD-1")
    print("=" * 60)

    data = bars_and_stripes()
    loader = get_dataloader(data, batch_size=8, shuffle=True)

    config = RBMConfig(
        num_visible=16,
        num_hidden=32,
        batch_size=8,
        momentum_enabled=True,
        sparsity_enabled=True,
        decay='l2_full',
        learning_rate=0.1,
        momentum=0.9,
        weight_cost=0.001,
        sparsity_target=0.1,
        sparsity_cost=0.5,
        seed=0,
    )
    rbm = RBM(config)
    trainer = CDTrainer(k=1)

    RBMTrainer(rbm, trainer).train(loader, num_epochs=50, log_every=10)

    features = rbm.hidden_probabilities(torch.as_tensor(data.reshape(len(data), -1)))
    print(f"Mean hidden activation: {features.mean():.4f} (target {config.sparsity_target})")
    print(f"Running estimate q_t: {trainer.q_t:.4f}\n")


if __name__ == '__main__':
    example_1_cd()
    example_2_pcd()
    example_3_regularization()
