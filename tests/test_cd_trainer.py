"""Tests for the CD-k and PCD-k sampling drivers."""

import numpy as np
import torch
import pytest

from boltzmann_cd.models import RBM, RBMConfig
from boltzmann_cd.training import CDTrainer, GibbsTrainer, PersistentCDTrainer
from boltzmann_cd.utils import NumericalInstabilityError


def make_rbm(**kwargs):
    config = dict(
        num_visible=3,
        num_hidden=2,
        batch_size=4,
        stochastic=False,
        dtype=torch.float64,
        init_std=0.5,
        learning_rate=0.1,
        seed=0,
    )
    config.update(kwargs)
    return RBM(RBMConfig(**config))


def clone_rbm(rbm):
    """Fresh model with the same configuration and parameters."""
    twin = RBM(rbm.config)
    twin.load_state_dict(rbm.state_dict())
    return twin


BATCH = torch.tensor([
    [1.0, 0.0, 1.0],
    [0.0, 1.0, 1.0],
    [1.0, 1.0, 0.0],
    [0.0, 0.0, 1.0],
], dtype=torch.float64)


def reference_cd1(rbm, batch):
    """Batch-mean CD-1 gradients of a deterministic binary RBM, written out by hand."""
    W, a, b = rbm.W.detach().clone(), rbm.a.detach().clone(), rbm.b.detach().clone()

    h1 = torch.sigmoid(b + batch @ W)
    v2 = torch.sigmoid(a + h1 @ W.T)
    h2 = torch.sigmoid(b + v2 @ W)

    w_grad = torch.zeros_like(W)
    vbias_grad = torch.zeros_like(a)
    hbias_grad = torch.zeros_like(b)
    for i in range(batch.shape[0]):
        w_grad += torch.outer(batch[i], h1[i]) - torch.outer(v2[i], h2[i])
        vbias_grad += batch[i] - v2[i]
        hbias_grad += h1[i] - h2[i]

    n = batch.shape[0]
    return w_grad / n, vbias_grad / n, hbias_grad / n


def test_cd1_matches_hand_computed_update():
    """Without regularization: W += lr * mean gradient, bit for bit."""
    rbm = make_rbm()
    W0, a0, b0 = rbm.W.detach().clone(), rbm.a.detach().clone(), rbm.b.detach().clone()
    w_grad, vbias_grad, hbias_grad = reference_cd1(rbm, BATCH)

    CDTrainer(k=1).train_batch(BATCH, rbm)

    assert torch.equal(rbm.W, W0 + 0.1 * w_grad)
    assert torch.equal(rbm.a, a0 + 0.1 * vbias_grad)
    assert torch.equal(rbm.b, b0 + 0.1 * hbias_grad)


def test_cd1_visible_bias_gradient_is_mean_difference():
    rbm = make_rbm(learning_rate=0.0)
    expected = (BATCH - rbm.reconstruct(BATCH)).mean(dim=0)

    trainer = CDTrainer(k=1)
    error = trainer.train_batch(BATCH, rbm)

    assert torch.allclose(trainer.vbias_grad, expected, atol=1e-12)
    assert error == pytest.approx(float(expected.pow(2).mean().sqrt()))


def test_cdk_runs_k_steps():
    """CD-3 gradients follow three visible->hidden round trips."""
    rbm = make_rbm(learning_rate=0.0)
    W, a, b = rbm.W.detach(), rbm.a.detach(), rbm.b.detach()

    h1 = torch.sigmoid(b + BATCH @ W)
    h = h1
    for _ in range(3):
        v = torch.sigmoid(a + h @ W.T)
        h = torch.sigmoid(b + v @ W)

    trainer = CDTrainer(k=3)
    trainer.train_batch(BATCH, rbm)

    assert torch.allclose(trainer.hbias_grad, (h1 - h).mean(dim=0), atol=1e-12)
    assert torch.allclose(trainer.vbias_grad, (BATCH - v).mean(dim=0), atol=1e-12)


def test_gibbs_trainer_needs_a_negative_seed():
    with pytest.raises(NotImplementedError):
        GibbsTrainer().train_batch(BATCH, make_rbm())


def test_momentum_switched_on_for_a_later_batch():
    """A trainer first used without momentum allocates increments when it appears."""
    trainer = CDTrainer()
    trainer.train_batch(BATCH, make_rbm())
    assert trainer.w_inc is None

    trainer.train_batch(BATCH, make_rbm(momentum_enabled=True, momentum=0.5))
    assert torch.allclose(trainer.w_inc, 0.5 * trainer.w_grad, atol=1e-12)
    assert torch.allclose(trainer.b_inc, 0.5 * trainer.hbias_grad, atol=1e-12)

    rbm = make_rbm()
    trainer = CDTrainer()
    trainer.train_batch(BATCH, rbm)
    rbm.momentum_enabled = True
    trainer.train_batch(BATCH, rbm)
    assert torch.allclose(trainer.a_inc, 0.5 * trainer.vbias_grad, atol=1e-12)


def test_cd0_is_rejected():
    with pytest.raises(ValueError):
        CDTrainer(k=0)
    with pytest.raises(ValueError):
        PersistentCDTrainer(k=0)


def test_sparsity_batch_mean_uses_negative_phase():
    rbm = make_rbm(sparsity_enabled=True, learning_rate=0.0)
    W, a, b = rbm.W.detach(), rbm.a.detach(), rbm.b.detach()
    h1 = torch.sigmoid(b + BATCH @ W)
    h2 = torch.sigmoid(b + torch.sigmoid(a + h1 @ W.T) @ W)

    trainer = CDTrainer()
    trainer.train_batch(BATCH, rbm)

    assert trainer.q_batch == pytest.approx(float(h2.mean()))


def test_error_is_deterministic_for_fresh_trainers():
    rbm = make_rbm()
    rbm_copy = clone_rbm(rbm)

    error_1 = CDTrainer().train_batch(BATCH, rbm)
    error_2 = CDTrainer().train_batch(BATCH, rbm_copy)

    assert error_1 == error_2
    assert error_1 >= 0.0


def test_stochastic_training_reduces_reconstruction_error():
    torch.manual_seed(0)
    rbm = make_rbm(
        num_visible=6, num_hidden=4, batch_size=4,
        stochastic=True, learning_rate=0.5, init_std=0.01,
    )
    data = torch.tensor([
        [1, 1, 1, 0, 0, 0],
        [1, 1, 1, 0, 0, 0],
        [1, 1, 1, 0, 0, 0],
        [0, 0, 0, 1, 1, 1],
    ], dtype=torch.float64)
    trainer = CDTrainer(k=1)

    errors = [trainer.train_batch(data, rbm) for _ in range(300)]

    assert np.mean(errors[-20:]) < np.mean(errors[:20])


class TestPreconditions:
    """Malformed batches fail before any state changes."""

    def test_batch_too_large(self):
        rbm = make_rbm(batch_size=2)
        W0 = rbm.W.detach().clone()
        trainer = CDTrainer()

        with pytest.raises(ValueError, match="batch_size"):
            trainer.train_batch(BATCH, rbm)

        assert torch.equal(rbm.W, W0)
        assert trainer.w_grad is None

    def test_sample_size_mismatch(self):
        rbm = make_rbm()
        with pytest.raises(ValueError, match="visible units"):
            CDTrainer().train_batch(torch.ones(2, 4, dtype=torch.float64), rbm)

    def test_ragged_samples(self):
        rbm = make_rbm()
        with pytest.raises(ValueError, match="visible units"):
            CDTrainer().train_batch([[1.0, 0.0, 1.0], [1.0, 0.0]], rbm)

    def test_empty_batch(self):
        rbm = make_rbm()
        with pytest.raises(ValueError, match="Empty"):
            CDTrainer().train_batch([], rbm)

    def test_accepts_lists_and_numpy(self):
        rbm = make_rbm(learning_rate=0.0)
        error_list = CDTrainer().train_batch(BATCH.tolist(), rbm)
        error_np = CDTrainer().train_batch(BATCH.numpy(), rbm)
        error_tensor = CDTrainer().train_batch(BATCH, rbm)

        assert error_list == error_np == error_tensor

    def test_accepts_reversed_numpy_view(self):
        rbm = make_rbm(learning_rate=0.0)
        trainer_np = CDTrainer()
        trainer_tensor = CDTrainer()

        error_np = trainer_np.train_batch(BATCH.numpy()[::-1], rbm)
        error_tensor = trainer_tensor.train_batch(BATCH.flip(0), rbm)

        assert error_np == error_tensor
        assert torch.equal(trainer_np.w_grad, trainer_tensor.w_grad)

    def test_nan_in_batch_is_fatal(self):
        rbm = make_rbm()
        batch = BATCH.clone()
        batch[0, 0] = float('nan')

        with pytest.raises(NumericalInstabilityError, match="w_grad"):
            CDTrainer().train_batch(batch, rbm)

    def test_nan_learning_rate_is_fatal(self):
        rbm = make_rbm(learning_rate=float('nan'))

        with pytest.raises(NumericalInstabilityError):
            CDTrainer().train_batch(BATCH, rbm)

        with pytest.raises(NumericalInstabilityError):
            PersistentCDTrainer().train_batch(BATCH, make_rbm(learning_rate=float('nan')))


class TestPersistentCD:
    """Persistent chains across batches."""

    def test_first_batch_matches_cd(self):
        """The first batch seeds the chains from the positive phase, exactly as CD."""
        rbm_pcd = make_rbm()
        rbm_cd = clone_rbm(rbm_pcd)

        pcd = PersistentCDTrainer(k=1)
        cd = CDTrainer(k=1)
        error_pcd = pcd.train_batch(BATCH, rbm_pcd)
        error_cd = cd.train_batch(BATCH, rbm_cd)

        assert error_pcd == error_cd
        assert torch.equal(pcd.w_grad, cd.w_grad)
        assert torch.equal(rbm_pcd.W, rbm_cd.W)

    def test_chains_persist_across_batches(self):
        """The second batch starts from the carried chain, not from the data."""
        rbm = make_rbm()
        pcd = PersistentCDTrainer(k=1)
        pcd.train_batch(BATCH, rbm)

        # CD on the same parameters and the same batch
        rbm_cd = clone_rbm(rbm)
        cd = CDTrainer(k=1)
        cd.train_batch(BATCH, rbm_cd)

        pcd.train_batch(BATCH, rbm)

        assert not torch.allclose(pcd.w_grad, cd.w_grad)
        assert not torch.allclose(pcd.hbias_grad, cd.hbias_grad)

    def test_chain_state_is_end_of_chain(self):
        rbm = make_rbm(learning_rate=0.0)
        W, a, b = rbm.W.detach(), rbm.a.detach(), rbm.b.detach()
        h1 = torch.sigmoid(b + BATCH @ W)
        h2 = torch.sigmoid(b + torch.sigmoid(a + h1 @ W.T) @ W)

        pcd = PersistentCDTrainer(k=1)
        pcd.train_batch(BATCH, rbm)

        assert pcd.p_h_a.shape == (rbm.batch_size, rbm.num_hidden)
        assert torch.allclose(pcd.p_h_a, h2, atol=1e-12)
        assert torch.allclose(pcd.p_h_s, h2, atol=1e-12)

        # Next batch: the negative phase continues from h2
        h3 = torch.sigmoid(b + torch.sigmoid(a + h2 @ W.T) @ W)
        pcd.train_batch(BATCH, rbm)
        assert torch.allclose(pcd.hbias_grad, (h1 - h3).mean(dim=0), atol=1e-12)

    def test_pcdk_continues_carried_chain_for_k_steps(self):
        """PCD-3: the second batch runs three more round trips from the carried state."""
        rbm = make_rbm(learning_rate=0.0)
        W, a, b = rbm.W.detach(), rbm.a.detach(), rbm.b.detach()

        def gibbs(h, steps):
            for _ in range(steps):
                v = torch.sigmoid(a + h @ W.T)
                h = torch.sigmoid(b + v @ W)
            return v, h

        h1 = torch.sigmoid(b + BATCH @ W)
        _, h_first = gibbs(h1, 3)
        v_second, h_second = gibbs(h_first, 3)

        pcd = PersistentCDTrainer(k=3)
        pcd.train_batch(BATCH, rbm)
        assert torch.allclose(pcd.p_h_a, h_first, atol=1e-12)

        pcd.train_batch(BATCH, rbm)
        assert torch.allclose(pcd.hbias_grad, (h1 - h_second).mean(dim=0), atol=1e-12)
        assert torch.allclose(pcd.vbias_grad, (BATCH - v_second).mean(dim=0), atol=1e-12)
        assert torch.allclose(pcd.p_h_a, h_second, atol=1e-12)

    def test_smaller_batch_uses_leading_slots(self):
        rbm = make_rbm()
        pcd = PersistentCDTrainer()

        pcd.train_batch(BATCH[:2], rbm)
        assert pcd.num_chains == 2
        assert pcd.p_h_a.shape[0] == rbm.batch_size

        # Slots 2 and 3 are seeded lazily the first time they are used
        pcd.train_batch(BATCH, rbm)
        assert pcd.num_chains == 4

    def test_explicit_slots(self):
        rbm = make_rbm(learning_rate=0.0)
        W, a, b = rbm.W.detach(), rbm.a.detach(), rbm.b.detach()
        h1 = torch.sigmoid(b + BATCH[:2] @ W)
        h2 = torch.sigmoid(b + torch.sigmoid(a + h1 @ W.T) @ W)

        pcd = PersistentCDTrainer()
        pcd.train_batch(BATCH[:2], rbm, slots=[3, 1])

        assert pcd.num_chains == 2
        assert torch.allclose(pcd.p_h_a[3], h2[0], atol=1e-12)
        assert torch.allclose(pcd.p_h_a[1], h2[1], atol=1e-12)

    @pytest.mark.parametrize("slots", [[0, 0, 1, 2], [0, 1, 2, 4], [-1, 0, 1, 2], [0, 1]])
    def test_invalid_slots(self, slots):
        rbm = make_rbm()
        pcd = PersistentCDTrainer()

        with pytest.raises(ValueError):
            pcd.train_batch(BATCH, rbm, slots=slots)

        assert pcd.p_h_a is None

    def test_chains_bound_to_model_shape(self):
        pcd = PersistentCDTrainer()
        pcd.train_batch(BATCH, make_rbm())

        with pytest.raises(ValueError):
            pcd.train_batch(BATCH, make_rbm(batch_size=8))

    def test_reset_chains(self):
        rbm = make_rbm()
        pcd = PersistentCDTrainer()
        pcd.train_batch(BATCH, rbm)

        pcd.reset_chains()

        assert pcd.p_h_a is None
        assert pcd.num_chains == 0
        pcd.train_batch(BATCH, rbm)
        assert pcd.num_chains == 4


if __name__ == '__main__':
    pytest.main([__file__])
