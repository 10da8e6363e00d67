import torch

from rnnmt.data.batch import PAD_IDX
from rnnmt.models.generator import Generator, recompute_loss_and_grad


def test_log_probs_normalise():
    torch.manual_seed(0)
    generator = Generator(4, 7)
    log_probs = generator(torch.randn(3, 4))

    assert log_probs.shape == (3, 7)
    assert torch.allclose(log_probs.exp().sum(dim=-1), torch.ones(3), atol=1e-6)


def test_criterion_sums_and_skips_padding():
    generator = Generator(4, 5)
    pred = torch.log_softmax(torch.randn(3, 5), dim=-1)
    target = torch.tensor([1, PAD_IDX, 4])

    loss = generator.criterion(pred, target)
    assert torch.allclose(loss, -(pred[0, 1] + pred[2, 4]))


def test_recompute_matches_autograd():
    torch.manual_seed(1)
    generator = Generator(4, 6)
    output = torch.randn(3, 4)
    target = torch.tensor([2, 5, PAD_IDX])

    loss, grad_output = recompute_loss_and_grad(generator, output, target, 3)
    recomputed_weight_grad = generator.linear.weight.grad.clone()

    generator.zero_grad()
    leaf = output.clone().requires_grad_(True)
    expected = generator.criterion(generator(leaf), target) / 3
    expected.backward()

    assert abs(loss - expected.item()) < 1e-6
    assert torch.allclose(grad_output, leaf.grad, atol=1e-6)
    assert torch.allclose(recomputed_weight_grad, generator.linear.weight.grad, atol=1e-6)
    assert not output.requires_grad


def test_all_padding_step_has_zero_loss():
    generator = Generator(4, 6)
    loss, grad_output = recompute_loss_and_grad(
        generator, torch.randn(2, 4), torch.tensor([PAD_IDX, PAD_IDX]), 2
    )

    assert loss == 0.0
    assert torch.equal(grad_output, torch.zeros(2, 4))
