"""
Finite-difference checks of the manual backprop-through-time.

The whole model runs in float64 with dropout off, so central differences
agree with the analytic gradients to many digits.
"""

import pytest
import torch

from rnnmt.data.batch import BOS_IDX, EOS_IDX, Batch

EPS = 1e-6


def analytic_gradients(model, batch):
    model.zero_grad(set_to_none=True)
    model.decoder.reset(batch)

    states, context = model.encoder(batch)
    outputs = model.decoder(batch, states, context)
    grad_states, grad_context, loss = model.decoder.backward(batch, outputs, model.generator)
    model.encoder.backward(batch, grad_states, grad_context)
    return loss


def batch_loss(model, batch):
    return model.compute_loss(batch) / batch.size


def checked_parameters(model):
    encoder, decoder = model.encoder, model.decoder
    return [
        ("encoder layer 1 input weight", encoder.network.rnn.cells[0].W_ih.weight, (0, 0)),
        ("encoder layer 2 recurrent weight", encoder.network.rnn.cells[1].W_hh.weight, (1, 2)),
        ("encoder layer 1 bias", encoder.network.rnn.cells[0].W_ih.bias, (3,)),
        ("source word vector", encoder.word_vecs.weight, (4, 0)),
        ("source word vector", encoder.word_vecs.weight, (7, 2)),
        ("target word vector", decoder.word_vecs.weight, (BOS_IDX, 1)),
        ("target word vector", decoder.word_vecs.weight, (5, 3)),
        ("decoder input-feed weight", decoder.network.rnn.cells[0].W_ih.weight, (0, -1)),
        ("decoder layer 2 recurrent weight", decoder.network.rnn.cells[1].W_hh.weight, (2, 0)),
        ("attention input weight", decoder.attention.linear_in.weight, (0, 1)),
        ("attention output weight", decoder.attention.linear_out.weight, (1, 9)),
        ("generator weight", model.generator.linear.weight, (4, 0)),
        ("generator bias", model.generator.linear.bias, (5,)),
    ]


def numeric_gradient(model, batch, param, index):
    with torch.no_grad():
        saved = param[index].item()
        param[index] = saved + EPS
        plus = batch_loss(model, batch)
        param[index] = saved - EPS
        minus = batch_loss(model, batch)
        param[index] = saved
    return (plus - minus) / (2 * EPS)


@pytest.mark.parametrize(
    "pad_left, mask_padding, cell",
    [
        (True, True, "lstm"),
        (False, True, "lstm"),
        (True, False, "lstm"),
        (False, True, "rnn"),
    ],
)
def test_gradients_match_finite_differences(make_model, pad_left, mask_padding, cell):
    model = make_model(mask_padding=mask_padding, cell=cell).double()
    # Source word 4 appears several times, so its gradient sums over timesteps
    batch = Batch(
        [[4, 5, 4, 6], [7, 4]],
        [[BOS_IDX, 5, 6, 5, EOS_IDX], [BOS_IDX, 4, EOS_IDX]],
        pad_left=pad_left,
    )

    loss = analytic_gradients(model, batch)
    assert loss == pytest.approx(batch_loss(model, batch), rel=1e-10)

    for name, param, index in checked_parameters(model):
        analytic = param.grad[index].item()
        numeric = numeric_gradient(model, batch, param, index)
        assert numeric == pytest.approx(analytic, rel=1e-4, abs=1e-7), name


def test_padding_word_vector_gets_no_gradient(make_model):
    model = make_model(mask_padding=False).double()
    batch = Batch([[4, 5, 6], [7]], [[BOS_IDX, 5, EOS_IDX], [BOS_IDX, EOS_IDX]])

    analytic_gradients(model, batch)

    assert torch.equal(model.encoder.word_vecs.weight.grad[0], torch.zeros(6, dtype=torch.double))
    assert torch.equal(model.decoder.word_vecs.weight.grad[0], torch.zeros(6, dtype=torch.double))
