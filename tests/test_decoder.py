import pytest
import torch

from rnnmt.data.batch import BOS_IDX, EOS_IDX, PAD_IDX, Batch


def run_forward(model, batch):
    model.decoder.reset(batch)
    states, context = model.encoder(batch)
    return model.decoder(batch, states, context)


def manual_nll(model, batch, outputs):
    nll = 0.0
    for t, out in enumerate(outputs):
        log_probs = model.generator(out)
        for b in range(batch.size):
            if t < batch.target_size[b]:
                nll -= log_probs[b, batch.target_output[t, b]].item()
    return nll


@pytest.mark.parametrize("pad_left", [True, False])
def test_forward_is_repeatable_after_backward(make_model, make_batch, pad_left):
    model = make_model()
    batch = make_batch(pad_left=pad_left)

    first = [out.clone() for out in run_forward(model, batch)]
    grad_states, grad_context, _ = model.decoder.backward(batch, first, model.generator)
    model.encoder.backward(batch, grad_states, grad_context)

    second = run_forward(model, batch)
    assert all(torch.equal(a, b) for a, b in zip(first, second))


def test_backward_returns_gradients_for_encoder(make_model, make_batch):
    model = make_model()
    batch = make_batch()

    outputs = run_forward(model, batch)
    grad_states, grad_context, loss = model.decoder.backward(batch, outputs, model.generator)

    assert len(grad_states) == model.encoder.num_states
    assert all(g.shape == (batch.size, 8) for g in grad_states)
    assert grad_context.shape == (batch.size, batch.source_length, 8)
    assert loss > 0


def test_loss_matches_manual_nll(make_model, make_batch):
    model = make_model()
    batch = make_batch()

    outputs = [out.clone() for out in run_forward(model, batch)]
    with torch.no_grad():
        expected = manual_nll(model, batch, outputs)

    _, _, loss = model.decoder.backward(batch, outputs, model.generator)

    assert loss == pytest.approx(expected / batch.size, rel=1e-5)
    assert model.compute_loss(batch) == pytest.approx(expected, rel=1e-5)
    assert -model.compute_score(batch).sum().item() == pytest.approx(expected, rel=1e-5)


def test_score_ignores_positions_past_target_end():
    from rnnmt.models.seq2seq import Seq2SeqAttn

    torch.manual_seed(0)
    model = Seq2SeqAttn(6, 6, word_vec_size=4, rnn_size=4, num_layers=1, dropout=0.0,
                        max_batch_size=2, max_source_length=3)
    batch = Batch([[2, 5], [2, 5, 4]], [[BOS_IDX, 3, 4], [BOS_IDX, 3, 4, 5]], pad_left=False)

    assert batch.source_input[:, 0].tolist() == [2, 5, PAD_IDX]
    assert batch.target_output[2, 0].item() == PAD_IDX

    scores = model.compute_score(batch)
    with torch.no_grad():
        outputs = run_forward(model, batch)
        log_probs = [model.generator(out) for out in outputs]

    first = log_probs[0][0, 3] + log_probs[1][0, 4]
    second = log_probs[0][1, 3] + log_probs[1][1, 4] + log_probs[2][1, 5]

    assert scores.shape == (2,)
    assert scores[0].item() == pytest.approx(first.item(), rel=1e-5)
    assert scores[1].item() == pytest.approx(second.item(), rel=1e-5)
    assert scores[0].item() != pytest.approx((first + log_probs[2][0, PAD_IDX]).item())


def test_out_of_vocabulary_target_raises(make_model):
    model = make_model(tgt_vocab_size=6)
    batch = Batch([[4, 5]], [[BOS_IDX, 3, 9]])

    with pytest.raises(ValueError):
        model.compute_score(batch)


def test_input_feed_uses_previous_output(make_model, make_batch):
    model = make_model(input_feed=True)
    batch = make_batch()
    num_states = model.decoder.num_states

    outputs = run_forward(model, batch)

    first_inputs = model.decoder.get_instance(0).inputs
    assert len(first_inputs) == num_states + 3
    assert torch.equal(first_inputs[-1], torch.zeros(batch.size, 8))

    second_inputs = model.decoder.get_instance(1).inputs
    assert torch.equal(second_inputs[-1], outputs[0])


def test_without_input_feed(make_model, make_batch):
    model = make_model(input_feed=False)
    batch = make_batch()

    assert model.decoder.network.rnn.input_dim == 6

    outputs = run_forward(model, batch)
    assert len(outputs) == batch.target_length
    assert len(model.decoder.get_instance(0).inputs) == model.decoder.num_states + 2

    _, grad_context, loss = model.decoder.backward(batch, outputs, model.generator)
    assert torch.isfinite(grad_context).all()
    assert loss > 0


def test_stale_mask_raises(make_model, make_batch):
    model = make_model(mask_padding=True)
    first = make_batch(src=[[4, 5, 6], [7, 8]])
    second = make_batch(src=[[4, 5], [7, 8, 9, 10]])

    model.decoder.reset(first)
    states, context = model.encoder(second)
    with pytest.raises(RuntimeError):
        model.decoder(second, states, context)


def test_rebind_keeps_mask_for_same_shape(make_model, make_batch):
    model = make_model(mask_padding=True)
    batch = make_batch()

    model.decoder.reset(batch)
    softmax = model.decoder.attention.softmax
    model.decoder.reset(make_batch(src=[[9, 9, 9, 9], [5, 5]]))
    assert model.decoder.attention.softmax is softmax

    model.decoder.reset(make_batch(src=[[9, 9, 9], [5, 5]]))
    assert model.decoder.attention.softmax is not softmax


def test_unmasked_decoder_uses_plain_softmax(make_model, make_batch):
    model = make_model(mask_padding=False)
    model.decoder.reset(make_batch())
    assert isinstance(model.decoder.attention.softmax, torch.nn.Softmax)


def test_oversized_batch_raises(make_model):
    model = make_model(max_batch_size=1)
    batch = Batch([[4], [5]], [[BOS_IDX, 4, EOS_IDX], [BOS_IDX, 5, EOS_IDX]])

    with pytest.raises(ValueError):
        model.decoder.forward(batch, [torch.zeros(2, 8)] * 4, torch.zeros(2, 1, 8))


def test_single_step_target_with_input_feed(make_model):
    model = make_model(input_feed=True)
    batch = Batch([[4, 5, 6], [7, 8]], [[BOS_IDX, 4], [BOS_IDX, EOS_IDX]])
    assert batch.target_length == 1

    model.decoder.reset(batch)
    enc_states, context = model.encoder(batch)
    enc_states = [s.clone() for s in enc_states]
    context = context.clone()
    outputs = model.decoder(batch, enc_states, context)

    assert len(outputs) == 1
    assert model.decoder.num_instances == 1
    assert torch.equal(model.decoder.get_instance(0).inputs[-1], torch.zeros(2, 8))

    grad_states, grad_context, loss = model.decoder.backward(batch, outputs, model.generator)

    # Same step differentiated end to end by autograd
    states = [s.clone().requires_grad_(True) for s in enc_states]
    leaf_context = context.clone().requires_grad_(True)
    word_vec = model.decoder.word_vecs(batch.target_input[0]).detach()
    step_out = model.decoder.network(states + [word_vec, leaf_context, torch.zeros(2, 8)])
    log_probs = model.generator(step_out[-1])
    expected = model.generator.criterion(log_probs, batch.target_output[0]) / batch.size
    expected.backward()

    assert loss == pytest.approx(expected.item(), rel=1e-5)
    for grad, state in zip(grad_states, states):
        assert torch.allclose(grad, state.grad, atol=1e-6)
    assert torch.allclose(grad_context, leaf_context.grad, atol=1e-6)
    # The zero first-step feed never receives a gradient
    assert torch.equal(model.decoder.input_feed_proto, torch.zeros(4, 8))
