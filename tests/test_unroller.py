import pytest
import torch

from rnnmt.models.unroller import StepInstance, copy_state, reset_state


def test_instances_are_cached_and_share_parameters(make_model):
    encoder = make_model().encoder

    assert encoder.num_instances == 0
    third = encoder.get_instance(2)
    assert encoder.num_instances == 3
    assert encoder.get_instance(2) is third
    assert all(encoder.get_instance(t).network is encoder.network for t in range(3))


def test_instances_grow_with_longer_batches(make_model, make_batch):
    model = make_model()
    model.encoder(make_batch(src=[[4, 5], [6]]))
    assert model.encoder.num_instances == 2

    model.encoder(make_batch(src=[[4, 5, 6, 7, 8], [6]]))
    assert model.encoder.num_instances == 5


def test_reset_state_zeroes_buffer_views():
    proto = [torch.ones(4, 3), torch.ones(4, 3)]
    states = reset_state(proto, 2)

    assert [s.shape for s in states] == [(2, 3), (2, 3)]
    assert all(torch.equal(s, torch.zeros(2, 3)) for s in states)
    assert states[0].data_ptr() == proto[0].data_ptr()
    assert torch.equal(proto[0][2:], torch.ones(2, 3))


def test_copy_state_ignores_extra_sources():
    proto = [torch.zeros(4, 3)]
    source = [torch.full((2, 3), 5.0), torch.full((2, 3), 7.0)]
    states = copy_state(proto, source, 2)

    assert len(states) == 1
    assert torch.equal(states[0], source[0])


def test_state_buffers_reject_oversized_batches():
    proto = [torch.zeros(4, 3)]
    with pytest.raises(ValueError):
        reset_state(proto, 5)
    with pytest.raises(ValueError):
        copy_state(proto, [torch.zeros(5, 3)], 5)


def test_step_instance_backward_needs_forward():
    instance = StepInstance(torch.nn.Identity(), 0)
    with pytest.raises(RuntimeError):
        instance.backward([torch.ones(1)])


def test_step_instance_returns_input_gradients():
    network = torch.nn.Linear(3, 2)

    class Step(torch.nn.Module):
        def forward(self, inputs):
            return [network(inputs[0]), inputs[0] * 0]

    instance = StepInstance(Step(), 0)
    x = torch.randn(4, 3)
    outputs = instance.forward([x, torch.randn(4, 3)])

    assert not outputs[0].requires_grad
    grad_input = instance.backward([torch.ones(4, 2), torch.ones(4, 3)])

    assert torch.allclose(grad_input[0], network.weight.sum(0).expand(4, 3))
    # Unused inputs get zero gradients
    assert torch.equal(grad_input[1], torch.zeros(4, 3))
    assert instance.inputs is None


def test_eval_mode_retains_nothing(make_model, make_batch):
    model = make_model()
    batch = make_batch()

    model.eval()
    states, context = model.encoder(batch)

    assert model.encoder.eval_mode
    assert all(
        model.encoder.get_instance(t).inputs is None for t in range(batch.source_length)
    )
    with pytest.raises(RuntimeError):
        model.encoder.backward(batch, [torch.zeros_like(s) for s in states], torch.zeros_like(context))


def test_switching_to_eval_releases_retained_steps(make_model, make_batch):
    model = make_model()
    batch = make_batch()
    model.encoder(batch)
    assert model.encoder.get_instance(0).inputs is not None

    model.eval()
    assert model.encoder.get_instance(0).inputs is None


def test_backward_without_forward_raises(make_model, make_batch):
    model = make_model()
    batch = make_batch()
    grads = [torch.zeros(batch.size, 8) for _ in range(model.encoder.num_states)]
    context_grad = torch.zeros(batch.size, batch.source_length, 8)

    with pytest.raises(RuntimeError):
        model.encoder.backward(batch, grads, context_grad)


def test_fixed_word_vecs_get_no_gradient(make_model, make_batch):
    model = make_model(fix_word_vecs_enc=True)
    batch = make_batch()

    model.decoder.reset(batch)
    states, context = model.encoder(batch)
    outputs = model.decoder(batch, states, context)
    grad_states, grad_context, _ = model.decoder.backward(batch, outputs, model.generator)
    model.encoder.backward(batch, grad_states, grad_context)

    assert model.encoder.word_vecs.weight.grad is None
    assert model.decoder.word_vecs.weight.grad is not None
    assert torch.equal(model.decoder.word_vecs.weight.grad[0], torch.zeros(6))
