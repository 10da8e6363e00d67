"""
Time-unrolled recurrence with shared parameters and manual backprop-through-time.

A single step network owns the parameters. Every timestep gets a lightweight
StepInstance bound to that network: the instance runs the step, keeps its own
autograd graph (inputs as detached leaves), and later back-propagates through
just that step. The encoder and decoder walk these instances forward and then
in reverse, carrying state gradients between steps in pre-allocated buffers.

Word embeddings are looked up outside the step graph. Each step's gradient on
its embedded input is recorded and summed into the embedding table once the
reverse loop is over (see Unroller.backward_word_vecs).
"""

import torch
import torch.nn as nn
from typing import Dict, List, Optional, Sequence


def reset_state(proto: Sequence[torch.Tensor], batch_size: int) -> List[torch.Tensor]:
    """
    Zero the first `batch_size` rows of each prototype buffer.

    Args:
        proto: Pre-allocated buffers, each (max_batch_size, dim)
        batch_size: Number of rows in use for this batch

    Returns:
        List of zeroed views (batch_size, dim)
    """
    _check_rows(proto, batch_size)
    return [p[:batch_size].zero_() for p in proto]


def copy_state(
    proto: Sequence[torch.Tensor], source: Sequence[torch.Tensor], batch_size: int
) -> List[torch.Tensor]:
    """
    Copy `source` into the first `batch_size` rows of each prototype buffer.

    Extra entries in `source` beyond len(proto) are ignored.

    Args:
        proto: Pre-allocated buffers, each (max_batch_size, dim)
        source: Tensors to copy, each (batch_size, dim)
        batch_size: Number of rows in use for this batch

    Returns:
        List of views (batch_size, dim) holding the copied values
    """
    _check_rows(proto, batch_size)
    return [p[:batch_size].copy_(s) for p, s in zip(proto, source)]


def _check_rows(proto: Sequence[torch.Tensor], batch_size: int) -> None:
    if proto and batch_size > proto[0].size(0):
        raise ValueError(
            f"Batch size {batch_size} exceeds preallocated maximum {proto[0].size(0)}"
        )


class StepInstance:
    """
    One timestep's use of the shared step network.

    Holds the retained inputs and outputs of its last training forward pass
    and nothing else; parameters live on the network.
    """

    def __init__(self, network: nn.Module, t: int):
        self.network = network
        self.t = t
        self._inputs: Optional[List[torch.Tensor]] = None
        self._outputs: Optional[List[torch.Tensor]] = None

    @property
    def inputs(self) -> Optional[List[torch.Tensor]]:
        """Inputs retained by the last forward pass, or None."""
        return self._inputs

    def forward(self, inputs: List[torch.Tensor], retain: bool = True) -> List[torch.Tensor]:
        """
        Run the step network on `inputs`.

        Args:
            inputs: Step input tensors, in the order the step network expects
            retain: Keep the graph for a later backward() call

        Returns:
            Step outputs, detached from this instance's graph
        """
        if not retain:
            self.release()
            with torch.no_grad():
                return list(self.network(inputs))

        leaves = [x.detach().requires_grad_(True) for x in inputs]
        with torch.enable_grad():
            outputs = list(self.network(leaves))

        self._inputs = leaves
        self._outputs = outputs
        return [out.detach() for out in outputs]

    def backward(self, grad_outputs: List[torch.Tensor]) -> List[torch.Tensor]:
        """
        Back-propagate `grad_outputs` through this step.

        Parameter gradients accumulate into `.grad` of the shared network.

        Args:
            grad_outputs: Gradient of the loss w.r.t. each step output

        Returns:
            Gradient of the loss w.r.t. each step input (zeros if unused)
        """
        if self._outputs is None:
            raise RuntimeError(
                f"Timestep {self.t} has no retained forward pass to differentiate; "
                "run forward in training mode first"
            )

        outputs, grads = [], []
        for out, grad in zip(self._outputs, grad_outputs):
            if out.requires_grad:
                outputs.append(out)
                grads.append(grad)
        torch.autograd.backward(outputs, grads)

        grad_inputs = [
            x.grad if x.grad is not None else torch.zeros_like(x) for x in self._inputs
        ]
        self.release()
        return grad_inputs

    def release(self) -> None:
        self._inputs = None
        self._outputs = None


class Unroller(nn.Module):
    """
    Base class for sequencers that replicate a step network across time.

    Owns the step network, the word-vector table, the per-timestep instance
    cache and the state / gradient prototype buffers sized to max_batch_size.
    """

    def __init__(
        self,
        network: nn.Module,
        vocab_size: int,
        word_vec_size: int,
        rnn_size: int,
        num_states: int,
        max_batch_size: int,
        num_grad_states: Optional[int] = None,
        fix_word_vecs: bool = False,
        pad_idx: int = 0,
    ):
        """
        Initialize unroller.

        Args:
            network: Step network mapping a list of inputs to a list of outputs
            vocab_size: Size of the vocabulary embedded by this sequencer
            word_vec_size: Dimension of word embeddings
            rnn_size: Dimension of every recurrent state tensor
            num_states: Number of state tensors (all layers)
            max_batch_size: Largest batch the buffers must hold
            num_grad_states: Number of gradient slots (defaults to num_states)
            fix_word_vecs: Keep word embeddings frozen during training
            pad_idx: Index of padding token
        """
        super().__init__()

        self.network = network
        self.word_vecs = nn.Embedding(vocab_size, word_vec_size, padding_idx=pad_idx)
        if fix_word_vecs:
            self.word_vecs.weight.requires_grad_(False)

        self.rnn_size = rnn_size
        self.num_states = num_states
        self.max_batch_size = max_batch_size
        self.fix_word_vecs = fix_word_vecs
        self.pad_idx = pad_idx

        self._state_names = self._register_protos("state_proto", num_states)
        self._grad_names = self._register_protos(
            "grad_out_proto", num_states if num_grad_states is None else num_grad_states
        )

        self._instances: List[StepInstance] = []
        self._word_vec_tokens: Dict[int, torch.Tensor] = {}
        self._word_vec_grads: Dict[int, torch.Tensor] = {}

    def _register_protos(self, prefix: str, count: int) -> List[str]:
        names = []
        for i in range(count):
            name = f"{prefix}_{i}"
            self.register_buffer(
                name, torch.zeros(self.max_batch_size, self.rnn_size), persistent=False
            )
            names.append(name)
        return names

    @property
    def states_proto(self) -> List[torch.Tensor]:
        return [getattr(self, name) for name in self._state_names]

    @property
    def grad_out_proto(self) -> List[torch.Tensor]:
        return [getattr(self, name) for name in self._grad_names]

    @property
    def eval_mode(self) -> bool:
        return not self.training

    @property
    def num_instances(self) -> int:
        return len(self._instances)

    def train(self, mode: bool = True):
        super().train(mode)
        if not mode:
            # Nothing retained in evaluation mode, so backward fails fast.
            for instance in self._instances:
                instance.release()
            self._word_vec_tokens.clear()
            self._word_vec_grads.clear()
        return self

    def get_instance(self, t: int) -> StepInstance:
        """
        Return the instance for timestep `t`, growing the cache if needed.

        Args:
            t: Timestep index (0-based)

        Returns:
            StepInstance bound to the shared step network
        """
        while len(self._instances) <= t:
            self._instances.append(StepInstance(self.network, len(self._instances)))
        return self._instances[t]

    def reset_state(self, batch_size: int) -> List[torch.Tensor]:
        """Zeroed state views for a batch of `batch_size` examples."""
        return reset_state(self.states_proto, batch_size)

    def copy_state(self, source: Sequence[torch.Tensor], batch_size: int) -> List[torch.Tensor]:
        """State views holding a copy of `source`."""
        return copy_state(self.states_proto, source, batch_size)

    def embed(self, tokens: torch.Tensor, t: int, retain: bool = True) -> torch.Tensor:
        """
        Look up word vectors for timestep `t`.

        Args:
            tokens: Token indices (batch_size,)
            t: Timestep index the embedding feeds
            retain: Record the indices for backward_word_vecs()

        Returns:
            Word vectors (batch_size, word_vec_size)
        """
        if retain:
            self._word_vec_tokens[t] = tokens
        with torch.no_grad():
            return self.word_vecs(tokens)

    def forward_step(self, t: int, inputs: List[torch.Tensor], retain: bool = True) -> List[torch.Tensor]:
        return self.get_instance(t).forward(inputs, retain=retain)

    def backward_step(
        self, t: int, grad_outputs: List[torch.Tensor], word_vec_idx: int
    ) -> List[torch.Tensor]:
        """
        Back-propagate through timestep `t`.

        Args:
            t: Timestep index
            grad_outputs: Gradient w.r.t. every step output
            word_vec_idx: Position of the embedded word among the step inputs

        Returns:
            Gradient w.r.t. every step input
        """
        if self.eval_mode:
            raise RuntimeError("backward called in evaluation mode")

        grad_input = self.get_instance(t).backward(grad_outputs)
        self._word_vec_grads[t] = grad_input[word_vec_idx]
        return grad_input

    def backward_word_vecs(self) -> None:
        """
        Sum per-timestep embedding gradients into the shared embedding table.

        Every timestep reads the same table, so contributions are added with
        index_add_, never overwritten.
        """
        tokens, grads = self._word_vec_tokens, self._word_vec_grads
        self._word_vec_tokens, self._word_vec_grads = {}, {}

        if self.fix_word_vecs:
            return

        weight = self.word_vecs.weight
        if weight.grad is None:
            weight.grad = torch.zeros_like(weight)

        for t, grad in grads.items():
            weight.grad.index_add_(0, tokens[t], grad.to(weight.grad.dtype))

        if self.pad_idx is not None:
            weight.grad[self.pad_idx].zero_()
