"""
Unidirectional encoder over the source sentence.

    h_1 => h_2 => h_3 => ... => h_n
     |      |      |             |
    x_1    x_2    x_3           x_n

Produces the final recurrent states (used to initialise the decoder) and the
context matrix of top-layer outputs at every source position (used by
attention). Backward takes the gradients the decoder produced for both.
"""

import torch
import torch.nn as nn
from typing import List, Tuple

from rnnmt.models.unroller import Unroller, copy_state, reset_state


class EncoderStep(nn.Module):
    """
    One encoder timestep: (states..., word_vec) -> new states.
    """

    def __init__(self, cell: nn.Module):
        super().__init__()
        self.rnn = cell

    def forward(self, inputs: List[torch.Tensor]) -> List[torch.Tensor]:
        states, word_vec = inputs[:-1], inputs[-1]
        return self.rnn(word_vec, states)


class Encoder(Unroller):
    """
    Encoder sequencer for the source language.
    """

    def __init__(
        self,
        cell_module: type,
        vocab_size: int,
        word_vec_size: int,
        rnn_size: int,
        num_layers: int = 2,
        dropout: float = 0.3,
        max_batch_size: int = 64,
        max_source_length: int = 50,
        mask_padding: bool = False,
        fix_word_vecs: bool = False,
        pad_idx: int = 0,
    ):
        """
        Initialize encoder.

        Args:
            cell_module: Stacked single-step cell class (e.g., StackedLSTM)
            vocab_size: Size of source vocabulary
            word_vec_size: Dimension of word embeddings
            rnn_size: Dimension of recurrent hidden state
            num_layers: Number of recurrent layers
            dropout: Dropout probability between layers
            max_batch_size: Largest batch the buffers must hold
            max_source_length: Longest source sentence the context buffer must hold
            mask_padding: Keep padding from affecting final states
            fix_word_vecs: Keep source embeddings frozen
            pad_idx: Index of padding token
        """
        cell = cell_module(
            input_dim=word_vec_size,
            hidden_dim=rnn_size,
            num_layers=num_layers,
            dropout=dropout,
        )
        super().__init__(
            EncoderStep(cell),
            vocab_size=vocab_size,
            word_vec_size=word_vec_size,
            rnn_size=rnn_size,
            num_states=cell.num_states,
            max_batch_size=max_batch_size,
            fix_word_vecs=fix_word_vecs,
            pad_idx=pad_idx,
        )

        self.mask_padding = mask_padding
        self.max_source_length = max_source_length

        # Preallocated context matrix, sliced per batch
        self.register_buffer(
            "context_proto",
            torch.zeros(max_batch_size, max_source_length, rnn_size),
            persistent=False,
        )

    def _check_capacity(self, batch) -> None:
        if batch.size > self.max_batch_size:
            raise ValueError(
                f"Batch size {batch.size} exceeds encoder maximum {self.max_batch_size}"
            )
        if batch.source_length > self.max_source_length:
            raise ValueError(
                f"Source length {batch.source_length} exceeds encoder maximum "
                f"{self.max_source_length}"
            )

    def _not_started(self, batch, t: int) -> torch.Tensor:
        # Left padding: example b starts at position source_length - source_size[b]
        return batch.source_size.le(batch.source_length - t - 1)

    def forward(self, batch) -> Tuple[List[torch.Tensor], torch.Tensor]:
        """
        Compute the context representation of a source batch.

        Args:
            batch: Batch (see rnnmt.data.batch)

        Returns:
            Tuple of (final_states, context) where:
            - final_states: Last true state of every example, one tensor per state slot
            - context: Top-layer output at each position (batch_size, source_length, rnn_size)
        """
        self._check_capacity(batch)
        retain = not self.eval_mode

        states = self.reset_state(batch.size)
        context = self.context_proto[: batch.size, : batch.source_length]

        snapshot = self.mask_padding and not batch.source_input_pad_left
        final_states = [s.clone() for s in states] if snapshot else None

        for t in range(batch.source_length):
            # Previous states come first, then the source word
            inputs = states + [self.embed(batch.source_input[t], t, retain)]
            states = self.forward_step(t, inputs, retain)

            if self.mask_padding:
                if batch.source_input_pad_left:
                    not_started = self._not_started(batch, t)
                    if not_started.any():
                        rows = not_started.unsqueeze(1)
                        states = [s.masked_fill(rows, 0) for s in states]
                else:
                    ended = batch.source_size.eq(t + 1)
                    if ended.any():
                        for final, state in zip(final_states, states):
                            final[ended] = state[ended]

            # h^L_t is the last state slot
            context[:, t].copy_(states[-1])

        if final_states is None:
            final_states = states

        return final_states, context

    def backward(
        self,
        batch,
        grad_states_output: List[torch.Tensor],
        grad_context_output: torch.Tensor,
    ) -> None:
        """
        Backward pass through the source sequence (training only).

        Args:
            batch: Must be the batch given to the preceding forward()
            grad_states_output: Gradient of the loss w.r.t. the final states
            grad_context_output: Gradient of the loss w.r.t. the context matrix
        """
        if self.eval_mode:
            raise RuntimeError("backward called in evaluation mode")

        snapshot = self.mask_padding and not batch.source_input_pad_left
        left_masked = self.mask_padding and batch.source_input_pad_left

        if snapshot:
            # Final-state gradients enter where each snapshot was taken
            grad_states_input = reset_state(self.grad_out_proto, batch.size)
        else:
            grad_states_input = copy_state(self.grad_out_proto, grad_states_output, batch.size)

        word_vec_idx = self.num_states

        for t in range(batch.source_length - 1, -1, -1):
            if snapshot:
                ended = batch.source_size.eq(t + 1)
                if ended.any():
                    for grad, grad_final in zip(grad_states_input, grad_states_output):
                        grad[ended] += grad_final[ended]

            # Add context gradients to last hidden states gradients
            grad_states_input[-1].add_(grad_context_output[:, t])

            if left_masked:
                not_started = self._not_started(batch, t)
                if not_started.any():
                    for grad in grad_states_input:
                        grad[not_started] = 0

            grad_input = self.backward_step(t, grad_states_input, word_vec_idx)

            # Prepare next (earlier) step's output gradients
            for grad, step_grad in zip(grad_states_input, grad_input[: self.num_states]):
                grad.copy_(step_grad)

        self.backward_word_vecs()
