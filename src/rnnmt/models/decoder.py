"""
Attentional decoder over the target sentence.

Each step takes the previous states, the current target word, the encoder
context and (with input feeding) the previous step's attentional output:

    (c^1_{t-1}, h^1_{t-1}, .., h^L_{t-1}, y_t, H, h~_{t-1}) => (c^1_t, .., h^L_t, h~_t)

The backward pass is fused with the generator: output log-probabilities are
recomputed per step rather than retained for the whole sequence, and the loss
is accumulated on the way back.
"""

import torch
import torch.nn as nn
from typing import Callable, List, Optional, Sequence, Tuple

from rnnmt.models.attention import GlobalAttention, build_masked_softmax, mask_key
from rnnmt.models.generator import Generator, recompute_loss_and_grad
from rnnmt.models.unroller import Unroller, reset_state


class DecoderStep(nn.Module):
    """
    One decoder timestep: (states..., word_vec, context[, prev_out]) -> (states..., out).
    """

    def __init__(self, cell: nn.Module, rnn_size: int, input_feed: bool, dropout: float):
        super().__init__()

        self.rnn = cell
        self.attention = GlobalAttention(rnn_size)
        self.dropout = nn.Dropout(dropout)
        self.input_feed = input_feed
        self.num_states = cell.num_states

    def forward(self, inputs: List[torch.Tensor]) -> List[torch.Tensor]:
        n = self.num_states
        states, word_vec, context = inputs[:n], inputs[n], inputs[n + 1]

        x = word_vec
        if self.input_feed:
            x = torch.cat([word_vec, inputs[n + 2]], dim=1)

        new_states = self.rnn(x, states)
        out = self.dropout(self.attention(new_states[-1], context))

        return list(new_states) + [out]


class Decoder(Unroller):
    """
    Decoder sequencer for the target language.
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
        input_feed: bool = True,
        mask_padding: bool = False,
        fix_word_vecs: bool = False,
        pad_idx: int = 0,
    ):
        """
        Initialize decoder.

        Args:
            cell_module: Stacked single-step cell class (e.g., StackedLSTM)
            vocab_size: Size of target vocabulary
            word_vec_size: Dimension of word embeddings
            rnn_size: Dimension of recurrent hidden state
            num_layers: Number of recurrent layers
            dropout: Dropout probability between layers and on the attention output
            max_batch_size: Largest batch the buffers must hold
            max_source_length: Longest source sentence the context gradient must hold
            input_feed: Feed the previous attentional output into each step
            mask_padding: Give zero attention to source padding
            fix_word_vecs: Keep target embeddings frozen
            pad_idx: Index of padding token
        """
        input_dim = word_vec_size + rnn_size if input_feed else word_vec_size
        cell = cell_module(
            input_dim=input_dim,
            hidden_dim=rnn_size,
            num_layers=num_layers,
            dropout=dropout,
        )
        super().__init__(
            DecoderStep(cell, rnn_size, input_feed, dropout),
            vocab_size=vocab_size,
            word_vec_size=word_vec_size,
            rnn_size=rnn_size,
            num_states=cell.num_states,
            max_batch_size=max_batch_size,
            num_grad_states=cell.num_states + 1,  # extra slot for h~_t
            fix_word_vecs=fix_word_vecs,
            pad_idx=pad_idx,
        )

        self.input_feed = input_feed
        self.mask_padding = mask_padding
        self.max_source_length = max_source_length
        self._mask_key = None

        # Zero vector fed as the "previous output" at the first step
        self.register_buffer(
            "input_feed_proto", torch.zeros(max_batch_size, rnn_size), persistent=False
        )
        self.register_buffer(
            "grad_context_proto",
            torch.zeros(max_batch_size, max_source_length, rnn_size),
            persistent=False,
        )

    @property
    def attention(self) -> GlobalAttention:
        return self.network.attention

    def rebind_mask(
        self,
        source_sizes: Optional[Sequence[int]] = None,
        source_length: Optional[int] = None,
        beam_size: Optional[int] = None,
        pad_left: bool = True,
    ) -> None:
        """
        Swap the attention softmax for one matching a new batch shape.

        Args:
            source_sizes: True source lengths, or None for an unmasked softmax
            source_length: Padded source length of the batch
            beam_size: Beam replicas per sentence, or None
            pad_left: Whether source padding is left-aligned
        """
        key = mask_key(source_sizes, source_length, beam_size, pad_left)
        if key == self._mask_key:
            return

        self.attention.softmax = build_masked_softmax(
            source_sizes, source_length, beam_size, pad_left
        )
        self._mask_key = key

    def reset(self, batch, beam_size: Optional[int] = None) -> None:
        """Prepare the attention mask for a new batch."""
        if self.mask_padding:
            self.rebind_mask(
                batch.source_size.tolist(),
                batch.source_length,
                beam_size,
                batch.source_input_pad_left,
            )
        else:
            self.rebind_mask(None)

    def _check_batch(self, batch) -> None:
        if batch.size > self.max_batch_size:
            raise ValueError(
                f"Batch size {batch.size} exceeds decoder maximum {self.max_batch_size}"
            )
        if batch.source_length > self.max_source_length:
            raise ValueError(
                f"Source length {batch.source_length} exceeds decoder maximum "
                f"{self.max_source_length}"
            )
        if self.mask_padding:
            bound = self._mask_key
            expected = mask_key(
                batch.source_size.tolist(),
                batch.source_length,
                bound[2] if bound is not None else None,
                batch.source_input_pad_left,
            )
            if bound != expected:
                raise RuntimeError(
                    "Attention mask was built for a different batch; "
                    "call reset(batch) before forward"
                )

    def forward_one(
        self,
        t: int,
        tokens: torch.Tensor,
        states: List[torch.Tensor],
        context: torch.Tensor,
        prev_out: Optional[torch.Tensor],
        retain: bool = True,
    ) -> Tuple[torch.Tensor, List[torch.Tensor]]:
        """
        Run one step of the decoder.

        Args:
            t: Timestep index
            tokens: Target input words (batch_size,)
            states: Previous states
            context: Encoder output (batch_size, source_length, rnn_size)
            prev_out: Previous attentional output, or None at the first step
            retain: Keep the step graph for backward

        Returns:
            Tuple of (out, states)
        """
        inputs = list(states)
        inputs.append(self.embed(tokens, t, retain))
        inputs.append(context)
        if self.input_feed:
            if prev_out is None:
                prev_out = self.input_feed_proto[: tokens.size(0)]
            inputs.append(prev_out)

        outputs = self.forward_step(t, inputs, retain)
        return outputs[-1], outputs[:-1]

    def forward_and_apply(
        self,
        batch,
        encoder_states: List[torch.Tensor],
        context: torch.Tensor,
        func: Callable[[torch.Tensor, int], None],
        retain: bool = False,
    ) -> None:
        """
        Run the decoder over the batch, calling `func(out, t)` at every step.
        """
        self._check_batch(batch)
        states = self.copy_state(encoder_states, batch.size)

        prev_out = None
        for t in range(batch.target_length):
            prev_out, states = self.forward_one(
                t, batch.target_input[t], states, context, prev_out, retain
            )
            func(prev_out, t)

    def forward(
        self, batch, encoder_states: List[torch.Tensor], context: torch.Tensor
    ) -> List[torch.Tensor]:
        """
        Decode a batch given the encoder's final states and context.

        Args:
            batch: Batch (see rnnmt.data.batch)
            encoder_states: Final encoder states
            context: Encoder context (batch_size, source_length, rnn_size)

        Returns:
            Attentional outputs h~_t, one (batch_size, rnn_size) tensor per target step
        """
        outputs = []
        self.forward_and_apply(
            batch,
            encoder_states,
            context,
            lambda out, t: outputs.append(out),
            retain=not self.eval_mode,
        )
        return outputs

    def compute_score(
        self,
        batch,
        encoder_states: List[torch.Tensor],
        context: torch.Tensor,
        generator: Generator,
    ) -> torch.Tensor:
        """
        Log-probability of each example's gold target.

        Positions beyond an example's true target length do not count.

        Returns:
            Scores (batch_size,)
        """
        scores = []

        def accumulate(out, t):
            pred = generator(out)
            gold = _gold_log_probs(pred, batch.target_output[t])
            live = batch.target_size.gt(t).to(pred.device)
            scores.append(torch.where(live, gold, torch.zeros_like(gold)))

        with torch.no_grad():
            self.forward_and_apply(batch, encoder_states, context, accumulate)

        return torch.stack(scores).sum(dim=0)

    def compute_loss(
        self,
        batch,
        encoder_states: List[torch.Tensor],
        context: torch.Tensor,
        generator: Generator,
    ) -> float:
        """
        Summed criterion loss over the batch (padding weighted 0).
        """
        loss = 0.0

        def accumulate(out, t):
            nonlocal loss
            pred = generator(out)
            loss += generator.criterion(pred, batch.target_output[t]).item()

        with torch.no_grad():
            self.forward_and_apply(batch, encoder_states, context, accumulate)

        return loss

    def backward(
        self, batch, outputs: List[torch.Tensor], generator: Generator
    ) -> Tuple[List[torch.Tensor], torch.Tensor, float]:
        """
        Fused criterion and decoder backward pass.

        Args:
            batch: Must be the batch given to the preceding forward()
            outputs: Outputs returned by forward()
            generator: Output projection and criterion

        Returns:
            Tuple of (grad_states, grad_context, loss) where:
            - grad_states: Gradient w.r.t. the encoder final states
            - grad_context: Gradient w.r.t. the encoder context
            - loss: Summed NLL divided by batch size
        """
        if self.eval_mode:
            raise RuntimeError("backward called in evaluation mode")

        grad_states_input = reset_state(self.grad_out_proto, batch.size)
        grad_context_input = self.grad_context_proto[: batch.size, : batch.source_length].zero_()

        word_vec_idx = self.num_states
        grad_context_idx = self.num_states + 1
        grad_input_feed_idx = self.num_states + 2

        loss = 0.0

        for t in range(batch.target_length - 1, -1, -1):
            # Recompute over retain: generator forward/backward for this step
            step_loss, dec_grad_out = recompute_loss_and_grad(
                generator, outputs[t], batch.target_output[t], batch.size
            )
            loss += step_loss
            grad_states_input[-1].add_(dec_grad_out)

            grad_input = self.backward_step(t, grad_states_input, word_vec_idx)

            # Every step attends over the same context
            grad_context_input.add_(grad_input[grad_context_idx])
            grad_states_input[-1].zero_()

            if self.input_feed and t > 0:
                grad_states_input[-1].add_(grad_input[grad_input_feed_idx])

            for grad, step_grad in zip(grad_states_input, grad_input[: self.num_states]):
                grad.copy_(step_grad)

        self.backward_word_vecs()
        return grad_states_input[: self.num_states], grad_context_input, loss


def _gold_log_probs(pred: torch.Tensor, gold: torch.Tensor) -> torch.Tensor:
    gold = gold.to(pred.device)
    if gold.numel() and (gold.min() < 0 or gold.max() >= pred.size(1)):
        raise ValueError(
            f"Target index out of range for vocabulary of size {pred.size(1)}"
        )
    return pred.gather(1, gold.unsqueeze(1)).squeeze(1)
