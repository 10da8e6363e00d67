"""
Global attention with a padding-aware softmax.

GlobalAttention implements Luong et al. (2015) "general" scoring:
    score(h_t, h_s) = h_s . (W_in h_t)
    a_t = softmax(score)
    out = tanh(W_out [sum_s a_t(s) h_s ; h_t])

Its `softmax` submodule is swapped per batch for a MaskedSoftmax built from the
batch's true source lengths, so padded source positions get exactly zero weight.

Reference: Luong et al. (2015) - "Effective Approaches to Attention-based
Neural Machine Translation"
"""

import torch
import torch.nn as nn
import torch.nn.functional as F
from typing import Optional, Sequence, Tuple


class NarrowPad(nn.Module):
    """
    Keep one example's true span of a distribution and zero the rest.

    The span's position and size are fixed at construction.
    """

    def __init__(self, source_length: int, source_size: int, pad_left: bool = True):
        """
        Initialize narrow/pad step.

        Args:
            source_length: Padded length of the batch
            source_size: True (unpadded) length of this example
            pad_left: Whether the padding sits before the true tokens
        """
        super().__init__()

        self.pad_length = source_length - source_size
        self.source_size = source_size
        self.pad_left = pad_left

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        start = self.pad_length if self.pad_left else 0
        span = x.narrow(-1, start, self.source_size)

        if self.pad_left:
            return F.pad(span, (self.pad_length, 0))
        return F.pad(span, (0, self.pad_length))


class MaskedSoftmax(nn.Module):
    """
    Softmax over attention scores that gives no weight to source padding.

    Rows of the input are examples, or (beam_size * num_sents) replicas laid
    out beam-major when `beam_size` is set. Lengths are part of the module's
    structure; a batch with different lengths needs a new module.
    """

    def __init__(
        self,
        source_sizes: Sequence[int],
        source_length: int,
        beam_size: Optional[int] = None,
        pad_left: bool = True,
    ):
        """
        Build the masked softmax for one batch shape.

        Args:
            source_sizes: True source length of each sentence
            source_length: Padded source length of the batch
            beam_size: Number of beam replicas per sentence, or None
            pad_left: Whether source padding is left-aligned
        """
        super().__init__()

        sizes = [int(size) for size in source_sizes]
        for size in sizes:
            if size < 1 or size > source_length:
                raise ValueError(
                    f"Source size {size} outside valid range [1, {source_length}]"
                )
        if beam_size is not None and beam_size < 1:
            raise ValueError(f"Beam size must be positive, got {beam_size}")

        self.source_sizes = tuple(sizes)
        self.source_length = source_length
        self.beam_size = beam_size
        self.pad_left = pad_left

        self.softmax = nn.Softmax(dim=-1)
        self.spans = nn.ModuleList(
            NarrowPad(source_length, size, pad_left) for size in sizes
        )

    @property
    def key(self) -> Tuple:
        return mask_key(self.source_sizes, self.source_length, self.beam_size, self.pad_left)

    def forward(self, scores: torch.Tensor) -> torch.Tensor:
        """
        Args:
            scores: Raw attention scores (rows, source_length)

        Returns:
            Attention weights (rows, source_length)
        """
        num_sents = len(self.spans)
        expected_rows = num_sents * (self.beam_size or 1)
        if scores.size(0) != expected_rows or scores.size(-1) != self.source_length:
            raise ValueError(
                f"Scores of shape {tuple(scores.shape)} do not match a mask built for "
                f"{expected_rows} rows of length {self.source_length}"
            )

        probs = self.softmax(scores)

        if self.beam_size is not None:
            # beam_size x num_sents x L, one (beam_size x L) slice per sentence
            pieces = probs.view(self.beam_size, num_sents, self.source_length).unbind(1)
            masked = [span(piece) for span, piece in zip(self.spans, pieces)]
            output = torch.stack(masked, dim=1).reshape(-1, self.source_length)
        else:
            pieces = probs.unbind(0)
            masked = [span(piece) for span, piece in zip(self.spans, pieces)]
            output = torch.stack(masked, dim=0)

        # Make sure each row sums to 1
        return F.normalize(output, p=1, dim=-1)


def mask_key(
    source_sizes: Optional[Sequence[int]],
    source_length: Optional[int],
    beam_size: Optional[int] = None,
    pad_left: bool = True,
) -> Optional[Tuple]:
    """Hashable description of the batch shape a masked softmax is built for."""
    if source_sizes is None:
        return None
    return (tuple(int(size) for size in source_sizes), int(source_length), beam_size, bool(pad_left))


def build_masked_softmax(
    source_sizes: Optional[Sequence[int]],
    source_length: Optional[int] = None,
    beam_size: Optional[int] = None,
    pad_left: bool = True,
) -> nn.Module:
    """
    Masked softmax for the given lengths, or a plain softmax without lengths.
    """
    if source_sizes is None:
        return nn.Softmax(dim=-1)
    return MaskedSoftmax(source_sizes, source_length, beam_size, pad_left)


class GlobalAttention(nn.Module):
    """
    Luong "general" attention over the encoder context.
    """

    def __init__(self, dim: int):
        """
        Args:
            dim: Dimension of decoder hidden state and encoder context
        """
        super().__init__()

        self.linear_in = nn.Linear(dim, dim, bias=False)
        self.softmax = nn.Softmax(dim=-1)
        self.linear_out = nn.Linear(2 * dim, dim, bias=False)

    def forward(self, hidden: torch.Tensor, context: torch.Tensor) -> torch.Tensor:
        """
        Attend over `context` with query `hidden`.

        Args:
            hidden: Decoder top-layer output (batch_size, dim)
            context: Encoder outputs (batch_size, source_length, dim)

        Returns:
            Attentional hidden state (batch_size, dim)
        """
        target = self.linear_in(hidden).unsqueeze(2)  # (batch_size, dim, 1)
        scores = torch.bmm(context, target).squeeze(2)  # (batch_size, source_length)

        attn = self.softmax(scores)

        weighted = torch.bmm(attn.unsqueeze(1), context).squeeze(1)  # (batch_size, dim)
        return torch.tanh(self.linear_out(torch.cat([weighted, hidden], dim=1)))
