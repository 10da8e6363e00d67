"""
Output projection and padding-ignoring loss.

The generator maps the decoder's attentional output h~_t to log-probabilities
over the target vocabulary. Its criterion sums (not averages) the negative
log-likelihood and gives the padding class weight 0, so callers normalise
explicitly (the decoder divides by batch size).
"""

import torch
import torch.nn as nn
from typing import Tuple


class Generator(nn.Module):
    """
    Linear + log-softmax layer paired with a summed NLL criterion.
    """

    def __init__(self, rnn_size: int, vocab_size: int, pad_idx: int = 0):
        """
        Initialize generator.

        Args:
            rnn_size: Dimension of decoder outputs
            vocab_size: Size of target vocabulary
            pad_idx: Index of padding token (weighted 0 in the criterion)
        """
        super().__init__()

        self.vocab_size = vocab_size

        self.linear = nn.Linear(rnn_size, vocab_size)
        self.log_softmax = nn.LogSoftmax(dim=-1)

        weight = torch.ones(vocab_size)
        weight[pad_idx] = 0
        self.criterion = nn.NLLLoss(weight=weight, reduction="sum")

    def forward(self, output: torch.Tensor) -> torch.Tensor:
        """
        Args:
            output: Decoder output (batch_size, rnn_size)

        Returns:
            Log-probabilities (batch_size, vocab_size)
        """
        return self.log_softmax(self.linear(output))


def recompute_loss_and_grad(
    generator: Generator,
    output: torch.Tensor,
    target: torch.Tensor,
    normalizer: float,
) -> Tuple[float, torch.Tensor]:
    """
    Recompute one step's projection and loss, then back-propagate through both.

    Decoder outputs are kept across the sequence but their log-probabilities
    are not (they are vocabulary-sized), so the fused decoder backward calls
    this once per timestep instead of retaining generator activations.
    Generator parameter gradients accumulate into `.grad`.

    Args:
        generator: Output projection and criterion
        output: Decoder output for the step (batch_size, rnn_size)
        target: Gold token indices (batch_size,)
        normalizer: Divisor applied to both loss and gradient (batch size)

    Returns:
        Tuple of (loss, grad_output) where:
        - loss: Normalised step loss as a Python float
        - grad_output: Gradient w.r.t. `output` (batch_size, rnn_size)
    """
    leaf = output.detach().requires_grad_(True)

    with torch.enable_grad():
        pred = generator(leaf)
        loss = generator.criterion(pred, target) / normalizer

    loss.backward()
    return loss.item(), leaf.grad
