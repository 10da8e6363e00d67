"""
Vanilla RNN cell implemented from scratch.

Implements the basic recurrent neural network cell with tanh activation:
    h_t = tanh(W_ih @ x_t + W_hh @ h_{t-1} + b)

The stacked version advances every layer by exactly one timestep, so that the
unroller can replicate it across time and drive backprop-through-time itself.
"""

import torch
import torch.nn as nn
from typing import List


class RNNCell(nn.Module):
    """
    Vanilla RNN cell from scratch.

    Implements a single step of the recurrent computation:
        h_t = tanh(W_ih @ x_t + W_hh @ h_{t-1} + b)
    """

    def __init__(self, input_dim: int, hidden_dim: int, bias: bool = True):
        """
        Initialize RNN cell.

        Args:
            input_dim: Dimension of input features
            hidden_dim: Dimension of hidden state
            bias: Whether to include bias terms
        """
        super().__init__()

        self.input_dim = input_dim
        self.hidden_dim = hidden_dim

        # Input-to-hidden transformation
        self.W_ih = nn.Linear(input_dim, hidden_dim, bias=bias)

        # Hidden-to-hidden transformation
        self.W_hh = nn.Linear(hidden_dim, hidden_dim, bias=bias)

    def forward(self, x: torch.Tensor, hidden: torch.Tensor) -> torch.Tensor:
        """
        Single forward step of RNN cell.

        Args:
            x: Input tensor (batch_size, input_dim)
            hidden: Previous hidden state (batch_size, hidden_dim)

        Returns:
            New hidden state (batch_size, hidden_dim)
        """
        return torch.tanh(self.W_ih(x) + self.W_hh(hidden))


class StackedRNN(nn.Module):
    """
    One timestep of a multi-layer RNN.

    State layout is [h_1, ..., h_L]: one tensor per layer, top layer last.
    """

    states_per_layer = 1

    def __init__(
        self,
        input_dim: int,
        hidden_dim: int,
        num_layers: int = 1,
        dropout: float = 0.0,
    ):
        """
        Initialize stacked RNN step.

        Args:
            input_dim: Dimension of the step input
            hidden_dim: Dimension of hidden state per layer
            num_layers: Number of stacked RNN layers
            dropout: Dropout probability applied to the input of layers above the first
        """
        super().__init__()

        self.input_dim = input_dim
        self.hidden_dim = hidden_dim
        self.num_layers = num_layers

        self.cells = nn.ModuleList()
        for layer in range(num_layers):
            # First layer takes input_dim, others take hidden_dim
            layer_input_dim = input_dim if layer == 0 else hidden_dim
            self.cells.append(RNNCell(layer_input_dim, hidden_dim))

        self.dropout = nn.Dropout(dropout) if dropout > 0 and num_layers > 1 else None

    @property
    def num_states(self) -> int:
        return self.num_layers * self.states_per_layer

    def forward(self, x: torch.Tensor, states: List[torch.Tensor]) -> List[torch.Tensor]:
        """
        Advance every layer by one timestep.

        Args:
            x: Step input (batch_size, input_dim)
            states: Previous hidden states [h_1, ..., h_L], each (batch_size, hidden_dim)

        Returns:
            New hidden states in the same layout
        """
        new_states = []
        for layer, cell in enumerate(self.cells):
            if layer > 0 and self.dropout is not None:
                x = self.dropout(x)

            h_new = cell(x, states[layer])
            new_states.append(h_new)
            x = h_new

        return new_states
