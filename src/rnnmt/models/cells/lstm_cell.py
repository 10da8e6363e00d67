"""
LSTM cell implemented from scratch.

    i, f, g, o = split(W_ih @ x_t + W_hh @ h_{t-1} + b)
    c_t = sigmoid(f) * c_{t-1} + sigmoid(i) * tanh(g)
    h_t = sigmoid(o) * tanh(c_t)

Reference: Hochreiter & Schmidhuber (1997) - "Long Short-Term Memory"
"""

import torch
import torch.nn as nn
from typing import List, Tuple


class LSTMCell(nn.Module):
    """Single LSTM step with fused gate projections."""

    def __init__(self, input_dim: int, hidden_dim: int, bias: bool = True):
        """
        Initialize LSTM cell.

        Args:
            input_dim: Dimension of input features
            hidden_dim: Dimension of hidden and cell state
            bias: Whether to include bias terms
        """
        super().__init__()

        self.input_dim = input_dim
        self.hidden_dim = hidden_dim

        # All four gates computed in one projection each
        self.W_ih = nn.Linear(input_dim, 4 * hidden_dim, bias=bias)
        self.W_hh = nn.Linear(hidden_dim, 4 * hidden_dim, bias=bias)

    def forward(
        self, x: torch.Tensor, cell: torch.Tensor, hidden: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Single forward step of LSTM cell.

        Args:
            x: Input tensor (batch_size, input_dim)
            cell: Previous cell state (batch_size, hidden_dim)
            hidden: Previous hidden state (batch_size, hidden_dim)

        Returns:
            Tuple of (new_cell, new_hidden)
        """
        gates = self.W_ih(x) + self.W_hh(hidden)
        in_gate, forget_gate, cell_gate, out_gate = gates.chunk(4, dim=1)

        c_new = torch.sigmoid(forget_gate) * cell + torch.sigmoid(in_gate) * torch.tanh(cell_gate)
        h_new = torch.sigmoid(out_gate) * torch.tanh(c_new)

        return c_new, h_new


class StackedLSTM(nn.Module):
    """
    One timestep of a multi-layer LSTM.

    State layout is [c_1, h_1, ..., c_L, h_L], so the top-layer hidden
    output is always the last entry.
    """

    states_per_layer = 2

    def __init__(
        self,
        input_dim: int,
        hidden_dim: int,
        num_layers: int = 1,
        dropout: float = 0.0,
    ):
        """
        Initialize stacked LSTM step.

        Args:
            input_dim: Dimension of the step input
            hidden_dim: Dimension of hidden state per layer
            num_layers: Number of stacked LSTM layers
            dropout: Dropout probability applied to the input of layers above the first
        """
        super().__init__()

        self.input_dim = input_dim
        self.hidden_dim = hidden_dim
        self.num_layers = num_layers

        self.cells = nn.ModuleList()
        for layer in range(num_layers):
            layer_input_dim = input_dim if layer == 0 else hidden_dim
            self.cells.append(LSTMCell(layer_input_dim, hidden_dim))

        self.dropout = nn.Dropout(dropout) if dropout > 0 and num_layers > 1 else None

    @property
    def num_states(self) -> int:
        return self.num_layers * self.states_per_layer

    def forward(self, x: torch.Tensor, states: List[torch.Tensor]) -> List[torch.Tensor]:
        """
        Advance every layer by one timestep.

        Args:
            x: Step input (batch_size, input_dim)
            states: Previous states [c_1, h_1, ..., c_L, h_L]

        Returns:
            New states in the same layout
        """
        new_states = []
        for layer, cell in enumerate(self.cells):
            if layer > 0 and self.dropout is not None:
                x = self.dropout(x)

            c_new, h_new = cell(x, states[2 * layer], states[2 * layer + 1])
            new_states.extend([c_new, h_new])
            x = h_new

        return new_states
