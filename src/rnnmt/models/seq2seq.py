"""
Attentional encoder-decoder model for neural machine translation.

Bundles the encoder, decoder and generator built from one configuration.
train()/eval() on this container switch all three together.

Architecture:
    Encoder: Multi-layer recurrent network over the source sentence
    Decoder: Multi-layer recurrent network with global attention and input feeding
    Generator: Linear + log-softmax over the target vocabulary

Reference: Luong et al. (2015) - "Effective Approaches to Attention-based
Neural Machine Translation"
"""

import torch
import torch.nn as nn
from typing import Dict, List

from rnnmt.models.cells.lstm_cell import StackedLSTM
from rnnmt.models.cells.rnn_cell import StackedRNN
from rnnmt.models.decoder import Decoder
from rnnmt.models.encoder import Encoder
from rnnmt.models.generator import Generator

CELL_TYPES = {
    "lstm": StackedLSTM,
    "rnn": StackedRNN,
}


class Seq2SeqAttn(nn.Module):
    """
    Encoder, decoder and generator sharing one configuration.
    """

    def __init__(
        self,
        src_vocab_size: int,
        tgt_vocab_size: int,
        word_vec_size: int = 500,
        rnn_size: int = 500,
        num_layers: int = 2,
        dropout: float = 0.3,
        cell: str = "lstm",
        input_feed: bool = True,
        mask_padding: bool = True,
        max_batch_size: int = 64,
        max_source_length: int = 50,
        fix_word_vecs_enc: bool = False,
        fix_word_vecs_dec: bool = False,
        pad_idx: int = 0,
    ):
        """
        Initialize model.

        Args:
            src_vocab_size: Size of source vocabulary
            tgt_vocab_size: Size of target vocabulary
            word_vec_size: Dimension of word embeddings
            rnn_size: Dimension of recurrent hidden states
            num_layers: Number of recurrent layers in encoder and decoder
            dropout: Dropout probability
            cell: Recurrent cell type ("lstm" or "rnn")
            input_feed: Feed the previous attentional output to the decoder
            mask_padding: Mask source padding in encoder states and attention
            max_batch_size: Largest batch the preallocated buffers must hold
            max_source_length: Longest source sentence the buffers must hold
            fix_word_vecs_enc: Freeze source embeddings
            fix_word_vecs_dec: Freeze target embeddings
            pad_idx: Index of padding token
        """
        super().__init__()

        if cell not in CELL_TYPES:
            raise ValueError(f"Unknown cell type: {cell}")
        cell_module = CELL_TYPES[cell]

        self.config = {
            "src_vocab_size": src_vocab_size,
            "tgt_vocab_size": tgt_vocab_size,
            "word_vec_size": word_vec_size,
            "rnn_size": rnn_size,
            "num_layers": num_layers,
            "dropout": dropout,
            "cell": cell,
            "input_feed": input_feed,
            "mask_padding": mask_padding,
            "max_batch_size": max_batch_size,
            "max_source_length": max_source_length,
            "fix_word_vecs_enc": fix_word_vecs_enc,
            "fix_word_vecs_dec": fix_word_vecs_dec,
            "pad_idx": pad_idx,
        }

        self.encoder = Encoder(
            cell_module,
            src_vocab_size,
            word_vec_size,
            rnn_size,
            num_layers=num_layers,
            dropout=dropout,
            max_batch_size=max_batch_size,
            max_source_length=max_source_length,
            mask_padding=mask_padding,
            fix_word_vecs=fix_word_vecs_enc,
            pad_idx=pad_idx,
        )
        self.decoder = Decoder(
            cell_module,
            tgt_vocab_size,
            word_vec_size,
            rnn_size,
            num_layers=num_layers,
            dropout=dropout,
            max_batch_size=max_batch_size,
            max_source_length=max_source_length,
            input_feed=input_feed,
            mask_padding=mask_padding,
            fix_word_vecs=fix_word_vecs_dec,
            pad_idx=pad_idx,
        )
        self.generator = Generator(rnn_size, tgt_vocab_size, pad_idx=pad_idx)

    @classmethod
    def from_config(cls, config: Dict) -> "Seq2SeqAttn":
        return cls(**config)

    def forward(self, batch) -> List[torch.Tensor]:
        """
        Encode and decode a batch with teacher forcing.

        Args:
            batch: Batch (see rnnmt.data.batch)

        Returns:
            Decoder outputs h~_t, one (batch_size, rnn_size) tensor per target step
        """
        self.decoder.reset(batch)
        encoder_states, context = self.encoder(batch)
        return self.decoder(batch, encoder_states, context)

    def compute_loss(self, batch) -> float:
        """Summed NLL of the batch's gold targets."""
        self.decoder.reset(batch)
        encoder_states, context = self.encoder(batch)
        return self.decoder.compute_loss(batch, encoder_states, context, self.generator)

    def compute_score(self, batch) -> torch.Tensor:
        """Per-example log-probability of the gold targets."""
        self.decoder.reset(batch)
        encoder_states, context = self.encoder(batch)
        return self.decoder.compute_score(batch, encoder_states, context, self.generator)
