import pytest
import torch

from rnnmt.data.batch import BOS_IDX, EOS_IDX, Batch
from rnnmt.models.seq2seq import Seq2SeqAttn


@pytest.fixture
def make_model():
    """Factory for small deterministic models (dropout off)."""

    def _make(seed=0, **overrides):
        config = dict(
            src_vocab_size=12,
            tgt_vocab_size=10,
            word_vec_size=6,
            rnn_size=8,
            num_layers=2,
            dropout=0.0,
            cell="lstm",
            input_feed=True,
            mask_padding=True,
            max_batch_size=4,
            max_source_length=6,
        )
        config.update(overrides)
        torch.manual_seed(seed)
        return Seq2SeqAttn(**config)

    return _make


@pytest.fixture
def make_batch():
    """Factory for a two-example batch with padding on both sides."""

    def _make(pad_left=True, src=None, tgt=None):
        if src is None:
            src = [[4, 5, 6, 7], [8, 9]]
        if tgt is None:
            tgt = [[BOS_IDX, 4, 5, 6, EOS_IDX], [BOS_IDX, 7, EOS_IDX]]
        return Batch(src, tgt, pad_left=pad_left)

    return _make
