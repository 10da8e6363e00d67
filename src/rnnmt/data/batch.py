"""
Padded mini-batch of parallel sentences, laid out time-major.

Source sentences are padded on the left or on the right depending on
`pad_left`; targets are always padded on the right. Targets are expected to
carry BOS and EOS: the decoder reads target[:-1] and predicts target[1:].
"""

import copy
import torch
from typing import List, Optional, Sequence

PAD_IDX = 0
UNK_IDX = 1
BOS_IDX = 2
EOS_IDX = 3


def _pad_time_major(
    sequences: Sequence[Sequence[int]], length: int, pad_left: bool, pad_idx: int
) -> torch.Tensor:
    padded = torch.full((length, len(sequences)), pad_idx, dtype=torch.long)
    for b, seq in enumerate(sequences):
        if not seq:
            continue
        values = torch.as_tensor(list(seq), dtype=torch.long)
        if pad_left:
            padded[length - len(seq):, b] = values
        else:
            padded[: len(seq), b] = values
    return padded


class Batch:
    """
    A group of sentence pairs aligned to a common source and target length.

    Attributes:
        size: Number of examples
        source_length: Padded source length
        target_length: Padded target length (decoder steps)
        source_input: Source words (source_length, size)
        target_input: Decoder input words (target_length, size)
        target_output: Decoder gold words (target_length, size)
        source_size: True source length per example (size,)
        target_size: True number of decoder steps per example (size,)
        source_input_pad_left: Whether source padding is left-aligned
        target_non_zeros: Number of non-padding target words
    """

    def __init__(
        self,
        src: List[Sequence[int]],
        tgt: Optional[List[Sequence[int]]] = None,
        pad_left: bool = True,
        pad_idx: int = PAD_IDX,
    ):
        """
        Build a batch.

        Args:
            src: Source token indices per example
            tgt: Target token indices per example, with BOS and EOS (optional)
            pad_left: Left-align source padding
            pad_idx: Index of padding token
        """
        if not src:
            raise ValueError("Cannot build an empty batch")
        if tgt is not None and len(tgt) != len(src):
            raise ValueError(
                f"Mismatched batch: {len(src)} sources vs {len(tgt)} targets"
            )
        if any(len(s) == 0 for s in src):
            raise ValueError("Source sentences must contain at least one token")

        self.size = len(src)
        self.source_input_pad_left = pad_left

        self.source_size = torch.tensor([len(s) for s in src], dtype=torch.long)
        self.source_length = int(self.source_size.max())
        self.source_input = _pad_time_major(src, self.source_length, pad_left, pad_idx)

        self.target_length = 0
        self.target_non_zeros = 0
        self.target_input = None
        self.target_output = None
        self.target_size = None

        if tgt is not None:
            if any(len(t) < 2 for t in tgt):
                raise ValueError("Target sentences need at least BOS and EOS")

            self.target_size = torch.tensor([len(t) - 1 for t in tgt], dtype=torch.long)
            self.target_length = int(self.target_size.max())
            self.target_non_zeros = int(self.target_size.sum())
            self.target_input = _pad_time_major(
                [t[:-1] for t in tgt], self.target_length, False, pad_idx
            )
            self.target_output = _pad_time_major(
                [t[1:] for t in tgt], self.target_length, False, pad_idx
            )

    def to(self, device) -> "Batch":
        """Return a copy of this batch with its tensors on `device`."""
        moved = copy.copy(self)
        for name in (
            "source_input",
            "source_size",
            "target_input",
            "target_output",
            "target_size",
        ):
            value = getattr(self, name)
            if value is not None:
                setattr(moved, name, value.to(device))
        return moved

    def __repr__(self) -> str:
        return (
            f"Batch(size={self.size}, source_length={self.source_length}, "
            f"target_length={self.target_length}, pad_left={self.source_input_pad_left})"
        )
