"""
Batch provider for parallel translation data.

Sentences arrive as token-index sequences (vocabulary building is done
upstream). Pairs are sorted by source length and cut into batches of at most
`max_batch_size`, so most batches need little source padding.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple
import torch

from rnnmt.data.batch import Batch, PAD_IDX


class TranslationData:
    """
    Indexable collection of padded batches.
    """

    def __init__(
        self,
        src: List[Sequence[int]],
        tgt: List[Sequence[int]],
        max_batch_size: int = 64,
        pad_left: bool = True,
        pad_idx: int = PAD_IDX,
    ):
        """
        Initialize batch provider.

        Args:
            src: Source sentences as token indices
            tgt: Target sentences as token indices, with BOS and EOS
            max_batch_size: Maximum number of pairs per batch
            pad_left: Left-align source padding
            pad_idx: Index of padding token
        """
        if len(src) != len(tgt):
            raise ValueError(f"Mismatched lengths: {len(src)} vs {len(tgt)}")
        if max_batch_size < 1:
            raise ValueError(f"max_batch_size must be positive, got {max_batch_size}")

        self.src = src
        self.tgt = tgt
        self.max_batch_size = max_batch_size
        self.pad_left = pad_left
        self.pad_idx = pad_idx

        # Sort by source length (stable), then target length
        order = sorted(range(len(src)), key=lambda i: (len(src[i]), len(tgt[i])))
        self.batch_indices = [
            order[i : i + max_batch_size] for i in range(0, len(order), max_batch_size)
        ]

        self.max_source_length = max((len(s) for s in src), default=0)
        self.max_target_length = max((len(t) - 1 for t in tgt), default=0)

    def __len__(self) -> int:
        """Return number of batches."""
        return len(self.batch_indices)

    def get_batch(self, idx: int) -> Batch:
        """
        Build batch `idx`.

        Args:
            idx: Batch position (0-based)

        Returns:
            Padded Batch
        """
        indices = self.batch_indices[idx]
        return Batch(
            [self.src[i] for i in indices],
            [self.tgt[i] for i in indices],
            pad_left=self.pad_left,
            pad_idx=self.pad_idx,
        )

    def __getitem__(self, idx: int) -> Batch:
        return self.get_batch(idx)


def read_parallel_ids(
    src_path: Path, tgt_path: Path, max_len: Optional[int] = None
) -> Tuple[List[List[int]], List[List[int]]]:
    """
    Load parallel files of whitespace-separated token indices.

    Args:
        src_path: Source file, one sentence per line
        tgt_path: Target file, one sentence per line (with BOS/EOS)
        max_len: Drop pairs where either side is longer than this

    Returns:
        Tuple of (src, tgt) index lists
    """
    with open(src_path, "r", encoding="utf-8") as f:
        src_lines = [line.split() for line in f]
    with open(tgt_path, "r", encoding="utf-8") as f:
        tgt_lines = [line.split() for line in f]

    if len(src_lines) != len(tgt_lines):
        raise ValueError(
            f"Mismatched line counts: {len(src_lines)} vs {len(tgt_lines)}"
        )

    src, tgt = [], []
    for s, t in zip(src_lines, tgt_lines):
        if not s or len(t) < 2:
            continue
        if max_len is not None and (len(s) > max_len or len(t) > max_len):
            continue
        src.append([int(tok) for tok in s])
        tgt.append([int(tok) for tok in t])

    return src, tgt


def save_dataset(path: Path, dataset: Dict) -> None:
    """
    Save a preprocessed dataset.

    Expected keys: "train" and "valid" (each {"src": [...], "tgt": [...]}),
    "src_vocab_size" and "tgt_vocab_size".
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    torch.save(dataset, path)


def load_dataset(path: Path) -> Dict:
    """Load a dataset saved by save_dataset()."""
    dataset = torch.load(path)
    for key in ("train", "valid", "src_vocab_size", "tgt_vocab_size"):
        if key not in dataset:
            raise ValueError(f"Dataset {path} is missing '{key}'")
    return dataset
