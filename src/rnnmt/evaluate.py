"""
Evaluation script for trained seq2seq models.

Scores reference translations of a test set: reports perplexity and,
optionally, writes the log-probability of every gold target sentence.
"""

import argparse
import math
import torch
from pathlib import Path
from tqdm import tqdm
from typing import List, Optional, Tuple

from rnnmt.data.dataset import TranslationData, read_parallel_ids
from rnnmt.models.seq2seq import Seq2SeqAttn
from rnnmt.train import resolve_device
from rnnmt.utils import load_checkpoint


def score_dataset(
    model: Seq2SeqAttn, data: TranslationData, device: torch.device
) -> Tuple[List[float], float]:
    """
    Score every sentence pair of a dataset.

    Args:
        model: Trained seq2seq model
        data: Batches to score
        device: Device for computation

    Returns:
        Tuple of (scores, perplexity) where:
        - scores: Gold log-probability per sentence, in original data order
        - perplexity: exp(total negative log-likelihood / total target words)
    """
    model.eval()
    scores = [0.0] * len(data.src)
    total_nll = 0.0
    total_words = 0

    with torch.no_grad():
        for i in tqdm(range(len(data)), desc="Scoring"):
            batch = data.get_batch(i).to(device)
            batch_scores = model.compute_score(batch).cpu().tolist()

            for example_idx, score in zip(data.batch_indices[i], batch_scores):
                scores[example_idx] = score

            total_nll -= sum(batch_scores)
            total_words += batch.target_non_zeros

    ppl = math.exp(total_nll / total_words) if total_words else float("inf")
    return scores, ppl


def evaluate(
    model_path: Path,
    test_src_path: Path,
    test_tgt_path: Path,
    output_path: Optional[Path] = None,
    max_len: Optional[int] = None,
    device: str = "cpu",
) -> float:
    """
    Evaluate trained model on test set.

    Args:
        model_path: Path to trained model checkpoint
        test_src_path: Source file of token indices
        test_tgt_path: Target file of token indices (with BOS/EOS)
        output_path: Optional path to save per-sentence scores
        max_len: Skip pairs longer than this
        device: Device for computation (mps/cuda/cpu)

    Returns:
        Test perplexity
    """
    device = resolve_device(device)

    print("\n" + "=" * 60)
    print("Evaluating Seq2Seq Model")
    print("=" * 60)
    print(f"Device: {device}")

    print("\nLoading test dataset...")
    src, tgt = read_parallel_ids(test_src_path, test_tgt_path, max_len=max_len)
    print(f"Test examples: {len(src):,}")

    print(f"\nLoading model from {model_path}...")
    checkpoint = torch.load(model_path, map_location="cpu")
    model_config = dict(checkpoint["model_config"])
    model_config["max_source_length"] = max(
        model_config["max_source_length"], max((len(s) for s in src), default=0)
    )

    model = Seq2SeqAttn.from_config(model_config)
    load_checkpoint(model_path, model, map_location="cpu")
    model = model.to(device)
    print(f"Model loaded (epoch {checkpoint['epoch']})")

    # Lay out sources the way the model saw them in training
    pad_left = checkpoint.get("train_options", {}).get("pad_left", True)
    data = TranslationData(
        src, tgt, max_batch_size=model_config["max_batch_size"], pad_left=pad_left
    )
    scores, ppl = score_dataset(model, data, device)
    print(f"\nTest perplexity: {ppl:.2f}")

    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, "w", encoding="utf-8") as f:
            for score in scores:
                f.write(f"{score:.4f}\n")

        print(f"Scores saved to: {output_path}")

    print("=" * 60)
    print(f"Evaluation complete! PPL: {ppl:.2f}")
    print("=" * 60)

    return ppl


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Score reference translations with a seq2seq model")

    parser.add_argument("--model", type=str, required=True, help="Path to model checkpoint")
    parser.add_argument("--test-src", type=str, required=True, help="Test source ids file")
    parser.add_argument("--test-tgt", type=str, required=True, help="Test target ids file")
    parser.add_argument("--output", type=str, default=None, help="Output file for scores")
    parser.add_argument("--max-len", type=int, default=None, help="Maximum sentence length")
    parser.add_argument("--device", type=str, default="cpu", help="Device (mps/cuda/cpu)")

    args = parser.parse_args()

    evaluate(
        model_path=Path(args.model),
        test_src_path=Path(args.test_src),
        test_tgt_path=Path(args.test_tgt),
        output_path=Path(args.output) if args.output else None,
        max_len=args.max_len,
        device=args.device,
    )
