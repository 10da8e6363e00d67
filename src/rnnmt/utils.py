"""
Utility functions for training recurrent translation models.

Includes helpers for parameter initialisation, gradient clipping and
checkpointing.
"""

import math
import torch
from typing import Iterable, Optional


def count_parameters(model: torch.nn.Module) -> int:
    """
    Count trainable parameters in a model.

    Args:
        model: PyTorch model

    Returns:
        Number of trainable parameters
    """
    return sum(p.numel() for p in model.parameters() if p.requires_grad)


def init_params(model: torch.nn.Module, param_init: float, pad_idx: Optional[int] = 0) -> None:
    """
    Initialise every parameter uniformly over [-param_init, param_init].

    Padding rows of embedding tables are reset to zero afterwards.

    Args:
        model: Model to initialise
        param_init: Half-width of the uniform support
        pad_idx: Index of padding token (None to skip)
    """
    with torch.no_grad():
        for p in model.parameters():
            p.uniform_(-param_init, param_init)

        if pad_idx is not None:
            for module in model.modules():
                if isinstance(module, torch.nn.Embedding):
                    module.weight[pad_idx].zero_()


def clip_gradients(parameters: Iterable[torch.nn.Parameter], max_grad_norm: float) -> float:
    """
    Rescale gradients so their global L2 norm is at most `max_grad_norm`.

    Args:
        parameters: Parameters whose `.grad` to clip (all groups together)
        max_grad_norm: Maximum allowed norm

    Returns:
        Total gradient norm before clipping

    Raises:
        RuntimeError: If the norm is NaN or infinite
    """
    params = [p for p in parameters if p.grad is not None]
    total_norm = float(torch.nn.utils.clip_grad_norm_(params, max_grad_norm))

    if not math.isfinite(total_norm):
        raise RuntimeError(f"Non-finite gradient norm: {total_norm}")

    return total_norm


def save_checkpoint(
    model: torch.nn.Module,
    optimizer: torch.optim.Optimizer,
    epoch: int,
    loss: float,
    path: str,
    **kwargs,
) -> None:
    """
    Save training checkpoint.

    Args:
        model: Model to save
        optimizer: Optimizer to save
        epoch: Current epoch
        loss: Current loss (validation perplexity)
        path: Path to save checkpoint
        **kwargs: Additional items to save
    """
    checkpoint = {
        "epoch": epoch,
        "model_state_dict": model.state_dict(),
        "optimizer_state_dict": optimizer.state_dict(),
        "loss": loss,
        **kwargs,
    }
    torch.save(checkpoint, path)


def load_checkpoint(
    path: str,
    model: torch.nn.Module,
    optimizer: Optional[torch.optim.Optimizer] = None,
    map_location=None,
) -> dict:
    """
    Load training checkpoint.

    Args:
        path: Path to checkpoint
        model: Model to load state into
        optimizer: Optional optimizer to load state into
        map_location: Device remapping passed to torch.load

    Returns:
        Checkpoint dictionary with epoch, loss, etc.
    """
    checkpoint = torch.load(path, map_location=map_location)
    model.load_state_dict(checkpoint["model_state_dict"])

    if optimizer is not None and "optimizer_state_dict" in checkpoint:
        optimizer.load_state_dict(checkpoint["optimizer_state_dict"])

    return checkpoint
