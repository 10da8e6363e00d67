"""
Training script for the attentional recurrent seq2seq model.

Each mini-batch runs in a fixed order: encoder forward, decoder forward,
fused decoder/criterion backward, encoder backward, global gradient-norm
clipping, parameter update. Handles the epoch loop, validation perplexity,
learning-rate decay, checkpointing and logging.
"""

import argparse
import math
import time
import torch
from pathlib import Path
from tqdm import tqdm
from typing import Callable, Dict, List, Optional

from rnnmt.data.batch import Batch
from rnnmt.data.dataset import TranslationData, load_dataset
from rnnmt.models.seq2seq import Seq2SeqAttn
from rnnmt.utils import clip_gradients, count_parameters, init_params, load_checkpoint, save_checkpoint

OPTIMIZERS = {
    "sgd": torch.optim.SGD,
    "adagrad": torch.optim.Adagrad,
    "adadelta": torch.optim.Adadelta,
    "adam": torch.optim.Adam,
}


def build_optimizer(
    model: torch.nn.Module, method: str, learning_rate: float
) -> torch.optim.Optimizer:
    """
    Create the parameter optimizer.

    Args:
        model: Model whose trainable parameters to optimise
        method: One of sgd, adagrad, adadelta, adam
        learning_rate: Initial learning rate

    Returns:
        torch.optim optimizer
    """
    if method not in OPTIMIZERS:
        raise ValueError(f"Unknown optimizer: {method}")
    params = [p for p in model.parameters() if p.requires_grad]
    return OPTIMIZERS[method](params, lr=learning_rate)


def get_learning_rate(optimizer: torch.optim.Optimizer) -> float:
    return optimizer.param_groups[0]["lr"]


class LearningRateDecay:
    """
    Decay the learning rate when validation perplexity stops improving,
    or unconditionally once `start_decay_at` is reached.
    """

    def __init__(self, lr_decay: float = 0.5, start_decay_at: int = 9):
        self.lr_decay = lr_decay
        self.start_decay_at = start_decay_at
        self.start_decay = False
        self.prev_ppl = None

    def step(self, optimizer: torch.optim.Optimizer, ppl: float, epoch: int) -> float:
        """
        Update the optimizer's learning rate after an epoch.

        Args:
            optimizer: Optimizer whose param groups to update
            ppl: Validation perplexity of the finished epoch
            epoch: Finished epoch (1-based)

        Returns:
            The learning rate now in effect
        """
        if epoch >= self.start_decay_at:
            self.start_decay = True
        if self.prev_ppl is not None and ppl > self.prev_ppl:
            self.start_decay = True

        if self.start_decay:
            for group in optimizer.param_groups:
                group["lr"] = group["lr"] * self.lr_decay

        self.prev_ppl = ppl
        return get_learning_rate(optimizer)

    def state_dict(self) -> Dict:
        return {"start_decay": self.start_decay, "prev_ppl": self.prev_ppl}

    def load_state_dict(self, state: Dict) -> None:
        self.start_decay = state["start_decay"]
        self.prev_ppl = state["prev_ppl"]


class EpochState:
    """
    Running statistics of one training epoch.

    Pass `status` (from state_dict()) to continue the statistics of an
    epoch that was interrupted.
    """

    def __init__(self, epoch: int, status: Optional[Dict] = None):
        self.epoch = epoch
        self.train_loss = 0.0
        self.source_words = 0
        self.target_words = 0
        self.start_time = time.time()

        if status is not None:
            self.train_loss = status["train_loss"]
            self.source_words = status["source_words"]
            self.target_words = status["target_words"]

    def state_dict(self) -> Dict:
        return {
            "train_loss": self.train_loss,
            "source_words": self.source_words,
            "target_words": self.target_words,
        }

    def update(self, batch: Batch, loss: float) -> None:
        """
        Add one batch's statistics.

        Args:
            batch: Batch just trained on
            loss: Batch loss as returned by the decoder (summed NLL / batch size)
        """
        self.train_loss += loss * batch.size
        self.source_words += int(batch.source_size.sum())
        self.target_words += batch.target_non_zeros

    def get_train_ppl(self) -> float:
        if self.target_words == 0:
            return float("inf")
        return math.exp(self.train_loss / self.target_words)

    def log(self, iteration: int, num_batches: int, learning_rate: float) -> None:
        elapsed = max(time.time() - self.start_time, 1e-6)
        tqdm.write(
            f"Epoch {self.epoch} ; Iteration {iteration}/{num_batches} ; "
            f"Learning rate {learning_rate:.4f} ; "
            f"Source tokens/s {self.source_words / elapsed:.0f} ; "
            f"Perplexity {self.get_train_ppl():.2f}"
        )


def train_batch(
    model: Seq2SeqAttn,
    batch: Batch,
    optimizer: torch.optim.Optimizer,
    max_grad_norm: float = 5.0,
) -> float:
    """
    Run one training step on `batch`.

    Args:
        model: Seq2seq model in training mode
        batch: Batch on the model's device
        optimizer: Parameter optimizer
        max_grad_norm: Global gradient-norm threshold

    Returns:
        Batch loss (summed NLL divided by batch size)
    """
    optimizer.zero_grad(set_to_none=True)

    model.decoder.reset(batch)

    encoder_states, context = model.encoder(batch)
    decoder_outputs = model.decoder(batch, encoder_states, context)

    grad_states, grad_context, loss = model.decoder.backward(
        batch, decoder_outputs, model.generator
    )
    model.encoder.backward(batch, grad_states, grad_context)

    clip_gradients(model.parameters(), max_grad_norm)
    optimizer.step()

    return loss


def train_epoch(
    model: Seq2SeqAttn,
    data: TranslationData,
    optimizer: torch.optim.Optimizer,
    epoch: int,
    device: torch.device,
    max_grad_norm: float = 5.0,
    curriculum: int = 0,
    print_every: int = 50,
    generator: Optional[torch.Generator] = None,
    save_every: int = 0,
    save_iteration: Optional[Callable[[int, EpochState, List[int]], None]] = None,
    start_iteration: int = 1,
    epoch_state: Optional[EpochState] = None,
    batch_order: Optional[List[int]] = None,
) -> EpochState:
    """
    Train for one epoch.

    Args:
        model: Seq2seq model
        data: Training batches
        optimizer: Parameter optimizer
        epoch: Current epoch (1-based)
        device: Device for computation
        max_grad_norm: Global gradient-norm threshold
        curriculum: Keep batches in source-length order for this many epochs
        print_every: Log statistics every this many batches (0 disables)
        generator: Random generator for shuffling
        save_every: Call `save_iteration` every this many batches (0 disables)
        save_iteration: Callback taking (iteration, epoch_state, batch_order)
        start_iteration: First iteration to run (1-based), to resume an epoch
        epoch_state: Statistics of the interrupted epoch, when resuming
        batch_order: Batch order of the interrupted epoch, when resuming

    Returns:
        Statistics of the epoch
    """
    model.train()
    if epoch_state is None:
        epoch_state = EpochState(epoch)

    if batch_order is None:
        if epoch <= curriculum:
            batch_order = list(range(len(data)))
        else:
            batch_order = torch.randperm(len(data), generator=generator).tolist()
    elif len(batch_order) != len(data):
        raise ValueError(
            f"Batch order covers {len(batch_order)} batches, data has {len(data)}"
        )

    iterations = range(start_iteration, len(batch_order) + 1)
    for i in tqdm(iterations, desc=f"Training epoch {epoch}"):
        batch = data.get_batch(batch_order[i - 1]).to(device)

        loss = train_batch(model, batch, optimizer, max_grad_norm)
        epoch_state.update(batch, loss)

        if print_every > 0 and i % print_every == 0:
            epoch_state.log(i, len(data), get_learning_rate(optimizer))

        if save_every > 0 and save_iteration is not None and i % save_every == 0:
            save_iteration(i, epoch_state, batch_order)

    return epoch_state


def evaluate(model: Seq2SeqAttn, data: TranslationData, device: torch.device) -> float:
    """
    Compute perplexity on a validation set.

    Args:
        model: Seq2seq model
        data: Validation batches
        device: Device for computation

    Returns:
        Perplexity exp(total loss / total target words)
    """
    was_training = model.training
    model.eval()

    loss = 0.0
    total = 0

    with torch.no_grad():
        for i in tqdm(range(len(data)), desc="Evaluating"):
            batch = data.get_batch(i).to(device)
            loss += model.compute_loss(batch)
            total += batch.target_non_zeros

    model.train(was_training)

    if total == 0:
        return float("inf")
    return math.exp(loss / total)


def resolve_device(device: str) -> torch.device:
    """Pick the requested device, falling back to CPU when it is unavailable."""
    if device == "mps" and torch.backends.mps.is_available():
        return torch.device("mps")
    if device == "cuda" and torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def train(
    data_path: Path,
    output_dir: Path,
    savefile: str = "seq2seq_lstm_attn",
    train_from: Optional[Path] = None,
    resume: bool = False,
    cell: str = "lstm",
    num_layers: int = 2,
    rnn_size: int = 500,
    word_vec_size: int = 500,
    input_feed: bool = True,
    mask_padding: bool = True,
    pad_left: bool = True,
    max_batch_size: int = 64,
    epochs: int = 13,
    param_init: float = 0.1,
    optim: str = "sgd",
    learning_rate: float = 1.0,
    max_grad_norm: float = 5.0,
    dropout: float = 0.3,
    lr_decay: float = 0.5,
    start_decay_at: int = 9,
    curriculum: int = 0,
    fix_word_vecs_enc: bool = False,
    fix_word_vecs_dec: bool = False,
    save_every: int = 0,
    print_every: int = 50,
    seed: int = 3435,
    device: str = "cpu",
) -> Dict:
    """
    Main training function.

    With `resume`, the optimizer, its learning rate, the decay settings,
    epochs, curriculum, padding side and batch size are taken from the
    `train_from` checkpoint, and training picks up where it stopped (in the
    middle of an epoch for checkpoints written by `save_every`).

    Args:
        data_path: Dataset saved by rnnmt.data.dataset.save_dataset
        output_dir: Directory to save checkpoints
        savefile: Checkpoint file name prefix
        train_from: Checkpoint to initialise the model from
        resume: Continue the run saved in `train_from`
        cell: Recurrent cell type (lstm/rnn)
        num_layers: Number of recurrent layers
        rnn_size: Size of recurrent hidden states
        word_vec_size: Word embedding size
        input_feed: Feed the previous attentional output to the decoder
        mask_padding: Mask source padding in encoder and attention
        pad_left: Left-align source padding
        max_batch_size: Maximum batch size
        epochs: Number of training epochs
        param_init: Uniform initialisation half-width
        optim: Optimizer (sgd/adagrad/adadelta/adam)
        learning_rate: Starting learning rate
        max_grad_norm: Global gradient-norm threshold
        dropout: Dropout probability
        lr_decay: Learning-rate decay factor (sgd only)
        start_decay_at: Epoch from which to always decay (sgd only)
        curriculum: Epochs to keep batches in source-length order
        fix_word_vecs_enc: Freeze source embeddings
        fix_word_vecs_dec: Freeze target embeddings
        save_every: Save an intermediate checkpoint every this many batches (0 disables)
        print_every: Log statistics every this many batches
        seed: Random seed
        device: Device for training (mps/cuda/cpu)

    Returns:
        Dictionary with best validation perplexity and its checkpoint path
    """
    torch.manual_seed(seed)
    device = resolve_device(device)

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    print("\n" + "=" * 60)
    print("Training Attentional Seq2Seq Model")
    print("=" * 60)
    print(f"Device: {device}")

    checkpoint = None
    if train_from is not None:
        print(f"\nLoading checkpoint {train_from}...")
        checkpoint = torch.load(train_from, map_location="cpu")

        if resume:
            if "train_options" not in checkpoint:
                raise ValueError(f"Checkpoint {train_from} has no training options to continue")
            options = checkpoint["train_options"]
            optim = options["optim"]
            learning_rate = options["learning_rate"]
            lr_decay = options["lr_decay"]
            start_decay_at = options["start_decay_at"]
            epochs = options["epochs"]
            curriculum = options["curriculum"]
            pad_left = options["pad_left"]
            max_batch_size = options["max_batch_size"]

    # Load data
    print(f"\nLoading data from {data_path}...")
    dataset = load_dataset(data_path)
    train_data = TranslationData(
        dataset["train"]["src"], dataset["train"]["tgt"], max_batch_size, pad_left
    )
    valid_data = TranslationData(
        dataset["valid"]["src"], dataset["valid"]["tgt"], max_batch_size, pad_left
    )
    print(
        f"Vocabulary size: source = {dataset['src_vocab_size']:,}; "
        f"target = {dataset['tgt_vocab_size']:,}"
    )
    print(
        f"Maximum sequence length: source = {train_data.max_source_length}; "
        f"target = {train_data.max_target_length}"
    )
    print(f"Training sentences: {len(train_data.src):,}")
    print(f"Train batches: {len(train_data):,}")
    print(f"Val batches: {len(valid_data):,}")

    if checkpoint is not None:
        model_config = dict(checkpoint["model_config"])
    else:
        model_config = {
            "src_vocab_size": dataset["src_vocab_size"],
            "tgt_vocab_size": dataset["tgt_vocab_size"],
            "word_vec_size": word_vec_size,
            "rnn_size": rnn_size,
            "num_layers": num_layers,
            "dropout": dropout,
            "cell": cell,
            "input_feed": input_feed,
            "mask_padding": mask_padding,
            "fix_word_vecs_enc": fix_word_vecs_enc,
            "fix_word_vecs_dec": fix_word_vecs_dec,
        }

    # Buffers must fit every batch of this run
    model_config["max_batch_size"] = max_batch_size
    model_config["max_source_length"] = max(
        train_data.max_source_length, valid_data.max_source_length
    )

    print("\nBuilding model...")
    model = Seq2SeqAttn.from_config(model_config)
    if checkpoint is None:
        init_params(model, param_init, pad_idx=model_config.get("pad_idx", 0))
    model = model.to(device)
    print(f"Parameters: {count_parameters(model):,}")

    optimizer = build_optimizer(model, optim, learning_rate)
    scheduler = LearningRateDecay(lr_decay, start_decay_at)

    start_epoch = 1
    start_iteration = 1
    resumed_state = None
    resumed_order = None

    if checkpoint is not None:
        load_checkpoint(train_from, model, optimizer if resume else None, map_location=device)

        if resume:
            scheduler.load_state_dict(checkpoint["scheduler_state"])

            if checkpoint.get("iteration") is not None:
                # Intermediate checkpoint: finish the interrupted epoch
                start_epoch = checkpoint["epoch"]
                start_iteration = checkpoint["iteration"] + 1
                resumed_state = EpochState(start_epoch, checkpoint["epoch_status"])
                resumed_order = checkpoint["batch_order"]
            else:
                start_epoch = checkpoint["epoch"] + 1

            print(
                f"Resuming training from epoch {start_epoch} "
                f"at iteration {start_iteration}..."
            )

    def save(path: Path, epoch: int, loss: float, **state) -> None:
        save_checkpoint(
            model,
            optimizer,
            epoch,
            loss,
            path,
            model_config=model_config,
            train_options={
                "optim": optim,
                "learning_rate": get_learning_rate(optimizer),
                "lr_decay": lr_decay,
                "start_decay_at": start_decay_at,
                "epochs": epochs,
                "curriculum": curriculum,
                "pad_left": pad_left,
                "max_batch_size": max_batch_size,
            },
            scheduler_state=scheduler.state_dict(),
            **state,
        )

    # Make sure batch order is reproducible across runs
    shuffle_generator = torch.Generator().manual_seed(seed)

    print("\nStarting training...\n")
    best_ppl = float("inf")
    best_path = None

    for epoch in range(start_epoch, epochs + 1):

        def save_iteration(iteration: int, epoch_state: EpochState, batch_order: List[int]) -> None:
            path = output_dir / f"{savefile}_epoch{epoch}_iter{iteration}.pt"
            save(
                path,
                epoch,
                float("inf"),
                iteration=iteration,
                epoch_status=epoch_state.state_dict(),
                batch_order=batch_order,
            )
            tqdm.write(f"  Intermediate checkpoint saved: {path}")

        epoch_state = train_epoch(
            model,
            train_data,
            optimizer,
            epoch,
            device,
            max_grad_norm=max_grad_norm,
            curriculum=curriculum,
            print_every=print_every,
            generator=shuffle_generator,
            save_every=save_every,
            save_iteration=save_iteration,
            start_iteration=start_iteration,
            epoch_state=resumed_state,
            batch_order=resumed_order,
        )
        start_iteration, resumed_state, resumed_order = 1, None, None

        valid_ppl = evaluate(model, valid_data, device)
        print(
            f"  Train PPL: {epoch_state.get_train_ppl():.2f} | Validation PPL: {valid_ppl:.2f}"
        )

        if optim == "sgd":
            new_lr = scheduler.step(optimizer, valid_ppl, epoch)
            print(f"  Learning rate: {new_lr:.4f}")

        checkpoint_path = output_dir / f"{savefile}_epoch{epoch}_{valid_ppl:.2f}.pt"
        save(checkpoint_path, epoch, valid_ppl)
        print(f"  Checkpoint saved: {checkpoint_path}")

        if valid_ppl < best_ppl:
            best_ppl = valid_ppl
            best_path = output_dir / f"{savefile}_best.pt"
            save(best_path, epoch, valid_ppl)
            print(f"  Best model saved: {best_path}")

        print()

    print("=" * 60)
    print("Training complete!")
    print(f"Best validation perplexity: {best_ppl:.2f}")
    print("=" * 60)

    return {"best_ppl": best_ppl, "best_path": best_path}


def main(argv=None):
    parser = argparse.ArgumentParser(description="Train attentional seq2seq translation model")

    # Data
    parser.add_argument(
        "--data", type=str, default="data/demo-train.pt", help="Preprocessed dataset file"
    )
    parser.add_argument(
        "--savefile", type=str, default="seq2seq_lstm_attn", help="Checkpoint name prefix"
    )
    parser.add_argument(
        "--output-dir", type=str, default="models/checkpoints", help="Output directory"
    )
    parser.add_argument(
        "--train-from", type=str, default=None, help="Checkpoint to start training from"
    )
    parser.add_argument(
        "--continue",
        dest="resume",
        action="store_true",
        help="Continue the run saved in --train-from (options, optimizer state, epoch, iteration)",
    )

    # Model
    parser.add_argument("--cell", type=str, default="lstm", choices=["lstm", "rnn"], help="Recurrent cell")
    parser.add_argument("--num-layers", type=int, default=2, help="Number of layers")
    parser.add_argument("--rnn-size", type=int, default=500, help="Size of hidden states")
    parser.add_argument("--word-vec-size", type=int, default=500, help="Word embedding size")
    parser.add_argument(
        "--no-input-feed", action="store_true", help="Disable input feeding in the decoder"
    )
    parser.add_argument(
        "--no-mask-padding", action="store_true", help="Disable source padding masks"
    )
    parser.add_argument(
        "--pad-right", action="store_true", help="Right-align source padding"
    )

    # Optimization
    parser.add_argument("--max-batch-size", type=int, default=64, help="Maximum batch size")
    parser.add_argument("--epochs", type=int, default=13, help="Number of epochs")
    parser.add_argument(
        "--param-init", type=float, default=0.1, help="Uniform initialisation half-width"
    )
    parser.add_argument(
        "--optim", type=str, default="sgd", choices=sorted(OPTIMIZERS), help="Optimizer"
    )
    parser.add_argument("--learning-rate", type=float, default=1.0, help="Learning rate")
    parser.add_argument(
        "--max-grad-norm", type=float, default=5.0, help="Gradient norm threshold"
    )
    parser.add_argument("--dropout", type=float, default=0.3, help="Dropout probability")
    parser.add_argument("--lr-decay", type=float, default=0.5, help="Learning rate decay")
    parser.add_argument(
        "--start-decay-at", type=int, default=9, help="Always decay from this epoch"
    )
    parser.add_argument(
        "--curriculum", type=int, default=0, help="Epochs in source-length order"
    )
    parser.add_argument(
        "--fix-word-vecs-enc", action="store_true", help="Freeze source embeddings"
    )
    parser.add_argument(
        "--fix-word-vecs-dec", action="store_true", help="Freeze target embeddings"
    )

    # Other
    parser.add_argument(
        "--save-every", type=int, default=0, help="Save intermediate checkpoints every this many batches"
    )
    parser.add_argument("--print-every", type=int, default=50, help="Log interval")
    parser.add_argument("--seed", type=int, default=3435, help="Random seed")
    parser.add_argument("--device", type=str, default="cpu", help="Device (mps/cuda/cpu)")

    args = parser.parse_args(argv)

    train(
        data_path=Path(args.data),
        output_dir=Path(args.output_dir),
        savefile=args.savefile,
        train_from=Path(args.train_from) if args.train_from else None,
        resume=args.resume,
        cell=args.cell,
        num_layers=args.num_layers,
        rnn_size=args.rnn_size,
        word_vec_size=args.word_vec_size,
        input_feed=not args.no_input_feed,
        mask_padding=not args.no_mask_padding,
        pad_left=not args.pad_right,
        max_batch_size=args.max_batch_size,
        epochs=args.epochs,
        param_init=args.param_init,
        optim=args.optim,
        learning_rate=args.learning_rate,
        max_grad_norm=args.max_grad_norm,
        dropout=args.dropout,
        lr_decay=args.lr_decay,
        start_decay_at=args.start_decay_at,
        curriculum=args.curriculum,
        fix_word_vecs_enc=args.fix_word_vecs_enc,
        fix_word_vecs_dec=args.fix_word_vecs_dec,
        save_every=args.save_every,
        print_every=args.print_every,
        seed=args.seed,
        device=args.device,
    )


if __name__ == "__main__":
    main()
