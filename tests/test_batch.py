import pytest
import torch

from rnnmt.data.batch import BOS_IDX, EOS_IDX, PAD_IDX, Batch
from rnnmt.data.dataset import TranslationData, load_dataset, read_parallel_ids, save_dataset


def test_left_padded_source():
    batch = Batch([[4, 5, 6], [7]], pad_left=True)

    assert batch.size == 2
    assert batch.source_length == 3
    assert batch.source_size.tolist() == [3, 1]
    assert batch.source_input.shape == (3, 2)
    assert batch.source_input[:, 1].tolist() == [PAD_IDX, PAD_IDX, 7]
    assert batch.source_input_pad_left


def test_right_padded_source():
    batch = Batch([[4, 5, 6], [7]], pad_left=False)

    assert batch.source_input[:, 1].tolist() == [7, PAD_IDX, PAD_IDX]
    assert not batch.source_input_pad_left


def test_target_is_shifted_and_right_padded():
    tgt = [[BOS_IDX, 4, 5, EOS_IDX], [BOS_IDX, 6, EOS_IDX]]
    batch = Batch([[4], [5]], tgt, pad_left=True)

    assert batch.target_length == 3
    assert batch.target_size.tolist() == [3, 2]
    assert batch.target_non_zeros == 5
    assert batch.target_input[:, 0].tolist() == [BOS_IDX, 4, 5]
    assert batch.target_output[:, 0].tolist() == [4, 5, EOS_IDX]
    assert batch.target_input[:, 1].tolist() == [BOS_IDX, 6, PAD_IDX]
    assert batch.target_output[:, 1].tolist() == [6, EOS_IDX, PAD_IDX]


@pytest.mark.parametrize(
    "src, tgt",
    [
        ([], None),
        ([[4], []], None),
        ([[4], [5]], [[BOS_IDX, EOS_IDX]]),
        ([[4]], [[BOS_IDX]]),
    ],
)
def test_invalid_batches_raise(src, tgt):
    with pytest.raises(ValueError):
        Batch(src, tgt)


def test_to_returns_copy():
    batch = Batch([[4, 5]], [[BOS_IDX, 4, EOS_IDX]])
    moved = batch.to(torch.device("cpu"))

    assert moved is not batch
    assert moved.size == batch.size
    assert torch.equal(moved.target_output, batch.target_output)


def test_dataset_sorts_by_source_length():
    src = [[4, 5, 6], [4], [4, 5], [4, 5, 6, 7]]
    tgt = [[BOS_IDX, 4, EOS_IDX]] * 4
    data = TranslationData(src, tgt, max_batch_size=2)

    assert len(data) == 2
    assert data.batch_indices == [[1, 2], [0, 3]]
    assert data.max_source_length == 4
    assert data.max_target_length == 2

    batch = data[1]
    assert batch.source_size.tolist() == [3, 4]


def test_dataset_rejects_mismatched_lengths():
    with pytest.raises(ValueError):
        TranslationData([[4]], [])


def test_read_parallel_ids_filters(tmp_path):
    src_path = tmp_path / "src.txt"
    tgt_path = tmp_path / "tgt.txt"
    src_path.write_text("4 5\n6 7 8 9\n\n", encoding="utf-8")
    tgt_path.write_text("2 4 3\n2 5 3\n2 6 3\n", encoding="utf-8")

    src, tgt = read_parallel_ids(src_path, tgt_path, max_len=3)

    assert src == [[4, 5]]
    assert tgt == [[2, 4, 3]]


def test_dataset_round_trip(tmp_path):
    dataset = {
        "train": {"src": [[4, 5]], "tgt": [[2, 4, 3]]},
        "valid": {"src": [[4]], "tgt": [[2, 5, 3]]},
        "src_vocab_size": 6,
        "tgt_vocab_size": 6,
    }
    path = tmp_path / "data" / "demo.pt"
    save_dataset(path, dataset)
    assert load_dataset(path) == dataset

    save_dataset(path, {"train": dataset["train"]})
    with pytest.raises(ValueError):
        load_dataset(path)
