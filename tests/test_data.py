"""Tests for data sources, samplers, the data loader and frame preprocessing."""

import json

import cv2
import numpy as np
import pytest
import torch

from video_training.shared.data_loader import (
    DataLoader,
    PermutedSampler,
    SequentialSampler,
    build_sampler,
)
from video_training.shared.data_source import (
    END_OF_SEQUENCE,
    DiskFramesDataSource,
    PositiveVideosDataSource,
    SubsampledDataSource,
    frame_key,
    labels_to_tensor,
    parse_frame_key,
)
from video_training.shared.image_util import (
    augment_image_eval,
    augment_image_train,
    augment_sequence,
)


def toy_video_keys():
    return {
        "a": {i: f"a-{i}" for i in range(1, 6)},
        "b": {i: f"b-{i}" for i in range(1, 3)},
    }


# =============================
# Keys & labels
# =============================
def test_parse_frame_key():
    assert parse_frame_key("video_validation_0000051-12") == ("video_validation_0000051", 12)
    assert parse_frame_key(frame_key("clip-7", 3)) == ("clip-7", 3)


def test_parse_frame_key_rejects_malformed():
    with pytest.raises(ValueError):
        parse_frame_key("no_frame_number")


def test_labels_to_tensor_is_multi_hot():
    labels = labels_to_tensor([0, 2], 4)
    assert labels.dtype == torch.uint8
    assert labels.tolist() == [1, 0, 1, 0]


# =============================
# DiskFramesDataSource
# =============================
def test_disk_source_indexes_videos(frames_dataset):
    frames_root, labels_path = frames_dataset
    source = DiskFramesDataSource(frames_root, labels_path, num_labels=3)

    assert source.num_samples() == 7
    assert source.num_labels() == 3
    keys = source.video_keys()
    assert sorted(keys) == ["vidA", "vidB"]
    assert keys["vidA"] == {i: f"vidA-{i}" for i in range(1, 6)}


def test_disk_source_loads_images_and_labels(frames_dataset):
    frames_root, labels_path = frames_dataset
    source = DiskFramesDataSource(frames_root, labels_path, num_labels=3)

    images, labels = source.load_data([["vidA-2", "vidB-1"], ["vidA-3", END_OF_SEQUENCE]])

    assert images[0][0].shape == (3, 12, 16)
    assert images[0][0].dtype == torch.uint8
    assert int(images[0][0][0, 0, 0]) == 20
    assert images[1][1] is END_OF_SEQUENCE
    assert labels.shape == (2, 2, 3)
    assert labels[0, 0].tolist() == [1, 0, 1]
    assert labels[0, 1].tolist() == [0, 1, 0]
    assert labels[1, 1].tolist() == [0, 0, 0]


def test_disk_source_without_images(frames_dataset):
    frames_root, labels_path = frames_dataset
    source = DiskFramesDataSource(frames_root, labels_path, num_labels=3)
    images, labels = source.load_data([["vidA-1"]], load_images=False)
    assert images[0][0].numel() == 0
    assert labels[0, 0].tolist() == [1, 0, 0]


def test_subsampled_source_renumbers_frames(frames_dataset):
    frames_root, labels_path = frames_dataset
    source = SubsampledDataSource(frames_root, labels_path, 3, {"subsample_rate": 2})
    keys = source.video_keys()
    assert keys["vidA"] == {1: "vidA-1", 2: "vidA-3", 3: "vidA-5"}
    assert keys["vidB"] == {1: "vidB-1"}
    assert source.num_samples() == 4


def test_subsampled_source_requires_rate(frames_dataset):
    frames_root, labels_path = frames_dataset
    with pytest.raises(ValueError):
        SubsampledDataSource(frames_root, labels_path, 3, {})


def test_disk_source_renumbers_zero_based_and_gapped_frames(tmp_path):
    video_dir = tmp_path / "frames" / "vid"
    video_dir.mkdir(parents=True)
    for number in (0, 1, 2, 5):
        img = np.full((12, 16, 3), 10 * number, dtype=np.uint8)
        cv2.imwrite(str(video_dir / f"{number:04d}.png"), img)
    labels_path = tmp_path / "labels.json"
    labels_path.write_text(json.dumps({"vid-5": [1]}))

    source = DiskFramesDataSource(str(tmp_path / "frames"), str(labels_path), 2)
    assert source.video_keys()["vid"] == {1: "vid-0", 2: "vid-1", 3: "vid-2", 4: "vid-5"}

    sampler = PermutedSampler(source.video_keys(), sequence_length=4)
    keys = sampler.sample_keys(1)
    assert [step[0] for step in keys] == ["vid-0", "vid-1", "vid-2", "vid-5"]
    _, labels = source.load_data(keys)
    assert labels[3, 0].tolist() == [0, 1]

    subsampled = SubsampledDataSource(str(tmp_path / "frames"), str(labels_path), 2,
                                      {"subsample_rate": 2})
    assert subsampled.video_keys()["vid"] == {1: "vid-0", 2: "vid-2"}


def test_positive_videos_source_filters_videos_and_labels(frames_dataset):
    frames_root, labels_path = frames_dataset
    source = PositiveVideosDataSource(frames_root, labels_path, 3, {"labels": ["jump"]})
    assert list(source.video_keys()) == ["vidB"]
    assert source.num_labels() == 1

    _, labels = source.load_data([["vidB-1"]])
    assert labels.shape == (1, 1, 1)
    assert labels[0, 0].tolist() == [1]

    all_labels = PositiveVideosDataSource(
        frames_root, labels_path, 3, {"labels": ["jump"], "output_all_labels": True})
    assert all_labels.num_labels() == 3
    _, labels = all_labels.load_data([["vidB-1"]])
    assert labels[0, 0].tolist() == [0, 1, 0]


def test_positive_videos_source_rejects_unknown_label(frames_dataset):
    frames_root, labels_path = frames_dataset
    with pytest.raises(ValueError):
        PositiveVideosDataSource(frames_root, labels_path, 3, {"labels": ["swim"]})


def test_disk_source_missing_paths(tmp_path, frames_dataset):
    frames_root, labels_path = frames_dataset
    with pytest.raises(FileNotFoundError):
        DiskFramesDataSource(str(tmp_path / "missing"), labels_path, 3)
    with pytest.raises(FileNotFoundError):
        DiskFramesDataSource(frames_root, str(tmp_path / "missing.json"), 3)


# =============================
# Samplers
# =============================
def test_permuted_sampler_windows_are_contiguous():
    sampler = PermutedSampler(toy_video_keys(), sequence_length=2)
    # a: starts 1-4, b: start 1
    assert sampler.num_windows() == 5

    keys = sampler.sample_keys(5)
    assert len(keys) == 2
    assert all(len(step) == 5 for step in keys)
    windows = set()
    for first, second in zip(keys[0], keys[1]):
        video, frame = parse_frame_key(first)
        assert second == f"{video}-{frame + 1}"
        windows.add(first)
    # Without replacement one pass visits every window once.
    assert len(windows) == 5


def test_permuted_sampler_step_size():
    sampler = PermutedSampler(toy_video_keys(), sequence_length=3, options={"step_size": 2})
    assert sampler.windows == [("a", 1)]
    assert sampler.sample_keys(1) == [["a-1"], ["a-3"], ["a-5"]]


def test_permuted_sampler_boundary_frames_repeat_last_frame():
    sampler = PermutedSampler(toy_video_keys(), sequence_length=3,
                              options={"use_boundary_frames": True})
    assert sampler.num_windows() == 7
    assert sampler._window_keys("b", 2) == ["b-2", "b-2", "b-2"]


def test_permuted_sampler_needs_long_enough_video():
    with pytest.raises(ValueError):
        PermutedSampler(toy_video_keys(), sequence_length=6)


def test_permuted_sampler_with_replacement():
    sampler = PermutedSampler(toy_video_keys(), sequence_length=2, options={"replace": True})
    keys = sampler.sample_keys(20)
    assert len(keys[0]) == 20


def test_sequential_sampler_walks_videos_with_end_markers():
    sampler = SequentialSampler(toy_video_keys(), sequence_length=2)
    E = END_OF_SEQUENCE
    assert sampler.sample_keys(1) == [["a-1"], ["a-2"]]
    assert sampler.sample_keys(1) == [["a-3"], ["a-4"]]
    assert sampler.sample_keys(1) == [["a-5"], [E]]
    assert sampler.sample_keys(1) == [["b-1"], ["b-2"]]
    # b ended exactly on a batch boundary.
    assert sampler.sample_keys(1) == [[E], [E]]
    # Next pass starts over.
    assert sampler.sample_keys(1) == [["a-1"], ["a-2"]]


def test_sequential_sampler_batch_size_one_only():
    sampler = SequentialSampler(toy_video_keys(), sequence_length=2)
    with pytest.raises(ValueError):
        sampler.sample_keys(2)


def test_build_sampler_by_name():
    assert isinstance(build_sampler("PermutedSampler", toy_video_keys(), 2), PermutedSampler)
    assert isinstance(build_sampler("sequential", toy_video_keys(), 2), SequentialSampler)
    with pytest.raises(ValueError):
        build_sampler("balanced", toy_video_keys(), 2)


# =============================
# DataLoader
# =============================
def test_data_loader_batches(frames_dataset):
    frames_root, labels_path = frames_dataset
    source = DiskFramesDataSource(frames_root, labels_path, num_labels=3)
    loader = DataLoader(source, PermutedSampler(source.video_keys(), sequence_length=2))
    try:
        images, labels = loader.load_batch(3)
        assert len(images) == 2
        assert all(len(step) == 3 for step in images)
        assert labels.shape == (2, 3, 3)

        loader.fetch_batch_async(2)
        images, labels, keys = loader.load_batch(2, return_keys=True)
        assert labels.shape == (2, 2, 3)
        assert len(keys) == 2 and len(keys[0]) == 2

        # A prefetch of another size is discarded.
        loader.fetch_batch_async(4)
        images, labels = loader.load_batch(1)
        assert labels.shape == (2, 1, 3)
        assert loader.num_labels() == 3
        assert loader.num_samples() == 7
    finally:
        loader.close()


# =============================
# Preprocessing
# =============================
def test_augment_sequence_eval_center_crops_and_subtracts_mean():
    frame = torch.arange(3 * 6 * 6, dtype=torch.uint8).reshape(3, 6, 6)
    out = augment_sequence([frame, frame], 4, 4, [1.0, 2.0, 3.0], train_mode=False)
    assert out.shape == (2, 3, 4, 4)
    assert out.dtype == torch.float32
    expected = frame[:, 1:5, 1:5].float() - torch.tensor([1.0, 2.0, 3.0]).view(3, 1, 1)
    assert torch.equal(out[0], expected)
    assert torch.equal(out[1], expected)


def test_augment_sequence_train_shares_crop_across_frames():
    frame = torch.randint(0, 255, (3, 10, 10), dtype=torch.uint8)
    out = augment_sequence([frame, frame.clone(), frame.clone()], 6, 6, [0, 0, 0])
    assert out.shape == (3, 3, 6, 6)
    assert torch.equal(out[0], out[1])
    assert torch.equal(out[0], out[2])


def test_augment_upscales_small_frames():
    frame = torch.full((3, 4, 5), 7, dtype=torch.uint8)
    out = augment_image_train(frame, 8, 8, [0, 0, 0])
    assert out.shape == (3, 8, 8)
    assert torch.all(out == 7)
    assert augment_image_eval(frame, 8, 8, [7, 7, 7]).abs().sum() == 0
