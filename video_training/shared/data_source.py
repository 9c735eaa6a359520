"""
Shared Data Sources
====================

On-disk video frames with multi-label per-frame annotations.

Layout:
    frames_root/<video>/<frame>.png|.jpg     ordered by the digits of <frame>
    labels.json: {"<video>-<frame>": [label ids], ..., "label_map": {name: id}}

Label ids start at 0. The optional "label_map" entry names the labels.
"""

import os
import re
import glob
import json
import cv2
import numpy as np
import torch


class _EndOfSequence:
    """Marker filling the steps of a batch after a video has run out of frames."""

    def __repr__(self):
        return "END_OF_SEQUENCE"

    def __reduce__(self):
        return "END_OF_SEQUENCE"


END_OF_SEQUENCE = _EndOfSequence()

_FRAME_KEY_RE = re.compile(r"^(.+)-(\d+)$")
_IMAGE_EXTENSIONS = ("*.png", "*.jpg", "*.jpeg")


# =============================
# Keys & labels
# =============================
def parse_frame_key(key):
    """'<video>-<frame>' -> (video, frame)"""
    match = _FRAME_KEY_RE.match(key)
    if match is None:
        raise ValueError(f"Malformed frame key: {key!r}")
    return match.group(1), int(match.group(2))


def frame_key(video, frame):
    return f"{video}-{frame}"


def labels_to_tensor(label_ids, num_labels):
    """Multi-hot uint8 vector from a list of label ids."""
    labels = torch.zeros(num_labels, dtype=torch.uint8)
    for label in label_ids:
        labels[label] = 1
    return labels


# =============================
# Interface
# =============================
class VideoDataSource:
    """
    Interface shared by all data sources.

    video_keys() maps every video to {frame_index: key}, frame indices being
    contiguous from 1. load_data(keys) takes keys[step][batch] and returns
    (batch_images[step][batch], labels of shape (num_steps, batch, num_labels)).
    """

    def num_samples(self):
        raise NotImplementedError

    def video_keys(self):
        raise NotImplementedError

    def num_labels(self):
        raise NotImplementedError

    def load_data(self, keys, load_images=True):
        raise NotImplementedError


# =============================
# Disk frames + JSON labels
# =============================
class DiskFramesDataSource(VideoDataSource):
    """
    Args:
        frames_root: Directory with one sub-directory of frames per video.
        labels_path: JSON file mapping frame keys to label ids.
        num_labels: Total number of labels in the dataset.
        options:
            subsample_rate (int): Keep every k-th frame (1 = all).
            labels (list of str): Only keep 'positive' videos, i.e. videos
                with at least one frame carrying one of these labels.
            output_all_labels (bool): With `labels`, still output every label
                column instead of only the positive ones.
    """

    def __init__(self, frames_root, labels_path, num_labels, options=None):
        options = options or {}
        if not os.path.isdir(frames_root):
            raise FileNotFoundError(f"Frames root not found: {frames_root}")
        if not os.path.exists(labels_path):
            raise FileNotFoundError(f"Labels file not found: {labels_path}")

        self.frames_root = frames_root
        self.labels_path = labels_path
        self.num_labels_ = num_labels
        self.subsample_rate = int(options.get("subsample_rate", 1))
        self.output_all_labels = options.get("output_all_labels", False)

        with open(labels_path, "r") as f:
            raw = json.load(f)
        self.label_map = raw.pop("label_map", {})
        self.key_labels = {key: list(ids) for key, ids in raw.items()}

        self.frame_paths = {}
        self.video_keys_ = {}
        for video_dir in sorted(os.listdir(frames_root)):
            video_path = os.path.join(frames_root, video_dir)
            if not os.path.isdir(video_path):
                continue
            numbered = []
            for path in self._list_frames(video_path):
                digits = re.sub(r"\D", "", os.path.splitext(os.path.basename(path))[0])
                if digits:
                    numbered.append((int(digits), path))
            numbered.sort()

            # Sampler indices run 1..N whatever the on-disk numbering.
            for position, (number, path) in enumerate(numbered[::self.subsample_rate]):
                key = frame_key(video_dir, number)
                self.frame_paths[key] = path
                self.video_keys_.setdefault(video_dir, {})[position + 1] = key

        self.positive_label_ids = None
        positive_names = options.get("labels")
        if positive_names:
            self._filter_positive_videos(positive_names)

        self.num_keys = sum(len(frames) for frames in self.video_keys_.values())
        print(f"📊 {type(self).__name__}: {len(self.video_keys_)} videos, "
              f"{self.num_keys} frames, {self.num_labels()} labels")

    @staticmethod
    def _list_frames(video_path):
        paths = []
        for pattern in _IMAGE_EXTENSIONS:
            paths.extend(glob.glob(os.path.join(video_path, pattern)))
        return sorted(paths)

    def _filter_positive_videos(self, names):
        unknown = [n for n in names if n not in self.label_map]
        if unknown:
            raise ValueError(f"Unknown positive labels: {unknown}")
        self.positive_label_ids = sorted(self.label_map[n] for n in names)
        positive = set(self.positive_label_ids)

        for video in list(self.video_keys_):
            keys = self.video_keys_[video].values()
            if not any(positive.intersection(self.key_labels.get(k, [])) for k in keys):
                del self.video_keys_[video]

    # ------------------------------------------------------------------
    def num_samples(self):
        return self.num_keys

    def video_keys(self):
        return self.video_keys_

    def num_labels(self):
        if self.positive_label_ids is not None and not self.output_all_labels:
            return len(self.positive_label_ids)
        return self.num_labels_

    def load_image(self, key):
        """(C, H, W) uint8 RGB tensor."""
        img = cv2.imread(self.frame_paths[key], cv2.IMREAD_COLOR)
        if img is None:
            raise IOError(f"Could not read frame: {self.frame_paths[key]}")
        img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
        return torch.from_numpy(np.ascontiguousarray(img.transpose(2, 0, 1)))

    def load_data(self, keys, load_images=True):
        num_steps = len(keys)
        batch_size = len(keys[0])
        batch_labels = torch.zeros(num_steps, batch_size, self.num_labels_, dtype=torch.uint8)
        batch_images = [[] for _ in range(num_steps)]

        for step in range(num_steps):
            for i in range(batch_size):
                key = keys[step][i]
                if key is END_OF_SEQUENCE:
                    batch_images[step].append(END_OF_SEQUENCE)
                    continue
                img = self.load_image(key) if load_images else torch.empty(0, dtype=torch.uint8)
                batch_images[step].append(img)
                batch_labels[step, i] = labels_to_tensor(
                    self.key_labels.get(key, []), self.num_labels_)

        if self.positive_label_ids is not None and not self.output_all_labels:
            batch_labels = batch_labels[:, :, self.positive_label_ids]
        return batch_images, batch_labels


class SubsampledDataSource(DiskFramesDataSource):
    """DiskFramesDataSource that requires a subsample_rate."""

    def __init__(self, frames_root, labels_path, num_labels, options=None):
        if not options or options.get("subsample_rate") is None:
            raise ValueError("SubsampledDataSource requires options['subsample_rate']")
        super().__init__(frames_root, labels_path, num_labels, options)


class PositiveVideosDataSource(DiskFramesDataSource):
    """DiskFramesDataSource restricted to videos containing options['labels']."""

    def __init__(self, frames_root, labels_path, num_labels, options=None):
        if not options or not options.get("labels"):
            raise ValueError("PositiveVideosDataSource requires options['labels']")
        super().__init__(frames_root, labels_path, num_labels, options)


DATA_SOURCES = {
    "DiskFramesDataSource": DiskFramesDataSource,
    "SubsampledDataSource": SubsampledDataSource,
    "PositiveVideosDataSource": PositiveVideosDataSource,
}
