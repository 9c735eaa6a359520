"""
Shared Data Loading
====================

Samplers pick frame keys, the DataLoader turns them into batches:

    images[step][batch]          (C, H, W) uint8 tensors or END_OF_SEQUENCE
    labels (steps, batch, L)     multi-hot uint8

- PermutedSampler:   random fixed-length windows, for frame/clip training
- SequentialSampler: whole videos in order, one video at a time, padded with
                     END_OF_SEQUENCE once the video runs out of frames
"""

import random
from concurrent.futures import ThreadPoolExecutor

from .data_source import END_OF_SEQUENCE


# =============================
# Samplers
# =============================
class PermutedSampler:
    """
    Args:
        video_keys: {video: {frame_index: key}} with frame indices from 1.
        sequence_length: Steps per sampled window.
        options:
            step_size (int): Frame stride inside a window (default 1).
            replace (bool): Sample windows with replacement (default False:
                walk a shuffled permutation, reshuffling once exhausted).
            use_boundary_frames (bool): Also use windows running past the end
                of a video; missing steps repeat the last frame.
    """

    def __init__(self, video_keys, sequence_length, options=None):
        options = options or {}
        self.video_keys = video_keys
        self.sequence_length = sequence_length
        self.step_size = options.get("step_size", 1)
        self.replace = options.get("replace", False)
        self.use_boundary_frames = options.get("use_boundary_frames", False)

        span = (sequence_length - 1) * self.step_size
        self.windows = []
        for video in sorted(video_keys):
            num_frames = len(video_keys[video])
            for start in range(1, num_frames + 1):
                if start + span <= num_frames or self.use_boundary_frames:
                    self.windows.append((video, start))
        if not self.windows:
            raise ValueError(
                f"No video has {span + 1} frames for sequence_length={sequence_length}")

        self._order = []
        self._cursor = 0

    def num_windows(self):
        return len(self.windows)

    def _next_window(self):
        if self.replace:
            return random.choice(self.windows)
        if self._cursor >= len(self._order):
            self._order = list(range(len(self.windows)))
            random.shuffle(self._order)
            self._cursor = 0
        window = self.windows[self._order[self._cursor]]
        self._cursor += 1
        return window

    def _window_keys(self, video, start):
        frames = self.video_keys[video]
        last = len(frames)
        return [frames[min(start + s * self.step_size, last)]
                for s in range(self.sequence_length)]

    def sample_keys(self, batch_size):
        """keys[step][batch]"""
        windows = [self._window_keys(*self._next_window()) for _ in range(batch_size)]
        return [[w[step] for w in windows] for step in range(self.sequence_length)]


class SequentialSampler:
    """
    Walk through every video in order, sequence_length frames at a time.

    Only batch size 1 is supported. A batch that reaches the end of a video is
    padded with END_OF_SEQUENCE and the next batch starts the next video. When
    a video ends exactly on a batch boundary, the following batch is made of
    END_OF_SEQUENCE only.

    Args:
        options:
            shuffle (bool): Visit videos in a random order each pass.
    """

    def __init__(self, video_keys, sequence_length, options=None):
        options = options or {}
        if not video_keys:
            raise ValueError("SequentialSampler needs at least one video")
        self.video_keys = video_keys
        self.sequence_length = sequence_length
        self.shuffle = options.get("shuffle", False)
        self.videos = sorted(video_keys)
        self._start_pass()

    def _start_pass(self):
        if self.shuffle:
            random.shuffle(self.videos)
        self.video_index = 0
        self.next_frame = 1

    def _advance_video(self):
        self.video_index += 1
        self.next_frame = 1
        if self.video_index >= len(self.videos):
            self._start_pass()

    def sample_keys(self, batch_size):
        if batch_size != 1:
            raise ValueError("SequentialSampler only supports batch size 1")

        frames = self.video_keys[self.videos[self.video_index]]
        if self.next_frame > len(frames):
            self._advance_video()
            return [[END_OF_SEQUENCE] for _ in range(self.sequence_length)]

        keys = []
        for step in range(self.sequence_length):
            index = self.next_frame + step
            keys.append([frames[index] if index <= len(frames) else END_OF_SEQUENCE])
        self.next_frame += self.sequence_length

        if keys[-1][0] is END_OF_SEQUENCE:
            self._advance_video()
        return keys


SAMPLERS = {
    "permuted": PermutedSampler,
    "permutedsampler": PermutedSampler,
    "sequential": SequentialSampler,
    "sequentialsampler": SequentialSampler,
}


def build_sampler(name, video_keys, sequence_length, options=None):
    """Look up a sampler by (case-insensitive) config name."""
    key = name.lower()
    if key not in SAMPLERS:
        raise ValueError(f"Unknown sampler: {name}. Use one of {sorted(set(SAMPLERS))}")
    return SAMPLERS[key](video_keys, sequence_length, options)


# =============================
# DataLoader
# =============================
class DataLoader:
    """Loads batches from a data source, optionally prefetching the next one."""

    def __init__(self, data_source, sampler):
        self.data_source = data_source
        self.sampler = sampler
        self._executor = ThreadPoolExecutor(max_workers=1)
        self._pending = None   # (batch_size, Future)

    def num_samples(self):
        return self.data_source.num_samples()

    def num_labels(self):
        return self.data_source.num_labels()

    def _load(self, batch_size):
        keys = self.sampler.sample_keys(batch_size)
        images, labels = self.data_source.load_data(keys)
        return images, labels, keys

    def fetch_batch_async(self, batch_size):
        """Start loading the next batch in a background thread."""
        if self._pending is not None:
            return
        self._pending = (batch_size, self._executor.submit(self._load, batch_size))

    def load_batch(self, batch_size, return_keys=False):
        """
        Returns:
            images: list (steps) of lists (batch) of tensors / END_OF_SEQUENCE
            labels: uint8 tensor (steps, batch, num_labels)
            keys: only with return_keys=True
        """
        batch = None
        if self._pending is not None:
            pending_size, future = self._pending
            self._pending = None
            result = future.result()
            if pending_size == batch_size:
                batch = result
        if batch is None:
            batch = self._load(batch_size)

        images, labels, keys = batch
        if return_keys:
            return images, labels, keys
        return images, labels

    def close(self):
        self._executor.shutdown(wait=True)
