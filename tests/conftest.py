import json

import cv2
import numpy as np
import pytest

LABEL_MAP = {"run": 0, "jump": 1, "throw": 2}


def _write_video(root, name, num_frames, base):
    video_dir = root / name
    video_dir.mkdir(parents=True)
    for frame in range(1, num_frames + 1):
        img = np.full((12, 16, 3), base + 10 * frame, dtype=np.uint8)
        cv2.imwrite(str(video_dir / f"frame{frame:04d}.png"), img)


@pytest.fixture
def frames_dataset(tmp_path):
    """Two videos (vidA: 5 frames, vidB: 2 frames) of 12x16 gray frames + labels."""
    frames_root = tmp_path / "frames"
    _write_video(frames_root, "vidA", 5, base=0)
    _write_video(frames_root, "vidB", 2, base=100)

    labels = {
        "vidA-1": [0],
        "vidA-2": [0, 2],
        "vidA-3": [2],
        "vidB-1": [1],
        "label_map": LABEL_MAP,
    }
    labels_path = tmp_path / "labels.json"
    labels_path.write_text(json.dumps(labels))
    return str(frames_root), str(labels_path)
