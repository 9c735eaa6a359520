"""
Frame preprocessing: crop, flip, mean subtraction.

Input frames are (C, H, W) uint8 tensors straight from a data source.
Frames of one sequence share a crop window and flip, so consecutive-frame
differences reflect the video and not the augmentation.
"""

import random
import cv2
import numpy as np
import torch


def _ensure_min_size(img, crop_h, crop_w):
    """Upscale (C, H, W) frames smaller than the crop, keeping aspect ratio."""
    _, h, w = img.shape
    if h >= crop_h and w >= crop_w:
        return img
    scale = max(crop_h / h, crop_w / w)
    new_w, new_h = int(np.ceil(w * scale)), int(np.ceil(h * scale))
    hwc = np.ascontiguousarray(img.permute(1, 2, 0).cpu().numpy())
    resized = cv2.resize(hwc, (new_w, new_h), interpolation=cv2.INTER_LINEAR)
    if resized.ndim == 2:
        resized = resized[:, :, None]
    return torch.from_numpy(np.ascontiguousarray(resized)).permute(2, 0, 1)


def _subtract_mean(img, pixel_mean):
    mean = torch.as_tensor(pixel_mean, dtype=torch.float32).view(-1, 1, 1)
    return img.float() - mean


def augment_sequence(frames, crop_h, crop_w, pixel_mean, train_mode=True):
    """
    Preprocess the frames of one sequence.

    Train mode: one random crop window and a random horizontal flip shared by
    all frames. Eval mode: center crop. Both subtract the pixel mean.

    Returns:
        float tensor (T, C, crop_h, crop_w)
    """
    frames = [_ensure_min_size(f, crop_h, crop_w) for f in frames]
    _, h, w = frames[0].shape
    if train_mode:
        y = random.randint(0, h - crop_h)
        x = random.randint(0, w - crop_w)
        flip = random.random() < 0.5
    else:
        y = (h - crop_h) // 2
        x = (w - crop_w) // 2
        flip = False

    out = []
    for frame in frames:
        frame = frame[:, y:y + crop_h, x:x + crop_w]
        if flip:
            frame = frame.flip(-1)
        out.append(_subtract_mean(frame, pixel_mean))
    return torch.stack(out, dim=0)


def augment_image_train(img, crop_h, crop_w, pixel_mean):
    return augment_sequence([img], crop_h, crop_w, pixel_mean, train_mode=True)[0]


def augment_image_eval(img, crop_h, crop_w, pixel_mean):
    return augment_sequence([img], crop_h, crop_w, pixel_mean, train_mode=False)[0]
