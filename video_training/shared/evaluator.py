"""
Multi-label evaluation: per-label average precision and its mean.
"""

import numpy as np
import torch
from sklearn.metrics import average_precision_score


def _to_numpy(x):
    if isinstance(x, torch.Tensor):
        return x.detach().cpu().numpy()
    return np.asarray(x)


def compute_average_precision(scores, labels):
    """
    Average precision of one label.

    Args:
        scores: (N,) prediction scores, higher = more confident.
        labels: (N,) binary groundtruth.

    Returns:
        float AP, or nan when there is no positive.
    """
    scores = _to_numpy(scores).astype(np.float64).ravel()
    labels = _to_numpy(labels).astype(bool).ravel()
    if not labels.any():
        return float("nan")
    return float(average_precision_score(labels, scores))


def compute_mean_average_precision(predictions, groundtruth):
    """
    Mean AP over the labels that have at least one positive.

    Args:
        predictions: (N, num_labels) scores.
        groundtruth: (N, num_labels) binary labels.
    """
    predictions = _to_numpy(predictions)
    groundtruth = _to_numpy(groundtruth)
    aps = [
        compute_average_precision(predictions[:, label], groundtruth[:, label])
        for label in range(predictions.shape[1])
    ]
    aps = [ap for ap in aps if not np.isnan(ap)]
    if not aps:
        return 0.0
    return float(np.mean(aps))
