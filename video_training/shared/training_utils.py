"""
Shared Training Utilities
==========================

Seed management, learning-rate regimes, YAML config merging and
checkpoint save/load.
"""

import os
import random
import yaml
import numpy as np
import torch


# =============================
# Reproducibility
# =============================
def set_seed(seed=0):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)
    torch.backends.cudnn.deterministic = True
    torch.backends.cudnn.benchmark = False


# =============================
# Learning-rate regimes
# =============================
def epoch_learning_rate(learning_rates, epoch):
    """
    Learning rate of the regime covering `epoch`.

    Args:
        learning_rates: [{"start_epoch": 1, "learning_rate": 1e-2},
                         {"start_epoch": 6, "learning_rate": 1e-3}, ...]
            sorted by start_epoch. The example uses 1e-2 for epochs 1-5, then
            1e-3 from epoch 6 on.
        epoch: 1-based epoch number.

    Returns:
        (learning_rate, is_new_regime) where is_new_regime is True on the
        first epoch of a regime.
    """
    if not learning_rates:
        raise ValueError("learning_rates must contain at least one regime")

    regime = learning_rates[-1]
    for current, following in zip(learning_rates, learning_rates[1:]):
        if current["start_epoch"] <= epoch < following["start_epoch"]:
            regime = current
            break
    return regime["learning_rate"], epoch == regime["start_epoch"]


# =============================
# Config
# =============================
def load_yaml_config(path, defaults):
    """Return a copy of `defaults` updated with the keys of a YAML file."""
    config = dict(defaults)
    if not path:
        return config
    if not os.path.exists(path):
        raise FileNotFoundError(f"Config not found: {path}")
    with open(path, "r") as f:
        overrides = yaml.safe_load(f) or {}
    config.update(overrides)
    print(f"✅ Loaded {path} ({len(overrides)} keys)")
    return config


# =============================
# Checkpoint Management
# =============================
def save_checkpoint(model, optimizer, epoch, checkpoint_path, config=None, extra=None):
    """
    Save model + optimizer state.

    Modules with a clone pool (PredictiveCorrectiveBlock) only contribute
    their seed init/update weights and thresholds; the pool is rebuilt on load.
    """
    os.makedirs(os.path.dirname(checkpoint_path) or ".", exist_ok=True)

    ckpt = {
        "epoch": epoch,
        "model_state_dict": model.state_dict(),
        "optimizer_state_dict": optimizer.state_dict() if optimizer else None,
        "config": dict(config) if config else {},
    }
    if extra:
        ckpt.update(extra)

    torch.save(ckpt, checkpoint_path)
    print(f"💾 Checkpoint saved: {checkpoint_path} (epoch {epoch})")


def load_checkpoint(checkpoint_path, model, optimizer=None, device="cpu"):
    """Load a checkpoint written by save_checkpoint. Returns the dict or None."""
    if not os.path.exists(checkpoint_path):
        print(f"❌ Checkpoint not found: {checkpoint_path}")
        return None

    print(f"📂 Loading checkpoint: {checkpoint_path}")
    ckpt = torch.load(checkpoint_path, map_location=device, weights_only=False)

    model.load_state_dict(ckpt["model_state_dict"])
    if optimizer and ckpt.get("optimizer_state_dict"):
        try:
            optimizer.load_state_dict(ckpt["optimizer_state_dict"])
        except ValueError as e:
            print(f"⚠️  Could not load optimizer state: {e}")

    print(f"✅ Checkpoint loaded (epoch {ckpt['epoch']})")
    return ckpt
