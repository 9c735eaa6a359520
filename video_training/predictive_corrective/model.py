"""
Predictive-Corrective Model Components
========================================

- TimeDistributed: apply a per-frame module to (steps, batch, ...) input
- PredictiveCorrectiveNet: lower layers in a PredictiveCorrectiveBlock,
  upper layers + classifier applied to every step
- build_model: VGG-16 or small CNN backbone split at a configurable layer
"""

import copy
import torch.nn as nn
import torchvision.models as models

from video_training.layers import PredictiveCorrectiveBlock


# =============================
# Per-step wrapper
# =============================
class TimeDistributed(nn.Module):
    """Run `module` on every step by folding time into the batch dimension."""

    def __init__(self, module):
        super().__init__()
        self.module = module

    def forward(self, x):
        steps, batch = x.shape[:2]
        y = self.module(x.reshape(steps * batch, *x.shape[2:]))
        return y.reshape(steps, batch, *y.shape[1:])


# =============================
# Network
# =============================
class PredictiveCorrectiveNet(nn.Module):
    """
    (steps, batch, C, H, W) -> (steps, batch, num_labels)

    Architecture:
        frames → PredictiveCorrectiveBlock(init, update) → TimeDistributed(head)
    """

    def __init__(self, init, update, head, init_threshold, max_update=None,
                 ignore_threshold=None, verbose=False):
        super().__init__()
        self.block = PredictiveCorrectiveBlock(
            init, update, init_threshold,
            max_update=max_update, ignore_threshold=ignore_threshold, verbose=verbose,
        )
        self.head = TimeDistributed(head)

    def forward(self, x):
        return self.head(self.block(x))

    def clear_state(self):
        self.block.clear_state()

    def forget(self):
        """Called between videos; the block keeps no memory across calls."""
        self.block.clear_state()


# =============================
# Backbones
# =============================
def _small_features():
    return nn.Sequential(
        nn.Conv2d(3, 16, kernel_size=3, padding=1),
        nn.ReLU(inplace=True),
        nn.MaxPool2d(2),
        nn.Conv2d(16, 32, kernel_size=3, padding=1),
        nn.ReLU(inplace=True),
        nn.MaxPool2d(2),
        nn.Conv2d(32, 64, kernel_size=3, padding=1),
        nn.ReLU(inplace=True),
    )


def _split_small(num_labels, config):
    features = _small_features()
    split = config.get("split_layer", 2)
    head = nn.Sequential(
        *features[split:],
        nn.AdaptiveAvgPool2d(1),
        nn.Flatten(),
        nn.Dropout(config.get("dropout_p", 0.5)),
        nn.Linear(64, num_labels),
    )
    return features[:split], head


def _split_vgg16(num_labels, config):
    weights = "DEFAULT" if config.get("pretrained", True) else None
    vgg = models.vgg16(weights=weights)
    split = config.get("split_layer", 16)
    dropout = config.get("dropout_p", 0.5)

    classifier = vgg.classifier
    for m in classifier:
        if isinstance(m, nn.Dropout):
            m.p = dropout
    in_features = classifier[-1].in_features
    classifier[-1] = nn.Linear(in_features, num_labels)

    head = nn.Sequential(
        *vgg.features[split:],
        vgg.avgpool,
        nn.Flatten(),
        classifier,
    )
    return vgg.features[:split], head


BACKBONES = {
    "small": _split_small,
    "vgg16": _split_vgg16,
}


def _reset_parameters(module):
    for m in module.modules():
        if hasattr(m, "reset_parameters"):
            m.reset_parameters()


def build_model(num_labels, config):
    """
    Build a PredictiveCorrectiveNet.

    Args:
        num_labels: Output size.
        config: Dict with keys: backbone, pretrained, split_layer, dropout_p,
            update_init, init_threshold, max_update, ignore_threshold,
            block_verbose

    Returns:
        nn.Module on CPU (caller moves to device)
    """
    name = config.get("backbone", "vgg16")
    if name not in BACKBONES:
        raise ValueError(f"Unknown backbone: {name}. Use {' / '.join(BACKBONES)}")

    print(f"🚀 Building {name} predictive-corrective model "
          f"(split_layer={config.get('split_layer')}, pretrained={config.get('pretrained', True)})...")
    init, head = BACKBONES[name](num_labels, config)

    update = copy.deepcopy(init)
    if config.get("update_init", "copy") == "random":
        _reset_parameters(update)

    model = PredictiveCorrectiveNet(
        init, update, head,
        init_threshold=config.get("init_threshold", 0.5),
        max_update=config.get("max_update"),
        ignore_threshold=config.get("ignore_threshold"),
        verbose=config.get("block_verbose", False),
    )
    print(f"   Block: {model.block.extra_repr()}")

    total = sum(p.numel() for p in model.parameters())
    trainable = sum(p.numel() for p in model.parameters() if p.requires_grad)
    print(f"   Params: {total:,} total, {trainable:,} trainable")
    return model
