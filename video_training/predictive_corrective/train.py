"""
Predictive-Corrective Training Script
=======================================

Usage (run from project root):

    python -m video_training.predictive_corrective.train
    python -m video_training.predictive_corrective.train --config config/pc.yaml
    python -m video_training.predictive_corrective.train --resume checkpoints_pc/model_10.pth
    python -m video_training.predictive_corrective.train --backbone small --device cpu

Options:
    --config            YAML file whose keys override the defaults in config.py
    --resume            Checkpoint to resume from (sets model_init)
    --init-epoch        Epoch to start at (default: 1, or checkpoint epoch + 1)
    --epochs            Number of training epochs
    --batch-size        Examples per optimizer step
    --backbone          vgg16 | small
    --init-threshold    Reinitialize when the mean frame difference exceeds this
    --max-update        Force a reinit after this many update steps
    --ignore-threshold  Skip steps whose mean frame difference is at or below this
    --checkpoint-dir    Where to save model_<epoch>.pth
    --device            cuda | cpu
"""

import os
import sys
import argparse

# ---- Make imports work regardless of how the script is launched ----
_THIS_DIR = os.path.dirname(os.path.abspath(__file__))
_PROJECT_ROOT = os.path.abspath(os.path.join(_THIS_DIR, "..", ".."))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

import torch
import torch.nn as nn

# Shared
from video_training.shared.data_source import DATA_SOURCES
from video_training.shared.data_loader import DataLoader, build_sampler
from video_training.shared.trainer import Trainer, SequentialTrainer
from video_training.shared.training_utils import (
    set_seed,
    load_yaml_config,
    load_checkpoint,
)

# Predictive-corrective specific
from video_training.predictive_corrective.config import CONFIG
from video_training.predictive_corrective.model import build_model


TRAINERS = {
    "Trainer": Trainer,
    "SequentialTrainer": SequentialTrainer,
}


# =============================
# Data
# =============================
def build_data_loader(config, split):
    source_class = DATA_SOURCES[config["data_source_class"]]
    options = dict(config[f"{split}_source_options"])
    frames_root = options.pop("frames_root")
    labels_path = options.pop("labels_path")
    source = source_class(frames_root, labels_path, config["num_labels"], options)

    sampler_options = dict(config.get("sampler_options") or {})
    sampler_options.setdefault("use_boundary_frames", config.get("use_boundary_frames", False))
    sampler = build_sampler(
        config["sampler_class"], source.video_keys(), config["sequence_length"], sampler_options)
    return DataLoader(source, sampler)


# =============================
# Training Loop
# =============================
def train(config):
    device = torch.device(config["device"])
    set_seed(config["seed"])

    print("=" * 60)
    print("🧠 PREDICTIVE-CORRECTIVE TRAINING")
    print("=" * 60)

    train_loader = build_data_loader(config, "train")
    val_loader = build_data_loader(config, "val")
    num_labels = train_loader.num_labels()

    model = build_model(num_labels, config)

    start_epoch = config.get("init_epoch", 1)
    optimizer_state = None
    if config.get("model_init"):
        ckpt = load_checkpoint(config["model_init"], model, device="cpu")
        if ckpt is None:
            sys.exit(1)
        optimizer_state = ckpt.get("optimizer_state_dict")
        if config.get("resume_from_checkpoint_epoch", False):
            start_epoch = ckpt["epoch"] + 1
    model = model.to(device)

    trainer_class = TRAINERS[config.get("trainer_class", "Trainer")]
    trainer = trainer_class(
        model,
        nn.BCEWithLogitsLoss(),
        train_loader,
        val_loader,
        pixel_mean=config["pixel_mean"],
        batch_size=config["batch_size"],
        crop_size=config["crop_size"],
        learning_rates=config["learning_rates"],
        num_labels=num_labels,
        computational_batch_size=config.get("computational_batch_size"),
        momentum=config["momentum"],
        weight_decay=config["weight_decay"],
        input_dimension_permutation=config.get("input_dimension_permutation"),
        optimizer_state=optimizer_state,
        device=config["device"],
    )

    history = []
    os.makedirs(config["checkpoint_dir"], exist_ok=True)
    end_epoch = start_epoch + config["num_epochs"]
    for epoch in range(start_epoch, end_epoch):
        train_stats = trainer.train_epoch(epoch, config["epoch_size"])
        val_stats = trainer.evaluate_epoch(epoch, config.get("val_epoch_size", config["epoch_size"]))
        history.append({"epoch": epoch, "train": train_stats, "val": val_stats})

        every = config.get("save_checkpoint_every")
        if every and (epoch - start_epoch + 1) % every == 0:
            trainer.save(config["checkpoint_dir"], epoch)

    train_loader.close()
    val_loader.close()
    print(f"\n✅ Done! Checkpoints in {config['checkpoint_dir']}")
    return history


# =============================
# Main
# =============================
def main(argv=None):
    parser = argparse.ArgumentParser(description="Predictive-corrective video model training")
    parser.add_argument("--config", type=str, default=None)
    parser.add_argument("--resume", type=str, default=None)
    parser.add_argument("--init-epoch", type=int, default=None)
    parser.add_argument("--epochs", type=int, default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--backbone", type=str, default=None, choices=["vgg16", "small"])
    parser.add_argument("--init-threshold", type=float, default=None)
    parser.add_argument("--max-update", type=int, default=None)
    parser.add_argument("--ignore-threshold", type=float, default=None)
    parser.add_argument("--checkpoint-dir", type=str, default=None)
    parser.add_argument("--device", type=str, default=None)
    args = parser.parse_args(argv)

    config = load_yaml_config(args.config, CONFIG)

    # Override config from CLI
    if args.resume:
        config["model_init"] = args.resume
        config["resume_from_checkpoint_epoch"] = args.init_epoch is None
    if args.init_epoch:
        config["init_epoch"] = args.init_epoch
    if args.epochs:
        config["num_epochs"] = args.epochs
    if args.batch_size:
        config["batch_size"] = args.batch_size
    if args.backbone:
        config["backbone"] = args.backbone
    if args.init_threshold is not None:
        config["init_threshold"] = args.init_threshold
    if args.max_update is not None:
        config["max_update"] = args.max_update
    if args.ignore_threshold is not None:
        config["ignore_threshold"] = args.ignore_threshold
    if args.checkpoint_dir:
        config["checkpoint_dir"] = args.checkpoint_dir
    if args.device:
        config["device"] = args.device

    train(config)


if __name__ == "__main__":
    main()
