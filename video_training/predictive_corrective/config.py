"""
Predictive-Corrective Training Configuration
==============================================

VGG-16 split into a predictive-corrective lower half (init / update) and a
per-frame upper half. Multi-label (MultiTHUMOS-style) per-frame labels.

Any key can be overridden with a YAML file (--config) and then CLI flags.
"""

import torch

CONFIG = {
    # --- general ---
    "seed": 0,
    "device": "cuda" if torch.cuda.is_available() else "cpu",

    # --- data ---
    "data_source_class": "DiskFramesDataSource",
    "train_source_options": {
        "frames_root": "data/frames/train",
        "labels_path": "data/labels/train.json",
    },
    "val_source_options": {
        "frames_root": "data/frames/val",
        "labels_path": "data/labels/val.json",
    },
    "num_labels": 65,
    "crop_size": 224,
    "pixel_mean": [92.4318769, 99.46975121, 100.62499024],

    # --- training ---
    "trainer_class": "Trainer",          # Trainer | SequentialTrainer
    "num_epochs": 50,
    "epoch_size": 500,                   # batches (or sequences) per epoch
    "val_epoch_size": 100,
    "init_epoch": 1,
    "batch_size": 50,
    "computational_batch_size": 4,
    "sampler_class": "PermutedSampler",  # PermutedSampler | SequentialSampler
    "sampler_options": {"replace": False},
    "sequence_length": 8,
    "use_boundary_frames": False,
    "input_dimension_permutation": None,

    # --- optimization ---
    "momentum": 0.9,
    "weight_decay": 5e-4,
    "learning_rates": [
        {"start_epoch": 1, "learning_rate": 2.5e-3},
        {"start_epoch": 11, "learning_rate": 2.5e-4},
        {"start_epoch": 21, "learning_rate": 2.5e-5},
        {"start_epoch": 31, "learning_rate": 2.5e-6},
        {"start_epoch": 41, "learning_rate": 2.5e-7},
    ],
    "dropout_p": 0.9,

    # --- model ---
    "backbone": "vgg16",                 # vgg16 | small
    "pretrained": True,
    "split_layer": 16,                   # VGG feature index where the block ends (after conv3_3 + ReLU)
    "update_init": "copy",               # copy | random
    "init_threshold": 0.5,
    "max_update": None,                  # None = unbounded
    "ignore_threshold": None,            # None = never ignore
    "block_verbose": False,
    "model_init": None,                  # checkpoint to start from

    # --- checkpointing ---
    "checkpoint_dir": "checkpoints_pc",
    "save_checkpoint_every": 1,
}
