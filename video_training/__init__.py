"""
Video Training Package
=======================

Training for multi-label video-frame classifiers built around the
predictive-corrective block: lower network layers run in full ("init") only
when consecutive frames differ enough, and otherwise run a cheap correction
("update") on the frame difference that is added to the previous output.

Layout:
  - layers/:                PredictiveCorrectiveBlock and its graph builder
  - shared/:                data sources, samplers, trainers, metrics, utils
  - predictive_corrective/: config, model assembly and training entry point

Usage (always run from project root):

    python -m video_training.predictive_corrective.train
    python -m video_training.predictive_corrective.train --config my.yaml --backbone small
"""
