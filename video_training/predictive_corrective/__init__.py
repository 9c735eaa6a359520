"""
Predictive-Corrective Pipeline
================================

VGG-16 (or a small CNN) whose lower layers form a PredictiveCorrectiveBlock.

    python -m video_training.predictive_corrective.train
"""
