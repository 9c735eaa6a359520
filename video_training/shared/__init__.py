"""Data loading, trainers, metrics and utilities shared by training pipelines."""
