"""Custom layers: the predictive-corrective block and its graph machinery."""

from .predictive_corrective import (
    Regime,
    DeltaClassifier,
    ModuleResource,
    DataflowGraph,
    DataflowGraphBuilder,
    PredictiveCorrectiveBlock,
    shared_clone,
    NULL_TRANSFORM,
)
