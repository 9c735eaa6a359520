"""
Predictive-Corrective Block
============================

Given inputs x_1, ..., x_T the block produces y_1, ..., y_T with

    reinit:  y_t = init(x_t)
    update:  y_t = y_{t-1} + update(x_t - x_{t-1})
    ignore:  y_t = y_{t-1}

The branch for every step is picked at forward time from the mean difference
between consecutive inputs, so the compute graph is rebuilt on each call:

    differencer  ->  transform  ->  accumulator

- DeltaClassifier:       picks the regime of one step
- ModuleResource:        pool of shared-parameter clones of init / update
- DataflowGraphBuilder:  builds the three aligned op lists for a sequence
- PredictiveCorrectiveBlock: nn.Module wiring it all together
"""

import copy
import enum
import math
from collections import Counter, namedtuple

import torch
import torch.nn as nn


# =============================
# Regimes
# =============================
class Regime(enum.Enum):
    INIT = "init"
    UPDATE = "update"
    IGNORE = "ignore"


class DeltaClassifier:
    """
    Classify a pair of consecutive frames into a Regime.

    Args:
        init_threshold: Mean difference above which the step reinitializes.
        max_update: Longest allowed run of corrections after an init.
        ignore_threshold: Mean difference at or below which the step is
            skipped. The default (-1) can never be reached.
    """

    def __init__(self, init_threshold, max_update=math.inf, ignore_threshold=-1.0):
        self.init_threshold = float(init_threshold)
        self.max_update = max_update
        self.ignore_threshold = float(ignore_threshold)

    @staticmethod
    def distance(prev, curr):
        with torch.no_grad():
            return (curr - prev).norm().item() / curr.numel()

    def classify(self, prev, curr, dist_since_last_init):
        d = self.distance(prev, curr)
        if d > self.init_threshold or dist_since_last_init >= self.max_update:
            return Regime.INIT
        if d <= self.ignore_threshold:
            return Regime.IGNORE
        return Regime.UPDATE


# =============================
# Clone pool
# =============================
def shared_clone(module):
    """
    Copy `module` so the copy reuses the very same nn.Parameter objects
    (weights and their .grad) while owning its own buffers.
    """
    memo = {id(p): p for p in module.parameters()}
    return copy.deepcopy(module, memo)


class ModuleResource:
    """Pools of init / update clones handed out once per forward pass."""

    def __init__(self, init, update):
        self.init_seed = init
        self.update_seed = update
        self.reset()

    def reset(self):
        self.init_clones = [self.init_seed]
        self.init_in_use = [False]
        self.update_clones = [self.update_seed]
        self.update_in_use = [False]

    def release_all(self):
        self.init_in_use = [False] * len(self.init_clones)
        self.update_in_use = [False] * len(self.update_clones)

    def acquire_init(self):
        return self._acquire(self.init_clones, self.init_in_use, self.init_seed)

    def acquire_update(self):
        return self._acquire(self.update_clones, self.update_in_use, self.update_seed)

    @staticmethod
    def _acquire(clones, in_use, seed):
        for i, used in enumerate(in_use):
            if not used:
                in_use[i] = True
                clone = clones[i]
                break
        else:
            clone = shared_clone(seed)
            clones.append(clone)
            in_use.append(True)
        clone.train(seed.training)
        return clone

    @property
    def num_clones(self):
        return len(self.init_clones), len(self.update_clones)

    @property
    def num_in_use(self):
        return sum(self.init_in_use), sum(self.update_in_use)


# =============================
# Graph ops
# =============================
SelectOp = namedtuple("SelectOp", ["index"])
DifferenceOp = namedtuple("DifferenceOp", ["index"])   # x[index] - x[index - 1]
SumOp = namedtuple("SumOp", ["start", "stop"])         # inclusive on both ends


class NullTransform:
    """Zero contribution shaped like a reference output; carries no gradient."""

    def __call__(self, reference):
        return torch.zeros_like(reference).detach()

    def __repr__(self):
        return "NullTransform()"


NULL_TRANSFORM = NullTransform()


class DataflowGraph:
    """Three aligned per-step op lists plus the regime of every step."""

    def __init__(self):
        self.differencer_ops = []
        self.transform_ops = []
        self.accumulator_ops = []
        self.regimes = []

    def __len__(self):
        return len(self.regimes)

    def add(self, regime, differencer, transform, accumulator):
        self.regimes.append(regime)
        self.differencer_ops.append(differencer)
        self.transform_ops.append(transform)
        self.accumulator_ops.append(accumulator)

    def last_init(self, i):
        for j in range(i, -1, -1):
            if self.regimes[j] is Regime.INIT:
                return j
        raise RuntimeError(f"No init step at or before index {i}")

    def counts(self):
        return Counter(self.regimes)


class DataflowGraphBuilder:
    """Build the minimal compute graph for one sequence."""

    def __init__(self, classifier, resources, verbose=True):
        self.classifier = classifier
        self.resources = resources
        self.verbose = verbose

    def build(self, sequence):
        graph = DataflowGraph()
        last_init = 0
        for i in range(len(sequence)):
            if i == 0:
                regime = Regime.INIT
            else:
                regime = self.classifier.classify(
                    sequence[i - 1], sequence[i], i - last_init)

            if regime is Regime.INIT:
                last_init = i
                graph.add(regime, SelectOp(i), self.resources.acquire_init(), SelectOp(i))
            elif regime is Regime.UPDATE:
                graph.add(regime, DifferenceOp(i), self.resources.acquire_update(),
                          SumOp(last_init, i))
            else:
                graph.add(regime, SelectOp(i), NULL_TRANSFORM, SumOp(last_init, i))

        if self.verbose:
            counts = graph.counts()
            if counts[Regime.IGNORE]:
                print(f"Ignored {counts[Regime.IGNORE]} out of {len(graph)} times.")
            print(f"Reinitialized {counts[Regime.INIT]} out of {len(graph)} times.")
        return graph


# =============================
# Block
# =============================
class PredictiveCorrectiveBlock(nn.Module):
    """
    Args:
        init: Module run on reinit steps.
        update: Module run on the frame difference of update steps. Must
            produce outputs shaped like init's.
        init_threshold: Mean difference above which a step reinitializes.
        max_update: Force a reinit after this many steps since the last one
            (default: never).
        ignore_threshold: Steps whose mean difference is at or below this are
            skipped (default: disabled). A value >= init_threshold means the
            block never runs update; that configuration is accepted as is.
        verbose: Print init / ignore counts after each graph build.

    Input is a list of same-shaped tensors, or a tensor with time as dim 0.
    Output matches the input container.
    """

    def __init__(self, init, update, init_threshold, max_update=None,
                 ignore_threshold=None, verbose=True):
        super().__init__()
        self.init = init
        self.update = update
        self.classifier = DeltaClassifier(
            init_threshold,
            max_update=math.inf if max_update is None else max_update,
            ignore_threshold=-1.0 if ignore_threshold is None else ignore_threshold,
        )
        self.resources = ModuleResource(init, update)
        self.builder = DataflowGraphBuilder(self.classifier, self.resources, verbose)
        self.last_graph = None
        self._last_outputs = None

    # ------------------------------------------------------------------
    @property
    def init_threshold(self):
        return self.classifier.init_threshold

    @property
    def max_update(self):
        return self.classifier.max_update

    @property
    def ignore_threshold(self):
        return self.classifier.ignore_threshold

    @property
    def verbose(self):
        return self.builder.verbose

    @verbose.setter
    def verbose(self, value):
        self.builder.verbose = value

    # ------------------------------------------------------------------
    @staticmethod
    def _as_frames(sequence):
        if isinstance(sequence, torch.Tensor):
            if sequence.dim() == 0:
                raise ValueError("Sequence tensor needs a time dimension")
            frames = list(sequence.unbind(0))
        else:
            frames = list(sequence)

        if not frames:
            raise ValueError("Cannot run on an empty sequence")
        shape = frames[0].shape
        for i, frame in enumerate(frames):
            if frame.shape != shape:
                raise ValueError(
                    f"Frame {i} has shape {tuple(frame.shape)}, expected {tuple(shape)}")
        return frames

    def forward(self, sequence):
        frames = self._as_frames(sequence)

        self.resources.release_all()
        graph = self.builder.build(frames)

        transformed, outputs = [], []
        for i in range(len(graph)):
            diff = graph.differencer_ops[i]
            if isinstance(diff, DifferenceOp):
                x = frames[diff.index] - frames[diff.index - 1]
            else:
                x = frames[diff.index]

            transform = graph.transform_ops[i]
            if transform is NULL_TRANSFORM:
                transformed.append(transform(transformed[graph.last_init(i)]))
            else:
                transformed.append(transform(x))

            acc = graph.accumulator_ops[i]
            if isinstance(acc, SumOp):
                y = sum(transformed[acc.start + 1:acc.stop + 1], transformed[acc.start])
            else:
                y = transformed[acc.index]
            outputs.append(y)

        self.last_graph = graph
        self._last_outputs = outputs

        if isinstance(sequence, torch.Tensor):
            return torch.stack(outputs, dim=0)
        return outputs

    def backward(self, sequence, grad_outputs):
        """
        Push grad_outputs back through the graph of the preceding forward.

        Parameter gradients accumulate in .grad as usual. Returns this pass's
        gradient of every input frame (None where the input does not require
        grad). Input .grad attributes are left untouched.
        """
        frames = self._as_frames(sequence)
        if (self._last_outputs is None or self.last_graph is None
                or len(self.last_graph) != len(frames)):
            raise RuntimeError(
                "backward() needs a preceding forward() over a sequence of the same length")

        if isinstance(grad_outputs, torch.Tensor):
            grad_outputs = list(grad_outputs.unbind(0))
        if len(grad_outputs) != len(self._last_outputs):
            raise ValueError(
                f"Got {len(grad_outputs)} output gradients for {len(self._last_outputs)} outputs")

        outputs, self._last_outputs = self._last_outputs, None
        pairs = [(o, g) for o, g in zip(outputs, grad_outputs) if o.requires_grad]

        if isinstance(sequence, torch.Tensor):
            inputs = [sequence] if sequence.requires_grad else []
        else:
            inputs = [f for f in frames if f.requires_grad]
        params = [p for p in self.parameters() if p.requires_grad]

        grads = [None] * (len(inputs) + len(params))
        if pairs and (inputs or params):
            grads = torch.autograd.grad(
                [o for o, _ in pairs], inputs + params, [g for _, g in pairs],
                retain_graph=False, allow_unused=True)

        for param, grad in zip(params, grads[len(inputs):]):
            if grad is None:
                continue
            if param.grad is None:
                param.grad = grad.detach().clone()
            else:
                param.grad += grad

        # Frames only seen by ignored steps never enter the graph.
        input_grads = [
            g if g is not None else torch.zeros_like(x)
            for x, g in zip(inputs, grads[:len(inputs)])
        ]
        if isinstance(sequence, torch.Tensor):
            return input_grads[0] if input_grads else None
        input_grads = iter(input_grads)
        return [next(input_grads) if f.requires_grad else None for f in frames]

    def clear_state(self):
        self.resources.reset()
        self.last_graph = None
        self._last_outputs = None
        return self

    # ------------------------------------------------------------------
    def _apply(self, fn, *args, **kwargs):
        super()._apply(fn, *args, **kwargs)
        # Extra clones were made from the pre-conversion seeds.
        self.clear_state()
        return self

    def get_extra_state(self):
        return {
            "init_threshold": self.init_threshold,
            "max_update": self.max_update,
            "ignore_threshold": self.ignore_threshold,
        }

    def set_extra_state(self, state):
        self.classifier.init_threshold = float(state["init_threshold"])
        self.classifier.max_update = state.get("max_update", math.inf)
        self.classifier.ignore_threshold = float(state.get("ignore_threshold", -1.0))
        self.clear_state()

    def extra_repr(self):
        return (f"init_threshold={self.init_threshold}, max_update={self.max_update}, "
                f"ignore_threshold={self.ignore_threshold}")
