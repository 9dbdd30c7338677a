"""Sequential model: an ordered layer chain with named shortcut points."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Sequence, Tuple

import numpy as np

from .core.layers import Layer, flatten
from .core.types import Array, EvaluateItem, Features, FitResult, Padding, Precision
from .data.utils import as_features, check_pairing, minibatches, row_count, shuffle as shuffle_rows
from .engine.base import Engine, Initializer, Node
from .engine.torch_engine import TorchEngine
from .errors import ConfigurationError, ModelDisposedError, TopologyError
from .training.losses import Loss
from .training.optimizers import Optimizer
from .training.schedules import LearningRateRule
from .training.trainer import EpochCallback, Trainer

logger = logging.getLogger(__name__)

ShortcutCombine = Callable[[Node, Node, str], Node]


def add_shortcut(tail: Node, source: Node, device: str) -> Node:
    """Add ``source`` onto ``tail``, projecting it first when shapes differ.

    Two channels-first feature maps are bridged by a valid convolution whose
    kernel shrinks the source onto the tail's spatial size; anything else is
    flattened, linearly projected and reshaped to the tail's shape.
    """

    engine = tail.engine
    if source.shape == tail.shape:
        return engine.apply_op("plus", tail, source)
    if source.rank == 3 and tail.rank == 3:
        kernel_h = source.shape[1] - tail.shape[1] + 1
        kernel_w = source.shape[2] - tail.shape[2] + 1
        if kernel_h > 0 and kernel_w > 0:
            kernel = engine.build_parameter(
                (tail.shape[0], source.shape[0], kernel_h, kernel_w),
                source.dtype,
                Initializer.glorot_uniform(),
                device,
                name="shortcut_kernel",
            )
            projected = engine.apply_op(
                "convolution", kernel, source, strides=(1, 1), padding=Padding.VALID.value
            )
            return engine.apply_op("plus", projected, tail)
    flat = flatten(source)
    weights = engine.build_parameter(
        (tail.size, flat.shape[0]), source.dtype, Initializer.uniform(), device, name="shortcut_projection"
    )
    projected = engine.apply_op("times", weights, flat)
    if tail.rank != 1:
        projected = engine.apply_op("reshape", projected, shape=tail.shape)
    return engine.apply_op("plus", projected, tail)


class Sequential:
    """Single-owner builder and trainer of a layer chain.

    A model must not be mutated or trained from several threads at once.
    ``dispose()`` releases the engine; afterwards every operation raises
    :class:`~seqflow.errors.ModelDisposedError`.
    """

    def __init__(
        self,
        input_shape: int | Sequence[int],
        *,
        device: str = "cpu",
        precision: Precision | str = Precision.FLOAT32,
        is_sequence: bool = False,
        engine: Engine | None = None,
        seed: int | None = None,
    ) -> None:
        shape = (int(input_shape),) if isinstance(input_shape, (int, np.integer)) else tuple(int(d) for d in input_shape)
        if not shape or any(d <= 0 for d in shape):
            raise ConfigurationError(f"input shape must be non-empty with positive dimensions, got {shape}")
        self.precision = Precision.parse(precision)
        self.device = device
        self.engine: Engine = engine if engine is not None else TorchEngine(self.precision, device, seed=seed)
        if Precision.parse(self.engine.precision) != self.precision:
            raise ConfigurationError(
                f"engine precision {self.engine.precision} does not match model precision {self.precision}"
            )
        self.is_sequence = is_sequence
        self._input = self.engine.input_variable(shape, self.precision, is_sequence=is_sequence, name="features")
        self._tail = self._input
        self._layers: List[Layer] = []
        self._description: List[str] = ["[IN]" + "x".join(str(d) for d in shape)]
        self._shortcuts: Dict[str, Node] = {}
        self._consumed: set[str] = set()
        self._targets: Dict[Tuple[int, ...], Node] = {}
        self._output: Node | None = None
        self._disposed = False

    # ------------------------------------------------------------------
    # Lifecycle

    def __enter__(self) -> "Sequential":
        return self

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _check_alive(self) -> None:
        if self._disposed:
            raise ModelDisposedError("model has been disposed")

    def dispose(self) -> None:
        """Release engine resources; repeated calls are ignored."""

        if self._disposed:
            return
        self.engine.dispose()
        self._shortcuts.clear()
        self._targets.clear()
        self._output = None
        self._disposed = True

    # ------------------------------------------------------------------
    # Composition

    @property
    def input(self) -> Node:
        self._check_alive()
        return self._input

    @property
    def tail(self) -> Node:
        self._check_alive()
        return self._tail

    @property
    def layers(self) -> Tuple[Layer, ...]:
        return tuple(self._layers)

    @property
    def shortcut_keys(self) -> Tuple[str, ...]:
        return tuple(self._shortcuts)

    def parameter_count(self) -> int:
        self._check_alive()
        return self.engine.parameter_count()

    def add(self, layer: Layer) -> "Sequential":
        self._check_alive()
        try:
            tail = layer.create(self._tail, self.device)
        except TopologyError as exc:
            if exc.layer is not None:
                raise
            raise TopologyError(exc.message, layer=layer.describe()) from exc
        self._tail = tail
        self._output = None
        self._layers.append(layer)
        self._description.append(layer.describe())
        return self

    def mark_shortcut_source(self, key: str) -> "Sequential":
        """Remember the current tail under ``key``; marking again overwrites."""

        self._check_alive()
        if not key:
            raise ConfigurationError("shortcut key must be a non-empty string")
        self._shortcuts[key] = self._tail
        self._description.append(f"ShortIn({key})")
        return self

    def consume_shortcut(self, key: str, combine: ShortcutCombine | None = None) -> "Sequential":
        """Merge the node marked under ``key`` into the tail."""

        self._check_alive()
        try:
            source = self._shortcuts[key]
        except KeyError as exc:
            raise ConfigurationError(f"shortcut {key!r} was never marked") from exc
        combine = combine or add_shortcut
        try:
            tail = combine(self._tail, source, self.device)
        except TopologyError as exc:
            raise TopologyError(exc.message, layer=f"ShortOut({key})") from exc
        self._tail = tail
        self._output = None
        self._consumed.add(key)
        self._description.append(f"ShortOut({key})")
        return self

    def describe(self) -> str:
        """Architecture string, e.g. ``[IN]4-8[ReLU]-ShortIn(a)-8[]-ShortOut(a)[OUT]``.

        Shortcut sources that were never consumed are left out.
        """

        parts = [
            part
            for part in self._description
            if not (part.startswith("ShortIn(") and part[len("ShortIn(") : -1] not in self._consumed)
        ]
        return "-".join(parts) + "[OUT]"

    def __repr__(self) -> str:
        return f"Sequential({self.describe()})"

    # ------------------------------------------------------------------
    # Training and inference

    def _finalized_output(self) -> Node:
        if self._output is None:
            tail = self._tail
            if tail.is_sequence:
                tail = self.engine.apply_op("sequence_last", tail)
            self._output = tail
        return self._output

    def _target_variable(self, shape: Tuple[int, ...]) -> Node:
        if shape not in self._targets:
            self._targets[shape] = self.engine.input_variable(shape, self.precision, name="labels")
        return self._targets[shape]

    def _prepare(self, features, labels=None) -> Tuple[Features, Array | None]:
        prepared = as_features(features, sequence=self.is_sequence)
        if labels is None:
            if row_count(prepared) == 0:
                raise ConfigurationError("dataset is empty")
            return prepared, None
        targets = np.asarray(labels, dtype=self.precision.numpy_dtype)
        check_pairing(prepared, targets)
        output = self._finalized_output()
        if targets.ndim == 1 and output.shape == (1,):
            targets = targets.reshape(-1, 1)
        if tuple(targets.shape[1:]) != output.shape:
            raise ConfigurationError(
                f"labels of shape {targets.shape[1:]} do not match model output shape {output.shape}"
            )
        return prepared, targets

    def fit(
        self,
        features,
        labels,
        *,
        loss: Loss,
        evaluation: Loss,
        optimizer: Optimizer,
        epochs: int,
        minibatch_size: int = 32,
        shuffle: bool = False,
        learning_rate_rule: LearningRateRule | None = None,
        on_epoch: EpochCallback | None = None,
        seed: int | None = None,
        callbacks: Sequence[object] | None = None,
    ) -> FitResult:
        """Train the model and return a :class:`~seqflow.core.types.FitResult`.

        ``on_epoch(epoch, loss, evaluation)`` runs after every epoch; a truthy
        return value stops training immediately.
        """

        self._check_alive()
        if epochs <= 0:
            raise ConfigurationError(f"epochs must be positive, got {epochs}")
        if minibatch_size <= 0:
            raise ConfigurationError(f"minibatch_size must be positive, got {minibatch_size}")
        prepared, targets = self._prepare(features, labels)
        n_rows = row_count(prepared)
        batch_size = min(minibatch_size, n_rows)

        output = self._finalized_output()
        target = self._target_variable(output.shape)
        loss_node = loss(output, target, self.device)
        evaluation_node = evaluation(output, target, self.device)
        learner = optimizer.create(self.engine, self.engine.parameters_of(loss_node))
        rng = np.random.default_rng(seed)

        def batches(epoch: int):
            rows, rows_labels = prepared, targets
            if shuffle:
                rows, rows_labels = shuffle_rows(prepared, targets, rng)
            return minibatches(rows, rows_labels, batch_size)

        logger.info(
            "fit %s: rows=%d minibatch=%d epochs=%d loss=%s evaluation=%s optimizer=%s",
            self.describe(),
            n_rows,
            batch_size,
            epochs,
            loss.describe(),
            evaluation.describe(),
            type(optimizer).__name__,
        )
        trainer = Trainer(
            self.engine,
            inputs=self._input,
            targets=target,
            loss=loss_node,
            evaluation=evaluation_node,
            learner=learner,
            callbacks=callbacks,
        )
        return trainer.run(batches, epochs, learning_rate_rule=learning_rate_rule, on_epoch=on_epoch)

    def predict(self, features, *, minibatch_size: int = 512) -> Array:
        """Run gradient-free inference and return predictions in row order."""

        self._check_alive()
        if minibatch_size <= 0:
            raise ConfigurationError(f"minibatch_size must be positive, got {minibatch_size}")
        prepared, _ = self._prepare(features)
        output = self._finalized_output()
        chunks = []
        for start in range(0, row_count(prepared), minibatch_size):
            chunk = prepared[start : start + minibatch_size]
            chunks.append(self.engine.infer_step(output, {self._input: chunk}))
        return np.concatenate(chunks, axis=0)

    def evaluate(self, features, labels, *, minibatch_size: int = 512) -> List[EvaluateItem]:
        """Pair every label row with the model's prediction for it."""

        self._check_alive()
        prepared, targets = self._prepare(features, labels)
        predictions = self.predict(prepared, minibatch_size=minibatch_size)
        return [
            EvaluateItem(expected=expected, evaluated=evaluated)
            for expected, evaluated in zip(targets, predictions)
        ]


__all__ = ["Sequential", "ShortcutCombine", "add_shortcut"]
