"""Loss registry: each loss turns a (prediction, target) node pair into an error node."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Sequence

from ..engine.base import Node
from ..errors import ConfigurationError, TopologyError

LossBuilder = Callable[[Node, Node, str], Node]


@dataclass(frozen=True)
class Loss:
    """Named wrapper returning the per-sample error node of a graph."""

    name: str
    build: LossBuilder

    def __call__(self, prediction: Node, target: Node, device: str = "cpu") -> Node:
        if prediction.shape != target.shape:
            raise TopologyError(
                f"{self.name}: prediction shape {prediction.shape} does not match target shape {target.shape}"
            )
        return self.build(prediction, target, device)

    def describe(self) -> str:
        return self.name


def squared_error() -> Loss:
    def build(prediction: Node, target: Node, device: str) -> Node:
        engine = prediction.engine
        diff = engine.apply_op("minus", prediction, target)
        return engine.apply_op("reduce_sum", engine.apply_op("square", diff))

    return Loss("SquaredError", build)


def absolute_error() -> Loss:
    def build(prediction: Node, target: Node, device: str) -> Node:
        engine = prediction.engine
        return engine.apply_op("abs", engine.apply_op("minus", prediction, target))

    return Loss("AbsoluteError", build)


def bias_error() -> Loss:
    """Signed difference ``prediction - target``; useful as an evaluation metric."""

    def build(prediction: Node, target: Node, device: str) -> Node:
        return prediction.engine.apply_op("minus", prediction, target)

    return Loss("BiasError", build)


def cross_entropy_with_softmax() -> Loss:
    def build(prediction: Node, target: Node, device: str) -> Node:
        return prediction.engine.apply_op("cross_entropy_with_softmax", prediction, target)

    return Loss("CrossEntropyWithSoftmax", build)


def binary_cross_entropy() -> Loss:
    def build(prediction: Node, target: Node, device: str) -> Node:
        return prediction.engine.apply_op("binary_cross_entropy", prediction, target)

    return Loss("BinaryCrossEntropy", build)


def weighted_binary_cross_entropy(weights: Sequence[float]) -> Loss:
    """Binary cross entropy with one weight per output element."""

    weights = tuple(float(w) for w in weights)
    if not weights:
        raise ConfigurationError("weighted_binary_cross_entropy needs at least one weight")

    def build(prediction: Node, target: Node, device: str) -> Node:
        if len(weights) != prediction.size:
            raise TopologyError(
                f"WeightedBinaryCrossEntropy: {len(weights)} weights for an output of size {prediction.size}"
            )
        return prediction.engine.apply_op("binary_cross_entropy", prediction, target, weights=weights)

    return Loss("WeightedBinaryCrossEntropy", build)


def classification_error(threshold: float = 0.5) -> Loss:
    """Fraction of labels whose thresholded prediction disagrees with the target."""

    if not 0 < threshold < 1:
        raise ConfigurationError(f"threshold must be in (0, 1), got {threshold}")

    def build(prediction: Node, target: Node, device: str) -> Node:
        return prediction.engine.apply_op("classification_error", prediction, target, threshold=float(threshold))

    return Loss(f"ClassificationError({threshold})", build)


def binary_classification_error(threshold: float = 0.5) -> Loss:
    """1 when ``prediction >= threshold`` disagrees with a 0/1 target."""

    if not 0 < threshold < 1:
        raise ConfigurationError(f"threshold must be in (0, 1), got {threshold}")

    def build(prediction: Node, target: Node, device: str) -> Node:
        return prediction.engine.apply_op(
            "classification_error", prediction, target, threshold=float(threshold), inclusive=True
        )

    return Loss(f"BinaryClassificationError({threshold})", build)


def softmax_classification_error() -> Loss:
    """1 when the argmax of the prediction misses the argmax of the target."""

    def build(prediction: Node, target: Node, device: str) -> Node:
        return prediction.engine.apply_op("classification_error", prediction, target, threshold=None)

    return Loss("SoftmaxClassificationError", build)


class LossRegistry:
    """Central registry for loss factories."""

    def __init__(self) -> None:
        self._registry: Dict[str, Callable[..., Loss]] = {}

    def register(self, name: str, factory: Callable[..., Loss]) -> None:
        self._registry[name] = factory

    def get(self, name: str, **options) -> Loss:
        try:
            factory = self._registry[name]
        except KeyError as exc:
            available = ", ".join(sorted(self._registry))
            raise ConfigurationError(f"Unknown loss {name!r}. Available losses: {available}") from exc
        return factory(**options)

    def names(self) -> Iterable[str]:
        return sorted(self._registry)


REGISTRY = LossRegistry()
REGISTRY.register("squared_error", squared_error)
REGISTRY.register("absolute_error", absolute_error)
REGISTRY.register("bias_error", bias_error)
REGISTRY.register("cross_entropy_with_softmax", cross_entropy_with_softmax)
REGISTRY.register("binary_cross_entropy", binary_cross_entropy)
REGISTRY.register("weighted_binary_cross_entropy", weighted_binary_cross_entropy)
REGISTRY.register("classification_error", classification_error)
REGISTRY.register("softmax_classification_error", softmax_classification_error)
REGISTRY.register("binary_classification_error", binary_classification_error)
# short aliases used in preset files
REGISTRY.register("mse", squared_error)
REGISTRY.register("mae", absolute_error)
REGISTRY.register("ce", cross_entropy_with_softmax)
REGISTRY.register("bce", binary_cross_entropy)

__all__ = [
    "Loss",
    "LossRegistry",
    "REGISTRY",
    "absolute_error",
    "bias_error",
    "binary_classification_error",
    "binary_cross_entropy",
    "classification_error",
    "cross_entropy_with_softmax",
    "softmax_classification_error",
    "squared_error",
    "weighted_binary_cross_entropy",
]
