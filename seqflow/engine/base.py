"""Contract between seqflow and the tensor/autodiff engine it drives."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Protocol, Sequence, Tuple

from ..core.types import Array, Features, Precision

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .graph import Graph, OpRecord

Shape = Tuple[int, ...]

DEFAULT_UNIFORM_SCALE = 0.05


@dataclass(frozen=True)
class Node:
    """Handle to one slot of an engine's graph arena.

    Nodes compare by slot index; the owning engine is carried along so that
    layers can allocate parameters next to the node they consume.
    """

    index: int
    engine: "Engine" = field(compare=False, repr=False)

    @property
    def record(self) -> "OpRecord":
        return self.engine.graph[self.index]

    @property
    def shape(self) -> Shape:
        return self.record.shape

    @property
    def dtype(self) -> Precision:
        return self.record.dtype

    @property
    def kind(self) -> str:
        return self.record.kind

    @property
    def is_sequence(self) -> bool:
        return self.record.is_sequence

    @property
    def rank(self) -> int:
        return len(self.record.shape)

    @property
    def size(self) -> int:
        total = 1
        for dim in self.record.shape:
            total *= dim
        return total


@dataclass(frozen=True)
class Initializer:
    """Engine-neutral description of how a parameter is initialised.

    ``kind`` is one of ``glorot_uniform``, ``glorot_normal``, ``uniform``,
    ``normal`` or ``constant``.
    """

    kind: str = "glorot_uniform"
    scale: float = 1.0
    value: float = 0.0

    @classmethod
    def glorot_uniform(cls, scale: float = 1.0) -> "Initializer":
        return cls("glorot_uniform", scale=scale)

    @classmethod
    def glorot_normal(cls, scale: float = 1.0) -> "Initializer":
        return cls("glorot_normal", scale=scale)

    @classmethod
    def uniform(cls, scale: float = DEFAULT_UNIFORM_SCALE) -> "Initializer":
        return cls("uniform", scale=scale)

    @classmethod
    def normal(cls, scale: float = DEFAULT_UNIFORM_SCALE) -> "Initializer":
        return cls("normal", scale=scale)

    @classmethod
    def constant(cls, value: float) -> "Initializer":
        return cls("constant", value=value)


@dataclass(frozen=True)
class LearnerSpec:
    """Optimizer hyperparameters handed to :meth:`Engine.make_learner`."""

    name: str
    learning_rate: float
    options: Dict[str, Any] = field(default_factory=dict)
    l1: float = 0.0
    l2: float = 0.0
    gradient_clipping: float | None = None


class Learner(Protocol):
    spec: LearnerSpec

    @property
    def learning_rate(self) -> float:
        ...


class Engine(Protocol):
    """Operations seqflow needs from a tensor/autodiff engine."""

    graph: "Graph"
    precision: Precision
    device: str

    def input_variable(
        self, shape: Sequence[int], dtype: Precision, *, is_sequence: bool = False, name: str = ""
    ) -> Node:
        ...

    def build_parameter(
        self, shape: Sequence[int], dtype: Precision, initializer: Initializer, device: str, *, name: str = ""
    ) -> Node:
        ...

    def build_constant(
        self, shape: Sequence[int], dtype: Precision, value: float | Array, device: str, *, name: str = ""
    ) -> Node:
        ...

    def apply_op(self, kind: str, *operands: Node, **attrs: Any) -> Node:
        ...

    def placeholder(self, shape: Sequence[int], dtype: Precision, *, is_sequence: bool = False) -> Node:
        ...

    def replace_placeholders(self, mapping: Mapping[Node, Node]) -> None:
        ...

    def train_step(
        self, loss: Node, evaluation: Node, learner: Learner, feeds: Mapping[Node, Features]
    ) -> Tuple[float, float]:
        ...

    def infer_step(self, output: Node, feeds: Mapping[Node, Features]) -> Array:
        ...

    def make_learner(self, parameters: Sequence[Node], spec: LearnerSpec) -> Learner:
        ...

    def update_learning_rate(self, learner: Learner, rate: float) -> None:
        ...

    def parameters_of(self, node: Node) -> List[Node]:
        ...

    def parameter_count(self) -> int:
        ...

    def dispose(self) -> None:
        ...


__all__ = [
    "DEFAULT_UNIFORM_SCALE",
    "Engine",
    "Initializer",
    "Learner",
    "LearnerSpec",
    "Node",
    "Shape",
]
