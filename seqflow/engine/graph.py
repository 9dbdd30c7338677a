"""Arena of graph records shared by every engine implementation.

Nodes are integer slots into :class:`Graph`.  Placeholders are ordinary slots
whose consumers are rewired by :meth:`Graph.substitute`, which is how a
recurrent step function is turned into a recurrence after it has been built.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Tuple

import numpy as np

from ..core.types import Array, Padding, PoolingType, Precision
from ..errors import ModelDisposedError, TopologyError
from .base import Initializer, Node, Shape

logger = logging.getLogger(__name__)

LEAF_KINDS = frozenset({"input", "parameter", "constant", "placeholder"})
UNARY_KINDS = frozenset(
    {
        "sigmoid",
        "tanh",
        "relu",
        "elu",
        "selu",
        "leaky_relu",
        "hard_sigmoid",
        "softplus",
        "softmax",
        "log",
        "exp",
        "abs",
        "square",
        "negate",
        "dropout",
    }
)
ELEMENTWISE_KINDS = frozenset({"plus", "minus", "element_times", "element_divide"})
PER_SAMPLE_KINDS = frozenset(
    {"cross_entropy_with_softmax", "binary_cross_entropy", "classification_error"}
)


@dataclass
class OpRecord:
    """One slot of the arena."""

    kind: str
    inputs: List[int]
    shape: Shape
    dtype: Precision
    attrs: Dict[str, Any] = field(default_factory=dict)
    is_sequence: bool = False
    batched: bool = False
    name: str = ""
    # downstream of a sequence_last: per-row values that left the time axis
    collapsed: bool = False


class Graph:
    """Append-only list of :class:`OpRecord` with traversal helpers."""

    def __init__(self) -> None:
        self._records: List[OpRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index: int) -> OpRecord:
        return self._records[index]

    def add(self, record: OpRecord) -> int:
        self._records.append(record)
        return len(self._records) - 1

    def clear(self) -> None:
        self._records.clear()

    def substitute(self, mapping: Mapping[int, int]) -> None:
        """Rewire every consumer of ``mapping`` keys to the mapped slot."""

        for record in self._records:
            record.inputs = [mapping.get(i, i) for i in record.inputs]

    def ancestors(self, roots: Iterable[int]) -> List[int]:
        """Return every slot reachable from ``roots`` (roots included), sorted."""

        seen: set[int] = set()
        stack = list(roots)
        while stack:
            index = stack.pop()
            if index in seen:
                continue
            seen.add(index)
            stack.extend(self._records[index].inputs)
        return sorted(seen)

    def topological_order(self, roots: Iterable[int]) -> List[int]:
        """Order the ancestors of ``roots`` so producers precede consumers.

        The edge from a ``past_value`` slot to its operand is a one step delay
        and is ignored, which keeps recurrent graphs acyclic.
        """

        nodes = self.ancestors(roots)
        node_set = set(nodes)
        pending: Dict[int, int] = {}
        consumers: Dict[int, List[int]] = {i: [] for i in nodes}
        for index in nodes:
            deps = self._live_inputs(index)
            pending[index] = len(deps)
            for dep in deps:
                if dep in node_set:
                    consumers[dep].append(index)
        ready = deque(i for i in nodes if pending[i] == 0)
        order: List[int] = []
        while ready:
            index = ready.popleft()
            order.append(index)
            for consumer in consumers[index]:
                pending[consumer] -= 1
                if pending[consumer] == 0:
                    ready.append(consumer)
        if len(order) != len(nodes):
            raise TopologyError(
                "graph contains a cycle that is not broken by a past_value delay"
            )
        return order

    def _live_inputs(self, index: int) -> List[int]:
        record = self._records[index]
        if record.kind == "past_value":
            return []
        return list(dict.fromkeys(record.inputs))


# ----------------------------------------------------------------------
# Shape inference


def _prod(shape: Sequence[int]) -> int:
    return int(math.prod(shape)) if shape else 1


def _broadcast(a: Shape, b: Shape, kind: str) -> Shape:
    try:
        return tuple(int(d) for d in np.broadcast_shapes(a, b))
    except ValueError as exc:
        raise TopologyError(f"{kind}: cannot broadcast shapes {a} and {b}") from exc


def _spatial_output(size: int, window: int, stride: int, padding: Padding) -> int:
    if padding == Padding.SAME:
        return int(math.ceil(size / stride))
    if size < window:
        raise TopologyError(f"window {window} does not fit into input size {size}")
    return (size - window) // stride + 1


def _infer_times(operands: Sequence[OpRecord], attrs: Mapping[str, Any]) -> Shape:
    weights, x = operands
    if len(weights.shape) != 2:
        raise TopologyError(f"times: left operand must be a matrix, got shape {weights.shape}")
    if len(x.shape) != 1 or x.shape[0] != weights.shape[1]:
        raise TopologyError(
            f"times: matrix of shape {weights.shape} cannot multiply operand of shape {x.shape}"
        )
    return (weights.shape[0],)


def _infer_reshape(operands: Sequence[OpRecord], attrs: Mapping[str, Any]) -> Shape:
    (x,) = operands
    new_shape = tuple(int(d) for d in attrs["shape"])
    if _prod(new_shape) != _prod(x.shape):
        raise TopologyError(f"reshape: cannot reshape {x.shape} into {new_shape}")
    return new_shape


def _infer_convolution(operands: Sequence[OpRecord], attrs: Mapping[str, Any]) -> Shape:
    kernel, x = operands
    spatial = len(kernel.shape) - 2
    if len(x.shape) != spatial + 1:
        raise TopologyError(
            f"convolution: expected a channels-first input of rank {spatial + 1}, got shape {x.shape}"
        )
    if x.shape[0] != kernel.shape[1]:
        raise TopologyError(
            f"convolution: kernel expects {kernel.shape[1]} input channels, input has {x.shape[0]}"
        )
    strides = tuple(attrs["strides"])
    padding = Padding(attrs["padding"])
    out = [
        _spatial_output(x.shape[1 + i], kernel.shape[2 + i], strides[i], padding)
        for i in range(spatial)
    ]
    return (kernel.shape[0], *out)


def _infer_pooling(operands: Sequence[OpRecord], attrs: Mapping[str, Any]) -> Shape:
    (x,) = operands
    window = tuple(attrs["window"])
    if len(x.shape) != len(window) + 1:
        raise TopologyError(
            f"pooling: expected a channels-first input of rank {len(window) + 1}, got shape {x.shape}"
        )
    PoolingType(attrs["pooling_type"])
    strides = tuple(attrs["strides"])
    padding = Padding(attrs["padding"])
    out = [
        _spatial_output(x.shape[1 + i], window[i], strides[i], padding)
        for i in range(len(window))
    ]
    return (x.shape[0], *out)


def _infer_batch_normalization(operands: Sequence[OpRecord], attrs: Mapping[str, Any]) -> Shape:
    x, scale, bias, mean, inv_std, _count = operands
    expected = (x.shape[0],) if attrs.get("spatial") else x.shape
    for record in (scale, bias, mean, inv_std):
        if record.shape != expected:
            raise TopologyError(
                f"batch_normalization: statistics of shape {record.shape} do not match {expected}"
            )
    return x.shape


def _infer_per_sample(operands: Sequence[OpRecord], attrs: Mapping[str, Any]) -> Shape:
    prediction, target = operands
    if prediction.shape != target.shape:
        raise TopologyError(
            f"prediction shape {prediction.shape} does not match target shape {target.shape}"
        )
    weights = attrs.get("weights")
    if weights is not None and len(weights) != _prod(prediction.shape):
        raise TopologyError(f"{len(weights)} loss weights for an output of shape {prediction.shape}")
    return ()


def _infer_prelu(operands: Sequence[OpRecord], attrs: Mapping[str, Any]) -> Shape:
    x, alpha = operands
    _broadcast(x.shape, alpha.shape, "prelu")
    return x.shape


_INFER: Dict[str, Callable[[Sequence[OpRecord], Mapping[str, Any]], Shape]] = {
    "times": _infer_times,
    "reshape": _infer_reshape,
    "convolution": _infer_convolution,
    "pooling": _infer_pooling,
    "batch_normalization": _infer_batch_normalization,
    "prelu": _infer_prelu,
    "reduce_sum": lambda operands, attrs: (),
    "reduce_mean": lambda operands, attrs: (),
}
for _kind in PER_SAMPLE_KINDS:
    _INFER[_kind] = _infer_per_sample


def infer_shape(kind: str, operands: Sequence[OpRecord], attrs: Mapping[str, Any]) -> Shape:
    """Return the per-sample output shape of ``kind`` or raise :class:`TopologyError`."""

    if kind in UNARY_KINDS or kind in {"past_value", "sequence_last"}:
        if len(operands) != 1:
            raise TopologyError(f"{kind} takes exactly one operand, got {len(operands)}")
        return operands[0].shape
    if kind in ELEMENTWISE_KINDS:
        if len(operands) != 2:
            raise TopologyError(f"{kind} takes exactly two operands, got {len(operands)}")
        return _broadcast(operands[0].shape, operands[1].shape, kind)
    try:
        rule = _INFER[kind]
    except KeyError as exc:
        raise TopologyError(f"unknown operation {kind!r}") from exc
    return rule(operands, attrs)


class GraphEngine:
    """Graph bookkeeping shared by concrete engines.

    Subclasses provide tensor storage through :meth:`_allocate_parameter` and
    :meth:`_allocate_constant`, and execution through ``train_step`` /
    ``infer_step``.
    """

    def __init__(self, precision: Precision | str = Precision.FLOAT32, device: str = "cpu") -> None:
        self.precision = Precision.parse(precision)
        self.device = device
        self.graph = Graph()
        self._parameter_slots: List[int] = []
        self._disposed = False

    # ------------------------------------------------------------------
    # Lifecycle

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _check_alive(self) -> None:
        if self._disposed:
            raise ModelDisposedError("engine resources have already been released")

    def dispose(self) -> None:
        if self._disposed:
            return
        self._release()
        self.graph.clear()
        self._parameter_slots.clear()
        self._disposed = True
        logger.debug("engine %s disposed", type(self).__name__)

    def _release(self) -> None:
        """Free engine-owned tensors."""

    # ------------------------------------------------------------------
    # Graph construction

    def _node(self, record: OpRecord) -> Node:
        return Node(self.graph.add(record), self)

    def _records(self, operands: Sequence[Node]) -> List[OpRecord]:
        records = []
        for operand in operands:
            if operand.engine is not self:
                raise TopologyError("operands belong to a different engine")
            records.append(self.graph[operand.index])
        return records

    def input_variable(
        self, shape: Sequence[int], dtype: Precision, *, is_sequence: bool = False, name: str = ""
    ) -> Node:
        self._check_alive()
        shape = tuple(int(d) for d in shape)
        if any(d <= 0 for d in shape):
            raise TopologyError(f"input dimensions must be positive, got {shape}")
        record = OpRecord(
            "input", [], shape, Precision.parse(dtype), is_sequence=is_sequence, batched=True, name=name
        )
        return self._node(record)

    def build_parameter(
        self,
        shape: Sequence[int],
        dtype: Precision,
        initializer: Initializer,
        device: str,
        *,
        name: str = "",
    ) -> Node:
        self._check_alive()
        shape = tuple(int(d) for d in shape)
        record = OpRecord(
            "parameter",
            [],
            shape,
            Precision.parse(dtype),
            attrs={"initializer": initializer, "device": device},
            name=name,
        )
        node = self._node(record)
        self._parameter_slots.append(node.index)
        self._allocate_parameter(node.index, record)
        return node

    def build_constant(
        self,
        shape: Sequence[int],
        dtype: Precision,
        value: float | Array,
        device: str,
        *,
        name: str = "",
    ) -> Node:
        self._check_alive()
        shape = tuple(int(d) for d in shape)
        record = OpRecord(
            "constant",
            [],
            shape,
            Precision.parse(dtype),
            attrs={"value": value, "device": device},
            name=name,
        )
        node = self._node(record)
        self._allocate_constant(node.index, record)
        return node

    def placeholder(self, shape: Sequence[int], dtype: Precision, *, is_sequence: bool = False) -> Node:
        self._check_alive()
        record = OpRecord(
            "placeholder",
            [],
            tuple(int(d) for d in shape),
            Precision.parse(dtype),
            is_sequence=is_sequence,
            batched=True,
        )
        return self._node(record)

    def replace_placeholders(self, mapping: Mapping[Node, Node]) -> None:
        self._check_alive()
        slots: Dict[int, int] = {}
        for placeholder, target in mapping.items():
            ph, tg = self._records([placeholder, target])
            if ph.kind != "placeholder":
                raise TopologyError(f"slot {placeholder.index} is a {ph.kind}, not a placeholder")
            if ph.shape != tg.shape:
                raise TopologyError(
                    f"placeholder of shape {ph.shape} cannot be replaced by shape {tg.shape}"
                )
            slots[placeholder.index] = target.index
        self.graph.substitute(slots)

    def apply_op(self, kind: str, *operands: Node, **attrs: Any) -> Node:
        self._check_alive()
        records = self._records(operands)
        shape = infer_shape(kind, records, attrs)
        if kind == "past_value" and not records[0].is_sequence:
            raise TopologyError("past_value requires a sequence operand")
        if kind == "sequence_last" and not records[0].is_sequence:
            raise TopologyError("sequence_last requires a sequence operand")
        is_sequence = kind != "sequence_last" and any(r.is_sequence for r in records)
        collapsed = kind == "sequence_last" or any(r.collapsed for r in records)
        if is_sequence and collapsed:
            raise TopologyError(f"{kind}: a value collapsed from a sequence cannot feed back into it")
        record = OpRecord(
            kind,
            [op.index for op in operands],
            tuple(shape),
            records[0].dtype if records else self.precision,
            attrs=dict(attrs),
            is_sequence=is_sequence,
            batched=any(r.batched for r in records),
            collapsed=collapsed,
        )
        return self._node(record)

    # ------------------------------------------------------------------
    # Introspection

    def parameters_of(self, node: Node) -> List[Node]:
        self._check_alive()
        return [
            Node(index, self)
            for index in self.graph.ancestors([node.index])
            if self.graph[index].kind == "parameter"
        ]

    def parameter_count(self) -> int:
        return sum(_prod(self.graph[i].shape) for i in self._parameter_slots)

    @property
    def parameter_slots(self) -> Tuple[int, ...]:
        return tuple(self._parameter_slots)

    # ------------------------------------------------------------------
    # Storage hooks

    def _allocate_parameter(self, index: int, record: OpRecord) -> None:
        """Create the tensor backing parameter slot ``index``."""

    def _allocate_constant(self, index: int, record: OpRecord) -> None:
        """Create the tensor backing constant slot ``index``."""


__all__ = [
    "Graph",
    "GraphEngine",
    "OpRecord",
    "infer_shape",
    "LEAF_KINDS",
]
