"""PyTorch implementation of the :class:`~seqflow.engine.base.Engine` contract."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple

import numpy as np
import torch
import torch.nn.functional as F

from ..core.types import Array, Features, PaddedSequences, Padding, PoolingType, Precision
from ..errors import ConfigurationError, TopologyError
from .base import Initializer, LearnerSpec, Node
from .graph import GraphEngine, OpRecord

logger = logging.getLogger(__name__)

_DTYPES = {Precision.FLOAT32: torch.float32, Precision.FLOAT64: torch.float64}
_EPSILON = 1e-7
_FSADAGRAD_FLOOR = 1e-16


@dataclass
class _SequenceFeed:
    data: torch.Tensor
    lengths: torch.Tensor


class TorchLearner:
    """Wraps a ``torch.optim`` optimizer together with regularisation settings."""

    def __init__(
        self, spec: LearnerSpec, optimizer: torch.optim.Optimizer, parameters: List[torch.nn.Parameter]
    ) -> None:
        self.spec = spec
        self.optimizer = optimizer
        self.parameters = parameters

    @property
    def learning_rate(self) -> float:
        return float(self.optimizer.param_groups[0]["lr"])

    def zero_grad(self) -> None:
        self.optimizer.zero_grad(set_to_none=True)

    def step(self) -> None:
        if self.spec.l1 or self.spec.l2:
            with torch.no_grad():
                for param in self.parameters:
                    if param.grad is None:
                        continue
                    if self.spec.l2:
                        param.grad.add_(param, alpha=self.spec.l2)
                    if self.spec.l1:
                        param.grad.add_(torch.sign(param), alpha=self.spec.l1)
        if self.spec.gradient_clipping is not None:
            torch.nn.utils.clip_grad_value_(self.parameters, self.spec.gradient_clipping)
        self.optimizer.step()


class FSAdaGradOptimizer(torch.optim.Optimizer):
    """AdaGrad with a smoothed squared-gradient average and momentum.

    Per element: ``v = ρ·v + (1-ρ)·g²``, the smoothed sample count
    ``n = ρ·n + (1-ρ)`` debiases it, the gradient is rescaled to
    ``g·sqrt(n)/sqrt(v)`` and fed through (unit-gain) momentum.
    """

    def __init__(
        self,
        params,
        lr: float,
        momentum: float = 0.9,
        variance_momentum: float = 0.9999986111120757,
        unit_gain: bool = True,
    ) -> None:
        if not 0 <= momentum < 1:
            raise ConfigurationError(f"momentum must be in [0, 1), got {momentum}")
        if not 0 < variance_momentum < 1:
            raise ConfigurationError(f"variance_momentum must be in (0, 1), got {variance_momentum}")
        defaults = dict(lr=lr, momentum=momentum, variance_momentum=variance_momentum, unit_gain=unit_gain)
        super().__init__(params, defaults)

    @torch.no_grad()
    def step(self, closure=None):
        loss = None
        if closure is not None:
            with torch.enable_grad():
                loss = closure()
        for group in self.param_groups:
            rho = group["variance_momentum"]
            momentum = group["momentum"]
            gain = 1.0 - momentum if group["unit_gain"] else 1.0
            for param in group["params"]:
                if param.grad is None:
                    continue
                grad = param.grad
                state = self.state[param]
                if not state:
                    state["count"] = 0.0
                    state["square_avg"] = torch.zeros_like(param)
                    state["velocity"] = torch.zeros_like(param)
                state["count"] = rho * state["count"] + (1.0 - rho)
                square_avg = state["square_avg"]
                square_avg.mul_(rho).addcmul_(grad, grad, value=1.0 - rho)
                scaled = grad * math.sqrt(state["count"]) / square_avg.sqrt().clamp(min=_FSADAGRAD_FLOOR)
                velocity = state["velocity"]
                velocity.mul_(momentum).add_(scaled, alpha=gain)
                param.add_(velocity, alpha=-group["lr"])
        return loss


def _build_optimizer(spec: LearnerSpec, params: List[torch.nn.Parameter]) -> torch.optim.Optimizer:
    options = dict(spec.options)
    lr = spec.learning_rate
    name = spec.name
    if name == "sgd":
        return torch.optim.SGD(params, lr=lr)
    if name == "momentum_sgd":
        momentum = float(options.get("momentum", 0.9))
        # unit-gain momentum scales the incoming gradient by (1 - momentum)
        dampening = momentum if options.get("unit_gain", True) else 0.0
        return torch.optim.SGD(params, lr=lr, momentum=momentum, dampening=dampening)
    if name in {"adam", "adamax"}:
        betas = (float(options.get("momentum", 0.9)), float(options.get("variance_momentum", 0.999)))
        cls = torch.optim.Adam if name == "adam" else torch.optim.Adamax
        return cls(params, lr=lr, betas=betas, eps=float(options.get("epsilon", 1e-8)))
    if name == "adadelta":
        return torch.optim.Adadelta(
            params, lr=lr, rho=float(options.get("rho", 0.95)), eps=float(options.get("epsilon", 1e-8))
        )
    if name == "adagrad":
        return torch.optim.Adagrad(params, lr=lr, eps=float(options.get("epsilon", 1e-10)))
    if name == "fsadagrad":
        return FSAdaGradOptimizer(
            params,
            lr=lr,
            momentum=float(options.get("momentum", 0.9)),
            variance_momentum=float(options.get("variance_momentum", 0.9999986111120757)),
            unit_gain=bool(options.get("unit_gain", True)),
        )
    if name == "rmsprop":
        return torch.optim.RMSprop(
            params,
            lr=lr,
            alpha=float(options.get("gamma", 0.99)),
            eps=float(options.get("epsilon", 1e-8)),
            momentum=float(options.get("momentum", 0.0)),
        )
    raise ConfigurationError(f"Unknown learner {name!r}")


def _fans(shape: Sequence[int]) -> Tuple[int, int]:
    if len(shape) == 0:
        return 1, 1
    if len(shape) == 1:
        return shape[0], shape[0]
    receptive = int(math.prod(shape[2:])) if len(shape) > 2 else 1
    return shape[1] * receptive, shape[0] * receptive


def _same_padding(sizes: Sequence[int], window: Sequence[int], strides: Sequence[int]) -> List[int]:
    pads: List[int] = []
    # F.pad takes (left, right) pairs starting from the last dimension
    for size, k, s in reversed(list(zip(sizes, window, strides))):
        out = int(math.ceil(size / s))
        total = max((out - 1) * s + k - size, 0)
        pads.extend([total // 2, total - total // 2])
    return pads


_CONV = {1: F.conv1d, 2: F.conv2d, 3: F.conv3d}
_MAX_POOL = {1: F.max_pool1d, 2: F.max_pool2d, 3: F.max_pool3d}
_AVG_POOL = {1: F.avg_pool1d, 2: F.avg_pool2d, 3: F.avg_pool3d}

_UNARY: Dict[str, Callable[[torch.Tensor, Mapping[str, Any]], torch.Tensor]] = {
    "sigmoid": lambda x, a: torch.sigmoid(x),
    "tanh": lambda x, a: torch.tanh(x),
    "relu": lambda x, a: torch.relu(x),
    "elu": lambda x, a: F.elu(x, alpha=float(a.get("alpha", 1.0))),
    "selu": lambda x, a: float(a.get("gamma", 1.0507009873554805))
    * torch.where(x > 0, x, float(a.get("alpha", 1.6732632423543772)) * torch.expm1(x)),
    "leaky_relu": lambda x, a: F.leaky_relu(x, negative_slope=float(a.get("alpha", 0.01))),
    "hard_sigmoid": lambda x, a: torch.clamp(
        float(a.get("alpha", 0.2)) * x + float(a.get("beta", 0.5)), 0.0, 1.0
    ),
    "softplus": lambda x, a: F.softplus(x),
    "log": lambda x, a: torch.log(x),
    "exp": lambda x, a: torch.exp(x),
    "abs": lambda x, a: torch.abs(x),
    "square": lambda x, a: torch.square(x),
    "negate": lambda x, a: -x,
}

_BINARY = {
    "plus": torch.add,
    "minus": torch.sub,
    "element_times": torch.mul,
    "element_divide": torch.div,
}


class TorchEngine(GraphEngine):
    """Executes the graph arena eagerly with PyTorch tensors.

    Static slots are evaluated once per call in topological order.  Sequence
    slots are evaluated step by step, ``past_value`` reading the previous
    step of its operand (zeros at the first step), and ``sequence_last``
    gathers each row's final valid step.
    """

    def __init__(
        self, precision: Precision | str = Precision.FLOAT32, device: str = "cpu", *, seed: int | None = None
    ) -> None:
        super().__init__(precision, device)
        self._tensors: Dict[int, torch.Tensor] = {}
        self._generator = torch.Generator(device="cpu")
        if seed is None:
            self._generator.seed()
        else:
            self._generator.manual_seed(int(seed))

    # ------------------------------------------------------------------
    # Storage

    def _torch_dtype(self, precision: Precision) -> torch.dtype:
        return _DTYPES[Precision.parse(precision)]

    def _initial_value(self, record: OpRecord) -> torch.Tensor:
        init: Initializer = record.attrs["initializer"]
        shape = record.shape
        tensor = torch.empty(shape, dtype=torch.float64)
        if init.kind == "constant":
            tensor.fill_(float(init.value))
        elif init.kind == "glorot_uniform":
            fan_in, fan_out = _fans(shape)
            limit = init.scale * math.sqrt(6.0 / (fan_in + fan_out))
            tensor.uniform_(-limit, limit, generator=self._generator)
        elif init.kind == "glorot_normal":
            fan_in, fan_out = _fans(shape)
            tensor.normal_(0.0, init.scale * math.sqrt(2.0 / (fan_in + fan_out)), generator=self._generator)
        elif init.kind == "uniform":
            tensor.uniform_(-init.scale, init.scale, generator=self._generator)
        elif init.kind == "normal":
            tensor.normal_(0.0, init.scale, generator=self._generator)
        else:
            raise ConfigurationError(f"Unknown initializer {init.kind!r}")
        return tensor.to(self._torch_dtype(record.dtype))

    def _allocate_parameter(self, index: int, record: OpRecord) -> None:
        value = self._initial_value(record).to(record.attrs.get("device") or self.device)
        self._tensors[index] = torch.nn.Parameter(value)

    def _allocate_constant(self, index: int, record: OpRecord) -> None:
        value = record.attrs["value"]
        dtype = self._torch_dtype(record.dtype)
        device = record.attrs.get("device") or self.device
        if np.isscalar(value):
            tensor = torch.full(record.shape, float(value), dtype=dtype, device=device)
        else:
            array = np.asarray(value, dtype=record.dtype.numpy_dtype)
            if array.size != int(math.prod(record.shape)):
                raise TopologyError(f"constant of shape {record.shape} cannot hold {array.shape}")
            tensor = torch.as_tensor(array.reshape(record.shape), device=device)
        self._tensors[index] = tensor

    def _release(self) -> None:
        self._tensors.clear()

    def parameter_value(self, node: Node) -> Array:
        """Return a copy of the current value of a parameter or constant."""

        self._check_alive()
        return self._tensors[node.index].detach().cpu().numpy().copy()

    # ------------------------------------------------------------------
    # Learners

    def make_learner(self, parameters: Sequence[Node], spec: LearnerSpec) -> TorchLearner:
        self._check_alive()
        tensors = [self._tensors[p.index] for p in parameters]
        if not tensors:
            raise ConfigurationError("cannot build a learner without trainable parameters")
        optimizer = _build_optimizer(spec, tensors)
        logger.debug("learner %s over %d parameter tensors", spec.name, len(tensors))
        return TorchLearner(spec, optimizer, tensors)

    def update_learning_rate(self, learner: TorchLearner, rate: float) -> None:
        self._check_alive()
        for group in learner.optimizer.param_groups:
            group["lr"] = float(rate)

    # ------------------------------------------------------------------
    # Execution

    def train_step(
        self, loss: Node, evaluation: Node, learner: TorchLearner, feeds: Mapping[Node, Features]
    ) -> Tuple[float, float]:
        self._check_alive()
        prepared = self._prepare_feeds(feeds)
        learner.zero_grad()
        with torch.enable_grad():
            values = self._evaluate([loss.index, evaluation.index], prepared, training=True)
            objective = values[loss.index].mean()
            if objective.requires_grad:
                objective.backward()
                learner.step()
        evaluated = values[evaluation.index].detach().to(torch.float64).mean()
        return float(objective.detach()), float(evaluated)

    def infer_step(self, output: Node, feeds: Mapping[Node, Features]) -> Array:
        self._check_alive()
        prepared = self._prepare_feeds(feeds)
        with torch.no_grad():
            values = self._evaluate([output.index], prepared, training=False)
        return values[output.index].cpu().numpy()

    def _prepare_feeds(self, feeds: Mapping[Node, Features]) -> Dict[int, Any]:
        prepared: Dict[int, Any] = {}
        for node, value in feeds.items():
            record = self.graph[node.index]
            if record.kind != "input":
                raise ConfigurationError(f"slot {node.index} ({record.kind}) is not an input variable")
            dtype = record.dtype.numpy_dtype
            if record.is_sequence:
                if not isinstance(value, PaddedSequences):
                    raise ConfigurationError("sequence inputs must be fed as PaddedSequences")
                data = np.asarray(value.data, dtype=dtype)
                if tuple(data.shape[2:]) != record.shape:
                    raise ConfigurationError(
                        f"sequence steps of shape {data.shape[2:]} do not match input shape {record.shape}"
                    )
                lengths = np.asarray(value.lengths, dtype=np.int64)
                prepared[node.index] = _SequenceFeed(
                    torch.as_tensor(data, device=self.device), torch.as_tensor(lengths, device=self.device)
                )
            else:
                data = np.asarray(value, dtype=dtype)
                if tuple(data.shape[1:]) != record.shape:
                    raise ConfigurationError(
                        f"rows of shape {data.shape[1:]} do not match input shape {record.shape}"
                    )
                prepared[node.index] = torch.as_tensor(data, device=self.device)
        return prepared

    def _leaf(self, index: int, record: OpRecord) -> torch.Tensor:
        if record.kind in {"parameter", "constant"}:
            return self._tensors[index]
        if record.kind == "input":
            raise ConfigurationError(f"no value fed for input {record.name or index}")
        raise TopologyError(f"placeholder slot {index} was never replaced")

    def _evaluate(
        self, roots: Sequence[int], feeds: Mapping[int, Any], *, training: bool
    ) -> Dict[int, torch.Tensor]:
        graph = self.graph
        order = graph.topological_order(roots)
        static: Dict[int, torch.Tensor] = {}
        sequences: Dict[int, _SequenceFeed] = {}
        for index, value in feeds.items():
            if isinstance(value, _SequenceFeed):
                sequences[index] = value
            else:
                static[index] = value

        after_sequence: set[int] = set()
        for index in order:
            record = graph[index]
            if not record.is_sequence and any(
                i in after_sequence or graph[i].is_sequence for i in record.inputs
            ):
                after_sequence.add(index)
        loop = [i for i in order if graph[i].is_sequence]
        for index in loop:
            if any(i in after_sequence for i in graph[index].inputs):
                raise TopologyError("a value collapsed from a sequence cannot feed back into it")

        for index in order:
            record = graph[index]
            if record.is_sequence or index in after_sequence or index in static:
                continue
            if not record.inputs:
                static[index] = self._leaf(index, record)
            else:
                static[index] = self._apply(record, [static[i] for i in record.inputs], training)

        history: Dict[int, List[torch.Tensor]] = {i: [] for i in loop}
        lengths = None
        if loop:
            missing = [i for i in loop if graph[i].kind == "input" and i not in sequences]
            if missing or not sequences:
                raise ConfigurationError("sequence graph evaluated without a sequence feed")
            first = next(iter(sequences.values()))
            lengths = first.lengths
            batch = first.data.shape[0]
            steps = max(feed.data.shape[1] for feed in sequences.values())
            for t in range(steps):
                current: Dict[int, torch.Tensor] = {}
                for index in loop:
                    record = graph[index]
                    if record.kind == "input":
                        current[index] = sequences[index].data[:, t]
                    elif record.kind == "past_value":
                        if t == 0:
                            current[index] = torch.full(
                                (batch, *record.shape),
                                float(record.attrs.get("initial", 0.0)),
                                dtype=self._torch_dtype(record.dtype),
                                device=self.device,
                            )
                        else:
                            current[index] = history[record.inputs[0]][t - 1]
                    elif record.kind == "placeholder":
                        raise TopologyError(f"placeholder slot {index} was never replaced")
                    else:
                        args = [current[i] if graph[i].is_sequence else static[i] for i in record.inputs]
                        current[index] = self._apply(record, args, training)
                for index, value in current.items():
                    history[index].append(value)

        stacked: Dict[int, torch.Tensor] = {}

        def sequence_value(index: int) -> torch.Tensor:
            if index not in stacked:
                stacked[index] = torch.stack(history[index], dim=1)
            return stacked[index]

        for index in order:
            if index not in after_sequence:
                continue
            record = graph[index]
            if record.kind == "sequence_last":
                values = sequence_value(record.inputs[0])
                last = (lengths - 1).clamp(min=0)
                static[index] = values[torch.arange(values.shape[0], device=values.device), last]
            else:
                static[index] = self._apply(record, [static[i] for i in record.inputs], training)

        return {
            root: sequence_value(root) if graph[root].is_sequence else static[root] for root in roots
        }

    # ------------------------------------------------------------------
    # Operations

    def _align(self, value: torch.Tensor, record: OpRecord, rank: int) -> torch.Tensor:
        # batched operands of lower per-sample rank gain unit axes after the batch axis
        if not record.batched or len(record.shape) >= rank:
            return value
        missing = rank - len(record.shape)
        return value.reshape(value.shape[0], *([1] * missing), *value.shape[1:])

    def _apply(self, record: OpRecord, args: List[torch.Tensor], training: bool) -> torch.Tensor:
        kind = record.kind
        attrs = record.attrs
        graph = self.graph
        if kind in _UNARY:
            return _UNARY[kind](args[0], attrs)
        if kind in _BINARY:
            rank = len(record.shape)
            left, right = (
                self._align(value, graph[i], rank) for value, i in zip(args, record.inputs)
            )
            return _BINARY[kind](left, right)
        if kind == "times":
            weights, x = args
            return torch.matmul(x, weights.transpose(0, 1))
        if kind == "reshape":
            x = args[0]
            if record.batched:
                return x.reshape(x.shape[0], *record.shape)
            return x.reshape(record.shape)
        if kind == "softmax":
            axis = int(attrs.get("axis", -1))
            if axis >= 0 and record.batched:
                axis += 1
            return torch.softmax(args[0], dim=axis)
        if kind == "prelu":
            x, alpha = args
            return torch.where(x >= 0, x, alpha * x)
        if kind == "dropout":
            return F.dropout(args[0], p=float(attrs.get("rate", 0.5)), training=training)
        if kind == "convolution":
            return self._convolution(record, args)
        if kind == "pooling":
            return self._pooling(record, args)
        if kind == "batch_normalization":
            return self._batch_normalization(record, args, training)
        if kind in {"reduce_sum", "reduce_mean"}:
            x = args[0]
            flat = x.reshape(x.shape[0], -1) if self._operand_batched(record) else x.reshape(1, -1)
            reduced = flat.sum(dim=1) if kind == "reduce_sum" else flat.mean(dim=1)
            return reduced if self._operand_batched(record) else reduced[0]
        if kind == "cross_entropy_with_softmax":
            z, target = (self._rows(v, record) for v in args)
            return self._unrow(-(target * torch.log_softmax(z, dim=1)).sum(dim=1), record)
        if kind == "binary_cross_entropy":
            p, target = (self._rows(v, record) for v in args)
            p = p.clamp(_EPSILON, 1.0 - _EPSILON)
            weight = attrs.get("weights")
            if weight is not None:
                weight = torch.as_tensor(weight, dtype=p.dtype, device=p.device).reshape(1, -1)
            loss = F.binary_cross_entropy(p, target, weight=weight, reduction="none").sum(dim=1)
            return self._unrow(loss, record)
        if kind == "classification_error":
            p, target = (self._rows(v, record) for v in args)
            threshold = attrs.get("threshold")
            if threshold is None:
                wrong = (p.argmax(dim=1) != target.argmax(dim=1)).to(p.dtype)
            else:
                positive = p >= float(threshold) if attrs.get("inclusive", False) else p > float(threshold)
                wrong = (positive != (target > 0.5)).to(p.dtype).mean(dim=1)
            return self._unrow(wrong, record)
        raise TopologyError(f"operation {kind!r} cannot be executed here")

    def _operand_batched(self, record: OpRecord) -> bool:
        return self.graph[record.inputs[0]].batched

    def _rows(self, value: torch.Tensor, record: OpRecord) -> torch.Tensor:
        if record.batched:
            return value.reshape(value.shape[0], -1)
        return value.reshape(1, -1)

    def _unrow(self, value: torch.Tensor, record: OpRecord) -> torch.Tensor:
        return value if record.batched else value[0]

    def _convolution(self, record: OpRecord, args: List[torch.Tensor]) -> torch.Tensor:
        kernel, x = args
        spatial = kernel.dim() - 2
        strides = tuple(int(s) for s in record.attrs["strides"])
        if Padding(record.attrs["padding"]) == Padding.SAME:
            x = F.pad(x, _same_padding(x.shape[2:], kernel.shape[2:], strides))
        return _CONV[spatial](x, kernel, stride=strides)

    def _pooling(self, record: OpRecord, args: List[torch.Tensor]) -> torch.Tensor:
        x = args[0]
        window = tuple(int(w) for w in record.attrs["window"])
        strides = tuple(int(s) for s in record.attrs["strides"])
        spatial = len(window)
        pooling_type = PoolingType(record.attrs["pooling_type"])
        if Padding(record.attrs["padding"]) == Padding.SAME:
            fill = float("-inf") if pooling_type == PoolingType.MAX else 0.0
            x = F.pad(x, _same_padding(x.shape[2:], window, strides), value=fill)
        table = _MAX_POOL if pooling_type == PoolingType.MAX else _AVG_POOL
        return table[spatial](x, kernel_size=window, stride=strides)

    def _batch_normalization(
        self, record: OpRecord, args: List[torch.Tensor], training: bool
    ) -> torch.Tensor:
        x, scale, bias, mean, inv_std, count = args
        spatial = bool(record.attrs.get("spatial", False))
        if spatial:
            view = (1, -1) + (1,) * (x.dim() - 2)
        else:
            view = (1, *mean.shape)
        # running statistics normalise in training and inference alike
        out = (x - mean.reshape(view)) * inv_std.reshape(view) * scale.reshape(view) + bias.reshape(view)
        if training:
            self._accumulate_statistics(record, x.detach(), mean, inv_std, count, spatial)
        return out

    def _accumulate_statistics(
        self,
        record: OpRecord,
        x: torch.Tensor,
        mean: torch.Tensor,
        inv_std: torch.Tensor,
        count: torch.Tensor,
        spatial: bool,
    ) -> None:
        epsilon = float(record.attrs.get("epsilon", 1e-5))
        dims = [0] + list(range(2, x.dim())) if spatial else [0]
        seen = x.numel() // max(mean.numel(), 1)
        batch_mean = x.mean(dim=dims)
        batch_var = x.var(dim=dims, correction=0)
        previous = float(count)
        total = previous + seen
        running_var = 1.0 / torch.square(inv_std) - epsilon
        new_mean = (previous * mean + seen * batch_mean) / total
        new_var = (
            previous * (running_var + torch.square(mean - new_mean))
            + seen * (batch_var + torch.square(batch_mean - new_mean))
        ) / total
        mean_slot, inv_std_slot, count_slot = record.inputs[3:6]
        # fresh tensors: the old ones may still be referenced by the autograd graph
        self._tensors[mean_slot] = new_mean
        self._tensors[inv_std_slot] = 1.0 / torch.sqrt(new_var.clamp(min=0.0) + epsilon)
        self._tensors[count_slot] = torch.full_like(count, total)


__all__ = ["FSAdaGradOptimizer", "TorchEngine", "TorchLearner"]
