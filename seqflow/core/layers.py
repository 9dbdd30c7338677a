"""Feed-forward layers.

Every layer is an immutable dataclass exposing ``create(x, device)``, which
appends the layer's operations to the engine owning ``x`` and returns the new
output node, and ``describe()``, used to build architecture strings.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence, Tuple

from ..engine.base import Initializer, Node
from ..errors import ConfigurationError, TopologyError
from .activations import ActivationFunction, apply_activation, describe_activation, resolve_activation
from .registry import Registry
from .types import Padding, PoolingType

STABILIZER_SHARPNESS = 4.0
# beta(alpha0) == 1 for beta = (1/f) * ln(1 + exp(f * alpha))
STABILIZER_ALPHA0 = math.log(math.exp(STABILIZER_SHARPNESS) - 1.0) / STABILIZER_SHARPNESS


class Layer(Protocol):
    def create(self, x: Node, device: str) -> Node:
        ...

    def describe(self) -> str:
        ...


# ----------------------------------------------------------------------
# Building blocks shared with the recurrent layers


def flatten(x: Node) -> Node:
    """Collapse a node to rank one (no-op when it already is)."""

    if x.rank == 1:
        return x
    return x.engine.apply_op("reshape", x, shape=(x.size,))


def linear(x: Node, output_dim: int, device: str, *, bias: bool = True, bias_init: Initializer | None = None) -> Node:
    """``W·x (+ b)`` with Glorot-uniform ``W`` of shape ``[output_dim, input_dim]``."""

    engine = x.engine
    weights = engine.build_parameter(
        (output_dim, x.shape[0]), x.dtype, Initializer.glorot_uniform(), device, name="W"
    )
    out = engine.apply_op("times", weights, x)
    if bias:
        b = engine.build_parameter((output_dim,), x.dtype, bias_init or Initializer.constant(0.0), device, name="b")
        out = engine.apply_op("plus", out, b)
    return out


def project(x: Node, output_dim: int, device: str) -> Node:
    """Learned linear map of a rank-one node to ``output_dim`` (uniform init, no bias)."""

    engine = x.engine
    weights = engine.build_parameter(
        (output_dim, x.shape[0]), x.dtype, Initializer.uniform(), device, name="projection"
    )
    return engine.apply_op("times", weights, x)


def scalar(x: Node, value: float, device: str) -> Node:
    return x.engine.build_constant((), x.dtype, value, device)


def self_stabilize(x: Node, device: str) -> Node:
    """Scale ``x`` by the learned gain ``beta = (1/f)·ln(1 + exp(f·alpha))``."""

    engine = x.engine
    alpha = engine.build_parameter((), x.dtype, Initializer.constant(STABILIZER_ALPHA0), device, name="alpha")
    sharp = engine.apply_op("element_times", scalar(x, STABILIZER_SHARPNESS, device), alpha)
    softplus = engine.apply_op("log", engine.apply_op("plus", scalar(x, 1.0, device), engine.apply_op("exp", sharp)))
    beta = engine.apply_op("element_times", scalar(x, 1.0 / STABILIZER_SHARPNESS, device), softplus)
    return engine.apply_op("element_times", beta, x)


def _as_channels_first(x: Node, spatial: int, layer: str) -> Node:
    if x.rank == spatial + 1:
        return x
    if x.rank == spatial:
        return x.engine.apply_op("reshape", x, shape=(1, *x.shape))
    raise TopologyError(
        f"{layer} expects a channels-first input of rank {spatial + 1} (or {spatial} for one channel), "
        f"got shape {x.shape}"
    )


def _padding_label(padding: Padding) -> str:
    return Padding(padding).name.title()


# ----------------------------------------------------------------------
# Layers


@dataclass(frozen=True)
class Dense:
    output_dim: int
    activation: ActivationFunction | None = None

    def create(self, x: Node, device: str) -> Node:
        return apply_activation(self.activation, linear(flatten(x), self.output_dim, device), device)

    def describe(self) -> str:
        return f"{self.output_dim}[{describe_activation(self.activation)}]"


@dataclass(frozen=True)
class Residual2:
    """Two dense stages bridged by an identity (or projected) forwarding path."""

    output_dim: int
    activation: ActivationFunction | None = None

    def create(self, x: Node, device: str) -> Node:
        x = flatten(x)
        forwarding = x
        if x.shape[0] != self.output_dim:
            forwarding = project(x, self.output_dim, device)
        stage1 = apply_activation(self.activation, linear(x, self.output_dim, device), device)
        stage2 = linear(stage1, self.output_dim, device)
        merged = x.engine.apply_op("plus", stage2, forwarding)
        return apply_activation(self.activation, merged, device)

    def describe(self) -> str:
        return f"Res2({self.output_dim})[{describe_activation(self.activation)}]"


@dataclass(frozen=True)
class Convolution2D:
    kernel_width: int
    kernel_height: int
    output_channels: int
    h_stride: int = 1
    v_stride: int = 1
    padding: Padding = Padding.VALID
    activation: ActivationFunction | None = None

    def create(self, x: Node, device: str) -> Node:
        x = _as_channels_first(x, 2, "Convolution2D")
        engine = x.engine
        kernel = engine.build_parameter(
            (self.output_channels, x.shape[0], self.kernel_height, self.kernel_width),
            x.dtype,
            Initializer.glorot_uniform(),
            device,
            name="kernel",
        )
        conv = engine.apply_op(
            "convolution", kernel, x, strides=(self.v_stride, self.h_stride), padding=Padding(self.padding).value
        )
        return apply_activation(self.activation, conv, device)

    def describe(self) -> str:
        return (
            f"Conv2D(K={self.kernel_width}x{self.kernel_height}S={self.h_stride}x{self.v_stride}"
            f"P={_padding_label(self.padding)})[{describe_activation(self.activation)}]"
        )


@dataclass(frozen=True)
class Convolution3D:
    """Volumetric convolution over channels-first ``(C, D, H, W)`` inputs."""

    kernel_width: int
    kernel_height: int
    kernel_depth: int
    output_channels: int
    h_stride: int = 1
    v_stride: int = 1
    d_stride: int = 1
    padding: Padding = Padding.VALID
    activation: ActivationFunction | None = None

    def create(self, x: Node, device: str) -> Node:
        x = _as_channels_first(x, 3, "Convolution3D")
        engine = x.engine
        kernel = engine.build_parameter(
            (self.output_channels, x.shape[0], self.kernel_depth, self.kernel_height, self.kernel_width),
            x.dtype,
            Initializer.glorot_uniform(),
            device,
            name="kernel",
        )
        conv = engine.apply_op(
            "convolution",
            kernel,
            x,
            strides=(self.d_stride, self.v_stride, self.h_stride),
            padding=Padding(self.padding).value,
        )
        return apply_activation(self.activation, conv, device)

    def describe(self) -> str:
        return (
            f"Conv3D(K={self.kernel_width}x{self.kernel_height}x{self.kernel_depth}"
            f"S={self.h_stride}x{self.v_stride}x{self.d_stride}"
            f"P={_padding_label(self.padding)})[{describe_activation(self.activation)}]"
        )


@dataclass(frozen=True)
class Convolution1D:
    kernel_width: int
    output_channels: int
    stride: int = 1
    padding: Padding = Padding.VALID
    activation: ActivationFunction | None = None

    def create(self, x: Node, device: str) -> Node:
        x = _as_channels_first(x, 1, "Convolution1D")
        engine = x.engine
        kernel = engine.build_parameter(
            (self.output_channels, x.shape[0], self.kernel_width),
            x.dtype,
            Initializer.glorot_uniform(),
            device,
            name="kernel",
        )
        conv = engine.apply_op("convolution", kernel, x, strides=(self.stride,), padding=Padding(self.padding).value)
        return apply_activation(self.activation, conv, device)

    def describe(self) -> str:
        return (
            f"Conv1D(K={self.kernel_width}S={self.stride}P={_padding_label(self.padding)})"
            f"[{describe_activation(self.activation)}]"
        )


@dataclass(frozen=True)
class Pooling2D:
    window_width: int
    window_height: int
    h_stride: int
    v_stride: int
    pooling_type: PoolingType = PoolingType.MAX
    padding: Padding = Padding.VALID

    def create(self, x: Node, device: str) -> Node:
        x = _as_channels_first(x, 2, "Pooling2D")
        return x.engine.apply_op(
            "pooling",
            x,
            window=(self.window_height, self.window_width),
            strides=(self.v_stride, self.h_stride),
            pooling_type=PoolingType(self.pooling_type).value,
            padding=Padding(self.padding).value,
        )

    def describe(self) -> str:
        return (
            f"Pooling2D(W={self.window_width}x{self.window_height}S={self.h_stride}x{self.v_stride}"
            f"T={PoolingType(self.pooling_type).name.title()}P={_padding_label(self.padding)})"
        )


@dataclass(frozen=True)
class Flatten:
    def create(self, x: Node, device: str) -> Node:
        return flatten(x)

    def describe(self) -> str:
        return "Flatten"


@dataclass(frozen=True)
class Reshape:
    shape: Tuple[int, ...]

    def create(self, x: Node, device: str) -> Node:
        return x.engine.apply_op("reshape", x, shape=tuple(self.shape))

    def describe(self) -> str:
        return "Reshape(" + "x".join(str(d) for d in self.shape) + ")"


@dataclass(frozen=True)
class BatchNormalization:
    """Batch normalisation that always normalises with its running statistics.

    Training steps still accumulate the running mean and inverse standard
    deviation (count-weighted), but the current minibatch's own statistics are
    never used to normalise it.
    """

    spatial: bool = False
    epsilon: float = 1e-5

    def create(self, x: Node, device: str) -> Node:
        if self.spatial and x.rank < 2:
            raise TopologyError(f"spatial batch normalisation needs a channels-first input, got shape {x.shape}")
        engine = x.engine
        shape = (x.shape[0],) if self.spatial else x.shape
        scale = engine.build_parameter(shape, x.dtype, Initializer.constant(1.0), device, name="scale")
        bias = engine.build_parameter(shape, x.dtype, Initializer.constant(0.0), device, name="bias")
        mean = engine.build_constant(shape, x.dtype, 0.0, device, name="running_mean")
        inv_std = engine.build_constant(shape, x.dtype, 1.0, device, name="running_inv_std")
        count = engine.build_constant((), x.dtype, 0.0, device, name="running_count")
        return engine.apply_op(
            "batch_normalization",
            x,
            scale,
            bias,
            mean,
            inv_std,
            count,
            spatial=self.spatial,
            epsilon=self.epsilon,
        )

    def describe(self) -> str:
        return f"BN(S={self.spatial})"


@dataclass(frozen=True)
class Dropout:
    rate: float

    def create(self, x: Node, device: str) -> Node:
        return x.engine.apply_op("dropout", x, rate=self.rate)

    def describe(self) -> str:
        return f"DO({self.rate})"


@dataclass(frozen=True)
class Activation:
    activation: ActivationFunction | None = None

    def create(self, x: Node, device: str) -> Node:
        return apply_activation(self.activation, x, device)

    def describe(self) -> str:
        return f"Activation[{describe_activation(self.activation) or 'None'}]"


@dataclass(frozen=True)
class Scaler:
    factor: float

    def create(self, x: Node, device: str) -> Node:
        return x.engine.apply_op("element_times", scalar(x, self.factor, device), x)

    def describe(self) -> str:
        return f"Scale({self.factor})"


@dataclass(frozen=True)
class SelfStabilization:
    def create(self, x: Node, device: str) -> Node:
        return self_stabilize(x, device)

    def describe(self) -> str:
        return "SS"


# ----------------------------------------------------------------------
# Registry


LAYER_REGISTRY: Registry[Layer] = Registry("layer")
LAYER_REGISTRY.register("dense", Dense)
LAYER_REGISTRY.register("residual2", Residual2)
LAYER_REGISTRY.register("conv2d", Convolution2D)
LAYER_REGISTRY.register("conv3d", Convolution3D)
LAYER_REGISTRY.register("conv1d", Convolution1D)
LAYER_REGISTRY.register("pooling2d", Pooling2D)
LAYER_REGISTRY.register("flatten", Flatten)
LAYER_REGISTRY.register("reshape", Reshape)
LAYER_REGISTRY.register("batch_norm", BatchNormalization)
LAYER_REGISTRY.register("dropout", Dropout)
LAYER_REGISTRY.register("activation", Activation)
LAYER_REGISTRY.register("scaler", Scaler)
LAYER_REGISTRY.register("self_stabilization", SelfStabilization)

_ENUM_FIELDS = {"padding": Padding, "pooling_type": PoolingType}


def build_layer(spec: Mapping[str, Any]) -> Layer:
    """Build a layer from ``{"type": name, **kwargs}``."""

    options = dict(spec)
    if "type" not in options:
        raise ConfigurationError(f"layer entry {dict(spec)!r} has no 'type'")
    name = str(options.pop("type"))
    if "activation" in options:
        options["activation"] = resolve_activation(options["activation"])
    for key, enum in _ENUM_FIELDS.items():
        if key in options:
            options[key] = enum(options[key])
    if "shape" in options and isinstance(options["shape"], Sequence):
        options["shape"] = tuple(int(d) for d in options["shape"])
    try:
        return LAYER_REGISTRY.create(name, **options)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid options for layer {name!r}: {exc}") from exc


__all__ = [
    "Activation",
    "BatchNormalization",
    "Convolution1D",
    "Convolution2D",
    "Convolution3D",
    "Dense",
    "Dropout",
    "Flatten",
    "LAYER_REGISTRY",
    "Layer",
    "Pooling2D",
    "Reshape",
    "Residual2",
    "STABILIZER_ALPHA0",
    "STABILIZER_SHARPNESS",
    "Scaler",
    "SelfStabilization",
    "build_layer",
    "flatten",
    "linear",
    "project",
    "self_stabilize",
]
