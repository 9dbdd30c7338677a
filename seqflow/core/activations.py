"""Activation functions applied to graph nodes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from ..engine.base import Initializer, Node
from .registry import Registry


class ActivationFunction(Protocol):
    def apply(self, x: Node, device: str) -> Node:
        ...

    def describe(self) -> str:
        ...


@dataclass(frozen=True)
class _Elementwise:
    """Activation that maps onto one engine operation without parameters."""

    op = ""
    label = ""

    def _attrs(self) -> Mapping[str, Any]:
        return {}

    def apply(self, x: Node, device: str) -> Node:
        return x.engine.apply_op(self.op, x, **self._attrs())

    def describe(self) -> str:
        return self.label


@dataclass(frozen=True)
class ReLU(_Elementwise):
    op = "relu"
    label = "ReLU"


@dataclass(frozen=True)
class Sigmoid(_Elementwise):
    op = "sigmoid"
    label = "Sigmoid"


@dataclass(frozen=True)
class Tanh(_Elementwise):
    op = "tanh"
    label = "Tanh"


@dataclass(frozen=True)
class ELU(_Elementwise):
    op = "elu"
    label = "ELU"


@dataclass(frozen=True)
class Softmax(_Elementwise):
    """Softmax over ``axis`` of the sample (the last axis by default)."""

    axis: int = -1
    op = "softmax"

    def _attrs(self) -> Mapping[str, Any]:
        return {"axis": self.axis}

    def describe(self) -> str:
        return "Softmax" if self.axis == -1 else f"Softmax(axis={self.axis})"


@dataclass(frozen=True)
class SELU(_Elementwise):
    gamma: float = 1.0507009873554805
    alpha: float = 1.6732632423543772
    op = "selu"

    def _attrs(self) -> Mapping[str, Any]:
        return {"gamma": self.gamma, "alpha": self.alpha}

    def describe(self) -> str:
        return f"SELU(g={self.gamma}a={self.alpha})"


@dataclass(frozen=True)
class LeakyReLU(_Elementwise):
    alpha: float = 0.01
    op = "leaky_relu"

    def _attrs(self) -> Mapping[str, Any]:
        return {"alpha": self.alpha}

    def describe(self) -> str:
        return f"LeakyReLU(a={self.alpha})"


@dataclass(frozen=True)
class HardSigmoid(_Elementwise):
    alpha: float = 0.2
    beta: float = 0.5
    op = "hard_sigmoid"

    def _attrs(self) -> Mapping[str, Any]:
        return {"alpha": self.alpha, "beta": self.beta}

    def describe(self) -> str:
        return f"HardSigmoid(a={self.alpha}b={self.beta})"


@dataclass(frozen=True)
class PReLU:
    """Leaky ReLU whose negative slope is learned per element."""

    def apply(self, x: Node, device: str) -> Node:
        engine = x.engine
        alpha = engine.build_parameter(x.shape, x.dtype, Initializer.uniform(), device, name="prelu_alpha")
        return engine.apply_op("prelu", x, alpha)

    def describe(self) -> str:
        return "PReLU"


def apply_activation(activation: ActivationFunction | None, x: Node, device: str) -> Node:
    """Apply ``activation`` to ``x``; ``None`` is the identity."""

    if activation is None:
        return x
    return activation.apply(x, device)


def describe_activation(activation: ActivationFunction | None) -> str:
    return "" if activation is None else activation.describe()


ACTIVATIONS: Registry[ActivationFunction] = Registry("activation")
ACTIVATIONS.register("relu", ReLU)
ACTIVATIONS.register("sigmoid", Sigmoid)
ACTIVATIONS.register("tanh", Tanh)
ACTIVATIONS.register("elu", ELU)
ACTIVATIONS.register("softmax", Softmax)
ACTIVATIONS.register("selu", SELU)
ACTIVATIONS.register("leaky_relu", LeakyReLU)
ACTIVATIONS.register("hard_sigmoid", HardSigmoid)
ACTIVATIONS.register("prelu", PReLU)


def resolve_activation(spec: ActivationFunction | str | Mapping[str, Any] | None) -> ActivationFunction | None:
    """Build an activation from a name, a ``{"type": ..., **kwargs}`` mapping or an instance."""

    if spec is None or spec == "none":
        return None
    if isinstance(spec, str):
        return ACTIVATIONS.create(spec)
    if isinstance(spec, Mapping):
        options = dict(spec)
        return ACTIVATIONS.create(str(options.pop("type")), **options)
    return spec


__all__ = [
    "ACTIVATIONS",
    "ActivationFunction",
    "ELU",
    "HardSigmoid",
    "LeakyReLU",
    "PReLU",
    "ReLU",
    "SELU",
    "Sigmoid",
    "Softmax",
    "Tanh",
    "apply_activation",
    "describe_activation",
    "resolve_activation",
]
