"""Optimizers describe the learner the engine should build for a model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Sequence

from ..core.registry import Registry
from ..engine.base import Engine, Learner, LearnerSpec, Node
from ..errors import ConfigurationError


@dataclass(frozen=True)
class Optimizer:
    """Hyperparameters shared by every learner.

    ``gradient_clipping`` truncates each gradient element to
    ``[-gradient_clipping, gradient_clipping]``; ``None`` disables clipping.
    """

    learning_rate: float
    l1: float = 0.0
    l2: float = 0.0
    gradient_clipping: float | None = None

    name = "sgd"

    def __post_init__(self) -> None:
        if self.learning_rate <= 0:
            raise ConfigurationError(f"learning_rate must be positive, got {self.learning_rate}")
        if self.l1 < 0 or self.l2 < 0:
            raise ConfigurationError("regularization weights must be non-negative")
        if self.gradient_clipping is not None and self.gradient_clipping <= 0:
            raise ConfigurationError("gradient_clipping must be positive when set")

    def options(self) -> Dict[str, Any]:
        return {}

    def learner_spec(self) -> LearnerSpec:
        return LearnerSpec(
            name=self.name,
            learning_rate=float(self.learning_rate),
            options=self.options(),
            l1=float(self.l1),
            l2=float(self.l2),
            gradient_clipping=self.gradient_clipping,
        )

    def create(self, engine: Engine, parameters: Sequence[Node]) -> Learner:
        return engine.make_learner(parameters, self.learner_spec())


@dataclass(frozen=True)
class SGD(Optimizer):
    name = "sgd"


@dataclass(frozen=True)
class MomentumSGD(Optimizer):
    momentum: float = 0.9
    unit_gain: bool = True

    name = "momentum_sgd"

    def options(self) -> Dict[str, Any]:
        return {"momentum": self.momentum, "unit_gain": self.unit_gain}


@dataclass(frozen=True)
class Adam(Optimizer):
    momentum: float = 0.9
    variance_momentum: float = 0.999
    epsilon: float = 1e-8

    name = "adam"

    def options(self) -> Dict[str, Any]:
        return {"momentum": self.momentum, "variance_momentum": self.variance_momentum, "epsilon": self.epsilon}


@dataclass(frozen=True)
class Adamax(Adam):
    name = "adamax"


@dataclass(frozen=True)
class AdaDelta(Optimizer):
    rho: float = 0.95
    epsilon: float = 1e-8

    name = "adadelta"

    def options(self) -> Dict[str, Any]:
        return {"rho": self.rho, "epsilon": self.epsilon}


@dataclass(frozen=True)
class AdaGrad(Optimizer):
    epsilon: float = 1e-10

    name = "adagrad"

    def options(self) -> Dict[str, Any]:
        return {"epsilon": self.epsilon}


@dataclass(frozen=True)
class FSAdaGrad(Optimizer):
    """Adam-like learner: momentum over a smoothed, debiased AdaGrad step."""

    momentum: float = 0.9
    variance_momentum: float = 0.9999986111120757
    unit_gain: bool = True

    name = "fsadagrad"

    def __post_init__(self) -> None:
        super().__post_init__()
        if not 0 <= self.momentum < 1:
            raise ConfigurationError(f"momentum must be in [0, 1), got {self.momentum}")
        if not 0 < self.variance_momentum < 1:
            raise ConfigurationError(f"variance_momentum must be in (0, 1), got {self.variance_momentum}")

    def options(self) -> Dict[str, Any]:
        return {
            "momentum": self.momentum,
            "variance_momentum": self.variance_momentum,
            "unit_gain": self.unit_gain,
        }


@dataclass(frozen=True)
class RMSProp(Optimizer):
    gamma: float = 0.95
    epsilon: float = 1e-8
    momentum: float = 0.0

    name = "rmsprop"

    def options(self) -> Dict[str, Any]:
        return {"gamma": self.gamma, "epsilon": self.epsilon, "momentum": self.momentum}


OPTIMIZERS: Registry[Optimizer] = Registry("optimizer")
for _cls in (SGD, MomentumSGD, Adam, Adamax, AdaDelta, AdaGrad, FSAdaGrad, RMSProp):
    OPTIMIZERS.register(_cls.name, _cls)


def build_optimizer(spec: Optimizer | Mapping[str, Any]) -> Optimizer:
    """Build an optimizer from ``{"name": ..., "learning_rate": ..., **options}``."""

    if isinstance(spec, Optimizer):
        return spec
    options = dict(spec)
    name = str(options.pop("name", "sgd"))
    if "lr" in options:
        options["learning_rate"] = options.pop("lr")
    try:
        return OPTIMIZERS.create(name, **options)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid options for optimizer {name!r}: {exc}") from exc


__all__ = [
    "AdaDelta",
    "AdaGrad",
    "Adam",
    "Adamax",
    "FSAdaGrad",
    "MomentumSGD",
    "OPTIMIZERS",
    "Optimizer",
    "RMSProp",
    "SGD",
    "build_optimizer",
]
