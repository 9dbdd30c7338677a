"""Learning-rate rules and stopping callbacks for :class:`~seqflow.training.trainer.Trainer`.

A learning-rate rule is any callable ``(epoch, current_rate) -> next_rate``;
it is called once after every completed epoch and its result is the rate of
the following epoch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from ..core.registry import Registry
from ..errors import ConfigurationError

LearningRateRule = Callable[[int, float], float]


@dataclass(frozen=True)
class ConstantRate:
    def __call__(self, epoch: int, rate: float) -> float:
        return rate


@dataclass(frozen=True)
class StepDecay:
    """Multiply the rate by ``factor`` after every ``step_size`` epochs."""

    step_size: int
    factor: float = 0.5

    def __post_init__(self) -> None:
        if self.step_size <= 0:
            raise ConfigurationError(f"step_size must be positive, got {self.step_size}")

    def __call__(self, epoch: int, rate: float) -> float:
        return rate * self.factor if epoch % self.step_size == 0 else rate


@dataclass(frozen=True)
class ExponentialDecay:
    gamma: float = 0.95
    min_rate: float = 0.0

    def __call__(self, epoch: int, rate: float) -> float:
        return max(rate * self.gamma, self.min_rate)


@dataclass
class EarlyStopping:
    """Per-epoch callback that stops once the loss stops improving.

    Returns ``True`` (stop) after ``patience`` consecutive epochs without an
    improvement larger than ``min_delta`` over the best loss seen so far.
    """

    patience: int
    min_delta: float = 1e-9
    monitor: str = "loss"
    best: float = field(default=float("inf"), init=False)
    best_epoch: int = field(default=0, init=False)
    _stale: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.patience <= 0:
            raise ConfigurationError(f"patience must be positive, got {self.patience}")
        if self.monitor not in {"loss", "evaluation"}:
            raise ConfigurationError(f"monitor must be 'loss' or 'evaluation', got {self.monitor!r}")

    def __call__(self, epoch: int, loss: float, evaluation: float) -> bool:
        current = loss if self.monitor == "loss" else evaluation
        if current < self.best - self.min_delta:
            self.best = current
            self.best_epoch = epoch
            self._stale = 0
            return False
        self._stale += 1
        return self._stale >= self.patience


SCHEDULES: Registry[LearningRateRule] = Registry("learning-rate rule")
SCHEDULES.register("constant", ConstantRate)
SCHEDULES.register("step", StepDecay)
SCHEDULES.register("exponential", ExponentialDecay)


def build_schedule(spec: LearningRateRule | str | Mapping[str, Any] | None) -> LearningRateRule:
    if spec is None:
        return ConstantRate()
    if isinstance(spec, str):
        return SCHEDULES.create(spec)
    if isinstance(spec, Mapping):
        options = dict(spec)
        return SCHEDULES.create(str(options.pop("name")), **options)
    return spec


__all__ = [
    "ConstantRate",
    "EarlyStopping",
    "ExponentialDecay",
    "LearningRateRule",
    "SCHEDULES",
    "StepDecay",
    "build_schedule",
]
