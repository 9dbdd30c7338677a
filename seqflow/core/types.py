"""Core typing contracts for seqflow."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Union

import numpy as np

from ..errors import ConfigurationError

Array = np.ndarray


class Precision(str, Enum):
    """Floating point precision of a model and every tensor it allocates."""

    FLOAT32 = "float32"
    FLOAT64 = "float64"

    @property
    def numpy_dtype(self) -> np.dtype:
        return np.dtype(self.value)

    @classmethod
    def parse(cls, value: "Precision | str") -> "Precision":
        if isinstance(value, Precision):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as exc:
            raise ConfigurationError(
                f"Unsupported precision {value!r}; expected one of "
                f"{[p.value for p in cls]}"
            ) from exc


class Padding(str, Enum):
    """Zero-padding policy of convolution and pooling layers."""

    VALID = "valid"
    SAME = "same"


class PoolingType(str, Enum):
    MAX = "max"
    AVERAGE = "average"


@dataclass(frozen=True)
class PaddedSequences:
    """Variable-length sequences stored as ``data[batch, time, ...]``.

    ``lengths[i]`` is the number of valid steps of row ``i``; steps past it are
    zero padding and never reach ``sequence_last``.
    """

    data: Array
    lengths: Array

    def __len__(self) -> int:
        return int(self.data.shape[0])

    def __getitem__(self, index) -> "PaddedSequences":
        return PaddedSequences(data=self.data[index], lengths=self.lengths[index])

    @property
    def max_length(self) -> int:
        return int(self.data.shape[1])


Features = Union[Array, PaddedSequences]


@dataclass(frozen=True)
class Batch:
    """A single mini-batch of data."""

    inputs: Features
    targets: Array

    def __len__(self) -> int:
        return len(self.inputs)


@dataclass(frozen=True)
class FitResult:
    """Summary returned by :meth:`seqflow.training.trainer.Trainer.run`."""

    loss: float
    evaluation: float
    duration: float
    epoch_count: int
    loss_curve: List[float] = field(default_factory=list)
    evaluation_curve: List[float] = field(default_factory=list)


@dataclass(frozen=True)
class EvaluateItem:
    """Expected and evaluated output for one row (or one sequence)."""

    expected: Array
    evaluated: Array


__all__ = [
    "Array",
    "Batch",
    "EvaluateItem",
    "Features",
    "FitResult",
    "PaddedSequences",
    "Padding",
    "PoolingType",
    "Precision",
]
