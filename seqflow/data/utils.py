"""Dataset helpers: shuffling, minibatching, padding, splitting and scaling."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Dict, Iterator, List, Sequence, Tuple

import numpy as np
import pandas as pd
import torch

from ..core.types import Array, Batch, Features, PaddedSequences
from ..errors import ConfigurationError


def seed_everything(seed: int) -> np.random.Generator:
    """Seed Python, NumPy and torch RNGs and return a generator."""

    random.seed(seed)
    np.random.seed(seed % (2**32 - 1))
    torch.manual_seed(seed)
    return np.random.default_rng(seed)


def pad_sequences(sequences: Sequence[Array], *, dtype: np.dtype | str = np.float32) -> PaddedSequences:
    """Stack variable-length sequences ``[T_i, *step_shape]`` into a zero-padded batch."""

    if len(sequences) == 0:
        raise ConfigurationError("cannot pad an empty list of sequences")
    arrays = [np.asarray(seq, dtype=dtype) for seq in sequences]
    for arr in arrays:
        if arr.ndim == 0:
            raise ConfigurationError("each sequence needs a leading time axis")
    step_shape = arrays[0].shape[1:]
    lengths = np.array([arr.shape[0] for arr in arrays], dtype=np.int64)
    if np.any(lengths == 0):
        raise ConfigurationError("sequences must contain at least one step")
    if any(arr.shape[1:] != step_shape for arr in arrays):
        raise ConfigurationError("all sequence steps must share one shape")
    data = np.zeros((len(arrays), int(lengths.max()), *step_shape), dtype=dtype)
    for i, arr in enumerate(arrays):
        data[i, : arr.shape[0]] = arr
    return PaddedSequences(data=data, lengths=lengths)


def as_features(features: Features | Sequence[Array], *, sequence: bool = False) -> Features:
    """Normalise caller input into an ndarray or :class:`PaddedSequences`."""

    if isinstance(features, PaddedSequences):
        return features
    if sequence:
        if isinstance(features, np.ndarray) and features.ndim >= 2:
            lengths = np.full(features.shape[0], features.shape[1], dtype=np.int64)
            return PaddedSequences(data=features, lengths=lengths)
        return pad_sequences(list(features))
    return np.asarray(features)


def row_count(features: Features) -> int:
    return len(features)


def take(features: Features, indices: Array) -> Features:
    return features[indices]


def check_pairing(features: Features, labels: Array) -> int:
    """Validate a feature/label pair and return the row count."""

    n_features = row_count(features)
    n_labels = len(labels)
    if n_features != n_labels:
        raise ConfigurationError(f"feature count {n_features} does not match label count {n_labels}")
    if n_features == 0:
        raise ConfigurationError("dataset is empty")
    return n_features


def shuffle(
    features: Features, labels: Array, rng: np.random.Generator | int | None = None
) -> Tuple[Features, Array]:
    """Permute rows, applying one permutation to features and labels alike."""

    check_pairing(features, labels)
    generator = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
    order = generator.permutation(row_count(features))
    return take(features, order), np.asarray(labels)[order]


def minibatch_count(n_rows: int, minibatch_size: int) -> int:
    if minibatch_size <= 0:
        raise ConfigurationError(f"minibatch_size must be positive, got {minibatch_size}")
    if n_rows < 0:
        raise ConfigurationError(f"row count must be non-negative, got {n_rows}")
    return math.ceil(n_rows / minibatch_size)


def minibatches(features: Features, labels: Array, minibatch_size: int) -> Iterator[Batch]:
    """Yield consecutive minibatches; the last may be shorter and is never dropped."""

    if minibatch_size <= 0:
        raise ConfigurationError(f"minibatch_size must be positive, got {minibatch_size}")
    n_rows = check_pairing(features, labels)
    labels = np.asarray(labels)
    for start in range(0, n_rows, minibatch_size):
        stop = min(start + minibatch_size, n_rows)
        yield Batch(inputs=features[start:stop], targets=labels[start:stop])


def _check_fraction(fraction: float) -> None:
    if not 0 <= fraction <= 1:
        raise ConfigurationError(f"fraction must be in [0, 1], got {fraction}")


def split(
    features: Features,
    labels: Array,
    fraction: float,
    *,
    randomize: bool = False,
    seed: int | None = None,
) -> Tuple[Features, Array, Features, Array]:
    """Split into the first ``floor(N * fraction)`` rows and the rest."""

    _check_fraction(fraction)
    n_rows = check_pairing(features, labels)
    labels = np.asarray(labels)
    if randomize:
        features, labels = shuffle(features, labels, seed)
    cut = int(n_rows * fraction)
    return features[:cut], labels[:cut], features[cut:], labels[cut:]


def _label_keys(labels: Array) -> Array:
    labels = np.asarray(labels)
    if labels.ndim == 2 and labels.shape[1] > 1:
        return np.argmax(labels, axis=1)
    return labels.reshape(len(labels), -1)[:, 0]


def split_balanced(
    features: Features,
    labels: Array,
    fraction: float,
    *,
    randomize: bool = False,
    seed: int | None = None,
) -> Tuple[Features, Array, Features, Array]:
    """Split so that every class keeps ``fraction`` of its rows in the first part.

    Classes are taken from the argmax of one-hot labels, or the label value
    itself for single-column labels.
    """

    _check_fraction(fraction)
    n_rows = check_pairing(features, labels)
    if n_rows < 2:
        raise ConfigurationError("split_balanced needs at least two rows")
    labels = np.asarray(labels)
    if randomize:
        features, labels = shuffle(features, labels, seed)
    keys = _label_keys(labels)
    first: list[int] = []
    second: list[int] = []
    for key in dict.fromkeys(keys.tolist()):
        members = np.flatnonzero(keys == key)
        cut = int(len(members) * fraction)
        first.extend(members[:cut].tolist())
        second.extend(members[cut:].tolist())
    first_idx = np.asarray(first, dtype=np.int64)
    second_idx = np.asarray(second, dtype=np.int64)
    return take(features, first_idx), labels[first_idx], take(features, second_idx), labels[second_idx]


def min_max_normalize(
    array: Array,
    *,
    mins: Array | None = None,
    maxes: Array | None = None,
    center: bool = False,
) -> Tuple[Array, Array, Array]:
    """Scale each column to ``[0, 1]`` (``[-1, 1]`` when ``center``).

    Returns the scaled array with the column minima and maxima used, so that
    the same transform can be applied to other data.  Constant columns map to
    0 (or -1 when centred).
    """

    values = np.asarray(array, dtype=np.float64)
    if values.size == 0:
        raise ConfigurationError("cannot normalise an empty array")
    if mins is None or maxes is None:
        mins = values.min(axis=0)
        maxes = values.max(axis=0)
    span = np.abs(np.asarray(maxes) - np.asarray(mins))
    span = np.where(span == 0, 1.0, span)
    scaled = (values - mins) / span
    if center:
        scaled = (scaled - 0.5) * 2
    return scaled, np.asarray(mins), np.asarray(maxes)


@dataclass(frozen=True)
class FeatureStatistic:
    """Summary of one feature column.

    ``unique_values`` maps each distinct value to its row count; values closer
    than ``epsilon`` to an earlier distinct value are counted under it.
    """

    name: str
    average: float
    median: float
    min: float
    max: float
    variance: float
    standard_deviation: float
    mean_absolute_deviation: float
    unique_values: Dict[float, int]

    def __str__(self) -> str:
        return (
            f"Name: {self.name} Min: {self.min:.5f} Max: {self.max:.5f} Average: {self.average:.5f} "
            f"MAD: {self.mean_absolute_deviation:.5f} Variance: {self.variance:.5f} "
            f"StdDev: {self.standard_deviation:.5f}"
        )


def _group_values(column: Array, epsilon: float) -> Dict[float, int]:
    values, counts = np.unique(column, return_counts=True)
    groups: Dict[float, int] = {}
    key = None
    for value, count in zip(values.tolist(), counts.tolist()):
        if key is None or value - key >= epsilon:
            key = value
            groups[key] = 0
        groups[key] += count
    return groups


def feature_statistics(
    array: Array, *, names: Sequence[str] | None = None, epsilon: float = 0.5
) -> List[FeatureStatistic]:
    """Per-column statistics of a ``[rows, features]`` array.

    Variance and mean absolute deviation are population statistics.  Columns
    are named ``"1"``, ``"2"``, ... unless ``names`` is given.
    """

    values = np.asarray(array, dtype=np.float64)
    if values.ndim == 1:
        values = values.reshape(-1, 1)
    if values.ndim != 2:
        raise ConfigurationError(f"feature_statistics expects a 2-D array, got shape {values.shape}")
    if values.shape[0] == 0:
        return []
    if epsilon <= 0:
        raise ConfigurationError(f"epsilon must be positive, got {epsilon}")
    if names is None:
        names = [str(i + 1) for i in range(values.shape[1])]
    elif len(names) != values.shape[1]:
        raise ConfigurationError(f"{len(names)} names for {values.shape[1]} feature columns")

    stats = []
    for name, column in zip(names, values.T):
        average = float(column.mean())
        variance = float(np.mean(np.square(column - average)))
        stats.append(
            FeatureStatistic(
                name=str(name),
                average=average,
                median=float(np.median(column)),
                min=float(column.min()),
                max=float(column.max()),
                variance=variance,
                standard_deviation=math.sqrt(variance),
                mean_absolute_deviation=float(np.mean(np.abs(column - average))),
                unique_values=_group_values(column, epsilon),
            )
        )
    return stats


def statistics_frame(stats: Sequence[FeatureStatistic]) -> pd.DataFrame:
    """One row per feature, indexed by name, without the value histogram."""

    columns = ["average", "median", "min", "max", "variance", "standard_deviation", "mean_absolute_deviation"]
    frame = pd.DataFrame([{"name": s.name, **{c: getattr(s, c) for c in columns}} for s in stats])
    if frame.empty:
        return pd.DataFrame(columns=columns)
    return frame.set_index("name")


__all__ = [
    "FeatureStatistic",
    "as_features",
    "check_pairing",
    "feature_statistics",
    "min_max_normalize",
    "minibatch_count",
    "minibatches",
    "pad_sequences",
    "row_count",
    "seed_everything",
    "shuffle",
    "split",
    "split_balanced",
    "statistics_frame",
    "take",
]
