"""Post-training metrics computed from (expected, evaluated) pairs."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

import numpy as np
import pandas as pd

from ..core.types import Array, EvaluateItem
from ..errors import ConfigurationError


def _stack(items: Iterable[EvaluateItem] | Tuple[Array, Array]) -> Tuple[Array, Array]:
    """Return ``(expected, evaluated)`` as 2-D float arrays."""

    if isinstance(items, tuple) and len(items) == 2 and isinstance(items[0], np.ndarray):
        expected, evaluated = items
    else:
        pairs = list(items)
        if not pairs:
            raise ConfigurationError("cannot compute metrics without evaluated rows")
        expected = np.stack([np.asarray(p.expected, dtype=np.float64).reshape(-1) for p in pairs])
        evaluated = np.stack([np.asarray(p.evaluated, dtype=np.float64).reshape(-1) for p in pairs])
    expected = np.asarray(expected, dtype=np.float64)
    evaluated = np.asarray(evaluated, dtype=np.float64)
    if expected.shape[0] == 0:
        raise ConfigurationError("cannot compute metrics without evaluated rows")
    expected = expected.reshape(expected.shape[0], -1)
    evaluated = evaluated.reshape(evaluated.shape[0], -1)
    if expected.shape != evaluated.shape:
        raise ConfigurationError(
            f"expected values of shape {expected.shape} do not match evaluated shape {evaluated.shape}"
        )
    return expected, evaluated


def _check_threshold(threshold: float) -> None:
    if not 0 < threshold < 1:
        raise ConfigurationError(f"threshold must be in (0, 1), got {threshold}")


def _ratio(numerator: float, denominator: float) -> float:
    return float(numerator) / float(denominator) if denominator else 0.0


def _f1(precision: float, recall: float) -> float:
    total = precision + recall
    return 2 * precision * recall / total if total else 0.0


# ----------------------------------------------------------------------
# Regression


@dataclass(frozen=True)
class RegressionMetrics:
    """Metrics for one output dimension.

    ``degenerate`` marks a dimension whose actual values are all identical
    while the predictions differ from them; ``determination`` is ``nan`` then.
    """

    mae: float
    rmse: float
    determination: float
    degenerate: bool = False


def regression_metrics(items: Iterable[EvaluateItem] | Tuple[Array, Array]) -> List[RegressionMetrics]:
    """MAE, RMSE and R² computed independently per output dimension."""

    expected, evaluated = _stack(items)
    results: List[RegressionMetrics] = []
    for dim in range(expected.shape[1]):
        actual = expected[:, dim]
        predicted = evaluated[:, dim]
        error = predicted - actual
        mae = float(np.mean(np.abs(error)))
        rmse = float(np.sqrt(np.mean(np.square(error))))
        ss_res = float(np.sum(np.square(error)))
        ss_tot = float(np.sum(np.square(actual - np.mean(actual))))
        degenerate = False
        if ss_tot == 0:
            if ss_res == 0:
                determination = 1.0
            else:
                determination = math.nan
                degenerate = True
        else:
            determination = 1.0 - ss_res / ss_tot
        results.append(RegressionMetrics(mae=mae, rmse=rmse, determination=determination, degenerate=degenerate))
    return results


def regression_frame(metrics: Sequence[RegressionMetrics]) -> pd.DataFrame:
    frame = pd.DataFrame(
        [
            {"dimension": i, "mae": m.mae, "rmse": m.rmse, "r2": m.determination, "degenerate": m.degenerate}
            for i, m in enumerate(metrics)
        ]
    )
    return frame.set_index("dimension")


# ----------------------------------------------------------------------
# Classification


@dataclass(frozen=True)
class ClassItem:
    index: int
    precision: float
    recall: float
    f1: float
    fraction: float


def _classes_frame(classes: Sequence[ClassItem]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {"class": c.index, "precision": c.precision, "recall": c.recall, "f1": c.f1, "fraction": c.fraction}
            for c in classes
        ]
    ).set_index("class")


@dataclass(frozen=True)
class OneLabelClassificationMetrics:
    """Accuracy, per-class statistics and ``confusion[actual, predicted]``.

    The confusion matrix is normalised by the number of rows, so it sums to 1.
    """

    accuracy: float
    classes: Tuple[ClassItem, ...]
    confusion_matrix: Array

    def to_frame(self) -> pd.DataFrame:
        return _classes_frame(self.classes)

    def confusion_frame(self) -> pd.DataFrame:
        labels = [c.index for c in self.classes]
        frame = pd.DataFrame(self.confusion_matrix, index=labels, columns=labels)
        frame.index.name = "actual"
        frame.columns.name = "predicted"
        return frame


def one_label_metrics(items: Iterable[EvaluateItem] | Tuple[Array, Array]) -> OneLabelClassificationMetrics:
    """Metrics for rows carrying exactly one class, decoded with ``argmax``."""

    expected, evaluated = _stack(items)
    n_rows, n_classes = expected.shape
    actual = np.argmax(expected, axis=1)
    predicted = np.argmax(evaluated, axis=1)
    counts = np.zeros((n_classes, n_classes), dtype=np.float64)
    np.add.at(counts, (actual, predicted), 1.0)

    classes = []
    for cls in range(n_classes):
        hits = counts[cls, cls]
        precision = _ratio(hits, counts[:, cls].sum())
        recall = _ratio(hits, counts[cls, :].sum())
        classes.append(
            ClassItem(
                index=cls,
                precision=precision,
                recall=recall,
                f1=_f1(precision, recall),
                fraction=float(counts[cls, :].sum()) / n_rows,
            )
        )
    return OneLabelClassificationMetrics(
        accuracy=float(np.trace(counts)) / n_rows,
        classes=tuple(classes),
        confusion_matrix=counts / n_rows,
    )


@dataclass(frozen=True)
class MultiLabelClassificationMetrics:
    """``accuracy`` is the share of positive labels that were recognised."""

    accuracy: float
    classes: Tuple[ClassItem, ...]

    def to_frame(self) -> pd.DataFrame:
        return _classes_frame(self.classes)


def multi_label_metrics(
    items: Iterable[EvaluateItem] | Tuple[Array, Array], threshold: float = 0.5
) -> MultiLabelClassificationMetrics:
    """Metrics for rows that may carry several classes (values above ``threshold``)."""

    _check_threshold(threshold)
    expected, evaluated = _stack(items)
    actual = expected > threshold
    predicted = evaluated > threshold
    positives = actual.sum(axis=0).astype(np.float64)
    predicted_counts = predicted.sum(axis=0).astype(np.float64)
    hits = (actual & predicted).sum(axis=0).astype(np.float64)
    total_labels = float(positives.sum())

    classes = []
    for cls in range(expected.shape[1]):
        precision = _ratio(hits[cls], predicted_counts[cls])
        recall = _ratio(hits[cls], positives[cls])
        classes.append(
            ClassItem(
                index=cls,
                precision=precision,
                recall=recall,
                f1=_f1(precision, recall),
                fraction=_ratio(positives[cls], total_labels),
            )
        )
    return MultiLabelClassificationMetrics(
        accuracy=_ratio(hits.sum(), total_labels),
        classes=tuple(classes),
    )


@dataclass(frozen=True)
class BinaryClassificationMetrics:
    """Binary metrics; ``confusion_matrix`` is ``[[TP, FP], [FN, TN]]`` / rows."""

    accuracy: float
    precision: float
    recall: float
    f1: float
    confusion_matrix: Array

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [{"accuracy": self.accuracy, "precision": self.precision, "recall": self.recall, "f1": self.f1}]
        )


def binary_metrics(
    items: Iterable[EvaluateItem] | Tuple[Array, Array], threshold: float = 0.5
) -> BinaryClassificationMetrics:
    """Metrics for a single output; values ``>= threshold`` count as positive."""

    _check_threshold(threshold)
    expected, evaluated = _stack(items)
    actual = expected[:, 0] > 0.5
    predicted = evaluated[:, 0] >= threshold
    tp = float(np.sum(actual & predicted))
    tn = float(np.sum(~actual & ~predicted))
    fp = float(np.sum(~actual & predicted))
    fn = float(np.sum(actual & ~predicted))
    n_rows = tp + tn + fp + fn
    precision = _ratio(tp, tp + fp)
    recall = _ratio(tp, tp + fn)
    return BinaryClassificationMetrics(
        accuracy=(tp + tn) / n_rows,
        precision=precision,
        recall=recall,
        f1=_f1(precision, recall),
        confusion_matrix=np.array([[tp, fp], [fn, tn]]) / n_rows,
    )


__all__ = [
    "BinaryClassificationMetrics",
    "ClassItem",
    "MultiLabelClassificationMetrics",
    "OneLabelClassificationMetrics",
    "RegressionMetrics",
    "binary_metrics",
    "multi_label_metrics",
    "one_label_metrics",
    "regression_frame",
    "regression_metrics",
]
