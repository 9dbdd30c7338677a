import math

import numpy as np
import pytest

from seqflow.core.types import EvaluateItem
from seqflow.errors import ConfigurationError
from seqflow.training.metrics import (
    binary_metrics,
    multi_label_metrics,
    one_label_metrics,
    regression_frame,
    regression_metrics,
)


def _items(expected, evaluated):
    return [EvaluateItem(np.asarray(e, dtype=float), np.asarray(p, dtype=float)) for e, p in zip(expected, evaluated)]


def test_regression_metrics_per_dimension():
    expected = [[1.0, 0.0], [2.0, 0.0], [3.0, 0.0]]
    evaluated = [[1.0, 0.5], [2.0, -0.5], [4.0, 0.5]]
    first, second = regression_metrics(_items(expected, evaluated))
    assert first.mae == pytest.approx(1 / 3)
    assert first.rmse == pytest.approx(math.sqrt(1 / 3))
    assert first.determination == pytest.approx(1 - 1 / 2)
    assert second.degenerate
    assert math.isnan(second.determination)


def test_regression_constant_target_predicted_exactly():
    (metrics,) = regression_metrics((np.ones((4, 1)), np.ones((4, 1))))
    assert metrics.determination == 1.0
    assert not metrics.degenerate
    frame = regression_frame([metrics])
    assert list(frame.columns) == ["mae", "rmse", "r2", "degenerate"]


def test_metrics_reject_empty_input():
    with pytest.raises(ConfigurationError):
        regression_metrics([])


def test_one_label_metrics():
    expected = np.eye(3)[[0, 0, 1, 2]]
    evaluated = np.eye(3)[[0, 1, 1, 2]]
    metrics = one_label_metrics(_items(expected, evaluated))
    assert metrics.accuracy == pytest.approx(0.75)
    assert metrics.confusion_matrix.sum() == pytest.approx(1.0)
    assert metrics.confusion_matrix[0, 1] == pytest.approx(0.25)
    cls0, cls1, cls2 = metrics.classes
    assert cls0.precision == 1.0 and cls0.recall == 0.5
    assert cls1.precision == 0.5 and cls1.recall == 1.0
    assert cls0.fraction == 0.5
    assert cls2.f1 == 1.0
    assert metrics.to_frame().loc[1, "precision"] == 0.5
    assert metrics.confusion_frame().loc[0, 1] == pytest.approx(0.25)


def test_one_label_class_never_predicted_has_zero_precision():
    expected = np.eye(2)[[0, 1]]
    evaluated = np.eye(2)[[0, 0]]
    metrics = one_label_metrics((expected, evaluated))
    assert metrics.classes[1].precision == 0.0
    assert metrics.classes[1].f1 == 0.0


def test_multi_label_accuracy_counts_recognised_labels():
    expected = np.array([[1, 1, 0], [0, 1, 0]], dtype=float)
    evaluated = np.array([[0.9, 0.2, 0.7], [0.1, 0.8, 0.1]])
    metrics = multi_label_metrics((expected, evaluated), threshold=0.5)
    assert metrics.accuracy == pytest.approx(2 / 3)
    assert metrics.classes[0].recall == 1.0
    assert metrics.classes[1].recall == 0.5
    assert metrics.classes[2].precision == 0.0
    assert metrics.classes[1].fraction == pytest.approx(2 / 3)


def test_binary_metrics_confusion_layout():
    expected = np.array([[1.0], [1.0], [0.0], [0.0]])
    evaluated = np.array([[0.9], [0.2], [0.6], [0.1]])
    metrics = binary_metrics((expected, evaluated), threshold=0.5)
    np.testing.assert_allclose(metrics.confusion_matrix, [[0.25, 0.25], [0.25, 0.25]])
    assert metrics.accuracy == pytest.approx(0.5)
    assert metrics.precision == pytest.approx(0.5)
    assert metrics.recall == pytest.approx(0.5)


@pytest.mark.parametrize("threshold", [0.0, 1.0, -0.2, 1.5])
def test_thresholds_must_lie_strictly_inside_unit_interval(threshold):
    data = (np.ones((2, 1)), np.ones((2, 1)))
    with pytest.raises(ConfigurationError):
        binary_metrics(data, threshold=threshold)
    with pytest.raises(ConfigurationError):
        multi_label_metrics(data, threshold=threshold)
