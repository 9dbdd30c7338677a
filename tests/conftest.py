from __future__ import annotations

from typing import Any, List, Mapping

import numpy as np
import pytest

from seqflow.core.types import Precision
from seqflow.engine.base import LearnerSpec, Node
from seqflow.engine.graph import GraphEngine


class RecordingLearner:
    def __init__(self, spec: LearnerSpec, parameters: List[Node]) -> None:
        self.spec = spec
        self.parameters = parameters
        self.rate = spec.learning_rate

    @property
    def learning_rate(self) -> float:
        return self.rate


class RecordingEngine(GraphEngine):
    """Builds graphs like a real engine but only records training calls.

    ``train_step`` reports the mean of the fed labels as the loss and half of
    it as the evaluation, which makes epoch averages easy to predict.
    """

    def __init__(self, precision: Precision = Precision.FLOAT32) -> None:
        super().__init__(precision, "cpu")
        self.batch_sizes: List[int] = []
        self.rate_updates: List[float] = []
        self.learners: List[RecordingLearner] = []

    def make_learner(self, parameters, spec):
        self._check_alive()
        learner = RecordingLearner(spec, list(parameters))
        self.learners.append(learner)
        return learner

    def update_learning_rate(self, learner, rate):
        self._check_alive()
        self.rate_updates.append(rate)
        learner.rate = rate

    def train_step(self, loss, evaluation, learner, feeds: Mapping[Node, Any]):
        self._check_alive()
        sizes = {len(value) for value in feeds.values()}
        assert len(sizes) == 1, "all feeds of a step must have the same row count"
        self.batch_sizes.append(sizes.pop())
        labels = [value for node, value in feeds.items() if self.graph[node.index].name == "labels"]
        loss_value = float(np.mean(labels[0])) if labels else 1.0
        return loss_value, loss_value / 2

    def infer_step(self, output, feeds):
        self._check_alive()
        rows = len(next(iter(feeds.values())))
        return np.zeros((rows, *output.shape), dtype=np.float32)


class EpochRecorder:
    def __init__(self) -> None:
        self.history: list[tuple[int, dict]] = []

    def on_epoch(self, epoch: int, metrics) -> None:
        self.history.append((epoch, dict(metrics)))


@pytest.fixture
def recording_engine() -> RecordingEngine:
    return RecordingEngine()


@pytest.fixture
def epoch_recorder() -> EpochRecorder:
    return EpochRecorder()
