"""Minibatch training loop driving an engine's single training step."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, List, Mapping, Sequence

from ..core.types import Batch, FitResult
from ..engine.base import Engine, Learner, Node
from ..errors import ConfigurationError
from .schedules import ConstantRate, LearningRateRule

logger = logging.getLogger(__name__)

BatchSource = Callable[[int], Iterable[Batch]]
EpochCallback = Callable[[int, float, float], object]


class Trainer:
    """Run the epoch loop: train, average, reschedule, report, maybe stop.

    Loss and evaluation values returned by the engine are per-row means of a
    minibatch; the trainer weights them by the actual minibatch size so that a
    short final minibatch does not bias the epoch average.

    ``callbacks`` receive ``on_epoch(epoch, metrics)`` with ``loss``,
    ``evaluation``, ``learning_rate`` and ``best_loss``.  The ``on_epoch``
    argument of :meth:`run` is different: it is the caller's stopping
    predicate ``(epoch, loss, evaluation) -> stop?``.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        inputs: Node,
        targets: Node,
        loss: Node,
        evaluation: Node,
        learner: Learner,
        callbacks: Sequence[object] | None = None,
    ) -> None:
        self.engine = engine
        self.inputs = inputs
        self.targets = targets
        self.loss = loss
        self.evaluation = evaluation
        self.learner = learner
        self.callbacks = list(callbacks or [])
        self.best_loss = float("inf")
        self.steps = 0

    def run(
        self,
        batches: BatchSource,
        epochs: int,
        *,
        learning_rate_rule: LearningRateRule | None = None,
        on_epoch: EpochCallback | None = None,
    ) -> FitResult:
        if epochs <= 0:
            raise ConfigurationError(f"epochs must be positive, got {epochs}")
        rule = learning_rate_rule or ConstantRate()
        rate = float(self.learner.learning_rate)
        loss_curve: List[float] = []
        evaluation_curve: List[float] = []
        epoch_count = 0
        started = time.perf_counter()

        for epoch in range(1, epochs + 1):
            avg_loss, avg_evaluation = self._run_epoch(batches(epoch), epoch)
            epoch_count = epoch
            loss_curve.append(avg_loss)
            evaluation_curve.append(avg_evaluation)
            self.best_loss = min(self.best_loss, avg_loss)

            used_rate = rate
            rate = float(rule(epoch, rate))
            if rate != used_rate:
                self.engine.update_learning_rate(self.learner, rate)

            logger.info(
                "epoch %d/%d loss=%.6f evaluation=%.6f lr=%.6g",
                epoch,
                epochs,
                avg_loss,
                avg_evaluation,
                used_rate,
            )
            self._emit_epoch(
                epoch,
                {
                    "loss": avg_loss,
                    "evaluation": avg_evaluation,
                    "learning_rate": used_rate,
                    "best_loss": self.best_loss,
                },
            )
            if on_epoch is not None and on_epoch(epoch, avg_loss, avg_evaluation):
                logger.info("training stopped by callback after epoch %d", epoch)
                break

        duration = time.perf_counter() - started
        return FitResult(
            loss=loss_curve[-1],
            evaluation=evaluation_curve[-1],
            duration=duration,
            epoch_count=epoch_count,
            loss_curve=loss_curve,
            evaluation_curve=evaluation_curve,
        )

    # ------------------------------------------------------------------
    # Internal helpers

    def _run_epoch(self, batches: Iterable[Batch], epoch: int) -> tuple[float, float]:
        loss_total = 0.0
        evaluation_total = 0.0
        rows = 0
        for batch in batches:
            size = len(batch)
            if size == 0:
                continue
            loss_value, evaluation_value = self.engine.train_step(
                self.loss,
                self.evaluation,
                self.learner,
                {self.inputs: batch.inputs, self.targets: batch.targets},
            )
            self.steps += 1
            loss_total += float(loss_value) * size
            evaluation_total += float(evaluation_value) * size
            rows += size
            logger.debug("epoch %d step %d rows=%d loss=%.6f", epoch, self.steps, size, loss_value)
        if rows == 0:
            raise ConfigurationError(f"epoch {epoch} produced no training rows")
        return loss_total / rows, evaluation_total / rows

    def _emit_epoch(self, epoch: int, metrics: Mapping[str, float]) -> None:
        for callback in self.callbacks:
            if hasattr(callback, "on_epoch"):
                callback.on_epoch(epoch, metrics)  # type: ignore[attr-defined]
            elif callable(callback):
                callback(epoch, metrics)


__all__ = ["BatchSource", "EpochCallback", "Trainer"]
