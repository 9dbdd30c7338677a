import numpy as np
import pytest

from seqflow.core.activations import ReLU
from seqflow.core.layers import BatchNormalization, Dense, Dropout, Residual2, SelfStabilization
from seqflow.core.recurrent import LSTM
from seqflow.core.types import Precision
from seqflow.data.utils import pad_sequences
from seqflow.engine.base import Node
from seqflow.model import Sequential
from seqflow.training.losses import REGISTRY
from seqflow.training.metrics import one_label_metrics, regression_metrics
from seqflow.training.optimizers import SGD, Adam


class _Calls:
    def __init__(self, stop_at=None):
        self.epochs = []
        self.stop_at = stop_at

    def __call__(self, epoch, loss, evaluation):
        self.epochs.append(epoch)
        return self.stop_at is not None and epoch >= self.stop_at


def test_linear_identity_learns_in_one_epoch():
    data = np.arange(1, 101, dtype=np.float64).reshape(-1, 1)
    calls = _Calls()
    with Sequential(1, precision=Precision.FLOAT64, seed=0) as model:
        model.add(Dense(1))
        result = model.fit(
            data,
            data,
            loss=REGISTRY.get("squared_error"),
            evaluation=REGISTRY.get("squared_error"),
            optimizer=SGD(learning_rate=1e-4),
            epochs=1,
            minibatch_size=10,
            shuffle=True,
            seed=0,
            on_epoch=calls,
        )
        (metrics,) = regression_metrics(model.evaluate(data, data))
    assert calls.epochs == [1]
    assert result.epoch_count == 1
    assert metrics.determination >= 0.0


def test_callback_stops_training_at_epoch_three():
    x = np.linspace(-1, 1, 40, dtype=np.float32).reshape(-1, 1)
    calls = _Calls(stop_at=3)
    with Sequential(1, seed=1) as model:
        model.add(Dense(4, ReLU())).add(Dense(1))
        result = model.fit(
            x,
            x,
            loss=REGISTRY.get("squared_error"),
            evaluation=REGISTRY.get("absolute_error"),
            optimizer=Adam(learning_rate=0.01),
            epochs=10,
            minibatch_size=8,
            on_epoch=calls,
        )
    assert result.epoch_count == 3
    assert calls.epochs == [1, 2, 3]
    assert len(result.loss_curve) == 3
    assert result.duration >= 0.0


def test_training_reduces_loss_on_a_residual_classifier():
    rng = np.random.default_rng(0)
    x = rng.normal(size=(120, 4)).astype(np.float32)
    classes = (x[:, 0] > 0).astype(int) + (x[:, 1] > 0).astype(int)
    y = np.eye(3, dtype=np.float32)[classes]
    with Sequential(4, seed=2) as model:
        model.add(Dense(8, ReLU())).mark_shortcut_source("a").add(Residual2(8, ReLU())).consume_shortcut("a")
        model.add(Dense(3))
        result = model.fit(
            x,
            y,
            loss=REGISTRY.get("cross_entropy_with_softmax"),
            evaluation=REGISTRY.get("softmax_classification_error"),
            optimizer=Adam(learning_rate=0.02),
            epochs=30,
            minibatch_size=16,
            shuffle=True,
            seed=2,
        )
        metrics = one_label_metrics(model.evaluate(x, y))
    assert result.loss_curve[-1] < result.loss_curve[0]
    assert 0.0 <= metrics.accuracy <= 1.0
    assert metrics.confusion_matrix.sum() == pytest.approx(1.0)


def test_lstm_output_ignores_padding_after_last_step():
    short = np.array([[0.5], [-0.25]])
    long = np.array([[0.1], [0.2], [0.3], [0.4]])
    with Sequential(1, is_sequence=True, precision=Precision.FLOAT64, seed=3) as model:
        model.add(LSTM(3, cell_dim=5)).add(Dense(2))
        alone = model.predict(pad_sequences([short], dtype=np.float64))
        batched = model.predict(pad_sequences([long, short], dtype=np.float64))
    assert batched.shape == (2, 2)
    np.testing.assert_allclose(batched[1], alone[0], rtol=1e-9, atol=1e-10)


def _sigmoid(z):
    return 1.0 / (1.0 + np.exp(-z))


def test_lstm_prediction_matches_a_step_by_step_recurrence():
    sequences = [np.array([[0.3, -0.7], [1.1, 0.4], [-0.2, 0.9]]), np.array([[0.5, 0.5]])]
    with Sequential(2, is_sequence=True, precision=Precision.FLOAT64, seed=8) as model:
        model.add(LSTM(3, use_shortcut=False))
        engine = model.engine
        values = [engine.parameter_value(Node(i, engine)) for i in engine.parameter_slots]
        predictions = model.predict(pad_sequences(sequences, dtype=np.float64))

    # creation order: forget, input, candidate and output gates, each W then b
    (w_f, b_f), (w_i, b_i), (w_c, b_c), (w_o, b_o) = zip(values[0::2], values[1::2])
    expected = []
    for sequence in sequences:
        h = np.zeros(3)
        c = np.zeros(3)
        for x in sequence:
            forget = _sigmoid(w_f @ x + b_f + h)
            update = _sigmoid(w_i @ x + b_i + h)
            candidate = w_c @ x + b_c + h
            output = _sigmoid(w_o @ x + b_o + h)
            c = c * forget + update * candidate
            h = output * np.tanh(c)
        expected.append(h)
    np.testing.assert_allclose(predictions, np.array(expected), rtol=1e-9, atol=1e-12)


def test_stacked_lstm_trains_on_variable_length_sequences():
    rng = np.random.default_rng(4)
    sequences = [rng.normal(size=(int(n), 2)) for n in rng.integers(1, 6, size=24)]
    targets = np.array([[seq[:, 0].sum()] for seq in sequences], dtype=np.float32)
    with Sequential(2, is_sequence=True, seed=4) as model:
        model.add(LSTM(4, is_last_lstm=False, self_stabilization=True)).add(LSTM(4)).add(Dense(1))
        result = model.fit(
            sequences,
            targets,
            loss=REGISTRY.get("squared_error"),
            evaluation=REGISTRY.get("absolute_error"),
            optimizer=Adam(learning_rate=0.01),
            epochs=3,
            minibatch_size=8,
        )
        predictions = model.predict(sequences)
    assert result.epoch_count == 3
    assert predictions.shape == (24, 1)
    assert np.all(np.isfinite(predictions))


def test_batch_normalization_uses_running_statistics():
    rng = np.random.default_rng(5)
    x = rng.normal(loc=5.0, scale=2.0, size=(64, 3)).astype(np.float32)
    with Sequential(3, seed=5) as model:
        model.add(BatchNormalization())
        untouched = model.predict(x)
        # a fresh layer starts from mean 0 and unit inverse deviation
        np.testing.assert_allclose(untouched, x, rtol=1e-6)
        model.fit(
            x,
            x,
            loss=REGISTRY.get("squared_error"),
            evaluation=REGISTRY.get("squared_error"),
            optimizer=SGD(learning_rate=1e-12),
            epochs=1,
            minibatch_size=16,
        )
        normalised = model.predict(x)
    expected = (x - x.mean(axis=0)) / np.sqrt(x.var(axis=0) + 1e-5)
    np.testing.assert_allclose(normalised, expected, atol=1e-3)


def test_dropout_only_acts_during_training():
    x = np.ones((8, 6), dtype=np.float32)
    with Sequential(6, seed=6) as model:
        model.add(Dropout(0.5))
        np.testing.assert_array_equal(model.predict(x), x)


def test_self_stabilization_starts_as_identity():
    x = np.linspace(-2, 2, 12, dtype=np.float32).reshape(4, 3)
    with Sequential(3, seed=7) as model:
        model.add(SelfStabilization())
        np.testing.assert_allclose(model.predict(x), x, rtol=1e-5)
