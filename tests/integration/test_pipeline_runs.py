import csv
import json
from pathlib import Path

import numpy as np
import pytest

from seqflow.errors import ConfigurationError
from seqflow.training import pipelines


def test_dense_preset_run_writes_artifacts(tmp_path):
    config = pipelines.load_preset("dense-regression")
    config["train"].update({"epochs": 2, "run_dir": str(tmp_path / "run"), "test_fraction": 0.2})
    x = np.linspace(0, 10, 100).reshape(-1, 1)

    result = pipelines.run_pipeline(config, x, x * 3.0)

    assert result.fit.epoch_count == 2
    assert result.architecture == "[IN]1-16[ReLU]-1[][OUT]"
    assert result.parameter_count == 16 + 16 + 16 + 1
    records = [json.loads(line) for line in Path(result.metrics_path).read_text().splitlines() if line]
    assert [r["epoch"] for r in records] == [1, 2]
    assert all({"loss", "evaluation", "learning_rate", "sha", "seed"} <= set(r) for r in records)
    assert records[0]["architecture"] == result.architecture

    manifest = json.loads(Path(result.manifest_path).read_text())
    assert manifest["architecture"] == result.architecture
    assert manifest["config"]["train"]["seed"] == 0
    assert manifest["result"]["epochs"] == 2

    with (tmp_path / "run" / "metrics.csv").open() as handle:
        rows = list(csv.DictReader(handle))
    assert len(rows) == 2
    assert set(result.test_metrics) == {"mae", "rmse"}
    assert (tmp_path / "run" / "config.json").exists()


def test_pipeline_is_deterministic_for_a_seed(tmp_path):
    x = np.random.default_rng(0).normal(size=(40, 1))
    losses = []
    for name in ("a", "b"):
        config = pipelines.load_preset("dense-regression")
        config["train"].update({"epochs": 2, "run_dir": str(tmp_path / name)})
        losses.append(pipelines.run_pipeline(config, x, np.sin(x)).fit.loss_curve)
    assert losses[0] == pytest.approx(losses[1])


def test_early_stopping_and_schedule_from_config(tmp_path):
    rng = np.random.default_rng(1)
    x = rng.normal(size=(64, 8)).astype(np.float32)
    y = np.eye(3, dtype=np.float32)[rng.integers(0, 3, size=64)]
    config = pipelines.load_preset("residual-classifier")
    config["train"].update({"epochs": 4, "run_dir": str(tmp_path / "cls"), "enable_plots": True})

    result = pipelines.run_pipeline(config, x, y)

    assert 1 <= result.fit.epoch_count <= 4
    assert "ShortIn(a)" in result.architecture and "ShortOut(a)" in result.architecture
    assert (tmp_path / "cls" / "loss.png").exists()


def test_file_presets_are_listed_and_build():
    available = pipelines.presets()
    assert {"dense-regression", "residual-classifier", "lstm-sequence-regression"} <= set(available)
    assert "conv-shortcut" in available
    with pipelines.build_model(pipelines.load_preset("conv-shortcut")) as model:
        assert model.describe().startswith("[IN]1x8x8-Conv2D(")
        assert "ShortOut(block)" in model.describe()
        assert model.tail.shape == (2,)


def test_lstm_preset_builds_a_sequence_model():
    with pipelines.build_model(pipelines.load_preset("lstm-sequence-regression")) as model:
        assert model.is_sequence
        assert model.describe() == (
            "[IN]1-LSTM(C=16H=8SC=TrueSS=none)-LSTM(C=8H=8SC=TrueSS=SS)-1[][OUT]"
        )


def test_unknown_preset_is_configuration_error():
    with pytest.raises(ConfigurationError, match="dense-regression"):
        pipelines.load_preset("does-not-exist")


@pytest.mark.parametrize(
    "layers",
    [
        [{"type": "shortcut_out", "key": "never"}],
        [{"type": "shortcut_in"}],
        [{"type": "dense"}],
    ],
)
def test_build_model_rejects_broken_layer_lists(layers):
    with pytest.raises(ConfigurationError):
        pipelines.build_model({"model": {"input_shape": [2], "layers": layers}})


def test_build_model_needs_input_shape():
    with pytest.raises(ConfigurationError):
        pipelines.build_model({"model": {"layers": []}})


def test_loss_entries_accept_option_mappings(tmp_path):
    rng = np.random.default_rng(3)
    x = rng.normal(size=(30, 1))
    y = (x > 0).astype(np.float64)
    config = pipelines.load_preset("dense-regression")
    config["model"]["layers"][-1]["activation"] = "sigmoid"
    config["train"].update(
        {
            "epochs": 2,
            "run_dir": str(tmp_path / "binary"),
            "normalize": False,
            "loss": {"name": "weighted_binary_cross_entropy", "weights": [2.0]},
            "evaluation": {"name": "binary_classification_error", "threshold": 0.3},
        }
    )

    result = pipelines.run_pipeline(config, x, y)

    assert result.fit.epoch_count == 2
    assert 0.0 <= result.fit.evaluation <= 1.0


@pytest.mark.parametrize(
    "loss",
    [{"weights": [1.0]}, {"name": "squared_error", "weights": [1.0]}, {"name": "binary_classification_error", "threshold": 1.5}],
)
def test_broken_loss_entries_are_configuration_errors(tmp_path, loss):
    config = pipelines.load_preset("dense-regression")
    config["train"].update({"epochs": 1, "run_dir": str(tmp_path / "bad"), "loss": loss})
    x = np.linspace(0, 1, 10).reshape(-1, 1)
    with pytest.raises(ConfigurationError):
        pipelines.run_pipeline(config, x, x)
