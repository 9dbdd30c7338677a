"""Pipeline assembly: presets, model construction and logged training runs."""

from __future__ import annotations

import json
import logging
import time
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

import numpy as np
import yaml

from ..core import recurrent  # noqa: F401  registers "lstm"
from ..core.layers import build_layer
from ..core.types import FitResult, Precision
from ..data.utils import as_features, min_max_normalize, seed_everything, split
from ..errors import ConfigurationError
from ..model import Sequential
from ..reporting.artifacts import write_manifest
from ..reporting.metrics import CsvSink, JsonlSink
from ..reporting.plots import PlotAdapter
from .losses import REGISTRY as LOSSES
from .losses import Loss
from .metrics import regression_metrics
from .optimizers import build_optimizer
from .schedules import EarlyStopping, build_schedule

logger = logging.getLogger(__name__)

_PRESETS: Dict[str, Mapping[str, object]] = {
    "dense-regression": {
        "model": {
            "input_shape": [1],
            "layers": [
                {"type": "dense", "output_dim": 16, "activation": "relu"},
                {"type": "dense", "output_dim": 1},
            ],
        },
        "train": {
            "epochs": 20,
            "minibatch_size": 10,
            "seed": 0,
            "loss": "squared_error",
            "evaluation": "squared_error",
            "optimizer": {"name": "adam", "learning_rate": 0.01},
            "normalize": True,
            "run_dir": "runs/dense-regression",
        },
    },
    "residual-classifier": {
        "model": {
            "input_shape": [8],
            "layers": [
                {"type": "dense", "output_dim": 16, "activation": "relu"},
                {"type": "shortcut_in", "key": "a"},
                {"type": "residual2", "output_dim": 16, "activation": "relu"},
                {"type": "batch_norm"},
                {"type": "shortcut_out", "key": "a"},
                {"type": "dense", "output_dim": 3},
            ],
        },
        "train": {
            "epochs": 30,
            "minibatch_size": 32,
            "shuffle": True,
            "seed": 1,
            "loss": "cross_entropy_with_softmax",
            "evaluation": "softmax_classification_error",
            "optimizer": {"name": "momentum_sgd", "learning_rate": 0.05, "momentum": 0.9},
            "lr_schedule": {"name": "step", "step_size": 10, "factor": 0.5},
            "early_stopping_patience": 5,
            "run_dir": "runs/residual-classifier",
        },
    },
    "lstm-sequence-regression": {
        "model": {
            "input_shape": [1],
            "is_sequence": True,
            "layers": [
                {"type": "lstm", "output_dim": 8, "cell_dim": 16, "is_last_lstm": False},
                {"type": "lstm", "output_dim": 8, "self_stabilization": True},
                {"type": "dense", "output_dim": 1},
            ],
        },
        "train": {
            "epochs": 10,
            "minibatch_size": 16,
            "seed": 2,
            "loss": "squared_error",
            "evaluation": "absolute_error",
            "optimizer": {"name": "rmsprop", "learning_rate": 0.005},
            "run_dir": "runs/lstm-sequence-regression",
        },
    },
}

_PRESET_DIR = Path(__file__).resolve().parents[2] / "configs" / "presets"
_FILE_PRESETS_CACHE: Dict[str, Mapping[str, object]] | None = None
_SHORTCUT_TYPES = {"shortcut_in", "shortcut_out"}


def _read_preset_file(path: Path) -> Mapping[str, object]:
    text = path.read_text()
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text) or {}
    elif suffix == ".json":
        data = json.loads(text or "{}")
    else:
        raise ConfigurationError(f"Unsupported preset file type: {path.suffix}")

    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Preset {path.name} must decode to a mapping")
    return data


def _file_presets() -> Dict[str, Mapping[str, object]]:
    global _FILE_PRESETS_CACHE
    if _FILE_PRESETS_CACHE is None:
        presets: Dict[str, Mapping[str, object]] = {}
        if _PRESET_DIR.exists():
            for file in sorted(_PRESET_DIR.iterdir()):
                if file.suffix.lower() not in {".yaml", ".yml", ".json"}:
                    continue
                data = _read_preset_file(file)
                missing = {"model", "train"} - set(data)
                if missing:
                    raise ConfigurationError(
                        f"Preset {file.name} is missing required sections: {', '.join(sorted(missing))}"
                    )
                presets[file.stem] = json.loads(json.dumps(data))
        _FILE_PRESETS_CACHE = presets
    return {name: deepcopy(cfg) for name, cfg in _FILE_PRESETS_CACHE.items()}


def presets() -> Mapping[str, Mapping[str, object]]:
    combined: Dict[str, Mapping[str, object]] = {}
    combined.update({name: deepcopy(cfg) for name, cfg in _PRESETS.items()})
    combined.update(_file_presets())
    return combined


def load_preset(name: str) -> Mapping[str, object]:
    file_overrides = _file_presets()
    if name in file_overrides:
        return file_overrides[name]
    try:
        return deepcopy(_PRESETS[name])
    except KeyError as exc:
        available = ", ".join(sorted(presets()))
        raise ConfigurationError(f"Unknown preset {name!r}. Available presets: {available}") from exc


def build_model(config: Mapping[str, Any], *, seed: int | None = None) -> Sequential:
    """Build a :class:`Sequential` from the ``model`` section of a config."""

    model_cfg = dict(config.get("model", config))
    if "input_shape" not in model_cfg:
        raise ConfigurationError("model config needs an 'input_shape'")
    model = Sequential(
        model_cfg["input_shape"],
        device=str(model_cfg.get("device", "cpu")),
        precision=Precision.parse(model_cfg.get("precision", "float32")),
        is_sequence=bool(model_cfg.get("is_sequence", False)),
        seed=seed,
    )
    try:
        for entry in model_cfg.get("layers", []):
            kind = entry.get("type")
            if kind in _SHORTCUT_TYPES:
                if "key" not in entry:
                    raise ConfigurationError(f"{kind} entry needs a 'key'")
                if kind == "shortcut_in":
                    model.mark_shortcut_source(str(entry["key"]))
                else:
                    model.consume_shortcut(str(entry["key"]))
            else:
                model.add(build_layer(entry))
    except Exception:
        model.dispose()
        raise
    return model


@dataclass(frozen=True)
class RunResult:
    fit: FitResult
    architecture: str
    parameter_count: int
    run_dir: str
    metrics_path: str
    manifest_path: str
    test_metrics: Mapping[str, float]


def run_pipeline(config: Mapping[str, Any], features, labels) -> RunResult:
    """Build, train and evaluate a model on caller-supplied arrays.

    Metrics go to ``metrics.jsonl``/``metrics.csv`` under ``train.run_dir``
    together with ``manifest.json`` and ``config.json``.
    """

    train_cfg = dict(config.get("train", {}))
    seed = int(train_cfg.get("seed", 0))
    seed_everything(seed)

    labels = np.asarray(labels)
    features = as_features(features, sequence=bool(config.get("model", {}).get("is_sequence", False)))
    if train_cfg.get("normalize", False):
        if not isinstance(features, np.ndarray):
            raise ConfigurationError("normalize applies to static features only")
        features, _, _ = min_max_normalize(features)
        labels, _, _ = min_max_normalize(labels)

    test_fraction = float(train_cfg.get("test_fraction", 0.0))
    train_x, train_y, test_x, test_y = split(
        features, labels, 1.0 - test_fraction, randomize=test_fraction > 0, seed=seed
    )

    loss = _build_loss(train_cfg.get("loss", "squared_error"))
    evaluation = _build_loss(train_cfg.get("evaluation", train_cfg.get("loss", "squared_error")))
    optimizer = build_optimizer(train_cfg.get("optimizer", {"name": "sgd", "learning_rate": 0.01}))
    schedule = build_schedule(train_cfg.get("lr_schedule"))
    patience = train_cfg.get("early_stopping_patience")
    stopper = EarlyStopping(int(patience)) if patience is not None else None

    run_dir = _resolve_run_dir(train_cfg)
    run_dir.mkdir(parents=True, exist_ok=True)

    with build_model(config, seed=seed) as model:
        architecture = model.describe()
        parameter_count = model.parameter_count()
        logger.info(
            "seqflow run: architecture=%s parameters=%d loss=%s evaluation=%s optimizer=%s",
            architecture,
            parameter_count,
            loss.describe(),
            evaluation.describe(),
            type(optimizer).__name__,
        )
        jsonl = JsonlSink(run_dir / "metrics.jsonl", architecture=architecture, seed=seed)
        csv_sink = CsvSink(run_dir / "metrics.csv")
        plots = PlotAdapter(run_dir, enable_plots=bool(train_cfg.get("enable_plots", False)))

        fit = model.fit(
            train_x,
            train_y,
            loss=loss,
            evaluation=evaluation,
            optimizer=optimizer,
            epochs=int(train_cfg.get("epochs", 1)),
            minibatch_size=int(train_cfg.get("minibatch_size", 32)),
            shuffle=bool(train_cfg.get("shuffle", False)),
            learning_rate_rule=schedule,
            on_epoch=stopper,
            seed=seed,
            callbacks=[jsonl, csv_sink, plots],
        )
        plots.close()

        test_metrics: Dict[str, float] = {}
        if len(test_y):
            per_dimension = regression_metrics(model.evaluate(test_x, test_y))
            test_metrics = {
                "mae": float(np.mean([m.mae for m in per_dimension])),
                "rmse": float(np.mean([m.rmse for m in per_dimension])),
            }
            (run_dir / "metrics_test.json").write_text(json.dumps(test_metrics, indent=2))

    safe_config = json.loads(json.dumps(config))
    (run_dir / "config.json").write_text(json.dumps(safe_config, indent=2))
    manifest = write_manifest(
        run_dir / "manifest.json",
        config=safe_config,
        architecture=architecture,
        parameter_count=parameter_count,
        result={"loss": fit.loss, "evaluation": fit.evaluation, "epochs": fit.epoch_count},
    )
    logger.info(
        "seqflow run finished: epochs=%d loss=%.6f evaluation=%.6f in %.2fs",
        fit.epoch_count,
        fit.loss,
        fit.evaluation,
        fit.duration,
    )
    return RunResult(
        fit=fit,
        architecture=architecture,
        parameter_count=parameter_count,
        run_dir=str(run_dir),
        metrics_path=str(jsonl.path),
        manifest_path=manifest,
        test_metrics=test_metrics,
    )


def _build_loss(spec: str | Mapping[str, Any]) -> Loss:
    """Look up ``"name"`` or ``{"name": ..., **options}`` in the loss registry."""

    if isinstance(spec, Mapping):
        options = dict(spec)
        if "name" not in options:
            raise ConfigurationError(f"loss entry {dict(spec)!r} has no 'name'")
        name = str(options.pop("name"))
        try:
            return LOSSES.get(name, **options)
        except TypeError as exc:
            raise ConfigurationError(f"Invalid options for loss {name!r}: {exc}") from exc
    return LOSSES.get(str(spec))


def _resolve_run_dir(train_cfg: Mapping[str, object]) -> Path:
    if "run_dir" in train_cfg:
        return Path(str(train_cfg["run_dir"]))
    return Path("runs") / time.strftime("%Y%m%d-%H%M%S")


__all__ = ["RunResult", "build_model", "load_preset", "presets", "run_pipeline"]
