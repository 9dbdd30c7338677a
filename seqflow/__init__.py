"""seqflow public API."""

from .core import activations  # noqa: F401
from .core import types  # noqa: F401
from .core.layers import (
    Activation,
    BatchNormalization,
    Convolution1D,
    Convolution2D,
    Convolution3D,
    Dense,
    Dropout,
    Flatten,
    Pooling2D,
    Reshape,
    Residual2,
    Scaler,
    SelfStabilization,
    build_layer,
)
from .core.recurrent import LSTM
from .core.types import EvaluateItem, FitResult, PaddedSequences, Padding, PoolingType, Precision
from .errors import ConfigurationError, ModelDisposedError, SeqflowError, TopologyError
from .model import Sequential
from .training import losses, metrics, optimizers, schedules  # noqa: F401
from .training.pipelines import build_model, load_preset, presets, run_pipeline
from .training.trainer import Trainer

__all__ = [
    "Activation",
    "BatchNormalization",
    "ConfigurationError",
    "Convolution1D",
    "Convolution2D",
    "Convolution3D",
    "Dense",
    "Dropout",
    "EvaluateItem",
    "FitResult",
    "Flatten",
    "LSTM",
    "ModelDisposedError",
    "PaddedSequences",
    "Padding",
    "Pooling2D",
    "PoolingType",
    "Precision",
    "Reshape",
    "Residual2",
    "Scaler",
    "SelfStabilization",
    "SeqflowError",
    "Sequential",
    "TopologyError",
    "Trainer",
    "activations",
    "build_layer",
    "build_model",
    "load_preset",
    "losses",
    "metrics",
    "optimizers",
    "presets",
    "run_pipeline",
    "schedules",
    "types",
]
