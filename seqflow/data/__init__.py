"""Dataset helpers."""

from .utils import (
    FeatureStatistic,
    as_features,
    check_pairing,
    feature_statistics,
    min_max_normalize,
    minibatch_count,
    minibatches,
    pad_sequences,
    seed_everything,
    shuffle,
    split,
    split_balanced,
    statistics_frame,
)

__all__ = [
    "FeatureStatistic",
    "as_features",
    "check_pairing",
    "feature_statistics",
    "min_max_normalize",
    "minibatch_count",
    "minibatches",
    "pad_sequences",
    "seed_everything",
    "shuffle",
    "split",
    "split_balanced",
    "statistics_frame",
]
