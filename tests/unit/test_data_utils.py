import numpy as np
import pytest

from seqflow.core.types import PaddedSequences
from seqflow.data.utils import (
    as_features,
    check_pairing,
    feature_statistics,
    min_max_normalize,
    minibatch_count,
    minibatches,
    pad_sequences,
    shuffle,
    split,
    split_balanced,
    statistics_frame,
)
from seqflow.errors import ConfigurationError


@pytest.mark.parametrize("n_rows, size", [(25, 10), (30, 10), (7, 32), (1, 1)])
def test_minibatches_cover_every_row_once(n_rows, size):
    x = np.arange(n_rows, dtype=np.float32).reshape(-1, 1)
    y = x * 2
    batches = list(minibatches(x, y, size))
    assert len(batches) == minibatch_count(n_rows, size)
    expected_last = n_rows % size or min(size, n_rows)
    assert len(batches[-1]) == expected_last
    seen = np.concatenate([b.inputs for b in batches]).ravel()
    np.testing.assert_array_equal(seen, np.arange(n_rows))


def test_minibatches_reject_non_positive_size():
    with pytest.raises(ConfigurationError):
        list(minibatches(np.zeros((3, 1)), np.zeros((3, 1)), 0))


def test_check_pairing_rejects_mismatch_and_empty():
    with pytest.raises(ConfigurationError):
        check_pairing(np.zeros((3, 1)), np.zeros((2, 1)))
    with pytest.raises(ConfigurationError):
        check_pairing(np.zeros((0, 1)), np.zeros((0, 1)))


def test_shuffle_keeps_rows_paired():
    x = np.arange(10).reshape(-1, 1)
    y = np.arange(10) * 10
    sx, sy = shuffle(x, y, 3)
    np.testing.assert_array_equal(sx.ravel() * 10, sy)
    assert sorted(sx.ravel()) == list(range(10))
    again_x, _ = shuffle(x, y, 3)
    np.testing.assert_array_equal(sx, again_x)


def test_pad_sequences_zero_pads_and_records_lengths():
    padded = pad_sequences([[[1.0]], [[2.0], [3.0], [4.0]]])
    assert padded.data.shape == (2, 3, 1)
    np.testing.assert_array_equal(padded.lengths, [1, 3])
    np.testing.assert_array_equal(padded.data[0, :, 0], [1.0, 0.0, 0.0])
    assert padded.max_length == 3


def test_pad_sequences_rejects_empty_sequence():
    with pytest.raises(ConfigurationError):
        pad_sequences([np.zeros((0, 2))])


def test_padded_sequences_slice_like_arrays():
    padded = pad_sequences([np.ones((2, 1)), np.ones((4, 1)), np.ones((1, 1))])
    part = padded[1:]
    assert isinstance(part, PaddedSequences)
    assert len(part) == 2
    np.testing.assert_array_equal(part.lengths, [4, 1])


def test_as_features_wraps_dense_sequences():
    features = as_features(np.zeros((4, 5, 2)), sequence=True)
    assert isinstance(features, PaddedSequences)
    np.testing.assert_array_equal(features.lengths, [5, 5, 5, 5])


@pytest.mark.parametrize("fraction, cut", [(0.0, 0), (0.75, 7), (1.0, 10)])
def test_split_takes_floor_of_fraction(fraction, cut):
    x = np.arange(10).reshape(-1, 1)
    y = np.arange(10)
    first_x, first_y, rest_x, rest_y = split(x, y, fraction)
    assert len(first_x) == cut
    assert len(rest_y) == 10 - cut
    np.testing.assert_array_equal(first_y, np.arange(cut))


def test_split_rejects_fraction_outside_unit_interval():
    with pytest.raises(ConfigurationError):
        split(np.zeros((4, 1)), np.zeros(4), 1.5)


def test_split_balanced_keeps_class_ratio():
    y = np.eye(2)[[0] * 8 + [1] * 4]
    x = np.arange(12).reshape(-1, 1)
    first_x, first_y, rest_x, rest_y = split_balanced(x, y, 0.5)
    assert first_y.argmax(axis=1).tolist().count(0) == 4
    assert first_y.argmax(axis=1).tolist().count(1) == 2
    assert len(rest_x) == 6


def test_min_max_normalize_scales_and_reuses_bounds():
    data = np.array([[0.0, 10.0], [5.0, 20.0], [10.0, 30.0]])
    scaled, mins, maxes = min_max_normalize(data)
    np.testing.assert_allclose(scaled[:, 0], [0.0, 0.5, 1.0])
    np.testing.assert_allclose(scaled[:, 1], [0.0, 0.5, 1.0])
    centred, _, _ = min_max_normalize(data, center=True)
    np.testing.assert_allclose(centred[:, 0], [-1.0, 0.0, 1.0])
    other, _, _ = min_max_normalize(np.array([[20.0, 40.0]]), mins=mins, maxes=maxes)
    np.testing.assert_allclose(other, [[2.0, 1.5]])


def test_min_max_normalize_constant_column_maps_to_zero():
    scaled, _, _ = min_max_normalize(np.array([[3.0], [3.0]]))
    np.testing.assert_array_equal(scaled, [[0.0], [0.0]])


def test_minibatch_count_of_no_rows_is_zero():
    assert minibatch_count(0, 5) == 0
    assert minibatch_count(10, 5) == 2
    assert minibatch_count(11, 5) == 3
    with pytest.raises(ConfigurationError):
        minibatch_count(10, 0)
    with pytest.raises(ConfigurationError):
        minibatch_count(-1, 5)


def test_feature_statistics_per_column():
    data = np.array([[1, 0], [2, 0], [2, 0], [3, 0], [10, 0]], dtype=np.float64)
    first, second = feature_statistics(data, names=["size", "flag"])
    assert first.name == "size"
    assert first.average == pytest.approx(3.6)
    assert first.median == pytest.approx(2.0)
    assert (first.min, first.max) == (1.0, 10.0)
    assert first.variance == pytest.approx(10.64)
    assert first.standard_deviation == pytest.approx(10.64**0.5)
    assert first.mean_absolute_deviation == pytest.approx(2.56)
    assert first.unique_values == {1.0: 1, 2.0: 2, 3.0: 1, 10.0: 1}
    assert second.variance == 0.0
    assert second.unique_values == {0.0: 5}
    assert str(first).startswith("Name: size Min: 1.00000 Max: 10.00000")


def test_feature_statistics_groups_values_within_epsilon():
    (stat,) = feature_statistics(np.array([1.0, 2.0, 2.0, 3.0, 10.0]), epsilon=1.5)
    assert stat.name == "1"
    assert stat.unique_values == {1.0: 3, 3.0: 1, 10.0: 1}


def test_feature_statistics_edge_cases():
    assert feature_statistics(np.zeros((0, 3))) == []
    with pytest.raises(ConfigurationError):
        feature_statistics(np.zeros((2, 2)), names=["only one"])
    with pytest.raises(ConfigurationError):
        feature_statistics(np.zeros((2, 2)), epsilon=0)
    with pytest.raises(ConfigurationError):
        feature_statistics(np.zeros((2, 2, 2)))


def test_statistics_frame_is_indexed_by_feature_name():
    frame = statistics_frame(feature_statistics(np.array([[1.0, 4.0], [3.0, 8.0]]), names=["a", "b"]))
    assert list(frame.index) == ["a", "b"]
    assert frame.loc["b", "average"] == pytest.approx(6.0)
    assert frame.loc["a", "variance"] == pytest.approx(1.0)
    assert statistics_frame([]).empty
