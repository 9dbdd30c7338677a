import numpy as np
import pytest

from seqflow.core.activations import ReLU
from seqflow.core.layers import Convolution2D, Dense
from seqflow.core.recurrent import LSTM
from seqflow.core.types import Precision
from seqflow.engine.torch_engine import TorchEngine
from seqflow.errors import ConfigurationError, ModelDisposedError, TopologyError
from seqflow.model import Sequential, add_shortcut
from seqflow.training.losses import REGISTRY
from seqflow.training.optimizers import SGD


def _projections(engine, name):
    return [engine.graph[i] for i in engine.parameter_slots if engine.graph[i].name == name]


def test_description_lists_layers_and_consumed_shortcuts(recording_engine):
    model = Sequential(2, engine=recording_engine)
    model.add(Dense(3, ReLU())).mark_shortcut_source("a").add(Dense(3)).consume_shortcut("a")
    assert model.describe() == "[IN]2-3[ReLU]-ShortIn(a)-3[]-ShortOut(a)[OUT]"


def test_description_drops_unconsumed_shortcut_markers(recording_engine):
    model = Sequential(2, engine=recording_engine)
    model.mark_shortcut_source("x").add(Dense(1))
    assert model.describe() == "[IN]2-1[][OUT]"


def test_consuming_unmarked_shortcut_is_configuration_error(recording_engine):
    model = Sequential(2, engine=recording_engine).add(Dense(2))
    with pytest.raises(ConfigurationError):
        model.consume_shortcut("missing")


def test_shortcut_with_matching_shape_adds_no_parameters(recording_engine):
    model = Sequential(3, engine=recording_engine).mark_shortcut_source("a").add(Dense(3))
    before = model.parameter_count()
    model.consume_shortcut("a")
    assert model.parameter_count() == before
    assert recording_engine.graph[model.tail.index].kind == "plus"


def test_shortcut_between_vectors_projects_once(recording_engine):
    model = Sequential(4, engine=recording_engine).mark_shortcut_source("a").add(Dense(2))
    model.consume_shortcut("a")
    (projection,) = _projections(recording_engine, "shortcut_projection")
    assert projection.shape == (2, 4)
    assert projection.attrs["initializer"].kind == "uniform"
    assert model.tail.shape == (2,)


def test_shortcut_between_feature_maps_uses_valid_convolution(recording_engine):
    model = Sequential((1, 8, 8), engine=recording_engine)
    model.add(Convolution2D(3, 3, 4)).mark_shortcut_source("block").add(Convolution2D(3, 3, 4))
    model.consume_shortcut("block")
    (kernel,) = _projections(recording_engine, "shortcut_kernel")
    assert kernel.shape == (4, 4, 3, 3)
    assert kernel.attrs["initializer"].kind == "glorot_uniform"
    assert model.tail.shape == (4, 4, 4)


def test_remarking_a_key_overwrites_the_source(recording_engine):
    model = Sequential(3, engine=recording_engine)
    model.mark_shortcut_source("a").add(Dense(5)).mark_shortcut_source("a").add(Dense(5))
    model.consume_shortcut("a")
    assert _projections(recording_engine, "shortcut_projection") == []


def test_custom_combine_receives_tail_source_and_device(recording_engine):
    seen = {}

    def combine(tail, source, device):
        seen.update(tail=tail.shape, source=source.shape, device=device)
        return add_shortcut(tail, source, device)

    model = Sequential(3, engine=recording_engine).mark_shortcut_source("k").add(Dense(2))
    model.consume_shortcut("k", combine)
    assert seen == {"tail": (2,), "source": (3,), "device": "cpu"}


def test_engine_precision_must_match_model(recording_engine):
    with pytest.raises(ConfigurationError):
        Sequential(2, precision=Precision.FLOAT64, engine=recording_engine)


@pytest.mark.parametrize("shape", [0, (3, 0), ()])
def test_invalid_input_shape(shape):
    with pytest.raises(ConfigurationError):
        Sequential(shape)


def test_dispose_is_idempotent_and_every_operation_fails_afterwards():
    model = Sequential(2, seed=0).add(Dense(1))
    model.dispose()
    model.dispose()
    assert model.disposed
    x = np.zeros((3, 2), dtype=np.float32)
    with pytest.raises(ModelDisposedError):
        model.add(Dense(1))
    with pytest.raises(ModelDisposedError):
        model.predict(x)
    with pytest.raises(ModelDisposedError):
        model.mark_shortcut_source("a")
    with pytest.raises(ModelDisposedError):
        model.fit(
            x,
            np.zeros((3, 1)),
            loss=REGISTRY.get("squared_error"),
            evaluation=REGISTRY.get("squared_error"),
            optimizer=SGD(learning_rate=0.1),
            epochs=1,
        )


def test_context_manager_disposes_engine():
    with Sequential(2, seed=0) as model:
        model.add(Dense(2))
        engine = model.engine
    assert isinstance(engine, TorchEngine)
    assert engine.disposed
    assert model.disposed


def test_topology_error_message_names_the_layer(recording_engine):
    model = Sequential(5, engine=recording_engine)
    layer = Convolution2D(2, 2, 1)
    with pytest.raises(TopologyError, match=r"layer Conv2D\("):
        model.add(layer)


def test_one_shortcut_key_can_be_consumed_twice(recording_engine):
    model = Sequential(3, engine=recording_engine).mark_shortcut_source("a").add(Dense(3))
    model.consume_shortcut("a").add(Dense(3)).consume_shortcut("a")
    assert model.describe() == "[IN]3-ShortIn(a)-3[]-ShortOut(a)-3[]-ShortOut(a)[OUT]"
    assert _projections(recording_engine, "shortcut_projection") == []


def test_sequence_shortcut_cannot_be_consumed_after_lstm_collapse(recording_engine):
    model = Sequential(2, engine=recording_engine, is_sequence=True)
    model.mark_shortcut_source("a").add(LSTM(2, use_shortcut=False))
    with pytest.raises(TopologyError) as excinfo:
        model.consume_shortcut("a")
    assert excinfo.value.layer == "ShortOut(a)"
    assert "ShortOut(a)" not in model.describe()
