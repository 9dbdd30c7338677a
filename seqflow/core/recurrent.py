"""LSTM layer built from a one-step cell and a placeholder substitution pass."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from ..engine.base import Initializer, Node
from ..errors import TopologyError
from .layers import LAYER_REGISTRY, flatten, linear, project, self_stabilize


def _glorot_projection(x: Node, output_dim: int, device: str) -> Node:
    engine = x.engine
    weights = engine.build_parameter(
        (output_dim, x.shape[0]), x.dtype, Initializer.glorot_uniform(), device, name="cell_projection"
    )
    return engine.apply_op("times", weights, x)


def lstm_cell(
    x: Node,
    prev_h: Node,
    prev_c: Node,
    device: str,
    *,
    use_shortcut: bool = False,
    self_stabilization: bool = False,
) -> Tuple[Node, Node]:
    """Build one LSTM step ``(x[t], h[t-1], c[t-1]) -> (h[t], c[t])``.

    The hidden state enters every gate additively (no recurrent weight
    matrix), and the cell update uses the pre-activation candidate
    projection.  When the hidden size ``H`` and cell size ``C`` differ, the
    forget gate and the input contribution are projected to ``C`` and the cell
    state is projected back to ``H`` before the output ``tanh``.
    """

    engine = x.engine
    hidden_dim = prev_h.shape[0]
    cell_dim = prev_c.shape[0]
    reshaped = hidden_dim != cell_dim

    if self_stabilization:
        prev_h = self_stabilize(prev_h, device)
        prev_c = self_stabilize(prev_c, device)

    def gate_input() -> Node:
        projected = linear(x, hidden_dim, device, bias_init=Initializer.glorot_uniform())
        return engine.apply_op("plus", projected, prev_h)

    forget_proj = gate_input()
    input_proj = gate_input()
    candidate_proj = gate_input()
    output_proj = gate_input()

    forget_gate = engine.apply_op("sigmoid", forget_proj)
    input_gate = engine.apply_op("sigmoid", input_proj)
    output_gate = engine.apply_op("sigmoid", output_proj)

    if reshaped:
        forget_gate = _glorot_projection(forget_gate, cell_dim, device)
    forget_state = engine.apply_op("element_times", prev_c, forget_gate)

    # the candidate enters un-squashed: tanh(candidate_proj) is never used
    input_state = engine.apply_op("element_times", input_gate, candidate_proj)
    if reshaped:
        input_state = _glorot_projection(input_state, cell_dim, device)
    cell = engine.apply_op("plus", forget_state, input_state)

    to_output = _glorot_projection(cell, hidden_dim, device) if reshaped else cell
    h = engine.apply_op("element_times", output_gate, engine.apply_op("tanh", to_output))

    if use_shortcut:
        forwarding = x if x.shape[0] == hidden_dim else project(x, hidden_dim, device)
        h = engine.apply_op("plus", h, forwarding)
    return h, cell


@dataclass(frozen=True)
class LSTM:
    """Recurrent layer unrolled over the time axis of its sequence input.

    ``is_last_lstm`` collapses the output to each sequence's final valid step;
    intermediate layers of a stack keep the whole sequence.
    """

    output_dim: int
    cell_dim: int | None = None
    use_shortcut: bool = True
    self_stabilization: bool = False
    is_last_lstm: bool = True

    @property
    def hidden_size(self) -> int:
        return self.output_dim

    @property
    def cell_size(self) -> int:
        return self.cell_dim or self.output_dim

    def create(self, x: Node, device: str) -> Node:
        if not x.is_sequence:
            raise TopologyError(f"LSTM expects a sequence input, got a static node of shape {x.shape}")
        x = flatten(x)
        engine = x.engine
        dh = engine.placeholder((self.hidden_size,), x.dtype, is_sequence=True)
        dc = engine.placeholder((self.cell_size,), x.dtype, is_sequence=True)
        h, c = lstm_cell(
            x,
            dh,
            dc,
            device,
            use_shortcut=self.use_shortcut,
            self_stabilization=self.self_stabilization,
        )
        engine.replace_placeholders(
            {dh: engine.apply_op("past_value", h), dc: engine.apply_op("past_value", c)}
        )
        if self.is_last_lstm:
            return engine.apply_op("sequence_last", h)
        return h

    def describe(self) -> str:
        stabilizer = "SS" if self.self_stabilization else "none"
        return f"LSTM(C={self.cell_size}H={self.hidden_size}SC={self.use_shortcut}SS={stabilizer})"


LAYER_REGISTRY.register("lstm", LSTM)

__all__ = ["LSTM", "lstm_cell"]
