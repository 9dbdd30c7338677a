"""Tensor/autodiff engine contract and its PyTorch implementation."""

from .base import DEFAULT_UNIFORM_SCALE, Engine, Initializer, Learner, LearnerSpec, Node
from .graph import Graph, GraphEngine, OpRecord
from .torch_engine import TorchEngine, TorchLearner

__all__ = [
    "DEFAULT_UNIFORM_SCALE",
    "Engine",
    "Graph",
    "GraphEngine",
    "Initializer",
    "Learner",
    "LearnerSpec",
    "Node",
    "OpRecord",
    "TorchEngine",
    "TorchLearner",
]
