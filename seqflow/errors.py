"""Exception taxonomy for seqflow."""

from __future__ import annotations


class SeqflowError(Exception):
    """Base class for every error raised by seqflow itself."""


class ConfigurationError(SeqflowError, ValueError):
    """Invalid arguments detected before any engine work is performed."""


class TopologyError(SeqflowError, ValueError):
    """A graph could not be built because operand shapes do not fit.

    ``layer`` holds the description of the offending layer once the error has
    passed through :meth:`seqflow.model.Sequential.add`.
    """

    def __init__(self, message: str, *, layer: str | None = None) -> None:
        self.message = message
        self.layer = layer
        if layer is not None:
            message = f"layer {layer}: {message}"
        super().__init__(message)


class ModelDisposedError(SeqflowError, RuntimeError):
    """Raised when a disposed model (or engine) is used again."""


__all__ = [
    "SeqflowError",
    "ConfigurationError",
    "TopologyError",
    "ModelDisposedError",
]
