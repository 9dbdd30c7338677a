"""Core building blocks for seqflow models."""

from . import registry, types

__all__ = ["registry", "types"]
