"""Name-to-factory registries used to build components from configuration."""

from __future__ import annotations

from typing import Callable, Dict, Generic, Iterable, TypeVar

from ..errors import ConfigurationError

T = TypeVar("T")


class Registry(Generic[T]):
    """Central registry mapping lower-case names onto factories."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._registry: Dict[str, Callable[..., T]] = {}

    def register(self, name: str, factory: Callable[..., T]) -> Callable[..., T]:
        self._registry[name.lower()] = factory
        return factory

    def get(self, name: str) -> Callable[..., T]:
        try:
            return self._registry[name.lower()]
        except KeyError as exc:
            available = ", ".join(self.names())
            raise ConfigurationError(
                f"Unknown {self.kind} {name!r}. Available {self.kind}s: {available}"
            ) from exc

    def create(self, name: str, **kwargs) -> T:
        return self.get(name)(**kwargs)

    def names(self) -> Iterable[str]:
        return sorted(self._registry)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._registry


__all__ = ["Registry"]
