"""Tag to factory registries for checks and extractors.

Registries are ordinary objects handed to the loader; there is no global
registration. default_check_registry() and default_extractor_registry()
return fresh registries pre-populated with the built-ins.
"""

from __future__ import annotations

from typing import Any, Callable, Generic, Iterator, TypeVar

T = TypeVar("T")


class Registry(Generic[T]):
    """Maps a string tag (e.g. "StatusCode") to a factory taking keyword fields."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._factories: dict[str, Callable[..., T]] = {}

    def register(self, tag: str, factory: Callable[..., T]) -> None:
        if tag in self._factories:
            raise ValueError(f"{self.kind} {tag!r} already registered")
        self._factories[tag] = factory

    def create(self, tag: str, **fields: Any) -> T:
        """Instantiate tag with fields. Raises KeyError for unknown tags."""
        return self.factory(tag)(**fields)

    def factory(self, tag: str) -> Callable[..., T]:
        try:
            return self._factories[tag]
        except KeyError:
            raise KeyError(f"unknown {self.kind} {tag!r}") from None

    def __contains__(self, tag: object) -> bool:
        return tag in self._factories

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._factories))

    def __len__(self) -> int:
        return len(self._factories)


def default_check_registry() -> "Registry[Any]":
    from .checks import BUILTIN_CHECKS

    reg: Registry[Any] = Registry("check")
    for tag, cls in BUILTIN_CHECKS.items():
        reg.register(tag, cls)
    return reg


def default_extractor_registry() -> "Registry[Any]":
    from .extractors import BUILTIN_EXTRACTORS

    reg: Registry[Any] = Registry("extractor")
    for tag, cls in BUILTIN_EXTRACTORS.items():
        reg.register(tag, cls)
    return reg
