"""Type-name registries for pluggable capabilities (triggers, instructions, functions)."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Generic, TypeVar

T = TypeVar("T")


class UnknownTypeError(LookupError):
    """Raised when a type name has no registered implementation."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} type {name!r} is not registered")
        self.kind = kind
        self.name = name


class UnsupportedOperationError(ValueError):
    """Raised when a registered type does not provide an optional capability."""


class DuplicateRegistrationError(ValueError):
    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} type {name!r} is already registered")
        self.kind = kind
        self.name = name


class Registry(Generic[T]):
    """A closed mapping from a type name to one implementation."""

    def __init__(self, kind: str, *, override: bool = False) -> None:
        self.kind = kind
        self.override = override
        self._items: dict[str, T] = {}

    def register(self, name: str, item: T) -> None:
        if not name:
            raise ValueError(f"{self.kind} type name must not be empty")
        if not self.override and name in self._items:
            raise DuplicateRegistrationError(self.kind, name)
        self._items[name] = item

    def get(self, name: str) -> T:
        try:
            return self._items[name]
        except KeyError:
            raise UnknownTypeError(self.kind, name) from None

    def find(self, name: str) -> T | None:
        return self._items.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)
