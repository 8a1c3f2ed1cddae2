"""
Keyed, ordered registries for pluggable behavior.

Bot detectors, weighting policies, click-id capturers, redirect parameter
filters, event listeners and reporters are all registered here under a string
key and invoked in registration order.
"""

from typing import Generic, Iterator, TypeVar

T = TypeVar("T")


class Registry(Generic[T]):
    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: dict[str, T] = {}

    def register(self, key: str, item: T, *, replace: bool = False) -> None:
        if key in self._entries and not replace:
            raise ValueError(f"{self.name}: '{key}' is already registered")
        # A replaced entry keeps its original position
        self._entries[key] = item

    def unregister(self, key: str) -> None:
        self._entries.pop(key, None)

    def get(self, key: str) -> T | None:
        return self._entries.get(key)

    def keys(self) -> list[str]:
        return list(self._entries)

    def items(self) -> list[tuple[str, T]]:
        return list(self._entries.items())

    def snapshot(self) -> dict[str, T]:
        return dict(self._entries)

    def restore(self, entries: dict[str, T]) -> None:
        self._entries = dict(entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"Registry({self.name!r}, keys={self.keys()!r})"
