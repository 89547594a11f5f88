"""Bounded per-key state for the stateful analyzers.

Analyzers keep history per subject or source address, and both are
attacker-controlled. Entries are kept in recency order and the least
recently seen key is dropped once ``max_keys`` is exceeded.
"""

from collections import OrderedDict
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class BoundedState(Generic[T]):
    """LRU map from a key to analyzer state."""

    def __init__(self, max_keys: int, factory: Callable[[], T] | None = None):
        self.max_keys = max_keys
        self._factory = factory
        self._entries: OrderedDict[str, T] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def peek(self, key: str) -> T | None:
        """Get a key's state without refreshing its recency."""
        return self._entries.get(key)

    def touch(self, key: str) -> T:
        """Get a key's state, creating it if absent, and mark it most recent.

        Raises:
            KeyError: If the key is absent and there is no factory.
        """
        value = self._entries.get(key)
        if value is None:
            if self._factory is None:
                raise KeyError(key)
            value = self.put(key, self._factory())
        else:
            self._entries.move_to_end(key)
        return value

    def put(self, key: str, value: T) -> T:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_keys:
            self._entries.popitem(last=False)
        return value
