"""
Bounded de-duplication cache for delivered events.

Uses OrderedDict for O(1) membership checks with oldest-first eviction, so a
long-running listener remembers recent deliveries without unbounded growth.
"""

from collections import OrderedDict
from collections.abc import Hashable


class SeenEventCache:
    """Set of recently delivered event identities with LRU eviction."""

    def __init__(self, max_size: int = 10_000) -> None:
        """
        Initialize the cache.

        Args:
            max_size: Maximum number of identities to remember
        """
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.max_size = max_size
        self._entries: OrderedDict[Hashable, None] = OrderedDict()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, key: Hashable) -> None:
        """
        Record an identity, evicting the oldest entry when full.

        Re-adding an existing identity marks it most recent.
        """
        if key in self._entries:
            self._entries.move_to_end(key)
            return

        if len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)

        self._entries[key] = None
