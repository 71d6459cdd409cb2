"""Explicit read-set invalidation for committed writes.

Every write operation in the import pipeline reports the tags of the read
views it makes stale. Routers call :meth:`CacheTagRegistry.invalidate` with
those tags once the transaction has committed; readers compare versions to
decide whether a cached view must be rebuilt.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Iterable, List

EXPENSES = "expenses"
INCOME = "income"
IMPORTS = "imports"
PORTFOLIO = "portfolio"

KNOWN_TAGS = (EXPENSES, INCOME, IMPORTS, PORTFOLIO)

log = logging.getLogger(__name__)

Listener = Callable[[List[str]], None]


class CacheTagRegistry:
    def __init__(self) -> None:
        self._versions: Dict[str, int] = {tag: 0 for tag in KNOWN_TAGS}
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def version(self, tag: str) -> int:
        with self._lock:
            return self._versions.get(tag, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._versions)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def invalidate(self, tags: Iterable[str]) -> List[str]:
        """Bump the version of every tag in ``tags`` and notify listeners."""

        unique = sorted({tag for tag in tags if tag})
        if not unique:
            return []
        with self._lock:
            for tag in unique:
                self._versions[tag] = self._versions.get(tag, 0) + 1
        log.debug("Invalidated cache tags: %s", ", ".join(unique))
        for listener in list(self._listeners):
            listener(unique)
        return unique
