"""Process-wide cache of expensive, lazily-loaded runtime resources.

Each resource has at most one load in flight. Concurrent requesters await
the same future; a failed load clears the slot so the next requester starts
over, while every waiter of the failed attempt receives the same error.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResourceCache:
    """Memoized fallible async initializers keyed by resource name.

    Example:
        ```python
        cache = ResourceCache()
        compiler = await cache.get("mypy", load_mypy)
        ```
    """

    def __init__(self) -> None:
        self._slots: dict[str, asyncio.Future[Any]] = {}
        self.load_counts: Counter[str] = Counter()

    async def get(self, name: str, loader: Callable[[], Awaitable[T]]) -> T:
        """Return the resource, starting or joining its load as needed.

        Example:
            ```python
            runtime = await cache.get("v8", load_v8)
            ```
        """
        slot = self._slots.get(name)
        if slot is None:
            slot = asyncio.ensure_future(self._load(name, loader))
            self._slots[name] = slot
        # Shielded so a cancelled waiter never cancels the shared load.
        return await asyncio.shield(slot)

    async def _load(self, name: str, loader: Callable[[], Awaitable[T]]) -> T:
        self.load_counts[name] += 1
        logger.info("Loading %s runtime (attempt %d)", name, self.load_counts[name])
        try:
            value = await loader()
        except BaseException:
            logger.warning("Loading %s runtime failed; the next request will retry", name)
            if self._slots.get(name) is asyncio.current_task():
                del self._slots[name]
            raise
        logger.info("%s runtime ready", name)
        return value

    def is_loading(self, name: str) -> bool:
        slot = self._slots.get(name)
        return slot is not None and not slot.done()

    def is_ready(self, name: str) -> bool:
        slot = self._slots.get(name)
        return (
            slot is not None
            and slot.done()
            and not slot.cancelled()
            and slot.exception() is None
        )

    def has_started(self, name: str) -> bool:
        return name in self._slots

    def reset(self, name: str) -> None:
        """Forget a resource so the next request loads it again.

        Example:
            ```python
            cache.reset("v8")
            ```
        """
        if self._slots.pop(name, None) is not None:
            logger.info("Discarded cached %s runtime", name)


RESOURCES = ResourceCache()
