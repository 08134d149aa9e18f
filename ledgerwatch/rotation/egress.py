"""Failure-aware rotation for egress routes.

:class:`FailureAwareRotationPool` rotates like
:class:`~ledgerwatch.rotation.pool.RotationPool` but skips items that were
marked failed.  Failures are tracked by a derived *key* rather than by
object identity, so two equal routes parsed from configuration share one
failure entry.  For :class:`~ledgerwatch.core.models.EgressRoute` the key is
``(server, username)``.

An empty pool is allowed (routing disabled); :meth:`next` then always
returns ``None``.

Typical usage::

    pool = FailureAwareRotationPool.for_routes(settings.egress_route_list)
    route = pool.next()          # EgressRoute or None
    ...
    pool.mark_failed(route)      # after a network failure through it
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Iterable
from typing import Generic, TypeVar

from ledgerwatch.core.models import EgressRoute

__all__ = ["FailureAwareRotationPool"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _identity_key(item: object) -> Hashable:
    return item  # type: ignore[return-value]


class FailureAwareRotationPool(Generic[T]):
    """Round-robin pool that never returns an item marked failed.

    Args:
        items: Items to rotate through, in order.  May be empty.
        key: Maps an item to the hashable identity used for failure
            tracking.  Defaults to the item itself.
    """

    def __init__(
        self,
        items: Iterable[T] = (),
        *,
        key: Callable[[T], Hashable] | None = None,
    ) -> None:
        self._items: tuple[T, ...] = tuple(items)
        self._key: Callable[[T], Hashable] = key or _identity_key
        self._failed: set[Hashable] = set()
        self._cursor = 0

    @classmethod
    def for_routes(cls, routes: Iterable[EgressRoute]) -> FailureAwareRotationPool[EgressRoute]:
        """Build a pool of egress routes keyed by ``(server, username)``."""
        return cls(routes, key=lambda route: route.identity)  # type: ignore[arg-type, return-value]

    def next(self) -> T | None:  # noqa: A003
        """Return the next non-failed item, or ``None``.

        Scans at most one full lap starting at the cursor.  The cursor moves
        just past the returned item, and does not move when nothing is
        available.
        """
        count = len(self._items)
        for offset in range(count):
            index = (self._cursor + offset) % count
            item = self._items[index]
            if self._key(item) not in self._failed:
                self._cursor = (index + 1) % count
                return item
        if count:
            logger.debug("All %d pool items are marked failed.", count)
        return None

    def mark_failed(self, item: T) -> None:
        """Exclude *item* (by key) from future selection.  Idempotent."""
        key = self._key(item)
        if key not in self._failed:
            self._failed.add(key)
            logger.debug("Pool item %s marked failed (%d/%d available).", item, self.available_count(), len(self._items))

    def is_failed(self, item: T) -> bool:
        return self._key(item) in self._failed

    def clear_failures(self) -> None:
        """Make every item selectable again."""
        self._failed.clear()

    def reset_cursor(self) -> None:
        self._cursor = 0

    def available_count(self) -> int:
        """Number of items not currently marked failed."""
        return sum(1 for item in self._items if self._key(item) not in self._failed)

    def size(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)
