"""Round-robin rotation pools.

:class:`RotationPool` is the building block for every per-cycle selection
the engine makes (browser type, identity string).  The item set is fixed at
construction; only the cursor moves.

The pools hold no locks.  They are safe for the engine's single-threaded
``asyncio`` use, where at most one cycle selects at a time, but are **not**
thread-safe.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Generic, TypeVar

from ledgerwatch.core.exceptions import ConfigError

__all__ = ["RotationPool"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RotationPool(Generic[T]):
    """Cycle through a fixed, non-empty sequence of items.

    The *k*-th call to :meth:`next` (0-indexed, counted since construction or
    the last :meth:`reset`) returns ``items[k % len(items)]``.

    Args:
        items: Items to rotate through, in order.
        name: Label used in error and log messages.

    Raises:
        ConfigError: If *items* is empty.
    """

    def __init__(self, items: Iterable[T], *, name: str = "rotation pool") -> None:
        self._items: tuple[T, ...] = tuple(items)
        if not self._items:
            raise ConfigError(f"{name} requires at least one item")
        self._name = name
        self._cursor = 0

    def next(self) -> T:  # noqa: A003
        """Return the item under the cursor and advance it."""
        item = self._items[self._cursor]
        self._cursor = (self._cursor + 1) % len(self._items)
        return item

    def reset(self) -> None:
        """Rewind the cursor to the first item."""
        self._cursor = 0

    def size(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    @property
    def cursor(self) -> int:
        """Index of the item the next call to :meth:`next` returns."""
        return self._cursor

    @property
    def items(self) -> tuple[T, ...]:
        return self._items

    def __repr__(self) -> str:
        return f"RotationPool(name={self._name!r}, size={len(self._items)}, cursor={self._cursor})"
