"""Identity-string (User-Agent) selection.

With no custom strings configured, each browser type gets a fixed default
identity that is consistent with it.  Custom strings, when supplied, are
rotated round-robin regardless of the browser type.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Final

from ledgerwatch.core.models import EnvironmentType
from ledgerwatch.rotation.pool import RotationPool

__all__ = ["DEFAULT_IDENTITIES", "IdentityPool"]

logger = logging.getLogger(__name__)

_CHROME_UA: Final[str] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

#: One default identity per environment type.
DEFAULT_IDENTITIES: Final[dict[EnvironmentType, str]] = {
    EnvironmentType.CHROMIUM: _CHROME_UA,
    EnvironmentType.CHROME: _CHROME_UA,
    EnvironmentType.EDGE: f"{_CHROME_UA} Edg/120.0.0.0",
    EnvironmentType.BRAVE: _CHROME_UA,
}

_FALLBACK_TYPE: Final[EnvironmentType] = next(iter(EnvironmentType))


class IdentityPool:
    """Pick the identity string for a cycle.

    Args:
        custom: Operator-supplied identity strings.  Blank entries are
            dropped.  When nothing remains, per-type defaults are used.
    """

    def __init__(self, custom: Iterable[str] = ()) -> None:
        strings = [s.strip() for s in custom if s and s.strip()]
        self._pool: RotationPool[str] | None = (
            RotationPool(strings, name="identity pool") if strings else None
        )

    @property
    def has_custom(self) -> bool:
        """``True`` when custom identity strings are being rotated."""
        return self._pool is not None

    def next(self, environment_type: EnvironmentType | str) -> str:  # noqa: A003
        """Return the identity string to use with *environment_type*.

        Custom strings ignore the type.  Defaults fall back to the first
        environment type's identity for unknown types.
        """
        if self._pool is not None:
            return self._pool.next()
        return self.default_for(environment_type)

    @staticmethod
    def default_for(environment_type: EnvironmentType | str) -> str:
        try:
            key = EnvironmentType(environment_type)
        except ValueError:
            logger.debug("Unknown environment type %r; using %s default.", environment_type, _FALLBACK_TYPE)
            key = _FALLBACK_TYPE
        return DEFAULT_IDENTITIES.get(key, DEFAULT_IDENTITIES[_FALLBACK_TYPE])

    @staticmethod
    def matches(identity: str, environment_type: EnvironmentType | str) -> bool:
        """Report whether *identity* plausibly belongs to *environment_type*.

        Pure predicate used for consistency checks; selection never calls it.

        * ``chrome``: contains "chrome" and not "edg".
        * ``edge``: contains "edg".
        * ``brave`` / ``chromium``: contains "chrome".
        * anything else: ``False``.
        """
        lowered = identity.lower()
        try:
            key = EnvironmentType(environment_type)
        except ValueError:
            return False
        if key is EnvironmentType.CHROME:
            return "chrome" in lowered and "edg" not in lowered
        if key is EnvironmentType.EDGE:
            return "edg" in lowered
        if key in (EnvironmentType.BRAVE, EnvironmentType.CHROMIUM):
            return "chrome" in lowered
        return False

    def reset(self) -> None:
        if self._pool is not None:
            self._pool.reset()

    def size(self) -> int:
        """Number of custom strings, or ``0`` when defaults are in use."""
        return self._pool.size() if self._pool is not None else 0
