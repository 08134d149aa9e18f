"""Collaborator interfaces the check engine drives.

The engine never touches a browser directly.  It talks to four
collaborators, each described here as a :class:`typing.Protocol` so tests
can substitute plain ``AsyncMock`` objects and alternative portal drivers
need no common base class:

* :class:`SessionProvider` opens and releases a browser session.
* :class:`Authenticator` signs in and out of the portal.
* :class:`Extractor` reads raw statement rows from an authenticated session.
* :class:`RecordParser` converts raw rows into :class:`MutationRecord`.

Sessions are opaque to the engine; whatever ``acquire`` returns is handed
back unchanged to the other collaborators and finally to ``release``.

Failures should be raised as
:class:`~ledgerwatch.core.exceptions.PortalError` subclasses so the recovery
classifier sees the right marker words.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from ledgerwatch.core.models import (
    Credentials,
    EgressRoute,
    EnvironmentType,
    MutationRecord,
    RawMutation,
)

__all__ = [
    "SessionProvider",
    "Authenticator",
    "Extractor",
    "RecordParser",
]


@runtime_checkable
class SessionProvider(Protocol):
    async def acquire(
        self,
        environment_type: EnvironmentType,
        identity: str,
        egress_route: EgressRoute | None,
    ) -> Any:
        """Open a session for one cycle.

        Raises:
            ExecutionEnvironmentError: The browser could not be started.
            NetworkError: The egress route is unusable.
        """
        ...

    async def release(self, session: Any) -> None:
        """Close everything :meth:`acquire` opened.  Must not raise."""
        ...


@runtime_checkable
class Authenticator(Protocol):
    async def authenticate(self, session: Any, credentials: Credentials) -> None:
        """Sign in.  Raises :class:`AuthenticationError` on rejection."""
        ...

    async def logout(self, session: Any) -> None:
        """Sign out.  Must not raise."""
        ...


@runtime_checkable
class Extractor(Protocol):
    async def fetch_and_extract(self, session: Any) -> list[RawMutation]: ...


@runtime_checkable
class RecordParser(Protocol):
    def parse(self, raw: RawMutation) -> MutationRecord:
        """Convert one row.  Raises :class:`RecordParseError`."""
        ...

    def parse_all(self, raws: Sequence[RawMutation]) -> list[MutationRecord]:
        """Convert every row that parses; skip and count the rest."""
        ...
