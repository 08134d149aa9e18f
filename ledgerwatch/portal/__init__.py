"""Portal collaborators: session, sign-in, statement extraction and parsing."""

from ledgerwatch.portal.base import Authenticator, Extractor, RecordParser, SessionProvider
from ledgerwatch.portal.browser import (
    BrowserSession,
    PlaywrightSessionProvider,
    PortalAuthenticator,
    StatementExtractor,
)
from ledgerwatch.portal.parser import MutationParser

__all__ = [
    # Interfaces
    "Authenticator",
    "Extractor",
    "RecordParser",
    "SessionProvider",
    # Playwright implementations
    "BrowserSession",
    "PlaywrightSessionProvider",
    "PortalAuthenticator",
    "StatementExtractor",
    # Parsing
    "MutationParser",
]
