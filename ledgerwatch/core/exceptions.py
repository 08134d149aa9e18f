"""Ledgerwatch exception taxonomy.

Every custom exception inherits from :class:`LedgerwatchError`.  Exceptions
are organised by architectural layer so callers can catch at the right
granularity:

    Layer hierarchy
    ---------------
    LedgerwatchError
    ├── ConfigError
    ├── PortalError
    │   ├── AuthenticationError
    │   ├── NetworkError
    │   ├── ExecutionEnvironmentError
    │   └── RecordParseError
    ├── DeliveryError
    └── OrchestratorError

Messages are written so the
:mod:`~ledgerwatch.orchestrator.recovery` classifier, which matches on
failure *text*, lands each exception in the category its class name
suggests.  Keep the marker words ("login", "network", "browser", "parse",
"webhook", "config") in any new message.

Usage:

    from ledgerwatch.core.exceptions import AuthenticationError

    raise AuthenticationError("Login failed: unexpected page after login")
"""

from __future__ import annotations

import logging

__all__ = [
    "LedgerwatchError",
    # Config
    "ConfigError",
    # Portal
    "PortalError",
    "AuthenticationError",
    "NetworkError",
    "ExecutionEnvironmentError",
    "RecordParseError",
    # Delivery
    "DeliveryError",
    # Orchestrator
    "OrchestratorError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class LedgerwatchError(Exception):
    """Root exception for all Ledgerwatch errors."""


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(LedgerwatchError):
    """Raised when the application configuration is invalid or incomplete.

    Raised at construction time for an interval below the minimum or an
    empty rotation pool.  Missing portal credentials are detected inside a
    check cycle instead; that error goes through the recovery classifier,
    which files it under the configuration category and answers with a
    fatal action, never a retry.
    """


# ---------------------------------------------------------------------------
# Portal layer
# ---------------------------------------------------------------------------


class PortalError(LedgerwatchError):
    """Base class for failures raised by the portal collaborators."""


class AuthenticationError(PortalError):
    """Raised when the portal rejects the credentials or the post-login
    state is not the one expected."""


class NetworkError(PortalError):
    """Raised for transport-level failures: timeouts, refused connections,
    DNS errors, broken proxies."""


class ExecutionEnvironmentError(PortalError):
    """Raised when the browser cannot be launched or a page cannot be driven.

    Examples:
        - Browser launch failure.
        - Page navigation failure.
        - Selector not found after waiting.
    """


class RecordParseError(PortalError):
    """Raised when a single raw mutation row cannot be converted.

    Only ever raised from :meth:`MutationParser.parse
    <ledgerwatch.portal.parser.MutationParser.parse>`; the batch-level
    ``parse_all`` catches it per record.

    Args:
        message: Human-readable error description.
        raw: The offending raw row, kept for logging.
    """

    def __init__(self, message: str, raw: object | None = None) -> None:
        self.raw = raw
        super().__init__(message)


# ---------------------------------------------------------------------------
# Delivery layer
# ---------------------------------------------------------------------------


class DeliveryError(LedgerwatchError):
    """Raised when webhook delivery fails after all retries are exhausted.

    Args:
        message: Human-readable error description.
        attempts: Number of attempts made before giving up.
        status_code: HTTP status of the last response, if one was received.
    """

    def __init__(
        self,
        message: str,
        *,
        attempts: int | None = None,
        status_code: int | None = None,
    ) -> None:
        self.attempts = attempts
        self.status_code = status_code
        super().__init__(message)


# ---------------------------------------------------------------------------
# Orchestrator layer
# ---------------------------------------------------------------------------


class OrchestratorError(LedgerwatchError):
    """Raised for errors originating in the scheduling layer.

    Examples:
        - ``start()`` called without a running event loop.
    """
