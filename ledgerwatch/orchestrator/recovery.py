"""Failure classification and recovery decisions.

Every failure the engine observes is reduced to a textual description and
run through :func:`classify`, a pure function returning the failure's
:class:`FailureCategory`, whether it is still recoverable, and the
:data:`RecoveryAction` to take.

Categorisation
~~~~~~~~~~~~~~
The lower-cased description is tested against an ordered rule list; the
first rule with a matching marker wins::

    Authentication        authentication, login, credential, unauthorized, 401
    Network               network, timeout, connection refused, econnrefused,
                          DNS lookup failures, dns, proxy
    ExecutionEnvironment  browser, page, navigation, element not found,
                          selector, playwright
    Parsing               parse, invalid date, invalid amount,
                          invalid transaction type, missing required fields
    Delivery              webhook, http request failed, fetch + failed
    Configuration         config, validation, required field

Descriptions that match nothing are ExecutionEnvironment failures.

Actions
~~~~~~~
==========================  =========================================
Not recoverable, config     ``Fatal(1)``
Not recoverable, other      ``Skip``
Authentication              ``Retry(30)``
Network                     ``Retry(min(2 ** attempt, 60))``
ExecutionEnvironment        ``Fallback("next-environment-type")`` while
                            ``attempt < 3``, else ``Skip``
Parsing                     ``Skip``
Delivery                    ``Retry(min(2 ** attempt, 30))``
==========================  =========================================
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final

from ledgerwatch.core import events

__all__ = [
    "FailureCategory",
    "FailureClassification",
    "Retry",
    "Skip",
    "Fallback",
    "Fatal",
    "RecoveryAction",
    "AttemptContext",
    "categorize",
    "is_recoverable",
    "determine_action",
    "classify",
    "describe_failure",
    "RecoveryClassifier",
    "NEXT_ENVIRONMENT_TYPE",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class FailureCategory(StrEnum):
    """Broad failure classes the recovery policy distinguishes."""

    AUTHENTICATION = "authentication"
    NETWORK = "network"
    EXECUTION_ENVIRONMENT = "execution_environment"
    PARSING = "parsing"
    DELIVERY = "delivery"
    CONFIGURATION = "configuration"


@dataclass(frozen=True)
class FailureClassification:
    category: FailureCategory
    recoverable: bool


@dataclass(frozen=True)
class Retry:
    """Try the operation again after *delay_seconds*."""

    delay_seconds: float


@dataclass(frozen=True)
class Skip:
    """Abandon the operation for this cycle."""


@dataclass(frozen=True)
class Fallback:
    """Try again with *alternative* resources (e.g. another browser type)."""

    alternative: str


@dataclass(frozen=True)
class Fatal:
    """Stop the process with *exit_code*."""

    exit_code: int


RecoveryAction = Retry | Skip | Fallback | Fatal

#: :class:`Fallback` alternative chosen for execution-environment failures.
NEXT_ENVIRONMENT_TYPE: Final[str] = "next-environment-type"


@dataclass(frozen=True)
class AttemptContext:
    """Where a failure happened and how many tries are left.

    Attributes:
        operation: Short label such as ``"check-cycle"``.
        attempt: 1-based attempt number supplied by the caller.
        max_attempts: Attempt limit for the operation.
        started_at: When the operation started.
    """

    operation: str
    attempt: int = 1
    max_attempts: int = 3
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_AUTH_RETRY_DELAY_S: Final[float] = 30.0
_NETWORK_MAX_DELAY_S: Final[float] = 60.0
_DELIVERY_MAX_DELAY_S: Final[float] = 30.0
_FALLBACK_ATTEMPT_LIMIT: Final[int] = 3
_FATAL_EXIT_CODE: Final[int] = 1


def _any_of(*markers: str) -> Callable[[str], bool]:
    return lambda text: any(marker in text for marker in markers)


def _fetch_failed(text: str) -> bool:
    return "fetch" in text and "failed" in text


# Resolver failures only; "element not found" belongs to the browser rule.
_DNS_MARKERS: Final[tuple[str, ...]] = (
    "enotfound",
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
)

_RULES: Final[tuple[tuple[FailureCategory, Callable[[str], bool]], ...]] = (
    (
        FailureCategory.AUTHENTICATION,
        _any_of("authentication", "login", "credential", "unauthorized", "401"),
    ),
    (
        FailureCategory.NETWORK,
        _any_of("network", "timeout", "connection refused", "econnrefused", *_DNS_MARKERS, "dns", "proxy"),
    ),
    (
        FailureCategory.EXECUTION_ENVIRONMENT,
        _any_of("browser", "page", "navigation", "element not found", "selector", "playwright"),
    ),
    (
        FailureCategory.PARSING,
        _any_of(
            "parse",
            "invalid date",
            "invalid amount",
            "invalid transaction type",
            "missing required fields",
        ),
    ),
    (
        FailureCategory.DELIVERY,
        lambda text: _any_of("webhook", "http request failed")(text) or _fetch_failed(text),
    ),
    (
        FailureCategory.CONFIGURATION,
        _any_of("config", "validation", "required field"),
    ),
)


# ---------------------------------------------------------------------------
# Pure policy
# ---------------------------------------------------------------------------


def categorize(description: str) -> FailureCategory:
    """Return the category of the first rule matching *description*."""
    text = description.lower()
    for category, matches in _RULES:
        if matches(text):
            return category
    return FailureCategory.EXECUTION_ENVIRONMENT


def is_recoverable(category: FailureCategory, context: AttemptContext) -> bool:
    if category is FailureCategory.CONFIGURATION:
        return False
    return context.attempt < context.max_attempts


def determine_action(
    classification: FailureClassification,
    context: AttemptContext,
) -> RecoveryAction:
    category = classification.category
    if not classification.recoverable:
        if category is FailureCategory.CONFIGURATION:
            return Fatal(_FATAL_EXIT_CODE)
        return Skip()

    if category is FailureCategory.AUTHENTICATION:
        return Retry(_AUTH_RETRY_DELAY_S)
    if category is FailureCategory.NETWORK:
        return Retry(min(2.0**context.attempt, _NETWORK_MAX_DELAY_S))
    if category is FailureCategory.EXECUTION_ENVIRONMENT:
        if context.attempt < _FALLBACK_ATTEMPT_LIMIT:
            return Fallback(NEXT_ENVIRONMENT_TYPE)
        return Skip()
    if category is FailureCategory.DELIVERY:
        return Retry(min(2.0**context.attempt, _DELIVERY_MAX_DELAY_S))
    return Skip()


def classify(
    description: str,
    context: AttemptContext,
) -> tuple[FailureClassification, RecoveryAction]:
    """Categorise *description* and choose the recovery action.

    Deterministic and side-effect free.

    Args:
        description: Human-readable failure text (usually the exception
            message).
        context: Attempt bookkeeping for the failing operation.

    Returns:
        ``(classification, action)``.
    """
    category = categorize(description)
    classification = FailureClassification(
        category=category,
        recoverable=is_recoverable(category, context),
    )
    return classification, determine_action(classification, context)


def describe_failure(exc: BaseException) -> str:
    """Return the text classified for *exc*: its message, else its type name."""
    return str(exc) or type(exc).__name__


# ---------------------------------------------------------------------------
# Logging wrapper
# ---------------------------------------------------------------------------


class RecoveryClassifier:
    """Classify exceptions for the engine and log the outcome.

    Recoverable failures are logged at WARNING, the rest at ERROR.  The log
    record's ``extra`` carries the category, operation, attempt numbers and
    recoverability.
    """

    def handle(
        self,
        exc: BaseException,
        context: AttemptContext,
    ) -> tuple[FailureClassification, RecoveryAction]:
        description = describe_failure(exc)
        classification, action = classify(description, context)
        level = logging.WARNING if classification.recoverable else logging.ERROR
        logger.log(
            level,
            "%s failed (%s, attempt %d/%d): %s -> %s",
            context.operation,
            classification.category,
            context.attempt,
            context.max_attempts,
            description,
            type(action).__name__,
            extra={
                "event": events.FAILURE_CLASSIFIED,
                "category": str(classification.category),
                "operation": context.operation,
                "attempt": context.attempt,
                "max_attempts": context.max_attempts,
                "recoverable": classification.recoverable,
                "action": type(action).__name__,
                "error_type": type(exc).__name__,
            },
        )
        return classification, action
