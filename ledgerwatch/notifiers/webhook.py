"""Webhook delivery client for parsed mutations.

Provides :class:`DeliveryClient`, an async wrapper that POSTs a
:class:`~ledgerwatch.core.models.DeliveryPayload` to the configured webhook.
It handles:

* A lazily opened :class:`httpx.AsyncClient` with an explicit timeout budget.
* A fixed number of attempts driven by :mod:`tenacity`, sleeping
  ``2 ** (attempt - 1)`` seconds (1, 2, 4 …) between them and never after
  the last one.
* Mapping exhaustion to :class:`~ledgerwatch.core.exceptions.DeliveryError`.

Any 2xx response is success.  Every other status, and every httpx request error,
is a failed attempt.

Typical usage::

    async with DeliveryClient("https://hooks.example/mutations") as client:
        await client.send(records, account="0123456789")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Final

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from ledgerwatch.core import events
from ledgerwatch.core.exceptions import DeliveryError
from ledgerwatch.core.models import DeliveryPayload, MutationRecord

__all__ = ["DeliveryClient", "delivery_backoff"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Default total send attempts.
_DEFAULT_MAX_ATTEMPTS: Final[int] = 3

#: Default per-request timeout in seconds.
_DEFAULT_TIMEOUT_S: Final[float] = 10.0

_HEADERS: Final[dict[str, str]] = {"Content-Type": "application/json"}


# ---------------------------------------------------------------------------
# Internal sentinel exception
# ---------------------------------------------------------------------------


class _FailedAttempt(DeliveryError):
    """Non-2xx response; triggers a tenacity retry.

    Never escapes :meth:`DeliveryClient.send_with_retry`.
    """


#: Every failure that counts as one spent attempt.
_RETRYABLE: Final = (_FailedAttempt, httpx.RequestError)


# ---------------------------------------------------------------------------
# Wait strategy
# ---------------------------------------------------------------------------


def delivery_backoff(retry_state: RetryCallState) -> float:
    """Seconds to sleep after attempt ``n`` fails: ``2 ** (n - 1)``."""
    attempt = max(retry_state.attempt_number, 1)
    return float(2 ** (attempt - 1))


def _describe(exc: BaseException | None) -> str:
    if exc is None:
        return "unknown error"
    return str(exc) or type(exc).__name__


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class DeliveryClient:
    """POST mutation batches to a webhook with bounded retries.

    Args:
        url: Webhook endpoint (non-empty).
        max_attempts: Total attempts per delivery including the first.
            Must be ≥ 1.
        timeout_s: Per-request timeout budget in seconds.
        transport: Optional :class:`httpx.AsyncBaseTransport`; tests pass an
            :class:`httpx.MockTransport`.
        sleep: Coroutine used for the inter-attempt backoff.  Defaults to
            :func:`asyncio.sleep`.

    Raises:
        ValueError: If ``url`` is empty or ``max_attempts`` < 1.
    """

    def __init__(
        self,
        url: str,
        *,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not url:
            raise ValueError("DeliveryClient requires a non-empty url.")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")

        self._url = url
        self._max_attempts = max_attempts
        self._timeout = httpx.Timeout(timeout_s)
        self._transport = transport
        self._sleep = sleep
        self._http: httpx.AsyncClient | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> DeliveryClient:
        await self._ensure_http_client()
        return self

    async def __aexit__(self, *_args: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send(self, records: Sequence[MutationRecord], account: str) -> None:
        """Deliver *records* using the configured attempt limit.

        Raises:
            DeliveryError: After every attempt has failed.
        """
        await self.send_with_retry(records, account, self._max_attempts)

    async def send_with_retry(
        self,
        records: Sequence[MutationRecord],
        account: str,
        max_attempts: int,
    ) -> None:
        """Deliver *records*, making at most *max_attempts* attempts.

        Each attempt builds a fresh payload so its ``timestamp`` reflects the
        attempt time.

        Raises:
            ValueError: If *max_attempts* < 1.
            DeliveryError: ``"Webhook delivery failed after N attempts: ..."``
                once all attempts failed.
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")

        def _before_sleep(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.warning(
                "Webhook delivery attempt %d/%d failed (%s); retrying in %.0f s.",
                rs.attempt_number,
                max_attempts,
                _describe(exc),
                delivery_backoff(rs),
                extra={"event": events.DELIVERY_ATTEMPT_FAILED, "attempt": rs.attempt_number},
            )

        attempts_made = 0
        try:
            async for attempt in AsyncRetrying(
                sleep=self._sleep,
                wait=delivery_backoff,
                stop=stop_after_attempt(max_attempts),
                retry=retry_if_exception_type(_RETRYABLE),
                reraise=True,
                before_sleep=_before_sleep,
            ):
                with attempt:
                    attempts_made = attempt.retry_state.attempt_number
                    await self._single_attempt(records, account)
        except _RETRYABLE as exc:
            logger.error(
                "Webhook delivery failed after %d attempts: %s",
                attempts_made,
                _describe(exc),
                extra={"event": events.DELIVERY_FAILED, "attempts": attempts_made},
            )
            raise DeliveryError(
                f"Webhook delivery failed after {attempts_made} attempts: {_describe(exc)}",
                attempts=attempts_made,
                status_code=getattr(exc, "status_code", None),
            ) from exc

        logger.info(
            "Webhook delivery successful (%d mutations, attempt %d).",
            len(records),
            attempts_made,
            extra={"event": events.DELIVERY_OK, "mutation_count": len(records), "attempt": attempts_made},
        )

    async def close(self) -> None:
        """Close the underlying HTTP client.  Safe to call repeatedly."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("DeliveryClient HTTP session closed.")
        self._http = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_http_client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
            logger.debug("DeliveryClient HTTP session opened.")
        return self._http

    async def _single_attempt(self, records: Sequence[MutationRecord], account: str) -> None:
        """POST one freshly built payload.

        Raises:
            _FailedAttempt: Non-2xx response.
            httpx.RequestError: Transport failure, redirect loop or undecodable body.
        """
        client = await self._ensure_http_client()
        payload = DeliveryPayload(account=account, mutations=tuple(records))

        logger.debug("Webhook POST %s (%d mutations)", self._url, len(records))
        response = await client.post(self._url, json=payload.to_wire(), headers=_HEADERS)
        logger.debug("Webhook response: HTTP %d", response.status_code)

        if not response.is_success:
            raise _FailedAttempt(
                f"Webhook request failed with status {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )
