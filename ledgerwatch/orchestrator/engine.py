"""Check orchestration engine.

:class:`CheckEngine` owns the timing loop and the end-to-end sequence of one
check cycle:

1. Select the environment type, identity string and egress route from the
   rotation pools.
2. Acquire a session.
3. Authenticate.
4. Fetch and extract the statement rows, then parse them.
5. Deliver the parsed records when a webhook is configured and there is
   something to send.  Delivery failures are classified and logged, never
   raised.
6. Log out and release the session.  This runs exactly once per acquired
   session, whatever happened in steps 3–5.
7. On a failure in steps 2–4, classify it; a retryable network failure
   marks the cycle's egress route failed.  The failure is re-raised to
   :meth:`CheckEngine.execute_check`, which turns it into a failed
   :class:`CheckResult`.

Scheduling
~~~~~~~~~~
:meth:`CheckEngine.start` fires a cycle immediately.  Each following cycle
is armed after the previous one completes and is due one interval after the
previous cycle's *scheduled* fire time (fixed rate).  A due time already in
the past fires immediately and becomes the new reference point, so a slow
cycle never causes a burst of catch-up cycles.

At most one cycle executes at a time.  The overlap guard in
:meth:`CheckEngine.execute_check` is a synchronous check-and-set that runs
before the first suspension point.

Typical usage::

    engine = CheckEngine(settings, PortalCollaborators.playwright(settings))
    engine.start()
    await engine.wait_stopped()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Final, Protocol

from ledgerwatch.core import events
from ledgerwatch.core.exceptions import ConfigError, LedgerwatchError, OrchestratorError
from ledgerwatch.core.logging_config import CYCLE_ID_CTX
from ledgerwatch.core.models import EgressRoute, EnvironmentType, MutationRecord
from ledgerwatch.core.settings import Settings
from ledgerwatch.notifiers.webhook import DeliveryClient
from ledgerwatch.orchestrator.recovery import (
    AttemptContext,
    Fatal,
    FailureCategory,
    FailureClassification,
    RecoveryAction,
    RecoveryClassifier,
    Retry,
    describe_failure,
)
from ledgerwatch.portal.base import Authenticator, Extractor, RecordParser, SessionProvider
from ledgerwatch.rotation import FailureAwareRotationPool, IdentityPool, RotationPool

__all__ = [
    "CheckEngine",
    "CheckResult",
    "EngineState",
    "PortalCollaborators",
    "Timer",
    "TimerHandle",
    "AsyncioTimer",
    "OVERLAP_ERROR",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: ``CheckResult.error`` for a cycle rejected by the overlap guard.
OVERLAP_ERROR: Final[str] = "Check already in progress"

_CYCLE_OPERATION: Final[str] = "check-cycle"
_CYCLE_MAX_ATTEMPTS: Final[int] = 3
_DELIVERY_OPERATION: Final[str] = "webhook-delivery"


# ---------------------------------------------------------------------------
# Timer abstraction
# ---------------------------------------------------------------------------


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timer(Protocol):
    """Clock plus one-shot callbacks; replaced by a fake in tests."""

    def now(self) -> float:
        """Monotonic seconds."""
        ...

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioTimer:
    """:class:`Timer` backed by the running event loop."""

    @staticmethod
    def _loop() -> asyncio.AbstractEventLoop:
        try:
            return asyncio.get_running_loop()
        except RuntimeError as exc:
            raise OrchestratorError("CheckEngine must be driven from a running event loop") from exc

    def now(self) -> float:
        return self._loop().time()

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        return self._loop().call_later(delay_s, callback)


# ---------------------------------------------------------------------------
# Result and wiring types
# ---------------------------------------------------------------------------


class EngineState(StrEnum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one :meth:`CheckEngine.execute_check` call.

    Attributes:
        success: ``True`` when the cycle body completed.
        timestamp: When the cycle started.
        mutation_count: Parsed records in a successful cycle.
        error: Failure description for an unsuccessful cycle.
        category: Classified failure category, when classification ran.
        action: Recovery action chosen for the failure.
    """

    success: bool
    timestamp: datetime
    mutation_count: int | None = None
    error: str | None = None
    category: FailureCategory | None = None
    action: RecoveryAction | None = None


@dataclass
class PortalCollaborators:
    """The four portal collaborators the engine calls each cycle."""

    sessions: SessionProvider
    authenticator: Authenticator
    extractor: Extractor
    parser: RecordParser

    @classmethod
    def playwright(cls, settings: Settings) -> PortalCollaborators:
        """Wire the Playwright-backed implementations."""
        from ledgerwatch.portal.browser import (  # noqa: PLC0415
            PlaywrightSessionProvider,
            PortalAuthenticator,
            StatementExtractor,
        )
        from ledgerwatch.portal.parser import MutationParser  # noqa: PLC0415

        return cls(
            sessions=PlaywrightSessionProvider.from_settings(settings),
            authenticator=PortalAuthenticator(settings),
            extractor=StatementExtractor(settings),
            parser=MutationParser(),
        )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class CheckEngine:
    """Schedule and run check cycles.

    Args:
        settings: Application settings.
        collaborators: Portal collaborators driven by each cycle.
        timer: Clock and callback scheduler.  Defaults to
            :class:`AsyncioTimer`.
        delivery_client: Overrides the client built from
            ``settings.delivery_url``.

    Raises:
        ConfigError: ``check_interval_ms`` is below ``min_check_interval_ms``
            or a rotation pool is empty.
    """

    def __init__(
        self,
        settings: Settings,
        collaborators: PortalCollaborators,
        *,
        timer: Timer | None = None,
        delivery_client: DeliveryClient | None = None,
    ) -> None:
        if settings.check_interval_ms < settings.min_check_interval_ms:
            raise ConfigError(
                f"Check interval must be at least {settings.min_check_interval_ms} ms "
                f"({settings.min_check_interval_ms / 60_000:g} minutes), "
                f"got {settings.check_interval_ms} ms"
            )

        self._settings = settings
        self._collaborators = collaborators
        self._timer: Timer = timer or AsyncioTimer()
        self._interval_s = settings.check_interval_ms / 1000

        self._environment_types: RotationPool[EnvironmentType] = RotationPool(
            settings.environment_types, name="environment type pool"
        )
        self._identities = IdentityPool(settings.identity_strings)
        self._routes: FailureAwareRotationPool[EgressRoute] = FailureAwareRotationPool.for_routes(
            settings.egress_route_list
        )
        self._classifier = RecoveryClassifier()

        if delivery_client is None and settings.delivery_configured:
            delivery_client = DeliveryClient(
                settings.delivery_url,
                max_attempts=settings.delivery_retry_attempts,
                timeout_s=settings.delivery_timeout_s,
            )
        self._delivery = delivery_client

        self._stopped = True
        self._in_progress = False
        self._handle: TimerHandle | None = None
        self._next_fire_at: float | None = None
        self._cycle_task: asyncio.Task[Any] | None = None
        self._stopped_event = asyncio.Event()
        self._failure: tuple[FailureClassification, RecoveryAction] | None = None

        #: Exit code of a ``Fatal`` action that stopped the engine, if any.
        self.fatal_exit_code: int | None = None
        self.last_result: CheckResult | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        if self._in_progress:
            return EngineState.RUNNING
        if self._handle is not None:
            return EngineState.SCHEDULED
        return EngineState.IDLE

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def environment_types(self) -> RotationPool[EnvironmentType]:
        return self._environment_types

    @property
    def identities(self) -> IdentityPool:
        return self._identities

    @property
    def routes(self) -> FailureAwareRotationPool[EgressRoute]:
        return self._routes

    @property
    def delivery_client(self) -> DeliveryClient | None:
        return self._delivery

    def is_running(self) -> bool:
        """``True`` while a timer is pending or a cycle is executing."""
        cycle_pending = self._cycle_task is not None and not self._cycle_task.done()
        return self._handle is not None or self._in_progress or cycle_pending

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin scheduling; the first cycle fires immediately."""
        if self.is_running():
            logger.warning("Check engine already running.")
            return

        self._stopped = False
        self._stopped_event.clear()
        self.fatal_exit_code = None
        logger.info(
            "Starting check engine (interval %.0f s, %d environment types, %d egress routes).",
            self._interval_s,
            self._environment_types.size(),
            self._routes.size(),
            extra={"event": events.ENGINE_START, "interval_s": self._interval_s},
        )
        self._schedule(self._timer.now())

    def stop(self) -> None:
        """Stop scheduling.  A cycle already executing runs to completion."""
        if not self.is_running():
            logger.warning("Check engine not running.")
            return

        logger.info("Stopping check engine.", extra={"event": events.ENGINE_STOP})
        self._stopped = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._stopped_event.set()

    async def wait_stopped(self) -> None:
        """Return once :meth:`stop` was called and the last cycle finished."""
        await self._stopped_event.wait()
        task = self._cycle_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    async def aclose(self) -> None:
        """Release the delivery client's HTTP resources."""
        if self._delivery is not None:
            await self._delivery.close()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule(self, due_at: float) -> None:
        if self._stopped:
            return
        now = self._timer.now()
        self._next_fire_at = max(due_at, now)
        delay = self._next_fire_at - now
        self._handle = self._timer.call_later(delay, self._on_timer)
        logger.debug(
            "Next check in %.1f s.",
            delay,
            extra={"event": events.CYCLE_SCHEDULED, "delay_s": delay},
        )

    def _on_timer(self) -> None:
        self._handle = None
        scheduled_at = self._next_fire_at if self._next_fire_at is not None else self._timer.now()
        self._cycle_task = asyncio.get_running_loop().create_task(
            self._run_scheduled(scheduled_at),
            name="ledgerwatch-check-cycle",
        )

    async def _run_scheduled(self, scheduled_at: float) -> None:
        result = await self.execute_check()

        if isinstance(result.action, Fatal):
            logger.critical(
                "Fatal failure in scheduled check; stopping engine (exit code %d): %s",
                result.action.exit_code,
                result.error,
                extra={"event": events.CYCLE_FATAL, "exit_code": result.action.exit_code},
            )
            self.fatal_exit_code = result.action.exit_code
            if not self._stopped:
                self.stop()
            return

        if not self._stopped:
            self._schedule(scheduled_at + self._interval_s)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def execute_check(self) -> CheckResult:
        """Run one cycle and report its outcome.  Never raises.

        A call made while another cycle is executing returns immediately
        with ``error == "Check already in progress"``.
        """
        if self._in_progress:
            logger.warning("Check already in progress; skipping.", extra={"event": events.CYCLE_OVERLAP})
            return CheckResult(success=False, timestamp=datetime.now(UTC), error=OVERLAP_ERROR)
        self._in_progress = True

        started = datetime.now(UTC)
        token = CYCLE_ID_CTX.set(uuid.uuid4().hex[:8])
        self._failure = None
        try:
            logger.info("Check cycle started.", extra={"event": events.CYCLE_START})
            try:
                count = await self.perform_check()
            except Exception as exc:
                classification, action = self._failure or (None, None)
                logger.error(
                    "Check cycle failed: %s",
                    describe_failure(exc),
                    exc_info=not isinstance(exc, LedgerwatchError),
                    extra={
                        "event": events.CYCLE_FAILED,
                        "error_type": type(exc).__name__,
                        "category": str(classification.category) if classification else None,
                    },
                )
                result = CheckResult(
                    success=False,
                    timestamp=started,
                    error=describe_failure(exc),
                    category=classification.category if classification else None,
                    action=action,
                )
            else:
                logger.info(
                    "Check cycle completed (%d mutations).",
                    count,
                    extra={"event": events.CYCLE_COMPLETE, "mutation_count": count},
                )
                result = CheckResult(success=True, timestamp=started, mutation_count=count)
            self.last_result = result
            return result
        finally:
            self._in_progress = False
            CYCLE_ID_CTX.reset(token)

    async def perform_check(self) -> int:
        """Run the cycle body and return the number of parsed records.

        Raises:
            Exception: Whatever session acquisition, authentication or
                extraction raised, after classification.
        """
        environment_type = self._environment_types.next()
        identity = self._identities.next(environment_type)
        route = self._routes.next()
        logger.info(
            "Cycle rotation: environment=%s egress=%s.",
            environment_type,
            route or "direct",
            extra={
                "event": events.ROTATION_SELECTED,
                "environment_type": str(environment_type),
                "egress_route": str(route) if route else None,
            },
        )

        try:
            if not self._settings.credentials_configured:
                raise ConfigError("Portal username or password is not set in the configuration")
            credentials = self._settings.credentials

            async with self._session_scope(environment_type, identity, route) as session:
                await self._collaborators.authenticator.authenticate(session, credentials)
                raws = await self._collaborators.extractor.fetch_and_extract(session)
                records = self._collaborators.parser.parse_all(raws)
                if self._delivery is not None and records:
                    await self._deliver(self._delivery, records)
                return len(records)
        except Exception as exc:
            context = AttemptContext(
                operation=_CYCLE_OPERATION,
                attempt=1,
                max_attempts=_CYCLE_MAX_ATTEMPTS,
            )
            classification, action = self._classifier.handle(exc, context)
            self._failure = (classification, action)
            if (
                isinstance(action, Retry)
                and classification.category is FailureCategory.NETWORK
                and route is not None
            ):
                self._routes.mark_failed(route)
                logger.warning(
                    "Egress route %s marked failed (%d/%d available).",
                    route,
                    self._routes.available_count(),
                    self._routes.size(),
                    extra={"event": events.ROUTE_MARKED_FAILED, "egress_route": str(route)},
                )
            raise

    @contextlib.asynccontextmanager
    async def _session_scope(
        self,
        environment_type: EnvironmentType,
        identity: str,
        route: EgressRoute | None,
    ) -> AsyncIterator[Any]:
        sessions = self._collaborators.sessions
        session = await sessions.acquire(environment_type, identity, route)
        logger.debug("Session acquired.", extra={"event": events.SESSION_ACQUIRED})
        try:
            yield session
        finally:
            try:
                await self._collaborators.authenticator.logout(session)
            except Exception:  # noqa: BLE001
                logger.warning("Portal logout raised; continuing with release.", exc_info=True)
            try:
                await sessions.release(session)
            except Exception:  # noqa: BLE001
                logger.warning("Session release raised.", exc_info=True)
            logger.debug("Session released.", extra={"event": events.SESSION_RELEASED})

    async def _deliver(self, client: DeliveryClient, records: Sequence[MutationRecord]) -> None:
        try:
            await client.send(records, self._settings.portal_username)
        except Exception as exc:  # noqa: BLE001
            context = AttemptContext(
                operation=_DELIVERY_OPERATION,
                attempt=1,
                max_attempts=self._settings.delivery_retry_attempts,
            )
            self._classifier.handle(exc, context)
