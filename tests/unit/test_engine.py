"""Unit tests for :class:`~ledgerwatch.orchestrator.engine.CheckEngine`.

The engine runs against:

- a :class:`FakeTimer` whose clock only moves when a test moves it;
- ``AsyncMock`` portal collaborators (session provider, authenticator,
  extractor) with the real :class:`MutationParser`;
- a real :class:`DeliveryClient` over :class:`httpx.MockTransport`.

Covers the overlap guard, exactly-once session release, failure
classification and route marking, fixed-rate rescheduling, and the fatal
stop path.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ledgerwatch.core import events
from ledgerwatch.core.exceptions import AuthenticationError, ConfigError, NetworkError
from ledgerwatch.core.logging_config import CYCLE_ID_CTX
from ledgerwatch.core.models import EgressRoute, EnvironmentType, RawMutation
from ledgerwatch.notifiers.webhook import DeliveryClient
from ledgerwatch.orchestrator.engine import (
    OVERLAP_ERROR,
    CheckEngine,
    EngineState,
    PortalCollaborators,
)
from ledgerwatch.orchestrator.recovery import FailureCategory, Fallback, Fatal, Retry
from ledgerwatch.portal.browser import BrowserSession, PortalAuthenticator
from ledgerwatch.portal.parser import MutationParser
from ledgerwatch.rotation import DEFAULT_IDENTITIES

_HOOK = "https://hooks.example.test/mutations"
_SESSION = object()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class FakeHandle:
    due_at: float
    delay: float
    callback: Callable[[], None]
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class FakeTimer:
    clock: float = 1000.0
    handles: list[FakeHandle] = field(default_factory=list)

    def now(self) -> float:
        return self.clock

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> FakeHandle:
        handle = FakeHandle(self.clock + delay_s, delay_s, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> list[FakeHandle]:
        return [h for h in self.handles if not h.cancelled]

    def fire_next(self) -> None:
        """Advance the clock to the earliest live handle and run it."""
        handle = min(self.pending, key=lambda h: h.due_at)
        self.handles.remove(handle)
        self.clock = max(self.clock, handle.due_at)
        handle.callback()


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)


def _rows() -> list[RawMutation]:
    return [
        RawMutation(date="05/03/24", description="TRSF CR ALPHA", amount="1,500,000.00", type="CR", balance="2,000,000.00"),
        RawMutation(date="05/03/24", description="BROKEN", amount="n/a", type="DB", balance="1,000.00"),
        RawMutation(date="06/03/24", description="BIAYA ADM", amount="10,000.00", type="DB", balance="1,990,000.00"),
    ]


def _collaborators(rows: list[RawMutation] | None = None) -> PortalCollaborators:
    sessions = MagicMock()
    sessions.acquire = AsyncMock(return_value=_SESSION)
    sessions.release = AsyncMock()
    authenticator = MagicMock()
    authenticator.authenticate = AsyncMock()
    authenticator.logout = AsyncMock()
    extractor = MagicMock()
    extractor.fetch_and_extract = AsyncMock(return_value=_rows() if rows is None else rows)
    return PortalCollaborators(
        sessions=sessions,
        authenticator=authenticator,
        extractor=extractor,
        parser=MutationParser(),
    )


def _hook(*statuses: int) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(statuses[min(len(seen) - 1, len(statuses) - 1)])

    return httpx.MockTransport(handler), seen


async def _settle(engine: CheckEngine) -> None:
    """Wait for the cycle task started by the last timer callback."""
    task = engine._cycle_task
    assert task is not None
    await task


@pytest.fixture()
def settings(make_settings):
    return make_settings(egress_enabled=True, egress_routes="http://p1:8080,http://p2:8080")


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_interval_below_minimum_rejected(self, make_settings) -> None:
        settings = make_settings(check_interval_ms=60_000)
        with pytest.raises(ConfigError, match="at least 300000 ms"):
            CheckEngine(settings, _collaborators(), timer=FakeTimer())

    @pytest.mark.parametrize("interval_ms", [300_000, 300_001, 3_600_000])
    def test_interval_at_or_above_minimum_accepted(self, make_settings, interval_ms: int) -> None:
        engine = CheckEngine(make_settings(check_interval_ms=interval_ms), _collaborators(), timer=FakeTimer())
        assert engine.interval_s == interval_ms / 1000

    def test_pools_built_from_settings(self, settings) -> None:
        engine = CheckEngine(settings, _collaborators(), timer=FakeTimer())
        assert engine.environment_types.items == (EnvironmentType.CHROMIUM,)
        assert engine.routes.size() == 2
        assert engine.interval_s == 300.0
        assert engine.state is EngineState.IDLE
        assert engine.delivery_client is None

    def test_delivery_client_built_when_url_set(self, make_settings) -> None:
        settings = make_settings(delivery_url=_HOOK, delivery_retry_attempts=4)
        engine = CheckEngine(settings, _collaborators(), timer=FakeTimer())
        assert engine.delivery_client is not None
        assert engine.delivery_client.max_attempts == 4

    def test_routes_empty_when_egress_disabled(self, make_settings) -> None:
        settings = make_settings(egress_routes="http://p1:8080")
        engine = CheckEngine(settings, _collaborators(), timer=FakeTimer())
        assert engine.routes.size() == 0


# ---------------------------------------------------------------------------
# Single cycle
# ---------------------------------------------------------------------------


class TestExecuteCheck:
    @pytest.mark.asyncio
    async def test_end_to_end_skips_bad_row_and_delivers_once(self, make_settings) -> None:
        transport, seen = _hook(200)
        delivery = DeliveryClient(_HOOK, transport=transport, sleep=_SleepRecorder().sleep)
        portal = _collaborators()
        engine = CheckEngine(make_settings(), portal, timer=FakeTimer(), delivery_client=delivery)

        result = await engine.execute_check()
        await engine.aclose()

        assert result.success
        assert result.mutation_count == 2
        assert result.error is None
        assert engine.last_result is result

        assert len(seen) == 1
        body = json.loads(seen[0].content)
        assert body["account"] == "teller01"
        assert [m["description"] for m in body["mutations"]] == ["TRSF CR ALPHA", "BIAYA ADM"]

        portal.sessions.acquire.assert_awaited_once_with(
            EnvironmentType.CHROMIUM, DEFAULT_IDENTITIES[EnvironmentType.CHROMIUM], None
        )
        portal.authenticator.authenticate.assert_awaited_once()
        _, credentials = portal.authenticator.authenticate.await_args.args
        assert credentials.username == "teller01"
        portal.authenticator.logout.assert_awaited_once_with(_SESSION)
        portal.sessions.release.assert_awaited_once_with(_SESSION)

    @pytest.mark.asyncio
    async def test_no_delivery_without_records(self, make_settings) -> None:
        delivery = MagicMock(spec=DeliveryClient)
        delivery.send = AsyncMock()
        engine = CheckEngine(
            make_settings(), _collaborators(rows=[]), timer=FakeTimer(), delivery_client=delivery
        )
        result = await engine.execute_check()
        assert result.success
        assert result.mutation_count == 0
        delivery.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rotation_advances_per_cycle(self, settings) -> None:
        portal = _collaborators()
        engine = CheckEngine(settings, portal, timer=FakeTimer())
        await engine.execute_check()
        await engine.execute_check()
        await engine.execute_check()
        routes = [c.args[2] for c in portal.sessions.acquire.await_args_list]
        assert [r.server for r in routes] == ["http://p1:8080", "http://p2:8080", "http://p1:8080"]

    @pytest.mark.asyncio
    async def test_environment_types_alternate_without_egress(self, make_settings) -> None:
        portal = _collaborators(rows=[])
        engine = CheckEngine(make_settings(environment_types="chrome,edge"), portal, timer=FakeTimer())

        for _ in range(3):
            await engine.execute_check()

        calls = [c.args for c in portal.sessions.acquire.await_args_list]
        assert [c[0] for c in calls] == [EnvironmentType.CHROME, EnvironmentType.EDGE, EnvironmentType.CHROME]
        assert [c[2] for c in calls] == [None, None, None]
        assert "Edg/" in calls[1][1]
        assert "Edg/" not in calls[0][1]

    @pytest.mark.asyncio
    async def test_cycle_id_scoped_to_cycle(self, make_settings) -> None:
        seen_ids: list[str] = []
        portal = _collaborators()

        async def _auth(session: object, credentials: object) -> None:
            seen_ids.append(CYCLE_ID_CTX.get())

        portal.authenticator.authenticate.side_effect = _auth
        engine = CheckEngine(make_settings(), portal, timer=FakeTimer())

        await engine.execute_check()
        await engine.execute_check()

        assert len(seen_ids) == 2
        assert all(len(cid) == 8 for cid in seen_ids)
        assert seen_ids[0] != seen_ids[1]
        assert CYCLE_ID_CTX.get() == "-"

    @pytest.mark.asyncio
    async def test_cycle_events_logged(self, make_settings, caplog: pytest.LogCaptureFixture) -> None:
        engine = CheckEngine(make_settings(), _collaborators(), timer=FakeTimer())
        with caplog.at_level(logging.DEBUG, logger="ledgerwatch"):
            await engine.execute_check()
        logged = [getattr(r, "event", None) for r in caplog.records]
        for event in (
            events.CYCLE_START,
            events.ROTATION_SELECTED,
            events.SESSION_ACQUIRED,
            events.RECORDS_PARSED,
            events.SESSION_RELEASED,
            events.CYCLE_COMPLETE,
        ):
            assert event in logged


# ---------------------------------------------------------------------------
# Overlap guard
# ---------------------------------------------------------------------------


class TestOverlapGuard:
    @pytest.mark.asyncio
    async def test_second_call_rejected_while_running(self, make_settings) -> None:
        gate = asyncio.Event()
        portal = _collaborators()

        async def _blocked(session: object, credentials: object) -> None:
            await gate.wait()

        portal.authenticator.authenticate.side_effect = _blocked
        engine = CheckEngine(make_settings(), portal, timer=FakeTimer())

        first = asyncio.create_task(engine.execute_check())
        await asyncio.sleep(0)
        assert engine.state is EngineState.RUNNING

        second = await engine.execute_check()
        assert not second.success
        assert second.error == OVERLAP_ERROR

        gate.set()
        result = await first
        assert result.success
        assert portal.sessions.acquire.await_count == 1

    @pytest.mark.parametrize("callers", [2, 3, 5])
    @pytest.mark.asyncio
    async def test_exactly_one_of_many_proceeds(self, make_settings, callers: int) -> None:
        gate = asyncio.Event()
        portal = _collaborators()

        async def _blocked(session: object, credentials: object) -> None:
            await gate.wait()

        portal.authenticator.authenticate.side_effect = _blocked
        engine = CheckEngine(make_settings(), portal, timer=FakeTimer())

        tasks = [asyncio.create_task(engine.execute_check()) for _ in range(callers)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks)

        rejected = [r for r in results if r.error == OVERLAP_ERROR]
        assert len(rejected) == callers - 1
        assert sum(r.success for r in results) == 1
        assert portal.sessions.acquire.await_count == 1

    @pytest.mark.asyncio
    async def test_flag_cleared_after_failure(self, make_settings) -> None:
        portal = _collaborators()
        portal.extractor.fetch_and_extract.side_effect = RuntimeError("boom")
        engine = CheckEngine(make_settings(), portal, timer=FakeTimer())

        assert not (await engine.execute_check()).success
        assert engine.state is EngineState.IDLE

        portal.extractor.fetch_and_extract.side_effect = None
        portal.extractor.fetch_and_extract.return_value = []
        result = await engine.execute_check()
        assert result.success
        assert result.error is None


# ---------------------------------------------------------------------------
# Session release
# ---------------------------------------------------------------------------


class TestSessionRelease:
    @pytest.mark.asyncio
    async def test_released_once_on_authentication_failure(self, make_settings) -> None:
        portal = _collaborators()
        portal.authenticator.authenticate.side_effect = AuthenticationError("Authentication failed: bad password")
        engine = CheckEngine(make_settings(), portal, timer=FakeTimer())

        result = await engine.execute_check()

        assert not result.success
        portal.authenticator.logout.assert_awaited_once_with(_SESSION)
        portal.sessions.release.assert_awaited_once_with(_SESSION)
        portal.extractor.fetch_and_extract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_released_once_on_extraction_failure(self, make_settings) -> None:
        portal = _collaborators()
        portal.extractor.fetch_and_extract.side_effect = RuntimeError("Selector resolved to hidden element")
        engine = CheckEngine(make_settings(), portal, timer=FakeTimer())

        result = await engine.execute_check()

        assert not result.success
        assert result.category is FailureCategory.EXECUTION_ENVIRONMENT
        assert isinstance(result.action, Fallback)
        portal.sessions.release.assert_awaited_once_with(_SESSION)

    @pytest.mark.asyncio
    async def test_delivery_failure_does_not_fail_cycle(self, make_settings) -> None:
        transport, seen = _hook(500)
        sleep = _SleepRecorder()
        delivery = DeliveryClient(_HOOK, max_attempts=2, transport=transport, sleep=sleep.sleep)
        portal = _collaborators()
        engine = CheckEngine(make_settings(), portal, timer=FakeTimer(), delivery_client=delivery)

        result = await engine.execute_check()
        await engine.aclose()

        assert result.success
        assert result.mutation_count == 2
        assert len(seen) == 2
        assert sleep.delays == [1.0]
        portal.sessions.release.assert_awaited_once_with(_SESSION)

    @pytest.mark.asyncio
    async def test_logout_error_does_not_skip_release(self, make_settings) -> None:
        portal = _collaborators()
        portal.authenticator.logout.side_effect = RuntimeError("page closed")
        engine = CheckEngine(make_settings(), portal, timer=FakeTimer())

        result = await engine.execute_check()

        assert result.success
        portal.sessions.release.assert_awaited_once_with(_SESSION)

    @pytest.mark.asyncio
    async def test_acquire_failure_skips_release(self, make_settings) -> None:
        portal = _collaborators()
        portal.sessions.acquire.side_effect = RuntimeError("Browser failure during launch: missing binary")
        engine = CheckEngine(make_settings(), portal, timer=FakeTimer())

        result = await engine.execute_check()

        assert not result.success
        portal.sessions.release.assert_not_awaited()
        portal.authenticator.logout.assert_not_awaited()


# ---------------------------------------------------------------------------
# Classification and route marking
# ---------------------------------------------------------------------------


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_authentication_failure_retries_without_marking_route(self, settings) -> None:
        portal = _collaborators()
        portal.authenticator.authenticate.side_effect = AuthenticationError("Authentication failed: bad password")
        engine = CheckEngine(settings, portal, timer=FakeTimer())

        result = await engine.execute_check()

        assert result.error == "Authentication failed: bad password"
        assert result.category is FailureCategory.AUTHENTICATION
        assert result.action == Retry(30)
        assert engine.routes.available_count() == 2

    @pytest.mark.asyncio
    async def test_network_failure_marks_cycle_route(self, settings, caplog: pytest.LogCaptureFixture) -> None:
        portal = _collaborators()
        portal.authenticator.authenticate.side_effect = NetworkError(
            "Network failure during sign-in: net::ERR_PROXY_CONNECTION_FAILED"
        )
        engine = CheckEngine(settings, portal, timer=FakeTimer())

        with caplog.at_level(logging.WARNING, logger="ledgerwatch.orchestrator.engine"):
            result = await engine.execute_check()

        assert result.category is FailureCategory.NETWORK
        assert result.action == Retry(2)
        assert engine.routes.is_failed(EgressRoute(server="http://p1:8080"))
        assert engine.routes.available_count() == 1
        assert any(getattr(r, "event", None) == events.ROUTE_MARKED_FAILED for r in caplog.records)

        portal.authenticator.authenticate.side_effect = None
        await engine.execute_check()
        await engine.execute_check()
        used = [c.args[2].server for c in portal.sessions.acquire.await_args_list]
        assert used == ["http://p1:8080", "http://p2:8080", "http://p2:8080"]

    @pytest.mark.asyncio
    async def test_login_click_timeout_marks_route(self, make_settings) -> None:
        settings = make_settings(egress_enabled=True, egress_routes="http://p1:8080")
        page = AsyncMock()
        page.click.side_effect = PlaywrightTimeoutError(
            "Page.click: Timeout 30000ms exceeded.\n"
            "Call log:\n"
            '  - waiting for locator("input[type=\\"Submit\\"][value=\\"LOGIN\\"]")\n'
        )
        portal = _collaborators()
        portal.sessions.acquire.return_value = BrowserSession(page=page)
        portal.authenticator = PortalAuthenticator(settings)
        engine = CheckEngine(settings, portal, timer=FakeTimer())

        result = await engine.execute_check()

        assert result.category is FailureCategory.NETWORK
        assert engine.routes.available_count() == 0
        portal.sessions.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_network_failure_without_route(self, make_settings) -> None:
        portal = _collaborators()
        portal.sessions.acquire.side_effect = NetworkError("Network failure during launch: timeout")
        engine = CheckEngine(make_settings(), portal, timer=FakeTimer())
        result = await engine.execute_check()
        assert result.category is FailureCategory.NETWORK
        assert engine.routes.size() == 0

    @pytest.mark.asyncio
    async def test_missing_credentials_is_fatal(self, make_settings) -> None:
        portal = _collaborators()
        engine = CheckEngine(make_settings(portal_password=""), portal, timer=FakeTimer())

        result = await engine.execute_check()

        assert result.category is FailureCategory.CONFIGURATION
        assert result.action == Fatal(1)
        portal.sessions.acquire.assert_not_awaited()


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class TestScheduling:
    @pytest.mark.asyncio
    async def test_start_fires_immediately_and_stop_cancels(self, make_settings) -> None:
        timer = FakeTimer()
        engine = CheckEngine(make_settings(), _collaborators(), timer=timer)

        engine.start()
        assert engine.is_running()
        assert engine.state is EngineState.SCHEDULED
        assert [h.delay for h in timer.pending] == [0.0]

        engine.stop()
        assert not engine.is_running()
        assert timer.pending == []
        await asyncio.wait_for(engine.wait_stopped(), timeout=1)

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, make_settings, caplog: pytest.LogCaptureFixture) -> None:
        timer = FakeTimer()
        engine = CheckEngine(make_settings(), _collaborators(), timer=timer)

        with caplog.at_level(logging.WARNING, logger="ledgerwatch.orchestrator.engine"):
            engine.stop()
            engine.start()
            engine.start()
            engine.stop()
            engine.stop()

        messages = [r.getMessage() for r in caplog.records]
        assert messages.count("Check engine not running.") == 2
        assert messages.count("Check engine already running.") == 1
        assert len(timer.handles) == 1

    @pytest.mark.asyncio
    async def test_fixed_rate_rescheduling(self, make_settings) -> None:
        timer = FakeTimer()
        portal = _collaborators()
        engine = CheckEngine(make_settings(), portal, timer=timer)

        engine.start()
        timer.fire_next()
        await _settle(engine)
        assert [h.due_at for h in timer.pending] == [1300.0]

        # A cycle that takes 50 s still keeps the next one on the 300 s grid.
        async def _slow(session: object, credentials: object) -> None:
            timer.clock += 50

        portal.authenticator.authenticate.side_effect = _slow
        timer.fire_next()
        await _settle(engine)
        assert [h.due_at for h in timer.pending] == [1600.0]
        assert timer.pending[0].delay == 250.0

        engine.stop()
        await engine.wait_stopped()

    @pytest.mark.asyncio
    async def test_late_cycle_does_not_burst(self, make_settings) -> None:
        timer = FakeTimer()
        portal = _collaborators()
        engine = CheckEngine(make_settings(), portal, timer=timer)

        async def _very_slow(session: object, credentials: object) -> None:
            timer.clock += 1000

        portal.authenticator.authenticate.side_effect = _very_slow
        engine.start()
        timer.fire_next()
        await _settle(engine)

        assert len(timer.pending) == 1
        assert timer.pending[0].delay == 0.0
        assert timer.pending[0].due_at == 2000.0

        engine.stop()
        await engine.wait_stopped()

    @pytest.mark.asyncio
    async def test_failed_cycle_is_rescheduled(self, make_settings) -> None:
        timer = FakeTimer()
        portal = _collaborators()
        portal.authenticator.authenticate.side_effect = AuthenticationError("Authentication failed")
        engine = CheckEngine(make_settings(), portal, timer=timer)

        engine.start()
        timer.fire_next()
        await _settle(engine)

        assert engine.fatal_exit_code is None
        assert [h.due_at for h in timer.pending] == [1300.0]
        engine.stop()

    @pytest.mark.asyncio
    async def test_fatal_failure_stops_engine(self, make_settings, caplog: pytest.LogCaptureFixture) -> None:
        timer = FakeTimer()
        engine = CheckEngine(make_settings(portal_username=""), _collaborators(), timer=timer)

        with caplog.at_level(logging.CRITICAL, logger="ledgerwatch.orchestrator.engine"):
            engine.start()
            timer.fire_next()
            await _settle(engine)
            await asyncio.wait_for(engine.wait_stopped(), timeout=1)

        assert engine.fatal_exit_code == 1
        assert not engine.is_running()
        assert timer.pending == []
        assert any(getattr(r, "event", None) == events.CYCLE_FATAL for r in caplog.records)

    @pytest.mark.asyncio
    async def test_stop_during_cycle_prevents_rescheduling(self, make_settings) -> None:
        timer = FakeTimer()
        gate = asyncio.Event()
        portal = _collaborators()

        async def _blocked(session: object, credentials: object) -> None:
            await gate.wait()

        portal.authenticator.authenticate.side_effect = _blocked
        engine = CheckEngine(make_settings(), portal, timer=timer)

        engine.start()
        timer.fire_next()
        await asyncio.sleep(0)
        assert engine.state is EngineState.RUNNING

        engine.stop()
        gate.set()
        await asyncio.wait_for(engine.wait_stopped(), timeout=1)

        assert engine.last_result is not None
        assert engine.last_result.success
        assert timer.pending == []
        assert not engine.is_running()
