"""Playwright implementations of the portal collaborators.

* :class:`PlaywrightSessionProvider` launches one browser per cycle with the
  cycle's environment type, identity string and egress route.
* :class:`PortalAuthenticator` signs in through the portal's login form and
  signs out via the logout URL.
* :class:`StatementExtractor` reads the account statement table.

Playwright is imported lazily so the rest of the package (and the unit
tests, which drive these classes with mocked pages) loads without the
browser binaries installed.

Playwright failures are re-raised as the package's own exceptions: timeouts
and ``net::ERR_*`` errors as
:class:`~ledgerwatch.core.exceptions.NetworkError`, everything else as
:class:`~ledgerwatch.core.exceptions.ExecutionEnvironmentError`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

from ledgerwatch.core import events
from ledgerwatch.core.exceptions import (
    AuthenticationError,
    ExecutionEnvironmentError,
    NetworkError,
    PortalError,
)
from ledgerwatch.core.models import Credentials, EgressRoute, EnvironmentType, RawMutation
from ledgerwatch.core.settings import Settings

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright

__all__ = [
    "BrowserSession",
    "PlaywrightSessionProvider",
    "PortalAuthenticator",
    "StatementExtractor",
    "LAUNCH_CHANNELS",
    "rows_to_mutations",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Playwright ``channel`` per environment type; ``None`` = bundled Chromium.
LAUNCH_CHANNELS: Final[dict[EnvironmentType, str | None]] = {
    EnvironmentType.CHROMIUM: None,
    EnvironmentType.CHROME: "chrome",
    EnvironmentType.EDGE: "msedge",
    EnvironmentType.BRAVE: None,
}

_USER_ID_SELECTOR: Final[str] = 'input[name="txt_user_id"]'
_PASSWORD_SELECTOR: Final[str] = 'input[name="txt_pswd"]'
_SUBMIT_SELECTOR: Final[str] = 'input[type="Submit"][value="LOGIN"]'

_STATEMENT_TABLE_SELECTOR: Final[str] = 'table[bordercolor="#ffffff"]'
_STATEMENT_TABLE_TIMEOUT_MS: Final[int] = 10_000
_MIN_CELLS: Final[int] = 5

#: Date-cell values that mark header or pending rows.
_NON_MUTATION_DATES: Final[frozenset[str]] = frozenset({"PEND", "TANGGAL"})

# Collects the trimmed text of every <td> per row.
_ROW_CELLS_JS: Final[str] = """
rows => rows.map(row => Array.from(row.querySelectorAll('td')).map(td => (td.textContent || '').trim()))
"""


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _is_network_failure(exc: BaseException) -> bool:
    from playwright.async_api import TimeoutError as PlaywrightTimeoutError  # noqa: PLC0415

    return isinstance(exc, PlaywrightTimeoutError) or "net::err" in str(exc).lower()


# Start of the parts of a Playwright message that echo selectors or URLs.
_DETAIL_CUT: Final[re.Pattern[str]] = re.compile(r"""locator\(|["'`]|https?://""")


def _summary(exc: Exception) -> str:
    """First line of *exc* without the call log, selectors or URLs."""
    lines = str(exc).strip().splitlines()
    head = _DETAIL_CUT.split(lines[0], maxsplit=1)[0] if lines else ""
    head = head.rstrip(" :(").removesuffix(" at").strip()
    return head or type(exc).__name__


def _wrap(exc: Exception, stage: str) -> PortalError:
    """Translate a Playwright failure raised during *stage*.

    Only a one-line summary of *exc* is kept; the call log, selectors and
    URLs never reach the message.
    """
    if isinstance(exc, PortalError):
        return exc
    if _is_network_failure(exc):
        return NetworkError(f"Network failure during {stage}: {_summary(exc)}")
    return ExecutionEnvironmentError(f"Browser failure during {stage}: {_summary(exc)}")


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class BrowserSession:
    """Everything one cycle opened; released as a unit."""

    page: Page
    context: BrowserContext | None = None
    browser: Browser | None = None
    playwright: Playwright | None = None
    environment_type: EnvironmentType = EnvironmentType.CHROMIUM
    identity: str = ""
    egress_route: EgressRoute | None = None


class PlaywrightSessionProvider:
    """Launch a fresh browser per cycle.

    Args:
        headless: Run without a visible window.
        timeout_ms: Default timeout applied to the opened page.
    """

    def __init__(self, *, headless: bool = True, timeout_ms: int = 30_000) -> None:
        self._headless = headless
        self._timeout_ms = timeout_ms

    @classmethod
    def from_settings(cls, settings: Settings) -> PlaywrightSessionProvider:
        return cls(headless=settings.headless, timeout_ms=settings.portal_timeout_ms)

    def launch_options(
        self,
        environment_type: EnvironmentType,
        egress_route: EgressRoute | None,
    ) -> dict[str, Any]:
        """Keyword arguments for ``chromium.launch`` for this cycle."""
        options: dict[str, Any] = {"headless": self._headless}
        channel = LAUNCH_CHANNELS.get(environment_type)
        if channel:
            options["channel"] = channel
        if egress_route is not None:
            options["proxy"] = egress_route.as_playwright_proxy()
        return options

    async def acquire(
        self,
        environment_type: EnvironmentType,
        identity: str,
        egress_route: EgressRoute | None,
    ) -> BrowserSession:
        """Start Playwright, launch the browser and open a page.

        Raises:
            ExecutionEnvironmentError: Playwright is missing or the browser
                failed to launch.
            NetworkError: The launch failed on a network error.
        """
        try:
            from playwright.async_api import async_playwright  # noqa: PLC0415
        except ImportError as exc:
            raise ExecutionEnvironmentError(
                "Playwright is not installed; the browser cannot be started. "
                "Run: pip install playwright && playwright install chromium"
            ) from exc

        playwright = await async_playwright().start()
        browser: Browser | None = None
        context: BrowserContext | None = None
        try:
            browser = await playwright.chromium.launch(**self.launch_options(environment_type, egress_route))
            context = await browser.new_context(user_agent=identity)
            page = await context.new_page()
            page.set_default_timeout(self._timeout_ms)
        except Exception as exc:
            await self._close_quietly(context, browser, playwright)
            raise _wrap(exc, f"{environment_type} browser launch") from exc

        logger.info(
            "Launched %s browser (headless=%s, egress=%s).",
            environment_type,
            self._headless,
            egress_route or "direct",
        )
        return BrowserSession(
            page=page,
            context=context,
            browser=browser,
            playwright=playwright,
            environment_type=environment_type,
            identity=identity,
            egress_route=egress_route,
        )

    async def release(self, session: BrowserSession) -> None:
        """Close page, context, browser and driver.  Never raises."""
        try:
            await session.page.close()
        except Exception:  # noqa: BLE001
            logger.warning("Failed to close page.", exc_info=True)
        await self._close_quietly(session.context, session.browser, session.playwright)
        logger.debug("Browser session closed.", extra={"event": events.SESSION_RELEASED})

    @staticmethod
    async def _close_quietly(
        context: BrowserContext | None,
        browser: Browser | None,
        playwright: Playwright | None,
    ) -> None:
        for label, closer in (
            ("browser context", context.close if context is not None else None),
            ("browser", browser.close if browser is not None else None),
            ("playwright driver", playwright.stop if playwright is not None else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception:  # noqa: BLE001
                logger.warning("Failed to close %s.", label, exc_info=True)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class PortalAuthenticator:
    """Sign in to and out of the portal through its HTML forms."""

    def __init__(self, settings: Settings) -> None:
        self._login_url = settings.portal_login_url
        self._logout_url = settings.portal_logout_url
        self._markers = tuple(settings.portal_login_success_markers)
        self._timeout_ms = settings.portal_timeout_ms

    async def authenticate(self, session: BrowserSession, credentials: Credentials) -> None:
        """Submit the login form and verify the landing page.

        Raises:
            AuthenticationError: The portal did not land on the menu page.
            NetworkError: Navigation timed out or the connection failed.
            ExecutionEnvironmentError: Any other browser failure.
        """
        page = session.page
        try:
            await page.goto(self._login_url, wait_until="networkidle", timeout=self._timeout_ms)
            await page.wait_for_selector(_USER_ID_SELECTOR, timeout=self._timeout_ms)
            await page.fill(_USER_ID_SELECTOR, credentials.username)
            await page.fill(_PASSWORD_SELECTOR, credentials.password)
            await page.click(_SUBMIT_SELECTOR)
            await page.wait_for_load_state("networkidle", timeout=self._timeout_ms)
        except Exception as exc:
            raise _wrap(exc, "sign-in") from exc

        landed = page.url
        if not all(marker in landed for marker in self._markers):
            raise AuthenticationError("Login failed: unexpected page after login")
        logger.info("Signed in to portal.")

    async def logout(self, session: BrowserSession) -> None:
        """Open the logout URL.  Failures are logged, never raised."""
        try:
            await session.page.goto(self._logout_url, wait_until="networkidle", timeout=self._timeout_ms)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Portal sign-out failed: %s", exc)
            return
        logger.info("Signed out of portal.")


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def rows_to_mutations(rows: list[list[str]]) -> list[RawMutation]:
    """Keep data rows (≥ 5 cells, real date, description and amount)."""
    mutations: list[RawMutation] = []
    for cells in rows:
        if len(cells) < _MIN_CELLS:
            continue
        date, description, amount, kind, balance = (c.strip() for c in cells[:_MIN_CELLS])
        if not date or date.upper() in _NON_MUTATION_DATES or not description or not amount:
            continue
        mutations.append(
            RawMutation(date=date, description=description, amount=amount, type=kind, balance=balance)
        )
    return mutations


class StatementExtractor:
    """Read the account statement table into :class:`RawMutation` rows."""

    def __init__(self, settings: Settings) -> None:
        self._statement_url = settings.portal_statement_url
        self._timeout_ms = settings.portal_timeout_ms

    async def fetch_and_extract(self, session: BrowserSession) -> list[RawMutation]:
        page = session.page
        try:
            await page.goto(self._statement_url, wait_until="networkidle", timeout=self._timeout_ms)
            await page.wait_for_selector(_STATEMENT_TABLE_SELECTOR, timeout=_STATEMENT_TABLE_TIMEOUT_MS)
            rows = await page.eval_on_selector_all(f"{_STATEMENT_TABLE_SELECTOR} tr", _ROW_CELLS_JS)
        except Exception as exc:
            raise _wrap(exc, "statement page navigation") from exc

        mutations = rows_to_mutations(rows)
        logger.info("Extracted %d statement rows (%d table rows).", len(mutations), len(rows))
        return mutations
