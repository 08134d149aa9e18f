"""Process-wide logging setup for ledgerwatch.

The entry-point calls :func:`configure_logging` exactly once; library modules
only ever do ``logger = logging.getLogger(__name__)`` and log with an
``extra={"event": events.X}`` tag.

``LOG_LEVEL`` and ``LOG_FORMAT`` are consulted when no explicit value is
passed.  Output goes to stderr either as a single human-readable line or as
one JSON document per record.

Portal credentials are handed over as ``secrets``; the
:class:`SecretRedactionFilter` attached to the handler masks them in the
rendered message and in any ``extra`` value.  Keys that look like credentials
(``password``, ``token`` …) are masked whatever their value.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from collections.abc import Callable, Iterable
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

__all__ = [
    "configure_logging",
    "JsonFormatter",
    "CYCLE_ID_CTX",
    "CycleContextFilter",
    "SecretRedactionFilter",
    "REDACTED",
]

#: Correlation id of the check cycle running in the current task.
#: :class:`~ledgerwatch.orchestrator.engine.CheckEngine` sets and resets it
#: around each cycle; everything logged outside a cycle carries ``"-"``.
CYCLE_ID_CTX: ContextVar[str] = ContextVar("cycle_id", default="-")

REDACTED = "[REDACTED]"

_LEVELS = ("CRITICAL", "DEBUG", "ERROR", "INFO", "WARNING")
_FORMATS = ("json", "text")

_LINE_FORMAT = "%(asctime)s %(levelname)-8s [%(cycle_id)s] %(name)s: %(message)s"
_LINE_DATEFMT = "%Y-%m-%d %H:%M:%S"

_CHATTY_LOGGERS = ("httpx", "httpcore", "asyncio", "playwright")

_SENSITIVE_KEYS = (
    "password",
    "passwd",
    "pwd",
    "secret",
    "token",
    "apikey",
    "api_key",
    "authorization",
    "credential",
)

# Attribute names every LogRecord carries; anything else came in via ``extra``.
_BUILTIN_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
}


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _BUILTIN_ATTRS}


class CycleContextFilter(logging.Filter):
    """Stamp ``record.cycle_id`` from :data:`CYCLE_ID_CTX`."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.cycle_id = CYCLE_ID_CTX.get()
        return True


class SecretRedactionFilter(logging.Filter):
    """Mask credential values before a record reaches a formatter.

    The message is interpolated once and stored back in ``record.msg`` with
    ``record.args`` cleared, so no formatter sees the raw arguments again.
    Matching is case-insensitive and prefers the longest secret when one
    value contains another.
    """

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        values = sorted({s for s in secrets if s and s.strip()}, key=len, reverse=True)
        self._pattern: re.Pattern[str] | None = None
        if values:
            self._pattern = re.compile("|".join(map(re.escape, values)), re.IGNORECASE)

    def redact(self, text: str) -> str:
        """Return *text* with every configured secret masked."""
        return text if self._pattern is None else self._pattern.sub(REDACTED, text)

    def _scrub(self, key: str, value: Any) -> Any:
        if any(marker in key.lower() for marker in _SENSITIVE_KEYS):
            return REDACTED
        if isinstance(value, str):
            return self.redact(value)
        if isinstance(value, dict):
            return {k: self._scrub(str(k), v) for k, v in value.items()}
        if isinstance(value, list | tuple):
            return type(value)(self._scrub("", item) for item in value)
        return value

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if self._pattern is not None:
            record.msg = self.redact(record.getMessage())
            record.args = None
        for key, value in _extra_fields(record).items():
            if key != "cycle_id":
                setattr(record, key, self._scrub(key, value))
        return True


class JsonFormatter(logging.Formatter):
    """Render a record as a single-line JSON object.

    Keys ``ts``, ``level``, ``logger``, ``message`` and ``extra`` are always
    present.  ``exc_info`` and ``stack_info`` appear only when the record
    carries them.  Values that are not JSON-native go through ``str()``.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        record.message = record.getMessage()
        created = datetime.fromtimestamp(record.created, tz=UTC)
        doc: dict[str, Any] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "extra": _extra_fields(record),
        }
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)
        elif record.exc_text:
            doc["exc_info"] = record.exc_text
        if record.stack_info:
            doc["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(doc, default=str)


def _pick(
    explicit: str | None, env_var: str, default: str, allowed: tuple[str, ...], normalise: Callable[[str], str]
) -> str:
    value = normalise(explicit or os.environ.get(env_var, default))
    if value not in allowed:
        raise ValueError(f"Unknown {env_var} {value!r}. Must be one of: {', '.join(allowed)}")
    return value


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
    secrets: Iterable[str] = (),
) -> None:
    """Install the ledgerwatch stderr handler on the root logger.

    Args:
        level: Level name; ``$LOG_LEVEL`` or ``INFO`` when omitted.
        fmt: ``text`` or ``json``; ``$LOG_FORMAT`` or ``text`` when omitted.
        force: Replace handlers that are already installed.  Without it an
            already-configured root logger only has its level adjusted.
        secrets: Literal values (portal username and password) to mask.

    Raises:
        ValueError: *level* or *fmt* is not recognised.
    """
    resolved_level = _pick(level, "LOG_LEVEL", "INFO", _LEVELS, str.upper)
    resolved_fmt = _pick(fmt, "LOG_FORMAT", "text", _FORMATS, str.lower)

    root = logging.getLogger()
    root.setLevel(resolved_level)
    if root.handlers and not force:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved_level)
    handler.addFilter(CycleContextFilter())
    handler.addFilter(SecretRedactionFilter(secrets))
    if resolved_fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_LINE_FORMAT, _LINE_DATEFMT))

    root.handlers.clear()
    root.addHandler(handler)

    if resolved_level != "DEBUG":
        for name in _CHATTY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
