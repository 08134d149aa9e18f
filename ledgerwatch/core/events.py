"""Structured log event name constants for the Ledgerwatch check engine.

Every key transition in the engine emits a log record with an ``event``
field (passed via ``extra={"event": events.X}``).  In ``LOG_FORMAT=json``
mode the value surfaces as ``extra.event``; in text mode the message text is
self-describing and the event name is not interpolated.

Usage example::

    import logging
    from ledgerwatch.core import events

    logger = logging.getLogger(__name__)

    logger.info("Check cycle started", extra={"event": events.CYCLE_START})
"""

from __future__ import annotations

__all__ = [
    # Scheduler lifecycle
    "ENGINE_START",
    "ENGINE_STOP",
    "CYCLE_SCHEDULED",
    # Cycle lifecycle
    "CYCLE_START",
    "CYCLE_COMPLETE",
    "CYCLE_FAILED",
    "CYCLE_OVERLAP",
    "CYCLE_FATAL",
    # Cycle stages
    "ROTATION_SELECTED",
    "SESSION_ACQUIRED",
    "SESSION_RELEASED",
    "RECORDS_PARSED",
    "ROUTE_MARKED_FAILED",
    # Delivery
    "DELIVERY_OK",
    "DELIVERY_ATTEMPT_FAILED",
    "DELIVERY_FAILED",
    # Recovery
    "FAILURE_CLASSIFIED",
]

# ---------------------------------------------------------------------------
# Scheduler lifecycle
# ---------------------------------------------------------------------------

#: ``CheckEngine.start()`` armed the first timer.
ENGINE_START: str = "ENGINE_START"

#: ``CheckEngine.stop()`` cancelled the pending timer (or a fatal cycle did).
ENGINE_STOP: str = "ENGINE_STOP"

#: A timer for the next cycle was armed.
CYCLE_SCHEDULED: str = "CYCLE_SCHEDULED"

# ---------------------------------------------------------------------------
# Cycle lifecycle
# ---------------------------------------------------------------------------

#: Emitted once when a cycle passes the overlap guard.
CYCLE_START: str = "CYCLE_START"

#: Cycle body finished without raising.
CYCLE_COMPLETE: str = "CYCLE_COMPLETE"

#: Cycle body raised; converted into a failed ``CheckResult``.
CYCLE_FAILED: str = "CYCLE_FAILED"

#: A second cycle was rejected because one is already executing.
CYCLE_OVERLAP: str = "CYCLE_OVERLAP"

#: A scheduled cycle produced a ``Fatal`` recovery action; engine stopping.
CYCLE_FATAL: str = "CYCLE_FATAL"

# ---------------------------------------------------------------------------
# Cycle stages
# ---------------------------------------------------------------------------

#: Environment type, identity and egress route chosen for the cycle.
ROTATION_SELECTED: str = "ROTATION_SELECTED"

#: Session provider returned a live session.
SESSION_ACQUIRED: str = "SESSION_ACQUIRED"

#: Logout and release finished (successfully or not).
SESSION_RELEASED: str = "SESSION_RELEASED"

#: Batch parser finished; ``extra`` carries the record count.
RECORDS_PARSED: str = "RECORDS_PARSED"

#: An egress route was excluded after a network failure.
ROUTE_MARKED_FAILED: str = "ROUTE_MARKED_FAILED"

# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

#: Webhook acknowledged a payload with a 2xx status.
DELIVERY_OK: str = "DELIVERY_OK"

#: One webhook attempt failed; another may follow.
DELIVERY_ATTEMPT_FAILED: str = "DELIVERY_ATTEMPT_FAILED"

#: Every webhook attempt failed.
DELIVERY_FAILED: str = "DELIVERY_FAILED"

# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

#: The recovery classifier categorised a failure and chose an action.
FAILURE_CLASSIFIED: str = "FAILURE_CLASSIFIED"
