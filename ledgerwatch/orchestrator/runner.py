"""Process-level drivers for :class:`~ledgerwatch.orchestrator.engine.CheckEngine`.

* :func:`run_once` executes a single cycle and maps its outcome to an exit
  code (``--once`` mode).
* :func:`run_continuous` starts the engine and blocks until it stops, either
  on ``SIGTERM`` / ``SIGINT`` or after a fatal failure.

Both release the engine's HTTP resources before returning.

Typical usage::

    import asyncio
    from ledgerwatch.orchestrator.runner import run_continuous

    exit_code = asyncio.run(run_continuous(engine))
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from ledgerwatch.orchestrator.engine import CheckEngine
from ledgerwatch.orchestrator.recovery import Fatal

__all__ = ["run_once", "run_continuous"]

logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGTERM, signal.SIGINT)


async def run_once(engine: CheckEngine) -> int:
    """Run one cycle and return the process exit code.

    Returns:
        ``0`` on success, the ``Fatal`` exit code for a fatal failure,
        ``1`` for any other failure.
    """
    try:
        result = await engine.execute_check()
    finally:
        await engine.aclose()

    if result.success:
        logger.info("Single check finished: %d mutations.", result.mutation_count or 0)
        return 0
    if isinstance(result.action, Fatal):
        logger.critical("Single check hit a fatal failure: %s", result.error)
        return result.action.exit_code
    logger.error("Single check failed: %s", result.error)
    return 1


async def run_continuous(engine: CheckEngine) -> int:
    """Run the engine until a shutdown signal or a fatal failure.

    ``SIGTERM`` and ``SIGINT`` stop the engine gracefully: no new cycle is
    scheduled and a cycle already executing finishes first.  The handlers
    are removed in a ``finally`` block so they do not leak into a later
    :func:`asyncio.run` call.

    Returns:
        The engine's fatal exit code, or ``0`` after a signal-driven stop.
    """
    loop = asyncio.get_running_loop()
    # One-element mutable cell so the handler closure can record the signal.
    received: list[str] = []

    def _request_graceful_shutdown(signame: str) -> None:
        if received:
            return
        received.append(signame)
        logger.info("Received %s; graceful shutdown requested.", signame)
        if engine.is_running():
            engine.stop()

    installed: list[signal.Signals] = []
    for sig in _SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, _request_graceful_shutdown, sig.name)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Cannot install a %s handler on this platform.", sig.name)

    engine.start()
    try:
        await engine.wait_stopped()
    finally:
        for sig in installed:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(sig)
        await engine.aclose()

    if engine.fatal_exit_code is not None:
        logger.critical("Check engine stopped on a fatal failure (exit code %d).", engine.fatal_exit_code)
        return engine.fatal_exit_code

    logger.info("Graceful shutdown complete (signal: %s).", received[0] if received else "none")
    return 0
