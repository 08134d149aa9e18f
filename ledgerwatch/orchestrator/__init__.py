"""Scheduling, cycle execution, failure classification and recovery.

Public API
----------
* :class:`~ledgerwatch.orchestrator.engine.CheckEngine`: the timer-driven
  check scheduler with its overlap guard.
* :func:`~ledgerwatch.orchestrator.recovery.classify`: pure failure
  categorisation and recovery-action policy.
* :func:`~ledgerwatch.orchestrator.runner.run_once` /
  :func:`~ledgerwatch.orchestrator.runner.run_continuous`: process-level
  drivers used by ``python -m ledgerwatch``.
"""

from ledgerwatch.orchestrator.engine import (
    AsyncioTimer,
    CheckEngine,
    CheckResult,
    EngineState,
    PortalCollaborators,
    Timer,
)
from ledgerwatch.orchestrator.recovery import (
    AttemptContext,
    Fallback,
    FailureCategory,
    FailureClassification,
    Fatal,
    RecoveryAction,
    RecoveryClassifier,
    Retry,
    Skip,
    classify,
)
from ledgerwatch.orchestrator.runner import run_continuous, run_once

__all__ = [
    # Engine
    "AsyncioTimer",
    "CheckEngine",
    "CheckResult",
    "EngineState",
    "PortalCollaborators",
    "Timer",
    # Recovery
    "AttemptContext",
    "Fallback",
    "FailureCategory",
    "FailureClassification",
    "Fatal",
    "RecoveryAction",
    "RecoveryClassifier",
    "Retry",
    "Skip",
    "classify",
    # Drivers
    "run_continuous",
    "run_once",
]
