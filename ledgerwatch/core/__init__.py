"""Core domain models, settings, logging configuration, and shared utilities."""

from ledgerwatch.core.exceptions import (
    AuthenticationError,
    ConfigError,
    DeliveryError,
    ExecutionEnvironmentError,
    LedgerwatchError,
    NetworkError,
    OrchestratorError,
    PortalError,
    RecordParseError,
)
from ledgerwatch.core.logging_config import JsonFormatter, configure_logging
from ledgerwatch.core.models import (
    Credentials,
    DeliveryPayload,
    EgressRoute,
    EnvironmentType,
    MutationRecord,
    RawMutation,
    TransactionType,
)
from ledgerwatch.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "Credentials",
    "DeliveryPayload",
    "EgressRoute",
    "EnvironmentType",
    "MutationRecord",
    "RawMutation",
    "TransactionType",
    # Settings
    "Settings",
    # Exceptions — base
    "LedgerwatchError",
    # Exceptions — config
    "ConfigError",
    # Exceptions — portal
    "PortalError",
    "AuthenticationError",
    "NetworkError",
    "ExecutionEnvironmentError",
    "RecordParseError",
    # Exceptions — delivery
    "DeliveryError",
    # Exceptions — orchestrator
    "OrchestratorError",
]
