"""Runtime configuration for ledgerwatch.

One :class:`Settings` field per environment variable, named after the variable
in lower case (``CHECK_INTERVAL_MS`` is ``check_interval_ms``).  List fields
take comma-separated values, e.g. ``ENVIRONMENT_TYPES=chrome,edge``.

::

    settings = Settings()                      # process env, then ./.env
    settings = Settings(_env_file="prod.env")  # another env file
"""

from __future__ import annotations

import logging
from typing import Annotated, Literal

from pydantic import Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from ledgerwatch.core.models import Credentials, EgressRoute, EnvironmentType

__all__ = ["Settings", "DEFAULT_MIN_INTERVAL_MS"]

logger = logging.getLogger(__name__)

#: Engine refuses to start with an interval shorter than this (5 minutes).
DEFAULT_MIN_INTERVAL_MS: int = 300_000


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _csv_to_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Validated settings for the check engine and its collaborators.

    Process environment beats the ``.env`` file, which beats field defaults.

    Portal credentials default to empty so the model can be built in tests
    and tooling; :attr:`credentials_configured` reports whether a live check
    is possible and the entry point refuses to start without them.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Portal
    # ------------------------------------------------------------------
    portal_username: str = Field(default="", description="Portal user id.")
    portal_password: str = Field(default="", description="Portal password.")
    portal_login_url: str = Field(
        default="https://ibank.klikbca.com",
        description="Page holding the login form.",
    )
    portal_logout_url: str = Field(
        default="https://ibank.klikbca.com/authentication.do?value(actions)=logout",
        description="URL that terminates the portal session.",
    )
    portal_statement_url: str = Field(
        default="https://ibank.klikbca.com/accountstmt.do?value(actions)=acct_stmt",
        description="Page holding the account statement table.",
    )
    portal_login_success_markers: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["authentication.do", "value(actions)=menu"],
        description="Substrings that must all appear in the post-login URL.",
    )
    portal_timeout_ms: int = Field(
        default=30_000,
        ge=1,
        description="Navigation timeout for portal pages.",
    )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    check_interval_ms: int = Field(
        default=DEFAULT_MIN_INTERVAL_MS,
        ge=1,
        description="Milliseconds between scheduled checks.",
    )
    min_check_interval_ms: int = Field(
        default=DEFAULT_MIN_INTERVAL_MS,
        ge=1,
        description="Smallest interval the engine accepts.",
    )

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------
    environment_types: Annotated[list[EnvironmentType], NoDecode] = Field(
        default_factory=lambda: [EnvironmentType.CHROMIUM],
        description="Browser types to rotate through (comma-separated in env).",
    )
    identity_strings: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Custom User-Agent strings; empty = per-browser defaults.",
    )
    egress_enabled: bool = Field(
        default=False,
        description="Route portal traffic through the configured proxies.",
    )
    egress_routes: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Proxy routes, [scheme://][user[:password]@]host:port (comma-separated).",
    )
    headless: bool = Field(default=True, description="Run browsers headless.")

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    delivery_url: str = Field(
        default="",
        description="Webhook endpoint for mutation delivery (empty = disabled).",
    )
    delivery_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Total webhook attempts per delivery.",
    )
    delivery_timeout_s: float = Field(
        default=10.0,
        gt=0.0,
        description="Per-request webhook timeout in seconds.",
    )

    # ------------------------------------------------------------------
    # Runtime flags
    # ------------------------------------------------------------------
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["text", "json"] = "text"

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator(
        "environment_types",
        "identity_strings",
        "egress_routes",
        "portal_login_success_markers",
        mode="before",
    )
    @classmethod
    def _parse_csv(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return _csv_to_list(v)
        return v

    @field_validator("environment_types")
    @classmethod
    def _require_environment_type(cls, v: list[EnvironmentType]) -> list[EnvironmentType]:
        if not v:
            raise ValueError("environment_types must name at least one browser type")
        return v

    @field_validator("egress_routes")
    @classmethod
    def _validate_routes(cls, v: list[str]) -> list[str]:
        for spec in v:
            EgressRoute.parse(spec)
        return v

    @field_validator("log_level", "log_format", mode="before")
    @classmethod
    def _fold_log_case(cls, v: object, info: ValidationInfo) -> object:
        if not isinstance(v, str):
            return v
        return v.upper() if info.field_name == "log_level" else v.lower()

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _warn_egress_without_routes(self) -> Settings:
        if self.egress_enabled and not self.egress_routes:
            logger.warning("EGRESS_ENABLED is set but EGRESS_ROUTES is empty; routing disabled.")
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def credentials_configured(self) -> bool:
        """``True`` if both portal credentials are set."""
        return bool(self.portal_username and self.portal_password)

    @property
    def credentials(self) -> Credentials:
        """Portal credentials as a :class:`Credentials` value.

        Raises:
            pydantic.ValidationError: If either credential is empty.
        """
        return Credentials(username=self.portal_username, password=self.portal_password)

    @property
    def delivery_configured(self) -> bool:
        """``True`` if a webhook URL is set."""
        return bool(self.delivery_url.strip())

    @property
    def egress_route_list(self) -> list[EgressRoute]:
        """Parsed egress routes, or ``[]`` when routing is disabled."""
        if not self.egress_enabled:
            return []
        return [EgressRoute.parse(spec) for spec in self.egress_routes]

    @property
    def secret_values(self) -> list[str]:
        """Values that must never appear in log output."""
        return [v for v in (self.portal_username, self.portal_password) if v]
