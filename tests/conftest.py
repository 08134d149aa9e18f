"""Fixtures shared by the unit and integration suites."""

from __future__ import annotations

import os

import pytest
from pydantic_settings import SettingsConfigDict

from ledgerwatch.core import configure_logging
from ledgerwatch.core.settings import Settings

# Environment variables that feed Settings; stripped by ``clean_env``.
_SETTINGS_ENV_PREFIXES = (
    "PORTAL_",
    "CHECK_",
    "MIN_CHECK_",
    "ENVIRONMENT_",
    "IDENTITY_",
    "EGRESS_",
    "DELIVERY_",
    "HEADLESS",
    "LOG_LEVEL",
    "LOG_FORMAT",
)

TEST_USERNAME = "teller01"
TEST_PASSWORD = "hunter2-secret"


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Plain-text DEBUG logging for every test, replacing any earlier handler."""
    configure_logging(level="DEBUG", fmt="text", force=True)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Hide the developer's shell and ``.env`` file from :class:`Settings`.

    pydantic-settings reads ``.env`` itself rather than through
    ``os.environ``, so deleting variables is not enough; the file lookup is
    switched off on the model config too.
    """
    for key in list(os.environ):
        if key.startswith(_SETTINGS_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(Settings, "model_config", SettingsConfigDict(**{**Settings.model_config, "env_file": None}))


def build_settings(**overrides: object) -> Settings:
    """:class:`Settings` with dummy portal credentials; *overrides* win."""
    values: dict[str, object] = {"portal_username": TEST_USERNAME, "portal_password": TEST_PASSWORD}
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[arg-type]


@pytest.fixture()
def make_settings(clean_env: None) -> object:
    return build_settings
