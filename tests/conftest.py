"""Shared pytest fixtures for workload_orchestrator tests."""

from __future__ import annotations

import logging
import os

import pytest

_CONFIG_ENV_PREFIXES = ("K8S_", "KUBECONFIG")


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset environment variables for each test."""
    # Clear cluster credential and connection overrides
    for key in list(os.environ.keys()):
        if key.startswith(_CONFIG_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def capture_logs(caplog: pytest.LogCaptureFixture) -> pytest.LogCaptureFixture:
    """Fixture to capture log output."""
    caplog.set_level(logging.DEBUG)
    return caplog
