"""Shared fixtures for Kubernetes service tests."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from workload_orchestrator.integrations.kubernetes.client import KubernetesClient


@pytest.fixture
def mock_k8s_client() -> MagicMock:
    """Create a mock Kubernetes client.

    CRUD verbs, exec and the API groups are plain mocks. Error translation
    is the real one so managers see the same exception types as in
    production.
    """
    mock_client = MagicMock()
    mock_client.default_namespace = "default"
    mock_client.domain_root = "apps.local"
    mock_client.timeout = 30.0
    mock_client.translate_api_exception.side_effect = KubernetesClient.translate_api_exception
    mock_client.list_resources.return_value = []
    return mock_client
