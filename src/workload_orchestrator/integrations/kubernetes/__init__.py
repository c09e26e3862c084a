"""Kubernetes integration - API client adapter, configuration and errors."""

from workload_orchestrator.integrations.kubernetes.client import KubernetesClient, ResourceKind
from workload_orchestrator.integrations.kubernetes.config import KubernetesConnectionConfig
from workload_orchestrator.integrations.kubernetes.exceptions import (
    FileErrorKind,
    K8sFileError,
    KubernetesAuthError,
    KubernetesConfigurationError,
    KubernetesConflictError,
    KubernetesConnectionError,
    KubernetesError,
    KubernetesNotFoundError,
    KubernetesTimeoutError,
    KubernetesTransportError,
    KubernetesValidationError,
    NoPodFoundError,
    ReconcileStepError,
)

__all__ = [
    "FileErrorKind",
    "K8sFileError",
    "KubernetesAuthError",
    "KubernetesClient",
    "KubernetesConfigurationError",
    "KubernetesConflictError",
    "KubernetesConnectionError",
    "KubernetesConnectionConfig",
    "KubernetesError",
    "KubernetesNotFoundError",
    "KubernetesTimeoutError",
    "KubernetesTransportError",
    "KubernetesValidationError",
    "NoPodFoundError",
    "ReconcileStepError",
    "ResourceKind",
]
