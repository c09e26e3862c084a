"""Base manager for Kubernetes service managers.

Provides shared infrastructure for the reconciler, status aggregator and
container file manager: client access, namespace resolution and error
translation.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, NoReturn

import structlog

from workload_orchestrator.integrations.kubernetes.client import ResourceKind
from workload_orchestrator.integrations.kubernetes.models.workloads import PodSummary
from workload_orchestrator.services.kubernetes.manifest_builder import LABEL_APP
from workload_orchestrator.services.kubernetes.naming import sanitize_resource_name

if TYPE_CHECKING:
    from workload_orchestrator.integrations.kubernetes.client import KubernetesClient

logger = structlog.get_logger()


class K8sBaseManager:
    """Base class for Kubernetes service managers.

    Provides shared concerns for all managers:
    - Client reference (the only path to the cluster)
    - Structured logging with entity binding
    - Namespace resolution with config fallback
    - Consistent API error translation

    Subclasses set ``_entity_name`` for structured log context.

    Example:
        >>> class WorkloadReconciler(K8sBaseManager):
        ...     _entity_name = "reconciler"
    """

    _entity_name: str = ""

    def __init__(self, client: KubernetesClient) -> None:
        """Initialize the manager.

        Args:
            client: Kubernetes API client instance.
        """
        self._client = client
        self._log = logger.bind(entity=self._entity_name)

    def _resolve_namespace(self, namespace: str | None) -> str:
        """Resolve namespace, falling back to the client default.

        Namespaces are project identifiers, so they pass through the same
        DNS-label sanitization as resource names.

        Args:
            namespace: Explicit namespace or None for default.

        Returns:
            The resolved namespace string.
        """
        raw = (namespace or "").strip()
        if not raw:
            return self._client.default_namespace
        return sanitize_resource_name(raw)

    def _handle_api_error(
        self,
        e: Exception,
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> NoReturn:
        """Translate a Kubernetes API exception and re-raise.

        Args:
            e: The original exception (typically ApiException).
            resource_type: Type of resource being operated on.
            resource_name: Name of the resource.
            namespace: Namespace of the resource.

        Raises:
            KubernetesError: Always raises an appropriate subclass.
        """
        raise self._client.translate_api_exception(
            e,
            resource_type=resource_type,
            resource_name=resource_name,
            namespace=namespace,
        ) from e

    # =========================================================================
    # Pod Selection
    # =========================================================================

    def _list_service_pods(self, service_name: str, namespace: str) -> list[PodSummary]:
        """List the pods of a service, most preferred first.

        Pods are matched by ``app=<service>`` and ranked: ready pods first,
        then ``Running`` ones, then fewest restarts, then newest start time.
        """
        pods = self._client.list_resources(
            ResourceKind.POD, namespace, label_selector=f"{LABEL_APP}={service_name}"
        )
        return rank_pods([PodSummary.from_k8s_object(pod) for pod in pods])


def _start_timestamp(pod: PodSummary) -> float:
    if not pod.start_time:
        return 0.0
    try:
        return datetime.fromisoformat(pod.start_time.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def rank_pods(pods: list[PodSummary]) -> list[PodSummary]:
    """Sort pods by preference for logs, exec and file access."""
    return sorted(
        pods,
        key=lambda pod: (
            not pod.ready,
            pod.phase != "Running",
            pod.restarts,
            -_start_timestamp(pod),
        ),
    )


def primary_container(pod: PodSummary, service_name: str) -> str | None:
    """Container named after the service, else the pod's first container."""
    names = pod.container_names or [c.name for c in pod.containers]
    if service_name in names:
        return service_name
    return names[0] if names else None
