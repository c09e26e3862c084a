"""Outbound API of the orchestration core.

``WorkloadService`` is what the route layer talks to. It owns one
``KubernetesClient`` and delegates to the reconciler, the status aggregator
and the container file manager.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

import structlog

from workload_orchestrator.integrations.kubernetes.client import KubernetesClient
from workload_orchestrator.integrations.kubernetes.config import KubernetesConnectionConfig
from workload_orchestrator.services.kubernetes.file_manager import (
    ContainerFileManager,
    FileDownload,
)
from workload_orchestrator.services.kubernetes.manifest_builder import generate_service_yaml
from workload_orchestrator.services.kubernetes.reconciler import (
    OperationResult,
    ReconcileOutcome,
    WorkloadReconciler,
)
from workload_orchestrator.services.kubernetes.sessions import (
    DebugSession,
    DebugSessionStore,
    InMemorySessionStore,
)
from workload_orchestrator.services.kubernetes.status_manager import StatusManager

if TYPE_CHECKING:
    from workload_orchestrator.integrations.kubernetes.models import (
        EventsResult,
        ExecResult,
        FileEntry,
        ImportCandidate,
        LogQuery,
        LogsResult,
        ServiceDescriptor,
        ServiceMetrics,
        ServiceNetworkInfo,
        WorkloadStatus,
    )

logger = structlog.get_logger()


class WorkloadService:
    """Facade over the orchestration and introspection managers.

    Example:
        ```python
        with WorkloadService.from_env() as workloads:
            outcome = workloads.apply_service(descriptor)
            status = workloads.get_service_status(outcome.service, outcome.namespace)
        ```
    """

    def __init__(
        self,
        client: KubernetesClient,
        session_store: DebugSessionStore | None = None,
    ) -> None:
        """Initialize the facade.

        Args:
            client: Kubernetes API client adapter.
            session_store: Debug session storage; in-memory when omitted.
        """
        self._client = client
        self._reconciler = WorkloadReconciler(client)
        self._status = StatusManager(client)
        self._files = ContainerFileManager(client)
        self._sessions: DebugSessionStore = session_store or InMemorySessionStore()

    @classmethod
    def from_env(cls, base_config: dict[str, Any] | None = None) -> WorkloadService:
        """Build the facade from ``K8S_*`` / ``KUBECONFIG*`` environment variables."""
        config = KubernetesConnectionConfig.from_env(base_config)
        return cls(KubernetesClient(config))

    @property
    def client(self) -> KubernetesClient:
        return self._client

    @property
    def sessions(self) -> DebugSessionStore:
        return self._sessions

    # =========================================================================
    # Workload Operations
    # =========================================================================

    def apply_service(
        self, descriptor: ServiceDescriptor, namespace: str | None = None
    ) -> ReconcileOutcome:
        return self._reconciler.apply_service(descriptor, namespace)

    def scale_service(
        self, name: str, replicas: int, namespace: str | None = None
    ) -> OperationResult:
        return self._reconciler.scale(name, replicas, namespace)

    def restart_service(self, name: str, namespace: str | None = None) -> OperationResult:
        return self._reconciler.restart(name, namespace)

    def start_service(self, name: str, namespace: str | None = None) -> OperationResult:
        return self._reconciler.start(name, namespace)

    def stop_service(self, name: str, namespace: str | None = None) -> OperationResult:
        return self._reconciler.stop(name, namespace)

    def delete_service(self, name: str, namespace: str | None = None) -> OperationResult:
        return self._reconciler.delete_service(name, namespace)

    def generate_service_yaml(
        self, descriptor: ServiceDescriptor, namespace: str | None = None
    ) -> str:
        """Preview the manifests ``apply_service`` would send."""
        return generate_service_yaml(descriptor, namespace, self._client.domain_root)

    # =========================================================================
    # Observability
    # =========================================================================

    def get_service_status(self, name: str, namespace: str | None = None) -> WorkloadStatus:
        return self._status.get_service_status(name, namespace)

    def get_service_network_info(
        self, name: str, namespace: str | None = None
    ) -> ServiceNetworkInfo | None:
        return self._status.get_service_network_info(name, namespace)

    def get_service_events(
        self, name: str, namespace: str | None = None, limit: int = 50
    ) -> EventsResult:
        return self._status.get_service_events(name, namespace, limit)

    def get_service_logs(
        self,
        name: str,
        lines: int = 100,
        namespace: str | None = None,
        *,
        container: str | None = None,
        since_seconds: int | None = None,
        previous: bool = False,
    ) -> LogsResult:
        return self._status.get_service_logs(
            name,
            lines,
            namespace,
            container=container,
            since_seconds=since_seconds,
            previous=previous,
        )

    def stream_service_logs(self, query: LogQuery) -> Iterator[str]:
        return self._status.stream_service_logs(query)

    def get_service_metrics(
        self, name: str, namespace: str | None = None
    ) -> ServiceMetrics | None:
        return self._status.get_service_metrics(name, namespace)

    def list_namespaces(self) -> list[str]:
        return self._status.list_namespaces()

    def list_importable_services(self, namespace: str | None = None) -> list[ImportCandidate]:
        return self._status.list_importable_services(namespace)

    # =========================================================================
    # Container Files and Exec
    # =========================================================================

    def list_container_files(
        self, service_name: str, namespace: str | None = None, path: str = "/"
    ) -> list[FileEntry]:
        return self._files.list_container_files(service_name, namespace, path)

    def read_container_file(
        self, service_name: str, namespace: str | None, path: str
    ) -> bytes:
        return self._files.read_container_file(service_name, namespace, path)

    def write_container_file(
        self,
        service_name: str,
        namespace: str | None,
        path: str,
        name: str,
        data: bytes | str,
    ) -> FileEntry:
        return self._files.write_container_file(service_name, namespace, path, name, data)

    def upload_container_file(
        self,
        service_name: str,
        namespace: str | None,
        path: str,
        name: str,
        data: bytes,
    ) -> FileEntry:
        return self._files.upload_container_file(service_name, namespace, path, name, data)

    def download_container_file(
        self, service_name: str, namespace: str | None, path: str
    ) -> FileDownload:
        return self._files.download_container_file(service_name, namespace, path)

    def search_container_files(
        self,
        service_name: str,
        namespace: str | None,
        path: str,
        pattern: str,
    ) -> list[FileEntry]:
        return self._files.search_container_files(service_name, namespace, path, pattern)

    def exec_command(
        self, service_name: str, namespace: str | None, command: str
    ) -> ExecResult:
        return self._files.exec_command(service_name, namespace, command)

    # =========================================================================
    # Debug Sessions
    # =========================================================================

    def open_debug_session(
        self, service_name: str, namespace: str | None = None
    ) -> DebugSession:
        """Resolve the service's pod and record a session for it.

        An existing live session for the same pod and container is reused.

        Raises:
            NoPodFoundError: If the service has no pod.
        """
        target = self._files.resolve_pod(service_name, namespace)
        session = DebugSession(
            service_name=service_name,
            namespace=target.namespace,
            pod_name=target.pod_name,
            container=target.container,
        )
        existing = self._sessions.get(session.key)
        if existing is not None:
            return existing
        self._sessions.put(session)
        logger.info(
            "debug_session_opened",
            service=service_name,
            namespace=target.namespace,
            pod=target.pod_name,
        )
        return session

    def close_debug_session(self, key: str) -> bool:
        return self._sessions.delete(key)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Release the client's connections."""
        self._client.close()

    def __enter__(self) -> WorkloadService:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
