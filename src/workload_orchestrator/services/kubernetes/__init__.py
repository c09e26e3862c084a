"""Kubernetes service module.

Manifest building, reconciliation, status aggregation and container file
access for the orchestration core, fronted by ``WorkloadService``.
"""

from workload_orchestrator.services.kubernetes.file_manager import (
    ContainerFileManager,
    FileDownload,
    PodTarget,
)
from workload_orchestrator.services.kubernetes.manifest_builder import (
    ManifestBundle,
    StatefulWorkload,
    StatelessWorkload,
    WorkloadKind,
    build_manifest,
    generate_service_yaml,
)
from workload_orchestrator.services.kubernetes.naming import (
    build_port_name,
    sanitize_resource_name,
)
from workload_orchestrator.services.kubernetes.reconciler import (
    OperationResult,
    ReconcileOutcome,
    WorkloadReconciler,
)
from workload_orchestrator.services.kubernetes.service import WorkloadService
from workload_orchestrator.services.kubernetes.sessions import (
    DebugSession,
    DebugSessionStore,
    InMemorySessionStore,
)
from workload_orchestrator.services.kubernetes.status_manager import StatusManager

__all__ = [
    "ContainerFileManager",
    "DebugSession",
    "DebugSessionStore",
    "FileDownload",
    "InMemorySessionStore",
    "ManifestBundle",
    "OperationResult",
    "PodTarget",
    "ReconcileOutcome",
    "StatefulWorkload",
    "StatelessWorkload",
    "StatusManager",
    "WorkloadKind",
    "WorkloadReconciler",
    "WorkloadService",
    "build_manifest",
    "build_port_name",
    "generate_service_yaml",
    "sanitize_resource_name",
]
