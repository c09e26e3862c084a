"""Kubernetes descriptor and read models."""

from workload_orchestrator.integrations.kubernetes.models.base import K8sEntityBase
from workload_orchestrator.integrations.kubernetes.models.descriptor import (
    DatabaseSettings,
    DatabaseType,
    DomainBinding,
    NetworkPort,
    PortProtocol,
    ResourceQuantities,
    ResourceSpec,
    ServiceDescriptor,
    ServiceKind,
    ServiceType,
    VolumeRequest,
)
from workload_orchestrator.integrations.kubernetes.models.files import (
    ExecResult,
    FileEntry,
    FileKind,
)
from workload_orchestrator.integrations.kubernetes.models.importable import (
    ImportCandidate,
    ImportedContainer,
    ImportedVolume,
    MatchedService,
    MatchedServicePort,
)
from workload_orchestrator.integrations.kubernetes.models.observability import (
    EventsResult,
    LogQuery,
    LogsResult,
    ResourceUsage,
    ServiceEvent,
    ServiceMetrics,
    ServiceNetworkInfo,
    ServicePortInfo,
)
from workload_orchestrator.integrations.kubernetes.models.workloads import (
    ContainerStatus,
    PodSummary,
    WorkloadPhase,
    WorkloadStatus,
)

__all__ = [
    "ContainerStatus",
    "DatabaseSettings",
    "DatabaseType",
    "DomainBinding",
    "EventsResult",
    "ExecResult",
    "FileEntry",
    "FileKind",
    "ImportCandidate",
    "ImportedContainer",
    "ImportedVolume",
    "K8sEntityBase",
    "LogQuery",
    "LogsResult",
    "MatchedService",
    "MatchedServicePort",
    "NetworkPort",
    "PodSummary",
    "PortProtocol",
    "ResourceQuantities",
    "ResourceSpec",
    "ResourceUsage",
    "ServiceDescriptor",
    "ServiceEvent",
    "ServiceKind",
    "ServiceMetrics",
    "ServiceNetworkInfo",
    "ServicePortInfo",
    "ServiceType",
    "VolumeRequest",
    "WorkloadPhase",
    "WorkloadStatus",
]
