"""Workload status read models."""

from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

from workload_orchestrator.integrations.kubernetes.models.base import (
    K8sEntityBase,
    _get_labels,
    _get_timestamp,
    _safe_get,
)

IMAGE_PULL_FAILURE_REASONS = frozenset({"ErrImagePull", "ImagePullBackOff"})


class WorkloadPhase(StrEnum):
    """Aggregated lifecycle phase of a service."""

    RUNNING = "Running"
    PENDING = "Pending"
    STOPPED = "Stopped"
    ERROR = "Error"
    BUILDING = "Building"
    UNKNOWN = "Unknown"


class ContainerStatus(K8sEntityBase):
    """Container status within a pod."""

    _entity_name: ClassVar[str] = "container"

    image: str | None = Field(default=None, description="Container image")
    ready: bool = Field(default=False, description="Whether container is ready")
    restart_count: int = Field(default=0, description="Number of restarts")
    state: str = Field(default="unknown", description="Current state")
    reason: str | None = Field(default=None, description="Waiting/terminated reason")
    message: str | None = Field(default=None, description="Waiting/terminated message")

    @classmethod
    def from_k8s_object(cls, obj: Any) -> ContainerStatus:
        """Create from a kubernetes V1ContainerStatus object."""
        state = "unknown"
        reason = None
        message = None
        if obj_state := getattr(obj, "state", None):
            if getattr(obj_state, "running", None):
                state = "running"
            elif getattr(obj_state, "waiting", None):
                state = "waiting"
                reason = _safe_get(obj_state, "waiting", "reason")
                message = _safe_get(obj_state, "waiting", "message")
            elif getattr(obj_state, "terminated", None):
                state = "terminated"
                reason = _safe_get(obj_state, "terminated", "reason")
                message = _safe_get(obj_state, "terminated", "message")

        return cls(
            name=getattr(obj, "name", "") or "",
            image=getattr(obj, "image", None),
            ready=getattr(obj, "ready", False) or False,
            restart_count=getattr(obj, "restart_count", 0) or 0,
            state=state,
            reason=reason,
            message=message,
        )

    @property
    def image_pull_failed(self) -> bool:
        """Whether the container is stuck pulling its image."""
        if self.state == "waiting":
            return self.reason in IMAGE_PULL_FAILURE_REASONS
        return self.state == "terminated" and self.reason == "ErrImagePull"

    @property
    def is_sidecar(self) -> bool:
        """Heuristic for auxiliary containers hidden from the primary view."""
        return any(
            marker in self.name
            for marker in ("debug-tools", "sidecar", "proxy", "exporter", "agent")
        )


class PodSummary(K8sEntityBase):
    """Pod read model."""

    _entity_name: ClassVar[str] = "pod"

    phase: str = Field(default="Unknown", description="Pod phase")
    node_name: str | None = Field(default=None, description="Node the pod is running on")
    pod_ip: str | None = Field(default=None, description="Pod IP address")
    start_time: str | None = Field(default=None, description="Pod start time")
    ready: bool = Field(default=False, description="Pod Ready condition")
    restarts: int = Field(default=0, description="Total container restarts")
    ready_count: int = Field(default=0, description="Number of ready containers")
    total_count: int = Field(default=0, description="Total number of containers")
    container_names: list[str] = Field(default_factory=list, description="Spec container names")
    containers: list[ContainerStatus] = Field(
        default_factory=list, description="Container statuses"
    )

    @classmethod
    def from_k8s_object(cls, obj: Any) -> PodSummary:
        """Create from a kubernetes V1Pod object."""
        container_statuses = _safe_get(obj, "status", "container_statuses") or []
        containers = [ContainerStatus.from_k8s_object(cs) for cs in container_statuses]
        restarts = sum(c.restart_count for c in containers)
        ready_count = sum(1 for c in containers if c.ready)

        spec_containers = _safe_get(obj, "spec", "containers") or []
        container_names = [getattr(c, "name", "") or "" for c in spec_containers]

        conditions = _safe_get(obj, "status", "conditions") or []
        ready = any(
            getattr(c, "type", None) == "Ready" and getattr(c, "status", None) == "True"
            for c in conditions
        )

        return cls(
            name=_safe_get(obj, "metadata", "name", default=""),
            namespace=_safe_get(obj, "metadata", "namespace"),
            uid=_safe_get(obj, "metadata", "uid"),
            creation_timestamp=_get_timestamp(_safe_get(obj, "metadata", "creation_timestamp")),
            labels=_get_labels(obj),
            phase=_safe_get(obj, "status", "phase", default="Unknown"),
            node_name=_safe_get(obj, "spec", "node_name"),
            pod_ip=_safe_get(obj, "status", "pod_ip"),
            start_time=_get_timestamp(_safe_get(obj, "status", "start_time")),
            ready=ready,
            restarts=restarts,
            ready_count=ready_count,
            total_count=max(len(container_names), len(containers)),
            container_names=container_names,
            containers=containers,
        )


class WorkloadStatus(BaseModel):
    """Aggregated health view of one service, recomputed on every query."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    namespace: str
    found: bool = Field(default=True, description="False when no workload object exists")
    kind: str | None = Field(default=None, description="Deployment or StatefulSet")
    phase: WorkloadPhase = WorkloadPhase.UNKNOWN
    replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    updated_replicas: int = 0
    ready_count: int = Field(default=0, description="Ready containers across pods")
    total_count: int = Field(default=0, description="Total containers across pods")
    restart_count: int = Field(default=0, description="Restarts summed across containers")
    pods: list[PodSummary] = Field(default_factory=list)
    containers: list[ContainerStatus] = Field(
        default_factory=list, description="Primary pod containers, sidecars filtered"
    )
    image_pull_error: str | None = None
    external_ports: list[int] = Field(default_factory=list)
    message: str | None = None

    @property
    def ready_ratio(self) -> str:
        """Ready containers over total containers, e.g. ``2/3``."""
        return f"{self.ready_count}/{self.total_count}"

    @property
    def pod_ip(self) -> str | None:
        """IP of the first pod, if any."""
        return self.pods[0].pod_ip if self.pods else None

    @property
    def node_name(self) -> str | None:
        """Node of the first pod, if any."""
        return self.pods[0].node_name if self.pods else None
