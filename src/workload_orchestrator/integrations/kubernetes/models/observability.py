"""Log, event and metrics read models."""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

from workload_orchestrator.integrations.kubernetes.models.base import (
    K8sEntityBase,
    _get_timestamp,
    _safe_get,
)


class LogQuery(BaseModel):
    """Parameters of a pod log read."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    pod_name: str
    namespace: str
    container: str | None = None
    tail_lines: int | None = Field(default=100, ge=1)
    since_seconds: int | None = Field(default=None, ge=1)
    previous: bool = False
    follow: bool = False

    def to_api_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``read_namespaced_pod_log``."""
        kwargs: dict[str, Any] = {"name": self.pod_name, "namespace": self.namespace}
        if self.container:
            kwargs["container"] = self.container
        if self.tail_lines is not None:
            kwargs["tail_lines"] = self.tail_lines
        if self.since_seconds is not None:
            kwargs["since_seconds"] = self.since_seconds
        if self.previous:
            kwargs["previous"] = True
        if self.follow:
            kwargs["follow"] = True
        return kwargs


class ServiceEvent(K8sEntityBase):
    """Cluster event involving a service's objects."""

    _entity_name: ClassVar[str] = "event"

    type: str = Field(default="Normal", description="Event type (Normal/Warning)")
    reason: str | None = Field(default=None, description="Event reason")
    message: str | None = Field(default=None, description="Event message")
    first_timestamp: str | None = Field(default=None, description="First occurrence")
    last_timestamp: str | None = Field(default=None, description="Last occurrence")
    count: int = Field(default=1, description="Occurrence count")
    involved_object_kind: str | None = Field(default=None, description="Involved object kind")
    involved_object_name: str | None = Field(default=None, description="Involved object name")

    @classmethod
    def from_k8s_object(cls, obj: Any) -> ServiceEvent:
        """Create from a kubernetes CoreV1Event object."""
        involved = getattr(obj, "involved_object", None)
        last = getattr(obj, "last_timestamp", None) or getattr(obj, "event_time", None)

        return cls(
            name=_safe_get(obj, "metadata", "name", default=""),
            namespace=_safe_get(obj, "metadata", "namespace"),
            uid=_safe_get(obj, "metadata", "uid"),
            creation_timestamp=_get_timestamp(_safe_get(obj, "metadata", "creation_timestamp")),
            type=getattr(obj, "type", "Normal") or "Normal",
            reason=getattr(obj, "reason", None),
            message=getattr(obj, "message", None),
            first_timestamp=_get_timestamp(getattr(obj, "first_timestamp", None)),
            last_timestamp=_get_timestamp(last),
            count=getattr(obj, "count", 1) or 1,
            involved_object_kind=_safe_get(involved, "kind"),
            involved_object_name=_safe_get(involved, "name"),
        )

    @property
    def timestamp(self) -> str | None:
        """Most recent known occurrence time."""
        return self.last_timestamp or self.first_timestamp or self.creation_timestamp


class EventsResult(BaseModel):
    """Events for a service; ``error`` is set when the listing failed."""

    events: list[ServiceEvent] = Field(default_factory=list)
    error: str | None = None


class LogsResult(BaseModel):
    """Log tail for a service; ``error`` is set on transport failure only."""

    logs: str = ""
    pod_name: str | None = None
    container: str | None = None
    error: str | None = None


class ResourceUsage(BaseModel):
    """Usage of one resource against its limit."""

    used: str
    limit: str | None = None
    usage_percent: float | None = None


class ServiceMetrics(BaseModel):
    """Point-in-time usage from the metrics API."""

    pod_name: str
    cpu: ResourceUsage
    memory: ResourceUsage
    timestamp: str


class ServicePortInfo(BaseModel):
    """One port of a Service, with the node port the cluster allocated."""

    name: str | None = None
    port: int | None = None
    target_port: int | None = None
    node_port: int | None = None
    protocol: str | None = None


class ServiceNetworkInfo(BaseModel):
    """Type and ports of a service's Service object.

    ``service_type`` is ``Headless`` for Services without a cluster IP.
    """

    service_type: str | None = None
    ports: list[ServicePortInfo] = Field(default_factory=list)
