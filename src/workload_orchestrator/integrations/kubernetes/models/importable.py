"""Read models for adopting workloads that already run in a namespace."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ImportedContainer(BaseModel):
    """Container of an existing workload."""

    name: str
    image: str
    tag: str = "latest"
    command: str | None = None
    env: dict[str, str] = Field(default_factory=dict)


class ImportedVolume(BaseModel):
    """Volume mount of an existing workload's primary container."""

    name: str
    container_path: str
    sub_path: str | None = None
    read_only: bool = False
    claim_name: str | None = None
    host_path: str | None = None


class MatchedServicePort(BaseModel):
    """Port of a Service selecting the workload."""

    name: str | None = None
    port: int
    target_port: int | None = None
    node_port: int | None = None
    protocol: str = "TCP"


class MatchedService(BaseModel):
    """Service whose selector matches the workload's labels."""

    name: str
    type: str = "ClusterIP"
    cluster_ip: str | None = None
    headless: bool = False
    ports: list[MatchedServicePort] = Field(default_factory=list)


class ImportCandidate(BaseModel):
    """Existing Deployment or StatefulSet a user may adopt as a service."""

    uid: str
    name: str
    namespace: str
    kind: str
    labels: dict[str, str] = Field(default_factory=dict)
    replicas: int = 1
    image: str
    tag: str = "latest"
    command: str | None = None
    containers: list[ImportedContainer] = Field(default_factory=list)
    volumes: list[ImportedVolume] = Field(default_factory=list)
    services: list[MatchedService] = Field(default_factory=list)
    service_type: str | None = None
    headless_service: bool = False
