"""Inbound service descriptor models.

A ``ServiceDescriptor`` is the plain snapshot of a stored service record
handed to the orchestration core per call. Models are frozen; defaults that
several consumers depend on (service port, database port) are resolved here
at the boundary.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class ServiceKind(StrEnum):
    """Kind of service being orchestrated."""

    APPLICATION = "application"
    DATABASE = "database"


class ServiceType(StrEnum):
    """Kubernetes Service exposure mode."""

    CLUSTER_IP = "ClusterIP"
    NODE_PORT = "NodePort"
    LOAD_BALANCER = "LoadBalancer"


class PortProtocol(StrEnum):
    """Transport protocol of an exposed port."""

    TCP = "TCP"
    UDP = "UDP"
    SCTP = "SCTP"


class DatabaseType(StrEnum):
    """Supported database engines."""

    MYSQL = "mysql"
    MARIADB = "mariadb"
    POSTGRESQL = "postgresql"
    MONGODB = "mongodb"
    REDIS = "redis"


DATABASE_DEFAULT_PORTS: dict[DatabaseType, int] = {
    DatabaseType.MYSQL: 3306,
    DatabaseType.MARIADB: 3306,
    DatabaseType.POSTGRESQL: 5432,
    DatabaseType.MONGODB: 27017,
    DatabaseType.REDIS: 6379,
}
FALLBACK_DATABASE_PORT = 3306


class _DescriptorModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
    )


class DomainBinding(_DescriptorModel):
    """Ingress binding for a port: ``<prefix>.<namespace>.<domain root>``."""

    prefix: str = Field(min_length=1)
    enabled: bool = True

    @field_validator("prefix")
    @classmethod
    def normalize_prefix(cls, v: str) -> str:
        """Lowercase and strip surrounding dots."""
        return v.strip(".").lower()


class NetworkPort(_DescriptorModel):
    """One exposed port of a service."""

    container_port: int = Field(ge=1, le=65535)
    service_port: int = Field(ge=1, le=65535)
    protocol: PortProtocol = PortProtocol.TCP
    node_port: int | None = Field(default=None, ge=30000, le=32767)
    domain: DomainBinding | None = None

    @model_validator(mode="before")
    @classmethod
    def default_service_port(cls, data: Any) -> Any:
        """Default the service port to the container port."""
        if not isinstance(data, dict):
            return data
        service_port = data.get("service_port", data.get("servicePort"))
        if service_port is None:
            container_port = data.get("container_port", data.get("containerPort"))
            data = {
                k: v for k, v in data.items() if k not in ("service_port", "servicePort")
            }
            data["service_port"] = container_port
        return data

    @property
    def domain_enabled(self) -> bool:
        """Whether this port requests an ingress host."""
        return self.domain is not None and self.domain.enabled


class ResourceQuantities(_DescriptorModel):
    """CPU and memory quantities, Kubernetes notation (``250m``, ``512Mi``)."""

    cpu: str | None = None
    memory: str | None = None

    def as_dict(self) -> dict[str, str]:
        """Return only the quantities that are set."""
        return {k: v for k, v in (("cpu", self.cpu), ("memory", self.memory)) if v}


class ResourceSpec(_DescriptorModel):
    """Container resource limits and requests."""

    limits: ResourceQuantities = ResourceQuantities()
    requests: ResourceQuantities = ResourceQuantities()


class VolumeRequest(_DescriptorModel):
    """A mount of the project's shared volume into the container."""

    container_path: str = Field(min_length=1)
    sub_path: str | None = None
    read_only: bool = False

    @field_validator("container_path")
    @classmethod
    def validate_container_path(cls, v: str) -> str:
        """Require an absolute container path."""
        if not v.startswith("/"):
            raise ValueError("container_path must be absolute")
        return v


class DatabaseSettings(_DescriptorModel):
    """Engine settings for database services."""

    type: DatabaseType
    version: str | None = None
    root_password: str | None = None
    username: str | None = None
    password: str | None = None
    database_name: str | None = None
    volume_size: str = "10Gi"
    config_options: dict[str, str] = Field(default_factory=dict)
    config_text: str | None = None

    @property
    def default_port(self) -> int:
        """Default listening port of the engine."""
        return DATABASE_DEFAULT_PORTS.get(self.type, FALLBACK_DATABASE_PORT)

    @property
    def has_mysql_config(self) -> bool:
        """Whether a my.cnf ConfigMap should be rendered."""
        return self.type in (DatabaseType.MYSQL, DatabaseType.MARIADB) and bool(
            self.config_options or self.config_text
        )


class ServiceDescriptor(_DescriptorModel):
    """Desired state of one service, as stored by the owning project."""

    kind: ServiceKind
    name: str = Field(min_length=1)
    namespace: str = "default"
    image: str | None = None
    ports: tuple[NetworkPort, ...] = ()
    service_type: ServiceType = ServiceType.CLUSTER_IP
    headless_service: bool = False
    resources: ResourceSpec = ResourceSpec()
    env: dict[str, str] = Field(default_factory=dict)
    volumes: tuple[VolumeRequest, ...] = ()
    command: str | None = None
    replicas: int = Field(default=1, ge=0)
    database: DatabaseSettings | None = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        """Strip surrounding whitespace."""
        return v.strip()

    @field_validator("namespace")
    @classmethod
    def default_namespace(cls, v: str) -> str:
        """An empty namespace means ``default``."""
        return v.strip() or "default"

    @model_validator(mode="after")
    def validate_database_settings(self) -> ServiceDescriptor:
        """Database services carry engine settings; applications do not."""
        if self.kind == ServiceKind.DATABASE and self.database is None:
            raise ValueError("database services require database settings")
        if self.kind == ServiceKind.APPLICATION and self.database is not None:
            raise ValueError("application services cannot carry database settings")
        return self

    @property
    def is_database(self) -> bool:
        """Whether the service runs a database engine."""
        return self.kind == ServiceKind.DATABASE
