"""Pure translation of service descriptors into Kubernetes manifests.

Nothing in this module talks to the cluster. ``build_manifest`` is the single
place where the workload variant (Deployment or StatefulSet), object names,
labels, ports and mounts are decided; the reconciler and the YAML preview both
consume its output.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import Any, ClassVar

import yaml

from workload_orchestrator.integrations.kubernetes.client import ResourceKind
from workload_orchestrator.integrations.kubernetes.models.descriptor import (
    DatabaseSettings,
    DatabaseType,
    NetworkPort,
    ResourceSpec,
    ServiceDescriptor,
    ServiceType,
    VolumeRequest,
)
from workload_orchestrator.services.kubernetes.naming import (
    CONTAINER_PORT_NAME_MAX_LENGTH,
    config_map_name,
    headless_service_name,
    indexed_port_name,
    ingress_name,
    sanitize_resource_name,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MANAGED_BY = "workload-orchestrator"
LABEL_APP = "app"
LABEL_MANAGED_BY = "managed-by"
LABEL_HEADLESS = "workload-orchestrator.io/headless-service"

DEFAULT_DOMAIN_ROOT = "apps.local"
DEFAULT_APPLICATION_IMAGE = "nginx:latest"

SHARED_VOLUME_NAME = "shared-volume"
SHARED_PVC_NAME = "shared-nfs-pvc"
SHARED_PVC_STORAGE = "10Gi"
SHARED_STORAGE_CLASS = "nfs-sc"

DATABASE_IMAGES: dict[DatabaseType, str] = {
    DatabaseType.MYSQL: "mysql",
    DatabaseType.MARIADB: "mariadb",
    DatabaseType.POSTGRESQL: "postgres",
    DatabaseType.MONGODB: "mongo",
    DatabaseType.REDIS: "redis",
}

DATA_VOLUME_NAME = "data"
DATABASE_DATA_PATHS: dict[DatabaseType, str] = {
    DatabaseType.MYSQL: "/var/lib/mysql",
    DatabaseType.MARIADB: "/var/lib/mysql",
    DatabaseType.POSTGRESQL: "/var/lib/postgresql/data",
    DatabaseType.MONGODB: "/data/db",
    DatabaseType.REDIS: "/data",
}

MYSQL_CONFIG_VOLUME = "mysql-config"
MYSQL_CONFIG_KEY = "my.cnf"
MYSQL_CONFIG_MOUNT_PATH = "/etc/mysql/conf.d/my.cnf"

SHELL_PROGRAMS = ("sh", "bash")


# ---------------------------------------------------------------------------
# Result Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatelessWorkload:
    """Application workload, run as a Deployment."""

    deployment: dict[str, Any]

    resource_kind: ClassVar[ResourceKind] = ResourceKind.DEPLOYMENT

    @property
    def manifest(self) -> dict[str, Any]:
        return self.deployment


@dataclass(frozen=True)
class StatefulWorkload:
    """Database workload, run as a StatefulSet with a per-replica data claim."""

    statefulset: dict[str, Any]
    pvc_template: dict[str, Any] | None = None

    resource_kind: ClassVar[ResourceKind] = ResourceKind.STATEFUL_SET

    @property
    def manifest(self) -> dict[str, Any]:
        return self.statefulset


WorkloadKind = StatelessWorkload | StatefulWorkload


@dataclass
class ManifestBundle:
    """All objects that make up one service."""

    name: str
    namespace: str
    workload: WorkloadKind
    service: dict[str, Any] | None = None
    headless_service: dict[str, Any] | None = None
    configmap: dict[str, Any] | None = None
    pvc: dict[str, Any] | None = None
    ingress: dict[str, Any] | None = None

    def documents(self) -> list[dict[str, Any]]:
        """Objects in apply order, absent ones skipped."""
        ordered = (
            self.pvc,
            self.configmap,
            self.workload.manifest,
            self.service,
            self.headless_service,
            self.ingress,
        )
        return [doc for doc in ordered if doc is not None]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_command(command: str | None) -> tuple[list[str], list[str]]:
    """Split a startup override into container ``command`` and ``args``.

    Splits on spaces, keeping single- or double-quoted segments together.
    A leading ``sh -c`` or ``bash -c`` keeps shell mode: the rest of the line
    becomes the single script argument.

    Returns:
        ``(command, args)``; both empty when there is no override.

    Example:
        >>> parse_command("sh -c 'npm run start'")
        (['sh', '-c'], ['npm run start'])
    """
    if not command or not command.strip():
        return [], []

    parts: list[str] = []
    current = ""
    quote: str | None = None
    for char in command.strip():
        if quote is None and char in ("'", '"'):
            quote = char
        elif char == quote:
            quote = None
        elif char == " " and quote is None:
            if current:
                parts.append(current)
                current = ""
        else:
            current += char
    if current:
        parts.append(current)

    if not parts:
        return [], []
    if len(parts) >= 3 and parts[0] in SHELL_PROGRAMS and parts[1] == "-c":
        return [parts[0], "-c"], [" ".join(parts[2:])]
    return [parts[0]], parts[1:]


def parse_image(reference: str | None) -> tuple[str, str | None]:
    """Split an image reference into repository and tag.

    A digest (``@sha256:...``) is dropped. A colon only counts as the tag
    separator when it follows the last ``/``, so registry ports survive.

    Example:
        >>> parse_image("registry:5000/team/app:1.2")
        ('registry:5000/team/app', '1.2')
    """
    if not reference or not reference.strip():
        return "", None
    workable = reference.strip().split("@", 1)[0]
    last_slash = workable.rfind("/")
    last_colon = workable.rfind(":")
    if last_colon > last_slash:
        return workable[:last_colon], workable[last_colon + 1 :] or None
    return workable, None


def generate_sub_path(
    service_name: str, sub_path: str | None, container_path: str | None
) -> str:
    """Sub-path of the shared volume used for one mount.

    ``<service>/<sub_path>`` when a sub-path is given (kept as-is if it is
    already prefixed), otherwise ``<service>/<container path with / -> ->``.
    """
    if sub_path and sub_path.strip("/"):
        cleaned = sub_path.strip("/")
        if cleaned.startswith(f"{service_name}/"):
            return cleaned
        return f"{service_name}/{cleaned}"
    if container_path:
        normalized = container_path.lstrip("/").replace("/", "-")
        if normalized:
            return f"{service_name}/{normalized}"
    return service_name


def render_my_cnf(settings: DatabaseSettings) -> str:
    """Render the MySQL/MariaDB option file.

    Verbatim ``config_text`` wins; otherwise options are written sorted by
    key under ``[mysqld]``.
    """
    if settings.config_text:
        return settings.config_text
    lines = ["[mysqld]"]
    lines.extend(f"{key}={value}" for key, value in sorted(settings.config_options.items()))
    return "\n".join(lines) + "\n"


def default_database_env(settings: DatabaseSettings | None) -> dict[str, str]:
    """Engine-specific environment derived from the database settings."""
    if settings is None:
        return {}

    env: dict[str, str] = {}
    if settings.type in (DatabaseType.MYSQL, DatabaseType.MARIADB):
        candidates = (
            ("MYSQL_ROOT_PASSWORD", settings.root_password),
            ("MYSQL_DATABASE", settings.database_name),
            ("MYSQL_USER", settings.username),
            ("MYSQL_PASSWORD", settings.password),
        )
    elif settings.type == DatabaseType.POSTGRESQL:
        candidates = (
            ("POSTGRES_DB", settings.database_name),
            ("POSTGRES_USER", settings.username),
            ("POSTGRES_PASSWORD", settings.password),
        )
    elif settings.type == DatabaseType.MONGODB:
        candidates = (
            ("MONGO_INITDB_ROOT_USERNAME", settings.username),
            ("MONGO_INITDB_ROOT_PASSWORD", settings.password),
            ("MONGO_INITDB_DATABASE", settings.database_name),
        )
    else:
        candidates = (("REDIS_PASSWORD", settings.password),)

    for key, value in candidates:
        if value:
            env[key] = value
    return env


def resolve_image(descriptor: ServiceDescriptor) -> str:
    """Image the container runs."""
    if descriptor.image:
        return descriptor.image
    settings = descriptor.database
    if settings is not None:
        repository = DATABASE_IMAGES.get(settings.type, settings.type.value)
        return f"{repository}:{settings.version or 'latest'}"
    return DEFAULT_APPLICATION_IMAGE


def effective_network(
    descriptor: ServiceDescriptor,
) -> tuple[ServiceType, tuple[NetworkPort, ...]]:
    """Service type and ports, with the database default network applied.

    A database without ports is exposed on its engine's default port through
    a NodePort Service.
    """
    if descriptor.ports or descriptor.database is None:
        return descriptor.service_type, descriptor.ports
    default_port = NetworkPort(container_port=descriptor.database.default_port)
    return ServiceType.NODE_PORT, (default_port,)


def effective_command(descriptor: ServiceDescriptor) -> str | None:
    """Startup override, with the redis password injection applied."""
    settings = descriptor.database
    if (
        not descriptor.command
        and settings is not None
        and settings.type == DatabaseType.REDIS
        and settings.password
    ):
        return f"redis-server --requirepass {settings.password}"
    return descriptor.command


def _labels(name: str) -> dict[str, str]:
    return {LABEL_APP: name, LABEL_MANAGED_BY: MANAGED_BY}


def _metadata(name: str, namespace: str, labels: dict[str, str]) -> dict[str, Any]:
    return {"name": name, "namespace": namespace, "labels": labels}


def _resources(spec: ResourceSpec) -> dict[str, dict[str, str]]:
    resources: dict[str, dict[str, str]] = {}
    if limits := spec.limits.as_dict():
        resources["limits"] = limits
    if requests := spec.requests.as_dict():
        resources["requests"] = requests
    return resources


def _shared_mounts(name: str, volumes: tuple[VolumeRequest, ...]) -> list[dict[str, Any]]:
    mounts = []
    for volume in volumes:
        mount: dict[str, Any] = {
            "name": SHARED_VOLUME_NAME,
            "mountPath": volume.container_path,
            "subPath": generate_sub_path(name, volume.sub_path, volume.container_path),
        }
        if volume.read_only:
            mount["readOnly"] = True
        mounts.append(mount)
    return mounts


def _service_ports(
    ports: tuple[NetworkPort, ...], service_type: ServiceType, prefix: str
) -> list[dict[str, Any]]:
    result = []
    for index, port in enumerate(ports):
        entry: dict[str, Any] = {
            "name": indexed_port_name(prefix, port.container_port, index),
            "port": port.service_port,
            "targetPort": port.container_port,
            "protocol": port.protocol.value,
        }
        if service_type == ServiceType.NODE_PORT and port.node_port:
            entry["nodePort"] = port.node_port
        result.append(entry)
    return result


def ingress_hosts(
    ports: tuple[NetworkPort, ...], namespace: str, domain_root: str
) -> list[tuple[str, int]]:
    """Unique ``(host, service_port)`` pairs for ports with an enabled domain."""
    seen: set[str] = set()
    hosts: list[tuple[str, int]] = []
    for port in ports:
        if not port.domain_enabled or port.domain is None:
            continue
        host = f"{port.domain.prefix}.{namespace}.{domain_root}".lower()
        if host in seen:
            continue
        seen.add(host)
        hosts.append((host, port.service_port))
    return hosts


# ---------------------------------------------------------------------------
# Object Builders
# ---------------------------------------------------------------------------


def _build_container(
    descriptor: ServiceDescriptor,
    name: str,
    ports: tuple[NetworkPort, ...],
    extra_mounts: list[dict[str, Any]],
) -> dict[str, Any]:
    container: dict[str, Any] = {"name": name, "image": resolve_image(descriptor)}

    command, args = parse_command(effective_command(descriptor))
    if command:
        container["command"] = command
    if args:
        container["args"] = args

    if ports:
        container["ports"] = [
            {
                "name": indexed_port_name(
                    "port", port.container_port, index, CONTAINER_PORT_NAME_MAX_LENGTH
                ),
                "containerPort": port.container_port,
                "protocol": port.protocol.value,
            }
            for index, port in enumerate(ports)
        ]

    env = {**default_database_env(descriptor.database), **descriptor.env}
    if env:
        container["env"] = [{"name": key, "value": env[key]} for key in sorted(env)]

    if resources := _resources(descriptor.resources):
        container["resources"] = resources

    mounts = _shared_mounts(name, descriptor.volumes) + extra_mounts
    if mounts:
        container["volumeMounts"] = mounts
    return container


def _pod_template(
    name: str, container: dict[str, Any], volumes: list[dict[str, Any]]
) -> dict[str, Any]:
    pod_spec: dict[str, Any] = {"containers": [container]}
    if volumes:
        pod_spec["volumes"] = volumes
    return {"metadata": {"labels": {LABEL_APP: name}}, "spec": pod_spec}


def _build_shared_pvc(namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "name": SHARED_PVC_NAME,
            "namespace": namespace,
            "labels": {LABEL_MANAGED_BY: MANAGED_BY},
        },
        "spec": {
            "accessModes": ["ReadWriteMany"],
            "resources": {"requests": {"storage": SHARED_PVC_STORAGE}},
            "storageClassName": SHARED_STORAGE_CLASS,
            "volumeMode": "Filesystem",
        },
    }


def _build_config_map(name: str, namespace: str, settings: DatabaseSettings) -> dict[str, Any]:
    labels = {**_labels(name), "config-type": "mysql"}
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(config_map_name(name), namespace, labels),
        "data": {MYSQL_CONFIG_KEY: render_my_cnf(settings)},
    }


def _build_service(
    name: str,
    namespace: str,
    service_type: ServiceType,
    ports: tuple[NetworkPort, ...],
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(name, namespace, _labels(name)),
        "spec": {
            "selector": {LABEL_APP: name},
            "type": service_type.value,
            "ports": _service_ports(ports, service_type, "port"),
        },
    }


def _build_headless_service(
    name: str, namespace: str, ports: tuple[NetworkPort, ...]
) -> dict[str, Any]:
    labels = {**_labels(name), LABEL_HEADLESS: "true"}
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(headless_service_name(name), namespace, labels),
        "spec": {
            "selector": {LABEL_APP: name},
            "type": ServiceType.CLUSTER_IP.value,
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "ports": _service_ports(ports, ServiceType.CLUSTER_IP, "headless-port"),
        },
    }


def _build_ingress(
    name: str, namespace: str, hosts: list[tuple[str, int]]
) -> dict[str, Any]:
    rules = [
        {
            "host": host,
            "http": {
                "paths": [
                    {
                        "path": "/",
                        "pathType": "Prefix",
                        "backend": {
                            "service": {"name": name, "port": {"number": service_port}}
                        },
                    }
                ]
            },
        }
        for host, service_port in hosts
    ]
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": _metadata(ingress_name(name), namespace, _labels(name)),
        "spec": {"rules": rules},
    }


def _build_workload(
    descriptor: ServiceDescriptor,
    name: str,
    namespace: str,
    ports: tuple[NetworkPort, ...],
) -> WorkloadKind:
    volumes: list[dict[str, Any]] = []
    if descriptor.volumes:
        volumes.append(
            {
                "name": SHARED_VOLUME_NAME,
                "persistentVolumeClaim": {"claimName": SHARED_PVC_NAME},
            }
        )

    settings = descriptor.database
    if settings is None:
        container = _build_container(descriptor, name, ports, [])
        deployment = {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": _metadata(name, namespace, _labels(name)),
            "spec": {
                "replicas": descriptor.replicas,
                "selector": {"matchLabels": {LABEL_APP: name}},
                "template": _pod_template(name, container, volumes),
            },
        }
        return StatelessWorkload(deployment=deployment)

    extra_mounts: list[dict[str, Any]] = []
    pvc_template: dict[str, Any] | None = None
    data_path = DATABASE_DATA_PATHS.get(settings.type)
    if data_path and settings.volume_size:
        pvc_template = {
            "metadata": {"name": DATA_VOLUME_NAME, "labels": _labels(name)},
            "spec": {
                "accessModes": ["ReadWriteOnce"],
                "resources": {"requests": {"storage": settings.volume_size}},
            },
        }
        if not any(
            posixpath.normpath(v.container_path) == data_path for v in descriptor.volumes
        ):
            extra_mounts.append({"name": DATA_VOLUME_NAME, "mountPath": data_path})

    if settings.has_mysql_config:
        volumes.append(
            {"name": MYSQL_CONFIG_VOLUME, "configMap": {"name": config_map_name(name)}}
        )
        extra_mounts.append(
            {
                "name": MYSQL_CONFIG_VOLUME,
                "mountPath": MYSQL_CONFIG_MOUNT_PATH,
                "subPath": MYSQL_CONFIG_KEY,
            }
        )

    container = _build_container(descriptor, name, ports, extra_mounts)
    spec: dict[str, Any] = {
        "serviceName": name,
        "replicas": descriptor.replicas,
        "selector": {"matchLabels": {LABEL_APP: name}},
        "template": _pod_template(name, container, volumes),
    }
    if pvc_template is not None:
        spec["volumeClaimTemplates"] = [pvc_template]
    statefulset = {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(name, namespace, _labels(name)),
        "spec": spec,
    }
    return StatefulWorkload(statefulset=statefulset, pvc_template=pvc_template)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def build_manifest(
    descriptor: ServiceDescriptor,
    namespace: str | None = None,
    domain_root: str = DEFAULT_DOMAIN_ROOT,
) -> ManifestBundle:
    """Translate a descriptor into the full set of manifests.

    Pure and deterministic: the same descriptor always yields equal output.

    Args:
        descriptor: Desired state of the service.
        namespace: Target namespace; defaults to the descriptor's namespace.
        domain_root: Domain appended to ingress hosts.

    Returns:
        The workload plus its optional Service, headless Service, ConfigMap,
        shared claim and Ingress.
    """
    name = sanitize_resource_name(descriptor.name)
    ns = sanitize_resource_name(namespace or descriptor.namespace)
    service_type, ports = effective_network(descriptor)

    bundle = ManifestBundle(
        name=name,
        namespace=ns,
        workload=_build_workload(descriptor, name, ns, ports),
    )
    if descriptor.volumes:
        bundle.pvc = _build_shared_pvc(ns)
    if descriptor.database is not None and descriptor.database.has_mysql_config:
        bundle.configmap = _build_config_map(name, ns, descriptor.database)
    if ports:
        bundle.service = _build_service(name, ns, service_type, ports)
        if descriptor.headless_service:
            bundle.headless_service = _build_headless_service(name, ns, ports)
        if hosts := ingress_hosts(ports, ns, domain_root):
            bundle.ingress = _build_ingress(name, ns, hosts)
    return bundle


def generate_service_yaml(
    descriptor: ServiceDescriptor,
    namespace: str | None = None,
    domain_root: str = DEFAULT_DOMAIN_ROOT,
) -> str:
    """Render the bundle as a multi-document YAML string."""
    documents = build_manifest(descriptor, namespace, domain_root).documents()
    return yaml.safe_dump_all(documents, sort_keys=False, default_flow_style=False)
