"""Status and observability aggregator.

Builds plain read models from live cluster state: workload health, events,
logs, metrics, namespaces and workloads that can be adopted. Nothing is
cached; every call reflects the cluster at that moment.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from workload_orchestrator.integrations.kubernetes.client import ResourceKind
from workload_orchestrator.integrations.kubernetes.exceptions import (
    KubernetesError,
    KubernetesNotFoundError,
)
from workload_orchestrator.integrations.kubernetes.models.base import _get_labels, _safe_get
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
from workload_orchestrator.services.kubernetes.base import K8sBaseManager, primary_container
from workload_orchestrator.services.kubernetes.manifest_builder import parse_image
from workload_orchestrator.services.kubernetes.naming import sanitize_resource_name
from workload_orchestrator.services.kubernetes.quantities import (
    parse_cpu_millicores,
    parse_memory_bytes,
    usage_percent,
)
from workload_orchestrator.services.kubernetes.reconciler import WORKLOAD_KINDS

if TYPE_CHECKING:
    from workload_orchestrator.integrations.kubernetes.client import KubernetesClient

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_EVENT_LIMIT = 50
DEFAULT_LOG_LINES = 100
DEFAULT_NAMESPACE = "default"
EXTERNAL_SERVICE_TYPES = ("NodePort", "LoadBalancer")
OWNED_EVENT_KINDS = ("Pod", "ReplicaSet")

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"
METRICS_PLURAL = "pods"


# ---------------------------------------------------------------------------
# Phase Computation
# ---------------------------------------------------------------------------


def has_failed_condition(conditions: list[Any], replicas: int) -> bool:
    """Whether the workload reports a failing rollout condition."""
    for condition in conditions:
        cond_type = getattr(condition, "type", None)
        status = getattr(condition, "status", None)
        if cond_type == "Progressing" and status == "False":
            return True
        if cond_type == "Available" and status == "False" and replicas > 0:
            return True
        if cond_type == "ReplicaFailure" and status == "True":
            return True
        if getattr(condition, "reason", None) == "ProgressDeadlineExceeded":
            return True
    return False


def compute_phase(
    replicas: int,
    ready_replicas: int,
    available_replicas: int,
    *,
    image_pull_failed: bool = False,
    failed_condition: bool = False,
) -> WorkloadPhase:
    """Aggregate replica counters and failure signals into one phase.

    Rules apply in order: zero desired replicas is Stopped; an image pull
    failure or a failed condition is Error; fully ready and available is
    Running; nothing ready is Error; anything else is Pending.
    """
    if replicas == 0:
        return WorkloadPhase.STOPPED
    if image_pull_failed or failed_condition:
        return WorkloadPhase.ERROR
    if ready_replicas == replicas and available_replicas == replicas:
        return WorkloadPhase.RUNNING
    if ready_replicas == 0 and available_replicas == 0:
        return WorkloadPhase.ERROR
    return WorkloadPhase.PENDING


def _is_service_event(event: ServiceEvent, service_name: str) -> bool:
    name = event.involved_object_name or ""
    if name == service_name:
        return True
    return event.involved_object_kind in OWNED_EVENT_KINDS and name.startswith(f"{service_name}-")


def _event_sort_key(event: ServiceEvent) -> float:
    timestamp = event.last_timestamp or event.first_timestamp
    if not timestamp:
        return float("-inf")
    try:
        return datetime.fromisoformat(timestamp.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return float("-inf")


def _container_started(pod: PodSummary, container: str | None) -> bool:
    """Whether the container has ever run, so the kubelet has logs for it.

    A container waiting after a restart (e.g. CrashLoopBackOff) still has
    the logs of its last run.
    """
    status = next((c for c in pod.containers if c.name == container), None)
    if status is None:
        return pod.phase != "Pending"
    return status.state != "waiting" or status.restart_count > 0


def _is_waiting_to_start(e: Exception) -> bool:
    # The container can still be starting when the pod listing raced the read
    if getattr(e, "status", None) != 400:
        return False
    text = f"{getattr(e, 'reason', '') or ''} {getattr(e, 'body', '') or ''}"
    return "waiting to start" in text


# ---------------------------------------------------------------------------
# StatusManager
# ---------------------------------------------------------------------------


class StatusManager(K8sBaseManager):
    """Aggregates workload status and observability data.

    Status reads raise on transport and auth failures. Events and logs are
    best-effort: failures come back in the result's ``error`` field.
    """

    _entity_name = "status"

    def __init__(self, client: KubernetesClient) -> None:
        super().__init__(client)

    # =========================================================================
    # Status
    # =========================================================================

    def get_service_status(self, name: str, namespace: str | None = None) -> WorkloadStatus:
        """Compute the current status of a service.

        Args:
            name: Service name.
            namespace: Target namespace.

        Returns:
            The aggregated status. A service with no workload object comes
            back with ``found=False`` and phase Unknown.

        Raises:
            KubernetesTransportError: If the API is unreachable or refuses access.
        """
        ns = self._resolve_namespace(namespace)
        resource_name = sanitize_resource_name(name)
        self._log.debug("getting_service_status", name=resource_name, namespace=ns)

        workload = None
        kind: ResourceKind | None = None
        for candidate in WORKLOAD_KINDS:
            try:
                workload = self._client.get_resource(candidate, resource_name, ns)
                kind = candidate
                break
            except KubernetesNotFoundError:
                continue

        if workload is None or kind is None:
            self._log.debug("workload_not_found", name=resource_name, namespace=ns)
            return WorkloadStatus(
                name=resource_name,
                namespace=ns,
                found=False,
                phase=WorkloadPhase.UNKNOWN,
                message="Workload not found",
            )

        replicas = _safe_get(workload, "spec", "replicas", default=1)
        ready_replicas = _safe_get(workload, "status", "ready_replicas", default=0)
        if kind == ResourceKind.STATEFUL_SET:
            available_replicas = _safe_get(
                workload, "status", "current_replicas", default=ready_replicas
            )
        else:
            available_replicas = _safe_get(workload, "status", "available_replicas", default=0)
        updated_replicas = _safe_get(workload, "status", "updated_replicas", default=0)
        conditions = _safe_get(workload, "status", "conditions", default=[])

        message = None
        try:
            pods = self._list_service_pods(resource_name, ns)
        except KubernetesError as e:
            self._log.warning(
                "pod_listing_failed", name=resource_name, namespace=ns, error=str(e)
            )
            pods = []
            message = f"Pod status unavailable: {e}"

        image_pull_error = self._image_pull_error(pods)
        phase = compute_phase(
            replicas,
            ready_replicas,
            available_replicas,
            image_pull_failed=image_pull_error is not None,
            failed_condition=has_failed_condition(conditions, replicas),
        )

        status = WorkloadStatus(
            name=resource_name,
            namespace=ns,
            found=True,
            kind=kind.value,
            phase=phase,
            replicas=replicas,
            ready_replicas=ready_replicas,
            available_replicas=available_replicas,
            updated_replicas=updated_replicas,
            ready_count=sum(pod.ready_count for pod in pods),
            total_count=sum(pod.total_count for pod in pods),
            restart_count=sum(pod.restarts for pod in pods),
            pods=pods,
            containers=self._primary_containers(pods),
            image_pull_error=image_pull_error,
            external_ports=self._external_ports(resource_name, ns),
            message=message,
        )
        self._log.debug(
            "computed_service_status", name=resource_name, namespace=ns, phase=phase.value
        )
        return status

    @staticmethod
    def _image_pull_error(pods: list[PodSummary]) -> str | None:
        for pod in pods:
            for container in pod.containers:
                if container.image_pull_failed:
                    return container.message or f"Image pull failed: {container.reason}"
        return None

    @staticmethod
    def _primary_containers(pods: list[PodSummary]) -> list[ContainerStatus]:
        """Containers of the first pod, sidecars hidden unless nothing else remains."""
        if not pods:
            return []
        containers = pods[0].containers
        primary = [c for c in containers if not c.is_sidecar]
        return primary or list(containers)

    def _external_ports(self, name: str, namespace: str) -> list[int]:
        try:
            service = self._client.get_resource(ResourceKind.SERVICE, name, namespace)
        except KubernetesNotFoundError:
            return []
        if _safe_get(service, "spec", "type") not in EXTERNAL_SERVICE_TYPES:
            return []
        return [
            port.node_port
            for port in _safe_get(service, "spec", "ports", default=[])
            if getattr(port, "node_port", None)
        ]

    # =========================================================================
    # Network
    # =========================================================================

    def get_service_network_info(
        self, name: str, namespace: str | None = None
    ) -> ServiceNetworkInfo | None:
        """Type and ports of the service's Service object.

        Each port carries its allocated node port so external access can be
        mapped back to the port it serves.

        Returns:
            The network info, or None when the service has no Service object.

        Raises:
            KubernetesError: For failures other than the Service not existing.
        """
        ns = self._resolve_namespace(namespace)
        resource_name = sanitize_resource_name(name)
        try:
            service = self._client.get_resource(ResourceKind.SERVICE, resource_name, ns)
        except KubernetesNotFoundError:
            self._log.debug("service_object_not_found", name=resource_name, namespace=ns)
            return None
        if _safe_get(service, "spec") is None:
            return None

        ports = [
            ServicePortInfo(
                name=getattr(port, "name", None),
                port=getattr(port, "port", None),
                target_port=_numeric_target_port(getattr(port, "target_port", None)),
                node_port=getattr(port, "node_port", None),
                protocol=getattr(port, "protocol", None),
            )
            for port in _safe_get(service, "spec", "ports", default=[])
        ]
        service_type = "Headless" if _is_headless(service) else _safe_get(service, "spec", "type")
        return ServiceNetworkInfo(service_type=service_type, ports=ports)

    # =========================================================================
    # Events
    # =========================================================================

    def get_service_events(
        self, name: str, namespace: str | None = None, limit: int = DEFAULT_EVENT_LIMIT
    ) -> EventsResult:
        """Events involving the service, its pods and its replica sets, newest first."""
        ns = self._resolve_namespace(namespace)
        resource_name = sanitize_resource_name(name)
        try:
            items = self._client.list_resources(ResourceKind.EVENT, ns)
        except KubernetesError as e:
            self._log.warning(
                "event_listing_failed", name=resource_name, namespace=ns, error=str(e)
            )
            return EventsResult(events=[], error=str(e))

        events = [ServiceEvent.from_k8s_object(item) for item in items]
        relevant = [event for event in events if _is_service_event(event, resource_name)]
        relevant.sort(key=_event_sort_key, reverse=True)
        self._log.debug(
            "listed_service_events",
            name=resource_name,
            namespace=ns,
            total=len(events),
            matched=len(relevant),
        )
        return EventsResult(events=relevant[: max(limit, 0)])

    # =========================================================================
    # Logs
    # =========================================================================

    def get_service_logs(
        self,
        name: str,
        lines: int = DEFAULT_LOG_LINES,
        namespace: str | None = None,
        *,
        container: str | None = None,
        since_seconds: int | None = None,
        previous: bool = False,
    ) -> LogsResult:
        """Tail the logs of the service's preferred pod.

        A service without pods, or whose container has not started yet,
        yields empty logs and no error. ``lines`` below 1 reads one line and a
        non-positive ``since_seconds`` is ignored.
        """
        ns = self._resolve_namespace(namespace)
        resource_name = sanitize_resource_name(name)
        try:
            pods = self._list_service_pods(resource_name, ns)
        except KubernetesError as e:
            self._log.warning("log_pod_lookup_failed", name=resource_name, error=str(e))
            return LogsResult(error=str(e))
        if not pods:
            return LogsResult()

        pod = pods[0]
        query = LogQuery(
            pod_name=pod.name,
            namespace=ns,
            container=container or primary_container(pod, resource_name),
            tail_lines=max(lines, 1),
            since_seconds=since_seconds if since_seconds and since_seconds > 0 else None,
            previous=previous,
        )
        if not previous and not _container_started(pod, query.container):
            self._log.debug("logs_not_available_yet", pod=pod.name, phase=pod.phase)
            return LogsResult(pod_name=pod.name, container=query.container)

        self._log.debug("reading_logs", pod=pod.name, namespace=ns, container=query.container)
        try:
            logs = self._client.core_v1.read_namespaced_pod_log(
                _request_timeout=self._client.timeout, **query.to_api_kwargs()
            )
        except Exception as e:
            if _is_waiting_to_start(e):
                return LogsResult(pod_name=pod.name, container=query.container)
            error = self._client.translate_api_exception(e, "Pod", pod.name, ns)
            self._log.warning("log_read_failed", pod=pod.name, namespace=ns, error=str(error))
            return LogsResult(pod_name=pod.name, container=query.container, error=str(error))
        return LogsResult(logs=logs or "", pod_name=pod.name, container=query.container)

    def stream_service_logs(self, query: LogQuery) -> Iterator[str]:
        """Follow a pod's logs.

        The request is opened before the iterator is returned, so connection
        errors surface here. The HTTP response is released when the consumer
        stops iterating or closes the generator.

        Raises:
            KubernetesError: If the log stream cannot be opened.
        """
        kwargs = query.to_api_kwargs()
        kwargs["follow"] = True
        self._log.debug(
            "streaming_logs",
            pod=query.pod_name,
            namespace=query.namespace,
            container=query.container,
        )
        try:
            response = self._client.core_v1.read_namespaced_pod_log(
                _preload_content=False, **kwargs
            )
        except Exception as e:
            self._handle_api_error(e, "Pod", query.pod_name, query.namespace)
        return self._follow_logs(response)

    def _follow_logs(self, response: Any) -> Iterator[str]:
        try:
            for line in response:
                if isinstance(line, bytes):
                    yield line.decode("utf-8", errors="replace")
                else:
                    yield str(line)
        finally:
            response.close()
            release = getattr(response, "release_conn", None)
            if release is not None:
                release()
            self._log.debug("log_stream_closed")

    # =========================================================================
    # Namespaces
    # =========================================================================

    def list_namespaces(self) -> list[str]:
        """Namespace names, ``default`` first and the rest sorted."""
        items = self._client.list_resources(ResourceKind.NAMESPACE)
        names = {
            name.strip()
            for item in items
            if (name := _safe_get(item, "metadata", "name")) and name.strip()
        }
        names.discard(DEFAULT_NAMESPACE)
        return [DEFAULT_NAMESPACE, *sorted(names)]

    # =========================================================================
    # Import Candidates
    # =========================================================================

    def list_importable_services(self, namespace: str | None = None) -> list[ImportCandidate]:
        """Deployments and StatefulSets that could be adopted as services."""
        ns = self._resolve_namespace(namespace)
        services = self._client.list_resources(ResourceKind.SERVICE, ns)
        candidates: list[ImportCandidate] = []
        for kind in WORKLOAD_KINDS:
            for workload in self._client.list_resources(kind, ns):
                candidate = build_import_candidate(workload, kind.value, services)
                if candidate is not None:
                    candidates.append(candidate)
        self._log.debug("listed_import_candidates", namespace=ns, count=len(candidates))
        return candidates

    # =========================================================================
    # Metrics
    # =========================================================================

    def get_service_metrics(
        self, name: str, namespace: str | None = None
    ) -> ServiceMetrics | None:
        """CPU and memory usage of the service's first running pod.

        Returns None when there is no running pod or the metrics API is not
        available.
        """
        ns = self._resolve_namespace(namespace)
        resource_name = sanitize_resource_name(name)
        pods = self._list_service_pods(resource_name, ns)
        running = next((pod for pod in pods if pod.phase == "Running"), None)
        if running is None:
            self._log.debug("no_running_pod_for_metrics", name=resource_name, namespace=ns)
            return None

        try:
            data = self._client.custom_objects.get_namespaced_custom_object(
                METRICS_GROUP,
                METRICS_VERSION,
                ns,
                METRICS_PLURAL,
                running.name,
                _request_timeout=self._client.timeout,
            )
        except Exception as e:
            error = self._client.translate_api_exception(e, "PodMetrics", running.name, ns)
            self._log.warning("metrics_unavailable", pod=running.name, error=str(error))
            return None

        containers = (data or {}).get("containers") or []
        if not containers:
            return None
        container_name = primary_container(running, resource_name)
        usage_entry = next(
            (c for c in containers if c.get("name") == container_name), containers[0]
        )
        usage = usage_entry.get("usage") or {}
        cpu_used = usage.get("cpu") or "0"
        memory_used = usage.get("memory") or "0"

        limits = self._container_limits(ns, running.name, container_name)
        cpu_limit = limits.get("cpu")
        memory_limit = limits.get("memory")
        return ServiceMetrics(
            pod_name=running.name,
            cpu=ResourceUsage(
                used=cpu_used,
                limit=cpu_limit,
                usage_percent=usage_percent(
                    parse_cpu_millicores(cpu_used), parse_cpu_millicores(cpu_limit)
                )
                if cpu_limit
                else None,
            ),
            memory=ResourceUsage(
                used=memory_used,
                limit=memory_limit,
                usage_percent=usage_percent(
                    parse_memory_bytes(memory_used), parse_memory_bytes(memory_limit)
                )
                if memory_limit
                else None,
            ),
            timestamp=(data or {}).get("timestamp") or datetime.now(UTC).isoformat(),
        )

    def _container_limits(
        self, namespace: str, pod_name: str, container_name: str | None
    ) -> dict[str, str]:
        try:
            pod = self._client.get_resource(ResourceKind.POD, pod_name, namespace)
        except KubernetesNotFoundError:
            return {}
        for container in _safe_get(pod, "spec", "containers", default=[]):
            if container_name is None or getattr(container, "name", None) == container_name:
                return dict(_safe_get(container, "resources", "limits") or {})
        self._log.debug("container_limits_missing", pod=pod_name, container=container_name)
        return {}


# ---------------------------------------------------------------------------
# Import Candidate Builders
# ---------------------------------------------------------------------------


def _command_line(container: Any) -> str | None:
    argv = [*(getattr(container, "command", None) or []), *(getattr(container, "args", None) or [])]
    parts = [part.strip() for part in argv if part and part.strip()]
    return " ".join(parts) or None


def _is_headless(service: Any) -> bool:
    cluster_ip = _safe_get(service, "spec", "cluster_ip")
    if isinstance(cluster_ip, str) and cluster_ip.strip().lower() == "none":
        return True
    cluster_ips = _safe_get(service, "spec", "cluster_i_ps") or []
    return any(isinstance(ip, str) and ip.strip().lower() == "none" for ip in cluster_ips)


def _numeric_target_port(target: Any) -> int | None:
    if isinstance(target, int):
        return target
    text = str(target or "").strip()
    return int(text) if text.isdigit() and int(text) > 0 else None


def _resolve_target_port(target: Any, containers: list[Any]) -> int | None:
    """Resolve a Service target port, which may name a container port."""
    if target is None:
        return None
    if isinstance(target, int):
        return target
    text = str(target).strip()
    if text.isdigit():
        return int(text)
    for container in containers:
        for port in getattr(container, "ports", None) or []:
            if getattr(port, "name", None) == text:
                return getattr(port, "container_port", None)
    return None


def _matched_service(service: Any, containers: list[Any]) -> MatchedService | None:
    name = _safe_get(service, "metadata", "name")
    if not name:
        return None
    ports = []
    for port in _safe_get(service, "spec", "ports", default=[]):
        number = getattr(port, "port", None)
        if not number:
            continue
        ports.append(
            MatchedServicePort(
                name=getattr(port, "name", None),
                port=number,
                target_port=_resolve_target_port(getattr(port, "target_port", None), containers)
                or number,
                node_port=getattr(port, "node_port", None),
                protocol=getattr(port, "protocol", None) or "TCP",
            )
        )
    return MatchedService(
        name=name,
        type=_safe_get(service, "spec", "type", default="ClusterIP"),
        cluster_ip=_safe_get(service, "spec", "cluster_ip"),
        headless=_is_headless(service),
        ports=ports,
    )


def _selects(service: Any, namespace: str, labels: dict[str, str]) -> bool:
    if (_safe_get(service, "metadata", "namespace") or DEFAULT_NAMESPACE) != namespace:
        return False
    selector = _safe_get(service, "spec", "selector") or {}
    if not selector:
        return False
    return all(labels.get(key) == value for key, value in selector.items())


def _imported_volumes(template_spec: Any, container: Any) -> list[ImportedVolume]:
    volumes = {getattr(v, "name", None): v for v in getattr(template_spec, "volumes", None) or []}
    result = []
    for mount in getattr(container, "volume_mounts", None) or []:
        volume = volumes.get(getattr(mount, "name", None))
        sub_path = (getattr(mount, "sub_path", None) or "").strip()
        result.append(
            ImportedVolume(
                name=getattr(mount, "name", "") or "",
                container_path=getattr(mount, "mount_path", "") or "",
                sub_path=sub_path or None,
                read_only=bool(getattr(mount, "read_only", False)),
                claim_name=_safe_get(volume, "persistent_volume_claim", "claim_name"),
                host_path=_safe_get(volume, "host_path", "path"),
            )
        )
    return result


def _imported_container(container: Any) -> ImportedContainer:
    repository, tag = parse_image(getattr(container, "image", None))
    env = {
        var.name: var.value
        for var in getattr(container, "env", None) or []
        if getattr(var, "value", None) is not None
    }
    return ImportedContainer(
        name=getattr(container, "name", None) or repository,
        image=repository,
        tag=tag or "latest",
        command=_command_line(container),
        env=env,
    )


def build_import_candidate(
    workload: Any, kind: str, services: list[Any]
) -> ImportCandidate | None:
    """Describe an existing workload as an adoptable service.

    Workloads without a name, pod template spec, container or image on the
    first container are skipped (None). Services are matched when their
    selector is a subset of the workload's labels.
    """
    name = _safe_get(workload, "metadata", "name")
    template_spec = _safe_get(workload, "spec", "template", "spec")
    if not name or template_spec is None:
        return None
    containers = list(getattr(template_spec, "containers", None) or [])
    if not containers or not getattr(containers[0], "image", None):
        return None

    namespace = _safe_get(workload, "metadata", "namespace") or DEFAULT_NAMESPACE
    labels = _get_labels(workload) or {}
    pod_labels = _safe_get(workload, "spec", "template", "metadata", "labels") or {}
    selectable = {**labels, **pod_labels}

    matched = [
        service
        for service in (
            _matched_service(svc, containers)
            for svc in services
            if _selects(svc, namespace, selectable)
        )
        if service is not None
    ]
    exposed = next((svc for svc in matched if not svc.headless), None)

    repository, tag = parse_image(containers[0].image)
    return ImportCandidate(
        uid=_safe_get(workload, "metadata", "uid") or f"{namespace}/{name}",
        name=name,
        namespace=namespace,
        kind=kind,
        labels=labels,
        replicas=_safe_get(workload, "spec", "replicas", default=1),
        image=repository,
        tag=tag or "latest",
        command=_command_line(containers[0]),
        containers=[_imported_container(c) for c in containers],
        volumes=_imported_volumes(template_spec, containers[0]),
        services=matched,
        service_type=exposed.type if exposed else None,
        headless_service=any(svc.headless for svc in matched),
    )
