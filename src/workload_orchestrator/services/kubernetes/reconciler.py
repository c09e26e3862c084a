"""Workload reconciler.

Drives the cluster towards the manifests produced by ``build_manifest``.
Every write is create-then-patch: a 409 on create falls through to a
strategic-merge patch, so two applies racing on the same service converge
instead of failing.
"""

from __future__ import annotations

import copy
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from workload_orchestrator.integrations.kubernetes.client import ResourceKind
from workload_orchestrator.integrations.kubernetes.exceptions import (
    KubernetesAuthError,
    KubernetesConflictError,
    KubernetesError,
    KubernetesNotFoundError,
    KubernetesValidationError,
    ReconcileStepError,
)
from workload_orchestrator.integrations.kubernetes.models.base import (
    _get_annotations,
    _safe_get,
)
from workload_orchestrator.services.kubernetes.base import K8sBaseManager
from workload_orchestrator.services.kubernetes.manifest_builder import (
    LABEL_MANAGED_BY,
    MANAGED_BY,
    SHARED_PVC_NAME,
    ManifestBundle,
    StatefulWorkload,
    build_manifest,
)
from workload_orchestrator.services.kubernetes.naming import (
    data_claim_name,
    headless_service_name,
    ingress_name,
    sanitize_resource_name,
)
from workload_orchestrator.services.kubernetes.quantities import parse_memory_bytes

if TYPE_CHECKING:
    from workload_orchestrator.integrations.kubernetes.client import KubernetesClient
    from workload_orchestrator.integrations.kubernetes.models.descriptor import (
        ServiceDescriptor,
    )

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ORIGINAL_REPLICAS_ANNOTATION = "workload-orchestrator.io/original-replicas"
RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"
DEFAULT_NAMESPACE = "default"
WORKLOAD_KINDS = (ResourceKind.DEPLOYMENT, ResourceKind.STATEFUL_SET)
# Strategic-merge directive: replace the list instead of merging by key
REPLACE_LIST_DIRECTIVE = {"$patch": "replace"}
CONTAINER_OWNED_LISTS = ("env", "ports", "volumeMounts")


# ---------------------------------------------------------------------------
# Result Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ReconcileOutcome:
    """Result of a successful ``apply_service``."""

    service: str
    namespace: str
    workload_kind: str
    steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    message: str = ""


@dataclass
class OperationResult:
    """Result of a narrow lifecycle operation."""

    success: bool
    message: str


# ---------------------------------------------------------------------------
# WorkloadReconciler
# ---------------------------------------------------------------------------


class WorkloadReconciler(K8sBaseManager):
    """Applies service descriptors and runs lifecycle operations.

    ``apply_service`` runs five ordered steps (namespace, storage, config,
    workload, network). A failing step raises ``ReconcileStepError``; steps
    that already completed are left in place.
    """

    _entity_name = "reconciler"

    def __init__(self, client: KubernetesClient) -> None:
        super().__init__(client)

    # =========================================================================
    # Apply
    # =========================================================================

    def apply_service(
        self, descriptor: ServiceDescriptor, namespace: str | None = None
    ) -> ReconcileOutcome:
        """Create or update every object of a service.

        Args:
            descriptor: Desired state of the service.
            namespace: Target namespace; defaults to the descriptor's namespace.

        Returns:
            The completed steps and any warnings.

        Raises:
            ReconcileStepError: If a step fails. ``step`` names it and
                ``cause`` carries the translated API error.
        """
        ns = self._resolve_namespace(namespace or descriptor.namespace)
        bundle = build_manifest(descriptor, ns, self._client.domain_root)
        outcome = ReconcileOutcome(
            service=bundle.name,
            namespace=ns,
            workload_kind=bundle.workload.resource_kind.value,
        )
        self._log.info(
            "applying_service",
            name=bundle.name,
            namespace=ns,
            workload_kind=outcome.workload_kind,
        )

        steps: tuple[tuple[str, Callable[[ManifestBundle, ReconcileOutcome], None]], ...] = (
            ("namespace", self._ensure_namespace),
            ("storage", self._ensure_storage),
            ("config", self._ensure_config),
            ("workload", self._ensure_workload),
            ("network", self._ensure_network),
        )
        for step, action in steps:
            try:
                action(bundle, outcome)
            except KubernetesError as e:
                self._log.error(
                    "reconcile_step_failed",
                    step=step,
                    name=bundle.name,
                    namespace=ns,
                    error=str(e),
                )
                raise ReconcileStepError(
                    step,
                    e,
                    completed_steps=outcome.steps,
                    resource_name=bundle.name,
                    namespace=ns,
                ) from e
            outcome.steps.append(step)

        outcome.message = f"{outcome.workload_kind} '{bundle.name}' applied in namespace '{ns}'"
        self._log.info(
            "service_applied",
            name=bundle.name,
            namespace=ns,
            warnings=len(outcome.warnings),
        )
        return outcome

    def _ensure_namespace(self, bundle: ManifestBundle, outcome: ReconcileOutcome) -> None:
        ns = bundle.namespace
        if ns == DEFAULT_NAMESPACE:
            return
        try:
            self._client.get_resource(ResourceKind.NAMESPACE, ns)
            return
        except KubernetesAuthError:
            # Restricted service accounts cannot read namespaces
            self._log.warning("namespace_access_restricted", namespace=ns)
            return
        except KubernetesNotFoundError:
            pass

        body = {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": ns, "labels": {LABEL_MANAGED_BY: MANAGED_BY}},
        }
        if self._create_if_absent(ResourceKind.NAMESPACE, body, None):
            self._log.info("namespace_created", namespace=ns)

    def _ensure_storage(self, bundle: ManifestBundle, outcome: ReconcileOutcome) -> None:
        if bundle.pvc is not None:
            self._ensure_shared_claim(bundle.pvc, bundle.namespace, outcome)
        workload = bundle.workload
        if isinstance(workload, StatefulWorkload) and workload.pvc_template is not None:
            self._check_data_claim(bundle.name, bundle.namespace, workload.pvc_template, outcome)

    def _ensure_shared_claim(
        self, pvc: dict[str, Any], ns: str, outcome: ReconcileOutcome
    ) -> None:
        try:
            existing = self._client.get_resource(
                ResourceKind.PERSISTENT_VOLUME_CLAIM, SHARED_PVC_NAME, ns
            )
        except KubernetesNotFoundError:
            if self._create_if_absent(ResourceKind.PERSISTENT_VOLUME_CLAIM, pvc, ns):
                self._log.info("volume_claim_created", name=SHARED_PVC_NAME, namespace=ns)
            return
        requested = pvc["spec"]["resources"]["requests"]["storage"]
        self._report_undersized_claim(SHARED_PVC_NAME, ns, existing, requested, outcome)

    def _check_data_claim(
        self, name: str, ns: str, template: dict[str, Any], outcome: ReconcileOutcome
    ) -> None:
        """Compare the first replica's data claim with the requested size.

        The StatefulSet controller creates these claims; volumeClaimTemplates
        are immutable, so a changed size can only be reported.
        """
        claim_name = data_claim_name(template["metadata"]["name"], name)
        try:
            existing = self._client.get_resource(
                ResourceKind.PERSISTENT_VOLUME_CLAIM, claim_name, ns
            )
        except KubernetesNotFoundError:
            return
        requested = template["spec"]["resources"]["requests"]["storage"]
        self._report_undersized_claim(claim_name, ns, existing, requested, outcome)

    def _report_undersized_claim(
        self,
        claim_name: str,
        ns: str,
        existing: Any,
        requested: str,
        outcome: ReconcileOutcome,
    ) -> None:
        capacity = (_safe_get(existing, "status", "capacity") or {}).get("storage")
        if capacity is None:
            capacity = (_safe_get(existing, "spec", "resources", "requests") or {}).get("storage")
        if capacity is None or parse_memory_bytes(capacity) >= parse_memory_bytes(requested):
            return
        outcome.warnings.append(
            f"PersistentVolumeClaim '{claim_name}' has {capacity}, "
            f"{requested} requested; volumes are not resized"
        )
        self._log.warning(
            "volume_claim_too_small",
            name=claim_name,
            namespace=ns,
            capacity=capacity,
            requested=requested,
        )

    def _ensure_config(self, bundle: ManifestBundle, outcome: ReconcileOutcome) -> None:
        if bundle.configmap is None:
            return
        action = self._create_or_patch(ResourceKind.CONFIG_MAP, bundle.configmap, bundle.namespace)
        self._log.info(
            f"config_map_{action}",
            name=bundle.configmap["metadata"]["name"],
            namespace=bundle.namespace,
        )

    def _ensure_workload(self, bundle: ManifestBundle, outcome: ReconcileOutcome) -> None:
        kind = bundle.workload.resource_kind
        manifest = bundle.workload.manifest
        ns = bundle.namespace
        try:
            self._client.get_resource(kind, bundle.name, ns)
        except KubernetesNotFoundError:
            try:
                self._client.create_resource(kind, manifest, ns)
                self._log.info("workload_created", kind=kind.value, name=bundle.name, namespace=ns)
                return
            except KubernetesConflictError:
                self._log.debug("workload_create_conflict", kind=kind.value, name=bundle.name)

        self._client.patch_resource(kind, bundle.name, workload_patch(manifest), ns)
        self._log.info("workload_updated", kind=kind.value, name=bundle.name, namespace=ns)

    def _ensure_network(self, bundle: ManifestBundle, outcome: ReconcileOutcome) -> None:
        ns = bundle.namespace
        if bundle.service is None:
            if self._delete_if_exists(ResourceKind.SERVICE, bundle.name, ns):
                self._log.info("service_object_deleted", name=bundle.name, namespace=ns)
        else:
            self._sync_service(bundle.service, ns)

        headless = headless_service_name(bundle.name)
        if bundle.headless_service is None:
            if self._delete_if_exists(ResourceKind.SERVICE, headless, ns):
                self._log.info("headless_service_deleted", name=headless, namespace=ns)
        else:
            action = self._create_or_patch(
                ResourceKind.SERVICE, bundle.headless_service, ns, replace_ports=True
            )
            self._log.info(f"headless_service_{action}", name=headless, namespace=ns)

        ingress = ingress_name(bundle.name)
        if bundle.ingress is None:
            if self._delete_if_exists(ResourceKind.INGRESS, ingress, ns):
                self._log.info("ingress_deleted", name=ingress, namespace=ns)
        else:
            action = self._create_or_patch(ResourceKind.INGRESS, bundle.ingress, ns)
            self._log.info(f"ingress_{action}", name=ingress, namespace=ns)

    def _sync_service(self, desired: dict[str, Any], namespace: str) -> None:
        name = desired["metadata"]["name"]
        try:
            existing = self._client.get_resource(ResourceKind.SERVICE, name, namespace)
        except KubernetesNotFoundError:
            try:
                self._client.create_resource(ResourceKind.SERVICE, desired, namespace)
                self._log.info("service_object_created", name=name, namespace=namespace)
                return
            except KubernetesConflictError:
                existing = self._client.get_resource(ResourceKind.SERVICE, name, namespace)

        self._client.patch_resource(
            ResourceKind.SERVICE, name, service_patch(desired, existing), namespace
        )
        self._log.info("service_object_updated", name=name, namespace=namespace)

    # =========================================================================
    # Write Helpers
    # =========================================================================

    def _create_if_absent(
        self, kind: ResourceKind, body: dict[str, Any], namespace: str | None
    ) -> bool:
        """Create an object; an existing one counts as success."""
        try:
            self._client.create_resource(kind, body, namespace)
            return True
        except KubernetesConflictError:
            self._log.debug(
                "create_conflict_ignored", kind=kind.value, name=body["metadata"]["name"]
            )
            return False

    def _create_or_patch(
        self,
        kind: ResourceKind,
        body: dict[str, Any],
        namespace: str,
        *,
        replace_ports: bool = False,
    ) -> str:
        """Create an object, patching it when it already exists.

        Returns:
            ``"created"`` or ``"updated"``.
        """
        try:
            self._client.create_resource(kind, body, namespace)
            return "created"
        except KubernetesConflictError:
            patch = body
            if replace_ports:
                patch = copy.deepcopy(body)
                patch["spec"]["ports"] = [REPLACE_LIST_DIRECTIVE, *patch["spec"]["ports"]]
            self._client.patch_resource(kind, body["metadata"]["name"], patch, namespace)
            return "updated"

    def _delete_if_exists(self, kind: ResourceKind, name: str, namespace: str) -> bool:
        try:
            self._client.delete_resource(kind, name, namespace)
            return True
        except KubernetesNotFoundError:
            return False

    # =========================================================================
    # Lifecycle Operations
    # =========================================================================

    def _find_workload(self, name: str, namespace: str) -> tuple[ResourceKind, Any]:
        """Locate the workload, Deployment first then StatefulSet.

        Raises:
            KubernetesNotFoundError: If neither exists.
        """
        for kind in WORKLOAD_KINDS:
            try:
                return kind, self._client.get_resource(kind, name, namespace)
            except KubernetesNotFoundError:
                continue
        raise KubernetesNotFoundError(
            resource_type="Workload", resource_name=name, namespace=namespace
        )

    def scale(self, name: str, replicas: int, namespace: str | None = None) -> OperationResult:
        """Set the replica count of a service's workload.

        Raises:
            KubernetesValidationError: If ``replicas`` is negative.
            KubernetesNotFoundError: If the workload does not exist.
        """
        if replicas < 0:
            raise KubernetesValidationError(
                message=f"replicas must be >= 0, got {replicas}", status_code=400
            )
        ns = self._resolve_namespace(namespace)
        resource_name = sanitize_resource_name(name)
        kind, _ = self._find_workload(resource_name, ns)
        self._client.patch_resource(kind, resource_name, {"spec": {"replicas": replicas}}, ns)
        self._log.info(
            "service_scaled", kind=kind.value, name=resource_name, namespace=ns, replicas=replicas
        )
        return OperationResult(
            success=True,
            message=f"{kind.value} '{resource_name}' scaled to {replicas} replicas",
        )

    def restart(self, name: str, namespace: str | None = None) -> OperationResult:
        """Trigger a rolling restart through the pod template annotation."""
        ns = self._resolve_namespace(namespace)
        resource_name = sanitize_resource_name(name)
        kind, _ = self._find_workload(resource_name, ns)
        restarted_at = datetime.now(UTC).isoformat()
        body = {
            "spec": {
                "template": {
                    "metadata": {"annotations": {RESTARTED_AT_ANNOTATION: restarted_at}}
                }
            }
        }
        self._client.patch_resource(kind, resource_name, body, ns)
        self._log.info("service_restarted", kind=kind.value, name=resource_name, namespace=ns)
        return OperationResult(success=True, message=f"{kind.value} '{resource_name}' restarted")

    def stop(self, name: str, namespace: str | None = None) -> OperationResult:
        """Scale to zero, remembering the previous replica count."""
        ns = self._resolve_namespace(namespace)
        resource_name = sanitize_resource_name(name)
        kind, workload = self._find_workload(resource_name, ns)
        current = _safe_get(workload, "spec", "replicas", default=0)

        body: dict[str, Any] = {"spec": {"replicas": 0}}
        if current > 0:
            body["metadata"] = {"annotations": {ORIGINAL_REPLICAS_ANNOTATION: str(current)}}
        self._client.patch_resource(kind, resource_name, body, ns)
        self._log.info(
            "service_stopped",
            kind=kind.value,
            name=resource_name,
            namespace=ns,
            previous_replicas=current,
        )
        return OperationResult(success=True, message=f"{kind.value} '{resource_name}' stopped")

    def start(self, name: str, namespace: str | None = None) -> OperationResult:
        """Restore the replica count saved by ``stop`` (1 when none was saved)."""
        ns = self._resolve_namespace(namespace)
        resource_name = sanitize_resource_name(name)
        kind, workload = self._find_workload(resource_name, ns)
        replicas = _original_replicas(_get_annotations(workload))
        self._client.patch_resource(kind, resource_name, {"spec": {"replicas": replicas}}, ns)
        self._log.info(
            "service_started", kind=kind.value, name=resource_name, namespace=ns, replicas=replicas
        )
        return OperationResult(
            success=True,
            message=f"{kind.value} '{resource_name}' started with {replicas} replicas",
        )

    def delete_service(self, name: str, namespace: str | None = None) -> OperationResult:
        """Delete the workload and network objects of a service.

        Objects that are already gone are skipped. The shared volume claim
        is left alone since other services of the project mount it.
        """
        ns = self._resolve_namespace(namespace)
        resource_name = sanitize_resource_name(name)
        targets = (
            (ResourceKind.DEPLOYMENT, resource_name),
            (ResourceKind.STATEFUL_SET, resource_name),
            (ResourceKind.SERVICE, resource_name),
            (ResourceKind.SERVICE, headless_service_name(resource_name)),
            (ResourceKind.INGRESS, ingress_name(resource_name)),
        )
        deleted = [
            f"{kind.value}/{target}"
            for kind, target in targets
            if self._delete_if_exists(kind, target, ns)
        ]
        self._log.info("service_deleted", name=resource_name, namespace=ns, deleted=deleted)
        if not deleted:
            return OperationResult(success=True, message=f"Nothing to delete for '{resource_name}'")
        return OperationResult(success=True, message=f"Deleted {', '.join(deleted)}")


# ---------------------------------------------------------------------------
# Patch Builders
# ---------------------------------------------------------------------------


def _original_replicas(annotations: dict[str, str]) -> int:
    raw = annotations.get(ORIGINAL_REPLICAS_ANNOTATION, "1")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return 1
    return value if value > 0 else 1


def _replace_list(items: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    return [REPLACE_LIST_DIRECTIVE, *(items or [])]


def workload_patch(manifest: dict[str, Any]) -> dict[str, Any]:
    """Strategic-merge patch covering only the fields the orchestrator owns.

    The selector and volumeClaimTemplates are immutable and left out.
    ``command``/``args`` are nulled when absent so a removed startup
    override is cleared. The container's env, ports and volume mounts and
    the pod volumes replace the live lists, so entries dropped from the
    descriptor are removed instead of merged back by key.
    """
    spec = manifest["spec"]
    template = spec["template"]
    pod_spec = template["spec"]
    container = dict(pod_spec["containers"][0])
    container.setdefault("command", None)
    container.setdefault("args", None)
    for key in CONTAINER_OWNED_LISTS:
        container[key] = _replace_list(container.get(key))

    template_spec: dict[str, Any] = {
        "containers": [container],
        "volumes": _replace_list(pod_spec.get("volumes")),
    }
    return {
        "metadata": {"labels": manifest["metadata"]["labels"]},
        "spec": {
            "replicas": spec["replicas"],
            "template": {
                "metadata": {"labels": template["metadata"]["labels"]},
                "spec": template_spec,
            },
        },
    }


def service_patch(desired: dict[str, Any], existing: Any) -> dict[str, Any]:
    """Patch for an existing Service that keeps cluster-assigned values.

    Allocated node ports are carried over by target port for NodePort and
    LoadBalancer Services, and the cluster IP is kept. The port list is
    replaced as a whole.
    """
    patch = copy.deepcopy(desired)
    spec = patch["spec"]

    cluster_ip = _safe_get(existing, "spec", "cluster_ip")
    if cluster_ip:
        spec["clusterIP"] = cluster_ip

    if spec.get("type") in ("NodePort", "LoadBalancer"):
        allocated: dict[Any, int] = {}
        for port in _safe_get(existing, "spec", "ports", default=[]):
            node_port = getattr(port, "node_port", None)
            if node_port:
                target = getattr(port, "target_port", None) or getattr(port, "port", None)
                allocated[target] = node_port
        for port in spec["ports"]:
            if "nodePort" not in port and port["targetPort"] in allocated:
                port["nodePort"] = allocated[port["targetPort"]]

    spec["ports"] = [REPLACE_LIST_DIRECTIVE, *spec["ports"]]
    return patch
