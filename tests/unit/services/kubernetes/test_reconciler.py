"""Unit tests for WorkloadReconciler."""

from __future__ import annotations

import copy
from typing import Any
from unittest.mock import MagicMock

import pytest

from tests.factories import (
    make_deployment,
    make_namespace,
    make_pvc,
    make_service,
    make_statefulset,
)
from workload_orchestrator.integrations.kubernetes.client import ResourceKind
from workload_orchestrator.integrations.kubernetes.exceptions import (
    KubernetesAuthError,
    KubernetesConflictError,
    KubernetesNotFoundError,
    KubernetesValidationError,
    ReconcileStepError,
)
from workload_orchestrator.integrations.kubernetes.models.descriptor import (
    DatabaseSettings,
    DatabaseType,
    DomainBinding,
    NetworkPort,
    ServiceDescriptor,
    ServiceKind,
    ServiceType,
    VolumeRequest,
)
from workload_orchestrator.services.kubernetes.manifest_builder import build_manifest
from workload_orchestrator.services.kubernetes.reconciler import (
    ORIGINAL_REPLICAS_ANNOTATION,
    REPLACE_LIST_DIRECTIVE,
    RESTARTED_AT_ANNOTATION,
    WorkloadReconciler,
    service_patch,
    workload_patch,
)


# List merge keys the API server uses for the fields the orchestrator patches
MERGE_KEYS = {
    "containers": "name",
    "env": "name",
    "volumes": "name",
    "volumeMounts": "mountPath",
    "ports": "containerPort",
}


def _merge_list(key: str, live: list[Any], patch: list[Any]) -> list[Any]:
    if patch and patch[0] == REPLACE_LIST_DIRECTIVE:
        return copy.deepcopy(patch[1:])
    merge_key = MERGE_KEYS.get(key)
    if merge_key is None or not all(isinstance(item, dict) for item in [*live, *patch]):
        return copy.deepcopy(patch)
    merged = [copy.deepcopy(item) for item in live]
    positions = {item.get(merge_key): index for index, item in enumerate(merged)}
    for item in patch:
        index = positions.get(item.get(merge_key))
        if index is None:
            merged.append(copy.deepcopy(item))
        else:
            merged[index] = strategic_merge(merged[index], item)
    return merged


def strategic_merge(live: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Apply a strategic-merge patch to a plain manifest.

    Null deletes a key, lists merge by their merge key unless the patch
    starts with a replace directive, and empty lists are dropped the way the
    API server omits them.
    """
    merged = copy.deepcopy(live)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict):
            merged[key] = strategic_merge(merged.get(key) or {}, value)
        elif isinstance(value, list):
            merged[key] = _merge_list(key, merged.get(key) or [], value)
            if not merged[key]:
                del merged[key]
        else:
            merged[key] = value
    return merged


class FakeCluster:
    """Object store behind the mocked client's CRUD verbs.

    ``get`` and ``delete`` raise NotFound for missing objects and ``create``
    raises Conflict for existing ones, like the real adapter does. Patches
    are merged into objects stored as plain manifests.
    """

    def __init__(self, client: MagicMock) -> None:
        self.objects: dict[tuple[ResourceKind, str], Any] = {}
        client.get_resource.side_effect = self.get
        client.create_resource.side_effect = self.create
        client.delete_resource.side_effect = self.delete
        client.patch_resource.side_effect = self.patch

    def add(self, kind: ResourceKind, name: str, obj: Any) -> None:
        self.objects[(kind, name)] = obj

    def get(self, kind: ResourceKind, name: str, namespace: str | None = None) -> Any:
        try:
            return self.objects[(kind, name)]
        except KeyError:
            raise KubernetesNotFoundError(
                resource_type=kind.value, resource_name=name, namespace=namespace
            ) from None

    def create(self, kind: ResourceKind, body: dict[str, Any], namespace: str | None = None) -> Any:
        name = body["metadata"]["name"]
        if (kind, name) in self.objects:
            raise KubernetesConflictError(
                resource_type=kind.value, resource_name=name, namespace=namespace
            )
        self.objects[(kind, name)] = body
        return body

    def delete(self, kind: ResourceKind, name: str, namespace: str | None = None) -> None:
        self.get(kind, name, namespace)
        del self.objects[(kind, name)]

    def patch(
        self, kind: ResourceKind, name: str, body: dict[str, Any], namespace: str | None = None
    ) -> Any:
        current = self.get(kind, name, namespace)
        if isinstance(current, dict):
            current = strategic_merge(current, body)
            self.objects[(kind, name)] = current
        return current


@pytest.fixture
def cluster(mock_k8s_client: MagicMock) -> FakeCluster:
    fake = FakeCluster(mock_k8s_client)
    fake.add(ResourceKind.NAMESPACE, "demo", make_namespace("demo"))
    return fake


@pytest.fixture
def reconciler(mock_k8s_client: MagicMock) -> WorkloadReconciler:
    return WorkloadReconciler(mock_k8s_client)


def _app(**overrides: Any) -> ServiceDescriptor:
    fields: dict[str, Any] = {
        "kind": ServiceKind.APPLICATION,
        "name": "web",
        "namespace": "demo",
        "image": "nginx:1.25",
        "ports": (NetworkPort(container_port=8080, service_port=80),),
    }
    fields.update(overrides)
    return ServiceDescriptor(**fields)


def _mysql(**overrides: Any) -> ServiceDescriptor:
    fields: dict[str, Any] = {
        "kind": ServiceKind.DATABASE,
        "name": "db",
        "namespace": "demo",
        "database": DatabaseSettings(
            type=DatabaseType.MYSQL,
            version="8.0",
            root_password="secret",
            config_options={"max_connections": "200"},
        ),
    }
    fields.update(overrides)
    return ServiceDescriptor(**fields)


def _patched(client: MagicMock, kind: ResourceKind, name: str) -> list[dict[str, Any]]:
    return [
        call.args[2]
        for call in client.patch_resource.call_args_list
        if call.args[0] == kind and call.args[1] == name
    ]


def _created(client: MagicMock, kind: ResourceKind) -> list[str]:
    return [
        call.args[1]["metadata"]["name"]
        for call in client.create_resource.call_args_list
        if call.args[0] == kind
    ]


# =============================================================================
# apply_service
# =============================================================================


class TestApplyService:
    """Tests for apply_service."""

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_fresh_application(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """A new application gets a Deployment and a Service."""
        outcome = reconciler.apply_service(_app())

        assert outcome.steps == ["namespace", "storage", "config", "workload", "network"]
        assert outcome.workload_kind == "Deployment"
        assert outcome.warnings == []
        assert outcome.message == "Deployment 'web' applied in namespace 'demo'"
        assert _created(mock_k8s_client, ResourceKind.DEPLOYMENT) == ["web"]
        assert _created(mock_k8s_client, ResourceKind.SERVICE) == ["web"]
        assert _created(mock_k8s_client, ResourceKind.NAMESPACE) == []
        mock_k8s_client.patch_resource.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_reapply_patches(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Applying twice converges by patching the existing objects."""
        reconciler.apply_service(_app())
        cluster.add(ResourceKind.SERVICE, "web", make_service("web", ports=[(80, 8080, None)]))
        mock_k8s_client.create_resource.reset_mock()

        reconciler.apply_service(_app(replicas=3))

        mock_k8s_client.create_resource.assert_not_called()
        (deployment_patch,) = _patched(mock_k8s_client, ResourceKind.DEPLOYMENT, "web")
        assert deployment_patch["spec"]["replicas"] == 3
        (svc_patch,) = _patched(mock_k8s_client, ResourceKind.SERVICE, "web")
        assert svc_patch["spec"]["clusterIP"] == "10.96.0.10"

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_creates_missing_namespace(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """A missing namespace is created with the managed-by label."""
        reconciler.apply_service(_app(), namespace="Team A")

        (call,) = [
            c
            for c in mock_k8s_client.create_resource.call_args_list
            if c.args[0] == ResourceKind.NAMESPACE
        ]
        assert call.args[1]["metadata"] == {
            "name": "team-a",
            "labels": {"managed-by": "workload-orchestrator"},
        }
        assert call.args[2] is None

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_default_namespace_never_touched(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """The default namespace is assumed to exist."""
        reconciler.apply_service(_app(namespace="default"))

        kinds = [c.args[0] for c in mock_k8s_client.get_resource.call_args_list]
        assert ResourceKind.NAMESPACE not in kinds

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_restricted_namespace_access(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Forbidden namespace reads are skipped, not fatal."""

        def get(kind: ResourceKind, name: str, namespace: str | None = None) -> Any:
            if kind == ResourceKind.NAMESPACE:
                raise KubernetesAuthError(status_code=403)
            return cluster.get(kind, name, namespace)

        mock_k8s_client.get_resource.side_effect = get

        outcome = reconciler.apply_service(_app(namespace="locked"))

        assert "namespace" in outcome.steps
        assert _created(mock_k8s_client, ResourceKind.NAMESPACE) == []

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_namespace_create_race(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """A namespace created concurrently counts as present."""

        def create(kind: ResourceKind, body: dict[str, Any], namespace: str | None = None) -> Any:
            if kind == ResourceKind.NAMESPACE:
                raise KubernetesConflictError()
            return cluster.create(kind, body, namespace)

        mock_k8s_client.create_resource.side_effect = create

        outcome = reconciler.apply_service(_app(namespace="racing"))

        assert outcome.steps[0] == "namespace"

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_workload_create_conflict_falls_back_to_patch(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """A 409 on create is treated as already present and patched."""

        def get(kind: ResourceKind, name: str, namespace: str | None = None) -> Any:
            if kind == ResourceKind.DEPLOYMENT:
                raise KubernetesNotFoundError()
            return cluster.get(kind, name, namespace)

        cluster.add(ResourceKind.DEPLOYMENT, "web", make_deployment("web"))
        mock_k8s_client.get_resource.side_effect = get

        reconciler.apply_service(_app())

        assert len(_patched(mock_k8s_client, ResourceKind.DEPLOYMENT, "web")) == 1

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_service_create_conflict_rereads(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """A Service created concurrently is re-read and patched."""
        existing = make_service("web", ports=[(80, 8080, None)], cluster_ip="10.96.1.1")
        reads = {"count": 0}

        def get(kind: ResourceKind, name: str, namespace: str | None = None) -> Any:
            if kind == ResourceKind.SERVICE and name == "web":
                reads["count"] += 1
                if reads["count"] == 1:
                    raise KubernetesNotFoundError()
                return existing
            return cluster.get(kind, name, namespace)

        cluster.add(ResourceKind.SERVICE, "web", existing)
        mock_k8s_client.get_resource.side_effect = get

        reconciler.apply_service(_app())

        (patch,) = _patched(mock_k8s_client, ResourceKind.SERVICE, "web")
        assert patch["spec"]["clusterIP"] == "10.96.1.1"

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_step_failure(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """A failing step raises with the steps that completed."""

        def create(kind: ResourceKind, body: dict[str, Any], namespace: str | None = None) -> Any:
            if kind == ResourceKind.DEPLOYMENT:
                raise KubernetesValidationError(message="spec.replicas: invalid")
            return cluster.create(kind, body, namespace)

        mock_k8s_client.create_resource.side_effect = create

        with pytest.raises(ReconcileStepError) as exc_info:
            reconciler.apply_service(_app())

        error = exc_info.value
        assert error.step == "workload"
        assert error.completed_steps == ["namespace", "storage", "config"]
        assert isinstance(error.cause, KubernetesValidationError)
        assert error.status_code == 422
        assert "spec.replicas: invalid" in error.message
        # Completed steps are not rolled back
        mock_k8s_client.delete_resource.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_database_statefulset_with_config(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Databases get a StatefulSet, a my.cnf ConfigMap and a NodePort Service."""
        outcome = reconciler.apply_service(_mysql(headless_service=True))

        assert outcome.workload_kind == "StatefulSet"
        assert _created(mock_k8s_client, ResourceKind.STATEFUL_SET) == ["db"]
        assert _created(mock_k8s_client, ResourceKind.CONFIG_MAP) == ["db-config"]
        assert _created(mock_k8s_client, ResourceKind.SERVICE) == ["db", "db-headless"]
        service = cluster.objects[(ResourceKind.SERVICE, "db")]
        assert service["spec"]["type"] == "NodePort"

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_config_map_updated(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """An existing ConfigMap is patched with the new my.cnf."""
        cluster.add(ResourceKind.CONFIG_MAP, "db-config", {"metadata": {"name": "db-config"}})

        reconciler.apply_service(_mysql())

        (patch,) = _patched(mock_k8s_client, ResourceKind.CONFIG_MAP, "db-config")
        assert "max_connections=200" in patch["data"]["my.cnf"]

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_headless_ports_replaced(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Existing headless Services get their port list replaced."""
        cluster.add(ResourceKind.SERVICE, "db-headless", {"metadata": {"name": "db-headless"}})

        reconciler.apply_service(_mysql(headless_service=True))

        (patch,) = _patched(mock_k8s_client, ResourceKind.SERVICE, "db-headless")
        assert patch["spec"]["ports"][0] == REPLACE_LIST_DIRECTIVE
        assert patch["spec"]["ports"][1]["port"] == 3306
        assert patch["spec"]["clusterIP"] == "None"

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_network_objects_removed(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Objects the descriptor no longer asks for are deleted."""
        cluster.add(ResourceKind.SERVICE, "web", make_service("web"))
        cluster.add(ResourceKind.SERVICE, "web-headless", make_service("web-headless"))
        cluster.add(ResourceKind.INGRESS, "web-ingress", {"metadata": {"name": "web-ingress"}})

        reconciler.apply_service(_app(ports=()))

        assert (ResourceKind.SERVICE, "web") not in cluster.objects
        assert (ResourceKind.SERVICE, "web-headless") not in cluster.objects
        assert (ResourceKind.INGRESS, "web-ingress") not in cluster.objects

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_ingress_created(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Ports with a domain produce an Ingress on the client's domain root."""
        port = NetworkPort(
            container_port=8080, service_port=80, domain=DomainBinding(prefix="shop")
        )

        reconciler.apply_service(_app(ports=(port,)))

        ingress = cluster.objects[(ResourceKind.INGRESS, "web-ingress")]
        assert ingress["spec"]["rules"][0]["host"] == "shop.demo.apps.local"

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_shared_volume_claim_created(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Volume mounts create the shared claim once."""
        reconciler.apply_service(_app(volumes=(VolumeRequest(container_path="/data"),)))

        assert _created(mock_k8s_client, ResourceKind.PERSISTENT_VOLUME_CLAIM) == [
            "shared-nfs-pvc"
        ]

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_small_volume_claim_warns(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """An undersized claim is reported but not resized."""
        cluster.add(
            ResourceKind.PERSISTENT_VOLUME_CLAIM,
            "shared-nfs-pvc",
            make_pvc("shared-nfs-pvc", "5Gi"),
        )

        outcome = reconciler.apply_service(_app(volumes=(VolumeRequest(container_path="/data"),)))

        assert outcome.warnings == [
            "PersistentVolumeClaim 'shared-nfs-pvc' has 5Gi, 10Gi requested; "
            "volumes are not resized"
        ]
        pvc_patches = _patched(
            mock_k8s_client, ResourceKind.PERSISTENT_VOLUME_CLAIM, "shared-nfs-pvc"
        )
        assert pvc_patches == []

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_large_volume_claim_quiet(
        self, reconciler: WorkloadReconciler, cluster: FakeCluster
    ) -> None:
        """A claim at least as large as requested produces no warning."""
        cluster.add(
            ResourceKind.PERSISTENT_VOLUME_CLAIM,
            "shared-nfs-pvc",
            make_pvc("shared-nfs-pvc", "20Gi"),
        )

        outcome = reconciler.apply_service(_app(volumes=(VolumeRequest(container_path="/data"),)))

        assert outcome.warnings == []

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_database_volume_growth_warns(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """A larger data volume than the replica's claim holds is reported."""
        cluster.add(
            ResourceKind.PERSISTENT_VOLUME_CLAIM, "data-db-0", make_pvc("data-db-0", "10Gi")
        )
        settings = DatabaseSettings(type=DatabaseType.POSTGRESQL, volume_size="50Gi")

        outcome = reconciler.apply_service(_mysql(database=settings))

        assert outcome.warnings == [
            "PersistentVolumeClaim 'data-db-0' has 10Gi, 50Gi requested; volumes are not resized"
        ]
        assert _patched(mock_k8s_client, ResourceKind.PERSISTENT_VOLUME_CLAIM, "data-db-0") == []

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_database_volume_unchanged_quiet(
        self, reconciler: WorkloadReconciler, cluster: FakeCluster
    ) -> None:
        """A data claim of the requested size, or none yet, produces no warning."""
        assert reconciler.apply_service(_mysql()).warnings == []

        cluster.add(
            ResourceKind.PERSISTENT_VOLUME_CLAIM, "data-db-0", make_pvc("data-db-0", "10Gi")
        )

        assert reconciler.apply_service(_mysql()).warnings == []

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_reapply_removes_dropped_entries(
        self, reconciler: WorkloadReconciler, cluster: FakeCluster
    ) -> None:
        """Env vars, ports and mounts dropped from the descriptor leave the workload."""
        reconciler.apply_service(
            _app(
                env={"A": "1", "B": "2"},
                ports=(NetworkPort(container_port=8080), NetworkPort(container_port=9090)),
                volumes=(VolumeRequest(container_path="/data"),),
            )
        )

        reconciler.apply_service(_app(env={"B": "3"}))

        deployment = cluster.objects[(ResourceKind.DEPLOYMENT, "web")]
        pod_spec = deployment["spec"]["template"]["spec"]
        (container,) = pod_spec["containers"]
        assert container["env"] == [{"name": "B", "value": "3"}]
        assert [port["containerPort"] for port in container["ports"]] == [8080]
        assert "volumeMounts" not in container
        assert "volumes" not in pod_spec
        assert deployment == build_manifest(_app(env={"B": "3"})).workload.manifest

    @pytest.mark.unit
    @pytest.mark.kubernetes
    @pytest.mark.parametrize(
        "descriptor",
        [
            _app(
                env={"A": "1"},
                headless_service=True,
                volumes=(VolumeRequest(container_path="/data"),),
                ports=(
                    NetworkPort(
                        container_port=8080, service_port=80, domain=DomainBinding(prefix="shop")
                    ),
                ),
            ),
            _mysql(headless_service=True),
        ],
        ids=["application", "database"],
    )
    def test_concurrent_applies_converge(
        self,
        reconciler: WorkloadReconciler,
        mock_k8s_client: MagicMock,
        cluster: FakeCluster,
        descriptor: ServiceDescriptor,
    ) -> None:
        """A second apply that read before the first one wrote ends in the same objects."""
        first = reconciler.apply_service(descriptor)
        expected = {
            key: copy.deepcopy(obj) if isinstance(obj, dict) else obj
            for key, obj in cluster.objects.items()
        }

        # The racing apply saw every object as missing, then lost each create
        stale: set[tuple[ResourceKind, str]] = set()

        def get(kind: ResourceKind, name: str, namespace: str | None = None) -> Any:
            if kind != ResourceKind.NAMESPACE and (kind, name) not in stale:
                stale.add((kind, name))
                raise KubernetesNotFoundError(
                    resource_type=kind.value, resource_name=name, namespace=namespace
                )
            return cluster.get(kind, name, namespace)

        mock_k8s_client.get_resource.side_effect = get

        second = reconciler.apply_service(descriptor)

        assert second.steps == first.steps
        assert second.warnings == []
        assert cluster.objects == expected


# =============================================================================
# Patch builders
# =============================================================================


@pytest.mark.unit
@pytest.mark.kubernetes
class TestWorkloadPatch:
    """Tests for workload_patch."""

    def test_clears_removed_command(self) -> None:
        """Absent command and args are sent as null."""
        manifest = build_manifest(_app()).workload.manifest

        container = workload_patch(manifest)["spec"]["template"]["spec"]["containers"][0]

        assert container["command"] is None
        assert container["args"] is None
        assert container["image"] == "nginx:1.25"

    def test_leaves_out_selector(self) -> None:
        """Immutable fields are not patched."""
        manifest = build_manifest(_mysql()).workload.manifest

        patch = workload_patch(manifest)

        assert "selector" not in patch["spec"]
        assert "volumeClaimTemplates" not in patch["spec"]
        assert patch["metadata"]["labels"]["app"] == "db"

    def test_keeps_command(self) -> None:
        """A configured command is carried over."""
        manifest = build_manifest(_app(command="npm start")).workload.manifest

        container = workload_patch(manifest)["spec"]["template"]["spec"]["containers"][0]

        assert container["command"] == ["npm"]
        assert container["args"] == ["start"]

    def test_volumes_included(self) -> None:
        """Pod volumes are patched when present."""
        descriptor = _app(volumes=(VolumeRequest(container_path="/data"),))

        patch = workload_patch(build_manifest(descriptor).workload.manifest)

        volumes = patch["spec"]["template"]["spec"]["volumes"]
        assert volumes[0] == REPLACE_LIST_DIRECTIVE
        assert volumes[1]["name"] == "shared-volume"

    def test_owned_lists_replaced(self) -> None:
        """Env, ports and mounts replace the live lists instead of merging by key."""
        descriptor = _app(env={"A": "1"}, volumes=(VolumeRequest(container_path="/data"),))

        patch = workload_patch(build_manifest(descriptor).workload.manifest)

        container = patch["spec"]["template"]["spec"]["containers"][0]
        assert container["env"] == [REPLACE_LIST_DIRECTIVE, {"name": "A", "value": "1"}]
        assert container["ports"][0] == REPLACE_LIST_DIRECTIVE
        assert container["ports"][1]["containerPort"] == 8080
        assert container["volumeMounts"][0] == REPLACE_LIST_DIRECTIVE
        assert len(container["volumeMounts"]) == 2

    def test_absent_lists_sent_empty(self) -> None:
        """Lists the manifest omits are still sent, so live entries are cleared."""
        patch = workload_patch(build_manifest(_app(ports=())).workload.manifest)

        template_spec = patch["spec"]["template"]["spec"]
        container = template_spec["containers"][0]
        assert container["env"] == [REPLACE_LIST_DIRECTIVE]
        assert container["ports"] == [REPLACE_LIST_DIRECTIVE]
        assert container["volumeMounts"] == [REPLACE_LIST_DIRECTIVE]
        assert template_spec["volumes"] == [REPLACE_LIST_DIRECTIVE]


@pytest.mark.unit
@pytest.mark.kubernetes
class TestServicePatch:
    """Tests for service_patch."""

    def test_keeps_allocated_node_ports(self) -> None:
        """Allocated node ports survive a re-apply."""
        desired = build_manifest(_mysql()).service
        assert desired is not None
        existing = make_service("db", service_type="NodePort", ports=[(3306, 3306, 31234)])

        patch = service_patch(desired, existing)

        assert patch["spec"]["ports"][0] == REPLACE_LIST_DIRECTIVE
        assert patch["spec"]["ports"][1]["nodePort"] == 31234
        assert patch["spec"]["clusterIP"] == "10.96.0.10"
        assert "nodePort" not in desired["spec"]["ports"][0]

    def test_explicit_node_port_wins(self) -> None:
        """A requested node port is not overwritten."""
        port = NetworkPort(container_port=8080, service_port=80, node_port=30080)
        desired = build_manifest(_app(ports=(port,), service_type=ServiceType.NODE_PORT)).service
        assert desired is not None
        existing = make_service("web", service_type="NodePort", ports=[(80, 8080, 31000)])

        patch = service_patch(desired, existing)

        assert patch["spec"]["ports"][1]["nodePort"] == 30080

    def test_cluster_ip_ignores_node_ports(self) -> None:
        """ClusterIP Services never carry node ports."""
        desired = build_manifest(_app()).service
        assert desired is not None
        existing = make_service("web", service_type="NodePort", ports=[(80, 8080, 31000)])

        patch = service_patch(desired, existing)

        assert "nodePort" not in patch["spec"]["ports"][1]


# =============================================================================
# Lifecycle operations
# =============================================================================


class TestLifecycle:
    """Tests for scale, restart, stop, start and delete_service."""

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_scale_deployment(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Scaling patches the replica count."""
        cluster.add(ResourceKind.DEPLOYMENT, "web", make_deployment("web"))

        result = reconciler.scale("web", 4, "demo")

        assert result.success is True
        assert result.message == "Deployment 'web' scaled to 4 replicas"
        mock_k8s_client.patch_resource.assert_called_once_with(
            ResourceKind.DEPLOYMENT, "web", {"spec": {"replicas": 4}}, "demo"
        )

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_scale_falls_back_to_statefulset(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Services without a Deployment are looked up as StatefulSets."""
        cluster.add(ResourceKind.STATEFUL_SET, "db", make_statefulset("db"))

        reconciler.scale("db", 0, "demo")

        assert mock_k8s_client.patch_resource.call_args.args[0] == ResourceKind.STATEFUL_SET

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_scale_negative(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Negative replica counts are rejected before any call."""
        with pytest.raises(KubernetesValidationError) as exc_info:
            reconciler.scale("web", -1, "demo")

        assert exc_info.value.status_code == 400
        mock_k8s_client.get_resource.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_scale_missing_workload(
        self, reconciler: WorkloadReconciler, cluster: FakeCluster
    ) -> None:
        """A missing workload raises NotFound."""
        with pytest.raises(KubernetesNotFoundError) as exc_info:
            reconciler.scale("ghost", 1, "demo")

        assert exc_info.value.resource_type == "Workload"
        assert exc_info.value.resource_name == "ghost"

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_restart(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Restarting stamps the pod template."""
        cluster.add(ResourceKind.DEPLOYMENT, "web", make_deployment("web"))

        result = reconciler.restart("web", "demo")

        body = mock_k8s_client.patch_resource.call_args.args[2]
        annotations = body["spec"]["template"]["metadata"]["annotations"]
        assert RESTARTED_AT_ANNOTATION in annotations
        assert result.message == "Deployment 'web' restarted"

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_stop_records_replicas(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Stopping scales to zero and remembers the previous count."""
        cluster.add(ResourceKind.DEPLOYMENT, "web", make_deployment("web", replicas=3))

        reconciler.stop("web", "demo")

        mock_k8s_client.patch_resource.assert_called_once_with(
            ResourceKind.DEPLOYMENT,
            "web",
            {
                "spec": {"replicas": 0},
                "metadata": {"annotations": {ORIGINAL_REPLICAS_ANNOTATION: "3"}},
            },
            "demo",
        )

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_stop_already_stopped(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Stopping a stopped workload keeps the saved count."""
        cluster.add(
            ResourceKind.DEPLOYMENT,
            "web",
            make_deployment("web", replicas=0, annotations={ORIGINAL_REPLICAS_ANNOTATION: "3"}),
        )

        reconciler.stop("web", "demo")

        body = mock_k8s_client.patch_resource.call_args.args[2]
        assert body == {"spec": {"replicas": 0}}

    @pytest.mark.unit
    @pytest.mark.kubernetes
    @pytest.mark.parametrize(
        ("annotations", "expected"),
        [
            ({ORIGINAL_REPLICAS_ANNOTATION: "3"}, 3),
            (None, 1),
            ({ORIGINAL_REPLICAS_ANNOTATION: "0"}, 1),
            ({ORIGINAL_REPLICAS_ANNOTATION: "many"}, 1),
        ],
    )
    def test_start_restores(
        self,
        reconciler: WorkloadReconciler,
        mock_k8s_client: MagicMock,
        cluster: FakeCluster,
        annotations: dict[str, str] | None,
        expected: int,
    ) -> None:
        """Starting restores the saved count, defaulting to one."""
        cluster.add(
            ResourceKind.DEPLOYMENT,
            "web",
            make_deployment("web", replicas=0, annotations=annotations),
        )

        result = reconciler.start("web", "demo")

        mock_k8s_client.patch_resource.assert_called_once_with(
            ResourceKind.DEPLOYMENT, "web", {"spec": {"replicas": expected}}, "demo"
        )
        assert result.message == f"Deployment 'web' started with {expected} replicas"

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_delete_service(
        self, reconciler: WorkloadReconciler, mock_k8s_client: MagicMock, cluster: FakeCluster
    ) -> None:
        """Existing objects are deleted; missing ones are skipped."""
        cluster.add(ResourceKind.DEPLOYMENT, "web", make_deployment("web"))
        cluster.add(ResourceKind.SERVICE, "web", make_service("web"))
        cluster.add(ResourceKind.PERSISTENT_VOLUME_CLAIM, "shared-nfs-pvc", make_pvc("x", "1Gi"))

        result = reconciler.delete_service("web", "demo")

        assert result.success is True
        assert result.message == "Deleted Deployment/web, Service/web"
        assert (ResourceKind.PERSISTENT_VOLUME_CLAIM, "shared-nfs-pvc") in cluster.objects

    @pytest.mark.unit
    @pytest.mark.kubernetes
    def test_delete_nothing(self, reconciler: WorkloadReconciler, cluster: FakeCluster) -> None:
        """Deleting an absent service succeeds with nothing to do."""
        result = reconciler.delete_service("ghost", "demo")

        assert result.success is True
        assert result.message == "Nothing to delete for 'ghost'"
