"""Kubernetes API client wrapper.

The single connection point of the orchestration core: resolves cluster
credentials, owns the API client instances, exposes namespace-scoped CRUD
verbs with retry and error translation, and provides the exec primitive
used by the container file manager.
"""

from __future__ import annotations

import base64
import binascii
import re
import time
from collections.abc import Callable, Sequence
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog
import yaml
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from workload_orchestrator.integrations.kubernetes.exceptions import (
    KubernetesAuthError,
    KubernetesConfigurationError,
    KubernetesConflictError,
    KubernetesConnectionError,
    KubernetesError,
    KubernetesNotFoundError,
    KubernetesTimeoutError,
    KubernetesValidationError,
)
from workload_orchestrator.integrations.kubernetes.models.files import ExecResult

if TYPE_CHECKING:
    from kubernetes.client import (
        ApiClient,
        AppsV1Api,
        Configuration,
        CoreV1Api,
        CustomObjectsApi,
        NetworkingV1Api,
        VersionApi,
    )

    from workload_orchestrator.integrations.kubernetes.config import (
        KubernetesConnectionConfig,
    )

logger = structlog.get_logger()

_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/=\s]+$")
_MIN_BASE64_LENGTH = 16


class ResourceKind(StrEnum):
    """Object kinds the adapter exposes CRUD verbs for."""

    NAMESPACE = "Namespace"
    DEPLOYMENT = "Deployment"
    STATEFUL_SET = "StatefulSet"
    SERVICE = "Service"
    CONFIG_MAP = "ConfigMap"
    PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
    INGRESS = "Ingress"
    POD = "Pod"
    EVENT = "Event"

    @property
    def namespaced(self) -> bool:
        return self is not ResourceKind.NAMESPACE


# kind -> (API group accessor, SDK method suffix)
_KIND_OPERATIONS: dict[ResourceKind, tuple[str, str]] = {
    ResourceKind.NAMESPACE: ("core_v1", "namespace"),
    ResourceKind.DEPLOYMENT: ("apps_v1", "namespaced_deployment"),
    ResourceKind.STATEFUL_SET: ("apps_v1", "namespaced_stateful_set"),
    ResourceKind.SERVICE: ("core_v1", "namespaced_service"),
    ResourceKind.CONFIG_MAP: ("core_v1", "namespaced_config_map"),
    ResourceKind.PERSISTENT_VOLUME_CLAIM: ("core_v1", "namespaced_persistent_volume_claim"),
    ResourceKind.INGRESS: ("networking_v1", "namespaced_ingress"),
    ResourceKind.POD: ("core_v1", "namespaced_pod"),
    ResourceKind.EVENT: ("core_v1", "namespaced_event"),
}


# =============================================================================
# Credential helpers
# =============================================================================


def decode_kubeconfig_data(raw: str) -> dict[str, Any]:
    """Parse an inline kubeconfig document.

    Accepts YAML or JSON text, or either of them base64 encoded. The base64
    form is only used when the decoded text looks like a kubeconfig.

    Args:
        raw: Kubeconfig document as provided in configuration.

    Returns:
        The kubeconfig as a dictionary.

    Raises:
        ValueError: If the document does not parse to a mapping.
    """
    text = raw.strip()
    if len(text) >= _MIN_BASE64_LENGTH and _BASE64_PATTERN.match(text):
        try:
            decoded = base64.b64decode("".join(text.split()), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            decoded = ""
        if "apiVersion:" in decoded or "clusters:" in decoded or decoded.lstrip().startswith("{"):
            text = decoded

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValueError(f"kubeconfig data is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("kubeconfig data must be a mapping")
    return data


def normalize_ca_data(value: str) -> str:
    """Return CA data base64 encoded, as kubeconfig ``certificate-authority-data`` expects."""
    value = value.strip()
    if "-----BEGIN" in value:
        return base64.b64encode(value.encode("utf-8")).decode("ascii")
    return "".join(value.split())


def build_token_kubeconfig(settings: KubernetesConnectionConfig) -> dict[str, Any]:
    """Build a kubeconfig document for API server + bearer token credentials.

    TLS verification is skipped when no CA data is configured and no explicit
    flag says otherwise.
    """
    cluster_name = settings.cluster_name
    context_name = settings.context_name or f"{cluster_name}-context"
    user_name = settings.cluster_user or f"{cluster_name}-user"

    cluster_entry: dict[str, Any] = {"server": settings.api_server}
    if settings.ca_cert_data:
        cluster_entry["certificate-authority-data"] = normalize_ca_data(settings.ca_cert_data)
    skip_tls = settings.skip_tls_verify
    if skip_tls is None:
        skip_tls = not settings.ca_cert_data
    if skip_tls:
        cluster_entry["insecure-skip-tls-verify"] = True

    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": cluster_name, "cluster": cluster_entry}],
        "users": [{"name": user_name, "user": {"token": settings.bearer_token}}],
        "contexts": [
            {
                "name": context_name,
                "context": {
                    "cluster": cluster_name,
                    "user": user_name,
                    "namespace": settings.namespace,
                },
            }
        ],
        "current-context": context_name,
        "preferences": {},
    }


def extract_exit_code(status: dict[str, Any] | None) -> int:
    """Derive a process exit code from the exec status channel payload.

    ``Success`` maps to 0, an ``ExitCode`` cause to its integer value, and
    any other failure to 1. A missing status is never a success: the stream
    closed before the process reported, so the outcome is unknown.
    """
    if not status:
        return 1
    if status.get("status") == "Success":
        return 0
    causes = (status.get("details") or {}).get("causes") or []
    for cause in causes:
        if cause.get("reason") == "ExitCode":
            try:
                return int(cause.get("message", 1))
            except (TypeError, ValueError):
                return 1
    return 1


def _as_bytes(data: bytes | str | None) -> bytes:
    if not data:
        return b""
    if isinstance(data, str):
        return data.encode("utf-8")
    return data


class KubernetesClient:
    """Kubernetes API client adapter.

    Wraps the official kubernetes Python client with:
    - Credential resolution from inline kubeconfig, token, kubeconfig file
      or in-cluster service account, in that order
    - A dedicated ApiClient (no process-global kubernetes configuration)
    - Lazy API group initialization
    - Namespace-scoped CRUD verbs with retry and error translation
    - A one-shot exec primitive
    - Context manager support

    Example:
        ```python
        from workload_orchestrator.integrations.kubernetes import KubernetesClient
        from workload_orchestrator.integrations.kubernetes.config import (
            KubernetesConnectionConfig,
        )

        config = KubernetesConnectionConfig.from_env()
        with KubernetesClient(config) as client:
            pods = client.list_resources(ResourceKind.POD, "demo", label_selector="app=web")
        ```
    """

    def __init__(self, connection_config: KubernetesConnectionConfig) -> None:
        """Initialize Kubernetes client from connection config.

        Args:
            connection_config: Credentials and request settings.

        Raises:
            KubernetesConfigurationError: If no credential source resolves.
        """
        self._config = connection_config
        self._retries = connection_config.retry_attempts
        self._credential_source: str | None = None
        self._configuration: Configuration | None = None
        self._api_client: ApiClient | None = None
        self._stream_api_client: ApiClient | None = None

        # Lazy-loaded API group instances
        self._core_v1: CoreV1Api | None = None
        self._stream_core_v1: CoreV1Api | None = None
        self._apps_v1: AppsV1Api | None = None
        self._networking_v1: NetworkingV1Api | None = None
        self._custom_objects: CustomObjectsApi | None = None
        self._version_api: VersionApi | None = None

        self._load_config()

        logger.info(
            "kubernetes_client_initialized",
            credential_source=self._credential_source,
            default_namespace=connection_config.namespace,
        )

    def _load_config(self) -> None:
        """Resolve credentials into a dedicated client configuration."""
        from kubernetes import client, config
        from kubernetes.config import ConfigException

        configuration = client.Configuration()
        settings = self._config

        try:
            if settings.kubeconfig_data:
                config.load_kube_config_from_dict(
                    decode_kubeconfig_data(settings.kubeconfig_data),
                    context=settings.context,
                    client_configuration=configuration,
                )
                self._credential_source = "kubeconfig_data"
            elif settings.has_token_credentials:
                config.load_kube_config_from_dict(
                    build_token_kubeconfig(settings),
                    client_configuration=configuration,
                )
                self._credential_source = "token"
            else:
                if settings.api_server or settings.bearer_token:
                    logger.warning(
                        "incomplete_token_credentials",
                        has_api_server=bool(settings.api_server),
                        has_token=bool(settings.bearer_token),
                    )
                self._load_ambient_config(configuration)
        except (ConfigException, ValueError, TypeError) as e:
            raise KubernetesConfigurationError(
                message=f"Cannot load Kubernetes configuration: {e}",
                original_error=e,
            ) from e

        self._configuration = configuration
        self._invalidate_api_cache()
        logger.debug("loaded_kubernetes_config", source=self._credential_source)

    def _load_ambient_config(self, configuration: Configuration) -> None:
        """Load a kubeconfig file, falling back to in-cluster config."""
        from kubernetes import config
        from kubernetes.config import ConfigException

        try:
            config.load_kube_config(
                config_file=self._config.kubeconfig_path,
                context=self._config.context,
                client_configuration=configuration,
            )
            self._credential_source = "kubeconfig"
            return
        except (ConfigException, FileNotFoundError) as e:
            if not self._config.in_cluster_fallback:
                raise ConfigException(str(e)) from e
            logger.debug("kubeconfig_unavailable", error=str(e))

        try:
            config.load_incluster_config(client_configuration=configuration)
        except ConfigException as e:
            raise ConfigException(
                "no kubeconfig data, token credentials, kubeconfig file or in-cluster config"
            ) from e
        self._credential_source = "in-cluster"

    def _invalidate_api_cache(self) -> None:
        """Clear cached API group instances."""
        self._api_client = None
        self._stream_api_client = None
        self._core_v1 = None
        self._stream_core_v1 = None
        self._apps_v1 = None
        self._networking_v1 = None
        self._custom_objects = None
        self._version_api = None

    # =========================================================================
    # Lazy API Group Accessors
    # =========================================================================

    @property
    def api_client(self) -> ApiClient:
        """Shared ApiClient for request/response calls."""
        if self._api_client is None:
            from kubernetes.client import ApiClient

            self._api_client = ApiClient(self._configuration)
        return self._api_client

    @property
    def core_v1(self) -> CoreV1Api:
        """Get CoreV1Api instance (pods, services, namespaces, configmaps, events, pvcs)."""
        if self._core_v1 is None:
            from kubernetes.client import CoreV1Api

            self._core_v1 = CoreV1Api(self.api_client)
        return self._core_v1

    @property
    def stream_core_v1(self) -> CoreV1Api:
        """CoreV1Api bound to its own ApiClient for websocket exec.

        ``kubernetes.stream.stream`` swaps the request function of the
        ApiClient it is given while the call runs.
        """
        if self._stream_core_v1 is None:
            from kubernetes.client import ApiClient, CoreV1Api

            self._stream_api_client = ApiClient(self._configuration)
            self._stream_core_v1 = CoreV1Api(self._stream_api_client)
        return self._stream_core_v1

    @property
    def apps_v1(self) -> AppsV1Api:
        """Get AppsV1Api instance (deployments, statefulsets)."""
        if self._apps_v1 is None:
            from kubernetes.client import AppsV1Api

            self._apps_v1 = AppsV1Api(self.api_client)
        return self._apps_v1

    @property
    def networking_v1(self) -> NetworkingV1Api:
        """Get NetworkingV1Api instance (ingresses)."""
        if self._networking_v1 is None:
            from kubernetes.client import NetworkingV1Api

            self._networking_v1 = NetworkingV1Api(self.api_client)
        return self._networking_v1

    @property
    def custom_objects(self) -> CustomObjectsApi:
        """Get CustomObjectsApi instance (metrics.k8s.io)."""
        if self._custom_objects is None:
            from kubernetes.client import CustomObjectsApi

            self._custom_objects = CustomObjectsApi(self.api_client)
        return self._custom_objects

    @property
    def version_api(self) -> VersionApi:
        """Get VersionApi instance for cluster version info."""
        if self._version_api is None:
            from kubernetes.client import VersionApi

            self._version_api = VersionApi(self.api_client)
        return self._version_api

    # =========================================================================
    # CRUD Verbs
    # =========================================================================

    def _operation(self, verb: str, kind: ResourceKind) -> Callable[..., Any]:
        api_attr, suffix = _KIND_OPERATIONS[kind]
        return getattr(getattr(self, api_attr), f"{verb}_{suffix}")

    def _invoke(
        self,
        operation: Callable[..., Any],
        kind: ResourceKind,
        name: str | None,
        namespace: str | None,
        **kwargs: Any,
    ) -> Any:
        """Call an SDK operation with timeout, retry and error translation."""

        @self.make_retry_decorator()
        def _call() -> Any:
            try:
                return operation(_request_timeout=self.timeout, **kwargs)
            except Exception as e:
                raise self.translate_api_exception(
                    e,
                    resource_type=kind.value,
                    resource_name=name,
                    namespace=namespace,
                ) from e

        return _call()

    def _scope(self, kind: ResourceKind, namespace: str | None) -> dict[str, str]:
        if not kind.namespaced:
            return {}
        return {"namespace": namespace or self.default_namespace}

    def get_resource(self, kind: ResourceKind, name: str, namespace: str | None = None) -> Any:
        """Read one object.

        Raises:
            KubernetesNotFoundError: If the object does not exist.
        """
        scope = self._scope(kind, namespace)
        return self._invoke(
            self._operation("read", kind), kind, name, scope.get("namespace"), name=name, **scope
        )

    def list_resources(
        self,
        kind: ResourceKind,
        namespace: str | None = None,
        *,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> list[Any]:
        """List objects, optionally filtered by label/field selector.

        Returns:
            The ``items`` of the list response.
        """
        scope = self._scope(kind, namespace)
        kwargs: dict[str, Any] = dict(scope)
        if label_selector:
            kwargs["label_selector"] = label_selector
        if field_selector:
            kwargs["field_selector"] = field_selector
        result = self._invoke(
            self._operation("list", kind), kind, None, scope.get("namespace"), **kwargs
        )
        return list(getattr(result, "items", None) or [])

    def create_resource(
        self, kind: ResourceKind, body: dict[str, Any], namespace: str | None = None
    ) -> Any:
        """Create an object from a manifest dict.

        Raises:
            KubernetesConflictError: If the object already exists.
        """
        scope = self._scope(kind, namespace)
        name = (body.get("metadata") or {}).get("name")
        return self._invoke(
            self._operation("create", kind), kind, name, scope.get("namespace"), body=body, **scope
        )

    def patch_resource(
        self,
        kind: ResourceKind,
        name: str,
        body: dict[str, Any],
        namespace: str | None = None,
    ) -> Any:
        """Strategic-merge patch an object with a partial manifest dict."""
        scope = self._scope(kind, namespace)
        return self._invoke(
            self._operation("patch", kind),
            kind,
            name,
            scope.get("namespace"),
            name=name,
            body=body,
            **scope,
        )

    def delete_resource(self, kind: ResourceKind, name: str, namespace: str | None = None) -> Any:
        """Delete an object.

        Raises:
            KubernetesNotFoundError: If the object does not exist.
        """
        scope = self._scope(kind, namespace)
        return self._invoke(
            self._operation("delete", kind), kind, name, scope.get("namespace"), name=name, **scope
        )

    # =========================================================================
    # Exec
    # =========================================================================

    def run_in_container(
        self,
        namespace: str,
        pod_name: str,
        container: str | None,
        command: Sequence[str],
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run a command in a container and capture its output.

        The command is passed as an argv list; nothing is interpreted by a
        shell unless the caller runs one explicitly. No TTY is allocated.

        Args:
            namespace: Pod namespace.
            pod_name: Pod name.
            container: Container name, or None for the pod's default.
            command: Argv of the command to run.
            stdin: Optional payload written to the command's standard input.
            timeout: Deadline in seconds (defaults to ``exec_timeout``).

        Returns:
            Captured stdout, stderr and exit code.

        Raises:
            KubernetesTimeoutError: If the command outlives the deadline.
            KubernetesConnectionError: If the stream breaks or closes before
                the command reports its exit status.
            KubernetesError: If the exec connection cannot be established.
        """
        from kubernetes.stream import stream
        from kubernetes.stream.ws_client import ERROR_CHANNEL

        deadline = timeout or self._config.exec_timeout
        kwargs: dict[str, Any] = {
            "command": list(command),
            "stdin": stdin is not None,
            "stdout": True,
            "stderr": True,
            "tty": False,
            "binary": True,
            "_preload_content": False,
        }
        if container:
            kwargs["container"] = container

        try:
            ws_client = stream(
                self.stream_core_v1.connect_get_namespaced_pod_exec,
                pod_name,
                namespace,
                **kwargs,
            )
        except Exception as e:
            raise self.translate_api_exception(e, "Pod", pod_name, namespace) from e

        stdout = bytearray()
        stderr = bytearray()
        started = time.monotonic()
        try:
            if stdin is not None:
                ws_client.write_stdin(stdin)

            while ws_client.is_open():
                remaining = deadline - (time.monotonic() - started)
                if remaining <= 0:
                    raise KubernetesTimeoutError(
                        message=f"Command in pod '{pod_name}' did not finish",
                        timeout_seconds=deadline,
                    )
                ws_client.update(timeout=min(remaining, 1.0))
                if ws_client.peek_stdout():
                    stdout += _as_bytes(ws_client.read_stdout())
                if ws_client.peek_stderr():
                    stderr += _as_bytes(ws_client.read_stderr())

            # Frames that arrived together with the close
            if ws_client.peek_stdout():
                stdout += _as_bytes(ws_client.read_stdout())
            if ws_client.peek_stderr():
                stderr += _as_bytes(ws_client.read_stderr())

            status_payload = _as_bytes(ws_client.read_channel(ERROR_CHANNEL))
        except KubernetesError:
            raise
        except Exception as e:
            raise KubernetesConnectionError(
                message=f"Exec stream to pod '{pod_name}' failed: {e}",
                original_error=e,
            ) from e
        finally:
            ws_client.close()

        status = None
        if status_payload:
            status = yaml.safe_load(status_payload.decode("utf-8", errors="replace"))
        if not isinstance(status, dict):
            raise KubernetesConnectionError(
                message=f"Exec stream to pod '{pod_name}' closed without status"
            )
        exit_code = extract_exit_code(status)
        logger.debug(
            "exec_completed",
            pod=pod_name,
            namespace=namespace,
            container=container,
            exit_code=exit_code,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return ExecResult.from_output(bytes(stdout), bytes(stderr), exit_code)

    # =========================================================================
    # Error Translation
    # =========================================================================

    @staticmethod
    def translate_api_exception(
        e: Exception,
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> KubernetesError:
        """Translate a kubernetes client exception to a custom exception.

        Args:
            e: The original exception.
            resource_type: Type of resource being operated on.
            resource_name: Name of the resource.
            namespace: Namespace of the resource.

        Returns:
            An appropriate KubernetesError subclass.
        """
        from kubernetes.client import ApiException
        from urllib3.exceptions import HTTPError as Urllib3HTTPError
        from urllib3.exceptions import TimeoutError as Urllib3TimeoutError

        if isinstance(e, KubernetesError):
            return e

        if isinstance(e, Urllib3TimeoutError):
            return KubernetesTimeoutError(message=f"Request to Kubernetes API timed out: {e}")

        if isinstance(e, (Urllib3HTTPError, ConnectionError)):
            return KubernetesConnectionError(
                message=f"Cannot reach Kubernetes API: {e}",
                original_error=e,
            )

        if not isinstance(e, ApiException):
            return KubernetesError(
                message=str(e),
                resource_type=resource_type,
                resource_name=resource_name,
                namespace=namespace,
            )

        status = e.status

        if not status:
            return KubernetesConnectionError(
                message=e.reason or "Kubernetes API request failed",
                original_error=e,
            )

        if status in (401, 403):
            return KubernetesAuthError(
                message=e.reason or "Authentication/authorization failed",
                status_code=status,
                reason=e.reason,
            )

        if status == 404:
            return KubernetesNotFoundError(
                resource_type=resource_type,
                resource_name=resource_name,
                namespace=namespace,
            )

        if status == 409:
            return KubernetesConflictError(
                resource_type=resource_type,
                resource_name=resource_name,
                namespace=namespace,
            )

        if status in (400, 422):
            return KubernetesValidationError(
                message=e.reason or "Validation failed",
                status_code=status,
            )

        if status in (502, 503, 504):
            return KubernetesConnectionError(
                message=e.reason or f"Kubernetes API unavailable: {status}",
                original_error=e,
            )

        return KubernetesError(
            message=e.reason or f"Kubernetes API error: {status}",
            status_code=status,
            resource_type=resource_type,
            resource_name=resource_name,
            namespace=namespace,
        )

    # =========================================================================
    # Retry Decorator
    # =========================================================================

    def make_retry_decorator(self) -> Any:
        """Create a retry decorator for transient connection errors.

        Returns:
            A tenacity retry decorator configured with exponential backoff.
        """
        return retry(
            retry=retry_if_exception_type(KubernetesConnectionError),
            stop=stop_after_attempt(self._retries),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            reraise=True,
        )

    # =========================================================================
    # Connection Check
    # =========================================================================

    def check_connection(self) -> bool:
        """Check if connection to the Kubernetes API server is working.

        Returns:
            True if connection is successful, False otherwise.
        """
        try:
            self.version_api.get_code(_request_timeout=self.timeout)
            return True
        except Exception as e:
            logger.warning("kubernetes_connection_check_failed", error=str(e))
            return False

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def default_namespace(self) -> str:
        """Get the default namespace from config."""
        return self._config.namespace

    @property
    def timeout(self) -> float:
        """Get the per-request timeout in seconds."""
        return self._config.request_timeout

    @property
    def domain_root(self) -> str:
        """Domain root used for ingress hosts."""
        return self._config.domain_root

    @property
    def credential_source(self) -> str | None:
        """Which credential source was used (kubeconfig_data, token, kubeconfig, in-cluster)."""
        return self._credential_source

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Close the client and release pooled connections."""
        for api_client in (self._api_client, self._stream_api_client):
            if api_client is not None:
                api_client.close()
        self._invalidate_api_cache()
        logger.debug("kubernetes_client_closed")

    def __enter__(self) -> KubernetesClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        self.close()
