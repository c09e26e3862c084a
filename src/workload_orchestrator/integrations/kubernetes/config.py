"""Kubernetes connection configuration models."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

_TRUE_VALUES = {"true", "1", "yes", "y", "on"}
_FALSE_VALUES = {"false", "0", "no", "n", "off"}


def parse_bool(value: str | None) -> bool | None:
    """Parse a boolean environment value.

    Returns None for unset or unrecognized values so callers can apply
    their own default.
    """
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return None


class KubernetesConnectionConfig(BaseModel):
    """Cluster credentials and request settings for the client adapter.

    Credentials are resolved by the client in priority order: inline
    kubeconfig data, API server plus bearer token, kubeconfig file, then
    in-cluster service account.
    """

    model_config = ConfigDict(extra="forbid")

    # (a) inline kubeconfig document, raw or base64
    kubeconfig_data: str | None = None

    # (b) explicit API server + token
    api_server: str | None = None
    bearer_token: str | None = None
    ca_cert_data: str | None = None
    skip_tls_verify: bool | None = None
    cluster_name: str = "workload-orchestrator-cluster"
    context_name: str | None = None
    cluster_user: str | None = None

    # (c) kubeconfig file
    kubeconfig_path: str | None = None
    context: str | None = None

    namespace: str = "default"
    request_timeout: float = 30.0
    exec_timeout: float = 120.0
    retry_attempts: int = 3
    domain_root: str = "apps.local"
    in_cluster_fallback: bool = True

    @field_validator("request_timeout", "exec_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout is positive."""
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        """Validate at least one attempt is made."""
        if v < 1:
            raise ValueError("retry_attempts must be at least 1")
        return v

    @field_validator("kubeconfig_path")
    @classmethod
    def validate_kubeconfig_path(cls, v: str | None) -> str | None:
        """Expand ~ in kubeconfig path."""
        if not v:
            return None
        return str(Path(v).expanduser())

    @field_validator("domain_root")
    @classmethod
    def validate_domain_root(cls, v: str) -> str:
        """Normalize the ingress domain root."""
        v = v.strip().strip(".").lower()
        if not v:
            raise ValueError("domain_root must not be empty")
        return v

    @field_validator(
        "kubeconfig_data", "api_server", "bearer_token", "ca_cert_data", "context", "context_name"
    )
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        """Treat blank strings as unset."""
        if v is None or not v.strip():
            return None
        return v.strip()

    @property
    def has_token_credentials(self) -> bool:
        """Whether API server and bearer token are both configured."""
        return bool(self.api_server and self.bearer_token)

    @classmethod
    def from_env(cls, base_config: dict[str, Any] | None = None) -> KubernetesConnectionConfig:
        """Create configuration with environment variable overrides.

        Environment variables take precedence over base_config values.

        Supported environment variables:
            KUBECONFIG_DATA: Inline kubeconfig document (YAML/JSON, optionally base64)
            K8S_API_SERVER: API server URL for token authentication
            K8S_BEARER_TOKEN: Bearer token for token authentication
            K8S_CA_CERT_DATA: CA certificate (PEM or base64 PEM)
            K8S_SKIP_TLS_VERIFY: Skip TLS verification (true/false)
            K8S_CLUSTER_NAME: Cluster name in the generated kubeconfig
            K8S_CONTEXT_NAME: Context name in the generated kubeconfig
            K8S_CLUSTER_USER: User name in the generated kubeconfig
            KUBECONFIG: Kubeconfig file path
            K8S_CONTEXT: Context to select from the kubeconfig
            K8S_NAMESPACE: Default namespace
            K8S_REQUEST_TIMEOUT: Per-request timeout in seconds
            K8S_EXEC_TIMEOUT: Exec deadline in seconds
            K8S_RETRY_ATTEMPTS: Attempts for transient connection errors
            K8S_DOMAIN_ROOT: Domain root for ingress hosts
        """
        config_dict = base_config.copy() if base_config else {}

        string_overrides = {
            "KUBECONFIG_DATA": "kubeconfig_data",
            "K8S_API_SERVER": "api_server",
            "K8S_BEARER_TOKEN": "bearer_token",
            "K8S_CA_CERT_DATA": "ca_cert_data",
            "K8S_CLUSTER_NAME": "cluster_name",
            "K8S_CONTEXT_NAME": "context_name",
            "K8S_CLUSTER_USER": "cluster_user",
            "KUBECONFIG": "kubeconfig_path",
            "K8S_CONTEXT": "context",
            "K8S_NAMESPACE": "namespace",
            "K8S_DOMAIN_ROOT": "domain_root",
        }
        for env_name, field_name in string_overrides.items():
            if value := os.environ.get(env_name):
                config_dict[field_name] = value

        if (skip_tls := parse_bool(os.environ.get("K8S_SKIP_TLS_VERIFY"))) is not None:
            config_dict["skip_tls_verify"] = skip_tls

        if timeout := os.environ.get("K8S_REQUEST_TIMEOUT"):
            config_dict["request_timeout"] = float(timeout)

        if exec_timeout := os.environ.get("K8S_EXEC_TIMEOUT"):
            config_dict["exec_timeout"] = float(exec_timeout)

        if retries := os.environ.get("K8S_RETRY_ATTEMPTS"):
            config_dict["retry_attempts"] = int(retries)

        return cls.model_validate(config_dict)
