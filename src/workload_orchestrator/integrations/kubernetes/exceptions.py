"""Kubernetes integration custom exceptions.

Hierarchy::

    KubernetesError
    ├── KubernetesConfigurationError      no usable cluster credentials
    ├── KubernetesTransportError          network/auth failure, retryable
    │   ├── KubernetesConnectionError
    │   ├── KubernetesAuthError
    │   └── KubernetesTimeoutError
    ├── KubernetesNotFoundError           object does not exist
    │   └── NoPodFoundError
    ├── KubernetesConflictError
    ├── KubernetesValidationError
    ├── ReconcileStepError                one apply_service step failed
    └── K8sFileError                      exec-based file operation failed
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class KubernetesError(Exception):
    """Base exception for Kubernetes operations.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status code from Kubernetes API (if applicable).
        resource_type: Type of resource involved (e.g., "Pod", "Deployment").
        resource_name: Name of the resource involved.
        namespace: Namespace of the resource (if applicable).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> None:
        """Initialize KubernetesError.

        Args:
            message: Human-readable error message.
            status_code: HTTP status code from Kubernetes API.
            resource_type: Type of resource involved.
            resource_name: Name of the resource involved.
            namespace: Namespace of the resource.
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.resource_type = resource_type
        self.resource_name = resource_name
        self.namespace = namespace

    def __str__(self) -> str:
        """Return string representation of the error."""
        parts = [self.message]
        if self.status_code:
            parts.append(f"(status: {self.status_code})")
        if self.resource_type and self.resource_name:
            loc = f"[{self.resource_type}/{self.resource_name}"
            if self.namespace:
                loc += f" in {self.namespace}"
            loc += "]"
            parts.append(loc)
        return " ".join(parts)


class KubernetesConfigurationError(KubernetesError):
    """Exception raised when no usable cluster credentials can be resolved.

    Not retryable: an operator has to fix the process configuration.
    """

    def __init__(
        self,
        message: str = "No usable Kubernetes configuration found",
        original_error: Exception | None = None,
    ) -> None:
        """Initialize KubernetesConfigurationError.

        Args:
            message: Human-readable error message.
            original_error: The original exception that caused this error.
        """
        super().__init__(message=message)
        self.original_error = original_error


class KubernetesTransportError(KubernetesError):
    """Exception raised when talking to the API server fails.

    Covers network, authentication and timeout failures. Callers may retry
    these with backoff.
    """


class KubernetesConnectionError(KubernetesTransportError):
    """Exception raised when connection to a Kubernetes cluster fails.

    This includes network errors and unreachable API servers.
    """

    def __init__(
        self,
        message: str = "Failed to connect to Kubernetes cluster",
        original_error: Exception | None = None,
    ) -> None:
        """Initialize KubernetesConnectionError.

        Args:
            message: Human-readable error message.
            original_error: The original exception that caused this error.
        """
        super().__init__(message=message)
        self.original_error = original_error


class KubernetesAuthError(KubernetesTransportError):
    """Exception raised when authentication or authorization fails (401/403)."""

    def __init__(
        self,
        message: str = "Kubernetes authentication/authorization failed",
        status_code: int | None = 401,
        reason: str | None = None,
    ) -> None:
        """Initialize KubernetesAuthError.

        Args:
            message: Human-readable error message.
            status_code: HTTP status code (usually 401 or 403).
            reason: Kubernetes API reason string.
        """
        super().__init__(message=message, status_code=status_code)
        self.reason = reason


class KubernetesTimeoutError(KubernetesTransportError):
    """Exception raised when a Kubernetes operation exceeds its deadline."""

    def __init__(
        self,
        message: str = "Kubernetes operation timed out",
        timeout_seconds: float | None = None,
    ) -> None:
        """Initialize KubernetesTimeoutError.

        Args:
            message: Human-readable error message.
            timeout_seconds: The timeout value that was exceeded.
        """
        if timeout_seconds:
            message = f"{message} (after {timeout_seconds:g}s)"
        super().__init__(message=message)
        self.timeout_seconds = timeout_seconds


class KubernetesNotFoundError(KubernetesError):
    """Exception raised when a requested Kubernetes resource is not found.

    This is typically a 404 response from the Kubernetes API. Route layers
    render it as "not deployed yet" rather than as a failure.
    """

    def __init__(
        self,
        message: str = "Kubernetes resource not found",
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> None:
        """Initialize KubernetesNotFoundError.

        Args:
            message: Human-readable error message.
            resource_type: Type of resource (e.g., "Pod", "Deployment").
            resource_name: Name of the resource.
            namespace: Namespace of the resource.
        """
        if resource_type and resource_name:
            message = f"{resource_type} '{resource_name}' not found"
            if namespace:
                message += f" in namespace '{namespace}'"
        super().__init__(
            message=message,
            status_code=404,
            resource_type=resource_type,
            resource_name=resource_name,
            namespace=namespace,
        )


class NoPodFoundError(KubernetesNotFoundError):
    """Exception raised when a service's label selector matches zero pods."""

    def __init__(self, service_name: str, namespace: str | None = None) -> None:
        """Initialize NoPodFoundError.

        Args:
            service_name: Service whose ``app=<name>`` selector matched nothing.
            namespace: Namespace that was searched.
        """
        message = f"No pod found for service '{service_name}'"
        if namespace:
            message += f" in namespace '{namespace}'"
        super().__init__(message=message, namespace=namespace)
        self.service_name = service_name


class KubernetesValidationError(KubernetesError):
    """Exception raised when Kubernetes API rejects invalid resource specs (400/422)."""

    def __init__(
        self,
        message: str = "Invalid resource specification",
        validation_errors: dict[str, Any] | None = None,
        status_code: int | None = 422,
    ) -> None:
        """Initialize KubernetesValidationError.

        Args:
            message: Human-readable error message.
            validation_errors: Specific field validation errors.
            status_code: HTTP status code (usually 400 or 422).
        """
        super().__init__(message=message, status_code=status_code)
        self.validation_errors = validation_errors or {}


class KubernetesConflictError(KubernetesError):
    """Exception raised when a resource conflict occurs (409)."""

    def __init__(
        self,
        message: str = "Resource conflict",
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> None:
        """Initialize KubernetesConflictError.

        Args:
            message: Human-readable error message.
            resource_type: Type of resource.
            resource_name: Name of the resource.
            namespace: Namespace of the resource.
        """
        if resource_type and resource_name:
            message = f"{resource_type} '{resource_name}' already exists"
            if namespace:
                message += f" in namespace '{namespace}'"
        super().__init__(
            message=message,
            status_code=409,
            resource_type=resource_type,
            resource_name=resource_name,
            namespace=namespace,
        )


class ReconcileStepError(KubernetesError):
    """Exception raised when one step of ``apply_service`` fails.

    Steps completed before the failure are left in place.

    Attributes:
        step: Name of the failed step (namespace, storage, config, workload, network).
        cause: The underlying error.
        completed_steps: Steps that finished before the failure.
    """

    def __init__(
        self,
        step: str,
        cause: Exception,
        completed_steps: list[str] | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> None:
        """Initialize ReconcileStepError.

        Args:
            step: Name of the step that failed.
            cause: The underlying error.
            completed_steps: Steps that finished before this one.
            resource_name: Service being reconciled.
            namespace: Target namespace.
        """
        cause_message = getattr(cause, "message", None) or str(cause)
        super().__init__(
            message=f"Reconcile step '{step}' failed: {cause_message}",
            status_code=getattr(cause, "status_code", None),
            resource_type="Service",
            resource_name=resource_name,
            namespace=namespace,
        )
        self.step = step
        self.cause = cause
        self.completed_steps = list(completed_steps or [])


class FileErrorKind(StrEnum):
    """Classification of an exec-based file operation failure."""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    IS_DIRECTORY = "is_directory"
    NOT_A_DIRECTORY = "not_a_directory"
    INVALID_PATH = "invalid_path"
    TOO_LARGE = "too_large"
    UNKNOWN = "unknown"


class K8sFileError(KubernetesError):
    """Exception raised when a file operation inside a container fails.

    The kind is derived from the remote command's exit code and stderr.
    """

    def __init__(
        self,
        kind: FileErrorKind,
        message: str,
        path: str | None = None,
        stderr: str | None = None,
    ) -> None:
        """Initialize K8sFileError.

        Args:
            kind: Failure classification.
            message: Human-readable error message.
            path: Container path involved.
            stderr: Raw stderr from the remote command.
        """
        status_code = {
            FileErrorKind.NOT_FOUND: 404,
            FileErrorKind.PERMISSION_DENIED: 403,
            FileErrorKind.INVALID_PATH: 400,
            FileErrorKind.TOO_LARGE: 413,
        }.get(kind)
        super().__init__(message=message, status_code=status_code)
        self.kind = kind
        self.path = path
        self.stderr = stderr
