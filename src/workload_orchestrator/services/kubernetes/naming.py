"""DNS-safe naming for generated Kubernetes objects.

Every object name the orchestrator generates goes through these helpers, so
names are valid RFC 1123 labels no matter what the stored service record
contains.
"""

from __future__ import annotations

import re

DNS_LABEL_MAX_LENGTH = 63
# IANA_SVC_NAME limit for container port names
CONTAINER_PORT_NAME_MAX_LENGTH = 15
FALLBACK_NAME = "svc"

_INVALID_CHARS = re.compile(r"[^a-z0-9-]")
_DASH_RUNS = re.compile(r"-{2,}")
DNS_LABEL_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


def _clean(raw: str, max_length: int) -> str:
    name = _INVALID_CHARS.sub("-", raw.lower())
    name = _DASH_RUNS.sub("-", name).strip("-")
    return name[:max_length].rstrip("-")


def sanitize_resource_name(raw: str | None) -> str:
    """Turn arbitrary text into a valid DNS label.

    Lowercases, replaces every character outside ``[a-z0-9-]`` with ``-``,
    collapses dash runs, strips edge dashes and truncates to 63 characters.
    Empty results fall back to ``"svc"``.

    Args:
        raw: Any text, typically a user-entered service name.

    Returns:
        A name matching ``DNS_LABEL_PATTERN``.

    Example:
        >>> sanitize_resource_name("My Service!!")
        'my-service'
    """
    return _clean(raw or "", DNS_LABEL_MAX_LENGTH) or FALLBACK_NAME


def with_suffix(base: str | None, suffix: str, max_length: int = DNS_LABEL_MAX_LENGTH) -> str:
    """Append a suffix to a sanitized base, truncating the base to fit.

    Args:
        base: Base name, sanitized here.
        suffix: Suffix made of label characters, e.g. ``"-headless"``.
        max_length: Length budget of the final name.

    Returns:
        ``<base><suffix>`` within ``max_length`` characters.
    """
    suffix = _clean(suffix, max_length - 1)
    if not suffix:
        return sanitize_resource_name(base)[:max_length].rstrip("-") or FALLBACK_NAME
    budget = max_length - len(suffix) - 1
    base_name = _clean(base or "", budget) if budget > 0 else ""
    if not base_name:
        base_name = FALLBACK_NAME[: max(budget, 1)]
    return f"{base_name}-{suffix}"[:max_length]


def build_port_name(base: str | None, port: int, max_length: int = DNS_LABEL_MAX_LENGTH) -> str:
    """Build a port name ``<base>-<port>``.

    The suffix length is reserved from the budget before the base is
    truncated, so the port number is never cut off.

    Args:
        base: Base name (sanitized here; empty becomes ``svc``).
        port: Port number in [1, 65535].
        max_length: Length budget; 63 for Service ports, 15 for container ports.

    Returns:
        A non-empty valid label.

    Raises:
        ValueError: If the port is out of range.
    """
    if not 1 <= port <= 65535:
        raise ValueError(f"port must be in [1, 65535], got {port}")
    return with_suffix(base, str(port), max_length=max_length)


def indexed_port_name(
    prefix: str, port: int, index: int, max_length: int = DNS_LABEL_MAX_LENGTH
) -> str:
    """Build ``<prefix>-<port>-<index>``, e.g. ``port-8080-0``.

    Neither the port nor the index is ever truncated.
    """
    suffix = str(index)
    base = build_port_name(prefix, port, max_length=max_length - len(suffix) - 1)
    return with_suffix(base, suffix, max_length=max_length)


def headless_service_name(service_name: str) -> str:
    """Name of the headless companion Service."""
    return with_suffix(service_name, "headless")


def ingress_name(service_name: str) -> str:
    """Name of the service's Ingress."""
    return with_suffix(service_name, "ingress")


def config_map_name(service_name: str) -> str:
    """Name of the service's configuration ConfigMap."""
    return with_suffix(service_name, "config")


def data_claim_name(template_name: str, statefulset_name: str, ordinal: int = 0) -> str:
    """Name the StatefulSet controller gives a replica's volume claim."""
    return f"{template_name}-{statefulset_name}-{ordinal}"


def is_valid_label(name: str) -> bool:
    """Whether ``name`` is a valid DNS label."""
    return bool(DNS_LABEL_PATTERN.match(name))
