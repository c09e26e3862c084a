"""Kubernetes orchestration and workload introspection for project services."""

from workload_orchestrator.__version__ import __version__

__all__ = ["__version__"]
