"""Version information for workload_orchestrator."""

__version__ = "0.3.0"
