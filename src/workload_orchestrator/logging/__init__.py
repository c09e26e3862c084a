"""Logging configuration for workload_orchestrator."""

from workload_orchestrator.logging.config import configure_logging, get_logger

__all__ = ["configure_logging", "get_logger"]
