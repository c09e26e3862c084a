"""Parsing of Kubernetes resource quantity strings."""

from __future__ import annotations

# Binary suffixes first so "Mi" is not read as "M"
_MEMORY_UNITS: tuple[tuple[str, int], ...] = (
    ("Ki", 1024),
    ("Mi", 1024**2),
    ("Gi", 1024**3),
    ("Ti", 1024**4),
    ("Pi", 1024**5),
    ("k", 1000),
    ("K", 1000),
    ("M", 1000**2),
    ("G", 1000**3),
    ("T", 1000**4),
    ("P", 1000**5),
)


def _to_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return 0.0


def parse_cpu_millicores(cpu: str | None) -> float:
    """Parse a CPU quantity into millicores.

    ``"250m"`` -> 250, ``"1"`` -> 1000, ``"1500000n"`` -> 1.5. Unparseable
    values count as 0.
    """
    if not cpu:
        return 0.0
    cpu = cpu.strip()
    if cpu.endswith("n"):
        return _to_float(cpu[:-1]) / 1_000_000
    if cpu.endswith("u"):
        return _to_float(cpu[:-1]) / 1000
    if cpu.endswith("m"):
        return _to_float(cpu[:-1])
    return _to_float(cpu) * 1000


def parse_memory_bytes(memory: str | None) -> float:
    """Parse a memory or storage quantity into bytes.

    Supports binary (``Ki``..``Pi``) and decimal (``k``/``K``..``P``)
    suffixes; a bare number is bytes. Unparseable values count as 0.
    """
    if not memory:
        return 0.0
    memory = memory.strip()
    for suffix, multiplier in _MEMORY_UNITS:
        if memory.endswith(suffix):
            return _to_float(memory[: -len(suffix)]) * multiplier
    return _to_float(memory)


def usage_percent(used: float, limit: float) -> float | None:
    """Usage as a percentage of the limit, one decimal place."""
    if limit <= 0:
        return None
    return round(used / limit * 100, 1)
