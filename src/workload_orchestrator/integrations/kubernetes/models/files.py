"""Container filesystem and exec read models."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class FileKind(StrEnum):
    """Kind of a container filesystem entry."""

    FILE = "file"
    DIRECTORY = "directory"


class FileEntry(BaseModel):
    """One entry reconstructed from ``ls -la`` or ``find`` output."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    kind: FileKind
    size: int | None = None
    permissions: str | None = None
    modified: str | None = None

    @property
    def is_directory(self) -> bool:
        return self.kind == FileKind.DIRECTORY

    @property
    def is_hidden(self) -> bool:
        return self.name.startswith(".") and self.name != ".."


class ExecResult(BaseModel):
    """Captured output of a one-shot command run inside a container."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    stdout_bytes: bytes = Field(default=b"", repr=False, exclude=True)

    @classmethod
    def from_output(cls, stdout: bytes, stderr: bytes, exit_code: int) -> ExecResult:
        """Build from raw channel bytes, keeping stdout bytes for binary reads."""
        return cls(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=exit_code,
            stdout_bytes=stdout,
        )

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0
