"""Container file access over one-shot exec.

There is no SFTP or agent in the container: directory listings, reads,
writes and searches are ordinary commands (``ls``, ``cat``, ``head``/``tee``,
``find``) run through the exec primitive, with their text output parsed back
into ``FileEntry`` models. Every command is an argv list; user-supplied paths
are never spliced into a shell string.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import TYPE_CHECKING

from workload_orchestrator.integrations.kubernetes.exceptions import (
    FileErrorKind,
    K8sFileError,
    NoPodFoundError,
)
from workload_orchestrator.integrations.kubernetes.models.files import (
    ExecResult,
    FileEntry,
    FileKind,
)
from workload_orchestrator.services.kubernetes.base import K8sBaseManager, primary_container
from workload_orchestrator.services.kubernetes.naming import sanitize_resource_name

if TYPE_CHECKING:
    from workload_orchestrator.integrations.kubernetes.client import KubernetesClient

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
ROOT_PATH = "/"
PARENT_ENTRY_NAME = ".."
PARENT_ENTRY_PERMISSIONS = "drwxr-xr-x"
LS_MIN_FIELDS = 9
SYMLINK_ARROW = " -> "
# $0 = byte count, $1 = target path; the payload arrives on stdin
WRITE_SCRIPT = 'head -c "$0" | tee "$1" >/dev/null'

_STDERR_KINDS: tuple[tuple[str, FileErrorKind], ...] = (
    ("No such file or directory", FileErrorKind.NOT_FOUND),
    ("Permission denied", FileErrorKind.PERMISSION_DENIED),
    ("Is a directory", FileErrorKind.IS_DIRECTORY),
    ("Not a directory", FileErrorKind.NOT_A_DIRECTORY),
)


# ---------------------------------------------------------------------------
# Path Helpers
# ---------------------------------------------------------------------------


def _has_control_chars(text: str) -> bool:
    return any(ord(char) < 32 or ord(char) == 127 for char in text)


def normalize_path(path: str | None) -> str:
    """Absolute, normalized POSIX path; empty means ``/``.

    Raises:
        K8sFileError: ``INVALID_PATH`` if the path contains control characters.
    """
    raw = path or ""
    if _has_control_chars(raw):
        raise K8sFileError(
            FileErrorKind.INVALID_PATH, "Path contains control characters", path=repr(raw)
        )
    raw = raw.strip()
    if not raw:
        return ROOT_PATH
    return posixpath.normpath(ROOT_PATH + raw.lstrip("/"))


def parent_path(path: str) -> str:
    """Parent directory of a path, ``/`` for the root itself."""
    normalized = normalize_path(path)
    if normalized == ROOT_PATH:
        return ROOT_PATH
    return posixpath.dirname(normalized) or ROOT_PATH


def join_path(directory: str, name: str) -> str:
    """Join a directory and an entry name into an absolute path."""
    return posixpath.join(normalize_path(directory), name)


def validate_file_name(name: str | None) -> str:
    """Check a bare file name for upload.

    Raises:
        K8sFileError: ``INVALID_PATH`` for empty names, ``.``/``..``, or names
            containing ``/`` or control characters (NUL, newline, ...).
    """
    if not name or not name.strip():
        raise K8sFileError(FileErrorKind.INVALID_PATH, "File name is empty")
    if name in (".", PARENT_ENTRY_NAME):
        raise K8sFileError(FileErrorKind.INVALID_PATH, f"Invalid file name: {name}")
    if "/" in name or _has_control_chars(name):
        raise K8sFileError(
            FileErrorKind.INVALID_PATH,
            "File name must not contain '/' or control characters",
            path=repr(name),
        )
    return name


def classify_file_error(stderr: str | None) -> FileErrorKind:
    """Map command stderr to a failure kind."""
    text = stderr or ""
    for marker, kind in _STDERR_KINDS:
        if marker in text:
            return kind
    return FileErrorKind.UNKNOWN


# ---------------------------------------------------------------------------
# Output Parsers
# ---------------------------------------------------------------------------


def parse_ls_output(output: str, path: str) -> list[FileEntry]:
    """Parse ``ls -la`` output for a directory.

    Blank lines, the ``total N`` line and lines with fewer than nine fields
    are skipped. The name is every field from the ninth on; for symlinks
    only the part before `` -> `` is kept. ``.`` and ``..`` are dropped and,
    outside the root, a synthetic ``..`` entry pointing at the parent is
    placed first.

    Args:
        output: Raw stdout of ``ls -la <path>``.
        path: Directory that was listed.

    Returns:
        Entries in listing order.
    """
    directory = normalize_path(path)
    entries: list[FileEntry] = []
    if directory != ROOT_PATH:
        entries.append(
            FileEntry(
                name=PARENT_ENTRY_NAME,
                path=parent_path(directory),
                kind=FileKind.DIRECTORY,
                permissions=PARENT_ENTRY_PERMISSIONS,
            )
        )

    for line in output.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("total "):
            continue
        fields = stripped.split()
        if len(fields) < LS_MIN_FIELDS:
            continue

        permissions = fields[0]
        name = " ".join(fields[8:])
        if permissions.startswith("l") and SYMLINK_ARROW in name:
            name = name.split(SYMLINK_ARROW, 1)[0]
        if name in (".", PARENT_ENTRY_NAME):
            continue

        try:
            size: int | None = int(fields[4])
        except ValueError:
            size = None

        entries.append(
            FileEntry(
                name=name,
                path=posixpath.join(directory, name),
                kind=FileKind.DIRECTORY if permissions.startswith("d") else FileKind.FILE,
                size=size,
                permissions=permissions,
                modified=" ".join(fields[5:8]),
            )
        )
    return entries


def parse_find_output(output: str) -> list[FileEntry]:
    """One file entry per non-empty line of ``find`` output."""
    entries = []
    for line in output.splitlines():
        found = line.strip()
        if not found:
            continue
        entries.append(
            FileEntry(name=posixpath.basename(found) or found, path=found, kind=FileKind.FILE)
        )
    return entries


# ---------------------------------------------------------------------------
# Result Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PodTarget:
    """Pod and container a service's file operations run in."""

    namespace: str
    pod_name: str
    container: str | None


@dataclass(frozen=True)
class FileDownload:
    """File content together with the name to offer it under."""

    name: str
    path: str
    content: bytes


# ---------------------------------------------------------------------------
# ContainerFileManager
# ---------------------------------------------------------------------------


class ContainerFileManager(K8sBaseManager):
    """Browse, read, write and search files inside a service's container.

    Operations target the service's preferred pod (see ``resolve_pod``).
    Failed commands raise ``K8sFileError`` classified from stderr.
    """

    _entity_name = "files"

    def __init__(self, client: KubernetesClient) -> None:
        super().__init__(client)

    def resolve_pod(self, service_name: str, namespace: str | None = None) -> PodTarget:
        """Pick the pod and container to run commands in.

        Raises:
            NoPodFoundError: If no pod carries the ``app=<service>`` label.
        """
        ns = self._resolve_namespace(namespace)
        resource_name = sanitize_resource_name(service_name)
        pods = self._list_service_pods(resource_name, ns)
        if not pods:
            raise NoPodFoundError(resource_name, ns)
        pod = pods[0]
        return PodTarget(
            namespace=ns,
            pod_name=pod.name,
            container=primary_container(pod, resource_name),
        )

    def _run(
        self, target: PodTarget, command: list[str], stdin: bytes | None = None
    ) -> ExecResult:
        return self._client.run_in_container(
            target.namespace, target.pod_name, target.container, command, stdin=stdin
        )

    @staticmethod
    def _failure(result: ExecResult, path: str, operation: str) -> K8sFileError:
        stderr = result.stderr.strip()
        return K8sFileError(
            classify_file_error(stderr),
            stderr or f"{operation} failed with exit code {result.exit_code}",
            path=path,
            stderr=stderr or None,
        )

    # =========================================================================
    # Operations
    # =========================================================================

    def list_container_files(
        self, service_name: str, namespace: str | None = None, path: str = ROOT_PATH
    ) -> list[FileEntry]:
        """List a directory in the service's container."""
        directory = normalize_path(path)
        target = self.resolve_pod(service_name, namespace)
        self._log.debug("listing_files", pod=target.pod_name, path=directory)
        result = self._run(target, ["ls", "-la", directory])
        if not result.succeeded:
            raise self._failure(result, directory, "ls")
        return parse_ls_output(result.stdout, directory)

    def read_container_file(
        self, service_name: str, namespace: str | None, path: str
    ) -> bytes:
        """Read a file's raw bytes."""
        file_path = normalize_path(path)
        target = self.resolve_pod(service_name, namespace)
        self._log.debug("reading_file", pod=target.pod_name, path=file_path)
        result = self._run(target, ["cat", file_path])
        if not result.succeeded:
            raise self._failure(result, file_path, "cat")
        return result.stdout_bytes

    def write_container_file(
        self,
        service_name: str,
        namespace: str | None,
        path: str,
        name: str,
        data: bytes | str,
    ) -> FileEntry:
        """Write ``data`` to ``<path>/<name>``, replacing any existing file.

        The payload is streamed on stdin; the command line only carries the
        byte count and the target path.

        Raises:
            K8sFileError: ``INVALID_PATH`` for bad names, ``TOO_LARGE`` above
                10 MiB, or the classified command failure.
        """
        file_name = validate_file_name(name)
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        target_path = join_path(path, file_name)
        if len(payload) > MAX_UPLOAD_BYTES:
            raise K8sFileError(
                FileErrorKind.TOO_LARGE,
                f"File is {len(payload)} bytes; the limit is {MAX_UPLOAD_BYTES}",
                path=target_path,
            )

        target = self.resolve_pod(service_name, namespace)
        command = ["sh", "-c", WRITE_SCRIPT, str(len(payload)), target_path]
        result = self._run(target, command, stdin=payload)
        if not result.succeeded:
            raise self._failure(result, target_path, "write")
        self._log.info(
            "file_written", pod=target.pod_name, path=target_path, size=len(payload)
        )
        return FileEntry(
            name=file_name, path=target_path, kind=FileKind.FILE, size=len(payload)
        )

    def upload_container_file(
        self,
        service_name: str,
        namespace: str | None,
        path: str,
        name: str,
        data: bytes,
    ) -> FileEntry:
        """Store an uploaded file in a directory of the container."""
        entry = self.write_container_file(service_name, namespace, path, name, data)
        self._log.info("file_uploaded", path=entry.path, size=entry.size)
        return entry

    def download_container_file(
        self, service_name: str, namespace: str | None, path: str
    ) -> FileDownload:
        """Read a file and pair it with its base name."""
        file_path = normalize_path(path)
        content = self.read_container_file(service_name, namespace, file_path)
        return FileDownload(
            name=posixpath.basename(file_path) or "download",
            path=file_path,
            content=content,
        )

    def search_container_files(
        self,
        service_name: str,
        namespace: str | None,
        path: str,
        pattern: str,
    ) -> list[FileEntry]:
        """Find regular files under ``path`` whose name contains ``pattern``.

        ``find`` exits non-zero when part of the tree is unreadable; results
        found elsewhere are still returned.
        """
        directory = normalize_path(path)
        if _has_control_chars(pattern):
            raise K8sFileError(
                FileErrorKind.INVALID_PATH,
                "Search pattern contains control characters",
                path=directory,
            )
        target = self.resolve_pod(service_name, namespace)
        self._log.debug("searching_files", pod=target.pod_name, path=directory)
        result = self._run(target, ["find", directory, "-name", f"*{pattern}*", "-type", "f"])
        entries = parse_find_output(result.stdout)
        if not result.succeeded and not entries:
            raise self._failure(result, directory, "find")
        return entries

    def exec_command(
        self, service_name: str, namespace: str | None, command: str
    ) -> ExecResult:
        """Run a shell command line and return its output as-is."""
        target = self.resolve_pod(service_name, namespace)
        self._log.info("exec_command", pod=target.pod_name, container=target.container)
        return self._run(target, ["sh", "-c", command])
