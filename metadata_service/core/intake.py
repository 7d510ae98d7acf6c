"""
Source intake - populate a workspace from a git URL or an uploaded tar archive.

Security:
- No shell=True anywhere; the URL is passed to git after "--"
- Archive entries are validated before anything is written
- Absolute paths, ".." components and links escaping the workspace are rejected
- Total extracted size and entry count are bounded
"""
import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterator, BinaryIO

from metadata_service.core.errors import ErrorReason, IntakeError
from metadata_service.core.workspace import Workspace

logger = logging.getLogger(__name__)

# Stderr kept in error details
MAX_ERROR_DETAIL = 2000

# Uploads larger than this are spooled to disk rather than held in memory
SPOOL_MEMORY_BYTES = 1024 * 1024


def _tail(text: str, limit: int = MAX_ERROR_DETAIL) -> str:
    text = text.strip()
    if len(text) > limit:
        return "..." + text[-limit:]
    return text


def _is_safe_path(path: str) -> bool:
    """Check if a path is safe (no traversal, not absolute)."""
    if not path or os.path.isabs(path) or path.startswith(("/", "\\")):
        return False
    normalized = os.path.normpath(path)
    if os.path.isabs(normalized):
        return False
    if ".." in normalized.split(os.sep):
        return False
    return True


class SourceIntake(ABC):
    """Capability of populating a workspace's source tree from an origin."""

    kind: str = "unknown"

    @abstractmethod
    def populate(self, workspace: Workspace) -> None:
        """Fill workspace.source_dir. Raises IntakeError on failure."""

    def close(self) -> None:
        """Release anything held for the origin. Called once the job ends."""


class GitSource(SourceIntake):
    """Shallow clone of a git repository."""

    kind = "git"

    def __init__(self, url: str, git_command: str = "git", timeout: int = 300):
        self.url = url.strip()
        self._git_command = git_command
        self._timeout = timeout

    def populate(self, workspace: Workspace) -> None:
        if not self.url:
            raise IntakeError(ErrorReason.CLONE_FAILED, "Empty git URL")

        cmd = [
            self._git_command, "clone", "--depth=1", "--",
            self.url, str(workspace.source_dir),
        ]
        env = dict(os.environ)
        # Never wait on a credentials prompt
        env["GIT_TERMINAL_PROMPT"] = "0"

        logger.info(f"clone_start workspace={workspace.name}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                env=env,
            )
        except subprocess.TimeoutExpired:
            raise IntakeError(
                ErrorReason.CLONE_FAILED,
                f"git clone timed out after {self._timeout}s",
            )
        except OSError as e:
            raise IntakeError(ErrorReason.CLONE_FAILED, f"Cannot run git: {e}") from e

        if result.returncode != 0:
            raise IntakeError(
                ErrorReason.CLONE_FAILED,
                _tail(result.stderr) or f"git exited with code {result.returncode}",
            )
        logger.info(f"clone_done workspace={workspace.name}")


class ArchiveSource(SourceIntake):
    """Tar archive (optionally compressed) uploaded by the client."""

    kind = "tar"

    def __init__(
        self,
        fileobj: BinaryIO,
        max_extracted_bytes: int = 200 * 1024 * 1024,
        max_members: int = 20_000,
    ):
        self._fileobj = fileobj
        self._max_extracted_bytes = max_extracted_bytes
        self._max_members = max_members

    def close(self) -> None:
        self._fileobj.close()

    def populate(self, workspace: Workspace) -> None:
        try:
            self._fileobj.seek(0)
            with tarfile.open(fileobj=self._fileobj, mode="r:*") as tar:
                members = self._validate(tar)
                count, total = self._extract(tar, members, workspace.source_dir)
        except tarfile.TarError as e:
            raise IntakeError(ErrorReason.EXTRACT_FAILED, f"Invalid tar archive: {e}") from e
        except OSError as e:
            raise IntakeError(
                ErrorReason.EXTRACT_FAILED, f"Extraction failed: {type(e).__name__}"
            ) from e

        logger.info(f"extract_done workspace={workspace.name} files={count} size={total}")

    def _validate(self, tar: tarfile.TarFile) -> list[tuple[str, tarfile.TarInfo]]:
        """Check every entry before anything is written."""
        members = []
        total_size = 0

        for member in tar:
            if len(members) >= self._max_members:
                raise IntakeError(
                    ErrorReason.EXTRACT_FAILED,
                    f"Too many entries: more than {self._max_members}",
                )

            name = member.name
            while name.startswith("./"):
                name = name[2:]
            name = name.rstrip("/")
            if not name or name == ".":
                continue

            if not _is_safe_path(name):
                raise IntakeError(ErrorReason.EXTRACT_FAILED, f"Unsafe path in archive: {member.name}")
            name = os.path.normpath(name)

            if member.issym() or member.islnk():
                if member.issym():
                    target = os.path.join(os.path.dirname(name), member.linkname)
                else:
                    target = member.linkname
                if os.path.isabs(member.linkname) or not _is_safe_path(os.path.normpath(target)):
                    raise IntakeError(
                        ErrorReason.EXTRACT_FAILED,
                        f"Link escapes archive root: {member.name} -> {member.linkname}",
                    )
            elif not (member.isfile() or member.isdir()):
                raise IntakeError(
                    ErrorReason.EXTRACT_FAILED,
                    f"Unsupported entry type in archive: {member.name}",
                )

            if member.isfile():
                total_size += member.size
                if total_size > self._max_extracted_bytes:
                    raise IntakeError(
                        ErrorReason.EXTRACT_FAILED,
                        f"Extracted size exceeds limit: {self._max_extracted_bytes} bytes",
                    )

            members.append((name, member))

        _reject_paths_through_symlinks(members)
        return members

    def _extract(
        self,
        tar: tarfile.TarFile,
        members: list[tuple[str, tarfile.TarInfo]],
        dest: Path,
    ) -> tuple[int, int]:
        """Write validated entries. Links are created last so no write follows one."""
        file_count = 0
        total_size = 0
        links = []

        for name, member in members:
            target = dest / name
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif member.isfile():
                target.parent.mkdir(parents=True, exist_ok=True)
                source = tar.extractfile(member)
                if source is None:
                    raise IntakeError(ErrorReason.EXTRACT_FAILED, f"Cannot read entry: {name}")
                with source, open(target, "wb") as out:
                    shutil.copyfileobj(source, out)
                target.chmod(0o755 if member.mode & 0o111 else 0o644)
                file_count += 1
                total_size += member.size
            else:
                links.append((name, member))

        root = os.path.realpath(dest)
        symlinks = [(name, member) for name, member in links if member.issym()]
        hardlinks = [(name, member) for name, member in links if not member.issym()]

        for name, member in symlinks:
            target = dest / name
            target.parent.mkdir(parents=True, exist_ok=True)
            os.symlink(member.linkname, target)
            file_count += 1

        # Targets can chain through other links, so check once all exist
        for name, member in symlinks:
            if not _within(root, dest / name):
                raise IntakeError(
                    ErrorReason.EXTRACT_FAILED,
                    f"Link escapes archive root: {member.name} -> {member.linkname}",
                )

        for name, member in hardlinks:
            target = dest / name
            linked = dest / os.path.normpath(member.linkname)
            if not _within(root, linked) or not _within(root, target.parent):
                raise IntakeError(
                    ErrorReason.EXTRACT_FAILED,
                    f"Link escapes archive root: {member.name} -> {member.linkname}",
                )
            if not linked.is_file():
                raise IntakeError(
                    ErrorReason.EXTRACT_FAILED,
                    f"Hard link target missing: {member.linkname}",
                )
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(linked, target)
            file_count += 1

        return file_count, total_size


def _within(root: str, path: Path) -> bool:
    """True if path, with every symlink resolved, stays inside root."""
    resolved = os.path.realpath(path)
    return resolved == root or resolved.startswith(root + os.sep)


def _reject_paths_through_symlinks(members: list[tuple[str, tarfile.TarInfo]]) -> None:
    """Refuse entries (or hard link sources) located below a symlink entry."""
    symlinks = {name for name, member in members if member.issym()}
    if not symlinks:
        return

    def through_symlink(path: str) -> bool:
        parts = path.split(os.sep)
        return any(os.sep.join(parts[:i]) in symlinks for i in range(1, len(parts)))

    for name, member in members:
        if through_symlink(name):
            raise IntakeError(ErrorReason.EXTRACT_FAILED, f"Path passes through a link: {member.name}")
        if member.islnk() and through_symlink(os.path.normpath(member.linkname)):
            raise IntakeError(
                ErrorReason.EXTRACT_FAILED,
                f"Link escapes archive root: {member.name} -> {member.linkname}",
            )


async def spool_upload(chunks: AsyncIterator[bytes], limit: int) -> BinaryIO:
    """
    Buffer a request body, small uploads in memory and larger ones on disk.

    Raises:
        IntakeError: If the body exceeds limit bytes
    """
    spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MEMORY_BYTES)
    received = 0
    try:
        async for chunk in chunks:
            received += len(chunk)
            if received > limit:
                raise IntakeError(
                    ErrorReason.EXTRACT_FAILED,
                    f"Archive exceeds upload limit: {limit} bytes",
                )
            spool.write(chunk)
    except BaseException:
        spool.close()
        raise
    spool.seek(0)
    return spool
