"""
Workspace management for build jobs.

Each job gets its own uniquely named directory under the workspace root:
- source/  the program's source tree (build context)
- output/  where the container build writes the compiled artifact

Workspaces are created at job start and destroyed at job end, whatever the outcome.
"""
import logging
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Iterator

from metadata_service.core.errors import ErrorReason, IntakeError

logger = logging.getLogger(__name__)

# Leftovers from a crashed process older than this are swept at startup
WORKSPACE_RETENTION_HOURS = 24

WORKSPACE_PREFIX = "job-"


@dataclass(frozen=True)
class Workspace:
    """An exclusively owned directory tree for one build job."""
    root: Path

    @property
    def source_dir(self) -> Path:
        return self.root / "source"

    @property
    def output_dir(self) -> Path:
        return self.root / "output"

    @property
    def name(self) -> str:
        return self.root.name


class WorkspaceManager:
    """Creates and destroys isolated workspaces for build jobs."""

    def __init__(self, base_dir: Path):
        self._base_dir = Path(base_dir)

    def create(self) -> Workspace:
        """
        Allocate a fresh, empty, uniquely named workspace.

        Raises:
            IntakeError: If the directory cannot be created (disk full, permissions)
        """
        root = None
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            # mkdtemp guarantees a name no concurrent caller can also receive
            root = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=self._base_dir))
            workspace = Workspace(root=root)
            workspace.source_dir.mkdir()
            workspace.output_dir.mkdir()
        except OSError as e:
            if root is not None:
                shutil.rmtree(root, ignore_errors=True)
            raise IntakeError(
                ErrorReason.WORKSPACE_FAILED,
                f"Cannot create workspace: {type(e).__name__}",
            ) from e

        logger.info(f"workspace_created workspace={workspace.name}")
        return workspace

    def destroy(self, workspace: Workspace) -> bool:
        """Recursively remove a workspace. Safe to call more than once."""
        if not workspace.root.exists():
            return False
        shutil.rmtree(workspace.root, ignore_errors=True)
        logger.info(f"workspace_destroyed workspace={workspace.name}")
        return True

    @contextmanager
    def scoped(self) -> Iterator[Workspace]:
        """Create a workspace that is destroyed on every exit path."""
        workspace = self.create()
        try:
            yield workspace
        finally:
            self.destroy(workspace)

    def cleanup_stale(self) -> int:
        """Remove workspaces older than the retention period."""
        if not self._base_dir.exists():
            return 0
        try:
            cutoff = datetime.now(timezone.utc) - timedelta(hours=WORKSPACE_RETENTION_HOURS)
            deleted = 0

            for item in self._base_dir.iterdir():
                if item.is_dir() and item.name.startswith(WORKSPACE_PREFIX):
                    mtime = datetime.fromtimestamp(item.stat().st_mtime, tz=timezone.utc)
                    if mtime < cutoff:
                        shutil.rmtree(item, ignore_errors=True)
                        deleted += 1

            if deleted > 0:
                logger.info(f"cleanup_workspaces deleted={deleted}")
            return deleted
        except OSError as e:
            # Never crash startup on cleanup failure
            logger.warning(f"cleanup_workspaces_failed error={type(e).__name__}")
            return 0
