"""
Metadata extraction from the program's Cargo manifest.

The manifest tool (`cargo metadata`) is treated as a black box returning JSON.
The stored document is the tool's record of the root package.

A manifest may pin the build image like so:

    [package.metadata.entropy-program]
    docker-image = "peg997/build-entropy-programs:version0.1"
"""
import json
import logging
import os
import subprocess
import tomllib
from pathlib import Path
from typing import Any, Optional

from metadata_service.core.errors import MetadataError
from metadata_service.core.workspace import Workspace

logger = logging.getLogger(__name__)

MANIFEST_NAME = "Cargo.toml"
PROGRAM_TABLE = "entropy-program"
IMAGE_KEY = "docker-image"

MAX_ERROR_DETAIL = 2000


def declared_image(package_metadata: Any) -> Optional[str]:
    """Image named under package.metadata.entropy-program, if any."""
    if not isinstance(package_metadata, dict):
        return None
    table = package_metadata.get(PROGRAM_TABLE)
    if not isinstance(table, dict):
        return None
    image = table.get(IMAGE_KEY)
    return image if isinstance(image, str) and image else None


def read_declared_image(source_dir: Path) -> Optional[str]:
    """
    Build image pinned in the manifest, read before the build starts.
    A missing or unreadable manifest yields None; extraction reports it later.
    """
    manifest = source_dir / MANIFEST_NAME
    try:
        with open(manifest, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return None
    package = data.get("package")
    if not isinstance(package, dict):
        return None
    return declared_image(package.get("metadata"))


class MetadataExtractor:
    """Runs the manifest tool and shapes its output into the stored document."""

    def __init__(self, cargo_command: str = "cargo", timeout: int = 120):
        self._cargo_command = cargo_command
        self._timeout = timeout

    def extract(self, workspace: Workspace, image: Optional[str] = None) -> dict[str, Any]:
        """
        Metadata document for the workspace's root package.

        image is the build image used for this job; when given it is recorded
        in the document. When None, whatever the manifest says is kept as is.

        Raises:
            MetadataError: tool failure, unparseable output or no root package
        """
        source_dir = workspace.source_dir
        manifest = source_dir / MANIFEST_NAME
        if not manifest.is_file():
            raise MetadataError(f"No {MANIFEST_NAME} in source root")

        output = self._run_tool(manifest)
        try:
            document = json.loads(output)
        except json.JSONDecodeError as e:
            raise MetadataError(f"Manifest tool produced invalid JSON: {e}") from e

        package = _root_package(document, manifest)
        _relativize_paths(package, source_dir)
        if image is not None:
            _bind_image(package, image)

        logger.info(f"metadata_extracted package={package.get('name')}")
        return package

    def _run_tool(self, manifest: Path) -> str:
        cmd = [
            self._cargo_command, "metadata",
            "--format-version", "1",
            "--no-deps",
            "--all-features",
            "--manifest-path", str(manifest),
        ]
        env = dict(os.environ)
        env["CARGO_TERM_COLOR"] = "never"
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                cwd=str(manifest.parent),
                env=env,
            )
        except subprocess.TimeoutExpired:
            raise MetadataError(f"Manifest tool timed out after {self._timeout}s")
        except OSError as e:
            raise MetadataError(f"Cannot run manifest tool: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()[-MAX_ERROR_DETAIL:]
            raise MetadataError(
                f"Error reading {MANIFEST_NAME}: {stderr or f'exit code {result.returncode}'}"
            )
        return result.stdout


def _root_package(document: Any, manifest: Path) -> dict[str, Any]:
    """The package whose manifest is the workspace's top-level manifest."""
    if not isinstance(document, dict) or not isinstance(document.get("packages"), list):
        raise MetadataError("Manifest tool output has no package list")

    packages = [p for p in document["packages"] if isinstance(p, dict)]
    resolved = manifest.resolve()
    for package in packages:
        path = package.get("manifest_path")
        if isinstance(path, str) and Path(path).resolve() == resolved:
            return package

    resolve = document.get("resolve")
    if isinstance(resolve, dict) and resolve.get("root"):
        for package in packages:
            if package.get("id") == resolve["root"]:
                return package

    raise MetadataError(f"Cannot find root package in {MANIFEST_NAME}")


def _relativize_paths(package: dict[str, Any], source_dir: Path) -> None:
    """Make workspace paths relative so identical sources give identical documents."""
    root = source_dir.resolve()

    def rel(value: Any) -> Any:
        if not isinstance(value, str):
            return value
        try:
            return str(Path(value).resolve().relative_to(root))
        except ValueError:
            return value

    if "manifest_path" in package:
        package["manifest_path"] = rel(package["manifest_path"])
    for target in package.get("targets") or []:
        if isinstance(target, dict) and "src_path" in target:
            target["src_path"] = rel(target["src_path"])


def _bind_image(package: dict[str, Any], image: str) -> None:
    """Record the image this job was built with under the program table."""
    metadata = package.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
        package["metadata"] = metadata
    table = metadata.get(PROGRAM_TABLE)
    if not isinstance(table, dict):
        table = {}
        metadata[PROGRAM_TABLE] = table
    if table.get(IMAGE_KEY) not in (None, image):
        logger.warning("metadata_image_mismatch manifest image replaced by build image")
    table[IMAGE_KEY] = image
