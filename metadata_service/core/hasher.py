"""
Artifact hashing.

The hash of the single compiled artifact is the program's identity: a 32-byte
BLAKE2b digest of the raw file bytes, hex encoded (lowercase, no prefix).
"""
import hashlib
import logging
from pathlib import Path

from metadata_service.core.errors import BuildError, ErrorReason

logger = logging.getLogger(__name__)

DIGEST_SIZE = 32
CHUNK_SIZE = 1024 * 1024


def find_artifact(output_dir: Path, suffix: str = ".wasm") -> Path:
    """
    Locate the one artifact the build produced.

    Raises:
        BuildError: ambiguous-artifact if zero or several files match
    """
    matches = sorted(
        p for p in output_dir.rglob(f"*{suffix}") if p.is_file()
    ) if output_dir.is_dir() else []

    if len(matches) != 1:
        names = ", ".join(p.name for p in matches) or "none"
        raise BuildError(
            ErrorReason.AMBIGUOUS_ARTIFACT,
            f"Expected exactly one {suffix} artifact, found {len(matches)}: {names}",
        )
    return matches[0]


def hash_file(path: Path) -> str:
    """BLAKE2b-256 of the file's bytes, read in chunks."""
    digest = hashlib.blake2b(digest_size=DIGEST_SIZE)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def hash_bytes(data: bytes) -> str:
    return hashlib.blake2b(data, digest_size=DIGEST_SIZE).hexdigest()


def hash_artifact(output_dir: Path, suffix: str = ".wasm") -> str:
    """Find the artifact in output_dir and return its canonical hash."""
    artifact = find_artifact(output_dir, suffix)
    program_hash = hash_file(artifact)
    logger.info(
        f"artifact_hashed name={artifact.name} size={artifact.stat().st_size}",
        extra={"program_hash": program_hash},
    )
    return program_hash


def normalize_hash(value: str) -> str:
    """
    Canonical form of a client-supplied hash.

    Raises:
        ValueError: If value is not a hex digest of the right length
    """
    value = value.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    if len(value) != DIGEST_SIZE * 2:
        raise ValueError(f"Hash must be {DIGEST_SIZE * 2} hex characters")
    bytes.fromhex(value)
    return value
