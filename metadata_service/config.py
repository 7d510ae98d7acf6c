"""
Service configuration from environment variables.
All settings are optional with safe defaults.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

PROJECT_ROOT = Path(__file__).parent.parent
DEFAULT_DATA_DIR = PROJECT_ROOT / "data"


@dataclass(frozen=True)
class ServiceConfig:
    """Service configuration (immutable)."""
    data_dir: Path = DEFAULT_DATA_DIR
    database_url: str = f"sqlite:///{DEFAULT_DATA_DIR / 'programs.db'}"
    workspace_dir: Path = DEFAULT_DATA_DIR / "workspaces"
    # External collaborators
    git_command: str = "git"
    docker_command: str = "docker"
    cargo_command: str = "cargo"
    build_image: Optional[str] = None
    artifact_suffix: str = ".wasm"
    # Timeouts (seconds)
    clone_timeout_s: int = 300
    build_timeout_s: int = 1800
    metadata_timeout_s: int = 120
    # Archive limits
    max_archive_bytes: int = 50 * 1024 * 1024
    max_extracted_bytes: int = 200 * 1024 * 1024
    max_archive_members: int = 20_000
    # Scheduling
    max_concurrent_builds: int = 2
    channel_capacity: int = 1000
    log_level: str = "INFO"
    cors_origins: tuple[str, ...] = ("*",)


def _int_env(name: str, default: int) -> int:
    """Read a positive integer, falling back to the default on bad input."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def get_service_config() -> ServiceConfig:
    """Load service configuration from environment."""
    data_dir = Path(os.getenv("PROGRAMS_DATA_DIR") or DEFAULT_DATA_DIR)
    database_url = os.getenv("PROGRAMS_DATABASE_URL") or f"sqlite:///{data_dir / 'programs.db'}"
    workspace_dir = Path(os.getenv("PROGRAMS_WORKSPACE_DIR") or data_dir / "workspaces")

    origins = os.getenv("PROGRAMS_CORS_ORIGINS", "*")
    cors_origins = tuple(o.strip() for o in origins.split(",") if o.strip()) or ("*",)

    return ServiceConfig(
        data_dir=data_dir,
        database_url=database_url,
        workspace_dir=workspace_dir,
        git_command=os.getenv("PROGRAMS_GIT_COMMAND", "git"),
        docker_command=os.getenv("PROGRAMS_DOCKER_COMMAND", "docker"),
        cargo_command=os.getenv("PROGRAMS_CARGO_COMMAND", "cargo"),
        build_image=os.getenv("PROGRAMS_BUILD_IMAGE") or None,
        artifact_suffix=os.getenv("PROGRAMS_ARTIFACT_SUFFIX", ".wasm"),
        clone_timeout_s=_int_env("PROGRAMS_CLONE_TIMEOUT_S", 300),
        build_timeout_s=_int_env("PROGRAMS_BUILD_TIMEOUT_S", 1800),
        metadata_timeout_s=_int_env("PROGRAMS_METADATA_TIMEOUT_S", 120),
        max_archive_bytes=_int_env("PROGRAMS_MAX_ARCHIVE_BYTES", 50 * 1024 * 1024),
        max_extracted_bytes=_int_env("PROGRAMS_MAX_EXTRACTED_BYTES", 200 * 1024 * 1024),
        max_archive_members=_int_env("PROGRAMS_MAX_ARCHIVE_MEMBERS", 20_000),
        max_concurrent_builds=_int_env("PROGRAMS_MAX_CONCURRENT_BUILDS", 2),
        channel_capacity=_int_env("PROGRAMS_CHANNEL_CAPACITY", 1000),
        log_level=os.getenv("PROGRAMS_LOG_LEVEL", "INFO"),
        cors_origins=cors_origins,
    )
