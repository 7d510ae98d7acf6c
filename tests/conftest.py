"""
Pytest configuration and fixtures.

The external collaborators (git, docker, cargo) are replaced by small shell
scripts written into tmp_path, so the whole pipeline runs without them.
"""
import io
import os
import stat
import sys
import tarfile
import tempfile
from pathlib import Path

# Keep the default app's state out of the source tree
os.environ.setdefault("PROGRAMS_DATA_DIR", tempfile.mkdtemp(prefix="programs-test-"))

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import create_app
from metadata_service.config import ServiceConfig
from metadata_service.core.program_store import ProgramStore
from metadata_service.db.database import init_db, make_engine, make_session_factory


FAKE_GIT = """#!/bin/sh
# git clone --depth=1 -- URL DEST
shift 3
url="$1"
dest="$2"
case "$url" in
  file://*) path="${url#file://}" ;;
  *) path="$url" ;;
esac
if [ -d "$path" ]; then
  echo "Cloning into '$dest'..." >&2
  cp -R "$path/." "$dest/"
  exit 0
fi
echo "fatal: repository '$url' does not exist" >&2
exit 128
"""

FAKE_DOCKER = """#!/bin/sh
dest=""
image=""
src=""
for arg in "$@"; do
  case "$arg" in
    --output=type=local,dest=*) dest="${arg#--output=type=local,dest=}" ;;
    IMAGE=*) image="${arg#IMAGE=}" ;;
  esac
  src="$arg"
done
echo "image=$image" >> "@LOG@"
if [ -f "$src/DAEMON_DOWN" ]; then
  echo "ERROR: Cannot connect to the Docker daemon at unix:///var/run/docker.sock. Is the docker daemon running?" >&2
  exit 1
fi
echo "#1 [internal] load build definition from Dockerfile"
if [ -f "$src/MISSING_IMAGE" ]; then
  echo "ERROR: failed to solve: example/missing:0.1: failed to resolve source metadata for docker.io/example/missing:0.1: pull access denied" >&2
  exit 1
fi
echo "#2 cargo component build --release"
if [ -f "$src/FAIL_BUILD" ]; then
  echo "error[E0425]: cannot find value in this scope" >&2
  exit 101
fi
if [ -f "$src/SLOW_BUILD" ]; then
  sleep 30
fi
if [ ! -f "$src/NO_ARTIFACT" ]; then
  cat "$src/src/lib.rs" > "$dest/program.wasm"
fi
if [ -f "$src/TWO_ARTIFACTS" ]; then
  echo "stray" > "$dest/other.wasm"
fi
echo "#3 DONE 0.1s"
"""

FAKE_CARGO = """#!/bin/sh
manifest=""
prev=""
for arg in "$@"; do
  if [ "$prev" = "--manifest-path" ]; then
    manifest="$arg"
  fi
  prev="$arg"
done
dir=$(dirname "$manifest")
if [ -f "$dir/BAD_METADATA" ]; then
  echo "this is not json"
  exit 0
fi
if [ -f "$dir/CARGO_FAILS" ]; then
  echo "error: failed to parse manifest" >&2
  exit 101
fi
name=$(sed -n 's/^name *= *"\\(.*\\)"/\\1/p' "$manifest" | head -n 1)
image=$(sed -n 's/^docker-image *= *"\\(.*\\)"/\\1/p' "$manifest" | head -n 1)
if [ -n "$image" ]; then
  meta="{\\"entropy-program\\":{\\"docker-image\\":\\"$image\\"}}"
else
  meta="null"
fi
printf '{"packages":[{"name":"%s","version":"0.1.0","id":"%s 0.1.0","license":"MIT","authors":["dev"],"dependencies":[],"targets":[{"name":"%s","kind":["cdylib"],"src_path":"%s/src/lib.rs"}],"manifest_path":"%s","metadata":%s}],"resolve":null,"workspace_root":"%s","version":1}\\n' "$name" "$name" "$name" "$dir" "$manifest" "$meta" "$dir"
"""


def _write_script(path: Path, body: str) -> Path:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_tools(tmp_path):
    """Paths of fake git, docker and cargo executables, plus the docker call log."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    docker_log = tmp_path / "docker.log"
    docker_log.touch()
    return {
        "git": _write_script(bin_dir / "git", FAKE_GIT),
        "docker": _write_script(bin_dir / "docker", FAKE_DOCKER.replace("@LOG@", str(docker_log))),
        "cargo": _write_script(bin_dir / "cargo", FAKE_CARGO),
        "docker_log": docker_log,
    }


@pytest.fixture
def config(tmp_path, fake_tools):
    """Service configuration pointing at tmp_path and the fake tools."""
    data_dir = tmp_path / "data"
    return ServiceConfig(
        data_dir=data_dir,
        database_url=f"sqlite:///{data_dir / 'programs.db'}",
        workspace_dir=data_dir / "workspaces",
        git_command=str(fake_tools["git"]),
        docker_command=str(fake_tools["docker"]),
        cargo_command=str(fake_tools["cargo"]),
        clone_timeout_s=10,
        build_timeout_s=10,
        metadata_timeout_s=10,
        max_archive_bytes=1024 * 1024,
        max_extracted_bytes=1024 * 1024,
        max_archive_members=100,
        max_concurrent_builds=2,
        channel_capacity=100,
    )


@pytest.fixture
def store(tmp_path):
    """A program store on a fresh SQLite file."""
    engine = make_engine(f"sqlite:///{tmp_path / 'store.db'}")
    init_db(engine)
    yield ProgramStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def client(config):
    """Test client for an app wired to the fake tools."""
    with TestClient(create_app(config)) as test_client:
        yield test_client


@pytest.fixture
def make_crate(tmp_path):
    """Factory writing a minimal crate; markers are empty files steering the fakes."""
    counter = {"n": 0}

    def _make(name="x", body="fixed artifact bytes\n", image=None, markers=()):
        counter["n"] += 1
        root = tmp_path / f"crate-{counter['n']}"
        (root / "src").mkdir(parents=True)
        manifest = f'[package]\nname = "{name}"\nversion = "0.1.0"\nedition = "2021"\n'
        if image:
            manifest += f'\n[package.metadata.entropy-program]\ndocker-image = "{image}"\n'
        (root / "Cargo.toml").write_text(manifest)
        (root / "src" / "lib.rs").write_text(body)
        (root / "Dockerfile").write_text("ARG IMAGE=example/build:0.1\nFROM $IMAGE AS base\n")
        for marker in markers:
            (root / marker).touch()
        return root

    return _make


def tar_bytes(root: Path, gz: bool = False) -> bytes:
    """Tar archive of a directory's contents, paths relative to it."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz" if gz else "w") as tar:
        for path in sorted(root.rglob("*")):
            tar.add(path, arcname=str(path.relative_to(root)), recursive=False)
    return buffer.getvalue()


@pytest.fixture
def make_tar():
    return tar_bytes
