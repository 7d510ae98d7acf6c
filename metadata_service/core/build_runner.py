"""
Build Runner - deterministic containerized build of a workspace.

Runs one `docker build` against the workspace's source tree, writing the compiled
artifact into the workspace's output directory. Combined stdout/stderr is read
line by line and yielded as it arrives.

Security:
- No shell=True anywhere
- The child runs in its own process group and is killed on timeout or abandonment
- Exactly one component (this one) owns the child process
"""
import logging
import os
import signal
import subprocess
import threading
from typing import Iterator, Optional

from metadata_service.core.errors import BuildError, ErrorReason
from metadata_service.core.workspace import Workspace
from metadata_service.schemas.build import LogMessage

logger = logging.getLogger(__name__)

# Build output lines longer than this are cut
MAX_LINE_LENGTH = 8192

# Container runtime messages meaning the build never started: daemon down or image missing
LAUNCH_FAILURE_MARKERS = (
    "Cannot connect to the Docker daemon",
    "Is the docker daemon running",
    "failed to resolve source metadata",
    "pull access denied",
    "manifest unknown",
)


class BuildRunner:
    """Drives the container runtime for one build at a time per call."""

    def __init__(
        self,
        docker_command: str = "docker",
        timeout: int = 1800,
        default_image: Optional[str] = None,
    ):
        self._docker_command = docker_command
        self._timeout = timeout
        self._default_image = default_image

    def build_command(self, workspace: Workspace, image: Optional[str] = None) -> list[str]:
        """Command line for building workspace; image overrides the Dockerfile default."""
        cmd = [self._docker_command, "build", "--progress=plain"]
        image = image or self._default_image
        if image:
            cmd += ["--build-arg", f"IMAGE={image}"]
        cmd += [
            f"--output=type=local,dest={workspace.output_dir}",
            str(workspace.source_dir),
        ]
        return cmd

    def run(
        self,
        workspace: Workspace,
        job_id: str,
        image: Optional[str] = None,
    ) -> Iterator[LogMessage]:
        """
        Run the build, yielding one LogMessage per output line.

        Raises (after the last line):
            BuildError: launch-failed, build-failed (with exit code) or timeout
        """
        cmd = self.build_command(workspace, image)
        env = dict(os.environ)
        env["DOCKER_BUILDKIT"] = "1"

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            raise BuildError(
                ErrorReason.LAUNCH_FAILED, f"Cannot start container runtime: {e}"
            ) from e

        logger.info(f"build_start pid={proc.pid}", extra={"job_id": job_id})
        timed_out = threading.Event()
        launch_problem: Optional[str] = None

        def _expire():
            timed_out.set()
            _kill(proc)

        timer = threading.Timer(self._timeout, _expire)
        timer.daemon = True
        timer.start()

        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                line = line.rstrip("\r\n")
                if len(line) > MAX_LINE_LENGTH:
                    line = line[:MAX_LINE_LENGTH] + "..."
                if launch_problem is None and _is_launch_failure(line):
                    launch_problem = line
                yield LogMessage(job_id=job_id, line=line)
            exit_code = proc.wait()
        finally:
            timer.cancel()
            if proc.poll() is None:
                _kill(proc)
                proc.wait()
            if proc.stdout is not None:
                proc.stdout.close()

        if timed_out.is_set():
            raise BuildError(ErrorReason.TIMEOUT, f"Build exceeded {self._timeout}s and was killed")
        if exit_code != 0:
            if launch_problem is not None:
                raise BuildError(
                    ErrorReason.LAUNCH_FAILED,
                    f"Container runtime could not start the build: {launch_problem}",
                    exit_code=exit_code,
                )
            raise BuildError(
                ErrorReason.BUILD_FAILED,
                f"Build exited with code {exit_code}",
                exit_code=exit_code,
            )
        logger.info("build_done", extra={"job_id": job_id})


def _is_launch_failure(line: str) -> bool:
    return any(marker in line for marker in LAUNCH_FAILURE_MARKERS)


def _kill(proc: subprocess.Popen) -> None:
    """Kill the child's whole process group."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
