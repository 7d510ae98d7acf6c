"""
Tests for the container build runner (driven by the docker stand-in).
"""
import shutil

import pytest

from metadata_service.core.build_runner import BuildRunner
from metadata_service.core.errors import BuildError, ErrorReason
from metadata_service.core.workspace import WorkspaceManager


@pytest.fixture
def workspace_with(tmp_path):
    manager = WorkspaceManager(tmp_path / "workspaces")

    def _populate(crate):
        workspace = manager.create()
        shutil.copytree(crate, workspace.source_dir, dirs_exist_ok=True)
        return workspace

    return _populate


class TestBuildCommand:
    """Tests for the command line."""

    def test_command_shape(self, tmp_path):
        workspace = WorkspaceManager(tmp_path).create()
        cmd = BuildRunner().build_command(workspace)

        assert cmd[:3] == ["docker", "build", "--progress=plain"]
        assert f"--output=type=local,dest={workspace.output_dir}" in cmd
        assert cmd[-1] == str(workspace.source_dir)
        assert not any(arg.startswith("IMAGE=") for arg in cmd)

    def test_image_from_manifest_wins(self, tmp_path):
        workspace = WorkspaceManager(tmp_path).create()
        runner = BuildRunner(default_image="fallback/image:1")

        assert "IMAGE=pinned/image:2" in runner.build_command(workspace, "pinned/image:2")
        assert "IMAGE=fallback/image:1" in runner.build_command(workspace)


class TestBuildRunner:
    """Tests for running builds."""

    def test_success_streams_lines(self, fake_tools, make_crate, workspace_with):
        """Output lines arrive in order and the artifact lands in the output directory."""
        workspace = workspace_with(make_crate())
        runner = BuildRunner(docker_command=str(fake_tools["docker"]), timeout=10)

        lines = [m.line for m in runner.run(workspace, "job-1")]

        assert lines[0].startswith("#1")
        assert lines[-1] == "#3 DONE 0.1s"
        assert (workspace.output_dir / "program.wasm").read_text() == "fixed artifact bytes\n"

    def test_image_is_passed(self, fake_tools, make_crate, workspace_with):
        workspace = workspace_with(make_crate())
        runner = BuildRunner(docker_command=str(fake_tools["docker"]), timeout=10)

        list(runner.run(workspace, "job-1", image="example/build:9"))

        assert "image=example/build:9" in fake_tools["docker_log"].read_text()

    def test_failure_reports_exit_code(self, fake_tools, make_crate, workspace_with):
        """A failing build still delivers its output, then build-failed with the code."""
        workspace = workspace_with(make_crate(markers=["FAIL_BUILD"]))
        runner = BuildRunner(docker_command=str(fake_tools["docker"]), timeout=10)
        lines = []

        with pytest.raises(BuildError) as exc:
            for message in runner.run(workspace, "job-1"):
                lines.append(message.line)

        assert exc.value.reason == ErrorReason.BUILD_FAILED
        assert exc.value.exit_code == 101
        assert any("cannot find value" in line for line in lines)

    def test_launch_failure(self, make_crate, workspace_with, tmp_path):
        workspace = workspace_with(make_crate())
        runner = BuildRunner(docker_command=str(tmp_path / "no-docker"))

        with pytest.raises(BuildError) as exc:
            list(runner.run(workspace, "job-1"))

        assert exc.value.reason == ErrorReason.LAUNCH_FAILED

    def test_daemon_unavailable_is_launch_failure(self, fake_tools, make_crate, workspace_with):
        """A runtime that cannot reach its daemon never started the build."""
        workspace = workspace_with(make_crate(markers=["DAEMON_DOWN"]))
        runner = BuildRunner(docker_command=str(fake_tools["docker"]), timeout=10)

        with pytest.raises(BuildError) as exc:
            list(runner.run(workspace, "job-1"))

        assert exc.value.reason == ErrorReason.LAUNCH_FAILED
        assert "Cannot connect to the Docker daemon" in exc.value.detail

    def test_missing_image_is_launch_failure(self, fake_tools, make_crate, workspace_with):
        workspace = workspace_with(make_crate(markers=["MISSING_IMAGE"]))
        runner = BuildRunner(docker_command=str(fake_tools["docker"]), timeout=10)

        with pytest.raises(BuildError) as exc:
            list(runner.run(workspace, "job-1", image="example/missing:0.1"))

        assert exc.value.reason == ErrorReason.LAUNCH_FAILED

    def test_timeout_kills_build(self, fake_tools, make_crate, workspace_with):
        """A build over its time limit is killed and reported as timeout."""
        workspace = workspace_with(make_crate(markers=["SLOW_BUILD"]))
        runner = BuildRunner(docker_command=str(fake_tools["docker"]), timeout=1)

        with pytest.raises(BuildError) as exc:
            list(runner.run(workspace, "job-1"))

        assert exc.value.reason == ErrorReason.TIMEOUT
        assert not (workspace.output_dir / "program.wasm").exists()
