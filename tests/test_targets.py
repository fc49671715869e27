"""Tests for execution targets."""

import subprocess
from pathlib import Path

import pytest

from stageci.errors import InfrastructureError
from stageci.targets import DockerTarget, LocalTarget, resolve_target


class TestResolveTarget:
    @pytest.mark.parametrize("runs_on", ["local", "ubuntu-latest", "", "self-hosted"])
    def test_labels_run_locally(self, runs_on):
        assert isinstance(resolve_target(runs_on), LocalTarget)

    def test_docker_image_keeps_its_tag(self):
        target = resolve_target("docker:node:20")
        assert isinstance(target, DockerTarget)
        assert target.image == "node:20"


class TestLocalTarget:
    def test_each_provision_is_fresh(self, tmp_path):
        target = LocalTarget()
        a = target.provision(tmp_path, 1, "build")
        b = target.provision(tmp_path, 1, "build")
        assert a != b and a.is_dir() and b.is_dir()
        target.release(a)
        assert not a.exists()

    def test_unwritable_root_is_infrastructure_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(InfrastructureError):
            LocalTarget().provision(blocker, 1, "build")

    def test_shell_sees_only_given_env(self, tmp_path):
        proc = LocalTarget().shell(
            'echo "$ONLY_THIS"',
            workspace=tmp_path,
            cwd=tmp_path,
            env={"ONLY_THIS": "yes", "PATH": "/usr/bin:/bin"},
            timeout=10,
        )
        assert proc.returncode == 0
        assert proc.stdout.strip() == "yes"


class TestDockerTarget:
    def test_argv_passes_env_names_not_values(self, tmp_path):
        target = DockerTarget("alpine:3", volumes=["/cache:/cache"], user="1000")
        (tmp_path / "app").mkdir()
        argv = target.argv(
            "make",
            workspace=tmp_path,
            cwd=tmp_path / "app",
            env={"DEPLOY_TOKEN": "secret-value", "PATH": "/bin"},
        )
        assert "secret-value" not in " ".join(argv)
        assert argv[argv.index("-w") + 1] == "/workspace/app"
        assert ["-e", "DEPLOY_TOKEN"] == argv[argv.index("-e"): argv.index("-e") + 2]
        assert argv[-4:] == ["alpine:3", "sh", "-c", "make"]
        assert "--user" in argv
        assert "--name" not in argv

    def test_container_name_is_traceable(self, tmp_path):
        workspace = tmp_path / "run-7" / "build:arm64-0a1b2c3d"
        workspace.mkdir(parents=True)
        name = DockerTarget.container_name(workspace)
        assert name.startswith("stageci-run-7-build-arm64-0a1b2c3d-")
        assert name != DockerTarget.container_name(workspace)
        argv = DockerTarget("alpine:3").argv("true", workspace=workspace, cwd=workspace, env={}, name=name)
        assert argv[argv.index("--name") + 1] == name
        assert argv[-4:] == ["alpine:3", "sh", "-c", "true"]

    def test_timeout_removes_the_container(self, tmp_path, monkeypatch):
        calls = []

        def fake_run(argv, **kwargs):
            calls.append(argv)
            if argv[:2] == ["docker", "run"]:
                raise subprocess.TimeoutExpired(argv, kwargs["timeout"])
            return subprocess.CompletedProcess(argv, 0, "", "")

        monkeypatch.setattr(subprocess, "run", fake_run)
        workspace = tmp_path / "ws"
        workspace.mkdir()
        target = DockerTarget("alpine:3")
        with pytest.raises(subprocess.TimeoutExpired):
            target.shell("sleep 600", workspace=workspace, cwd=workspace, env={}, timeout=1)

        started = calls[0][calls[0].index("--name") + 1]
        assert calls[1] == ["docker", "rm", "-f", started]

        target.release(workspace)
        assert len(calls) == 2

    def test_release_removes_containers_that_survived(self, tmp_path, monkeypatch):
        calls = []

        def fake_run(argv, **kwargs):
            calls.append(argv)
            if argv[:2] == ["docker", "run"]:
                raise subprocess.TimeoutExpired(argv, kwargs["timeout"])
            if argv[:3] == ["docker", "rm", "-f"] and len(calls) == 2:
                return subprocess.CompletedProcess(argv, 1, "", "daemon busy")
            return subprocess.CompletedProcess(argv, 0, "", "")

        monkeypatch.setattr(subprocess, "run", fake_run)
        workspace = tmp_path / "ws"
        workspace.mkdir()
        target = DockerTarget("alpine:3")
        with pytest.raises(subprocess.TimeoutExpired):
            target.shell("sleep 600", workspace=workspace, cwd=workspace, env={}, timeout=1)

        target.release(workspace)
        started = calls[0][calls[0].index("--name") + 1]
        assert calls[1:] == [["docker", "rm", "-f", started], ["docker", "rm", "-f", started]]
        assert not workspace.exists()

    def test_missing_docker_is_infrastructure_error(self, tmp_path, monkeypatch):
        def no_docker(*args, **kwargs):
            raise FileNotFoundError("docker")

        monkeypatch.setattr(subprocess, "run", no_docker)
        with pytest.raises(InfrastructureError, match="Docker"):
            DockerTarget("alpine:3").provision(Path(tmp_path), 1, "build")
