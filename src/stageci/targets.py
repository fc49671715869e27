# targets.py
from __future__ import annotations

import re
import shutil
import subprocess
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set

from .errors import InfrastructureError
from .ui.console import get_console

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "git": "Install Git or fix PATH.",
}

_CONTAINER_NAME_RE = re.compile(r"[^a-zA-Z0-9_.-]")


# ---------------------------------------------------------------------
# Execution targets (the `runs_on` descriptor of a job)
# ---------------------------------------------------------------------

class ExecutionTarget:
    """
    Provisions an isolated workspace for one job execution and runs shell
    commands inside it. Subclasses decide where the commands actually run.
    """

    name = "base"

    def provision(self, work_root: Path, run_id: int, job_name: str) -> Path:
        ws = work_root / f"run-{run_id}" / f"{job_name}-{uuid.uuid4().hex[:8]}"
        try:
            ws.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise InfrastructureError(
                f"could not create workspace: {e}",
                job=job_name,
                details={"workspace": str(ws)},
            ) from e
        return ws

    def release(self, workspace: Path) -> None:
        shutil.rmtree(workspace, ignore_errors=True)

    def shell(
        self,
        cmd: str,
        *,
        workspace: Path,
        cwd: Path,
        env: Mapping[str, str],
        timeout: Optional[float],
    ) -> subprocess.CompletedProcess:
        raise NotImplementedError


class LocalTarget(ExecutionTarget):
    """Commands run on the host, in a fresh directory, with only the job's env."""

    name = "local"

    def shell(self, cmd, *, workspace, cwd, env, timeout):
        return subprocess.run(
            cmd,
            shell=True,
            cwd=str(cwd),
            env=dict(env),
            text=True,
            capture_output=True,
            timeout=timeout,
        )


class DockerTarget(ExecutionTarget):
    """Commands run in a throwaway container with the workspace mounted."""

    name = "docker"
    container_workdir = "/workspace"

    def __init__(self, image: str, *, volumes: Optional[List[str]] = None, user: Optional[str] = None):
        if not image:
            raise ValueError("docker target needs an image")
        self.image = image
        self.volumes = list(volumes or [])
        self.user = user
        # containers started from each workspace that may still be running
        self._live: Dict[Path, Set[str]] = {}

    def provision(self, work_root: Path, run_id: int, job_name: str) -> Path:
        self._check_docker_available(job_name)
        return super().provision(work_root, run_id, job_name)

    def release(self, workspace: Path) -> None:
        for name in sorted(self._live.pop(workspace, set())):
            self._remove_container(name)
        super().release(workspace)

    def _check_docker_available(self, job_name: str) -> None:
        try:
            subprocess.run(["docker", "--version"], capture_output=True, check=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise InfrastructureError(
                "Docker is not available",
                job=job_name,
                details={"hint": TOOL_HINTS["docker"]},
            ) from e

    @staticmethod
    def container_name(workspace: Path) -> str:
        """stageci-run-<id>-<job>-<suffix>, unique per command."""
        raw = f"stageci-{workspace.parent.name}-{workspace.name}-{uuid.uuid4().hex[:8]}"
        return _CONTAINER_NAME_RE.sub("-", raw)

    def argv(
        self,
        cmd: str,
        *,
        workspace: Path,
        cwd: Path,
        env: Mapping[str, str],
        name: Optional[str] = None,
    ) -> List[str]:
        ws = workspace.resolve()
        rel = cwd.resolve().relative_to(ws)
        container_cwd = self.container_workdir
        if rel != Path("."):
            container_cwd = f"{self.container_workdir}/{rel.as_posix()}"

        argv = ["docker", "run", "--rm", "-v", f"{ws}:{self.container_workdir}", "-w", container_cwd]
        if name:
            argv.extend(["--name", name])
        for vol in self.volumes:
            argv.extend(["-v", vol])
        # names only: docker copies the values from its own environment,
        # so secrets never show up in the process list
        for key in sorted(env):
            if key in ("PATH", "HOME"):
                continue
            argv.extend(["-e", key])
        if self.user:
            argv.extend(["--user", self.user])
        argv.append(self.image)
        argv.extend(["sh", "-c", cmd])
        return argv

    def shell(self, cmd, *, workspace, cwd, env, timeout):
        name = self.container_name(workspace)
        live = self._live.setdefault(workspace, set())
        live.add(name)
        try:
            proc = subprocess.run(
                self.argv(cmd, workspace=workspace, cwd=cwd, env=env, name=name),
                shell=False,
                env=dict(env),
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except (subprocess.TimeoutExpired, KeyboardInterrupt):
            # the client is gone but the container keeps running
            if self._remove_container(name):
                live.discard(name)
            raise
        live.discard(name)
        return proc

    def _remove_container(self, name: str) -> bool:
        try:
            proc = subprocess.run(["docker", "rm", "-f", name], capture_output=True, text=True)
        except OSError as e:
            get_console().print_debug(f"could not remove container {name}: {e}")
            return False
        if proc.returncode != 0:
            get_console().print_debug(f"could not remove container {name}: {proc.stderr.strip()}")
            return False
        return True


_TARGETS: Dict[str, Callable[[str], ExecutionTarget]] = {
    "docker": lambda arg: DockerTarget(arg),
}


def register_target(prefix: str, factory: Callable[[str], ExecutionTarget]) -> None:
    """Plug in another execution target, selected by `runs_on: "<prefix>:<arg>"`."""
    _TARGETS[prefix] = factory


def resolve_target(runs_on: str) -> ExecutionTarget:
    """
    "docker:node:20"  -> DockerTarget("node:20")
    anything else     -> LocalTarget (labels like "ubuntu-latest" run on this host)
    """
    prefix, sep, arg = (runs_on or "local").partition(":")
    if sep and prefix in _TARGETS:
        return _TARGETS[prefix](arg)
    return LocalTarget()
