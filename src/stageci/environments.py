# environments.py
from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Protocol

import yaml

from .artifacts import RunView
from .errors import CIError, EnvironmentAccessDenied, SecretResolutionError
from .model import Environment, Job, JobState


class OutputSink(Protocol):
    def save_environment(self, name: str, protected: bool, last_output: Optional[str]) -> None: ...

    def load_environment_output(self, name: str) -> Optional[str]: ...


@dataclass(frozen=True)
class EnvironmentBinding:
    """What a deploying job gets: the environment's secrets and its last output."""
    name: str
    secrets: Mapping[str, str] = field(default_factory=dict, repr=False)
    previous_output: Optional[str] = None


class EnvironmentRegistry:
    """
    Named deployment targets with protected secrets.

    Secrets are handed out only to a job that references the environment by
    name, and only once everything that job needs has SUCCEEDED.
    """

    def __init__(
        self,
        environments: Iterable[Environment] = (),
        *,
        ledger: RunView,
        sink: Optional[OutputSink] = None,
    ):
        self.ledger = ledger
        self.sink = sink
        self._lock = threading.Lock()
        self._envs: Dict[str, Environment] = {}
        for env in environments:
            self.add(env)

    def add(self, env: Environment) -> None:
        if self.sink is not None and env.last_output is None:
            env.last_output = self.sink.load_environment_output(env.name)
        with self._lock:
            self._envs[env.name] = env

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._envs)

    def last_output(self, name: str) -> Optional[str]:
        with self._lock:
            env = self._envs.get(name)
            return env.last_output if env else None

    def resolve(self, name: str, run_id: int, job: Job) -> EnvironmentBinding:
        if job.environment != name:
            raise EnvironmentAccessDenied(
                f"job does not reference environment '{name}'",
                job=job.name,
            )

        not_done = sorted(
            d for d in self.ledger.upstream(run_id, job.name)
            if self.ledger.job_state(run_id, d) is not JobState.SUCCEEDED
        )
        if not_done:
            raise EnvironmentAccessDenied(
                f"environment '{name}' requested before needs succeeded",
                job=job.name,
                details={"pending": ",".join(not_done)},
            )

        with self._lock:
            env = self._envs.get(name)
            if env is None:
                raise SecretResolutionError(f"environment '{name}' is not defined", job=job.name)
            missing = sorted(s for s in job.secrets if s not in env.secrets)
            if missing:
                # names only, never values
                raise SecretResolutionError(
                    f"environment '{name}' is missing required secrets: {missing}",
                    job=job.name,
                )
            return EnvironmentBinding(
                name=name,
                secrets=MappingProxyType(dict(env.secrets)),
                previous_output=env.last_output,
            )

    def record_output(self, name: str, run_id: int, job: str, output: str) -> None:
        """
        Replace the environment's last deployment output. Only called for a job
        that SUCCEEDED; a failed deploy never reaches here so the old output stays.
        """
        if not output:
            raise CIError("deployment output must be non-empty", job=job)
        if self.ledger.job_state(run_id, job) is not JobState.SUCCEEDED:
            raise EnvironmentAccessDenied(
                f"cannot record output for '{name}' from a job that has not succeeded",
                job=job,
            )
        with self._lock:
            env = self._envs.get(name)
            if env is None:
                raise SecretResolutionError(f"environment '{name}' is not defined", job=job)
            env.last_output = output
            if self.sink is not None:
                self.sink.save_environment(env.name, env.protected, output)


# ---------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------

def _secret_value(raw: object) -> Optional[str]:
    """'env:NAME' reads the host variable; anything else is taken literally."""
    value = str(raw)
    if value.startswith("env:"):
        return os.environ.get(value[len("env:"):])
    return value


def parse_environments(data: Mapping) -> list[Environment]:
    envs = []
    for name, spec in (data.get("environments") or {}).items():
        spec = spec or {}
        secrets: Dict[str, str] = {}
        for key, raw in (spec.get("secrets") or {}).items():
            value = _secret_value(raw)
            if value is not None:
                secrets[str(key)] = value
        envs.append(
            Environment(
                name=str(name),
                protected=bool(spec.get("protected", False)),
                secrets=secrets,
            )
        )
    return envs


def load_environments(path: str | Path) -> list[Environment]:
    """
    Load environments from YAML:

        environments:
          prod:
            protected: true
            secrets:
              DEPLOY_TOKEN: env:PROD_DEPLOY_TOKEN
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Environments file not found: {p}")
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise CIError(f"Invalid YAML in {p}: {e}")
    return parse_environments(data)
