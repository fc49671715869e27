# src/stageci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from .definition import validate_definition
from .model import Job, PipelineDefinition, RetryPolicy, Step, TriggerFilter


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def uses(action: str, *, step_name: str | None = None, cwd: str | None = None, **with_: Any) -> Step:
    """Create a step that calls a registered action: uses("upload-artifact", name="build", path="dist").

    Every keyword other than step_name and cwd is passed to the action as its inputs.
    """
    return Step(name=step_name or action, uses=action, with_=with_, cwd=cwd)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[Sequence[str]] = None,
    runs_on: str = "local",
    environment: str | None = None,
    timeout: float | None = None,
    retry: RetryPolicy | int | None = None,
    env: Optional[Dict[str, str]] = None,
    secrets: Optional[Sequence[str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    if isinstance(retry, int):
        retry = RetryPolicy(attempts=retry)

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        runs_on=runs_on,
        environment=environment,
        timeout=timeout,
        retry=retry,
        env=env or {},
        secrets=tuple(secrets or ()),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._runs_on: str = "local"
        self._environment: Optional[str] = None
        self._secrets: list[str] = []
        self._timeout: Optional[float] = None
        self._retry: Optional[RetryPolicy] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def use(self, action: str, *, step_name: str | None = None, **with_: Any):
        self._steps.append(uses(action, step_name=step_name, **with_))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def runs_on(self, target: str):
        self._runs_on = target
        return self

    def deploys_to(self, environment: str, *secrets: str):
        self._environment = environment
        self._secrets.extend(secrets)
        return self

    def timeout_after(self, seconds: float):
        self._timeout = seconds
        return self

    def retry_provisioning(self, attempts: int, *, backoff: float = 1.0, factor: float = 2.0):
        self._retry = RetryPolicy(attempts=attempts, backoff=backoff, factor=factor)
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=tuple(self._steps),
            needs=tuple(self._needs),
            runs_on=self._runs_on,
            environment=self._environment,
            timeout=self._timeout,
            retry=self._retry,
            env=self._env,
            secrets=tuple(self._secrets),
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *jobs: Job,
    branches: Optional[Sequence[str]] = None,
    permissions: Optional[Dict[str, str]] = None,
) -> PipelineDefinition:
    """
    Build and validate a pipeline. Raises DefinitionError on cycles,
    dangling needs or malformed jobs.

        from stageci import pipeline, job, sh

        PIPELINE = pipeline(
            "ci",
            job("build", sh("build", "make")),
            job("test", sh("test", "make test"), needs=["build"]),
        )
    """
    definition = PipelineDefinition(
        name=name,
        jobs=tuple(jobs),
        trigger_filter=TriggerFilter(branches=tuple(branches or ())),
        permissions=permissions or {},
    )
    validate_definition(definition)
    return definition
