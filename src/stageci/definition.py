# definition.py
"""
Turn workflow text (YAML or a Python module) into a validated, immutable
PipelineDefinition. Nothing runs until this has succeeded.
"""
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .dag import build_dag, topo_levels
from .errors import DefinitionError
from .model import Job, PipelineDefinition, RetryPolicy, Step, TriggerFilter
from .steps import known_actions


def _get(spec: Mapping, *keys: str, default: Any = None) -> Any:
    """First present key wins; accepts GitHub-style, snake_case and camelCase spellings."""
    for k in keys:
        if k in spec:
            return spec[k]
    return default


def _str_list(value: Any, what: str, job: Optional[str] = None) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return list(value)
    raise DefinitionError(f"'{what}' must be a string or a list of strings", job=job)


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

def _parse_step(job: str, index: int, spec: Any) -> Step:
    if not isinstance(spec, Mapping):
        raise DefinitionError(f"step #{index + 1} must be a mapping", job=job)
    run = spec.get("run")
    uses = spec.get("uses")
    with_ = spec.get("with") or spec.get("with_") or {}
    if not isinstance(with_, Mapping):
        raise DefinitionError(f"step #{index + 1}: 'with' must be a mapping", job=job)
    name = spec.get("name") or (str(run).splitlines()[0] if run else str(uses or f"step-{index + 1}"))
    return Step(
        name=str(name),
        run=str(run) if run is not None else None,
        uses=str(uses) if uses is not None else None,
        with_=dict(with_),
        cwd=_get(spec, "working-directory", "cwd"),
    )


def _parse_retry(job: str, value: Any) -> Optional[RetryPolicy]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise DefinitionError("'retry' must be an integer or a mapping", job=job)
    if isinstance(value, int):
        return RetryPolicy(attempts=value)
    if isinstance(value, Mapping):
        try:
            return RetryPolicy(
                attempts=int(value.get("attempts", 0)),
                backoff=float(value.get("backoff", 1.0)),
                factor=float(value.get("factor", 2.0)),
            )
        except (TypeError, ValueError) as e:
            raise DefinitionError(f"invalid retry policy: {e}", job=job) from e
    raise DefinitionError("'retry' must be an integer or a mapping", job=job)


def _parse_timeout(job: str, spec: Mapping) -> Optional[float]:
    try:
        if "timeout-minutes" in spec:
            return float(spec["timeout-minutes"]) * 60
        value = _get(spec, "timeout", "timeout_seconds")
        return float(value) if value is not None else None
    except (TypeError, ValueError) as e:
        raise DefinitionError(f"invalid timeout: {e}", job=job) from e


def _parse_job(name: str, spec: Any) -> Job:
    if not isinstance(spec, Mapping):
        raise DefinitionError("job must be a mapping", job=name)

    steps_spec = spec.get("steps")
    if not isinstance(steps_spec, list):
        raise DefinitionError("job needs a 'steps' list", job=name)

    environment = spec.get("environment")
    if isinstance(environment, Mapping):
        environment = environment.get("name")

    env = spec.get("env") or {}
    if not isinstance(env, Mapping):
        raise DefinitionError("'env' must be a mapping", job=name)

    return Job(
        name=str(name),
        steps=tuple(_parse_step(name, i, s) for i, s in enumerate(steps_spec)),
        needs=tuple(_str_list(spec.get("needs"), "needs", name)),
        runs_on=str(_get(spec, "runs-on", "runs_on", "runsOn", default="local")),
        environment=str(environment) if environment else None,
        timeout=_parse_timeout(name, spec),
        retry=_parse_retry(name, spec.get("retry")),
        env={str(k): str(v) for k, v in env.items()},
        secrets=tuple(_str_list(spec.get("secrets"), "secrets", name)),
    )


def _parse_trigger(value: Any) -> TriggerFilter:
    # on: push | [push] | {push: {branches: [main]}} | {branches: [main]}
    if value is None or isinstance(value, (str, list)):
        return TriggerFilter()
    if isinstance(value, Mapping):
        push = value.get("push", value)
        if isinstance(push, Mapping):
            return TriggerFilter(branches=tuple(_str_list(push.get("branches"), "branches")))
        return TriggerFilter()
    raise DefinitionError("invalid trigger filter")


def parse_definition(data: Any, *, name: Optional[str] = None) -> PipelineDefinition:
    """
    Parse the logical schema:

        name: ci
        on: {push: {branches: [main]}}
        permissions: {contents: read}
        jobs:
          build: {runs-on: local, steps: [...]}
          test:  {needs: build, steps: [...]}
          deploy: {needs: [test], environment: prod, steps: [...]}
    """
    if not isinstance(data, Mapping):
        raise DefinitionError("pipeline definition must be a mapping")

    jobs_spec = data.get("jobs")
    if not isinstance(jobs_spec, Mapping) or not jobs_spec:
        raise DefinitionError("pipeline definition needs a non-empty 'jobs' mapping")

    # YAML 1.1 reads a bare `on:` key as boolean True
    trigger = _get(data, "on", "trigger_filter", "triggerFilter")
    if trigger is None and True in data:
        trigger = data[True]

    permissions = data.get("permissions") or {}
    if isinstance(permissions, str):
        permissions = {"*": permissions}
    if not isinstance(permissions, Mapping):
        raise DefinitionError("'permissions' must be a mapping or a string")

    definition = PipelineDefinition(
        name=str(data.get("name") or name or "pipeline"),
        jobs=tuple(_parse_job(str(jn), js) for jn, js in jobs_spec.items()),
        trigger_filter=_parse_trigger(trigger),
        permissions={str(k): str(v) for k, v in permissions.items()},
    )
    validate_definition(definition)
    return definition


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def validate_definition(definition: PipelineDefinition) -> List[List[str]]:
    """
    Reject anything that cannot run. Returns the topological stages.

    Raises DefinitionError for: no jobs, empty jobs, malformed steps, unknown
    actions, bad timeout/retry, secrets without an environment, duplicate
    names, dangling needs, cycles.
    """
    if not definition.jobs:
        raise DefinitionError("pipeline has no jobs")

    actions = set(known_actions())
    for job in definition.jobs:
        if not job.name:
            raise DefinitionError("job name must be non-empty")
        if not job.steps:
            raise DefinitionError("job has no steps", job=job.name)
        if job.timeout is not None and job.timeout <= 0:
            raise DefinitionError("timeout must be positive", job=job.name)
        if job.retry is not None and (job.retry.attempts < 0 or job.retry.backoff < 0):
            raise DefinitionError("retry attempts/backoff must be >= 0", job=job.name)
        if job.secrets and not job.environment:
            raise DefinitionError("job requires secrets but references no environment", job=job.name)
        for step in job.steps:
            if (step.run is None) == (step.uses is None):
                raise DefinitionError("step needs exactly one of 'run' or 'uses'", job=job.name, step=step.name)
            if step.uses is not None and step.uses not in actions:
                raise DefinitionError(
                    f"unknown action '{step.uses}' (known: {sorted(actions)})",
                    job=job.name,
                    step=step.name,
                )

    adj, indeg = build_dag(definition.jobs)
    return topo_levels(adj, indeg)


# ----------------------------------------------------------------------
# Loading (local file)
# ----------------------------------------------------------------------

def load_definition(path: str | Path) -> PipelineDefinition:
    """
    Load a pipeline from a .yml/.yaml file or a .py module.

    A Python module must define one of:
      - workflow() -> PipelineDefinition | List[Job]
      - PIPELINE = PipelineDefinition
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        try:
            data = yaml.safe_load(wf_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise DefinitionError(f"Invalid YAML in {wf_path.name}: {e}") from e
        return parse_definition(data, name=wf_path.stem)

    if wf_path.suffix != ".py":
        raise DefinitionError(f"Workflow must be a .py or .yml file, got: {wf_path.name}")

    module_name = f"stageci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    found: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        found = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        found = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        found = globals_dict["JOBS"]

    if isinstance(found, PipelineDefinition):
        validate_definition(found)
        return found
    if isinstance(found, list) and found and all(isinstance(j, Job) for j in found):
        definition = PipelineDefinition(name=wf_path.stem, jobs=tuple(found))
        validate_definition(definition)
        return definition

    raise DefinitionError(
        "Workflow must return/define a PipelineDefinition or a List[Job]. "
        "Define workflow(), PIPELINE = pipeline(...) or JOBS = [Job, ...]."
    )


# ----------------------------------------------------------------------
# Serialization (for submitting to the control plane)
# ----------------------------------------------------------------------

def definition_to_dict(definition: PipelineDefinition) -> Dict[str, Any]:
    """Reverse of parse_definition()."""
    jobs: Dict[str, Any] = {}
    for job in definition.jobs:
        steps = []
        for step in job.steps:
            step_dict: Dict[str, Any] = {"name": step.name}
            if step.run is not None:
                step_dict["run"] = step.run
            if step.uses is not None:
                step_dict["uses"] = step.uses
            if step.with_:
                step_dict["with"] = dict(step.with_)
            if step.cwd is not None:
                step_dict["working-directory"] = step.cwd
            steps.append(step_dict)

        job_dict: Dict[str, Any] = {"runs-on": job.runs_on, "needs": list(job.needs), "steps": steps}
        if job.environment:
            job_dict["environment"] = job.environment
        if job.timeout is not None:
            job_dict["timeout"] = job.timeout
        if job.retry is not None:
            job_dict["retry"] = {
                "attempts": job.retry.attempts,
                "backoff": job.retry.backoff,
                "factor": job.retry.factor,
            }
        if job.env:
            job_dict["env"] = dict(job.env)
        if job.secrets:
            job_dict["secrets"] = list(job.secrets)
        jobs[job.name] = job_dict

    data: Dict[str, Any] = {"name": definition.name, "jobs": jobs}
    if definition.trigger_filter.branches:
        data["on"] = {"push": {"branches": list(definition.trigger_filter.branches)}}
    if definition.permissions:
        data["permissions"] = dict(definition.permissions)
    return data
