# runner.py
from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

from .artifacts import ArtifactStore
from .context import ExecutionContext, JobOutputs
from .environments import EnvironmentBinding, EnvironmentRegistry
from .errors import (
    CIError,
    EnvironmentAccessDenied,
    InfrastructureError,
    JobTimeoutError,
    SecretResolutionError,
)
from .model import Job, JobExecutionResult, JobState, RetryPolicy, TriggerEvent
from .steps import resolve_action
from .targets import ExecutionTarget, resolve_target
from .ui.console import get_console

# Host variables a job may see; everything else must be declared in job.env.
DEFAULT_PASSTHROUGH_ENV = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "TERM", "SYSTEMROOT")


@dataclass(frozen=True)
class RunContext:
    """Run-wide facts handed to every job execution of one run."""
    run_id: int
    trigger: TriggerEvent
    source_root: Optional[Path] = None


class JobRunner:
    """
    Executes one ready job:
      1. bind its environment (secrets) if it references one
      2. provision a fresh workspace on its execution target (retry per policy)
      3. run steps strictly in order, stop at the first failure
      4. on success push staged artifacts to the store
    Never raises for job-level problems; they come back as a FAILED result.
    """

    def __init__(
        self,
        artifacts: ArtifactStore,
        environments: EnvironmentRegistry,
        *,
        work_root: str | Path = ".stageci/work",
        passthrough_env: Iterable[str] = DEFAULT_PASSTHROUGH_ENV,
        keep_workspaces: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.artifacts = artifacts
        self.environments = environments
        self.work_root = Path(work_root).resolve()
        self.passthrough_env = tuple(passthrough_env)
        self.keep_workspaces = keep_workspaces
        self._sleep = sleep

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def execute(self, job: Job, run: RunContext) -> JobExecutionResult:
        binding: Optional[EnvironmentBinding] = None
        if job.environment:
            try:
                binding = self.environments.resolve(job.environment, run.run_id, job)
            except (SecretResolutionError, EnvironmentAccessDenied) as e:
                get_console().print_failure(job.name, e.message, is_job=True)
                return _failed(e.kind, e.message, attempts=0)

        target = resolve_target(job.runs_on)
        try:
            workspace, attempts = self._provision(job, run, target)
        except InfrastructureError as e:
            get_console().print_failure(job.name, e.message, is_job=True)
            return _failed(e.kind, e.message, attempts=int(e.details.get("attempts", 1)))

        try:
            ctx = self._context(job, run, target, workspace, binding)
            return self._run_steps(job, run, ctx, attempts)
        finally:
            if not self.keep_workspaces:
                target.release(workspace)

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _provision(self, job: Job, run: RunContext, target: ExecutionTarget) -> Tuple[Path, int]:
        delays = list((job.retry or RetryPolicy()).delays())
        attempt = 0
        while True:
            attempt += 1
            try:
                return target.provision(self.work_root, run.run_id, job.name), attempt
            except InfrastructureError as e:
                if attempt > len(delays):
                    e.details["attempts"] = attempt
                    raise
                delay = delays[attempt - 1]
                get_console().print_retry(job.name, attempt, delay, e.message)
                self._sleep(delay)

    def _context(
        self,
        job: Job,
        run: RunContext,
        target: ExecutionTarget,
        workspace: Path,
        binding: Optional[EnvironmentBinding],
    ) -> ExecutionContext:
        env = {k: os.environ[k] for k in self.passthrough_env if k in os.environ}
        env.update(
            {
                "CI": "true",
                "STAGECI": "true",
                "STAGECI_RUN_ID": str(run.run_id),
                "STAGECI_JOB": job.name,
                "STAGECI_REF": run.trigger.ref,
                "STAGECI_SHA": run.trigger.after,
                "STAGECI_BEFORE": run.trigger.before,
                "STAGECI_ACTOR": run.trigger.actor,
                "STAGECI_WORKSPACE": str(workspace),
            }
        )
        secrets = dict(binding.secrets) if binding else {}
        env.update(secrets)

        base = ExecutionContext(
            run_id=run.run_id,
            job=job,
            trigger=run.trigger,
            workspace=workspace,
            target=target,
            artifacts=self.artifacts,
            outputs=JobOutputs(),
            env=env,
            secrets=secrets,
            previous_output=binding.previous_output if binding else None,
            source_root=run.source_root,
            deadline=(time.monotonic() + job.timeout) if job.timeout else None,
        )
        # job.env may reference ${{ secrets.X }} / ${{ run.sha }}
        return base.with_env({k: base.render(v) for k, v in job.env.items()})

    def _run_steps(self, job: Job, run: RunContext, ctx: ExecutionContext, attempts: int) -> JobExecutionResult:
        console = get_console()
        log: List[str] = []

        def fail(kind: str, detail: str) -> JobExecutionResult:
            detail = ctx.mask(detail)
            console.print_failure(job.name, detail, is_job=True)
            return _failed(kind, detail, attempts=attempts, log="".join(log))

        for step in job.steps:
            remaining = ctx.remaining()
            if remaining is not None and remaining <= 0:
                return fail(JobTimeoutError.kind, f"timed out before step '{step.name}' (timeout={job.timeout}s)")

            console.print_step(job.name, step.name)
            log.append(f"##[step] {step.name}\n")
            try:
                result = resolve_action(step).run(ctx, step)
            except JobTimeoutError as e:
                return fail(e.kind, f"timed out in step '{step.name}' (timeout={job.timeout}s)")
            except CIError as e:
                return fail(e.kind, f"step '{step.name}': {e.message}")
            except (OSError, ValueError, KeyError) as e:
                return fail("step_failure", f"step '{step.name}': {e}")

            if result.output:
                log.append(ctx.mask(result.output))
            if not result.ok:
                return fail("step_failure", result.diagnostic or f"step '{step.name}' failed")
            if result.exports:
                ctx = ctx.with_env(result.exports)

        remaining = ctx.remaining()
        if remaining is not None and remaining < 0:
            return fail(JobTimeoutError.kind, f"timed out (timeout={job.timeout}s)")

        for name, blob in ctx.outputs.artifacts.items():
            self.artifacts.put(name, run.run_id, job.name, blob)

        output = ctx.outputs.environment_output
        if job.environment and not output:
            # nothing explicit: the deployed revision is the output
            output = run.trigger.after or run.trigger.ref

        console.print_success(job.name)
        return JobExecutionResult(
            state=JobState.SUCCEEDED,
            attempts=attempts,
            log="".join(log),
            output=output,
        )


def _failed(kind: str, detail: str, *, attempts: int, log: str = "") -> JobExecutionResult:
    return JobExecutionResult(
        state=JobState.FAILED,
        detail=detail,
        error_kind=kind,
        attempts=attempts,
        log=log,
    )
