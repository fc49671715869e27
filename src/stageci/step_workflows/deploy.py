# step_workflows/deploy.py
from __future__ import annotations

import subprocess

from ..context import ExecutionContext
from ..errors import JobTimeoutError
from ..model import Step
from ..steps import StepAction, StepResult, register_action


class DeployAction(StepAction):
    """
    Publish to the job's environment.

        uses: deploy
        with:
          command: ./publish.sh dist      # optional, runs with the environment's secrets
          output: https://example.org     # optional; else last stdout line of command

    The output is only recorded on the environment if the whole job succeeds.
    """

    name = "deploy"

    def run(self, ctx: ExecutionContext, step: Step) -> StepResult:
        if not ctx.job.environment:
            return StepResult(ok=False, exit_code=1, diagnostic="deploy step requires the job to reference an environment")

        inputs = self.inputs(ctx, step)
        output = ""
        command = inputs.get("command")
        if command:
            try:
                proc = ctx.target.shell(
                    command,
                    workspace=ctx.workspace,
                    cwd=ctx.resolve_path(step.cwd),
                    env=ctx.env,
                    timeout=ctx.remaining(),
                )
            except subprocess.TimeoutExpired as e:
                raise JobTimeoutError("job exceeded its timeout", job=ctx.job_name, step=step.name) from e
            output = (proc.stdout or "") + (proc.stderr or "")
            if proc.returncode != 0:
                return StepResult(
                    ok=False,
                    exit_code=proc.returncode,
                    output=output,
                    diagnostic=f"deploy to '{ctx.job.environment}' failed (exit={proc.returncode})",
                )

        result = str(inputs.get("output") or "").strip()
        if not result and command:
            lines = [ln.strip() for ln in output.splitlines() if ln.strip()]
            result = ctx.mask(lines[-1]) if lines else ""
        if result:
            ctx.outputs.set_environment_output(result)

        return StepResult(ok=True, output=output or f"deployed to {ctx.job.environment}\n")


register_action(DeployAction())
