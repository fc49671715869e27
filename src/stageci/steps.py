# steps.py
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping

from .context import ExecutionContext
from .errors import JobTimeoutError, StepFailure
from .model import Step


@dataclass(frozen=True)
class StepResult:
    ok: bool
    exit_code: int = 0
    output: str = ""
    diagnostic: str = ""
    exports: Mapping[str, str] = field(default_factory=dict)


class StepAction:
    """
    One step kind. The runner only ever calls `run(ctx, step)`; built-in and
    plugged-in kinds look the same to it.
    """

    name = "base"

    def run(self, ctx: ExecutionContext, step: Step) -> StepResult:
        raise NotImplementedError

    def inputs(self, ctx: ExecutionContext, step: Step) -> Dict[str, Any]:
        return {k: ctx.render(v) if isinstance(v, str) else v for k, v in step.with_.items()}


def copy_tree(src: Path, dst: Path, *, ignore=(".git", ".stageci", "__pycache__")) -> None:
    shutil.copytree(src, dst, dirs_exist_ok=True, ignore=shutil.ignore_patterns(*ignore))


_ACTIONS: Dict[str, StepAction] = {}


def register_action(action: StepAction, name: str | None = None) -> StepAction:
    _ACTIONS[name or action.name] = action
    return action


def known_actions() -> list[str]:
    return sorted(_ACTIONS)


def resolve_action(step: Step) -> StepAction:
    if step.run is not None:
        return _ACTIONS["run"]
    try:
        return _ACTIONS[step.uses or ""]
    except KeyError:
        raise KeyError(f"unknown action '{step.uses}' (known: {known_actions()})") from None


# ---------------------------------------------------------------------
# Built-in: inline shell command
# ---------------------------------------------------------------------

class ShellAction(StepAction):
    name = "run"

    def run(self, ctx: ExecutionContext, step: Step) -> StepResult:
        cwd = ctx.resolve_path(step.cwd)
        if not cwd.exists():
            return StepResult(ok=False, exit_code=-1, diagnostic=f"cwd not found: {step.cwd}")

        cmd = ctx.render(step.run or "")
        remaining = ctx.remaining()
        if remaining is not None and remaining <= 0:
            raise JobTimeoutError("job exceeded its timeout", job=ctx.job_name, step=step.name)

        try:
            proc = ctx.target.shell(
                cmd,
                workspace=ctx.workspace,
                cwd=cwd,
                env=ctx.env,
                timeout=remaining,
            )
        except subprocess.TimeoutExpired as e:
            raise JobTimeoutError(
                "job exceeded its timeout",
                job=ctx.job_name,
                step=step.name,
                details={"timeout": ctx.job.timeout},
            ) from e

        output = (proc.stdout or "") + (proc.stderr or "")
        if proc.returncode != 0:
            failure = StepFailure(
                job=ctx.job_name,
                step=step.name,
                cmd=step.run or "",
                exit_code=proc.returncode,
                output=output[-4000:],
            )
            return StepResult(ok=False, exit_code=proc.returncode, output=output, diagnostic=str(failure))
        return StepResult(ok=True, output=output)


register_action(ShellAction())

# the remaining built-ins register themselves on import
from .step_workflows import artifacts as _artifacts  # noqa: E402,F401
from .step_workflows import checkout as _checkout  # noqa: E402,F401
from .step_workflows import deploy as _deploy  # noqa: E402,F401
from .step_workflows import intercept as _intercept  # noqa: E402,F401
