# context.py
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Dict, Mapping, Optional

from .model import Job, TriggerEvent

if TYPE_CHECKING:
    from .artifacts import ArtifactStore
    from .targets import ExecutionTarget


MASK = "***"

_EXPR = re.compile(r"\$\{\{\s*([a-z_]+)\.([A-Za-z0-9_\-]+)\s*\}\}")


@dataclass
class JobOutputs:
    """
    Per-job sink for things that only take effect if the whole job succeeds:
    staged artifacts and the environment output. Never shared between jobs.
    """
    artifacts: Dict[str, bytes] = field(default_factory=dict)
    environment_output: Optional[str] = None

    def stage_artifact(self, name: str, blob: bytes) -> None:
        self.artifacts[name] = blob

    def set_environment_output(self, value: str) -> None:
        self.environment_output = value


@dataclass(frozen=True)
class ExecutionContext:
    """
    Everything a job's steps may see, built fresh for each job execution.

    Secrets are only present when the job references an environment; they are
    part of `env` for the job's own processes and masked out of any captured output.
    """
    run_id: int
    job: Job
    trigger: TriggerEvent
    workspace: Path
    target: "ExecutionTarget"
    artifacts: "ArtifactStore"
    outputs: JobOutputs
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict, repr=False)
    previous_output: Optional[str] = None
    source_root: Optional[Path] = None
    deadline: Optional[float] = None  # time.monotonic() based

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))
        object.__setattr__(self, "secrets", MappingProxyType(dict(self.secrets)))

    @property
    def job_name(self) -> str:
        return self.job.name

    def with_env(self, extra: Mapping[str, str]) -> "ExecutionContext":
        """Derive a context for later steps; the current one is left as is."""
        merged = dict(self.env)
        merged.update({k: str(v) for k, v in extra.items()})
        return replace(self, env=merged)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def resolve_path(self, rel: str | None) -> Path:
        """Resolve a path inside the workspace; escaping it is not allowed."""
        root = self.workspace.resolve()
        p = (root / (rel or ".")).resolve()
        if p != root and root not in p.parents:
            raise ValueError(f"path escapes workspace: {rel}")
        return p

    # -----------------------------------------------------------------
    # ${{ scope.key }} substitution
    # -----------------------------------------------------------------

    def render(self, text: str) -> str:
        def _sub(m: re.Match) -> str:
            scope, key = m.group(1), m.group(2)
            if scope == "secrets":
                return self.secrets.get(key, "")
            if scope == "env":
                return self.env.get(key, "")
            if scope == "run":
                return {
                    "id": str(self.run_id),
                    "ref": self.trigger.ref,
                    "sha": self.trigger.after,
                    "before": self.trigger.before,
                    "actor": self.trigger.actor,
                }.get(key, "")
            if scope == "job" and key == "name":
                return self.job.name
            if scope == "environment" and key == "previous_output":
                return self.previous_output or ""
            return ""

        return _EXPR.sub(_sub, text)

    def mask(self, text: str) -> str:
        """Replace every secret value in `text` with ***."""
        # longest first so a secret containing another one is fully hidden
        for value in sorted(self.secrets.values(), key=len, reverse=True):
            if value:
                text = text.replace(value, MASK)
        return text
