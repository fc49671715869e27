# errors.py
from __future__ import annotations

from dataclasses import dataclass


class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - API error payloads
      - the per-job detail surfaced by get_run_status()
    """

    kind = "ci_error"

    def __init__(
        self,
        message: str,
        *,
        job: str | None = None,
        step: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Definition / submission
# ----------------------------------------------------------------------

class DefinitionError(CIError):
    """Pipeline definition rejected (cycle, dangling needs, malformed job)."""

    kind = "definition_error"


class TriggerFilteredOut(CIError):
    """The trigger event does not match the pipeline's trigger filter."""

    kind = "trigger_filtered_out"


class RunNotFound(CIError, KeyError):
    kind = "run_not_found"

    def __str__(self) -> str:
        return CIError.__str__(self)


# ----------------------------------------------------------------------
# Job execution
# ----------------------------------------------------------------------

@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    kind = "step_failure"

    @property
    def message(self) -> str:
        return f"step '{self.step}' failed (exit={self.exit_code})"

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class InfrastructureError(CIError):
    """The execution context for a job could not be provisioned."""

    kind = "infrastructure_error"


class JobTimeoutError(CIError, TimeoutError):
    kind = "timeout"

    def __str__(self) -> str:
        return CIError.__str__(self)


class SecretResolutionError(CIError):
    """Referenced environment or required secret is missing."""

    kind = "secret_resolution_error"


class EnvironmentAccessDenied(CIError):
    """A job tried to bind an environment it does not reference, or too early."""

    kind = "environment_access_denied"


class ArtifactNotFound(CIError, LookupError):
    kind = "not_found"

    def __str__(self) -> str:
        return CIError.__str__(self)


class InvalidTransition(CIError, ValueError):
    """JobExecution state moved backwards or skipped a required state."""

    kind = "invalid_transition"

    def __str__(self) -> str:
        return CIError.__str__(self)


class UnmatchedRequest(CIError):
    """Strict interception saw an outbound call that no rule matches."""

    kind = "unmatched_request"
