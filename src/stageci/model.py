# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from fnmatch import fnmatch
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from .errors import InvalidTransition


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


# ---------------------------------------------------------------------
# States
# ---------------------------------------------------------------------

class JobState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED)


_TRANSITIONS = {
    JobState.PENDING: {JobState.READY, JobState.SKIPPED},
    JobState.READY: {JobState.RUNNING, JobState.SKIPPED},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED},
}


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED)


# ---------------------------------------------------------------------
# Definition side (immutable once built)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """Opt-in re-attempts for infrastructure (provisioning) failures only."""
    attempts: int = 0
    backoff: float = 1.0
    factor: float = 2.0

    def delays(self) -> Iterator[float]:
        for i in range(self.attempts):
            yield self.backoff * (self.factor ** i)


@dataclass(frozen=True)
class Step:
    """
    A single step inside a job: either an inline shell command (`run`)
    or a reference to a registered action (`uses`) with an input mapping.
    """
    name: str
    run: str | None = None
    uses: str | None = None
    with_: Mapping[str, Any] = field(default_factory=dict, hash=False)
    cwd: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "with_", _freeze(self.with_))

    @property
    def kind(self) -> str:
        return "run" if self.run is not None else (self.uses or "")


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps + dependencies + execution settings.

    `needs` are the names of jobs that must SUCCEED before this job starts.
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    runs_on: str = "local"
    environment: str | None = None
    timeout: float | None = None          # seconds, bounds total step time
    retry: RetryPolicy | None = None
    env: Mapping[str, str] = field(default_factory=dict, hash=False)
    secrets: Tuple[str, ...] = ()         # required secret names from `environment`

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", tuple(self.needs))
        object.__setattr__(self, "secrets", tuple(self.secrets))
        object.__setattr__(self, "env", _freeze({k: str(v) for k, v in dict(self.env).items()}))


@dataclass(frozen=True)
class TriggerFilter:
    branches: Tuple[str, ...] = ()

    def matches(self, trigger: "TriggerEvent") -> bool:
        if not self.branches:
            return True
        return any(fnmatch(trigger.branch, p) for p in self.branches)


@dataclass(frozen=True)
class PipelineDefinition:
    """
    Validated, immutable set of jobs. Build it with
    stageci.definition.parse_definition / load_definition or stageci.dsl.pipeline.
    """
    name: str
    jobs: Tuple[Job, ...]
    trigger_filter: TriggerFilter = TriggerFilter()
    permissions: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "permissions", _freeze(self.permissions))

    @property
    def names(self) -> list[str]:
        return [j.name for j in self.jobs]

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


@dataclass(frozen=True)
class TriggerEvent:
    """External change event that starts a run."""
    ref: str
    before: str = ""
    after: str = ""
    actor: str = ""

    @property
    def branch(self) -> str:
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else self.ref


# ---------------------------------------------------------------------
# Run side (mutable, owned by the ledger)
# ---------------------------------------------------------------------

@dataclass
class JobExecution:
    job: str
    state: JobState = JobState.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    detail: str = ""
    error_kind: str | None = None
    attempts: int = 0
    log: str = ""

    def transition(self, new: JobState, *, at: Optional[datetime] = None) -> None:
        if new not in _TRANSITIONS.get(self.state, set()):
            raise InvalidTransition(
                f"{self.state.value} -> {new.value} is not allowed",
                job=self.job,
            )
        at = at or now_utc()
        if new is JobState.RUNNING:
            self.started_at = at
        if new.terminal:
            self.finished_at = at
        self.state = new


@dataclass
class Run:
    id: int
    pipeline: str
    trigger: TriggerEvent
    status: RunStatus = RunStatus.PENDING
    executions: Dict[str, JobExecution] = field(default_factory=dict)
    created_at: datetime = field(default_factory=now_utc)
    finished_at: Optional[datetime] = None
    cancel_requested: bool = False


@dataclass(frozen=True)
class Artifact:
    name: str
    run_id: int
    producer: str
    blob: bytes = field(repr=False)
    sha256: str = ""
    created_at: datetime = field(default_factory=now_utc)

    @property
    def size(self) -> int:
        return len(self.blob)


@dataclass
class Environment:
    name: str
    protected: bool = False
    secrets: Dict[str, str] = field(default_factory=dict, repr=False)
    last_output: str | None = None


@dataclass(frozen=True)
class JobExecutionResult:
    """What the JobRunner reports back to the scheduler for one job."""
    state: JobState
    detail: str = ""
    error_kind: str | None = None
    attempts: int = 1
    log: str = ""
    output: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is JobState.SUCCEEDED
