# coordinator.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

from .artifacts import ArtifactStore
from .config import Settings
from .definition import validate_definition
from .environments import EnvironmentRegistry, load_environments
from .errors import TriggerFilteredOut
from .ledger import RunLedger
from .model import Environment, JobState, PipelineDefinition, Run, RunStatus, TriggerEvent
from .runner import JobRunner, RunContext
from .scheduler import Scheduler
from .store import RunStore
from .ui.console import get_console


@dataclass(frozen=True)
class JobReport:
    name: str
    state: JobState
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    detail: str = ""
    error_kind: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "detail": self.detail,
            "error_kind": self.error_kind,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class RunReport:
    """What get_run_status() returns: overall status plus per-job detail."""
    run_id: int
    pipeline: str
    status: RunStatus
    trigger: TriggerEvent
    jobs: Dict[str, JobReport] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_run(cls, run: Run) -> "RunReport":
        return cls(
            run_id=run.id,
            pipeline=run.pipeline,
            status=run.status,
            trigger=run.trigger,
            jobs={
                name: JobReport(
                    name=name,
                    state=ex.state,
                    started_at=ex.started_at,
                    finished_at=ex.finished_at,
                    detail=ex.detail,
                    error_kind=ex.error_kind,
                    attempts=ex.attempts,
                )
                for name, ex in run.executions.items()
            },
            created_at=run.created_at,
            finished_at=run.finished_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "status": self.status.value,
            "ref": self.trigger.ref,
            "sha": self.trigger.after,
            "actor": self.trigger.actor,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "jobs": {name: j.to_dict() for name, j in self.jobs.items()},
        }


class RunCoordinator:
    """
    Top-level entry point: submit_run / get_run_status / cancel_run.

    Owns the wiring (store, ledger, artifact store, environments, runner,
    scheduler) and each run's lifecycle from trigger to terminal status.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[RunStore] = None,
        environments: Iterable[Environment] = (),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or Settings()
        self.store = store or RunStore(self.settings.database_url)
        self.ledger = RunLedger(self.store)
        self.artifacts = ArtifactStore(self.settings.artifact_root, ledger=self.ledger)

        envs = list(environments)
        if self.settings.environments_file:
            envs.extend(load_environments(self.settings.environments_file))
        self.environments = EnvironmentRegistry(envs, ledger=self.ledger, sink=self.store)

        self.runner = JobRunner(
            self.artifacts,
            self.environments,
            work_root=self.settings.work_root,
            passthrough_env=self.settings.passthrough_env,
            keep_workspaces=self.settings.keep_workspaces,
            sleep=sleep,
        )
        self.scheduler = Scheduler(
            self.runner,
            self.ledger,
            self.environments,
            max_workers=self.settings.max_workers,
        )
        self._threads: Dict[int, threading.Thread] = {}
        self._lock = threading.Lock()

    # -----------------------------------------------------------------
    # Control surface
    # -----------------------------------------------------------------

    def submit_run(self, definition: PipelineDefinition, trigger: TriggerEvent, *, wait: bool = True) -> int:
        """
        Validate, create the run record, and drive it.

        Raises DefinitionError / TriggerFilteredOut before any run record exists.
        With wait=False the run is driven on a background thread; use wait()/get_run_status().
        """
        validate_definition(definition)
        if not definition.trigger_filter.matches(trigger):
            raise TriggerFilteredOut(
                f"ref '{trigger.ref}' does not match {list(definition.trigger_filter.branches)}"
            )

        run = self.ledger.open_run(definition, trigger)
        get_console().print_run_started(
            run_id=run.id,
            pipeline=definition.name,
            ref=trigger.ref,
            job_count=len(definition.jobs),
        )

        source_root = Path(self.settings.source_root).resolve() if self.settings.source_root else None
        ctx = RunContext(run_id=run.id, trigger=trigger, source_root=source_root)

        if wait:
            self._drive(ctx)
        else:
            t = threading.Thread(target=self._drive, args=(ctx,), name=f"stageci-run-{run.id}", daemon=True)
            with self._lock:
                self._threads[run.id] = t
            t.start()
        return run.id

    def get_run_status(self, run_id: int) -> RunReport:
        return RunReport.from_run(self.ledger.snapshot(run_id))

    def cancel_run(self, run_id: int) -> bool:
        """
        Skip every job of the run that has not started yet; running jobs finish.
        Returns False if the run already finished.
        """
        if self.ledger.request_cancel(run_id):
            get_console().print_info(f"Run {run_id}: cancel requested")
            return True
        self.ledger.snapshot(run_id)  # RunNotFound for unknown ids
        return False

    def wait(self, run_id: int, timeout: Optional[float] = None) -> RunStatus:
        with self._lock:
            t = self._threads.get(run_id)
        if t is not None:
            t.join(timeout)
        return self.get_run_status(run_id).status

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def _drive(self, ctx: RunContext) -> RunStatus:
        try:
            try:
                status = self.scheduler.drive(ctx)
            except Exception as e:
                get_console().print_exception(e)
                self.ledger.set_status(ctx.run_id, RunStatus.FAILED)
                status = RunStatus.FAILED

            get_console().print_results(self.get_run_status(ctx.run_id))
            self.ledger.close_run(ctx.run_id)
            if self.settings.purge_artifacts:
                self.artifacts.purge(ctx.run_id)
            return status
        finally:
            with self._lock:
                self._threads.pop(ctx.run_id, None)
