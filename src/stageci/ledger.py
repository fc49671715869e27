# ledger.py
from __future__ import annotations

import copy
import threading
from typing import Dict, Optional, Set

from .dag import upstream
from .errors import RunNotFound
from .model import JobExecution, JobState, PipelineDefinition, Run, RunStatus, TriggerEvent, now_utc
from .store import RunStore


class RunLedger:
    """
    The run-scoped JobExecution status table, keyed by (run id, job name).

    Single source of truth the scheduler, the artifact store and the
    environment registry all read. Every transition is written through
    to the RunStore before the call returns.
    """

    def __init__(self, store: RunStore):
        self.store = store
        self._lock = threading.RLock()
        self._runs: Dict[int, Run] = {}
        self._definitions: Dict[int, PipelineDefinition] = {}
        self._upstream: Dict[int, Dict[str, Set[str]]] = {}

    def open_run(self, definition: PipelineDefinition, trigger: TriggerEvent) -> Run:
        needs = {n: upstream(definition.jobs, n) for n in definition.names}
        run = self.store.create_run(definition.name, trigger, definition.names, needs)
        with self._lock:
            self._runs[run.id] = run
            self._definitions[run.id] = definition
            self._upstream[run.id] = needs
        return run

    def definition(self, run_id: int) -> PipelineDefinition:
        with self._lock:
            try:
                return self._definitions[run_id]
            except KeyError:
                raise RunNotFound(f"run {run_id} is not active") from None

    def _run(self, run_id: int) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(f"run {run_id} is not active")
        return run

    # -----------------------------------------------------------------
    # reads
    # -----------------------------------------------------------------

    def snapshot(self, run_id: int) -> Run:
        """Copy of the run record (live or persisted)."""
        with self._lock:
            run = self._runs.get(run_id)
            if run is not None:
                return copy.deepcopy(run)
        run = self.store.load_run(run_id)
        if run is None:
            raise RunNotFound(f"run {run_id} does not exist")
        return run

    def job_state(self, run_id: int, job: str) -> Optional[JobState]:
        with self._lock:
            run = self._runs.get(run_id)
            if run is not None:
                ex = run.executions.get(job)
                return ex.state if ex else None
        run = self.store.load_run(run_id)
        if run is None or job not in run.executions:
            return None
        return run.executions[job].state

    def upstream(self, run_id: int, job: str) -> Set[str]:
        """Every job `job` transitively needs, for live and finished runs alike."""
        with self._lock:
            live = self._upstream.get(run_id)
            if live is not None:
                return set(live.get(job, set()))
        return self.store.load_upstream(run_id, job)

    def cancel_requested(self, run_id: int) -> bool:
        with self._lock:
            return self._run(run_id).cancel_requested

    # -----------------------------------------------------------------
    # writes
    # -----------------------------------------------------------------

    def transition(
        self,
        run_id: int,
        job: str,
        state: JobState,
        *,
        detail: Optional[str] = None,
        error_kind: Optional[str] = None,
        attempts: Optional[int] = None,
        log: Optional[str] = None,
    ) -> JobExecution:
        with self._lock:
            ex = self._run(run_id).executions[job]
            ex.transition(state)
            if detail is not None:
                ex.detail = detail
            if error_kind is not None:
                ex.error_kind = error_kind
            if attempts is not None:
                ex.attempts = attempts
            if log is not None:
                ex.log = log
            self.store.save_execution(run_id, ex)
            return copy.copy(ex)

    def set_status(self, run_id: int, status: RunStatus) -> None:
        with self._lock:
            run = self._run(run_id)
            run.status = status
            if status.terminal:
                run.finished_at = now_utc()
            self.store.save_run(run)

    def request_cancel(self, run_id: int) -> bool:
        """Returns False if the run is not active (unknown or already finished)."""
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status.terminal:
                return False
            run.cancel_requested = True
            return True

    def close_run(self, run_id: int) -> None:
        """Drop a finished run from memory; its state and needs stay readable from the store."""
        with self._lock:
            self._runs.pop(run_id, None)
            self._definitions.pop(run_id, None)
            self._upstream.pop(run_id, None)
