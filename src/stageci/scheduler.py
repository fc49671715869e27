# scheduler.py
from __future__ import annotations

import os
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Set

from .dag import build_dag
from .environments import EnvironmentRegistry
from .errors import CIError
from .ledger import RunLedger
from .model import Job, JobExecutionResult, JobState, RunStatus
from .runner import JobRunner, RunContext
from .ui.console import get_console


class Scheduler:
    """
    Drives one run to completion:

    - ready set = jobs whose needs have all SUCCEEDED (recorded in the ledger
      before any dependent is dispatched)
    - independent ready jobs run in parallel on a thread pool
    - a FAILED job skips every not-yet-started transitive dependent;
      running siblings are left alone
    - returns once every job is terminal
    """

    def __init__(
        self,
        runner: JobRunner,
        ledger: RunLedger,
        environments: EnvironmentRegistry,
        *,
        max_workers: int | None = None,
        poll_interval: float = 0.1,
    ):
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.runner = runner
        self.ledger = ledger
        self.environments = environments
        self.max_workers = max_workers
        self.poll_interval = poll_interval

    def drive(self, run: RunContext) -> RunStatus:
        run_id = run.run_id
        definition = self.ledger.definition(run_id)
        by_name: Dict[str, Job] = {j.name: j for j in definition.jobs}
        adj, indeg = build_dag(definition.jobs)

        self.ledger.set_status(run_id, RunStatus.RUNNING)

        # definition order among jobs that are ready at the same time
        ready: List[str] = [n for n in definition.names if indeg[n] == 0]
        for name in ready:
            self.ledger.transition(run_id, name, JobState.READY)

        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while ready or in_flight:
                if self.ledger.cancel_requested(run_id):
                    self._skip_not_started(run_id, definition.names, "run cancelled")
                    ready.clear()

                # schedule all currently ready
                while ready:
                    name = ready.pop(0)
                    self.ledger.transition(run_id, name, JobState.RUNNING)
                    get_console().print_job_start(name)
                    fut = pool.submit(self._execute, by_name[name], run)
                    in_flight[fut] = name

                if not in_flight:
                    break

                # wait for a completion (or time out to notice a cancel), then loop
                done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    result: JobExecutionResult = fut.result()
                    self._record(run_id, by_name[name], result)

                    if result.ok:
                        # unlock dependents only after the success is recorded
                        for nxt in sorted(adj[name]):
                            indeg[nxt] -= 1
                            if indeg[nxt] == 0 and self.ledger.job_state(run_id, nxt) is JobState.PENDING:
                                self.ledger.transition(run_id, nxt, JobState.READY)
                                ready.append(nxt)
                    else:
                        self._skip_downstream(run_id, name, adj)

        snapshot = self.ledger.snapshot(run_id)
        all_ok = all(ex.state is JobState.SUCCEEDED for ex in snapshot.executions.values())
        status = RunStatus.SUCCEEDED if all_ok else RunStatus.FAILED
        self.ledger.set_status(run_id, status)
        return status

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _execute(self, job: Job, run: RunContext) -> JobExecutionResult:
        try:
            return self.runner.execute(job, run)
        except Exception as e:
            # one broken job must never take the run down
            get_console().print_exception(e)
            return JobExecutionResult(
                state=JobState.FAILED,
                detail=f"internal error: {e}",
                error_kind="internal",
            )

    def _record(self, run_id: int, job: Job, result: JobExecutionResult) -> None:
        self.ledger.transition(
            run_id,
            job.name,
            result.state,
            detail=result.detail,
            error_kind=result.error_kind,
            attempts=result.attempts,
            log=result.log,
        )
        if result.ok and job.environment and result.output:
            try:
                self.environments.record_output(job.environment, run_id, job.name, result.output)
            except CIError as e:
                get_console().print_failure(job.name, f"could not record environment output: {e.message}")

    def _skip_downstream(self, run_id: int, failed: str, adj: Dict[str, Set[str]]) -> None:
        seen: Set[str] = set()
        q = deque(sorted(adj[failed]))
        while q:
            name = q.popleft()
            if name in seen:
                continue
            seen.add(name)
            q.extend(sorted(adj[name]))
            if self.ledger.job_state(run_id, name) in (JobState.PENDING, JobState.READY):
                reason = f"needs '{failed}' which failed"
                self.ledger.transition(run_id, name, JobState.SKIPPED, detail=reason, error_kind="skipped")
                get_console().print_job_skipped(name, reason)

    def _skip_not_started(self, run_id: int, names: List[str], reason: str) -> None:
        for name in names:
            if self.ledger.job_state(run_id, name) in (JobState.PENDING, JobState.READY):
                self.ledger.transition(run_id, name, JobState.SKIPPED, detail=reason, error_kind="cancelled")
                get_console().print_job_skipped(name, reason)
