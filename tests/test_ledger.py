"""Tests for the run ledger and its SQLAlchemy-backed store."""

import pytest

from stageci.dsl import job, pipeline, sh
from stageci.errors import InvalidTransition, RunNotFound
from stageci.ledger import RunLedger
from stageci.model import JobState, RunStatus, TriggerEvent
from stageci.store import RunStore


@pytest.fixture
def store():
    return RunStore("sqlite://")


@pytest.fixture
def ledger(store):
    return RunLedger(store)


@pytest.fixture
def definition():
    return pipeline(
        "ci",
        job("build", sh("b", "true")),
        job("test", sh("t", "true"), needs=["build"]),
        job("deploy", sh("d", "true"), needs=["test"]),
    )


@pytest.fixture
def trigger():
    return TriggerEvent(ref="refs/heads/main", before="1" * 40, after="2" * 40, actor="tester")


class TestOpenRun:
    def test_every_job_starts_pending(self, ledger, definition, trigger):
        run = ledger.open_run(definition, trigger)
        assert run.status is RunStatus.PENDING
        assert {n: ex.state for n, ex in run.executions.items()} == {
            "build": JobState.PENDING,
            "test": JobState.PENDING,
            "deploy": JobState.PENDING,
        }

    def test_run_ids_increase(self, ledger, definition, trigger):
        first = ledger.open_run(definition, trigger).id
        second = ledger.open_run(definition, trigger).id
        assert second > first

    def test_upstream_is_precomputed(self, ledger, definition, trigger):
        run = ledger.open_run(definition, trigger)
        assert ledger.upstream(run.id, "deploy") == {"build", "test"}
        assert ledger.upstream(run.id, "build") == set()


class TestTransitions:
    def test_transition_writes_through(self, ledger, store, definition, trigger):
        run = ledger.open_run(definition, trigger)
        ledger.transition(run.id, "build", JobState.READY)
        ledger.transition(run.id, "build", JobState.RUNNING)
        ledger.transition(run.id, "build", JobState.FAILED, detail="boom", error_kind="step_failure", attempts=1, log="out")

        persisted = store.load_run(run.id).executions["build"]
        assert persisted.state is JobState.FAILED
        assert persisted.detail == "boom"
        assert persisted.error_kind == "step_failure"
        assert persisted.log == "out"
        assert persisted.started_at is not None and persisted.finished_at is not None

    def test_invalid_transition_is_refused(self, ledger, store, definition, trigger):
        run = ledger.open_run(definition, trigger)
        with pytest.raises(InvalidTransition):
            ledger.transition(run.id, "build", JobState.SUCCEEDED)
        assert store.load_run(run.id).executions["build"].state is JobState.PENDING

    def test_snapshot_is_a_copy(self, ledger, definition, trigger):
        run = ledger.open_run(definition, trigger)
        snap = ledger.snapshot(run.id)
        snap.executions["build"].state = JobState.SUCCEEDED
        assert ledger.job_state(run.id, "build") is JobState.PENDING

    def test_terminal_status_sets_finished_at(self, ledger, store, definition, trigger):
        run = ledger.open_run(definition, trigger)
        ledger.set_status(run.id, RunStatus.RUNNING)
        assert store.load_run(run.id).finished_at is None
        ledger.set_status(run.id, RunStatus.SUCCEEDED)
        assert store.load_run(run.id).finished_at is not None


class TestClosedRuns:
    def test_closed_run_reads_from_store(self, ledger, definition, trigger):
        run = ledger.open_run(definition, trigger)
        ledger.close_run(run.id)
        assert ledger.snapshot(run.id).trigger == trigger
        assert ledger.job_state(run.id, "build") is JobState.PENDING
        assert ledger.request_cancel(run.id) is False

    def test_closed_run_keeps_its_needs(self, ledger, store, definition, trigger):
        run = ledger.open_run(definition, trigger)
        ledger.close_run(run.id)
        assert ledger.upstream(run.id, "deploy") == {"build", "test"}
        assert ledger.upstream(run.id, "build") == set()
        assert RunLedger(store).upstream(run.id, "test") == {"build"}

    def test_unknown_run(self, ledger):
        with pytest.raises(RunNotFound):
            ledger.snapshot(99)
        with pytest.raises(RunNotFound):
            ledger.definition(99)
        assert ledger.job_state(99, "build") is None

    def test_file_database_survives_a_new_store(self, tmp_path, definition, trigger):
        url = f"sqlite:///{tmp_path / 'db' / 'runs.db'}"
        run = RunLedger(RunStore(url)).open_run(definition, trigger)
        reopened = RunStore(url).load_run(run.id)
        assert reopened.pipeline == "ci"
        assert list(reopened.executions) == ["build", "test", "deploy"]
