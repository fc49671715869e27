"""Tests for the JobExecution state machine and small model helpers."""

import pytest

from stageci.errors import InvalidTransition
from stageci.model import JobExecution, JobState, RetryPolicy, TriggerEvent, TriggerFilter


class TestJobExecutionTransitions:
    """Allowed and refused state moves."""

    def test_happy_path_sets_timestamps(self):
        ex = JobExecution(job="build")
        ex.transition(JobState.READY)
        assert ex.started_at is None
        ex.transition(JobState.RUNNING)
        assert ex.started_at is not None
        ex.transition(JobState.SUCCEEDED)
        assert ex.finished_at >= ex.started_at
        assert ex.state.terminal

    def test_pending_can_be_skipped(self):
        ex = JobExecution(job="deploy")
        ex.transition(JobState.SKIPPED)
        assert ex.state is JobState.SKIPPED
        assert ex.finished_at is not None

    @pytest.mark.parametrize(
        "path",
        [
            [JobState.RUNNING],
            [JobState.READY, JobState.SUCCEEDED],
            [JobState.READY, JobState.RUNNING, JobState.SKIPPED],
            [JobState.READY, JobState.RUNNING, JobState.FAILED, JobState.RUNNING],
        ],
    )
    def test_invalid_moves_raise(self, path):
        ex = JobExecution(job="x")
        with pytest.raises(InvalidTransition):
            for state in path:
                ex.transition(state)

    def test_terminal_state_is_final(self):
        ex = JobExecution(job="x", state=JobState.SUCCEEDED)
        with pytest.raises(InvalidTransition):
            ex.transition(JobState.FAILED)


class TestRetryPolicy:
    def test_delays_back_off(self):
        assert list(RetryPolicy(attempts=3, backoff=0.5, factor=2.0).delays()) == [0.5, 1.0, 2.0]

    def test_no_retry_by_default(self):
        assert list(RetryPolicy().delays()) == []


class TestTriggerFilter:
    def test_empty_filter_matches_everything(self):
        assert TriggerFilter().matches(TriggerEvent(ref="refs/heads/anything"))

    def test_branch_globs(self):
        f = TriggerFilter(branches=("main", "release/*"))
        assert f.matches(TriggerEvent(ref="refs/heads/main"))
        assert f.matches(TriggerEvent(ref="refs/heads/release/1.2"))
        assert not f.matches(TriggerEvent(ref="refs/heads/feature/x"))
