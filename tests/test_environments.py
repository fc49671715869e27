"""Tests for environment binding: who gets secrets, and when outputs change."""

import pytest

from stageci.environments import EnvironmentRegistry, load_environments
from stageci.errors import CIError, EnvironmentAccessDenied, SecretResolutionError
from stageci.model import Environment, Job, JobState, Step
from stageci.store import RunStore


class FakeLedger:
    def __init__(self):
        self.states = {}
        self.needs = {}

    def job_state(self, run_id, job):
        return self.states.get((run_id, job))

    def upstream(self, run_id, job):
        return set(self.needs.get((run_id, job), set()))


def _deploy_job(**kw):
    kw.setdefault("environment", "prod")
    return Job(name="deploy", steps=(Step(name="s", run="true"),), needs=("test",), **kw)


@pytest.fixture
def ledger():
    ledger = FakeLedger()
    ledger.needs[(1, "deploy")] = {"build", "test"}
    ledger.states[(1, "build")] = JobState.SUCCEEDED
    ledger.states[(1, "test")] = JobState.SUCCEEDED
    return ledger


@pytest.fixture
def registry(ledger):
    return EnvironmentRegistry(
        [Environment(name="prod", protected=True, secrets={"DEPLOY_TOKEN": "t0k"}, last_output="v1")],
        ledger=ledger,
        sink=RunStore("sqlite://"),
    )


class TestResolve:
    def test_binding_carries_secrets_and_previous_output(self, registry):
        binding = registry.resolve("prod", 1, _deploy_job(secrets=("DEPLOY_TOKEN",)))
        assert binding.secrets == {"DEPLOY_TOKEN": "t0k"}
        assert binding.previous_output == "v1"
        assert "t0k" not in repr(binding)

    def test_job_must_reference_the_environment(self, registry):
        with pytest.raises(EnvironmentAccessDenied):
            registry.resolve("prod", 1, _deploy_job(environment="staging"))

    def test_needs_must_have_succeeded(self, registry, ledger):
        ledger.states[(1, "test")] = JobState.RUNNING
        with pytest.raises(EnvironmentAccessDenied) as exc:
            registry.resolve("prod", 1, _deploy_job())
        assert exc.value.details["pending"] == "test"

    def test_unknown_environment(self, registry):
        job = Job(name="deploy", steps=(Step(name="s", run="true"),), environment="qa")
        with pytest.raises(SecretResolutionError, match="not defined"):
            registry.resolve("qa", 1, job)

    def test_missing_secret_names_only(self, registry):
        with pytest.raises(SecretResolutionError) as exc:
            registry.resolve("prod", 1, _deploy_job(secrets=("DEPLOY_TOKEN", "SIGNING_KEY")))
        assert "SIGNING_KEY" in exc.value.message
        assert "t0k" not in str(exc.value)


class TestRecordOutput:
    def test_success_replaces_output_and_persists(self, registry, ledger):
        ledger.states[(1, "deploy")] = JobState.SUCCEEDED
        registry.record_output("prod", 1, "deploy", "v2")
        assert registry.last_output("prod") == "v2"
        assert registry.sink.load_environment_output("prod") == "v2"

    def test_failed_job_cannot_record(self, registry, ledger):
        ledger.states[(1, "deploy")] = JobState.FAILED
        with pytest.raises(EnvironmentAccessDenied):
            registry.record_output("prod", 1, "deploy", "v2")
        assert registry.last_output("prod") == "v1"

    def test_output_must_be_non_empty(self, registry, ledger):
        ledger.states[(1, "deploy")] = JobState.SUCCEEDED
        with pytest.raises(CIError):
            registry.record_output("prod", 1, "deploy", "")

    def test_persisted_output_is_reloaded(self, ledger):
        store = RunStore("sqlite://")
        store.save_environment("prod", True, "v9")
        registry = EnvironmentRegistry([Environment(name="prod")], ledger=ledger, sink=store)
        assert registry.last_output("prod") == "v9"


class TestLoadEnvironments:
    def test_yaml_with_env_references(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROD_TOKEN_FOR_TEST", "from-host")
        monkeypatch.delenv("UNSET_TOKEN_FOR_TEST", raising=False)
        path = tmp_path / "environments.yml"
        path.write_text(
            "environments:\n"
            "  prod:\n"
            "    protected: true\n"
            "    secrets:\n"
            "      DEPLOY_TOKEN: env:PROD_TOKEN_FOR_TEST\n"
            "      OTHER: env:UNSET_TOKEN_FOR_TEST\n"
            "      LITERAL: plain\n"
            "  staging: {}\n"
        )
        envs = {e.name: e for e in load_environments(path)}
        assert envs["prod"].protected is True
        assert envs["prod"].secrets == {"DEPLOY_TOKEN": "from-host", "LITERAL": "plain"}
        assert envs["staging"].secrets == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_environments(tmp_path / "nope.yml")
