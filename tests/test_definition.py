"""Tests for parsing, validating and loading pipeline definitions."""

import textwrap

import pytest
import yaml

from stageci.definition import definition_to_dict, load_definition, parse_definition, validate_definition
from stageci.dsl import build, job, pipeline, sh, uses
from stageci.errors import DefinitionError
from stageci.model import RetryPolicy

WORKFLOW_YAML = textwrap.dedent(
    """
    name: site
    on:
      push:
        branches: [main, "release/*"]
    permissions: read-all
    jobs:
      build:
        runs-on: ubuntu-latest
        steps:
          - uses: checkout
          - run: make dist
          - uses: upload-artifact
            with: {name: dist, path: dist}
      test:
        needs: build
        timeout-minutes: 5
        steps:
          - uses: download-artifact
            with: {name: dist}
          - name: e2e
            run: npm test
      deploy:
        needs: [test]
        environment:
          name: prod
        secrets: [DEPLOY_TOKEN]
        retry: {attempts: 2, backoff: 0.5}
        steps:
          - uses: deploy
            with:
              command: ./publish.sh
    """
)


class TestParseDefinition:
    def test_full_workflow(self):
        d = parse_definition(yaml.safe_load(WORKFLOW_YAML))
        assert d.name == "site"
        assert d.names == ["build", "test", "deploy"]
        assert d.trigger_filter.branches == ("main", "release/*")
        assert dict(d.permissions) == {"*": "read-all"}

        build_job = d.job("build")
        assert build_job.runs_on == "ubuntu-latest"
        assert [s.kind for s in build_job.steps] == ["checkout", "run", "upload-artifact"]
        assert build_job.steps[1].name == "make dist"

        test_job = d.job("test")
        assert test_job.needs == ("build",)
        assert test_job.timeout == 300.0

        deploy_job = d.job("deploy")
        assert deploy_job.environment == "prod"
        assert deploy_job.secrets == ("DEPLOY_TOKEN",)
        assert deploy_job.retry == RetryPolicy(attempts=2, backoff=0.5)
        assert deploy_job.steps[0].with_["command"] == "./publish.sh"

    def test_snake_and_camel_keys(self):
        d = parse_definition(
            {"jobs": {"a": {"runsOn": "docker:alpine", "timeout": 10, "steps": [{"run": "true"}]}}},
            name="fallback",
        )
        assert d.name == "fallback"
        assert d.job("a").runs_on == "docker:alpine"
        assert d.job("a").timeout == 10.0

    @pytest.mark.parametrize(
        "data, fragment",
        [
            ({}, "jobs"),
            ({"jobs": {"a": {"steps": "nope"}}}, "steps"),
            ({"jobs": {"a": {"steps": []}}}, "no steps"),
            ({"jobs": {"a": {"steps": [{"run": "x", "uses": "checkout"}]}}}, "exactly one"),
            ({"jobs": {"a": {"steps": [{"uses": "teleport"}]}}}, "unknown action"),
            ({"jobs": {"a": {"needs": "b", "steps": [{"run": "x"}]}}}, "missing job"),
            ({"jobs": {"a": {"secrets": ["T"], "steps": [{"run": "x"}]}}}, "environment"),
            ({"jobs": {"a": {"timeout": -1, "steps": [{"run": "x"}]}}}, "timeout"),
            (
                {"jobs": {"a": {"needs": "b", "steps": [{"run": "x"}]}, "b": {"needs": "a", "steps": [{"run": "x"}]}}},
                "cycle",
            ),
        ],
    )
    def test_rejected(self, data, fragment):
        with pytest.raises(DefinitionError) as exc:
            parse_definition(data)
        assert fragment in exc.value.message

    def test_round_trip_through_dict(self):
        d = parse_definition(yaml.safe_load(WORKFLOW_YAML))
        again = parse_definition(definition_to_dict(d))
        assert again == d


class TestDsl:
    def test_pipeline_validates(self):
        with pytest.raises(DefinitionError):
            pipeline("ci", job("a", sh("a", "true"), needs=["missing"]))

    def test_job_requires_steps(self):
        with pytest.raises(ValueError):
            job("empty")

    def test_default_cwd_applies_to_steps_without_one(self):
        j = job("a", sh("one", "true"), sh("two", "true", cwd="sub"), cwd="app")
        assert [s.cwd for s in j.steps] == ["app", "sub"]

    def test_builder(self):
        j = (
            build("deploy")
            .depends_on("test")
            .define_step("ship", "./ship.sh")
            .use("deploy", output="v1")
            .deploys_to("prod", "DEPLOY_TOKEN")
            .with_env(REGION="eu", RETRIES=3)
            .timeout_after(60)
            .retry_provisioning(2)
            .build()
        )
        assert j.needs == ("test",)
        assert j.environment == "prod"
        assert j.secrets == ("DEPLOY_TOKEN",)
        assert dict(j.env) == {"REGION": "eu", "RETRIES": "3"}
        assert j.retry.attempts == 2
        assert j.steps[1] == uses("deploy", output="v1")

    def test_uses_passes_name_to_the_action(self):
        step = uses("upload-artifact", name="dist", path="dist")
        assert step.name == "upload-artifact"
        assert dict(step.with_) == {"name": "dist", "path": "dist"}

    def test_step_name_is_separate_from_inputs(self):
        step = uses("download-artifact", step_name="fetch", name="dist")
        assert step.name == "fetch"
        assert dict(step.with_) == {"name": "dist"}
        built = build("test").use("download-artifact", step_name="fetch", name="dist").build()
        assert built.steps == (step,)

    def test_validate_returns_stages(self):
        d = pipeline(
            "ci",
            job("lint", sh("l", "true")),
            job("unit_test", sh("u", "true")),
            job("package", sh("p", "true"), needs=["lint", "unit_test"]),
        )
        assert validate_definition(d) == [["lint", "unit_test"], ["package"]]


class TestLoadDefinition:
    def test_yaml_file(self, tmp_path):
        path = tmp_path / "ci.yml"
        path.write_text(WORKFLOW_YAML)
        assert load_definition(path).name == "site"

    def test_yaml_name_defaults_to_file_stem(self, tmp_path):
        path = tmp_path / "nightly.yaml"
        path.write_text("jobs:\n  a:\n    steps:\n      - run: 'true'\n")
        assert load_definition(path).name == "nightly"

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "ci.yml"
        path.write_text("jobs: [unclosed\n")
        with pytest.raises(DefinitionError, match="Invalid YAML"):
            load_definition(path)

    def test_python_module_with_pipeline(self, tmp_path):
        path = tmp_path / "stageci_workflow.py"
        path.write_text(
            textwrap.dedent(
                """
                from stageci import pipeline, job, sh

                PIPELINE = pipeline(
                    "py-ci",
                    job("build", sh("build", "true")),
                    job("test", sh("test", "true"), needs=["build"]),
                )
                """
            )
        )
        d = load_definition(path)
        assert d.name == "py-ci"
        assert d.names == ["build", "test"]

    def test_python_module_with_workflow_function(self, tmp_path):
        path = tmp_path / "ci_workflow.py"
        path.write_text(
            textwrap.dedent(
                """
                from stageci import job, sh

                def workflow():
                    return [job("build", sh("build", "true"))]
                """
            )
        )
        d = load_definition(path)
        assert d.name == "ci_workflow"

    def test_python_module_without_jobs(self, tmp_path):
        path = tmp_path / "empty_workflow.py"
        path.write_text("X = 1\n")
        with pytest.raises(DefinitionError):
            load_definition(path)

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "ci.toml"
        path.write_text("")
        with pytest.raises(DefinitionError):
            load_definition(path)
