"""Tests for the per-job execution context: rendering, masking, paths."""

import pytest

from stageci.context import MASK, ExecutionContext, JobOutputs
from stageci.model import Job, Step, TriggerEvent
from stageci.targets import LocalTarget


@pytest.fixture
def ctx(tmp_path):
    return ExecutionContext(
        run_id=7,
        job=Job(name="deploy", steps=(Step(name="s", run="true"),), environment="prod"),
        trigger=TriggerEvent(ref="refs/heads/main", before="aaa", after="bbb", actor="tester"),
        workspace=tmp_path,
        target=LocalTarget(),
        artifacts=None,
        outputs=JobOutputs(),
        env={"STAGE": "prod"},
        secrets={"TOKEN": "abc123", "LONG": "abc123-extended"},
        previous_output="https://prod.example/v1",
    )


class TestRender:
    def test_scopes(self, ctx):
        text = "${{ run.id }} ${{ run.sha }} ${{ run.actor }} ${{ job.name }} ${{ env.STAGE }}"
        assert ctx.render(text) == "7 bbb tester deploy prod"

    def test_secret_and_previous_output(self, ctx):
        assert ctx.render("${{secrets.TOKEN}}") == "abc123"
        assert ctx.render("${{ environment.previous_output }}") == "https://prod.example/v1"

    def test_unknown_reference_renders_empty(self, ctx):
        assert ctx.render("[${{ secrets.NOPE }}]") == "[]"


class TestMask:
    def test_every_secret_is_hidden(self, ctx):
        masked = ctx.mask("token=abc123 long=abc123-extended")
        assert "abc123" not in masked
        assert masked == f"token={MASK} long={MASK}"


class TestPaths:
    def test_resolve_inside_workspace(self, ctx, tmp_path):
        assert ctx.resolve_path("dist") == (tmp_path / "dist").resolve()
        assert ctx.resolve_path(None) == tmp_path.resolve()

    def test_escape_is_refused(self, ctx):
        with pytest.raises(ValueError, match="escapes"):
            ctx.resolve_path("../elsewhere")

    def test_with_env_leaves_original_alone(self, ctx):
        derived = ctx.with_env({"EXTRA": "1"})
        assert derived.env["EXTRA"] == "1"
        assert "EXTRA" not in ctx.env
        assert derived.outputs is ctx.outputs
