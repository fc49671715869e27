# step_workflows/artifacts.py
from __future__ import annotations

from ..artifacts import pack_path, unpack
from ..context import ExecutionContext
from ..errors import ArtifactNotFound, CIError
from ..model import Step
from ..steps import StepAction, StepResult, register_action


class UploadArtifactAction(StepAction):
    """
    Stage a workspace path as a named artifact. It is only published to the
    store if the whole job succeeds.

        uses: upload-artifact
        with: {name: build, path: dist}
    """

    name = "upload-artifact"

    def run(self, ctx: ExecutionContext, step: Step) -> StepResult:
        inputs = self.inputs(ctx, step)
        name = inputs.get("name")
        if not name or "path" not in inputs:
            return StepResult(ok=False, exit_code=1, diagnostic="upload-artifact needs 'name' and 'path'")

        src = ctx.resolve_path(inputs["path"])
        base = src if src.is_dir() else src.parent
        try:
            blob = pack_path(src, base=base, secrets=ctx.secrets.values())
        except FileNotFoundError as e:
            return StepResult(ok=False, exit_code=1, diagnostic=str(e))
        except CIError as e:
            return StepResult(ok=False, exit_code=1, diagnostic=e.message)

        ctx.outputs.stage_artifact(name, blob)
        return StepResult(ok=True, output=f"staged artifact '{name}' ({len(blob)} bytes)\n")


class DownloadArtifactAction(StepAction):
    """
    Extract an artifact produced by an upstream job into the workspace.

        uses: download-artifact
        with: {name: build, path: dist}
    """

    name = "download-artifact"

    def run(self, ctx: ExecutionContext, step: Step) -> StepResult:
        inputs = self.inputs(ctx, step)
        name = inputs.get("name")
        if not name:
            return StepResult(ok=False, exit_code=1, diagnostic="download-artifact needs 'name'")

        try:
            art = ctx.artifacts.get(name, ctx.run_id, consumer=ctx.job_name)
        except ArtifactNotFound as e:
            return StepResult(ok=False, exit_code=1, diagnostic=e.message)

        dest = ctx.resolve_path(inputs.get("path"))
        try:
            files = unpack(art.blob, dest)
        except CIError as e:
            return StepResult(ok=False, exit_code=1, diagnostic=e.message)
        return StepResult(ok=True, output=f"downloaded '{name}' from {art.producer} ({len(files)} files)\n")


register_action(UploadArtifactAction())
register_action(DownloadArtifactAction())
