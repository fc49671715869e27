# step_workflows/checkout.py
from __future__ import annotations

from ..context import ExecutionContext
from ..model import Step
from ..steps import StepAction, StepResult, copy_tree, register_action


class CheckoutAction(StepAction):
    """
    Copy the triggering revision's source tree into the job workspace.

        uses: checkout
        with:
          path: app        # optional, relative to the workspace
    """

    name = "checkout"

    def run(self, ctx: ExecutionContext, step: Step) -> StepResult:
        if ctx.source_root is None or not ctx.source_root.exists():
            return StepResult(ok=False, exit_code=1, diagnostic="no source tree to check out")

        dest = ctx.resolve_path(self.inputs(ctx, step).get("path"))
        copy_tree(ctx.source_root, dest)
        return StepResult(ok=True, output=f"checked out {ctx.trigger.after or ctx.trigger.ref} into {dest.name}\n")


register_action(CheckoutAction())
