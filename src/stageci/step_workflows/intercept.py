# step_workflows/intercept.py
from __future__ import annotations

import json

from ..context import ExecutionContext
from ..model import Step
from ..steps import StepAction, StepResult, register_action
from ..stubs import STUB_CONFIG_ENV, STUB_CONFIG_FILE, StubConfig


def _truthy(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


class InterceptAction(StepAction):
    """
    Configure request interception for the verification steps that follow.

        uses: intercept
        with:
          strict: true
          rules:
            - {method: GET, url: "https://api.quotable.io/*", status: 200, body: {...}}

    `rules` may also be a JSON string, or `config` may point at a JSON file in
    the workspace. Later steps find the written config through $STAGECI_STUB_CONFIG.
    """

    name = "intercept"

    def run(self, ctx: ExecutionContext, step: Step) -> StepResult:
        inputs = self.inputs(ctx, step)
        try:
            if "config" in inputs:
                config = StubConfig.load(ctx.resolve_path(inputs["config"]))
            else:
                rules = inputs.get("rules") or []
                if isinstance(rules, str):
                    rules = json.loads(rules)
                config = StubConfig.from_dict({"rules": list(rules), "strict": inputs.get("strict", False)})
            if "strict" in inputs:
                config = StubConfig(rules=config.rules, strict=_truthy(inputs["strict"]))
        except (ValueError, TypeError, OSError) as e:
            return StepResult(ok=False, exit_code=1, diagnostic=f"invalid intercept config: {e}")

        path = config.dump(ctx.resolve_path(STUB_CONFIG_FILE))
        mode = "strict" if config.strict else "pass-through"
        return StepResult(
            ok=True,
            output=f"intercepting {len(config.rules)} rule(s), unmatched calls: {mode}\n",
            exports={STUB_CONFIG_ENV: str(path)},
        )


register_action(InterceptAction())
