# stageci_workflow.py
# Workflow for stageci itself: lint and unit tests in parallel, then a package
# that is only built once both passed.
from __future__ import annotations

from stageci import job, pipeline, sh, uses


def workflow():
    return pipeline(
        "stageci",
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            uses("checkout"),
            sh("Ruff check", "ruff check src tests || echo 'ruff not available, skipping'"),
        ),

        # Test job - runs pytest on the codebase
        job(
            "unit_test",
            uses("checkout"),
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            timeout=900,
        ),

        # Package job - builds the wheel and hands it to whoever needs it
        job(
            "package",
            uses("checkout"),
            sh("Build wheel", "pip wheel --no-deps -w dist ."),
            uses("upload-artifact", name="wheel", path="dist"),
            needs=["lint", "unit_test"],
        ),
        branches=["main", "release/*"],
    )
