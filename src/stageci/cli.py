# cli.py
from __future__ import annotations

import getpass
import json
import subprocess
import sys
import urllib.error
import urllib.request
from pathlib import Path
from urllib.parse import urljoin

import click

from stageci.config import Settings
from stageci.coordinator import RunCoordinator, RunReport
from stageci.definition import definition_to_dict, load_definition, validate_definition
from stageci.errors import DefinitionError, TriggerFilteredOut
from stageci.git_facts.git import trigger_from_repo
from stageci.model import RunStatus, TriggerEvent
from stageci.store import RunStore
from stageci.ui.console import Console, get_console, set_console

EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_REJECTED = 2


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    candidates = [
        current_dir / "stageci_workflow.py",
        current_dir / "stageci.yml",
        current_dir / "stageci.yaml",
        current_dir / ".stageci" / "workflow.yml",
    ]
    workflow_files = [p for p in candidates if p.exists()]

    # Look for other *_workflow.py files
    for path in current_dir.glob("*_workflow.py"):
        if path not in workflow_files:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit(2): If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  stageci run --workflow ci.yml",
            )
            sys.exit(EXIT_REJECTED)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  stageci.yml / .stageci/workflow.yml",
                "  stageci_workflow.py / *_workflow.py",
            ],
            suggestion="Specify a workflow explicitly:\n  stageci run --workflow ci.yml",
        )
        sys.exit(EXIT_REJECTED)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  stageci run --workflow stageci.yml",
        )
        sys.exit(EXIT_REJECTED)

    return workflow_files[0]


def _load_or_exit(workflow_path: Path):
    console = get_console()
    try:
        return load_definition(workflow_path)
    except DefinitionError as e:
        console.print_error(
            "Pipeline definition rejected",
            e.message,
            details=[f"job={e.job}"] if e.job else None,
        )
        sys.exit(EXIT_REJECTED)
    except FileNotFoundError as e:
        console.print_error("Workflow file not found", str(e))
        sys.exit(EXIT_REJECTED)


def _trigger(ref: str | None, actor: str | None) -> TriggerEvent:
    try:
        return trigger_from_repo(ref=ref, who=actor)
    except (subprocess.CalledProcessError, FileNotFoundError):
        get_console().print_debug("not a git checkout, using a local trigger")
        return TriggerEvent(ref=ref or "local", actor=actor or getpass.getuser())


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """stageci: staged pipeline runner with artifact handoff and gated deploys."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml or .py); discovered if omitted")
@click.option("--ref", default=None, help="Ref to report as the trigger (defaults to the current branch)")
@click.option("--actor", default=None, help="Who triggered the run (defaults to git user.name)")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--db", default=None, help="Run database URL (STAGECI_DATABASE_URL)")
@click.option("--environments", default=None, help="Environments YAML file (STAGECI_ENVIRONMENTS_FILE)")
@click.option("--artifact-dir", default=None, help="Artifact store directory")
@click.option("--keep-workspaces", is_flag=True, default=False, help="Do not delete job workspaces")
@click.pass_context
def run(ctx, workflow, ref, actor, workers, db, environments, artifact_dir, keep_workspaces):
    """Run a pipeline once for the current revision. Exit 0 succeeded, 1 failed, 2 rejected."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    definition = _load_or_exit(workflow_path)

    settings = Settings.from_env()
    if db:
        settings.database_url = db
    if environments:
        settings.environments_file = environments
    if artifact_dir:
        settings.artifact_root = artifact_dir
    if workers:
        settings.max_workers = workers
    if keep_workspaces:
        settings.keep_workspaces = True

    try:
        coordinator = RunCoordinator(settings)
        run_id = coordinator.submit_run(definition, _trigger(ref, actor))
        status = coordinator.get_run_status(run_id).status
    except DefinitionError as e:
        console.print_error("Pipeline definition rejected", e.message)
        sys.exit(EXIT_REJECTED)
    except TriggerFilteredOut as e:
        console.print_info(f"Not triggered: {e.message}")
        sys.exit(EXIT_SUCCEEDED)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    sys.exit(EXIT_SUCCEEDED if status is RunStatus.SUCCEEDED else EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml or .py); discovered if omitted")
def validate(workflow):
    """Check a pipeline definition and print its stages."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    definition = _load_or_exit(workflow_path)
    levels = validate_definition(definition)
    console.print_info(f"{definition.name}: {len(definition.jobs)} job(s), {len(levels)} stage(s)")
    console.print_plan(levels)


@cli.command()
@click.argument("run_id", type=int)
@click.option("--db", default=None, help="Run database URL (STAGECI_DATABASE_URL)")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the report as JSON")
def status(run_id, db, as_json):
    """Show the status of a finished or running run."""
    console = get_console()
    store = RunStore(db or Settings.from_env().database_url)
    run_record = store.load_run(run_id)
    if run_record is None:
        console.print_error("Run not found", f"No run with id {run_id}")
        sys.exit(EXIT_FAILED)

    report = RunReport.from_run(run_record)
    if as_json:
        console.print_info(json.dumps(report.to_dict(), indent=2))
    else:
        console.print_results(report)


@cli.command()
@click.option("--api", required=True, help="Control plane base URL (e.g., http://localhost:8000)")
@click.option("--workflow", default=None, help="Workflow file (.yml or .py); discovered if omitted")
@click.option("--ref", default=None, help="Ref to report as the trigger")
@click.option("--actor", default=None, help="Who triggered the run")
@click.pass_context
def submit(ctx, api, workflow, ref, actor):
    """Submit a run to a stageci control plane."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    definition = _load_or_exit(workflow_path)
    trigger = _trigger(ref, actor)

    request_data = {
        "definition": definition_to_dict(definition),
        "trigger": {
            "ref": trigger.ref,
            "before": trigger.before,
            "after": trigger.after,
            "actor": trigger.actor,
        },
    }
    base_url = api.rstrip("/")
    url = urljoin(base_url + "/", "runs")
    req = urllib.request.Request(
        url,
        data=json.dumps(request_data).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )

    try:
        with urllib.request.urlopen(req) as response:
            result = json.loads(response.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "API request failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
        )
        sys.exit(EXIT_REJECTED if e.code == 422 else EXIT_FAILED)
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the API is running.",
        )
        sys.exit(EXIT_FAILED)

    console.print_info(f"Submitted run {result.get('run_id')} to {base_url}")


if __name__ == "__main__":
    cli()
