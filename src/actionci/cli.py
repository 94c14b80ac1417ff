# cli.py
from __future__ import annotations

import json
import subprocess
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import click
import yaml

from actionci.actions import ActionRegistry, load_registry
from actionci.errors import CIError
from actionci.git_facts.git import local_event, remote_url, repository_slug
from actionci.runner import load_workflow, plan_workflow, run_workflow
from actionci.triggers import Event
from actionci.ui.console import Console, get_console, set_console


def find_workflow_files(root: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files below root.

    Returns:
        Sorted list of actionci_workflow.py, *_workflow.py and
        .github/workflows/*.yml|*.yaml files
    """
    found = set(root.glob("*_workflow.py"))
    workflows_dir = root / ".github" / "workflows"
    if workflows_dir.is_dir():
        found.update(workflows_dir.glob("*.yml"))
        found.update(workflows_dir.glob("*.yaml"))
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  actionci run .github/workflows/ci.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  *_workflow.py",
                "  .github/workflows/*.yml",
            ],
            suggestion="Specify a workflow explicitly:\n  actionci run path/to/workflow.yml",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  actionci run {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def _pairs(values: Iterable[str], what: str) -> Dict[str, str]:
    """NAME=VALUE options -> dict."""
    out: Dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint=what)
        out[name] = value
    return out


def _load_mapping(path: Optional[str], what: str) -> Dict[str, Any]:
    if not path:
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} must contain a mapping", param_hint=what)
    return {str(k): v for k, v in data.items()}


def _fail_with(ctx: click.Context, console: Console, exc: Exception, title: str) -> None:
    if isinstance(exc, CIError):
        details = [f"{k}={v}" for k, v in exc.details.items()]
        if exc.job:
            details.insert(0, f"job={exc.job}")
        console.print_error(title, f"{exc.kind}: {exc.message}", details=details or None)
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
    else:
        console.print_exception(exc)
    sys.exit(1)


def _build_event(
    event_name: str,
    ref: Optional[str],
    sha: Optional[str],
    actor: Optional[str],
    base_ref: Optional[str],
    action: Optional[str],
    inputs: Dict[str, str],
    use_git: bool,
    compare_ref: str,
    workspace: Path,
) -> Event:
    console = get_console()
    base = Event(name=event_name)
    if use_git:
        try:
            base = local_event(event_name, compare_ref=compare_ref, cwd=workspace)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            console.print_debug(f"git facts unavailable: {e}")
    return Event(
        name=event_name,
        ref=ref or base.ref,
        sha=sha or base.sha,
        actor=actor or base.actor,
        base_ref=base_ref,
        action=action,
        changed_files=base.changed_files,
        inputs=dict(inputs),
    )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """actionci: run GitHub-Actions style workflows locally."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow", required=False)
@click.option("--event", "event_name", default="push", show_default=True, help="Event that triggers the run")
@click.option("--ref", default=None, help="Git ref (defaults to the current branch)")
@click.option("--sha", default=None, help="Commit sha (defaults to HEAD)")
@click.option("--actor", default=None, help="github.actor (defaults to git user.name)")
@click.option("--base-ref", default=None, help="Target branch of a pull_request event")
@click.option("--action", default=None, help="Activity type of a pull_request event (e.g. opened)")
@click.option("--input", "inputs", multiple=True, metavar="NAME=VALUE", help="workflow_dispatch input")
@click.option("--secret", "secrets", multiple=True, metavar="NAME=VALUE", help="Secret value")
@click.option("--secrets-file", type=click.Path(exists=True, dir_okay=False), envvar="ACTIONCI_SECRETS_FILE", help="YAML mapping of secrets")
@click.option("--var", "variables", multiple=True, metavar="NAME=VALUE", help="Configuration variable (vars.*)")
@click.option("--vars-file", type=click.Path(exists=True, dir_okay=False), envvar="ACTIONCI_VARS_FILE", help="YAML mapping of variables")
@click.option("--actions", "actions_files", multiple=True, type=click.Path(exists=True, dir_okay=False), help="Python file registering action handlers")
@click.option("--workers", default=None, type=int, envvar="ACTIONCI_WORKERS", help="Number of parallel workers")
@click.option("--label", "labels", multiple=True, help="Runner label this machine provides (repeatable)")
@click.option("--workspace", default=".", type=click.Path(file_okay=False), show_default=True, help="Workspace directory")
@click.option("--git/--no-git", "use_git", default=True, show_default=True, help="Read sha/ref/changed files from git")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against for paths filters")
@click.option("--quiet", is_flag=True, default=False, help="Only print job and step lines")
@click.option("--json", "json_out", type=click.Path(dir_okay=False), default=None, help="Write the run result as JSON")
@click.pass_context
def run(
    ctx, workflow, event_name, ref, sha, actor, base_ref, action, inputs, secrets, secrets_file,
    variables, vars_file, actions_files, workers, labels, workspace, use_git, compare_ref, quiet, json_out,
):
    """Run a workflow."""
    console = get_console()
    console.quiet = quiet

    workflow_path = discover_workflow(workflow)

    try:
        document = load_workflow(workflow_path)
    except Exception as e:
        _fail_with(ctx, console, e, "Failed to load workflow")

    try:
        secret_values = {k: str(v) for k, v in _load_mapping(secrets_file, "--secrets-file").items()}
        secret_values.update(_pairs(secrets, "--secret"))
        variable_values = _load_mapping(vars_file, "--vars-file")
        variable_values.update(_pairs(variables, "--var"))

        registry = ActionRegistry()
        for path in actions_files:
            load_registry(path, registry)

        workspace_p = Path(workspace).resolve()
        event = _build_event(
            event_name, ref, sha, actor, base_ref, action, _pairs(inputs, "--input"),
            use_git, compare_ref, workspace_p,
        )
        repository = ""
        if use_git:
            try:
                repository = repository_slug(remote_url(cwd=workspace_p))
            except FileNotFoundError:
                console.print_debug("git not found; github.repository left empty")
    except click.BadParameter:
        raise
    except Exception as e:
        _fail_with(ctx, console, e, "Invalid run configuration")

    console.print_run_started(
        repository=repository or workspace_p.name,
        workflow=document.name,
        job_count=len(document.jobs),
        event=event.name,
    )

    cancel_event = threading.Event()
    try:
        result = run_workflow(
            document,
            event,
            secrets=secret_values,
            variables=variable_values,
            registry=registry,
            workspace=workspace_p,
            max_workers=workers,
            labels=labels or None,
            listeners=[console.print_record],
            cancel_event=cancel_event,
            repository=repository,
        )
    except KeyboardInterrupt:
        cancel_event.set()
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        _fail_with(ctx, console, e, "Run failed to start")

    data = result.to_dict()
    console.print_results(data)
    if json_out:
        Path(json_out).write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")

    if not result.ok:
        sys.exit(1)


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def validate(ctx, workflow):
    """Parse and validate a workflow without running it."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        document = load_workflow(workflow_path)
    except Exception as e:
        _fail_with(ctx, console, e, "Invalid workflow")
    triggers = ", ".join(t.kind.value for t in document.triggers)
    console.print_info(f"OK: {document.name} ({len(document.jobs)} jobs; on: {triggers})")


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def plan(ctx, workflow):
    """Print the stages a run would go through."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        document = load_workflow(workflow_path)
        levels = plan_workflow(document)
    except Exception as e:
        _fail_with(ctx, console, e, "Invalid workflow")
    console.print_header(f"Plan: {document.name}")
    console.print_plan(levels)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--database-url", default=None, envvar="ACTIONCI_DATABASE_URL", help="SQLAlchemy database URL")
@click.pass_context
def serve(ctx, host, port, database_url):
    """Serve the run API (POST /runs, GET /runs/{id})."""
    import uvicorn
    from actionci.cloud.app import create_app

    console = get_console()
    try:
        uvicorn.run(create_app(database_url), host=host, port=port)
    except KeyboardInterrupt:
        console.print_info("\nServer stopped by user")
        sys.exit(0)
    except Exception as e:
        _fail_with(ctx, console, e, "Server failed")


if __name__ == "__main__":
    cli()
