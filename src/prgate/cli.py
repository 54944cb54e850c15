# cli.py
from __future__ import annotations

import json
import signal
import subprocess
import sys
import threading
from pathlib import Path

import click

from prgate import settings
from prgate.cache import CacheStore
from prgate.export import workflow_to_dict, workflow_to_lines
from prgate.git_facts.git import current_branch, head_sha
from prgate.model import PULL_REQUEST, Event
from prgate.runner import CANCELLED, TIMEOUT, CIError, load_workflow, run_workflow
from prgate.trigger import describe, event_from_env, should_run
from prgate.ui.console import Console, get_console, set_console

EXIT_FAILURE = 1
EXIT_TIMEOUT = 124
EXIT_INTERRUPTED = 130


def _local_branch() -> str:
    try:
        return current_branch() or ""
    except (subprocess.CalledProcessError, FileNotFoundError):
        return ""


def resolve_event(event_kind: str | None, branch: str | None) -> Event:
    """
    Explicit --event/--branch win; then GitHub Actions env vars; then a local
    pull_request event against the checked out branch.
    """
    if event_kind:
        return Event(kind=event_kind, branch=branch if branch is not None else _local_branch())

    from_env = event_from_env()
    if from_env is not None:
        if branch is not None:
            return Event(kind=from_env.kind, branch=branch)
        return from_env

    return Event(kind=PULL_REQUEST, branch=branch if branch is not None else _local_branch())


def load_workflow_or_exit(path: str):
    console = get_console()
    wf_path = Path(path)
    if not wf_path.exists() and wf_path.suffix != ".py":
        wf_path = Path(str(wf_path) + ".py")
    if not wf_path.exists():
        console.print_error(
            "Workflow file not found",
            f"Could not find workflow file: {path}",
            suggestion="Create prgate_workflow.py or specify a different path:\n  prgate run --workflow my_workflow.py",
        )
        sys.exit(EXIT_FAILURE)

    try:
        return load_workflow(wf_path)
    except CIError as e:
        console.print_error("Failed to load workflow", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(EXIT_FAILURE)


class _CancelOnSignal:
    """Turn SIGINT/SIGTERM into a cancel event for the duration of a run."""

    def __init__(self, cancel: threading.Event):
        self.cancel = cancel
        self._previous = {}

    def _handler(self, signum, frame):
        get_console().print_info(f"\nReceived signal {signum}, cancelling...")
        self.cancel.set()

    def __enter__(self):
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous[sig] = signal.signal(sig, self._handler)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """prgate: fail-fast pull-request gate runner."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=settings.WORKFLOW_FILE, show_default=True, help="Workflow file path")
@click.option("--event", "event_kind", default=None, help="Event kind (pull_request | push); defaults to GITHUB_EVENT_NAME")
@click.option("--branch", default=None, help="Target branch; defaults to the event's or the checked out branch")
@click.option("--repo-root", default=".", show_default=True, help="Repository root the stages run in")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--cache/--no-cache", "use_cache", default=True, help="Restore/save the dependency cache")
@click.option("--timeout-minutes", default=None, type=float, help="Override every job's timeout")
@click.pass_context
def run(ctx, workflow, event_kind, branch, repo_root, cache_dir, use_cache, timeout_minutes):
    """Evaluate the trigger and run the workflow."""
    console = get_console()
    wf = load_workflow_or_exit(workflow)
    event = resolve_event(event_kind, branch)

    if not should_run(wf.on, event):
        console.print_not_scheduled(event.kind, event.branch, describe(wf.on))
        return

    console.print_run_started(
        workflow=wf.name,
        event=event.kind,
        branch=event.branch,
        job_count=len(wf.jobs),
    )
    try:
        console.print_debug(f"commit {head_sha(cwd=repo_root)}")
    except (subprocess.CalledProcessError, FileNotFoundError):
        console.print_debug("commit unknown (not a git checkout)")

    cancel = threading.Event()
    try:
        with _CancelOnSignal(cancel):
            result = run_workflow(
                wf,
                event,
                repo_root=repo_root,
                cache=CacheStore(cache_dir) if use_cache else None,
                timeout_minutes=timeout_minutes,
                cancel=cancel,
            )
    except CIError as e:
        hint = e.details.get("hint")
        console.print_error(e.kind, e.message, suggestion=hint)
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILURE)

    console.print_results(result.summary())

    statuses = set(result.summary().values())
    if result.ok:
        return
    if CANCELLED in statuses:
        sys.exit(EXIT_INTERRUPTED)
    if TIMEOUT in statuses:
        sys.exit(EXIT_TIMEOUT)
    sys.exit(EXIT_FAILURE)


@cli.command("check-trigger")
@click.option("--workflow", default=settings.WORKFLOW_FILE, show_default=True, help="Workflow file path")
@click.option("--event", "event_kind", required=True, help="Event kind, e.g. pull_request or push")
@click.option("--branch", default="", help="Target branch")
def check_trigger(workflow, event_kind, branch):
    """Print whether an event would schedule the workflow (exit 0 = scheduled)."""
    wf = load_workflow_or_exit(workflow)
    if should_run(wf.on, Event(kind=event_kind, branch=branch)):
        click.echo("scheduled")
        return
    click.echo("skipped")
    sys.exit(EXIT_FAILURE)


@cli.command()
@click.option("--workflow", default=settings.WORKFLOW_FILE, show_default=True, help="Workflow file path")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the plan as JSON")
def plan(workflow, as_json):
    """Print the workflow's trigger, jobs and ordered stages."""
    wf = load_workflow_or_exit(workflow)
    if as_json:
        click.echo(json.dumps(workflow_to_dict(wf), indent=2))
        return
    for line in workflow_to_lines(wf):
        click.echo(line)


if __name__ == "__main__":
    cli()
