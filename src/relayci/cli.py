# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Optional

import click

from . import settings
from ._log import setup_logging
from .errors import ConfigError, GateError
from .executor import ShellExecutor
from .gates import GateStatus
from .git_facts.git import changed_files, get_current_ref, get_remote_url, head_sha, merge_base
from .model import EventKind, TriggerContext
from .release import ContextVersionSource, ProjectFileVersionSource, StaticVersionSource, VersionSource
from .runner import Orchestrator, load_workflow, plan
from .scheduler import ConcurrencyBudget
from .store import RunStore
from .ui.console import Console, get_console, set_console


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        relayci_workflow.py first (if present), then any other *_workflow.py
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / "relayci_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  relayci run --workflow my_workflow.py",
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
                "  relayci_workflow.py",
                "  *_workflow.py",
            ],
            suggestion="Create a workflow file:\n  relayci_workflow.py\n\nOr specify a workflow explicitly:\n  relayci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  relayci run --workflow relayci_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _load(ctx, workflow_arg: str | None):
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        return workflow_path, load_workflow(workflow_path)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(1)


def _parse_vars(pairs: tuple[str, ...]) -> dict[str, str]:
    values: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        values[key] = value
    return values


def _version_source(
    trigger: TriggerContext,
    candidate: Optional[str],
    latest: Optional[str],
    version_file: Optional[str],
) -> Optional[VersionSource]:
    if candidate:
        return StaticVersionSource(candidate, latest)
    if version_file:
        return ProjectFileVersionSource(version_file, latest)
    if "version" in trigger.values:
        return ContextVersionSource(trigger)
    return None


def _repo_name() -> str:
    try:
        repo_url = get_remote_url("origin")
        return repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: conditional, gated pipeline runs for a single repository."""
    console = Console(debug=debug)
    set_console(console)
    setup_logging(verbose=debug, level=settings.LOG_LEVEL)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to relayci_workflow.py if present)")
@click.option("--event", type=click.Choice([e.value for e in EventKind]), default=EventKind.PUSH.value,
              show_default=True, help="Trigger event kind")
@click.option("--ref", default=None, help="Git ref (defaults to the current branch or HEAD)")
@click.option("--fork/--no-fork", default=False, help="Trigger comes from a fork")
@click.option("--actor", default="", help="Who triggered the run")
@click.option("--var", "variables", multiple=True, help="Trigger value KEY=VALUE (repeatable)")
@click.option("--git-diff/--no-git-diff", default=False, help="Record changed files for changed() conditions")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.option("--workers", default=None, type=int, help="Max stages running at once in this run")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Cancel the run after the first failure")
@click.option("--db", default=None, help="Run store URL (defaults to $RELAYCI_DATABASE_URL)")
@click.option("--candidate-version", default=None, help="Version this run would release")
@click.option("--latest-version", default=None, help="Latest published version")
@click.option("--version-file", default=None, help="TOML file holding the candidate version")
@click.option("--gate-timeout", default=None, type=float, help="Reject gates pending longer than this (seconds)")
@click.option("--serve-port", default=None, type=int, help="Serve the approval API on this port during the run")
@click.pass_context
def run(ctx, workflow, event, ref, fork, actor, variables, git_diff, compare_ref, workers, fail_fast,
        db, candidate_version, latest_version, version_file, gate_timeout, serve_port):
    """Run a relayci workflow for one trigger."""
    console = get_console()
    workflow_path, wf = _load(ctx, workflow)
    if fail_fast is not None:
        wf.fail_fast = fail_fast

    try:
        values = _parse_vars(variables)
        try:
            ref = ref or get_current_ref()
            values.setdefault("sha", head_sha())
        except (subprocess.CalledProcessError, FileNotFoundError):
            if not ref:
                console.print_error(
                    "Could not determine git ref",
                    "No --ref specified and the current git ref is unavailable.",
                    suggestion="Specify --ref explicitly:\n  relayci run --ref refs/heads/main",
                )
                sys.exit(1)

        files: list[str] = []
        if git_diff:
            files = changed_files(merge_base(compare_ref))
            console.print_debug(f"{len(files)} changed file(s) since {compare_ref}")

        trigger = TriggerContext(
            event=EventKind(event),
            ref=ref,
            fork=fork,
            actor=actor,
            values=values,
            changed_files=tuple(files),
            workflow=wf.name,
        )
        source = _version_source(trigger, candidate_version, latest_version, version_file)

        store = RunStore(db or settings.DATABASE_URL)
        orchestrator = Orchestrator(
            ShellExecutor(repo_root="."),
            store=store,
            budget=ConcurrencyBudget(settings.GLOBAL_CONCURRENCY),
            max_parallel=workers or settings.MAX_PARALLEL,
            gate_timeout=gate_timeout if gate_timeout is not None else settings.GATE_TIMEOUT,
            on_transition=console.print_stage,
        )

        graph = plan(wf)
        console.print_run_started(
            repository=_repo_name(),
            workflow=workflow_path.name,
            ref=ref,
            stage_count=len(graph),
        )

        server = None
        if serve_port:
            from .api import ApprovalServer
            server = ApprovalServer(orchestrator.gates, port=serve_port)
            server.start()
        try:
            record = orchestrator.start(wf, trigger, version_source=source)
        finally:
            if server is not None:
                server.stop()

        if record is None:
            console.print_info(f"Workflow {wf.name} is not triggered by {event} on {ref}.")
            return

        console.print_info(f"Run ID: {record.run_id}")
        console.print_results(record.summary(), record.status.value)
        if not record.ok:
            sys.exit(1)

    except ConfigError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except click.ClickException:
        raise
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command("plan")
@click.option("--workflow", default=None, help="Workflow file path (defaults to relayci_workflow.py if present)")
@click.pass_context
def plan_cmd(ctx, workflow):
    """Validate a workflow and print its stage instances by level."""
    console = get_console()
    _, wf = _load(ctx, workflow)
    try:
        graph = plan(wf)
    except ConfigError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    console.print_plan(graph.levels())


@cli.command()
@click.argument("run_id")
@click.option("--workflow", default=None, help="Workflow file path (defaults to relayci_workflow.py if present)")
@click.option("--db", default=None, help="Run store URL (defaults to $RELAYCI_DATABASE_URL)")
@click.option("--candidate-version", default=None, help="Version this run would release")
@click.option("--latest-version", default=None, help="Latest published version")
@click.option("--version-file", default=None, help="TOML file holding the candidate version")
@click.pass_context
def resume(ctx, run_id, workflow, db, candidate_version, latest_version, version_file):
    """Resume an interrupted run; succeeded stages are not re-run."""
    console = get_console()
    _, wf = _load(ctx, workflow)
    store = RunStore(db or settings.DATABASE_URL)
    try:
        persisted = store.load(run_id)
    except KeyError:
        console.print_error("Unknown run", f"No run {run_id} in {db or settings.DATABASE_URL}")
        sys.exit(1)

    try:
        source = _version_source(persisted.trigger, candidate_version, latest_version, version_file)
        orchestrator = Orchestrator(
            ShellExecutor(repo_root="."),
            store=store,
            budget=ConcurrencyBudget(settings.GLOBAL_CONCURRENCY),
            max_parallel=settings.MAX_PARALLEL,
            gate_timeout=settings.GATE_TIMEOUT,
            on_transition=console.print_stage,
        )
        record = orchestrator.resume(wf, run_id, version_source=source)
    except ConfigError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(record.summary(), record.status.value)
    if not record.ok:
        sys.exit(1)


@cli.group()
def gates():
    """Inspect and decide approval gates recorded in the run store."""


@gates.command("list")
@click.option("--db", default=None, help="Run store URL (defaults to $RELAYCI_DATABASE_URL)")
def gates_list(db):
    get_console().print_pending_gates(RunStore(db or settings.DATABASE_URL).pending_gates())


def _decide(gate_id: str, status: GateStatus, actor: str, comment: str, db: Optional[str]) -> None:
    console = get_console()
    try:
        final = RunStore(db or settings.DATABASE_URL).decide_gate(gate_id, status, actor, comment)
    except KeyError:
        console.print_error("Unknown gate", f"No gate {gate_id}")
        sys.exit(1)
    except GateError as e:
        console.print_error("Gate decision failed", str(e))
        sys.exit(1)
    if final != status:
        console.print_info(f"{gate_id} was already {final.value}")
    else:
        console.print_info(f"{gate_id}: {final.value}")


@gates.command("approve")
@click.argument("gate_id")
@click.option("--actor", required=True, help="Who approves")
@click.option("--comment", default="", help="Optional comment")
@click.option("--db", default=None, help="Run store URL (defaults to $RELAYCI_DATABASE_URL)")
def gates_approve(gate_id, actor, comment, db):
    """Approve GATE_ID (<run_id>/<gate name>)."""
    _decide(gate_id, GateStatus.APPROVED, actor, comment, db)


@gates.command("reject")
@click.argument("gate_id")
@click.option("--actor", required=True, help="Who rejects")
@click.option("--comment", default="", help="Optional comment")
@click.option("--db", default=None, help="Run store URL (defaults to $RELAYCI_DATABASE_URL)")
def gates_reject(gate_id, actor, comment, db):
    """Reject GATE_ID (<run_id>/<gate name>)."""
    _decide(gate_id, GateStatus.REJECTED, actor, comment, db)


@cli.command()
@click.option("--limit", default=20, show_default=True, type=int)
@click.option("--db", default=None, help="Run store URL (defaults to $RELAYCI_DATABASE_URL)")
def runs(limit, db):
    """List recent runs."""
    get_console().print_runs(RunStore(db or settings.DATABASE_URL).list_runs(limit))


if __name__ == "__main__":
    cli()
