"""CLI entry point for issueflow."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

if TYPE_CHECKING:
    from issueflow.state_store import SessionStateStore

_SUCCESS_KINDS = ("done", "partial_open_pr")
_PROGRESS_TAIL = 15


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the issueflow CLI."""
    parser = argparse.ArgumentParser(
        prog="issueflow",
        description="Issue lifecycle orchestrator: worktree per issue, staged agents, gated merge",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Generate .issueflow/issueflow.toml from source defaults",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Poll for ready issues and process them")
    run_parser.add_argument(
        "--repo",
        default=None,
        help="GitHub repo in owner/repo format",
    )
    run_parser.add_argument(
        "--poll-interval",
        type=float,
        default=30.0,
        help="Seconds between poll cycles (default: 30)",
    )

    process_parser = subparsers.add_parser(
        "process", help="Run (or resume) the pipeline for one issue"
    )
    process_parser.add_argument("issue_id", help="Issue number or identifier")
    process_parser.add_argument(
        "--repo",
        default=None,
        help="GitHub repo in owner/repo format",
    )

    status_parser = subparsers.add_parser("status", help="Show pipeline state")
    status_parser.add_argument("issue_id", nargs="?", default=None)

    cancel_parser = subparsers.add_parser(
        "cancel", help="Ask a running pipeline to stop at the next stage boundary"
    )
    cancel_parser.add_argument("issue_id")
    cancel_parser.add_argument("--reason", default="")

    reset_parser = subparsers.add_parser(
        "reset", help="Clear a terminal outcome and the retry budget"
    )
    reset_parser.add_argument("issue_id")

    _args = parser.parse_args(argv)
    _configure_logging(_args.verbose)

    if _args.init:
        from issueflow.config import init_config

        path = init_config(Path.cwd())
        print(f"Wrote {path}")
        return 0

    if _args.command == "run":
        from issueflow.runner import IssueflowRunner

        runner = IssueflowRunner(
            project_root=Path.cwd(),
            repo=_args.repo,
        )
        runner.run(poll_interval=_args.poll_interval)
        return 0

    if _args.command == "process":
        return _process(Path.cwd(), _args.issue_id, _args.repo)

    if _args.command == "status":
        return _status(Path.cwd(), _args.issue_id)

    if _args.command == "cancel":
        store = _open_store(Path.cwd())
        if store.load_stage(_args.issue_id) is None:
            print(f"Unknown issue: {_args.issue_id}", file=sys.stderr)
            return 1
        store.request_cancel(_args.issue_id, _args.reason)
        print(f"Cancel requested for {_args.issue_id}")
        return 0

    if _args.command == "reset":
        from issueflow.orchestrator import reset_issue

        store = _open_store(Path.cwd())
        if store.load_stage(_args.issue_id) is None:
            print(f"Unknown issue: {_args.issue_id}", file=sys.stderr)
            return 1
        state = reset_issue(store, _args.issue_id)
        print(f"Reset {_args.issue_id}; next run starts at {state.current_stage}")
        return 0

    parser.print_help()
    return 0


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def _open_store(project_root: Path) -> SessionStateStore:
    from issueflow.config import load_config
    from issueflow.state_store import SessionStateStore

    config = load_config(project_root)
    return SessionStateStore(config.state_root(project_root))


def _process(project_root: Path, issue_id: str, repo: str | None) -> int:
    from issueflow.config import load_config
    from issueflow.errors import CollaboratorError
    from issueflow.orchestrator import PipelineOrchestrator, PipelineServices
    from issueflow.pool import AgentPool
    from issueflow.tracker import GitHubIssueTracker

    config = load_config(project_root)
    pool = AgentPool(
        max_sessions=config.pool.max_sessions,
        idle_ttl_seconds=config.pool.idle_ttl_seconds,
        agent_command=config.pool.agent_command,
    )
    try:
        services = PipelineServices.from_config(project_root, config, repo, pool)
        issue = services.store.load_issue(issue_id)
        if issue is None:
            try:
                issue = GitHubIssueTracker(repo).read_issue(issue_id)
            except CollaboratorError as exc:
                print(f"Cannot load issue {issue_id}: {exc}", file=sys.stderr)
                return 1
        report = PipelineOrchestrator(issue, services).run()
    finally:
        pool.shutdown()
    print(report.summary())
    return 0 if report.kind in _SUCCESS_KINDS else 1


def _status(project_root: Path, issue_id: str | None) -> int:
    store = _open_store(project_root)
    console = Console()

    if issue_id is None:
        table = Table(title="issueflow status")
        table.add_column("Issue", style="cyan", justify="right")
        table.add_column("Title", max_width=50)
        table.add_column("Stage", style="green")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Outcome")
        for issue in store.list_issues():
            state = store.load_stage(issue.id)
            if state is None:
                continue
            table.add_row(
                issue.id,
                issue.title,
                str(state.current_stage),
                str(state.status),
                str(state.attempt_count),
                state.outcome.kind if state.outcome else "-",
            )
        console.print(table)
        return 0

    state = store.load_stage(issue_id)
    if state is None:
        print(f"Unknown issue: {issue_id}", file=sys.stderr)
        return 1
    console.print(f"[bold]{issue_id}[/bold] {state.current_stage} ({state.status})")
    console.print(f"attempts: {state.attempt_count}  gate attempts: {state.gate_attempts}")
    if state.last_error:
        console.print(f"last error: {state.last_error}")
    if state.outcome:
        console.print(f"outcome: {state.outcome.summary()}")
    if store.is_cancelled(issue_id):
        console.print("[yellow]cancel requested[/yellow]")
    for entry in store.read_progress(issue_id)[-_PROGRESS_TAIL:]:
        console.print(f"  {entry.timestamp} [{entry.stage}] {entry.message}", markup=False)
    return 0


def _get_version() -> str:
    from issueflow import __version__

    return __version__


if __name__ == "__main__":
    sys.exit(main())
