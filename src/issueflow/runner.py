from __future__ import annotations

import concurrent.futures
import logging
import signal
import threading
from pathlib import Path

from rich.console import Console
from rich.live import Live
from rich.table import Table

from issueflow.config import IssueflowConfig, load_config
from issueflow.errors import CollaboratorError
from issueflow.models import Issue, ReportKind, RunReport, StageStatus
from issueflow.orchestrator import PipelineOrchestrator, PipelineServices, PipelineSuspended
from issueflow.pool import AgentPool

logger = logging.getLogger(__name__)

_STATUS_STYLES = {
    StageStatus.PENDING: "dim",
    StageStatus.IN_PROGRESS: "bold yellow",
    StageStatus.COMPLETE: "green",
    StageStatus.FAILED: "bold red",
}
_OUTCOME_STYLES = {
    ReportKind.DONE: "bold green",
    ReportKind.PARTIAL_OPEN_PR: "yellow",
    ReportKind.PARTIAL_ORPHAN_BRANCH: "yellow",
    ReportKind.HARD_FAILURE: "bold red",
    ReportKind.QUALITY_GATE_EXHAUSTED: "bold magenta",
}


class IssueflowRunner:
    """Poll the tracker for ready issues and run one orchestrator per issue."""

    def __init__(
        self,
        project_root: Path,
        repo: str | None = None,
        config: IssueflowConfig | None = None,
        services: PipelineServices | None = None,
        pool: AgentPool | None = None,
    ) -> None:
        self.project_root = project_root
        self.repo = repo
        self.config = config or load_config(project_root)
        self.pool = pool or AgentPool(
            max_sessions=self.config.pool.max_sessions,
            idle_ttl_seconds=self.config.pool.idle_ttl_seconds,
            agent_command=self.config.pool.agent_command,
        )
        self.services = services or PipelineServices.from_config(
            project_root, self.config, repo, self.pool
        )
        self._shutdown_event = threading.Event()
        self._active: dict[str, Issue] = {}
        self._active_lock = threading.Lock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.pool.max_sessions,
        )
        self._futures: dict[str, concurrent.futures.Future[RunReport | None]] = {}
        self.reports: dict[str, RunReport] = {}

    def run(self, poll_interval: float = 30.0) -> None:
        signal.signal(signal.SIGINT, self._handle_shutdown)
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        console = Console()
        console.print(
            f"[bold]issueflow starting (label: {self.config.pipeline.intake_label})[/bold]"
        )

        with Live(
            self._render_dashboard(),
            console=console,
            refresh_per_second=1,
        ) as live:
            while not self._shutdown_event.is_set():
                self._tick()
                self._reap_futures()
                live.update(self._render_dashboard())
                self.pool.drain_idle()
                if self._shutdown_event.wait(timeout=poll_interval):
                    break

        self._cleanup()
        console.print("[bold]issueflow stopped.[/bold]")

    def _candidates(self) -> list[Issue]:
        """Unfinished issues in the store first, then newly labelled ones."""
        store = self.services.store
        candidates: dict[str, Issue] = {}
        for issue in store.list_issues():
            state = store.load_stage(issue.id)
            if state is None or not state.terminal:
                candidates[issue.id] = issue

        tracker = self.services.tracker
        if tracker is not None:
            try:
                ready = tracker.list_ready_issues(self.config.pipeline.intake_label)
            except CollaboratorError as exc:
                logger.warning("Failed to fetch ready issues: %s", exc)
                ready = []
            for issue in ready:
                if issue.id in candidates:
                    continue
                state = store.load_stage(issue.id)
                if state is None or not state.terminal:
                    candidates[issue.id] = issue
        return list(candidates.values())

    def _tick(self) -> None:
        for issue in self._candidates():
            self._submit(issue)

    def _submit(self, issue: Issue) -> None:
        with self._active_lock:
            if issue.id in self._active:
                return
            self._active[issue.id] = issue
        self._futures[issue.id] = self._executor.submit(self._process, issue)

    def _process(self, issue: Issue) -> RunReport | None:
        logger.info("Processing %s: %s", issue.id, issue.title)
        orchestrator = PipelineOrchestrator(issue, self.services, self._shutdown_event)
        try:
            return orchestrator.run()
        except PipelineSuspended as exc:
            logger.info("%s", exc)
            return None
        finally:
            with self._active_lock:
                self._active.pop(issue.id, None)

    def _reap_futures(self) -> None:
        done = [issue_id for issue_id, f in self._futures.items() if f.done()]
        for issue_id in done:
            future = self._futures.pop(issue_id)
            exc = future.exception()
            if exc:
                logger.error("Pipeline for %s raised: %s", issue_id, exc)
                continue
            report = future.result()
            if report is not None:
                self.reports[issue_id] = report

    def _render_dashboard(self) -> Table:
        table = Table(title="issueflow")
        table.add_column("Issue", style="cyan", justify="right")
        table.add_column("Title", max_width=50)
        table.add_column("Stage", style="green")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Outcome")

        store = self.services.store
        with self._active_lock:
            running = set(self._active)
        for issue in store.list_issues():
            state = store.load_stage(issue.id)
            if state is None:
                continue
            status_style = _STATUS_STYLES.get(state.status, "")
            outcome = "-"
            if state.outcome is not None:
                style = _OUTCOME_STYLES.get(state.outcome.kind, "")
                outcome = f"[{style}]{state.outcome.kind}[/]"
            elif issue.id in running:
                outcome = "[bold]running[/]"
            table.add_row(
                issue.id,
                issue.title,
                str(state.current_stage),
                f"[{status_style}]{state.status}[/]",
                str(state.attempt_count),
                outcome,
            )

        table.caption = (
            f"Agents: {self.pool.busy_count}/{self.config.pool.max_sessions} busy"
            f" | Running: {len(running)}"
        )
        return table

    def _handle_shutdown(self, signum: int, frame: object) -> None:
        self._shutdown_event.set()

    def _cleanup(self) -> None:
        self._executor.shutdown(wait=True)
        self._reap_futures()
        self.pool.shutdown()
