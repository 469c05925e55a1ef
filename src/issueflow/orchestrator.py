"""The per-issue state machine.

One :class:`PipelineOrchestrator` drives one issue from ``queued`` to a
terminal outcome. Every transition is written to the state store before the
stage's worker runs and again after it returns, so a restarted orchestrator
always resumes at ``current_stage``: an ``in_progress`` stage whose outcome
was never recorded is simply invoked again.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from issueflow.config import IssueflowConfig
from issueflow.dispatch import AgentStageWorker
from issueflow.errors import (
    CollaboratorError,
    IssueflowError,
    PreconditionError,
    WorkspaceConflict,
)
from issueflow.hosting import GitHubCodeHosting
from issueflow.models import (
    MUTATION_MARKER,
    Issue,
    MutationProgress,
    ReportKind,
    RunReport,
    Stage,
    StageState,
    StageStatus,
    TaskItem,
    TaskList,
    Workspace,
)
from issueflow.mutation import TerminalMutationPhase
from issueflow.notifier import Channel, CommandNotifier, Notifier
from issueflow.pool import AgentPool
from issueflow.quality_gate import GateVerdict, QualityGate
from issueflow.source_control import GitSourceControl
from issueflow.stages import ORCHESTRATOR_STAGES, RETRY_STAGE, STAGE_ORDER, StageRegistry
from issueflow.state_store import SessionStateStore
from issueflow.tracker import GitHubIssueTracker, IssueTracker
from issueflow.verify import CommandVerifier
from issueflow.workers import Completed, Failed, HardFault, StageContext, StageWorker
from issueflow.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class PipelineSuspended(IssueflowError):
    """Shutdown was requested; state is persisted and the run can resume later."""

    def __init__(self, issue_id: str, stage: Stage) -> None:
        self.issue_id = issue_id
        self.stage = stage
        super().__init__(f"Pipeline for {issue_id} suspended at {stage}")


@dataclass
class PipelineServices:
    """Collaborators shared by every orchestrator in a process."""

    store: SessionStateStore
    workspaces: WorkspaceManager
    registry: StageRegistry
    workers: dict[str, StageWorker]
    gate: QualityGate
    mutation: TerminalMutationPhase
    tracker: IssueTracker | None = None
    notifier: Notifier | None = None
    notify_channel: Channel = Channel.SMS
    max_stage_attempts: int = 3

    def __post_init__(self) -> None:
        needed = {
            self.registry.spec(stage).worker_key
            for stage in STAGE_ORDER
            if stage not in ORCHESTRATOR_STAGES and stage != Stage.QA_GATE
        }
        missing = sorted(k for k in needed if k and k not in self.workers)
        if missing:
            msg = f"No worker registered for: {', '.join(missing)}"
            raise ValueError(msg)

    @classmethod
    def from_config(
        cls,
        project_root: Path,
        config: IssueflowConfig,
        repo: str | None = None,
        pool: AgentPool | None = None,
    ) -> PipelineServices:
        pipeline = config.pipeline
        source_control = GitSourceControl(project_root, pipeline.trunk, pipeline.remote)
        workspaces = WorkspaceManager(
            source_control,
            config.worktree_root(project_root),
            trunk=pipeline.trunk,
            branch_prefix=pipeline.branch_prefix,
        )
        registry = StageRegistry.default(pipeline.ui_labels)
        if pool is None:
            pool = AgentPool(
                max_sessions=config.pool.max_sessions,
                idle_ttl_seconds=config.pool.idle_ttl_seconds,
                agent_command=config.pool.agent_command,
            )
        agent = AgentStageWorker(pool, config.timeouts)
        verifier = CommandVerifier(
            config.gate, timeout=config.timeouts.get(Stage.QA_GATE, 900)
        )
        hosting = GitHubCodeHosting(repo, base=pipeline.trunk, merge_method=pipeline.merge_method)
        return cls(
            store=SessionStateStore(config.state_root(project_root)),
            workspaces=workspaces,
            registry=registry,
            workers={key: agent for key in registry.worker_keys() if key != "verify"},
            gate=QualityGate(verifier, max_attempts=pipeline.max_attempts),
            mutation=TerminalMutationPhase(
                source_control,
                hosting,
                workspaces,
                trunk=pipeline.trunk,
                require_approval=pipeline.require_approval,
                base_repo=project_root,
            ),
            tracker=GitHubIssueTracker(repo),
            notifier=CommandNotifier.from_config(config.notify),
            notify_channel=Channel(config.notify.channel),
            max_stage_attempts=pipeline.max_stage_attempts,
        )


def _merge_task(incoming: TaskItem, previous: TaskItem | None) -> TaskItem:
    # passing flags only come from recorded verification runs
    if previous is None:
        return incoming.model_copy(update={"passing": False, "verified_session": None})
    return incoming.model_copy(
        update={"passing": previous.passing, "verified_session": previous.verified_session}
    )


class PipelineOrchestrator:
    def __init__(
        self,
        issue: Issue,
        services: PipelineServices,
        shutdown_event: threading.Event | None = None,
    ) -> None:
        self.issue = issue
        self.services = services
        self.shutdown_event = shutdown_event
        self.state = StageState()

    # ── Entry point ──────────────────────────────────────────────────

    def run(self) -> RunReport:
        """Drive the issue to a terminal outcome, resuming persisted state.

        Raises PipelineSuspended if shutdown is requested at a stage boundary.
        """
        store = self.services.store
        store.save_issue(self.issue)
        state = store.load_stage(self.issue.id)
        if state is not None and state.terminal:
            logger.info("Issue %s already finished: %s", self.issue.id, state.outcome.kind)
            return state.outcome

        self.state = state or StageState()
        self.state.session += 1
        self._save()
        self._log(
            f"session {self.state.session} started at "
            f"{self.state.current_stage} ({self.state.status})"
        )

        if MutationProgress.from_progress(store.read_progress(self.issue.id)).cleanup_started:
            # cleanup already started; the worktree may be half gone
            workspace = self.services.workspaces.describe(self.issue)
            if self.state.current_stage != Stage.IN_REVIEW:
                return self._hard_fail(
                    workspace, self.state.last_error or "workspace cleanup was interrupted"
                )
        else:
            try:
                workspace = self.services.workspaces.acquire(self.issue)
            except WorkspaceConflict as exc:
                return self._finish(RunReport.hard_failure(str(exc)))
            except CollaboratorError as exc:
                return self._finish(
                    RunReport.hard_failure(f"workspace acquisition failed: {exc}")
                )

        while True:
            stopped = self._check_boundary(workspace)
            if stopped is not None:
                return stopped
            self._advance()
            report = self._execute(workspace)
            if report is not None:
                return report

    # ── Transitions ──────────────────────────────────────────────────

    def _advance(self) -> None:
        """Move the persisted state to the stage that should run next."""
        state = self.state
        match state.status:
            case StageStatus.COMPLETE:
                nxt, skipped = self.services.registry.next_stage(
                    state.current_stage, self.issue
                )
                for stage in skipped:
                    self._log(f"skipped {stage}: not applicable to this issue", stage=stage)
                self._enter(nxt or Stage.DONE)
            case StageStatus.FAILED if state.current_stage == Stage.QA_GATE:
                self._enter(RETRY_STAGE, last_error=state.last_error)
            case StageStatus.FAILED:
                state.status = StageStatus.IN_PROGRESS
                self._save()
                self._log(
                    f"retrying {state.current_stage} "
                    f"(attempt {state.attempt_count + 1}/{self.services.max_stage_attempts})"
                )
            case StageStatus.PENDING:
                self._enter(state.current_stage, last_error=state.last_error)
            case StageStatus.IN_PROGRESS:
                self._log(f"resuming {state.current_stage}; previous outcome unknown")

    def _enter(self, stage: Stage, last_error: str | None = None) -> None:
        state = self.state
        state.current_stage = stage
        state.status = StageStatus.IN_PROGRESS
        # the gate's budget spans every pass through QAGate
        state.attempt_count = state.gate_attempts if stage == Stage.QA_GATE else 0
        state.last_error = last_error
        self._save()
        self._log(f"entered {stage}")
        self._tracker_call("transition_state", self.issue.id, str(stage))

    def _complete(self, summary: str) -> None:
        self.state.status = StageStatus.COMPLETE
        self._save()
        self._log(summary)

    def _fail(self, reason: str) -> None:
        state = self.state
        state.attempt_count += 1
        state.last_error = reason
        state.status = StageStatus.FAILED
        self._save()
        self._log(f"failed (attempt {state.attempt_count}): {reason}")

    def _check_boundary(self, workspace: Workspace) -> RunReport | None:
        state = self.state
        if state.status == StageStatus.FAILED and state.current_stage != Stage.QA_GATE:
            limit = self.services.max_stage_attempts
            if state.attempt_count >= limit:
                return self._hard_fail(
                    workspace,
                    f"{state.current_stage} failed {state.attempt_count} times: "
                    f"{state.last_error}",
                )
        if self.services.store.is_cancelled(self.issue.id):
            self._log("cancel flag found; releasing workspace")
            return self._hard_fail(workspace, "cancelled by operator")
        if self.shutdown_event is not None and self.shutdown_event.is_set():
            self._log("shutdown requested; state saved for resume")
            raise PipelineSuspended(self.issue.id, state.current_stage)
        return None

    # ── Stage execution ──────────────────────────────────────────────

    def _execute(self, workspace: Workspace) -> RunReport | None:
        stage = self.state.current_stage
        if stage == Stage.QUEUED:
            self._complete(f"workspace ready at {workspace.path} on {workspace.branch}")
            return None
        if stage == Stage.QA_GATE:
            return self._run_gate(workspace)
        if stage == Stage.IN_REVIEW:
            return self._run_mutation(workspace)
        if stage == Stage.DONE:
            return self._finish(RunReport.done())
        return self._run_worker(workspace)

    def _context(self, workspace: Workspace) -> StageContext:
        store = self.services.store
        return StageContext(
            stage=self.state.current_stage,
            workspace=workspace,
            session=self.state.session,
            attempt=self.state.attempt_count,
            last_error=self.state.last_error,
            progress=store.read_progress(self.issue.id),
            tasks=store.load_tasks(self.issue.id),
            shutdown_event=self.shutdown_event,
        )

    def _run_worker(self, workspace: Workspace) -> RunReport | None:
        stage = self.state.current_stage
        worker = self.services.workers[self.services.registry.spec(stage).worker_key]
        try:
            outcome = worker(self.issue, self._context(workspace))
        except Exception as exc:
            logger.exception("Worker for %s on %s raised", stage, self.issue.id)
            outcome = Failed(f"worker raised {type(exc).__name__}: {exc}")

        match outcome:
            case Completed():
                self._apply_tasks(outcome)
                self._complete(outcome.summary or f"{stage} complete")
            case HardFault(reason=reason):
                return self._hard_fail(workspace, f"{stage}: {reason}")
            case Failed(reason=reason):
                if self.shutdown_event is not None and self.shutdown_event.is_set():
                    # interrupted, not failed: leave in_progress so resume re-invokes
                    self._log(f"{stage} interrupted by shutdown")
                    raise PipelineSuspended(self.issue.id, stage)
                self._fail(reason)
        return None

    def _apply_tasks(self, outcome: Completed) -> None:
        store = self.services.store
        tasks = store.load_tasks(self.issue.id)
        if outcome.tasks is not None:
            tasks = TaskList(tasks=[_merge_task(t, tasks.get(t.id)) for t in outcome.tasks])
        for task_id, passed in outcome.verified.items():
            try:
                tasks.record_verification(task_id, passed, self.state.session)
            except KeyError:
                logger.warning("Ignoring verification of unknown task %s", task_id)
        store.save_tasks(self.issue.id, tasks)

    def _run_gate(self, workspace: Workspace) -> RunReport | None:
        state = self.state
        result = self.services.gate.run(self.issue, self._context(workspace))
        state.attempt_count = result.attempt_count
        state.gate_attempts = result.attempt_count

        match result.verdict:
            case GateVerdict.PASSED:
                self._complete(f"quality gate passed on attempt {result.attempt_count + 1}")
                return None
            case GateVerdict.RETRY:
                state.last_error = result.detail
                state.status = StageStatus.FAILED
                self._save()
                self._log(
                    f"quality gate failed (attempt {result.attempt_count}/"
                    f"{self.services.gate.max_attempts}), back to {RETRY_STAGE}: "
                    f"{result.detail}"
                )
                return None

        report = RunReport.quality_gate_exhausted(result.detail or "")
        self._finish(report)
        self._escalate(report)
        return report

    def _run_mutation(self, workspace: Workspace) -> RunReport:
        progress = MutationProgress.from_progress(
            self.services.store.read_progress(self.issue.id)
        )
        if progress.started:
            self._log("resuming mutation phase from recorded markers")
        try:
            result = self.services.mutation.run(
                self.issue, workspace, progress=progress, record=self._log
            )
        except PreconditionError as exc:
            return self._finish(RunReport.hard_failure(str(exc)))
        report = result.report or RunReport.hard_failure("mutation phase did not run")
        return self._finish(report)

    # ── Terminal handling ────────────────────────────────────────────

    def _hard_fail(self, workspace: Workspace, reason: str) -> RunReport:
        self.state.last_error = reason
        self._save()
        progress = MutationProgress.from_progress(
            self.services.store.read_progress(self.issue.id)
        )
        self._log(f"{MUTATION_MARKER} releasing")
        cleanup = self.services.workspaces.release(workspace, progress)
        self._log(f"{MUTATION_MARKER} released")
        return self._finish(RunReport.hard_failure(reason, cleanup))

    def _finish(self, report: RunReport) -> RunReport:
        state = self.state
        state.outcome = report
        if report.kind == ReportKind.DONE:
            state.current_stage = Stage.DONE
            state.status = StageStatus.COMPLETE
        elif report.kind == ReportKind.PARTIAL_OPEN_PR:
            state.status = StageStatus.COMPLETE
        else:
            state.status = StageStatus.FAILED
            state.last_error = report.reason or report.detail
        self._save()
        self._log(report.summary())
        if report.cleanup is not None:
            for step in report.cleanup.failures:
                self._log(f"cleanup step {step.name} failed, clean up manually: {step.error}")

        if report.kind == ReportKind.DONE:
            self._tracker_call("transition_state", self.issue.id, str(Stage.DONE))
        self._tracker_call("post_comment", self.issue.id, report.summary())
        logger.info("Issue %s finished: %s", self.issue.id, report.summary())
        return report

    def _escalate(self, report: RunReport) -> None:
        notifier = self.services.notifier
        if notifier is None:
            return
        message = f"[issueflow] {self.issue.id} {self.issue.title}: {report.summary()}"
        try:
            notifier.send(self.services.notify_channel, message)
        except CollaboratorError as exc:
            logger.error("Escalation for %s could not be delivered: %s", self.issue.id, exc)
            return
        self._log(f"escalated to a human via {self.services.notify_channel}")

    # ── Helpers ──────────────────────────────────────────────────────

    def _save(self) -> None:
        self.services.store.save_stage(self.issue.id, self.state)

    def _log(self, message: str, stage: Stage | None = None) -> None:
        self.services.store.append_progress(
            self.issue.id,
            stage or self.state.current_stage,
            message,
            self.state.session,
        )

    def _tracker_call(self, operation: str, *args: str) -> None:
        tracker = self.services.tracker
        if tracker is None:
            return
        try:
            getattr(tracker, operation)(*args)
        except CollaboratorError as exc:
            logger.warning("Tracker %s for %s failed: %s", operation, self.issue.id, exc)


def reset_issue(store: SessionStateStore, issue_id: str) -> StageState:
    """Clear a terminal outcome and the gate budget so the issue can run again.

    An issue whose workspace was already released restarts from ``queued``;
    otherwise it resumes at its current stage.
    """
    state = store.load_stage(issue_id) or StageState()
    released = (state.outcome is not None and state.outcome.cleanup is not None) or (
        MutationProgress.from_progress(store.read_progress(issue_id)).cleanup_started
    )
    if released or state.current_stage == Stage.DONE:
        state.current_stage = Stage.QUEUED
    state.outcome = None
    state.status = StageStatus.PENDING
    state.attempt_count = 0
    state.gate_attempts = 0
    state.last_error = None
    store.save_stage(issue_id, state)
    store.append_progress(
        issue_id, state.current_stage, f"{MUTATION_MARKER} reset by operator", state.session
    )
    store.clear_cancel(issue_id)
    logger.info("Reset %s to %s", issue_id, state.current_stage)
    return state
