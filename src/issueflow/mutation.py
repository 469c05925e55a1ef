"""Terminal mutation phase: commit, push, open PR, merge, then always clean up.

Phase 1 is read-only (capture context, refuse to run on trunk, optionally
re-run the quality gate). Phase 2 performs the mutations in a fixed order and
records a marker after each success; once it starts, the workspace is released
before control returns, whichever step failed. Cleanup leaves the remote in a
state consistent with what succeeded rather than trying to undo it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from issueflow.errors import CollaboratorError, MutationFailure, PreconditionError
from issueflow.hosting import CodeHostingService, ReviewDecision
from issueflow.models import (
    MUTATION_MARKER,
    CleanupReport,
    Issue,
    MutationProgress,
    RunReport,
    Workspace,
)
from issueflow.quality_gate import GateResult, GateVerdict
from issueflow.source_control import SourceControl
from issueflow.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

MarkerSink = Callable[[str], None]


@dataclass(frozen=True)
class MutationContext:
    branch: str
    workspace_path: Path
    base_repo: Path | None


@dataclass
class MutationReport:
    """What the phase did. ``report`` is None when the gate stopped Phase 1."""

    report: RunReport | None
    progress: MutationProgress
    gate: GateResult | None = None
    failure: MutationFailure | None = None


def commit_message(issue: Issue) -> str:
    return f"feat: {issue.title.lower()}"


def pull_request_body(issue: Issue) -> str:
    ref = f"#{issue.id}" if issue.id.isdigit() else issue.id
    body = f"Closes {ref}"
    if issue.description:
        body += f"\n\n{issue.description}"
    return body


def _noop_sink(message: str) -> None:
    return None


class TerminalMutationPhase:
    def __init__(
        self,
        source_control: SourceControl,
        hosting: CodeHostingService,
        workspaces: WorkspaceManager,
        trunk: str = "main",
        require_approval: bool = False,
        base_repo: Path | None = None,
    ) -> None:
        self.source_control = source_control
        self.hosting = hosting
        self.workspaces = workspaces
        self.trunk = trunk
        self.require_approval = require_approval
        self.base_repo = base_repo

    def preconditions(self, workspace: Workspace) -> MutationContext:
        """Phase 1 guard. Raises PreconditionError; never mutates anything."""
        try:
            branch = self.source_control.current_branch(workspace.path)
        except CollaboratorError as exc:
            msg = f"cannot read current branch of {workspace.path}: {exc.detail}"
            raise PreconditionError(msg) from exc
        if branch == self.trunk:
            msg = f"refusing to mutate: {workspace.path} is on trunk branch {self.trunk}"
            raise PreconditionError(msg)
        return MutationContext(
            branch=branch, workspace_path=workspace.path, base_repo=self.base_repo
        )

    def run(
        self,
        issue: Issue,
        workspace: Workspace,
        *,
        gate: Callable[[], GateResult] | None = None,
        progress: MutationProgress | None = None,
        record: MarkerSink | None = None,
    ) -> MutationReport:
        """Run both phases. *progress* carries markers from an earlier, interrupted run."""
        progress = progress.model_copy() if progress is not None else MutationProgress()
        sink = record or _noop_sink

        if progress.cleanup_started:
            # an earlier run crashed during or after cleanup; finish it
            cleanup = self._release(workspace, progress, sink)
            failure = (
                MutationFailure(progress.failed_step, progress.failure or "")
                if progress.failed_step
                else None
            )
            return MutationReport(
                self._outcome(progress, failure, cleanup), progress, failure=failure
            )

        context = self.preconditions(workspace)
        if gate is not None:
            gate_result = gate()
            if gate_result.verdict != GateVerdict.PASSED:
                return MutationReport(None, progress, gate=gate_result)

        failure: MutationFailure | None = None
        try:
            failure = self._mutate(issue, context, progress, sink)
        finally:
            cleanup = self._release(workspace, progress, sink)

        report = self._outcome(progress, failure, cleanup)
        return MutationReport(report, progress, failure=failure)

    def _release(
        self, workspace: Workspace, progress: MutationProgress, sink: MarkerSink
    ) -> CleanupReport:
        # logged first so a crash mid-cleanup resumes here, not at acquire
        sink(f"{MUTATION_MARKER} releasing")
        progress.releasing = True
        cleanup = self.workspaces.release(workspace, progress)
        progress.released = True
        sink(f"{MUTATION_MARKER} released")
        return cleanup

    def _mutate(
        self,
        issue: Issue,
        context: MutationContext,
        progress: MutationProgress,
        sink: MarkerSink,
    ) -> MutationFailure | None:
        step = "commit"
        try:
            if not progress.committed:
                sha = self.source_control.commit(context.workspace_path, commit_message(issue))
                progress.committed = True
                sink(f"{MUTATION_MARKER} committed {sha or '(no new changes)'}")

            step = "push"
            if not progress.pushed:
                self.source_control.push(context.workspace_path, context.branch)
                progress.pushed = True
                sink(f"{MUTATION_MARKER} pushed {context.branch}")

            step = "pr"
            if not progress.pr_created or progress.pr is None:
                pr = self.hosting.create_pull_request(
                    context.branch, commit_message(issue), pull_request_body(issue)
                )
                progress.pr_created = True
                progress.pr = pr
                sink(f"{MUTATION_MARKER} pr_created #{pr.number} {pr.url}")

            step = "merge"
            if progress.merged:
                return None
            decision = self.hosting.review_decision(progress.pr)
            if decision == ReviewDecision.REJECTED:
                raise MutationFailure(step, f"review of PR {progress.pr} requested changes")
            if decision == ReviewDecision.PENDING and self.require_approval:
                logger.info("PR %s awaits approval; leaving it open", progress.pr)
                sink(f"{MUTATION_MARKER} awaiting_approval #{progress.pr.number}")
                return None
            self.hosting.merge(progress.pr)
            progress.merged = True
            sink(f"{MUTATION_MARKER} merged #{progress.pr.number}")
            return None
        except MutationFailure as exc:
            failure = exc
        except CollaboratorError as exc:
            failure = MutationFailure(step, exc.detail)
        progress.failed_step = failure.step
        progress.failure = failure.cause
        logger.warning("Mutation phase for %s stopped: %s", issue.id, failure)
        sink(f"{MUTATION_MARKER} failed {failure.step}: {failure.cause}")
        return failure

    @staticmethod
    def _outcome(
        progress: MutationProgress,
        failure: MutationFailure | None,
        cleanup: CleanupReport,
    ) -> RunReport:
        if progress.merged:
            return RunReport.done(cleanup)
        if progress.pr_created and progress.pr is not None:
            return RunReport.partial_open_pr(progress.pr, cleanup)
        reason = str(failure) if failure is not None else "mutation phase stopped early"
        if progress.pushed:
            return RunReport.partial_orphan_branch(reason, cleanup)
        return RunReport.hard_failure(reason, cleanup)
