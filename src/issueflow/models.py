"""Pydantic models for everything the pipeline persists or exchanges.

Stage state, the task list and progress entries are written to the per-issue
state directory; the agent contracts (:class:`IssueContext`,
:class:`StatusReport`) are passed as JSON files inside the worktree.
"""

from __future__ import annotations

import re
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, model_validator


class Stage(StrEnum):
    QUEUED = "queued"
    REFINING = "refining"
    ARCHITECTING = "architecting"
    DESIGNING = "designing"
    IMPLEMENTING = "implementing"
    TESTING = "testing"
    QA_GATE = "qa_gate"
    IN_REVIEW = "in_review"
    DONE = "done"


class StageStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class Issue(BaseModel):
    id: str
    title: str
    description: str = ""
    labels: list[str] = Field(default_factory=list)
    repo: str | None = None

    def has_any_label(self, names: list[str]) -> bool:
        wanted = {n.lower() for n in names}
        return any(label.lower() in wanted for label in self.labels)


class PullRequestRef(BaseModel):
    number: int
    url: str = ""

    def __str__(self) -> str:
        return f"#{self.number}"


# ── Reports ──────────────────────────────────────────────────────────


class ReportKind(StrEnum):
    DONE = "done"
    PARTIAL_OPEN_PR = "partial_open_pr"
    PARTIAL_ORPHAN_BRANCH = "partial_orphan_branch"
    HARD_FAILURE = "hard_failure"
    QUALITY_GATE_EXHAUSTED = "quality_gate_exhausted"


class CleanupStepStatus(StrEnum):
    DONE = "done"
    ABSENT = "absent"
    SKIPPED = "skipped"
    FAILED = "failed"


class CleanupStep(BaseModel):
    name: str
    status: CleanupStepStatus
    error: str | None = None


class CleanupReport(BaseModel):
    """Outcome of every sub-step of a workspace release."""

    branch: str
    steps: list[CleanupStep] = Field(default_factory=list)
    pr: PullRequestRef | None = None

    @property
    def failures(self) -> list[CleanupStep]:
        return [s for s in self.steps if s.status == CleanupStepStatus.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failures

    def step(self, name: str) -> CleanupStep | None:
        return next((s for s in self.steps if s.name == name), None)


class RunReport(BaseModel):
    """The single outcome of one orchestrator run."""

    kind: ReportKind
    pr: PullRequestRef | None = None
    reason: str | None = None
    detail: str | None = None
    cleanup: CleanupReport | None = None

    @classmethod
    def done(cls, cleanup: CleanupReport | None = None) -> RunReport:
        return cls(kind=ReportKind.DONE, cleanup=cleanup)

    @classmethod
    def partial_open_pr(
        cls, pr: PullRequestRef, cleanup: CleanupReport | None = None
    ) -> RunReport:
        return cls(kind=ReportKind.PARTIAL_OPEN_PR, pr=pr, cleanup=cleanup)

    @classmethod
    def partial_orphan_branch(
        cls, reason: str | None = None, cleanup: CleanupReport | None = None
    ) -> RunReport:
        return cls(kind=ReportKind.PARTIAL_ORPHAN_BRANCH, reason=reason, cleanup=cleanup)

    @classmethod
    def hard_failure(
        cls, reason: str, cleanup: CleanupReport | None = None
    ) -> RunReport:
        return cls(kind=ReportKind.HARD_FAILURE, reason=reason, cleanup=cleanup)

    @classmethod
    def quality_gate_exhausted(cls, detail: str) -> RunReport:
        return cls(kind=ReportKind.QUALITY_GATE_EXHAUSTED, detail=detail)

    def summary(self) -> str:
        match self.kind:
            case ReportKind.DONE:
                return "Done: merged and cleaned up."
            case ReportKind.PARTIAL_OPEN_PR:
                return f"PR {self.pr} open, awaiting manual merge."
            case ReportKind.PARTIAL_ORPHAN_BRANCH:
                return f"Pushed branch had no PR and was deleted: {self.reason}"
            case ReportKind.HARD_FAILURE:
                return f"Hard failure: {self.reason}"
            case ReportKind.QUALITY_GATE_EXHAUSTED:
                return (
                    "Quality gate exhausted; workspace kept for inspection: "
                    f"{self.detail}"
                )
        return self.kind.value


# ── Persisted session state ──────────────────────────────────────────


class StageState(BaseModel):
    current_stage: Stage = Stage.QUEUED
    status: StageStatus = StageStatus.PENDING
    attempt_count: int = Field(default=0, ge=0)
    last_error: str | None = None
    gate_attempts: int = Field(default=0, ge=0)
    session: int = 0
    outcome: RunReport | None = None
    updated_at: str | None = None

    @property
    def terminal(self) -> bool:
        return self.outcome is not None


class ProgressEntry(BaseModel):
    timestamp: str
    session: int
    stage: str
    message: str


class TaskItem(BaseModel):
    id: str
    description: str
    passing: bool = False
    owning_files: list[str] = Field(default_factory=list)
    verified_session: int | None = None

    @model_validator(mode="after")
    def _passing_requires_verification(self) -> TaskItem:
        if self.passing and self.verified_session is None:
            msg = f"Task {self.id} marked passing without a verification run"
            raise ValueError(msg)
        return self

    def is_passing(self, session: int) -> bool:
        return self.passing and self.verified_session == session


class TaskList(BaseModel):
    tasks: list[TaskItem] = Field(default_factory=list)

    def get(self, task_id: str) -> TaskItem | None:
        return next((t for t in self.tasks if t.id == task_id), None)

    def record_verification(self, task_id: str, passed: bool, session: int) -> None:
        task = self.get(task_id)
        if task is None:
            msg = f"Unknown task: {task_id}"
            raise KeyError(msg)
        task.passing = passed
        task.verified_session = session

    def failing(self, session: int) -> list[TaskItem]:
        return [t for t in self.tasks if not t.is_passing(session)]


# ── Workspace and mutation progress ──────────────────────────────────


class WorkspaceStatus(StrEnum):
    CREATED = "created"
    ACTIVE = "active"
    CLEANED = "cleaned"


class Workspace(BaseModel):
    issue_id: str
    branch: str
    path: Path
    status: WorkspaceStatus = WorkspaceStatus.CREATED


MUTATION_MARKER = "mutation:"
_PR_MARKER_RE = re.compile(r"#(\d+)\s*(\S*)")


class MutationProgress(BaseModel):
    committed: bool = False
    pushed: bool = False
    pr_created: bool = False
    pr: PullRequestRef | None = None
    merged: bool = False
    releasing: bool = False
    released: bool = False
    failed_step: str | None = None
    failure: str | None = None

    @property
    def started(self) -> bool:
        return self.committed or self.pushed or self.pr_created or self.merged

    @property
    def cleanup_started(self) -> bool:
        return self.releasing or self.released

    @classmethod
    def from_progress(cls, entries: list[ProgressEntry]) -> MutationProgress:
        """Rebuild markers from ``mutation:`` progress entries.

        A ``reset`` marker discards everything logged before it.
        """
        progress = cls()
        for entry in entries:
            if not entry.message.startswith(MUTATION_MARKER):
                continue
            body = entry.message.removeprefix(MUTATION_MARKER).strip()
            marker, _, rest = body.partition(" ")
            if marker == "reset":
                progress = cls()
            elif marker == "committed":
                progress.committed = True
            elif marker == "pushed":
                progress.pushed = True
            elif marker == "pr_created":
                progress.pr_created = True
                match = _PR_MARKER_RE.match(rest)
                if match:
                    progress.pr = PullRequestRef(
                        number=int(match.group(1)), url=match.group(2)
                    )
            elif marker == "merged":
                progress.merged = True
            elif marker == "failed":
                step, _, cause = rest.partition(":")
                progress.failed_step = step.strip()
                progress.failure = cause.strip()
            elif marker == "releasing":
                progress.releasing = True
            elif marker == "released":
                progress.releasing = True
                progress.released = True
        return progress


# ── Agent contracts ──────────────────────────────────────────────────


class IssueContext(BaseModel):
    """Written to ``.issue/context.json`` for the agent working a stage."""

    issue_id: str
    title: str
    description: str
    labels: list[str]
    stage: Stage
    branch: str
    attempt: int = 0
    session: int = 0
    last_error: str | None = None
    recent_progress: list[ProgressEntry] = Field(default_factory=list)
    tasks: list[TaskItem] = Field(default_factory=list)


class PlannedTask(BaseModel):
    """A task as the agent reports it. Unknown fields such as ``passing`` are dropped."""

    id: str
    description: str
    owning_files: list[str] = Field(default_factory=list)

    def to_task(self) -> TaskItem:
        return TaskItem(
            id=self.id, description=self.description, owning_files=self.owning_files
        )


class TaskVerification(BaseModel):
    id: str
    passed: bool


class StatusReport(BaseModel):
    """What the agent writes to ``.issue/status.json`` when it stops."""

    status: str = Field(pattern="^(completed|failed|fatal)$")
    summary: str = ""
    tasks: list[PlannedTask] | None = None
    verified: list[TaskVerification] = Field(default_factory=list)
