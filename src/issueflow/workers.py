"""The contract between the orchestrator and whatever does a stage's work.

A worker is any callable ``(Issue, StageContext) -> StageOutcome``. Workers
never touch stage state; they report an outcome and the orchestrator records
it. A worker may be invoked again for the same stage after a crash, so it
should resume from the progress log and task list rather than start over.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from issueflow.models import Issue, ProgressEntry, Stage, TaskItem, TaskList, Workspace


@dataclass
class StageContext:
    stage: Stage
    workspace: Workspace
    session: int
    attempt: int = 0
    last_error: str | None = None
    progress: list[ProgressEntry] = field(default_factory=list)
    tasks: TaskList = field(default_factory=TaskList)
    shutdown_event: threading.Event | None = None


@dataclass(frozen=True)
class Completed:
    summary: str = ""
    tasks: list[TaskItem] | None = None
    verified: dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class Failed:
    """Retryable failure."""

    reason: str


@dataclass(frozen=True)
class HardFault:
    """Non-retryable failure, e.g. missing credentials."""

    reason: str


StageOutcome = Completed | Failed | HardFault
StageWorker = Callable[[Issue, StageContext], StageOutcome]
