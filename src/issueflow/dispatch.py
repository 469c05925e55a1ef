from __future__ import annotations

import json
import logging
import subprocess
import time
from pathlib import Path

from pydantic import ValidationError

from issueflow.models import Issue, IssueContext, StatusReport
from issueflow.pool import AgentPool, AgentSession
from issueflow.source_control import ISSUE_DIR
from issueflow.workers import Completed, Failed, HardFault, StageContext, StageOutcome

logger = logging.getLogger(__name__)

CONTEXT_FILE = "context.json"
STATUS_FILE = "status.json"
_RECENT_PROGRESS = 20


def _write_context(worktree: Path, data: IssueContext) -> Path:
    """Write the task description to {worktree}/.issue/context.json"""
    issue_dir = worktree / ISSUE_DIR
    issue_dir.mkdir(parents=True, exist_ok=True)
    path = issue_dir / CONTEXT_FILE
    path.write_text(data.model_dump_json(indent=2))
    return path


def _read_status(worktree: Path) -> str | None:
    """Read status JSON if the agent has written it, None if not yet."""
    path = worktree / ISSUE_DIR / STATUS_FILE
    if not path.is_file():
        return None
    return path.read_text()


def _validate_status(raw_json: str) -> StatusReport:
    """Parse and validate the agent's status file. Raises ValidationError."""
    return StatusReport.model_validate(json.loads(raw_json))


def _build_prompt(stage: str, context_path: Path, status_path: Path) -> str:
    return (
        f"Read {context_path} to understand the task; you are working the "
        f"'{stage}' stage of this issue. Resume from the recent progress and "
        f"task list it contains rather than redoing finished work. "
        f"When you stop, write ONLY valid JSON to {status_path} with "
        f'{{"status": "completed" | "failed" | "fatal", "summary": "<what you did>"}}. '
        f"Include a \"tasks\" list when you plan the work and a \"verified\" list "
        f"of {{\"id\", \"passed\"}} for every task whose checks you actually ran. "
        f'Use "fatal" only for problems a retry cannot fix, such as missing credentials.'
    )


def _to_outcome(report: StatusReport) -> StageOutcome:
    if report.status == "completed":
        return Completed(
            summary=report.summary,
            tasks=[t.to_task() for t in report.tasks] if report.tasks is not None else None,
            verified={v.id: v.passed for v in report.verified},
        )
    if report.status == "fatal":
        return HardFault(report.summary or "agent reported a fatal error")
    return Failed(report.summary or "agent reported failure")


class AgentStageWorker:
    """Run a stage by handing the issue to a coding agent in a tmux session.

    The agent reads ``.issue/context.json`` in the worktree and signals it is
    done by writing ``.issue/status.json``.
    """

    def __init__(
        self,
        pool: AgentPool,
        timeouts: dict[str, int] | None = None,
        poll_interval: float = 5.0,
        max_validation_retries: int = 2,
    ) -> None:
        self.pool = pool
        self.timeouts = timeouts or {}
        self.poll_interval = poll_interval
        self.max_validation_retries = max_validation_retries

    def __call__(self, issue: Issue, context: StageContext) -> StageOutcome:
        worktree = context.workspace.path
        issue_context = IssueContext(
            issue_id=issue.id,
            title=issue.title,
            description=issue.description,
            labels=issue.labels,
            stage=context.stage,
            branch=context.workspace.branch,
            attempt=context.attempt,
            session=context.session,
            last_error=context.last_error,
            recent_progress=context.progress[-_RECENT_PROGRESS:],
            tasks=context.tasks.tasks,
        )
        context_path = _write_context(worktree, issue_context)
        status_path = worktree / ISSUE_DIR / STATUS_FILE
        status_path.unlink(missing_ok=True)

        session: AgentSession | None = None
        try:
            session = self.pool.acquire(worktree)
            self.pool.clear_context(session)
            self.pool.send(
                session, _build_prompt(context.stage, context_path, status_path)
            )
            return self._await_status(session, context, status_path)
        except RuntimeError as exc:
            return Failed(str(exc))
        except subprocess.CalledProcessError as exc:
            return Failed(f"tmux command failed: {exc}")
        finally:
            if session is not None:
                self.pool.release(session)

    def _await_status(
        self, session: AgentSession, context: StageContext, status_path: Path
    ) -> StageOutcome:
        timeout = self.timeouts.get(context.stage)
        deadline = time.monotonic() + timeout if timeout else None
        retries_left = self.max_validation_retries
        shutdown_event = context.shutdown_event

        while True:
            if shutdown_event is not None and shutdown_event.is_set():
                return Failed("shutdown")

            if deadline is not None and time.monotonic() >= deadline:
                return Failed(f"timeout after {timeout}s in {context.stage}")

            raw = _read_status(context.workspace.path)
            if raw is None:
                if not self.pool.is_alive(session):
                    self.pool.discard(session)
                    return Failed("agent session exited without writing a status")
                if shutdown_event is not None:
                    shutdown_event.wait(timeout=self.poll_interval)
                else:
                    time.sleep(self.poll_interval)
                continue

            try:
                report = _validate_status(raw)
            except (ValidationError, json.JSONDecodeError) as exc:
                if retries_left <= 0:
                    return Failed(f"Status validation failed after retries: {exc}")
                retries_left -= 1
                status_path.unlink(missing_ok=True)
                self.pool.send(
                    session,
                    f"Your status file had a validation error: {exc}. "
                    f"Please fix and rewrite {status_path}.",
                )
                continue

            logger.info("Agent finished %s: %s", context.stage, report.status)
            return _to_outcome(report)
