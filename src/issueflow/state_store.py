from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from issueflow.models import Issue, ProgressEntry, StageState, TaskList

logger = logging.getLogger(__name__)

STAGE_FILE = "stage.json"
TASKS_FILE = "tasks.json"
PROGRESS_FILE = "progress.md"
ISSUE_FILE = "issue.json"
CANCEL_FILE = "cancel"

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")
_ENTRY_RE = re.compile(
    r"^- (?P<ts>\S+) \[session (?P<session>\d+)\] \[(?P<stage>[^\]]+)\] (?P<msg>.*)$"
)
_CONTINUATION = "  "


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def atomic_write(path: Path, text: str) -> None:
    """Write *text* to a temp file beside *path*, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(temp_path, path)
    except BaseException:
        Path(temp_path).unlink(missing_ok=True)
        raise


def _format_entry(entry: ProgressEntry) -> str:
    first, *rest = entry.message.splitlines() or [""]
    lines = [f"- {entry.timestamp} [session {entry.session}] [{entry.stage}] {first}"]
    lines.extend(f"{_CONTINUATION}{line}" for line in rest)
    return "\n".join(lines) + "\n"


def _parse_entries(text: str) -> list[ProgressEntry]:
    entries: list[ProgressEntry] = []
    for line in text.splitlines():
        match = _ENTRY_RE.match(line)
        if match:
            entries.append(
                ProgressEntry(
                    timestamp=match.group("ts"),
                    session=int(match.group("session")),
                    stage=match.group("stage"),
                    message=match.group("msg"),
                )
            )
        elif line.startswith(_CONTINUATION) and entries:
            last = entries[-1]
            last.message = f"{last.message}\n{line.removeprefix(_CONTINUATION)}"
    return entries


class SessionStateStore:
    """Durable per-issue state: one directory per issue, atomic file writes.

    Each issue directory holds the stage state (``stage.json``), the task list
    (``tasks.json``) and the append-only progress narrative (``progress.md``),
    plus the accepted issue (``issue.json``) and an optional ``cancel`` flag.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self._progress_lock = threading.Lock()

    def issue_dir(self, issue_id: str) -> Path:
        return self.root / _UNSAFE_CHARS_RE.sub("_", issue_id)

    # ── Issues ───────────────────────────────────────────────────────

    def save_issue(self, issue: Issue) -> None:
        atomic_write(
            self.issue_dir(issue.id) / ISSUE_FILE, issue.model_dump_json(indent=2)
        )

    def load_issue(self, issue_id: str) -> Issue | None:
        path = self.issue_dir(issue_id) / ISSUE_FILE
        if not path.is_file():
            return None
        return Issue.model_validate_json(path.read_text(encoding="utf-8"))

    def list_issues(self) -> list[Issue]:
        issues: list[Issue] = []
        for path in sorted(self.root.glob(f"*/{ISSUE_FILE}")):
            try:
                issues.append(Issue.model_validate_json(path.read_text(encoding="utf-8")))
            except ValidationError as exc:
                logger.warning("Skipping unreadable issue file %s: %s", path, exc)
        return issues

    # ── Stage state ──────────────────────────────────────────────────

    def load_stage(self, issue_id: str) -> StageState | None:
        path = self.issue_dir(issue_id) / STAGE_FILE
        if not path.is_file():
            return None
        return StageState.model_validate_json(path.read_text(encoding="utf-8"))

    def save_stage(self, issue_id: str, state: StageState) -> None:
        state.updated_at = utcnow_iso()
        atomic_write(
            self.issue_dir(issue_id) / STAGE_FILE, state.model_dump_json(indent=2)
        )

    # ── Tasks ────────────────────────────────────────────────────────

    def load_tasks(self, issue_id: str) -> TaskList:
        path = self.issue_dir(issue_id) / TASKS_FILE
        if not path.is_file():
            return TaskList()
        return TaskList.model_validate(json.loads(path.read_text(encoding="utf-8")))

    def save_tasks(self, issue_id: str, tasks: TaskList) -> None:
        atomic_write(
            self.issue_dir(issue_id) / TASKS_FILE, tasks.model_dump_json(indent=2)
        )

    # ── Progress log ─────────────────────────────────────────────────

    def append_progress(
        self, issue_id: str, stage: str, message: str, session: int
    ) -> ProgressEntry:
        entry = ProgressEntry(
            timestamp=utcnow_iso(), session=session, stage=stage, message=message
        )
        path = self.issue_dir(issue_id) / PROGRESS_FILE
        with self._progress_lock:
            existing = (
                path.read_text(encoding="utf-8")
                if path.is_file()
                else f"# Progress: {issue_id}\n\n"
            )
            atomic_write(path, existing + _format_entry(entry))
        return entry

    def read_progress(self, issue_id: str) -> list[ProgressEntry]:
        path = self.issue_dir(issue_id) / PROGRESS_FILE
        if not path.is_file():
            return []
        return _parse_entries(path.read_text(encoding="utf-8"))

    # ── Cancellation ─────────────────────────────────────────────────

    def request_cancel(self, issue_id: str, reason: str = "") -> None:
        atomic_write(self.issue_dir(issue_id) / CANCEL_FILE, reason or "cancelled")

    def is_cancelled(self, issue_id: str) -> bool:
        return (self.issue_dir(issue_id) / CANCEL_FILE).is_file()

    def clear_cancel(self, issue_id: str) -> None:
        (self.issue_dir(issue_id) / CANCEL_FILE).unlink(missing_ok=True)
