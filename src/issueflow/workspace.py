"""Per-issue git worktrees and their compensating cleanup.

Every issue gets exactly one worktree on its own branch. ``release`` tears it
down according to how far the terminal mutations got: it never deletes a
remote branch that still backs an open PR, and every sub-step tolerates the
resource already being gone so a release can be repeated after a crash.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Callable
from pathlib import Path

from issueflow.errors import CollaboratorError, ResourceAbsentError, WorkspaceConflict
from issueflow.models import (
    CleanupReport,
    CleanupStep,
    CleanupStepStatus,
    Issue,
    MutationProgress,
    Workspace,
    WorkspaceStatus,
)
from issueflow.source_control import ISSUE_DIR, SourceControl

logger = logging.getLogger(__name__)

OWNER_FILE = "owner.json"
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str, limit: int) -> str:
    slug = _SLUG_RE.sub("-", text.lower()).strip("-")
    return slug[:limit].rstrip("-")


def branch_name(issue: Issue, prefix: str = "issue") -> str:
    """``issue/<id>-<title slug>``, e.g. ``issue/qx-7-fix-login-form``."""
    return f"{prefix}/{slugify(issue.id, 40)}-{slugify(issue.title, 40)}"


def worktree_name(issue: Issue) -> str:
    return f"{slugify(issue.id, 40)}-{slugify(issue.title, 30)}"


def read_owner(worktree: Path) -> str | None:
    path = worktree / ISSUE_DIR / OWNER_FILE
    if not path.is_file():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8")).get("issue_id")
    except (json.JSONDecodeError, AttributeError):
        return None


def _write_owner(worktree: Path, issue: Issue, branch: str) -> None:
    marker_dir = worktree / ISSUE_DIR
    marker_dir.mkdir(parents=True, exist_ok=True)
    (marker_dir / OWNER_FILE).write_text(
        json.dumps({"issue_id": issue.id, "branch": branch}, indent=2),
        encoding="utf-8",
    )


class WorkspaceManager:
    def __init__(
        self,
        source_control: SourceControl,
        worktree_root: Path,
        trunk: str = "main",
        branch_prefix: str = "issue",
    ) -> None:
        self.source_control = source_control
        self.worktree_root = worktree_root
        self.trunk = trunk
        self.branch_prefix = branch_prefix
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # the base checkout is shared by every issue; one cleanup at a time
        self._trunk_lock = threading.Lock()

    def _issue_lock(self, issue_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(issue_id, threading.Lock())

    def describe(self, issue: Issue) -> Workspace:
        """The workspace this issue would own, without touching git."""
        path = self.worktree_root / worktree_name(issue)
        return Workspace(
            issue_id=issue.id,
            branch=branch_name(issue, self.branch_prefix),
            path=path,
            status=WorkspaceStatus.ACTIVE if path.exists() else WorkspaceStatus.CLEANED,
        )

    def acquire(self, issue: Issue) -> Workspace:
        """Create the issue's worktree, or return it if it already exists.

        Raises WorkspaceConflict when the branch is held by anything other
        than this issue.
        """
        workspace = self.describe(issue)
        branch = workspace.branch
        with self._issue_lock(issue.id):
            existing = self.source_control.worktree_for_branch(branch)
            if existing is not None:
                owner = read_owner(existing)
                own_path = existing.resolve() == workspace.path.resolve()
                if owner == issue.id or (owner is None and own_path):
                    if owner is None:
                        _write_owner(existing, issue, branch)
                    logger.info("Resuming workspace %s for %s", existing, issue.id)
                    return workspace.model_copy(
                        update={"path": existing, "status": WorkspaceStatus.ACTIVE}
                    )
                raise WorkspaceConflict(
                    branch, f"checked out at {existing} by {owner or 'an unknown owner'}"
                )

            if self.source_control.branch_exists(branch):
                raise WorkspaceConflict(branch, "branch exists without a worktree for this issue")
            if workspace.path.exists():
                raise WorkspaceConflict(branch, f"{workspace.path} is already occupied")

            path = self.source_control.create_worktree(branch, workspace.path)
            _write_owner(path, issue, branch)
            logger.info("Created workspace %s for %s", path, issue.id)
            return workspace.model_copy(
                update={"path": path, "status": WorkspaceStatus.CREATED}
            )

    def release(self, workspace: Workspace, progress: MutationProgress) -> CleanupReport:
        """Tear down the workspace, keeping remote state consistent with *progress*.

        Safe to call repeatedly. Failures are recorded per step in the
        returned report; nothing but a programming error escapes.
        """
        open_pr = progress.pr_created and not progress.merged
        report = CleanupReport(
            branch=workspace.branch, pr=progress.pr if open_pr else None
        )
        sc = self.source_control
        delete_remote = progress.merged or (progress.pushed and not progress.pr_created)

        with self._trunk_lock:
            if delete_remote:
                self._step(
                    report,
                    "delete_remote_branch",
                    lambda: sc.delete_remote_branch(workspace.branch),
                )
            else:
                report.steps.append(
                    CleanupStep(name="delete_remote_branch", status=CleanupStepStatus.SKIPPED)
                )
            self._step(report, "checkout_trunk", lambda: sc.checkout(self.trunk))
            self._step(report, "pull", lambda: sc.pull(prune=True))
            self._step(report, "remove_worktree", lambda: sc.remove_worktree(workspace.path))
            self._step(report, "prune_worktrees", sc.prune_worktrees)
            self._step(
                report, "delete_local_branch", lambda: sc.delete_local_branch(workspace.branch)
            )
            self._step(report, "prune_remote_refs", sc.prune_remote_refs)
            self._step(report, "verify_trunk_clean", self._verify_trunk_clean)

        local_failed = {
            s.name for s in report.failures
        } & {"remove_worktree", "delete_local_branch"}
        if not local_failed:
            workspace.status = WorkspaceStatus.CLEANED
        if report.ok:
            logger.info("Released workspace %s", workspace.branch)
        else:
            logger.warning(
                "Released workspace %s with failures: %s",
                workspace.branch,
                ", ".join(f"{s.name} ({s.error})" for s in report.failures),
            )
        return report

    def _verify_trunk_clean(self) -> None:
        if not self.source_control.is_clean():
            raise CollaboratorError("verify_trunk_clean", "trunk checkout has uncommitted changes")

    @staticmethod
    def _step(report: CleanupReport, name: str, action: Callable[[], object]) -> None:
        try:
            action()
        except ResourceAbsentError as exc:
            logger.debug("Cleanup step %s: already absent (%s)", name, exc.detail)
            report.steps.append(CleanupStep(name=name, status=CleanupStepStatus.ABSENT))
            return
        except CollaboratorError as exc:
            report.steps.append(
                CleanupStep(name=name, status=CleanupStepStatus.FAILED, error=exc.detail)
            )
            return
        report.steps.append(CleanupStep(name=name, status=CleanupStepStatus.DONE))
