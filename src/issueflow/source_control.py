from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol

from issueflow.errors import CollaboratorError, ResourceAbsentError

logger = logging.getLogger(__name__)

_SUBPROCESS_TIMEOUT = 120

# per-worktree agent scratch directory, never committed
ISSUE_DIR = ".issue"

# stderr fragments git prints when the target of a delete is already gone
_ABSENT_MARKERS = (
    "is not a working tree",
    "not a valid path",
    "no such file or directory",
    "' not found",
    "remote ref does not exist",
)


class SourceControl(Protocol):
    def create_worktree(self, branch: str, path: Path) -> Path: ...

    def remove_worktree(self, path: Path) -> None: ...

    def prune_worktrees(self) -> None: ...

    def delete_local_branch(self, name: str) -> None: ...

    def delete_remote_branch(self, name: str) -> None: ...

    def commit(self, path: Path, message: str) -> str | None: ...

    def push(self, path: Path, branch: str) -> None: ...

    def current_branch(self, path: Path) -> str: ...

    def is_clean(self, path: Path | None = None) -> bool: ...

    def checkout(self, branch: str) -> None: ...

    def pull(self, prune: bool = True) -> None: ...

    def prune_remote_refs(self) -> None: ...

    def branch_exists(self, name: str) -> bool: ...

    def worktree_for_branch(self, branch: str) -> Path | None: ...


def _is_absent(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _ABSENT_MARKERS)


class GitSourceControl:
    """``SourceControl`` backed by the git CLI.

    ``repo_root`` is the shared base checkout; worktrees live wherever
    ``create_worktree`` is told to put them.
    """

    def __init__(self, repo_root: Path, trunk: str = "main", remote: str = "origin") -> None:
        self.repo_root = repo_root
        self.trunk = trunk
        self.remote = remote

    def _run(
        self, args: list[str], cwd: Path | None = None, **kwargs: object
    ) -> subprocess.CompletedProcess[str]:
        kwargs.setdefault("timeout", _SUBPROCESS_TIMEOUT)
        return subprocess.run(
            ["git", *args],
            cwd=str(cwd or self.repo_root),
            capture_output=True,
            text=True,
            **kwargs,
        )

    def _git(self, operation: str, args: list[str], cwd: Path | None = None) -> str:
        try:
            result = self._run(args, cwd=cwd)
        except (subprocess.TimeoutExpired, FileNotFoundError) as exc:
            raise CollaboratorError(operation, str(exc)) from exc
        if result.returncode != 0:
            raise CollaboratorError(operation, result.stderr.strip() or result.stdout.strip())
        return result.stdout

    def _git_idempotent(self, operation: str, args: list[str]) -> None:
        try:
            result = self._run(args)
        except (subprocess.TimeoutExpired, FileNotFoundError) as exc:
            raise CollaboratorError(operation, str(exc)) from exc
        if result.returncode == 0:
            return
        stderr = result.stderr.strip()
        if _is_absent(stderr):
            raise ResourceAbsentError(operation, stderr)
        raise CollaboratorError(operation, stderr)

    # ── Worktrees ────────────────────────────────────────────────────

    def create_worktree(self, branch: str, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._git(
            "create_worktree",
            ["worktree", "add", str(path), "-b", branch, self.trunk],
        )
        logger.info("Created worktree %s on %s", path, branch)
        return path

    def remove_worktree(self, path: Path) -> None:
        if not path.exists() and self.worktree_at(path) is None:
            raise ResourceAbsentError("remove_worktree", f"{path} does not exist")
        self._git_idempotent("remove_worktree", ["worktree", "remove", "--force", str(path)])

    def prune_worktrees(self) -> None:
        self._git("prune_worktrees", ["worktree", "prune"])

    def _worktrees(self) -> list[tuple[Path, str | None]]:
        out = self._git("list_worktrees", ["worktree", "list", "--porcelain"])
        entries: list[tuple[Path, str | None]] = []
        path: Path | None = None
        branch: str | None = None
        for line in [*out.splitlines(), ""]:
            if line.startswith("worktree "):
                path = Path(line.removeprefix("worktree "))
                branch = None
            elif line.startswith("branch "):
                branch = line.removeprefix("branch ").removeprefix("refs/heads/")
            elif not line and path is not None:
                entries.append((path, branch))
                path = None
        return entries

    def worktree_for_branch(self, branch: str) -> Path | None:
        for path, wt_branch in self._worktrees():
            if wt_branch == branch:
                return path
        return None

    def worktree_at(self, path: Path) -> str | None:
        target = path.resolve()
        for wt_path, branch in self._worktrees():
            if wt_path.resolve() == target:
                return branch
        return None

    # ── Branches ─────────────────────────────────────────────────────

    def branch_exists(self, name: str) -> bool:
        result = self._run(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"])
        return result.returncode == 0

    def delete_local_branch(self, name: str) -> None:
        self._git_idempotent("delete_local_branch", ["branch", "-D", name])

    def delete_remote_branch(self, name: str) -> None:
        self._git_idempotent(
            "delete_remote_branch", ["push", self.remote, "--delete", name]
        )

    def current_branch(self, path: Path) -> str:
        return self._git(
            "current_branch", ["rev-parse", "--abbrev-ref", "HEAD"], cwd=path
        ).strip()

    def checkout(self, branch: str) -> None:
        self._git("checkout", ["checkout", branch])

    def pull(self, prune: bool = True) -> None:
        args = ["pull", "--prune"] if prune else ["pull"]
        self._git("pull", args)

    def prune_remote_refs(self) -> None:
        self._git("prune_remote_refs", ["remote", "prune", self.remote])

    # ── Changes ──────────────────────────────────────────────────────

    def is_clean(self, path: Path | None = None) -> bool:
        """True when tracked files have no uncommitted changes; untracked files are ignored."""
        out = self._git("status", ["status", "--porcelain", "--untracked-files=no"], cwd=path)
        return not out.strip()

    def commit(self, path: Path, message: str) -> str | None:
        """Stage everything and commit. Returns the new sha, None if nothing changed."""
        self._git("commit", ["add", "-A", "--", ".", f":(exclude){ISSUE_DIR}"], cwd=path)
        staged = self._run(["diff", "--cached", "--quiet"], cwd=path)
        if staged.returncode == 0:
            logger.info("Nothing to commit in %s", path)
            return None
        self._git("commit", ["commit", "-m", message], cwd=path)
        return self._git("commit", ["rev-parse", "HEAD"], cwd=path).strip()

    def push(self, path: Path, branch: str) -> None:
        self._git("push", ["push", "-u", self.remote, branch], cwd=path)
        logger.info("Pushed %s", branch)
