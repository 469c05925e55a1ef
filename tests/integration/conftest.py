from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from issueflow.source_control import GitSourceControl
from issueflow.workspace import WorkspaceManager


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=str(cwd), capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def _configure_identity(repo: Path) -> None:
    git(repo, "config", "user.name", "issueflow tests")
    git(repo, "config", "user.email", "issueflow@example.com")
    git(repo, "config", "commit.gpgsign", "false")


@pytest.fixture()
def origin(tmp_path: Path) -> Path:
    """Bare remote seeded with one commit on main."""
    seed = tmp_path / "seed"
    seed.mkdir()
    git(seed, "init", "-b", "main")
    _configure_identity(seed)
    (seed / "README.md").write_text("# app\n")
    git(seed, "add", "README.md")
    git(seed, "commit", "-m", "initial commit")

    bare = tmp_path / "origin.git"
    git(tmp_path, "clone", "--bare", str(seed), str(bare))
    return bare


@pytest.fixture()
def project_root(tmp_path: Path, origin: Path) -> Path:
    """Base checkout cloned from ``origin``, on main."""
    root = tmp_path / "project"
    git(tmp_path, "clone", str(origin), str(root))
    _configure_identity(root)
    return root


@pytest.fixture()
def git_sc(project_root: Path) -> GitSourceControl:
    return GitSourceControl(project_root)


@pytest.fixture()
def git_workspaces(tmp_path: Path, git_sc: GitSourceControl) -> WorkspaceManager:
    return WorkspaceManager(git_sc, tmp_path / "worktrees")


def remote_branches(origin: Path) -> list[str]:
    out = git(origin, "for-each-ref", "--format=%(refname:short)", "refs/heads/")
    return out.splitlines()
