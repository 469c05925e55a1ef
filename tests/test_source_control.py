from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from issueflow.errors import CollaboratorError, ResourceAbsentError
from issueflow.source_control import GitSourceControl


def _failed(stderr: str) -> MagicMock:
    return MagicMock(returncode=1, stdout="", stderr=stderr)


@pytest.fixture()
def git(tmp_path: Path) -> GitSourceControl:
    sc = GitSourceControl(tmp_path)
    sc._run = MagicMock(return_value=MagicMock(returncode=0, stdout="", stderr=""))
    return sc


class TestAlreadyAbsent:
    def test_missing_local_branch(self, git: GitSourceControl) -> None:
        git._run.return_value = _failed("error: branch 'issue/qx-7-fix' not found.\n")
        with pytest.raises(ResourceAbsentError):
            git.delete_local_branch("issue/qx-7-fix")

    def test_missing_remote_branch(self, git: GitSourceControl) -> None:
        git._run.return_value = _failed(
            "error: unable to delete 'issue/qx-7-fix': remote ref does not exist\n"
            "error: failed to push some refs to 'github.com:acme/app.git'\n"
        )
        with pytest.raises(ResourceAbsentError):
            git.delete_remote_branch("issue/qx-7-fix")

    def test_missing_worktree_path(self, git: GitSourceControl, tmp_path: Path) -> None:
        with pytest.raises(ResourceAbsentError):
            git.remove_worktree(tmp_path / "gone")


class TestRealFailures:
    def test_rejected_remote_delete_is_not_absent(self, git: GitSourceControl) -> None:
        git._run.return_value = _failed(
            "remote: error: GH006: Protected branch update failed.\n"
            "error: unable to delete 'issue/qx-7-fix': remote rejected\n"
        )
        with pytest.raises(CollaboratorError) as excinfo:
            git.delete_remote_branch("issue/qx-7-fix")
        assert not isinstance(excinfo.value, ResourceAbsentError)

    def test_missing_remote_is_not_absent(self, git: GitSourceControl) -> None:
        git._run.return_value = _failed(
            "fatal: 'upstream' does not appear to be a git repository\n"
            "fatal: Could not read from remote repository.\n"
        )
        with pytest.raises(CollaboratorError) as excinfo:
            git.delete_remote_branch("issue/qx-7-fix")
        assert not isinstance(excinfo.value, ResourceAbsentError)

    def test_unresolvable_ref_is_not_absent(self, git: GitSourceControl) -> None:
        git._run.return_value = _failed(
            "error: cannot lock ref 'refs/heads/issue/qx-7-fix': "
            "reference directory does not exist\n"
        )
        with pytest.raises(CollaboratorError) as excinfo:
            git.delete_local_branch("issue/qx-7-fix")
        assert not isinstance(excinfo.value, ResourceAbsentError)

    def test_checked_out_branch_is_not_absent(self, git: GitSourceControl) -> None:
        git._run.return_value = _failed(
            "error: Cannot delete branch 'issue/qx-7-fix' checked out at '/tmp/wt'\n"
        )
        with pytest.raises(CollaboratorError) as excinfo:
            git.delete_local_branch("issue/qx-7-fix")
        assert excinfo.value.operation == "delete_local_branch"
        assert not isinstance(excinfo.value, ResourceAbsentError)
