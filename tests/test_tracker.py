from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest

from issueflow.errors import CollaboratorError
from issueflow.tracker import GitHubIssueTracker

ISSUE_JSON = {
    "number": 7,
    "title": "Fix login form",
    "body": None,
    "labels": [{"name": "auto-process"}, {"name": "stage:refining"}],
}


def _ok(payload: object) -> MagicMock:
    return MagicMock(returncode=0, stdout=json.dumps(payload), stderr="")


class TestGitHubIssueTracker:
    def test_read_issue(self) -> None:
        tracker = GitHubIssueTracker("acme/app")
        with patch("issueflow.tracker.subprocess.run", return_value=_ok(ISSUE_JSON)):
            issue = tracker.read_issue("7")
        assert issue.id == "7"
        assert issue.description == ""
        assert issue.labels == ["auto-process", "stage:refining"]
        assert issue.repo == "acme/app"

    def test_list_ready_issues_filters_by_label(self) -> None:
        tracker = GitHubIssueTracker()
        with patch(
            "issueflow.tracker.subprocess.run", return_value=_ok([ISSUE_JSON])
        ) as mock_run:
            issues = tracker.list_ready_issues("auto-process")
        assert [i.id for i in issues] == ["7"]
        cmd = mock_run.call_args.args[0]
        assert cmd[cmd.index("--label") + 1] == "auto-process"

    def test_transition_replaces_previous_stage_label(self) -> None:
        tracker = GitHubIssueTracker()
        with patch(
            "issueflow.tracker.subprocess.run",
            side_effect=[_ok(ISSUE_JSON), _ok({})],
        ) as mock_run:
            tracker.transition_state("7", "architecting")
        edit = mock_run.call_args_list[1].args[0]
        assert edit[:4] == ["gh", "issue", "edit", "7"]
        assert edit[edit.index("--add-label") + 1] == "stage:architecting"
        assert edit[edit.index("--remove-label") + 1] == "stage:refining"

    def test_post_comment(self) -> None:
        tracker = GitHubIssueTracker()
        with patch("issueflow.tracker.subprocess.run", return_value=_ok({})) as mock_run:
            tracker.post_comment("7", "PR #3 open, awaiting manual merge.")
        assert mock_run.call_args.args[0] == [
            "gh",
            "issue",
            "comment",
            "7",
            "--body",
            "PR #3 open, awaiting manual merge.",
        ]

    @pytest.mark.parametrize(
        "stdout",
        ["", "<html>502 Bad Gateway</html>", json.dumps([ISSUE_JSON]), json.dumps({"number": 7})],
    )
    def test_malformed_issue_output(self, stdout: str) -> None:
        tracker = GitHubIssueTracker()
        garbled = MagicMock(returncode=0, stdout=stdout, stderr="")
        with (
            patch("issueflow.tracker.subprocess.run", return_value=garbled),
            pytest.raises(CollaboratorError, match="unexpected gh output") as excinfo,
        ):
            tracker.read_issue("7")
        assert excinfo.value.operation == "read_issue"

    @pytest.mark.parametrize("payload", [{"items": []}, [{"title": "no number"}], ["7"]])
    def test_malformed_list_output(self, payload: object) -> None:
        tracker = GitHubIssueTracker()
        with (
            patch("issueflow.tracker.subprocess.run", return_value=_ok(payload)),
            pytest.raises(CollaboratorError) as excinfo,
        ):
            tracker.list_ready_issues("auto-process")
        assert excinfo.value.operation == "list_ready_issues"

    def test_transition_fails_cleanly_on_malformed_issue(self) -> None:
        tracker = GitHubIssueTracker()
        with (
            patch("issueflow.tracker.subprocess.run", return_value=_ok(None)) as mock_run,
            pytest.raises(CollaboratorError),
        ):
            tracker.transition_state("7", "testing")
        assert mock_run.call_count == 1
