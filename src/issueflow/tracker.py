from __future__ import annotations

import json
import subprocess
from typing import Any, Protocol

from pydantic import ValidationError

from issueflow.errors import CollaboratorError
from issueflow.models import Issue

STAGE_LABEL_PREFIX = "stage:"


class IssueTracker(Protocol):
    def transition_state(self, issue_id: str, stage_name: str) -> None: ...

    def post_comment(self, issue_id: str, text: str) -> None: ...

    def list_ready_issues(self, label: str) -> list[Issue]: ...


def _repo_args(repo: str | None) -> list[str]:
    return ["--repo", repo] if repo else []


def _label_names(raw: list) -> list[str]:
    return [lbl["name"] if isinstance(lbl, dict) else lbl for lbl in raw]


class GitHubIssueTracker:
    """``IssueTracker`` backed by the gh CLI. repo format: 'owner/repo'.

    Stages are mirrored onto the issue as a single ``stage:<name>`` label.
    """

    def __init__(self, repo: str | None = None) -> None:
        self.repo = repo

    def _gh(self, operation: str, args: list[str]) -> str:
        try:
            result = subprocess.run(
                ["gh", *args, *_repo_args(self.repo)],
                capture_output=True,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError as exc:
            raise CollaboratorError(operation, (exc.stderr or "").strip()) from exc
        except FileNotFoundError as exc:
            raise CollaboratorError(operation, "gh CLI not found in PATH") from exc
        return result.stdout

    def _gh_json(self, operation: str, args: list[str]) -> Any:
        out = self._gh(operation, args)
        try:
            return json.loads(out)
        except json.JSONDecodeError as exc:
            raise CollaboratorError(operation, f"unexpected gh output: {out!r}") from exc

    def _to_issue(self, operation: str, data: Any) -> Issue:
        try:
            return Issue(
                id=str(data["number"]),
                title=data["title"],
                description=data.get("body") or "",
                labels=_label_names(data.get("labels") or []),
                repo=self.repo,
            )
        except (KeyError, TypeError, AttributeError, ValidationError) as exc:
            raise CollaboratorError(operation, f"unexpected gh output: {data!r}") from exc

    def read_issue(self, issue_id: str) -> Issue:
        data = self._gh_json(
            "read_issue",
            ["issue", "view", issue_id, "--json", "number,title,body,labels"],
        )
        return self._to_issue("read_issue", data)

    def list_ready_issues(self, label: str) -> list[Issue]:
        data = self._gh_json(
            "list_ready_issues",
            [
                "issue",
                "list",
                "--state",
                "open",
                "--label",
                label,
                "--limit",
                "50",
                "--json",
                "number,title,body,labels",
            ],
        )
        if not isinstance(data, list):
            raise CollaboratorError("list_ready_issues", f"unexpected gh output: {data!r}")
        return [self._to_issue("list_ready_issues", item) for item in data]

    def transition_state(self, issue_id: str, stage_name: str) -> None:
        current = self.read_issue(issue_id)
        wanted = f"{STAGE_LABEL_PREFIX}{stage_name}"
        args = ["issue", "edit", issue_id, "--add-label", wanted]
        for label in current.labels:
            if label.startswith(STAGE_LABEL_PREFIX) and label != wanted:
                args.extend(["--remove-label", label])
        self._gh("transition_state", args)

    def post_comment(self, issue_id: str, text: str) -> None:
        self._gh("post_comment", ["issue", "comment", issue_id, "--body", text])
