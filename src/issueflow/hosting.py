from __future__ import annotations

import json
import logging
import re
import subprocess
from enum import StrEnum
from typing import Protocol

from issueflow.errors import CollaboratorError
from issueflow.models import PullRequestRef

logger = logging.getLogger(__name__)

_PR_URL_RE = re.compile(r"/pull/(\d+)")


class ReviewDecision(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CodeHostingService(Protocol):
    def create_pull_request(self, branch: str, title: str, body: str) -> PullRequestRef: ...

    def review_decision(self, pr: PullRequestRef) -> ReviewDecision: ...

    def merge(self, pr: PullRequestRef) -> None: ...


def _repo_args(repo: str | None) -> list[str]:
    return ["--repo", repo] if repo else []


def parse_review_decision(raw: str | None) -> ReviewDecision:
    """Map GitHub's ``reviewDecision`` field onto the pipeline's three states."""
    match (raw or "").upper():
        case "APPROVED":
            return ReviewDecision.APPROVED
        case "CHANGES_REQUESTED":
            return ReviewDecision.REJECTED
        case _:
            return ReviewDecision.PENDING


class GitHubCodeHosting:
    """``CodeHostingService`` backed by the gh CLI. repo format: 'owner/repo'."""

    def __init__(
        self, repo: str | None = None, base: str = "main", merge_method: str = "squash"
    ) -> None:
        self.repo = repo
        self.base = base
        self.merge_method = merge_method

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

    def create_pull_request(self, branch: str, title: str, body: str) -> PullRequestRef:
        out = self._gh(
            "create_pull_request",
            [
                "pr",
                "create",
                "--head",
                branch,
                "--base",
                self.base,
                "--title",
                title,
                "--body",
                body,
            ],
        )
        url = out.strip().splitlines()[-1] if out.strip() else ""
        match = _PR_URL_RE.search(url)
        if match is None:
            raise CollaboratorError("create_pull_request", f"unexpected gh output: {out!r}")
        pr = PullRequestRef(number=int(match.group(1)), url=url)
        logger.info("Opened PR %s for %s", pr, branch)
        return pr

    def review_decision(self, pr: PullRequestRef) -> ReviewDecision:
        out = self._gh(
            "review_decision",
            ["pr", "view", str(pr.number), "--json", "reviewDecision"],
        )
        try:
            raw = json.loads(out).get("reviewDecision")
        except (json.JSONDecodeError, AttributeError) as exc:
            raise CollaboratorError("review_decision", f"unexpected gh output: {out!r}") from exc
        if raw is not None and not isinstance(raw, str):
            raise CollaboratorError("review_decision", f"unexpected gh output: {out!r}")
        return parse_review_decision(raw)

    def merge(self, pr: PullRequestRef) -> None:
        self._gh("merge", ["pr", "merge", str(pr.number), f"--{self.merge_method}"])
        logger.info("Merged PR %s", pr)
