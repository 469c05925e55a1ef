from __future__ import annotations

import logging
import shlex
import subprocess

from issueflow.models import Issue
from issueflow.quality_gate import CheckResult, VerificationReport
from issueflow.workers import StageContext

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_LINES = 40


def _tail(text: str) -> str:
    return "\n".join(text.splitlines()[-_OUTPUT_TAIL_LINES:])


class CommandVerifier:
    """Run the configured check commands inside the issue's worktree.

    Checks with an empty command are skipped. Every check runs even after
    an earlier one fails so the report names all failures at once.
    """

    def __init__(self, checks: dict[str, str], timeout: float = 900) -> None:
        self.checks = checks
        self.timeout = timeout

    def __call__(self, issue: Issue, context: StageContext) -> VerificationReport:
        results: list[CheckResult] = []
        for name, command in self.checks.items():
            if not command.strip():
                continue
            results.append(self._run_check(name, command, context))
        return VerificationReport(checks=results)

    def _run_check(self, name: str, command: str, context: StageContext) -> CheckResult:
        logger.debug("Running %s check: %s", name, command)
        try:
            result = subprocess.run(
                shlex.split(command),
                cwd=str(context.workspace.path),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            return CheckResult(name, False, f"command not found: {command}")
        except subprocess.TimeoutExpired:
            return CheckResult(name, False, f"timed out after {self.timeout:.0f}s")
        output = _tail(result.stdout + result.stderr)
        return CheckResult(name, result.returncode == 0, output)
