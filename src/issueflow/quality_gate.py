"""Bounded-retry quality gate in front of the terminal mutation phase."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

from issueflow.models import Issue
from issueflow.workers import StageContext

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    output: str = ""


@dataclass
class VerificationReport:
    """Result of one composite verification run (type-check, lint, tests, coverage)."""

    checks: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    def failure_detail(self) -> str:
        failed = [c for c in self.checks if not c.passed]
        return "; ".join(
            f"{c.name}: {c.output.strip().splitlines()[-1] if c.output.strip() else 'failed'}"
            for c in failed
        )


Verifier = Callable[[Issue, StageContext], VerificationReport]


class GateVerdict(StrEnum):
    PASSED = "passed"
    RETRY = "retry"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class GateResult:
    verdict: GateVerdict
    attempt_count: int
    detail: str | None = None

    @classmethod
    def passed(cls, attempt_count: int) -> GateResult:
        return cls(GateVerdict.PASSED, attempt_count)

    @classmethod
    def retry(cls, attempt_count: int, detail: str) -> GateResult:
        return cls(GateVerdict.RETRY, attempt_count, detail)

    @classmethod
    def exhausted(cls, attempt_count: int, detail: str) -> GateResult:
        return cls(GateVerdict.EXHAUSTED, attempt_count, detail)


class QualityGate:
    """Run the verifier and decide pass, retry or escalate.

    ``context.attempt`` is the persisted attempt count for the whole QAGate
    stage; the returned result carries the new count for the orchestrator to
    persist. Once the budget is spent the verifier is not invoked again.
    """

    def __init__(self, verifier: Verifier, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self.verifier = verifier
        self.max_attempts = max_attempts

    def run(
        self, issue: Issue, context: StageContext, max_attempts: int | None = None
    ) -> GateResult:
        budget = max_attempts if max_attempts is not None else self.max_attempts
        attempts = context.attempt
        if attempts >= budget:
            return GateResult.exhausted(
                attempts, context.last_error or f"retry budget of {budget} already spent"
            )

        report = self.verifier(issue, context)
        failing_tasks = context.tasks.failing(context.session)
        if report.passed and not failing_tasks:
            logger.info("Quality gate passed for %s on attempt %d", issue.id, attempts + 1)
            return GateResult.passed(attempts)

        problems = []
        if not report.passed:
            problems.append(report.failure_detail())
        if failing_tasks:
            problems.append(
                "tasks not passing: " + ", ".join(t.id for t in failing_tasks)
            )
        detail = "; ".join(problems)
        attempts += 1
        logger.warning(
            "Quality gate failed for %s (attempt %d/%d): %s",
            issue.id,
            attempts,
            budget,
            detail,
        )
        if attempts < budget:
            return GateResult.retry(attempts, detail)
        return GateResult.exhausted(attempts, detail)
