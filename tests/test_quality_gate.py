from __future__ import annotations

from pathlib import Path

import pytest

from issueflow.models import Issue, Stage, TaskItem, TaskList, Workspace
from issueflow.quality_gate import (
    CheckResult,
    GateVerdict,
    QualityGate,
    VerificationReport,
)
from issueflow.workers import StageContext

from fakes import ScriptedVerifier


def _context(tmp_path: Path, attempt: int = 0, tasks: TaskList | None = None) -> StageContext:
    return StageContext(
        stage=Stage.QA_GATE,
        workspace=Workspace(issue_id="QX-7", branch="issue/qx-7", path=tmp_path),
        session=2,
        attempt=attempt,
        tasks=tasks or TaskList(),
    )


class TestVerificationReport:
    def test_failure_detail_uses_last_output_line(self) -> None:
        report = VerificationReport(
            checks=[
                CheckResult("lint", True),
                CheckResult("test", False, "running...\n3 failed, 12 passed\n"),
                CheckResult("typecheck", False, ""),
            ]
        )
        assert not report.passed
        assert report.failure_detail() == "test: 3 failed, 12 passed; typecheck: failed"

    def test_no_checks_passes(self) -> None:
        assert VerificationReport().passed


class TestQualityGate:
    def test_pass(self, tmp_path: Path, issue: Issue) -> None:
        gate = QualityGate(ScriptedVerifier(failures=0))
        result = gate.run(issue, _context(tmp_path))
        assert result.verdict == GateVerdict.PASSED
        assert result.attempt_count == 0

    def test_failure_below_budget_retries(self, tmp_path: Path, issue: Issue) -> None:
        gate = QualityGate(ScriptedVerifier(failures=1))
        result = gate.run(issue, _context(tmp_path, attempt=2))
        assert result.verdict == GateVerdict.RETRY
        assert result.attempt_count == 3
        assert "3 failed" in result.detail

    def test_failure_reaching_budget_exhausts(self, tmp_path: Path, issue: Issue) -> None:
        gate = QualityGate(ScriptedVerifier(failures=1), max_attempts=5)
        result = gate.run(issue, _context(tmp_path, attempt=4))
        assert result.verdict == GateVerdict.EXHAUSTED
        assert result.attempt_count == 5

    def test_spent_budget_skips_verifier(self, tmp_path: Path, issue: Issue) -> None:
        verifier = ScriptedVerifier(failures=0)
        gate = QualityGate(verifier, max_attempts=5)
        result = gate.run(issue, _context(tmp_path, attempt=5))
        assert result.verdict == GateVerdict.EXHAUSTED
        assert verifier.calls == 0

    def test_per_call_budget_override(self, tmp_path: Path, issue: Issue) -> None:
        gate = QualityGate(ScriptedVerifier(failures=1), max_attempts=5)
        result = gate.run(issue, _context(tmp_path), max_attempts=1)
        assert result.verdict == GateVerdict.EXHAUSTED

    def test_unverified_tasks_fail_the_gate(self, tmp_path: Path, issue: Issue) -> None:
        tasks = TaskList(
            tasks=[
                TaskItem(id="t1", description="a"),
                TaskItem(id="t2", description="b"),
            ]
        )
        tasks.record_verification("t1", True, session=2)
        tasks.record_verification("t2", True, session=1)
        gate = QualityGate(ScriptedVerifier(failures=0))
        result = gate.run(issue, _context(tmp_path, tasks=tasks))
        assert result.verdict == GateVerdict.RETRY
        assert result.detail == "tasks not passing: t2"

    @pytest.mark.parametrize("start", [0, 1, 2, 3, 4])
    def test_attempts_never_decrease(self, tmp_path: Path, issue: Issue, start: int) -> None:
        gate = QualityGate(ScriptedVerifier(failures=10))
        result = gate.run(issue, _context(tmp_path, attempt=start))
        assert result.attempt_count == start + 1
