"""Fixtures shared by the unit tests."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from issueflow.models import Issue
from issueflow.mutation import TerminalMutationPhase
from issueflow.orchestrator import PipelineServices
from issueflow.quality_gate import QualityGate
from issueflow.stages import StageRegistry
from issueflow.state_store import SessionStateStore
from issueflow.workspace import WorkspaceManager

from fakes import (
    FakeHosting,
    FakeNotifier,
    FakeSourceControl,
    FakeTracker,
    ScriptedVerifier,
    ScriptedWorker,
)


@pytest.fixture()
def issue() -> Issue:
    return Issue(
        id="QX-7",
        title="Fix login form validation",
        description="Email field accepts invalid input.",
        labels=["bug", "auto-process"],
    )


@pytest.fixture()
def ui_issue() -> Issue:
    return Issue(id="QX-8", title="Redesign settings page", labels=["frontend"])


@pytest.fixture()
def source_control() -> FakeSourceControl:
    return FakeSourceControl()


@pytest.fixture()
def hosting() -> FakeHosting:
    return FakeHosting()


@pytest.fixture()
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def store(tmp_path: Path) -> SessionStateStore:
    return SessionStateStore(tmp_path / "state")


@pytest.fixture()
def workspaces(tmp_path: Path, source_control: FakeSourceControl) -> WorkspaceManager:
    return WorkspaceManager(source_control, tmp_path / "worktrees")


@pytest.fixture()
def worker() -> ScriptedWorker:
    return ScriptedWorker()


@pytest.fixture()
def verifier() -> ScriptedVerifier:
    return ScriptedVerifier()


@pytest.fixture()
def make_services(
    store: SessionStateStore,
    workspaces: WorkspaceManager,
    source_control: FakeSourceControl,
    hosting: FakeHosting,
    tracker: FakeTracker,
    notifier: FakeNotifier,
    worker: ScriptedWorker,
    verifier: ScriptedVerifier,
) -> Callable[..., PipelineServices]:
    def _make(
        max_attempts: int = 5,
        max_stage_attempts: int = 3,
        require_approval: bool = False,
    ) -> PipelineServices:
        registry = StageRegistry.default(["ui", "frontend", "design", "ux"])
        return PipelineServices(
            store=store,
            workspaces=workspaces,
            registry=registry,
            workers={key: worker for key in registry.worker_keys()},
            gate=QualityGate(verifier, max_attempts=max_attempts),
            mutation=TerminalMutationPhase(
                source_control, hosting, workspaces, require_approval=require_approval
            ),
            tracker=tracker,
            notifier=notifier,
            max_stage_attempts=max_stage_attempts,
        )

    return _make
