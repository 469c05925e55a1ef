from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from issueflow.models import Issue, Stage

STAGE_ORDER = [
    Stage.QUEUED,
    Stage.REFINING,
    Stage.ARCHITECTING,
    Stage.DESIGNING,
    Stage.IMPLEMENTING,
    Stage.TESTING,
    Stage.QA_GATE,
    Stage.IN_REVIEW,
    Stage.DONE,
]

# QAGate failures loop back here so code changes are re-validated end to end
RETRY_STAGE = Stage.IMPLEMENTING

# stages run by the orchestrator itself rather than by a worker
ORCHESTRATOR_STAGES = frozenset({Stage.QUEUED, Stage.IN_REVIEW, Stage.DONE})


@dataclass(frozen=True)
class StageSpec:
    stage: Stage
    worker_key: str | None
    skip: Callable[[Issue], bool] | None = None

    def skipped_for(self, issue: Issue) -> bool:
        return self.skip is not None and self.skip(issue)


def next_stage(current: Stage) -> Stage | None:
    """Return the stage after current in the fixed order, or None if last."""
    idx = STAGE_ORDER.index(current)
    if idx + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[idx + 1]


class StageRegistry:
    """Ordered stage table: worker capability and skip predicate per stage."""

    def __init__(self, specs: list[StageSpec]) -> None:
        self._specs = {spec.stage: spec for spec in specs}
        missing = [s for s in STAGE_ORDER if s not in self._specs]
        if missing:
            msg = f"Stage registry is missing: {', '.join(missing)}"
            raise ValueError(msg)

    @classmethod
    def default(cls, ui_labels: list[str]) -> StageRegistry:
        def not_ui_work(issue: Issue) -> bool:
            return not issue.has_any_label(ui_labels)

        return cls(
            [
                StageSpec(Stage.QUEUED, None),
                StageSpec(Stage.REFINING, "refining"),
                StageSpec(Stage.ARCHITECTING, "architecting"),
                StageSpec(Stage.DESIGNING, "designing", skip=not_ui_work),
                StageSpec(Stage.IMPLEMENTING, "implementing"),
                StageSpec(Stage.TESTING, "testing"),
                StageSpec(Stage.QA_GATE, "verify"),
                StageSpec(Stage.IN_REVIEW, None),
                StageSpec(Stage.DONE, None),
            ]
        )

    def spec(self, stage: Stage) -> StageSpec:
        return self._specs[stage]

    def worker_keys(self) -> set[str]:
        return {s.worker_key for s in self._specs.values() if s.worker_key}

    def next_stage(self, current: Stage, issue: Issue) -> tuple[Stage | None, list[Stage]]:
        """Next applicable stage after current, plus the stages skipped to reach it."""
        skipped: list[Stage] = []
        candidate = next_stage(current)
        while candidate is not None and self._specs[candidate].skipped_for(issue):
            skipped.append(candidate)
            candidate = next_stage(candidate)
        return candidate, skipped
