"""Error taxonomy for the issue pipeline.

Collaborator adapters raise :class:`CollaboratorError` (or its
:class:`ResourceAbsentError` subclass when the thing they were asked to remove
is already gone). The orchestrator turns everything else into one of the
structured failures below; crash recovery is a startup mode, not an error.
"""

from __future__ import annotations


class IssueflowError(Exception):
    """Base class for all pipeline errors."""


class PreconditionError(IssueflowError):
    """A read-only precondition failed; nothing was mutated, nothing to clean."""


class ValidationFailure(IssueflowError):
    """The quality gate rejected the work."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


class WorkspaceConflict(IssueflowError):
    """The issue's branch exists but is owned by something else."""

    def __init__(self, branch: str, reason: str) -> None:
        self.branch = branch
        self.reason = reason
        super().__init__(f"Branch {branch} is not owned by this issue: {reason}")


class CollaboratorError(IssueflowError):
    """An external collaborator (git, gh, notifier) failed."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed: {detail}")


class ResourceAbsentError(CollaboratorError):
    """The resource an idempotent operation targets no longer exists."""


class MutationFailure(IssueflowError):
    """A terminal mutation step (commit, push, pr, merge) failed."""

    def __init__(self, step: str, cause: str) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"Mutation step '{step}' failed: {cause}")
