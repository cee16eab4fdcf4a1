from __future__ import annotations


class FoundryError(RuntimeError):
    """Base class for orchestration failures surfaced to callers."""


class NotFoundError(FoundryError):
    """Raised when a repo, branch, task, session or gate does not exist."""


class PreconditionFailed(FoundryError):
    """Raised when an operation is not allowed in the current state."""


class AlreadyExistsError(PreconditionFailed):
    pass


class InvalidTransitionError(PreconditionFailed):
    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"{entity} cannot move from '{current}' to '{target}'")
        self.entity = entity
        self.current = current
        self.target = target


class BlockedTaskError(PreconditionFailed):
    def __init__(self, task_ref: str, blockers: list[str]) -> None:
        super().__init__(f"task {task_ref} is blocked by: {', '.join(blockers)}")
        self.task_ref = task_ref
        self.blockers = blockers


class GateCheckError(PreconditionFailed):
    """Raised by merge when a configured gate is missing, failing or stale."""

    def __init__(self, message: str, *, gate_name: str, reason: str) -> None:
        super().__init__(message)
        self.gate_name = gate_name
        self.reason = reason


class ExternalToolError(FoundryError):
    """Raised when git, a subprocess or the state store could not do its job."""

    def __init__(
        self,
        message: str,
        *,
        tool: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.tool = tool
        self.exit_code = exit_code


class GitError(ExternalToolError):
    pass


class StateError(ExternalToolError):
    pass
