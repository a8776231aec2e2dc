"""Typed failures raised by the state model.

Each error carries a stable ``kind`` string and process ``exit_code`` so
the CLI (and scripts wrapping it) can branch on the outcome without
parsing messages.
"""

from __future__ import annotations

from pathlib import Path


class StagerunError(Exception):
    """Base class for all expected failures."""

    kind = "error"
    exit_code = 1

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"ok": False, "error": str(self), "kind": self.kind}
        if self.context:
            payload["context"] = {k: str(v) for k, v in self.context.items()}
        return payload


class ClaimBusyError(StagerunError):
    """Another live worker owns the task."""

    kind = "busy-claim"
    exit_code = 3

    def __init__(self, task_name: str, *, owner: str | None = None) -> None:
        detail = f" (held by {owner})" if owner else ""
        super().__init__(f"Task '{task_name}' is already claimed{detail}.", task=task_name)
        self.task_name = task_name
        self.owner = owner


class AmbiguousSessionError(StagerunError):
    kind = "ambiguous-session"
    exit_code = 4


class InvalidTransitionError(StagerunError):
    kind = "invalid-transition"
    exit_code = 5


class NotFoundError(StagerunError):
    kind = "not-found"
    exit_code = 6


class TaskNotFoundError(NotFoundError):
    kind = "unknown-task"

    def __init__(self, task_name: str, hint: str | None = None) -> None:
        message = f"Task '{task_name}' not found."
        if hint:
            message = f"{message} {hint}"
        super().__init__(message, task=task_name)
        self.task_name = task_name


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}", session=session_id)
        self.session_id = session_id


class CorruptRecordError(StagerunError):
    """A record file exists but cannot be parsed or fails validation."""

    kind = "corrupt-record"
    exit_code = 7

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Corrupt record {path}: {reason}", path=path)
        self.path = path
        self.reason = reason


class RecordExistsError(StagerunError):
    kind = "record-exists"
    exit_code = 8

    def __init__(self, path: Path) -> None:
        super().__init__(f"Record already exists: {path}", path=path)
        self.path = path
