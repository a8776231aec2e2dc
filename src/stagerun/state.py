"""Task and session records and the functions that read and write them."""

from __future__ import annotations

import itertools
import logging
import os
import socket
import time
from datetime import UTC, datetime
from enum import StrEnum
from typing import TypedDict, cast

from stagerun.errors import (
    CorruptRecordError,
    RecordExistsError,
    SessionNotFoundError,
    TaskNotFoundError,
)
from stagerun.paths import validate_task_name
from stagerun.store import RECORD_VERSION, Store
from stagerun.workflows import Workflow

log = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    INCOMPLETE = "incomplete"
    FAILED = "failed"
    COMPLETED = "completed"
    ISSUES = "issues"


class SessionStatus(StrEnum):
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"


VALID_TASK_STATUSES = {s.value for s in TaskStatus}
VALID_SESSION_STATUSES = {s.value for s in SessionStatus}
RUNNABLE_TASK_STATUSES = {TaskStatus.PENDING, TaskStatus.INCOMPLETE, TaskStatus.ISSUES}


class TaskRecord(TypedDict):
    version: int
    name: str
    workflow_kind: str
    stage: str
    status: str
    held: bool
    created_at: str
    updated_at: str
    last_session: str | None
    last_error: str | None
    description: str | None
    queue_rank: int | None
    bounce_count: int


class SessionRecord(TypedDict):
    version: int
    session_id: str
    task_name: str
    workflow_kind: str
    stage: str
    status: str
    started_at: str
    finished_at: str | None
    next_stage: str | None
    pid: int
    host: str
    error: str | None


def utcnow() -> str:
    """ISO 8601 UTC timestamp with microseconds; sorts lexically."""
    return datetime.now(UTC).strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    try:
        return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def current_host() -> str:
    return socket.gethostname()


def parse_task_status(value: str) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        raise ValueError(
            f"Invalid task status '{value}'. Must be one of: {sorted(VALID_TASK_STATUSES)}"
        ) from None


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def new_task_record(
    name: str,
    workflow: Workflow,
    *,
    held: bool = False,
    description: str | None = None,
) -> TaskRecord:
    now = utcnow()
    return TaskRecord(
        version=RECORD_VERSION,
        name=validate_task_name(name),
        workflow_kind=workflow.kind,
        stage=workflow.initial_stage,
        status=TaskStatus.PENDING.value,
        held=held,
        created_at=now,
        updated_at=now,
        last_session=None,
        last_error=None,
        description=description,
        queue_rank=None,
        bounce_count=0,
    )


def _normalize_task(record: dict) -> TaskRecord:
    record.setdefault("last_session", None)
    record.setdefault("last_error", None)
    record.setdefault("description", None)
    record.setdefault("queue_rank", None)
    record.setdefault("bounce_count", 0)
    return cast(TaskRecord, record)


def create_task(
    store: Store,
    name: str,
    workflow: Workflow,
    *,
    held: bool = False,
    description: str | None = None,
) -> TaskRecord:
    """Create a task at the workflow's initial stage; ``RecordExistsError`` if present."""
    record = new_task_record(name, workflow, held=held, description=description)
    store.create_new("task", name, dict(record))
    log.info("Created task %s at stage %s", name, record["stage"])
    return record


def adopt_task(store: Store, name: str, workflow: Workflow) -> TaskRecord:
    """Return the task record, creating it as ``pending`` if the directory has none."""
    try:
        return create_task(store, name, workflow)
    except RecordExistsError:
        return require_task(store, name)


def get_task(store: Store, name: str) -> TaskRecord | None:
    record = store.read("task", name)
    if record is None:
        return None
    return _normalize_task(record)


def require_task(store: Store, name: str) -> TaskRecord:
    task = get_task(store, name)
    if task is None:
        raise TaskNotFoundError(name, hint=f"Run 'stagerun task {name}' to add it first.")
    return task


def save_task(store: Store, task: TaskRecord) -> TaskRecord:
    """Write *task*, keeping ``updated_at`` non-decreasing."""
    now = utcnow()
    task["updated_at"] = max(now, task["updated_at"])
    store.write("task", task["name"], dict(task))
    return task


def list_tasks(store: Store, *, skip_corrupt: bool = False) -> list[TaskRecord]:
    """Every task record. With *skip_corrupt*, unreadable ones are logged and left out."""
    tasks: list[TaskRecord] = []
    for name in store.keys("task"):
        try:
            task = get_task(store, name)
        except CorruptRecordError as exc:
            if not skip_corrupt:
                raise
            log.warning("Skipping corrupt task record: %s", exc)
            continue
        if task is not None:
            tasks.append(task)
    return tasks


def delete_task(store: Store, name: str) -> bool:
    removed = store.remove_task_dir(name)
    if removed:
        log.info("Removed task %s", name)
    return removed


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

_SESSION_SEQ = itertools.count(1)


def new_session_id() -> str:
    """``<epoch seconds>-<pid>-<seq>``; unique within a host for a process lifetime."""
    return f"{int(time.time())}-{os.getpid()}-{next(_SESSION_SEQ)}"


def new_session_record(task_name: str, workflow: Workflow, stage: str) -> SessionRecord:
    return SessionRecord(
        version=RECORD_VERSION,
        session_id=new_session_id(),
        task_name=task_name,
        workflow_kind=workflow.kind,
        stage=stage,
        status=SessionStatus.RUNNING.value,
        started_at=utcnow(),
        finished_at=None,
        next_stage=None,
        pid=os.getpid(),
        host=current_host(),
        error=None,
    )


def _normalize_session(record: dict) -> SessionRecord:
    record.setdefault("finished_at", None)
    record.setdefault("next_stage", None)
    record.setdefault("error", None)
    return cast(SessionRecord, record)


def get_session(store: Store, session_id: str) -> SessionRecord | None:
    record = store.read("session", session_id)
    if record is None:
        return None
    return _normalize_session(record)


def require_session(store: Store, session_id: str) -> SessionRecord:
    session = get_session(store, session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    return session


def save_session(store: Store, session: SessionRecord) -> SessionRecord:
    store.write("session", session["session_id"], dict(session))
    return session


def list_sessions(
    store: Store,
    *,
    task_name: str | None = None,
    status: str | None = None,
    skip_corrupt: bool = False,
) -> list[SessionRecord]:
    """Sessions sorted oldest first, optionally filtered."""
    sessions: list[SessionRecord] = []
    for key in store.keys("session"):
        try:
            session = get_session(store, key)
        except CorruptRecordError as exc:
            if not skip_corrupt:
                raise
            log.warning("Skipping corrupt session record: %s", exc)
            continue
        if session is None:
            continue
        if task_name is not None and session["task_name"] != task_name:
            continue
        if status is not None and session["status"] != status:
            continue
        sessions.append(session)
    sessions.sort(key=lambda s: (s["started_at"], s["session_id"]))
    return sessions


def task_history(store: Store, name: str) -> str:
    """Compact stage history, e.g. ``spec->planning->build(3x)``."""
    runs: list[tuple[str, int]] = []
    for session in list_sessions(store, task_name=name):
        stage = session["stage"]
        if runs and runs[-1][0] == stage:
            runs[-1] = (stage, runs[-1][1] + 1)
        else:
            runs.append((stage, 1))
    return "->".join(stage if count == 1 else f"{stage}({count}x)" for stage, count in runs)
