"""Session lifecycle: open a stage run, find the active one, close it abnormally."""

from __future__ import annotations

import logging
import re

from stagerun.claims import ClaimHandle, claimed, has_live_claim, pid_is_alive
from stagerun.errors import (
    AmbiguousSessionError,
    ClaimBusyError,
    InvalidTransitionError,
    RecordExistsError,
    SessionNotFoundError,
)
from stagerun.state import (
    SessionRecord,
    SessionStatus,
    TaskStatus,
    current_host,
    get_task,
    list_sessions,
    list_tasks,
    new_session_record,
    require_session,
    require_task,
    save_session,
    save_task,
    utcnow,
)
from stagerun.store import Store
from stagerun.workflows import TASK_SENTINEL, Workflow

log = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[0-9A-Za-z-]+$")
_CREATE_ATTEMPTS = 5


def open_session(
    store: Store,
    workflow: Workflow,
    claim: ClaimHandle,
    *,
    stage: str | None = None,
) -> SessionRecord:
    """Persist a running session for the claimed task and mark the task running."""
    task = require_task(store, claim.task_name)
    stage = stage or task["stage"]
    workflow.validate_stage(stage)
    if workflow.is_terminal(stage):
        raise InvalidTransitionError(
            f"Task '{task['name']}' is at the terminal stage; nothing to run.",
            task=task["name"],
            stage=stage,
        )

    for _ in range(_CREATE_ATTEMPTS):
        session = new_session_record(task["name"], workflow, stage)
        try:
            store.create_new("session", session["session_id"], dict(session))
        except RecordExistsError:
            continue
        break
    else:
        raise InvalidTransitionError(
            f"Could not allocate a unique session id for '{task['name']}'.", task=task["name"]
        )

    task["stage"] = stage
    task["status"] = TaskStatus.RUNNING.value
    task["last_session"] = session["session_id"]
    save_task(store, task)
    log.info("Opened session %s for %s at %s", session["session_id"], task["name"], stage)
    return session


def _lookup(store: Store, session_id: str) -> SessionRecord:
    if not _SESSION_ID_RE.match(session_id):
        raise SessionNotFoundError(session_id)
    return require_session(store, session_id)


def resolve_active(
    store: Store,
    explicit_id: str | None = None,
    env_fallback_id: str | None = None,
    stage_filter: str | None = None,
    *,
    task_filter: str | None = None,
) -> SessionRecord:
    """Pick the session a ``finish`` refers to.

    An explicit id wins, then the environment fallback id, then the one
    running session matching the filters. Anything else is ambiguous.
    """
    if explicit_id:
        return _lookup(store, explicit_id)
    if env_fallback_id:
        return _lookup(store, env_fallback_id)

    candidates = list_sessions(
        store, task_name=task_filter, status=SessionStatus.RUNNING.value, skip_corrupt=True
    )
    if stage_filter and stage_filter != TASK_SENTINEL:
        candidates = [s for s in candidates if s["stage"] == stage_filter]
    if len(candidates) == 1:
        return candidates[0]
    if not candidates:
        raise AmbiguousSessionError(
            "No running session matches; pass --session or --task.",
            stage=stage_filter,
            task=task_filter,
        )
    ids = ", ".join(s["session_id"] for s in candidates)
    raise AmbiguousSessionError(
        f"Multiple running sessions match ({ids}); pass --session or --task.",
        stage=stage_filter,
        task=task_filter,
    )


def close_abnormal(
    store: Store,
    session_id: str,
    *,
    reason: str = "interrupted",
    task_status: TaskStatus = TaskStatus.INCOMPLETE,
) -> SessionRecord:
    """Mark a running session failed and put its task back to *task_status*.

    A session already closed is returned unchanged.
    """
    session = require_session(store, session_id)
    if session["status"] != SessionStatus.RUNNING:
        return session

    session["status"] = SessionStatus.FAILED.value
    session["finished_at"] = utcnow()
    session["error"] = reason
    save_session(store, session)
    log.warning("Session %s for %s closed: %s", session_id, session["task_name"], reason)

    task = get_task(store, session["task_name"])
    if (
        task is not None
        and task["status"] == TaskStatus.RUNNING
        and task["last_session"] == session_id
    ):
        task["status"] = task_status.value
        task["last_error"] = f"Session {session_id} at {session['stage']}: {reason}"
        save_task(store, task)
    return session


def session_owner_alive(session: SessionRecord) -> bool:
    """Whether the session's owner may still be running.

    Owners on another host cannot be checked and count as alive.
    """
    if session["host"] != current_host():
        return True
    return pid_is_alive(session["pid"])


def orphan_sessions(store: Store, task_name: str | None = None) -> list[SessionRecord]:
    """Running sessions whose owner process is gone from this host."""
    return [
        s
        for s in list_sessions(
            store, task_name=task_name, status=SessionStatus.RUNNING.value, skip_corrupt=True
        )
        if not session_owner_alive(s)
    ]


def reconcile_running_tasks(store: Store) -> list[str]:
    """Return ``running`` tasks with no live owner to ``incomplete``.

    Returns the names of the tasks that were changed.
    """
    fixed: list[str] = []
    for task in list_tasks(store, skip_corrupt=True):
        if task["status"] != TaskStatus.RUNNING:
            continue
        name = task["name"]
        if has_live_claim(store, name):
            continue
        running = list_sessions(
            store, task_name=name, status=SessionStatus.RUNNING.value, skip_corrupt=True
        )
        if any(s["host"] == current_host() and session_owner_alive(s) for s in running):
            continue
        try:
            with claimed(store, name):
                for session in running:
                    if not session_owner_alive(session):
                        close_abnormal(store, session["session_id"], reason="owner process exited")
                current = get_task(store, name)
                if current is not None and current["status"] in (
                    TaskStatus.RUNNING,
                    TaskStatus.INCOMPLETE,
                ):
                    current["status"] = TaskStatus.INCOMPLETE.value
                    current["last_error"] = (
                        f"Recovered after crash: task was running at '{current['stage']}' "
                        f"with no live claim. Run 'stagerun run {name}' to resume."
                    )
                    save_task(store, current)
        except ClaimBusyError:
            continue
        log.warning("Task %s was running with no live claim; marked incomplete", name)
        fixed.append(name)
    return fixed
