"""Stage transitions: the finish protocol and administrative overrides.

``finish`` closes the session first and updates the task second. The
session carries ``next_stage``, so a crash between the two writes is
repaired by ``reconcile_task_from_session``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date

from stagerun.claims import LOCK_ATTEMPTS, ClaimHandle, claimed, record_lock
from stagerun.config import DEFAULT_LOOP_LIMIT
from stagerun.errors import (
    ClaimBusyError,
    InvalidTransitionError,
    RecordExistsError,
    TaskNotFoundError,
)
from stagerun.issues import FileIssueTracker, IssueTracker, NullIssueTracker
from stagerun.paths import validate_task_name
from stagerun.scheduler import apply_oscillation_guard
from stagerun.sessions import resolve_active
from stagerun.state import (
    SessionRecord,
    SessionStatus,
    TaskRecord,
    TaskStatus,
    adopt_task,
    create_task,
    delete_task,
    get_session,
    get_task,
    parse_task_status,
    require_task,
    save_session,
    save_task,
    utcnow,
)
from stagerun.store import Store
from stagerun.workflows import TASK_SENTINEL, Workflow

log = logging.getLogger(__name__)


@dataclass
class FinishResult:
    session_id: str
    task_name: str
    completed_stage: str
    next_stage: str
    status: str
    redirected: bool = False
    loop_tripped: bool = False
    bounce_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _status_after(workflow: Workflow, stage: str, open_issues_present: bool) -> TaskStatus:
    if workflow.is_terminal(stage):
        return TaskStatus.COMPLETED
    if open_issues_present:
        return TaskStatus.ISSUES
    return TaskStatus.PENDING


def _apply_task_step(
    store: Store,
    workflow: Workflow,
    session: SessionRecord,
    next_stage: str,
    open_issues_present: bool,
    loop_limit: int | None,
) -> tuple[TaskRecord, bool] | None:
    """Move the task to *next_stage* unless *session*'s step already landed.

    ``finish`` in the model process and the worker's repair can both reach
    this for one session; the lock and the re-read make the second a no-op.
    Returns ``None`` when nothing was written.
    """
    with record_lock(store, "task", session["task_name"], attempts=LOCK_ATTEMPTS):
        task = require_task(store, session["task_name"])
        if (
            task["last_session"] == session["session_id"]
            and task["status"] != TaskStatus.RUNNING
        ):
            log.info(
                "Task %s already reflects session %s", task["name"], session["session_id"]
            )
            return None
        task["stage"] = next_stage
        task["status"] = _status_after(workflow, next_stage, open_issues_present).value
        task["last_session"] = session["session_id"]
        task["last_error"] = None
        tripped = apply_oscillation_guard(
            task, workflow, session["stage"], next_stage, loop_limit
        )
        save_task(store, task)
    log.info(
        "Task %s: %s -> %s (%s)", task["name"], session["stage"], next_stage, task["status"]
    )
    return task, tripped


def apply_finish(
    store: Store,
    workflow: Workflow,
    session: SessionRecord,
    completed_stage: str | None,
    explicit_next: str | None,
    open_issues_present: bool,
    *,
    fallback_stage: str | None = None,
    loop_limit: int | None = DEFAULT_LOOP_LIMIT,
) -> FinishResult:
    """Advance *session*'s task past *completed_stage*.

    Validation happens before any write. The session is closed before the
    task is touched.
    """
    completed = completed_stage or session["stage"]
    if session["status"] != SessionStatus.RUNNING:
        raise InvalidTransitionError(
            f"Session {session['session_id']} is already {session['status']}.",
            session=session["session_id"],
            task=session["task_name"],
        )
    if completed != TASK_SENTINEL and completed != session["stage"]:
        raise InvalidTransitionError(
            f"Session {session['session_id']} is running stage '{session['stage']}', "
            f"not '{completed}'.",
            session=session["session_id"],
            stage=completed,
        )
    task = get_task(store, session["task_name"])
    if task is None:
        raise TaskNotFoundError(session["task_name"])

    if explicit_next is not None:
        if explicit_next not in workflow.valid_finish_targets:
            raise InvalidTransitionError(
                f"Invalid next stage '{explicit_next}'. "
                f"Must be one of: {', '.join(workflow.valid_finish_targets)}",
                task=task["name"],
                stage=explicit_next,
            )
        next_stage = explicit_next
    else:
        next_stage = workflow.default_next(completed)

    redirected = False
    if open_issues_present and workflow.is_terminal(next_stage):
        next_stage = fallback_stage or workflow.rework_stage
        redirected = True
        log.info("Task %s has open issues; redirecting to %s", task["name"], next_stage)

    session["status"] = SessionStatus.FINISHED.value
    session["finished_at"] = utcnow()
    session["next_stage"] = next_stage
    save_session(store, session)

    step = _apply_task_step(
        store, workflow, session, next_stage, open_issues_present, loop_limit
    )
    if step is None:
        task, tripped = require_task(store, session["task_name"]), False
    else:
        task, tripped = step
    return FinishResult(
        session_id=session["session_id"],
        task_name=task["name"],
        completed_stage=completed,
        next_stage=next_stage,
        status=task["status"],
        redirected=redirected,
        loop_tripped=tripped,
        bounce_count=task["bounce_count"],
    )


def finish(
    store: Store,
    workflow: Workflow,
    *,
    completed_stage: str | None = None,
    explicit_next: str | None = None,
    session_id: str | None = None,
    env_session_id: str | None = None,
    task_name: str | None = None,
    tracker: IssueTracker | None = None,
    loop_limit: int | None = DEFAULT_LOOP_LIMIT,
) -> FinishResult:
    """Resolve the active session and apply the finish protocol to it."""
    if completed_stage is not None and completed_stage not in workflow.finishable_stages:
        raise InvalidTransitionError(
            f"Unknown stage '{completed_stage}'. "
            f"Must be one of: {', '.join(workflow.finishable_stages)}",
            stage=completed_stage,
        )
    if explicit_next is not None and explicit_next not in workflow.valid_finish_targets:
        raise InvalidTransitionError(
            f"Invalid next stage '{explicit_next}'. "
            f"Must be one of: {', '.join(workflow.valid_finish_targets)}",
            stage=explicit_next,
        )

    session = resolve_active(
        store, session_id, env_session_id, completed_stage, task_filter=task_name
    )
    if task_name is not None and session["task_name"] != task_name:
        raise InvalidTransitionError(
            f"Session {session['session_id']} belongs to '{session['task_name']}', "
            f"not '{task_name}'.",
            session=session["session_id"],
            task=task_name,
        )

    tracker = tracker or NullIssueTracker()
    open_issues = tracker.has_open_issues(session["task_name"])
    fallback = tracker.preferred_reentry_stage(session["task_name"]) if open_issues else None
    return apply_finish(
        store,
        workflow,
        session,
        completed_stage,
        explicit_next,
        open_issues,
        fallback_stage=fallback,
        loop_limit=loop_limit,
    )


def reconcile_task_from_session(
    store: Store,
    workflow: Workflow,
    task_name: str,
    *,
    tracker: IssueTracker | None = None,
    loop_limit: int | None = DEFAULT_LOOP_LIMIT,
    claim: ClaimHandle | None = None,
) -> bool:
    """Re-apply the task half of a finish the session recorded but the task missed.

    Pass *claim* when the caller already holds the task. Returns True if
    the task was repaired.
    """
    if claim is None:
        try:
            with claimed(store, task_name) as handle:
                return reconcile_task_from_session(
                    store,
                    workflow,
                    task_name,
                    tracker=tracker,
                    loop_limit=loop_limit,
                    claim=handle,
                )
        except ClaimBusyError:
            return False

    task = get_task(store, task_name)
    session = unfinished_transition(store, task) if task is not None else None
    if session is None or not session["next_stage"]:
        return False

    tracker = tracker or NullIssueTracker()
    step = _apply_task_step(
        store,
        workflow,
        session,
        session["next_stage"],
        tracker.has_open_issues(task_name),
        loop_limit,
    )
    if step is None:
        return False
    log.warning(
        "Repaired %s: session %s finished to %s but the task was not updated",
        task_name,
        session["session_id"],
        session["next_stage"],
    )
    return True


def unfinished_transition(store: Store, task: TaskRecord) -> SessionRecord | None:
    """The finished session whose ``next_stage`` *task* does not reflect, if any."""
    if not task["last_session"] or task["status"] != TaskStatus.RUNNING:
        return None
    session = get_session(store, task["last_session"])
    if session is None or session["status"] != SessionStatus.FINISHED:
        return None
    return session


# ---------------------------------------------------------------------------
# Administrative operations
# ---------------------------------------------------------------------------


def add_task(
    store: Store,
    workflow: Workflow,
    name: str,
    *,
    held: bool = False,
    description: str | None = None,
) -> TaskRecord:
    """Create the task directory with its workflow files, then the record."""
    validate_task_name(name)
    directory = store.task_dir(name)
    for sub in workflow.scaffold_dirs:
        (directory / sub).mkdir(parents=True, exist_ok=True)
    today = date.today().isoformat()
    for rel_path, template in workflow.scaffold.items():
        path = directory / rel_path
        if path.exists():
            continue
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(template.format(task=name, date=today), encoding="utf-8")
    return create_task(store, name, workflow, held=held, description=description)


def describe_task(store: Store, name: str, description: str) -> TaskRecord:
    with claimed(store, name):
        task = require_task(store, name)
        task["description"] = description
        return save_task(store, task)


def queue_task(store: Store, workflow: Workflow, name: str) -> tuple[TaskRecord, bool]:
    """Adopt an existing task directory. Returns the record and whether it was new."""
    validate_task_name(name)
    existing = get_task(store, name)
    if existing is not None:
        return existing, False
    if not store.task_dir(name).is_dir():
        raise TaskNotFoundError(name, hint=f"Create it with 'stagerun task {name}'.")
    try:
        return create_task(store, name, workflow), True
    except RecordExistsError:
        return adopt_task(store, name, workflow), False


def remove_task(
    store: Store,
    name: str,
    *,
    tracker: FileIssueTracker | None = None,
    force: bool = False,
) -> int:
    """Delete a task and its directory. Returns how many open issues were unassigned."""
    validate_task_name(name)
    if get_task(store, name) is None and not store.task_dir(name).is_dir():
        raise TaskNotFoundError(name)
    open_count = len(tracker.open_issues(name)) if tracker is not None else 0
    if open_count and not force:
        raise InvalidTransitionError(
            f"Task '{name}' has {open_count} open issue(s); resolve them or pass --force.",
            task=name,
        )
    with claimed(store, name):
        unassigned = tracker.unassign(name) if tracker is not None and force else 0
        delete_task(store, name)
    return unassigned


def hold_task(store: Store, name: str) -> TaskRecord:
    with claimed(store, name):
        task = require_task(store, name)
        if task["status"] == TaskStatus.RUNNING:
            raise InvalidTransitionError(
                f"Task '{name}' is running; finish or interrupt it before holding.",
                task=name,
            )
        task["held"] = True
        save_task(store, task)
    log.info("Held %s", name)
    return task


def activate_task(
    store: Store,
    workflow: Workflow,
    name: str,
    *,
    tracker: IssueTracker | None = None,
) -> TaskRecord:
    """Un-hold a task, reset its loop counter and recompute its issue status."""
    tracker = tracker or NullIssueTracker()
    with claimed(store, name):
        task = require_task(store, name)
        task["held"] = False
        task["bounce_count"] = 0
        if tracker.has_open_issues(name):
            if workflow.is_terminal(task["stage"]):
                task["stage"] = tracker.preferred_reentry_stage(name) or workflow.rework_stage
            if task["status"] != TaskStatus.RUNNING:
                task["status"] = TaskStatus.ISSUES.value
        elif task["status"] in (TaskStatus.ISSUES, TaskStatus.FAILED):
            task["status"] = _status_after(workflow, task["stage"], False).value
        if task["status"] != TaskStatus.FAILED:
            task["last_error"] = None
        save_task(store, task)
    log.info("Activated %s (%s at %s)", name, task["status"], task["stage"])
    return task


def set_stage(
    store: Store,
    workflow: Workflow,
    name: str,
    stage: str,
    *,
    status: str | None = None,
    tracker: IssueTracker | None = None,
) -> TaskRecord:
    """Force a task to *stage*; the status is derived unless given."""
    workflow.validate_stage(stage)
    forced = parse_task_status(status) if status is not None else None
    if forced == TaskStatus.COMPLETED and not workflow.is_terminal(stage):
        raise InvalidTransitionError(
            f"Status 'completed' requires stage '{workflow.terminal_stage}'.",
            task=name,
            stage=stage,
        )
    tracker = tracker or NullIssueTracker()
    with claimed(store, name):
        task = require_task(store, name)
        if forced is None:
            if tracker.has_open_issues(name):
                forced = TaskStatus.ISSUES
            else:
                forced = _status_after(workflow, stage, False)
        previous = task["stage"]
        task["stage"] = stage
        task["status"] = forced.value
        task["bounce_count"] = 0
        task["last_error"] = None
        save_task(store, task)
    log.info("Set %s: %s -> %s (%s)", name, previous, stage, task["status"])
    return task
