"""Derived queue view, next-task selection and the oscillation guard.

There is no queue file: the queue is whatever the task records say,
read fresh on every call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import NamedTuple

from stagerun.claims import claimed
from stagerun.errors import ClaimBusyError, CorruptRecordError, InvalidTransitionError
from stagerun.state import (
    RUNNABLE_TASK_STATUSES,
    TaskRecord,
    TaskStatus,
    adopt_task,
    get_task,
    require_task,
    save_task,
)
from stagerun.store import Store
from stagerun.workflows import Workflow

log = logging.getLogger(__name__)


class Candidate(NamedTuple):
    task: TaskRecord
    # Stage the task will run at; differs from task["stage"] only for the
    # terminal-with-issues safety net.
    stage: str


@dataclass
class QueueView:
    workflow: Workflow
    by_stage: dict[str, list[TaskRecord]] = field(default_factory=dict)
    held: list[TaskRecord] = field(default_factory=list)
    corrupt: list[str] = field(default_factory=list)
    adopted: list[str] = field(default_factory=list)

    def tasks(self) -> list[TaskRecord]:
        active = [t for stage_tasks in self.by_stage.values() for t in stage_tasks]
        return active + self.held

    def to_dict(self) -> dict:
        return {
            "workflow": self.workflow.kind,
            "stages": [
                {
                    "stage": stage,
                    "label": self.workflow.label(stage),
                    "tasks": [_task_summary(t) for t in tasks],
                }
                for stage, tasks in self.by_stage.items()
            ],
            "held": [_task_summary(t) for t in self.held],
            "corrupt": self.corrupt,
            "adopted": self.adopted,
        }


def _task_summary(task: TaskRecord) -> dict:
    return {
        "name": task["name"],
        "stage": task["stage"],
        "status": task["status"],
        "held": task["held"],
        "queue_rank": task["queue_rank"],
        "updated_at": task["updated_at"],
        "last_error": task["last_error"],
    }


def _queue_order(workflow: Workflow, stage: str, task: TaskRecord) -> tuple:
    rank = task["queue_rank"]
    return (
        workflow.stage_rank(stage),
        (0, rank) if rank is not None else (1, 0),
        task["created_at"],
        task["name"],
    )


def list_view(store: Store, workflow: Workflow) -> QueueView:
    """Every known task grouped by stage in workflow order, held tasks apart.

    Task directories without a record are adopted as ``pending`` at the
    initial stage.
    """
    view = QueueView(workflow=workflow, by_stage={stage: [] for stage in workflow.stages})
    for name in store.task_dirs():
        try:
            task = get_task(store, name)
            if task is None:
                task = adopt_task(store, name, workflow)
                view.adopted.append(name)
                log.info("Adopted task directory %s at %s", name, task["stage"])
        except CorruptRecordError as exc:
            log.warning("Skipping task %s: %s", name, exc)
            view.corrupt.append(name)
            continue
        except ValueError as exc:
            # Directory name is not a valid task name.
            log.warning("Skipping directory %s: %s", name, exc)
            continue
        if task["held"]:
            view.held.append(task)
        elif workflow.has_stage(task["stage"]):
            view.by_stage[task["stage"]].append(task)
        else:
            log.warning("Task %s has unknown stage %r", name, task["stage"])
            view.corrupt.append(name)
    for stage, tasks in view.by_stage.items():
        tasks.sort(key=lambda t, s=stage: _queue_order(workflow, s, t))
    view.held.sort(key=lambda t: (t["created_at"], t["name"]))
    return view


def eligible_candidates(store: Store, workflow: Workflow) -> list[Candidate]:
    """Runnable tasks in the order a queue worker should take them.

    Completed tasks that picked up issues only come after every regular
    queue-stage candidate.
    """
    candidates: list[Candidate] = []
    reopened: list[Candidate] = []
    for task in list_view(store, workflow).tasks():
        if task["held"]:
            continue
        stage = task["stage"]
        if stage in workflow.queue_stages and task["status"] in RUNNABLE_TASK_STATUSES:
            candidates.append(Candidate(task, stage))
        elif workflow.is_terminal(stage) and task["status"] == TaskStatus.ISSUES:
            reopened.append(Candidate(task, workflow.rework_stage))
    candidates.sort(key=lambda c: _queue_order(workflow, c.stage, c.task))
    reopened.sort(key=lambda c: _queue_order(workflow, c.stage, c.task))
    return candidates + reopened


def next_eligible(
    store: Store,
    workflow: Workflow,
    *,
    exclude: frozenset[str] | set[str] = frozenset(),
) -> Candidate | None:
    for candidate in eligible_candidates(store, workflow):
        if candidate.task["name"] not in exclude:
            return candidate
    return None


def apply_oscillation_guard(
    task: TaskRecord,
    workflow: Workflow,
    from_stage: str,
    to_stage: str,
    limit: int | None,
) -> bool:
    """Count bounces across the workflow's guarded pair.

    Mutates *task*. Returns True when the limit is exceeded and the task
    has been marked ``failed``. ``limit=None`` never trips.
    """
    pair = workflow.guarded_pair
    if pair is None:
        return False
    if (from_stage, to_stage) == pair:
        task["bounce_count"] = task["bounce_count"] + 1
    elif from_stage == pair[0]:
        task["bounce_count"] = 0
        return False
    else:
        return False

    if limit is not None and task["bounce_count"] > limit:
        task["status"] = TaskStatus.FAILED.value
        task["last_error"] = (
            f"Loop limit exceeded: {pair[0]} -> {pair[1]} bounced "
            f"{task['bounce_count']} times (limit {limit}). Fix the task, then "
            f"'stagerun activate {task['name']}'."
        )
        log.warning(
            "Task %s tripped the loop limit (%d > %d)",
            task["name"],
            task["bounce_count"],
            limit,
        )
        return True
    return False


def reorder(store: Store, workflow: Workflow, name: str, position: int) -> list[str]:
    """Move *name* to 1-based *position* among non-held tasks at its stage.

    Returns the resulting order. Tasks claimed by a worker keep their rank.
    """
    if position < 1:
        raise ValueError(f"Position must be >= 1, got {position}.")
    target = require_task(store, name)
    if target["held"]:
        raise InvalidTransitionError(
            f"Task '{name}' is held; activate it before reordering.", task=name
        )
    stage = target["stage"]
    peers = [t for t in list_view(store, workflow).by_stage.get(stage, []) if t["name"] != name]
    order = [t["name"] for t in peers]
    order.insert(min(position, len(order) + 1) - 1, name)

    for rank, peer_name in enumerate(order, start=1):
        try:
            with claimed(store, peer_name):
                current = get_task(store, peer_name)
                if current is None or current["stage"] != stage or current["held"]:
                    continue
                if current["queue_rank"] != rank:
                    current["queue_rank"] = rank
                    save_task(store, current)
        except ClaimBusyError:
            log.info("Task %s is claimed; keeping its queue position", peer_name)
    log.info("Moved %s to position %d at %s", name, position, stage)
    return order
