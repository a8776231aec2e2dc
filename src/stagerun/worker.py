"""Stage-run drivers behind ``start``, ``run``, ``run-next``, ``run-queue`` and ``review``.

Every driver follows the same shape: recover crashed state, pick a task,
claim it, open a session, hand the stage to the model process, then
close out according to how the process ended. The claim is held for the
whole time the task is being worked on.
"""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field
from pathlib import Path

from stagerun.claims import ClaimHandle, acquire, release
from stagerun.config import Settings
from stagerun.errors import ClaimBusyError
from stagerun.issues import FileIssueTracker
from stagerun.paths import TASK_LOG, validate_task_name
from stagerun.prompts import build_debug_prompt, build_prompt
from stagerun.runner import ProcessRunner, StageResult, base_env, child_env
from stagerun.scheduler import eligible_candidates
from stagerun.sessions import close_abnormal, open_session, reconcile_running_tasks
from stagerun.state import (
    RUNNABLE_TASK_STATUSES,
    TaskRecord,
    TaskStatus,
    get_task,
    list_tasks,
    require_task,
    save_task,
    utcnow,
)
from stagerun.store import Store
from stagerun.transitions import add_task, reconcile_task_from_session
from stagerun.workflows import Workflow

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Per-task run log
# ---------------------------------------------------------------------------


def add_task_log(
    store: Store,
    task_name: str,
    *,
    level: str,
    message: str,
    source: str = "worker",
) -> dict:
    entry = {
        "ts": utcnow(),
        "task": task_name,
        "level": level,
        "message": message,
        "source": source,
    }
    directory = store.task_dir(task_name)
    if not directory.is_dir():
        return entry
    with (directory / TASK_LOG).open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, sort_keys=True) + "\n")
    return entry


def list_task_logs(
    store: Store,
    task_name: str,
    *,
    level: str | None = None,
    limit: int | None = None,
) -> list[dict]:
    path = store.task_dir(task_name) / TASK_LOG
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return []
    entries: list[dict] = []
    for line in lines:
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            # A crash can truncate the last line.
            log.debug("Skipping unreadable log line in %s", path)
            continue
        if level and entry.get("level") != level:
            continue
        entries.append(entry)
    if limit is not None:
        entries = entries[-limit:]
    return entries


class TaskLogHandler(logging.Handler):
    """Logging handler that appends log records to the task's ``logs.jsonl``."""

    def __init__(self, store: Store, task_name: str, *, source: str = "worker"):
        super().__init__()
        self.store = store
        self.task_name = task_name
        self.source = source

    def emit(self, record: logging.LogRecord) -> None:
        try:
            add_task_log(
                self.store,
                self.task_name,
                level=record.levelname,
                message=self.format(record),
                source=self.source,
            )
        except Exception:
            self.handleError(record)


@contextlib.contextmanager
def task_log(store: Store, task_name: str) -> Iterator[TaskLogHandler]:
    handler = TaskLogHandler(store, task_name)
    package_logger = logging.getLogger("stagerun")
    package_logger.addHandler(handler)
    try:
        yield handler
    finally:
        package_logger.removeHandler(handler)


# ---------------------------------------------------------------------------
# Drivers
# ---------------------------------------------------------------------------


@dataclass
class StageRun:
    stage: str
    session_id: str
    result: str
    next_stage: str
    status: str


@dataclass
class RunOutcome:
    task_name: str
    stages: list[StageRun] = field(default_factory=list)
    stopped: str = ""
    stage: str = ""
    status: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Worker:
    repo_root: Path
    store: Store
    workflow: Workflow
    settings: Settings
    tracker: FileIssueTracker
    runner: ProcessRunner

    @classmethod
    def create(
        cls, repo_root: Path, store: Store, workflow: Workflow, settings: Settings
    ) -> Worker:
        return cls(
            repo_root=repo_root,
            store=store,
            workflow=workflow,
            settings=settings,
            tracker=FileIssueTracker(store, workflow),
            runner=ProcessRunner(
                store, model=settings.model, poll_interval=settings.poll_interval_seconds
            ),
        )

    # -- recovery ----------------------------------------------------------

    def recover(self) -> dict[str, list[str]]:
        """Repair half-applied finishes, then release tasks stuck ``running``."""
        repaired = [
            task["name"]
            for task in list_tasks(self.store, skip_corrupt=True)
            if task["status"] == TaskStatus.RUNNING
            and reconcile_task_from_session(
                self.store,
                self.workflow,
                task["name"],
                tracker=self.tracker,
                loop_limit=self.settings.loop_limit,
            )
        ]
        reset = reconcile_running_tasks(self.store)
        return {"repaired": repaired, "reset": reset}

    # -- one stage ---------------------------------------------------------

    def _acquire(self, task_name: str) -> ClaimHandle:
        handle = acquire(self.store, task_name, ttl_seconds=self.settings.claim_ttl_seconds)
        if handle.reclaimed_from is not None:
            log.info(
                "Took over %s from stale owner %s@%s",
                task_name,
                handle.reclaimed_from["pid"],
                handle.reclaimed_from["host"],
            )
        return handle

    def _prepare(self, task_name: str) -> TaskRecord:
        """Unhold and un-stick a freshly claimed task."""
        task = require_task(self.store, task_name)
        changed = False
        if task["held"]:
            task["held"] = False
            changed = True
            log.info("Activating held task %s", task_name)
        if task["status"] == TaskStatus.RUNNING:
            # We hold the claim, so nobody else is running it.
            task["status"] = TaskStatus.PENDING.value
            changed = True
            log.warning("Task %s was left running; resuming at %s", task_name, task["stage"])
        if changed:
            save_task(self.store, task)
        return task

    def _stage_for(self, task: TaskRecord) -> str | None:
        if not self.workflow.is_terminal(task["stage"]):
            return task["stage"]
        if task["status"] == TaskStatus.ISSUES:
            return self.workflow.rework_stage
        return None

    def run_stage(
        self,
        handle: ClaimHandle,
        stage: str,
        *,
        no_finish_status: TaskStatus = TaskStatus.INCOMPLETE,
        focus: str | None = None,
    ) -> tuple[StageRun, TaskRecord]:
        store = self.store
        name = handle.task_name
        session = open_session(store, self.workflow, handle, stage=stage)
        session_id = session["session_id"]
        add_task_log(store, name, level="INFO", message=f"Stage {stage} started ({session_id})")
        try:
            prompt = build_prompt(
                store.root,
                self.workflow,
                stage,
                task=name,
                session=session_id,
                repo=self.repo_root,
                open_issues=self.tracker.open_issues(name),
                focus=focus,
            )
            env = child_env(
                repo_root=self.repo_root,
                workflow_kind=self.workflow.kind,
                session_id=session_id,
                task_name=name,
                loop_limit=self.settings.loop_limit,
            )
            result = self.runner.run_stage(session_id, prompt, env=env, cwd=self.repo_root)
        except BaseException:
            close_abnormal(store, session_id, reason="worker error")
            raise

        if result == StageResult.INTERRUPTED:
            close_abnormal(store, session_id, reason="interrupted")
        elif result == StageResult.NO_FINISH:
            close_abnormal(
                store,
                session_id,
                reason="model process exited without finishing",
                task_status=no_finish_status,
            )
        else:
            reconcile_task_from_session(
                store,
                self.workflow,
                name,
                tracker=self.tracker,
                loop_limit=self.settings.loop_limit,
                claim=handle,
            )

        task = require_task(store, name)
        add_task_log(
            store,
            name,
            level="INFO" if result == StageResult.FINISHED else "WARNING",
            message=f"Stage {stage} {result.value}; now {task['status']} at {task['stage']}",
        )
        return (
            StageRun(
                stage=stage,
                session_id=session_id,
                result=result.value,
                next_stage=task["stage"],
                status=task["status"],
            ),
            task,
        )

    # -- drivers -----------------------------------------------------------

    def run(self, task_name: str) -> RunOutcome:
        """Run *task_name* stage after stage until it completes or a stage stops short."""
        validate_task_name(task_name)
        self.recover()
        require_task(self.store, task_name)
        handle = self._acquire(task_name)
        outcome = RunOutcome(task_name=task_name)
        try:
            with task_log(self.store, task_name):
                task = self._prepare(task_name)
                while True:
                    stage = self._stage_for(task)
                    if stage is None:
                        outcome.stopped = "completed"
                        break
                    stage_run, task = self.run_stage(handle, stage)
                    outcome.stages.append(stage_run)
                    if stage_run.result != StageResult.FINISHED:
                        outcome.stopped = stage_run.result
                        break
                    if task["status"] == TaskStatus.FAILED:
                        outcome.stopped = "failed"
                        break
        finally:
            release(self.store, handle)
        outcome.stage, outcome.status = task["stage"], task["status"]
        return outcome

    def start(self, task_name: str, *, description: str | None = None) -> RunOutcome:
        """Run the setup stages of *task_name* up to the workflow's hand-off stage.

        A missing task is created first. Workflows without a hand-off stage
        run to completion, as with ``run``.
        """
        validate_task_name(task_name)
        self.recover()
        if get_task(self.store, task_name) is None:
            add_task(self.store, self.workflow, task_name, description=description)
        handle = self._acquire(task_name)
        outcome = RunOutcome(task_name=task_name)
        try:
            with task_log(self.store, task_name):
                task = self._prepare(task_name)
                while True:
                    stage = self._stage_for(task)
                    if stage is None:
                        outcome.stopped = "completed"
                        break
                    if self.workflow.reached_handoff(stage):
                        outcome.stopped = "ready"
                        log.info("Task %s is ready at %s", task_name, stage)
                        break
                    stage_run, task = self.run_stage(
                        handle, stage, no_finish_status=TaskStatus.FAILED
                    )
                    outcome.stages.append(stage_run)
                    if stage_run.result != StageResult.FINISHED:
                        outcome.stopped = stage_run.result
                        break
                    if task["status"] == TaskStatus.FAILED:
                        outcome.stopped = "failed"
                        break
        finally:
            release(self.store, handle)
        outcome.stage, outcome.status = task["stage"], task["status"]
        return outcome

    def run_single(self, task_name: str, stage: str, *, focus: str | None = None) -> RunOutcome:
        """Run *stage* of *task_name* once, whatever stage the task is at.

        The task moves to *stage* for the session and the model's finish
        decides where it goes next.
        """
        validate_task_name(task_name)
        self.workflow.validate_stage(stage)
        self.recover()
        require_task(self.store, task_name)
        handle = self._acquire(task_name)
        outcome = RunOutcome(task_name=task_name)
        try:
            with task_log(self.store, task_name):
                task = self._prepare(task_name)
                stage_run, task = self.run_stage(handle, stage, focus=focus)
                outcome.stages.append(stage_run)
                outcome.stopped = stage_run.result
        finally:
            release(self.store, handle)
        outcome.stage, outcome.status = task["stage"], task["status"]
        return outcome

    def debug(self, report: str = "") -> int:
        """Hand a bug report to the model outside any task; returns its exit code."""
        prompt = build_debug_prompt(
            self.store.root, self.workflow, repo=self.repo_root, report=report
        )
        env = base_env(repo_root=self.repo_root, workflow_kind=self.workflow.kind)
        return self.runner.run_once(prompt, env=env, cwd=self.repo_root)

    def _claim_candidate(self, skip: set[str]) -> tuple[ClaimHandle, str] | None:
        for candidate in eligible_candidates(self.store, self.workflow):
            name = candidate.task["name"]
            if name in skip:
                continue
            try:
                handle = self._acquire(name)
            except ClaimBusyError:
                skip.add(name)
                continue
            # Re-check under the claim: the record may have moved on.
            task = require_task(self.store, name)
            if task["held"] or self._queue_stage_for(task) is None:
                release(self.store, handle)
                skip.add(name)
                continue
            return handle, name
        return None

    def _queue_stage_for(self, task: TaskRecord) -> str | None:
        if task["held"]:
            return None
        stage = task["stage"]
        if stage in self.workflow.queue_stages and task["status"] in RUNNABLE_TASK_STATUSES:
            return stage
        if self.workflow.is_terminal(stage) and task["status"] == TaskStatus.ISSUES:
            return self.workflow.rework_stage
        return None

    def _queue_exit_reason(self, task: TaskRecord) -> str:
        if task["status"] == TaskStatus.FAILED:
            return "failed"
        if task["status"] == TaskStatus.COMPLETED:
            return "completed"
        return "left-queue"

    def run_next(self, task_name: str | None = None) -> RunOutcome | None:
        """Run one stage of *task_name*, or of the first claimable eligible task."""
        self.recover()
        if task_name is not None:
            validate_task_name(task_name)
            require_task(self.store, task_name)
            handle = self._acquire(task_name)
        else:
            claimed = self._claim_candidate(set())
            if claimed is None:
                return None
            handle, task_name = claimed

        outcome = RunOutcome(task_name=task_name)
        try:
            with task_log(self.store, task_name):
                task = self._prepare(task_name)
                stage = self._stage_for(task)
                if stage is None:
                    outcome.stopped = "completed"
                else:
                    stage_run, task = self.run_stage(
                        handle, stage, no_finish_status=TaskStatus.FAILED
                    )
                    outcome.stages.append(stage_run)
                    outcome.stopped = stage_run.result
        finally:
            release(self.store, handle)
        outcome.stage, outcome.status = task["stage"], task["status"]
        return outcome

    def run_queue(self) -> list[RunOutcome]:
        """Work through eligible tasks until none is left or a stage stops short."""
        self.recover()
        outcomes: list[RunOutcome] = []
        skip: set[str] = set()
        while True:
            claimed = self._claim_candidate(skip)
            if claimed is None:
                return outcomes
            handle, name = claimed
            outcome = RunOutcome(task_name=name)
            outcomes.append(outcome)
            halt = False
            try:
                with task_log(self.store, name):
                    task = self._prepare(name)
                    while True:
                        stage = self._queue_stage_for(task)
                        if stage is None:
                            outcome.stopped = self._queue_exit_reason(task)
                            break
                        stage_run, task = self.run_stage(
                            handle, stage, no_finish_status=TaskStatus.FAILED
                        )
                        outcome.stages.append(stage_run)
                        if stage_run.result != StageResult.FINISHED:
                            outcome.stopped = stage_run.result
                            halt = True
                            break
            finally:
                release(self.store, handle)
            outcome.stage, outcome.status = task["stage"], task["status"]
            if not outcome.stages:
                skip.add(name)
            if halt:
                return outcomes
