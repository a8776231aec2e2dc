"""File-backed issue tracker.

Issues are the rework signal for the finish protocol: a task with open
issues is never advanced to the terminal stage, and its issues decide
which stage it re-enters.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Protocol, TypedDict, cast, runtime_checkable

from stagerun.claims import claimed
from stagerun.errors import ClaimBusyError, NotFoundError
from stagerun.state import TaskStatus, get_task, require_task, save_task, utcnow
from stagerun.store import RECORD_VERSION, Store
from stagerun.workflows import Workflow

log = logging.getLogger(__name__)

VALID_ISSUE_STATUSES = {"open", "resolved"}
VALID_ISSUE_PRIORITIES = ("P0", "P1", "P2", "P3")
VALID_ISSUE_TYPES = {"spec", "build", "bug", "test", "perf", "other"}
VALID_ISSUE_SOURCES = {"review", "debug", "submit", "manual"}
DEFAULT_ISSUE_PRIORITY = "P2"

_ISSUE_ID_RE = re.compile(r"^[0-9a-f]{8,32}$")


class IssueRecord(TypedDict):
    version: int
    id: str
    title: str
    status: str
    priority: str
    type: str
    source: str
    task: str | None
    stage: str | None
    body: str | None
    created_at: str
    updated_at: str
    resolved_at: str | None
    resolution: str | None


@runtime_checkable
class IssueTracker(Protocol):
    def has_open_issues(self, task_name: str) -> bool: ...

    def preferred_reentry_stage(self, task_name: str) -> str | None: ...


class NullIssueTracker:
    """Tracker that never reports issues."""

    def has_open_issues(self, task_name: str) -> bool:
        return False

    def preferred_reentry_stage(self, task_name: str) -> str | None:
        return None


def _choice(name: str, value: str, allowed: set[str] | tuple[str, ...]) -> str:
    if value not in allowed:
        raise ValueError(f"Invalid {name} '{value}'. Must be one of: {sorted(allowed)}")
    return value


def _sort_key(issue: IssueRecord) -> tuple[int, str, str]:
    return (VALID_ISSUE_PRIORITIES.index(issue["priority"]), issue["created_at"], issue["id"])


class FileIssueTracker:
    def __init__(self, store: Store, workflow: Workflow) -> None:
        self.store = store
        self.workflow = workflow

    # -- queries -----------------------------------------------------------

    def get(self, issue_id: str) -> IssueRecord | None:
        if not _ISSUE_ID_RE.match(issue_id):
            return None
        return cast("IssueRecord | None", self.store.read("issue", issue_id))

    def require(self, issue_id: str) -> IssueRecord:
        issue = self.get(issue_id)
        if issue is None:
            raise NotFoundError(f"Issue not found: {issue_id}", issue=issue_id)
        return issue

    def list_issues(
        self,
        *,
        task_name: str | None = None,
        status: str | None = None,
    ) -> list[IssueRecord]:
        """Issues ordered by priority, then age."""
        issues: list[IssueRecord] = []
        for key in self.store.keys("issue"):
            issue = self.get(key)
            if issue is None:
                continue
            if task_name is not None and issue.get("task") != task_name:
                continue
            if status is not None and issue["status"] != status:
                continue
            issues.append(issue)
        issues.sort(key=_sort_key)
        return issues

    def open_issues(self, task_name: str) -> list[IssueRecord]:
        return self.list_issues(task_name=task_name, status="open")

    def has_open_issues(self, task_name: str) -> bool:
        return bool(self.open_issues(task_name))

    def preferred_reentry_stage(self, task_name: str) -> str | None:
        """Stage named by the most urgent open issue, if any."""
        issues = self.open_issues(task_name)
        if not issues:
            return None
        top = issues[0]
        stage = top.get("stage")
        if stage and self.workflow.has_stage(stage) and not self.workflow.is_terminal(stage):
            return stage
        return self.workflow.reentry_stage_for(top.get("type"))

    # -- mutations ---------------------------------------------------------

    def add(
        self,
        title: str,
        *,
        task_name: str | None = None,
        priority: str = DEFAULT_ISSUE_PRIORITY,
        issue_type: str = "build",
        source: str = "manual",
        stage: str | None = None,
        body: str | None = None,
    ) -> IssueRecord:
        if not title.strip():
            raise ValueError("Issue title required.")
        _choice("priority", priority, VALID_ISSUE_PRIORITIES)
        _choice("type", issue_type, VALID_ISSUE_TYPES)
        _choice("source", source, VALID_ISSUE_SOURCES)
        if stage is not None:
            self.workflow.validate_stage(stage)
        if task_name is not None:
            require_task(self.store, task_name)
            stage = stage or self.workflow.reentry_stage_for(issue_type)

        now = utcnow()
        issue = IssueRecord(
            version=RECORD_VERSION,
            id=uuid.uuid4().hex[:12],
            title=title.strip(),
            status="open",
            priority=priority,
            type=issue_type,
            source=source,
            task=task_name,
            stage=stage,
            body=body,
            created_at=now,
            updated_at=now,
            resolved_at=None,
            resolution=None,
        )
        self.store.create_new("issue", issue["id"], dict(issue))
        log.info("Opened issue %s (%s) on %s", issue["id"], priority, task_name or "-")
        if task_name is not None:
            self.sync_task_status(task_name)
        return issue

    def resolve(self, issue_id: str, resolution: str | None = None) -> IssueRecord:
        issue = self.require(issue_id)
        if issue["status"] == "resolved":
            return issue
        now = utcnow()
        issue["status"] = "resolved"
        issue["resolved_at"] = now
        issue["updated_at"] = max(now, issue["updated_at"])
        issue["resolution"] = resolution
        self.store.write("issue", issue_id, dict(issue))
        log.info("Resolved issue %s", issue_id)
        if issue.get("task"):
            self.sync_task_status(issue["task"])
        return issue

    def unassign(self, task_name: str) -> int:
        """Detach every open issue from *task_name*; returns how many moved."""
        moved = 0
        for issue in self.open_issues(task_name):
            issue["task"] = None
            issue["updated_at"] = max(utcnow(), issue["updated_at"])
            self.store.write("issue", issue["id"], dict(issue))
            moved += 1
        return moved

    def sync_task_status(self, task_name: str) -> None:
        """Reflect the task's open issues in its status.

        Skipped while another worker holds the task; its next finish
        reads the tracker anyway.
        """
        try:
            with claimed(self.store, task_name):
                task = get_task(self.store, task_name)
                if task is None:
                    return
                has_open = self.has_open_issues(task_name)
                changed = False
                if has_open and task["status"] in (
                    TaskStatus.PENDING,
                    TaskStatus.INCOMPLETE,
                    TaskStatus.COMPLETED,
                ):
                    if self.workflow.is_terminal(task["stage"]):
                        task["stage"] = (
                            self.preferred_reentry_stage(task_name) or self.workflow.rework_stage
                        )
                    task["status"] = TaskStatus.ISSUES.value
                    changed = True
                elif not has_open and task["status"] == TaskStatus.ISSUES:
                    terminal = self.workflow.is_terminal(task["stage"])
                    task["status"] = (
                        TaskStatus.COMPLETED.value if terminal else TaskStatus.PENDING.value
                    )
                    changed = True
                if changed:
                    save_task(self.store, task)
                    log.info("Task %s now %s at %s", task_name, task["status"], task["stage"])
        except ClaimBusyError:
            log.info("Task %s is claimed; status sync deferred", task_name)
