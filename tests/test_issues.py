"""Tests for the file-backed issue tracker."""

from __future__ import annotations

import pytest

from stagerun.claims import acquire, release
from stagerun.errors import NotFoundError, TaskNotFoundError
from stagerun.issues import FileIssueTracker, IssueTracker, NullIssueTracker
from stagerun.state import get_task, save_task
from stagerun.store import Store


def test_trackers_satisfy_protocol(tracker: FileIssueTracker):
    assert isinstance(tracker, IssueTracker)
    assert isinstance(NullIssueTracker(), IssueTracker)
    assert not NullIssueTracker().has_open_issues("anything")


def test_add_sets_task_to_issues(store: Store, make_task, tracker: FileIssueTracker):
    make_task("alpha")
    issue = tracker.add("Broken build", task_name="alpha", priority="P1")

    assert issue["status"] == "open"
    assert issue["stage"] == "build"
    assert tracker.has_open_issues("alpha")
    assert get_task(store, "alpha")["status"] == "issues"


def test_add_to_completed_task_reopens_it(store: Store, make_task, tracker: FileIssueTracker):
    task = make_task("alpha")
    task["stage"] = "completed"
    task["status"] = "completed"
    save_task(store, task)

    tracker.add("Spec is wrong", task_name="alpha", issue_type="spec")

    task = get_task(store, "alpha")
    assert task["stage"] == "spec-review-issues"
    assert task["status"] == "issues"


def test_resolving_last_issue_returns_task_to_pending(
    store: Store, make_task, tracker: FileIssueTracker
):
    make_task("alpha")
    first = tracker.add("One", task_name="alpha")
    second = tracker.add("Two", task_name="alpha")

    tracker.resolve(first["id"], "fixed")
    assert get_task(store, "alpha")["status"] == "issues"

    resolved = tracker.resolve(second["id"])
    assert resolved["status"] == "resolved"
    assert resolved["resolved_at"] is not None
    assert get_task(store, "alpha")["status"] == "pending"


def test_resolving_at_terminal_stage_completes(store: Store, make_task, tracker):
    task = make_task("alpha")
    issue = tracker.add("Late bug", task_name="alpha")
    task = get_task(store, "alpha")
    task["stage"] = "completed"
    save_task(store, task)

    tracker.resolve(issue["id"])

    assert get_task(store, "alpha")["status"] == "completed"


def test_sync_deferred_while_claimed(store: Store, make_task, tracker: FileIssueTracker):
    make_task("alpha")
    handle = acquire(store, "alpha")
    try:
        tracker.add("Found while running", task_name="alpha")
        assert get_task(store, "alpha")["status"] == "pending"
    finally:
        release(store, handle)
    assert tracker.has_open_issues("alpha")


def test_list_orders_by_priority(make_task, tracker: FileIssueTracker):
    make_task("alpha")
    tracker.add("Low", task_name="alpha", priority="P3")
    tracker.add("Urgent", task_name="alpha", priority="P0")
    tracker.add("Loose", priority="P1")

    assert [i["title"] for i in tracker.list_issues()] == ["Urgent", "Loose", "Low"]
    assert [i["title"] for i in tracker.list_issues(task_name="alpha")] == ["Urgent", "Low"]


def test_preferred_reentry_stage_from_most_urgent(make_task, tracker: FileIssueTracker):
    make_task("alpha")
    assert tracker.preferred_reentry_stage("alpha") is None
    tracker.add("Minor code issue", task_name="alpha", priority="P3")
    tracker.add("Spec hole", task_name="alpha", priority="P0", issue_type="spec")
    assert tracker.preferred_reentry_stage("alpha") == "spec-review-issues"


def test_add_validates_input(make_task, tracker: FileIssueTracker):
    make_task("alpha")
    with pytest.raises(ValueError):
        tracker.add("  ")
    with pytest.raises(ValueError):
        tracker.add("x", priority="P9")
    with pytest.raises(ValueError):
        tracker.add("x", issue_type="vibes")
    with pytest.raises(ValueError):
        tracker.add("x", stage="edit")
    with pytest.raises(TaskNotFoundError):
        tracker.add("x", task_name="ghost")


def test_require_unknown_issue(tracker: FileIssueTracker):
    with pytest.raises(NotFoundError):
        tracker.require("0123456789ab")
    with pytest.raises(NotFoundError):
        tracker.resolve("../etc/passwd")


def test_resolve_is_idempotent(tracker: FileIssueTracker):
    issue = tracker.add("Loose end")
    first = tracker.resolve(issue["id"], "done")
    assert tracker.resolve(issue["id"], "again") == first
