"""Tests for the file-per-record entity store."""

from __future__ import annotations

import json
import os
from unittest.mock import patch

import pytest

from stagerun.errors import CorruptRecordError, RecordExistsError
from stagerun.state import create_task, get_task, save_task
from stagerun.store import RECORD_VERSION, Store
from stagerun.workflows import CODE


def _issue(issue_id: str = "abcdef012345", **overrides) -> dict:
    record = {
        "version": RECORD_VERSION,
        "id": issue_id,
        "title": "Broken",
        "status": "open",
        "priority": "P2",
        "type": "build",
        "source": "manual",
        "task": None,
        "stage": None,
        "body": None,
        "created_at": "2026-01-01T00:00:00.000000Z",
        "updated_at": "2026-01-01T00:00:00.000000Z",
        "resolved_at": None,
        "resolution": None,
    }
    record.update(overrides)
    return record


def test_write_then_read_returns_the_record(store: Store):
    store.write("issue", "abcdef012345", _issue())
    assert store.read("issue", "abcdef012345") == _issue()


def test_read_missing_returns_none(store: Store):
    assert store.read("issue", "abcdef012345") is None
    assert store.read("task", "nope") is None


def test_records_are_pretty_printed_json(store: Store):
    store.write("issue", "abcdef012345", _issue())
    text = store.path_for("issue", "abcdef012345").read_text()
    assert text.startswith("{\n")
    assert json.loads(text)["version"] == 1


def test_write_replaces_whole_file(store: Store):
    store.write("issue", "abcdef012345", _issue(title="first"))
    store.write("issue", "abcdef012345", _issue(title="second"))
    assert store.read("issue", "abcdef012345")["title"] == "second"
    assert store.leftover_temp_files() == []


def test_create_new_refuses_to_overwrite(store: Store):
    store.create_new("issue", "abcdef012345", _issue(title="first"))
    with pytest.raises(RecordExistsError):
        store.create_new("issue", "abcdef012345", _issue(title="second"))
    assert store.read("issue", "abcdef012345")["title"] == "first"
    assert store.leftover_temp_files() == []


def test_invalid_json_is_corrupt_not_missing(store: Store):
    path = store.path_for("issue", "abcdef012345")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{not json")
    with pytest.raises(CorruptRecordError) as exc_info:
        store.read("issue", "abcdef012345")
    assert exc_info.value.path == path
    assert exc_info.value.exit_code == 7


def test_schema_violation_is_corrupt(store: Store):
    path = store.path_for("issue", "abcdef012345")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(_issue(priority="urgent")))
    with pytest.raises(CorruptRecordError, match="priority"):
        store.read("issue", "abcdef012345")


def test_write_validates_before_touching_disk(store: Store):
    with pytest.raises(CorruptRecordError):
        store.write("issue", "abcdef012345", _issue(status="maybe"))
    assert not store.exists("issue", "abcdef012345")


def test_crash_between_temp_write_and_rename_keeps_old_record(store: Store):
    store.write("issue", "abcdef012345", _issue(title="old"))

    with patch("stagerun.store.os.replace", side_effect=OSError("power loss")):
        with pytest.raises(OSError):
            store.write("issue", "abcdef012345", _issue(title="new"))

    assert store.read("issue", "abcdef012345")["title"] == "old"
    assert store.leftover_temp_files() == []


def test_leftover_temp_file_is_ignored_by_keys(store: Store):
    store.write("issue", "abcdef012345", _issue())
    stray = store.path_for("issue", "abcdef012345").with_name(".tmp-abc.json")
    stray.write_text("{")
    assert store.keys("issue") == ["abcdef012345"]
    assert store.leftover_temp_files() == [stray]


def test_keys_for_tasks_require_a_record(store: Store):
    create_task(store, "alpha", CODE)
    (store.tasks_dir / "orphan").mkdir()
    assert store.keys("task") == ["alpha"]
    assert store.task_dirs() == ["alpha", "orphan"]


def test_lock_is_exclusive_until_unlocked(store: Store):
    assert store.try_lock("claim", "alpha", stale_after=30)
    assert not store.try_lock("claim", "alpha", stale_after=30)
    store.unlock("claim", "alpha")
    assert store.try_lock("claim", "alpha", stale_after=30)
    assert store.keys("claim") == []


def test_stale_lock_is_broken(store: Store):
    assert store.try_lock("claim", "alpha", stale_after=30)
    lock = store.lock_path("claim", "alpha")
    os.utime(lock, (0, 0))
    assert store.leftover_temp_files() == [lock]
    assert store.try_lock("claim", "alpha", stale_after=30)
    assert lock.stat().st_mtime > 0


def test_unknown_kind_is_rejected(store: Store):
    with pytest.raises(ValueError, match="Unknown record kind"):
        store.path_for("widget", "x")


def test_updated_at_never_goes_backwards(store: Store):
    task = create_task(store, "alpha", CODE)
    task["updated_at"] = "2999-01-01T00:00:00.000000Z"
    save_task(store, task)
    task = get_task(store, "alpha")
    save_task(store, task)
    assert get_task(store, "alpha")["updated_at"] == "2999-01-01T00:00:00.000000Z"


def test_remove_task_dir_deletes_task_owned_files(store: Store):
    create_task(store, "alpha", CODE)
    (store.task_dir("alpha") / "notes.md").write_text("x")
    assert store.remove_task_dir("alpha")
    assert not store.task_dir("alpha").exists()
    assert not store.remove_task_dir("alpha")


def test_write_leaves_no_temp_file_when_fsync_fails(store: Store):
    with patch("stagerun.store.os.fsync", side_effect=OSError("disk full")):
        with pytest.raises(OSError):
            store.write("issue", "abcdef012345", _issue())
    assert store.leftover_temp_files() == []
    assert not os.path.exists(store.path_for("issue", "abcdef012345"))
