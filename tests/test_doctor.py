"""Tests for doctor health checks and --fix remediation."""

from __future__ import annotations

import os
import time
from unittest.mock import patch

import pytest

from stagerun.claims import ClaimRecord, acquire, read_claim, release
from stagerun.doctor import run_doctor
from stagerun.state import get_session, get_task, save_task
from stagerun.store import RECORD_VERSION, Store
from stagerun.transitions import finish


def _check(report, name: str):
    return next(c for c in report["checks"] if c["name"] == name)


def test_clean_store_passes(store: Store, workflow, make_task):
    make_task("alpha")
    report = run_doctor(store, workflow)
    assert report["status"] == "pass"
    assert report["summary"] == "6 checks passed, 0 warnings, 0 failed."
    assert "fix_actions" not in report


def test_corrupt_record_fails(store: Store, workflow, make_task):
    make_task("alpha")
    (store.task_dir("alpha") / "task.json").write_text("[]")
    report = run_doctor(store, workflow)
    assert report["status"] == "fail"
    records = _check(report, "records")
    assert records["status"] == "fail"
    assert records["findings"][0]["details"]["key"] == "alpha"


def test_unknown_stage_fails(store: Store, workflow, make_task):
    task = make_task("alpha")
    task["stage"] = "edit"
    save_task(store, task)
    assert _check(run_doctor(store, workflow), "records")["status"] == "fail"


def test_stale_claim_is_reported_and_fixed(store: Store, workflow, make_task):
    make_task("alpha")
    store.write(
        "claim",
        "alpha",
        dict(
            ClaimRecord(
                version=RECORD_VERSION,
                task_name="alpha",
                claim_id="dead",
                pid=1,
                host="elsewhere",
                acquired_at="2000-01-01T00:00:00.000000Z",
                ttl_seconds=60,
            )
        ),
    )
    report = run_doctor(store, workflow)
    assert _check(report, "stale_claims")["status"] == "warning"
    assert report["status"] == "warning"

    fixed = run_doctor(store, workflow, fix=True)
    assert fixed["fix_actions"]["stale_claims"]["fixed"] == 1
    assert read_claim(store, "alpha") is None
    assert fixed["status"] == "pass"


def test_live_claim_is_not_stale(store: Store, workflow, make_task):
    make_task("alpha")
    handle = acquire(store, "alpha")
    try:
        assert _check(run_doctor(store, workflow), "stale_claims")["status"] == "pass"
    finally:
        release(store, handle)


def test_crashed_worker_is_reported_and_fixed(store: Store, workflow, make_task, start_stage):
    make_task("alpha")
    session = start_stage("alpha", "build")

    with patch("stagerun.sessions.pid_is_alive", return_value=False):
        report = run_doctor(store, workflow)
        assert _check(report, "stuck_tasks")["status"] == "warning"
        assert _check(report, "orphan_sessions")["status"] == "warning"

        fixed = run_doctor(store, workflow, fix=True)

    assert fixed["fix_actions"]["orphan_sessions"]["fixed"] == 1
    assert fixed["fix_actions"]["stuck_tasks"]["fixed"] == 1
    assert fixed["status"] == "pass"
    assert get_session(store, session["session_id"])["status"] == "failed"
    assert get_task(store, "alpha")["status"] == "incomplete"


def test_half_applied_finish_is_repaired(store: Store, workflow, make_task, start_stage):
    make_task("alpha")
    start_stage("alpha", "build")
    with patch("stagerun.transitions.save_task", side_effect=OSError("crash")):
        with pytest.raises(OSError):
            finish(store, workflow)

    report = run_doctor(store, workflow)
    assert _check(report, "unfinished_transitions")["status"] == "warning"

    fixed = run_doctor(store, workflow, fix=True)

    assert fixed["fix_actions"]["unfinished_transitions"]["fixed"] == 1
    task = get_task(store, "alpha")
    assert task["stage"] == "review"
    assert task["status"] == "pending"
    assert fixed["status"] == "pass"


def test_old_temp_files_are_removed(store: Store, workflow):
    stray = store.root / "sessions" / ".tmp-crashed.json"
    stray.write_text("{")
    assert _check(run_doctor(store, workflow), "temp_files")["status"] == "pass"

    old = time.time() - 2 * 3600
    os.utime(stray, (old, old))
    assert _check(run_doctor(store, workflow), "temp_files")["status"] == "warning"

    fixed = run_doctor(store, workflow, fix=True)
    assert fixed["fix_actions"]["temp_files"]["fixed"] == 1
    assert not stray.exists()
