"""Tests for the help-status reference payload."""

from __future__ import annotations

from stagerun.state import VALID_SESSION_STATUSES, VALID_TASK_STATUSES
from stagerun.status_reference import STATUS_REFERENCE_SCHEMA, get_status_reference


def test_every_status_is_documented():
    payload = get_status_reference()
    assert payload["schema"] == STATUS_REFERENCE_SCHEMA
    lifecycles = {lc["type"]: lc for lc in payload["lifecycles"]}
    assert {s["status"] for s in lifecycles["task"]["statuses"]} == VALID_TASK_STATUSES
    assert {s["status"] for s in lifecycles["session"]["statuses"]} == VALID_SESSION_STATUSES


def test_transitions_reference_known_statuses():
    for lifecycle in get_status_reference()["lifecycles"]:
        known = {s["status"] for s in lifecycle["statuses"]}
        for status in lifecycle["statuses"]:
            assert set(status["typical_transitions"]) <= known


def test_workflow_stages_and_defaults():
    workflows = {wf["kind"]: wf for wf in get_status_reference()["workflows"]}
    code = workflows["code"]
    assert code["initial_stage"] == "spec"
    assert code["guarded_pair"] == ["review", "build"]
    build = next(s for s in code["stages"] if s["stage"] == "build")
    assert build == {"stage": "build", "label": "Build", "default_next": "review", "queued": True}
    assert workflows["writer"]["handoff_stage"] is None


def test_exit_codes_cover_usage_and_every_error_kind():
    codes = get_status_reference()["exit_codes"]
    assert {"kind": "usage", "exit_code": 2} in codes
    assert {"kind": "corrupt-record", "exit_code": 7} in codes
    assert {"kind": "record-exists", "exit_code": 8} in codes
