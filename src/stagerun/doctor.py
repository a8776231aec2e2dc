"""Health checks and optional remediation for a workflow root."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Literal, TypedDict

from stagerun.claims import (
    ClaimRecord,
    claim_age_seconds,
    claim_owner,
    has_live_claim,
    is_live,
    read_claim,
    remove_stale_claim,
)
from stagerun.errors import CorruptRecordError, StagerunError
from stagerun.issues import IssueTracker
from stagerun.sessions import close_abnormal, reconcile_running_tasks, session_owner_alive
from stagerun.state import (
    SessionRecord,
    SessionStatus,
    TaskRecord,
    TaskStatus,
    get_session,
    get_task,
)
from stagerun.store import RECORD_KINDS, Store
from stagerun.transitions import reconcile_task_from_session, unfinished_transition
from stagerun.workflows import Workflow

Status = Literal["pass", "warning", "fail"]
_STATUS_RANK: dict[Status, int] = {"pass": 0, "warning": 1, "fail": 2}

# Temp files younger than this may belong to a writer that is still running.
_TEMP_FILE_GRACE_SECONDS = 3600


class _CheckFindingRequired(TypedDict):
    status: Status
    message: str


class CheckFinding(_CheckFindingRequired, total=False):
    details: dict[str, object]


class CheckReport(TypedDict):
    name: str
    status: Status
    summary: str
    findings: list[CheckFinding]


class FixAction(TypedDict):
    attempted: int
    fixed: int
    failed: int
    failures: list[dict[str, str]]


class _DoctorReportRequired(TypedDict):
    status: Status
    summary: str
    checks: list[CheckReport]


class DoctorReport(_DoctorReportRequired, total=False):
    fix_actions: dict[str, FixAction]


def run_doctor(
    store: Store,
    workflow: Workflow,
    *,
    fix: bool = False,
    tracker: IssueTracker | None = None,
) -> DoctorReport:
    """Run all health checks and optionally apply remediation."""
    checks = _run_checks(store, workflow)
    fix_actions: dict[str, FixAction] = {}
    if fix:
        fix_actions = _apply_fixes(store, workflow, checks, tracker)
        checks = _run_checks(store, workflow)

    report: DoctorReport = {
        "status": _worst_status([check["status"] for check in checks]),
        "summary": _report_summary(checks),
        "checks": checks,
    }
    if fix:
        report["fix_actions"] = fix_actions
    return report


def _run_checks(store: Store, workflow: Workflow) -> list[CheckReport]:
    return [
        _check_records(store, workflow),
        _check_stale_claims(store),
        _check_unfinished_transitions(store),
        _check_stuck_tasks(store),
        _check_orphan_sessions(store),
        _check_temp_files(store),
    ]


def _worst_status(statuses: list[Status]) -> Status:
    if not statuses:
        return "pass"
    return max(statuses, key=lambda s: _STATUS_RANK[s])


def _report_summary(checks: list[CheckReport]) -> str:
    counts: dict[Status, int] = {"pass": 0, "warning": 0, "fail": 0}
    for check in checks:
        counts[check["status"]] += 1
    return f"{counts['pass']} checks passed, {counts['warning']} warnings, {counts['fail']} failed."


def _readable_tasks(store: Store) -> list[TaskRecord]:
    tasks: list[TaskRecord] = []
    for name in store.keys("task"):
        try:
            task = get_task(store, name)
        except CorruptRecordError:
            continue
        if task is not None:
            tasks.append(task)
    return tasks


def _readable_sessions(store: Store) -> list[SessionRecord]:
    sessions: list[SessionRecord] = []
    for key in store.keys("session"):
        try:
            session = get_session(store, key)
        except CorruptRecordError:
            continue
        if session is not None:
            sessions.append(session)
    return sessions


def _readable_claims(store: Store) -> list[ClaimRecord]:
    claims: list[ClaimRecord] = []
    for key in store.keys("claim"):
        try:
            claim = read_claim(store, key)
        except CorruptRecordError:
            continue
        if claim is not None:
            claims.append(claim)
    return claims


def _check_records(store: Store, workflow: Workflow) -> CheckReport:
    findings: list[CheckFinding] = []
    checked = 0
    for kind in RECORD_KINDS:
        for key in store.keys(kind):
            checked += 1
            try:
                record = store.read(kind, key)
            except CorruptRecordError as exc:
                findings.append(
                    {
                        "status": "fail",
                        "message": str(exc),
                        "details": {"kind": kind, "key": key, "path": str(exc.path)},
                    }
                )
                continue
            if kind == "task" and record is not None and not workflow.has_stage(record["stage"]):
                findings.append(
                    {
                        "status": "fail",
                        "message": f"Task '{key}' has unknown stage '{record['stage']}'",
                        "details": {"kind": kind, "key": key, "stage": record["stage"]},
                    }
                )

    if findings:
        return {
            "name": "records",
            "status": "fail",
            "summary": f"Found {len(findings)} unreadable record(s) across {checked} file(s).",
            "findings": findings,
        }
    return {
        "name": "records",
        "status": "pass",
        "summary": f"All {checked} record(s) parse and validate.",
        "findings": [{"status": "pass", "message": f"Records checked: {checked}"}],
    }


def _check_stale_claims(store: Store) -> CheckReport:
    claims = _readable_claims(store)
    stale: list[CheckFinding] = []
    for claim in claims:
        if is_live(claim):
            continue
        age = int(claim_age_seconds(claim))
        stale.append(
            {
                "status": "warning",
                "message": (
                    f"Stale claim on '{claim['task_name']}' held by {claim_owner(claim)} "
                    f"({age}s old, ttl {claim['ttl_seconds']}s)"
                ),
                "details": {"task": claim["task_name"], "owner": claim_owner(claim), "age": age},
            }
        )
    if stale:
        return {
            "name": "stale_claims",
            "status": "warning",
            "summary": f"Found {len(stale)} stale claim(s) across {len(claims)} claim(s).",
            "findings": stale,
        }
    return {
        "name": "stale_claims",
        "status": "pass",
        "summary": f"No stale claims across {len(claims)} claim(s).",
        "findings": [{"status": "pass", "message": f"Live claims: {len(claims)}"}],
    }


def _check_stuck_tasks(store: Store) -> CheckReport:
    stuck: list[CheckFinding] = []
    for task in _readable_tasks(store):
        if task["status"] != TaskStatus.RUNNING:
            continue
        try:
            live = has_live_claim(store, task["name"])
        except CorruptRecordError:
            continue
        if live:
            continue
        stuck.append(
            {
                "status": "warning",
                "message": (
                    f"Task '{task['name']}' is running at '{task['stage']}' with no live claim"
                ),
                "details": {"task": task["name"], "stage": task["stage"]},
            }
        )
    if stuck:
        return {
            "name": "stuck_tasks",
            "status": "warning",
            "summary": f"Found {len(stuck)} task(s) stuck running.",
            "findings": stuck,
        }
    return {
        "name": "stuck_tasks",
        "status": "pass",
        "summary": "No tasks stuck running.",
        "findings": [{"status": "pass", "message": "Every running task has a live claim"}],
    }


def _check_orphan_sessions(store: Store) -> CheckReport:
    orphans: list[CheckFinding] = []
    running = 0
    for session in _readable_sessions(store):
        if session["status"] != SessionStatus.RUNNING:
            continue
        running += 1
        if session_owner_alive(session):
            continue
        orphans.append(
            {
                "status": "warning",
                "message": (
                    f"Session {session['session_id']} ({session['task_name']} at "
                    f"{session['stage']}) is running but pid {session['pid']} is gone"
                ),
                "details": {
                    "session": session["session_id"],
                    "task": session["task_name"],
                    "pid": session["pid"],
                },
            }
        )
    if orphans:
        return {
            "name": "orphan_sessions",
            "status": "warning",
            "summary": f"Found {len(orphans)} orphan session(s) across {running} running.",
            "findings": orphans,
        }
    return {
        "name": "orphan_sessions",
        "status": "pass",
        "summary": f"No orphan sessions across {running} running.",
        "findings": [{"status": "pass", "message": f"Running sessions: {running}"}],
    }


def _check_unfinished_transitions(store: Store) -> CheckReport:
    pending: list[CheckFinding] = []
    for task in _readable_tasks(store):
        try:
            session = unfinished_transition(store, task)
        except CorruptRecordError:
            continue
        if session is None:
            continue
        pending.append(
            {
                "status": "warning",
                "message": (
                    f"Task '{task['name']}' still at '{task['stage']}' but session "
                    f"{session['session_id']} finished to '{session['next_stage']}'"
                ),
                "details": {
                    "task": task["name"],
                    "session": session["session_id"],
                    "next_stage": session["next_stage"],
                },
            }
        )
    if pending:
        return {
            "name": "unfinished_transitions",
            "status": "warning",
            "summary": f"Found {len(pending)} half-applied finish(es).",
            "findings": pending,
        }
    return {
        "name": "unfinished_transitions",
        "status": "pass",
        "summary": "Every finished session is reflected by its task.",
        "findings": [{"status": "pass", "message": "No half-applied finishes"}],
    }


def _check_temp_files(store: Store) -> CheckReport:
    now = time.time()
    leftovers: list[CheckFinding] = []
    for path in store.leftover_temp_files():
        try:
            age = int(now - path.stat().st_mtime)
        except FileNotFoundError:
            continue
        if age < _TEMP_FILE_GRACE_SECONDS:
            continue
        leftovers.append(
            {
                "status": "warning",
                "message": f"Leftover temp file {path} ({age}s old)",
                "details": {"path": str(path), "age": age},
            }
        )
    if leftovers:
        return {
            "name": "temp_files",
            "status": "warning",
            "summary": f"Found {len(leftovers)} leftover temp file(s).",
            "findings": leftovers,
        }
    return {
        "name": "temp_files",
        "status": "pass",
        "summary": "No leftover temp files.",
        "findings": [{"status": "pass", "message": "No leftover temp files"}],
    }


def _new_fix_action() -> FixAction:
    return {"attempted": 0, "fixed": 0, "failed": 0, "failures": []}


def _warnings(check: CheckReport) -> list[dict[str, Any]]:
    return [f.get("details", {}) for f in check["findings"] if f.get("status") == "warning"]


def _apply_fixes(
    store: Store,
    workflow: Workflow,
    checks: list[CheckReport],
    tracker: IssueTracker | None,
) -> dict[str, FixAction]:
    """Apply best-effort remediation for fixable checks.

    Half-applied finishes are repaired before stuck tasks are reset, so a
    task whose session recorded its next stage is advanced rather than
    marked incomplete.
    """
    actions: dict[str, FixAction] = {}
    checks_by_name = {c["name"]: c for c in checks}

    unfinished = checks_by_name.get("unfinished_transitions")
    if unfinished and unfinished["status"] != "pass":
        action = _new_fix_action()
        for details in _warnings(unfinished):
            task_name = str(details.get("task", ""))
            action["attempted"] += 1
            try:
                if reconcile_task_from_session(store, workflow, task_name, tracker=tracker):
                    action["fixed"] += 1
                else:
                    action["failed"] += 1
                    action["failures"].append({"target": task_name, "reason": "task is claimed"})
            except StagerunError as exc:
                action["failed"] += 1
                action["failures"].append({"target": task_name, "reason": str(exc)})
        actions["unfinished_transitions"] = action

    orphans = checks_by_name.get("orphan_sessions")
    if orphans and orphans["status"] != "pass":
        action = _new_fix_action()
        for details in _warnings(orphans):
            session_id = str(details.get("session", ""))
            action["attempted"] += 1
            try:
                close_abnormal(store, session_id, reason="owner process exited")
                action["fixed"] += 1
            except StagerunError as exc:
                action["failed"] += 1
                action["failures"].append({"target": session_id, "reason": str(exc)})
        actions["orphan_sessions"] = action

    stuck = checks_by_name.get("stuck_tasks")
    if stuck and stuck["status"] != "pass":
        action = _new_fix_action()
        targets = {str(d.get("task", "")) for d in _warnings(stuck)}
        action["attempted"] = len(targets)
        fixed = set(reconcile_running_tasks(store)) & targets
        # Tasks the orphan fix already moved to incomplete count as fixed too.
        for name in targets - fixed:
            task = get_task(store, name)
            if task is not None and task["status"] != TaskStatus.RUNNING:
                fixed.add(name)
            else:
                action["failures"].append({"target": name, "reason": "still running"})
        action["fixed"] = len(fixed)
        action["failed"] = len(targets) - len(fixed)
        actions["stuck_tasks"] = action

    claims = checks_by_name.get("stale_claims")
    if claims and claims["status"] != "pass":
        action = _new_fix_action()
        for details in _warnings(claims):
            task_name = str(details.get("task", ""))
            action["attempted"] += 1
            if remove_stale_claim(store, task_name):
                action["fixed"] += 1
            elif not has_live_claim(store, task_name):
                # Already gone.
                action["fixed"] += 1
            else:
                action["failed"] += 1
                action["failures"].append({"target": task_name, "reason": "claim is live"})
        actions["stale_claims"] = action

    temp = checks_by_name.get("temp_files")
    if temp and temp["status"] != "pass":
        action = _new_fix_action()
        for details in _warnings(temp):
            path_str = str(details.get("path", ""))
            action["attempted"] += 1
            try:
                Path(path_str).unlink(missing_ok=True)
                action["fixed"] += 1
            except OSError as exc:
                action["failed"] += 1
                action["failures"].append({"target": path_str, "reason": str(exc)})
        actions["temp_files"] = action

    return actions
