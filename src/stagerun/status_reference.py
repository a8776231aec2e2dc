"""Central status and stage reference used by ``help-status``."""

from __future__ import annotations

from typing import Any

from stagerun.errors import (
    AmbiguousSessionError,
    ClaimBusyError,
    CorruptRecordError,
    InvalidTransitionError,
    NotFoundError,
    RecordExistsError,
    TaskNotFoundError,
)
from stagerun.workflows import TASK_SENTINEL, WORKFLOWS, Workflow

STATUS_REFERENCE_SCHEMA = "stagerun_status_reference_v1"

TASK_STATUS_LIFECYCLE = [
    {
        "status": "pending",
        "meaning": "Waiting for a worker to run its current stage.",
        "typical_transitions": ["running"],
    },
    {
        "status": "running",
        "meaning": "A worker holds the claim and a session is open for the current stage.",
        "typical_transitions": ["pending", "issues", "completed", "incomplete", "failed"],
    },
    {
        "status": "incomplete",
        "meaning": "The last stage run was interrupted or crashed; rerun to resume.",
        "typical_transitions": ["running"],
    },
    {
        "status": "issues",
        "meaning": "Open issues must be resolved; the task re-enters a working stage.",
        "typical_transitions": ["running", "pending", "completed"],
    },
    {
        "status": "failed",
        "meaning": (
            "The model exited without finishing in a queue run, or the loop limit tripped. "
            "Activate or set-stage to retry."
        ),
        "typical_transitions": ["pending", "issues"],
    },
    {
        "status": "completed",
        "meaning": "The task reached the terminal stage.",
        "typical_transitions": ["issues"],
    },
]

SESSION_STATUS_LIFECYCLE = [
    {
        "status": "running",
        "meaning": "The stage's model process is working; finish closes it.",
        "typical_transitions": ["finished", "failed"],
    },
    {
        "status": "finished",
        "meaning": "Closed by finish; next_stage records where the task went.",
        "typical_transitions": [],
    },
    {
        "status": "failed",
        "meaning": "Closed abnormally (interrupt, crash, or no finish).",
        "typical_transitions": [],
    },
]

STATUS_LIFECYCLES = [
    {
        "type": "task",
        "label": "Task lifecycle",
        "description": "Statuses used by task records.",
        "statuses": TASK_STATUS_LIFECYCLE,
    },
    {
        "type": "session",
        "label": "Session lifecycle",
        "description": "Statuses used by stage-run sessions.",
        "statuses": SESSION_STATUS_LIFECYCLE,
    },
]

ERROR_KINDS = [
    ClaimBusyError,
    AmbiguousSessionError,
    InvalidTransitionError,
    NotFoundError,
    TaskNotFoundError,
    CorruptRecordError,
    RecordExistsError,
]


def _workflow_reference(workflow: Workflow) -> dict[str, Any]:
    return {
        "kind": workflow.kind,
        "initial_stage": workflow.initial_stage,
        "terminal_stage": workflow.terminal_stage,
        "handoff_stage": workflow.handoff_stage,
        "rework_stage": workflow.rework_stage,
        "guarded_pair": list(workflow.guarded_pair) if workflow.guarded_pair else None,
        "whole_task_sentinel": TASK_SENTINEL,
        "stages": [
            {
                "stage": stage,
                "label": workflow.label(stage),
                "default_next": workflow.transitions.get(stage),
                "queued": stage in workflow.queue_stages,
            }
            for stage in workflow.stages
        ],
    }


def get_status_reference() -> dict[str, Any]:
    """Return a machine-parseable lifecycle reference payload."""
    return {
        "schema": STATUS_REFERENCE_SCHEMA,
        "lifecycles": [
            {
                "type": lifecycle["type"],
                "label": lifecycle["label"],
                "description": lifecycle["description"],
                "statuses": [
                    {
                        "status": status["status"],
                        "meaning": status["meaning"],
                        "typical_transitions": list(status["typical_transitions"]),
                    }
                    for status in lifecycle["statuses"]
                ],
            }
            for lifecycle in STATUS_LIFECYCLES
        ],
        "workflows": [_workflow_reference(wf) for wf in WORKFLOWS.values()],
        "exit_codes": [
            {"kind": "usage", "exit_code": 2},
            *({"kind": err.kind, "exit_code": err.exit_code} for err in ERROR_KINDS),
        ],
    }
