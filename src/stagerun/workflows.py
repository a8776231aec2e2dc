"""Workflow definitions: ordered stages and how a finished stage advances.

A workflow is pure data. It is looked up once per command via
``get_workflow`` and passed explicitly to everything that needs it.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

TERMINAL_STAGE = "completed"
# Finishing the sentinel moves the whole task to the terminal stage.
TASK_SENTINEL = "task"


@dataclass(frozen=True)
class Workflow:
    kind: str
    stages: tuple[str, ...]
    initial_stage: str
    transitions: Mapping[str, str]
    queue_stages: frozenset[str]
    rework_stage: str
    handoff_stage: str | None = None
    # (from_stage, to_stage) transition counted by the oscillation guard.
    guarded_pair: tuple[str, str] | None = None
    labels: Mapping[str, str] = field(default_factory=dict)
    # Files written into a new task directory, relative path -> template.
    # ``{task}`` and ``{date}`` are substituted.
    scaffold: Mapping[str, str] = field(default_factory=dict)
    scaffold_dirs: tuple[str, ...] = ()

    @property
    def terminal_stage(self) -> str:
        return TERMINAL_STAGE

    @property
    def valid_finish_targets(self) -> tuple[str, ...]:
        return self.stages

    @property
    def finishable_stages(self) -> tuple[str, ...]:
        return (*(s for s in self.stages if s != TERMINAL_STAGE), TASK_SENTINEL)

    def has_stage(self, stage: str) -> bool:
        return stage in self.stages

    def validate_stage(self, stage: str) -> str:
        if stage not in self.stages:
            raise ValueError(
                f"Invalid stage '{stage}' for {self.kind} workflow. "
                f"Must be one of: {', '.join(self.stages)}"
            )
        return stage

    def is_terminal(self, stage: str) -> bool:
        return stage == TERMINAL_STAGE

    def stage_rank(self, stage: str) -> int:
        try:
            return self.stages.index(stage)
        except ValueError:
            return len(self.stages)

    def reached_handoff(self, stage: str) -> bool:
        """Whether *stage* is at or past the hand-off from setup to queue work."""
        if self.handoff_stage is None:
            return False
        return self.stage_rank(stage) >= self.stage_rank(self.handoff_stage)

    def default_next(self, stage: str, overrides: Mapping[str, str] | None = None) -> str:
        """Stage that follows *stage* when no explicit target is given."""
        if overrides and stage in overrides:
            return self.validate_stage(overrides[stage])
        if stage == TASK_SENTINEL:
            return TERMINAL_STAGE
        try:
            return self.transitions[stage]
        except KeyError:
            raise ValueError(
                f"Stage '{stage}' has no successor in the {self.kind} workflow."
            ) from None

    def reentry_stage_for(self, issue_type: str | None) -> str:
        """Stage an issue of *issue_type* sends a task back to."""
        return self.rework_stage

    def label(self, stage: str) -> str:
        return self.labels.get(stage, stage)


@dataclass(frozen=True)
class CodeWorkflow(Workflow):
    spec_rework_stage: str = "spec-review-issues"

    def reentry_stage_for(self, issue_type: str | None) -> str:
        if issue_type == "spec":
            return self.spec_rework_stage
        return self.rework_stage


CODE = CodeWorkflow(
    kind="code",
    stages=(
        "spec",
        "spec-review",
        "spec-review-issues",
        "planning",
        "build",
        "review",
        TERMINAL_STAGE,
    ),
    initial_stage="spec",
    transitions={
        "spec": "planning",
        "spec-review": "planning",
        "spec-review-issues": "planning",
        "planning": "build",
        "build": "review",
        "review": TERMINAL_STAGE,
    },
    queue_stages=frozenset({"spec-review-issues", "build", "review"}),
    rework_stage="build",
    handoff_stage="build",
    guarded_pair=("review", "build"),
    labels={
        "spec": "Spec",
        "spec-review": "Spec review",
        "spec-review-issues": "Spec review fixes",
        "planning": "Planning",
        "build": "Build",
        "review": "Review",
        TERMINAL_STAGE: "Completed",
    },
    scaffold={
        "spec/overview.md": "# Overview\n\n",
        "spec/types.md": "# Types\n\n",
        "spec/modules.md": "# Modules\n\n",
        "spec/errors.md": "# Errors\n\n",
        "plan.md": (
            "# Implementation Plan - {task}\n\n> Generated: {date}\n> Status: PENDING_SPEC\n\n"
            "- [ ] (tasks will be added during planning)\n"
        ),
    },
    scaffold_dirs=("spec",),
)

WRITER = Workflow(
    kind="writer",
    stages=("init", "plan", "write", "edit", TERMINAL_STAGE),
    initial_stage="init",
    transitions={
        "init": "plan",
        "plan": "write",
        "write": "edit",
        "edit": TERMINAL_STAGE,
    },
    queue_stages=frozenset({"write", "edit"}),
    rework_stage="write",
    guarded_pair=("edit", "write"),
    labels={
        "init": "Init",
        "plan": "Plan",
        "write": "Write",
        "edit": "Edit",
        TERMINAL_STAGE: "Completed",
    },
    scaffold={
        "editorial_plan.md": (
            "# Editorial Plan - {task}\n\n> Generated: {date}\n"
            "> Status: Awaiting project setup\n\n"
            "## Section Status\n\n(sections added after init)\n"
        ),
    },
    scaffold_dirs=("content", "outline", "style", "research"),
)

WORKFLOWS: dict[str, Workflow] = {wf.kind: wf for wf in (CODE, WRITER)}


def get_workflow(kind: str) -> Workflow:
    try:
        return WORKFLOWS[kind]
    except KeyError:
        raise ValueError(
            f"Unknown workflow '{kind}'. Must be one of: {', '.join(sorted(WORKFLOWS))}"
        ) from None
