"""Stage prompts handed to the model process."""

from __future__ import annotations

import logging
from pathlib import Path

from stagerun.issues import IssueRecord
from stagerun.paths import PROMPTS_DIR
from stagerun.workflows import Workflow

log = logging.getLogger(__name__)

_DEFAULT_TEMPLATE = (
    "You are working on task '{task}' in {repo}, stage '{stage}' of the {workflow} "
    "workflow.\n\n"
    "Do the work this stage calls for using the files in "
    ".agents/{workflow}/tasks/{task}/.\n"
    "{focus}"
    "{issues_mode}"
    "When the stage is done, run: stagerun finish {stage} --session {session}\n"
)

_DEFAULT_PROMPTS: dict[str, str] = {
    "spec": "Write the specification for '{task}' under its spec/ directory.\n",
    "spec-review": "Review the specification for '{task}' and record issues found.\n",
    "spec-review-issues": "Resolve the open spec issues for '{task}'.\n",
    "planning": "Turn the specification for '{task}' into plan.md.\n",
    "build": "Implement the next items of plan.md for '{task}'.\n",
    "review": (
        "Review the implementation of '{task}'. File issues with 'stagerun issue add' "
        "for anything that must change.\n"
    ),
    "init": "Set up the writing project '{task}': audience, style and outline.\n",
    "plan": "Plan the sections of '{task}' in editorial_plan.md.\n",
    "write": "Write the next planned section of '{task}'.\n",
    "edit": "Edit the written sections of '{task}'.\n",
}

_DEBUG_TEMPLATE = (
    "Debug a problem in {repo} ({workflow} workflow). Reproduce it, find the root "
    "cause, fix it and add a regression test. There is no stage to finish.\n"
)


def focus_text(focus: str | None) -> str:
    if not focus or not focus.strip():
        return ""
    return (
        "## Focus area\n\nThe user asked for special attention to:\n"
        f"> {focus.strip()}\n\n"
        "Look at this first, then carry on with the whole stage.\n\n"
    )


def issues_mode_text(issues: list[IssueRecord]) -> str:
    if not issues:
        return ""
    lines = ["", "This task has open issues. Resolve them before finishing this stage:"]
    lines.extend(f"- [{i['priority']}] {i['id']}: {i['title']}" for i in issues)
    lines.append("Mark each one resolved with 'stagerun issue resolve <id>'.")
    return "\n".join(lines) + "\n\n"


def load_template(workflow_root: Path, stage: str) -> str:
    """Prompt template for *stage*: ``prompts/<STAGE>.md`` if present, else built in."""
    override = workflow_root / PROMPTS_DIR / f"{stage.upper()}.md"
    if override.is_file():
        log.debug("Using prompt override %s", override)
        return override.read_text(encoding="utf-8")
    return _DEFAULT_PROMPTS.get(stage, "") + "\n" + _DEFAULT_TEMPLATE


def render_prompt(template: str, values: dict[str, str]) -> str:
    """Substitute ``{name}`` placeholders; unknown braces are left alone."""
    output = template
    for key, value in values.items():
        output = output.replace("{" + key + "}", value)
    return output


def build_prompt(
    workflow_root: Path,
    workflow: Workflow,
    stage: str,
    *,
    task: str,
    session: str,
    repo: Path,
    open_issues: list[IssueRecord] | None = None,
    focus: str | None = None,
) -> str:
    return render_prompt(
        load_template(workflow_root, stage),
        {
            "task": task,
            "session": session,
            "repo": str(repo),
            "stage": stage,
            "workflow": workflow.kind,
            "issues_mode": issues_mode_text(open_issues or []),
            "focus": focus_text(focus),
        },
    )


def build_debug_prompt(workflow_root: Path, workflow: Workflow, *, repo: Path, report: str) -> str:
    """Prompt for a one-off debugging run, with the bug report in front."""
    override = workflow_root / PROMPTS_DIR / "DEBUG.md"
    template = override.read_text(encoding="utf-8") if override.is_file() else _DEBUG_TEMPLATE
    prompt = render_prompt(template, {"repo": str(repo), "workflow": workflow.kind})
    if report.strip():
        prompt = f"## Bug report and logs\n\n{report.strip()}\n\n{prompt}"
    return prompt
