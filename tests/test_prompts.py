"""Tests for stage prompt rendering."""

from __future__ import annotations

from pathlib import Path

from stagerun.prompts import (
    build_debug_prompt,
    build_prompt,
    focus_text,
    issues_mode_text,
    load_template,
    render_prompt,
)
from stagerun.store import Store


def test_default_prompt_mentions_finish_command(store: Store, workflow, repo: Path):
    prompt = build_prompt(
        store.root, workflow, "build", task="alpha", session="1-2-3", repo=repo
    )
    assert "task 'alpha'" in prompt
    assert "stage 'build'" in prompt
    assert "stagerun finish build --session 1-2-3" in prompt
    assert "open issues" not in prompt


def test_prompt_override_file(store: Store, workflow, repo: Path):
    prompts = store.root / "prompts"
    prompts.mkdir()
    (prompts / "REVIEW.md").write_text("Review {task} in {repo} ({session}) {unknown}")
    assert load_template(store.root, "review").startswith("Review {task}")

    prompt = build_prompt(
        store.root, workflow, "review", task="alpha", session="9-9-9", repo=repo
    )
    assert prompt == f"Review alpha in {repo} (9-9-9) {{unknown}}"


def test_issues_mode_lists_open_issues(store: Store, workflow, repo: Path, tracker, make_task):
    make_task("alpha")
    tracker.add("Null pointer", task_name="alpha", priority="P0")
    text = issues_mode_text(tracker.open_issues("alpha"))
    assert "[P0]" in text
    assert "Null pointer" in text
    assert issues_mode_text([]) == ""

    prompt = build_prompt(
        store.root,
        workflow,
        "build",
        task="alpha",
        session="1-2-3",
        repo=repo,
        open_issues=tracker.open_issues("alpha"),
    )
    assert "stagerun issue resolve" in prompt


def test_render_prompt_leaves_unknown_placeholders():
    assert render_prompt("{a} {b}", {"a": "x"}) == "x {b}"


def test_focus_lands_in_stage_prompt(store: Store, workflow, repo: Path):
    assert focus_text(None) == ""
    assert focus_text("   ") == ""

    prompt = build_prompt(
        store.root,
        workflow,
        "review",
        task="alpha",
        session="1-2-3",
        repo=repo,
        focus="  retry logic ",
    )
    assert "## Focus area" in prompt
    assert "> retry logic\n" in prompt
    assert "stagerun finish review --session 1-2-3" in prompt


def test_debug_prompt_puts_report_first(store: Store, workflow, repo: Path):
    bare = build_debug_prompt(store.root, workflow, repo=repo, report="  ")
    assert bare.startswith(f"Debug a problem in {repo}")
    assert "Bug report" not in bare

    prompt = build_debug_prompt(store.root, workflow, repo=repo, report="KeyError: 'stage'\n")
    assert prompt == f"## Bug report and logs\n\nKeyError: 'stage'\n\n{bare}"


def test_debug_prompt_override_file(store: Store, workflow, repo: Path):
    prompts = store.root / "prompts"
    prompts.mkdir()
    (prompts / "DEBUG.md").write_text("Hunt the bug in {workflow}.")
    assert build_debug_prompt(store.root, workflow, repo=repo, report="") == "Hunt the bug in code."
