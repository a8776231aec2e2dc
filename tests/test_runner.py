"""Tests for the model process runner."""

from __future__ import annotations

import os
import shlex
import signal
import sys
from pathlib import Path

import pytest

from stagerun.claims import acquire, release
from stagerun.errors import StagerunError
from stagerun.runner import (
    ProcessRunner,
    StageResult,
    _interrupt_flag,
    base_env,
    child_env,
    model_command,
)
from stagerun.sessions import open_session
from stagerun.state import get_session, get_task
from stagerun.store import Store

_FINISH_SCRIPT = "from stagerun.cli import main; main(['finish'])"


def _open(store: Store, workflow, name: str, stage: str):
    handle = acquire(store, name)
    try:
        return open_session(store, workflow, handle, stage=stage)
    finally:
        release(store, handle)


def _env(repo: Path, session_id: str, task: str) -> dict[str, str]:
    return child_env(
        repo_root=repo,
        workflow_kind="code",
        session_id=session_id,
        task_name=task,
        loop_limit=4,
    )


def test_model_commands_run_non_interactively():
    assert model_command("claude", "do it") == [
        "claude",
        "--dangerously-skip-permissions",
        "do it",
    ]
    assert model_command("codex", "do it")[-1] == "do it"
    with pytest.raises(ValueError, match="Unknown model"):
        model_command("eliza", "hi")


def test_model_command_override(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("STAGERUN_MODEL_COMMAND", "my-agent --fast")
    assert model_command("claude", "prompt text") == ["my-agent", "--fast", "prompt text"]


def test_child_env_exports_session_identity(repo: Path):
    env = child_env(
        repo_root=repo,
        workflow_kind="writer",
        session_id="1-2-3",
        task_name="essay",
        loop_limit=None,
        base={"PATH": "/bin"},
    )
    assert env == {
        "PATH": "/bin",
        "STAGERUN_REPO_ROOT": str(repo),
        "STAGERUN_AGENT": "writer",
        "STAGERUN_SESSION": "1-2-3",
        "STAGERUN_TASK": "essay",
        "STAGERUN_LOOP_LIMIT": "0",
    }


def test_process_that_finishes_the_session(
    repo: Path, store: Store, workflow, make_task, monkeypatch: pytest.MonkeyPatch
):
    make_task("alpha")
    session = _open(store, workflow, "alpha", "build")
    monkeypatch.setenv(
        "STAGERUN_MODEL_COMMAND", shlex.join([sys.executable, "-c", _FINISH_SCRIPT])
    )
    runner = ProcessRunner(store, model="claude", poll_interval=0.05)

    result = runner.run_stage(
        session["session_id"],
        "prompt",
        env=_env(repo, session["session_id"], "alpha"),
        cwd=repo,
    )

    assert result == StageResult.FINISHED
    assert get_session(store, session["session_id"])["next_stage"] == "review"
    assert get_task(store, "alpha")["stage"] == "review"


def test_process_that_exits_without_finishing(
    repo: Path, store: Store, workflow, make_task, monkeypatch: pytest.MonkeyPatch
):
    make_task("alpha")
    session = _open(store, workflow, "alpha", "build")
    monkeypatch.setenv("STAGERUN_MODEL_COMMAND", shlex.join([sys.executable, "-c", "pass"]))
    runner = ProcessRunner(store, model="claude", poll_interval=0.05)

    result = runner.run_stage(
        session["session_id"],
        "prompt",
        env=_env(repo, session["session_id"], "alpha"),
        cwd=repo,
    )

    assert result == StageResult.NO_FINISH
    assert get_session(store, session["session_id"])["status"] == "running"


def test_missing_model_binary(
    repo: Path, store: Store, workflow, make_task, monkeypatch: pytest.MonkeyPatch
):
    make_task("alpha")
    session = _open(store, workflow, "alpha", "build")
    monkeypatch.setenv("STAGERUN_MODEL_COMMAND", "stagerun-no-such-model-binary")
    runner = ProcessRunner(store, model="claude")

    with pytest.raises(StagerunError, match="Model command not found"):
        runner.run_stage(
            session["session_id"],
            "prompt",
            env=_env(repo, session["session_id"], "alpha"),
            cwd=repo,
        )


def test_run_once_returns_exit_code_without_session(
    repo: Path, store: Store, monkeypatch: pytest.MonkeyPatch
):
    script = "import os, sys; sys.exit(3 if 'STAGERUN_SESSION' in os.environ else 5)"
    monkeypatch.setenv("STAGERUN_MODEL_COMMAND", shlex.join([sys.executable, "-c", script]))
    env = base_env(
        repo_root=repo,
        workflow_kind="code",
        base={**os.environ, "STAGERUN_SESSION": "1-2-3", "STAGERUN_TASK": "alpha"},
    )
    assert "STAGERUN_TASK" not in env

    runner = ProcessRunner(store, model="claude", poll_interval=0.05)

    assert runner.run_once("prompt", env=env, cwd=repo) == 5


def test_interrupt_flag_catches_sigint_and_restores_handler():
    previous = signal.getsignal(signal.SIGINT)
    with _interrupt_flag() as flag:
        os.kill(os.getpid(), signal.SIGINT)
        assert flag.wait(timeout=1)
    assert signal.getsignal(signal.SIGINT) is previous
