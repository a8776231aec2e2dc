"""Shared test fixtures: a throwaway repo with a ``code`` workflow root."""

from __future__ import annotations

from pathlib import Path

import pytest

from stagerun.claims import ClaimHandle, acquire, release
from stagerun.issues import FileIssueTracker
from stagerun.paths import workflow_root
from stagerun.sessions import open_session
from stagerun.state import SessionRecord
from stagerun.store import Store
from stagerun.transitions import add_task
from stagerun.workflows import CODE, WRITER, Workflow


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the caller's STAGERUN_* variables out of every test."""
    for name in (
        "STAGERUN_SESSION",
        "STAGERUN_TASK",
        "STAGERUN_AGENT",
        "STAGERUN_MODEL",
        "STAGERUN_REPO_ROOT",
        "STAGERUN_LOOP_LIMIT",
        "STAGERUN_CLAIM_TTL",
        "STAGERUN_POLL_INTERVAL",
        "STAGERUN_LOG_LEVEL",
        "STAGERUN_MODEL_COMMAND",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    return root


@pytest.fixture()
def workflow() -> Workflow:
    return CODE


@pytest.fixture()
def writer_workflow() -> Workflow:
    return WRITER


@pytest.fixture()
def store(repo: Path) -> Store:
    s = Store(workflow_root(repo, "code"))
    s.ensure_layout()
    return s


@pytest.fixture()
def writer_store(repo: Path) -> Store:
    s = Store(workflow_root(repo, "writer"))
    s.ensure_layout()
    return s


@pytest.fixture()
def tracker(store: Store, workflow: Workflow) -> FileIssueTracker:
    return FileIssueTracker(store, workflow)


@pytest.fixture()
def make_task(store: Store, workflow: Workflow):
    def _make(name: str, **kwargs):
        return add_task(store, workflow, name, **kwargs)

    return _make


@pytest.fixture()
def start_stage(store: Store, workflow: Workflow):
    """Claim a task, open a session at *stage* and release the claim again.

    ``finish`` runs in the model process without the claim, so tests that
    exercise it only need the session to exist.
    """

    def _start(name: str, stage: str | None = None) -> SessionRecord:
        handle: ClaimHandle = acquire(store, name)
        try:
            return open_session(store, workflow, handle, stage=stage)
        finally:
            release(store, handle)

    return _start
