"""Spawn the model process for one stage and wait for it to finish the session."""

from __future__ import annotations

import contextlib
import logging
import os
import shlex
import signal
import subprocess
import threading
from collections.abc import Iterator, Mapping
from enum import StrEnum
from pathlib import Path

from stagerun.config import (
    AGENT_ENV,
    DEFAULT_POLL_INTERVAL_SECONDS,
    LOOP_LIMIT_ENV,
    MODEL_COMMAND_ENV,
    REPO_ROOT_ENV,
    SESSION_ENV,
    TASK_ENV,
)
from stagerun.errors import StagerunError
from stagerun.state import SessionStatus, get_session
from stagerun.store import Store

log = logging.getLogger(__name__)

MODEL_COMMANDS: dict[str, tuple[str, ...]] = {
    "claude": ("claude", "--dangerously-skip-permissions"),
    "codex": ("codex", "--dangerously-bypass-approvals-and-sandbox"),
}
TERMINATE_TIMEOUT_SECONDS = 5.0


class StageResult(StrEnum):
    FINISHED = "finished"
    INTERRUPTED = "interrupted"
    NO_FINISH = "no_finish"


def model_command(model: str, prompt: str) -> list[str]:
    """argv for *model*; ``STAGERUN_MODEL_COMMAND`` replaces the executable part."""
    override = os.environ.get(MODEL_COMMAND_ENV)
    if override:
        base = shlex.split(override)
    else:
        try:
            base = list(MODEL_COMMANDS[model])
        except KeyError:
            raise ValueError(
                f"Unknown model: {model}. Must be one of: {', '.join(MODEL_COMMANDS)}"
            ) from None
    return [*base, prompt]


def base_env(
    *,
    repo_root: Path,
    workflow_kind: str,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env[REPO_ROOT_ENV] = str(repo_root)
    env[AGENT_ENV] = workflow_kind
    env.pop(SESSION_ENV, None)
    env.pop(TASK_ENV, None)
    return env


def child_env(
    *,
    repo_root: Path,
    workflow_kind: str,
    session_id: str,
    task_name: str,
    loop_limit: int | None,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    env = base_env(repo_root=repo_root, workflow_kind=workflow_kind, base=base)
    env[SESSION_ENV] = session_id
    env[TASK_ENV] = task_name
    env[LOOP_LIMIT_ENV] = str(loop_limit or 0)
    return env


@contextlib.contextmanager
def _interrupt_flag() -> Iterator[threading.Event]:
    """Record SIGINT/SIGTERM in an event instead of raising, for the block's duration."""
    flag = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield flag
        return

    def on_signal(signum: int, frame: object) -> None:
        log.info("Received signal %d; stopping stage", signum)
        flag.set()

    previous = {sig: signal.signal(sig, on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield flag
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


class ProcessRunner:
    """Runs one stage: spawn, poll the session record, stop the child when done."""

    def __init__(
        self,
        store: Store,
        *,
        model: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.store = store
        self.model = model
        self.poll_interval = poll_interval

    def _session_finished(self, session_id: str) -> bool:
        session = get_session(self.store, session_id)
        return session is not None and session["status"] == SessionStatus.FINISHED

    def _spawn(
        self, prompt: str, env: Mapping[str, str], cwd: Path, **context: object
    ) -> subprocess.Popen:
        argv = model_command(self.model, prompt)
        try:
            proc = subprocess.Popen(argv, cwd=cwd, env=dict(env))
        except FileNotFoundError as exc:
            raise StagerunError(f"Model command not found: {argv[0]}", **context) from exc
        log.info("Started %s (pid %d)", argv[0], proc.pid)
        return proc

    def _stop(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=TERMINATE_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            log.warning("Model process %d ignored SIGTERM; killing", proc.pid)
            proc.kill()
            proc.wait()

    def run_stage(
        self,
        session_id: str,
        prompt: str,
        *,
        env: Mapping[str, str],
        cwd: Path,
    ) -> StageResult:
        with _interrupt_flag() as interrupted:
            proc = self._spawn(prompt, env, cwd, session=session_id)
            log.debug("Waiting for session %s", session_id)
            try:
                while True:
                    if interrupted.is_set():
                        self._stop(proc)
                        return StageResult.INTERRUPTED
                    if self._session_finished(session_id):
                        self._stop(proc)
                        return StageResult.FINISHED
                    try:
                        proc.wait(timeout=self.poll_interval)
                    except subprocess.TimeoutExpired:
                        continue
                    break
            except BaseException:
                self._stop(proc)
                raise

        log.info("Model process exited with %s", proc.returncode)
        if interrupted.is_set():
            return StageResult.INTERRUPTED
        if self._session_finished(session_id):
            return StageResult.FINISHED
        return StageResult.NO_FINISH

    def run_once(self, prompt: str, *, env: Mapping[str, str], cwd: Path) -> int:
        """Run the model outside any session and return its exit code.

        An interrupt stops the child; its exit code is returned as usual.
        """
        with _interrupt_flag() as interrupted:
            proc = self._spawn(prompt, env, cwd)
            try:
                while True:
                    if interrupted.is_set():
                        self._stop(proc)
                        break
                    try:
                        proc.wait(timeout=self.poll_interval)
                    except subprocess.TimeoutExpired:
                        continue
                    break
            except BaseException:
                self._stop(proc)
                raise
        log.info("Model process exited with %s", proc.returncode)
        return proc.returncode
