"""Canonical filesystem paths for stagerun state."""

from __future__ import annotations

import os
import re
from pathlib import Path

AGENTS_DIRNAME = ".agents"
CONFIG_FILENAME = "config.toml"

TASKS_DIR = "tasks"
SESSIONS_DIR = "sessions"
CLAIMS_DIR = "claims"
ISSUES_DIR = "issues"
PROMPTS_DIR = "prompts"

TASK_RECORD = "task.json"
TASK_LOG = "logs.jsonl"

MAX_TASK_NAME_LENGTH = 100
_TASK_NAME_RE = re.compile(r"^[a-z0-9-]+$")


class RepoNotFoundError(Exception):
    pass


def find_repo_root(start: Path | None = None) -> Path:
    """Locate the repository root.

    ``STAGERUN_REPO_ROOT`` wins; otherwise walk up from *start* (default:
    cwd) to the first directory holding ``.agents/`` or ``.git/``.
    """
    env_root = os.environ.get("STAGERUN_REPO_ROOT")
    if env_root:
        return Path(env_root).expanduser()

    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / AGENTS_DIRNAME).is_dir() or (candidate / ".git").is_dir():
            return candidate
    raise RepoNotFoundError(
        "No repo found (missing .agents/ or .git). Run 'stagerun init' in a repo."
    )


def agents_dir(repo_root: Path) -> Path:
    return repo_root / AGENTS_DIRNAME


def workflow_root(repo_root: Path, kind: str) -> Path:
    return agents_dir(repo_root) / kind


def config_path(repo_root: Path) -> Path:
    return agents_dir(repo_root) / CONFIG_FILENAME


def validate_task_name(name: str) -> str:
    """Return *name* unchanged if it is a valid task slug, else raise ValueError."""
    if not name:
        raise ValueError("Task name required.")
    if len(name) > MAX_TASK_NAME_LENGTH:
        raise ValueError(f"Task name too long (max {MAX_TASK_NAME_LENGTH} chars).")
    if name.startswith(".") or ".." in name or not _TASK_NAME_RE.match(name):
        raise ValueError(
            f"Invalid task name '{name}'. Use lowercase letters, digits and '-'."
        )
    return name
