"""File-per-record entity store rooted at one workflow directory.

Every record is a pretty-printed JSON object. Mutations go through a
temp file in the target directory followed by ``os.replace`` (update) or
``os.link`` (create-if-absent), so readers observe either the previous
complete file or the new complete file, never a partial one.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError

from stagerun.errors import CorruptRecordError, RecordExistsError
from stagerun.paths import (
    CLAIMS_DIR,
    ISSUES_DIR,
    SESSIONS_DIR,
    TASK_RECORD,
    TASKS_DIR,
)

log = logging.getLogger(__name__)

RECORD_VERSION = 1
_TMP_PREFIX = ".tmp-"
_LOCK_SUFFIX = ".lock"

_TIMESTAMP = {"type": "string", "minLength": 1}
_NULLABLE_STRING = {"type": ["string", "null"]}

RECORD_SCHEMAS: dict[str, dict[str, Any]] = {
    "task": {
        "type": "object",
        "required": [
            "version",
            "name",
            "workflow_kind",
            "stage",
            "status",
            "held",
            "created_at",
            "updated_at",
        ],
        "properties": {
            "version": {"const": RECORD_VERSION},
            "name": {"type": "string", "pattern": "^[a-z0-9-]+$"},
            "workflow_kind": {"type": "string"},
            "stage": {"type": "string", "minLength": 1},
            "status": {
                "enum": ["pending", "running", "incomplete", "failed", "completed", "issues"]
            },
            "held": {"type": "boolean"},
            "created_at": _TIMESTAMP,
            "updated_at": _TIMESTAMP,
            "last_session": _NULLABLE_STRING,
            "last_error": _NULLABLE_STRING,
            "description": _NULLABLE_STRING,
            "queue_rank": {"type": ["integer", "null"]},
            "bounce_count": {"type": "integer", "minimum": 0},
        },
    },
    "session": {
        "type": "object",
        "required": [
            "version",
            "session_id",
            "task_name",
            "workflow_kind",
            "stage",
            "status",
            "started_at",
            "pid",
            "host",
        ],
        "properties": {
            "version": {"const": RECORD_VERSION},
            "session_id": {"type": "string", "minLength": 1},
            "task_name": {"type": "string"},
            "workflow_kind": {"type": "string"},
            "stage": {"type": "string"},
            "status": {"enum": ["running", "finished", "failed"]},
            "started_at": _TIMESTAMP,
            "finished_at": _NULLABLE_STRING,
            "next_stage": _NULLABLE_STRING,
            "pid": {"type": "integer"},
            "host": {"type": "string"},
            "error": _NULLABLE_STRING,
        },
    },
    "claim": {
        "type": "object",
        "required": [
            "version",
            "task_name",
            "claim_id",
            "pid",
            "host",
            "acquired_at",
            "ttl_seconds",
        ],
        "properties": {
            "version": {"const": RECORD_VERSION},
            "task_name": {"type": "string"},
            "claim_id": {"type": "string", "minLength": 1},
            "pid": {"type": "integer"},
            "host": {"type": "string"},
            "acquired_at": _TIMESTAMP,
            "ttl_seconds": {"type": "integer", "minimum": 1},
        },
    },
    "issue": {
        "type": "object",
        "required": ["version", "id", "title", "status", "priority", "type", "created_at"],
        "properties": {
            "version": {"const": RECORD_VERSION},
            "id": {"type": "string", "minLength": 1},
            "title": {"type": "string"},
            "status": {"enum": ["open", "resolved"]},
            "priority": {"enum": ["P0", "P1", "P2", "P3"]},
            "type": {"type": "string"},
            "source": {"type": "string"},
            "task": _NULLABLE_STRING,
            "stage": _NULLABLE_STRING,
            "body": _NULLABLE_STRING,
            "created_at": _TIMESTAMP,
            "updated_at": _TIMESTAMP,
            "resolved_at": _NULLABLE_STRING,
            "resolution": _NULLABLE_STRING,
        },
    },
}

_VALIDATORS = {kind: Draft202012Validator(schema) for kind, schema in RECORD_SCHEMAS.items()}
RECORD_KINDS = tuple(RECORD_SCHEMAS)


def _dump(record: dict[str, Any]) -> str:
    return json.dumps(record, indent=2, sort_keys=True) + "\n"


class Store:
    """Handle on one workflow root (``.agents/<kind>``).

    Module-level record functions take a ``Store`` first, the same way
    query helpers take a connection.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"Store({str(self.root)!r})"

    # -- layout ------------------------------------------------------------

    @property
    def tasks_dir(self) -> Path:
        return self.root / TASKS_DIR

    def task_dir(self, name: str) -> Path:
        return self.tasks_dir / name

    def path_for(self, kind: str, key: str) -> Path:
        if kind == "task":
            return self.task_dir(key) / TASK_RECORD
        if kind == "session":
            return self.root / SESSIONS_DIR / f"{key}.json"
        if kind == "claim":
            return self.root / CLAIMS_DIR / f"{key}.json"
        if kind == "issue":
            return self.root / ISSUES_DIR / f"{key}.json"
        raise ValueError(f"Unknown record kind '{kind}'. Must be one of: {RECORD_KINDS}")

    def ensure_layout(self) -> None:
        for sub in (TASKS_DIR, SESSIONS_DIR, CLAIMS_DIR, ISSUES_DIR):
            (self.root / sub).mkdir(parents=True, exist_ok=True)

    # -- reads -------------------------------------------------------------

    def read(self, kind: str, key: str) -> dict[str, Any] | None:
        """Return the record, ``None`` if absent, or raise ``CorruptRecordError``."""
        return self.read_path(kind, self.path_for(kind, key))

    def read_path(self, kind: str, path: Path) -> dict[str, Any] | None:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            record = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CorruptRecordError(
                path, f"invalid JSON ({exc.msg} at line {exc.lineno})"
            ) from exc
        self.validate(kind, record, path=path)
        return record

    def validate(self, kind: str, record: object, *, path: Path | None = None) -> None:
        try:
            _VALIDATORS[kind].validate(record)
        except ValidationError as exc:
            where = "/".join(str(p) for p in exc.absolute_path) or "<root>"
            raise CorruptRecordError(
                path or self.root, f"{where}: {exc.message}"
            ) from exc

    def exists(self, kind: str, key: str) -> bool:
        return self.path_for(kind, key).exists()

    def keys(self, kind: str) -> list[str]:
        """Sorted keys of every stored record of *kind*."""
        if kind == "task":
            return [name for name in self.task_dirs() if self.exists("task", name)]
        directory = self.path_for(kind, "_").parent
        if not directory.is_dir():
            return []
        return sorted(
            p.stem
            for p in directory.glob("*.json")
            if not p.name.startswith(_TMP_PREFIX)
        )

    def task_dirs(self) -> list[str]:
        """Names of every directory under ``tasks/``, record or not."""
        if not self.tasks_dir.is_dir():
            return []
        return sorted(
            p.name for p in self.tasks_dir.iterdir() if p.is_dir() and not p.name.startswith(".")
        )

    # -- writes ------------------------------------------------------------

    def _write_temp(self, target: Path, record: dict[str, Any]) -> Path:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=_TMP_PREFIX, suffix=".json", dir=target.parent)
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(_dump(record))
                handle.flush()
                os.fsync(handle.fileno())
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        return tmp

    def write(self, kind: str, key: str, record: dict[str, Any]) -> None:
        """Atomically replace the record at *key*."""
        self.validate(kind, record)
        target = self.path_for(kind, key)
        tmp = self._write_temp(target, record)
        try:
            os.replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    def create_new(self, kind: str, key: str, record: dict[str, Any]) -> None:
        """Create the record, raising ``RecordExistsError`` instead of overwriting."""
        self.validate(kind, record)
        target = self.path_for(kind, key)
        tmp = self._write_temp(target, record)
        try:
            os.link(tmp, target)
        except FileExistsError as exc:
            raise RecordExistsError(target) from exc
        finally:
            tmp.unlink(missing_ok=True)

    def remove(self, kind: str, key: str) -> bool:
        try:
            self.path_for(kind, key).unlink()
        except FileNotFoundError:
            return False
        return True

    def remove_task_dir(self, name: str) -> bool:
        directory = self.task_dir(name)
        if not directory.is_dir():
            return False
        shutil.rmtree(directory)
        return True

    # -- locks -------------------------------------------------------------

    def lock_path(self, kind: str, key: str) -> Path:
        return self.path_for(kind, key).with_suffix(_LOCK_SUFFIX)

    def try_lock(
        self,
        kind: str,
        key: str,
        *,
        stale_after: float,
        attempts: int = 1,
        retry_delay: float = 0.02,
    ) -> bool:
        """Create the short-lived lock for *key*; ``False`` while another caller holds it.

        A lock older than *stale_after* seconds was left by a crashed holder
        and is broken.
        """
        path = self.lock_path(kind, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(attempts):
            if self._create_lock(path, stale_after):
                return True
            if attempt + 1 < attempts:
                time.sleep(retry_delay)
        return False

    def _create_lock(self, path: Path, stale_after: float) -> bool:
        for _ in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                try:
                    age = time.time() - path.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age <= stale_after:
                    return False
                log.warning("Breaking stale lock %s (%.0fs old)", path, age)
                path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(f"{os.getpid()}\n")
            return True
        return False

    def unlock(self, kind: str, key: str) -> None:
        self.lock_path(kind, key).unlink(missing_ok=True)

    def leftover_temp_files(self) -> list[Path]:
        """Temp files and locks left behind by crashed writers."""
        if not self.root.is_dir():
            return []
        return sorted(
            p
            for p in self.root.rglob("*")
            if p.is_file() and (p.name.startswith(_TMP_PREFIX) or p.suffix == _LOCK_SUFFIX)
        )
