"""Settings resolution: CLI overrides, environment, ``.agents/config.toml``, defaults."""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from stagerun.paths import config_path

log = logging.getLogger(__name__)

DEFAULT_AGENT = "code"
DEFAULT_MODEL = "claude"
DEFAULT_CLAIM_TTL_SECONDS = 3600
DEFAULT_LOOP_LIMIT = 4
DEFAULT_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_LOG_LEVEL = "WARNING"

VALID_MODELS = ("claude", "codex")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

SESSION_ENV = "STAGERUN_SESSION"
TASK_ENV = "STAGERUN_TASK"
AGENT_ENV = "STAGERUN_AGENT"
MODEL_ENV = "STAGERUN_MODEL"
REPO_ROOT_ENV = "STAGERUN_REPO_ROOT"
LOOP_LIMIT_ENV = "STAGERUN_LOOP_LIMIT"
CLAIM_TTL_ENV = "STAGERUN_CLAIM_TTL"
POLL_INTERVAL_ENV = "STAGERUN_POLL_INTERVAL"
LOG_LEVEL_ENV = "STAGERUN_LOG_LEVEL"
MODEL_COMMAND_ENV = "STAGERUN_MODEL_COMMAND"


@dataclass(frozen=True)
class Settings:
    agent: str = DEFAULT_AGENT
    model: str = DEFAULT_MODEL
    claim_ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS
    # None means unbounded.
    loop_limit: int | None = DEFAULT_LOOP_LIMIT
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    log_level: str = DEFAULT_LOG_LEVEL


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict on any read/parse failure."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError) as exc:
        log.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    return raw if isinstance(raw, dict) else {}


def _int_value(name: str, raw: object, default: int, *, min_value: int) -> int:
    if raw is None:
        return default
    try:
        return max(min_value, int(str(raw)))
    except ValueError:
        log.warning("Invalid %s=%r; falling back to %d", name, raw, default)
        return default


def _float_value(name: str, raw: object, default: float, *, min_value: float) -> float:
    if raw is None:
        return default
    try:
        return max(min_value, float(str(raw)))
    except ValueError:
        log.warning("Invalid %s=%r; falling back to %s", name, raw, default)
        return default


def parse_loop_limit(raw: object) -> int | None:
    """Parse a loop limit; ``0`` or ``unbounded`` disable the guard.

    Raises ``ValueError`` for anything else that is not a positive integer.
    """
    text = str(raw).strip().lower()
    if text in {"0", "unbounded", "none", "inf"}:
        return None
    value = int(text)
    if value < 0:
        raise ValueError(f"Loop limit must be >= 0, got {value}.")
    return value


def _pick(
    key: str,
    env_name: str,
    overrides: Mapping[str, Any],
    file_config: Mapping[str, Any],
) -> Any:
    if overrides.get(key) is not None:
        return overrides[key]
    env_value = os.environ.get(env_name)
    if env_value not in (None, ""):
        return env_value
    return file_config.get(key)


def load_settings(
    repo_root: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Resolve settings with precedence: overrides > env > config file > defaults."""
    overrides = overrides or {}
    file_config = _read_toml_file(config_path(repo_root)) if repo_root is not None else {}

    agent = str(_pick("agent", AGENT_ENV, overrides, file_config) or DEFAULT_AGENT)
    model = str(_pick("model", MODEL_ENV, overrides, file_config) or DEFAULT_MODEL).lower()
    if model not in VALID_MODELS:
        raise ValueError(f"Unknown model: {model}. Must be one of: {', '.join(VALID_MODELS)}")

    ttl = _int_value(
        CLAIM_TTL_ENV,
        _pick("claim_ttl_seconds", CLAIM_TTL_ENV, overrides, file_config),
        DEFAULT_CLAIM_TTL_SECONDS,
        min_value=1,
    )
    poll = _float_value(
        POLL_INTERVAL_ENV,
        _pick("poll_interval_seconds", POLL_INTERVAL_ENV, overrides, file_config),
        DEFAULT_POLL_INTERVAL_SECONDS,
        min_value=0.05,
    )

    raw_limit = _pick("loop_limit", LOOP_LIMIT_ENV, overrides, file_config)
    loop_limit: int | None = DEFAULT_LOOP_LIMIT
    if raw_limit is not None:
        try:
            loop_limit = parse_loop_limit(raw_limit)
        except ValueError:
            log.warning(
                "Invalid %s=%r; falling back to %d",
                LOOP_LIMIT_ENV,
                raw_limit,
                DEFAULT_LOOP_LIMIT,
            )

    level = str(_pick("log_level", LOG_LEVEL_ENV, overrides, file_config) or DEFAULT_LOG_LEVEL)
    level = level.upper()
    if level not in VALID_LOG_LEVELS:
        log.warning("Invalid %s=%r; falling back to %s", LOG_LEVEL_ENV, level, DEFAULT_LOG_LEVEL)
        level = DEFAULT_LOG_LEVEL

    return Settings(
        agent=agent,
        model=model,
        claim_ttl_seconds=ttl,
        loop_limit=loop_limit,
        poll_interval_seconds=poll,
        log_level=level,
    )
