from __future__ import annotations

import dataclasses
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from stagerun import __version__
from stagerun.config import (
    DEFAULT_LOG_LEVEL,
    LOG_LEVEL_ENV,
    SESSION_ENV,
    TASK_ENV,
    VALID_LOG_LEVELS,
    VALID_MODELS,
    Settings,
    load_settings,
    parse_loop_limit,
)
from stagerun.errors import RecordExistsError, StagerunError
from stagerun.issues import (
    DEFAULT_ISSUE_PRIORITY,
    VALID_ISSUE_PRIORITIES,
    VALID_ISSUE_SOURCES,
    VALID_ISSUE_STATUSES,
    VALID_ISSUE_TYPES,
    FileIssueTracker,
)
from stagerun.paths import (
    PROMPTS_DIR,
    RepoNotFoundError,
    find_repo_root,
    validate_task_name,
    workflow_root,
)
from stagerun.scheduler import list_view, reorder
from stagerun.state import VALID_TASK_STATUSES, get_task, require_task, task_history
from stagerun.status_reference import get_status_reference
from stagerun.store import Store
from stagerun.transitions import (
    activate_task,
    add_task,
    describe_task,
    finish,
    hold_task,
    queue_task,
    remove_task,
    set_stage,
)
from stagerun.worker import Worker, list_task_logs
from stagerun.workflows import Workflow, get_workflow

log = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class App:
    repo_root: Path
    settings: Settings
    workflow: Workflow
    store: Store
    tracker: FileIssueTracker

    def worker(self, settings: Settings | None = None) -> Worker:
        return Worker.create(self.repo_root, self.store, self.workflow, settings or self.settings)


@dataclass
class CliState:
    """Global options; the repo and settings are resolved on first use."""

    agent: str | None = None
    model: str | None = None
    repo: Path | None = None
    verbose: int = 0
    _app: App | None = None

    def app(self, *, allow_cwd: bool = False) -> App:
        if self._app is None:
            self._app = self._load(allow_cwd=allow_cwd)
        return self._app

    def _load(self, *, allow_cwd: bool) -> App:
        if self.repo is not None:
            root = self.repo.expanduser().resolve()
        else:
            try:
                root = find_repo_root()
            except RepoNotFoundError as e:
                if not allow_cwd:
                    raise click.ClickException(str(e)) from e
                root = Path.cwd()
        try:
            settings = load_settings(root, {"agent": self.agent, "model": self.model})
            workflow = get_workflow(settings.agent)
        except ValueError as e:
            raise click.UsageError(str(e)) from e
        if not self.verbose:
            logging.getLogger().setLevel(settings.log_level)
        store = Store(workflow_root(root, workflow.kind))
        store.ensure_layout()
        log.debug("Using %s for %s", store, root)
        return App(
            repo_root=root,
            settings=settings,
            workflow=workflow,
            store=store,
            tracker=FileIssueTracker(store, workflow),
        )


pass_state = click.make_pass_decorator(CliState, ensure=True)


class TaskNameType(click.ParamType):
    """Click parameter type for task slugs; rejects bad names before any I/O."""

    name = "task"

    def get_metavar(self, param: click.Parameter, **kwargs: object) -> str:
        return "TASK"

    def convert(self, value: str, param: click.Parameter | None, ctx: click.Context | None) -> str:
        try:
            return validate_task_name(value)
        except ValueError as e:
            self.fail(str(e), param, ctx)


class StageType(click.ParamType):
    """Click parameter type that validates against the active workflow's stages."""

    name = "stage"

    def get_metavar(self, param: click.Parameter, **kwargs: object) -> str:
        return "STAGE"

    def convert(self, value: str, param: click.Parameter | None, ctx: click.Context | None) -> str:
        state = ctx.find_object(CliState) if ctx is not None else None
        workflow = state.app().workflow if state is not None else get_workflow("code")
        if not workflow.has_stage(value):
            self.fail(
                f"'{value}' is not a {workflow.kind} stage. Valid: {', '.join(workflow.stages)}",
                param,
                ctx,
            )
        return value


TASK_NAME = TaskNameType()
STAGE = StageType()


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = "DEBUG"
    elif verbose == 1:
        level = "INFO"
    else:
        level = os.environ.get(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL).upper()
        if level not in VALID_LOG_LEVELS:
            level = DEFAULT_LOG_LEVEL
    logging.basicConfig(level=level, format=_LOG_FORMAT, stream=sys.stderr)


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click exceptions and typed stagerun errors are reported as one JSON
    object on stdout. Typed errors exit with their kind's stable code.
    Unknown commands get fuzzy-matched suggestions via
    ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except StagerunError as e:
            click.echo(json.dumps(e.to_payload()))
            if standalone_mode:
                raise SystemExit(e.exit_code) from None
            return e.exit_code
        except click.ClickException as e:
            payload = {"ok": False, "error": e.format_message()}
            if isinstance(e, click.UsageError):
                payload["kind"] = "usage"
            click.echo(json.dumps(payload))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--agent", "-a", default=None, help="Workflow kind (code or writer).")
@click.option(
    "--model",
    "-m",
    type=click.Choice(VALID_MODELS),
    default=None,
    help="Model CLI to run stages with.",
)
@click.option(
    "--repo",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Repository root (default: walk up from the current directory).",
)
@click.option("--verbose", "-v", count=True, help="Log to stderr (-v info, -vv debug).")
@click.pass_context
def main(ctx: click.Context, agent: str | None, model: str | None, repo: Path | None, verbose):
    """Run tasks through workflow stages, coordinated through files in the repo.

    \b
    Quick start:
      stagerun init                          Create .agents/<kind>/ in this repo
      stagerun task login-fix                Add a task at the first stage
      stagerun start login-fix               Run setup stages up to the hand-off
      stagerun run login-fix                 Run stages until done or stopped
      stagerun run-queue                     Work through every queued task
      stagerun finish build                  (from the model) close the stage

    \b
    Key concepts:
      task      A unit of work with its own directory under .agents/<kind>/tasks/
      stage     One step of the workflow; each run of a stage is a session
      claim     Exclusive, expiring ownership of a task by one worker
      queue     Derived from task records; there is no queue file
    """
    ctx.obj = CliState(agent=agent, model=model, repo=repo, verbose=verbose)
    _configure_logging(verbose)


# -- init --


@main.command()
@pass_state
def init(state: CliState):
    """Create the workflow directory for the selected agent in this repo."""
    app = state.app(allow_cwd=True)
    (app.store.root / PROMPTS_DIR).mkdir(parents=True, exist_ok=True)
    _emit(
        {
            "ok": True,
            "repo": str(app.repo_root),
            "agent": app.workflow.kind,
            "workflow_root": str(app.store.root),
        }
    )


# -- tasks --


@main.command("task")
@click.argument("name", type=TASK_NAME)
@click.option("--hold", is_flag=True, help="Create the task held (not picked by workers).")
@click.option("--description", "-d", default=None, help="Short description of the task.")
@pass_state
def task_cmd(state: CliState, name: str, hold: bool, description: str | None):
    """Add a task, or show an existing task's state and stage history."""
    app = state.app()
    existing = get_task(app.store, name)
    created = False
    if existing is None:
        try:
            record = add_task(app.store, app.workflow, name, held=hold, description=description)
            created = True
        except RecordExistsError:
            record = require_task(app.store, name)
    else:
        record = existing
        if description is not None:
            record = describe_task(app.store, name, description)
    _emit(
        {
            "created": created,
            "task": record,
            "history": task_history(app.store, name),
            "open_issues": len(app.tracker.open_issues(name)),
        }
    )


@main.command()
@click.argument("name", type=TASK_NAME, required=False)
@pass_state
def queue(state: CliState, name: str | None):
    """Show the queue, or adopt an existing task directory into it."""
    app = state.app()
    if name is None:
        _emit(list_view(app.store, app.workflow).to_dict())
        return
    record, created = queue_task(app.store, app.workflow, name)
    _emit({"created": created, "task": record})


@main.command()
@click.argument("name", type=TASK_NAME)
@click.option("--force", is_flag=True, help="Remove even with open issues (unassigns them).")
@pass_state
def dequeue(state: CliState, name: str, force: bool):
    """Delete a task and its directory."""
    app = state.app()
    unassigned = remove_task(app.store, name, tracker=app.tracker, force=force)
    _emit({"ok": True, "removed": name, "unassigned_issues": unassigned})


@main.command()
@click.argument("name", type=TASK_NAME)
@pass_state
def hold(state: CliState, name: str):
    """Keep workers from picking up a task."""
    app = state.app()
    _emit({"task": hold_task(app.store, name)})


@main.command()
@click.argument("name", type=TASK_NAME)
@pass_state
def activate(state: CliState, name: str):
    """Release a held or failed task and reset its loop counter."""
    app = state.app()
    _emit({"task": activate_task(app.store, app.workflow, name, tracker=app.tracker)})


@main.command("set-stage")
@click.argument("name", type=TASK_NAME)
@click.argument("stage", type=STAGE)
@click.option(
    "--status",
    "-s",
    type=click.Choice(sorted(VALID_TASK_STATUSES)),
    default=None,
    help="Status to set (default: derived from the stage and open issues).",
)
@pass_state
def set_stage_cmd(state: CliState, name: str, stage: str, status: str | None):
    """Force a task to a stage."""
    app = state.app()
    record = set_stage(app.store, app.workflow, name, stage, status=status, tracker=app.tracker)
    _emit({"task": record})


@main.command("reorder")
@click.argument("name", type=TASK_NAME)
@click.argument("position", type=click.IntRange(min=1))
@pass_state
def reorder_cmd(state: CliState, name: str, position: int):
    """Move a task to POSITION (1-based) among tasks at its stage."""
    app = state.app()
    order = reorder(app.store, app.workflow, name, position)
    _emit({"ok": True, "order": order})


@main.command()
@click.argument("name", type=TASK_NAME)
@click.option("--level", type=click.Choice(VALID_LOG_LEVELS), default=None)
@click.option("--limit", "-n", type=click.IntRange(min=1), default=None)
@pass_state
def logs(state: CliState, name: str, level: str | None, limit: int | None):
    """Show a task's run log."""
    app = state.app()
    require_task(app.store, name)
    _emit(list_task_logs(app.store, name, level=level, limit=limit))


# -- running --


@main.command()
@click.argument("name", type=TASK_NAME)
@click.option("--description", "-d", default=None, help="Short description for a new task.")
@pass_state
def start(state: CliState, name: str, description: str | None):
    """Create a task if needed and run its setup stages up to the hand-off."""
    app = state.app()
    outcome = app.worker().start(name, description=description)
    payload = outcome.to_dict()
    if outcome.stopped == "ready":
        payload["message"] = (
            f"Task '{name}' is ready. Run 'stagerun run {name}' or 'stagerun run-queue'."
        )
    _emit(payload)


def _run_single(state: CliState, name: str, stage: str, focus: str | None) -> None:
    app = state.app()
    if not app.workflow.has_stage(stage):
        raise click.UsageError(f"The {app.workflow.kind} workflow has no '{stage}' stage.")
    _emit(app.worker().run_single(name, stage, focus=focus).to_dict())


@main.command()
@click.argument("name", type=TASK_NAME)
@click.option("--focus", "-f", default=None, help="Area the review should look at first.")
@pass_state
def review(state: CliState, name: str, focus: str | None):
    """Run one review stage of a task now, wherever it is in the workflow."""
    _run_single(state, name, "review", focus)


@main.command("spec-review")
@click.argument("name", type=TASK_NAME)
@click.option("--focus", "-f", default=None, help="Area the review should look at first.")
@pass_state
def spec_review(state: CliState, name: str, focus: str | None):
    """Run one spec-review stage of a task now."""
    _run_single(state, name, "spec-review", focus)


@main.command()
@click.argument("name", type=TASK_NAME)
@pass_state
def run(state: CliState, name: str):
    """Run a task stage after stage until it completes or a stage stops short."""
    _emit(state.app().worker().run(name).to_dict())


@main.command("run-next")
@click.argument("name", type=TASK_NAME, required=False)
@pass_state
def run_next(state: CliState, name: str | None):
    """Run one stage of a task, or of the first eligible task in the queue."""
    outcome = state.app().worker().run_next(name)
    if outcome is None:
        _emit({"ok": True, "ran": None, "message": "No eligible task."})
        return
    _emit(outcome.to_dict())


@main.command("run-queue")
@click.option(
    "--loop",
    "loop",
    default=None,
    help="Review/rework bounces allowed per task (0 = unbounded).",
)
@pass_state
def run_queue(state: CliState, loop: str | None):
    """Work through eligible tasks until the queue is empty or a stage stops short."""
    app = state.app()
    settings = app.settings
    if loop is not None:
        try:
            limit = parse_loop_limit(loop)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="'--loop'") from e
        settings = dataclasses.replace(settings, loop_limit=limit)
    outcomes = app.worker(settings).run_queue()
    _emit({"ok": True, "runs": [o.to_dict() for o in outcomes]})


@main.command()
@click.argument("bug", nargs=-1)
@click.option(
    "--file",
    "bug_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read the bug report from a file.",
)
@click.option("--stdin", "from_stdin", is_flag=True, help="Read the bug report from stdin.")
@pass_state
def debug(state: CliState, bug: tuple[str, ...], bug_file: Path | None, from_stdin: bool):
    """Hand a bug report to the model, outside any task."""
    if bug_file is not None and from_stdin:
        raise click.UsageError("Use --file or --stdin, not both.")
    if from_stdin:
        report = click.get_text_stream("stdin").read()
    elif bug_file is not None:
        report = bug_file.read_text(encoding="utf-8")
    else:
        report = " ".join(bug)
    code = state.app().worker().debug(report)
    if code != 0:
        raise click.ClickException(f"Debug run failed (exit {code}).")
    _emit({"ok": True, "exit_code": code})


@main.command("finish")
@click.argument("stage", required=False)
@click.option("--next", "next_stage", default=None, help="Stage to go to instead of the default.")
@click.option("--session", "session_id", default=None, help="Session to finish.")
@click.option("--task", "task_name", type=TASK_NAME, default=None, help="Task to finish.")
@pass_state
def finish_cmd(
    state: CliState,
    stage: str | None,
    next_stage: str | None,
    session_id: str | None,
    task_name: str | None,
):
    """Close the running session of a stage and advance its task.

    The session is picked from --session, then $STAGERUN_SESSION, then the
    only running session (narrowed by STAGE and --task).
    """
    app = state.app()
    env_session = os.environ.get(SESSION_ENV) or None
    if task_name is None and session_id is None and env_session is None:
        task_name = os.environ.get(TASK_ENV) or None
    result = finish(
        app.store,
        app.workflow,
        completed_stage=stage,
        explicit_next=next_stage,
        session_id=session_id,
        env_session_id=env_session,
        task_name=task_name,
        tracker=app.tracker,
        loop_limit=app.settings.loop_limit,
    )
    _emit({"ok": True, **result.to_dict()})


# -- issues --


@main.command("issues")
@click.option("--task", "task_name", type=TASK_NAME, default=None)
@click.option("--status", type=click.Choice(sorted(VALID_ISSUE_STATUSES)), default=None)
@pass_state
def issues_cmd(state: CliState, task_name: str | None, status: str | None):
    """List issues, most urgent first."""
    app = state.app()
    _emit(app.tracker.list_issues(task_name=task_name, status=status))


@main.group()
def issue():
    """Add, resolve and inspect issues."""


@issue.command("add")
@click.argument("title")
@click.option("--task", "task_name", type=TASK_NAME, default=None)
@click.option(
    "--priority", "-p", type=click.Choice(VALID_ISSUE_PRIORITIES), default=DEFAULT_ISSUE_PRIORITY
)
@click.option("--type", "issue_type", type=click.Choice(sorted(VALID_ISSUE_TYPES)), default="build")
@click.option("--source", type=click.Choice(sorted(VALID_ISSUE_SOURCES)), default="manual")
@click.option("--stage", type=STAGE, default=None, help="Stage that should rework this issue.")
@click.option("--body", default=None)
@pass_state
def issue_add(
    state: CliState,
    title: str,
    task_name: str | None,
    priority: str,
    issue_type: str,
    source: str,
    stage: str | None,
    body: str | None,
):
    """Open an issue, optionally against a task."""
    app = state.app()
    try:
        record = app.tracker.add(
            title,
            task_name=task_name,
            priority=priority,
            issue_type=issue_type,
            source=source,
            stage=stage,
            body=body,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e
    _emit(record)


@issue.command("resolve")
@click.argument("issue_id")
@click.option("--resolution", "-r", default=None)
@pass_state
def issue_resolve(state: CliState, issue_id: str, resolution: str | None):
    """Mark an issue resolved."""
    _emit(state.app().tracker.resolve(issue_id, resolution))


@issue.command("show")
@click.argument("issue_id")
@pass_state
def issue_show(state: CliState, issue_id: str):
    """Show one issue."""
    _emit(state.app().tracker.require(issue_id))


# -- health --


@main.command()
@click.option("--fix", is_flag=True, help="Repair what the checks find.")
@pass_state
def doctor(state: CliState, fix: bool):
    """Check records, claims and sessions for crash leftovers."""
    from stagerun.doctor import run_doctor

    app = state.app()
    report = run_doctor(app.store, app.workflow, fix=fix, tracker=app.tracker)
    click.echo(json.dumps(report, default=str))
    if report["status"] == "fail":
        raise click.ClickException("Doctor checks failed.")


@main.command("help-status")
def help_status():
    """Show canonical status lifecycles, workflow stages and exit codes."""
    payload = get_status_reference()
    click.echo(json.dumps(payload, indent=2, sort_keys=False))
