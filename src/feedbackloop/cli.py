from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from feedbackloop.backends import (
    BackendRegistry,
    ClaudeCodeBackend,
    CodexBackend,
    OpenAIResponsesBackend,
)
from feedbackloop.config import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    LoopConfig,
    load_config,
    save_config,
)
from feedbackloop.models import ModelCandidate
from feedbackloop.orchestrator import (
    PauseRequest,
    UserDecision,
    WorkflowOrchestrator,
    session_inbox,
)
from feedbackloop.state import PlanStateError, PlanStateStore
from feedbackloop.targets import TargetBindingError

DECISION_CHOICES = ("approve", "reject", "redirect")


@dataclass(slots=True)
class Runtime:
    workspace: Path
    config_path: Path
    config: LoopConfig
    registry: BackendRegistry


def _resolve_config_path(workspace: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace / config_path
    return config_path.resolve()


def _build_registry(workspace: Path) -> BackendRegistry:
    registry = BackendRegistry()
    registry.register("claude", ClaudeCodeBackend(working_directory=workspace))
    registry.register("codex", CodexBackend(working_directory=workspace))
    registry.register("openai", OpenAIResponsesBackend(working_directory=workspace))
    return registry


def _load_runtime(workspace: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        workspace=workspace,
        config_path=config_path,
        config=config,
        registry=_build_registry(workspace),
    )


def _open_session(runtime: Runtime, session_id: str) -> PlanStateStore:
    store = PlanStateStore.open(runtime.workspace, session_id, runtime.config.loop.state_dir)
    if not store.exists():
        raise click.ClickException(f"Unknown session: {session_id}")
    return store


def _print_event(event: dict[str, Any]) -> None:
    click.echo(json.dumps(event, ensure_ascii=False), err=True)


def _prompt_decision(request: PauseRequest) -> UserDecision:
    click.echo(f"Paused at iteration {request.iteration}: {request.reason}", err=True)
    if request.detail:
        click.echo(request.detail, err=True)
    action = click.prompt(
        "Decision",
        type=click.Choice(DECISION_CHOICES),
        default="redirect",
        err=True,
    )
    message = None
    if action == "redirect":
        message = click.prompt("Message for the coder", err=True)
    return UserDecision(action=action, message=message)


async def _decide(request: PauseRequest) -> UserDecision:
    return await asyncio.to_thread(_prompt_decision, request)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Coder/reviewer feedback loop."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--coder", default=None, help="Primary coder as provider/model.")
@click.option("--reviewer", default=None, help="Primary reviewer as provider/model.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(coder: str | None, reviewer: str | None, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    for value in (coder, reviewer):
        if value is not None and not ModelCandidate.parse(value).provider:
            raise click.ClickException(f"Invalid model candidate: {value!r}")
    if coder:
        config.models.coder = coder
    if reviewer:
        config.models.reviewer = reviewer
    save_config(config_path, config)
    (workspace / config.loop.state_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized feedback loop in {workspace}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Coder: {config.models.coder}")
    click.echo(f"Reviewer: {config.models.reviewer}")


@cli.command("run")
@click.argument("task")
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--session-id", default=None)
@click.option(
    "--interactive/--no-interactive",
    default=True,
    show_default=True,
    help="Prompt for a decision when the loop pauses.",
)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def run_command(
    task: str,
    max_iterations: int | None,
    session_id: str | None,
    interactive: bool,
    as_json: bool,
    config_value: str,
) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    if max_iterations is not None:
        runtime.config.loop.max_iterations = max_iterations

    orchestrator = WorkflowOrchestrator(
        runtime.config,
        runtime.registry,
        workspace,
        decision_handler=_decide if interactive else None,
        event_hook=_print_event,
        session_id=session_id,
    )
    try:
        result = asyncio.run(orchestrator.run(task))
    except (TargetBindingError, PlanStateError) as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        return
    click.echo(result.final_message)
    click.echo(f"Session: {result.session_id}")
    click.echo(f"Status: {result.status}")
    if result.changed_files:
        click.echo(f"Changed files: {', '.join(result.changed_files)}")
    if result.commit and result.commit.sha:
        click.echo(f"Commit: {result.commit.sha}")
    if result.commit and result.commit.pr_url:
        click.echo(f"Pull request: {result.commit.pr_url}")


@cli.command("status")
@click.argument("session_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(session_id: str, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    store = _open_session(runtime, session_id)
    try:
        payload = store.status()
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc
    payload["counters"] = store.metrics().get("counters", {})
    payload["pending_messages"] = len(session_inbox(store, runtime.config).pending())
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("context")
@click.argument("session_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def context_command(session_id: str, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    store = _open_session(runtime, session_id)
    try:
        click.echo(store.build_prompt_context(), nl=False)
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("say")
@click.argument("session_id")
@click.argument("message")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def say_command(session_id: str, message: str, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    store = _open_session(runtime, session_id)
    queued = session_inbox(store, runtime.config).enqueue(message)
    click.echo(f"Queued message {queued.id} for {session_id}")


@cli.command("resolve")
@click.argument("session_id")
@click.argument("action")
@click.option("--resolution", default="Resolved manually", show_default=True)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def resolve_command(session_id: str, action: str, resolution: str, config_value: str) -> None:
    """Resolve an unresolved error entry; ACTION may be a unique prefix of its key."""
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    store = _open_session(runtime, session_id)
    try:
        unresolved = [entry for entry in store.read_plan().errors if not entry.resolved]
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc

    exact = [entry for entry in unresolved if entry.action == action]
    matches = exact or [entry for entry in unresolved if entry.action.startswith(action)]
    if not matches:
        raise click.ClickException(f"No unresolved error matches: {action}")
    if len(matches) > 1:
        raise click.ClickException(
            f"{len(matches)} unresolved errors match {action!r}; use a longer prefix."
        )
    store.resolve_error(matches[0].action, resolution)
    store.add_decision(f"Resolved error: {matches[0].action}", context="cli", reasoning=resolution)
    click.echo(f"Resolved: {matches[0].action}")
