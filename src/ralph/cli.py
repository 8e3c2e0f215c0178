from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import click

from ralph.agents import AgentKind, build_agent
from ralph.config import DEFAULT_CONFIG_FILE, ConfigError, RalphConfig, load_config, save_config
from ralph.loop import EXIT_CODES, BuildLoop, RunSummary, Termination
from ralph.resolver import blocked_by, next_eligible
from ralph.state.backlog import (
    BacklogDocument,
    SchemaError,
    Story,
    StoryStatus,
    load_backlog,
    save_backlog,
)
from ralph.state.commits import CommitError
from ralph.state.progress import read_records

AGENT_CHOICES = [kind.value for kind in AgentKind]
QUIET_EVENTS = {"state"}


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_config(config_path: Path) -> RalphConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(f"config: {exc}") from exc


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


def _echo_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name in QUIET_EVENTS:
        return
    if name == "story_selected":
        click.echo(f"[{event['iteration']}] building {event['story_id']}")
    elif name == "story_finished":
        line = f"    {event['story_id']}: {event['status']}"
        if event.get("message"):
            line += f" ({event['message']})"
        click.echo(line)
    elif name == "agent_retry":
        click.echo(
            f"    retrying {event['agent']} for {event['story_id']} "
            f"(attempt {event['attempt']}, {event['delay_seconds']:.1f}s backoff)"
        )


def _print_summary(summary: RunSummary) -> None:
    click.echo(f"Run {summary.termination.value}: {summary.message}")
    click.echo(f"Iterations: {summary.iterations}")
    if summary.completed:
        click.echo(f"Done: {', '.join(summary.completed)}")
    if summary.failed:
        click.echo(f"Failed: {', '.join(summary.failed)}")
    if summary.unverified:
        click.echo(
            "Accepted without machine-checkable criteria: " + ", ".join(summary.unverified)
        )
    if summary.recovered:
        click.echo(f"Re-opened interrupted stories: {', '.join(summary.recovered)}")


@click.group()
def cli() -> None:
    """Ralph build loop CLI."""


@cli.command("build")
@click.argument("count", type=click.IntRange(min=1))
@click.option("--agent", "agent_name", type=click.Choice(AGENT_CHOICES), default=None)
@click.option("--no-commit", "no_commit", is_flag=True, default=False)
@click.option("--dry-run", "dry_run", is_flag=True, default=False)
@click.option("--retry-failed", "retry_failed", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
@click.option("--verbose", is_flag=True, default=False)
def build_command(
    count: int,
    agent_name: str | None,
    no_commit: bool,
    dry_run: bool,
    retry_failed: bool,
    config_value: str,
    verbose: bool,
) -> None:
    """Build up to COUNT stories from the backlog."""
    _configure_logging(verbose)
    repo_root = Path.cwd().resolve()
    config = _load_config(_resolve_config_path(repo_root, config_value))
    dry_run = dry_run or _env_flag("RALPH_DRY_RUN")
    commit = config.workflow.commit and not no_commit

    agent = build_agent(
        agent_name or config.agent.default,
        config,
        dry_run=dry_run,
        event_hook=_echo_event,
    )
    loop = BuildLoop(repo_root, agent, config=config, event_hook=_echo_event)
    try:
        summary = asyncio.run(loop.run(count, commit=commit, retry_failed=retry_failed))
    except SchemaError as exc:
        raise click.ClickException(f"backlog: {exc}") from exc
    except CommitError as exc:
        raise click.ClickException(f"commit: {exc}") from exc
    except KeyboardInterrupt:
        click.echo("Interrupted; the story in flight stays in_progress.", err=True)
        raise SystemExit(EXIT_CODES[Termination.INTERRUPTED]) from None

    _print_summary(summary)
    if summary.exit_code != 0:
        raise SystemExit(summary.exit_code)


def _story_line(document: BacklogDocument, story: Story) -> str:
    line = f"{story.id:<10} {story.status.value:<12} {story.title}"
    if story.status == StoryStatus.OPEN:
        waiting = blocked_by(document, story)
        if waiting:
            line += f"  [waiting on {', '.join(waiting)}]"
    return line


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(as_json: bool, config_value: str) -> None:
    """Show story statuses and the next eligible story."""
    repo_root = Path.cwd().resolve()
    config = _load_config(_resolve_config_path(repo_root, config_value))
    try:
        document = load_backlog(config.backlog_path(repo_root))
    except SchemaError as exc:
        raise click.ClickException(f"backlog: {exc}") from exc

    upcoming = next_eligible(document)
    if as_json:
        payload = {
            "project": document.project,
            "counts": document.counts(),
            "next": upcoming.id if upcoming else None,
            "stories": [
                {"id": story.id, "status": story.status.value, "title": story.title}
                for story in document.stories
            ],
            "iterations_logged": len(read_records(config.progress_path(repo_root))),
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    click.echo(f"Project: {document.project or '(unnamed)'}")
    for story in document.stories:
        click.echo(_story_line(document, story))
    counts = document.counts()
    click.echo(" ".join(f"{key}={value}" for key, value in counts.items()))
    click.echo(f"Next: {upcoming.id if upcoming else '(none)'}")


@cli.command("init")
@click.option("--agent", "agent_name", type=click.Choice(AGENT_CHOICES), default=None)
@click.option("--project", "project_name", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(agent_name: str | None, project_name: str | None, config_value: str) -> None:
    """Write ralph.toml and an empty backlog if they do not exist."""
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config(config_path)
    if agent_name:
        config.agent.default = agent_name  # type: ignore[assignment]
    save_config(config_path, config)

    backlog_path = config.backlog_path(repo_root)
    if not backlog_path.exists():
        save_backlog(BacklogDocument(project=project_name or repo_root.name), backlog_path)
        click.echo(f"Backlog: {backlog_path}")
    config.progress_path(repo_root).parent.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Ralph in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.agent.default}")
