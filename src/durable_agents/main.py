"""CLI entrypoint for durable-agents."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from durable_agents import __version__
from durable_agents.agents.controllers import (
    AgentsCliController,
    AgentsListCommand,
    AlarmCommand,
    LogsCommand,
    TaskCreateCommand,
    TaskInspectCommand,
    TaskListCommand,
)
from durable_agents.agents.errors import TaskNotFoundError, TaskStateError
from durable_agents.config import Settings
from durable_agents.logging_setup import setup_logging

click.rich_click.USE_MARKDOWN = True
AGENTS_CONTROLLER = AgentsCliController()

CommandT = TypeVar("CommandT")

_DATA_DIR_OPTION = click.option(
    "--data-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory holding one SQLite file per agent instance.",
)
_INSTANCE_OPTION = click.option(
    "--instance",
    "instance_key",
    default="default",
    show_default=True,
    help="Instance key within the agent type.",
)


@click.group()
@click.version_option(version=__version__, prog_name="durable-agents")
def durable_agents() -> None:
    """Durable per-instance task orchestration for agents."""


@durable_agents.command("serve")
@_DATA_DIR_OPTION
@click.option("--host", default=None, help="Bind host (defaults to DURABLE_AGENTS_HOST).")
@click.option("--port", type=click.IntRange(1, 65535), default=None, help="Bind port.")
def serve(data_dir: Path | None, host: str | None, port: int | None) -> None:
    """Run the gateway HTTP server with uvicorn."""

    import uvicorn

    from durable_agents.agents.catalog import default_definitions
    from durable_agents.agents.gateway import build_gateway_app
    from durable_agents.agents.registry import AgentRegistry

    settings = Settings.from_env(data_dir=data_dir)
    if host is not None:
        settings.server.host = host
    if port is not None:
        settings.server.port = port
    _validated(settings)
    setup_logging(level=settings.logging.level, log_dir=settings.logging.log_dir)

    registry = AgentRegistry(default_definitions(settings), settings=settings)
    uvicorn.run(
        build_gateway_app(registry),
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,
    )


@durable_agents.group()
def agents() -> None:
    """Agent discovery and alarm commands."""


@agents.command("list")
@_DATA_DIR_OPTION
def agents_list(data_dir: Path | None) -> None:
    """Show state of every registered agent type."""

    _emit_lines(_call(AGENTS_CONTROLLER.list_agents, AgentsListCommand(data_dir=data_dir)))


@agents.command("alarm")
@click.argument("agent_type")
@_DATA_DIR_OPTION
@_INSTANCE_OPTION
def agents_alarm(agent_type: str, data_dir: Path | None, instance_key: str) -> None:
    """Fire one alarm tick: run up to one batch of due tasks."""

    _emit_lines(
        _call(
            AGENTS_CONTROLLER.fire_alarm,
            AlarmCommand(data_dir=data_dir, agent_type=agent_type, instance_key=instance_key),
        ),
    )


@durable_agents.group()
def tasks() -> None:
    """Task commands."""


@tasks.command("create")
@click.argument("agent_type")
@click.argument("name")
@_DATA_DIR_OPTION
@_INSTANCE_OPTION
@click.option("--payload", default=None, help="Task payload as a JSON document.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retry budget (defaults to DURABLE_AGENTS_DEFAULT_MAX_RETRIES).",
)
@click.option(
    "--delay-seconds",
    type=click.IntRange(min=0),
    default=None,
    help="Schedule the task instead of running it now.",
)
def tasks_create(  # noqa: PLR0913
    agent_type: str,
    name: str,
    data_dir: Path | None,
    instance_key: str,
    payload: str | None,
    max_retries: int | None,
    delay_seconds: int | None,
) -> None:
    """Create a task; immediate tasks run before the command returns."""

    _emit_lines(
        _call(
            AGENTS_CONTROLLER.create_task,
            TaskCreateCommand(
                data_dir=data_dir,
                agent_type=agent_type,
                name=name,
                payload=payload,
                max_retries=max_retries,
                delay_seconds=delay_seconds,
                instance_key=instance_key,
            ),
        ),
    )


@tasks.command("list")
@click.argument("agent_type")
@_DATA_DIR_OPTION
@_INSTANCE_OPTION
@click.option(
    "--status",
    type=click.Choice(["pending", "running", "completed", "failed", "cancelled"]),
    default=None,
    help="Optional status filter.",
)
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
def tasks_list(
    agent_type: str,
    data_dir: Path | None,
    instance_key: str,
    status: str | None,
    limit: int,
) -> None:
    """List tasks, newest first."""

    _emit_lines(
        _call(
            AGENTS_CONTROLLER.list_tasks,
            TaskListCommand(
                data_dir=data_dir,
                agent_type=agent_type,
                status=status,
                limit=limit,
                instance_key=instance_key,
            ),
        ),
    )


@tasks.command("show")
@click.argument("agent_type")
@click.argument("task_id")
@_DATA_DIR_OPTION
@_INSTANCE_OPTION
def tasks_show(agent_type: str, task_id: str, data_dir: Path | None, instance_key: str) -> None:
    """Show one task."""

    _emit_lines(
        _call(
            AGENTS_CONTROLLER.show_task,
            TaskInspectCommand(
                data_dir=data_dir,
                agent_type=agent_type,
                task_id=task_id,
                instance_key=instance_key,
            ),
        ),
    )


@tasks.command("cancel")
@click.argument("agent_type")
@click.argument("task_id")
@_DATA_DIR_OPTION
@_INSTANCE_OPTION
def tasks_cancel(agent_type: str, task_id: str, data_dir: Path | None, instance_key: str) -> None:
    """Cancel a pending task."""

    _emit_lines(
        _call(
            AGENTS_CONTROLLER.cancel_task,
            TaskInspectCommand(
                data_dir=data_dir,
                agent_type=agent_type,
                task_id=task_id,
                instance_key=instance_key,
            ),
        ),
    )


@durable_agents.command("logs")
@click.argument("agent_type")
@_DATA_DIR_OPTION
@_INSTANCE_OPTION
@click.option(
    "--level",
    type=click.Choice(["debug", "info", "warn", "error"]),
    default=None,
    help="Optional level filter.",
)
@click.option("--limit", type=click.IntRange(min=1), default=100, show_default=True)
def logs(
    agent_type: str,
    data_dir: Path | None,
    instance_key: str,
    level: str | None,
    limit: int,
) -> None:
    """Show the persisted log of an agent instance, newest first."""

    _emit_lines(
        _call(
            AGENTS_CONTROLLER.logs,
            LogsCommand(
                data_dir=data_dir,
                agent_type=agent_type,
                level=level,
                limit=limit,
                instance_key=instance_key,
            ),
        ),
    )


def _call(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (ValueError, TaskNotFoundError, TaskStateError) as error:
        raise click.ClickException(str(error)) from error


def _validated(settings: Settings) -> Settings:
    try:
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    return settings


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    durable_agents()
