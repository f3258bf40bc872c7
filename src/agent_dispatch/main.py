"""CLI entrypoint for agent-dispatch."""

import logging
from collections.abc import Callable
from typing import TypeVar

import rich_click as click

from agent_dispatch import __version__
from agent_dispatch.orchestrator.controllers import (
    DispatchCliController,
    HealthCommand,
    MachineEnginesCommand,
    MachineListCommand,
    TaskCancelCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskSubmitCommand,
    WorkerCommand,
)
from agent_dispatch.orchestrator.store import TaskNotFoundError, TaskStateError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DispatchCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
TASK_STATUSES = ["queued", "claimed", "running", "completed", "failed", "cancelled", "timeout"]
CommandT = TypeVar("CommandT")

db_url_option = click.option(
    "--db-url",
    default=None,
    help="Database URL. Defaults to AGENT_DISPATCH_DB_URL or a local SQLite file.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def agent_dispatch(log_level: str) -> None:
    """Dispatch coding tasks to agent CLIs on worker machines and stream sessions to chat."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@agent_dispatch.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("submit")
@db_url_option
@click.option("--project", required=True, help="Project (workspace) the task belongs to.")
@click.option("--description", required=True, help="What the agent should do.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
@click.option(
    "--max-budget-usd",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Optional spend limit passed to the agent.",
)
@click.option("--machine", "machine_id", default=None, help="Pin the task to one machine.")
@click.option("--topic-id", default=None, help="Stream into an existing conversation topic.")
def tasks_submit(  # noqa: PLR0913
    db_url: str | None,
    project: str,
    description: str,
    priority: int,
    max_budget_usd: float | None,
    machine_id: str | None,
    topic_id: str | None,
) -> None:
    """Queue a coding task."""

    _emit_lines(
        _guarded(
            CONTROLLER.submit_task,
            TaskSubmitCommand(
                db_url=db_url,
                project=project,
                description=description,
                priority=priority,
                max_budget_usd=max_budget_usd,
                machine_id=machine_id,
                topic_id=topic_id,
            ),
        ),
    )


@tasks.command("list")
@db_url_option
@click.option(
    "--status",
    type=click.Choice(TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_url: str | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit_lines(
        _guarded(CONTROLLER.list_tasks, TaskListCommand(db_url=db_url, status=status, limit=limit)),
    )


@tasks.command("inspect")
@db_url_option
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_url: str | None, task_id: str) -> None:
    """Inspect one task with its event history."""

    _emit_lines(
        _guarded(CONTROLLER.inspect_task, TaskInspectCommand(db_url=db_url, task_id=task_id)),
    )


@tasks.command("cancel")
@db_url_option
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_url: str | None, task_id: str) -> None:
    """Cancel a queued or in-flight task. Cancelling twice is harmless."""

    _emit_lines(
        _guarded(CONTROLLER.cancel_task, TaskCancelCommand(db_url=db_url, task_id=task_id)),
    )


@agent_dispatch.group()
def machines() -> None:
    """Machine registry commands."""


@machines.command("list")
@db_url_option
def machines_list(db_url: str | None) -> None:
    """List registered machines and their liveness."""

    _emit_lines(_guarded(CONTROLLER.list_machines, MachineListCommand(db_url=db_url)))


@machines.command("engines")
@db_url_option
@click.option("--machine", "machine_id", required=True, help="Machine id.")
@click.argument("engines", nargs=-1, required=True)
def machines_engines(db_url: str | None, machine_id: str, engines: tuple[str, ...]) -> None:
    """Set the engine failover order of a machine, most preferred first."""

    _emit_lines(
        _guarded(
            CONTROLLER.set_engines,
            MachineEnginesCommand(
                db_url=db_url,
                machine_id=machine_id,
                engines=tuple(engine.lower() for engine in engines),
            ),
        ),
    )


@agent_dispatch.group()
def worker() -> None:
    """Task executor commands."""


@worker.command("run")
@db_url_option
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Claim up to capacity, run those tasks to the end and exit.",
)
@click.option("--project", "project_filter", default=None, help="Only claim tasks of a project.")
def worker_run(db_url: str | None, once: bool, project_filter: str | None) -> None:
    """Run the task executor for this machine."""

    _emit_lines(
        _guarded(
            CONTROLLER.run_worker,
            WorkerCommand(db_url=db_url, once=once, project_filter=project_filter),
        ),
    )


@agent_dispatch.group()
def health() -> None:
    """Recovery sweep commands."""


@health.command("sweep")
@db_url_option
@click.option(
    "--dispatch/--no-dispatch",
    default=True,
    show_default=True,
    help="Pin unassigned queued tasks to available machines.",
)
def health_sweep(db_url: str | None, dispatch: bool) -> None:
    """Run one recovery pass."""

    _emit_lines(
        _guarded(CONTROLLER.health, HealthCommand(db_url=db_url, watch=False, dispatch=dispatch)),
    )


@health.command("watch")
@db_url_option
@click.option(
    "--dispatch/--no-dispatch",
    default=True,
    show_default=True,
    help="Pin unassigned queued tasks to available machines.",
)
def health_watch(db_url: str | None, dispatch: bool) -> None:
    """Run recovery passes at the configured interval until interrupted."""

    _emit_lines(
        _guarded(CONTROLLER.health, HealthCommand(db_url=db_url, watch=True, dispatch=dispatch)),
    )


def _guarded(action: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return action(command)
    except (ValueError, TaskNotFoundError, TaskStateError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_dispatch()
