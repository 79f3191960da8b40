import asyncio
import json
import logging
from typing import Any

import click

from taskweave.agent_core import ClaudeAgentCapability
from taskweave.autonomous import AutonomousLoop
from taskweave.config import settings
from taskweave.daemon import run_daemon
from taskweave.db import DbConnection, init_db
from taskweave.errors import TaskweaveError
from taskweave.orchestrator import TaskOrchestrator
from taskweave.plugins import load_plugins, run_db_migrations
from taskweave.queue import JobQueue
from taskweave.scheduler import (
    create_scheduled_task,
    delete_scheduled_task,
    execute_scheduled_task_now,
    get_scheduled_task,
    list_scheduled_runs,
    list_scheduled_tasks,
    set_scheduled_task_enabled,
)
from taskweave.scheduling import describe
from taskweave.tools import ToolRegistry, build_tool_registry


def _get_db() -> DbConnection:
    return init_db(settings.db_path)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


class _PluginGroup(click.Group):
    _plugins_loaded = False

    def _ensure_plugins(self) -> None:
        if self._plugins_loaded:
            return
        self._plugins_loaded = True
        plugins = load_plugins()
        run_db_migrations(_get_db(), plugins)
        for plugin in plugins:
            plugin.register_commands(self)

    def list_commands(self, ctx: click.Context) -> list[str]:
        self._ensure_plugins()
        return super().list_commands(ctx)

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        self._ensure_plugins()
        return super().get_command(ctx, cmd_name)

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except TaskweaveError as e:
            click.echo(f"{e.reason}: {e.message}", err=True)
            fields = getattr(e, "fields", None)
            for name, problem in (fields or {}).items():
                click.echo(f"  {name}: {problem}", err=True)
            ctx.exit(1)


class _Services:
    """Lazily built service objects shared by the subcommands."""

    def __init__(self, owner: str) -> None:
        self.owner = owner
        self._db: DbConnection | None = None

    @property
    def db(self) -> DbConnection:
        if self._db is None:
            self._db = _get_db()
        return self._db

    @property
    def queue(self) -> JobQueue:
        return JobQueue(self.db)

    def capability(self) -> ClaudeAgentCapability:
        return ClaudeAgentCapability()

    def tools_for(self, owner: str) -> ToolRegistry:
        return build_tool_registry(self.db, self.queue, owner)

    def orchestrator(self) -> TaskOrchestrator:
        return TaskOrchestrator(
            self.db, self.queue, self.capability(), tools_for=self.tools_for
        )

    def autonomous(self) -> AutonomousLoop:
        return AutonomousLoop(
            self.db, self.queue, self.capability(), tools_for=self.tools_for
        )


pass_services = click.make_pass_decorator(_Services)


@click.group(cls=_PluginGroup, invoke_without_command=True)
@click.option("--owner", default=None, help="Acting owner (defaults to TASKWEAVE_OWNER).")
@click.option("--log-level", default=None, help="Logging level, e.g. DEBUG.")
@click.pass_context
def main(ctx: click.Context, owner: str | None, log_level: str | None) -> None:
    """taskweave: scheduled prompts, stepwise tasks and autonomous sessions"""
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = _Services(owner or settings.owner)
    if not ctx.invoked_subcommand:
        click.echo(ctx.get_help())


@main.command()
@pass_services
def worker(services: _Services) -> None:
    """Run the background worker for all job queues."""
    asyncio.run(run_daemon(services.db))


# Scheduled tasks


@main.group()
def schedule() -> None:
    """Manage recurring scheduled prompts."""


@schedule.command("add")
@click.argument("name")
@click.argument("prompt")
@click.option("--cron", "cron", default=None, help='Cron expression, e.g. "0 9 * * *".')
@click.option("--every", type=int, default=None, help="Interval length.")
@click.option(
    "--unit",
    type=click.Choice(["minutes", "hours", "days", "weeks"]),
    default="minutes",
    show_default=True,
)
@click.option("--description", default=None)
@click.option("--disabled", is_flag=True, help="Create the task disabled.")
@pass_services
def schedule_add(
    services: _Services,
    name: str,
    prompt: str,
    cron: str | None,
    every: int | None,
    unit: str,
    description: str | None,
    disabled: bool,
) -> None:
    """Create a scheduled task from a cron expression or an interval."""
    if (cron is None) == (every is None):
        raise click.UsageError("Give exactly one of --cron or --every.")
    spec: dict[str, Any] = (
        {"type": "cron", "expression": cron}
        if cron is not None
        else {"type": "interval", "value": every, "unit": unit}
    )
    definition = create_scheduled_task(
        services.db,
        services.queue,
        services.owner,
        {
            "name": name,
            "prompt": prompt,
            "schedule": spec,
            "description": description,
            "enabled": not disabled,
        },
    )
    click.echo(f"Created {definition.id}, next run: {definition.next_run_at}")


@schedule.command("list")
@pass_services
def schedule_list(services: _Services) -> None:
    """List scheduled tasks."""
    definitions = list_scheduled_tasks(services.db, services.owner)
    if not definitions:
        click.echo("No scheduled tasks.")
        return
    click.echo(f"{'ID':<34} {'Name':<30} {'Schedule':<30} {'State':<9} {'Next Run'}")
    click.echo("-" * 130)
    for d in definitions:
        state = "enabled" if d.enabled else "disabled"
        click.echo(
            f"{d.id:<34} {d.name[:30]:<30} {describe(d.schedule)[:30]:<30}"
            f" {state:<9} {d.next_run_at}"
        )


@schedule.command("show")
@click.argument("definition_id")
@pass_services
def schedule_show(services: _Services, definition_id: str) -> None:
    definition = get_scheduled_task(services.db, services.owner, definition_id)
    _echo_json(definition.model_dump(mode="json"))


@schedule.command("enable")
@click.argument("definition_id")
@pass_services
def schedule_enable(services: _Services, definition_id: str) -> None:
    definition = set_scheduled_task_enabled(
        services.db, services.queue, services.owner, definition_id, True
    )
    click.echo(f"Enabled {definition.id}, next run: {definition.next_run_at}")


@schedule.command("disable")
@click.argument("definition_id")
@pass_services
def schedule_disable(services: _Services, definition_id: str) -> None:
    set_scheduled_task_enabled(
        services.db, services.queue, services.owner, definition_id, False
    )
    click.echo(f"Disabled {definition_id}")


@schedule.command("rm")
@click.argument("definition_id")
@pass_services
def schedule_rm(services: _Services, definition_id: str) -> None:
    delete_scheduled_task(services.db, services.queue, services.owner, definition_id)
    click.echo(f"Deleted {definition_id}")


@schedule.command("run")
@click.argument("definition_id")
@pass_services
def schedule_run(services: _Services, definition_id: str) -> None:
    """Run a scheduled task once, now, without moving its next run."""
    record = asyncio.run(
        execute_scheduled_task_now(
            services.db,
            services.owner,
            definition_id,
            services.capability(),
            tools=services.tools_for(services.owner),
        )
    )
    click.echo(f"{record.status} in {record.duration_ms} ms")
    if record.output:
        click.echo(record.output)
    if record.error:
        click.echo(record.error, err=True)


@schedule.command("history")
@click.argument("definition_id")
@click.option("--limit", type=int, default=20, show_default=True)
@pass_services
def schedule_history(services: _Services, definition_id: str, limit: int) -> None:
    for run in list_scheduled_runs(services.db, services.owner, definition_id, limit):
        click.echo(
            f"{run.started_at} | {run.trigger:<9} | {run.status:<8} | "
            f"{run.duration_ms} ms | {run.error or ''}"
        )


# Stepwise tasks


@main.group()
def task() -> None:
    """Run multi-step tasks in the background."""


@task.command("create")
@click.argument("goal")
@pass_services
def task_create(services: _Services, goal: str) -> None:
    created = asyncio.run(services.orchestrator().create_task(services.owner, goal))
    _echo_json(created.to_dict())


@task.command("status")
@click.argument("task_id")
@pass_services
def task_status(services: _Services, task_id: str) -> None:
    _echo_json(services.orchestrator().get_status(services.owner, task_id).to_dict())


@task.command("cancel")
@click.argument("task_id")
@pass_services
def task_cancel(services: _Services, task_id: str) -> None:
    services.orchestrator().cancel(services.owner, task_id)
    click.echo(f"Cancelled {task_id}")


@task.command("restore")
@click.argument("task_id")
@click.option("--checkpoint", type=int, default=-1, show_default=True)
@pass_services
def task_restore(services: _Services, task_id: str, checkpoint: int) -> None:
    """Resume a failed task from a checkpoint (default: the latest)."""
    restored = services.orchestrator().restore_from_checkpoint(
        services.owner, task_id, checkpoint
    )
    click.echo(f"Restored {restored.id} at step {restored.current_step + 1}")


@task.command("list")
@click.option("--status", "statuses", multiple=True)
@pass_services
def task_list(services: _Services, statuses: tuple[str, ...]) -> None:
    for t in services.orchestrator().list_tasks(services.owner, list(statuses) or None):
        click.echo(
            f"{t.id} | {t.status:<9} | step {t.current_step}/{t.total_steps} | {t.goal[:60]}"
        )


# Autonomous sessions


@main.group()
def auto() -> None:
    """Goal-driven autonomous sessions."""


@auto.command("create")
@click.argument("goal")
@click.option("--name", default=None, help="Session name (defaults to the goal).")
@click.option("--max-iterations", type=int, default=None)
@pass_services
def auto_create(
    services: _Services, goal: str, name: str | None, max_iterations: int | None
) -> None:
    session = services.autonomous().create_session(
        services.owner,
        {"name": name or goal[:200], "goal": goal, "max_iterations": max_iterations},
    )
    click.echo(f"Created session {session.id} (max {session.max_iterations} iterations)")


@auto.command("continue")
@click.argument("session_id")
@click.option("--feedback", default=None, help="Guidance recorded before evaluating.")
@click.option("--background", is_flag=True, help="Hand the run to the worker.")
@pass_services
def auto_continue(
    services: _Services, session_id: str, feedback: str | None, background: bool
) -> None:
    loop = services.autonomous()
    if background:
        job = loop.enqueue_continue(services.owner, session_id, feedback)
        click.echo(f"Queued {job.id}")
        return
    result = asyncio.run(loop.continue_session(services.owner, session_id, feedback))
    _echo_json(result.to_dict())


@auto.command("list")
@click.option("--status", "statuses", multiple=True)
@pass_services
def auto_list(services: _Services, statuses: tuple[str, ...]) -> None:
    for s in services.autonomous().list_sessions(services.owner, list(statuses) or None):
        click.echo(
            f"{s.id} | {s.status:<9} | {s.current_iteration}/{s.max_iterations}"
            f" | {s.progress_percentage:>3}% | {s.name}"
        )


@auto.command("iterations")
@click.argument("session_id")
@pass_services
def auto_iterations(services: _Services, session_id: str) -> None:
    _echo_json(
        [
            i.model_dump(mode="json")
            for i in services.autonomous().list_iterations(services.owner, session_id)
        ]
    )


@auto.command("observations")
@click.argument("session_id")
@click.option("--limit", type=int, default=None)
@pass_services
def auto_observations(services: _Services, session_id: str, limit: int | None) -> None:
    for o in services.autonomous().list_observations(services.owner, session_id, limit):
        click.echo(f"{o.created_at} [{o.type}] {o.content}")


@auto.command("cancel")
@click.argument("session_id")
@pass_services
def auto_cancel(services: _Services, session_id: str) -> None:
    services.autonomous().cancel_session(services.owner, session_id)
    click.echo(f"Cancelled {session_id}")


@auto.command("rm")
@click.argument("session_id")
@pass_services
def auto_rm(services: _Services, session_id: str) -> None:
    services.autonomous().delete_session(services.owner, session_id)
    click.echo(f"Deleted {session_id}")


if __name__ == "__main__":
    main()
