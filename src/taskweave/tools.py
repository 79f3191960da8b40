"""Tool sources and their composition into one registry.

A :class:`ToolSource` is a named group of SDK tools (the built-in scheduling
tools, or tools contributed by a plugin). :func:`compose_tools` merges them
and refuses to let one source silently shadow another's tool or server.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from textwrap import dedent
from typing import Any

from claude_agent_sdk import SdkMcpTool, create_sdk_mcp_server, tool

from taskweave.db import DbConnection
from taskweave.errors import (
    SourceNameCollisionError,
    TaskweaveError,
    ToolNameCollisionError,
)
from taskweave.plugins import load_plugins, plugin_tool_sources
from taskweave.queue import JobQueue
from taskweave.scheduler import (
    create_scheduled_task,
    delete_scheduled_task,
    list_scheduled_tasks,
    set_scheduled_task_enabled,
)
from taskweave.scheduling import describe

log = logging.getLogger(__name__)


@dataclass
class ToolSource:
    name: str
    tools: list[SdkMcpTool[Any]] = field(default_factory=list)

    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]


@dataclass
class ToolRegistry:
    sources: list[ToolSource] = field(default_factory=list)
    handlers: dict[str, SdkMcpTool[Any]] = field(default_factory=dict)

    def names(self) -> list[str]:
        return sorted(self.handlers)

    def mcp_servers(self) -> dict[str, Any]:
        return {
            source.name: create_sdk_mcp_server(name=source.name, tools=source.tools)
            for source in self.sources
            if source.tools
        }


def compose_tools(sources: Iterable[ToolSource]) -> ToolRegistry:
    """Merge tool sources into one name -> handler map.

    Raises:
        ToolNameCollisionError: a tool name is exposed more than once.
        SourceNameCollisionError: two sources share a server name.
    """
    registry = ToolRegistry()
    owners: dict[str, str] = {}
    for source in sources:
        if any(s.name == source.name for s in registry.sources):
            raise SourceNameCollisionError(source.name)
        for sdk_tool in source.tools:
            if sdk_tool.name in owners:
                raise ToolNameCollisionError(
                    sdk_tool.name, [owners[sdk_tool.name], source.name]
                )
            owners[sdk_tool.name] = source.name
            registry.handlers[sdk_tool.name] = sdk_tool
        registry.sources.append(source)
    return registry


def _text(text: str, *, is_error: bool = False) -> dict[str, Any]:
    result: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["is_error"] = True
    return result


def make_schedule_tools(db: DbConnection, queue: JobQueue, owner: str) -> ToolSource:
    @tool(
        "schedule_task",
        dedent("""\
        Schedule a prompt to run repeatedly in the background.
        Use a cron expression, or an interval of N minutes/hours/days/weeks."""),
        {
            "type": "object",
            "properties": {
                "name": {
                    "type": "string",
                    "description": "Short name for the scheduled task.",
                },
                "prompt": {
                    "type": "string",
                    "description": "What the agent should do each time the task fires.",
                },
                "schedule_type": {
                    "type": "string",
                    "enum": ["cron", "interval"],
                    "description": (
                        '"cron": recurring via cron expression (e.g. "0 9 * * *"). '
                        '"interval": every `value` `unit`.'
                    ),
                },
                "expression": {
                    "type": "string",
                    "description": "Cron expression, required for schedule_type=cron.",
                },
                "value": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Interval length, required for schedule_type=interval.",
                },
                "unit": {
                    "type": "string",
                    "enum": ["minutes", "hours", "days", "weeks"],
                    "description": "Interval unit, required for schedule_type=interval.",
                },
            },
            "required": ["name", "prompt", "schedule_type"],
        },
    )
    async def schedule_task(args: dict[str, Any]) -> dict[str, Any]:
        if args["schedule_type"] == "cron":
            schedule = {"type": "cron", "expression": args.get("expression", "")}
        else:
            schedule = {
                "type": "interval",
                "value": args.get("value"),
                "unit": args.get("unit"),
            }
        try:
            definition = create_scheduled_task(
                db,
                queue,
                owner,
                {"name": args["name"], "prompt": args["prompt"], "schedule": schedule},
            )
        except TaskweaveError as e:
            return _text(f"Could not schedule task: {e.message} {e.details}", is_error=True)
        next_run = definition.next_run_at.isoformat() if definition.next_run_at else None
        return _text(f"Task {definition.id} scheduled. Next run: {next_run}")

    @tool(
        "list_scheduled_tasks",
        "List your scheduled tasks with their schedule and next run time.",
        {"type": "object", "properties": {}},
    )
    async def list_tasks(args: dict[str, Any]) -> dict[str, Any]:
        definitions = list_scheduled_tasks(db, owner)
        if not definitions:
            return _text("No tasks scheduled.")
        lines = ["Tasks:"]
        for d in definitions:
            state = "enabled" if d.enabled else "disabled"
            lines.append(
                f"  {d.id}: {d.name} [{describe(d.schedule)}] "
                f"({state}, next: {d.next_run_at})"
            )
        return _text("\n".join(lines))

    @tool("pause_scheduled_task", "Disable a scheduled task.", {"task_id": str})
    async def pause_task(args: dict[str, Any]) -> dict[str, Any]:
        try:
            set_scheduled_task_enabled(db, queue, owner, args["task_id"], False)
        except TaskweaveError as e:
            return _text(e.message, is_error=True)
        return _text(f"Task {args['task_id']} paused.")

    @tool("resume_scheduled_task", "Re-enable a paused scheduled task.", {"task_id": str})
    async def resume_task(args: dict[str, Any]) -> dict[str, Any]:
        try:
            definition = set_scheduled_task_enabled(
                db, queue, owner, args["task_id"], True
            )
        except TaskweaveError as e:
            return _text(e.message, is_error=True)
        return _text(f"Task {definition.id} resumed. Next run: {definition.next_run_at}")

    @tool(
        "delete_scheduled_task",
        "Cancel and delete a scheduled task.",
        {"task_id": str},
    )
    async def delete_task(args: dict[str, Any]) -> dict[str, Any]:
        try:
            delete_scheduled_task(db, queue, owner, args["task_id"])
        except TaskweaveError as e:
            return _text(e.message, is_error=True)
        return _text(f"Task {args['task_id']} deleted.")

    return ToolSource(
        name="taskweave",
        tools=[schedule_task, list_tasks, pause_task, resume_task, delete_task],
    )


def collect_tool_sources(db: DbConnection, queue: JobQueue, owner: str) -> list[ToolSource]:
    return [
        make_schedule_tools(db, queue, owner),
        *plugin_tool_sources(load_plugins(), db, owner),
    ]


def build_tool_registry(db: DbConnection, queue: JobQueue, owner: str) -> ToolRegistry:
    return compose_tools(collect_tool_sources(db, queue, owner))
