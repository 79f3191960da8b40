import asyncio
from typing import Any

import pytest
from claude_agent_sdk import tool

from taskweave.db import ThreadSafeConnection, list_definitions
from taskweave.errors import SourceNameCollisionError, ToolNameCollisionError
from taskweave.queue import JobQueue
from taskweave.scheduler import SCHEDULED_QUEUE
from taskweave.tools import ToolSource, compose_tools, make_schedule_tools


def _echo_tool(name: str) -> Any:
    @tool(name, "Echo the input.", {"text": str})
    async def echo(args: dict[str, Any]) -> dict[str, Any]:
        return {"content": [{"type": "text", "text": args["text"]}]}

    return echo


def _get_tool_schema(instance, tool_name: str) -> dict:
    """Helper: extract a tool's inputSchema from an MCP server instance."""
    from mcp.types import ListToolsRequest

    handler = instance.request_handlers[ListToolsRequest]
    result = asyncio.run(handler(ListToolsRequest()))
    for t in result.root.tools:
        if t.name == tool_name:
            return t.inputSchema
    raise AssertionError(f"Tool {tool_name!r} not found")


def _call(source: ToolSource, name: str, args: dict[str, Any]) -> dict[str, Any]:
    sdk_tool = next(t for t in source.tools if t.name == name)
    return asyncio.run(sdk_tool.handler(args))


def _text(result: dict[str, Any]) -> str:
    return result["content"][0]["text"]


def test_compose_merges_sources() -> None:
    registry = compose_tools(
        [
            ToolSource("alpha", [_echo_tool("shout")]),
            ToolSource("beta", [_echo_tool("whisper")]),
        ]
    )

    assert registry.names() == ["shout", "whisper"]
    assert set(registry.mcp_servers()) == {"alpha", "beta"}


def test_compose_rejects_name_collision() -> None:
    with pytest.raises(ToolNameCollisionError) as exc_info:
        compose_tools(
            [
                ToolSource("alpha", [_echo_tool("shout")]),
                ToolSource("beta", [_echo_tool("shout")]),
            ]
        )

    assert exc_info.value.tool_name == "shout"
    assert exc_info.value.sources == ["alpha", "beta"]
    assert exc_info.value.to_dict()["reason"] == "tool_name_collision"


def test_compose_rejects_duplicate_source_name() -> None:
    with pytest.raises(SourceNameCollisionError) as exc_info:
        compose_tools(
            [
                ToolSource("taskweave", [_echo_tool("schedule_task")]),
                ToolSource("taskweave", [_echo_tool("exfiltrate")]),
            ]
        )

    assert exc_info.value.source_name == "taskweave"
    assert exc_info.value.to_dict()["reason"] == "source_name_collision"


def test_empty_sources_get_no_server() -> None:
    registry = compose_tools([ToolSource("empty")])
    assert registry.names() == []
    assert registry.mcp_servers() == {}


def test_schedule_tools_names(db: ThreadSafeConnection, queue: JobQueue) -> None:
    source = make_schedule_tools(db, queue, "alice")
    assert source.name == "taskweave"
    assert source.tool_names() == [
        "schedule_task",
        "list_scheduled_tasks",
        "pause_scheduled_task",
        "resume_scheduled_task",
        "delete_scheduled_task",
    ]


def test_schedule_task_schema(db: ThreadSafeConnection, queue: JobQueue) -> None:
    server = compose_tools([make_schedule_tools(db, queue, "alice")]).mcp_servers()
    schema = _get_tool_schema(server["taskweave"]["instance"], "schedule_task")

    assert schema["required"] == ["name", "prompt", "schedule_type"]
    # Enum constraints prevent Claude from inventing invalid values
    assert schema["properties"]["schedule_type"]["enum"] == ["cron", "interval"]
    assert schema["properties"]["unit"]["enum"] == ["minutes", "hours", "days", "weeks"]


def test_schedule_task_creates_definition(
    db: ThreadSafeConnection, queue: JobQueue
) -> None:
    source = make_schedule_tools(db, queue, "alice")

    result = _call(
        source,
        "schedule_task",
        {
            "name": "standup",
            "prompt": "Summarise yesterday's commits",
            "schedule_type": "interval",
            "value": 1,
            "unit": "days",
        },
    )

    assert "is_error" not in result
    definitions = list_definitions(db, "alice")
    assert [d.name for d in definitions] == ["standup"]
    assert definitions[0].id in _text(result)
    assert len(queue.list_jobs(SCHEDULED_QUEUE, ref=definitions[0].id)) == 1


def test_schedule_task_reports_invalid_cron(
    db: ThreadSafeConnection, queue: JobQueue
) -> None:
    source = make_schedule_tools(db, queue, "alice")

    result = _call(
        source,
        "schedule_task",
        {
            "name": "broken",
            "prompt": "noop",
            "schedule_type": "cron",
            "expression": "whenever",
        },
    )

    assert result["is_error"] is True
    assert "Could not schedule task" in _text(result)
    assert list_definitions(db, "alice") == []


def test_list_pause_resume_delete(db: ThreadSafeConnection, queue: JobQueue) -> None:
    source = make_schedule_tools(db, queue, "alice")
    assert _text(_call(source, "list_scheduled_tasks", {})) == "No tasks scheduled."

    _call(
        source,
        "schedule_task",
        {
            "name": "hourly",
            "prompt": "ping",
            "schedule_type": "interval",
            "value": 1,
            "unit": "hours",
        },
    )
    task_id = list_definitions(db, "alice")[0].id

    listing = _text(_call(source, "list_scheduled_tasks", {}))
    assert task_id in listing
    assert "Every 1 hour" in listing
    assert "enabled" in listing

    paused = _call(source, "pause_scheduled_task", {"task_id": task_id})
    assert "paused" in _text(paused)
    assert "disabled" in _text(_call(source, "list_scheduled_tasks", {}))
    resumed = _call(source, "resume_scheduled_task", {"task_id": task_id})
    assert "resumed" in _text(resumed)

    _call(source, "delete_scheduled_task", {"task_id": task_id})
    assert list_definitions(db, "alice") == []


def test_tools_are_owner_scoped(db: ThreadSafeConnection, queue: JobQueue) -> None:
    alice = make_schedule_tools(db, queue, "alice")
    mallory = make_schedule_tools(db, queue, "mallory")
    _call(
        alice,
        "schedule_task",
        {
            "name": "mine",
            "prompt": "p",
            "schedule_type": "cron",
            "expression": "0 9 * * *",
        },
    )
    task_id = list_definitions(db, "alice")[0].id

    result = _call(mallory, "delete_scheduled_task", {"task_id": task_id})

    assert result["is_error"] is True
    assert _text(_call(mallory, "list_scheduled_tasks", {})) == "No tasks scheduled."
    assert len(list_definitions(db, "alice")) == 1
