"""Tests for the SDK response consumer behind ClaudeAgentCapability."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest
from claude_agent_sdk import (
    AssistantMessage,
    ResultMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from taskweave.sdk_consume import TEXT_SEPARATOR, consume_sdk_response


@dataclass
class ScriptedClient:
    messages: list[Any] = field(default_factory=list)

    async def receive_response(self):  # noqa: ANN201
        for msg in self.messages:
            yield msg


@dataclass
class Collected:
    texts: list[str] = field(default_factory=list)
    uses: list[ToolUseBlock] = field(default_factory=list)
    results: list[ToolResultBlock] = field(default_factory=list)

    async def on_text(self, text: str) -> None:
        self.texts.append(text)

    async def on_tool_use(self, block: ToolUseBlock) -> None:
        self.uses.append(block)

    async def on_tool_result(self, block: ToolResultBlock) -> None:
        self.results.append(block)

    async def consume(self, *messages: Any) -> ResultMessage | None:
        return await consume_sdk_response(
            ScriptedClient(list(messages)),  # type: ignore[arg-type]
            on_text=self.on_text,
            on_tool_use=self.on_tool_use,
            on_tool_result=self.on_tool_result,
        )


def _done(result: str = "", session_id: str = "thread-1") -> ResultMessage:
    return ResultMessage(
        subtype="success",
        duration_ms=100,
        duration_api_ms=80,
        is_error=False,
        num_turns=1,
        session_id=session_id,
        result=result,
    )


def _says(*texts: str) -> AssistantMessage:
    return AssistantMessage(content=[TextBlock(text=t) for t in texts], model="test")


def _calls(tool_id: str, name: str, /, **args: Any) -> AssistantMessage:
    return AssistantMessage(
        content=[ToolUseBlock(id=tool_id, name=name, input=args)], model="test"
    )


def _returns(tool_id: str, content: str, is_error: bool = False) -> UserMessage:
    return UserMessage(
        content=[ToolResultBlock(tool_use_id=tool_id, content=content, is_error=is_error)]
    )


@pytest.mark.asyncio
async def test_step_reply_text_and_final_result() -> None:
    seen = Collected()

    final = await seen.consume(
        _says("", "Gathered three sources."), _done("Gathered three sources.")
    )

    assert seen.texts == ["Gathered three sources."]
    assert final is not None
    assert final.session_id == "thread-1"


@pytest.mark.asyncio
async def test_result_text_stands_in_for_missing_blocks() -> None:
    seen = Collected()

    await seen.consume(_done('{"goalAchieved": false}'))

    assert seen.texts == ['{"goalAchieved": false}']


@pytest.mark.asyncio
async def test_tool_calls_pair_with_their_results() -> None:
    seen = Collected()

    await seen.consume(
        _says("Scheduling the digest."),
        _calls("t1", "mcp__taskweave__schedule_task", name="digest"),
        _returns("t1", "Scheduled task abc"),
        _calls("t2", "mcp__taskweave__pause_scheduled_task", task_id="zzz"),
        _returns("t2", "Task zzz not found", is_error=True),
        _says("One call failed."),
        _done("One call failed."),
    )

    assert [(b.id, b.name, b.input) for b in seen.uses] == [
        ("t1", "mcp__taskweave__schedule_task", {"name": "digest"}),
        ("t2", "mcp__taskweave__pause_scheduled_task", {"task_id": "zzz"}),
    ]
    assert [(b.tool_use_id, b.is_error) for b in seen.results] == [
        ("t1", False),
        ("t2", True),
    ]
    assert "".join(seen.texts) == "Scheduling the digest.\n\nOne call failed."
    assert seen.texts.count(TEXT_SEPARATOR) == 1


@pytest.mark.asyncio
async def test_tool_call_before_any_text_adds_no_separator() -> None:
    seen = Collected()

    await seen.consume(
        _calls("t1", "Read", path="notes.md"),
        _returns("t1", "..."),
        _says("Notes read."),
        _done(),
    )

    assert seen.texts == ["Notes read."]


@pytest.mark.asyncio
async def test_callbacks_are_optional() -> None:
    client = ScriptedClient([_calls("t1", "Read"), _returns("t1", "x"), _done("ok")])

    final = await consume_sdk_response(client)  # type: ignore[arg-type]

    assert final is not None
    assert final.result == "ok"


@pytest.mark.asyncio
async def test_empty_stream_returns_none() -> None:
    assert await Collected().consume() is None
