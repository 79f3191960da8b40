"""External execution capability: run a prompt, optionally with tools, and
report ``{success, output|error, thread_id, duration_ms}``.

The orchestrators only depend on the :class:`ExecutionCapability` protocol;
:class:`ClaudeAgentCapability` is the production implementation on top of the
Claude Agent SDK.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol, TypeVar

from claude_agent_sdk import (
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    ResultMessage,
    ToolResultBlock,
    ToolUseBlock,
)

from taskweave.config import settings
from taskweave.errors import ExecutionError
from taskweave.sdk_consume import consume_sdk_response

if TYPE_CHECKING:
    from taskweave.tools import ToolRegistry

# Silence the "Using bundled Claude Code CLI: ..." INFO line that fires on
# every subprocess spawn.
import logging as _logging

_logging.getLogger("claude_agent_sdk._internal.transport.subprocess_cli").setLevel(
    _logging.WARNING
)

T = TypeVar("T")

_BUILTIN_TOOLS = [
    "Bash",
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "WebSearch",
    "WebFetch",
]


@dataclass
class ToolCall:
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    status: Literal["success", "error"] = "success"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ExecutionResult:
    success: bool
    output: str = ""
    error: str | None = None
    thread_id: str | None = None
    duration_ms: int = 0
    tool_calls: list[ToolCall] = field(default_factory=list)


class ExecutionCapability(Protocol):
    async def execute(
        self,
        prompt: str,
        *,
        tools: ToolRegistry | None = None,
        context: dict[str, Any] | None = None,
        system_prompt: str | None = None,
    ) -> ExecutionResult:
        """Run *prompt*; with *tools* the engine may call them, without it the
        call is pure reasoning."""
        ...


def render_prompt(prompt: str, context: dict[str, Any] | None) -> str:
    if not context:
        return prompt
    return f"{prompt}\n\nContext:\n{json.dumps(context, indent=2, default=str)}"


class ClaudeAgentCapability:
    def __init__(self, data_dir: Path | None = None, model: str | None = None) -> None:
        self.data_dir = data_dir or settings.data
        self.model = model or settings.model

    async def execute(
        self,
        prompt: str,
        *,
        tools: ToolRegistry | None = None,
        context: dict[str, Any] | None = None,
        system_prompt: str | None = None,
    ) -> ExecutionResult:
        start = time.monotonic()
        work_dir = self.data_dir / "threads" / uuid.uuid4().hex[:12]
        work_dir.mkdir(parents=True, exist_ok=True)

        if tools is not None:
            options = ClaudeAgentOptions(
                cwd=str(work_dir),
                permission_mode="bypassPermissions",
                mcp_servers=tools.mcp_servers(),
                model=self.model,
                allowed_tools=[*_BUILTIN_TOOLS, "mcp__*"],
                system_prompt=system_prompt,
                env={"SHELL": "/bin/bash"},
            )
        else:
            options = ClaudeAgentOptions(
                cwd=str(work_dir),
                model=self.model,
                max_turns=1,
                disallowed_tools=list(_BUILTIN_TOOLS),
                system_prompt=system_prompt,
            )

        chunks: list[str] = []
        calls: dict[str, ToolCall] = {}

        async def _on_text(text: str) -> None:
            chunks.append(text)

        async def _on_tool_use(block: ToolUseBlock) -> None:
            calls[block.id] = ToolCall(tool_name=block.name, args=dict(block.input))

        async def _on_tool_result(block: ToolResultBlock) -> None:
            call = calls.get(block.tool_use_id)
            if call is not None:
                call.result = block.content
                call.status = "error" if block.is_error else "success"

        try:
            async with ClaudeSDKClient(options) as client:
                await client.query(render_prompt(prompt, context))
                final: ResultMessage | None = await consume_sdk_response(
                    client,
                    on_text=_on_text,
                    on_tool_use=_on_tool_use,
                    on_tool_result=_on_tool_result,
                )
        except ClaudeSDKError as e:
            return ExecutionResult(
                success=False,
                error=str(e),
                duration_ms=int((time.monotonic() - start) * 1000),
                tool_calls=list(calls.values()),
            )

        output = "".join(chunks)
        duration_ms = int((time.monotonic() - start) * 1000)
        if final is None:
            return ExecutionResult(
                success=False,
                output=output,
                error="No result received from agent",
                duration_ms=duration_ms,
                tool_calls=list(calls.values()),
            )
        if final.is_error:
            return ExecutionResult(
                success=False,
                output=output,
                error=final.result or final.subtype,
                thread_id=final.session_id,
                duration_ms=duration_ms,
                tool_calls=list(calls.values()),
            )
        return ExecutionResult(
            success=True,
            output=output,
            thread_id=final.session_id,
            duration_ms=duration_ms,
            tool_calls=list(calls.values()),
        )


async def run_with_timeout(
    awaitable: Awaitable[T], timeout: float | None, what: str = "execution"
) -> T:
    """Await *awaitable*, turning a timeout into :class:`ExecutionError`."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise ExecutionError(f"{what} timed out after {timeout:g}s") from e


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def parse_json_reply(text: str) -> dict[str, Any] | None:
    """Extract a JSON object from a model reply.

    Tries fenced code blocks first, then the outermost ``{...}`` span, then
    the whole text. Returns ``None`` if nothing parses to an object.
    """
    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    candidates.append(text)
    for candidate in candidates:
        try:
            value = json.loads(candidate.strip())
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    return None
