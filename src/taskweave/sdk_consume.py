"""Shared SDK response consumption: single source of truth for iterating
``ClaudeSDKClient.receive_response()`` and extracting text, tool calls and
the final result message.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeSDKClient,
    ResultMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

TEXT_SEPARATOR = "\n\n"


async def consume_sdk_response(
    client: ClaudeSDKClient,
    *,
    on_text: Callable[[str], Awaitable[None]] | None = None,
    on_tool_use: Callable[[ToolUseBlock], Awaitable[None]] | None = None,
    on_tool_result: Callable[[ToolResultBlock], Awaitable[None]] | None = None,
) -> ResultMessage | None:
    """Iterate *client*.receive_response() and dispatch to callbacks.

    * Every non-empty ``TextBlock.text`` is forwarded to *on_text*. Text that
      resumes after a tool call is preceded by a blank-line separator so two
      text runs never run together.
    * ``ToolUseBlock`` from the assistant goes to *on_tool_use*, and the
      matching ``ToolResultBlock`` (delivered in a ``UserMessage``) goes to
      *on_tool_result*.
    * For ``ResultMessage``: if **no** text blocks were seen and
      ``message.result`` is truthy, *on_text* receives the result text as a
      fallback.
    * Returns the final ``ResultMessage``, or ``None`` when the stream
      contained no messages.
    """
    had_text_blocks = False
    pending_separator = False
    final_result: ResultMessage | None = None

    async for message in client.receive_response():
        if isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock) and block.text:
                    if on_text is not None:
                        if pending_separator:
                            await on_text(TEXT_SEPARATOR)
                            pending_separator = False
                        await on_text(block.text)
                    had_text_blocks = True
                elif isinstance(block, ToolUseBlock):
                    if on_tool_use is not None:
                        await on_tool_use(block)
                    if had_text_blocks:
                        pending_separator = True

        elif isinstance(message, UserMessage):
            if on_tool_result is not None and isinstance(message.content, list):
                for block in message.content:
                    if isinstance(block, ToolResultBlock):
                        await on_tool_result(block)

        elif isinstance(message, ResultMessage):
            final_result = message

            if not had_text_blocks and message.result and on_text is not None:
                await on_text(message.result)

    return final_result
