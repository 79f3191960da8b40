from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from taskweave.agent_core import ExecutionResult
from taskweave.db import ThreadSafeConnection, init_db
from taskweave.queue import JobQueue


@dataclass
class FakeCapability:
    """Scripted stand-in for the execution capability.

    Replies are registered per prompt keyword. Each call pops the next reply
    for the first matching keyword; the last reply of a script repeats.
    A reply may be a string (successful output), a dict (JSON output), an
    ``ExecutionResult`` or an exception to raise.
    """

    scripts: dict[str, list[Any]] = field(default_factory=dict)
    calls: list[dict[str, Any]] = field(default_factory=list)
    default: Any = "done"

    def script(self, keyword: str, *replies: Any) -> FakeCapability:
        self.scripts.setdefault(keyword, []).extend(replies)
        return self

    def prompts(self, keyword: str) -> list[str]:
        return [c["prompt"] for c in self.calls if keyword in c["prompt"]]

    async def execute(
        self,
        prompt: str,
        *,
        tools: Any = None,
        context: dict[str, Any] | None = None,
        system_prompt: str | None = None,
    ) -> ExecutionResult:
        self.calls.append({"prompt": prompt, "tools": tools, "context": context})
        reply = self.default
        for keyword, replies in self.scripts.items():
            if keyword in prompt and replies:
                reply = replies.pop(0) if len(replies) > 1 else replies[0]
                break
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, ExecutionResult):
            return reply
        if isinstance(reply, dict):
            reply = json.dumps(reply)
        return ExecutionResult(success=True, output=reply, thread_id="thread-1")


@pytest.fixture
def db(tmp_path: Path) -> ThreadSafeConnection:
    return init_db(tmp_path / "test.db")


@pytest.fixture
def queue(db: ThreadSafeConnection) -> JobQueue:
    return JobQueue(db, lease_seconds=60, max_attempts=3, backoff_ms=0)


@pytest.fixture
def capability() -> FakeCapability:
    return FakeCapability()
