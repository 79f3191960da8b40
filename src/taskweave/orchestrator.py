"""Stepwise task orchestration.

A goal is decomposed once into an ordered strategy. Each step then runs as
its own job on the ``task-steps`` queue, so a task survives restarts and never
blocks a worker for its whole duration:

    create_task -> step 0 job -> process_step -> step 1 job -> ... -> completed

Step N+1 is queued only after step N settled. Failures are retried a bounded
number of times before the task is forced to ``failed``. Cancellation is
cooperative: an in-flight step finishes, and its result is discarded.
"""

from __future__ import annotations

import json
import logging
import math
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from textwrap import dedent
from typing import Any

from pydantic import ValidationError

from taskweave.agent_core import (
    ExecutionCapability,
    ToolCall,
    parse_json_reply,
    run_with_timeout,
)
from taskweave.config import settings
from taskweave.db import (
    DbConnection,
    add_trace,
    get_task,
    insert_task,
    list_tasks,
    list_traces,
    new_id,
    save_task,
    utcnow,
)
from taskweave.errors import (
    DecompositionError,
    InputValidationError,
    NotFoundError,
    StateConflictError,
)
from taskweave.models import (
    Checkpoint,
    QueueJob,
    StrategyStep,
    TaskContext,
    TaskExecution,
    TaskStrategy,
    ToolCallRecord,
)
from taskweave.queue import JobQueue
from taskweave.tools import ToolRegistry
from taskweave.worker import SkipJob, load_authoritative

log = logging.getLogger(__name__)

TASK_QUEUE = "task-steps"
CANCELLED_REASON = "Cancelled by user"
DEFAULT_STEP_MS = 30_000
STEP_JOB_ATTEMPTS = 5
STEP_JOB_BACKOFF_MS = 5000
RECENT_TOOL_RESULTS = 10

DECOMPOSE_PROMPT = dedent("""\
    Break the following goal into an ordered list of concrete steps.

    Goal: {goal}

    Available tools: {tools}

    Reply with JSON only, in this shape:
    {{"steps": [{{"description": "...", "type": "tool-call" | "llm-reasoning" | "checkpoint", "estimatedDuration": <milliseconds>}}]}}

    Use "tool-call" for steps that need tools, "llm-reasoning" for analysis or
    writing, and "checkpoint" to mark a point worth saving progress at.
    Use at most {max_steps} steps.""")

STEP_PROMPT = dedent("""\
    You are working through a multi-step task.

    Overall goal: {goal}
    Current step ({number} of {total}): {description}

    Complete only this step. Earlier findings are in the context below.""")

SUMMARIZE_PROMPT = dedent("""\
    Summarize the following work log for the goal "{goal}".
    Keep every fact, result and open question that matters for the goal;
    drop chatter and repetition.

    {history}""")

ToolsFactory = Callable[[str], ToolRegistry]


@dataclass
class CreatedTask:
    task_id: str
    strategy: TaskStrategy
    estimated_duration: int  # seconds
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "strategy": self.strategy.model_dump(mode="json", by_alias=True),
            "estimatedDuration": self.estimated_duration,
            "message": self.message,
        }


@dataclass
class StepOutcome:
    success: bool
    output: str = ""
    error: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class TaskStatusView:
    task: TaskExecution
    progress: int
    current_step: int  # 1-indexed for display
    total_steps: int
    latest_traces: list[Any]

    def to_dict(self) -> dict[str, Any]:
        task = self.task
        return {
            "taskId": task.id,
            "goal": task.goal,
            "status": task.status,
            "progress": self.progress,
            "currentStep": self.current_step,
            "totalSteps": self.total_steps,
            "steps": [
                s.model_dump(mode="json", by_alias=True)
                for s in (task.strategy.steps if task.strategy else [])
            ],
            "context": task.context.model_dump(mode="json"),
            "retryCount": task.retry_count,
            "lastError": task.last_error,
            "latestTraces": [t.model_dump(mode="json") for t in self.latest_traces],
            "createdAt": task.created_at.isoformat(),
            "startedAt": task.started_at.isoformat() if task.started_at else None,
            "completedAt": task.completed_at.isoformat() if task.completed_at else None,
            "estimatedCompletion": (
                task.estimated_completion.isoformat()
                if task.estimated_completion
                else None
            ),
        }


def progress_percent(current_step: int, total_steps: int) -> int:
    if total_steps <= 0:
        return 0
    return math.floor(current_step / total_steps * 100 + 0.5)


def merge_step_result(
    context: TaskContext, index: int, step: StrategyStep, outcome: StepOutcome
) -> TaskContext:
    """Fold a step's output into the context without dropping anything."""
    findings = dict(context.findings)
    findings[f"{index + 1}. {step.description}"] = outcome.output
    tool_results = [
        *context.tool_results,
        *(
            {
                "step": index + 1,
                "tool": call.tool_name,
                "args": call.args,
                "result": call.result,
                "status": call.status,
            }
            for call in outcome.tool_calls
        ),
    ]
    history = [
        *context.message_history,
        {"role": "user", "content": f"Step {index + 1}: {step.description}"},
        {"role": "assistant", "content": outcome.output},
    ]
    return TaskContext(
        summary=context.summary,
        findings=findings,
        tool_results=tool_results,
        message_history=history,
    )


class TaskOrchestrator:
    def __init__(
        self,
        db: DbConnection,
        queue: JobQueue,
        capability: ExecutionCapability,
        *,
        tools_for: ToolsFactory | None = None,
        max_retries: int | None = None,
        max_steps: int | None = None,
        checkpoint_interval: int | None = None,
        context_char_limit: int | None = None,
        trace_limit: int | None = None,
        step_delay_ms: int | None = None,
        retry_backoff_ms: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self.db = db
        self.queue = queue
        self.capability = capability
        self.tools_for = tools_for
        self.max_retries = (
            max_retries if max_retries is not None else settings.max_step_retries
        )
        self.max_steps = max_steps or settings.max_strategy_steps
        self.checkpoint_interval = checkpoint_interval or settings.checkpoint_interval
        self.context_char_limit = context_char_limit or settings.context_char_limit
        self.trace_limit = trace_limit or settings.trace_query_limit
        self.step_delay_ms = (
            step_delay_ms if step_delay_ms is not None else settings.step_delay_ms
        )
        self.retry_backoff_ms = (
            retry_backoff_ms
            if retry_backoff_ms is not None
            else settings.step_retry_backoff_ms
        )
        self.timeout = timeout or settings.execution_timeout

    # Creation

    async def create_task(self, owner: str, goal: str) -> CreatedTask:
        goal = (goal or "").strip()
        if not goal:
            raise InputValidationError("Goal is required", {"goal": "must not be empty"})

        # Collisions surface here, before anything is stored.
        tools = self.tools_for(owner) if self.tools_for is not None else None

        now = utcnow()
        task = TaskExecution(
            id=new_id(), owner=owner, goal=goal, created_at=now, updated_at=now
        )
        insert_task(self.db, task)

        try:
            strategy = await self._decompose(goal, tools)
        except DecompositionError as e:
            task.status = "failed"
            task.last_error = e.message
            task.completed_at = utcnow()
            if save_task(self.db, task, only_if_status="pending"):
                add_trace(
                    self.db, task.id, "error", f"Decomposition failed: {e.message}"
                )
            raise

        task.strategy = strategy
        task.estimated_completion = self.estimate_completion(task)
        if not save_task(self.db, task, only_if_status="pending"):
            # Cancelled while the planner was running.
            current = self._get(owner, task.id)
            log.info("Task %s was cancelled during decomposition", task.id)
            raise StateConflictError(
                "Task was cancelled during decomposition", current.status
            )
        add_trace(
            self.db,
            task.id,
            "decision",
            f"Task created with {strategy.total_steps} steps",
            {"strategy": strategy.model_dump(mode="json", by_alias=True)},
        )

        self._enqueue_step(task, 0)
        add_trace(self.db, task.id, "decision", f"Step 1/{strategy.total_steps} queued")
        log.info("Created task %s with %d steps", task.id, strategy.total_steps)

        return CreatedTask(
            task_id=task.id,
            strategy=strategy,
            estimated_duration=strategy.estimated_duration_ms(DEFAULT_STEP_MS) // 1000,
            message=f"Task created with {strategy.total_steps} steps",
        )

    async def _decompose(self, goal: str, tools: ToolRegistry | None) -> TaskStrategy:
        tool_names = tools.names() if tools is not None else []
        prompt = DECOMPOSE_PROMPT.format(
            goal=goal,
            tools=", ".join(tool_names) or "none",
            max_steps=self.max_steps,
        )
        try:
            result = await run_with_timeout(
                self.capability.execute(prompt, context={"availableTools": tool_names}),
                self.timeout,
                "task decomposition",
            )
        except Exception as e:
            raise DecompositionError(f"Planner call failed: {e}") from e
        if not result.success:
            raise DecompositionError(result.error or "Planner call failed")

        data = parse_json_reply(result.output)
        try:
            strategy = TaskStrategy.model_validate(data)
        except ValidationError:
            log.warning("Unusable strategy from planner; falling back to a single step")
            strategy = TaskStrategy(
                steps=[StrategyStep(description=goal, type="llm-reasoning")]
            )

        if strategy.total_steps > self.max_steps:
            log.warning(
                "Planner returned %d steps; keeping the first %d",
                strategy.total_steps,
                self.max_steps,
            )
            strategy = TaskStrategy(steps=strategy.steps[: self.max_steps])
        for step in strategy.steps:
            step.status = "pending"
        return strategy

    def _enqueue_step(
        self, task: TaskExecution, index: int, *, suffix: str = "", delay_ms: int = 0
    ) -> None:
        self.queue.enqueue(
            TASK_QUEUE,
            f"{task.id}-step-{index}{suffix}",
            {"task_id": task.id, "step_index": index},
            ref=task.id,
            delay=timedelta(milliseconds=delay_ms),
            max_attempts=STEP_JOB_ATTEMPTS,
            backoff_ms=STEP_JOB_BACKOFF_MS,
        )

    def estimate_completion(self, task: TaskExecution) -> datetime:
        remaining = task.strategy.steps[task.current_step :] if task.strategy else []
        ms = sum(
            s.estimated_duration if s.estimated_duration is not None else DEFAULT_STEP_MS
            for s in remaining
        )
        return utcnow() + timedelta(milliseconds=ms)

    # Step execution

    async def process_step(self, job: QueueJob) -> dict[str, Any]:
        """Queue handler for one step job."""
        task = load_authoritative(
            job,
            lambda ref: get_task(self.db, ref),
            active=lambda t: not t.is_terminal,
            what="task",
        )
        index = job.payload.get("step_index")
        if task.strategy is None:
            raise SkipJob(f"task {task.id} has no strategy")
        if index != task.current_step:
            raise SkipJob(f"step {index} is stale; task is at step {task.current_step}")

        total = task.strategy.total_steps
        step = task.strategy.steps[index]
        expected = task.status
        if task.status == "pending":
            task.status = "running"
            task.started_at = utcnow()
        step.status = "running"
        if not save_task(self.db, task, only_if_status=expected):
            raise SkipJob(f"task {task.id} changed before step {index + 1} started")
        add_trace(
            self.db,
            task.id,
            "decision",
            f"Executing step {index + 1}/{total}: {step.description}",
            {"step": index + 1, "type": step.type},
        )

        try:
            outcome = await self._execute_step(task, index)
        except Exception as e:
            log.exception("Step %d of task %s raised", index + 1, task.id)
            outcome = StepOutcome(success=False, error=str(e))

        current = get_task(self.db, task.id)
        if current is None or current.is_terminal or current.current_step != index:
            log.info("Task %s changed while step %d ran; result discarded", task.id, index + 1)
            return {"discarded": True, "step": index + 1}

        if outcome.success:
            return await self._complete_step(current, index, outcome)
        return self._fail_step(current, index, outcome.error or "Step failed")

    async def _execute_step(self, task: TaskExecution, index: int) -> StepOutcome:
        assert task.strategy is not None
        step = task.strategy.steps[index]
        if step.type == "checkpoint":
            return StepOutcome(success=True, output="Checkpoint saved")

        tools = None
        if step.type == "tool-call" and self.tools_for is not None:
            tools = self.tools_for(task.owner)
        prompt = STEP_PROMPT.format(
            goal=task.goal,
            number=index + 1,
            total=task.strategy.total_steps,
            description=step.description,
        )
        context = {
            "summary": task.context.summary,
            "findings": task.context.findings,
            "recentToolResults": task.context.tool_results[-RECENT_TOOL_RESULTS:],
        }
        result = await run_with_timeout(
            self.capability.execute(prompt, tools=tools, context=context),
            self.timeout,
            f"step {index + 1}",
        )
        if not result.success:
            return StepOutcome(
                success=False, error=result.error, tool_calls=result.tool_calls
            )
        return StepOutcome(
            success=True, output=result.output, tool_calls=result.tool_calls
        )

    async def _complete_step(
        self, task: TaskExecution, index: int, outcome: StepOutcome
    ) -> dict[str, Any]:
        assert task.strategy is not None
        step = task.strategy.steps[index]
        total = task.strategy.total_steps

        task.context = merge_step_result(task.context, index, step, outcome)
        if len(json.dumps(task.context.message_history)) > self.context_char_limit:
            task.context = await self._summarize(task)
        task.tool_call_history.extend(
            ToolCallRecord(
                tool_name=call.tool_name,
                args=call.args,
                result=call.result,
                status=call.status,
                step_index=index,
                timestamp=call.timestamp,
            )
            for call in outcome.tool_calls
        )
        step.status = "completed"
        task.current_step = index + 1
        task.last_error = None

        checkpointed = (
            step.type == "checkpoint"
            or task.current_step % self.checkpoint_interval == 0
        )
        if checkpointed:
            task.checkpoints.append(
                Checkpoint(
                    step_index=task.current_step,
                    context=task.context.model_copy(deep=True),
                    created_at=utcnow(),
                )
            )

        finished = task.current_step >= total
        if finished:
            task.status = "completed"
            task.completed_at = utcnow()
        task.estimated_completion = self.estimate_completion(task)

        if not save_task(self.db, task, only_if_status="running"):
            log.info("Task %s was cancelled; step %d result discarded", task.id, index + 1)
            return {"discarded": True, "step": index + 1}

        for call in outcome.tool_calls:
            add_trace(
                self.db,
                task.id,
                "tool_call",
                f"Called {call.tool_name}",
                {"step": index + 1, "args": call.args, "status": call.status},
            )
        add_trace(
            self.db,
            task.id,
            "decision",
            f"Step {index + 1}/{total} completed",
            {"output": outcome.output[:500]},
        )
        if checkpointed:
            add_trace(
                self.db, task.id, "checkpoint", f"Checkpoint after step {index + 1}"
            )

        if finished:
            add_trace(self.db, task.id, "decision", "Task completed")
            log.info("Task %s completed", task.id)
        else:
            self._enqueue_step(task, task.current_step, delay_ms=self.step_delay_ms)
            add_trace(
                self.db,
                task.id,
                "decision",
                f"Step {task.current_step + 1}/{total} queued",
            )
        return {"step": index + 1, "completed": finished}

    def _fail_step(self, task: TaskExecution, index: int, error: str) -> dict[str, Any]:
        assert task.strategy is not None
        step = task.strategy.steps[index]
        task.last_error = error

        if task.retry_count < self.max_retries:
            task.retry_count += 1
            step.status = "pending"
            if not save_task(self.db, task, only_if_status="running"):
                return {"discarded": True, "step": index + 1}
            add_trace(
                self.db,
                task.id,
                "error",
                f"Step {index + 1} failed (retry {task.retry_count}/{self.max_retries}): {error}",
            )
            self._enqueue_step(
                task,
                index,
                suffix=f"-retry-{task.retry_count}",
                delay_ms=self.retry_backoff_ms * 2**task.retry_count,
            )
            return {"step": index + 1, "retrying": True}

        step.status = "failed"
        task.status = "failed"
        task.completed_at = utcnow()
        if not save_task(self.db, task, only_if_status="running"):
            return {"discarded": True, "step": index + 1}
        add_trace(
            self.db,
            task.id,
            "error",
            f"Step {index + 1} failed after {task.retry_count} retries: {error}",
        )
        log.warning("Task %s failed at step %d: %s", task.id, index + 1, error)
        return {"step": index + 1, "failed": True}

    async def _summarize(self, task: TaskExecution) -> TaskContext:
        """Compress message history; findings and tool results stay as they are."""
        context = task.context
        history = "\n".join(f"{m['role']}: {m['content']}" for m in context.message_history)
        try:
            result = await run_with_timeout(
                self.capability.execute(
                    SUMMARIZE_PROMPT.format(goal=task.goal, history=history)
                ),
                self.timeout,
                "context summary",
            )
        except Exception as e:
            log.warning("Context summary for task %s failed: %s", task.id, e)
            return context
        if not result.success or not result.output:
            log.warning("Context summary for task %s failed: %s", task.id, result.error)
            return context

        summary = "\n\n".join(s for s in (context.summary, result.output) if s)
        return context.model_copy(
            update={"summary": summary, "message_history": context.message_history[-2:]}
        )

    # Queries and control

    def _get(self, owner: str, task_id: str) -> TaskExecution:
        task = get_task(self.db, task_id, owner)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def get_status(self, owner: str, task_id: str) -> TaskStatusView:
        task = self._get(owner, task_id)
        total = task.total_steps
        return TaskStatusView(
            task=task,
            progress=progress_percent(task.current_step, total),
            current_step=min(task.current_step + 1, total) if total else 0,
            total_steps=total,
            latest_traces=list_traces(self.db, task.id, self.trace_limit),
        )

    def list_tasks(self, owner: str, statuses: list[str] | None = None) -> list[TaskExecution]:
        return list_tasks(self.db, owner, statuses)

    def cancel(self, owner: str, task_id: str) -> TaskExecution:
        """Cancel a pending or running task.

        Raises:
            StateConflictError: the task already completed or failed.
        """
        task = self._get(owner, task_id)
        while True:
            if task.is_terminal:
                raise StateConflictError(f"Task is already {task.status}", task.status)
            expected = task.status
            task.status = "failed"
            task.last_error = CANCELLED_REASON
            task.completed_at = utcnow()
            if save_task(self.db, task, only_if_status=expected):
                break
            task = self._get(owner, task_id)

        try:
            removed = self.queue.remove_by_ref(TASK_QUEUE, task.id)
        except Exception:
            log.warning("Failed to remove queued steps of task %s", task.id, exc_info=True)
            removed = 0
        add_trace(
            self.db,
            task.id,
            "decision",
            "Task cancelled by user",
            {"removedJobs": removed, "step": task.current_step + 1},
        )
        log.info("Cancelled task %s", task.id)
        return task

    def restore_from_checkpoint(
        self, owner: str, task_id: str, checkpoint: int = -1
    ) -> TaskExecution:
        """Resume a failed task from one of its checkpoints."""
        task = self._get(owner, task_id)
        if task.status != "failed":
            raise StateConflictError(
                "Only failed tasks can be restored from a checkpoint", task.status
            )
        if not task.checkpoints:
            raise StateConflictError("Task has no checkpoints", task.status)
        try:
            snapshot = task.checkpoints[checkpoint]
        except IndexError:
            raise InputValidationError(
                "Unknown checkpoint", {"checkpoint": f"no checkpoint at {checkpoint}"}
            ) from None

        assert task.strategy is not None
        task.context = snapshot.context.model_copy(deep=True)
        task.current_step = snapshot.step_index
        for step in task.strategy.steps[snapshot.step_index :]:
            step.status = "pending"
        task.status = "running"
        task.retry_count = 0
        task.last_error = None
        task.completed_at = None
        task.estimated_completion = self.estimate_completion(task)
        save_task(self.db, task)

        if task.current_step >= task.strategy.total_steps:
            task.status = "completed"
            task.completed_at = utcnow()
            save_task(self.db, task)
        else:
            self._enqueue_step(
                task, task.current_step, suffix=f"-restore-{uuid.uuid4().hex[:6]}"
            )
        add_trace(
            self.db,
            task.id,
            "decision",
            f"Restored from checkpoint at step {snapshot.step_index}",
        )
        return task
