"""Scheduled prompt definitions and their live queue entries.

The database row is the authority; the ``scheduled-tasks`` queue only holds
the next pending occurrence of every enabled definition. Queue edits made on
behalf of an API call are best-effort (logged, never raised) because
:func:`sync_definitions_to_queue` repairs the queue at daemon start.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from taskweave.agent_core import ExecutionCapability, ExecutionResult, run_with_timeout
from taskweave.config import settings
from taskweave.db import (
    DbConnection,
    delete_definition,
    finish_execution,
    get_definition,
    get_execution,
    insert_definition,
    insert_execution,
    list_definitions,
    list_executions,
    new_id,
    update_definition,
    utcnow,
)
from taskweave.errors import ExecutionError, InputValidationError, NotFoundError
from taskweave.models import (
    CronSchedule,
    QueueJob,
    ScheduledExecutionRecord,
    ScheduledTaskCreate,
    ScheduledTaskDefinition,
    ScheduledTaskUpdate,
)
from taskweave.queue import JobQueue
from taskweave.scheduling import calculate_next_run, is_valid_cron
from taskweave.worker import JobHandler, load_authoritative

log = logging.getLogger(__name__)

SCHEDULED_QUEUE = "scheduled-tasks"

ToolsFactory = Callable[[str], Any]


def _job_id(definition: ScheduledTaskDefinition) -> str:
    assert definition.next_run_at is not None
    return f"{definition.id}:{int(definition.next_run_at.timestamp() * 1000)}"


# Queue side-channel


def enqueue_definition(
    queue: JobQueue, definition: ScheduledTaskDefinition
) -> QueueJob | None:
    """Queue the next occurrence of *definition*, replacing any waiting one."""
    if not definition.enabled or definition.next_run_at is None:
        return None
    queue.remove_by_ref(SCHEDULED_QUEUE, definition.id)
    job = queue.enqueue(
        SCHEDULED_QUEUE,
        _job_id(definition),
        {"definition_id": definition.id},
        ref=definition.id,
        run_at=definition.next_run_at,
    )
    log.debug("Queued %s for %s", job.id, definition.next_run_at.isoformat())
    return job


def remove_definition_from_queue(queue: JobQueue, definition_id: str) -> int:
    try:
        return queue.remove_by_ref(SCHEDULED_QUEUE, definition_id)
    except Exception:
        log.warning(
            "Failed to remove scheduled task %s from queue", definition_id, exc_info=True
        )
        return 0


def update_definition_in_queue(
    queue: JobQueue, definition: ScheduledTaskDefinition
) -> QueueJob | None:
    remove_definition_from_queue(queue, definition.id)
    if not definition.enabled:
        return None
    try:
        return enqueue_definition(queue, definition)
    except Exception:
        log.warning(
            "Failed to queue scheduled task %s", definition.id, exc_info=True
        )
        return None


def cancel_job(queue: JobQueue, job_id: str) -> bool:
    """Cancel a pending job by id.

    A job that already started keeps running; only a future occurrence is
    prevented.
    """
    try:
        removed = queue.remove(job_id)
    except Exception:
        log.warning("Failed to cancel job %s", job_id, exc_info=True)
        return False
    if not removed:
        log.info("Job %s is not pending; nothing to cancel", job_id)
    return removed


def sync_definitions_to_queue(db: DbConnection, queue: JobQueue) -> int:
    """Queue every enabled definition. Run at daemon start."""
    count = 0
    for definition in list_definitions(db, enabled=True):
        if definition.next_run_at is None:
            next_run = calculate_next_run(definition.schedule)
            if next_run is None:
                continue
            update_definition(db, definition.id, next_run_at=next_run)
            definition = definition.model_copy(update={"next_run_at": next_run})
        if enqueue_definition(queue, definition) is not None:
            count += 1
    log.info("Synced %d scheduled tasks to the queue", count)
    return count


def queue_stats(queue: JobQueue) -> dict[str, int]:
    return queue.stats(SCHEDULED_QUEUE)


# Definition service


def _validated(model: type, data: Any) -> Any:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InputValidationError.from_pydantic(e) from e


def _check_schedule(schedule: Any) -> None:
    if isinstance(schedule, CronSchedule) and not is_valid_cron(schedule.expression):
        raise InputValidationError(
            "Invalid cron expression",
            {"schedule.expression": f"{schedule.expression!r} is not a valid cron expression"},
        )


def create_scheduled_task(
    db: DbConnection, queue: JobQueue, owner: str, data: ScheduledTaskCreate | dict
) -> ScheduledTaskDefinition:
    spec = _validated(ScheduledTaskCreate, data)
    _check_schedule(spec.schedule)

    now = utcnow()
    definition = ScheduledTaskDefinition(
        id=new_id(),
        owner=owner,
        name=spec.name,
        description=spec.description,
        prompt=spec.prompt,
        schedule=spec.schedule,
        enabled=spec.enabled,
        next_run_at=calculate_next_run(spec.schedule, now),
        created_at=now,
        updated_at=now,
    )
    insert_definition(db, definition)
    log.info("Created scheduled task %s (%s)", definition.id, definition.name)

    if definition.enabled:
        update_definition_in_queue(queue, definition)
    return definition


def get_scheduled_task(
    db: DbConnection, owner: str, definition_id: str
) -> ScheduledTaskDefinition:
    definition = get_definition(db, definition_id, owner)
    if definition is None:
        raise NotFoundError("Scheduled task", definition_id)
    return definition


def list_scheduled_tasks(db: DbConnection, owner: str) -> list[ScheduledTaskDefinition]:
    return list_definitions(db, owner)


def update_scheduled_task(
    db: DbConnection,
    queue: JobQueue,
    owner: str,
    definition_id: str,
    data: ScheduledTaskUpdate | dict,
) -> ScheduledTaskDefinition:
    spec = _validated(ScheduledTaskUpdate, data)
    definition = get_scheduled_task(db, owner, definition_id)
    changes = spec.model_dump(exclude_unset=True, exclude_none=True)
    if spec.schedule is not None:
        _check_schedule(spec.schedule)
        changes["schedule"] = spec.schedule

    now = utcnow()
    if "schedule" in changes:
        changes["next_run_at"] = calculate_next_run(changes["schedule"], now)
    elif changes.get("enabled") and not definition.enabled:
        # Re-enabled: a stale next run would fire immediately.
        if definition.next_run_at is None or definition.next_run_at <= now:
            changes["next_run_at"] = calculate_next_run(definition.schedule, now)

    if not changes:
        return definition

    update_definition(db, definition_id, **changes)
    definition = get_scheduled_task(db, owner, definition_id)
    update_definition_in_queue(queue, definition)
    return definition


def set_scheduled_task_enabled(
    db: DbConnection, queue: JobQueue, owner: str, definition_id: str, enabled: bool
) -> ScheduledTaskDefinition:
    """Enable or disable a definition.

    Disabling removes the pending occurrence from the queue but leaves
    ``next_run_at`` in storage untouched.
    """
    return update_scheduled_task(
        db, queue, owner, definition_id, ScheduledTaskUpdate(enabled=enabled)
    )


def delete_scheduled_task(
    db: DbConnection, queue: JobQueue, owner: str, definition_id: str
) -> None:
    get_scheduled_task(db, owner, definition_id)
    remove_definition_from_queue(queue, definition_id)
    delete_definition(db, definition_id)
    log.info("Deleted scheduled task %s", definition_id)


def list_scheduled_runs(
    db: DbConnection, owner: str, definition_id: str, limit: int = 50
) -> list[ScheduledExecutionRecord]:
    get_scheduled_task(db, owner, definition_id)
    return list_executions(db, definition_id, limit)


# Execution


async def _run_definition(
    db: DbConnection,
    definition: ScheduledTaskDefinition,
    capability: ExecutionCapability,
    *,
    trigger: str,
    tools: Any = None,
    timeout: float | None = None,
) -> tuple[ScheduledExecutionRecord, ExecutionResult | None, Exception | None]:
    """Run one attempt and settle its execution record.

    The record is always finished (success or failed) before this returns,
    so a caller re-raising the error never leaves a ``running`` record.
    """
    record = ScheduledExecutionRecord(
        id=new_id(),
        definition_id=definition.id,
        owner=definition.owner,
        trigger=trigger,  # type: ignore[arg-type]
        status="running",
        started_at=utcnow(),
    )
    insert_execution(db, record)
    start = utcnow()

    result: ExecutionResult | None = None
    error: Exception | None = None
    try:
        result = await run_with_timeout(
            capability.execute(definition.prompt, tools=tools),
            timeout if timeout is not None else settings.execution_timeout,
            "scheduled run",
        )
    except Exception as e:
        error = e

    duration_ms = int((utcnow() - start).total_seconds() * 1000)
    if error is not None:
        finish_execution(db, record.id, status="failed", duration_ms=duration_ms, error=str(error))
    elif result is not None and not result.success:
        finish_execution(
            db,
            record.id,
            status="failed",
            duration_ms=result.duration_ms or duration_ms,
            output=result.output or None,
            error=result.error or "Execution failed",
            thread_id=result.thread_id,
        )
    else:
        assert result is not None
        finish_execution(
            db,
            record.id,
            status="success",
            duration_ms=result.duration_ms or duration_ms,
            output=result.output or None,
            thread_id=result.thread_id,
        )

    record = get_execution(db, record.id) or record
    return record, result, error


async def execute_scheduled_task_now(
    db: DbConnection,
    owner: str,
    definition_id: str,
    capability: ExecutionCapability,
    *,
    tools: Any = None,
    timeout: float | None = None,
) -> ScheduledExecutionRecord:
    """Run a definition on demand. Only ``last_run_at`` moves."""
    definition = get_scheduled_task(db, owner, definition_id)
    record, _, _ = await _run_definition(
        db, definition, capability, trigger="manual", tools=tools, timeout=timeout
    )
    update_definition(db, definition.id, last_run_at=record.started_at or utcnow())
    return record


def make_scheduled_job_handler(
    db: DbConnection,
    queue: JobQueue,
    capability: ExecutionCapability,
    *,
    tools_for: ToolsFactory | None = None,
    timeout: float | None = None,
) -> JobHandler:
    async def process_scheduled_job(job: QueueJob) -> dict[str, Any]:
        definition = load_authoritative(
            job,
            lambda ref: get_definition(db, ref),
            active=lambda d: d.enabled,
            what="scheduled task",
        )
        tools = tools_for(definition.owner) if tools_for is not None else None
        record, result, error = await _run_definition(
            db, definition, capability, trigger="scheduled", tools=tools, timeout=timeout
        )

        now: datetime = utcnow()
        next_run = calculate_next_run(definition.schedule, now)
        update_definition(db, definition.id, last_run_at=now, next_run_at=next_run)
        if next_run is None:
            log.warning("Scheduled task %s has no next run; not re-queued", definition.id)
        else:
            current = get_definition(db, definition.id)
            if current is not None and current.enabled:
                enqueue_definition(queue, current)

        if error is not None:
            raise error
        if result is not None and not result.success:
            raise ExecutionError(result.error or "Execution failed")
        return {
            "execution_id": record.id,
            "thread_id": record.thread_id,
            "duration_ms": record.duration_ms,
        }

    return process_scheduled_job
