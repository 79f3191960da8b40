"""Long-running worker process: one queue worker per job queue."""

import asyncio
import logging
from datetime import timedelta

from taskweave.agent_core import ClaudeAgentCapability, ExecutionCapability
from taskweave.autonomous import AUTONOMOUS_QUEUE, AutonomousLoop
from taskweave.db import (
    DbConnection,
    delete_old_task_executions,
    delete_old_traces,
    utcnow,
)
from taskweave.orchestrator import TASK_QUEUE, TaskOrchestrator
from taskweave.queue import JobQueue
from taskweave.rate_limiter import default_limiter
from taskweave.scheduler import (
    SCHEDULED_QUEUE,
    make_scheduled_job_handler,
    sync_definitions_to_queue,
)
from taskweave.tools import ToolRegistry, build_tool_registry
from taskweave.worker import JobEvent, QueueWorker, log_events

log = logging.getLogger(__name__)

HOUSEKEEPING_INTERVAL = 3600
TASK_RETENTION = timedelta(days=30)


def build_workers(
    db: DbConnection,
    queue: JobQueue,
    capability: ExecutionCapability,
    events: "asyncio.Queue[JobEvent] | None" = None,
) -> list[QueueWorker]:
    def tools_for(owner: str) -> ToolRegistry:
        return build_tool_registry(db, queue, owner)

    orchestrator = TaskOrchestrator(db, queue, capability, tools_for=tools_for)
    loop = AutonomousLoop(db, queue, capability, tools_for=tools_for)
    return [
        QueueWorker(
            queue,
            SCHEDULED_QUEUE,
            make_scheduled_job_handler(db, queue, capability, tools_for=tools_for),
            events=events,
        ),
        QueueWorker(queue, TASK_QUEUE, orchestrator.process_step, events=events),
        QueueWorker(queue, AUTONOMOUS_QUEUE, loop.process_continue_job, events=events),
    ]


def housekeeping(db: DbConnection, queue: JobQueue) -> None:
    requeued = queue.requeue_stale()
    if requeued:
        log.warning("Re-queued %d jobs with expired leases", requeued)
    for name in (SCHEDULED_QUEUE, TASK_QUEUE, AUTONOMOUS_QUEUE):
        queue.prune(name)
    cutoff = utcnow() - TASK_RETENTION
    tasks = delete_old_task_executions(db, cutoff)
    traces = delete_old_traces(db, cutoff)
    if tasks or traces:
        log.info("Removed %d old tasks and %d old traces", tasks, traces)


async def _housekeeping_loop(db: DbConnection, queue: JobQueue) -> None:
    while True:
        await asyncio.sleep(HOUSEKEEPING_INTERVAL)
        try:
            housekeeping(db, queue)
        except Exception:
            log.exception("Housekeeping failed")


async def run_daemon(
    db: DbConnection, capability: ExecutionCapability | None = None
) -> None:
    db.execute("PRAGMA journal_mode=WAL")
    queue = JobQueue(db)
    capability = capability or ClaudeAgentCapability()

    housekeeping(db, queue)
    synced = sync_definitions_to_queue(db, queue)
    log.info("Daemon started; %d scheduled tasks queued", synced)

    events: asyncio.Queue[JobEvent] = asyncio.Queue()
    workers = build_workers(db, queue, capability, events)
    background = [
        asyncio.create_task(log_events(events)),
        asyncio.create_task(default_limiter.run_cleanup()),
        asyncio.create_task(_housekeeping_loop(db, queue)),
    ]
    try:
        await asyncio.gather(*(worker.run() for worker in workers))
    finally:
        for worker in workers:
            worker.stop()
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
