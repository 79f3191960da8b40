"""Queue consumer with bounded concurrency and a separate admission cap.

Jobs arrive through :class:`~taskweave.queue.JobQueue` claims; outcomes leave
as :class:`JobEvent` messages on an :class:`asyncio.Queue` so that logging
(or anything else) can observe them without registering callbacks.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeVar

from taskweave.config import settings
from taskweave.models import QueueJob
from taskweave.queue import JobQueue
from taskweave.rate_limiter import SlidingWindowRateLimiter

log = logging.getLogger(__name__)

T = TypeVar("T")

JobHandler = Callable[[QueueJob], Awaitable[dict[str, Any] | None]]


class SkipJob(Exception):
    """Raised by a handler when the job no longer matches authoritative state."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def load_authoritative(
    job: QueueJob,
    loader: Callable[[str], T | None],
    *,
    active: Callable[[T], bool] | None = None,
    what: str = "entity",
) -> T:
    """Reload the entity a job points at, never trusting the job payload.

    Every job handler goes through this guard first. Raises :class:`SkipJob`
    when the entity is gone or *active* rejects it.
    """
    if not job.ref:
        raise SkipJob(f"job {job.id} carries no {what} reference")
    entity = loader(job.ref)
    if entity is None:
        raise SkipJob(f"{what} {job.ref} no longer exists")
    if active is not None and not active(entity):
        raise SkipJob(f"{what} {job.ref} is not active")
    return entity


@dataclass(frozen=True)
class JobEvent:
    kind: Literal["completed", "failed", "skipped"]
    queue: str
    job_id: str
    ref: str | None = None
    attempts: int = 0
    result: dict[str, Any] | None = None
    error: str | None = None
    will_retry: bool = False


@dataclass
class WorkerRunSummary:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    events: list[JobEvent] = field(default_factory=list)

    def record(self, event: JobEvent) -> None:
        self.processed += 1
        self.events.append(event)
        if event.kind == "completed":
            self.completed += 1
        elif event.kind == "failed":
            self.failed += 1
        else:
            self.skipped += 1


class QueueWorker:
    def __init__(
        self,
        queue: JobQueue,
        queue_name: str,
        handler: JobHandler,
        *,
        concurrency: int | None = None,
        rate_max: int | None = None,
        rate_duration_ms: int | None = None,
        poll_interval: float | None = None,
        events: asyncio.Queue[JobEvent] | None = None,
        limiter: SlidingWindowRateLimiter | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.queue = queue
        self.queue_name = queue_name
        self.handler = handler
        self.concurrency = (
            concurrency if concurrency is not None else settings.worker_concurrency
        )
        self.rate_max = rate_max if rate_max is not None else settings.worker_rate_max
        self.rate_duration_ms = (
            rate_duration_ms
            if rate_duration_ms is not None
            else settings.worker_rate_duration_ms
        )
        if self.concurrency < 1 or self.rate_max < 1 or self.rate_duration_ms < 1:
            raise ValueError(
                "Worker concurrency, rate_max and rate_duration_ms must be positive"
            )
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.poll_interval
        )
        self.events = events
        self.worker_id = worker_id or f"{queue_name}-{uuid.uuid4().hex[:8]}"
        # One limiter per worker: the admission cap is independent of the
        # concurrency bound.
        self._limiter = limiter or SlidingWindowRateLimiter(
            self.rate_max, self.rate_duration_ms
        )
        self._slots = asyncio.Semaphore(self.concurrency)
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def _admit(self) -> None:
        while self._limiter.remaining(
            self.queue_name, self.rate_max, self.rate_duration_ms
        ) <= 0:
            await asyncio.sleep(self.rate_duration_ms / 1000 / self.rate_max)

    def _claim(self) -> QueueJob | None:
        job = self.queue.claim_next(self.queue_name, self.worker_id)
        if job is not None:
            self._limiter.check(self.queue_name, self.rate_max, self.rate_duration_ms)
        return job

    def _emit(self, event: JobEvent) -> None:
        if self.events is not None:
            self.events.put_nowait(event)

    async def process(self, job: QueueJob) -> JobEvent:
        """Run one delivery of *job*: a single attempt, no local retry."""
        try:
            result = await self.handler(job)
        except SkipJob as e:
            self.queue.complete(
                job.id, {"skipped": True, "reason": e.reason}, worker_id=self.worker_id
            )
            event = JobEvent(
                kind="skipped",
                queue=self.queue_name,
                job_id=job.id,
                ref=job.ref,
                attempts=job.attempts,
                result={"skipped": True, "reason": e.reason},
            )
        except Exception as e:
            log.exception("Job %s on %s raised", job.id, self.queue_name)
            updated = self.queue.fail(job.id, str(e), worker_id=self.worker_id)
            event = JobEvent(
                kind="failed",
                queue=self.queue_name,
                job_id=job.id,
                ref=job.ref,
                attempts=job.attempts,
                error=str(e),
                will_retry=updated is not None and updated.status == "waiting",
            )
        else:
            self.queue.complete(job.id, result, worker_id=self.worker_id)
            event = JobEvent(
                kind="completed",
                queue=self.queue_name,
                job_id=job.id,
                ref=job.ref,
                attempts=job.attempts,
                result=result,
            )
        self._emit(event)
        return event

    async def _run_job(self, job: QueueJob) -> None:
        try:
            await self.process(job)
        finally:
            self._slots.release()

    async def run(self) -> None:
        """Consume jobs until :meth:`stop` is called."""
        self._stop.clear()
        tasks: set[asyncio.Task[None]] = set()
        log.info(
            "Worker %s started (concurrency=%d, rate=%d/%dms)",
            self.worker_id,
            self.concurrency,
            self.rate_max,
            self.rate_duration_ms,
        )
        try:
            while not self._stop.is_set():
                await self._slots.acquire()
                await self._admit()
                job = self._claim()
                if job is None:
                    self._slots.release()
                    try:
                        await asyncio.wait_for(self._stop.wait(), self.poll_interval)
                    except asyncio.TimeoutError:
                        pass
                    continue
                task = asyncio.create_task(self._run_job(job))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        finally:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            log.info("Worker %s stopped", self.worker_id)

    async def run_until_idle(self) -> WorkerRunSummary:
        """Process due jobs in batches of at most ``concurrency`` until none is due."""
        summary = WorkerRunSummary()
        while True:
            batch: list[QueueJob] = []
            for _ in range(self.concurrency):
                await self._admit()
                job = self._claim()
                if job is None:
                    break
                batch.append(job)
            if not batch:
                return summary
            for event in await asyncio.gather(*(self.process(job) for job in batch)):
                summary.record(event)


async def log_events(events: asyncio.Queue[JobEvent]) -> None:
    """Turn worker events into log lines."""
    while True:
        event = await events.get()
        try:
            if event.kind == "completed":
                log.info("Job %s on %s completed", event.job_id, event.queue)
            elif event.kind == "skipped":
                log.info(
                    "Job %s on %s skipped: %s",
                    event.job_id,
                    event.queue,
                    (event.result or {}).get("reason"),
                )
            else:
                log.warning(
                    "Job %s on %s failed (attempt %d%s): %s",
                    event.job_id,
                    event.queue,
                    event.attempts,
                    ", will retry" if event.will_retry else "",
                    event.error,
                )
        finally:
            events.task_done()
