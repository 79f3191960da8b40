from datetime import timedelta

from taskweave.db import ThreadSafeConnection, utcnow
from taskweave.queue import JobQueue


def test_enqueue_is_idempotent_on_job_id(queue: JobQueue) -> None:
    first = queue.enqueue("q", "job-1", {"n": 1}, ref="a")
    again = queue.enqueue("q", "job-1", {"n": 2}, ref="b")

    assert again.payload == {"n": 1}
    assert again.ref == "a"
    assert first.created_at == again.created_at
    assert len(queue.list_jobs("q")) == 1


def test_claim_respects_run_after(queue: JobQueue) -> None:
    queue.enqueue("q", "later", delay=timedelta(hours=1))
    assert queue.claim_next("q", "w1") is None

    queue.enqueue("q", "now")
    job = queue.claim_next("q", "w1")
    assert job is not None
    assert job.id == "now"
    assert job.status == "active"
    assert job.attempts == 1
    assert job.locked_by == "w1"


def test_claim_orders_by_priority_then_run_after(queue: JobQueue) -> None:
    past = utcnow() - timedelta(minutes=5)
    queue.enqueue("q", "low-old", priority=5, run_at=past - timedelta(minutes=1))
    queue.enqueue("q", "high-new", priority=0, run_at=past)
    queue.enqueue("q", "high-old", priority=0, run_at=past - timedelta(minutes=1))

    order = [queue.claim_next("q", "w").id for _ in range(3)]  # type: ignore[union-attr]
    assert order == ["high-old", "high-new", "low-old"]


def test_claimed_job_is_not_claimed_twice(queue: JobQueue) -> None:
    queue.enqueue("q", "only")
    assert queue.claim_next("q", "w1") is not None
    assert queue.claim_next("q", "w2") is None


def test_queues_are_separate(queue: JobQueue) -> None:
    queue.enqueue("a", "job")
    assert queue.claim_next("b", "w") is None
    assert queue.claim_next("a", "w") is not None


def test_complete_records_result(queue: JobQueue) -> None:
    queue.enqueue("q", "job")
    queue.claim_next("q", "w")
    queue.complete("job", {"ok": True})

    job = queue.get("job")
    assert job is not None
    assert job.status == "completed"
    assert job.result == {"ok": True}
    assert job.finished_at is not None
    assert job.locked_by is None


def test_fail_retries_with_exponential_backoff(db: ThreadSafeConnection) -> None:
    queue = JobQueue(db, max_attempts=3, backoff_ms=2000)
    queue.enqueue("q", "job")

    queue.claim_next("q", "w")
    before = utcnow()
    first = queue.fail("job", "boom")
    assert first is not None
    assert first.status == "waiting"
    assert first.error == "boom"
    assert timedelta(milliseconds=1900) < first.run_after - before < timedelta(seconds=3)

    db.execute(
        "UPDATE queue_jobs SET run_after = ? WHERE id = 'job'",
        ("2000-01-01T00:00:00.000000+00:00",),
    )
    db.commit()
    queue.claim_next("q", "w")
    before = utcnow()
    second = queue.fail("job", "boom again")
    assert second is not None
    assert second.status == "waiting"
    assert timedelta(milliseconds=3900) < second.run_after - before < timedelta(seconds=5)


def test_fail_is_terminal_after_max_attempts(queue: JobQueue) -> None:
    queue.enqueue("q", "job", max_attempts=1)
    queue.claim_next("q", "w")

    job = queue.fail("job", "boom")

    assert job is not None
    assert job.status == "failed"
    assert job.finished_at is not None
    assert queue.claim_next("q", "w") is None


def test_remove_only_waiting_jobs(queue: JobQueue) -> None:
    queue.enqueue("q", "waiting")
    queue.enqueue("q", "active")
    queue.db.execute("UPDATE queue_jobs SET status = 'active' WHERE id = 'active'")
    queue.db.commit()

    assert queue.remove("waiting")
    assert not queue.remove("active")
    assert not queue.remove("missing")
    assert queue.get("active") is not None


def test_remove_by_ref(queue: JobQueue) -> None:
    queue.enqueue("q", "a-1", ref="a", delay=timedelta(minutes=1))
    queue.enqueue("q", "a-2", ref="a", delay=timedelta(minutes=2))
    queue.enqueue("q", "b-1", ref="b")
    queue.enqueue("other", "a-3", ref="a")

    assert queue.remove_by_ref("q", "a") == 2
    assert [j.id for j in queue.list_jobs("q")] == ["b-1"]
    assert queue.get("a-3") is not None


def test_requeue_stale_releases_expired_leases(queue: JobQueue) -> None:
    queue.enqueue("q", "job")
    queue.claim_next("q", "crashed-worker")

    assert queue.requeue_stale() == 0
    assert queue.requeue_stale(utcnow() + timedelta(minutes=5)) == 1

    job = queue.claim_next("q", "w2")
    assert job is not None
    assert job.attempts == 2
    assert job.locked_by == "w2"


def test_stats_and_next_run_after(queue: JobQueue) -> None:
    queue.enqueue("q", "a", delay=timedelta(minutes=10))
    queue.enqueue("q", "b")
    queue.claim_next("q", "w")

    assert queue.stats("q") == {"waiting": 1, "active": 1, "completed": 0, "failed": 0}
    assert queue.get("a").run_after == queue.next_run_after("q")  # type: ignore[union-attr]


def test_prune_keeps_most_recent(queue: JobQueue) -> None:
    for i in range(5):
        queue.enqueue("q", f"job-{i}")
        queue.claim_next("q", "w")
        queue.complete(f"job-{i}")

    assert queue.prune("q", keep_completed=2) == 3
    assert queue.stats("q")["completed"] == 2


def test_expired_delivery_cannot_overwrite_redelivery(queue: JobQueue) -> None:
    queue.enqueue("q", "job")
    queue.claim_next("q", "slow-worker")
    queue.requeue_stale(utcnow() + timedelta(hours=1))
    assert queue.claim_next("q", "w2") is not None

    assert not queue.complete("job", {"late": True}, worker_id="slow-worker")
    assert queue.fail("job", "late failure", worker_id="slow-worker") is None

    job = queue.get("job")
    assert job is not None
    assert job.status == "active"
    assert job.locked_by == "w2"
    assert job.result is None
    assert job.error is None

    assert queue.complete("job", {"ok": True}, worker_id="w2")
    assert queue.get("job").result == {"ok": True}  # type: ignore[union-attr]


def test_finished_job_is_not_completed_again(queue: JobQueue) -> None:
    queue.enqueue("q", "job", max_attempts=1)
    queue.claim_next("q", "w")
    queue.fail("job", "boom")

    assert not queue.complete("job", {"ok": True})
    job = queue.get("job")
    assert job is not None
    assert job.status == "failed"
