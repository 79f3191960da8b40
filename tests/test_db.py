from datetime import timedelta
from pathlib import Path

from taskweave.db import (
    ThreadSafeConnection,
    add_observation,
    add_trace,
    delete_definition,
    delete_old_task_executions,
    delete_session,
    finish_execution,
    get_definition,
    get_session,
    get_task,
    init_db,
    insert_definition,
    insert_execution,
    insert_iteration,
    insert_session,
    insert_task,
    list_definitions,
    list_executions,
    list_iterations,
    list_observations,
    list_traces,
    new_id,
    save_task,
    update_definition,
    update_session,
    utcnow,
)
from taskweave.models import (
    AutonomousIteration,
    AutonomousSession,
    IntervalSchedule,
    ProgressEvaluation,
    ScheduledExecutionRecord,
    ScheduledTaskDefinition,
    StrategyStep,
    TaskExecution,
    TaskStrategy,
)


def _definition(owner: str = "alice", **kwargs: object) -> ScheduledTaskDefinition:
    now = utcnow()
    data: dict[str, object] = {
        "id": new_id(),
        "owner": owner,
        "name": "digest",
        "prompt": "Summarise the news",
        "schedule": IntervalSchedule(value=30, unit="minutes"),
        "next_run_at": now + timedelta(minutes=30),
        "created_at": now,
        "updated_at": now,
    }
    data.update(kwargs)
    return ScheduledTaskDefinition(**data)


def _session(owner: str = "alice") -> AutonomousSession:
    now = utcnow()
    return AutonomousSession(
        id=new_id(), owner=owner, name="s", goal="g", created_at=now, updated_at=now
    )


def test_init_db_creates_tables(tmp_path: Path) -> None:
    db = init_db(tmp_path / "test.db")
    tables = {
        row[0]
        for row in db.execute("SELECT name FROM sqlite_master WHERE type='table'")
    }
    assert {
        "scheduled_task_definitions",
        "scheduled_executions",
        "task_executions",
        "task_traces",
        "autonomous_sessions",
        "autonomous_iterations",
        "autonomous_observations",
        "queue_jobs",
    } <= tables


def test_init_db_is_idempotent(tmp_path: Path) -> None:
    init_db(tmp_path / "test.db").close()
    db = init_db(tmp_path / "test.db")
    assert db.execute("SELECT COUNT(*) FROM queue_jobs").fetchone()[0] == 0


def test_definition_roundtrip_keeps_schedule_type(db: ThreadSafeConnection) -> None:
    definition = _definition()
    insert_definition(db, definition)

    loaded = get_definition(db, definition.id)
    assert loaded is not None
    assert loaded.schedule == IntervalSchedule(value=30, unit="minutes")
    assert loaded.enabled is True
    assert loaded.next_run_at == definition.next_run_at


def test_definition_owner_scoping(db: ThreadSafeConnection) -> None:
    definition = _definition(owner="alice")
    insert_definition(db, definition)

    assert get_definition(db, definition.id, "alice") is not None
    assert get_definition(db, definition.id, "mallory") is None
    assert list_definitions(db, "mallory") == []


def test_list_definitions_filters_enabled(db: ThreadSafeConnection) -> None:
    on = _definition()
    off = _definition(enabled=False)
    insert_definition(db, on)
    insert_definition(db, off)

    assert [d.id for d in list_definitions(db, enabled=True)] == [on.id]
    assert len(list_definitions(db, "alice")) == 2


def test_update_definition_ignores_unknown_columns(db: ThreadSafeConnection) -> None:
    definition = _definition()
    insert_definition(db, definition)

    update_definition(db, definition.id, enabled=False, owner="mallory")

    loaded = get_definition(db, definition.id)
    assert loaded is not None
    assert loaded.enabled is False
    assert loaded.owner == "alice"


def test_delete_definition_removes_history(db: ThreadSafeConnection) -> None:
    definition = _definition()
    insert_definition(db, definition)
    insert_execution(
        db,
        ScheduledExecutionRecord(
            id=new_id(),
            definition_id=definition.id,
            owner="alice",
            status="running",
            started_at=utcnow(),
        ),
    )

    delete_definition(db, definition.id)

    assert get_definition(db, definition.id) is None
    assert list_executions(db, definition.id) == []


def test_execution_history_newest_first(db: ThreadSafeConnection) -> None:
    definition = _definition()
    insert_definition(db, definition)
    start = utcnow()
    ids = []
    for i in range(3):
        record = ScheduledExecutionRecord(
            id=new_id(),
            definition_id=definition.id,
            owner="alice",
            status="running",
            started_at=start + timedelta(seconds=i),
        )
        insert_execution(db, record)
        ids.append(record.id)
    finish_execution(db, ids[0], status="success", duration_ms=12, output="ok")

    history = list_executions(db, definition.id, limit=2)
    assert [r.id for r in history] == [ids[2], ids[1]]
    oldest = list_executions(db, definition.id)[-1]
    assert oldest.status == "success"
    assert oldest.duration_ms == 12
    assert oldest.completed_at is not None


def test_save_task_compare_and_set(db: ThreadSafeConnection) -> None:
    now = utcnow()
    task = TaskExecution(
        id=new_id(),
        owner="alice",
        goal="g",
        strategy=TaskStrategy(steps=[StrategyStep(description="a")]),
        created_at=now,
        updated_at=now,
    )
    insert_task(db, task)

    task.status = "running"
    assert save_task(db, task, only_if_status="pending")
    task.status = "completed"
    assert not save_task(db, task, only_if_status="pending")

    loaded = get_task(db, task.id)
    assert loaded is not None
    assert loaded.status == "running"
    assert loaded.strategy is not None
    assert loaded.strategy.steps[0].description == "a"


def test_list_traces_returns_newest_in_order(db: ThreadSafeConnection) -> None:
    for i in range(5):
        add_trace(db, "task-1", "decision", f"trace {i}", {"i": i})

    latest = list_traces(db, "task-1", limit=2)
    assert [t.message for t in latest] == ["trace 3", "trace 4"]
    assert latest[-1].metadata == {"i": 4}
    assert len(list_traces(db, "task-1")) == 5


def test_delete_old_task_executions_keeps_live_tasks(db: ThreadSafeConnection) -> None:
    long_ago = utcnow() - timedelta(days=60)
    done = TaskExecution(
        id=new_id(),
        owner="alice",
        goal="old",
        status="completed",
        created_at=long_ago,
        updated_at=long_ago,
        completed_at=long_ago,
    )
    live = TaskExecution(
        id=new_id(),
        owner="alice",
        goal="live",
        status="running",
        created_at=long_ago,
        updated_at=long_ago,
    )
    insert_task(db, done)
    insert_task(db, live)
    add_trace(db, done.id, "decision", "Task completed")

    removed = delete_old_task_executions(db, utcnow() - timedelta(days=30))

    assert removed == 1
    assert get_task(db, done.id) is None
    assert get_task(db, live.id) is not None
    assert list_traces(db, done.id) == []


def test_update_session_only_if_status(db: ThreadSafeConnection) -> None:
    session = _session()
    insert_session(db, session)

    assert update_session(db, session.id, only_if_status=("planning",), status="executing")
    assert not update_session(
        db, session.id, only_if_status=("planning",), status="paused"
    )
    loaded = get_session(db, session.id)
    assert loaded is not None
    assert loaded.status == "executing"
    assert get_session(db, session.id, "mallory") is None


def test_delete_session_cascades(db: ThreadSafeConnection) -> None:
    session = _session()
    insert_session(db, session)
    iteration = AutonomousIteration(
        id=new_id(),
        session_id=session.id,
        iteration_number=1,
        phase="evaluating",
        evaluation=ProgressEvaluation(progress_percentage=10),
        started_at=utcnow(),
    )
    insert_iteration(db, iteration)
    add_observation(db, session_id=session.id, type="evaluation", content="Progress: 10%")

    assert list_iterations(db, session.id)[0].evaluation == ProgressEvaluation(
        progress_percentage=10
    )

    delete_session(db, session.id)

    assert get_session(db, session.id) is None
    assert list_iterations(db, session.id) == []
    assert list_observations(db, session.id) == []


def test_list_observations_limit_keeps_most_recent(db: ThreadSafeConnection) -> None:
    session = _session()
    insert_session(db, session)
    for i in range(12):
        add_observation(db, session_id=session.id, type="execution", content=f"o{i}")

    recent = list_observations(db, session.id, limit=10)
    assert [o.content for o in recent] == [f"o{i}" for i in range(2, 12)]
