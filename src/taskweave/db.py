from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from textwrap import dedent
from typing import Any, TypeVar

from pydantic import BaseModel

from taskweave.models import (
    AutonomousIteration,
    AutonomousObservation,
    AutonomousSession,
    ScheduledExecutionRecord,
    ScheduledTaskDefinition,
    TaskExecution,
    TaskTrace,
)


class ThreadSafeConnection:
    """Thin wrapper around :class:`sqlite3.Connection` that serialises access
    with a :class:`threading.Lock`.

    All public methods that touch the underlying connection acquire the lock
    first, making it safe to share a single instance between the asyncio
    event loop, capability timeouts running in worker threads and the CLI.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def execute(self, sql: str, parameters: Any = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, parameters)

    def executemany(self, sql: str, seq_of_parameters: Any) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executemany(sql, seq_of_parameters)

    def executescript(self, sql_script: str) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executescript(sql_script)

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    def rollback(self) -> None:
        with self._lock:
            self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Acquire lock, yield raw connection, commit on success / rollback on error.

        The lock is held for the whole transaction so that several statements
        run atomically without another caller interleaving.
        """
        self._lock.acquire()
        try:
            yield self._conn
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @property
    def row_factory(self) -> Any:
        return self._conn.row_factory

    @row_factory.setter
    def row_factory(self, value: Any) -> None:
        self._conn.row_factory = value


DbConnection = sqlite3.Connection | ThreadSafeConnection

ModelT = TypeVar("ModelT", bound=BaseModel)


@contextmanager
def transaction(db: DbConnection) -> Iterator[sqlite3.Connection]:
    if isinstance(db, ThreadSafeConnection):
        with db.transaction() as conn:
            yield conn
    else:
        try:
            yield db
            db.commit()
        except BaseException:
            db.rollback()
            raise


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialise a timestamp so that stored values sort lexicographically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def new_id() -> str:
    return uuid.uuid4().hex


def dumps(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return json.dumps(value, default=str)


def row_to(
    model: type[ModelT], row: sqlite3.Row, json_fields: Iterable[str] = ()
) -> ModelT:
    """Convert one sqlite3.Row into *model*, decoding the JSON columns."""
    data = dict(row)
    for name in json_fields:
        if data.get(name) is not None:
            data[name] = json.loads(data[name])
    return model(**data)


def rows_to(
    model: type[ModelT], rows: list[sqlite3.Row], json_fields: Iterable[str] = ()
) -> list[ModelT]:
    fields = tuple(json_fields)
    return [row_to(model, row, fields) for row in rows]


def _update_row(
    db: DbConnection,
    table: str,
    row_id: str,
    allowed: dict[str, str],
    updates: dict[str, object],
    only_if_status: Iterable[str] | None = None,
) -> bool:
    """Apply whitelisted column updates; *allowed* maps column to encoding.

    With *only_if_status* the row is only touched while its status is one of
    those values. Returns whether a row was updated.
    """
    fields = []
    values: list[object] = []
    for key, kind in allowed.items():
        if key not in updates:
            continue
        value = updates[key]
        if kind == "ts":
            value = to_iso(value)  # type: ignore[arg-type]
        elif kind == "json":
            value = dumps(value)
        elif kind == "bool":
            value = int(bool(value))
        fields.append(f"{key} = ?")
        values.append(value)

    if not fields:
        return False

    sql = f"UPDATE {table} SET {', '.join(fields)} WHERE id = ?"
    values.append(row_id)
    if only_if_status is not None:
        statuses = list(only_if_status)
        sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
        values.extend(statuses)
    cur = db.execute(sql, values)
    db.commit()
    return cur.rowcount == 1


def init_db(db_path: Path) -> ThreadSafeConnection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    raw = sqlite3.connect(str(db_path), check_same_thread=False)
    raw.row_factory = sqlite3.Row
    db = ThreadSafeConnection(raw)

    db.executescript(
        dedent("""\
        CREATE TABLE IF NOT EXISTS scheduled_task_definitions (
            id TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            prompt TEXT NOT NULL,
            schedule TEXT NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            last_run_at TEXT,
            next_run_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS scheduled_executions (
            id TEXT PRIMARY KEY,
            definition_id TEXT NOT NULL,
            owner TEXT NOT NULL,
            trigger TEXT NOT NULL DEFAULT 'scheduled',
            status TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            duration_ms INTEGER,
            output TEXT,
            error TEXT,
            thread_id TEXT,
            FOREIGN KEY (definition_id) REFERENCES scheduled_task_definitions(id)
        );

        CREATE TABLE IF NOT EXISTS task_executions (
            id TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            goal TEXT NOT NULL,
            strategy TEXT,
            current_step INTEGER NOT NULL DEFAULT 0,
            context TEXT NOT NULL,
            tool_call_history TEXT NOT NULL DEFAULT '[]',
            checkpoints TEXT NOT NULL DEFAULT '[]',
            retry_count INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'pending',
            last_error TEXT,
            estimated_completion TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT
        );

        CREATE TABLE IF NOT EXISTS task_traces (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL,
            trace_type TEXT NOT NULL,
            message TEXT NOT NULL,
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            FOREIGN KEY (task_id) REFERENCES task_executions(id)
        );

        CREATE TABLE IF NOT EXISTS autonomous_sessions (
            id TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            name TEXT NOT NULL,
            goal TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'planning',
            max_iterations INTEGER NOT NULL,
            current_iteration INTEGER NOT NULL DEFAULT 0,
            progress_percentage INTEGER NOT NULL DEFAULT 0,
            error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            last_activity_at TEXT,
            completed_at TEXT,
            run_by TEXT,
            run_until TEXT
        );

        CREATE TABLE IF NOT EXISTS autonomous_iterations (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            iteration_number INTEGER NOT NULL,
            phase TEXT NOT NULL,
            evaluation TEXT,
            plan TEXT,
            result TEXT,
            started_at TEXT NOT NULL,
            completed_at TEXT,
            duration_ms INTEGER,
            FOREIGN KEY (session_id) REFERENCES autonomous_sessions(id)
        );

        CREATE TABLE IF NOT EXISTS autonomous_observations (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            iteration_id TEXT,
            type TEXT NOT NULL,
            content TEXT NOT NULL,
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            FOREIGN KEY (session_id) REFERENCES autonomous_sessions(id)
        );

        CREATE TABLE IF NOT EXISTS queue_jobs (
            id TEXT PRIMARY KEY,
            queue TEXT NOT NULL,
            ref TEXT,
            payload TEXT NOT NULL DEFAULT '{}',
            priority INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'waiting',
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 1,
            backoff_ms INTEGER NOT NULL DEFAULT 0,
            run_after TEXT NOT NULL,
            locked_by TEXT,
            locked_until TEXT,
            result TEXT,
            error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            finished_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_definitions_owner
            ON scheduled_task_definitions(owner, created_at);
        CREATE INDEX IF NOT EXISTS idx_executions_definition
            ON scheduled_executions(definition_id, started_at);
        CREATE INDEX IF NOT EXISTS idx_task_executions_owner
            ON task_executions(owner, status);
        CREATE INDEX IF NOT EXISTS idx_task_traces ON task_traces(task_id, id);
        CREATE INDEX IF NOT EXISTS idx_sessions_owner
            ON autonomous_sessions(owner, status);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_iterations_session
            ON autonomous_iterations(session_id, iteration_number);
        CREATE INDEX IF NOT EXISTS idx_observations_session
            ON autonomous_observations(session_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_queue_ready
            ON queue_jobs(queue, status, priority, run_after);
        CREATE INDEX IF NOT EXISTS idx_queue_ref ON queue_jobs(queue, ref, status);
    """)
    )

    db.commit()
    return db


# Scheduled task definitions

_DEFINITION_JSON = ("schedule",)


def insert_definition(db: DbConnection, definition: ScheduledTaskDefinition) -> None:
    db.execute(
        dedent("""\
        INSERT INTO scheduled_task_definitions
            (id, owner, name, description, prompt, schedule, enabled,
             last_run_at, next_run_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """),
        (
            definition.id,
            definition.owner,
            definition.name,
            definition.description,
            definition.prompt,
            dumps(definition.schedule),
            int(definition.enabled),
            to_iso(definition.last_run_at),
            to_iso(definition.next_run_at),
            to_iso(definition.created_at),
            to_iso(definition.updated_at),
        ),
    )
    db.commit()


def get_definition(
    db: DbConnection, definition_id: str, owner: str | None = None
) -> ScheduledTaskDefinition | None:
    """Load a definition; with *owner* set, other owners' rows are invisible."""
    if owner is None:
        row = db.execute(
            "SELECT * FROM scheduled_task_definitions WHERE id = ?", (definition_id,)
        ).fetchone()
    else:
        row = db.execute(
            "SELECT * FROM scheduled_task_definitions WHERE id = ? AND owner = ?",
            (definition_id, owner),
        ).fetchone()
    return row_to(ScheduledTaskDefinition, row, _DEFINITION_JSON) if row else None


def list_definitions(
    db: DbConnection, owner: str | None = None, *, enabled: bool | None = None
) -> list[ScheduledTaskDefinition]:
    clauses = []
    params: list[object] = []
    if owner is not None:
        clauses.append("owner = ?")
        params.append(owner)
    if enabled is not None:
        clauses.append("enabled = ?")
        params.append(int(enabled))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = db.execute(
        f"SELECT * FROM scheduled_task_definitions {where} ORDER BY created_at DESC",
        params,
    ).fetchall()
    return rows_to(ScheduledTaskDefinition, rows, _DEFINITION_JSON)


def update_definition(db: DbConnection, definition_id: str, **updates: object) -> None:
    updates.setdefault("updated_at", utcnow())
    _update_row(
        db,
        "scheduled_task_definitions",
        definition_id,
        {
            "name": "text",
            "description": "text",
            "prompt": "text",
            "schedule": "json",
            "enabled": "bool",
            "last_run_at": "ts",
            "next_run_at": "ts",
            "updated_at": "ts",
        },
        updates,
    )


def delete_definition(db: DbConnection, definition_id: str) -> None:
    with transaction(db) as conn:
        conn.execute(
            "DELETE FROM scheduled_executions WHERE definition_id = ?",
            (definition_id,),
        )
        conn.execute(
            "DELETE FROM scheduled_task_definitions WHERE id = ?", (definition_id,)
        )


def insert_execution(db: DbConnection, record: ScheduledExecutionRecord) -> None:
    db.execute(
        dedent("""\
        INSERT INTO scheduled_executions
            (id, definition_id, owner, trigger, status, started_at, completed_at,
             duration_ms, output, error, thread_id)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """),
        (
            record.id,
            record.definition_id,
            record.owner,
            record.trigger,
            record.status,
            to_iso(record.started_at),
            to_iso(record.completed_at),
            record.duration_ms,
            record.output,
            record.error,
            record.thread_id,
        ),
    )
    db.commit()


def finish_execution(
    db: DbConnection,
    execution_id: str,
    *,
    status: str,
    duration_ms: int,
    output: str | None = None,
    error: str | None = None,
    thread_id: str | None = None,
) -> None:
    db.execute(
        dedent("""\
        UPDATE scheduled_executions
        SET status = ?, completed_at = ?, duration_ms = ?, output = ?, error = ?,
            thread_id = ?
        WHERE id = ?
    """),
        (status, to_iso(utcnow()), duration_ms, output, error, thread_id, execution_id),
    )
    db.commit()


def get_execution(db: DbConnection, execution_id: str) -> ScheduledExecutionRecord | None:
    row = db.execute(
        "SELECT * FROM scheduled_executions WHERE id = ?", (execution_id,)
    ).fetchone()
    return ScheduledExecutionRecord(**row) if row else None


def list_executions(
    db: DbConnection, definition_id: str, limit: int = 50
) -> list[ScheduledExecutionRecord]:
    rows = db.execute(
        dedent("""\
        SELECT * FROM scheduled_executions
        WHERE definition_id = ?
        ORDER BY started_at DESC
        LIMIT ?
    """),
        (definition_id, limit),
    ).fetchall()
    return rows_to(ScheduledExecutionRecord, rows)


# Stepwise task executions

_TASK_JSON = ("strategy", "context", "tool_call_history", "checkpoints")


def insert_task(db: DbConnection, task: TaskExecution) -> None:
    db.execute(
        dedent("""\
        INSERT INTO task_executions
            (id, owner, goal, strategy, current_step, context, tool_call_history,
             checkpoints, retry_count, status, last_error, estimated_completion,
             created_at, updated_at, started_at, completed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """),
        _task_params(task),
    )
    db.commit()


def _task_params(task: TaskExecution) -> tuple[object, ...]:
    dumped = task.model_dump(mode="json")
    return (
        task.id,
        task.owner,
        task.goal,
        dumps(dumped["strategy"]),
        task.current_step,
        dumps(dumped["context"]),
        dumps(dumped["tool_call_history"]),
        dumps(dumped["checkpoints"]),
        task.retry_count,
        task.status,
        task.last_error,
        to_iso(task.estimated_completion),
        to_iso(task.created_at),
        to_iso(task.updated_at),
        to_iso(task.started_at),
        to_iso(task.completed_at),
    )


def save_task(
    db: DbConnection, task: TaskExecution, *, only_if_status: str | None = None
) -> bool:
    """Write every column of *task* back.

    With *only_if_status* the write is a compare-and-set against the stored
    status; returns ``False`` when another writer changed it first.
    """
    task.updated_at = utcnow()
    params = _task_params(task)
    sql = dedent("""\
        UPDATE task_executions
        SET owner = ?, goal = ?, strategy = ?, current_step = ?, context = ?,
            tool_call_history = ?, checkpoints = ?, retry_count = ?, status = ?,
            last_error = ?, estimated_completion = ?, created_at = ?,
            updated_at = ?, started_at = ?, completed_at = ?
        WHERE id = ?
    """)
    values = [*params[1:], task.id]
    if only_if_status is not None:
        sql = sql.rstrip() + " AND status = ?"
        values.append(only_if_status)
    cur = db.execute(sql, values)
    db.commit()
    return cur.rowcount == 1


def get_task(
    db: DbConnection, task_id: str, owner: str | None = None
) -> TaskExecution | None:
    if owner is None:
        row = db.execute(
            "SELECT * FROM task_executions WHERE id = ?", (task_id,)
        ).fetchone()
    else:
        row = db.execute(
            "SELECT * FROM task_executions WHERE id = ? AND owner = ?",
            (task_id, owner),
        ).fetchone()
    return row_to(TaskExecution, row, _TASK_JSON) if row else None


def list_tasks(
    db: DbConnection, owner: str, statuses: Iterable[str] | None = None
) -> list[TaskExecution]:
    sql = "SELECT * FROM task_executions WHERE owner = ?"
    params: list[object] = [owner]
    if statuses:
        statuses = list(statuses)
        sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)
    rows = db.execute(sql + " ORDER BY created_at DESC", params).fetchall()
    return rows_to(TaskExecution, rows, _TASK_JSON)


def delete_old_task_executions(db: DbConnection, older_than: datetime) -> int:
    """Delete finished task executions (and their traces) completed before *older_than*."""
    cutoff = to_iso(older_than)
    with transaction(db) as conn:
        conn.execute(
            dedent("""\
            DELETE FROM task_traces WHERE task_id IN (
                SELECT id FROM task_executions
                WHERE status IN ('completed', 'failed') AND completed_at < ?
            )
        """),
            (cutoff,),
        )
        cur = conn.execute(
            dedent("""\
            DELETE FROM task_executions
            WHERE status IN ('completed', 'failed') AND completed_at < ?
        """),
            (cutoff,),
        )
    return cur.rowcount


def add_trace(
    db: DbConnection,
    task_id: str,
    trace_type: str,
    message: str,
    metadata: dict[str, Any] | None = None,
) -> int:
    cur = db.execute(
        dedent("""\
        INSERT INTO task_traces (task_id, trace_type, message, metadata, created_at)
        VALUES (?, ?, ?, ?, ?)
    """),
        (task_id, trace_type, message, dumps(metadata or {}), to_iso(utcnow())),
    )
    db.commit()
    return cur.lastrowid or 0


def list_traces(
    db: DbConnection, task_id: str, limit: int | None = None
) -> list[TaskTrace]:
    """Return traces oldest first; with *limit*, only the most recent ones."""
    if limit is None:
        rows = db.execute(
            "SELECT * FROM task_traces WHERE task_id = ? ORDER BY id", (task_id,)
        ).fetchall()
    else:
        rows = db.execute(
            "SELECT * FROM task_traces WHERE task_id = ? ORDER BY id DESC LIMIT ?",
            (task_id, limit),
        ).fetchall()
        rows = list(reversed(rows))
    return rows_to(TaskTrace, rows, ("metadata",))


def delete_old_traces(db: DbConnection, older_than: datetime) -> int:
    cur = db.execute(
        "DELETE FROM task_traces WHERE created_at < ?", (to_iso(older_than),)
    )
    db.commit()
    return cur.rowcount


# Autonomous sessions


def insert_session(db: DbConnection, session: AutonomousSession) -> None:
    db.execute(
        dedent("""\
        INSERT INTO autonomous_sessions
            (id, owner, name, goal, status, max_iterations, current_iteration,
             progress_percentage, error, created_at, updated_at, last_activity_at,
             completed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """),
        (
            session.id,
            session.owner,
            session.name,
            session.goal,
            session.status,
            session.max_iterations,
            session.current_iteration,
            session.progress_percentage,
            session.error,
            to_iso(session.created_at),
            to_iso(session.updated_at),
            to_iso(session.last_activity_at),
            to_iso(session.completed_at),
        ),
    )
    db.commit()


def get_session(
    db: DbConnection, session_id: str, owner: str | None = None
) -> AutonomousSession | None:
    if owner is None:
        row = db.execute(
            "SELECT * FROM autonomous_sessions WHERE id = ?", (session_id,)
        ).fetchone()
    else:
        row = db.execute(
            "SELECT * FROM autonomous_sessions WHERE id = ? AND owner = ?",
            (session_id, owner),
        ).fetchone()
    return row_to(AutonomousSession, row) if row else None


def list_sessions(
    db: DbConnection, owner: str, statuses: Iterable[str] | None = None
) -> list[AutonomousSession]:
    sql = "SELECT * FROM autonomous_sessions WHERE owner = ?"
    params: list[object] = [owner]
    if statuses:
        statuses = list(statuses)
        sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)
    rows = db.execute(sql + " ORDER BY created_at DESC", params).fetchall()
    return rows_to(AutonomousSession, rows)


def update_session(
    db: DbConnection,
    session_id: str,
    *,
    only_if_status: Iterable[str] | None = None,
    **updates: object,
) -> bool:
    updates.setdefault("updated_at", utcnow())
    return _update_row(
        db,
        "autonomous_sessions",
        session_id,
        {
            "name": "text",
            "goal": "text",
            "status": "text",
            "max_iterations": "int",
            "current_iteration": "int",
            "progress_percentage": "int",
            "error": "text",
            "updated_at": "ts",
            "last_activity_at": "ts",
            "completed_at": "ts",
        },
        updates,
        only_if_status,
    )


def acquire_session_run(
    db: DbConnection, session_id: str, run_id: str, until: datetime
) -> bool:
    """Take the run lease of a session unless another live run holds it."""
    cur = db.execute(
        dedent("""\
        UPDATE autonomous_sessions SET run_by = ?, run_until = ?
        WHERE id = ? AND (run_by IS NULL OR run_until < ?)
    """),
        (run_id, to_iso(until), session_id, to_iso(utcnow())),
    )
    db.commit()
    return cur.rowcount == 1


def release_session_run(db: DbConnection, session_id: str, run_id: str) -> None:
    db.execute(
        "UPDATE autonomous_sessions SET run_by = NULL, run_until = NULL"
        " WHERE id = ? AND run_by = ?",
        (session_id, run_id),
    )
    db.commit()


def delete_session(db: DbConnection, session_id: str) -> None:
    with transaction(db) as conn:
        conn.execute(
            "DELETE FROM autonomous_observations WHERE session_id = ?", (session_id,)
        )
        conn.execute(
            "DELETE FROM autonomous_iterations WHERE session_id = ?", (session_id,)
        )
        conn.execute("DELETE FROM autonomous_sessions WHERE id = ?", (session_id,))


_ITERATION_JSON = ("evaluation", "plan", "result")


def insert_iteration(db: DbConnection, iteration: AutonomousIteration) -> None:
    db.execute(
        dedent("""\
        INSERT INTO autonomous_iterations
            (id, session_id, iteration_number, phase, evaluation, plan, result,
             started_at, completed_at, duration_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """),
        (
            iteration.id,
            iteration.session_id,
            iteration.iteration_number,
            iteration.phase,
            dumps(iteration.evaluation),
            dumps(iteration.plan),
            dumps(iteration.result),
            to_iso(iteration.started_at),
            to_iso(iteration.completed_at),
            iteration.duration_ms,
        ),
    )
    db.commit()


def update_iteration(db: DbConnection, iteration_id: str, **updates: object) -> None:
    _update_row(
        db,
        "autonomous_iterations",
        iteration_id,
        {
            "phase": "text",
            "evaluation": "json",
            "plan": "json",
            "result": "json",
            "completed_at": "ts",
            "duration_ms": "int",
        },
        updates,
    )


def list_iterations(db: DbConnection, session_id: str) -> list[AutonomousIteration]:
    rows = db.execute(
        dedent("""\
        SELECT * FROM autonomous_iterations
        WHERE session_id = ?
        ORDER BY iteration_number
    """),
        (session_id,),
    ).fetchall()
    return rows_to(AutonomousIteration, rows, _ITERATION_JSON)


def add_observation(
    db: DbConnection,
    *,
    session_id: str,
    type: str,
    content: str,
    metadata: dict[str, Any] | None = None,
    iteration_id: str | None = None,
) -> AutonomousObservation:
    observation = AutonomousObservation(
        id=new_id(),
        session_id=session_id,
        iteration_id=iteration_id,
        type=type,  # type: ignore[arg-type]
        content=content,
        metadata=metadata or {},
        created_at=utcnow(),
    )
    db.execute(
        dedent("""\
        INSERT INTO autonomous_observations
            (id, session_id, iteration_id, type, content, metadata, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """),
        (
            observation.id,
            observation.session_id,
            observation.iteration_id,
            observation.type,
            observation.content,
            dumps(observation.metadata),
            to_iso(observation.created_at),
        ),
    )
    db.commit()
    return observation


def list_observations(
    db: DbConnection, session_id: str, limit: int | None = None
) -> list[AutonomousObservation]:
    """Return observations oldest first; with *limit*, only the most recent ones."""
    if limit is None:
        rows = db.execute(
            dedent("""\
            SELECT * FROM autonomous_observations
            WHERE session_id = ?
            ORDER BY created_at, rowid
        """),
            (session_id,),
        ).fetchall()
    else:
        rows = db.execute(
            dedent("""\
            SELECT * FROM autonomous_observations
            WHERE session_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
        """),
            (session_id, limit),
        ).fetchall()
        rows = list(reversed(rows))
    return rows_to(AutonomousObservation, rows, ("metadata",))
