"""Autonomous iteration loop.

A session chases an open-ended goal by repeating four phases in fixed order:

    evaluate -> plan -> execute -> observe

Session status is an explicit state machine:

    planning  --first plan-->           executing
    planning  --goal achieved-->        completed
    planning  --stop / cap-->           paused
    executing --goal achieved-->        completed
    executing --stop / cap / human-->   paused
    paused    --continue_session()-->   executing
    any       --unrecoverable error-->  failed

The evaluator's ``shouldContinue`` comes from an external model, so every
invocation is also bounded by ``max_iterations`` and a wall-clock budget.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from textwrap import dedent
from typing import Any

from pydantic import ValidationError

from taskweave.agent_core import (
    ExecutionCapability,
    ExecutionResult,
    parse_json_reply,
    run_with_timeout,
)
from taskweave.config import settings
from taskweave.db import (
    DbConnection,
    acquire_session_run,
    add_observation,
    delete_session,
    get_session,
    insert_iteration,
    insert_session,
    list_iterations,
    list_observations,
    list_sessions,
    new_id,
    release_session_run,
    update_iteration,
    update_session,
    utcnow,
)
from taskweave.errors import (
    AlreadyRunningError,
    ExecutionError,
    InputValidationError,
    NotFoundError,
    StateConflictError,
)
from taskweave.models import (
    ActionPlan,
    AutonomousIteration,
    AutonomousObservation,
    AutonomousSession,
    IterationResult,
    ProgressEvaluation,
    QueueJob,
    SessionCreate,
    SessionUpdate,
)
from taskweave.queue import JobQueue
from taskweave.tools import ToolRegistry
from taskweave.worker import SkipJob, load_authoritative

log = logging.getLogger(__name__)

AUTONOMOUS_QUEUE = "autonomous"
CANCELLED_REASON = "Cancelled by user"
HUMAN_INPUT_MARKER = "requires_human_input"
OBSERVATION_WINDOW = 10
CONTINUE_DELAY_MS = 1000
CANCELLABLE = ("planning", "executing")

EVALUATE_PROMPT = dedent("""\
    You are evaluating the progress of an autonomous agent session.

    Goal: {goal}
    Current iteration: {iteration}/{max_iterations}
    Current progress: {progress}%

    Recent observations:
    {observations}

    Respond in JSON only:
    {{
      "goalAchieved": boolean,
      "progressPercentage": number (0-100),
      "blockers": ["..."],
      "recommendations": ["..."],
      "shouldContinue": boolean
    }}""")

PLAN_PROMPT = dedent("""\
    You are planning the next action for an autonomous agent session.

    Goal: {goal}

    Current progress: {progress}%
    Blockers: {blockers}
    Recommendations: {recommendations}

    Generate one specific, actionable next step. Respond in JSON only:
    {{
      "action": "specific action description",
      "rationale": "why this action",
      "expectedOutcome": "what we expect to achieve"
    }}""")

EXECUTE_PROMPT = dedent("""\
    Execute the following action toward achieving this goal:

    Goal: {goal}

    Planned action: {action}
    Rationale: {rationale}
    Expected outcome: {expected_outcome}

    Execute this action and report back on what you accomplished. If you
    cannot proceed without a decision from the user, say "{marker}" and
    explain what you need.""")

ToolsFactory = Callable[[str], ToolRegistry]


@dataclass
class LoopResult:
    status: str
    message: str
    final_progress: int
    iterations_run: int = 0
    out_of_budget: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "finalProgress": self.final_progress,
            "iterationsRun": self.iterations_run,
        }


class _PhaseError(Exception):
    def __init__(self, phase: str, message: str) -> None:
        super().__init__(message)
        self.phase = phase


class AutonomousLoop:
    def __init__(
        self,
        db: DbConnection,
        queue: JobQueue,
        capability: ExecutionCapability,
        *,
        tools_for: ToolsFactory | None = None,
        default_max_iterations: int | None = None,
        max_iterations_cap: int | None = None,
        budget: float | None = None,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.db = db
        self.queue = queue
        self.capability = capability
        self.tools_for = tools_for
        self.default_max_iterations = (
            default_max_iterations or settings.autonomous_default_max_iterations
        )
        self.max_iterations_cap = (
            max_iterations_cap or settings.autonomous_max_iterations_cap
        )
        self.budget = budget or settings.invocation_budget
        self.timeout = timeout or settings.execution_timeout
        self._clock = clock

    # Session CRUD

    def _check_cap(self, max_iterations: int | None) -> None:
        if max_iterations is not None and max_iterations > self.max_iterations_cap:
            raise InputValidationError(
                "Invalid input",
                {"max_iterations": f"must be at most {self.max_iterations_cap}"},
            )

    def create_session(
        self, owner: str, data: SessionCreate | dict[str, Any]
    ) -> AutonomousSession:
        try:
            spec = data if isinstance(data, SessionCreate) else SessionCreate.model_validate(data)
        except ValidationError as e:
            raise InputValidationError.from_pydantic(e) from e
        self._check_cap(spec.max_iterations)

        now = utcnow()
        session = AutonomousSession(
            id=new_id(),
            owner=owner,
            name=spec.name,
            goal=spec.goal,
            status="planning",
            max_iterations=spec.max_iterations or self.default_max_iterations,
            created_at=now,
            updated_at=now,
            last_activity_at=now,
        )
        insert_session(self.db, session)
        log.info("Created autonomous session %s (%s)", session.id, session.name)
        return session

    def get_session(self, owner: str, session_id: str) -> AutonomousSession:
        session = get_session(self.db, session_id, owner)
        if session is None:
            raise NotFoundError("Autonomous session", session_id)
        return session

    def list_sessions(
        self, owner: str, statuses: list[str] | None = None
    ) -> list[AutonomousSession]:
        return list_sessions(self.db, owner, statuses)

    def update_session(
        self, owner: str, session_id: str, data: SessionUpdate | dict[str, Any]
    ) -> AutonomousSession:
        try:
            spec = data if isinstance(data, SessionUpdate) else SessionUpdate.model_validate(data)
        except ValidationError as e:
            raise InputValidationError.from_pydantic(e) from e
        self._check_cap(spec.max_iterations)
        self.get_session(owner, session_id)
        changes = spec.model_dump(exclude_unset=True, exclude_none=True)
        if changes:
            update_session(self.db, session_id, **changes)
        return self.get_session(owner, session_id)

    def delete_session(self, owner: str, session_id: str) -> None:
        self.get_session(owner, session_id)
        self._remove_queued(session_id)
        delete_session(self.db, session_id)
        log.info("Deleted autonomous session %s", session_id)

    def list_iterations(self, owner: str, session_id: str) -> list[AutonomousIteration]:
        self.get_session(owner, session_id)
        return list_iterations(self.db, session_id)

    def list_observations(
        self, owner: str, session_id: str, limit: int | None = None
    ) -> list[AutonomousObservation]:
        self.get_session(owner, session_id)
        return list_observations(self.db, session_id, limit)

    # Control

    def cancel_session(self, owner: str, session_id: str) -> AutonomousSession:
        session = self.get_session(owner, session_id)
        if session.status not in CANCELLABLE:
            raise StateConflictError(
                f"Session cannot be cancelled while {session.status}", session.status
            )
        now = utcnow()
        if not update_session(
            self.db,
            session_id,
            only_if_status=CANCELLABLE,
            status="failed",
            error=CANCELLED_REASON,
            completed_at=now,
            last_activity_at=now,
        ):
            current = self.get_session(owner, session_id)
            raise StateConflictError(
                f"Session cannot be cancelled while {current.status}", current.status
            )
        self._remove_queued(session_id)
        log.info("Cancelled autonomous session %s", session_id)
        return self.get_session(owner, session_id)

    def _remove_queued(self, session_id: str) -> None:
        try:
            self.queue.remove_by_ref(AUTONOMOUS_QUEUE, session_id)
        except Exception:
            log.warning(
                "Failed to remove queued continuations of %s", session_id, exc_info=True
            )

    def enqueue_continue(
        self, owner: str, session_id: str, user_feedback: str | None = None
    ) -> QueueJob:
        """Run :meth:`continue_session` in the background via the queue."""
        session = self.get_session(owner, session_id)
        if session.is_terminal:
            raise StateConflictError(f"Session is {session.status}", session.status)
        return self.queue.enqueue(
            AUTONOMOUS_QUEUE,
            f"{session_id}-continue-{session.current_iteration}-{uuid.uuid4().hex[:6]}",
            {"session_id": session_id, "user_feedback": user_feedback},
            ref=session_id,
            max_attempts=1,
        )

    async def process_continue_job(self, job: QueueJob) -> dict[str, Any]:
        session = load_authoritative(
            job,
            lambda ref: get_session(self.db, ref),
            active=lambda s: not s.is_terminal,
            what="autonomous session",
        )
        feedback = job.payload.get("user_feedback")
        try:
            result = await self.continue_session(
                session.owner, session.id, user_feedback=feedback
            )
        except AlreadyRunningError as e:
            # Another run holds the session; it will see the feedback.
            if feedback:
                add_observation(
                    self.db,
                    session_id=session.id,
                    type="user_intervention",
                    content=feedback,
                )
            raise SkipJob(e.message) from e
        if result.out_of_budget:
            # Budget ran out mid-run; pick up where we left off.
            self.queue.enqueue(
                AUTONOMOUS_QUEUE,
                f"{session.id}-continue-{uuid.uuid4().hex[:6]}",
                {"session_id": session.id},
                ref=session.id,
                delay=timedelta(milliseconds=CONTINUE_DELAY_MS),
                max_attempts=1,
            )
        return result.to_dict()

    async def continue_session(
        self,
        owner: str,
        session_id: str,
        user_feedback: str | None = None,
        budget: float | None = None,
    ) -> LoopResult:
        """Run one or more iterations until a stop condition or the budget ends.

        Only one invocation runs a session at a time.

        Raises:
            StateConflictError: the session is completed or failed, or another
                invocation is already running it.
        """
        session = self.get_session(owner, session_id)
        if session.is_terminal:
            raise StateConflictError(f"Session is {session.status}", session.status)
        budget = budget if budget is not None else self.budget
        run_id = uuid.uuid4().hex
        # An iteration may start just before the deadline and make three calls.
        lease = timedelta(seconds=budget + 3 * self.timeout)
        if not acquire_session_run(self.db, session_id, run_id, utcnow() + lease):
            raise AlreadyRunningError("Session is already running", session.status)
        try:
            session = self.get_session(owner, session_id)
            if session.is_terminal:
                raise StateConflictError(f"Session is {session.status}", session.status)
            return await self._continue(session, user_feedback, budget)
        finally:
            release_session_run(self.db, session_id, run_id)

    async def _continue(
        self,
        session: AutonomousSession,
        user_feedback: str | None,
        budget: float,
    ) -> LoopResult:
        owner, session_id = session.owner, session.id

        if user_feedback:
            add_observation(
                self.db,
                session_id=session_id,
                type="user_intervention",
                content=user_feedback,
            )
        if session.status == "paused":
            update_session(
                self.db,
                session_id,
                only_if_status=("paused",),
                status="executing",
                error=None,
                last_activity_at=utcnow(),
            )

        deadline = self._clock() + budget
        iterations_run = 0
        while True:
            session = self.get_session(owner, session_id)
            if session.is_terminal:
                return LoopResult(
                    session.status,
                    session.error or f"Session is {session.status}",
                    session.progress_percentage,
                    iterations_run,
                )
            if session.current_iteration >= session.max_iterations:
                self._set_status(session, "paused")
                return LoopResult(
                    "paused",
                    f"Reached maximum iterations ({session.max_iterations})",
                    session.progress_percentage,
                    iterations_run,
                )
            if iterations_run and self._clock() >= deadline:
                return LoopResult(
                    session.status,
                    "Time budget exhausted; continue to resume",
                    session.progress_percentage,
                    iterations_run,
                    out_of_budget=True,
                )

            try:
                stop = await self._run_iteration(session)
            except _PhaseError as e:
                self._set_status(session, "paused", error=str(e))
                return LoopResult(
                    "paused",
                    f"{e.phase.capitalize()} failed: {e}",
                    session.progress_percentage,
                    iterations_run + 1,
                )
            except Exception as e:
                log.exception("Autonomous session %s failed", session.id)
                add_observation(
                    self.db, session_id=session.id, type="error", content=str(e)
                )
                self._set_status(session, "failed", error=str(e), completed_at=utcnow())
                return LoopResult(
                    "failed", str(e), session.progress_percentage, iterations_run + 1
                )
            iterations_run += 1
            if stop is not None:
                stop.iterations_run = iterations_run
                return stop

    def _set_status(
        self, session: AutonomousSession, status: str, **updates: object
    ) -> bool:
        """Move a live session to *status*; a concurrent cancel wins."""
        return update_session(
            self.db,
            session.id,
            only_if_status=("planning", "executing", "paused"),
            status=status,
            last_activity_at=utcnow(),
            **updates,
        )

    # One iteration

    async def _run_iteration(self, session: AutonomousSession) -> LoopResult | None:
        """Run evaluate, plan, execute and observe once.

        Returns a :class:`LoopResult` when the loop must stop, ``None`` to go on.
        """
        number = session.current_iteration + 1
        log.info(
            "Session %s iteration %d/%d", session.id, number, session.max_iterations
        )
        started = utcnow()
        t0 = time.monotonic()
        iteration = AutonomousIteration(
            id=new_id(),
            session_id=session.id,
            iteration_number=number,
            phase="evaluating",
            started_at=started,
        )
        insert_iteration(self.db, iteration)

        def finish(**updates: object) -> None:
            update_iteration(
                self.db,
                iteration.id,
                completed_at=utcnow(),
                duration_ms=int((time.monotonic() - t0) * 1000),
                **updates,
            )

        try:
            evaluation = await self._evaluate(session, iteration.id)
        except _PhaseError as e:
            self._record_phase_error(session, iteration.id, e)
            finish(result=IterationResult(success=False, error=str(e)))
            update_session(self.db, session.id, current_iteration=number)
            raise
        update_iteration(self.db, iteration.id, evaluation=evaluation)

        progress_updates: dict[str, object] = {
            "current_iteration": number,
            "progress_percentage": evaluation.progress_percentage,
        }
        if evaluation.goal_achieved:
            finish()
            self._set_status(
                session, "completed", completed_at=utcnow(), **progress_updates
            )
            log.info("Session %s achieved its goal", session.id)
            return LoopResult(
                "completed", "Goal achieved successfully", evaluation.progress_percentage
            )
        if not evaluation.should_continue:
            finish()
            self._set_status(session, "paused", **progress_updates)
            return LoopResult(
                "paused",
                "Session paused - requires intervention",
                evaluation.progress_percentage,
            )

        update_iteration(self.db, iteration.id, phase="planning")
        try:
            plan = await self._plan(session, evaluation, iteration.id)
        except _PhaseError as e:
            self._record_phase_error(session, iteration.id, e)
            finish(result=IterationResult(success=False, error=str(e)))
            update_session(self.db, session.id, **progress_updates)
            raise
        update_iteration(self.db, iteration.id, plan=plan, phase="executing")
        if session.status == "planning":
            update_session(
                self.db, session.id, only_if_status=("planning",), status="executing"
            )

        result = await self._execute(session, plan, iteration.id)

        update_iteration(self.db, iteration.id, result=result, phase="observing")
        add_observation(
            self.db,
            session_id=session.id,
            iteration_id=iteration.id,
            type="execution",
            content=(
                f"Execution successful: {(result.output or 'completed')[:500]}"
                if result.success
                else f"Execution failed: {result.error}"
            ),
            metadata={"success": result.success, "iterationNumber": number},
        )
        finish()

        if not update_session(
            self.db,
            session.id,
            only_if_status=("executing",),
            last_activity_at=utcnow(),
            **progress_updates,
        ):
            current = get_session(self.db, session.id)
            status = current.status if current else "failed"
            return LoopResult(
                status, "Session changed while iterating", evaluation.progress_percentage
            )

        if result.error and HUMAN_INPUT_MARKER in result.error:
            self._set_status(session, "paused")
            return LoopResult(
                "paused", "Session paused - requires human input", evaluation.progress_percentage
            )
        return None

    def _record_phase_error(
        self, session: AutonomousSession, iteration_id: str, error: _PhaseError
    ) -> None:
        add_observation(
            self.db,
            session_id=session.id,
            iteration_id=iteration_id,
            type="error",
            content=f"{error.phase} failed: {error}",
            metadata={"phase": error.phase},
        )

    async def _call(self, phase: str, prompt: str, **kwargs: Any) -> ExecutionResult:
        try:
            result = await run_with_timeout(
                self.capability.execute(prompt, **kwargs), self.timeout, phase
            )
        except ExecutionError as e:
            raise _PhaseError(phase, e.message) from e
        if not result.success:
            raise _PhaseError(phase, result.error or f"{phase} call failed")
        return result

    async def _evaluate(
        self, session: AutonomousSession, iteration_id: str
    ) -> ProgressEvaluation:
        observations = list_observations(self.db, session.id, OBSERVATION_WINDOW)
        rendered = "\n".join(f"- [{o.type}] {o.content}" for o in observations) or "None yet"
        result = await self._call(
            "evaluation",
            EVALUATE_PROMPT.format(
                goal=session.goal,
                iteration=session.current_iteration,
                max_iterations=session.max_iterations,
                progress=session.progress_percentage,
                observations=rendered,
            ),
        )
        try:
            evaluation = ProgressEvaluation.model_validate(parse_json_reply(result.output))
        except ValidationError:
            log.warning("Unparseable evaluation for session %s; using defaults", session.id)
            evaluation = ProgressEvaluation(
                goal_achieved=False,
                progress_percentage=session.progress_percentage,
                blockers=["Failed to parse evaluation"],
                recommendations=["Retry evaluation"],
                should_continue=True,
            )

        add_observation(
            self.db,
            session_id=session.id,
            iteration_id=iteration_id,
            type="evaluation",
            content=(
                f"Progress: {evaluation.progress_percentage}%, "
                f"Goal achieved: {evaluation.goal_achieved}"
            ),
            metadata={"evaluation": evaluation.model_dump(by_alias=True)},
        )
        return evaluation

    async def _plan(
        self,
        session: AutonomousSession,
        evaluation: ProgressEvaluation,
        iteration_id: str,
    ) -> ActionPlan:
        result = await self._call(
            "planning",
            PLAN_PROMPT.format(
                goal=session.goal,
                progress=evaluation.progress_percentage,
                blockers=", ".join(evaluation.blockers) or "None",
                recommendations=", ".join(evaluation.recommendations) or "None",
            ),
        )
        try:
            plan = ActionPlan.model_validate(parse_json_reply(result.output))
        except ValidationError:
            log.warning("Unparseable plan for session %s; using defaults", session.id)
            plan = ActionPlan(
                action="Continue working toward goal",
                rationale="Making incremental progress",
                expected_outcome="Move closer to goal completion",
            )

        add_observation(
            self.db,
            session_id=session.id,
            iteration_id=iteration_id,
            type="planning",
            content=f"Action: {plan.action}",
            metadata={"plan": plan.model_dump(by_alias=True)},
        )
        return plan

    async def _execute(
        self, session: AutonomousSession, plan: ActionPlan, iteration_id: str
    ) -> IterationResult:
        """Run the planned action with full tool access. Failures are results."""
        tools = self.tools_for(session.owner) if self.tools_for is not None else None
        prompt = EXECUTE_PROMPT.format(
            goal=session.goal,
            action=plan.action,
            rationale=plan.rationale,
            expected_outcome=plan.expected_outcome,
            marker=HUMAN_INPUT_MARKER,
        )
        try:
            result = await run_with_timeout(
                self.capability.execute(prompt, tools=tools),
                self.timeout,
                "execution",
            )
        except ExecutionError as e:
            return IterationResult(success=False, error=e.message)

        for call in result.tool_calls:
            add_observation(
                self.db,
                session_id=session.id,
                iteration_id=iteration_id,
                type="tool_call",
                content=f"Called {call.tool_name}",
                metadata={"args": call.args, "status": call.status},
            )
        calls = [
            {"tool": c.tool_name, "args": c.args, "status": c.status}
            for c in result.tool_calls
        ]
        if not result.success:
            return IterationResult(success=False, error=result.error, tool_calls=calls)
        return IterationResult(success=True, output=result.output, tool_calls=calls)
