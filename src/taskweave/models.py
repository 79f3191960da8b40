from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

ScheduleUnit = Literal["minutes", "hours", "days", "weeks"]
ExecutionStatus = Literal["pending", "running", "success", "failed"]
TaskStatus = Literal["pending", "running", "completed", "failed"]
StepType = Literal["tool-call", "llm-reasoning", "checkpoint"]
StepStatus = Literal["pending", "running", "completed", "failed"]
SessionStatus = Literal["planning", "executing", "paused", "completed", "failed"]
IterationPhase = Literal["evaluating", "planning", "executing", "observing"]
ObservationType = Literal[
    "evaluation", "planning", "execution", "tool_call", "error", "user_intervention"
]
JobStatus = Literal["waiting", "active", "completed", "failed"]


class _CamelModel(BaseModel):
    """Accepts camelCase keys as produced by the planner."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Schedules


class CronSchedule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["cron"] = "cron"
    expression: str = Field(min_length=1)


class IntervalSchedule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["interval"] = "interval"
    value: int = Field(ge=1)
    unit: ScheduleUnit


ScheduleSpec = Annotated[CronSchedule | IntervalSchedule, Field(discriminator="type")]
schedule_adapter: TypeAdapter[CronSchedule | IntervalSchedule] = TypeAdapter(
    ScheduleSpec
)


class ScheduledTaskCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    prompt: str = Field(min_length=1)
    schedule: ScheduleSpec
    description: str | None = None
    enabled: bool = True


class ScheduledTaskUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    prompt: str | None = Field(default=None, min_length=1)
    schedule: ScheduleSpec | None = None
    description: str | None = None
    enabled: bool | None = None


class ScheduledTaskDefinition(BaseModel):
    id: str
    owner: str
    name: str
    description: str | None = None
    prompt: str
    schedule: ScheduleSpec
    enabled: bool = True
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ScheduledExecutionRecord(BaseModel):
    id: str
    definition_id: str
    owner: str
    trigger: Literal["scheduled", "manual"] = "scheduled"
    status: ExecutionStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    output: str | None = None
    error: str | None = None
    thread_id: str | None = None


# Stepwise tasks


class StrategyStep(_CamelModel):
    description: str = Field(min_length=1)
    type: StepType = "llm-reasoning"
    estimated_duration: int | None = Field(default=None, ge=0)  # milliseconds
    status: StepStatus = "pending"


class TaskStrategy(_CamelModel):
    steps: list[StrategyStep] = Field(min_length=1)

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def estimated_duration_ms(self, default_step_ms: int = 30_000) -> int:
        return sum(
            step.estimated_duration if step.estimated_duration is not None
            else default_step_ms
            for step in self.steps
        )


class TaskContext(BaseModel):
    summary: str = ""
    findings: dict[str, str] = Field(default_factory=dict)
    tool_results: list[dict[str, Any]] = Field(default_factory=list)
    message_history: list[dict[str, str]] = Field(default_factory=list)


class ToolCallRecord(BaseModel):
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    status: Literal["success", "error"] = "success"
    step_index: int | None = None
    timestamp: datetime


class Checkpoint(BaseModel):
    step_index: int
    context: TaskContext
    created_at: datetime


class TaskExecution(BaseModel):
    id: str
    owner: str
    goal: str
    strategy: TaskStrategy | None = None
    current_step: int = 0
    context: TaskContext = Field(default_factory=TaskContext)
    tool_call_history: list[ToolCallRecord] = Field(default_factory=list)
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    retry_count: int = 0
    status: TaskStatus = "pending"
    last_error: str | None = None
    estimated_completion: datetime | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def total_steps(self) -> int:
        return self.strategy.total_steps if self.strategy else 0

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


class TaskTrace(BaseModel):
    id: int
    task_id: str
    trace_type: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


# Autonomous sessions


class ProgressEvaluation(_CamelModel):
    goal_achieved: bool = False
    progress_percentage: int = Field(default=0, ge=0, le=100)
    blockers: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    should_continue: bool = True


class ActionPlan(_CamelModel):
    action: str = Field(min_length=1)
    rationale: str = ""
    expected_outcome: str = ""


class IterationResult(BaseModel):
    success: bool
    output: str | None = None
    error: str | None = None
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)


class SessionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    goal: str = Field(min_length=1)
    max_iterations: int | None = Field(default=None, ge=1)


class SessionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    goal: str | None = Field(default=None, min_length=1)
    max_iterations: int | None = Field(default=None, ge=1)


class AutonomousSession(BaseModel):
    id: str
    owner: str
    name: str
    goal: str
    status: SessionStatus = "planning"
    max_iterations: int = 20
    current_iteration: int = 0
    progress_percentage: int = 0
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime | None = None
    completed_at: datetime | None = None
    run_by: str | None = None
    run_until: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


class AutonomousIteration(BaseModel):
    id: str
    session_id: str
    iteration_number: int
    phase: IterationPhase
    evaluation: ProgressEvaluation | None = None
    plan: ActionPlan | None = None
    result: IterationResult | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None


class AutonomousObservation(BaseModel):
    id: str
    session_id: str
    iteration_id: str | None = None
    type: ObservationType
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


# Queue


class QueueJob(BaseModel):
    id: str
    queue: str
    ref: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    status: JobStatus = "waiting"
    attempts: int = 0
    max_attempts: int = 1
    backoff_ms: int = 0
    run_after: datetime
    locked_by: str | None = None
    locked_until: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None = None
