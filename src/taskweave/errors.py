"""Error taxonomy shared by every service operation.

Each error carries a short machine-readable ``reason`` plus a human message.
:meth:`TaskweaveError.to_dict` is what callers surface to users; stack detail
stays in the logs.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError


class TaskweaveError(Exception):
    reason = "error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason, "message": self.message, **self.details}


class InputValidationError(TaskweaveError):
    """Malformed input, rejected before any state mutation."""

    reason = "validation_error"

    def __init__(self, message: str, fields: dict[str, str] | None = None) -> None:
        super().__init__(message, fields=fields or {})
        self.fields = fields or {}

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> InputValidationError:
        fields: dict[str, str] = {}
        for err in exc.errors():
            loc = ".".join(str(part) for part in err["loc"]) or "__root__"
            fields.setdefault(loc, err["msg"])
        return cls("Invalid input", fields)


class NotFoundError(TaskweaveError):
    """Unknown id, or an id owned by someone else."""

    reason = "not_found"

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} {entity_id} not found", kind=kind, id=entity_id)


class StateConflictError(TaskweaveError):
    reason = "state_conflict"

    def __init__(self, message: str, status: str) -> None:
        super().__init__(message, status=status)
        self.status = status


class ToolNameCollisionError(TaskweaveError):
    reason = "tool_name_collision"

    def __init__(self, tool_name: str, sources: list[str]) -> None:
        super().__init__(
            f"Tool {tool_name!r} is exposed by more than one source: "
            + ", ".join(sources),
            tool=tool_name,
            sources=sources,
        )
        self.tool_name = tool_name
        self.sources = sources


class SourceNameCollisionError(TaskweaveError):
    """Two tool sources share a name, so one server would replace the other."""

    reason = "source_name_collision"

    def __init__(self, source_name: str) -> None:
        super().__init__(
            f"More than one tool source is named {source_name!r}", source=source_name
        )
        self.source_name = source_name


class ExecutionError(TaskweaveError):
    """Transient failure of the external execution capability."""

    reason = "execution_error"


class DecompositionError(TaskweaveError):
    """The planner could not produce a strategy for a goal."""

    reason = "decomposition_failed"


class AlreadyRunningError(StateConflictError):
    """Another invocation already holds the resource."""

    reason = "already_running"
