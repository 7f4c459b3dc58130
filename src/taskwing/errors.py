"""Error taxonomy shared by every layer.

Each error carries a stable ``code`` (usable for programmatic fallback),
a human ``message`` and a ``details`` mapping.  Store and tool-server
errors are surfaced to callers as ``to_dict()``; agent and watcher
errors are mostly recorded and logged where they happen.
"""

from __future__ import annotations

from typing import Any


class TaskWingError(Exception):
    """Base class for all TaskWing errors."""

    code: str = "OperationFailed"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# ---------------------------------------------------------------------------
# Agents / models
# ---------------------------------------------------------------------------

class UnknownAgentError(TaskWingError):
    code = "UnknownAgent"


class ParseFailure(TaskWingError):
    """Model output could not be decoded as the declared JSON shape."""

    code = "ParseFailure"

    def __init__(self, message: str, *, preview: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.preview = preview
        self.details.setdefault("preview", preview)


class ModelUnavailableError(TaskWingError):
    code = "ModelUnavailable"


class ToolBindingUnsupported(ModelUnavailableError):
    """The model backend refused the bound tool schemas."""

    code = "ModelUnavailable"


class BudgetExceededError(TaskWingError):
    code = "BudgetExceeded"


class CancellationRequestedError(TaskWingError):
    code = "CancellationRequested"


# ---------------------------------------------------------------------------
# Filesystem / processes
# ---------------------------------------------------------------------------

class ToolDeniedError(TaskWingError):
    code = "ToolDenied"


class PathTraversalError(ToolDeniedError):
    code = "PathTraversal"


class FileNotFoundInBaseError(TaskWingError):
    code = "FileNotFound"


class GitUnavailableError(TaskWingError):
    code = "GitUnavailable"


class CommandNotAllowedError(ToolDeniedError):
    code = "CommandNotAllowed"


class ScheduleStoppedError(TaskWingError):
    code = "ScheduleStopped"


# ---------------------------------------------------------------------------
# Stores / resolver
# ---------------------------------------------------------------------------

class TaskNotFoundError(TaskWingError):
    code = "TaskNotFound"


class AmbiguousReferenceError(TaskWingError):
    code = "AmbiguousReference"


class CycleDetectedError(TaskWingError):
    code = "CycleDetected"


class IntegrityViolationError(TaskWingError):
    code = "IntegrityViolation"


class InvalidInputError(TaskWingError):
    code = "InvalidInput"


class ConfigError(TaskWingError):
    code = "ConfigError"


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class ProtocolError(TaskWingError):
    """Malformed frame or out-of-order request on the tool server."""

    code = "ProtocolError"


def wrap_store_error(
    exc: BaseException,
    operation: str,
    task_id: str | None = None,
) -> TaskWingError:
    """Map an arbitrary store exception onto the taxonomy.

    Known errors pass through unchanged; anything else becomes an
    ``IntegrityViolation`` carrying the operation context.
    """
    if isinstance(exc, TaskWingError):
        return exc
    details: dict[str, Any] = {"operation": operation, "original_error": str(exc)}
    if task_id:
        details["task_id"] = task_id
    return IntegrityViolationError(
        f"failed to {operation}: {exc}",
        details=details,
    )
